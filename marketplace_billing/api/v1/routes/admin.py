from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from marketplace_billing.core.database import get_db
from marketplace_billing.core.errors import Failure, PlanNotFoundError
from marketplace_billing.core.middleware import ActorContext, require_admin
from marketplace_billing.models.account import Account
from marketplace_billing.models.subscription import BillingCycle
from marketplace_billing.services.plan_change_service import AdminAuthorizer, PlanChangeService
from marketplace_billing.services.subscription_service import SubscriptionService
from pydantic import BaseModel
import logging

router = APIRouter()
logger = logging.getLogger(__name__)


class AdminPlanChangeRequest(BaseModel):
    plan_id: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


def get_plan_change_service() -> PlanChangeService:
    return PlanChangeService()


def get_subscription_service() -> SubscriptionService:
    return SubscriptionService()


def _require_account(db: Session, account_id: str) -> Account:
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Account not found: {account_id}")
    return account


@router.post("/accounts/{account_id}/change-plan")
async def admin_change_plan(
    account_id: str,
    request: AdminPlanChangeRequest,
    db: Session = Depends(get_db),
    admin: ActorContext = Depends(require_admin),
    plan_change_service: PlanChangeService = Depends(get_plan_change_service)
):
    """
    Change another account's plan on their behalf.
    An active cooldown is bypassed and the bypass is recorded and signalled.
    """
    logger.info(f"admin_change_plan: Entry - admin: {admin.uid}, account: {account_id}, plan: {request.plan_id}")
    _require_account(db, account_id)

    try:
        result = plan_change_service.commit_change(
            db,
            account_id,
            request.plan_id,
            request.billing_cycle,
            acting_admin_id=admin.uid,
            authorizer=AdminAuthorizer(db, verified_actor=admin),
        )
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"admin_change_plan: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    if isinstance(result, Failure):
        logger.info(f"admin_change_plan: Rejected - {result.code.value}")
        raise result.to_http_exception()
    logger.info(f"admin_change_plan: Success - change: {result.change_id}, bypassed: {result.bypassed_cooldown}")
    return result


@router.get("/accounts/{account_id}/subscription")
async def admin_get_subscription(
    account_id: str,
    db: Session = Depends(get_db),
    admin: ActorContext = Depends(require_admin),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    logger.info(f"admin_get_subscription: Entry - admin: {admin.uid}, account: {account_id}")
    _require_account(db, account_id)

    try:
        result = subscription_service.get_subscription_view(db, account_id)
    except Exception as e:
        logger.error(f"admin_get_subscription: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    if isinstance(result, Failure):
        raise result.to_http_exception()
    return {
        **result,
        "history": subscription_service.get_change_history(db, account_id),
    }
