import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from marketplace_billing.core.database import get_db
from marketplace_billing.core.errors import Failure, PlanNotFoundError
from marketplace_billing.core.middleware import ActorContext, get_current_actor
from marketplace_billing.models.subscription import BillingCycle
from marketplace_billing.services.entitlement_service import EntitlementService
from marketplace_billing.services.plan_change_service import PlanChangeService
from marketplace_billing.services.subscription_service import SubscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_subscription_service() -> SubscriptionService:
    """Dependency to get subscription service instance"""
    return SubscriptionService()


def get_plan_change_service() -> PlanChangeService:
    return PlanChangeService()


def get_entitlement_service() -> EntitlementService:
    return EntitlementService()


class PlanChangeRequest(BaseModel):
    plan_id: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


def _unwrap(result, operation: str):
    if isinstance(result, Failure):
        logger.info(f"{operation}: Rejected - {result.code.value}")
        raise result.to_http_exception()
    return result


@router.get("/plans")
async def get_plans(
    db: Session = Depends(get_db),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Get all available subscription plans.
    Public endpoint - no authentication required.
    """
    logger.info("get_plans: Entry")

    try:
        plans = subscription_service.get_all_plans(db)
        logger.info(f"get_plans: Success - {len(plans)} plans")
        return {"plans": plans}
    except Exception as e:
        logger.error(f"get_plans: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.get("/current")
async def get_current_subscription(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Current subscription with its live (effective) status"""
    logger.info(f"get_current_subscription: Entry - account: {actor.uid}")

    try:
        result = subscription_service.get_subscription_view(db, actor.uid)
    except Exception as e:
        logger.error(f"get_current_subscription: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "get_current_subscription")


@router.post("/trial")
async def start_trial(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Start the one-time free trial"""
    logger.info(f"start_trial: Entry - account: {actor.uid}")

    try:
        result = subscription_service.start_trial(db, actor.uid)
    except PlanNotFoundError as e:
        logger.error(f"start_trial: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Trial plan not configured")
    except Exception as e:
        logger.error(f"start_trial: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "start_trial")


@router.get("/change-plan/options")
async def get_change_plan_options(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    plan_change_service: PlanChangeService = Depends(get_plan_change_service)
):
    logger.info(f"get_change_plan_options: Entry - account: {actor.uid}")

    try:
        result = plan_change_service.selectable_plans(db, actor.uid)
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"get_change_plan_options: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"plans": _unwrap(result, "get_change_plan_options")}


@router.post("/change-plan/preview")
async def preview_plan_change(
    request: PlanChangeRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    plan_change_service: PlanChangeService = Depends(get_plan_change_service)
):
    """
    Quote a plan change without charging or changing anything.
    Safe to call as often as the client likes.
    """
    logger.info(f"preview_plan_change: Entry - account: {actor.uid}, plan: {request.plan_id}")

    try:
        result = plan_change_service.preview_change(db, actor.uid, request.plan_id, request.billing_cycle)
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"preview_plan_change: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "preview_plan_change")


@router.post("/change-plan")
async def commit_plan_change(
    request: PlanChangeRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    plan_change_service: PlanChangeService = Depends(get_plan_change_service)
):
    """
    Change the caller's plan. The charge is always recomputed server-side.
    Requires authentication.
    """
    logger.info(f"commit_plan_change: Entry - account: {actor.uid}, plan: {request.plan_id}")

    try:
        result = plan_change_service.commit_change(db, actor.uid, request.plan_id, request.billing_cycle)
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"commit_plan_change: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    result = _unwrap(result, "commit_plan_change")
    logger.info(f"commit_plan_change: Success - account: {actor.uid}, change: {result.change_id}")
    return result


@router.post("/cancel")
async def cancel_subscription(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Schedule cancellation at the end of the current period"""
    logger.info(f"cancel_subscription: Entry - account: {actor.uid}")

    try:
        result = subscription_service.cancel_subscription(db, actor.uid)
    except Exception as e:
        logger.error(f"cancel_subscription: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "cancel_subscription")


@router.post("/reactivate")
async def reactivate_subscription(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    logger.info(f"reactivate_subscription: Entry - account: {actor.uid}")

    try:
        result = subscription_service.reactivate_subscription(db, actor.uid)
    except Exception as e:
        logger.error(f"reactivate_subscription: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "reactivate_subscription")


@router.post("/sync")
async def sync_subscription(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """Overwrite local subscription state with the payment processor's"""
    logger.info(f"sync_subscription: Entry - account: {actor.uid}")

    try:
        result = subscription_service.sync_status(db, actor.uid)
    except Exception as e:
        logger.error(f"sync_subscription: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "sync_subscription")


@router.get("/history")
async def get_subscription_history(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    logger.info(f"get_subscription_history: Entry - account: {actor.uid}")

    try:
        history = subscription_service.get_change_history(db, actor.uid)
        return {"history": history}
    except Exception as e:
        logger.error(f"get_subscription_history: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.get("/entitlements/{resource_kind}")
async def check_entitlement(
    resource_kind: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    entitlement_service: EntitlementService = Depends(get_entitlement_service)
):
    """Whether the caller may create one more resource of this kind, with usage indicators"""
    logger.info(f"check_entitlement: Entry - account: {actor.uid}, kind: {resource_kind}")

    try:
        return entitlement_service.can_create(
            db, actor.uid, resource_kind, email_verified=actor.email_verified
        )
    except ValueError as e:
        logger.error(f"check_entitlement: ValueError - {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"check_entitlement: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
