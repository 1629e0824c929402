import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from marketplace_billing.core.database import get_db
from marketplace_billing.core.errors import Failure
from marketplace_billing.core.middleware import ActorContext, get_current_actor
from marketplace_billing.services.upsell_service import UpsellService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_upsell_service() -> UpsellService:
    return UpsellService()


class FeatureListingRequest(BaseModel):
    listing_id: str


def _unwrap(result, operation: str):
    if isinstance(result, Failure):
        logger.info(f"{operation}: Rejected - {result.code.value}")
        raise result.to_http_exception()
    return result


@router.get("")
async def list_upsells(
    db: Session = Depends(get_db),
    upsell_service: UpsellService = Depends(get_upsell_service)
):
    """Add-ons available for purchase. Public endpoint."""
    logger.info("list_upsells: Entry")
    try:
        return {"upsells": upsell_service.list_catalog(db)}
    except Exception as e:
        logger.error(f"list_upsells: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.get("/active")
async def list_active_upsells(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    upsell_service: UpsellService = Depends(get_upsell_service)
):
    logger.info(f"list_active_upsells: Entry - account: {actor.uid}")
    try:
        return upsell_service.list_active_upsells(db, actor.uid)
    except Exception as e:
        logger.error(f"list_active_upsells: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.post("/{upsell_id}/purchase")
async def purchase_upsell(
    upsell_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    upsell_service: UpsellService = Depends(get_upsell_service)
):
    """Buy an add-on. Requires an active (not trialing) subscription."""
    logger.info(f"purchase_upsell: Entry - account: {actor.uid}, upsell: {upsell_id}")
    try:
        result = upsell_service.purchase_upsell(db, actor.uid, upsell_id)
    except Exception as e:
        logger.error(f"purchase_upsell: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "purchase_upsell")


@router.post("/grants/{grant_id}/cancel")
async def cancel_upsell(
    grant_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    upsell_service: UpsellService = Depends(get_upsell_service)
):
    logger.info(f"cancel_upsell: Entry - account: {actor.uid}, grant: {grant_id}")
    try:
        result = upsell_service.cancel_upsell(db, actor.uid, grant_id)
    except Exception as e:
        logger.error(f"cancel_upsell: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "cancel_upsell")


@router.post("/featured")
async def feature_listing(
    request: FeatureListingRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
    upsell_service: UpsellService = Depends(get_upsell_service)
):
    """Feature one of the caller's listings using this period's allowance"""
    logger.info(f"feature_listing: Entry - account: {actor.uid}, listing: {request.listing_id}")
    try:
        result = upsell_service.feature_listing(
            db, actor.uid, request.listing_id, email_verified=actor.email_verified
        )
    except Exception as e:
        logger.error(f"feature_listing: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return _unwrap(result, "feature_listing")
