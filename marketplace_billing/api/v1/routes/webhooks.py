import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from marketplace_billing.core.database import get_db
from marketplace_billing.services.webhook_service import WebhookService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_webhook_service() -> WebhookService:
    return WebhookService()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    webhook_service: WebhookService = Depends(get_webhook_service)
):
    """
    Stripe event intake. Signature-verified, no user authentication.
    A 5xx makes Stripe redeliver; duplicates are skipped by event id.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    logger.info("stripe_webhook: Entry")

    try:
        event = webhook_service.gateway.construct_event(payload, sig_header)
    except Exception as e:
        logger.error(f"stripe_webhook: Invalid signature - {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        result = webhook_service.handle_event(db, event)
        logger.info(f"stripe_webhook: Success - {event['id']}")
        return result
    except Exception as e:
        logger.error(f"stripe_webhook: Failure - {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
