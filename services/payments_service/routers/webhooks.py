"""Stripe webhook handler."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.payments_service.services import events
from services.payments_service.stripe_client import construct_event
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Stripe webhook endpoint (no auth; verified by Stripe-Signature).

    Acknowledges only after the event has been applied, so any failure
    leaves Stripe to redeliver.
    """
    settings = get_settings()
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    raw = await request.body()
    # SignatureVerificationFailed renders as 400
    event = construct_event(
        raw, request.headers.get("stripe-signature"), settings.STRIPE_WEBHOOK_SECRET
    )

    try:
        await events.handle_event(db, event)
    except Exception:
        await db.rollback()
        logger.exception(
            "Webhook handler failed for event %s",
            event.get("id"),
            extra={"extra_fields": {"event_type": event.get("type")}},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook handler failed",
        )

    return {"received": True}
