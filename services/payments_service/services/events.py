"""Dispatch of verified Stripe events to the reconciliation engine."""

from typing import Any, Mapping

from libs.common.logging import get_logger
from services.payments_service.errors import NotFound
from services.payments_service.models import OrderStatus
from services.payments_service.services import reconciliation
from services.payments_service.stripe_client import (
    Charge,
    CheckoutSession,
    PaymentIntent,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def _checkout_completed(db: AsyncSession, obj: Mapping[str, Any]) -> None:
    session = CheckoutSession.from_stripe(obj)
    if session.payment_status != "paid":
        logger.info(
            "Checkout session %s completed with payment_status=%s; waiting",
            session.id,
            session.payment_status,
        )
        return
    try:
        await reconciliation.apply_session_status(
            db, session.id, OrderStatus.PAID, session.payment_intent
        )
    except NotFound:
        logger.warning("No order found for completed checkout session %s", session.id)


async def _intent_succeeded(db: AsyncSession, obj: Mapping[str, Any]) -> None:
    await reconciliation.create_order_from_intent(db, PaymentIntent.from_stripe(obj))


async def _intent_failed(db: AsyncSession, obj: Mapping[str, Any]) -> None:
    await reconciliation.cancel_order_for_intent(db, obj["id"])


async def _checkout_expired(db: AsyncSession, obj: Mapping[str, Any]) -> None:
    await reconciliation.cancel_order_for_session(db, obj["id"])


async def _charge_refunded(db: AsyncSession, obj: Mapping[str, Any]) -> None:
    await reconciliation.record_refund_from_charge(db, Charge.from_stripe(obj))


HANDLERS = {
    "checkout.session.completed": _checkout_completed,
    "checkout.session.expired": _checkout_expired,
    "payment_intent.succeeded": _intent_succeeded,
    "payment_intent.payment_failed": _intent_failed,
    "payment_intent.canceled": _intent_failed,
    "charge.refunded": _charge_refunded,
}


async def handle_event(db: AsyncSession, event: Mapping[str, Any]) -> bool:
    """Route one event to its handler.

    Returns False for event types the service does not act on. Handler
    errors propagate so the endpoint can ask Stripe to redeliver.
    """
    event_type = event["type"]
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring unhandled Stripe event type %s", event_type)
        return False

    obj = event["data"]["object"]
    logger.info(
        "Processing Stripe event %s",
        event_type,
        extra={"extra_fields": {"event_id": event.get("id"), "object_id": obj.get("id")}},
    )
    await handler(db, obj)
    return True
