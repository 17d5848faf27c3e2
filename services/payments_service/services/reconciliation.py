"""Order reconciliation engine.

Turns gateway-side payment state into ledger order state. Every operation is
safe to re-run: duplicate or concurrent deliveries of the same gateway event
converge on one row through

1. unique-key guarded inserts that fall back to reading the winner, and
2. fresh reads followed by status-conditioned updates that skip transitions
   already applied.

State machine::

    pending -> paid | cancelled
    paid    -> refunded | partially_refunded
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from libs.common.config import get_settings
from libs.common.currency import (
    from_cents,
    percentage_of_cents,
    to_cents,
    to_decimal,
)
from libs.common.datetime_utils import from_unix_timestamp, utc_now
from libs.common.logging import get_logger
from services.payments_service.errors import (
    AlreadyRefunded,
    GatewayError,
    MissingMetadata,
    NoChargeFound,
    NotFound,
    PersistenceError,
    SellerNotPayable,
    ValidationError,
)
from services.payments_service.models import (
    ORDER_TRANSITIONS,
    REFUNDED_STATUSES,
    Item,
    Order,
    OrderStatus,
)
from services.payments_service.services import ledger, notifications
from services.payments_service.stripe_client import (
    Charge,
    CheckoutSessionRequest,
    DestinationCharge,
    LineItem,
    PaymentIntent,
    PaymentIntentRequest,
    Refund,
    RefundRequest,
    StripeGateway,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Namespace for order ids derived from checkout idempotency keys
_CHECKOUT_ORDER_NAMESPACE = uuid.UUID("6f1d3c2e-8a4b-4f0e-9d7a-2b5c8e1f4a90")


@dataclass
class OrderOutcome:
    """An order plus whether this call performed its status transition."""

    order: Order
    transitioned: bool


@dataclass
class CheckoutResult:
    url: Optional[str]
    session_id: str
    order: Order


@dataclass
class PaymentIntentResult:
    client_secret: str
    payment_intent_id: str


@dataclass
class RefundResult:
    refund: Refund
    order: Order


@dataclass
class Verification:
    """Gateway payment status and the reconciled order, if any."""

    payment_status: str
    order: Optional[Order]
    transitioned: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def compute_fees(price: Decimal) -> tuple[int, int]:
    """Return ``(amount_cents, platform_fee_cents)`` for a list price."""
    settings = get_settings()
    return to_cents(price), percentage_of_cents(price, settings.PLATFORM_FEE_PERCENT)


def _parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _fee_from_metadata(metadata: dict[str, str]) -> Optional[int]:
    raw = metadata.get("platformFee")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring unparseable platformFee metadata %r", raw)
        return None


def _checkout_order_id(item_id: uuid.UUID, idempotency_key: Optional[str]) -> uuid.UUID:
    if idempotency_key:
        return uuid.uuid5(_CHECKOUT_ORDER_NAMESPACE, f"{item_id}:{idempotency_key}")
    return uuid.uuid4()


def _coerce_status(status: OrderStatus | str) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown order status: {status}")


async def _load_payable_item(db: AsyncSession, item_id: uuid.UUID) -> tuple[Item, str]:
    """Return the item and its seller's connected account id."""
    item = await ledger.get_item(db, item_id)
    if item is None:
        raise NotFound(f"Item {item_id} not found")

    owner = item.store.user
    if not owner.stripe_account_id:
        raise SellerNotPayable("Store owner has not set up payments")
    if not owner.stripe_onboarding_complete:
        raise SellerNotPayable("Store owner has not completed payment setup")
    return item, owner.stripe_account_id


async def _transition(
    db: AsyncSession, order: Order, target: OrderStatus, **values
) -> OrderOutcome:
    """Apply ``target`` if the order's current status allows it, else no-op."""
    order_id, current = order.id, order.status
    if current not in ORDER_TRANSITIONS.get(target, frozenset()):
        logger.info(
            "Order %s is %s; skipping transition to %s",
            order_id,
            current.value,
            target.value,
        )
        return OrderOutcome(order, False)

    applied = await ledger.transition_order(
        db, order_id, from_status=current, to_status=target, **values
    )
    fresh = await ledger.get_order(db, order_id)
    if fresh is None:
        raise PersistenceError(f"Order {order_id} disappeared during transition")
    if applied:
        logger.info("Order %s: %s -> %s", order_id, current.value, target.value)
    else:
        logger.info(
            "Order %s already moved to %s by a concurrent writer",
            order_id,
            fresh.status.value,
        )
    return OrderOutcome(fresh, applied)


async def _after_paid(db: AsyncSession, outcome: OrderOutcome) -> OrderOutcome:
    """Notify the seller once, on the call that performed the paid transition."""
    if not outcome.transitioned or outcome.order.status != OrderStatus.PAID:
        return outcome
    order_id = outcome.order.id
    await notifications.notify_new_order(db, outcome.order)
    fresh = await ledger.get_order(db, order_id)
    return OrderOutcome(fresh or outcome.order, True)


# ---------------------------------------------------------------------------
# Checkout and payment intents
# ---------------------------------------------------------------------------


async def create_checkout(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    item_id: uuid.UUID,
    buyer_email: str,
    success_url: str,
    cancel_url: str,
    idempotency_key: Optional[str] = None,
) -> CheckoutResult:
    """Create a destination-charge Checkout Session and its pending order.

    Without an idempotency key every call creates a new session and order.
    With one, retries resolve to the same gateway session and the same row.
    """
    settings = get_settings()
    item, destination = await _load_payable_item(db, item_id)
    amount_cents, fee_cents = compute_fees(item.price)
    order_id = _checkout_order_id(item.id, idempotency_key)

    metadata = {
        "itemId": str(item.id),
        "storeId": str(item.store_id),
        "platformFee": str(fee_cents),
        "orderId": str(order_id),
    }
    session = await gateway.create_checkout_session(
        CheckoutSessionRequest(
            line_item=LineItem(
                name=item.name,
                unit_amount=amount_cents,
                currency=settings.STRIPE_CURRENCY,
                description=item.description,
                image_url=item.images[0].url if item.images else None,
            ),
            charge=DestinationCharge(
                application_fee_amount=fee_cents,
                destination=destination,
                metadata=metadata,
            ),
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=buyer_email,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
    )

    session_id = session.id
    if idempotency_key:
        existing = await ledger.get_order(db, order_id)
        if existing is not None:
            logger.info("Checkout retry resolved to existing order %s", order_id)
            return CheckoutResult(url=session.url, session_id=session_id, order=existing)

    stored = await ledger.insert_order(
        db,
        Order(
            id=order_id,
            item_id=item.id,
            buyer_email=buyer_email,
            amount=item.price,
            platform_fee=from_cents(fee_cents),
            stripe_session_id=session_id,
            status=OrderStatus.PENDING,
        ),
    )
    if stored is None:
        # Concurrent retry inserted the replayed session first
        stored = await ledger.get_order_by_session_id(
            db, session_id
        ) or await ledger.get_order(db, order_id)
        if stored is None:
            raise PersistenceError(f"Could not record order for session {session_id}")
        logger.info("Checkout retry resolved to existing order %s", stored.id)
    else:
        logger.info(
            "Created pending order %s for item %s (session %s)",
            stored.id,
            item_id,
            session_id,
        )

    return CheckoutResult(url=session.url, session_id=session_id, order=stored)


async def create_payment_intent(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    item_id: uuid.UUID,
    buyer_email: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> PaymentIntentResult:
    """Create a destination-charge PaymentIntent. No order row is written;
    it is materialized when the intent succeeds."""
    settings = get_settings()
    item, destination = await _load_payable_item(db, item_id)
    amount_cents, fee_cents = compute_fees(item.price)

    metadata = {
        "itemId": str(item.id),
        "storeId": str(item.store_id),
        "platformFee": str(fee_cents),
    }
    if buyer_email:
        metadata["buyerEmail"] = buyer_email

    intent = await gateway.create_payment_intent(
        PaymentIntentRequest(
            amount=amount_cents,
            currency=settings.STRIPE_CURRENCY,
            charge=DestinationCharge(
                application_fee_amount=fee_cents,
                destination=destination,
                metadata=metadata,
            ),
            receipt_email=buyer_email,
            idempotency_key=idempotency_key,
        )
    )
    if not intent.client_secret:
        raise GatewayError(f"Payment intent {intent.id} has no client secret")

    return PaymentIntentResult(
        client_secret=intent.client_secret, payment_intent_id=intent.id
    )


async def _attach_checkout_order(
    db: AsyncSession, intent: PaymentIntent
) -> Optional[OrderOutcome]:
    """Resolve a succeeded intent to the pending order its checkout created."""
    order_id = _parse_uuid(intent.metadata.get("orderId"))
    if order_id is None:
        return None
    order = await ledger.get_order(db, order_id)
    if order is None:
        return None
    if order.stripe_payment_id and order.stripe_payment_id != intent.id:
        logger.warning(
            "Order %s is already tied to payment %s; not attaching %s",
            order.id,
            order.stripe_payment_id,
            intent.id,
        )
        return None
    if order.status == OrderStatus.CANCELLED:
        # The money moved anyway; record it on a fresh row below
        return None
    if order.status != OrderStatus.PENDING:
        # Already paid through the session; keep the charge reachable for refunds
        if not order.stripe_payment_id:
            await ledger.attach_payment_id(db, order_id, intent.id)
            logger.info("Attached payment intent %s to order %s", intent.id, order_id)
        return OrderOutcome(await ledger.get_order(db, order_id), False)

    return await _transition(
        db,
        order,
        OrderStatus.PAID,
        stripe_payment_id=intent.id,
        paid_at=utc_now(),
        shipping_address=intent.shipping,
    )


async def create_order_from_intent(
    db: AsyncSession, intent: PaymentIntent
) -> OrderOutcome:
    """Materialize the paid order for a succeeded payment intent.

    Idempotent: an order already recorded for the intent is returned as is.
    """
    existing = await ledger.get_order_by_payment_id(db, intent.id)
    if existing is not None:
        logger.info(
            "Order %s already recorded for payment intent %s", existing.id, intent.id
        )
        return OrderOutcome(existing, False)

    attached = await _attach_checkout_order(db, intent)
    if attached is not None:
        return await _after_paid(db, attached)

    item_id_raw = intent.metadata.get("itemId")
    if not item_id_raw:
        raise MissingMetadata(f"Payment intent {intent.id} has no itemId metadata")
    item_id = _parse_uuid(item_id_raw)
    if item_id is None:
        raise MissingMetadata(
            f"Payment intent {intent.id} has malformed itemId metadata: {item_id_raw}"
        )

    item = await ledger.get_item(db, item_id)
    if item is None:
        raise NotFound(f"Item {item_id} not found for payment intent {intent.id}")

    fee_cents = _fee_from_metadata(intent.metadata)
    if fee_cents is None:
        fee_cents = compute_fees(item.price)[1]
    amount = from_cents(intent.amount) if intent.amount else item.price

    stored = await ledger.insert_order(
        db,
        Order(
            id=uuid.uuid4(),
            item_id=item.id,
            buyer_email=intent.receipt_email or intent.metadata.get("buyerEmail"),
            amount=amount,
            platform_fee=from_cents(fee_cents),
            stripe_session_id=intent.id,
            stripe_payment_id=intent.id,
            status=OrderStatus.PAID,
            paid_at=utc_now(),
            shipping_address=intent.shipping,
        ),
    )
    if stored is None:
        winner = await ledger.get_order_by_payment_id(db, intent.id)
        if winner is None:
            raise PersistenceError(
                f"Order insert for payment intent {intent.id} conflicted but no row exists"
            )
        logger.info(
            "Concurrent delivery already recorded order %s for %s", winner.id, intent.id
        )
        return OrderOutcome(winner, False)

    logger.info("Created paid order %s from payment intent %s", stored.id, intent.id)
    return await _after_paid(db, OrderOutcome(stored, True))


# ---------------------------------------------------------------------------
# Status updates
# ---------------------------------------------------------------------------


async def apply_session_status(
    db: AsyncSession,
    session_id: str,
    status: OrderStatus | str,
    payment_id: Optional[str] = None,
) -> OrderOutcome:
    """Checkout-session flow transition with a fresh read first."""
    target = _coerce_status(status)
    order = await ledger.get_order_by_session_id(db, session_id)
    if order is None:
        raise NotFound(f"No order for checkout session {session_id}")

    values = {}
    if target == OrderStatus.PAID:
        values["paid_at"] = utc_now()
        if payment_id:
            values["stripe_payment_id"] = payment_id
    outcome = await _transition(db, order, target, **values)
    return await _after_paid(db, outcome)


async def update_order_status(
    db: AsyncSession,
    session_id: str,
    status: OrderStatus | str,
    payment_id: Optional[str] = None,
) -> Order:
    outcome = await apply_session_status(db, session_id, status, payment_id)
    return outcome.order


async def cancel_order_for_intent(
    db: AsyncSession, payment_intent_id: str
) -> Optional[OrderOutcome]:
    order = await ledger.get_order_by_payment_id(db, payment_intent_id)
    if order is None:
        logger.info("Payment intent %s failed with no order", payment_intent_id)
        return None
    return await _transition(db, order, OrderStatus.CANCELLED)


async def cancel_order_for_session(
    db: AsyncSession, session_id: str
) -> Optional[OrderOutcome]:
    order = await ledger.get_order_by_session_id(db, session_id)
    if order is None:
        logger.info("Expired checkout session %s has no order", session_id)
        return None
    return await _transition(db, order, OrderStatus.CANCELLED)


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


def _refund_status(refunded_cents: int, order_amount: Decimal) -> OrderStatus:
    if refunded_cents >= to_cents(order_amount):
        return OrderStatus.REFUNDED
    return OrderStatus.PARTIALLY_REFUNDED


async def refund_order(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    order_id: uuid.UUID,
    amount: Optional[Decimal] = None,
    refund_platform_fee: Optional[bool] = None,
) -> RefundResult:
    """Refund a paid order, reversing the seller transfer.

    A refund is a one-shot terminal action: any order already refunded
    (fully or partially) is rejected with AlreadyRefunded.
    """
    order = await ledger.get_order(db, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    if not order.stripe_payment_id:
        raise ValidationError(f"Order {order_id} has no payment to refund")
    if order.status in REFUNDED_STATUSES:
        raise AlreadyRefunded(f"Order {order_id} has already been refunded")
    if order.status != OrderStatus.PAID:
        raise ValidationError(
            f"Only paid orders can be refunded (order is {order.status.value})"
        )

    refund_cents = None
    if amount is not None:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if amount > order.amount:
            raise ValidationError(
                f"Refund amount {amount} exceeds order amount {order.amount}"
            )
        refund_cents = to_cents(amount)

    if not order.item.store.user.stripe_account_id:
        raise SellerNotPayable("Store owner has no connected account")

    payment_id = order.stripe_payment_id
    intent = await gateway.retrieve_payment_intent(payment_id)
    if not intent.latest_charge:
        raise NoChargeFound(f"No charge found for payment {payment_id}")

    refund = await gateway.create_refund(
        RefundRequest(
            charge=intent.latest_charge,
            amount=refund_cents,
            reverse_transfer=True,
            refund_application_fee=(
                True if refund_platform_fee is None else refund_platform_fee
            ),
            metadata={"orderId": str(order_id)},
            # one refund per order at Stripe, even under concurrent calls
            idempotency_key=f"refund-{order_id}",
        )
    )
    logger.info(
        "Stripe refund %s created for order %s (%d cents)",
        refund.id,
        order_id,
        refund.amount,
    )

    try:
        outcome = await _transition(
            db,
            order,
            _refund_status(refund.amount, order.amount),
            refund_id=refund.id,
            refund_amount=from_cents(refund.amount),
            refunded_at=from_unix_timestamp(refund.created),
        )
    except PersistenceError:
        logger.error(
            "Refund %s succeeded at Stripe but order %s was not updated; "
            "charge.refunded will reconcile it",
            refund.id,
            order_id,
        )
        raise

    if not outcome.transitioned:
        logger.warning(
            "Refund %s created but order %s was already %s",
            refund.id,
            order_id,
            outcome.order.status.value,
        )
    return RefundResult(refund=refund, order=outcome.order)


async def record_refund_from_charge(
    db: AsyncSession, charge: Charge
) -> Optional[OrderOutcome]:
    """Reconcile a refund reported by the gateway (``charge.refunded``)."""
    if not charge.payment_intent:
        return None
    order = await ledger.get_order_by_payment_id(db, charge.payment_intent)
    if order is None:
        logger.info("Refunded charge %s has no order", charge.id)
        return None
    if charge.amount_refunded <= 0:
        return OrderOutcome(order, False)

    return await _transition(
        db,
        order,
        _refund_status(charge.amount_refunded, order.amount),
        refund_id=charge.latest_refund,
        refund_amount=from_cents(charge.amount_refunded),
        refunded_at=utc_now(),
    )


# ---------------------------------------------------------------------------
# Client-side verification (fallback to webhooks)
# ---------------------------------------------------------------------------


async def verify_payment_intent(
    db: AsyncSession, gateway: StripeGateway, payment_intent_id: str
) -> Verification:
    intent = await gateway.retrieve_payment_intent(payment_intent_id)
    if intent.status == "succeeded":
        outcome = await create_order_from_intent(db, intent)
        return Verification(intent.status, outcome.order, outcome.transitioned)

    order = await ledger.get_order_by_payment_id(db, payment_intent_id)
    return Verification(intent.status or "unknown", order)


async def verify_checkout_session(
    db: AsyncSession, gateway: StripeGateway, session_id: str
) -> Verification:
    order = await ledger.get_order_by_session_id(db, session_id)
    if order is None:
        raise NotFound(f"No order for checkout session {session_id}")

    session = await gateway.retrieve_checkout_session(session_id)
    if session.payment_status == "paid":
        outcome = await apply_session_status(
            db, session_id, OrderStatus.PAID, session.payment_intent
        )
        return Verification(session.payment_status, outcome.order, outcome.transitioned)
    return Verification(session.payment_status or "unpaid", order)


# ---------------------------------------------------------------------------
# Order queries
# ---------------------------------------------------------------------------


async def get_order_for_session(db: AsyncSession, session_id: str) -> Order:
    order = await ledger.get_order_by_session_id(db, session_id)
    if order is None:
        raise NotFound(f"No order for checkout session {session_id}")
    return order


async def update_buyer_email(db: AsyncSession, session_id: str, buyer_email: str) -> Order:
    """Buyer email stays editable until the order is paid."""
    order = await get_order_for_session(db, session_id)
    order_id = order.id
    if order.status != OrderStatus.PENDING:
        raise ValidationError("Buyer email can only be changed before payment")
    if not await ledger.update_pending_order(db, order_id, buyer_email=buyer_email):
        raise ValidationError("Buyer email can only be changed before payment")
    return await ledger.get_order(db, order_id)


async def list_orders_for_seller(db: AsyncSession, external_id: str) -> list[Order]:
    """Orders across every store the user owns; empty for unknown identities."""
    user = await ledger.get_user_by_external_id(db, external_id)
    if user is None:
        return []
    return await ledger.list_orders_for_owner(db, user.id)
