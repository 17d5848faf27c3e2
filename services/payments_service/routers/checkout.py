"""Buyer checkout, payment intents, verification and refunds."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.currency import from_cents
from libs.db.session import get_async_db
from services.payments_service.dependencies import get_gateway
from services.payments_service.errors import Forbidden, NotFound
from services.payments_service.schemas import (
    BuyerEmailUpdate,
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
    PaymentIntentCreateRequest,
    PaymentIntentResponse,
    RefundCreateRequest,
    RefundResponse,
    VerificationResponse,
)
from services.payments_service.services import ledger, reconciliation
from services.payments_service.stripe_client import StripeGateway
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])


def _checkout_urls(origin: Optional[str]) -> tuple[str, str]:
    base = (origin or get_settings().FRONTEND_URL).rstrip("/")
    return (
        f"{base}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}/checkout/cancelled",
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    payload: CheckoutRequest,
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """
    Start a hosted checkout for one item. Returns the Stripe-hosted URL.
    """
    success_url, cancel_url = _checkout_urls(request.headers.get("origin"))
    result = await reconciliation.create_checkout(
        db,
        gateway,
        item_id=payload.item_id,
        buyer_email=payload.buyer_email,
        success_url=success_url,
        cancel_url=cancel_url,
        idempotency_key=payload.idempotency_key,
    )
    return CheckoutResponse(
        url=result.url, session_id=result.session_id, order_id=result.order.id
    )


@router.post("/intents", response_model=PaymentIntentResponse)
async def create_payment_intent(
    payload: PaymentIntentCreateRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """
    Create a PaymentIntent for embedded payment forms. The order is recorded
    when Stripe reports the intent as succeeded.
    """
    result = await reconciliation.create_payment_intent(
        db,
        gateway,
        item_id=payload.item_id,
        buyer_email=payload.buyer_email,
        idempotency_key=idempotency_key,
    )
    return PaymentIntentResponse(
        client_secret=result.client_secret,
        payment_intent_id=result.payment_intent_id,
    )


@router.post("/intents/{payment_intent_id}/verify", response_model=VerificationResponse)
async def verify_payment_intent(
    payment_intent_id: str,
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """
    Client-side confirmation fallback for when the webhook is late.
    """
    verification = await reconciliation.verify_payment_intent(
        db, gateway, payment_intent_id
    )
    return VerificationResponse(
        payment_status=verification.payment_status,
        order=(
            OrderResponse.model_validate(verification.order)
            if verification.order is not None
            else None
        ),
    )


@router.post("/checkout/{session_id}/verify", response_model=VerificationResponse)
async def verify_checkout_session(
    session_id: str,
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    verification = await reconciliation.verify_checkout_session(db, gateway, session_id)
    return VerificationResponse(
        payment_status=verification.payment_status,
        order=(
            OrderResponse.model_validate(verification.order)
            if verification.order is not None
            else None
        ),
    )


@router.get("/orders/by-session/{session_id}", response_model=OrderResponse)
async def get_order_by_session(
    session_id: str,
    db: AsyncSession = Depends(get_async_db),
):
    return await reconciliation.get_order_for_session(db, session_id)


@router.patch("/orders/by-session/{session_id}/email", response_model=OrderResponse)
async def update_buyer_email(
    session_id: str,
    payload: BuyerEmailUpdate,
    db: AsyncSession = Depends(get_async_db),
):
    return await reconciliation.update_buyer_email(db, session_id, payload.buyer_email)


async def _require_order_owner(
    db: AsyncSession, order_id: uuid.UUID, current_user: AuthUser
) -> None:
    order = await ledger.get_order(db, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    if order.item.store.user.external_id != current_user.user_id:
        raise Forbidden("Only the store owner can refund this order")


@router.post("/refunds", response_model=RefundResponse)
async def create_refund(
    payload: RefundCreateRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """
    Refund a paid order (fully, or partially when ``amount`` is given).
    The seller transfer is reversed.
    """
    await _require_order_owner(db, payload.order_id, current_user)
    result = await reconciliation.refund_order(
        db,
        gateway,
        order_id=payload.order_id,
        amount=payload.amount,
        refund_platform_fee=payload.refund_platform_fee,
    )
    return RefundResponse(
        refund_id=result.refund.id,
        amount=from_cents(result.refund.amount),
        status=result.order.status,
        order=OrderResponse.model_validate(result.order),
    )
