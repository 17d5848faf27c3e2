"""Payments Service schemas package."""

from services.payments_service.schemas.main import (
    AccountSessionResponse,
    AccountStatusResponse,
    BuyerEmailUpdate,
    CheckoutRequest,
    CheckoutResponse,
    ItemSummary,
    LinkResponse,
    OrderResponse,
    PaymentIntentCreateRequest,
    PaymentIntentResponse,
    RefundCreateRequest,
    RefundResponse,
    VerificationResponse,
)

__all__ = [
    "AccountSessionResponse",
    "AccountStatusResponse",
    "BuyerEmailUpdate",
    "CheckoutRequest",
    "CheckoutResponse",
    "ItemSummary",
    "LinkResponse",
    "OrderResponse",
    "PaymentIntentCreateRequest",
    "PaymentIntentResponse",
    "RefundCreateRequest",
    "RefundResponse",
    "VerificationResponse",
]
