import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictBool
from services.payments_service.models import OrderStatus


class CheckoutRequest(BaseModel):
    item_id: uuid.UUID = Field(alias="itemId")
    buyer_email: EmailStr = Field(alias="buyerEmail")
    idempotency_key: Optional[str] = Field(
        default=None, alias="idempotencyKey", max_length=255
    )

    model_config = ConfigDict(populate_by_name=True)


class CheckoutResponse(BaseModel):
    url: Optional[str] = None
    session_id: str = Field(serialization_alias="sessionId")
    order_id: uuid.UUID = Field(serialization_alias="orderId")


class PaymentIntentCreateRequest(BaseModel):
    item_id: uuid.UUID = Field(alias="itemId")
    buyer_email: Optional[EmailStr] = Field(default=None, alias="buyerEmail")

    model_config = ConfigDict(populate_by_name=True)


class PaymentIntentResponse(BaseModel):
    client_secret: str = Field(serialization_alias="clientSecret")
    payment_intent_id: str = Field(serialization_alias="paymentIntentId")


class ItemSummary(BaseModel):
    id: uuid.UUID
    name: str
    price: Decimal
    store_id: uuid.UUID

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: uuid.UUID
    item_id: uuid.UUID
    buyer_email: Optional[str] = None
    amount: Decimal
    platform_fee: Decimal
    status: OrderStatus
    stripe_session_id: Optional[str] = None
    stripe_payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    shipping_address: Optional[dict] = None
    created_at: datetime
    item: Optional[ItemSummary] = None

    model_config = ConfigDict(from_attributes=True)


class VerificationResponse(BaseModel):
    payment_status: str
    order: Optional[OrderResponse] = None


class BuyerEmailUpdate(BaseModel):
    buyer_email: EmailStr = Field(alias="buyerEmail")

    model_config = ConfigDict(populate_by_name=True)


class RefundCreateRequest(BaseModel):
    order_id: uuid.UUID = Field(alias="orderId")
    amount: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)
    refund_platform_fee: Optional[StrictBool] = Field(
        default=None, alias="refundPlatformFee"
    )

    model_config = ConfigDict(populate_by_name=True)


class RefundResponse(BaseModel):
    refund_id: str = Field(serialization_alias="refundId")
    amount: Decimal
    status: OrderStatus
    order: OrderResponse


class LinkResponse(BaseModel):
    url: str


class AccountSessionResponse(BaseModel):
    client_secret: str = Field(serialization_alias="clientSecret")


class AccountStatusResponse(BaseModel):
    has_account: bool = Field(serialization_alias="hasAccount")
    onboarding_complete: bool = Field(serialization_alias="onboardingComplete")
    charges_enabled: bool = Field(serialization_alias="chargesEnabled")
    payouts_enabled: bool = Field(serialization_alias="payoutsEnabled")
    account_id: Optional[str] = Field(default=None, serialization_alias="accountId")

    model_config = ConfigDict(from_attributes=True)
