"""
Stripe API client for destination charges, refunds and Connect accounts.

Provides async methods for:
- Creating and retrieving Checkout Sessions
- Creating and retrieving PaymentIntents
- Creating refunds that claw back the seller transfer
- Creating/retrieving Express connected accounts and their links
- Verifying signed webhook payloads

Request parameters are built from dataclasses that only emit optional
fields when they are set, so the wire payload never carries empty values.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import stripe
from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.payments_service.errors import GatewayError, SignatureVerificationFailed

logger = get_logger(__name__)


# =========================================================================
# Helpers
# =========================================================================


def _plain(value: Any) -> Any:
    """Convert Stripe objects (or nested dicts) into plain JSON-able values."""
    if value is None:
        return None
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _expandable_id(value: Any) -> Optional[str]:
    """Return the id of a field that may be a string id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return value.get("id")
    return getattr(value, "id", None)


def _metadata(value: Any) -> dict[str, str]:
    if not value:
        return {}
    return {str(k): str(v) for k, v in dict(value).items() if v is not None}


# =========================================================================
# Results
# =========================================================================


@dataclass
class CheckoutSession:
    """Subset of a Stripe Checkout Session the engine relies on."""

    id: str
    url: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None
    payment_intent: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "CheckoutSession":
        return cls(
            id=obj["id"],
            url=obj.get("url"),
            payment_status=obj.get("payment_status"),
            status=obj.get("status"),
            payment_intent=_expandable_id(obj.get("payment_intent")),
            metadata=_metadata(obj.get("metadata")),
        )


@dataclass
class PaymentIntent:
    """Subset of a Stripe PaymentIntent the engine relies on."""

    id: str
    amount: int
    status: Optional[str] = None
    currency: Optional[str] = None
    client_secret: Optional[str] = None
    receipt_email: Optional[str] = None
    latest_charge: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    shipping: Optional[dict] = None

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "PaymentIntent":
        return cls(
            id=obj["id"],
            amount=int(obj.get("amount") or 0),
            status=obj.get("status"),
            currency=obj.get("currency"),
            client_secret=obj.get("client_secret"),
            receipt_email=obj.get("receipt_email"),
            latest_charge=_expandable_id(obj.get("latest_charge")),
            metadata=_metadata(obj.get("metadata")),
            shipping=_plain(obj.get("shipping")),
        )


@dataclass
class Refund:
    """Result of creating a refund."""

    id: str
    amount: int  # in cents
    status: Optional[str] = None
    charge: Optional[str] = None
    created: Optional[int] = None

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "Refund":
        return cls(
            id=obj["id"],
            amount=int(obj.get("amount") or 0),
            status=obj.get("status"),
            charge=_expandable_id(obj.get("charge")),
            created=obj.get("created"),
        )


@dataclass
class Charge:
    """Charge as delivered by ``charge.refunded`` events."""

    id: str
    amount: int
    amount_refunded: int = 0
    payment_intent: Optional[str] = None
    latest_refund: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "Charge":
        refunds = obj.get("refunds") or {}
        refund_data = refunds.get("data") if isinstance(refunds, Mapping) else None
        return cls(
            id=obj["id"],
            amount=int(obj.get("amount") or 0),
            amount_refunded=int(obj.get("amount_refunded") or 0),
            payment_intent=_expandable_id(obj.get("payment_intent")),
            latest_refund=_expandable_id(refund_data[0]) if refund_data else None,
        )


@dataclass
class ConnectedAccount:
    """Point-in-time view of a seller's Express account."""

    id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "ConnectedAccount":
        return cls(
            id=obj["id"],
            details_submitted=bool(obj.get("details_submitted")),
            charges_enabled=bool(obj.get("charges_enabled")),
            payouts_enabled=bool(obj.get("payouts_enabled")),
        )


# =========================================================================
# Requests
# =========================================================================


@dataclass
class DestinationCharge:
    """Platform keeps ``application_fee_amount``; the rest goes to ``destination``."""

    application_fee_amount: int
    destination: str
    metadata: dict[str, str] = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "application_fee_amount": self.application_fee_amount,
            "transfer_data": {"destination": self.destination},
        }
        if self.metadata:
            params["metadata"] = dict(self.metadata)
        return params


@dataclass
class LineItem:
    name: str
    unit_amount: int
    currency: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    quantity: int = 1

    def to_params(self) -> dict[str, Any]:
        product_data: dict[str, Any] = {"name": self.name}
        if self.description:
            product_data["description"] = self.description
        if self.image_url:
            product_data["images"] = [self.image_url]
        return {
            "price_data": {
                "currency": self.currency,
                "product_data": product_data,
                "unit_amount": self.unit_amount,
            },
            "quantity": self.quantity,
        }


@dataclass
class CheckoutSessionRequest:
    line_item: LineItem
    charge: DestinationCharge
    success_url: str
    cancel_url: str
    customer_email: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    idempotency_key: Optional[str] = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [self.line_item.to_params()],
            "payment_intent_data": self.charge.to_params(),
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
        }
        if self.customer_email:
            params["customer_email"] = self.customer_email
        if self.metadata:
            params["metadata"] = dict(self.metadata)
        return params


@dataclass
class PaymentIntentRequest:
    amount: int
    currency: str
    charge: DestinationCharge
    receipt_email: Optional[str] = None
    idempotency_key: Optional[str] = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "amount": self.amount,
            "currency": self.currency,
            "automatic_payment_methods": {"enabled": True},
            **self.charge.to_params(),
        }
        if self.receipt_email:
            params["receipt_email"] = self.receipt_email
        return params


@dataclass
class RefundRequest:
    charge: str
    amount: Optional[int] = None  # None refunds the full charge
    reverse_transfer: bool = True
    refund_application_fee: bool = True
    metadata: dict[str, str] = field(default_factory=dict)
    idempotency_key: Optional[str] = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "charge": self.charge,
            "reverse_transfer": self.reverse_transfer,
            "refund_application_fee": self.refund_application_fee,
        }
        if self.amount is not None:
            params["amount"] = self.amount
        if self.metadata:
            params["metadata"] = dict(self.metadata)
        return params


def _options(idempotency_key: Optional[str]) -> dict[str, Any]:
    return {"idempotency_key": idempotency_key} if idempotency_key else {}


# =========================================================================
# Webhooks
# =========================================================================


def construct_event(
    payload: bytes, signature: Optional[str], secret: str
) -> dict[str, Any]:
    """
    Verify a webhook payload against the signing secret and parse it into
    a plain dict.

    ``payload`` must be the raw request body; re-serialized JSON will not
    verify.

    Raises:
        SignatureVerificationFailed: missing header, bad signature or
            unparseable payload.
    """
    if not signature:
        raise SignatureVerificationFailed("Missing Stripe-Signature header")
    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as e:
        raise SignatureVerificationFailed(f"Invalid payload: {e}") from e
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationFailed("Invalid signature") from e
    return event.to_dict()


# =========================================================================
# Client
# =========================================================================


class StripeGateway:
    """Async client for the Stripe APIs used by the marketplace.

    Constructed once per process and passed into engine operations.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        client: Optional[stripe.StripeClient] = None,
    ):
        settings = get_settings()
        if client is None:
            secret_key = secret_key or settings.STRIPE_SECRET_KEY
            if not secret_key:
                raise ValueError("STRIPE_SECRET_KEY is required")
            client = stripe.StripeClient(
                secret_key,
                http_client=stripe.HTTPXClient(timeout=settings.STRIPE_TIMEOUT_SECONDS),
                max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
            )
        self._client = client

    async def _call(self, operation: str, method, *args, **kwargs):
        """Invoke a Stripe service method and return its result as plain dicts.

        SDK errors are mapped to GatewayError.
        """
        try:
            result = await method(*args, **kwargs)
        except stripe.StripeError as e:
            message = e.user_message or str(e) or e.__class__.__name__
            logger.error(
                "Stripe %s failed (http %s, code %s): %s",
                operation,
                e.http_status,
                e.code,
                message,
            )
            raise GatewayError(
                f"Stripe {operation} failed: {message}",
                http_status=e.http_status,
                gateway_code=e.code,
            ) from e
        return _plain(result)

    # =========================================================================
    # Checkout Sessions
    # =========================================================================

    async def create_checkout_session(
        self, request: CheckoutSessionRequest
    ) -> CheckoutSession:
        session = await self._call(
            "checkout session create",
            self._client.v1.checkout.sessions.create_async,
            params=request.to_params(),
            options=_options(request.idempotency_key),
        )
        return CheckoutSession.from_stripe(session)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        session = await self._call(
            "checkout session retrieve",
            self._client.v1.checkout.sessions.retrieve_async,
            session_id,
        )
        return CheckoutSession.from_stripe(session)

    # =========================================================================
    # Payment Intents
    # =========================================================================

    async def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntent:
        intent = await self._call(
            "payment intent create",
            self._client.v1.payment_intents.create_async,
            params=request.to_params(),
            options=_options(request.idempotency_key),
        )
        return PaymentIntent.from_stripe(intent)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Retrieve an intent with its latest charge expanded."""
        intent = await self._call(
            "payment intent retrieve",
            self._client.v1.payment_intents.retrieve_async,
            payment_intent_id,
            params={"expand": ["latest_charge"]},
        )
        return PaymentIntent.from_stripe(intent)

    # =========================================================================
    # Refunds
    # =========================================================================

    async def create_refund(self, request: RefundRequest) -> Refund:
        refund = await self._call(
            "refund create",
            self._client.v1.refunds.create_async,
            params=request.to_params(),
            options=_options(request.idempotency_key),
        )
        return Refund.from_stripe(refund)

    # =========================================================================
    # Connect
    # =========================================================================

    async def create_connected_account(self, email: str) -> ConnectedAccount:
        account = await self._call(
            "account create",
            self._client.v1.accounts.create_async,
            params={
                "type": "express",
                "email": email,
                "capabilities": {
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
            },
        )
        return ConnectedAccount.from_stripe(account)

    async def retrieve_connected_account(self, account_id: str) -> ConnectedAccount:
        account = await self._call(
            "account retrieve",
            self._client.v1.accounts.retrieve_async,
            account_id,
        )
        return ConnectedAccount.from_stripe(account)

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        link = await self._call(
            "account link create",
            self._client.v1.account_links.create_async,
            params={
                "account": account_id,
                "refresh_url": refresh_url,
                "return_url": return_url,
                "type": "account_onboarding",
            },
        )
        return link["url"]

    async def create_login_link(self, account_id: str) -> str:
        link = await self._call(
            "login link create",
            self._client.v1.accounts.login_links.create_async,
            account_id,
        )
        return link["url"]

    async def create_account_session(self, account_id: str) -> str:
        """Client secret for embedded onboarding components."""
        session = await self._call(
            "account session create",
            self._client.v1.account_sessions.create_async,
            params={
                "account": account_id,
                "components": {"account_onboarding": {"enabled": True}},
            },
        )
        return session["client_secret"]


def get_stripe_gateway() -> StripeGateway:
    """Build a StripeGateway from settings."""
    return StripeGateway()
