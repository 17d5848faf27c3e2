"""Unit tests for the Stripe gateway client: request shapes, result parsing,
error mapping and webhook signature verification."""

import json
from types import SimpleNamespace

import pytest
import stripe

from services.payments_service.errors import GatewayError, SignatureVerificationFailed
from services.payments_service.stripe_client import (
    Charge,
    CheckoutSessionRequest,
    DestinationCharge,
    LineItem,
    PaymentIntent,
    RefundRequest,
    StripeGateway,
    construct_event,
)
from tests.stubs import sign_payload

WEBHOOK_SECRET = "whsec_unit"


class _Recorder:
    """Async service method that records kwargs and returns a canned object."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        if self.error is not None:
            raise self.error
        return self.result


def _client(**services):
    """Minimal StripeClient shape exposing ``v1`` services."""
    return SimpleNamespace(v1=SimpleNamespace(**services))


def _sdk_object(values: dict) -> stripe.StripeObject:
    """Response object as the SDK returns it, not a plain dict."""
    return stripe.StripeObject.construct_from(values, "sk_test_unit")


# ---------------------------------------------------------------------------
# Request builders
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_checkout_request_omits_unset_fields():
    request = CheckoutSessionRequest(
        line_item=LineItem(name="Mug", unit_amount=1500, currency="usd"),
        charge=DestinationCharge(application_fee_amount=150, destination="acct_1"),
        success_url="http://s",
        cancel_url="http://c",
    )

    params = request.to_params()

    assert "customer_email" not in params
    assert "metadata" not in params
    assert "metadata" not in params["payment_intent_data"]
    product = params["line_items"][0]["price_data"]["product_data"]
    assert product == {"name": "Mug"}


@pytest.mark.unit
def test_line_item_includes_description_and_image():
    item = LineItem(
        name="Mug",
        unit_amount=1500,
        currency="usd",
        description="Blue",
        image_url="https://img/1.jpg",
    )

    product = item.to_params()["price_data"]["product_data"]

    assert product["description"] == "Blue"
    assert product["images"] == ["https://img/1.jpg"]


# ---------------------------------------------------------------------------
# Result parsing
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_payment_intent_from_expanded_charge():
    intent = PaymentIntent.from_stripe(
        {
            "id": "pi_1",
            "amount": 2500,
            "status": "succeeded",
            "latest_charge": {"id": "ch_1", "object": "charge"},
            "metadata": {"itemId": "abc", "empty": None},
        }
    )

    assert intent.latest_charge == "ch_1"
    assert intent.metadata == {"itemId": "abc"}


@pytest.mark.unit
def test_charge_from_refund_event_payload():
    charge = Charge.from_stripe(
        {
            "id": "ch_1",
            "amount": 10000,
            "amount_refunded": 10000,
            "payment_intent": "pi_1",
            "refunds": {"data": [{"id": "re_9"}]},
        }
    )

    assert charge.latest_refund == "re_9"
    assert charge.amount_refunded == 10000


# ---------------------------------------------------------------------------
# StripeGateway
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_checkout_session_forwards_idempotency_key():
    create = _Recorder(
        result=_sdk_object(
            {
                "id": "cs_1",
                "url": "https://checkout",
                "payment_status": "unpaid",
                "metadata": {"orderId": "o-1"},
            }
        )
    )
    gateway = StripeGateway(
        client=_client(checkout=SimpleNamespace(sessions=SimpleNamespace(create_async=create)))
    )

    session = await gateway.create_checkout_session(
        CheckoutSessionRequest(
            line_item=LineItem(name="Mug", unit_amount=1500, currency="usd"),
            charge=DestinationCharge(application_fee_amount=150, destination="acct_1"),
            success_url="http://s",
            cancel_url="http://c",
            idempotency_key="key-1",
        )
    )

    assert session.id == "cs_1"
    assert session.metadata == {"orderId": "o-1"}
    _, kwargs = create.calls[0]
    assert kwargs["options"] == {"idempotency_key": "key-1"}
    assert kwargs["params"]["payment_intent_data"]["transfer_data"] == {
        "destination": "acct_1"
    }


@pytest.mark.asyncio
@pytest.mark.unit
async def test_retrieve_payment_intent_expands_latest_charge():
    retrieve = _Recorder(
        result=_sdk_object(
            {
                "id": "pi_1",
                "amount": 100,
                "latest_charge": {"id": "ch_1", "object": "charge"},
                "shipping": {"name": "Ada", "address": {"city": "London"}},
            }
        )
    )
    gateway = StripeGateway(
        client=_client(payment_intents=SimpleNamespace(retrieve_async=retrieve))
    )

    intent = await gateway.retrieve_payment_intent("pi_1")

    args, kwargs = retrieve.calls[0]
    assert args == ("pi_1",)
    assert kwargs["params"] == {"expand": ["latest_charge"]}
    assert intent.latest_charge == "ch_1"
    assert intent.shipping == {"name": "Ada", "address": {"city": "London"}}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_refund_forwards_idempotency_key():
    create = _Recorder(
        result=_sdk_object(
            {"id": "re_1", "amount": 2500, "status": "succeeded", "charge": "ch_1"}
        )
    )
    gateway = StripeGateway(
        client=_client(refunds=SimpleNamespace(create_async=create))
    )

    refund = await gateway.create_refund(
        RefundRequest(charge="ch_1", amount=2500, idempotency_key="refund-o-1")
    )

    assert refund.id == "re_1"
    assert refund.amount == 2500
    _, kwargs = create.calls[0]
    assert kwargs["options"] == {"idempotency_key": "refund-o-1"}
    assert kwargs["params"]["reverse_transfer"] is True


@pytest.mark.asyncio
@pytest.mark.unit
async def test_account_results_are_read_from_sdk_objects():
    retrieve = _Recorder(
        result=_sdk_object(
            {"id": "acct_1", "details_submitted": True, "charges_enabled": True}
        )
    )
    link = _Recorder(result=_sdk_object({"url": "https://connect.stripe.com/setup/x"}))
    gateway = StripeGateway(
        client=_client(
            accounts=SimpleNamespace(retrieve_async=retrieve),
            account_links=SimpleNamespace(create_async=link),
        )
    )

    account = await gateway.retrieve_connected_account("acct_1")
    url = await gateway.create_account_link("acct_1", "http://r", "http://s")

    assert account.details_submitted is True
    assert account.payouts_enabled is False
    assert url == "https://connect.stripe.com/setup/x"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_errors_become_gateway_errors():
    error = stripe.InvalidRequestError(
        "No such charge", "charge", code="resource_missing", http_status=404
    )
    gateway = StripeGateway(
        client=_client(refunds=SimpleNamespace(create_async=_Recorder(error=error)))
    )

    with pytest.raises(GatewayError) as exc_info:
        await gateway.create_refund(RefundRequest(charge="ch_missing"))

    assert exc_info.value.http_status == 404
    assert exc_info.value.gateway_code == "resource_missing"
    assert "refund create" in exc_info.value.message


@pytest.mark.unit
def test_gateway_requires_secret_key(monkeypatch):
    from libs.common.config import get_settings

    monkeypatch.setattr(get_settings(), "STRIPE_SECRET_KEY", "")

    with pytest.raises(ValueError):
        StripeGateway()


# ---------------------------------------------------------------------------
# Webhook verification
# ---------------------------------------------------------------------------


def _event_payload() -> bytes:
    return json.dumps(
        {
            "id": "evt_1",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "object": "payment_intent"}},
        }
    ).encode()


@pytest.mark.unit
def test_construct_event_accepts_valid_signature():
    payload = _event_payload()

    event = construct_event(payload, sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET)

    assert isinstance(event, dict)
    assert event.get("id") == "evt_1"
    assert event["type"] == "payment_intent.succeeded"
    assert event["data"]["object"]["id"] == "pi_1"


@pytest.mark.unit
@pytest.mark.parametrize(
    "signature",
    [None, "", "t=1,v1=deadbeef", "garbage"],
)
def test_construct_event_rejects_bad_signatures(signature):
    with pytest.raises(SignatureVerificationFailed):
        construct_event(_event_payload(), signature, WEBHOOK_SECRET)


@pytest.mark.unit
def test_construct_event_rejects_tampered_payload():
    payload = _event_payload()
    header = sign_payload(payload, WEBHOOK_SECRET)

    with pytest.raises(SignatureVerificationFailed):
        construct_event(payload.replace(b"pi_1", b"pi_2"), header, WEBHOOK_SECRET)
