"""Integration tests for the Stripe webhook endpoint."""

import json
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from libs.common.config import get_settings
from services.payments_service.models import Notification, Order, OrderStatus
from services.payments_service.services import ledger, notifications
from tests.factories import OrderFactory, seed_listing
from tests.stubs import sign_payload

WEBHOOK_URL = "/payments/webhooks/stripe"


def _event(event_type: str, obj: dict) -> dict:
    return {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


async def _deliver(client, event: dict, secret: str = None):
    payload = json.dumps(event).encode()
    secret = secret or get_settings().STRIPE_WEBHOOK_SECRET
    return await client.post(
        WEBHOOK_URL,
        content=payload,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": sign_payload(payload, secret),
        },
    )


def _intent_object(item, intent_id=None, **overrides) -> dict:
    obj = {
        "id": intent_id or f"pi_{uuid.uuid4().hex[:16]}",
        "object": "payment_intent",
        "amount": 10000,
        "currency": "usd",
        "status": "succeeded",
        "receipt_email": "buyer@example.com",
        "latest_charge": f"ch_{uuid.uuid4().hex[:16]}",
        "metadata": {
            "itemId": str(item.id),
            "storeId": str(item.store_id),
            "platformFee": "1000",
        },
        "shipping": None,
    }
    obj.update(overrides)
    return obj


async def _orders(db):
    result = await db.execute(select(Order))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Signature handling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_rejects_missing_signature(client):
    response = await client.post(WEBHOOK_URL, content=b"{}")

    assert response.status_code == 400
    assert response.json()["error"] == "signature_verification_failed"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_rejects_wrong_secret(client, db_session):
    _, _, item = await seed_listing(db_session)

    response = await _deliver(
        client,
        _event("payment_intent.succeeded", _intent_object(item)),
        secret="whsec_wrong",
    )

    assert response.status_code == 400
    assert await _orders(db_session) == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_without_configured_secret(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "STRIPE_WEBHOOK_SECRET", "")

    response = await client.post(
        WEBHOOK_URL, content=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"}
    )

    assert response.status_code == 500


@pytest.mark.asyncio
@pytest.mark.integration
async def test_webhook_acknowledges_unhandled_event(client):
    response = await _deliver(client, _event("customer.created", {"id": "cus_1"}))

    assert response.status_code == 200
    assert response.json() == {"received": True}


# ---------------------------------------------------------------------------
# payment_intent.*
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_duplicate_intent_succeeded_creates_one_order(client, db_session):
    user, _, item = await seed_listing(db_session)
    event = _event("payment_intent.succeeded", _intent_object(item))

    for _ in range(3):
        response = await _deliver(client, event)
        assert response.status_code == 200

    orders = await _orders(db_session)
    assert len(orders) == 1
    assert orders[0].status == OrderStatus.PAID
    assert orders[0].buyer_email == "buyer@example.com"
    notified = await db_session.execute(
        select(func.count()).select_from(Notification).where(
            Notification.user_id == user.id
        )
    )
    assert notified.scalar_one() == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_notification_failure_still_records_paid_order(
    client, db_session, monkeypatch
):
    _, _, item = await seed_listing(db_session)

    async def _broken(*args, **kwargs):
        raise RuntimeError("notification store unavailable")

    monkeypatch.setattr(notifications, "create_notification", _broken)

    response = await _deliver(
        client, _event("payment_intent.succeeded", _intent_object(item))
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    orders = await _orders(db_session)
    assert [o.status for o in orders] == [OrderStatus.PAID]
    count = await db_session.execute(select(func.count()).select_from(Notification))
    assert count.scalar_one() == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_intent_succeeded_without_item_metadata_asks_for_redelivery(
    client, db_session
):
    _, _, item = await seed_listing(db_session)
    obj = _intent_object(item, metadata={})

    response = await _deliver(client, _event("payment_intent.succeeded", obj))

    assert response.status_code == 500
    assert await _orders(db_session) == []


@pytest.mark.asyncio
@pytest.mark.integration
@pytest.mark.parametrize(
    "event_type", ["payment_intent.payment_failed", "payment_intent.canceled"]
)
async def test_intent_failure_cancels_pending_order(client, db_session, event_type):
    _, _, item = await seed_listing(db_session)
    order = OrderFactory.create(item_id=item.id, stripe_payment_id="pi_failing")
    order_id = order.id
    db_session.add(order)
    await db_session.commit()

    response = await _deliver(
        client, _event(event_type, _intent_object(item, "pi_failing", status="canceled"))
    )

    assert response.status_code == 200
    stored = await ledger.get_order(db_session, order_id)
    assert stored.status == OrderStatus.CANCELLED


# ---------------------------------------------------------------------------
# checkout.session.*
# ---------------------------------------------------------------------------


def _session_object(session_id: str, payment_status: str, **overrides) -> dict:
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "status": "complete",
        "payment_intent": "pi_from_checkout",
        "metadata": {},
    }
    obj.update(overrides)
    return obj


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_completed_unpaid_causes_no_transition(client, db_session):
    _, _, item = await seed_listing(db_session)
    order = OrderFactory.create(item_id=item.id)
    order_id, session_id = order.id, order.stripe_session_id
    db_session.add(order)
    await db_session.commit()

    response = await _deliver(
        client, _event("checkout.session.completed", _session_object(session_id, "unpaid"))
    )

    assert response.status_code == 200
    stored = await ledger.get_order(db_session, order_id)
    assert stored.status == OrderStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_completed_paid_marks_order_paid(client, db_session):
    _, _, item = await seed_listing(db_session)
    order = OrderFactory.create(item_id=item.id)
    order_id, session_id = order.id, order.stripe_session_id
    db_session.add(order)
    await db_session.commit()

    event = _event("checkout.session.completed", _session_object(session_id, "paid"))
    for _ in range(2):
        response = await _deliver(client, event)
        assert response.status_code == 200

    stored = await ledger.get_order(db_session, order_id)
    assert stored.status == OrderStatus.PAID
    assert stored.stripe_payment_id == "pi_from_checkout"
    assert stored.paid_at is not None


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_completed_for_unknown_session_is_acknowledged(client):
    response = await _deliver(
        client, _event("checkout.session.completed", _session_object("cs_ghost", "paid"))
    )

    assert response.status_code == 200


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_expired_cancels_pending_order(client, db_session):
    _, _, item = await seed_listing(db_session)
    order = OrderFactory.create(item_id=item.id)
    order_id, session_id = order.id, order.stripe_session_id
    db_session.add(order)
    await db_session.commit()

    response = await _deliver(
        client,
        _event("checkout.session.expired", _session_object(session_id, "unpaid")),
    )

    assert response.status_code == 200
    stored = await ledger.get_order(db_session, order_id)
    assert stored.status == OrderStatus.CANCELLED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_checkout_expired_for_unknown_session_is_acknowledged(client):
    response = await _deliver(
        client,
        _event("checkout.session.expired", _session_object("cs_unknown", "unpaid")),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}

# ---------------------------------------------------------------------------
# charge.refunded
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_charge_refunded_records_dashboard_refund(client, db_session):
    _, _, item = await seed_listing(db_session)
    order = OrderFactory.create_paid(item_id=item.id)
    order_id, payment_id = order.id, order.stripe_payment_id
    db_session.add(order)
    await db_session.commit()

    charge = {
        "id": "ch_dash",
        "object": "charge",
        "amount": 10000,
        "amount_refunded": 10000,
        "payment_intent": payment_id,
        "refunds": {"object": "list", "data": [{"id": "re_dash", "object": "refund"}]},
    }
    response = await _deliver(client, _event("charge.refunded", charge))

    assert response.status_code == 200
    stored = await ledger.get_order(db_session, order_id)
    assert stored.status == OrderStatus.REFUNDED
    assert stored.refund_id == "re_dash"
    assert stored.refund_amount == Decimal("100.00")
