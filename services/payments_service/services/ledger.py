"""Ledger store operations over orders, items and sellers.

Every read goes to the database (``populate_existing``) so callers always
decide on current persisted state. Writes that must not double-apply are
expressed as unique-key guarded inserts or status-conditioned updates.
"""

import uuid
from typing import Any, Optional

from libs.common.logging import get_logger
from services.payments_service.errors import PersistenceError
from services.payments_service.models import (
    Item,
    Order,
    OrderStatus,
    Store,
    User,
)
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

logger = get_logger(__name__)


def _order_options():
    return (
        selectinload(Order.item).selectinload(Item.store).selectinload(Store.user),
        selectinload(Order.item).selectinload(Item.images),
    )


async def _write(db: AsyncSession, action: str, stmt=None):
    """Execute ``stmt`` (if given) and commit.

    IntegrityError is re-raised after rollback so callers can recover from
    unique-key races; any other database failure becomes PersistenceError.
    """
    try:
        result = await db.execute(stmt) if stmt is not None else None
        await db.commit()
        return result
    except IntegrityError:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Ledger write failed while %s: %s", action, e)
        raise PersistenceError(f"Failed to persist {action}") from e


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_item(db: AsyncSession, item_id: uuid.UUID) -> Optional[Item]:
    result = await db.execute(
        select(Item)
        .where(Item.id == item_id)
        .options(
            selectinload(Item.store).selectinload(Store.user),
            selectinload(Item.images),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_order(db: AsyncSession, order_id: uuid.UUID) -> Optional[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .options(*_order_options())
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_order_by_session_id(db: AsyncSession, session_id: str) -> Optional[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.stripe_session_id == session_id)
        .options(*_order_options())
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_order_by_payment_id(db: AsyncSession, payment_id: str) -> Optional[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.stripe_payment_id == payment_id)
        .options(*_order_options())
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_orders_for_owner(db: AsyncSession, user_id: uuid.UUID) -> list[Order]:
    result = await db.execute(
        select(Order)
        .join(Item, Order.item_id == Item.id)
        .join(Store, Item.store_id == Store.id)
        .where(Store.user_id == user_id)
        .options(*_order_options())
        .order_by(Order.created_at.desc())
    )
    return list(result.scalars().all())


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> Optional[User]:
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> Optional[User]:
    result = await db.execute(
        select(User)
        .where(User.external_id == external_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def insert_order(db: AsyncSession, order: Order) -> Optional[Order]:
    """Insert an order guarded by its unique keys.

    Returns the stored order, or None when a unique constraint rejected the
    row (another writer got there first). The caller decides which key to
    re-read.
    """
    if order.id is None:
        order.id = uuid.uuid4()
    order_id = order.id
    db.add(order)
    try:
        await _write(db, "order insert")
    except IntegrityError:
        logger.info("Order insert %s hit a unique constraint", order_id)
        return None
    return await get_order(db, order_id)


async def transition_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    from_status: OrderStatus,
    to_status: OrderStatus,
    **values: Any,
) -> bool:
    """Move an order between statuses only if it is still in ``from_status``.

    Returns True when this call performed the transition.
    """
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status == from_status)
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await _write(db, f"order {to_status.value} transition", stmt)
    except IntegrityError:
        logger.warning(
            "Order %s transition to %s rejected by a unique constraint",
            order_id,
            to_status.value,
        )
        return False
    return result.rowcount == 1


async def update_pending_order(db: AsyncSession, order_id: uuid.UUID, **values: Any) -> bool:
    """Update fields of an order that is still pending."""
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await _write(db, "pending order update", stmt)
    return result.rowcount == 1


async def link_stripe_account(db: AsyncSession, user_id: uuid.UUID, account_id: str) -> bool:
    """Store a connected account id unless the user already has one."""
    stmt = (
        update(User)
        .where(User.id == user_id, User.stripe_account_id.is_(None))
        .values(stripe_account_id=account_id)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await _write(db, "connected account link", stmt)
    except IntegrityError:
        return False
    return result.rowcount == 1


async def latch_onboarding_complete(db: AsyncSession, user_id: uuid.UUID) -> None:
    """Flip the onboarding flag to True. It is never set back to False."""
    stmt = (
        update(User)
        .where(User.id == user_id, User.stripe_onboarding_complete.is_(False))
        .values(stripe_onboarding_complete=True)
        .execution_options(synchronize_session=False)
    )
    await _write(db, "onboarding latch", stmt)


async def attach_payment_id(db: AsyncSession, order_id: uuid.UUID, payment_id: str) -> bool:
    """Record the payment id on an order that has none yet."""
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.stripe_payment_id.is_(None))
        .values(stripe_payment_id=payment_id)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await _write(db, "order payment id attach", stmt)
    except IntegrityError:
        return False
    return result.rowcount == 1
