"""Seller notifications. Best-effort: failures are logged, never raised."""

import uuid
from typing import Optional

from libs.common.logging import get_logger
from services.payments_service.models import Notification, NotificationType, Order
from services.payments_service.services import ledger
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def create_notification(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    notification_type: NotificationType,
    title: str,
    message: str,
    order_id: Optional[uuid.UUID] = None,
) -> Optional[Notification]:
    notification = Notification(
        user_id=user_id,
        type=notification_type,
        title=title,
        message=message,
        order_id=order_id,
    )
    db.add(notification)
    await db.commit()
    return notification


async def notify_new_order(db: AsyncSession, order: Order) -> None:
    """Tell the store owner about a freshly paid order."""
    order_id = order.id
    try:
        owner = await ledger.get_user(db, order.item.store.user_id)
        if owner is None:
            logger.error(
                "Store owner not found for order %s (user %s)",
                order_id,
                order.item.store.user_id,
            )
            return

        buyer = order.buyer_email or "a buyer"
        await create_notification(
            db,
            user_id=owner.id,
            notification_type=NotificationType.ORDER,
            title="New Order Received!",
            message=f'You have a new order for "{order.item.name}" from {buyer}',
            order_id=order_id,
        )
        logger.info("Notified store owner %s of order %s", owner.id, order_id)
    except Exception as e:
        # Non-fatal: the order transition already committed
        await db.rollback()
        logger.error("Failed to create notification for order %s: %s", order_id, e)
