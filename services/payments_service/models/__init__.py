"""Payments Service models package."""

from services.payments_service.models.catalog import Item, ItemImage, Store, User
from services.payments_service.models.commerce import Notification, Order
from services.payments_service.models.enums import (
    ORDER_TRANSITIONS,
    REFUNDED_STATUSES,
    NotificationType,
    OrderStatus,
)

__all__ = [
    "Item",
    "ItemImage",
    "Notification",
    "NotificationType",
    "Order",
    "OrderStatus",
    "ORDER_TRANSITIONS",
    "REFUNDED_STATUSES",
    "Store",
    "User",
]
