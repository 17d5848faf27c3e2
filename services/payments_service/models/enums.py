"""Enum definitions for payments service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class NotificationType(str, enum.Enum):
    ORDER = "order"
    PAYMENT = "payment"
    SYSTEM = "system"


# Legal source statuses for each target status. Anything not listed here is
# a no-op transition.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PAID: frozenset({OrderStatus.PENDING}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.PENDING}),
    OrderStatus.REFUNDED: frozenset({OrderStatus.PAID}),
    OrderStatus.PARTIALLY_REFUNDED: frozenset({OrderStatus.PAID}),
}

REFUNDED_STATUSES = frozenset({OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED})
