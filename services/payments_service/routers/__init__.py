"""Routers package."""

from services.payments_service.routers.checkout import router as checkout_router
from services.payments_service.routers.connect import router as connect_router
from services.payments_service.routers.orders import router as orders_router
from services.payments_service.routers.webhooks import router as webhooks_router

__all__ = [
    "checkout_router",
    "connect_router",
    "orders_router",
    "webhooks_router",
]
