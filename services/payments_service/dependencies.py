"""Shared FastAPI dependencies for the payments routers."""

from fastapi import Request
from services.payments_service.errors import GatewayError
from services.payments_service.stripe_client import StripeGateway


def get_gateway(request: Request) -> StripeGateway:
    """Return the process-wide Stripe gateway built at startup."""
    gateway = getattr(request.app.state, "stripe_gateway", None)
    if gateway is None:
        raise GatewayError("Stripe is not configured")
    return gateway
