"""FastAPI application for the Payments Service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.middleware import add_observability_middleware
from libs.db.base import Base
from libs.db.config import engine
from services.payments_service.errors import register_error_handlers
from services.payments_service.routers import (
    checkout_router,
    connect_router,
    orders_router,
    webhooks_router,
)
from services.payments_service.stripe_client import StripeGateway

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.STRIPE_SECRET_KEY:
        app.state.stripe_gateway = StripeGateway(settings.STRIPE_SECRET_KEY)
    else:
        logger.warning("STRIPE_SECRET_KEY is not set; payment endpoints are disabled")

    if settings.ENVIRONMENT == "local":
        # No migration tooling; local databases are created from the models
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield

    await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the Payments Service FastAPI app."""
    app = FastAPI(
        title="Marketplace Payments Service",
        version="0.1.0",
        description="Checkout, order reconciliation, refunds and seller onboarding.",
        lifespan=lifespan,
    )

    add_observability_middleware(app)
    register_error_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "payments"}

    app.include_router(checkout_router)
    app.include_router(webhooks_router)
    app.include_router(connect_router)
    app.include_router(orders_router)

    return app


app = create_app()
