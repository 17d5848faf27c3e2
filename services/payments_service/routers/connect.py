"""Stripe Connect onboarding endpoints for sellers."""

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.payments_service.dependencies import get_gateway
from services.payments_service.schemas import (
    AccountSessionResponse,
    AccountStatusResponse,
    LinkResponse,
)
from services.payments_service.services import connect
from services.payments_service.stripe_client import StripeGateway
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/connect", tags=["connect"])


@router.post("/onboarding-link", response_model=LinkResponse)
async def create_onboarding_link(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """
    Create (or reuse) the seller's Express account and return a hosted
    onboarding link.
    """
    url = await connect.create_onboarding_link(
        db, gateway, current_user.user_id, current_user.email
    )
    return LinkResponse(url=url)


@router.post("/account-session", response_model=AccountSessionResponse)
async def create_account_session(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """Client secret for embedded onboarding components."""
    client_secret = await connect.create_account_session(
        db, gateway, current_user.user_id, current_user.email
    )
    return AccountSessionResponse(client_secret=client_secret)


@router.get("/status", response_model=AccountStatusResponse)
async def get_account_status(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    return await connect.get_account_status(db, gateway, current_user.user_id)


@router.post("/dashboard-link", response_model=LinkResponse)
async def create_dashboard_link(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    url = await connect.create_dashboard_link(db, gateway, current_user.user_id)
    return LinkResponse(url=url)
