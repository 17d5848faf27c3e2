"""Stripe Connect onboarding for sellers.

A seller is payable once they own an Express account and have submitted
their onboarding details. The local ``stripe_onboarding_complete`` flag is a
one-way latch; capability flags are always read live from Stripe.
"""

from dataclasses import dataclass
from typing import Optional

from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.payments_service.errors import NotFound, PersistenceError, ValidationError
from services.payments_service.models import User
from services.payments_service.services import ledger
from services.payments_service.stripe_client import StripeGateway
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class AccountStatus:
    has_account: bool = False
    onboarding_complete: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False
    account_id: Optional[str] = None


async def _require_user(db: AsyncSession, external_id: str) -> User:
    user = await ledger.get_user_by_external_id(db, external_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def ensure_connect_account(
    db: AsyncSession, gateway: StripeGateway, user: User, email: Optional[str] = None
) -> str:
    """Return the user's connected account id, creating one if needed."""
    user_id = user.id
    if user.stripe_account_id:
        return user.stripe_account_id

    account = await gateway.create_connected_account(email or user.email)
    if await ledger.link_stripe_account(db, user_id, account.id):
        logger.info("Created Stripe account %s for user %s", account.id, user_id)
        return account.id

    # A concurrent request linked an account first; use the stored one
    stored = await ledger.get_user(db, user_id)
    if stored is None or not stored.stripe_account_id:
        raise PersistenceError(f"Could not link Stripe account for user {user_id}")
    logger.warning(
        "Discarding Stripe account %s; user %s is already linked to %s",
        account.id,
        user_id,
        stored.stripe_account_id,
    )
    return stored.stripe_account_id


async def create_onboarding_link(
    db: AsyncSession,
    gateway: StripeGateway,
    external_id: str,
    email: Optional[str] = None,
) -> str:
    settings = get_settings()
    user = await _require_user(db, external_id)
    account_id = await ensure_connect_account(db, gateway, user, email)
    return await gateway.create_account_link(
        account_id,
        refresh_url=f"{settings.FRONTEND_URL}/stores?stripe=refresh",
        return_url=f"{settings.FRONTEND_URL}/stores?stripe=success",
    )


async def create_account_session(
    db: AsyncSession,
    gateway: StripeGateway,
    external_id: str,
    email: Optional[str] = None,
) -> str:
    user = await _require_user(db, external_id)
    account_id = await ensure_connect_account(db, gateway, user, email)
    return await gateway.create_account_session(account_id)


async def get_account_status(
    db: AsyncSession, gateway: StripeGateway, external_id: str
) -> AccountStatus:
    user = await ledger.get_user_by_external_id(db, external_id)
    if user is None or not user.stripe_account_id:
        return AccountStatus()

    user_id = user.id
    latched = user.stripe_onboarding_complete
    account = await gateway.retrieve_connected_account(user.stripe_account_id)
    if account.details_submitted and not latched:
        await ledger.latch_onboarding_complete(db, user_id)
        logger.info("Onboarding complete for user %s (%s)", user_id, account.id)

    return AccountStatus(
        has_account=True,
        onboarding_complete=account.details_submitted or latched,
        charges_enabled=account.charges_enabled,
        payouts_enabled=account.payouts_enabled,
        account_id=account.id,
    )


async def create_dashboard_link(
    db: AsyncSession, gateway: StripeGateway, external_id: str
) -> str:
    user = await _require_user(db, external_id)
    if not user.stripe_account_id:
        raise ValidationError("No Stripe account found")
    return await gateway.create_login_link(user.stripe_account_id)
