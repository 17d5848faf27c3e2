"""Seller order listing."""

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.payments_service.schemas import OrderResponse
from services.payments_service.services import reconciliation
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/me", response_model=list[OrderResponse])
async def list_my_orders(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Orders for every store the current user owns, newest first.
    """
    return await reconciliation.list_orders_for_seller(db, current_user.user_id)
