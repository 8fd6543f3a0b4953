"""Subscription and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_admin_token
from services.credits import get_credit_summary, grant_credits, list_costs, list_plans, list_transactions
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


class GrantCreditsRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int = Field(ge=1, le=1_000_000)
    description: Optional[str] = Field(default=None, max_length=500)
    bonus: bool = False


@router.get("/me")
async def my_subscription(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth.user_id)
    return await get_credit_summary(auth.user_id, db)


@router.get("/me/transactions")
async def my_transactions(
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"success": True, "transactions": await list_transactions(auth.user_id, db, limit=limit)}


@router.get("/plans")
async def subscription_plans(db: AsyncSession = Depends(get_db)):
    return {"success": True, "plans": await list_plans(db)}


@router.get("/costs")
async def credit_costs(db: AsyncSession = Depends(get_db)):
    return {"success": True, "costs": await list_costs(db)}


@router.post("/grant", dependencies=[Depends(require_admin_token)])
async def grant(request: GrantCreditsRequest, db: AsyncSession = Depends(get_db)):
    """Administrative credit grant."""
    await ensure_user(db, request.user_id)
    new_balance = await grant_credits(
        request.user_id,
        request.amount,
        db,
        description=request.description,
        bonus=request.bonus,
    )
    logger.info("Admin grant of %s credits to %s", request.amount, request.user_id)
    return {"success": True, "user_id": request.user_id, "new_balance": new_balance}
