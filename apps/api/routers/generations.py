"""Generation request router."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.generations import create_generation, get_generation_history, get_generation_status
from services.users import ensure_user

router = APIRouter()


@router.get("/history")
async def generation_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """List the current user's generations, newest first."""
    return await get_generation_history(auth.user_id, db, limit=limit, offset=offset)


@router.post("/{generation_type}")
async def create_generation_request(
    generation_type: str,
    params: Optional[Dict[str, Any]] = Body(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Charge credits for a generation and queue it."""
    await ensure_user(db, auth.user_id)
    request = await create_generation(auth.user_id, generation_type, params, db)
    return {
        "success": True,
        "requestId": request.id,
        "status": request.status,
        "creditCost": request.credit_cost,
    }


@router.get("/{request_id}")
async def generation_status(
    request_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Poll a generation. Never mutates state."""
    status = await get_generation_status(request_id, auth.user_id, db)
    return {"success": True, "status": status}
