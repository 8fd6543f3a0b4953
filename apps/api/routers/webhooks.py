"""Callbacks from the external generation service."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_webhook_secret
from services.generations import apply_provider_callback

router = APIRouter()


@router.post("/generation-callback", dependencies=[Depends(require_webhook_secret)])
async def generation_callback(
    payload: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
):
    """Complete or fail a pending generation. Terminal requests answer 409."""
    request = await apply_provider_callback(payload, db)
    return {"success": True, "requestId": request.id, "status": request.status}
