"""
Authentication router for Telegram Mini App sessions.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.credits import get_or_create_subscription
from services.session_token import create_session_token
from services.telegram_auth import verify_init_data
from services.users import upsert_telegram_user

router = APIRouter()
logger = logging.getLogger(__name__)


class TelegramAuthRequest(BaseModel):
    initData: str = Field(min_length=1, max_length=8192)


class TelegramAuthResponse(BaseModel):
    success: bool = True
    user_id: str
    username: Optional[str] = None
    session_token: str
    session_expires_at: int


@router.post("/telegram", response_model=TelegramAuthResponse)
async def telegram_login(
    request: TelegramAuthRequest,
    db: AsyncSession = Depends(get_db),
):
    """Exchange signed Mini App initData for an API session token."""
    if not settings.TELEGRAM_BOT_TOKEN:
        raise HTTPException(status_code=503, detail="Telegram login is not configured.")
    try:
        init_data = verify_init_data(
            request.initData,
            settings.TELEGRAM_BOT_TOKEN,
            max_age_seconds=settings.TELEGRAM_AUTH_MAX_AGE_SECONDS,
        )
    except ValueError as exc:
        logger.warning("Rejected Telegram initData: %s", exc)
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    telegram_user = init_data.get("user")
    if not isinstance(telegram_user, dict):
        raise HTTPException(status_code=401, detail="initData carries no user.")
    try:
        user = await upsert_telegram_user(db, telegram_user)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    await get_or_create_subscription(user.id, db)

    session = create_session_token(user.id, source="telegram")
    return TelegramAuthResponse(
        user_id=user.id,
        username=user.username,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )
