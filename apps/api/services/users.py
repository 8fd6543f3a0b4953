"""User directory helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User


async def ensure_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, source="web")
    db.add(user)
    await db.commit()
    return user


async def upsert_telegram_user(db: AsyncSession, telegram_user: Dict[str, Any]) -> User:
    """Create or refresh the user behind a verified Mini App session."""
    telegram_id = str(telegram_user.get("id") or "").strip()
    if not telegram_id:
        raise ValueError("Telegram user id is missing.")

    result = await db.execute(select(User).where(User.telegram_id == telegram_id))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(telegram_id=telegram_id)
        db.add(user)

    user.source = "telegram"
    # Private chats with the bot share the user's id.
    user.telegram_chat_id = telegram_id
    user.username = telegram_user.get("username") or user.username
    user.first_name = telegram_user.get("first_name") or user.first_name
    user.last_name = telegram_user.get("last_name") or user.last_name
    user.last_access_at = datetime.now(timezone.utc)
    await db.commit()
    return user
