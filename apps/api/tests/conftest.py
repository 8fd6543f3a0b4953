from decimal import Decimal
from typing import Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base, get_db
from main import app
from models.subscription import Subscription
from models.user import User
from services.credits import get_or_create_subscription, seed_billing_catalog
from services.session_token import create_session_token


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with maker() as db:
        await seed_billing_catalog(db)

    with (
        patch("services.job_queue.async_session_maker", maker),
        patch("services.generation_worker.async_session_maker", maker),
        patch("services.delivery.async_session_maker", maker),
    ):
        yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def make_user(session_maker):
    """Create a user with a subscription, optionally overriding its balances."""

    async def _make(
        user_id: str,
        *,
        balance: Optional[int] = None,
        extra: int = 0,
        chat_id: Optional[str] = None,
        allow_overage: bool = False,
        overage_cost: Optional[str] = None,
        status: str = "active",
    ) -> str:
        async with session_maker() as db:
            db.add(
                User(
                    id=user_id,
                    source="telegram" if chat_id else "web",
                    telegram_id=chat_id,
                    telegram_chat_id=chat_id,
                )
            )
            await db.commit()
            subscription = await get_or_create_subscription(user_id, db)
            if balance is not None:
                subscription.credits_balance = balance
            subscription.extra_credits = extra
            subscription.allow_overage = allow_overage
            subscription.overage_cost_per_credit = Decimal(overage_cost) if overage_cost else None
            subscription.status = status
            await db.commit()
        return user_id

    return _make


@pytest.fixture
def load_subscription(session_maker):
    async def _load(user_id: str) -> Subscription:
        async with session_maker() as db:
            result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
            return result.scalar_one()

    return _load


def auth_header(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


@pytest.fixture
def auth_headers():
    return auth_header
