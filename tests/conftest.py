"""Shared test fixtures.

Tests run against an in-memory SQLite database (aiosqlite) and a mocked
event bus, so neither PostgreSQL nor Redis is needed.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import tradechat.db.models  # noqa: F401
from tradechat.config import Settings
from tradechat.db.base import Base
from tradechat.db.models import User


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory schema per test."""
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs (begin_nested) behave
    @event.listens_for(eng.sync_engine, "connect")
    def _do_connect(dbapi_connection, _record):  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _do_begin(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for service-level tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def bus() -> MagicMock:
    """Event bus double recording every publish."""
    mock = MagicMock()
    mock.publish = AsyncMock(return_value=True)
    mock.broadcast_to_room = AsyncMock(return_value=True)
    mock.send_to_user = AsyncMock(return_value=True)
    mock.broadcast_all = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        log_format="console",
        admin_usernames=["admin"],
    )


async def make_user(db: AsyncSession, username: str, tier: str = "free") -> User:
    """Insert a user row directly."""
    user = User(username=username, subscription_tier=tier)
    db.add(user)
    await db.flush()
    return user


GOLD_SIGNAL = {
    "pair": "XAUUSD",
    "direction": "BUY",
    "entry": 2000,
    "stopLoss": 1990,
    "takeProfit": 2020,
}
