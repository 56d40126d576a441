"""Async SQLAlchemy engine and session management.

The engine and session factory are created by the application lifespan
and kept on ``app.state``; nothing here is a module-level singleton.
"""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tradechat.db.base import Base


def create_engine(url: str) -> AsyncEngine:
    """Build the async engine; pool sizing only applies to PostgreSQL."""
    engine_kwargs: dict = {"pool_pre_ping": True, "echo": False}
    if url.startswith("postgresql"):
        engine_kwargs.update(
            pool_size=20,
            max_overflow=10,
            connect_args={"statement_cache_size": 0},
        )
    return create_async_engine(url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(
    url: str, *, create_tables: bool = False,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize the database engine and session factory."""
    engine = create_engine(url)

    if create_tables:
        # Imported for its side effect of registering every table on Base.metadata
        import tradechat.db.models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    return engine, create_session_factory(engine)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of the database engine."""
    await engine.dispose()


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session (FastAPI dependency)."""
    async with request.app.state.session_factory() as session:
        yield session
