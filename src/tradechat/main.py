"""FastAPI application factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
import redis.asyncio as aioredis
import structlog

from tradechat.config import get_settings
from tradechat.database import close_db, init_db
from tradechat.health.router import router as health_router
from tradechat.leaderboard.router import router as leaderboard_router
from tradechat.middleware import setup_middleware
from tradechat.signals.analytics_router import router as analytics_router
from tradechat.signals.router import router as signals_router
from tradechat.social.notification_router import router as notifications_router
from tradechat.ws.bridge import PubSubBridge, log_bridge_exit
from tradechat.ws.bus import EventBus
from tradechat.ws.manager import ConnectionManager
from tradechat.ws.router import router as ws_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    engine, session_factory = await init_db(
        settings.database_url, create_tables=settings.create_tables_on_startup,
    )

    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    manager = ConnectionManager()
    bridge = PubSubBridge(redis, manager)

    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.connection_manager = manager
    app.state.event_bus = EventBus(redis)
    app.state.pubsub_bridge = bridge

    # Start the Redis pub/sub -> WebSocket bridge
    bridge_task = asyncio.create_task(bridge.start())
    bridge_task.add_done_callback(log_bridge_exit)
    logger.info("app_started", environment=settings.environment, version=settings.app_version)

    yield

    await bridge.stop()
    bridge_task.cancel()
    try:
        await bridge_task
    except asyncio.CancelledError:
        pass

    await redis.aclose()
    await close_db(engine)
    logger.info("app_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Trade Chat API",
        description="Real-time trading chat with tiered rooms, official signals and a trader leaderboard",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(leaderboard_router)
    app.include_router(signals_router)
    app.include_router(analytics_router)
    app.include_router(notifications_router)
    app.include_router(ws_router)

    return app


app = create_app()
