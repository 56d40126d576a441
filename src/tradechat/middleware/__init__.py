"""Middleware registration."""

from fastapi import FastAPI

from tradechat.config import Settings
from tradechat.middleware.cors import setup_cors
from tradechat.middleware.error_handler import setup_error_handlers
from tradechat.middleware.logging import setup_logging
from tradechat.middleware.rate_limit import RateLimitMiddleware
from tradechat.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    Starlette executes middleware in reverse-add order (last added = outermost).
    CORS must be outermost so it wraps 429 responses from the rate limiter.
    WebSocket scopes pass through the HTTP-only middlewares untouched.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
