"""User management business logic."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tradechat.db.models import User
from tradechat.errors import NotFoundError, ValidationFailure
from tradechat.rooms.access import TIERS, is_valid_tier

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

MAX_USERNAME_LENGTH = 64


def normalize_username(username: str | None) -> str:
    """Strip and validate a username. Raises ValidationFailure when unusable."""
    name = (username or "").strip()
    if not name:
        raise ValidationFailure("Username is required")
    if len(name) > MAX_USERNAME_LENGTH:
        raise ValidationFailure(f"Username must be at most {MAX_USERNAME_LENGTH} characters")
    return name


async def get_user(db: AsyncSession, username: str) -> User | None:
    result = await db.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def require_user(db: AsyncSession, username: str) -> User:
    user = await get_user(db, username)
    if user is None:
        raise NotFoundError(f"User {username} not found")
    return user


async def get_or_create_user(db: AsyncSession, username: str) -> tuple[User, bool]:
    """
    Resolve a user by username, creating a free-tier account on first sight.

    Returns:
        Tuple of (user, created).
    """
    username = normalize_username(username)
    user = await get_user(db, username)
    if user is not None:
        return user, False

    user = User(username=username, subscription_tier="free", created_at=datetime.now(timezone.utc))
    try:
        async with db.begin_nested():
            db.add(user)
    except IntegrityError:
        # Another connection registered the same name between our read and insert
        existing = await get_user(db, username)
        if existing is None:
            raise
        return existing, False

    logger.info("user_created", username=username)
    return user, True


async def upgrade_subscription(db: AsyncSession, username: str, tier: str) -> User:
    """
    Set a user's subscription tier.

    Raises:
        ValidationFailure: If the tier is unknown.
        NotFoundError: If the user does not exist.
    """
    if not is_valid_tier(tier):
        raise ValidationFailure(f"Invalid tier: {tier}. Must be one of {', '.join(TIERS)}")

    user = await require_user(db, normalize_username(username))
    previous = user.subscription_tier
    user.subscription_tier = tier
    user.updated_at = datetime.now(timezone.utc)
    await db.flush()

    logger.info("subscription_changed", username=user.username, previous=previous, tier=tier)
    return user
