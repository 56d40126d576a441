"""Follow graph between traders.

Following someone always notifies them; this is not gated by the
followed user's preferences.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.db.models import Follow
from tradechat.errors import ValidationFailure
from tradechat.social.notification_service import create_notification
from tradechat.users.service import require_user

logger = logging.getLogger(__name__)


async def get_follow(db: AsyncSession, follower: str, following: str) -> Follow | None:
    result = await db.execute(
        select(Follow).where(
            Follow.follower_username == follower,
            Follow.following_username == following,
        )
    )
    return result.scalar_one_or_none()


async def follow_user(
    db: AsyncSession,
    follower: str,
    following: str,
) -> tuple[Follow, bool]:
    """
    Create a follow edge and notify the followed user.

    Returns:
        Tuple of (follow, created). Re-following is a no-op without a second notification.

    Raises:
        ValidationFailure: Self-follow.
        NotFoundError: Either user does not exist.
    """
    if follower == following:
        raise ValidationFailure("You cannot follow yourself")

    await require_user(db, follower)
    await require_user(db, following)

    existing = await get_follow(db, follower, following)
    if existing is not None:
        return existing, False

    edge = Follow(
        follower_username=follower,
        following_username=following,
        created_at=datetime.now(timezone.utc),
    )
    try:
        async with db.begin_nested():
            db.add(edge)
    except IntegrityError:
        existing = await get_follow(db, follower, following)
        if existing is None:
            raise
        return existing, False

    await create_notification(
        db,
        following,
        "follow",
        "New follower",
        f"{follower} started following you",
        {"follower": follower},
    )
    logger.info("%s followed %s", follower, following)
    return edge, True


async def unfollow_user(db: AsyncSession, follower: str, following: str) -> bool:
    """Remove a follow edge. Returns True if one existed."""
    result = await db.execute(
        delete(Follow).where(
            Follow.follower_username == follower,
            Follow.following_username == following,
        )
    )
    await db.flush()
    return result.rowcount > 0


async def get_follow_counts(db: AsyncSession, username: str) -> dict[str, int]:
    followers = await db.execute(
        select(func.count()).select_from(Follow).where(Follow.following_username == username)
    )
    following = await db.execute(
        select(func.count()).select_from(Follow).where(Follow.follower_username == username)
    )
    return {"followers": followers.scalar_one(), "following": following.scalar_one()}
