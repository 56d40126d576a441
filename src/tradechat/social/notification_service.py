"""Notification creation, follower fan-out and preference handling.

Notifications are:
1. Persisted in the database
2. Queued on the session and pushed to the recipient (ws:user:<username>)
   by the transaction owner once the transaction has committed
3. Filtered by the recipient's preferences where the trigger is preference-gated

Direct social actions (follow, room invitation) notify unconditionally.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.db.models import Follow, Notification, NotificationPreference, User
from tradechat.errors import NotFoundError, ValidationFailure
from tradechat.social.notification_push import discard_queued_since, queue_mark, queue_notification

logger = logging.getLogger(__name__)

VALID_TYPES = {"signal", "outcome", "follow", "mention", "invitation", "system"}

SIGNAL_POSTED = "signal_posted"
SIGNAL_CLOSED = "signal_closed"

# camelCase wire key -> NotificationPreference column
PREFERENCE_FIELDS: dict[str, str] = {
    "browserNotifications": "browser_notifications",
    "emailNotifications": "email_notifications",
    "notifyNewSignals": "notify_new_signals",
    "notifySignalOutcomes": "notify_signal_outcomes",
    "notifyFollowedTraders": "notify_followed_traders",
    "notifyMentions": "notify_mentions",
}

DEFAULT_PREFERENCES: dict[str, bool] = {key: True for key in PREFERENCE_FIELDS}

# Follower event -> preference flags that must all be on
FOLLOWER_EVENT_FLAGS: dict[str, tuple[str, ...]] = {
    SIGNAL_POSTED: ("notifyFollowedTraders", "notifyNewSignals"),
    SIGNAL_CLOSED: ("notifyFollowedTraders", "notifySignalOutcomes"),
}

MENTION_PATTERN = re.compile(r"@([A-Za-z0-9_.\-]{1,64})")


def should_notify_follower(preferences: dict, event: str) -> bool:
    """Check the compound preference condition for a follower event."""
    flags = FOLLOWER_EVENT_FLAGS.get(event)
    if flags is None:
        raise ValueError(f"Unknown follower event: {event}")
    return all(preferences.get(flag, DEFAULT_PREFERENCES[flag]) for flag in flags)


def _preference_row_to_dict(row: NotificationPreference) -> dict[str, bool]:
    return {key: bool(getattr(row, column)) for key, column in PREFERENCE_FIELDS.items()}


async def get_preferences(db: AsyncSession, username: str) -> dict[str, bool]:
    """Get a user's notification preferences, falling back to defaults."""
    result = await db.execute(
        select(NotificationPreference).where(NotificationPreference.username == username)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return dict(DEFAULT_PREFERENCES)
    return _preference_row_to_dict(row)


async def get_preferences_batch(db: AsyncSession, usernames: list[str]) -> dict[str, dict[str, bool]]:
    """Preferences for many users in one query; absent rows get defaults."""
    if not usernames:
        return {}
    result = await db.execute(
        select(NotificationPreference).where(NotificationPreference.username.in_(usernames))
    )
    stored = {row.username: _preference_row_to_dict(row) for row in result.scalars()}
    return {name: stored.get(name, dict(DEFAULT_PREFERENCES)) for name in usernames}


async def update_preferences(db: AsyncSession, username: str, changes: dict[str, Any]) -> dict[str, bool]:
    """Upsert preference flags. Unknown keys are rejected; missing keys keep their value."""
    unknown = set(changes) - set(PREFERENCE_FIELDS)
    if unknown:
        raise ValidationFailure(f"Unknown preference keys: {', '.join(sorted(unknown))}")
    for key, value in changes.items():
        if not isinstance(value, bool):
            raise ValidationFailure(f"Preference {key} must be true or false")

    result = await db.execute(
        select(NotificationPreference).where(NotificationPreference.username == username)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = NotificationPreference(username=username, **{c: True for c in PREFERENCE_FIELDS.values()})
        db.add(row)

    for key, value in changes.items():
        setattr(row, PREFERENCE_FIELDS[key], value)
    row.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return _preference_row_to_dict(row)


async def create_notification(
    db: AsyncSession,
    username: str,
    type_: str,
    title: str,
    message: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Notification:
    """Persist a notification and queue it for push after commit."""
    if type_ not in VALID_TYPES:
        raise ValueError(f"Invalid notification type: {type_}. Must be one of {VALID_TYPES}")

    notification = Notification(
        username=username,
        type=type_,
        title=title,
        message=message,
        read=False,
        notification_metadata=metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    await db.flush()

    queue_notification(db, notification)
    return notification


async def get_follower_usernames(db: AsyncSession, username: str) -> list[str]:
    result = await db.execute(
        select(Follow.follower_username)
        .where(Follow.following_username == username)
        .order_by(Follow.created_at, Follow.id)
    )
    return [row[0] for row in result]


def _render_follower_notification(author: str, event: str, signal: dict[str, Any]) -> tuple[str, str, str]:
    """Return (type, title, message) for a follower event."""
    if event == SIGNAL_POSTED:
        return (
            "signal",
            f"New signal from {author}",
            f"{signal.get('pair')} {signal.get('direction')} @ {signal.get('entry')}",
        )
    outcome = str(signal.get("outcome", "")).upper()
    pips = float(signal.get("pipsGained") or 0.0)
    return (
        "outcome",
        f"{author} closed a signal",
        f"{signal.get('pair')} closed as {outcome} ({pips:+.1f} pips)",
    )


async def notify_followers(
    db: AsyncSession,
    author_username: str,
    event: str,
    signal: dict[str, Any],
) -> list[Notification]:
    """Fan out one notification per follower whose preferences allow ``event``.

    Each follower gets its own SAVEPOINT: a failed insert is logged and
    skipped without losing the rows already written for other followers.

    ``signal`` carries pair/direction/entry for SIGNAL_POSTED and
    pair/outcome/pipsGained for SIGNAL_CLOSED.
    """
    if event not in FOLLOWER_EVENT_FLAGS:
        raise ValueError(f"Unknown follower event: {event}")

    followers = await get_follower_usernames(db, author_username)
    if not followers:
        return []

    preferences = await get_preferences_batch(db, followers)
    type_, title, message = _render_follower_notification(author_username, event, signal)
    metadata = {"event": event, "author": author_username, **{
        k: signal[k] for k in ("messageId", "pair", "direction", "outcome", "pipsGained") if k in signal
    }}

    created: list[Notification] = []
    for follower in followers:
        if not should_notify_follower(preferences[follower], event):
            continue
        mark = queue_mark(db)
        try:
            async with db.begin_nested():
                notification = await create_notification(db, follower, type_, title, message, metadata)
        except SQLAlchemyError:
            discard_queued_since(db, mark)
            logger.exception("Failed to notify follower %s of %s from %s", follower, event, author_username)
            continue
        created.append(notification)

    logger.info(
        "Fan-out %s from %s: %d/%d followers notified",
        event, author_username, len(created), len(followers),
    )
    return created


def extract_mentions(text: str | None) -> list[str]:
    """Unique ``@username`` tokens in order of first appearance."""
    if not text:
        return []
    seen: dict[str, None] = {}
    for match in MENTION_PATTERN.finditer(text):
        seen.setdefault(match.group(1), None)
    return list(seen)


async def notify_mentions(
    db: AsyncSession,
    author_username: str,
    text: str | None,
    room: str,
    message_id: int,
) -> list[Notification]:
    """Notify existing users mentioned in a text message, gated by notifyMentions."""
    names = [n for n in extract_mentions(text) if n != author_username]
    if not names:
        return []

    result = await db.execute(select(User.username).where(User.username.in_(names)))
    existing = [row[0] for row in result]
    preferences = await get_preferences_batch(db, existing)

    created: list[Notification] = []
    for name in existing:
        if not preferences[name].get("notifyMentions", True):
            continue
        created.append(
            await create_notification(
                db,
                name,
                "mention",
                f"{author_username} mentioned you in {room}",
                (text or "")[:200],
                {"room": room, "messageId": message_id, "author": author_username},
            )
        )
    return created


async def get_notifications(
    db: AsyncSession,
    username: str,
    limit: int = 50,
) -> list[Notification]:
    """Get a user's notifications, most recent first."""
    result = await db.execute(
        select(Notification)
        .where(Notification.username == username)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_as_read(db: AsyncSession, username: str, notification_id: int) -> None:
    """Mark a single notification as read. Raises NotFoundError if not the user's."""
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.username == username)
        .values(read=True)
    )
    await db.flush()
    if result.rowcount == 0:
        raise NotFoundError("Notification not found")


async def mark_all_as_read(db: AsyncSession, username: str) -> int:
    """Mark all unread notifications as read. Returns count updated."""
    result = await db.execute(
        update(Notification)
        .where(Notification.username == username, Notification.read.is_(False))
        .values(read=True)
    )
    await db.flush()
    return result.rowcount


async def get_unread_count(db: AsyncSession, username: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.username == username, Notification.read.is_(False))
    )
    return result.scalar_one()
