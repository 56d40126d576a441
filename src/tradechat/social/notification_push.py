"""Push formatted notifications to their recipients' personal channels.

Services only queue notifications on the session; the owner of the
transaction pushes them once it has committed, so a rolled-back row is
never announced.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tradechat.db.models import Notification
    from tradechat.ws.bus import EventBus

logger = logging.getLogger(__name__)

PENDING_KEY = "pending_notifications"


def notification_to_dict(notification: "Notification") -> dict[str, Any]:
    return {
        "id": notification.id,
        "username": notification.username,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "read": notification.read,
        "metadata": notification.notification_metadata or {},
        "createdAt": (
            notification.created_at.isoformat()
            if notification.created_at
            else None
        ),
    }


def queue_notification(db: "AsyncSession", notification: "Notification") -> None:
    """Hold a flushed notification on the session until its transaction commits."""
    db.info.setdefault(PENDING_KEY, []).append(notification)


def queue_mark(db: "AsyncSession") -> int:
    return len(db.info.get(PENDING_KEY, []))


def discard_queued_since(db: "AsyncSession", mark: int) -> None:
    """Drop notifications queued after ``mark``; their SAVEPOINT rolled back."""
    pending = db.info.get(PENDING_KEY)
    if pending:
        del pending[mark:]


async def push_notification_to_user(bus: "EventBus | None", notification: "Notification") -> None:
    """Publish ``new_notification`` on ws:user:{username}.

    A recipient with no live connection simply picks it up from the table
    on next load.
    """
    if bus is None:
        return

    delivered = await bus.send_to_user(
        notification.username,
        "new_notification",
        notification_to_dict(notification),
    )
    if not delivered:
        logger.warning("Failed to push notification via ws:user:%s", notification.username)


async def push_pending_notifications(bus: "EventBus | None", db: "AsyncSession") -> int:
    """Push and clear everything queued on ``db``. Call only after commit."""
    pending = db.info.pop(PENDING_KEY, [])
    for notification in pending:
        await push_notification_to_user(bus, notification)
    return len(pending)
