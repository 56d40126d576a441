"""Notification API endpoints (read-only; mutations go over the WebSocket)."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.config import get_settings
from tradechat.database import get_session
from tradechat.social.notification_service import get_notifications, get_unread_count
from tradechat.social.schemas import (
    NotificationListResponse,
    NotificationResponse,
    UnreadCountResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Notifications"])


@router.get("/notifications/{username}", response_model=NotificationListResponse)
async def list_notifications(
    username: str,
    db: AsyncSession = Depends(get_session),
):
    """A user's most recent notifications."""
    settings = get_settings()
    notifications = await get_notifications(db, username, limit=settings.notification_page_size)
    unread = await get_unread_count(db, username)
    return NotificationListResponse(
        notifications=[
            NotificationResponse(
                id=n.id,
                type=n.type,
                title=n.title,
                message=n.message,
                timestamp=n.created_at,
                read=n.read,
                metadata=n.notification_metadata or {},
            )
            for n in notifications
        ],
        unread_count=unread,
    )


@router.get("/notifications/{username}/unread-count", response_model=UnreadCountResponse)
async def get_unread_notification_count(
    username: str,
    db: AsyncSession = Depends(get_session),
):
    """Unread notification count."""
    count = await get_unread_count(db, username)
    return UnreadCountResponse(unread_count=count)
