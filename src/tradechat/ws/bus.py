"""Event bus over Redis pub/sub.

Channels:
    chat:room:<room>      fan-out to everyone subscribed to a room
    ws:user:<username>    direct delivery to one user's connections
    chat:broadcast        every connection on every process

Publishing is fire-and-forget; the PubSubBridge on each API process
delivers to its local WebSocket connections.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

logger = structlog.get_logger()

ROOM_CHANNEL_PREFIX = "chat:room:"
USER_CHANNEL_PREFIX = "ws:user:"
BROADCAST_CHANNEL = "chat:broadcast"


def room_channel(room: str) -> str:
    return f"{ROOM_CHANNEL_PREFIX}{room}"


def user_channel(username: str) -> str:
    return f"{USER_CHANNEL_PREFIX}{username}"


class EventBus:
    """Publishes outbound events; owned by the application lifespan."""

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self.redis = redis_client

    async def publish(self, channel: str, event: str, data: Any) -> bool:
        """Publish ``{"event", "data"}`` on a channel. Returns False if Redis refused it."""
        payload = json.dumps({"event": event, "data": data}, default=str)
        try:
            await self.redis.publish(channel, payload)
        except RedisError:
            logger.warning("bus_publish_failed", channel=channel, event_name=event, exc_info=True)
            return False
        return True

    async def broadcast_to_room(self, room: str, event: str, data: Any) -> bool:
        return await self.publish(room_channel(room), event, data)

    async def send_to_user(self, username: str, event: str, data: Any) -> bool:
        return await self.publish(user_channel(username), event, data)

    async def broadcast_all(self, event: str, data: Any) -> bool:
        return await self.publish(BROADCAST_CHANNEL, event, data)
