"""Bridges Redis pub/sub to local WebSocket clients.

Every API process runs one bridge. Handlers publish through the EventBus;
the bridge receives room, per-user and global frames and hands them to
this process's ConnectionManager.
"""

import asyncio
import json

import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from tradechat.ws.bus import BROADCAST_CHANNEL, ROOM_CHANNEL_PREFIX, USER_CHANNEL_PREFIX
from tradechat.ws.manager import ConnectionManager

logger = structlog.get_logger()

PATTERNS = (f"{ROOM_CHANNEL_PREFIX}*", f"{USER_CHANNEL_PREFIX}*")


class PubSubBridge:
    """Subscribes to Redis pub/sub and pushes frames to WebSocket clients."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        manager: ConnectionManager,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ) -> None:
        self.redis = redis_client
        self.manager = manager
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.connected = False
        self._running = False

    async def dispatch(self, redis_channel: str, frame: dict) -> int:
        """Route one decoded frame by its channel. Returns local recipients."""
        if redis_channel == BROADCAST_CHANNEL:
            return await self.manager.broadcast_all(frame)
        if redis_channel.startswith(ROOM_CHANNEL_PREFIX):
            room = redis_channel[len(ROOM_CHANNEL_PREFIX):]
            return await self.manager.broadcast_to_room(room, frame)
        if redis_channel.startswith(USER_CHANNEL_PREFIX):
            username = redis_channel[len(USER_CHANNEL_PREFIX):]
            if frame.get("event") == "member_removed":
                room_id = (frame.get("data") or {}).get("roomId")
                if room_id:
                    self.manager.evict_user_from_room(username, room_id)
            return await self.manager.send_to_user(username, frame)
        return 0

    async def start(self) -> None:
        """Listen to Redis pub/sub until stopped, resubscribing after Redis errors."""
        self._running = True
        delay = self.reconnect_delay

        while self._running:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(BROADCAST_CHANNEL)
                await pubsub.psubscribe(*PATTERNS)
                self.connected = True
                delay = self.reconnect_delay
                logger.info(
                    "pubsub_bridge_started",
                    channels=[BROADCAST_CHANNEL],
                    patterns=list(PATTERNS),
                )
                await self._listen(pubsub)
            except RedisError:
                self.connected = False
                logger.warning("pubsub_bridge_disconnected", retry_in=delay, exc_info=True)
                await self._discard(pubsub)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_reconnect_delay)
                continue
            except asyncio.CancelledError:
                self.connected = False
                await self._discard(pubsub)
                raise

            self.connected = False
            await pubsub.unsubscribe()
            await pubsub.punsubscribe()
            await pubsub.aclose()

        logger.info("pubsub_bridge_stopped")

    async def _listen(self, pubsub) -> None:
        while self._running:
            message = await pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=1.0,
            )
            if message is None:
                continue

            redis_channel = message.get("channel", "")
            if isinstance(redis_channel, bytes):
                redis_channel = redis_channel.decode()

            try:
                data = message.get("data", b"")
                if isinstance(data, bytes):
                    data = data.decode()
                frame = json.loads(data)
            except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
                logger.warning("pubsub_invalid_message", channel=redis_channel)
                continue

            if not isinstance(frame, dict) or "event" not in frame:
                logger.warning("pubsub_unframed_message", channel=redis_channel)
                continue

            sent = await self.dispatch(redis_channel, frame)
            if sent > 0:
                logger.debug(
                    "pubsub_delivered",
                    channel=redis_channel,
                    event_name=frame["event"],
                    recipients=sent,
                )

    @staticmethod
    async def _discard(pubsub) -> None:
        # The connection may already be gone; only release it.
        try:
            await pubsub.aclose()
        except RedisError:
            logger.debug("pubsub_close_failed", exc_info=True)

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False


def log_bridge_exit(task: asyncio.Task) -> None:
    """Done-callback for the bridge task: an unexpected exit is an error."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("pubsub_bridge_crashed", exc_info=exc)
