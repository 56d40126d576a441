"""Tests for the Redis pub/sub to WebSocket bridge."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tradechat.ws.bridge import PATTERNS, PubSubBridge, log_bridge_exit
from tradechat.ws.bus import BROADCAST_CHANNEL, EventBus, room_channel, user_channel


def _manager() -> MagicMock:
    manager = MagicMock()
    manager.broadcast_to_room = AsyncMock(return_value=1)
    manager.send_to_user = AsyncMock(return_value=1)
    manager.broadcast_all = AsyncMock(return_value=3)
    return manager


class TestDispatch:
    @pytest.mark.asyncio
    async def test_room_channel(self) -> None:
        manager = _manager()
        bridge = PubSubBridge(MagicMock(), manager)
        frame = {"event": "new_message", "data": {"id": 1}}
        assert await bridge.dispatch(room_channel("forex"), frame) == 1
        manager.broadcast_to_room.assert_awaited_once_with("forex", frame)

    @pytest.mark.asyncio
    async def test_user_channel(self) -> None:
        manager = _manager()
        bridge = PubSubBridge(MagicMock(), manager)
        frame = {"event": "new_notification", "data": {}}
        await bridge.dispatch(user_channel("bob"), frame)
        manager.send_to_user.assert_awaited_once_with("bob", frame)
        manager.evict_user_from_room.assert_not_called()

    @pytest.mark.asyncio
    async def test_member_removed_evicts(self) -> None:
        manager = _manager()
        bridge = PubSubBridge(MagicMock(), manager)
        frame = {"event": "member_removed", "data": {"roomId": "private_abc", "member": "carol"}}
        await bridge.dispatch(user_channel("carol"), frame)
        manager.evict_user_from_room.assert_called_once_with("carol", "private_abc")
        manager.send_to_user.assert_awaited_once_with("carol", frame)

    @pytest.mark.asyncio
    async def test_broadcast_channel(self) -> None:
        manager = _manager()
        bridge = PubSubBridge(MagicMock(), manager)
        assert await bridge.dispatch(BROADCAST_CHANNEL, {"event": "upgrade_success", "data": {}}) == 3

    @pytest.mark.asyncio
    async def test_unknown_channel(self) -> None:
        manager = _manager()
        bridge = PubSubBridge(MagicMock(), manager)
        assert await bridge.dispatch("other:thing", {"event": "x"}) == 0


class TestBridgeLifecycle:
    @pytest.mark.asyncio
    async def test_bridge_forwards_message(self) -> None:
        """A published room frame reaches the manager; junk is skipped."""
        mock_pubsub = AsyncMock()
        messages = [
            {"type": "pmessage", "channel": "chat:room:forex", "data": "not json"},
            {"type": "pmessage", "channel": "chat:room:forex", "data": json.dumps([1, 2])},
            {
                "type": "pmessage",
                "channel": b"chat:room:forex",
                "data": json.dumps({"event": "new_message", "data": {"id": 9}}).encode(),
            },
        ]

        async def fake_get_message(**kwargs):
            if messages:
                return messages.pop(0)
            await asyncio.sleep(0.01)
            return None

        mock_pubsub.get_message = fake_get_message
        mock_redis = MagicMock()
        mock_redis.pubsub = MagicMock(return_value=mock_pubsub)

        manager = _manager()
        bridge = PubSubBridge(mock_redis, manager)
        task = asyncio.create_task(bridge.start())
        await asyncio.sleep(0.05)
        await bridge.stop()
        await asyncio.wait_for(task, timeout=2)

        mock_pubsub.subscribe.assert_awaited_once_with(BROADCAST_CHANNEL)
        mock_pubsub.psubscribe.assert_awaited_once_with(*PATTERNS)
        manager.broadcast_to_room.assert_awaited_once_with("forex", {"event": "new_message", "data": {"id": 9}})
        mock_pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resubscribes_after_redis_error(self) -> None:
        """A dropped pub/sub connection is re-established and delivery resumes."""
        broken = AsyncMock()
        broken.get_message = AsyncMock(side_effect=RedisConnectionError("connection reset"))

        healthy = AsyncMock()
        messages = [
            {
                "type": "pmessage",
                "channel": "chat:room:forex",
                "data": json.dumps({"event": "new_message", "data": {"id": 10}}),
            },
        ]

        async def fake_get_message(**kwargs):
            if messages:
                return messages.pop(0)
            await asyncio.sleep(0.01)
            return None

        healthy.get_message = fake_get_message
        mock_redis = MagicMock()
        mock_redis.pubsub = MagicMock(side_effect=[broken, healthy])

        manager = _manager()
        bridge = PubSubBridge(mock_redis, manager, reconnect_delay=0.01)
        task = asyncio.create_task(bridge.start())
        await asyncio.sleep(0.1)
        assert bridge.connected is True
        await bridge.stop()
        await asyncio.wait_for(task, timeout=2)

        assert mock_redis.pubsub.call_count == 2
        broken.aclose.assert_awaited_once()
        healthy.psubscribe.assert_awaited_once_with(*PATTERNS)
        manager.broadcast_to_room.assert_awaited_once_with("forex", {"event": "new_message", "data": {"id": 10}})
        assert bridge.connected is False

    @pytest.mark.asyncio
    async def test_subscribe_failure_backs_off(self) -> None:
        """Redis being down at start-up is retried with a growing delay."""
        healthy = AsyncMock()

        async def idle_get_message(**kwargs):
            await asyncio.sleep(0.01)
            return None

        healthy.get_message = idle_get_message
        down = AsyncMock()
        down.subscribe = AsyncMock(side_effect=RedisConnectionError("refused"))
        mock_redis = MagicMock()
        mock_redis.pubsub = MagicMock(side_effect=[down, down, healthy])

        bridge = PubSubBridge(mock_redis, _manager(), reconnect_delay=0.01, max_reconnect_delay=0.02)
        task = asyncio.create_task(bridge.start())
        await asyncio.sleep(0.15)
        assert bridge.connected is True
        await bridge.stop()
        await asyncio.wait_for(task, timeout=2)
        assert mock_redis.pubsub.call_count == 3

    def test_crashed_task_is_logged(self, monkeypatch) -> None:
        logged = MagicMock()
        monkeypatch.setattr("tradechat.ws.bridge.logger", logged)
        task = MagicMock()
        task.cancelled.return_value = False
        task.exception.return_value = RuntimeError("boom")
        log_bridge_exit(task)
        logged.error.assert_called_once()

        logged.reset_mock()
        task.cancelled.return_value = True
        log_bridge_exit(task)
        logged.error.assert_not_called()


class TestEventBus:
    @pytest.mark.asyncio
    async def test_publish_frame(self) -> None:
        redis = MagicMock()
        redis.publish = AsyncMock(return_value=1)
        bus = EventBus(redis)
        assert await bus.broadcast_to_room("forex", "new_message", {"id": 1}) is True
        channel, payload = redis.publish.await_args.args
        assert channel == "chat:room:forex"
        assert json.loads(payload) == {"event": "new_message", "data": {"id": 1}}

    @pytest.mark.asyncio
    async def test_publish_failure_reported(self) -> None:
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=RedisConnectionError("down"))
        bus = EventBus(redis)
        assert await bus.send_to_user("bob", "new_notification", {}) is False
