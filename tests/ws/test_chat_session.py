"""End-to-end chat flows through ChatSession.

Frames go through a real ConnectionManager and PubSubBridge; the event
bus publishes straight into the bridge instead of Redis.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import GOLD_SIGNAL, make_user
from tradechat.errors import ValidationFailure
from tradechat.social.notification_service import create_notification, get_notifications
from tradechat.ws.bridge import PubSubBridge
from tradechat.ws.bus import EventBus
from tradechat.ws.manager import ConnectionManager
from tradechat.ws.session import ChatSession


class LoopbackBus(EventBus):
    """Delivers published frames to the local bridge synchronously."""

    def __init__(self, bridge: PubSubBridge) -> None:
        super().__init__(MagicMock())
        self.bridge = bridge

    async def publish(self, channel, event, data):
        frame = json.loads(json.dumps({"event": event, "data": data}, default=str))
        await self.bridge.dispatch(channel, frame)
        return True


class Client:
    """One simulated browser tab."""

    def __init__(self, session: ChatSession, ws: AsyncMock) -> None:
        self.session = session
        self.ws = ws

    async def emit(self, event: str, **fields) -> None:
        await self.session.handle_raw(json.dumps({"event": event, **fields}))

    def frames(self, event: str | None = None) -> list[dict]:
        sent = [json.loads(call.args[0]) for call in self.ws.send_text.await_args_list]
        return [f for f in sent if event is None or f["event"] == event]

    def last(self, event: str) -> dict:
        matching = self.frames(event)
        assert matching, f"no {event} frame received"
        return matching[-1]["data"]


@pytest.fixture
def chat(session_factory, settings):
    manager = ConnectionManager()
    bridge = PubSubBridge(MagicMock(), manager)
    bus = LoopbackBus(bridge)

    async def connect(conn_id: str) -> Client:
        ws = AsyncMock()
        await manager.connect(ws, conn_id)
        return Client(ChatSession(conn_id, manager, bus, session_factory, settings), ws)

    connect.manager = manager
    return connect


class TestRoomLocking:
    @pytest.mark.asyncio
    async def test_upgrade_unlocks_forex(self, chat) -> None:
        alice = await chat("a")

        await alice.emit("join_room", room="general", username="alice")
        assert alice.last("previous_messages") == []
        assert alice.last("online_users") == {"room": "general", "users": ["alice"]}

        await alice.emit("join_room", room="forex", username="alice")
        locked = alice.last("room_locked")
        assert locked["room"] == "forex"
        assert locked["requiredTier"] == "pro"
        assert chat.manager.current_room("a") == "general"

        await alice.emit("upgrade_subscription", username="alice", tier="pro")
        assert alice.last("upgrade_success") == {"username": "alice", "tier": "pro"}

        await alice.emit("join_room", room="forex", username="alice")
        assert chat.manager.current_room("a") == "forex"
        assert alice.last("previous_messages") == []

    @pytest.mark.asyncio
    async def test_invalid_tier(self, chat) -> None:
        alice = await chat("a")
        await alice.emit("register_user", username="alice")
        await alice.emit("upgrade_subscription", username="alice", tier="diamond")
        assert "Invalid tier" in alice.last("upgrade_error")["message"]


class TestOfficialSignals:
    @pytest.mark.asyncio
    async def test_post_and_close(self, chat) -> None:
        alice = await chat("a")
        bob = await chat("b")

        await bob.emit("register_user", username="bob")
        await bob.emit("upgrade_subscription", username="bob", tier="premium")
        await alice.emit("register_user", username="alice")
        await alice.emit("upgrade_subscription", username="alice", tier="pro")
        await alice.emit("follow_user", follower="alice", following="bob")
        assert alice.last("follow_success")["created"] is True
        await alice.emit("join_room", room="forex", username="alice")
        await bob.emit("join_room", room="forex", username="bob")

        await bob.emit(
            "send_message", type="signal", username="bob", room="forex",
            signal=GOLD_SIGNAL, isOfficial=True,
        )
        posted = alice.last("new_message")
        assert posted["isOfficial"] is True
        assert posted["signalMetadata"]["outcome"] == "pending"
        message_id = posted["id"]

        signal_note = alice.last("new_notification")
        assert signal_note["type"] == "signal"
        assert signal_note["metadata"]["messageId"] == message_id

        await alice.emit("update_signal_outcome", messageId=message_id, username="alice", outcome="win", closePrice=2005)
        assert "author" in alice.last("signal_error")["message"]

        await bob.emit("update_signal_outcome", messageId=message_id, username="bob", outcome="win", closePrice=2005)
        updated = alice.last("signal_updated")
        assert updated["outcome"] == "win"
        assert updated["pipsGained"] == 50.0
        assert bob.last("signal_updated") == updated
        assert alice.last("new_notification")["type"] == "outcome"

        await bob.emit("update_signal_outcome", messageId=message_id, username="bob", outcome="loss", closePrice=1990)
        assert "already closed" in bob.last("signal_error")["message"]

        # Late joiners get the metadata alongside history
        carol = await chat("c")
        await carol.emit("register_user", username="carol")
        await carol.emit("upgrade_subscription", username="carol", tier="pro")
        await carol.emit("join_room", room="forex", username="carol")
        assert carol.last("signal_metadata")[str(message_id)]["pipsGained"] == 50.0

        await carol.emit("get_leaderboard", minSignals=1)
        board = carol.last("leaderboard_data")["leaderboard"]
        assert board[0]["username"] == "bob"
        assert board[0]["winRate"] == 100.0

    @pytest.mark.asyncio
    async def test_free_user_official_post_denied(self, chat) -> None:
        alice = await chat("a")
        await alice.emit("join_room", room="general", username="alice")
        await alice.emit(
            "send_message", type="signal", username="alice", room="general",
            signal=GOLD_SIGNAL, isOfficial=True,
        )
        error = alice.last("message_error")
        assert error["requiredTier"] == "pro"
        assert alice.frames("new_message") == []


class TestPrivateRoomRevocation:
    @pytest.mark.asyncio
    async def test_removed_member_is_evicted(self, chat) -> None:
        bob = await chat("b")
        carol = await chat("c")

        await bob.emit("register_user", username="bob")
        await bob.emit("upgrade_subscription", username="bob", tier="premium")
        await carol.emit("register_user", username="carol")

        await bob.emit("create_private_room", username="bob", roomName="Gold desk")
        room_id = bob.last("room_created")["roomId"]

        await bob.emit("invite_to_room", roomId=room_id, username="bob", invitee="carol")
        invitation = carol.last("room_invitation")
        await carol.emit("respond_to_invitation", invitationId=invitation["invitationId"], username="carol", accept=True)
        assert carol.last("invitation_accepted")["roomId"] == room_id

        await carol.emit("join_room", room=room_id, username="carol")
        assert chat.manager.current_room("c") == room_id

        await bob.emit("remove_room_member", roomId=room_id, username="bob", member="carol")
        assert carol.last("member_removed") == {"roomId": room_id, "member": "carol"}
        assert chat.manager.current_room("c") is None

        await carol.emit("join_room", room=room_id, username="carol")
        assert carol.last("room_locked")["room"] == room_id
        await carol.emit("send_message", username="carol", room=room_id, text="hello?")
        assert len(carol.frames("room_locked")) == 2


class TestProtocolErrors:
    @pytest.mark.asyncio
    async def test_invalid_json(self, chat) -> None:
        alice = await chat("a")
        await alice.session.handle_raw("{not json")
        assert alice.last("error") == {"message": "Invalid JSON"}

    @pytest.mark.asyncio
    async def test_unknown_event(self, chat) -> None:
        alice = await chat("a")
        await alice.emit("launch_rockets")
        assert alice.last("error")["message"] == "Invalid launch_rockets payload"

    @pytest.mark.asyncio
    async def test_invalid_payload_maps_to_event_error(self, chat) -> None:
        alice = await chat("a")
        await alice.emit("join_room", room="general")
        assert alice.last("room_error")["errors"]

    @pytest.mark.asyncio
    async def test_oversized_frame(self, chat, settings) -> None:
        alice = await chat("a")
        await alice.session.handle_raw("x" * (settings.ws_max_message_bytes + 1))
        assert alice.last("error") == {"message": "Message too large"}

    @pytest.mark.asyncio
    async def test_ping(self, chat) -> None:
        alice = await chat("a")
        await alice.emit("ping")
        assert alice.last("pong") == {}


class TestPresence:
    @pytest.mark.asyncio
    async def test_disconnect_updates_online_users(self, chat) -> None:
        alice = await chat("a")
        bob = await chat("b")
        await alice.emit("join_room", room="general", username="alice")
        await bob.emit("join_room", room="general", username="bob")
        assert alice.last("online_users")["users"] == ["alice", "bob"]

        await bob.session.close()
        assert alice.last("online_users")["users"] == ["alice"]
        assert alice.last("user_stop_typing") == {"username": "bob", "room": "general"}

    @pytest.mark.asyncio
    async def test_typing_only_in_current_room(self, chat) -> None:
        alice = await chat("a")
        bob = await chat("b")
        await alice.emit("join_room", room="general", username="alice")
        await bob.emit("join_room", room="general", username="bob")
        await bob.emit("typing", username="bob", room="general")
        assert alice.last("user_typing") == {"username": "bob", "room": "general"}
        await bob.emit("typing", username="bob", room="forex")
        assert len(alice.frames("user_typing")) == 1


class TestStorageFailure:
    @pytest.mark.asyncio
    async def test_database_error_becomes_event_error(self, chat, monkeypatch) -> None:
        from sqlalchemy.exc import OperationalError

        from tradechat.rooms import service as rooms

        async def broken(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr(rooms, "check_room_access", broken)
        alice = await chat("a")
        await alice.emit("join_room", room="general", username="alice")
        assert alice.last("room_error") == {"message": "Storage is unavailable, please retry"}

        # The connection keeps working afterwards
        await alice.emit("ping")
        assert alice.last("pong") == {}


class TestPrivateRoomWrites:
    @pytest.mark.asyncio
    async def test_outsider_reaction_is_locked(self, chat) -> None:
        olga = await chat("o")
        eve = await chat("e")

        await olga.emit("register_user", username="olga")
        await olga.emit("upgrade_subscription", username="olga", tier="premium")
        await olga.emit("create_private_room", username="olga", roomName="vip")
        room_id = olga.last("room_created")["roomId"]
        await olga.emit("join_room", room=room_id, username="olga")
        await olga.emit("send_message", username="olga", room=room_id, text="entries at the open")
        message_id = olga.last("new_message")["id"]

        await eve.emit("join_room", room=room_id, username="eve")
        assert eve.last("room_locked")["room"] == room_id

        await eve.emit("add_reaction", messageId=message_id, username="eve", emoji="x", room=room_id)
        assert len(eve.frames("room_locked")) == 2
        assert olga.frames("message_reacted") == []

        await eve.emit("edit_message", messageId=message_id, username="eve", newText="mine now")
        assert olga.frames("message_updated") == []
        assert "your own" in eve.last("edit_error")["message"]


class TestNonFiniteNumbers:
    @pytest.mark.asyncio
    async def test_nan_close_price_is_signal_error(self, chat) -> None:
        bob = await chat("b")
        await bob.session.handle_raw(
            '{"event": "update_signal_outcome", "messageId": 1, "username": "bob",'
            ' "outcome": "win", "closePrice": NaN}'
        )
        assert bob.last("signal_error")["errors"]

    @pytest.mark.asyncio
    async def test_infinite_entry_is_message_error(self, chat) -> None:
        bob = await chat("b")
        await bob.emit("register_user", username="bob")
        await bob.emit("upgrade_subscription", username="bob", tier="pro")
        await bob.emit("join_room", room="forex", username="bob")
        await bob.session.handle_raw(
            '{"event": "send_message", "type": "signal", "username": "bob", "room": "forex",'
            ' "signal": {"pair": "XAUUSD", "direction": "BUY", "entry": Infinity,'
            ' "stopLoss": 1990, "takeProfit": 2020}, "isOfficial": true}'
        )
        assert "finite" in bob.last("message_error")["message"]
        assert bob.frames("new_message") == []


class TestNotificationDelivery:
    @pytest.mark.asyncio
    async def test_pushed_only_after_commit(self, session_factory, settings, bus) -> None:
        session = ChatSession("a", ConnectionManager(), bus, session_factory, settings)
        async with session.transaction() as db:
            await make_user(db, "bob")
            await create_notification(db, "bob", "system", "Welcome")
            bus.send_to_user.assert_not_awaited()

        bus.send_to_user.assert_awaited_once()
        assert bus.send_to_user.await_args.args[:2] == ("bob", "new_notification")

    @pytest.mark.asyncio
    async def test_rolled_back_notification_is_never_pushed(self, session_factory, settings, bus) -> None:
        session = ChatSession("a", ConnectionManager(), bus, session_factory, settings)
        with pytest.raises(ValidationFailure):
            async with session.transaction() as db:
                await make_user(db, "bob")
                await create_notification(db, "bob", "system", "Welcome")
                raise ValidationFailure("later step failed")

        bus.send_to_user.assert_not_awaited()
        async with session_factory() as db:
            assert await get_notifications(db, "bob") == []

    @pytest.mark.asyncio
    async def test_one_failing_follower_does_not_drop_the_rest(self, chat, session_factory, monkeypatch) -> None:
        from sqlalchemy.exc import OperationalError

        from tradechat.social import notification_service

        bob = await chat("b")
        f1 = await chat("1")
        f2 = await chat("2")
        await bob.emit("register_user", username="bob")
        await bob.emit("upgrade_subscription", username="bob", tier="premium")
        for client, name in ((f1, "f1"), (f2, "f2")):
            await client.emit("register_user", username=name)
            await client.emit("follow_user", follower=name, following="bob")
        await bob.emit("join_room", room="forex", username="bob")

        original = notification_service.create_notification

        async def flaky(db, username, *args, **kwargs):
            if username == "f2":
                raise OperationalError("INSERT INTO notifications", {}, Exception("disk I/O error"))
            return await original(db, username, *args, **kwargs)

        monkeypatch.setattr(notification_service, "create_notification", flaky)
        await bob.emit(
            "send_message", type="signal", username="bob", room="forex",
            signal=GOLD_SIGNAL, isOfficial=True,
        )

        assert f1.last("new_notification")["type"] == "signal"
        assert f2.frames("new_notification") == []
        async with session_factory() as db:
            assert [n.type for n in await get_notifications(db, "f1")] == ["signal"]
            assert await get_notifications(db, "f2") == []
