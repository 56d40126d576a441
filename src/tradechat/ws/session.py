"""Per-connection chat session.

One ChatSession per WebSocket. Each inbound frame is validated, then
handled inside its own database transaction. Domain errors become the
event's ``*_error`` reply (``room_locked`` for tier/membership denials);
nothing raised by one handler reaches the connection loop.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradechat.config import Settings
from tradechat.errors import ChatError, PermissionDeniedError, PersistenceFailure, RoomLockedError
from tradechat.leaderboard.service import compute_leaderboard
from tradechat.rooms import service as rooms
from tradechat.signals.lifecycle import close_signal, metadata_to_dict
from tradechat.social import follow_service
from tradechat.social import notification_service as notifications
from tradechat.social.notification_push import notification_to_dict, push_pending_notifications
from tradechat.users.service import get_or_create_user, upgrade_subscription
from tradechat.ws import schemas
from tradechat.ws.bus import EventBus
from tradechat.ws.manager import ConnectionManager

logger = structlog.get_logger()


class ChatSession:
    """Handles the event stream of a single connection."""

    def __init__(
        self,
        conn_id: str,
        manager: ConnectionManager,
        bus: EventBus,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self.conn_id = conn_id
        self.manager = manager
        self.bus = bus
        self.session_factory = session_factory
        self.settings = settings

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session whose transaction commits on success and rolls back on error.

        Notifications queued during the transaction are pushed only after it
        commits. Driver and constraint failures surface as PersistenceFailure.
        """
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    yield db
                await push_pending_notifications(self.bus, db)
        except SQLAlchemyError as e:
            logger.exception("persistence_failure", conn_id=self.conn_id)
            raise PersistenceFailure("Storage is unavailable, please retry") from e

    async def send(self, event: str, data: Any) -> None:
        await self.manager.send(self.conn_id, {"event": event, "data": data})

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_raw(self, raw: str) -> None:
        """Decode, validate and dispatch one text frame."""
        if len(raw) > self.settings.ws_max_message_bytes:
            await self.send("error", {"message": "Message too large"})
            return
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await self.send("error", {"message": "Invalid JSON"})
            return

        event_name = frame.get("event") if isinstance(frame, dict) else None
        try:
            event = schemas.parse_inbound(frame)
        except ValidationError as e:
            reply = schemas.ERROR_EVENTS.get(event_name, "error")
            await self.send(reply, {
                "message": f"Invalid {event_name} payload" if event_name else "Unknown event",
                "errors": e.errors(include_url=False, include_context=False),
            })
            return

        await self.dispatch(event)

    async def dispatch(self, event: Any) -> None:
        handler = getattr(self, f"on_{event.event}")
        error_event = schemas.ERROR_EVENTS.get(event.event, "error")
        try:
            await handler(event)
        except RoomLockedError as e:
            logger.info("room_locked", conn_id=self.conn_id, room=e.room, required_tier=e.required_tier)
            await self.send("room_locked", e.to_payload())
        except ChatError as e:
            payload: dict[str, Any] = {"message": e.message}
            if isinstance(e, PermissionDeniedError) and e.required_tier:
                payload["requiredTier"] = e.required_tier
            await self.send(error_event, payload)
        except Exception:
            logger.exception("handler_failed", conn_id=self.conn_id, event_name=event.event)
            await self.send(error_event, {"message": "Internal server error"})

    async def close(self) -> None:
        """Drop this connection and update presence in the room it was in."""
        client = await self.manager.disconnect(self.conn_id)
        if client is not None and client.room is not None and client.username is not None:
            await self._announce_departure(client.room, client.username)

    # ------------------------------------------------------------------
    # Presence helpers
    # ------------------------------------------------------------------

    async def _broadcast_online_users(self, room: str) -> None:
        await self.bus.broadcast_to_room(room, "online_users", {
            "room": room,
            "users": self.manager.room_usernames(room),
        })

    async def _announce_departure(self, room: str, username: str) -> None:
        await self._broadcast_online_users(room)
        await self.bus.broadcast_to_room(room, "user_stop_typing", {"username": username, "room": room})

    async def _fan_out_followers(self, author: str, event: str, signal: dict[str, Any]) -> None:
        """Follower notifications run after the broadcast; failures are logged only."""
        try:
            async with self.transaction() as db:
                await notifications.notify_followers(db, author, event, signal)
        except ChatError:
            logger.exception("follower_fan_out_failed", author=author, fan_out_event=event)

    # ------------------------------------------------------------------
    # Identity & rooms
    # ------------------------------------------------------------------

    async def on_register_user(self, event: schemas.RegisterUser) -> None:
        async with self.transaction() as db:
            user, created = await get_or_create_user(db, event.username)
        self.manager.identify(self.conn_id, user.username)
        await self.send("user_registered", {"username": user.username, "tier": user.subscription_tier})
        logger.info("user_registered", username=user.username, tier=user.subscription_tier, created=created)

    async def on_join_room(self, event: schemas.JoinRoom) -> None:
        async with self.transaction() as db:
            user = await rooms.check_room_access(db, event.room, event.username)
            messages, metadata = await rooms.load_room_history(db, event.room)
            history = [rooms.message_to_dict(m) for m in messages]
            signal_metadata = {str(mid): metadata_to_dict(m) for mid, m in metadata.items()}

        self.manager.identify(self.conn_id, user.username)
        previous = self.manager.join_room(self.conn_id, event.room)
        if previous is not None:
            await self._announce_departure(previous, user.username)

        await self.send("previous_messages", history)
        if signal_metadata:
            await self.send("signal_metadata", signal_metadata)
        await self._broadcast_online_users(event.room)
        logger.info("room_joined", conn_id=self.conn_id, username=user.username, room=event.room)

    async def on_leave_room(self, event: schemas.LeaveRoom) -> None:
        client = self.manager.get(self.conn_id)
        room = self.manager.leave_room(self.conn_id)
        if room is not None and client is not None and client.username is not None:
            await self._announce_departure(room, client.username)

    async def on_typing(self, event: schemas.Typing) -> None:
        if self.manager.current_room(self.conn_id) == event.room:
            await self.bus.broadcast_to_room(event.room, "user_typing", {"username": event.username, "room": event.room})

    async def on_stop_typing(self, event: schemas.StopTyping) -> None:
        if self.manager.current_room(self.conn_id) == event.room:
            await self.bus.broadcast_to_room(event.room, "user_stop_typing", {"username": event.username, "room": event.room})

    # ------------------------------------------------------------------
    # Messages & signals
    # ------------------------------------------------------------------

    async def on_send_message(self, event: schemas.SendMessage) -> None:
        async with self.transaction() as db:
            message, meta = await rooms.post_message(
                db,
                event.username,
                event.room,
                event.type,
                text=event.text,
                signal=event.signal,
                is_official=event.is_official,
            )
            payload = rooms.message_to_dict(message)
            if meta is not None:
                payload["signalMetadata"] = metadata_to_dict(meta)

        await self.bus.broadcast_to_room(event.room, "new_message", payload)

        if message.type == "signal":
            signal = message.signal or {}
            await self._fan_out_followers(message.username, notifications.SIGNAL_POSTED, {
                "messageId": message.id,
                "pair": signal.get("pair"),
                "direction": signal.get("direction"),
                "entry": signal.get("entry"),
            })
        else:
            try:
                async with self.transaction() as db:
                    await notifications.notify_mentions(
                        db, message.username, message.text, message.room, message.id,
                    )
            except ChatError:
                logger.exception("mention_fan_out_failed", message_id=message.id)

    async def on_edit_message(self, event: schemas.EditMessage) -> None:
        async with self.transaction() as db:
            message = await rooms.edit_message(db, event.message_id, event.username, event.new_text)
            payload = rooms.message_to_dict(message)
        await self.bus.broadcast_to_room(message.room, "message_updated", payload)

    async def on_delete_message(self, event: schemas.DeleteMessage) -> None:
        async with self.transaction() as db:
            message = await rooms.delete_message(
                db, event.message_id, event.username, set(self.settings.admin_usernames),
            )
            room = message.room
        await self.bus.broadcast_to_room(room, "message_deleted", {"messageId": event.message_id})

    async def on_add_reaction(self, event: schemas.AddReaction) -> None:
        async with self.transaction() as db:
            message = await rooms.toggle_reaction(db, event.message_id, event.username, event.emoji)
            reactions = dict(message.reactions or {})
            room = message.room
        await self.bus.broadcast_to_room(room, "message_reacted", {
            "messageId": event.message_id,
            "reactions": reactions,
        })

    async def on_update_signal_outcome(self, event: schemas.UpdateSignalOutcome) -> None:
        async with self.transaction() as db:
            meta = await close_signal(db, event.message_id, event.username, event.outcome, event.close_price)
            payload = metadata_to_dict(meta)

        await self.bus.broadcast_to_room(meta.room, "signal_updated", payload)
        logger.info(
            "signal_closed",
            message_id=meta.message_id,
            outcome=meta.outcome,
            pips=meta.pips_gained,
            closed_by=meta.closed_by,
        )
        await self._fan_out_followers(meta.author_username, notifications.SIGNAL_CLOSED, {
            "messageId": meta.message_id,
            "pair": meta.pair,
            "outcome": meta.outcome,
            "pipsGained": meta.pips_gained,
        })

    # ------------------------------------------------------------------
    # Social
    # ------------------------------------------------------------------

    async def on_follow_user(self, event: schemas.FollowUser) -> None:
        async with self.transaction() as db:
            _, created = await follow_service.follow_user(db, event.follower, event.following)
        await self.send("follow_success", {
            "follower": event.follower,
            "following": event.following,
            "created": created,
        })

    async def on_unfollow_user(self, event: schemas.UnfollowUser) -> None:
        async with self.transaction() as db:
            removed = await follow_service.unfollow_user(db, event.follower, event.following)
        await self.send("unfollow_success", {
            "follower": event.follower,
            "following": event.following,
            "removed": removed,
        })

    async def on_upgrade_subscription(self, event: schemas.UpgradeSubscription) -> None:
        async with self.transaction() as db:
            user = await upgrade_subscription(db, event.username, event.tier)
            payload = {"username": user.username, "tier": user.subscription_tier}
        await self.bus.broadcast_all("upgrade_success", payload)

    async def on_get_leaderboard(self, event: schemas.GetLeaderboard) -> None:
        min_signals = (
            event.min_signals
            if event.min_signals is not None
            else self.settings.leaderboard_min_completed_signals
        )
        limit = event.limit if event.limit is not None else self.settings.leaderboard_top_n
        async with self.transaction() as db:
            ranked = await compute_leaderboard(
                db, min_signals, sort_key=event.sort_by, limit=limit, period=event.period,
            )
        await self.send("leaderboard_data", {
            "leaderboard": [row.to_dict() for row in ranked],
            "sortBy": event.sort_by,
            "period": event.period,
        })

    # ------------------------------------------------------------------
    # Private rooms
    # ------------------------------------------------------------------

    async def on_create_private_room(self, event: schemas.CreatePrivateRoom) -> None:
        async with self.transaction() as db:
            room = await rooms.create_private_room(db, event.username, event.room_name, event.description)
            payload = rooms.private_room_to_dict(room, role="owner")
        self.manager.identify(self.conn_id, event.username)
        await self.send("room_created", payload)

    async def on_get_my_rooms(self, event: schemas.GetMyRooms) -> None:
        async with self.transaction() as db:
            memberships = await rooms.list_user_rooms(db, event.username)
            payload = [rooms.private_room_to_dict(room, role) for room, role in memberships]
        await self.send("my_rooms", {"rooms": payload})

    async def on_invite_to_room(self, event: schemas.InviteToRoom) -> None:
        async with self.transaction() as db:
            invitation = await rooms.invite_to_room(db, event.room_id, event.username, event.invitee)
            payload = {
                "invitationId": invitation.id,
                "roomId": invitation.room_id,
                "inviter": invitation.inviter_username,
                "invitee": invitation.invitee_username,
            }
        await self.bus.send_to_user(event.invitee, "room_invitation", payload)
        await self.send("invitation_sent", payload)

    async def on_respond_to_invitation(self, event: schemas.RespondToInvitation) -> None:
        async with self.transaction() as db:
            invitation, _ = await rooms.respond_to_invitation(db, event.invitation_id, event.username, event.accept)
            payload = {"invitationId": invitation.id, "roomId": invitation.room_id}
        await self.send("invitation_accepted" if event.accept else "invitation_declined", payload)

    async def on_remove_room_member(self, event: schemas.RemoveRoomMember) -> None:
        async with self.transaction() as db:
            await rooms.remove_member(db, event.room_id, event.username, event.member)
        payload = {"roomId": event.room_id, "member": event.member}
        # The bridge evicts the member's live connections on every process
        await self.bus.send_to_user(event.member, "member_removed", payload)
        await self.send("member_removed", payload)

    async def on_set_member_role(self, event: schemas.SetMemberRole) -> None:
        async with self.transaction() as db:
            membership = await rooms.set_member_role(db, event.room_id, event.username, event.member, event.role)
            payload = {"roomId": membership.room_id, "member": membership.username, "role": membership.role}
        await self.send("member_role_updated", payload)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def on_get_notifications(self, event: schemas.GetNotifications) -> None:
        async with self.transaction() as db:
            items = await notifications.get_notifications(
                db, event.username, limit=self.settings.notification_page_size,
            )
            unread = await notifications.get_unread_count(db, event.username)
            payload = [notification_to_dict(n) for n in items]
        self.manager.identify(self.conn_id, event.username)
        await self.send("notifications_loaded", {"notifications": payload, "unreadCount": unread})

    async def on_mark_notification_read(self, event: schemas.MarkNotificationRead) -> None:
        async with self.transaction() as db:
            await notifications.mark_as_read(db, event.username, event.notification_id)
        await self.send("notification_read", {"notificationId": event.notification_id})

    async def on_mark_all_read(self, event: schemas.MarkAllRead) -> None:
        async with self.transaction() as db:
            count = await notifications.mark_all_as_read(db, event.username)
        await self.send("all_notifications_read", {"count": count})

    async def on_get_preferences(self, event: schemas.GetPreferences) -> None:
        async with self.transaction() as db:
            preferences = await notifications.get_preferences(db, event.username)
        await self.send("preferences_loaded", preferences)

    async def on_update_preferences(self, event: schemas.UpdatePreferences) -> None:
        async with self.transaction() as db:
            preferences = await notifications.update_preferences(db, event.username, event.preferences)
        await self.send("preferences_updated", preferences)

    async def on_ping(self, event: schemas.Ping) -> None:
        await self.send("pong", {})
