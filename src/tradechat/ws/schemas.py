"""Inbound WebSocket events as a closed tagged union.

Every client frame is ``{"event": <name>, ...fields}`` with camelCase
field names. Frames are validated here before any handler runs.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


class ClientEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Identity & rooms ---


class RegisterUser(ClientEvent):
    event: Literal["register_user"]
    username: str


class JoinRoom(ClientEvent):
    event: Literal["join_room"]
    room: str = Field(..., min_length=1, max_length=64)
    username: str


class LeaveRoom(ClientEvent):
    event: Literal["leave_room"]
    username: str | None = None


class Typing(ClientEvent):
    event: Literal["typing"]
    username: str
    room: str


class StopTyping(ClientEvent):
    event: Literal["stop_typing"]
    username: str
    room: str


# --- Messages ---


class SendMessage(ClientEvent):
    event: Literal["send_message"]
    type: Literal["text", "signal"] = "text"
    username: str
    room: str = Field(..., min_length=1, max_length=64)
    text: str | None = None
    signal: dict[str, Any] | None = None
    is_official: bool = False


class EditMessage(ClientEvent):
    event: Literal["edit_message"]
    message_id: int
    username: str
    new_text: str


class DeleteMessage(ClientEvent):
    event: Literal["delete_message"]
    message_id: int
    username: str
    room: str | None = None


class AddReaction(ClientEvent):
    event: Literal["add_reaction"]
    message_id: int
    username: str
    emoji: str
    room: str | None = None


class UpdateSignalOutcome(ClientEvent):
    """Close an official signal. ``username`` is the acting author.

    ``closedBy`` is accepted for older clients but must name the same user.
    """

    event: Literal["update_signal_outcome"]
    message_id: int
    username: str
    outcome: str
    close_price: float | None = Field(None, gt=0, allow_inf_nan=False)
    closed_by: str | None = None

    @model_validator(mode="after")
    def _closed_by_matches_actor(self) -> "UpdateSignalOutcome":
        if self.closed_by is not None and self.closed_by != self.username:
            raise ValueError("closedBy must match username")
        return self


# --- Social ---


class FollowUser(ClientEvent):
    event: Literal["follow_user"]
    follower: str
    following: str


class UnfollowUser(ClientEvent):
    event: Literal["unfollow_user"]
    follower: str
    following: str


class UpgradeSubscription(ClientEvent):
    event: Literal["upgrade_subscription"]
    username: str
    tier: str


class GetLeaderboard(ClientEvent):
    event: Literal["get_leaderboard"]
    sort_by: str = "winRate"
    period: str = "all"
    min_signals: int | None = Field(None, ge=0)
    limit: int | None = Field(None, ge=1, le=500)


# --- Private rooms ---


class CreatePrivateRoom(ClientEvent):
    event: Literal["create_private_room"]
    username: str
    room_name: str
    description: str | None = None


class GetMyRooms(ClientEvent):
    event: Literal["get_my_rooms"]
    username: str


class InviteToRoom(ClientEvent):
    event: Literal["invite_to_room"]
    room_id: str
    username: str
    invitee: str


class RespondToInvitation(ClientEvent):
    event: Literal["respond_to_invitation"]
    invitation_id: int
    username: str
    accept: bool


class RemoveRoomMember(ClientEvent):
    event: Literal["remove_room_member"]
    room_id: str
    username: str
    member: str


class SetMemberRole(ClientEvent):
    event: Literal["set_member_role"]
    room_id: str
    username: str
    member: str
    role: str


# --- Notifications ---


class GetNotifications(ClientEvent):
    event: Literal["get_notifications"]
    username: str


class MarkNotificationRead(ClientEvent):
    event: Literal["mark_notification_read"]
    notification_id: int
    username: str


class MarkAllRead(ClientEvent):
    event: Literal["mark_all_read"]
    username: str


class GetPreferences(ClientEvent):
    event: Literal["get_preferences"]
    username: str


class UpdatePreferences(ClientEvent):
    event: Literal["update_preferences"]
    username: str
    preferences: dict[str, Any]


class Ping(ClientEvent):
    event: Literal["ping"]


InboundEvent = Annotated[
    Union[
        RegisterUser,
        JoinRoom,
        LeaveRoom,
        Typing,
        StopTyping,
        SendMessage,
        EditMessage,
        DeleteMessage,
        AddReaction,
        UpdateSignalOutcome,
        FollowUser,
        UnfollowUser,
        UpgradeSubscription,
        GetLeaderboard,
        CreatePrivateRoom,
        GetMyRooms,
        InviteToRoom,
        RespondToInvitation,
        RemoveRoomMember,
        SetMemberRole,
        GetNotifications,
        MarkNotificationRead,
        MarkAllRead,
        GetPreferences,
        UpdatePreferences,
        Ping,
    ],
    Field(discriminator="event"),
]

inbound_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)

# Reply event used when a handler for the key fails
ERROR_EVENTS: dict[str, str] = {
    "register_user": "registration_error",
    "join_room": "room_error",
    "leave_room": "room_error",
    "typing": "room_error",
    "stop_typing": "room_error",
    "send_message": "message_error",
    "edit_message": "edit_error",
    "delete_message": "delete_error",
    "add_reaction": "reaction_error",
    "update_signal_outcome": "signal_error",
    "follow_user": "follow_error",
    "unfollow_user": "follow_error",
    "upgrade_subscription": "upgrade_error",
    "get_leaderboard": "leaderboard_error",
    "create_private_room": "room_error",
    "get_my_rooms": "room_error",
    "invite_to_room": "room_error",
    "respond_to_invitation": "room_error",
    "remove_room_member": "room_error",
    "set_member_role": "room_error",
    "get_notifications": "notification_error",
    "mark_notification_read": "notification_error",
    "mark_all_read": "notification_error",
    "get_preferences": "preferences_error",
    "update_preferences": "preferences_error",
    "ping": "error",
}


def parse_inbound(raw: Any) -> InboundEvent:
    """Validate a decoded frame. Raises pydantic.ValidationError."""
    return inbound_adapter.validate_python(raw)
