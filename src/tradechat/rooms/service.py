"""Room access, posting and private-room membership.

Access is re-checked against the database on every join and every post.
Public rooms are gated by tier; private rooms only by membership rows.
"""

from __future__ import annotations

import logging
import math
import secrets
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.db.models import (
    Message,
    OfficialSignalMetadata,
    PrivateRoom,
    RoomInvitation,
    RoomMembership,
    User,
)
from tradechat.errors import (
    NotFoundError,
    PermissionDeniedError,
    RoomLockedError,
    ValidationFailure,
)
from tradechat.rooms.access import (
    can_access_room,
    can_create_private_room,
    can_post_official,
    is_public_room,
    required_tier_for_room,
    upgrade_message,
)
from tradechat.signals.lifecycle import (
    create_signal_metadata,
    delete_signal_metadata,
    get_metadata_for_messages,
)
from tradechat.signals.pips import DIRECTIONS, calculate_risk_reward
from tradechat.social.notification_service import create_notification
from tradechat.users.service import get_or_create_user, get_user, require_user

logger = logging.getLogger(__name__)

MESSAGE_TYPES = frozenset({"text", "signal"})
MANAGER_ROLES = frozenset({"owner", "moderator"})
MAX_TEXT_LENGTH = 4000
MAX_ROOM_NAME_LENGTH = 64


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "username": message.username,
        "room": message.room,
        "type": message.type,
        "text": message.text,
        "signal": message.signal,
        "isOfficial": message.is_official,
        "postType": message.post_type,
        "reactions": message.reactions or {},
        "edited": message.edited,
        "timestamp": message.created_at.isoformat() if message.created_at else None,
        "updatedAt": message.updated_at.isoformat() if message.updated_at else None,
    }


def private_room_to_dict(room: PrivateRoom, role: str | None = None) -> dict[str, Any]:
    data = {
        "roomId": room.id,
        "name": room.name,
        "description": room.description,
        "ownerUsername": room.owner_username,
        "createdAt": room.created_at.isoformat() if room.created_at else None,
    }
    if role is not None:
        data["role"] = role
    return data


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


async def get_membership(db: AsyncSession, room_id: str, username: str) -> RoomMembership | None:
    result = await db.execute(
        select(RoomMembership).where(
            RoomMembership.room_id == room_id,
            RoomMembership.username == username,
        )
    )
    return result.scalar_one_or_none()


async def check_room_access(db: AsyncSession, room: str, username: str) -> User:
    """
    Resolve the user (creating a free account on first sight) and verify room access.

    Raises:
        RoomLockedError: Tier too low for a public room, or no membership for a private one.
        NotFoundError: Room is neither public nor an existing private room.
    """
    user, _ = await get_or_create_user(db, username)

    if is_public_room(room):
        if not can_access_room(user.subscription_tier, room):
            raise RoomLockedError(room, required_tier_for_room(room), upgrade_message(room))
        return user

    private_room = await db.get(PrivateRoom, room)
    if private_room is None:
        raise NotFoundError(f"Room {room} not found")

    if await get_membership(db, room, user.username) is None:
        raise RoomLockedError(room, "premium", "This private room needs an invitation")
    return user


async def load_room_history(
    db: AsyncSession, room: str,
) -> tuple[list[Message], dict[int, OfficialSignalMetadata]]:
    """Messages oldest first, plus metadata for the official signals among them."""
    result = await db.execute(
        select(Message)
        .where(Message.room == room)
        .order_by(Message.created_at.asc(), Message.id.asc())
    )
    messages = list(result.scalars().all())
    official_ids = [m.id for m in messages if m.type == "signal" and m.is_official]
    metadata = await get_metadata_for_messages(db, official_ids)
    return messages, metadata


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------


def _as_price(signal: dict[str, Any], key: str) -> float:
    value = signal.get(key)
    if value in (None, ""):
        raise ValidationFailure(f"Signal field {key} is required")
    try:
        price = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationFailure(f"Signal field {key} must be a number") from e
    if not math.isfinite(price):
        raise ValidationFailure(f"Signal field {key} must be a finite number")
    if price <= 0:
        raise ValidationFailure(f"Signal field {key} must be positive")
    return price


def validate_signal(signal: dict[str, Any] | None) -> dict[str, Any]:
    """Check a signal form is complete and normalise it for storage."""
    if not signal:
        raise ValidationFailure("Signal details are required")

    pair = str(signal.get("pair") or "").strip().upper()
    if not pair:
        raise ValidationFailure("Signal field pair is required")

    direction = str(signal.get("direction") or "").strip().upper()
    if direction not in DIRECTIONS:
        raise ValidationFailure("Signal direction must be BUY or SELL")

    entry = _as_price(signal, "entry")
    stop_loss = _as_price(signal, "stopLoss")
    take_profit = _as_price(signal, "takeProfit")

    risk_reward = signal.get("riskReward")
    if risk_reward in (None, ""):
        try:
            risk_reward = calculate_risk_reward(direction, entry, stop_loss, take_profit)
        except ValueError as e:
            raise ValidationFailure(str(e)) from e
    else:
        risk_reward = str(risk_reward).strip()
        try:
            finite = math.isfinite(float(risk_reward))
        except ValueError:
            # Free-form ratios such as "1:3" are stored as given
            finite = True
        if not finite or len(risk_reward) > 16:
            raise ValidationFailure("Signal field riskReward must be a finite ratio")

    return {
        "pair": pair,
        "direction": direction,
        "entry": entry,
        "stopLoss": stop_loss,
        "takeProfit": take_profit,
        "riskReward": str(risk_reward),
    }


async def post_message(
    db: AsyncSession,
    username: str,
    room: str,
    type_: str,
    text: str | None = None,
    signal: dict[str, Any] | None = None,
    is_official: bool = False,
) -> tuple[Message, OfficialSignalMetadata | None]:
    """
    Validate access and persist a message.

    Official signals also get a pending metadata row in the same transaction.

    Raises:
        RoomLockedError / NotFoundError: Access check failed.
        PermissionDeniedError: Official post by a tier that cannot post officially.
        ValidationFailure: Incomplete message or signal.
    """
    if type_ not in MESSAGE_TYPES:
        raise ValidationFailure(f"Invalid message type: {type_}")

    user = await check_room_access(db, room, username)

    if is_official:
        if type_ != "signal":
            raise ValidationFailure("Only signals can be posted as official")
        if not can_post_official(user.subscription_tier):
            raise PermissionDeniedError("Official signals require a Pro or Premium plan", required_tier="pro")

    if type_ == "text":
        body = (text or "").strip()
        if not body:
            raise ValidationFailure("Message text is required")
        if len(body) > MAX_TEXT_LENGTH:
            raise ValidationFailure(f"Message text must be at most {MAX_TEXT_LENGTH} characters")
        stored_signal = None
    else:
        body = (text or "").strip() or None
        stored_signal = validate_signal(signal)

    message = Message(
        username=user.username,
        room=room,
        type=type_,
        text=body,
        signal=stored_signal,
        is_official=is_official,
        post_type="official_signal" if is_official else "comment",
        reactions={},
        edited=False,
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    await db.flush()

    meta = None
    if is_official:
        meta = await create_signal_metadata(db, message)

    logger.info("Message %s posted by %s in %s (%s)", message.id, user.username, room, type_)
    return message, meta


async def get_message(db: AsyncSession, message_id: int) -> Message:
    message = await db.get(Message, message_id)
    if message is None:
        raise NotFoundError("Message not found")
    return message


async def edit_message(db: AsyncSession, message_id: int, username: str, new_text: str) -> Message:
    """Author-only edit of a text message."""
    message = await get_message(db, message_id)
    if message.username != username:
        raise PermissionDeniedError("You can only edit your own messages")
    # A removed member keeps authorship but loses write access
    await check_room_access(db, message.room, username)
    if message.type != "text":
        raise ValidationFailure("Signals cannot be edited")

    body = (new_text or "").strip()
    if not body:
        raise ValidationFailure("Message text is required")
    if len(body) > MAX_TEXT_LENGTH:
        raise ValidationFailure(f"Message text must be at most {MAX_TEXT_LENGTH} characters")

    message.text = body
    message.edited = True
    message.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return message


async def delete_message(
    db: AsyncSession,
    message_id: int,
    username: str,
    admin_usernames: frozenset[str] | set[str] = frozenset(),
) -> Message:
    """Delete a message (author or admin). Official signals lose their metadata too."""
    message = await get_message(db, message_id)
    if message.username != username and username not in admin_usernames:
        raise PermissionDeniedError("You can only delete your own messages")

    if message.is_official:
        await delete_signal_metadata(db, message.id)
    await db.delete(message)
    await db.flush()
    logger.info("Message %s deleted by %s", message_id, username)
    return message


async def toggle_reaction(db: AsyncSession, message_id: int, username: str, emoji: str) -> Message:
    """Add ``username`` to the emoji's reactors, or remove them if already there."""
    emoji = (emoji or "").strip()
    if not emoji or len(emoji) > 16:
        raise ValidationFailure("Invalid emoji")

    message = await get_message(db, message_id)
    await check_room_access(db, message.room, username)
    reactions = {k: list(v) for k, v in (message.reactions or {}).items()}
    users = reactions.get(emoji, [])
    if username in users:
        users.remove(username)
    else:
        users.append(username)

    if users:
        reactions[emoji] = users
    else:
        reactions.pop(emoji, None)

    # Reassign so the JSON column is marked dirty
    message.reactions = reactions
    await db.flush()
    return message


# ---------------------------------------------------------------------------
# Private rooms
# ---------------------------------------------------------------------------


def _generate_room_id() -> str:
    return f"private_{secrets.token_hex(8)}"


async def create_private_room(
    db: AsyncSession, username: str, name: str, description: str | None = None,
) -> PrivateRoom:
    """Create a private room owned by a premium user."""
    user = await require_user(db, username)
    if not can_create_private_room(user.subscription_tier):
        raise PermissionDeniedError("Private rooms require a Premium plan", required_tier="premium")

    name = (name or "").strip()
    if not name:
        raise ValidationFailure("Room name is required")
    if len(name) > MAX_ROOM_NAME_LENGTH:
        raise ValidationFailure(f"Room name must be at most {MAX_ROOM_NAME_LENGTH} characters")

    room = PrivateRoom(
        id=_generate_room_id(),
        name=name,
        description=(description or "").strip() or None,
        owner_username=user.username,
        created_at=datetime.now(timezone.utc),
    )
    db.add(room)
    await db.flush()
    db.add(RoomMembership(room_id=room.id, username=user.username, role="owner"))
    await db.flush()

    logger.info("Private room %s created by %s", room.id, user.username)
    return room


async def list_user_rooms(db: AsyncSession, username: str) -> list[tuple[PrivateRoom, str]]:
    """Private rooms the user is a member of, with their role."""
    result = await db.execute(
        select(PrivateRoom, RoomMembership.role)
        .join(RoomMembership, RoomMembership.room_id == PrivateRoom.id)
        .where(RoomMembership.username == username)
        .order_by(PrivateRoom.created_at)
    )
    return [(room, role) for room, role in result.all()]


async def _require_private_room(db: AsyncSession, room_id: str) -> PrivateRoom:
    room = await db.get(PrivateRoom, room_id)
    if room is None:
        raise NotFoundError("Room not found")
    return room


async def _require_manager(db: AsyncSession, room_id: str, username: str) -> RoomMembership:
    membership = await get_membership(db, room_id, username)
    if membership is None or membership.role not in MANAGER_ROLES:
        raise PermissionDeniedError("Only the room owner or a moderator can do that")
    return membership


async def invite_to_room(
    db: AsyncSession,
    room_id: str,
    inviter: str,
    invitee: str,
) -> RoomInvitation:
    """Invite a user to a private room and notify them."""
    room = await _require_private_room(db, room_id)
    await _require_manager(db, room_id, inviter)
    if await get_user(db, invitee) is None:
        raise NotFoundError(f"User {invitee} not found")
    if await get_membership(db, room_id, invitee) is not None:
        raise ValidationFailure(f"{invitee} is already a member")

    result = await db.execute(
        select(RoomInvitation).where(
            RoomInvitation.room_id == room_id,
            RoomInvitation.invitee_username == invitee,
            RoomInvitation.status == "pending",
        )
    )
    invitation = result.scalar_one_or_none()
    if invitation is not None:
        return invitation

    invitation = RoomInvitation(
        room_id=room_id,
        inviter_username=inviter,
        invitee_username=invitee,
        status="pending",
        created_at=datetime.now(timezone.utc),
    )
    db.add(invitation)
    await db.flush()

    await create_notification(
        db,
        invitee,
        "invitation",
        f"Invitation to {room.name}",
        f"{inviter} invited you to join {room.name}",
        {"invitationId": invitation.id, "roomId": room_id},
    )
    return invitation


async def respond_to_invitation(
    db: AsyncSession, invitation_id: int, username: str, accept: bool,
) -> tuple[RoomInvitation, RoomMembership | None]:
    """Accept (creating a member row) or decline a pending invitation."""
    invitation = await db.get(RoomInvitation, invitation_id)
    if invitation is None or invitation.invitee_username != username:
        raise NotFoundError("Invitation not found")
    if invitation.status != "pending":
        raise ValidationFailure(f"Invitation already {invitation.status}")

    invitation.status = "accepted" if accept else "declined"
    invitation.responded_at = datetime.now(timezone.utc)

    membership = None
    if accept:
        membership = await get_membership(db, invitation.room_id, username)
        if membership is None:
            membership = RoomMembership(room_id=invitation.room_id, username=username, role="member")
            db.add(membership)
    await db.flush()
    return invitation, membership


async def remove_member(db: AsyncSession, room_id: str, actor: str, member: str) -> None:
    """Revoke a member's access. The owner cannot be removed."""
    await _require_private_room(db, room_id)
    await _require_manager(db, room_id, actor)

    membership = await get_membership(db, room_id, member)
    if membership is None:
        raise NotFoundError(f"{member} is not a member of this room")
    if membership.role == "owner":
        raise PermissionDeniedError("The room owner cannot be removed")

    await db.delete(membership)
    await db.flush()
    logger.info("%s removed %s from %s", actor, member, room_id)


async def set_member_role(db: AsyncSession, room_id: str, actor: str, member: str, role: str) -> RoomMembership:
    """Owner-only: switch a member between moderator and member."""
    if role not in ("moderator", "member"):
        raise ValidationFailure("Role must be moderator or member")
    room = await _require_private_room(db, room_id)
    if room.owner_username != actor:
        raise PermissionDeniedError("Only the room owner can change roles")

    membership = await get_membership(db, room_id, member)
    if membership is None:
        raise NotFoundError(f"{member} is not a member of this room")
    if membership.role == "owner":
        raise ValidationFailure("The owner's role cannot be changed")

    membership.role = role
    await db.flush()
    return membership
