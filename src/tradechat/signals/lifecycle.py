"""Official signal lifecycle: pending -> win | loss.

Only official signal messages carry a metadata row. Transitions are
author-only and one-way; closed signals cannot be reopened. The close is
a conditional update on (outcome='pending', version) so two racing closes
cannot both succeed.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.db.models import Message, OfficialSignalMetadata
from tradechat.errors import (
    NotFoundError,
    PermissionDeniedError,
    SignalAlreadyClosedError,
    ValidationFailure,
)
from tradechat.signals.pips import calculate_pips

logger = logging.getLogger(__name__)

OUTCOMES = ("pending", "win", "loss")

VALID_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["win", "loss"],
    "win": [],
    "loss": [],
}

HISTORY_SORTS = ("newest", "oldest", "highest-pips", "lowest-pips")


def validate_transition(current: str, target: str) -> None:
    """Raise if ``current -> target`` is not an allowed outcome transition."""
    if target not in OUTCOMES or target == "pending":
        raise ValidationFailure(f"Invalid outcome: {target}. Must be win or loss")
    if target not in VALID_TRANSITIONS.get(current, []):
        raise SignalAlreadyClosedError(f"Signal is already closed as {current}")


def metadata_to_dict(meta: OfficialSignalMetadata) -> dict[str, Any]:
    return {
        "messageId": meta.message_id,
        "authorUsername": meta.author_username,
        "room": meta.room,
        "pair": meta.pair,
        "direction": meta.direction,
        "entryPrice": meta.entry_price,
        "stopLoss": meta.stop_loss,
        "takeProfit": meta.take_profit,
        "riskReward": meta.risk_reward,
        "outcome": meta.outcome,
        "closePrice": meta.close_price,
        "pipsGained": meta.pips_gained,
        "createdAt": meta.created_at.isoformat() if meta.created_at else None,
        "closedAt": meta.closed_at.isoformat() if meta.closed_at else None,
        "closedBy": meta.closed_by,
    }


async def create_signal_metadata(db: AsyncSession, message: Message) -> OfficialSignalMetadata:
    """Create the pending metadata row for a freshly persisted official signal."""
    signal = message.signal or {}
    meta = OfficialSignalMetadata(
        message_id=message.id,
        author_username=message.username,
        room=message.room,
        pair=signal["pair"],
        direction=signal["direction"],
        entry_price=signal["entry"],
        stop_loss=signal["stopLoss"],
        take_profit=signal["takeProfit"],
        risk_reward=signal.get("riskReward"),
        outcome="pending",
        pips_gained=0.0,
        created_at=message.created_at or datetime.now(timezone.utc),
    )
    db.add(meta)
    await db.flush()
    return meta


async def get_signal_metadata(db: AsyncSession, message_id: int) -> OfficialSignalMetadata | None:
    result = await db.execute(
        select(OfficialSignalMetadata).where(OfficialSignalMetadata.message_id == message_id)
    )
    return result.scalar_one_or_none()


async def get_metadata_for_messages(
    db: AsyncSession, message_ids: list[int],
) -> dict[int, OfficialSignalMetadata]:
    """Batch-load metadata rows keyed by message id."""
    if not message_ids:
        return {}
    result = await db.execute(
        select(OfficialSignalMetadata).where(OfficialSignalMetadata.message_id.in_(message_ids))
    )
    return {m.message_id: m for m in result.scalars()}


async def delete_signal_metadata(db: AsyncSession, message_id: int) -> None:
    await db.execute(
        delete(OfficialSignalMetadata).where(OfficialSignalMetadata.message_id == message_id)
    )


async def close_signal(
    db: AsyncSession,
    message_id: int,
    actor: str,
    outcome: str,
    close_price: float | None,
) -> OfficialSignalMetadata:
    """
    Close an official signal as win or loss and record pips gained.

    Raises:
        NotFoundError: Message or metadata does not exist.
        ValidationFailure: Not an official signal, bad outcome or missing close price.
        PermissionDeniedError: Actor is not the signal's author.
        SignalAlreadyClosedError: Signal is not pending (or lost a concurrent close).
    """
    meta = await get_signal_metadata(db, message_id)
    if meta is None:
        message = await db.get(Message, message_id)
        if message is None:
            raise NotFoundError("Signal not found")
        raise ValidationFailure("Only official signals track outcomes")

    if meta.author_username != actor:
        raise PermissionDeniedError("Only the signal author can update its outcome")

    validate_transition(meta.outcome, outcome)

    if close_price is None:
        raise ValidationFailure("Close price is required to close a signal")
    if not math.isfinite(close_price) or close_price <= 0:
        raise ValidationFailure("Close price must be a positive finite number")

    pips = calculate_pips(meta.direction, meta.entry_price, close_price, pair=meta.pair)
    now = datetime.now(timezone.utc)

    result = await db.execute(
        update(OfficialSignalMetadata)
        .where(
            OfficialSignalMetadata.id == meta.id,
            OfficialSignalMetadata.outcome == "pending",
            OfficialSignalMetadata.version == meta.version,
        )
        .values(
            outcome=outcome,
            close_price=close_price,
            pips_gained=pips,
            closed_at=now,
            closed_by=actor,
            version=meta.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise SignalAlreadyClosedError("Signal was already closed by another update")

    await db.flush()
    await db.refresh(meta)
    logger.info(
        "Signal %s closed as %s by %s (%.1f pips)", message_id, outcome, actor, pips,
    )
    return meta


async def get_signal_history(
    db: AsyncSession,
    author_username: str,
    outcome: str | None = None,
    pair: str | None = None,
    since_days: int | None = None,
    sort: str = "newest",
) -> list[OfficialSignalMetadata]:
    """List an author's official signals with optional filters."""
    if sort not in HISTORY_SORTS:
        raise ValidationFailure(f"Invalid sort: {sort}. Must be one of {', '.join(HISTORY_SORTS)}")
    if outcome is not None and outcome not in OUTCOMES:
        raise ValidationFailure(f"Invalid outcome filter: {outcome}")

    query = select(OfficialSignalMetadata).where(
        OfficialSignalMetadata.author_username == author_username
    )
    if outcome is not None:
        query = query.where(OfficialSignalMetadata.outcome == outcome)
    if pair is not None:
        query = query.where(OfficialSignalMetadata.pair == pair)
    if since_days is not None:
        cutoff = datetime.now(timezone.utc) - timedelta(days=since_days)
        query = query.where(OfficialSignalMetadata.created_at >= cutoff)

    order = {
        "newest": (OfficialSignalMetadata.created_at.desc(), OfficialSignalMetadata.id.desc()),
        "oldest": (OfficialSignalMetadata.created_at.asc(), OfficialSignalMetadata.id.asc()),
        "highest-pips": (OfficialSignalMetadata.pips_gained.desc(), OfficialSignalMetadata.id.desc()),
        "lowest-pips": (OfficialSignalMetadata.pips_gained.asc(), OfficialSignalMetadata.id.asc()),
    }[sort]

    result = await db.execute(query.order_by(*order))
    return list(result.scalars().all())
