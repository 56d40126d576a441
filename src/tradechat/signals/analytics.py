"""Per-trader performance analytics over official signal outcomes.

Read-only, like the leaderboard: every call reads the author's metadata
rows and summarises them. Pending signals count towards ``total_signals``
and ``pending`` only; everything else is computed from completed ones.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.db.models import OfficialSignalMetadata
from tradechat.errors import ValidationFailure
from tradechat.leaderboard.service import PERIOD_DAYS, compute_win_rate
from tradechat.social.follow_service import get_follow_counts
from tradechat.users.service import require_user

logger = logging.getLogger(__name__)

COMPLETED = ("win", "loss")


@dataclass
class TradeRef:
    message_id: int
    pair: str
    direction: str
    pips: float
    closed_at: datetime | None


@dataclass
class PairStats:
    pair: str
    won: int = 0
    lost: int = 0
    pips: float = 0.0

    @property
    def win_rate(self) -> float:
        return compute_win_rate(self.won, self.lost)


@dataclass
class Streak:
    type: str = "none"
    count: int = 0


@dataclass
class TimelinePoint:
    message_id: int
    closed_at: datetime | None
    outcome: str
    pips: float
    cumulative_pips: float


@dataclass
class TraderStats:
    total_signals: int = 0
    won: int = 0
    lost: int = 0
    pending: int = 0
    win_rate: float = 0.0
    total_pips: float = 0.0
    avg_pips_per_win: float = 0.0
    avg_pips_per_loss: float = 0.0
    avg_risk_reward: float | None = None
    best_trade: TradeRef | None = None
    worst_trade: TradeRef | None = None
    best_pair: str | None = None
    worst_pair: str | None = None
    current_streak: Streak = field(default_factory=Streak)
    pairs: list[PairStats] = field(default_factory=list)
    timeline: list[TimelinePoint] = field(default_factory=list)


def _closing_order(row: OfficialSignalMetadata) -> tuple:
    return (row.closed_at or row.created_at, row.message_id)


def _trade_ref(row: OfficialSignalMetadata) -> TradeRef:
    return TradeRef(
        message_id=row.message_id,
        pair=row.pair,
        direction=row.direction,
        pips=round(row.pips_gained or 0.0, 1),
        closed_at=row.closed_at,
    )


def _parse_ratio(value: str | None) -> float | None:
    if not value:
        return None
    try:
        ratio = float(value)
    except ValueError:
        return None
    return ratio if math.isfinite(ratio) else None


def current_streak(completed: Sequence[OfficialSignalMetadata]) -> Streak:
    """Run of identical outcomes ending at the most recently closed signal."""
    if not completed:
        return Streak()
    last = completed[-1].outcome
    count = 0
    for row in reversed(completed):
        if row.outcome != last:
            break
        count += 1
    return Streak(type=last, count=count)


def summarize_signals(rows: Sequence[OfficialSignalMetadata]) -> TraderStats:
    """Summarise one author's metadata rows into a TraderStats."""
    stats = TraderStats(total_signals=len(rows))
    completed = sorted((r for r in rows if r.outcome in COMPLETED), key=_closing_order)
    stats.pending = stats.total_signals - len(completed)

    win_pips: list[float] = []
    loss_pips: list[float] = []
    by_pair: dict[str, PairStats] = {}
    cumulative = 0.0

    for row in completed:
        pips = row.pips_gained or 0.0
        pair = by_pair.setdefault(row.pair, PairStats(pair=row.pair))
        pair.pips += pips
        if row.outcome == "win":
            pair.won += 1
            win_pips.append(pips)
        else:
            pair.lost += 1
            loss_pips.append(pips)

        cumulative += pips
        stats.timeline.append(
            TimelinePoint(
                message_id=row.message_id,
                closed_at=row.closed_at,
                outcome=row.outcome,
                pips=round(pips, 1),
                cumulative_pips=round(cumulative, 1),
            )
        )

    stats.won = len(win_pips)
    stats.lost = len(loss_pips)
    stats.win_rate = compute_win_rate(stats.won, stats.lost)
    stats.total_pips = round(cumulative, 1)
    if win_pips:
        stats.avg_pips_per_win = round(sum(win_pips) / len(win_pips), 1)
    if loss_pips:
        stats.avg_pips_per_loss = round(sum(loss_pips) / len(loss_pips), 1)

    ratios = [r for r in (_parse_ratio(row.risk_reward) for row in rows) if r is not None]
    if ratios:
        stats.avg_risk_reward = round(sum(ratios) / len(ratios), 2)

    if completed:
        # Ties keep the earliest close
        stats.best_trade = _trade_ref(max(completed, key=lambda r: r.pips_gained or 0.0))
        stats.worst_trade = _trade_ref(min(completed, key=lambda r: r.pips_gained or 0.0))

    for pair in by_pair.values():
        pair.pips = round(pair.pips, 1)
    stats.pairs = sorted(by_pair.values(), key=lambda p: (-p.pips, p.pair))
    if stats.pairs:
        stats.best_pair = stats.pairs[0].pair
        stats.worst_pair = stats.pairs[-1].pair

    stats.current_streak = current_streak(completed)
    return stats


async def get_trader_stats(db: AsyncSession, username: str, period: str = "all") -> dict:
    """
    Performance summary and profile counters for one trader.

    Raises:
        NotFoundError: Unknown user.
        ValidationFailure: Unknown period.
    """
    if period not in PERIOD_DAYS:
        raise ValidationFailure(f"Invalid period: {period}. Must be one of {', '.join(PERIOD_DAYS)}")

    user = await require_user(db, username)

    query = select(OfficialSignalMetadata).where(OfficialSignalMetadata.author_username == username)
    days = PERIOD_DAYS[period]
    if days is not None:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        query = query.where(OfficialSignalMetadata.created_at >= cutoff)
    result = await db.execute(query.order_by(OfficialSignalMetadata.created_at, OfficialSignalMetadata.id))
    rows = list(result.scalars())

    stats = summarize_signals(rows)
    counts = await get_follow_counts(db, username)
    logger.debug("Trader stats computed for %s: %d signals", username, stats.total_signals)
    return {
        "user": user,
        "stats": stats,
        "followers": counts["followers"],
        "following": counts["following"],
    }
