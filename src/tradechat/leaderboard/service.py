"""Leaderboard aggregation over official signal outcomes.

Read-only: every call reads the metadata rows, groups them by author and
ranks the result. Nothing is cached.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.db.models import OfficialSignalMetadata
from tradechat.errors import ValidationFailure

logger = logging.getLogger(__name__)

SORT_KEYS = ("winRate", "totalSignals", "totalPips")

PERIOD_DAYS: dict[str, int | None] = {
    "all": None,
    "week": 7,
    "month": 30,
}


@dataclass
class TraderSummary:
    username: str
    total_signals: int = 0
    won: int = 0
    lost: int = 0
    pending: int = 0
    total_pips: float = 0.0
    win_rate: float = 0.0

    @property
    def completed_signals(self) -> int:
        return self.won + self.lost

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "username": data["username"],
            "totalSignals": data["total_signals"],
            "won": data["won"],
            "lost": data["lost"],
            "pending": data["pending"],
            "totalPips": round(data["total_pips"], 1),
            "winRate": data["win_rate"],
            "completedSignals": self.completed_signals,
        }


def compute_win_rate(won: int, lost: int) -> float:
    """Percentage of completed signals won, half-up to one decimal; 0 with none completed."""
    completed = won + lost
    if completed == 0:
        return 0.0
    rate = Decimal(won) / Decimal(completed) * 100
    return float(rate.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def aggregate_by_author(rows: Iterable[OfficialSignalMetadata]) -> dict[str, TraderSummary]:
    """Group metadata rows by author, counting outcomes and summing signed pips."""
    stats: dict[str, TraderSummary] = {}
    for row in rows:
        summary = stats.setdefault(row.author_username, TraderSummary(username=row.author_username))
        summary.total_signals += 1
        if row.outcome == "win":
            summary.won += 1
            summary.total_pips += row.pips_gained or 0.0
        elif row.outcome == "loss":
            summary.lost += 1
            # Already negative for losing trades
            summary.total_pips += row.pips_gained or 0.0
        else:
            summary.pending += 1

    for summary in stats.values():
        summary.win_rate = compute_win_rate(summary.won, summary.lost)
    return stats


def rank_traders(
    summaries: Iterable[TraderSummary],
    min_completed_signals: int,
    sort_key: str = "winRate",
    limit: int | None = None,
) -> list[TraderSummary]:
    """Filter by completed-signal threshold, sort and optionally truncate."""
    if sort_key not in SORT_KEYS:
        raise ValidationFailure(f"Invalid sort key: {sort_key}. Must be one of {', '.join(SORT_KEYS)}")

    eligible = [s for s in summaries if s.completed_signals >= min_completed_signals]

    if sort_key == "winRate":
        eligible.sort(key=lambda s: (s.win_rate, s.completed_signals), reverse=True)
    elif sort_key == "totalSignals":
        eligible.sort(key=lambda s: s.total_signals, reverse=True)
    else:
        eligible.sort(key=lambda s: s.total_pips, reverse=True)

    if limit is not None:
        eligible = eligible[:limit]
    return eligible


async def compute_leaderboard(
    db: AsyncSession,
    min_completed_signals: int,
    sort_key: str = "winRate",
    limit: int | None = None,
    period: str = "all",
) -> list[TraderSummary]:
    """Read all official signal metadata (optionally time-filtered) and rank authors."""
    if period not in PERIOD_DAYS:
        raise ValidationFailure(f"Invalid period: {period}. Must be one of {', '.join(PERIOD_DAYS)}")

    query = select(OfficialSignalMetadata)
    days = PERIOD_DAYS[period]
    if days is not None:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        query = query.where(OfficialSignalMetadata.created_at >= cutoff)

    result = await db.execute(query)
    stats = aggregate_by_author(result.scalars())
    ranked = rank_traders(stats.values(), min_completed_signals, sort_key, limit)
    logger.debug("Leaderboard computed: %d authors, %d ranked", len(stats), len(ranked))
    return ranked
