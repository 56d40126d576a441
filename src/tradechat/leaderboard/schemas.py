"""Pydantic schemas for leaderboard endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class TraderSummaryResponse(BaseModel):
    rank: int
    username: str
    total_signals: int
    won: int
    lost: int
    pending: int
    completed_signals: int
    total_pips: float
    win_rate: float


class LeaderboardResponse(BaseModel):
    entries: list[TraderSummaryResponse]
    total: int
    period: Literal["all", "week", "month"]
    sort_by: Literal["winRate", "totalSignals", "totalPips"]
    min_completed_signals: int
