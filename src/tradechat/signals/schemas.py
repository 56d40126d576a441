"""Pydantic schemas for signal history and trader stats endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class SignalResponse(BaseModel):
    message_id: int
    room: str
    pair: str
    direction: str
    entry_price: float
    stop_loss: float
    take_profit: float
    risk_reward: str | None = None
    outcome: str
    close_price: float | None = None
    pips_gained: float
    created_at: datetime
    closed_at: datetime | None = None
    closed_by: str | None = None


class SignalHistoryResponse(BaseModel):
    username: str
    signals: list[SignalResponse]
    total: int
    pairs: list[str]


class TradeRefResponse(BaseModel):
    message_id: int
    pair: str
    direction: str
    pips: float
    closed_at: datetime | None = None


class PairStatsResponse(BaseModel):
    pair: str
    won: int
    lost: int
    pips: float
    win_rate: float


class StreakResponse(BaseModel):
    type: Literal["win", "loss", "none"]
    count: int


class TimelinePointResponse(BaseModel):
    message_id: int
    closed_at: datetime | None = None
    outcome: str
    pips: float
    cumulative_pips: float


class TraderStatsResponse(BaseModel):
    username: str
    subscription_tier: str
    member_since: datetime | None = None
    followers: int
    following: int
    period: Literal["all", "week", "month"]
    total_signals: int
    won: int
    lost: int
    pending: int
    win_rate: float
    total_pips: float
    avg_pips_per_win: float
    avg_pips_per_loss: float
    avg_risk_reward: float | None = None
    best_trade: TradeRefResponse | None = None
    worst_trade: TradeRefResponse | None = None
    best_pair: str | None = None
    worst_pair: str | None = None
    current_streak: StreakResponse
    pairs: list[PairStatsResponse]
    timeline: list[TimelinePointResponse]
