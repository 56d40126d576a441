"""Trader profile and performance stats endpoint."""

from __future__ import annotations

from dataclasses import asdict
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.database import get_session
from tradechat.signals.analytics import get_trader_stats
from tradechat.signals.schemas import (
    PairStatsResponse,
    StreakResponse,
    TimelinePointResponse,
    TradeRefResponse,
    TraderStatsResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Traders"])


@router.get("/traders/{username}/stats", response_model=TraderStatsResponse)
async def trader_stats_endpoint(
    username: str,
    period: Literal["all", "week", "month"] = Query("all"),
    db: AsyncSession = Depends(get_session),
):
    """Win/loss record, pips, per-pair breakdown, streak and follow counts. 404 for unknown users."""
    result = await get_trader_stats(db, username, period)
    user = result["user"]
    stats = result["stats"]
    return TraderStatsResponse(
        username=user.username,
        subscription_tier=user.subscription_tier,
        member_since=user.created_at,
        followers=result["followers"],
        following=result["following"],
        period=period,
        total_signals=stats.total_signals,
        won=stats.won,
        lost=stats.lost,
        pending=stats.pending,
        win_rate=stats.win_rate,
        total_pips=stats.total_pips,
        avg_pips_per_win=stats.avg_pips_per_win,
        avg_pips_per_loss=stats.avg_pips_per_loss,
        avg_risk_reward=stats.avg_risk_reward,
        best_trade=TradeRefResponse(**asdict(stats.best_trade)) if stats.best_trade else None,
        worst_trade=TradeRefResponse(**asdict(stats.worst_trade)) if stats.worst_trade else None,
        best_pair=stats.best_pair,
        worst_pair=stats.worst_pair,
        current_streak=StreakResponse(**asdict(stats.current_streak)),
        pairs=[
            PairStatsResponse(pair=p.pair, won=p.won, lost=p.lost, pips=p.pips, win_rate=p.win_rate)
            for p in stats.pairs
        ],
        timeline=[TimelinePointResponse(**asdict(point)) for point in stats.timeline],
    )
