"""Leaderboard API endpoint."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.config import get_settings
from tradechat.database import get_session
from tradechat.leaderboard.schemas import LeaderboardResponse, TraderSummaryResponse
from tradechat.leaderboard.service import compute_leaderboard

router = APIRouter(prefix="/api/v1", tags=["Leaderboard"])


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard_endpoint(
    period: Literal["all", "week", "month"] = Query("all"),
    sort_by: Literal["winRate", "totalSignals", "totalPips"] = Query("winRate"),
    min_signals: int | None = Query(None, ge=0),
    limit: int | None = Query(None, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
):
    """Full ranked leaderboard; unbounded unless ``limit`` is given."""
    settings = get_settings()
    threshold = min_signals if min_signals is not None else settings.leaderboard_min_completed_signals
    ranked = await compute_leaderboard(db, threshold, sort_key=sort_by, limit=limit, period=period)
    return LeaderboardResponse(
        entries=[
            TraderSummaryResponse(
                rank=index + 1,
                username=row.username,
                total_signals=row.total_signals,
                won=row.won,
                lost=row.lost,
                pending=row.pending,
                completed_signals=row.completed_signals,
                total_pips=round(row.total_pips, 1),
                win_rate=row.win_rate,
            )
            for index, row in enumerate(ranked)
        ],
        total=len(ranked),
        period=period,
        sort_by=sort_by,
        min_completed_signals=threshold,
    )
