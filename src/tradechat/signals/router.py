"""Signal history API endpoint."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tradechat.database import get_session
from tradechat.signals.lifecycle import get_signal_history
from tradechat.signals.schemas import SignalHistoryResponse, SignalResponse

router = APIRouter(prefix="/api/v1", tags=["Signals"])


@router.get("/signals/{username}", response_model=SignalHistoryResponse)
async def signal_history_endpoint(
    username: str,
    outcome: Literal["pending", "win", "loss"] | None = Query(None),
    pair: str | None = Query(None, max_length=32),
    since_days: int | None = Query(None, ge=1, le=3650),
    sort: Literal["newest", "oldest", "highest-pips", "lowest-pips"] = Query("newest"),
    db: AsyncSession = Depends(get_session),
):
    """An author's official signals, filtered and sorted."""
    rows = await get_signal_history(
        db,
        username,
        outcome=outcome,
        pair=pair.upper() if pair else None,
        since_days=since_days,
        sort=sort,
    )
    return SignalHistoryResponse(
        username=username,
        signals=[
            SignalResponse(
                message_id=r.message_id,
                room=r.room,
                pair=r.pair,
                direction=r.direction,
                entry_price=r.entry_price,
                stop_loss=r.stop_loss,
                take_profit=r.take_profit,
                risk_reward=r.risk_reward,
                outcome=r.outcome,
                close_price=r.close_price,
                pips_gained=r.pips_gained,
                created_at=r.created_at,
                closed_at=r.closed_at,
                closed_by=r.closed_by,
            )
            for r in rows
        ],
        total=len(rows),
        pairs=sorted({r.pair for r in rows}),
    )
