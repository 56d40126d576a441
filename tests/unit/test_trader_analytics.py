"""Unit tests for per-trader performance summaries."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from tradechat.signals.analytics import current_streak, summarize_signals

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _row(message_id: int, outcome: str, pips: float = 0.0, pair: str = "XAUUSD", closed_after: int | None = None,
         risk_reward: str | None = "2.00"):
    created = T0 + timedelta(hours=message_id)
    closed = None if outcome == "pending" else created + timedelta(hours=closed_after or 1)
    return SimpleNamespace(
        message_id=message_id,
        pair=pair,
        direction="BUY",
        outcome=outcome,
        pips_gained=pips,
        risk_reward=risk_reward,
        created_at=created,
        closed_at=closed,
    )


class TestSummarizeSignals:
    def test_no_signals(self):
        stats = summarize_signals([])
        assert stats.total_signals == 0
        assert stats.win_rate == 0.0
        assert stats.best_trade is None
        assert stats.current_streak.type == "none"
        assert stats.pairs == []

    def test_counts_and_averages(self):
        rows = [
            _row(1, "win", 50),
            _row(2, "loss", -30, pair="EURUSD"),
            _row(3, "win", 100, pair="EURUSD"),
            _row(4, "pending"),
        ]
        stats = summarize_signals(rows)
        assert (stats.total_signals, stats.won, stats.lost, stats.pending) == (4, 2, 1, 1)
        assert stats.win_rate == 66.7
        assert stats.total_pips == 120.0
        assert stats.avg_pips_per_win == 75.0
        assert stats.avg_pips_per_loss == -30.0
        assert stats.avg_risk_reward == 2.0
        assert stats.best_trade.message_id == 3
        assert stats.worst_trade.message_id == 2

    def test_pair_breakdown(self):
        rows = [
            _row(1, "win", 50),
            _row(2, "loss", -30, pair="EURUSD"),
            _row(3, "win", 100, pair="EURUSD"),
            _row(4, "loss", -80, pair="GBPJPY"),
        ]
        stats = summarize_signals(rows)
        assert [p.pair for p in stats.pairs] == ["EURUSD", "XAUUSD", "GBPJPY"]
        eurusd = stats.pairs[0]
        assert (eurusd.won, eurusd.lost, eurusd.pips, eurusd.win_rate) == (1, 1, 70.0, 50.0)
        assert stats.best_pair == "EURUSD"
        assert stats.worst_pair == "GBPJPY"

    def test_timeline_follows_close_order(self):
        # Signal 1 stays open longest, so it closes last
        rows = [_row(1, "win", 50, closed_after=10), _row(2, "loss", -20), _row(3, "win", 10)]
        stats = summarize_signals(rows)
        assert [p.message_id for p in stats.timeline] == [2, 3, 1]
        assert [p.cumulative_pips for p in stats.timeline] == [-20.0, -10.0, 40.0]
        assert stats.current_streak.type == "win"
        assert stats.current_streak.count == 2

    def test_unparseable_risk_reward_ignored(self):
        rows = [_row(1, "pending", risk_reward="1:3"), _row(2, "pending", risk_reward="3.00")]
        assert summarize_signals(rows).avg_risk_reward == 3.0


class TestCurrentStreak:
    def test_losing_streak(self):
        rows = [_row(1, "win", 10), _row(2, "loss", -5), _row(3, "loss", -5), _row(4, "loss", -5)]
        streak = current_streak(rows)
        assert (streak.type, streak.count) == ("loss", 3)

    def test_empty(self):
        streak = current_streak([])
        assert (streak.type, streak.count) == ("none", 0)
