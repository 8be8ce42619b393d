"""Tests for the statistics aggregator."""

from __future__ import annotations

import math
import random

import pytest

from strategylab.backtesting.metrics import canonical_order, compute_stats, profit_factor
from strategylab.common.schemas import MINUTE_MS
from tests.factories import SESSION_OPEN_TS, make_trade


def _winner(i: int = 0, symbol: str = "SPY", pnl: float = 2.0):
    return make_trade(
        symbol=symbol,
        entry_timestamp=SESSION_OPEN_TS + i * MINUTE_MS,
        exit_timestamp=SESSION_OPEN_TS + (i + 5) * MINUTE_MS,
        exit_price=100.0 + pnl,
        exit_reason="TARGET_HIT",
        pnl=pnl,
        pnl_percent=pnl,
        r_multiple=pnl,
        bars_held=5,
    )


def _loser(i: int = 0, symbol: str = "SPY", pnl: float = -1.0):
    return make_trade(
        symbol=symbol,
        entry_timestamp=SESSION_OPEN_TS + i * MINUTE_MS,
        exit_timestamp=SESSION_OPEN_TS + (i + 2) * MINUTE_MS,
        exit_price=100.0 + pnl,
        exit_reason="STOP_HIT",
        pnl=pnl,
        pnl_percent=pnl,
        r_multiple=pnl,
        bars_held=2,
    )


class TestProfitFactor:
    def test_ratio(self):
        assert profit_factor(6.0, 3.0) == 2.0

    def test_no_losses_with_profit_is_infinite(self):
        assert math.isinf(profit_factor(5.0, 0.0))

    def test_no_profit_no_loss_is_zero(self):
        assert profit_factor(0.0, 0.0) == 0.0


class TestComputeStats:
    def test_empty_trade_list(self):
        stats = compute_stats("breakout_bullish", [])
        assert stats.total_trades == 0
        assert stats.win_rate == 0.0
        assert stats.profit_factor == 0.0
        assert stats.trades == []

    def test_mixed_results(self):
        trades = [_winner(0), _winner(10, pnl=4.0), _loser(20), _loser(30, pnl=-2.0)]

        stats = compute_stats("breakout_bullish", trades)

        assert stats.total_trades == 4
        assert stats.winners == 2
        assert stats.losers == 2
        assert stats.win_rate == 0.5
        assert stats.total_pnl == pytest.approx(3.0)
        assert stats.gross_profit == pytest.approx(6.0)
        assert stats.gross_loss == pytest.approx(3.0)
        assert stats.profit_factor == pytest.approx(2.0)
        assert stats.expectancy == pytest.approx(0.75)
        assert stats.avg_win == pytest.approx(3.0)
        assert stats.avg_loss == pytest.approx(-1.5)
        assert stats.largest_win == pytest.approx(4.0)
        assert stats.largest_loss == pytest.approx(-2.0)
        assert stats.avg_win_bars == 5.0
        assert stats.avg_loss_bars == 2.0
        assert stats.avg_bars_held == 3.5

    def test_breakeven_trades_counted_separately(self):
        stats = compute_stats("x", [_winner(0), make_trade(pnl=0.0, pnl_percent=0.0, r_multiple=0.0)])
        assert stats.breakeven == 1
        assert stats.win_rate == 0.5

    def test_all_winners_profit_factor_infinite(self):
        stats = compute_stats("x", [_winner(0), _winner(10)])
        assert math.isinf(stats.profit_factor)

    def test_permutation_invariant(self):
        """Any ordering of the same trades produces identical statistics."""
        trades = [_winner(i) if i % 3 else _loser(i, pnl=-0.1 * i) for i in range(30)]
        shuffled = list(trades)
        random.Random(7).shuffle(shuffled)

        assert compute_stats("x", trades) == compute_stats("x", shuffled)

    def test_trades_returned_in_canonical_order(self):
        trades = [_winner(10), _winner(0), _winner(5, symbol="QQQ")]
        stats = compute_stats("x", trades)
        assert stats.trades == canonical_order(trades)
        assert [t.entry_timestamp for t in stats.trades] == sorted(t.entry_timestamp for t in trades)


class TestBreakdowns:
    def test_by_symbol(self):
        trades = [_winner(0, "SPY"), _loser(10, "SPY"), _winner(20, "QQQ")]

        stats = compute_stats("x", trades)

        assert list(stats.by_symbol) == ["QQQ", "SPY"]
        assert stats.by_symbol["SPY"].total_trades == 2
        assert stats.by_symbol["SPY"].win_rate == 0.5
        assert stats.by_symbol["SPY"].total_pnl == pytest.approx(1.0)
        assert stats.by_symbol["QQQ"].expectancy == pytest.approx(2.0)

    def test_by_exit_reason(self):
        trades = [_winner(0), _winner(10), _loser(20)]

        stats = compute_stats("x", trades)

        assert stats.by_exit_reason["TARGET_HIT"].total_trades == 2
        assert stats.by_exit_reason["STOP_HIT"].losers == 1
