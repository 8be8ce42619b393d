"""Statistics aggregator for backtest results.

Pure reduction from a list of completed trades to a BacktestStats record:
- Counts, win rate, total P&L (price units and percent)
- Average/largest win and loss (percent of entry)
- Gross profit/loss and profit factor
- Expectancy (mean R-multiple) and bars-held averages split by outcome
- Per-symbol and per-exit-reason breakdowns

Trades are sorted into a canonical order and summed with math.fsum, so any
permutation of the same list yields identical statistics.

Usage:
    from strategylab.backtesting.metrics import compute_stats

    stats = compute_stats("breakout_bullish", trades)
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from strategylab.backtesting.schemas import BacktestStats, GroupStats, Trade
from strategylab.common.logging import get_logger

logger = get_logger("STATS")


def canonical_order(trades: Iterable[Trade]) -> list[Trade]:
    """Sort trades by entry time, then symbol, exit time and the remaining fields."""
    return sorted(
        trades,
        key=lambda t: (
            t.entry_timestamp,
            t.symbol,
            t.exit_timestamp,
            t.detector,
            t.direction,
            t.entry_price,
            t.exit_price,
            t.pnl,
        ),
    )


def profit_factor(gross_profit: float, gross_loss: float) -> float:
    """gross_profit / gross_loss, +inf with no losses and some profit, 0 with neither."""
    if gross_loss > 0:
        return gross_profit / gross_loss
    return math.inf if gross_profit > 0 else 0.0


def _mean(values: Sequence[float]) -> float:
    return math.fsum(values) / len(values) if values else 0.0


def compute_stats(detector: str, trades: Iterable[Trade]) -> BacktestStats:
    """Reduce a closed-trade list to aggregate statistics.

    Args:
        detector: Detector identifier recorded on the result.
        trades: Completed trades in any order.

    Returns:
        BacktestStats with trades in canonical order. An empty list yields the
        all-zero record.
    """
    ordered = canonical_order(trades)
    if not ordered:
        return BacktestStats(detector=detector)

    winners = [t for t in ordered if t.pnl > 0]
    losers = [t for t in ordered if t.pnl < 0]
    total = len(ordered)

    gross_profit = math.fsum(t.pnl for t in winners)
    gross_loss = abs(math.fsum(t.pnl for t in losers))
    expectancy = _mean([t.r_multiple for t in ordered])

    stats = BacktestStats(
        detector=detector,
        total_trades=total,
        winners=len(winners),
        losers=len(losers),
        breakeven=total - len(winners) - len(losers),
        win_rate=len(winners) / total,
        total_pnl=math.fsum(t.pnl for t in ordered),
        total_pnl_percent=math.fsum(t.pnl_percent for t in ordered),
        avg_win=_mean([t.pnl_percent for t in winners]),
        avg_loss=_mean([t.pnl_percent for t in losers]),
        largest_win=max((t.pnl_percent for t in winners), default=0.0),
        largest_loss=min((t.pnl_percent for t in losers), default=0.0),
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        profit_factor=profit_factor(gross_profit, gross_loss),
        expectancy=expectancy,
        avg_r_multiple=expectancy,
        avg_bars_held=_mean([t.bars_held for t in ordered]),
        avg_win_bars=_mean([t.bars_held for t in winners]),
        avg_loss_bars=_mean([t.bars_held for t in losers]),
        by_symbol=_group_by(ordered, lambda t: t.symbol),
        by_exit_reason=_group_by(ordered, lambda t: t.exit_reason),
        trades=ordered,
    )

    logger.debug(
        "Stats computed",
        extra={
            "data": {
                "detector": detector,
                "trades": total,
                "win_rate": round(stats.win_rate, 4),
                "expectancy": round(expectancy, 4),
            }
        },
    )
    return stats


def _group_by(trades: list[Trade], key) -> dict[str, GroupStats]:
    """Per-group counts, win rate, P&L and expectancy.

    Args:
        trades: Trades in canonical order.
        key: Callable mapping a trade to its group name.

    Returns:
        Dict mapping group name → GroupStats, keys sorted.
    """
    groups: dict[str, list[Trade]] = {}
    for trade in trades:
        groups.setdefault(key(trade), []).append(trade)

    result: dict[str, GroupStats] = {}
    for name in sorted(groups):
        group = groups[name]
        wins = sum(1 for t in group if t.pnl > 0)
        result[name] = GroupStats(
            total_trades=len(group),
            winners=wins,
            losers=sum(1 for t in group if t.pnl < 0),
            win_rate=wins / len(group),
            total_pnl=math.fsum(t.pnl for t in group),
            expectancy=_mean([t.r_multiple for t in group]),
        )
    return result
