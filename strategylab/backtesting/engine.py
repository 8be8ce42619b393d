"""Event-driven backtest engine.

For every symbol, the base-timeframe bars (typically 1m) are the clock. Each
tick is processed in this order:

1. Manage open trades on the tick: stop, target, max hold, breakeven,
   partial trim, trailing stop.
2. If the warm-up has elapsed, no trade blocks entry, and the tick closes a
   strategy-timeframe bar, build the feature snapshot and call the detector.
3. A detection at bar i enters at bar i+1's open. With no bar i+1 the
   signal is discarded.

Closed trades are moved out of the active list as immutable Trade records.
All data is loaded before simulation starts; no I/O happens in the loop.

Usage:
    from strategylab.backtesting.engine import EventDrivenBacktestEngine

    engine = EventDrivenBacktestEngine(config, loader)
    stats = await engine.run(get_detector("breakout_bullish"))
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from datetime import timedelta

from strategylab.backtesting.exceptions import InsufficientDataError
from strategylab.backtesting.features import (
    HigherTimeframeContext,
    build_features,
    day_bounds,
    session_date,
)
from strategylab.backtesting.metrics import compute_stats
from strategylab.backtesting.schemas import ActiveTrade, BacktestConfig, BacktestStats, Trade
from strategylab.backtesting.slippage import SpreadEstimator
from strategylab.common.exceptions import ConfigurationError
from strategylab.common.logging import get_logger
from strategylab.common.metrics import (
    BACKTEST_DURATION_SECONDS,
    BACKTEST_RUNS_TOTAL,
    SIMULATED_TRADES_TOTAL,
)
from strategylab.common.schemas import Bar, ExitReason, FlowEvent, timeframe_ms
from strategylab.data.loader import MultiTimeframeLoader
from strategylab.detectors.base import DetectionResult, Detector

logger = get_logger("BACKTEST")

# Base bars handed to the features builder per tick: enough for today's
# session plus the prior day even with extended-hours 1m data.
HISTORY_WINDOW = 2000

TRIM_FRACTION = 0.5


class EventDrivenBacktestEngine:
    """Replays one detector over the configured symbols.

    Each instance owns its trade lists; run concurrent evaluations with
    separate instances sharing one loader.

    Args:
        config: Validated run configuration.
        loader: Data loader (required for `run`; `simulate_symbol` works without it).
        spread_estimator: Spread model for realistic slippage / liquidity filtering.

    Raises:
        ConfigurationError: If the strategy timeframe is not a whole multiple
            of the base timeframe.
    """

    def __init__(
        self,
        config: BacktestConfig,
        loader: MultiTimeframeLoader | None = None,
        spread_estimator: SpreadEstimator | None = None,
    ) -> None:
        self.config = config
        self.loader = loader
        self.base_ms = timeframe_ms(config.base_timeframe)
        self.tf_ms = timeframe_ms(config.timeframe)
        if self.tf_ms < self.base_ms or self.tf_ms % self.base_ms != 0:
            raise ConfigurationError(
                "Strategy timeframe must be a whole multiple of the base timeframe",
                context={"timeframe": config.timeframe, "base_timeframe": config.base_timeframe},
            )
        if spread_estimator is None and (config.use_realistic_slippage or config.filter_illiquid):
            spread_estimator = SpreadEstimator()
        self.spread_estimator = spread_estimator

        self.active_trades: list[ActiveTrade] = []
        self.completed_trades: list[Trade] = []

    # ─── Runs ───

    def date_range_ms(self) -> tuple[int, int]:
        """Configured date range as inclusive epoch-ms bounds (New York days)."""
        start_ms, _, _ = day_bounds(self.config.start_date)
        after_end, _, _ = day_bounds(self.config.end_date + timedelta(days=1))
        return start_ms, after_end - 1

    async def run(self, detector: Detector) -> BacktestStats:
        """Load data and simulate every configured symbol sequentially.

        Symbols without enough base bars are skipped and logged.

        Raises:
            ConfigurationError: If no loader was supplied.
        """
        if self.loader is None:
            raise ConfigurationError("A data loader is required to run a backtest")

        started = time.monotonic()
        self.active_trades = []
        self.completed_trades = []
        start_ms, end_ms = self.date_range_ms()

        logger.info(
            "Backtest started",
            extra={
                "data": {
                    "detector": detector.type,
                    "symbols": self.config.symbols,
                    "timeframe": self.config.timeframe,
                    "start_date": str(self.config.start_date),
                    "end_date": str(self.config.end_date),
                }
            },
        )

        for symbol in self.config.symbols:
            bars_by_tf = await self.loader.load(symbol, start_ms, end_ms, self.config.timeframes)
            try:
                self._require_warmup(symbol, bars_by_tf)
            except InsufficientDataError as exc:
                logger.warning("Insufficient base bars, skipping symbol", extra={"data": exc.context})
                continue

            flow = await self.loader.load_flow(symbol, start_ms, end_ms)
            self.simulate_symbol(symbol, detector, bars_by_tf, flow)

        stats = compute_stats(detector.type, self.completed_trades)
        duration = time.monotonic() - started
        stats = stats.model_copy(update={"duration_seconds": round(duration, 4)})

        BACKTEST_RUNS_TOTAL.labels(detector=detector.type).inc()
        BACKTEST_DURATION_SECONDS.observe(duration)
        logger.info(
            "Backtest complete",
            extra={
                "data": {
                    "detector": detector.type,
                    "trades": stats.total_trades,
                    "win_rate": round(stats.win_rate, 4),
                    "expectancy": round(stats.expectancy, 4),
                    "duration_seconds": round(duration, 2),
                }
            },
        )
        return stats

    async def run_many(self, detectors: Sequence[Detector]) -> dict[str, BacktestStats]:
        """Run a suite of detectors one after another. Bars come from the loader cache."""
        results: dict[str, BacktestStats] = {}
        for detector in detectors:
            results[detector.type] = await self.run(detector)
        return results

    # ─── Simulation ───

    def simulate_symbol(
        self,
        symbol: str,
        detector: Detector,
        bars_by_tf: dict[str, list[Bar]],
        flow: Sequence[FlowEvent] | None = None,
    ) -> list[Trade]:
        """Replay one symbol's bars through the detector.

        Args:
            symbol: Ticker symbol.
            detector: Signal source.
            bars_by_tf: Ordered bars per timeframe; the base timeframe is the clock.
            flow: Flow events for the symbol over the run.

        Returns:
            Trades completed for this symbol (also appended to `completed_trades`).
        """
        base = bars_by_tf.get(self.config.base_timeframe) or []
        htf = HigherTimeframeContext(bars_by_tf, self.config.base_timeframe)
        flow = flow or []
        first_completed = len(self.completed_trades)
        last_index = len(base) - 1

        for i, tick in enumerate(base):
            self._manage_trades(symbol, tick)

            if self.config.exit_at_session_end and (
                i == last_index or session_date(base[i + 1].timestamp) != session_date(tick.timestamp)
            ):
                self._close_all(symbol, tick, "EOD")

            if i < self.config.warmup_bars:
                continue
            if self.config.one_trade_per_symbol and self._has_active(symbol):
                continue
            if not self._is_strategy_close(tick):
                continue

            history = base[max(0, i + 1 - HISTORY_WINDOW) : i + 1]
            snapshot = build_features(symbol, tick, history, htf.visible_at(tick.timestamp), flow)
            result = detector.detect(snapshot)
            if not result.detected or result.score < self.config.min_score:
                continue

            if i == last_index:
                logger.debug(
                    "Signal on final bar discarded",
                    extra={"data": {"symbol": symbol, "timestamp": tick.timestamp}},
                )
                continue
            entry_bar = base[i + 1]
            if self.config.exit_at_session_end and session_date(entry_bar.timestamp) != session_date(
                tick.timestamp
            ):
                continue

            self._open_trade(symbol, detector, result, tick, entry_bar, snapshot.atr)

        if base:
            self._close_all(symbol, base[-1], "EOD")

        return self.completed_trades[first_completed:]

    def _require_warmup(self, symbol: str, bars_by_tf: dict[str, list[Bar]]) -> None:
        """Raise InsufficientDataError unless the base bars outlast the warm-up."""
        base = bars_by_tf.get(self.config.base_timeframe) or []
        if len(base) <= self.config.warmup_bars:
            raise InsufficientDataError(
                "Not enough base bars to pass the warm-up",
                context={"symbol": symbol, "bars": len(base), "warmup_bars": self.config.warmup_bars},
            )

    def _is_strategy_close(self, tick: Bar) -> bool:
        """True when this base tick closes a strategy-timeframe bar."""
        return (tick.timestamp + self.base_ms) % self.tf_ms == 0

    def _has_active(self, symbol: str) -> bool:
        return any(t.symbol == symbol for t in self.active_trades)

    def _open_trade(
        self,
        symbol: str,
        detector: Detector,
        result: DetectionResult,
        signal_bar: Bar,
        entry_bar: Bar,
        atr: float | None,
    ) -> None:
        direction = result.direction
        entry = entry_bar.open
        long = direction == "LONG"

        if atr is not None and atr > 0:
            atr_stop = entry - atr * self.config.stop_multiple if long else entry + atr * self.config.stop_multiple
            atr_target = (
                entry + atr * self.config.target_multiple if long else entry - atr * self.config.target_multiple
            )
        else:
            atr_stop = atr_target = None
        stop = result.stop_price if result.stop_price is not None else atr_stop
        target = result.target_price if result.target_price is not None else atr_target

        if stop is None or target is None:
            logger.debug(
                "Entry skipped, no ATR for risk levels",
                extra={"data": {"symbol": symbol, "timestamp": signal_bar.timestamp}},
            )
            return

        risk = entry - stop if long else stop - entry
        reward = target - entry if long else entry - target
        if risk <= 0 or reward <= 0:
            logger.debug(
                "Entry skipped, levels on the wrong side of entry",
                extra={"data": {"symbol": symbol, "entry": entry, "stop": stop, "target": target}},
            )
            return

        if self.config.filter_illiquid and not self.spread_estimator.is_liquid(
            symbol, entry_bar.timestamp, self.config.max_spread_pct
        ):
            logger.debug(
                "Entry skipped, spread too wide",
                extra={"data": {"symbol": symbol, "max_spread_pct": self.config.max_spread_pct}},
            )
            return

        if self.config.use_realistic_slippage:
            slippage = self.spread_estimator.slippage(symbol, entry_bar.timestamp, entry)
        else:
            slippage = entry * self.config.slippage_pct

        self.active_trades.append(
            ActiveTrade(
                symbol=symbol,
                detector=detector.type,
                direction=direction,
                score=result.score,
                signal_timestamp=signal_bar.timestamp,
                entry_timestamp=entry_bar.timestamp,
                entry_price=entry,
                target_price=target,
                stop_price=stop,
                initial_stop=stop,
                initial_risk=risk,
                atr=atr,
                slippage=slippage,
            )
        )

    # ─── Trade Management ───

    def _manage_trades(self, symbol: str, tick: Bar) -> None:
        for trade in [t for t in self.active_trades if t.symbol == symbol]:
            if trade.entry_timestamp > tick.timestamp:
                continue
            exit_price, reason = self._check_exit(trade, tick)
            if reason is not None:
                self._close_trade(trade, exit_price, tick.timestamp, reason)
                continue
            self._adjust_trade(trade, tick)

    def _check_exit(self, trade: ActiveTrade, tick: Bar) -> tuple[float, ExitReason | None]:
        """Stop, then target, then max hold. Fills at the level unless the open gapped through it."""
        if trade.direction == "LONG":
            if tick.low <= trade.stop_price:
                return min(tick.open, trade.stop_price), "STOP_HIT"
            if tick.high >= trade.target_price:
                return max(tick.open, trade.target_price), "TARGET_HIT"
        else:
            if tick.high >= trade.stop_price:
                return max(tick.open, trade.stop_price), "STOP_HIT"
            if tick.low <= trade.target_price:
                return min(tick.open, trade.target_price), "TARGET_HIT"

        if (tick.timestamp - trade.entry_timestamp) / self.tf_ms >= self.config.max_hold_bars:
            return tick.close, "MAX_HOLD"
        return tick.close, None

    def _adjust_trade(self, trade: ActiveTrade, tick: Bar) -> None:
        """Breakeven, trim flag and trailing stop, evaluated on the tick's close."""
        long = trade.direction == "LONG"
        r_now = trade.unrealized_r(tick.close)

        if self.config.enable_breakeven and not trade.breakeven_moved and r_now >= 1.0:
            trade.breakeven_moved = True
            if (long and trade.entry_price > trade.stop_price) or (
                not long and trade.entry_price < trade.stop_price
            ):
                trade.stop_price = trade.entry_price

        if self.config.trim_at_r is not None and not trade.trimmed and r_now >= self.config.trim_at_r:
            trade.trimmed = True

        if self.config.enable_trailing_stop and trade.atr:
            offset = trade.atr * self.config.trailing_atr_multiple
            if long:
                trade.stop_price = max(trade.stop_price, tick.close - offset)
            else:
                trade.stop_price = min(trade.stop_price, tick.close + offset)

    def _close_all(self, symbol: str, tick: Bar, reason: ExitReason) -> None:
        for trade in [t for t in self.active_trades if t.symbol == symbol]:
            if trade.entry_timestamp <= tick.timestamp:
                self._close_trade(trade, tick.close, tick.timestamp, reason)

    def _close_trade(self, trade: ActiveTrade, exit_price: float, exit_timestamp: int, reason: ExitReason) -> None:
        """Settle a trade and move it from the active list to the completed list."""
        move = exit_price - trade.entry_price if trade.direction == "LONG" else trade.entry_price - exit_price
        if trade.trimmed:
            # Half booked at the trim level, half at the final exit.
            trim_move = self.config.trim_at_r * trade.initial_risk
            move = TRIM_FRACTION * trim_move + (1 - TRIM_FRACTION) * move
        pnl = move - trade.slippage

        completed = Trade(
            symbol=trade.symbol,
            detector=trade.detector,
            direction=trade.direction,
            score=trade.score,
            signal_timestamp=trade.signal_timestamp,
            entry_timestamp=trade.entry_timestamp,
            entry_price=trade.entry_price,
            target_price=trade.target_price,
            initial_stop=trade.initial_stop,
            final_stop=trade.stop_price,
            exit_timestamp=exit_timestamp,
            exit_price=exit_price,
            exit_reason=reason,
            pnl=pnl,
            pnl_percent=pnl / trade.entry_price * 100,
            r_multiple=pnl / trade.initial_risk,
            bars_held=(exit_timestamp - trade.entry_timestamp) // self.tf_ms,
            trimmed=trade.trimmed,
            slippage=trade.slippage,
        )
        self.active_trades.remove(trade)
        self.completed_trades.append(completed)
        SIMULATED_TRADES_TOTAL.labels(exit_reason=reason).inc()
