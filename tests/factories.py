"""Test data factories for bars, flow events, trades and detectors.

Usage:
    from tests.factories import make_bars, make_staircase_bars, ScriptedDetector

    bars = make_bars(400, start_price=100.0, step=0.05)
    detector = ScriptedDetector(fire_at={bars[300].timestamp})
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from strategylab.backtesting.features import FeatureSnapshot
from strategylab.backtesting.schemas import Trade
from strategylab.common.exceptions import FetchError
from strategylab.common.schemas import MINUTE_MS, Bar, FlowEvent
from strategylab.detectors.base import DetectionResult

# Monday 2025-03-03 09:30 New York (EST), the regular session open.
SESSION_OPEN_TS = int(datetime(2025, 3, 3, 14, 30, tzinfo=UTC).timestamp() * 1000)


def make_bar(
    timestamp: int = SESSION_OPEN_TS,
    open: float = 100.0,
    high: float | None = None,
    low: float | None = None,
    close: float | None = None,
    volume: float = 1000.0,
) -> Bar:
    """Bar with high/low defaulting to the open/close envelope."""
    close = open if close is None else close
    return Bar(
        timestamp=timestamp,
        open=open,
        high=max(open, close) if high is None else high,
        low=min(open, close) if low is None else low,
        close=close,
        volume=volume,
    )


def make_bars(
    n: int,
    start_price: float = 100.0,
    step: float = 0.0,
    start_ts: int = SESSION_OPEN_TS,
    interval_ms: int = MINUTE_MS,
    volume: float = 1000.0,
    spread: float = 0.0,
) -> list[Bar]:
    """n consecutive bars; each close moves by `step`, wicks extend by `spread`."""
    bars = []
    price = start_price
    for i in range(n):
        close = price + step
        bars.append(
            Bar(
                timestamp=start_ts + i * interval_ms,
                open=price,
                high=max(price, close) + spread,
                low=min(price, close) - spread,
                close=close,
                volume=volume,
            )
        )
        price = close
    return bars


def make_staircase_bars(n: int, start_ts: int = SESSION_OPEN_TS, step: float = 0.25) -> list[Bar]:
    """Bars rising exactly `step` per bar: low=open, high=close=open+step.

    Every true range equals `step`, so ATR is exactly `step` and prices stay
    exactly representable for quarter steps.
    """
    return [
        Bar(
            timestamp=start_ts + i * MINUTE_MS,
            open=100.0 + step * i,
            high=100.0 + step * (i + 1),
            low=100.0 + step * i,
            close=100.0 + step * (i + 1),
            volume=1000.0,
        )
        for i in range(n)
    ]


def aggregate_bars(bars: list[Bar], interval_ms: int) -> list[Bar]:
    """Roll base bars up into interval-aligned higher-timeframe bars."""
    buckets: dict[int, list[Bar]] = {}
    for bar in bars:
        buckets.setdefault(bar.timestamp - bar.timestamp % interval_ms, []).append(bar)
    return [
        Bar(
            timestamp=start,
            open=group[0].open,
            high=max(b.high for b in group),
            low=min(b.low for b in group),
            close=group[-1].close,
            volume=sum(b.volume for b in group),
        )
        for start, group in sorted(buckets.items())
    ]


def make_flow_event(
    timestamp: int = SESSION_OPEN_TS,
    side: str = "BULLISH",
    classification: str = "SWEEP",
    premium: float = 250_000.0,
    symbol: str = "SPY",
) -> FlowEvent:
    return FlowEvent(
        symbol=symbol,
        timestamp=timestamp,
        side=side,
        classification=classification,
        premium=premium,
    )


def make_trade(**overrides) -> Trade:
    """A completed LONG trade (+1R winner by default)."""
    fields = {
        "symbol": "SPY",
        "detector": "test",
        "direction": "LONG",
        "score": 80.0,
        "signal_timestamp": SESSION_OPEN_TS,
        "entry_timestamp": SESSION_OPEN_TS + MINUTE_MS,
        "entry_price": 100.0,
        "target_price": 102.0,
        "initial_stop": 99.0,
        "final_stop": 99.0,
        "exit_timestamp": SESSION_OPEN_TS + 11 * MINUTE_MS,
        "exit_price": 101.0,
        "exit_reason": "MAX_HOLD",
        "pnl": 1.0,
        "pnl_percent": 1.0,
        "r_multiple": 1.0,
        "bars_held": 10,
    }
    fields.update(overrides)
    return Trade(**fields)


class ScriptedDetector:
    """Detector that fires on chosen timestamps or a predicate.

    Records every snapshot it is shown so tests can assert what was visible.
    """

    def __init__(
        self,
        fire_at: Iterable[int] | None = None,
        predicate: Callable[[FeatureSnapshot], bool] | None = None,
        direction: str = "LONG",
        score: float = 100.0,
        stop_price: float | None = None,
        target_price: float | None = None,
        type: str = "scripted",
    ) -> None:
        self.type = type
        self.direction = direction
        self.fire_at = set(fire_at or ())
        self.predicate = predicate
        self.score = score
        self.stop_price = stop_price
        self.target_price = target_price
        self.snapshots: list[FeatureSnapshot] = []

    def detect(self, snapshot: FeatureSnapshot) -> DetectionResult:
        self.snapshots.append(snapshot)
        fired = snapshot.timestamp in self.fire_at or (
            self.predicate is not None and self.predicate(snapshot)
        )
        return DetectionResult(
            detected=fired,
            type=self.type,
            direction=self.direction,
            score=self.score if fired else 0.0,
            why={"scripted": True},
            stop_price=self.stop_price,
            target_price=self.target_price,
        )


class FakeProvider:
    """In-memory BarProvider with call counting and failure injection."""

    def __init__(
        self,
        bars: dict[tuple[str, str], list[Bar]] | None = None,
        flow: dict[str, list[FlowEvent]] | None = None,
        fail: bool = False,
        name: str = "fake",
        error: Exception | None = None,
    ) -> None:
        self.name = name
        self.bars = bars or {}
        self.flow = flow or {}
        self.fail = fail
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def fetch_bars(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> list[Bar]:
        self.calls.append((symbol, timeframe))
        if self.error is not None:
            raise self.error
        if self.fail:
            raise FetchError("provider down", context={"symbol": symbol})
        return list(self.bars.get((symbol, timeframe), []))

    async def fetch_flow(self, symbol: str, start_ms: int, end_ms: int) -> list[FlowEvent]:
        if self.error is not None:
            raise self.error
        if self.fail:
            raise FetchError("provider down", context={"symbol": symbol})
        return list(self.flow.get(symbol, []))
