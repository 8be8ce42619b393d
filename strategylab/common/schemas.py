"""Pydantic schemas: the interface contracts between all modules.

Defines the data shapes that flow between the data layer, the features
builder, detectors, the backtest engine and the optimizer.

RULES:
- Modules must use these types, never ad-hoc dicts for bars or flow events.
- All timestamps are epoch MILLISECONDS (int, UTC) and mark the bar OPEN.
- A bar is "closed" at timestamp + its timeframe interval.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ─── Literal Types ───

Direction = Literal["LONG", "SHORT"]
Timeframe = Literal["1m", "5m", "15m", "60m", "1D"]
ExitReason = Literal["TARGET_HIT", "STOP_HIT", "MAX_HOLD", "EOD"]
FlowSide = Literal["BULLISH", "BEARISH", "NEUTRAL"]
FlowClassification = Literal["SWEEP", "BLOCK", "SPLIT", "REGULAR"]

# ─── Timeframe Intervals ───

MINUTE_MS = 60 * 1000

TIMEFRAME_MS: dict[str, int] = {
    "1m": MINUTE_MS,
    "5m": 5 * MINUTE_MS,
    "15m": 15 * MINUTE_MS,
    "60m": 60 * MINUTE_MS,
    "1D": 24 * 60 * MINUTE_MS,
}

# Higher timeframes synchronized into every snapshot.
HIGHER_TIMEFRAMES: tuple[str, ...] = ("5m", "15m", "60m")


def timeframe_ms(timeframe: str) -> int:
    """Interval length of a timeframe in milliseconds.

    Raises:
        ValueError: If the timeframe is unknown.
    """
    try:
        return TIMEFRAME_MS[timeframe]
    except KeyError:
        msg = f"Unknown timeframe: {timeframe!r} (expected one of {sorted(TIMEFRAME_MS)})"
        raise ValueError(msg) from None


# ─── Market Data ───


class Bar(BaseModel):
    """One OHLCV sample for a (symbol, timeframe, timestamp).

    Immutable once loaded. Invariant: high >= max(open, close) >= min(open, close) >= low.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: int  # epoch ms, bar open
    open: float
    high: float
    low: float
    close: float
    volume: float = Field(default=0.0, ge=0.0)
    vwap: float | None = None  # provider-reported VWAP, informational only
    trades: int | None = None

    @model_validator(mode="after")
    def validate_ohlc(self) -> Bar:
        """Reject bars whose high/low do not bound open and close."""
        if self.high < max(self.open, self.close) or self.low > min(self.open, self.close):
            msg = (
                f"Invalid OHLC at {self.timestamp}: "
                f"o={self.open} h={self.high} l={self.low} c={self.close}"
            )
            raise ValueError(msg)
        return self


class FlowEvent(BaseModel):
    """A discrete order-flow record (options sweep/block) for one symbol."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timestamp: int  # epoch ms
    side: FlowSide
    classification: FlowClassification
    premium: float = Field(ge=0.0)
    size: int | None = None
    strike: float | None = None
    option_type: Literal["call", "put"] | None = None
