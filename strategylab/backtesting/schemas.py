"""Pydantic schemas for backtest configuration and results.

Prices are in the underlying's quote currency (float). Timestamps are epoch
milliseconds marking a bar's open.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from strategylab.common.schemas import Direction, ExitReason, Timeframe

# ─── Configuration ───


class BacktestConfig(BaseModel):
    """Configuration for one backtest run. Validated before any data is loaded."""

    symbols: list[str]
    start_date: date
    end_date: date
    timeframe: Timeframe = "15m"  # the strategy's own bar size
    target_multiple: float = Field(default=2.0, gt=0.0)  # ATR multiples
    stop_multiple: float = Field(default=0.75, gt=0.0)
    max_hold_bars: int = Field(default=15, ge=1)  # in strategy-timeframe bars
    min_score: float = Field(default=50.0, ge=0.0, le=100.0)
    slippage_pct: float = Field(default=0.001, ge=0.0, le=0.1)
    use_realistic_slippage: bool = False
    max_spread_pct: float = Field(default=2.0, gt=0.0)
    filter_illiquid: bool = False
    warmup_bars: int = Field(default=300, ge=0)
    enable_breakeven: bool = False
    trim_at_r: float | None = Field(default=None, gt=0.0)
    enable_trailing_stop: bool = False
    trailing_atr_multiple: float = Field(default=1.5, gt=0.0)
    one_trade_per_symbol: bool = True
    exit_at_session_end: bool = False
    base_timeframe: Timeframe = "1m"
    timeframes: list[Timeframe] = ["1m", "5m", "15m", "60m"]

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v: list[str]) -> list[str]:
        """Require at least one symbol; normalize to upper case without duplicates."""
        cleaned = list(dict.fromkeys(s.strip().upper() for s in v if s.strip()))
        if not cleaned:
            msg = "At least one symbol must be configured"
            raise ValueError(msg)
        return cleaned

    @model_validator(mode="after")
    def validate_ranges(self) -> BacktestConfig:
        """Ensure end_date >= start_date and the base clock is loaded."""
        if self.end_date < self.start_date:
            msg = f"end_date ({self.end_date}) must be >= start_date ({self.start_date})"
            raise ValueError(msg)
        if self.base_timeframe not in self.timeframes:
            msg = f"base_timeframe {self.base_timeframe!r} must be one of the loaded timeframes"
            raise ValueError(msg)
        return self


# ─── Trades ───


@dataclass
class ActiveTrade:
    """An open simulated position. Owned by the engine until it closes.

    `stop_price` moves (breakeven, trailing); `initial_risk` never does.
    """

    symbol: str
    detector: str
    direction: Direction
    score: float
    signal_timestamp: int
    entry_timestamp: int
    entry_price: float
    target_price: float
    stop_price: float
    initial_stop: float
    initial_risk: float
    atr: float | None
    slippage: float  # price units charged once per round trip
    breakeven_moved: bool = False
    trimmed: bool = False

    def unrealized_r(self, price: float) -> float:
        move = price - self.entry_price if self.direction == "LONG" else self.entry_price - price
        return move / self.initial_risk


class Trade(BaseModel):
    """A completed simulated trade. Immutable."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    detector: str
    direction: Direction
    score: float
    signal_timestamp: int
    entry_timestamp: int
    entry_price: float
    target_price: float
    initial_stop: float
    final_stop: float
    exit_timestamp: int
    exit_price: float
    exit_reason: ExitReason
    pnl: float
    pnl_percent: float
    r_multiple: float
    bars_held: int
    trimmed: bool = False
    slippage: float = 0.0


# ─── Statistics ───


class GroupStats(BaseModel):
    """Stats for a subset of trades (one symbol or one exit reason)."""

    total_trades: int = 0
    winners: int = 0
    losers: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    expectancy: float = 0.0


class BacktestStats(BaseModel):
    """Aggregate statistics over a closed-trade list.

    profit_factor is +inf when there are no losing trades and gross profit is
    positive, and 0 when both gross profit and gross loss are zero.
    """

    detector: str
    total_trades: int = 0
    winners: int = 0
    losers: int = 0
    breakeven: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    avg_r_multiple: float = 0.0
    avg_bars_held: float = 0.0
    avg_win_bars: float = 0.0
    avg_loss_bars: float = 0.0
    by_symbol: dict[str, GroupStats] = {}
    by_exit_reason: dict[str, GroupStats] = {}
    trades: list[Trade] = []
    duration_seconds: float = 0.0
