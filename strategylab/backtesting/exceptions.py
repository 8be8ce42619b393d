"""Backtesting-specific exceptions."""

from __future__ import annotations

from strategylab.common.exceptions import StrategyLabError


class BacktestError(StrategyLabError):
    """General backtesting failure for one symbol or run."""


class InsufficientDataError(BacktestError):
    """Fewer base bars than the warm-up requires. The symbol is skipped, never padded."""
