"""Optimizer-specific exceptions."""

from __future__ import annotations

from strategylab.common.exceptions import StrategyLabError


class OptimizerError(StrategyLabError):
    """Invalid optimizer input (e.g. a seeded individual outside the bounds)."""
