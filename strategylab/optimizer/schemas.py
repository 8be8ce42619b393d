"""Pydantic schemas for the strategy optimizer's inputs and outputs."""

from __future__ import annotations

import math
from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from strategylab.backtesting.schemas import BacktestStats
from strategylab.common.schemas import Timeframe

# ─── Parameter Space ───


class ParameterBounds(BaseModel):
    """Inclusive search bounds per parameter."""

    target_multiple: tuple[float, float] = (1.5, 4.0)
    stop_multiple: tuple[float, float] = (0.8, 1.5)
    min_score: tuple[int, int] = (50, 80)
    max_hold_bars: tuple[int, int] = (12, 60)

    @model_validator(mode="after")
    def validate_order(self) -> ParameterBounds:
        """Ensure every lower bound <= upper bound."""
        for name in ("target_multiple", "stop_multiple", "min_score", "max_hold_bars"):
            low, high = getattr(self, name)
            if low > high:
                msg = f"{name} lower bound ({low}) must be <= upper bound ({high})"
                raise ValueError(msg)
        return self


class OptimizationParams(BaseModel):
    """One candidate parameter vector."""

    model_config = ConfigDict(frozen=True)

    target_multiple: float = Field(gt=0.0)
    stop_multiple: float = Field(gt=0.0)
    min_score: int = Field(ge=0, le=100)
    max_hold_bars: int = Field(ge=1)

    def within(self, bounds: ParameterBounds) -> bool:
        """True when every parameter lies inside `bounds`."""
        return all(
            getattr(bounds, name)[0] <= getattr(self, name) <= getattr(bounds, name)[1]
            for name in PARAMETER_NAMES
        )


PARAMETER_NAMES: tuple[str, ...] = tuple(OptimizationParams.model_fields)

# Baseline run parameters when the strategy has no recorded expectancy.
DEFAULT_PARAMS = OptimizationParams(target_multiple=2.0, stop_multiple=1.0, min_score=60, max_hold_bars=24)


class Individual(BaseModel):
    """A parameter vector plus its last evaluation.

    `stats` is None until evaluated. Fitness stays -inf for individuals with
    too few trades.
    """

    params: OptimizationParams
    fitness: float = -math.inf
    stats: BacktestStats | None = None

    @property
    def evaluated(self) -> bool:
        return self.stats is not None

    @property
    def expectancy(self) -> float:
        """Expectancy of a qualified evaluation, 0 otherwise."""
        if self.stats is None or math.isinf(self.fitness):
            return 0.0
        return self.stats.expectancy


# ─── Inputs ───


class StrategyDefinition(BaseModel):
    """The strategy being tuned. `detector_id` is resolved through the registry."""

    id: str
    name: str | None = None
    detector_id: str
    timeframe: Timeframe = "15m"
    symbols: list[str] | None = None
    baseline_expectancy: float | None = None


class OptimizationOptions(BaseModel):
    """Run controls for one optimization."""

    days_to_test: int = Field(default=30, ge=1)
    end_date: date | None = None  # defaults to today
    symbols: list[str] | None = None
    population_size: int = Field(default=15, ge=2)
    generations: int = Field(default=5, ge=1)
    mutation_rate: float = Field(default=0.15, ge=0.0, le=1.0)
    tournament_size: int = Field(default=3, ge=1)
    elitism: int = Field(default=2, ge=0)
    min_trades: int = Field(default=5, ge=1)
    seed: int | None = None
    deadline_seconds: float | None = Field(default=None, gt=0.0)
    bounds: ParameterBounds = ParameterBounds()
    initial_population: list[OptimizationParams] | None = None
    # Extra BacktestConfig fields applied to every evaluation (e.g. warmup_bars).
    backtest_overrides: dict[str, Any] = {}

    @model_validator(mode="after")
    def validate_elitism(self) -> OptimizationOptions:
        """Elites cannot outnumber the population."""
        if self.elitism > self.population_size:
            msg = f"elitism ({self.elitism}) cannot exceed population_size ({self.population_size})"
            raise ValueError(msg)
        return self


# ─── Outputs ───


class GenerationSummary(BaseModel):
    """Best and mean fitness of one evaluated generation."""

    generation: int
    best_fitness: float
    mean_fitness: float | None  # None when every individual was disqualified
    best_params: OptimizationParams
    qualified: int
    duration_seconds: float


class OptimizationResult(BaseModel):
    """Best parameter vector found, pending human approval before going live."""

    strategy_id: str
    detector: str
    status: Literal["pending"] = "pending"
    best_params: OptimizationParams
    best_fitness: float
    baseline_expectancy: float
    new_expectancy: float
    improvement: float  # fraction: 0.25 means +25%
    stats: BacktestStats | None
    generations_completed: int
    evaluations: int
    stopped_early: bool = False
    history: list[GenerationSummary] = []
    duration_seconds: float = 0.0
