"""Genetic-algorithm strategy optimizer.

Searches (target multiple, stop multiple, min score, max hold) for the
parameter vector with the best fitness:

    fitness = expectancy * log10(trades + 1)   if trades >= min_trades
              -inf                              otherwise

Each generation is evaluated concurrently, one engine per individual, all
sharing the loader's bar cache. The population is sorted by fitness; the top
`elitism` individuals carry over unchanged (and are not re-evaluated), the
rest are children of two tournament winners via uniform crossover and
per-parameter mutation. A soft deadline is checked between generations only.

Usage:
    from strategylab.optimizer.genetic import StrategyOptimizer

    optimizer = StrategyOptimizer(loader)
    result = await optimizer.optimize(strategy, OptimizationOptions(seed=7))
"""

from __future__ import annotations

import asyncio
import math
import random
import time
from collections.abc import Callable
from datetime import date, timedelta

from pydantic import ValidationError

from strategylab.backtesting.engine import EventDrivenBacktestEngine
from strategylab.backtesting.schemas import BacktestConfig, BacktestStats
from strategylab.backtesting.slippage import SpreadEstimator
from strategylab.common.config import get_settings
from strategylab.common.exceptions import ConfigurationError, StrategyLabError
from strategylab.common.logging import get_logger
from strategylab.common.metrics import (
    OPTIMIZER_EVALUATIONS_TOTAL,
    OPTIMIZER_GENERATION_DURATION_SECONDS,
)
from strategylab.data.loader import MultiTimeframeLoader
from strategylab.detectors.base import Detector
from strategylab.detectors.registry import get_detector
from strategylab.optimizer.exceptions import OptimizerError
from strategylab.optimizer.schemas import (
    DEFAULT_PARAMS,
    PARAMETER_NAMES,
    GenerationSummary,
    Individual,
    OptimizationOptions,
    OptimizationParams,
    OptimizationResult,
    ParameterBounds,
    StrategyDefinition,
)

logger = get_logger("OPTIMIZER")

ProgressCallback = Callable[[float, str], None]

_INT_PARAMS = {"min_score", "max_hold_bars"}


def fitness_of(stats: BacktestStats, min_trades: int = 5) -> float:
    """expectancy * log10(n + 1), or -inf below the minimum sample size."""
    if stats.total_trades < min_trades:
        return -math.inf
    return stats.expectancy * math.log10(stats.total_trades + 1)


def compute_improvement(old: float, new: float) -> float:
    """Relative change (new - old) / |old|; with old == 0, 1 if new > 0 else 0."""
    if old != 0:
        return (new - old) / abs(old)
    return 1.0 if new > 0 else 0.0


# ─── Genetic Operators ───


def random_params(rng: random.Random, bounds: ParameterBounds) -> OptimizationParams:
    """Independent uniform draw of every parameter within bounds."""
    return OptimizationParams(**{name: _draw(rng, bounds, name) for name in PARAMETER_NAMES})


def _draw(rng: random.Random, bounds: ParameterBounds, name: str) -> float | int:
    low, high = getattr(bounds, name)
    if name in _INT_PARAMS:
        return rng.randint(low, high)
    return round(rng.uniform(low, high), 2)


def tournament_select(population: list[Individual], rng: random.Random, k: int = 3) -> Individual:
    """Sample k distinct individuals (all of them if fewer) and return the fittest."""
    contenders = rng.sample(population, min(k, len(population)))
    return max(contenders, key=lambda ind: ind.fitness)


def crossover(p1: OptimizationParams, p2: OptimizationParams, rng: random.Random) -> OptimizationParams:
    """Uniform crossover: each parameter copied from either parent with p = 0.5."""
    return OptimizationParams(
        **{name: getattr(p1 if rng.random() < 0.5 else p2, name) for name in PARAMETER_NAMES}
    )


def mutate(
    params: OptimizationParams,
    rng: random.Random,
    bounds: ParameterBounds,
    rate: float,
) -> OptimizationParams:
    """Re-draw each parameter within bounds independently with probability `rate`."""
    values = params.model_dump()
    for name in PARAMETER_NAMES:
        if rng.random() < rate:
            values[name] = _draw(rng, bounds, name)
    return OptimizationParams(**values)


# ─── Optimizer ───


class StrategyOptimizer:
    """Runs the genetic search for one strategy at a time.

    Args:
        loader: Shared data loader; its cache makes repeat evaluations cheap.
        spread_estimator: Passed through to every engine.
        clock: Monotonic time source for the soft deadline (tests inject one).
    """

    def __init__(
        self,
        loader: MultiTimeframeLoader,
        spread_estimator: SpreadEstimator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.loader = loader
        self.spread_estimator = spread_estimator
        self._clock = clock
        self.evaluations = 0

    async def optimize(
        self,
        strategy: StrategyDefinition,
        options: OptimizationOptions | None = None,
        progress: ProgressCallback | None = None,
    ) -> OptimizationResult:
        """Search for better parameters for `strategy`.

        Raises:
            DetectorNotFoundError: If the strategy's detector is not registered.
            ConfigurationError: If no symbols resolve or the backtest overrides are invalid.
            OptimizerError: If a seeded individual lies outside the bounds.
        """
        options = options or OptimizationOptions()
        settings = get_settings()
        started = self._clock()
        self.evaluations = 0

        # Fail fast before any simulation work.
        detector = get_detector(strategy.detector_id)
        symbols = options.symbols or strategy.symbols or settings.default_symbols
        if not symbols:
            raise ConfigurationError("No symbols configured for optimization", context={"strategy": strategy.id})
        end_date = options.end_date or date.today()
        start_date = end_date - timedelta(days=options.days_to_test)
        self._build_config(strategy, options, symbols, start_date, end_date, DEFAULT_PARAMS)
        for seeded in options.initial_population or []:
            if not seeded.within(options.bounds):
                raise OptimizerError(
                    "Seeded individual outside parameter bounds",
                    context={"params": seeded.model_dump()},
                )

        rng = random.Random(options.seed)
        self._report(progress, 0.0, "Initializing optimization")
        logger.info(
            "Optimization started",
            extra={
                "data": {
                    "strategy": strategy.id,
                    "detector": detector.type,
                    "symbols": symbols,
                    "population_size": options.population_size,
                    "generations": options.generations,
                    "seed": options.seed,
                }
            },
        )

        async def evaluate(individual: Individual) -> None:
            config = self._build_config(strategy, options, symbols, start_date, end_date, individual.params)
            await self._evaluate(individual, detector, config, options.min_trades)

        # Baseline
        if strategy.baseline_expectancy is not None:
            baseline = strategy.baseline_expectancy
        else:
            self._report(progress, 5.0, "Running baseline backtest")
            baseline_ind = Individual(params=DEFAULT_PARAMS)
            await evaluate(baseline_ind)
            baseline = baseline_ind.stats.expectancy if baseline_ind.stats else 0.0
        self._report(progress, 10.0, f"Baseline expectancy: {baseline:.3f}")

        population = self._initial_population(options, rng)
        history: list[GenerationSummary] = []
        # Best evaluated individual so far; freshly bred children carry no stats.
        best: Individual | None = None
        stopped_early = False

        for gen in range(options.generations):
            if gen > 0 and self._deadline_passed(started, options.deadline_seconds):
                stopped_early = True
                logger.warning(
                    "Optimization deadline reached, stopping between generations",
                    extra={"data": {"strategy": strategy.id, "generations_completed": gen}},
                )
                break

            pct = 10.0 + gen / options.generations * 80.0
            self._report(progress, pct, f"Running generation {gen + 1}/{options.generations}")

            gen_started = time.monotonic()
            await asyncio.gather(*(evaluate(ind) for ind in population if not ind.evaluated))
            population.sort(key=lambda ind: ind.fitness, reverse=True)
            if best is None or population[0].fitness > best.fitness:
                best = population[0]
            gen_duration = time.monotonic() - gen_started
            OPTIMIZER_GENERATION_DURATION_SECONDS.observe(gen_duration)

            summary = self._summarize(gen, population, gen_duration)
            history.append(summary)
            logger.info(
                "Generation complete",
                extra={
                    "data": {
                        "strategy": strategy.id,
                        "generation": gen + 1,
                        "best_fitness": summary.best_fitness,
                        "qualified": summary.qualified,
                        "best_params": summary.best_params.model_dump(),
                    }
                },
            )
            self._report(progress, pct + 2.0, f"Best gen {gen + 1}: exp={population[0].expectancy:.3f}")

            if gen < options.generations - 1:
                population = self._evolve(population, options, rng)

        new_expectancy = best.expectancy
        improvement = compute_improvement(baseline, new_expectancy)
        duration = self._clock() - started

        self._report(progress, 100.0, "Optimization complete")
        logger.info(
            "Optimization complete",
            extra={
                "data": {
                    "strategy": strategy.id,
                    "baseline_expectancy": baseline,
                    "new_expectancy": new_expectancy,
                    "improvement": improvement,
                    "evaluations": self.evaluations,
                    "stopped_early": stopped_early,
                }
            },
        )

        return OptimizationResult(
            strategy_id=strategy.id,
            detector=detector.type,
            best_params=best.params,
            best_fitness=best.fitness,
            baseline_expectancy=baseline,
            new_expectancy=new_expectancy,
            improvement=improvement,
            stats=best.stats,
            generations_completed=len(history),
            evaluations=self.evaluations,
            stopped_early=stopped_early,
            history=history,
            duration_seconds=round(duration, 4),
        )

    # ─── Helpers ───

    def _build_config(
        self,
        strategy: StrategyDefinition,
        options: OptimizationOptions,
        symbols: list[str],
        start_date: date,
        end_date: date,
        params: OptimizationParams,
    ) -> BacktestConfig:
        fields = {
            "slippage_pct": get_settings().default_slippage_pct,
            **options.backtest_overrides,
            "symbols": symbols,
            "start_date": start_date,
            "end_date": end_date,
            "timeframe": strategy.timeframe,
            **params.model_dump(),
        }
        try:
            return BacktestConfig(**fields)
        except ValidationError as exc:
            raise ConfigurationError(
                "Invalid backtest configuration for optimization",
                context={"strategy": strategy.id, "errors": exc.errors(include_url=False)},
            ) from exc

    async def _evaluate(
        self,
        individual: Individual,
        detector: Detector,
        config: BacktestConfig,
        min_trades: int,
    ) -> None:
        engine = EventDrivenBacktestEngine(config, self.loader, self.spread_estimator)
        self.evaluations += 1
        try:
            stats = await engine.run(detector)
        except StrategyLabError as exc:
            OPTIMIZER_EVALUATIONS_TOTAL.labels(outcome="error").inc()
            logger.error(
                "Evaluation failed, individual disqualified",
                extra={"data": {"params": individual.params.model_dump(), "error": str(exc)}},
            )
            individual.stats = BacktestStats(detector=detector.type)
            individual.fitness = -math.inf
            return

        individual.stats = stats
        individual.fitness = fitness_of(stats, min_trades)
        outcome = "disqualified" if math.isinf(individual.fitness) else "qualified"
        OPTIMIZER_EVALUATIONS_TOTAL.labels(outcome=outcome).inc()

    def _initial_population(self, options: OptimizationOptions, rng: random.Random) -> list[Individual]:
        seeded = [Individual(params=p) for p in (options.initial_population or [])]
        while len(seeded) < options.population_size:
            seeded.append(Individual(params=random_params(rng, options.bounds)))
        return seeded

    def _evolve(
        self,
        population: list[Individual],
        options: OptimizationOptions,
        rng: random.Random,
    ) -> list[Individual]:
        """Next generation from a fitness-sorted population."""
        next_gen = population[: options.elitism]
        while len(next_gen) < options.population_size:
            p1 = tournament_select(population, rng, options.tournament_size)
            p2 = tournament_select(population, rng, options.tournament_size)
            child = mutate(crossover(p1.params, p2.params, rng), rng, options.bounds, options.mutation_rate)
            next_gen.append(Individual(params=child))
        return next_gen

    def _deadline_passed(self, started: float, deadline_seconds: float | None) -> bool:
        return deadline_seconds is not None and self._clock() - started >= deadline_seconds

    @staticmethod
    def _summarize(gen: int, population: list[Individual], duration: float) -> GenerationSummary:
        qualified = [ind.fitness for ind in population if not math.isinf(ind.fitness)]
        return GenerationSummary(
            generation=gen + 1,
            best_fitness=population[0].fitness,
            mean_fitness=math.fsum(qualified) / len(qualified) if qualified else None,
            best_params=population[0].params,
            qualified=len(qualified),
            duration_seconds=round(duration, 4),
        )

    @staticmethod
    def _report(progress: ProgressCallback | None, percent: float, message: str) -> None:
        if progress is not None:
            progress(percent, message)
