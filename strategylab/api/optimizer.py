"""Optimizer API endpoint: genetic search for better risk parameters.

POST /api/optimize accepts a strategy definition and run controls, returns
the best parameters as a pending result. Approving and applying them is a
separate workflow.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from strategylab.api.deps import get_loader, get_spread_estimator
from strategylab.backtesting.slippage import SpreadEstimator
from strategylab.common.config import get_settings
from strategylab.common.logging import get_logger
from strategylab.data.loader import MultiTimeframeLoader
from strategylab.optimizer.genetic import StrategyOptimizer
from strategylab.optimizer.schemas import OptimizationOptions, OptimizationResult, StrategyDefinition

router = APIRouter()
logger = get_logger("API")


class OptimizeRequest(BaseModel):
    """Request body for an optimization run. Omitted options use the settings defaults."""

    strategy: StrategyDefinition
    options: OptimizationOptions | None = None


def _default_options() -> OptimizationOptions:
    settings = get_settings()
    return OptimizationOptions(
        days_to_test=settings.optimizer_days_to_test,
        population_size=settings.optimizer_population_size,
        generations=settings.optimizer_generations,
        deadline_seconds=settings.optimizer_deadline_seconds,
    )


@router.post("", response_model=OptimizationResult)
async def run_optimization_endpoint(
    request: OptimizeRequest,
    loader: MultiTimeframeLoader = Depends(get_loader),
    spread_estimator: SpreadEstimator = Depends(get_spread_estimator),
) -> OptimizationResult:
    """Run the genetic optimizer for one strategy."""
    options = request.options or _default_options()
    optimizer = StrategyOptimizer(loader, spread_estimator)

    def log_progress(percent: float, message: str) -> None:
        logger.debug(
            "Optimization progress",
            extra={"data": {"strategy": request.strategy.id, "percent": round(percent, 1), "message": message}},
        )

    result = await optimizer.optimize(request.strategy, options, progress=log_progress)

    logger.info(
        "Optimization request completed",
        extra={
            "data": {
                "strategy": request.strategy.id,
                "improvement": result.improvement,
                "evaluations": result.evaluations,
            }
        },
    )
    return result
