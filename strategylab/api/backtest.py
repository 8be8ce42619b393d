"""Backtest API endpoint: replay a detector over historical bars.

POST /api/backtest accepts a detector id and BacktestConfig, returns BacktestStats.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from strategylab.api.deps import get_loader, get_spread_estimator
from strategylab.backtesting.engine import EventDrivenBacktestEngine
from strategylab.backtesting.schemas import BacktestConfig, BacktestStats
from strategylab.backtesting.slippage import SpreadEstimator
from strategylab.common.logging import get_logger
from strategylab.data.loader import MultiTimeframeLoader
from strategylab.detectors.registry import available_detectors, get_detector

router = APIRouter()
logger = get_logger("API")


class BacktestRequest(BaseModel):
    """Request body for a single backtest run."""

    detector: str
    config: BacktestConfig


@router.post("", response_model=BacktestStats)
async def run_backtest_endpoint(
    request: BacktestRequest,
    loader: MultiTimeframeLoader = Depends(get_loader),
    spread_estimator: SpreadEstimator = Depends(get_spread_estimator),
) -> BacktestStats:
    """Run one detector over the configured symbols and date range.

    Unknown detectors are rejected before any data is loaded
    (DetectorNotFoundError → 422 via the app exception handler).
    """
    detector = get_detector(request.detector)
    engine = EventDrivenBacktestEngine(request.config, loader, spread_estimator)
    stats = await engine.run(detector)

    logger.info(
        "Backtest request completed",
        extra={
            "data": {
                "detector": detector.type,
                "symbols": request.config.symbols,
                "total_trades": stats.total_trades,
                "expectancy": stats.expectancy,
            }
        },
    )
    return stats


@router.get("/detectors")
async def list_detectors() -> dict:
    """Registered detector identifiers."""
    return {"detectors": available_detectors()}
