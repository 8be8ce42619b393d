"""FastAPI application factory for StrategyLab.

Run with: uvicorn strategylab.main:app --reload
"""

from __future__ import annotations

import traceback
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app as make_metrics_app

from strategylab.api.backtest import router as backtest_router
from strategylab.api.deps import build_loader
from strategylab.api.optimizer import router as optimizer_router
from strategylab.backtesting.slippage import SpreadEstimator
from strategylab.common.config import get_settings
from strategylab.common.exceptions import ConfigurationError, StrategyLabError
from strategylab.common.logging import get_logger
from strategylab.common.metrics import set_app_info

logger = get_logger("SYSTEM")

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncGenerator[None, None]:
    """Build the shared loader on startup; close the REST client on shutdown."""
    settings = get_settings()
    loader = build_loader(settings)
    application.state.loader = loader
    application.state.spread_estimator = SpreadEstimator()
    logger.info(
        "Data loader ready",
        extra={
            "data": {
                "primary": loader.primary.name,
                "secondary": loader.secondary.name if loader.secondary else None,
                "cache_ttl_seconds": settings.bar_cache_ttl_seconds,
            }
        },
    )

    yield

    if loader.secondary is not None:
        await loader.secondary.close()
    logger.info("Data loader closed", extra={"data": {"cache": loader.cache.stats()}})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="StrategyLab",
        version=VERSION,
        description="Event-driven backtesting and parameter optimization for strategy detectors",
        lifespan=lifespan,
    )

    # ─── Exception Handlers ───

    @app.exception_handler(StrategyLabError)
    async def strategylab_exception_handler(request: Request, exc: StrategyLabError) -> JSONResponse:
        """Structured JSON for domain errors: 422 for bad run configuration, else 400."""
        status_code = 422 if isinstance(exc, ConfigurationError) else 400
        logger.error(
            f"{type(exc).__name__}: {exc}",
            extra={"data": {"path": str(request.url), "context": exc.context}},
        )
        return JSONResponse(
            status_code=status_code,
            content={
                "error": type(exc).__name__,
                "message": str(exc),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions: log the traceback, return 500."""
        logger.error(
            f"Unhandled {type(exc).__name__}: {exc}",
            extra={
                "data": {
                    "path": str(request.url),
                    "traceback": traceback.format_exc(),
                }
            },
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred",
            },
        )

    # ─── Health ───

    @app.get("/health")
    async def health_check() -> dict:
        """Liveness probe. Confirms the process is running."""
        return {"status": "ok", "version": VERSION}

    # ─── Prometheus Metrics ───

    metrics_app = make_metrics_app()
    app.mount("/metrics", metrics_app)
    set_app_info(version=VERSION, environment=get_settings().environment)

    # ─── Router Mounting ───

    app.include_router(backtest_router, prefix="/api/backtest", tags=["backtest"])
    app.include_router(optimizer_router, prefix="/api/optimize", tags=["optimizer"])

    logger.info("App started", extra={"data": {"version": VERSION}})

    return app


app = create_app()
