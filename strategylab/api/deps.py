"""FastAPI dependencies.

The loader and spread estimator are built once in the app lifespan and kept
on `app.state`, so every request shares one bar cache. Tests override these
dependencies with in-memory fakes.
"""

from __future__ import annotations

from fastapi import Request

from strategylab.backtesting.slippage import SpreadEstimator
from strategylab.common.config import Settings
from strategylab.common.database import get_session_factory
from strategylab.data.cache import BarCache
from strategylab.data.loader import MultiTimeframeLoader
from strategylab.data.rest_provider import MassiveRestProvider
from strategylab.data.store import DatabaseBarProvider


def build_loader(settings: Settings) -> MultiTimeframeLoader:
    """Primary SQL store, REST fallback when an API key is configured, shared cache."""
    secondary = (
        MassiveRestProvider(api_key=settings.massive_api_key, base_url=settings.massive_base_url)
        if settings.massive_api_key
        else None
    )
    return MultiTimeframeLoader(
        primary=DatabaseBarProvider(get_session_factory()),
        secondary=secondary,
        cache=BarCache(ttl_seconds=settings.bar_cache_ttl_seconds),
    )


def get_loader(request: Request) -> MultiTimeframeLoader:
    """The application-wide loader."""
    return request.app.state.loader


def get_spread_estimator(request: Request) -> SpreadEstimator:
    """The application-wide spread estimator."""
    return request.app.state.spread_estimator
