"""API test fixtures: httpx.AsyncClient against the full app with in-memory data.

The app lifespan is not run under ASGITransport, so the loader and spread
estimator dependencies are overridden with in-memory fakes.
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from strategylab.api.deps import get_loader, get_spread_estimator
from strategylab.backtesting.slippage import SpreadEstimator
from strategylab.common.schemas import MINUTE_MS
from strategylab.data.loader import MultiTimeframeLoader
from strategylab.detectors import registry
from strategylab.main import app
from tests.factories import SESSION_OPEN_TS, FakeProvider, ScriptedDetector, make_bars


def _fires_every_30_bars(snapshot) -> bool:
    index = (snapshot.timestamp - SESSION_OPEN_TS) // MINUTE_MS
    return index % 30 == 20 and index <= 170


@pytest.fixture
def provider() -> FakeProvider:
    """200 flat 1m SPY bars starting at the Monday open."""
    return FakeProvider(bars={("SPY", "1m"): make_bars(200)})


@pytest.fixture
def scripted_detector(monkeypatch) -> ScriptedDetector:
    """Registers a detector with fixed levels that fires every 30 bars."""
    detector = ScriptedDetector(predicate=_fires_every_30_bars, stop_price=90.0, target_price=110.0)
    monkeypatch.setitem(registry.DETECTOR_REGISTRY, "scripted", detector)
    return detector


@pytest.fixture
async def client(provider):
    """Async client with the data dependencies overridden."""
    loader = MultiTimeframeLoader(provider)
    app.dependency_overrides[get_loader] = lambda: loader
    app.dependency_overrides[get_spread_estimator] = lambda: SpreadEstimator()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
