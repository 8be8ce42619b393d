"""Multi-timeframe data loader.

Returns one ordered bar sequence per requested timeframe for a symbol,
reading through a BarCache. On a miss the primary provider is queried first;
the secondary provider is used only when the primary fails or has no
coverage. A timeframe that neither provider can serve yields an empty list,
so a batch over many symbols is never aborted by one failure. Callers treat
empty as "insufficient data, skip symbol".

Usage:
    from strategylab.data.loader import MultiTimeframeLoader

    loader = MultiTimeframeLoader(primary=db_provider, secondary=rest_provider, cache=cache)
    bars_by_tf = await loader.load("SPY", start_ms, end_ms, ["1m", "5m", "15m", "60m"])
"""

from __future__ import annotations

import asyncio

from strategylab.common.exceptions import StrategyLabError
from strategylab.common.logging import get_logger
from strategylab.common.metrics import BAR_FETCHES_TOTAL
from strategylab.common.schemas import Bar, FlowEvent
from strategylab.data.base import BarProvider
from strategylab.data.cache import BarCache

logger = get_logger("DATA")

# Anything a provider raises for an unavailable source; the loader degrades to [].
PROVIDER_ERRORS = (StrategyLabError, OSError, asyncio.TimeoutError)


class MultiTimeframeLoader:
    """Fetches and caches bars per (symbol, timeframe).

    Args:
        primary: Provider queried first (the SQL store).
        secondary: Optional fallback provider (the REST API).
        cache: Shared bar cache. A private one is created if omitted.
    """

    def __init__(
        self,
        primary: BarProvider,
        secondary: BarProvider | None = None,
        cache: BarCache | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.cache = cache if cache is not None else BarCache()

    async def load(
        self,
        symbol: str,
        start_ms: int,
        end_ms: int,
        timeframes: list[str] | tuple[str, ...],
    ) -> dict[str, list[Bar]]:
        """Load every timeframe for one symbol concurrently.

        Returns:
            Mapping of timeframe to ordered bars (possibly empty).
        """
        unique = list(dict.fromkeys(timeframes))
        results = await asyncio.gather(
            *(self.load_timeframe(symbol, tf, start_ms, end_ms) for tf in unique)
        )
        return dict(zip(unique, results, strict=True))

    async def load_timeframe(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> list[Bar]:
        """Load one timeframe through the cache."""
        return await self.cache.get_or_load(
            symbol,
            timeframe,
            lambda: self._fetch_with_fallback(symbol, timeframe, start_ms, end_ms),
        )

    async def _fetch_with_fallback(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> list[Bar]:
        bars = await self._try_provider(self.primary, symbol, timeframe, start_ms, end_ms)
        if bars:
            return bars

        if self.secondary is not None:
            logger.info(
                "No primary coverage, falling back to secondary provider",
                extra={
                    "data": {
                        "symbol": symbol,
                        "timeframe": timeframe,
                        "secondary": self.secondary.name,
                    }
                },
            )
            bars = await self._try_provider(self.secondary, symbol, timeframe, start_ms, end_ms)
            if bars:
                return bars

        logger.warning(
            "No bars available from any provider",
            extra={"data": {"symbol": symbol, "timeframe": timeframe}},
        )
        return []

    async def _try_provider(
        self,
        provider: BarProvider,
        symbol: str,
        timeframe: str,
        start_ms: int,
        end_ms: int,
    ) -> list[Bar]:
        try:
            bars = await provider.fetch_bars(symbol, timeframe, start_ms, end_ms)
        except PROVIDER_ERRORS as exc:
            BAR_FETCHES_TOTAL.labels(provider=provider.name, timeframe=timeframe, outcome="error").inc()
            logger.error(
                "Bar fetch failed",
                extra={
                    "data": {
                        "provider": provider.name,
                        "symbol": symbol,
                        "timeframe": timeframe,
                        "error": str(exc),
                    }
                },
            )
            return []

        outcome = "ok" if bars else "empty"
        BAR_FETCHES_TOTAL.labels(provider=provider.name, timeframe=timeframe, outcome=outcome).inc()
        return bars

    async def load_flow(self, symbol: str, start_ms: int, end_ms: int) -> list[FlowEvent]:
        """Flow events for a symbol/range from the primary store, uncached.

        Returns an empty list when the query fails.
        """
        try:
            return await self.primary.fetch_flow(symbol, start_ms, end_ms)
        except PROVIDER_ERRORS as exc:
            logger.error(
                "Flow fetch failed",
                extra={"data": {"symbol": symbol, "error": str(exc)}},
            )
            return []
