"""In-memory bar cache keyed by (symbol, timeframe).

An explicitly constructed object with a time-to-live, owned by whoever builds
the loader and passed in. Each key has its own asyncio.Lock so a miss is
fetched once while concurrent readers for the same key wait on it; different
keys never block each other.

A hit returns the stored sequence as-is. It does not check that the cached
bars cover the requested date range; callers reuse one stable window.

Usage:
    from strategylab.data.cache import BarCache

    cache = BarCache(ttl_seconds=3600)
    bars = await cache.get_or_load("SPY", "5m", lambda: provider.fetch_bars(...))
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from strategylab.common.logging import get_logger
from strategylab.common.metrics import BAR_CACHE_LOOKUPS_TOTAL
from strategylab.common.schemas import Bar

logger = get_logger("CACHE")

CacheKey = tuple[str, str]


@dataclass
class _Entry:
    bars: list[Bar]
    stored_at: float


class BarCache:
    """TTL cache of ordered bar sequences.

    Args:
        ttl_seconds: Entry lifetime. None keeps entries until cleared.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float | None = 86_400.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(symbol: str, timeframe: str) -> CacheKey:
        return (symbol.upper(), timeframe)

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _is_fresh(self, entry: _Entry) -> bool:
        if self.ttl_seconds is None:
            return True
        return (self._clock() - entry.stored_at) < self.ttl_seconds

    def _lookup(self, key: CacheKey) -> list[Bar] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._is_fresh(entry):
            del self._entries[key]
            logger.debug("Cache entry expired", extra={"data": {"symbol": key[0], "timeframe": key[1]}})
            return None
        return entry.bars

    def get(self, symbol: str, timeframe: str) -> list[Bar] | None:
        """Return cached bars, or None on a miss or expired entry."""
        bars = self._lookup(self._key(symbol, timeframe))
        self._record(bars is not None)
        return bars

    def put(self, symbol: str, timeframe: str, bars: list[Bar]) -> None:
        """Store a sequence, replacing any existing entry for the key."""
        self._entries[self._key(symbol, timeframe)] = _Entry(bars=bars, stored_at=self._clock())

    async def get_or_load(
        self,
        symbol: str,
        timeframe: str,
        loader: Callable[[], Awaitable[list[Bar]]],
    ) -> list[Bar]:
        """Return cached bars, calling `loader` once on a miss.

        Empty results are not cached so a later call can retry the fetch.
        Exceptions from `loader` propagate and leave the key uncached.
        """
        key = self._key(symbol, timeframe)
        bars = self._lookup(key)
        if bars is not None:
            self._record(hit=True)
            return bars

        async with self._lock_for(key):
            # Another waiter may have filled the key while we were blocked.
            bars = self._lookup(key)
            if bars is not None:
                self._record(hit=True)
                return bars

            self._record(hit=False)
            bars = await loader()
            if bars:
                self._entries[key] = _Entry(bars=bars, stored_at=self._clock())
            return bars

    def invalidate(self, symbol: str | None = None) -> int:
        """Drop entries for one symbol, or every entry when symbol is None.

        Returns:
            Number of entries removed.
        """
        if symbol is None:
            removed = len(self._entries)
            self._entries.clear()
        else:
            target = symbol.upper()
            keys = [k for k in self._entries if k[0] == target]
            for k in keys:
                del self._entries[k]
            removed = len(keys)

        logger.info("Cache invalidated", extra={"data": {"symbol": symbol, "removed": removed}})
        return removed

    def clear(self) -> None:
        """Remove every entry and reset hit/miss counters."""
        self._entries.clear()
        self._locks.clear()
        self._hits = 0
        self._misses = 0

    def stats(self) -> dict[str, int]:
        """Hit/miss counters and current entry count."""
        return {"hits": self._hits, "misses": self._misses, "entries": len(self._entries)}

    def _record(self, hit: bool) -> None:
        if hit:
            self._hits += 1
            BAR_CACHE_LOOKUPS_TOTAL.labels(result="hit").inc()
        else:
            self._misses += 1
            BAR_CACHE_LOOKUPS_TOTAL.labels(result="miss").inc()
