"""Bar provider interface shared by the primary store and the REST fallback."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from strategylab.common.schemas import Bar, FlowEvent


@runtime_checkable
class BarProvider(Protocol):
    """A source of historical bars and order-flow events.

    Implementations return bars ordered by strictly increasing timestamp and
    raise FetchError/ParseError on failure. They never return partial garbage.
    """

    name: str

    async def fetch_bars(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> list[Bar]:
        """Bars for symbol/timeframe with start_ms <= timestamp <= end_ms."""
        ...

    async def fetch_flow(self, symbol: str, start_ms: int, end_ms: int) -> list[FlowEvent]:
        """Flow events for symbol with start_ms <= timestamp <= end_ms."""
        ...


def normalize_bars(bars: list[Bar]) -> list[Bar]:
    """Sort by timestamp and drop duplicate timestamps (first occurrence wins)."""
    seen: set[int] = set()
    result: list[Bar] = []
    for bar in sorted(bars, key=lambda b: b.timestamp):
        if bar.timestamp in seen:
            continue
        seen.add(bar.timestamp)
        result.append(bar)
    return result
