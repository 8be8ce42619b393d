"""Massive.com REST aggregates client, the secondary bar provider.

Used only when the primary store has no coverage for a (symbol, timeframe)
window. Endpoint:

    /v2/aggs/ticker/{ticker}/range/{multiplier}/{timespan}/{from}/{to}

All fetches go through exponential backoff retry and a token bucket rate
limiter. Responses are normalized into the common Bar shape; rows that break
the OHLC invariant are dropped.

Usage:
    from strategylab.data.rest_provider import MassiveRestProvider

    provider = MassiveRestProvider(api_key="...")
    bars = await provider.fetch_bars("SPY", "5m", start_ms, end_ms)
    await provider.close()
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import httpx
from pydantic import ValidationError

from strategylab.common.config import get_settings
from strategylab.common.exceptions import FetchError, ParseError
from strategylab.common.logging import get_logger
from strategylab.common.schemas import Bar, FlowEvent
from strategylab.data.base import normalize_bars
from strategylab.data.rate_limiter import TokenBucketRateLimiter

logger = get_logger("DATA")

# timeframe → (multiplier, timespan)
TIMEFRAME_RANGES: dict[str, tuple[int, str]] = {
    "1m": (1, "minute"),
    "5m": (5, "minute"),
    "15m": (15, "minute"),
    "60m": (1, "hour"),
    "1D": (1, "day"),
}

INDEX_SYMBOLS = {"SPX", "NDX", "VIX", "RUT", "DJI"}

MAX_PAGES = 20


def to_api_ticker(symbol: str) -> str:
    """Map a symbol to the vendor ticker (indices use the `I:` prefix)."""
    clean = symbol.upper().removeprefix("I:")
    return f"I:{clean}" if clean in INDEX_SYMBOLS else clean


def _ms_to_date(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=UTC).strftime("%Y-%m-%d")


def parse_aggregates(payload: dict) -> list[Bar]:
    """Convert an aggregates response body to bars.

    Raises:
        ParseError: If `results` is present but not a list of aggregate dicts.
    """
    results = payload.get("results") or []
    if not isinstance(results, list):
        raise ParseError("Aggregates 'results' is not a list", context={"type": type(results).__name__})

    bars: list[Bar] = []
    dropped = 0
    for item in results:
        try:
            bars.append(
                Bar(
                    timestamp=int(item["t"]),
                    open=float(item["o"]),
                    high=float(item["h"]),
                    low=float(item["l"]),
                    close=float(item["c"]),
                    volume=float(item.get("v") or 0.0),
                    vwap=item.get("vw"),
                    trades=item.get("n"),
                )
            )
        except (KeyError, TypeError, ValueError, ValidationError):
            dropped += 1

    if results and not bars:
        raise ParseError("No valid aggregates in response", context={"rows": len(results)})
    if dropped:
        logger.warning("Dropped malformed aggregates", extra={"data": {"dropped": dropped}})
    return bars


class MassiveRestProvider:
    """Async REST client for historical aggregates.

    Args:
        api_key: Vendor API key. Defaults to settings.massive_api_key.
        base_url: API root. Defaults to settings.massive_base_url.
        max_retries: Retries after the initial attempt on 5xx/network errors.
        client: Optional pre-built httpx.AsyncClient (owned by the caller).
    """

    name = "massive"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.massive_api_key
        self.base_url = (base_url or settings.massive_base_url).rstrip("/")
        self.max_retries = max_retries
        self.rate_limiter = TokenBucketRateLimiter(
            rate=settings.massive_rate_limit_per_second,
            burst=max(1, int(settings.massive_rate_limit_per_second)),
        )
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=settings.massive_timeout_seconds)

    async def close(self) -> None:
        """Close the underlying HTTP client if this provider created it."""
        if self._owns_client:
            await self.client.aclose()

    async def _get_json(self, url: str, params: dict | None = None) -> dict:
        """GET a URL with exponential backoff retry.

        Raises:
            FetchError: On 4xx responses or when all retries are exhausted.
            ParseError: If the body is not a JSON object.
        """
        headers = {"Authorization": f"Bearer {self.api_key}"}
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                await self.rate_limiter.acquire()
                response = await self.client.get(url, headers=headers, params=params)
                response.raise_for_status()
                try:
                    body = response.json()
                except ValueError as exc:
                    raise ParseError("Response is not valid JSON", context={"url": url}) from exc
                if not isinstance(body, dict):
                    raise ParseError("Response is not a JSON object", context={"url": url})
                return body

            except httpx.HTTPStatusError as exc:
                last_error = exc
                status_code = exc.response.status_code

                if status_code >= 500 and attempt < self.max_retries:
                    wait = 2**attempt  # 1s, 2s, 4s
                    logger.warning(
                        f"Aggregates API returned {status_code}, retrying",
                        extra={
                            "data": {
                                "url": url,
                                "status_code": status_code,
                                "attempt": attempt + 1,
                                "wait_seconds": wait,
                            }
                        },
                    )
                    await asyncio.sleep(wait)
                else:
                    raise FetchError(
                        f"HTTP {status_code} fetching {url} after {attempt + 1} attempts",
                        context={"status_code": status_code},
                    ) from exc

            except httpx.RequestError as exc:
                last_error = exc

                if attempt < self.max_retries:
                    wait = 2**attempt
                    logger.warning(
                        "Network error, retrying",
                        extra={"data": {"url": url, "error": str(exc), "attempt": attempt + 1}},
                    )
                    await asyncio.sleep(wait)
                else:
                    raise FetchError(
                        f"Network error fetching {url} after {attempt + 1} attempts: {exc}"
                    ) from exc

        raise FetchError(f"All retries exhausted for {url}") from last_error

    async def fetch_bars(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> list[Bar]:
        """Fetch aggregates for a symbol/timeframe window, following pagination.

        Raises:
            FetchError: If no API key is configured or the request fails.
            ParseError: If the response body is malformed.
        """
        if not self.api_key:
            raise FetchError("Massive API key not configured", context={"symbol": symbol})
        if timeframe not in TIMEFRAME_RANGES:
            raise FetchError(f"Unsupported timeframe {timeframe!r}", context={"symbol": symbol})

        multiplier, timespan = TIMEFRAME_RANGES[timeframe]
        ticker = to_api_ticker(symbol)
        url: str | None = (
            f"{self.base_url}/v2/aggs/ticker/{ticker}/range/{multiplier}/{timespan}/"
            f"{_ms_to_date(start_ms)}/{_ms_to_date(end_ms)}"
        )
        params: dict | None = {"adjusted": "true", "sort": "asc", "limit": 50000}

        bars: list[Bar] = []
        pages = 0
        while url and pages < MAX_PAGES:
            payload = await self._get_json(url, params=params)
            bars.extend(parse_aggregates(payload))
            pages += 1
            # next_url already carries the query string
            url = payload.get("next_url")
            params = None

        in_range = [b for b in bars if start_ms <= b.timestamp <= end_ms]
        logger.info(
            "Fetched aggregates",
            extra={
                "data": {
                    "symbol": symbol,
                    "timeframe": timeframe,
                    "bars": len(in_range),
                    "pages": pages,
                }
            },
        )
        return normalize_bars(in_range)

    async def fetch_flow(self, symbol: str, start_ms: int, end_ms: int) -> list[FlowEvent]:
        """The aggregates API has no flow history."""
        return []
