"""Spread-based slippage model for realistic fills.

Each underlying has an estimated bid/ask spread (typical market conditions).
When a quote lookup is supplied and knows the spread at a timestamp, that
value wins over the estimate. Slippage is half the spread, charged against
the entry price.

Usage:
    from strategylab.backtesting.slippage import SpreadEstimator

    estimator = SpreadEstimator()
    estimate = estimator.estimate("SPY", timestamp_ms)
    cost = estimator.slippage("SPY", timestamp_ms, entry_price=450.0)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel, ConfigDict

# underlying → (spread in dollars, spread as a percent)
ESTIMATED_SPREADS: dict[str, tuple[float, float]] = {
    # Index options: wide but liquid
    "SPX": (0.50, 1.5),
    "NDX": (1.00, 1.5),
    # ETFs: tight
    "SPY": (0.02, 0.5),
    "QQQ": (0.03, 0.6),
    # Large caps
    "TSLA": (0.05, 1.0),
    "AMD": (0.03, 0.8),
    "NVDA": (0.05, 0.8),
    "MSFT": (0.03, 0.6),
    "PLTR": (0.02, 0.8),
    "UNH": (0.50, 0.8),
    # Small caps
    "SOFI": (0.02, 2.0),
}
DEFAULT_SPREAD: tuple[float, float] = (0.05, 1.5)

Liquidity = Literal["high", "medium", "low"]

# (underlying, timestamp_ms) → observed spread percent, or None when unknown
QuoteLookup = Callable[[str, int], float | None]


class SpreadEstimate(BaseModel):
    """Bid/ask spread for one underlying at one moment."""

    model_config = ConfigDict(frozen=True)

    spread: float | None  # dollars; None for observed quotes
    spread_pct: float
    source: Literal["quote", "estimate"]
    liquidity: Liquidity


def classify_liquidity(spread_pct: float) -> Liquidity:
    """high below 1%, medium below 2%, low otherwise."""
    if spread_pct < 1.0:
        return "high"
    if spread_pct < 2.0:
        return "medium"
    return "low"


class SpreadEstimator:
    """Looks up spreads per underlying.

    Args:
        quote_lookup: Optional callable returning an observed spread percent.
        spreads: Override table of (spread, spread_pct) per underlying.
    """

    def __init__(
        self,
        quote_lookup: QuoteLookup | None = None,
        spreads: dict[str, tuple[float, float]] | None = None,
    ) -> None:
        self.quote_lookup = quote_lookup
        self.spreads = spreads if spreads is not None else ESTIMATED_SPREADS

    def estimate(self, symbol: str, timestamp_ms: int) -> SpreadEstimate:
        """Observed spread when the lookup has one, else the table estimate."""
        underlying = symbol.upper()
        if self.quote_lookup is not None:
            observed = self.quote_lookup(underlying, timestamp_ms)
            if observed is not None:
                return SpreadEstimate(
                    spread=None,
                    spread_pct=observed,
                    source="quote",
                    liquidity=classify_liquidity(observed),
                )

        spread, spread_pct = self.spreads.get(underlying, DEFAULT_SPREAD)
        return SpreadEstimate(
            spread=spread,
            spread_pct=spread_pct,
            source="estimate",
            liquidity=classify_liquidity(spread_pct),
        )

    def slippage(self, symbol: str, timestamp_ms: int, entry_price: float) -> float:
        """Half-spread cost in price units for one fill at `entry_price`."""
        half_spread_pct = self.estimate(symbol, timestamp_ms).spread_pct / 2
        return entry_price * half_spread_pct / 100

    def is_liquid(self, symbol: str, timestamp_ms: int, max_spread_pct: float) -> bool:
        """True when the spread does not exceed `max_spread_pct`."""
        return self.estimate(symbol, timestamp_ms).spread_pct <= max_spread_pct
