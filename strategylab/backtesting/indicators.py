"""Technical indicator library.

Pure functions over ordered sequences (oldest first). Every function reads
only the values it is given, so passing a history that ends at the current
bar guarantees no future values are used.

Conventions:
- EMA is seeded with the first value, k = 2 / (period + 1).
- RSI and ATR use Wilder smoothing: the first average is the simple mean of
  the first `period` samples, then avg = (avg * (period - 1) + x) / period.
- VWAP returns None when cumulative volume is zero; callers skip VWAP checks
  instead of substituting a price.

Usage:
    from strategylab.backtesting.indicators import atr, ema, rsi

    fast = ema(closes, 8)
    strength = rsi(closes, 14)
    volatility = atr(bars, 14)
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np

from strategylab.common.schemas import Bar

RSI_NEUTRAL = 50.0


# ─── Moving Averages ───


def ema_series(values: Sequence[float], period: int) -> list[float]:
    """Full EMA series, parallel to `values`."""
    if not values:
        return []
    k = 2.0 / (period + 1)
    result = [float(values[0])]
    for price in values[1:]:
        result.append(price * k + result[-1] * (1 - k))
    return result


def ema(values: Sequence[float], period: int) -> float | None:
    """Trailing EMA value, or None for an empty sequence."""
    series = ema_series(values, period)
    return series[-1] if series else None


def sma(values: Sequence[float], period: int) -> float | None:
    """Mean of the trailing `period` values.

    Falls back to the last value when history is shorter than the window.
    """
    if not values:
        return None
    if len(values) < period:
        return float(values[-1])
    return float(np.mean(np.asarray(values[-period:], dtype=float)))


def stddev(values: Sequence[float], period: int) -> float:
    """Population standard deviation of the trailing window, 0 when history is short."""
    if period <= 0 or len(values) < period:
        return 0.0
    return float(np.std(np.asarray(values[-period:], dtype=float)))


def bollinger(values: Sequence[float], period: int = 20, multiplier: float = 2.0) -> dict[str, float] | None:
    """Bollinger Bands over the trailing window.

    Returns:
        Dict with upper, middle, lower, width (as a fraction of middle) and
        percent_b, or None when history is shorter than `period`.
    """
    if len(values) < period:
        return None
    middle = sma(values, period)
    deviation = stddev(values, period)
    upper = middle + multiplier * deviation
    lower = middle - multiplier * deviation
    band = upper - lower
    return {
        "upper": upper,
        "middle": middle,
        "lower": lower,
        "width": band / middle if middle else 0.0,
        "percent_b": (values[-1] - lower) / band if band > 0 else 0.5,
    }


# ─── Oscillators ───


def rsi(closes: Sequence[float], period: int = 14) -> float:
    """Wilder RSI of the trailing value.

    Returns 50 when fewer than period + 1 closes are available and exactly 100
    when the smoothed average loss is zero.
    """
    if len(closes) < period + 1:
        return RSI_NEUTRAL

    gains: list[float] = []
    losses: list[float] = []
    for prev, cur in zip(closes[:-1], closes[1:], strict=True):
        delta = cur - prev
        gains.append(delta if delta > 0 else 0.0)
        losses.append(-delta if delta < 0 else 0.0)

    avg_gain = math.fsum(gains[:period]) / period
    avg_loss = math.fsum(losses[:period]) / period
    for gain, loss in zip(gains[period:], losses[period:], strict=True):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


# ─── Volatility ───


def true_range(high: float, low: float, prev_close: float) -> float:
    """max(high - low, |high - prev_close|, |low - prev_close|)."""
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def true_ranges(bars: Sequence[Bar]) -> list[float]:
    """True range for every bar after the first."""
    return [
        true_range(cur.high, cur.low, prev.close)
        for prev, cur in zip(bars[:-1], bars[1:], strict=True)
    ]


def atr(bars: Sequence[Bar], period: int = 14) -> float | None:
    """Wilder-smoothed Average True Range.

    Needs period + 1 bars (one previous close per true range). Returns None
    when history is shorter.
    """
    ranges = true_ranges(bars)
    if len(ranges) < period:
        return None
    value = math.fsum(ranges[:period]) / period
    for tr in ranges[period:]:
        value = (value * (period - 1) + tr) / period
    return value


# ─── Volume ───


def vwap(bars: Sequence[Bar]) -> float | None:
    """Volume-weighted typical price, or None when total volume is zero."""
    total_volume = math.fsum(b.volume for b in bars)
    if total_volume <= 0:
        return None
    weighted = math.fsum((b.high + b.low + b.close) / 3 * b.volume for b in bars)
    return weighted / total_volume
