"""Features builder: one immutable snapshot per simulated tick.

`build_features` reconstructs exactly what a live detector would have seen at
the close of the current bar:

- Indicators read only `history` (ordered bars ending at the current bar).
- Higher-timeframe fields read only higher-timeframe bars that have already
  closed by the current bar's close (see `HigherTimeframeContext`).
- Anything that cannot be computed from the available inputs is None, never
  a guessed value.

Usage:
    from strategylab.backtesting.features import HigherTimeframeContext, build_features

    htf = HigherTimeframeContext(bars_by_tf, base_timeframe="1m")
    snapshot = build_features("SPY", bar, history, htf.visible_at(bar.timestamp), flow)
"""

from __future__ import annotations

import math
from bisect import bisect_left, bisect_right
from collections.abc import Sequence
from datetime import date, datetime, time
from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict

from strategylab.backtesting import indicators
from strategylab.common.schemas import HIGHER_TIMEFRAMES, MINUTE_MS, Bar, FlowEvent, timeframe_ms

MARKET_TZ = ZoneInfo("America/New_York")
SESSION_OPEN = time(9, 30)
SESSION_CLOSE = time(16, 0)

EMA_PERIODS = (8, 9, 21, 50, 200)
RSI_PERIODS = (9, 14, 21)
ATR_PERIOD = 14
VOLUME_AVG_PERIOD = 20
BOLLINGER_PERIOD = 20
BREAKOUT_WINDOW = 10
ORB_BARS = 15
DIVERGENCE_MIN_BARS = 20
DIVERGENCE_LOOKBACK = 10
FLOW_WINDOW_MS = 60 * MINUTE_MS
MEAN_REVERSION_OVERSOLD = 35.0
MEAN_REVERSION_OVERBOUGHT = 65.0

# Trailing bars fed to the indicator recurrences: three times the slowest EMA
# period, so the window seed weighs about 0.3% in EMA 200.
INDICATOR_LOOKBACK = 3 * max(EMA_PERIODS)

# 15m ATR replaces the base-timeframe ATR once this many 15m bars have closed.
HTF_ATR_MIN_BARS = 20


# ─── Snapshot Models ───


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class PriceFeatures(_Frozen):
    current: float
    open: float
    high: float
    low: float
    prev_close: float | None = None


class VolumeFeatures(_Frozen):
    current: float
    avg: float | None = None
    relative: float | None = None


class VwapFeatures(_Frozen):
    value: float | None = None
    distance_pct: float | None = None


class PrevFeatures(_Frozen):
    """Indicator values as of the previous bar, for crossover checks."""

    close: float | None = None
    rsi_14: float | None = None
    ema_8: float | None = None
    ema_21: float | None = None


class BollingerFeatures(_Frozen):
    upper: float
    middle: float
    lower: float
    width: float
    percent_b: float


class PatternFeatures(_Frozen):
    breakout_bullish: bool = False
    breakout_bearish: bool = False
    mean_reversion_long: bool = False
    mean_reversion_short: bool = False
    trend_continuation_long: bool = False
    trend_continuation_short: bool = False
    orb_high: float | None = None
    orb_low: float | None = None
    prior_day_high: float | None = None
    prior_day_low: float | None = None
    day_high: float | None = None
    day_low: float | None = None
    trend: Literal["UPTREND", "DOWNTREND", "SIDEWAYS"] = "SIDEWAYS"
    market_regime: Literal["trending_up", "trending_down", "ranging"] = "ranging"


class DivergenceFeatures(_Frozen):
    type: Literal["bullish", "bearish", "none"] = "none"
    confidence: float = 0.0


class FlowFeatures(_Frozen):
    sweep_count: int = 0
    block_count: int = 0
    total_premium: float = 0.0
    flow_score: float = 50.0
    bias: Literal["bullish", "bearish", "neutral"] = "neutral"
    conviction: float = 20.0


class SessionFeatures(_Frozen):
    is_regular_hours: bool
    minutes_since_open: int | None = None


class MtfFeatures(_Frozen):
    """Features of one higher timeframe, from closed bars only."""

    timestamp: int  # open time of the latest closed bar
    price_current: float
    price_prev: float | None = None
    rsi_14: float
    ema_21: float
    atr_14: float | None = None


class FeatureSnapshot(_Frozen):
    """Everything a detector may read at one tick."""

    symbol: str
    timestamp: int
    price: PriceFeatures
    volume: VolumeFeatures
    vwap: VwapFeatures
    ema: dict[int, float]
    rsi: dict[int, float]
    prev: PrevFeatures
    atr: float | None = None
    bollinger: BollingerFeatures | None = None
    pattern: PatternFeatures
    divergence: DivergenceFeatures | None = None
    flow: FlowFeatures
    session: SessionFeatures
    mtf: dict[str, MtfFeatures | None]


# ─── Session Calendar ───


@lru_cache(maxsize=4096)
def day_bounds(day: date) -> tuple[int, int, int]:
    """(midnight, session open, session close) in epoch ms for a New York date."""
    midnight = datetime.combine(day, time(0, 0), tzinfo=MARKET_TZ)
    open_ = datetime.combine(day, SESSION_OPEN, tzinfo=MARKET_TZ)
    close = datetime.combine(day, SESSION_CLOSE, tzinfo=MARKET_TZ)
    return (
        int(midnight.timestamp() * 1000),
        int(open_.timestamp() * 1000),
        int(close.timestamp() * 1000),
    )


def session_date(timestamp_ms: int) -> date:
    """New York calendar date of a timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=MARKET_TZ).date()


def session_info(timestamp_ms: int) -> SessionFeatures:
    """Regular-hours flag (09:30-16:00 New York, weekdays) and minutes since the open."""
    day = session_date(timestamp_ms)
    _, open_ms, close_ms = day_bounds(day)
    if day.weekday() < 5 and open_ms <= timestamp_ms < close_ms:
        return SessionFeatures(
            is_regular_hours=True,
            minutes_since_open=(timestamp_ms - open_ms) // MINUTE_MS,
        )
    return SessionFeatures(is_regular_hours=False)


# ─── Higher Timeframe Sync ───


class HigherTimeframeContext:
    """Per-timeframe bar sequences with closed-bar visibility lookups.

    A higher-timeframe bar opening at T is visible at the tick opening at t
    iff T + tf_interval <= t + base_interval, i.e. it has closed by the time
    the current base bar closes.

    Args:
        bars_by_tf: Ordered bars keyed by timeframe. Unknown keys are ignored.
        base_timeframe: Timeframe of the simulation clock.
        lookback: Maximum number of closed bars returned per timeframe.
    """

    def __init__(
        self,
        bars_by_tf: dict[str, list[Bar]],
        base_timeframe: str = "1m",
        timeframes: Sequence[str] = HIGHER_TIMEFRAMES,
        lookback: int = INDICATOR_LOOKBACK,
    ) -> None:
        self.base_ms = timeframe_ms(base_timeframe)
        self.lookback = lookback
        self._bars: dict[str, list[Bar]] = {}
        self._timestamps: dict[str, list[int]] = {}
        self._interval: dict[str, int] = {}
        for tf in timeframes:
            bars = bars_by_tf.get(tf)
            if not bars:
                continue
            self._bars[tf] = bars
            self._timestamps[tf] = [b.timestamp for b in bars]
            self._interval[tf] = timeframe_ms(tf)

    def visible_at(self, tick_timestamp: int) -> dict[str, list[Bar]]:
        """Closed higher-timeframe bars at a tick, most recent last."""
        result: dict[str, list[Bar]] = {}
        tick_close = tick_timestamp + self.base_ms
        for tf, bars in self._bars.items():
            cutoff = tick_close - self._interval[tf]
            end = bisect_right(self._timestamps[tf], cutoff)
            result[tf] = bars[max(0, end - self.lookback) : end]
        return result


# ─── Builder ───


def build_features(
    symbol: str,
    bar: Bar,
    history: Sequence[Bar],
    mtf_context: dict[str, list[Bar]] | None = None,
    flow: Sequence[FlowEvent] | None = None,
) -> FeatureSnapshot:
    """Build the feature snapshot for `bar`.

    Args:
        symbol: Ticker symbol.
        bar: The current (just closed) base-timeframe bar.
        history: Ordered base-timeframe bars ending with `bar`. Earlier bars
            beyond what the day-level fields need may be trimmed by the caller.
        mtf_context: Closed higher-timeframe bars keyed by timeframe.
        flow: Flow events for the symbol; only those in the trailing 60
            minutes up to `bar.timestamp` are used.

    Returns:
        An immutable FeatureSnapshot.
    """
    if not history or history[-1].timestamp != bar.timestamp:
        history = [*history, bar]
    mtf_context = mtf_context or {}

    window = history[-INDICATOR_LOOKBACK:]
    closes = [b.close for b in window]
    volumes = [b.volume for b in window]

    ema_values = {p: indicators.ema(closes, p) for p in EMA_PERIODS}
    rsi_values = {p: indicators.rsi(closes, p) for p in RSI_PERIODS}

    prev = PrevFeatures()
    if len(closes) > 1:
        prior = closes[:-1]
        prev = PrevFeatures(
            close=prior[-1],
            rsi_14=indicators.rsi(prior, 14),
            ema_8=indicators.ema(prior, 8),
            ema_21=indicators.ema(prior, 21),
        )

    avg_volume = indicators.sma(volumes, VOLUME_AVG_PERIOD)
    volume = VolumeFeatures(
        current=bar.volume,
        avg=avg_volume,
        relative=bar.volume / avg_volume if avg_volume else None,
    )

    day = session_date(bar.timestamp)
    midnight_ms, open_ms, close_ms = day_bounds(day)
    today_start = bisect_left(history, midnight_ms, key=lambda b: b.timestamp)
    todays_bars = history[today_start:]

    vwap_value = indicators.vwap(todays_bars)
    vwap = VwapFeatures(
        value=vwap_value,
        distance_pct=(bar.close - vwap_value) / vwap_value * 100 if vwap_value else None,
    )

    atr_value = indicators.atr(window, ATR_PERIOD)
    bars_15m = mtf_context.get("15m") or []
    if len(bars_15m) > HTF_ATR_MIN_BARS:
        atr_value = indicators.atr(bars_15m, ATR_PERIOD)

    band = indicators.bollinger(closes, BOLLINGER_PERIOD)

    pattern = _build_patterns(
        bar,
        window,
        history[:today_start],
        todays_bars,
        bars_15m,
        open_ms,
        close_ms,
        ema_values,
        rsi_values[14],
    )

    return FeatureSnapshot(
        symbol=symbol,
        timestamp=bar.timestamp,
        price=PriceFeatures(
            current=bar.close,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            prev_close=closes[-2] if len(closes) > 1 else None,
        ),
        volume=volume,
        vwap=vwap,
        ema=ema_values,
        rsi=rsi_values,
        prev=prev,
        atr=atr_value,
        bollinger=BollingerFeatures(**band) if band else None,
        pattern=pattern,
        divergence=_detect_divergence(closes, rsi_values[14]),
        flow=_summarize_flow(flow or (), bar.timestamp),
        session=session_info(bar.timestamp),
        mtf={tf: _build_mtf(mtf_context.get(tf) or []) for tf in HIGHER_TIMEFRAMES},
    )


def _build_patterns(
    bar: Bar,
    window: Sequence[Bar],
    earlier_bars: Sequence[Bar],
    todays_bars: Sequence[Bar],
    bars_15m: Sequence[Bar],
    open_ms: int,
    close_ms: int,
    ema_values: dict[int, float],
    rsi_14: float,
) -> PatternFeatures:
    # Core patterns read 15m structure once it exists, otherwise the base bars.
    ref_bars = bars_15m if len(bars_15m) > 2 else window
    breakout_bullish = breakout_bearish = False
    if len(ref_bars) > BREAKOUT_WINDOW:
        prior = ref_bars[-(BREAKOUT_WINDOW + 1) : -1]
        breakout_bullish = bar.close > max(b.high for b in prior)
        breakout_bearish = bar.close < min(b.low for b in prior)

    ema8, ema9, ema21, ema50 = ema_values[8], ema_values[9], ema_values[21], ema_values[50]

    session_bars = [b for b in todays_bars if open_ms <= b.timestamp < close_ms]
    orb_high = orb_low = None
    if len(session_bars) >= ORB_BARS:
        orb = session_bars[:ORB_BARS]
        orb_high = max(b.high for b in orb)
        orb_low = min(b.low for b in orb)

    prior_day_high = prior_day_low = None
    if earlier_bars:
        prior_midnight, _, _ = day_bounds(session_date(earlier_bars[-1].timestamp))
        start = bisect_left(earlier_bars, prior_midnight, key=lambda b: b.timestamp)
        prior_day = earlier_bars[start:]
        prior_day_high = max(b.high for b in prior_day)
        prior_day_low = min(b.low for b in prior_day)

    price = bar.close
    if price > ema9 > ema21:
        trend, regime = "UPTREND", "trending_up"
    elif price < ema9 < ema21:
        trend, regime = "DOWNTREND", "trending_down"
    else:
        trend, regime = "SIDEWAYS", "ranging"

    return PatternFeatures(
        breakout_bullish=breakout_bullish,
        breakout_bearish=breakout_bearish,
        mean_reversion_long=rsi_14 < MEAN_REVERSION_OVERSOLD,
        mean_reversion_short=rsi_14 > MEAN_REVERSION_OVERBOUGHT,
        trend_continuation_long=ema8 > ema21 > ema50,
        trend_continuation_short=ema8 < ema21 < ema50,
        orb_high=orb_high,
        orb_low=orb_low,
        prior_day_high=prior_day_high,
        prior_day_low=prior_day_low,
        day_high=max(b.high for b in todays_bars),
        day_low=min(b.low for b in todays_bars),
        trend=trend,
        market_regime=regime,
    )


def _detect_divergence(closes: Sequence[float], current_rsi: float) -> DivergenceFeatures | None:
    """RSI divergence against the swing low/high of the last 10 closes.

    Bullish: price at (or within 0.5% of) the recent low while RSI sits more
    than 3 points above its value at that low. Bearish is symmetric.
    """
    if len(closes) < DIVERGENCE_MIN_BARS:
        return None

    recent = closes[-DIVERGENCE_LOOKBACK:]
    current = recent[-1]
    swing_low = min(recent[:-1])
    swing_high = max(recent[:-1])
    offset = len(closes) - DIVERGENCE_LOOKBACK

    rsi_at_low = indicators.rsi(closes[: offset + recent.index(swing_low) + 1], 14)
    rsi_at_high = indicators.rsi(closes[: offset + recent.index(swing_high) + 1], 14)

    if current <= swing_low * 1.005 and current_rsi > rsi_at_low + 3:
        return DivergenceFeatures(type="bullish", confidence=min(100.0, 50 + (current_rsi - rsi_at_low) * 3))
    if current >= swing_high * 0.995 and current_rsi < rsi_at_high - 3:
        return DivergenceFeatures(type="bearish", confidence=min(100.0, 50 + (rsi_at_high - current_rsi) * 3))
    return DivergenceFeatures()


def _summarize_flow(flow: Sequence[FlowEvent], timestamp: int) -> FlowFeatures:
    recent = [f for f in flow if timestamp - FLOW_WINDOW_MS < f.timestamp <= timestamp]
    if not recent:
        return FlowFeatures()

    bullish = math.fsum(f.premium for f in recent if f.side == "BULLISH")
    bearish = math.fsum(f.premium for f in recent if f.side == "BEARISH")
    total = bullish + bearish
    sweeps = sum(1 for f in recent if f.classification == "SWEEP")
    blocks = sum(1 for f in recent if f.classification == "BLOCK")

    score = 50.0
    if total > 0:
        ratio = bullish / total
        if ratio > 0.7:
            score = 85.0
        elif ratio > 0.6:
            score = 70.0
        elif ratio < 0.3:
            score = 15.0
        elif ratio < 0.4:
            score = 30.0

    bias = "bullish" if score > 65 else "bearish" if score < 35 else "neutral"
    return FlowFeatures(
        sweep_count=sweeps,
        block_count=blocks,
        total_premium=total,
        flow_score=score,
        bias=bias,
        conviction=min(100.0, sweeps * 5 + total / 100_000),
    )


def _build_mtf(bars: Sequence[Bar]) -> MtfFeatures | None:
    if not bars:
        return None
    closes = [b.close for b in bars[-INDICATOR_LOOKBACK:]]
    return MtfFeatures(
        timestamp=bars[-1].timestamp,
        price_current=closes[-1],
        price_prev=closes[-2] if len(closes) > 1 else None,
        rsi_14=indicators.rsi(closes, 14),
        ema_21=indicators.ema(closes, 21),
        atr_14=indicators.atr(bars[-INDICATOR_LOOKBACK:], ATR_PERIOD),
    )
