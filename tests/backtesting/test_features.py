"""Tests for the features builder: snapshot contents and no-lookahead sync."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from strategylab.backtesting import indicators
from strategylab.backtesting.features import (
    INDICATOR_LOOKBACK,
    HigherTimeframeContext,
    _detect_divergence,
    build_features,
    day_bounds,
    session_info,
)
from strategylab.common.schemas import MINUTE_MS
from tests.factories import SESSION_OPEN_TS, aggregate_bars, make_bar, make_bars, make_flow_event

DAY_MS = 24 * 60 * MINUTE_MS


# ─── Higher Timeframe Sync ───


class TestHigherTimeframeSync:
    """A higher-timeframe bar is visible only once it has closed."""

    @pytest.fixture
    def bars_by_tf(self):
        base = make_bars(30, step=0.1)
        return {
            "1m": base,
            "5m": aggregate_bars(base, 5 * MINUTE_MS),
            "15m": aggregate_bars(base, 15 * MINUTE_MS),
        }

    def test_bar_not_visible_before_close(self, bars_by_tf):
        # Tick opening at +3m closes at +4m; the first 5m bar closes at +5m.
        visible = HigherTimeframeContext(bars_by_tf).visible_at(SESSION_OPEN_TS + 3 * MINUTE_MS)
        assert visible["5m"] == []

    def test_bar_visible_on_the_tick_that_closes_it(self, bars_by_tf):
        visible = HigherTimeframeContext(bars_by_tf).visible_at(SESSION_OPEN_TS + 4 * MINUTE_MS)
        assert [b.timestamp for b in visible["5m"]] == [SESSION_OPEN_TS]

    def test_never_exposes_an_unclosed_bar(self, bars_by_tf):
        ctx = HigherTimeframeContext(bars_by_tf, base_timeframe="1m")
        for tick in bars_by_tf["1m"]:
            tick_close = tick.timestamp + MINUTE_MS
            for tf, interval in (("5m", 5 * MINUTE_MS), ("15m", 15 * MINUTE_MS)):
                for bar in ctx.visible_at(tick.timestamp)[tf]:
                    assert bar.timestamp + interval <= tick_close

    def test_missing_timeframe_is_omitted(self, bars_by_tf):
        visible = HigherTimeframeContext(bars_by_tf).visible_at(SESSION_OPEN_TS + 20 * MINUTE_MS)
        assert "60m" not in visible

    def test_lookback_limits_returned_bars(self, bars_by_tf):
        ctx = HigherTimeframeContext(bars_by_tf, lookback=2)
        visible = ctx.visible_at(SESSION_OPEN_TS + 29 * MINUTE_MS)
        assert len(visible["5m"]) == 2
        assert visible["5m"][-1].timestamp == SESSION_OPEN_TS + 25 * MINUTE_MS


# ─── Session Calendar ───


class TestSession:
    def test_open_is_regular_hours(self):
        info = session_info(SESSION_OPEN_TS)
        assert info.is_regular_hours is True
        assert info.minutes_since_open == 0

    def test_pre_market_is_not_regular(self):
        assert session_info(SESSION_OPEN_TS - MINUTE_MS).is_regular_hours is False

    def test_close_is_exclusive(self):
        assert session_info(SESSION_OPEN_TS + 390 * MINUTE_MS).is_regular_hours is False

    def test_weekend_is_not_regular(self):
        saturday = SESSION_OPEN_TS + 5 * DAY_MS
        assert session_info(saturday).is_regular_hours is False

    def test_open_follows_daylight_saving(self):
        _, open_ms, _ = day_bounds(date(2025, 7, 1))
        assert open_ms == int(datetime(2025, 7, 1, 13, 30, tzinfo=UTC).timestamp() * 1000)


# ─── Snapshot ───


class TestBuildFeatures:
    def test_single_bar_leaves_history_fields_empty(self):
        bar = make_bars(1)[0]
        snapshot = build_features("SPY", bar, [bar])
        assert snapshot.atr is None
        assert snapshot.bollinger is None
        assert snapshot.divergence is None
        assert snapshot.prev.close is None
        assert snapshot.price.prev_close is None
        assert snapshot.rsi == {9: 50.0, 14: 50.0, 21: 50.0}
        assert snapshot.mtf == {"5m": None, "15m": None, "60m": None}

    def test_reads_only_the_given_history(self):
        """Changing bars after the current one never changes its snapshot."""
        bars = make_bars(60, step=0.1)
        altered = bars[:40] + make_bars(20, start_price=500.0, start_ts=bars[40].timestamp)

        original = build_features("SPY", bars[39], bars[:40])
        again = build_features("SPY", altered[39], altered[:40])

        assert original == again

    def test_history_missing_current_bar_is_appended(self):
        bars = make_bars(30, step=0.1)
        assert build_features("SPY", bars[-1], bars[:-1]) == build_features("SPY", bars[-1], bars)

    def test_price_and_previous_values(self):
        bars = make_bars(30, step=0.1)
        snapshot = build_features("SPY", bars[-1], bars)
        assert snapshot.price.current == bars[-1].close
        assert snapshot.price.prev_close == bars[-2].close
        assert snapshot.prev.close == bars[-2].close
        assert snapshot.atr == pytest.approx(0.1)

    def test_zero_volume_leaves_vwap_empty(self):
        bars = make_bars(30, volume=0.0)
        snapshot = build_features("SPY", bars[-1], bars)
        assert snapshot.vwap.value is None
        assert snapshot.vwap.distance_pct is None
        assert snapshot.volume.relative is None

    def test_relative_volume(self):
        bars = make_bars(25)
        snapshot = build_features("SPY", bars[-1], bars)
        assert snapshot.volume.relative == pytest.approx(1.0)

    def test_uptrend_flags(self):
        bars = make_bars(250, step=0.1)
        pattern = build_features("SPY", bars[-1], bars).pattern
        assert pattern.trend == "UPTREND"
        assert pattern.market_regime == "trending_up"
        assert pattern.trend_continuation_long is True
        assert pattern.breakout_bullish is True
        assert pattern.mean_reversion_short is True

    def test_opening_range_and_day_extremes(self):
        bars = make_bars(20, step=0.1)
        pattern = build_features("SPY", bars[-1], bars).pattern
        assert pattern.orb_high == pytest.approx(bars[14].close)
        assert pattern.orb_low == pytest.approx(bars[0].open)
        assert pattern.day_high == pytest.approx(bars[-1].close)
        assert pattern.prior_day_high is None

    def test_opening_range_needs_fifteen_session_bars(self):
        bars = make_bars(10, step=0.1)
        assert build_features("SPY", bars[-1], bars).pattern.orb_high is None

    def test_prior_day_levels(self):
        day_one = make_bars(10, spread=1.0)
        day_two = make_bars(5, start_price=200.0, start_ts=SESSION_OPEN_TS + DAY_MS)
        history = day_one + day_two

        pattern = build_features("SPY", history[-1], history).pattern

        assert pattern.prior_day_high == 101.0
        assert pattern.prior_day_low == 99.0
        assert pattern.day_low == 200.0

    def test_higher_timeframe_features(self):
        base = make_bars(60, step=0.1)
        ctx = HigherTimeframeContext({"1m": base, "5m": aggregate_bars(base, 5 * MINUTE_MS)})
        tick = base[-1]

        snapshot = build_features("SPY", tick, base, ctx.visible_at(tick.timestamp))

        mtf = snapshot.mtf["5m"]
        assert mtf is not None
        assert mtf.timestamp == tick.timestamp - 4 * MINUTE_MS
        assert mtf.price_current == pytest.approx(tick.close)
        assert snapshot.mtf["15m"] is None


class TestFlowSummary:
    def test_no_flow_is_neutral(self):
        bar = make_bars(1)[0]
        flow = build_features("SPY", bar, [bar]).flow
        assert flow.flow_score == 50.0
        assert flow.bias == "neutral"
        assert flow.conviction == 20.0

    def test_bullish_sweeps(self):
        bars = make_bars(30)
        now = bars[-1].timestamp
        events = [make_flow_event(timestamp=now - i * MINUTE_MS) for i in range(3)]

        flow = build_features("SPY", bars[-1], bars, flow=events).flow

        assert flow.sweep_count == 3
        assert flow.total_premium == 750_000.0
        assert flow.flow_score == 85.0
        assert flow.bias == "bullish"
        assert flow.conviction == pytest.approx(22.5)

    def test_bearish_blocks(self):
        bars = make_bars(30)
        now = bars[-1].timestamp
        events = [make_flow_event(timestamp=now, side="BEARISH", classification="BLOCK")]

        flow = build_features("SPY", bars[-1], bars, flow=events).flow

        assert flow.block_count == 1
        assert flow.flow_score == 15.0
        assert flow.bias == "bearish"

    def test_future_and_stale_events_ignored(self):
        bars = make_bars(30)
        now = bars[-1].timestamp
        events = [
            make_flow_event(timestamp=now + MINUTE_MS),
            make_flow_event(timestamp=now - 60 * MINUTE_MS),
        ]

        flow = build_features("SPY", bars[-1], bars, flow=events).flow

        assert flow.sweep_count == 0
        assert flow.bias == "neutral"


# ─── Divergence ───


def _bars_from_closes(closes: list[float]):
    return [make_bar(SESSION_OPEN_TS + i * MINUTE_MS, open=c) for i, c in enumerate(closes)]


# Straight decline into a 100 low (RSI 0 there), a two-bar bounce, then a
# retest at 100.4 with RSI back above the low's reading.
BULLISH_CLOSES = [125.0 - i for i in range(26)] + [101.0, 102.0, 101.0, 100.4]
# Mirror image: straight rally into a 100 high (RSI 100), then a retest at 99.6.
BEARISH_CLOSES = [75.0 + i for i in range(26)] + [99.0, 98.0, 99.0, 99.6]


class TestDivergence:
    def test_bullish_when_price_retests_low_with_higher_rsi(self):
        current_rsi = indicators.rsi(BULLISH_CLOSES, 14)

        result = _detect_divergence(BULLISH_CLOSES, current_rsi)

        assert result.type == "bullish"
        # RSI at the swing low is 0 (only losses so far).
        assert result.confidence == pytest.approx(50 + current_rsi * 3)
        assert 50.0 < result.confidence < 100.0

    def test_bearish_when_price_retests_high_with_lower_rsi(self):
        current_rsi = indicators.rsi(BEARISH_CLOSES, 14)

        result = _detect_divergence(BEARISH_CLOSES, current_rsi)

        assert result.type == "bearish"
        # RSI at the swing high is 100 (only gains so far).
        assert result.confidence == pytest.approx(50 + (100.0 - current_rsi) * 3)
        assert 50.0 < result.confidence < 100.0

    def test_confidence_capped_at_100(self):
        result = _detect_divergence(BULLISH_CLOSES, current_rsi=40.0)
        assert result.confidence == 100.0

    def test_none_when_rsi_confirms_the_low(self):
        """Price at the low with RSI no higher than at the low is not a divergence."""
        result = _detect_divergence(BULLISH_CLOSES, current_rsi=2.0)
        assert result.type == "none"
        assert result.confidence == 0.0

    def test_none_away_from_swing_levels(self):
        closes = [100.0 + (i % 2) for i in range(30)]
        result = _detect_divergence(closes, indicators.rsi(closes, 14))
        assert result.type == "none"

    def test_snapshot_carries_bullish_divergence(self):
        bars = _bars_from_closes(BULLISH_CLOSES)
        snapshot = build_features("SPY", bars[-1], bars)
        assert snapshot.divergence.type == "bullish"
        assert snapshot.divergence.confidence == pytest.approx(50 + snapshot.rsi[14] * 3)


# ─── Indicator Window ───


class TestIndicatorWindow:
    def test_window_covers_three_times_slowest_ema(self):
        assert INDICATOR_LOOKBACK == 600

    def test_ema_200_exact_within_window(self):
        bars = make_bars(INDICATOR_LOOKBACK, step=0.01)
        snapshot = build_features("SPY", bars[-1], bars)
        assert snapshot.ema[200] == pytest.approx(indicators.ema([b.close for b in bars], 200))

    def test_ema_200_tracks_continuous_ema_on_long_history(self):
        bars = make_bars(1000, step=0.01)
        snapshot = build_features("SPY", bars[-1], bars)
        continuous = indicators.ema([b.close for b in bars], 200)
        assert abs(snapshot.ema[200] - continuous) < 0.005
