"""Reference detectors built on the snapshot's pattern flags.

Each detector fires when its pattern flag is set and scores the setup by
confluence with volume, flow, higher-timeframe trend, VWAP and session.

Scoring (capped at 100):
    pattern flag set            50
    relative volume >= 1.5     +10
    flow bias aligned          +10
    15m close vs EMA 21 aligned +10
    price on the right side of VWAP +10
    regular trading hours      +10
"""

from __future__ import annotations

from strategylab.backtesting.features import FeatureSnapshot
from strategylab.common.schemas import Direction
from strategylab.detectors.base import DetectionResult

BASE_SCORE = 50.0
CONFLUENCE_POINTS = 10.0
HIGH_RELATIVE_VOLUME = 1.5


class PatternFlagDetector:
    """Fires on one boolean pattern flag of the snapshot.

    Args:
        type: Registry identifier, also the name of the pattern flag.
        direction: LONG or SHORT.
    """

    def __init__(self, type: str, direction: Direction) -> None:
        self.type = type
        self.direction = direction

    def __repr__(self) -> str:
        return f"PatternFlagDetector(type={self.type!r}, direction={self.direction!r})"

    def detect(self, snapshot: FeatureSnapshot) -> DetectionResult:
        if not getattr(snapshot.pattern, self.type):
            return DetectionResult(detected=False, type=self.type, direction=self.direction)

        long = self.direction == "LONG"
        why: dict[str, float] = {"pattern": BASE_SCORE}

        relative = snapshot.volume.relative
        if relative is not None and relative >= HIGH_RELATIVE_VOLUME:
            why["volume"] = CONFLUENCE_POINTS

        if snapshot.flow.bias == ("bullish" if long else "bearish"):
            why["flow"] = CONFLUENCE_POINTS

        htf = snapshot.mtf.get("15m")
        if htf is not None and (htf.price_current > htf.ema_21) == long:
            why["mtf_15m"] = CONFLUENCE_POINTS

        vwap = snapshot.vwap.value
        if vwap is not None and (snapshot.price.current > vwap) == long:
            why["vwap"] = CONFLUENCE_POINTS

        if snapshot.session.is_regular_hours:
            why["session"] = CONFLUENCE_POINTS

        return DetectionResult(
            detected=True,
            type=self.type,
            direction=self.direction,
            score=min(100.0, sum(why.values())),
            why=why,
        )


BREAKOUT_BULLISH = PatternFlagDetector("breakout_bullish", "LONG")
BREAKOUT_BEARISH = PatternFlagDetector("breakout_bearish", "SHORT")
MEAN_REVERSION_LONG = PatternFlagDetector("mean_reversion_long", "LONG")
MEAN_REVERSION_SHORT = PatternFlagDetector("mean_reversion_short", "SHORT")
TREND_CONTINUATION_LONG = PatternFlagDetector("trend_continuation_long", "LONG")
TREND_CONTINUATION_SHORT = PatternFlagDetector("trend_continuation_short", "SHORT")

REFERENCE_DETECTORS = (
    BREAKOUT_BULLISH,
    BREAKOUT_BEARISH,
    MEAN_REVERSION_LONG,
    MEAN_REVERSION_SHORT,
    TREND_CONTINUATION_LONG,
    TREND_CONTINUATION_SHORT,
)
