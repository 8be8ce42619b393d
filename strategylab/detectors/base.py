"""Detector interface.

A detector is a pure, side-effect-free function of one FeatureSnapshot. The
engine calls `detect` at every strategy-timeframe close and decides entry
from the returned score, direction and optional price levels.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from strategylab.backtesting.features import FeatureSnapshot
from strategylab.common.schemas import Direction


class DetectionResult(BaseModel):
    """Outcome of one detector invocation.

    `why` carries the structured breakdown of the score (component → points).
    `stop_price`/`target_price` override the engine's ATR-based levels.
    """

    model_config = ConfigDict(frozen=True)

    detected: bool
    type: str
    direction: Direction
    score: float = Field(default=0.0, ge=0.0, le=100.0)
    why: dict[str, Any] = {}
    stop_price: float | None = None
    target_price: float | None = None


@runtime_checkable
class Detector(Protocol):
    """Capability the engine depends on."""

    type: str
    direction: Direction

    def detect(self, snapshot: FeatureSnapshot) -> DetectionResult: ...
