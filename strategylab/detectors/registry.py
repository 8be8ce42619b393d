"""Static detector registry.

Identifiers are resolved by exact match after normalization (lower case,
hyphens to underscores). There is no fuzzy or substring matching: an
unknown identifier raises DetectorNotFoundError before any simulation work.

Usage:
    from strategylab.detectors.registry import get_detector

    detector = get_detector("breakout-bullish")
"""

from __future__ import annotations

from strategylab.common.logging import get_logger
from strategylab.detectors.base import Detector
from strategylab.detectors.exceptions import DetectorNotFoundError
from strategylab.detectors.reference import REFERENCE_DETECTORS

logger = get_logger("DETECTOR")

DETECTOR_REGISTRY: dict[str, Detector] = {d.type: d for d in REFERENCE_DETECTORS}


def normalize_detector_id(detector_id: str) -> str:
    """Lower-case and replace hyphens with underscores."""
    return detector_id.strip().lower().replace("-", "_")


def get_detector(detector_id: str, registry: dict[str, Detector] | None = None) -> Detector:
    """Resolve a detector identifier.

    Args:
        detector_id: Registry key, case- and hyphen-insensitive.
        registry: Alternative table (tests); defaults to DETECTOR_REGISTRY.

    Raises:
        DetectorNotFoundError: If the identifier is not registered.
    """
    table = DETECTOR_REGISTRY if registry is None else registry
    key = normalize_detector_id(detector_id)
    detector = table.get(key)
    if detector is None:
        logger.warning("Unknown detector requested", extra={"data": {"detector_id": detector_id}})
        raise DetectorNotFoundError(
            f"No detector registered as {detector_id!r}",
            context={"detector_id": detector_id, "available": sorted(table)},
        )
    return detector


def available_detectors() -> list[str]:
    """Registered identifiers, sorted."""
    return sorted(DETECTOR_REGISTRY)
