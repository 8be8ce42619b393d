"""Detector-specific exceptions."""

from __future__ import annotations

from strategylab.common.exceptions import ConfigurationError


class DetectorNotFoundError(ConfigurationError):
    """No detector is registered under the requested identifier."""
