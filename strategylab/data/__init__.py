"""Historical data layer: bar providers, bar cache, multi-timeframe loader.

Bars come from a primary SQL store with a REST fallback, are normalized
into the common Bar shape, and are cached per (symbol, timeframe).
"""

from __future__ import annotations
