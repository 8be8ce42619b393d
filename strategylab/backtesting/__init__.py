"""Backtesting module: event-driven historical replay of strategy detectors.

Walks base-timeframe bars chronologically, rebuilds the feature snapshot a
live detector would have seen, simulates entries and exits without
lookahead, and aggregates the closed trades into statistics.
"""

from __future__ import annotations
