"""Prometheus metrics definitions for StrategyLab.

All metric objects are centralized here as module-level singletons.
Import what you need from anywhere in the codebase:

    from strategylab.common.metrics import BAR_FETCHES_TOTAL, BACKTEST_RUNS_TOTAL

The /metrics endpoint is mounted in strategylab/main.py via
prometheus_client.make_asgi_app().
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Info

# ─── App Info ───

APP_INFO = Info("app", "Application metadata")

# ─── Data Loading ───

BAR_FETCHES_TOTAL = Counter(
    "bar_fetches_total",
    "Bar fetch attempts by provider",
    labelnames=["provider", "timeframe", "outcome"],
)

BAR_CACHE_LOOKUPS_TOTAL = Counter(
    "bar_cache_lookups_total",
    "Bar cache lookups",
    labelnames=["result"],
)

# ─── Backtesting ───

BACKTEST_RUNS_TOTAL = Counter(
    "backtest_runs_total",
    "Completed backtest runs",
    labelnames=["detector"],
)

SIMULATED_TRADES_TOTAL = Counter(
    "simulated_trades_total",
    "Simulated trades closed by the backtest engine",
    labelnames=["exit_reason"],
)

BACKTEST_DURATION_SECONDS = Histogram(
    "backtest_duration_seconds",
    "Wall-clock duration of one backtest run",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# ─── Optimizer ───

OPTIMIZER_EVALUATIONS_TOTAL = Counter(
    "optimizer_evaluations_total",
    "Fitness evaluations performed by the genetic optimizer",
    labelnames=["outcome"],
)

OPTIMIZER_GENERATION_DURATION_SECONDS = Histogram(
    "optimizer_generation_duration_seconds",
    "Duration of one optimizer generation",
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)


def set_app_info(version: str, environment: str) -> None:
    """Set the app_info metric values. Called once at startup."""
    APP_INFO.info({"version": version, "environment": environment})
