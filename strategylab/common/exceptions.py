"""Custom exceptions for StrategyLab.

All modules should raise these exceptions instead of generic ones.
The FastAPI exception handler in main.py catches StrategyLabError
and returns structured JSON error responses.
"""

from __future__ import annotations


class StrategyLabError(Exception):
    """Base exception for all StrategyLab errors.

    Args:
        message: Human-readable error description.
        context: Optional dict of structured data for logging/debugging.
    """

    def __init__(self, message: str, context: dict | None = None) -> None:
        super().__init__(message)
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            safe_context = {
                k: "[REDACTED]" if _is_secret_key(k) else v for k, v in self.context.items()
            }
            return f"{super().__str__()} | context={safe_context}"
        return super().__str__()


class ConfigurationError(StrategyLabError):
    """Mandatory run configuration is missing or invalid. Raised before any simulation."""


class FetchError(StrategyLabError):
    """Failed to fetch data from a bar provider (database or REST API)."""


class ParseError(StrategyLabError):
    """Failed to parse response data from a bar provider."""


def _is_secret_key(key: str) -> bool:
    """Check if a dict key name suggests it contains secret data."""
    secret_words = {"key", "secret", "password", "token", "private", "credential"}
    key_lower = key.lower()
    return any(word in key_lower for word in secret_words)
