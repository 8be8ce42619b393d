"""Token bucket rate limiter for REST bar provider requests.

Allows short bursts while maintaining a sustained request rate, so that
concurrent timeframe fetches for several symbols stay inside the data
vendor's limits.

Usage:
    from strategylab.data.rate_limiter import TokenBucketRateLimiter

    limiter = TokenBucketRateLimiter(rate=5.0, burst=5)
    await limiter.acquire()  # blocks until a token is available
"""

from __future__ import annotations

import asyncio
import time


class TokenBucketRateLimiter:
    """Token bucket rate limiter for async API requests.

    Args:
        rate: Tokens added per second (sustained request rate).
        burst: Maximum token count (allows short bursts above sustained rate).
    """

    def __init__(self, rate: float = 5.0, burst: int = 5) -> None:
        if rate <= 0:
            msg = f"rate must be positive, got {rate}"
            raise ValueError(msg)
        self.rate = rate
        self.burst = burst
        self.tokens: float = float(burst)
        self.last_refill: float = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_refill
            self.tokens = min(self.burst, self.tokens + elapsed * self.rate)
            self.last_refill = now

            if self.tokens < 1:
                wait = (1 - self.tokens) / self.rate
                await asyncio.sleep(wait)
                self.tokens = 0
                self.last_refill = time.monotonic()
            else:
                self.tokens -= 1
