"""
Token bucket rate limiter for outbound Cakemail requests.

- Bucket holds ``burst_limit`` tokens
- Tokens refill at ``max_requests_per_second``
- Each request consumes 1 token; when the bucket is empty the caller waits

Refill is computed lazily from the elapsed time at each acquisition; no timer
runs in the background.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from cakemail_mcp.config import RateLimitConfig

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._rate = float(self.config.max_requests_per_second)
        self._max_tokens = float(self.config.burst_limit)
        self._tokens = self._max_tokens
        self._clock = clock
        self._sleep = sleep
        self._last_refill = clock()
        # Waiters are served one at a time, in arrival order
        self._lock = asyncio.Lock()

        logger.debug(
            "Rate limiter initialized: enabled=%s, rate=%.2f/s, burst=%d",
            self.config.enabled,
            self._rate,
            self.config.burst_limit,
        )

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._max_tokens, self._tokens + elapsed * self._rate)
        self._last_refill = now

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it."""
        if not self.config.enabled:
            return

        async with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return

            wait_time = (1 - self._tokens) / self._rate
            logger.debug("Rate limit reached, waiting %.3fs", wait_time)
            await self._sleep(wait_time)

            # The deficit has been paid for by waiting; the token is ours.
            self._tokens = 0.0
            self._last_refill = self._clock()

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "max_requests_per_second": self._rate,
            "burst_limit": self.config.burst_limit,
            "tokens_available": round(self._tokens, 3),
        }
