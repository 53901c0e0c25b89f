"""
Retry with exponential backoff and jitter.

Transient failures (network errors, timeouts, 429 and 5xx responses) are
retried up to ``max_retries`` times. Authentication failures, client errors
and open circuits propagate immediately without consuming the retry budget.
When the budget is exhausted the last error is re-raised with the attempt
count appended to its message and the original chained as ``__cause__``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import socket
from typing import Any, Awaitable, Callable, Optional, TypeVar

from cakemail_mcp.config import RetryConfig
from cakemail_mcp.errors import (
    AuthenticationError,
    CakemailError,
    CircuitOpenError,
    ClientError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryManager:
    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        respect_server_limits: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or RetryConfig()
        self._respect_server_limits = respect_server_limits
        self._sleep = sleep
        self._random = random_fn

    def get_config(self) -> RetryConfig:
        return self._config

    def update_config(self, config: Optional[RetryConfig] = None, **changes: Any) -> RetryConfig:
        """Replace the policy wholesale, or derive a new one from keyword changes."""
        if config is None:
            config = RetryConfig.model_validate({**self._config.model_dump(), **changes})
        self._config = config
        logger.info("Retry configuration updated: %s", config.model_dump(mode="json"))
        return config

    def is_retryable(self, error: BaseException) -> bool:
        config = self._config
        if isinstance(error, (AuthenticationError, ClientError, CircuitOpenError)):
            return False
        if isinstance(error, NetworkError):
            return True
        if isinstance(error, CakemailError):
            code = error.status_code
            return code in config.retryable_status_codes or code == 429 or 500 <= code < 600
        if isinstance(error, (ConnectionError, TimeoutError, socket.gaierror)):
            return True
        text = f"{type(error).__name__} {error}".upper()
        return any(name.upper() in text for name in config.retryable_errors)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """``attempt`` is 0-indexed: the first call is attempt 0."""
        return attempt < self._config.max_retries and self.is_retryable(error)

    def calculate_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        config = self._config
        if (
            self._respect_server_limits
            and isinstance(error, RateLimitError)
            and error.retry_after
        ):
            return min(float(error.retry_after), config.max_delay)

        delay = config.base_delay * (config.exponential_base ** attempt)
        if config.jitter:
            # Attempt n never drops below the un-jittered delay of attempt n-1,
            # so delays stay non-decreasing for any base; base 2 gives 0.5..1.0.
            floor = max(0.5, 1 / config.exponential_base)
            delay *= floor + self._random() * (1 - floor)
        return min(delay, config.max_delay)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "API request",
    ) -> T:
        total_attempts = self._config.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(total_attempts):
            if attempt > 0:
                logger.debug("Attempt %d/%d for %s", attempt + 1, total_attempts, context)
            try:
                result = await operation()
            except Exception as exc:
                last_error = exc
                if not self.is_retryable(exc):
                    logger.debug("%s failed with non-retryable error: %s", context, exc)
                    raise
                if not self.should_retry(exc, attempt):
                    break
                delay = self.calculate_delay(attempt, exc)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    context,
                    attempt + 1,
                    total_attempts,
                    delay,
                    str(exc)[:200],
                )
                await self._sleep(delay)
                continue

            if attempt > 0:
                logger.info("%s succeeded on attempt %d", context, attempt + 1)
            return result

        assert last_error is not None
        logger.error("%s failed after %d attempts: %s", context, total_attempts, str(last_error)[:200])
        raise self._exhausted(last_error, total_attempts) from last_error

    @staticmethod
    def _exhausted(error: Exception, attempts: int) -> CakemailError:
        message = f"{error} (Failed after {attempts} attempts)"
        if isinstance(error, CakemailError):
            return error.with_message(message)
        return NetworkError(message)


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    message: Optional[str] = None,
) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds, raising RequestTimeoutError."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise RequestTimeoutError(message or f"Operation timed out after {timeout}s") from exc
