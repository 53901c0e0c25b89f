"""
Circuit breaker guarding the Cakemail API.

States:
- CLOSED: normal operation, calls pass through
- OPEN: failing, calls rejected immediately with CircuitOpenError
- HALF_OPEN: cooldown elapsed, a single trial call probes recovery

The cooldown is checked against the last failure timestamp when a call
arrives; nothing runs in the background.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from cakemail_mcp.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


def _count_every_failure(_exc: Exception) -> bool:
    return True


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        *,
        name: str = "cakemail_api",
        counts_as_failure: Callable[[Exception], bool] = _count_every_failure,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._counts_as_failure = counts_as_failure
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit open: circuit_name=%s, failures=%d, reset_timeout=%.2fs",
                self.name,
                self._failures,
                self.reset_timeout,
            )
        else:
            logger.info(
                "Circuit %s -> %s: circuit_name=%s",
                old_state.value,
                new_state.value,
                self.name,
            )

    def _admit(self, context: str) -> bool:
        """Check state before a call. Returns True when the call is the half-open trial."""
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - (self._last_failure_time or 0.0)
            if elapsed < self.reset_timeout:
                raise CircuitOpenError(
                    f"Circuit breaker is OPEN for {context}. Service may be unavailable."
                )
            self._transition_to(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit breaker is HALF-OPEN for {context}; a trial request is already running."
                )
            self._trial_in_flight = True
            return True
        return False

    async def execute(self, operation: Callable[[], Awaitable[T]], context: str = "operation") -> T:
        is_trial = self._admit(context)
        try:
            result = await operation()
        except Exception as exc:
            self._record_failure(exc, context)
            raise
        else:
            self._record_success(context)
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    def _record_success(self, context: str) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.info("%s succeeded, circuit breaker reset to CLOSED", context)
            self.reset()
        else:
            self._failures = 0

    def _record_failure(self, exc: Exception, context: str) -> None:
        if not self._counts_as_failure(exc):
            logger.debug(
                "Failure not counted by circuit breaker: circuit_name=%s, error_type=%s",
                self.name,
                type(exc).__name__,
            )
            if self._state == CircuitState.HALF_OPEN:
                # The service answered; treat the trial as proof of recovery.
                self.reset()
            return

        self._failures += 1
        self._last_failure_time = self._clock()
        logger.debug(
            "%s failed (%d/%d failures), state: %s",
            context,
            self._failures,
            self.failure_threshold,
            self._state.value,
        )
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        self._failures = 0
        self._last_failure_time = None
        self._transition_to(CircuitState.CLOSED)

    def get_state(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failures": self._failures,
            "last_failure_time": self._last_failure_time,
        }
