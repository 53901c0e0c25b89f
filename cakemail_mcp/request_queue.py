"""Bounded-concurrency FIFO queue for in-flight API requests."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestQueue:
    """Runs at most ``max_concurrent`` operations at once; the rest wait in arrival order.

    When an operation finishes its slot is handed straight to the oldest
    waiter, so the active count never exceeds the limit and a newcomer can
    never overtake a queued caller.
    """

    def __init__(self, max_concurrent: int = 10) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    async def add(self, operation: Callable[[], Awaitable[T]]) -> T:
        await self._acquire_slot()
        try:
            return await operation()
        finally:
            self._release_slot()

    async def _acquire_slot(self) -> None:
        if self._active < self.max_concurrent and not self._waiters:
            self._active += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("Request queued: active=%d, queued=%d", self._active, len(self._waiters))
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.cancelled():
                # Still waiting: just leave the line.
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
            else:
                # A slot was handed over before the cancellation landed.
                self._release_slot()
            raise

    def _release_slot(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active -= 1

    def get_stats(self) -> dict[str, int]:
        return {
            "active": self._active,
            "queued": sum(1 for waiter in self._waiters if not waiter.done()),
        }
