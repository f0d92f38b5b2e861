"""FIFO concurrency limiter for generation tasks.

At most `limit` scheduled tasks run at once. Excess tasks wait in arrival
order; when a running task settles its slot is handed straight to the head
of the queue, so a late arrival can never jump ahead of a waiter.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Bounded, FIFO-fair gate around async callables."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        self._limit = limit
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    async def schedule(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run fn(*args) once a slot is free; return its value or raise its error.

        Cancelling the caller while it is still queued removes it from the
        queue. A task that already started is never interrupted here.
        """
        await self._acquire()
        try:
            return await fn(*args)
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        log.debug("Task queued (%d active, %d waiting)", self._active, len(self._waiters))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over just before the cancel landed.
                self._release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Ownership of the slot moves to the waiter; _active is unchanged.
                fut.set_result(None)
                return
        self._active -= 1
