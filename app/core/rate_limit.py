"""
Concurrency-bounded rate limiter.

Bounds how many operations run at once against a dependency. This is a
throughput shock absorber, not a failure detector: it says nothing about
whether the dependency is healthy (that is the circuit breaker's job).

Usage:
    limiter = RateLimiter(max_concurrent=10, queue_size=100)

    result = await limiter.execute(lambda: processor.process(item))

    async with limiter:
        await do_work()
"""

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, TypeVar

from app.core.errors import RateLimiterQueueFullError, RateLimiterTimeoutError

T = TypeVar("T")


class RateLimiter:
    """
    Pool of `max_concurrent` permits with a bounded FIFO wait queue.

    A released permit is handed directly to the oldest waiter, so the number
    in flight never exceeds max_concurrent. Waiters that are not served
    within `queue_timeout` seconds are removed and get RateLimiterTimeoutError.
    """

    def __init__(self, max_concurrent: int = 10, queue_size: int = 100, queue_timeout: float = 30.0):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.queue_size = queue_size
        self.queue_timeout = queue_timeout
        self._current = 0
        self._queue: Deque[asyncio.Future] = deque()

    @property
    def in_flight(self) -> int:
        return self._current

    @property
    def queued(self) -> int:
        return len(self._queue)

    def _remove(self, waiter: asyncio.Future) -> None:
        try:
            self._queue.remove(waiter)
        except ValueError:
            pass

    async def acquire(self) -> None:
        if self._current < self.max_concurrent:
            self._current += 1
            return

        if len(self._queue) >= self.queue_size:
            raise RateLimiterQueueFullError()

        waiter = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        try:
            await asyncio.wait_for(waiter, self.queue_timeout)
        except asyncio.TimeoutError:
            self._remove(waiter)
            self._return_unclaimed(waiter)
            raise RateLimiterTimeoutError(self.queue_timeout) from None
        except asyncio.CancelledError:
            self._remove(waiter)
            self._return_unclaimed(waiter)
            raise

    def _return_unclaimed(self, waiter: asyncio.Future) -> None:
        # Permit was handed over just before the wait was abandoned
        if waiter.done() and not waiter.cancelled():
            self.release()

    def release(self) -> None:
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                # Transfer the permit; _current stays the same
                waiter.set_result(True)
                return
        self._current = max(0, self._current - 1)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        await self.acquire()
        try:
            return await fn()
        finally:
            self.release()

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()

    def get_status(self) -> Dict[str, int]:
        return {
            "in_flight": self._current,
            "queued": len(self._queue),
            "max_concurrent": self.max_concurrent,
            "queue_size": self.queue_size,
        }
