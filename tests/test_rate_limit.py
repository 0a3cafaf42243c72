"""
Tests for the concurrency-bounded rate limiter.

Tests cover:
- Permit accounting and the concurrency bound
- FIFO hand-off of released permits
- Queue capacity and queue timeout
- execute() and async context manager usage
"""

import asyncio

import pytest

from app.core.errors import RateLimiterQueueFullError, RateLimiterTimeoutError
from app.core.rate_limit import RateLimiter


async def _drain(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestRateLimiterInitialization:
    """Tests for RateLimiter initialization."""

    def test_rate_limiter_initializes_empty(self):
        limiter = RateLimiter()

        assert limiter.in_flight == 0
        assert limiter.queued == 0
        assert limiter.max_concurrent == 10
        assert limiter.queue_size == 100

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            RateLimiter(max_concurrent=0)


class TestConcurrencyBound:
    """Tests for the in-flight bound."""

    @pytest.mark.asyncio
    async def test_acquire_until_limit(self):
        limiter = RateLimiter(max_concurrent=2)

        await limiter.acquire()
        await limiter.acquire()

        assert limiter.in_flight == 2
        assert limiter.queued == 0

    @pytest.mark.asyncio
    async def test_never_more_than_max_in_flight(self):
        limiter = RateLimiter(max_concurrent=3, queue_size=50)
        active = 0
        peak = 0

        async def work():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.001)
            active -= 1

        await asyncio.gather(*(limiter.execute(work) for _ in range(20)))

        assert peak == 3
        assert limiter.in_flight == 0
        assert limiter.queued == 0

    @pytest.mark.asyncio
    async def test_release_hands_permit_to_oldest_waiter(self):
        limiter = RateLimiter(max_concurrent=1, queue_size=10)
        order = []
        await limiter.acquire()

        async def waiter(name):
            await limiter.acquire()
            order.append(name)

        tasks = [asyncio.create_task(waiter(n)) for n in ("first", "second")]
        await _drain()
        assert limiter.queued == 2

        limiter.release()
        await _drain()
        assert order == ["first"]
        assert limiter.in_flight == 1

        limiter.release()
        await asyncio.gather(*tasks)
        assert order == ["first", "second"]

        limiter.release()
        assert limiter.in_flight == 0

    def test_release_without_holders_does_not_go_negative(self):
        limiter = RateLimiter()
        limiter.release()

        assert limiter.in_flight == 0


class TestQueueLimits:
    """Tests for queue capacity and timeout."""

    @pytest.mark.asyncio
    async def test_queue_full_rejects_immediately(self):
        limiter = RateLimiter(max_concurrent=1, queue_size=1)
        await limiter.acquire()
        queued = asyncio.create_task(limiter.acquire())
        await _drain()

        with pytest.raises(RateLimiterQueueFullError):
            await limiter.acquire()

        limiter.release()
        await queued

    @pytest.mark.asyncio
    async def test_timeout_removes_waiter(self):
        limiter = RateLimiter(max_concurrent=1, queue_size=5, queue_timeout=0.01)
        await limiter.acquire()

        with pytest.raises(RateLimiterTimeoutError) as exc_info:
            await limiter.acquire()

        assert exc_info.value.timeout == 0.01
        assert limiter.queued == 0
        assert limiter.in_flight == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_removed(self):
        limiter = RateLimiter(max_concurrent=1, queue_size=5)
        await limiter.acquire()
        task = asyncio.create_task(limiter.acquire())
        await _drain()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert limiter.queued == 0
        limiter.release()
        assert limiter.in_flight == 0


class TestExecute:
    """Tests for execute() and the context manager."""

    @pytest.mark.asyncio
    async def test_execute_returns_result_and_releases(self):
        limiter = RateLimiter(max_concurrent=1)

        async def fn():
            return 42

        assert await limiter.execute(fn) == 42
        assert limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_execute_releases_on_error(self):
        limiter = RateLimiter(max_concurrent=1)

        async def fn():
            raise RuntimeError("parser crashed")

        with pytest.raises(RuntimeError):
            await limiter.execute(fn)

        assert limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_context_manager(self):
        limiter = RateLimiter(max_concurrent=2)

        async with limiter:
            assert limiter.in_flight == 1

        assert limiter.in_flight == 0

    def test_get_status(self):
        limiter = RateLimiter(max_concurrent=4, queue_size=8)

        assert limiter.get_status() == {"in_flight": 0, "queued": 0, "max_concurrent": 4, "queue_size": 8}
