"""
Tests for the oom_protected wrapper.
"""

import pytest

from app.core.circuit_breaker import CircuitBreaker, CircuitState
from app.core.errors import CircuitOpenError, JobAlreadyRunningError, ResourceExhaustedError
from app.core.job_lock import JobLock
from app.core.memory_watchdog import MemoryWatchdog
from app.core.protection import oom_protected


class TestOomProtected:
    """Tests for guard ordering and bookkeeping."""

    @pytest.mark.asyncio
    async def test_passes_through_arguments(self):
        async def add(a, b=0):
            return a + b

        wrapped = oom_protected(add, service_name="add")

        assert await wrapped(2, b=3) == 5
        assert wrapped.__name__ == "add"

    @pytest.mark.asyncio
    async def test_memory_guard_runs_first(self, memory):
        watchdog = MemoryWatchdog(warning_mb=100, critical_mb=150, max_mb=200, sampler=memory)
        memory.rss = 180
        called = False

        async def job():
            nonlocal called
            called = True

        wrapped = oom_protected(job, service_name="reindex", watchdog=watchdog)

        with pytest.raises(ResourceExhaustedError):
            await wrapped()
        assert called is False

    @pytest.mark.asyncio
    async def test_open_breaker_rejects(self):
        breaker = CircuitBreaker(name="store", failure_threshold=1)
        breaker.record_failure()

        async def job():
            return 1

        with pytest.raises(CircuitOpenError, match="store circuit breaker is open"):
            await oom_protected(job, service_name="stats", breaker=breaker)()

    @pytest.mark.asyncio
    async def test_breaker_records_outcomes(self):
        breaker = CircuitBreaker(name="store", failure_threshold=2)

        async def failing():
            raise ConnectionError("refused")

        wrapped = oom_protected(failing, service_name="stats", breaker=breaker)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await wrapped()

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_lock_held_raises(self, clock):
        locks = JobLock(clock=clock)
        locks.try_lock("reindex")

        async def job():
            return 1

        wrapped = oom_protected(job, service_name="reindex", job_lock=locks, lock_key="reindex")

        with pytest.raises(JobAlreadyRunningError):
            await wrapped()

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, clock):
        locks = JobLock(clock=clock)

        async def job():
            assert locks.is_locked("reindex")
            raise RuntimeError("boom")

        wrapped = oom_protected(job, service_name="reindex", job_lock=locks, lock_key="reindex")

        with pytest.raises(RuntimeError):
            await wrapped()
        assert locks.is_locked("reindex") is False

    def test_lock_key_requires_job_lock(self):
        async def job():
            return 1

        with pytest.raises(ValueError):
            oom_protected(job, service_name="x", lock_key="x")
