"""
Composable guard for heavy async operations.

Wraps a coroutine function with the memory guard, an optional circuit breaker
and an optional job lock, in that order.

Usage:
    reindex = oom_protected(
        rebuild_index,
        service_name="reindex",
        watchdog=watchdog,
        breaker=store_breaker,
        job_lock=locks,
        lock_key="reindex",
    )
    await reindex(batch_size=500)
"""

from functools import wraps
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.circuit_breaker import CircuitBreaker
from app.core.errors import CircuitOpenError, JobAlreadyRunningError
from app.core.job_lock import JobLock
from app.core.memory_watchdog import MemoryWatchdog

T = TypeVar("T")


def oom_protected(
    fn: Callable[..., Awaitable[T]],
    service_name: str,
    watchdog: Optional[MemoryWatchdog] = None,
    breaker: Optional[CircuitBreaker] = None,
    job_lock: Optional[JobLock] = None,
    lock_key: Optional[str] = None,
    lock_ttl: Optional[float] = None,
) -> Callable[..., Awaitable[T]]:
    if lock_key is not None and job_lock is None:
        raise ValueError("lock_key requires a job_lock")

    @wraps(fn)
    async def wrapper(*args, **kwargs) -> T:
        if watchdog is not None:
            watchdog.guard(service_name)

        if breaker is not None and not breaker.is_available():
            raise CircuitOpenError(breaker.name)

        if lock_key is not None and not job_lock.try_lock(lock_key, lock_ttl):
            raise JobAlreadyRunningError(lock_key)

        try:
            result = await fn(*args, **kwargs)
            if breaker is not None:
                breaker.record_success()
            return result
        except Exception as error:
            if breaker is not None:
                breaker.record_failure(error)
            raise
        finally:
            if lock_key is not None:
                job_lock.unlock(lock_key)

    return wrapper
