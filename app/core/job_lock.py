"""
TTL-bounded named job locks.

Prevents two overlapping runs of the same logical job (e.g. a slow ingestion
cycle still running when the next trigger fires). The TTL bounds the lock
lifetime even if the holder never unlocks.

Usage:
    locks = JobLock()

    if locks.try_lock("ingestion-cycle", ttl=600):
        try:
            ...
        finally:
            locks.unlock("ingestion-cycle")

    await locks.with_lock("ingestion-retry", retry_failed, ttl=600)

    async with locks.lock("ingestion-retry"):
        ...
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from app.core.errors import JobAlreadyRunningError

T = TypeVar("T")

DEFAULT_TTL = 3600.0  # seconds


@dataclass(frozen=True)
class LockEntry:
    acquired_at: float
    expires_at: float


class JobLock:
    def __init__(self, default_ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._locks: Dict[str, LockEntry] = {}
        self._mutex = Lock()

    def try_lock(self, key: str, ttl: Optional[float] = None) -> bool:
        now = self._clock()
        with self._mutex:
            existing = self._locks.get(key)
            if existing is not None and now < existing.expires_at:
                return False
            # Absent or expired: (re)claim
            self._locks[key] = LockEntry(acquired_at=now, expires_at=now + (self.default_ttl if ttl is None else ttl))
            return True

    def unlock(self, key: str) -> None:
        with self._mutex:
            self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        now = self._clock()
        with self._mutex:
            existing = self._locks.get(key)
            if existing is None:
                return False
            if now >= existing.expires_at:
                del self._locks[key]
                return False
            return True

    async def with_lock(self, key: str, fn: Callable[[], Awaitable[T]], ttl: Optional[float] = None) -> T:
        if not self.try_lock(key, ttl):
            raise JobAlreadyRunningError(key)
        try:
            return await fn()
        finally:
            self.unlock(key)

    @asynccontextmanager
    async def lock(self, key: str, ttl: Optional[float] = None):
        if not self.try_lock(key, ttl):
            raise JobAlreadyRunningError(key)
        try:
            yield
        finally:
            self.unlock(key)

    def held_keys(self) -> list[str]:
        now = self._clock()
        with self._mutex:
            return [k for k, entry in self._locks.items() if now < entry.expires_at]
