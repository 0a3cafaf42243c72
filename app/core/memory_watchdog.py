"""
Memory watchdog for gating heavy operations.

Samples resident memory of the current process and refuses to start new
batches once usage crosses the critical threshold. guard() is a precondition
check: it must be called immediately before starting work, it does not abort
work already in progress.

Usage:
    watchdog = MemoryWatchdog(warning_mb=1024, critical_mb=1536, max_mb=2048)
    watchdog.guard("ingestion batch")  # raises ResourceExhaustedError when unsafe
"""

from __future__ import annotations

import gc
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import psutil
import structlog

from app.core.errors import ResourceExhaustedError

logger = structlog.get_logger(__name__)

_MB = 1024 * 1024


@dataclass(frozen=True)
class MemoryUsage:
    rss: int  # MB
    vms: int  # MB

    def to_dict(self) -> Dict[str, int]:
        return {"rss": self.rss, "vms": self.vms}


@dataclass(frozen=True)
class MemoryCheck:
    safe: bool
    level: str  # ok, warning, high, critical
    usage: MemoryUsage


def sample_process_memory() -> MemoryUsage:
    """Read RSS/VMS of the current process in MB."""
    info = psutil.Process(os.getpid()).memory_info()
    return MemoryUsage(rss=round(info.rss / _MB), vms=round(info.vms / _MB))


class MemoryWatchdog:
    def __init__(
        self,
        warning_mb: int = 1024,
        critical_mb: int = 1536,
        max_mb: int = 2048,
        warning_cooldown: float = 60.0,
        sampler: Optional[Callable[[], MemoryUsage]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not warning_mb < critical_mb < max_mb:
            raise ValueError("memory thresholds must satisfy warning < critical < max")
        self.warning_mb = warning_mb
        self.critical_mb = critical_mb
        self.max_mb = max_mb
        self.warning_cooldown = warning_cooldown
        self._sampler = sampler or sample_process_memory
        self._clock = clock
        self._last_warning_at: Optional[float] = None

    def get_usage(self) -> MemoryUsage:
        return self._sampler()

    def check_memory(self) -> MemoryCheck:
        usage = self.get_usage()
        rss = usage.rss

        if rss >= self.max_mb:
            return MemoryCheck(safe=False, level="critical", usage=usage)
        if rss >= self.critical_mb:
            return MemoryCheck(safe=False, level="high", usage=usage)
        if rss >= self.warning_mb:
            # Still allow operations, but warn
            return MemoryCheck(safe=True, level="warning", usage=usage)
        return MemoryCheck(safe=True, level="ok", usage=usage)

    def guard(self, operation_name: str = "operation") -> MemoryUsage:
        """Raise ResourceExhaustedError if memory is too high to start the operation."""
        check = self.check_memory()

        if not check.safe:
            raise ResourceExhaustedError(operation_name, check.level, check.usage.rss)

        if check.level == "warning":
            now = self._clock()
            if self._last_warning_at is None or now - self._last_warning_at > self.warning_cooldown:
                logger.warning(
                    "Memory approaching threshold",
                    rss_mb=check.usage.rss,
                    critical_mb=self.critical_mb,
                    operation=operation_name,
                )
                self._last_warning_at = now

        return check.usage

    def force_gc(self) -> int:
        """Run a full garbage collection. Returns the number of unreachable objects found."""
        collected = gc.collect()
        logger.info("Forced garbage collection", collected=collected)
        return collected

    def get_status(self) -> Dict[str, Any]:
        check = self.check_memory()
        return {
            **check.usage.to_dict(),
            "level": check.level,
            "safe": check.safe,
            "thresholds": {
                "warning": self.warning_mb,
                "critical": self.critical_mb,
                "max": self.max_mb,
            },
        }
