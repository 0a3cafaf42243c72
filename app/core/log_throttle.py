"""
Log throttling for repeated diagnostics.

During a sustained outage the same failure is observed on every cycle. Logging
each occurrence would itself exhaust disk and memory, so this bounds log volume
per message key while still surfacing periodic summaries.

Usage:
    throttle = LogThrottler(window=60, max_per_window=3)

    throttle.error("fetch-conn", "Fetch failed (transport unavailable)", error=str(exc))

    decision = throttle.should_log("fetch-conn")
    if decision.log:
        ...
"""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict

import structlog

logger = structlog.get_logger(__name__)

__all__ = ["LogThrottler", "ThrottleDecision"]


@dataclass
class _Record:
    count: int
    first_seen_at: float
    last_seen_at: float
    suppressed: int = 0


@dataclass(frozen=True)
class ThrottleDecision:
    log: bool
    suppressed: int = 0
    is_summary: bool = False


class LogThrottler:
    """
    Suppresses duplicate messages within a rolling window.

    The first `max_per_window` occurrences of a key log normally. Further
    occurrences are counted; a summary is emitted at the `summary_first`-th
    suppression and every `summary_every`-th after that. When the window
    rolls over, the first log of the new window carries the previous window's
    suppressed total.
    """

    def __init__(
        self,
        window: float = 60.0,
        max_per_window: int = 3,
        summary_first: int = 10,
        summary_every: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self.max_per_window = max_per_window
        self.summary_first = summary_first
        self.summary_every = summary_every
        self._clock = clock
        self._messages: Dict[str, _Record] = {}
        self._lock = Lock()

    def should_log(self, key: str) -> ThrottleDecision:
        now = self._clock()
        with self._lock:
            record = self._messages.get(key)

            if record is None:
                self._messages[key] = _Record(count=1, first_seen_at=now, last_seen_at=now)
                return ThrottleDecision(log=True)

            # New window: reset and report what the old one swallowed
            if now - record.first_seen_at > self.window:
                suppressed = record.suppressed
                self._messages[key] = _Record(count=1, first_seen_at=now, last_seen_at=now)
                return ThrottleDecision(log=True, suppressed=suppressed)

            record.count += 1
            record.last_seen_at = now

            if record.count <= self.max_per_window:
                return ThrottleDecision(log=True)

            record.suppressed += 1
            if record.suppressed == self.summary_first or record.suppressed % self.summary_every == 0:
                return ThrottleDecision(log=True, suppressed=record.suppressed, is_summary=True)

            return ThrottleDecision(log=False, suppressed=record.suppressed)

    def _emit(self, level: str, key: str, event: str, **fields) -> bool:
        decision = self.should_log(key)
        if not decision.log:
            return False

        log_func = getattr(logger, level)
        if decision.is_summary:
            log_func(f"[THROTTLED x{decision.suppressed}] {event}", throttle_key=key, **fields)
        elif decision.suppressed:
            log_func(event, throttle_key=key, suppressed_since_last=decision.suppressed, **fields)
        else:
            log_func(event, throttle_key=key, **fields)
        return True

    def info(self, key: str, event: str, **fields) -> bool:
        return self._emit("info", key, event, **fields)

    def warning(self, key: str, event: str, **fields) -> bool:
        return self._emit("warning", key, event, **fields)

    def error(self, key: str, event: str, **fields) -> bool:
        return self._emit("error", key, event, **fields)

    def sweep(self) -> int:
        """Evict keys idle for more than two windows. Returns the number evicted."""
        now = self._clock()
        with self._lock:
            stale = [k for k, r in self._messages.items() if now - r.last_seen_at > self.window * 2]
            for key in stale:
                del self._messages[key]
        if stale:
            logger.debug("Log throttle sweep", evicted=len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)
