"""
Error taxonomy for the ingestion subsystem.

Every failure the scheduler can observe maps to one of these classes, and each
class has exactly one handling policy:

- ConnectivityError: dependency unreachable. Opens the relevant circuit
  breaker, logged through the throttler, cycle skipped.
- ProcessingError: a single item failed. Recorded on the item with an
  incremented retry count; the batch continues.
- ResourceExhaustedError: memory above threshold. Raised by the watchdog guard
  before any work starts.
- JobAlreadyRunningError: a lock or reentrancy guard is already held. The
  trigger is dropped, never queued.
- ConfigurationError: missing/invalid transport credentials. initialize()
  returns False.

Usage:
    try:
        items = await source.fetch_batch(10)
    except Exception as exc:
        if is_connection_error(exc):
            raise ConnectivityError("transport", exc) from exc
        raise

    capture_exception(exc, context={"item_id": item.item_id})
"""

import errno
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

__all__ = [
    "IngestionError",
    "ConnectivityError",
    "ProcessingError",
    "ResourceExhaustedError",
    "JobAlreadyRunningError",
    "ConfigurationError",
    "CircuitOpenError",
    "RateLimiterQueueFullError",
    "RateLimiterTimeoutError",
    "is_connection_error",
    "capture_exception",
]


class IngestionError(Exception):
    """Base class for all ingestion subsystem errors."""


class ConnectivityError(IngestionError):
    """A dependency (transport or store) could not be reached."""

    def __init__(self, dependency: str, cause: Optional[BaseException] = None):
        self.dependency = dependency
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{dependency} unavailable{detail}")


class ProcessingError(IngestionError):
    """A single item could not be processed."""

    def __init__(self, item_id: str, reason: str):
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"Processing failed for {item_id}: {reason}")


class ResourceExhaustedError(IngestionError):
    """Process memory is above the safe threshold for starting new work."""

    def __init__(self, operation: str, level: str, rss_mb: int):
        self.operation = operation
        self.level = level
        self.rss_mb = rss_mb
        super().__init__(
            f"Memory threshold exceeded ({level}): {rss_mb}MB RSS. "
            f"Cannot start {operation}. Please try again later."
        )


class JobAlreadyRunningError(IngestionError):
    """A job with the same key holds the lock."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Job {key} is already running")


class ConfigurationError(IngestionError):
    """Required configuration for a dependency is missing or invalid."""


class CircuitOpenError(IngestionError):
    """The circuit breaker for a dependency is open."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} circuit breaker is open - service unavailable")


class RateLimiterQueueFullError(IngestionError):
    """The rate limiter wait queue is at capacity."""

    def __init__(self):
        super().__init__("Rate limiter queue full")


class RateLimiterTimeoutError(IngestionError):
    """A queued rate limiter request waited too long for a permit."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Rate limiter timeout after {timeout:g}s")


_CONNECTION_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ETIMEDOUT,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
}

_CONNECTION_MARKERS = ("ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "ENETUNREACH", "timeout", "timed out")


def is_connection_error(exc: Optional[BaseException]) -> bool:
    """Return True if the exception means the dependency is unreachable."""
    if exc is None:
        return False
    if isinstance(exc, IngestionError):
        return isinstance(exc, ConnectivityError)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, OSError) and exc.errno in _CONNECTION_ERRNOS:
        return True

    message = str(exc)
    lowered = message.lower()
    if "connection" in lowered and "refused" in lowered:
        return True
    return any(marker in message for marker in _CONNECTION_MARKERS)


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
) -> None:
    """
    Log an exception with structured context.

    Bound contextvars (cycle_id, trigger) are merged by the logging pipeline;
    this adds the timestamp and error type on top of the caller's context.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"item_id": "<abc@mail>"})
        level: Log level name (debug, info, warning, error)
    """
    enriched_context = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }
    log_func = getattr(logger, level, logger.error)
    log_func("Exception captured", exc_info=exc, **enriched_context)
