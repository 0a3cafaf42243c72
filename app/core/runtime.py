"""
Runtime wiring.

Creates every process-wide primitive exactly once from Settings and injects
them into the scheduler. Nothing in the ingestion subsystem is a module-level
singleton; tests build their own toolkit with tighter thresholds.

Usage:
    runtime = build_runtime(settings, source=my_source, processor=my_processor)
    if await runtime.scheduler.initialize():
        await runtime.scheduler.start()
"""

import importlib
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.engine import Engine

from app.core.backoff import ExponentialBackoff
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.config import Settings
from app.core.errors import ConfigurationError
from app.core.job_lock import JobLock
from app.core.log_throttle import LogThrottler
from app.core.memory_watchdog import MemoryWatchdog
from app.core.rate_limit import RateLimiter
from app.core.scheduler import IngestionScheduler, ResilienceToolkit, SchedulerConfig
from app.services.interfaces import ItemProcessor, ItemStore, NotificationSource, StatusSink
from app.services.item_store import SqlItemStore
from app.services.status_webhook import WebhookStatusSink

logger = structlog.get_logger(__name__)


def _log_state_change(name: str, old_state: str, new_state: str) -> None:
    logger.warning("Circuit state changed", circuit=name, old_state=old_state, new_state=new_state)


def build_toolkit(settings: Settings, registry: Optional[CircuitBreakerRegistry] = None) -> ResilienceToolkit:
    registry = registry or CircuitBreakerRegistry(on_state_change=_log_state_change)
    return ResilienceToolkit(
        transport_breaker=registry.get(
            "transport",
            failure_threshold=settings.TRANSPORT_BREAKER_THRESHOLD,
            reset_timeout=settings.TRANSPORT_BREAKER_RESET_SECONDS,
            half_open_successes=settings.BREAKER_HALF_OPEN_SUCCESSES,
        ),
        store_breaker=registry.get(
            "store",
            failure_threshold=settings.STORE_BREAKER_THRESHOLD,
            reset_timeout=settings.STORE_BREAKER_RESET_SECONDS,
            half_open_successes=settings.BREAKER_HALF_OPEN_SUCCESSES,
        ),
        throttle=LogThrottler(
            window=settings.LOG_THROTTLE_WINDOW_SECONDS,
            max_per_window=settings.LOG_THROTTLE_MAX_PER_WINDOW,
        ),
        watchdog=MemoryWatchdog(
            warning_mb=settings.MEMORY_WARNING_MB,
            critical_mb=settings.MEMORY_CRITICAL_MB,
            max_mb=settings.MEMORY_MAX_MB,
        ),
        backoff=ExponentialBackoff(
            base_delay=settings.BACKOFF_BASE_SECONDS,
            max_delay=settings.BACKOFF_MAX_SECONDS,
            max_retries=settings.BACKOFF_MAX_RETRIES,
        ),
        rate_limiter=RateLimiter(
            max_concurrent=settings.PROCESSING_MAX_CONCURRENT,
            queue_size=settings.PROCESSING_QUEUE_SIZE,
        ),
        job_lock=JobLock(default_ttl=settings.JOB_LOCK_TTL_SECONDS),
    )


def load_factory(path: str) -> Callable[..., Any]:
    """Resolve "package.module:callable"."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Invalid factory path {path!r}, expected 'module:callable'")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load factory {path!r}: {e}") from e


@dataclass
class Runtime:
    toolkit: ResilienceToolkit
    scheduler: IngestionScheduler
    store: ItemStore
    status_sink: Optional[StatusSink] = None


def build_runtime(
    settings: Settings,
    source: Optional[NotificationSource] = None,
    processor: Optional[ItemProcessor] = None,
    store: Optional[ItemStore] = None,
    engine: Optional[Engine] = None,
    status_sink: Optional[StatusSink] = None,
) -> Runtime:
    """
    Wire the scheduler. Source and processor default to the factories named in
    INGEST_SOURCE_FACTORY / INGEST_PROCESSOR_FACTORY.

    Raises:
        ConfigurationError: if a collaborator is neither passed nor configured
    """
    if source is None:
        if not settings.INGEST_SOURCE_FACTORY:
            raise ConfigurationError("INGEST_SOURCE_FACTORY is not set")
        source = load_factory(settings.INGEST_SOURCE_FACTORY)()
    if processor is None:
        if not settings.INGEST_PROCESSOR_FACTORY:
            raise ConfigurationError("INGEST_PROCESSOR_FACTORY is not set")
        processor = load_factory(settings.INGEST_PROCESSOR_FACTORY)()

    if store is None:
        if engine is None:
            from app.db import engine
        store = SqlItemStore(engine)

    if status_sink is None and settings.STATUS_WEBHOOK_URL:
        status_sink = WebhookStatusSink(settings.STATUS_WEBHOOK_URL)

    toolkit = build_toolkit(settings)
    scheduler = IngestionScheduler(
        source=source,
        store=store,
        processor=processor,
        toolkit=toolkit,
        config=SchedulerConfig.from_settings(settings),
        status_sink=status_sink,
    )
    return Runtime(toolkit=toolkit, scheduler=scheduler, store=store, status_sink=status_sink)
