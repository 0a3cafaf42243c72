"""
Ingestion scheduler.

Drives continuous ingestion from a notification source, in one of two modes:

- idle (push): the source announces how many items just arrived and only
  those newest items are fetched and processed.
- polling: check_and_process() runs on a fixed interval and once at start.

Every cycle, whatever its trigger, goes through the same runner: reentrancy
guard + cycle lock, memory guard, transport circuit breaker, bounded fetch,
per-item processing, stats, status snapshot. A trigger that arrives while a
cycle is running is dropped, never queued. A separate hourly timer retries
items that previously failed.

Usage:
    scheduler = IngestionScheduler(source, store, processor, toolkit, config)
    if await scheduler.initialize():
        await scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.backoff import ExponentialBackoff
from app.core.circuit_breaker import CircuitBreaker, CircuitState
from app.core.config import Settings
from app.core.errors import (
    ConnectivityError,
    JobAlreadyRunningError,
    ResourceExhaustedError,
    capture_exception,
    is_connection_error,
)
from app.core.job_lock import JobLock
from app.core.log_throttle import LogThrottler
from app.core.memory_watchdog import MemoryWatchdog
from app.core.protection import oom_protected
from app.core.rate_limit import RateLimiter
from app.core.typing import utc_now
from app.schemas import (
    CycleResult,
    DependencyCheck,
    InboundItem,
    OutcomeStatus,
    ProcessOutcome,
    SchedulerStats,
)
from app.services.interfaces import ItemProcessor, ItemStore, NotificationSource, StatusSink

logger = structlog.get_logger(__name__)

CYCLE_LOCK_KEY = "ingestion-cycle"
RETRY_LOCK_KEY = "ingestion-retry"


class SchedulerMode(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    STOPPED = "stopped"


@dataclass
class SchedulerConfig:
    enabled: bool = True
    check_interval_minutes: int = 2
    max_batch_size: int = 10
    retry_failed_enabled: bool = True
    retry_interval_hours: int = 1
    use_idle_mode: bool = True
    cycle_timeout_seconds: Optional[float] = None
    job_lock_ttl: float = 3600.0
    retry_max_count: int = 3
    retry_min_age_minutes: int = 30
    retry_limit: int = 5
    throttle_sweep_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            enabled=settings.INGEST_ENABLED,
            check_interval_minutes=settings.INGEST_CHECK_INTERVAL_MINUTES,
            max_batch_size=settings.INGEST_BATCH_SIZE,
            retry_failed_enabled=settings.INGEST_RETRY_FAILED,
            retry_interval_hours=settings.INGEST_RETRY_INTERVAL_HOURS,
            use_idle_mode=settings.INGEST_USE_IDLE,
            cycle_timeout_seconds=settings.INGEST_CYCLE_TIMEOUT_SECONDS,
            job_lock_ttl=settings.JOB_LOCK_TTL_SECONDS,
        )


@dataclass
class ResilienceToolkit:
    """Process-wide primitives, created once at startup and shared by reference."""

    transport_breaker: CircuitBreaker
    store_breaker: CircuitBreaker
    throttle: LogThrottler
    watchdog: MemoryWatchdog
    backoff: ExponentialBackoff
    rate_limiter: RateLimiter
    job_lock: JobLock


class IngestionScheduler:
    def __init__(
        self,
        source: NotificationSource,
        store: ItemStore,
        processor: ItemProcessor,
        toolkit: ResilienceToolkit,
        config: Optional[SchedulerConfig] = None,
        status_sink: Optional[StatusSink] = None,
    ):
        self.source = source
        self.store = store
        self.processor = processor
        self.toolkit = toolkit
        self.config = config or SchedulerConfig()
        self.status_sink = status_sink

        self.is_running = False
        self.mode = SchedulerMode.STOPPED
        self.last_check_at: Optional[datetime] = None
        self.stats = SchedulerStats()

        self._is_processing = False
        self._timers: Optional[AsyncIOScheduler] = None
        self._listener: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._count_items = oom_protected(
            self._count_by_status,
            service_name="ingestion statistics",
            watchdog=toolkit.watchdog,
        )

    # Shorthands for the shared primitives
    @property
    def transport_breaker(self) -> CircuitBreaker:
        return self.toolkit.transport_breaker

    @property
    def store_breaker(self) -> CircuitBreaker:
        return self.toolkit.store_breaker

    @property
    def throttle(self) -> LogThrottler:
        return self.toolkit.throttle

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """
        Verify the transport (connect + send path).

        Returns False instead of raising when disabled, unconfigured or
        unreachable. Callers must not start() after a False return.
        """
        if not self.config.enabled:
            logger.info("Ingestion processing is disabled")
            return False

        if not self.source.is_configured():
            logger.warning("Notification source not configured - scheduler will not start")
            return False

        def log_retry(error: BaseException, attempt: int, delay: float) -> None:
            logger.warning("Transport connect failed, retrying", attempt=attempt, delay=round(delay, 2), error=str(error))

        try:
            await self.toolkit.backoff.execute(
                lambda attempt: self.source.connect(),
                on_retry=log_retry,
                should_retry=lambda error, attempt: is_connection_error(error),
            )
            await self.source.verify_send()
        except Exception as exc:
            if is_connection_error(exc):
                self.transport_breaker.record_failure(exc)
            logger.error("Ingestion scheduler initialization failed", error=str(exc), error_type=type(exc).__name__)
            return False

        self.transport_breaker.record_success()
        logger.info("Ingestion scheduler initialized")
        return True

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("Ingestion disabled, not starting scheduler")
            return

        if self.is_running:
            logger.warning("Ingestion scheduler already running")
            return

        self._timers = AsyncIOScheduler(timezone="UTC")

        if self.config.use_idle_mode and getattr(self.source, "supports_push", False):
            await self.start_idle_mode()
        else:
            self.start_polling_mode()

        if self.config.retry_failed_enabled:
            self._timers.add_job(
                self.retry_failed_items,
                IntervalTrigger(hours=self.config.retry_interval_hours),
                id="retry_failed_items",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info("Failed item retry scheduled", every_hours=self.config.retry_interval_hours)

        self._timers.add_job(
            self.throttle.sweep,
            IntervalTrigger(seconds=self.config.throttle_sweep_seconds),
            id="log_throttle_sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._timers.start()

    async def start_idle_mode(self) -> None:
        """Subscribe to push notifications; fall back to polling if that fails."""
        try:
            stream = await self.source.subscribe()
        except Exception as exc:
            logger.error("Push mode failed, falling back to polling", error=str(exc))
            self.start_polling_mode()
            return

        self.is_running = True
        self.mode = SchedulerMode.IDLE
        self._listener = asyncio.create_task(self._listen(stream), name="ingestion-push-listener")
        # No initial check: only items announced from now on are processed
        logger.info("Ingestion scheduler started", mode=self.mode.value)

    async def _listen(self, stream) -> None:
        try:
            async for count in stream:
                if count <= 0:
                    continue
                logger.info("New items announced", count=count)
                self._spawn(self.process_batch(count))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Push channel failed", error=str(exc))
        else:
            logger.warning("Push channel closed")

        if self.is_running and self.mode == SchedulerMode.IDLE:
            logger.warning("Falling back to polling after push channel loss")
            self.start_polling_mode()

    def start_polling_mode(self) -> None:
        if self._timers is None:
            self._timers = AsyncIOScheduler(timezone="UTC")

        interval = self.config.check_interval_minutes
        self._timers.add_job(
            self.check_and_process,
            IntervalTrigger(minutes=interval),
            id="check_and_process",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=interval * 60,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),  # Initial check right away
        )
        self.is_running = True
        self.mode = SchedulerMode.POLLING
        logger.info("Ingestion scheduler started", mode=self.mode.value, every_minutes=interval)

    async def stop(self) -> None:
        """
        Stop timers and the push listener. Does not wait for an in-flight
        cycle; it drains on its own and the reentrancy guard keeps new ones out.
        """
        if self._timers is not None:
            if self._timers.running:
                self._timers.shutdown(wait=False)
            self._timers = None

        if self._listener is not None:
            self._listener.cancel()
            self._listener = None

        self.is_running = False
        self.mode = SchedulerMode.STOPPED

        try:
            await self.source.disconnect()
        except Exception as exc:
            logger.warning("Source disconnect failed", error=str(exc))

        logger.info("Ingestion scheduler stopped")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def check_and_process(self, trigger: str = "poll") -> CycleResult:
        """Fetch and process up to max_batch_size unseen items."""
        return await self._run_cycle(trigger, lambda: self.source.fetch_batch(self.config.max_batch_size))

    async def process_batch(self, count: int) -> CycleResult:
        """Fetch and process exactly the `count` newest items (push notifications)."""
        if count <= 0:
            return CycleResult(trigger="push", skipped_reason="empty")
        return await self._run_cycle("push", lambda: self.source.fetch_latest(count))

    async def trigger_manual_check(self) -> CycleResult:
        logger.info("Manual ingestion check triggered")
        return await self.check_and_process(trigger="manual")

    async def _run_cycle(self, trigger: str, fetch: Callable[[], Awaitable[List[InboundItem]]]) -> CycleResult:
        if self._is_processing:
            self.throttle.info("cycle-in-progress", "Processing in progress, skipping this cycle", trigger=trigger)
            return CycleResult(trigger=trigger, skipped_reason="in_progress")

        if not self.toolkit.job_lock.try_lock(CYCLE_LOCK_KEY, self.config.job_lock_ttl):
            self.throttle.warning("cycle-locked", "Ingestion cycle lock held, skipping this cycle", trigger=trigger)
            return CycleResult(trigger=trigger, skipped_reason="locked")

        self._is_processing = True
        self.stats.total_checks += 1
        self.last_check_at = utc_now()
        result = CycleResult(trigger=trigger)

        with structlog.contextvars.bound_contextvars(cycle_id=uuid.uuid4().hex[:8], trigger=trigger):
            try:
                timeout = self.config.cycle_timeout_seconds
                if timeout:
                    await asyncio.wait_for(self._cycle(fetch, result), timeout)
                else:
                    await self._cycle(fetch, result)
            except asyncio.TimeoutError:
                message = f"Cycle exceeded {timeout}s deadline"
                logger.error("Ingestion cycle timed out", timeout=timeout)
                self.stats.total_errors += 1
                self.stats.last_error = message
                result.errors.append(message)
            except Exception as exc:
                capture_exception(exc, context={"operation": "ingestion_cycle"})
                self.stats.total_errors += 1
                self.stats.last_error = str(exc)
                result.errors.append(str(exc))
            finally:
                self._is_processing = False
                self.toolkit.job_lock.unlock(CYCLE_LOCK_KEY)

        return result

    async def _cycle(self, fetch: Callable[[], Awaitable[List[InboundItem]]], result: CycleResult) -> None:
        try:
            self.toolkit.watchdog.guard("ingestion cycle")
        except ResourceExhaustedError as exc:
            self.stats.total_skipped_cycles += 1
            result.skipped_reason = "memory"
            self.throttle.warning("cycle-memory", "Skipping cycle, memory above threshold", level=exc.level, rss_mb=exc.rss_mb)
            return

        if not self.transport_breaker.is_available():
            self.stats.total_skipped_cycles += 1
            result.skipped_reason = "circuit_open"
            self.throttle.info("cycle-circuit", "Skipping cycle - transport circuit open")
            return

        try:
            items = await fetch()
        except Exception as exc:
            error = exc if isinstance(exc, ConnectivityError) else ConnectivityError("transport", exc)
            self.transport_breaker.record_failure(error)
            self.stats.total_skipped_cycles += 1
            self.stats.total_errors += 1
            self.stats.last_error = str(error)
            result.skipped_reason = "fetch_failed"
            result.errors.append(str(error))
            key = "fetch-conn" if is_connection_error(exc) else "fetch-error"
            self.throttle.error(key, "Fetch failed, skipping cycle", error=str(exc), error_type=type(exc).__name__)
            return

        self.transport_breaker.record_success()
        result.total = len(items)

        if not items:
            logger.debug("No new items to process")
        else:
            logger.info("Processing items", count=len(items))
            for item in items:
                outcome = await self._process_item(item)
                self._tally(result, outcome)

            logger.info(
                "Ingestion cycle complete",
                processed=result.processed,
                failed=result.failed,
                skipped=result.skipped,
            )

        self.stats.total_processed += result.processed
        if result.failed:
            self.stats.total_errors += result.failed
            self.stats.last_error = result.errors[-1]

        await self.emit_status_update()

    @staticmethod
    def _tally(result: CycleResult, outcome: ProcessOutcome) -> None:
        if outcome.status == OutcomeStatus.PROCESSED:
            result.processed += 1
        elif outcome.status == OutcomeStatus.SKIPPED:
            result.skipped += 1
        else:
            result.failed += 1
            result.errors.append(outcome.error or "unknown error")

    async def _process_item(self, item: InboundItem) -> ProcessOutcome:
        """
        Process one item and record the outcome in the ledger.

        Never raises: a failure here is the item's failure, not the batch's.
        """
        try:
            if await asyncio.to_thread(self.store.has_processed, item.item_id):
                return ProcessOutcome.skipped("duplicate")
            outcome = await self.toolkit.rate_limiter.execute(lambda: self.processor.process(item))
        except Exception as exc:
            outcome = ProcessOutcome.failed(str(exc) or type(exc).__name__)

        try:
            if outcome.status == OutcomeStatus.PROCESSED:
                await asyncio.to_thread(self.store.mark_processed, item)
            elif outcome.status == OutcomeStatus.FAILED:
                logger.warning("Item processing failed", item_id=item.item_id, error=outcome.error)
                await asyncio.to_thread(self.store.mark_failed, item, outcome.error or "unknown error")
        except Exception as exc:
            self.throttle.error("ledger-write", "Could not record item outcome", item_id=item.item_id, error=str(exc))

        return outcome

    # ------------------------------------------------------------------
    # Retry of failed items
    # ------------------------------------------------------------------

    async def retry_failed_items(self) -> int:
        """Retry a few old failed items. Returns how many succeeded."""
        try:
            async with self.toolkit.job_lock.lock(RETRY_LOCK_KEY, self.config.job_lock_ttl):
                return await self._retry_failed_items()
        except JobAlreadyRunningError:
            self.throttle.info("retry-locked", "Failed item retry already running, skipping")
            return 0

    async def _retry_failed_items(self) -> int:
        if not self.store_breaker.is_available():
            self.throttle.info("retry-circuit", "Skipping failed item retry - store circuit open")
            return 0

        try:
            self.toolkit.watchdog.guard("failed item retry")
        except ResourceExhaustedError as exc:
            self.throttle.warning("retry-memory", "Skipping failed item retry, memory above threshold", rss_mb=exc.rss_mb)
            return 0

        try:
            records = await asyncio.to_thread(
                self.store.find_failed_items,
                self.config.retry_max_count,
                self.config.retry_min_age_minutes,
                self.config.retry_limit,
            )
        except Exception as exc:
            self.store_breaker.record_failure(exc)
            key = "retry-conn" if is_connection_error(exc) else "retry-error"
            self.throttle.error(key, "Failed item retry query failed", error=str(exc))
            return 0

        self.store_breaker.record_success()

        if not records:
            return 0

        logger.info("Retrying failed items", count=len(records))
        succeeded = 0
        for record in records:
            try:
                refreshed = await asyncio.to_thread(self.store.retry, record.item_id)
            except Exception as exc:
                logger.warning("Retry failed", item_id=record.item_id, error=str(exc))
                continue

            item = InboundItem.model_validate(refreshed, from_attributes=True)
            outcome = await self._process_item(item)
            if outcome.status == OutcomeStatus.PROCESSED:
                succeeded += 1
                self.stats.total_processed += 1

        return succeeded

    # ------------------------------------------------------------------
    # Status and diagnostics
    # ------------------------------------------------------------------

    async def emit_status_update(self) -> None:
        """Publish the status snapshot. Best-effort: the sink is optional."""
        if self.status_sink is None:
            return
        try:
            await self.status_sink.publish(self.get_status())
        except Exception as exc:
            logger.debug("Status publish failed", error=str(exc))

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "enabled": self.config.enabled,
            "mode": self.mode.value,
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "check_interval_minutes": self.config.check_interval_minutes,
            "max_batch_size": self.config.max_batch_size,
            "is_processing": self._is_processing,
            "stats": self.stats.model_dump(),
            "circuits": {
                "transport": self.transport_breaker.get_status(),
                "store": self.store_breaker.get_status(),
            },
        }

    async def _count_by_status(self) -> Dict[str, int]:
        return await asyncio.to_thread(self.store.count_by_status)

    async def get_statistics(self) -> Dict[str, Any]:
        """Status plus ledger counts. Never moves or feeds the store breaker."""
        items: Optional[Dict[str, int]] = None
        if self.store_breaker.state != CircuitState.CLOSED:
            self.throttle.info("stats-circuit", "Item statistics unavailable - store circuit not closed")
        else:
            try:
                items = await self._count_items()
            except ResourceExhaustedError as exc:
                self.throttle.warning("stats-memory", "Skipping item statistics, memory above threshold", rss_mb=exc.rss_mb)
            except Exception as exc:
                self.throttle.warning("stats-store", "Could not read item statistics", error=str(exc))

        return {
            "scheduler": self.get_status(),
            "items": items,
            "memory": self.toolkit.watchdog.get_status(),
            "rate_limiter": self.toolkit.rate_limiter.get_status(),
        }

    async def test_configuration(self) -> Dict[str, Any]:
        """Check each dependency once. Diagnostic only: breaker state is untouched."""
        transport = DependencyCheck()
        send = DependencyCheck()
        store = DependencyCheck()

        try:
            await self.source.connect()
            transport.success = True
        except Exception as exc:
            transport.error = str(exc)

        try:
            await self.source.verify_send()
            send.success = True
        except Exception as exc:
            send.error = str(exc)

        try:
            await asyncio.to_thread(self.store.ping)
            store.success = True
        except Exception as exc:
            store.error = str(exc)

        return {
            "transport": transport.model_dump(),
            "send": send.model_dump(),
            "store": store.model_dump(),
            "transport_ok": transport.success and send.success,
            "store_ok": store.success,
        }
