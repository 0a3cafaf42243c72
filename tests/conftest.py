"""
Test fixtures for the ingestion subsystem tests.

Provides an in-memory ledger database, fake collaborators (source, processor,
memory sampler, clock) and a fully wired scheduler with test-friendly
thresholds.
"""

import asyncio
from typing import Generator, List, Optional

import pytest
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from app.core.backoff import ExponentialBackoff
from app.core.circuit_breaker import CircuitBreaker
from app.core.job_lock import JobLock
from app.core.log_throttle import LogThrottler
from app.core.memory_watchdog import MemoryUsage, MemoryWatchdog
from app.core.rate_limit import RateLimiter
from app.core.scheduler import IngestionScheduler, ResilienceToolkit, SchedulerConfig
from app.models.inbound_item import IngestedItem  # noqa: F401  (registers the table)
from app.schemas import InboundItem, ProcessOutcome
from app.services.item_store import SqlItemStore

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMemory:
    """Memory sampler returning a settable RSS (MB)."""

    def __init__(self, rss: int = 100):
        self.rss = rss

    def __call__(self) -> MemoryUsage:
        return MemoryUsage(rss=self.rss, vms=self.rss * 2)


class PushStream:
    """Async stream of new-item counts, fed by the test."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, count: int) -> None:
        self._queue.put_nowait(count)

    def close(self) -> None:
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> int:
        value = await self._queue.get()
        if value is None:
            raise StopAsyncIteration
        return value


def make_item(n: int) -> InboundItem:
    return InboundItem(
        item_id=f"<rfq-{n}@buyer.example.com>",
        sender=f"buyer{n}@example.com",
        subject=f"RFQ #{n}",
        body=f"Need quote for P/N 65-{n:04d}",
    )


class FakeSource:
    """In-memory notification source recording every call."""

    def __init__(self, items: Optional[List[InboundItem]] = None, supports_push: bool = False):
        self.inbox: List[InboundItem] = list(items or [])
        self.supports_push = supports_push
        self.configured = True
        self.connect_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.subscribe_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None  # Blocks fetches until set
        self.calls: List[tuple] = []
        self.connect_calls = 0
        self.disconnected = False
        self.stream = PushStream()

    def is_configured(self) -> bool:
        return self.configured

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def verify_send(self) -> None:
        if self.send_error is not None:
            raise self.send_error

    async def subscribe(self):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        return self.stream

    async def _before_fetch(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error

    async def fetch_latest(self, n: int) -> List[InboundItem]:
        self.calls.append(("fetch_latest", n))
        await self._before_fetch()
        return self.inbox[-n:]

    async def fetch_batch(self, max_size: int) -> List[InboundItem]:
        self.calls.append(("fetch_batch", max_size))
        await self._before_fetch()
        return self.inbox[:max_size]

    async def disconnect(self) -> None:
        self.disconnected = True


class FakeProcessor:
    """Processor that fails, skips or raises for selected item ids."""

    def __init__(self):
        self.seen: List[str] = []
        self.fail_ids: set[str] = set()
        self.raise_ids: set[str] = set()
        self.skip_ids: set[str] = set()

    async def process(self, item: InboundItem) -> ProcessOutcome:
        self.seen.append(item.item_id)
        if item.item_id in self.raise_ids:
            raise RuntimeError("parser crashed")
        if item.item_id in self.fail_ids:
            return ProcessOutcome.failed("no parts found")
        if item.item_id in self.skip_ids:
            return ProcessOutcome.skipped("not a parts inquiry")
        return ProcessOutcome.processed()


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def item_store(test_engine) -> SqlItemStore:
    return SqlItemStore(test_engine)


@pytest.fixture
def memory() -> FakeMemory:
    return FakeMemory(rss=100)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def toolkit(memory: FakeMemory) -> ResilienceToolkit:
    return ResilienceToolkit(
        transport_breaker=CircuitBreaker(name="transport", failure_threshold=3, reset_timeout=60.0),
        store_breaker=CircuitBreaker(name="store", failure_threshold=3, reset_timeout=30.0),
        throttle=LogThrottler(window=60.0, max_per_window=3),
        watchdog=MemoryWatchdog(warning_mb=1024, critical_mb=1536, max_mb=2048, sampler=memory),
        backoff=ExponentialBackoff(base_delay=0.01, max_delay=0.05, max_retries=2, jitter=False, sleep=no_sleep),
        rate_limiter=RateLimiter(max_concurrent=2, queue_size=10, queue_timeout=5.0),
        job_lock=JobLock(),
    )


@pytest.fixture
def sample_items() -> List[InboundItem]:
    return [make_item(n) for n in range(1, 8)]


@pytest.fixture
def fake_source(sample_items) -> FakeSource:
    return FakeSource(items=sample_items)


@pytest.fixture
def fake_processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(check_interval_minutes=2, max_batch_size=5, use_idle_mode=True)


@pytest.fixture
def scheduler(fake_source, item_store, fake_processor, toolkit, scheduler_config) -> IngestionScheduler:
    return IngestionScheduler(
        source=fake_source,
        store=item_store,
        processor=fake_processor,
        toolkit=toolkit,
        config=scheduler_config,
    )
