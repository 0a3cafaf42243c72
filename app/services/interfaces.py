"""
Collaborator interfaces consumed by the ingestion scheduler.

The mail transport, the business processing of an item and the status
dashboard live outside this package; the scheduler only depends on these
protocols.
"""

from typing import Any, AsyncIterator, Dict, List, Protocol, runtime_checkable

from app.models.inbound_item import IngestedItem
from app.schemas import InboundItem, ProcessOutcome


@runtime_checkable
class NotificationSource(Protocol):
    """Message transport (e.g. an IMAP mailbox plus its SMTP send path)."""

    supports_push: bool

    def is_configured(self) -> bool: ...

    async def connect(self) -> None: ...

    async def verify_send(self) -> None:
        """Health check of the outbound (send) path."""
        ...

    async def subscribe(self) -> AsyncIterator[int]:
        """
        Start push delivery. Returns a stream that yields the number of newly
        arrived items for each notification. Raises if push cannot be set up.
        """
        ...

    async def fetch_latest(self, n: int) -> List[InboundItem]:
        """Return only the newest n items, oldest first."""
        ...

    async def fetch_batch(self, max_size: int) -> List[InboundItem]:
        """Return up to max_size unseen items, oldest first."""
        ...

    async def disconnect(self) -> None: ...


@runtime_checkable
class ItemProcessor(Protocol):
    """Business logic that turns a raw item into a domain record."""

    async def process(self, item: InboundItem) -> ProcessOutcome: ...


@runtime_checkable
class ItemStore(Protocol):
    """
    Ingestion ledger. All mutations are read-modify-write commands that return
    the new record instead of mutating a shared object.
    """

    def ping(self) -> None: ...

    def has_processed(self, item_id: str) -> bool: ...

    def mark_processed(self, item: InboundItem) -> IngestedItem: ...

    def mark_failed(self, item: InboundItem, error: str) -> IngestedItem: ...

    def find_failed_items(self, max_retry_count: int, min_age_minutes: int, limit: int) -> List[IngestedItem]: ...

    def retry(self, item_id: str) -> IngestedItem: ...

    def count_by_status(self) -> Dict[str, int]: ...


@runtime_checkable
class StatusSink(Protocol):
    """Best-effort consumer of scheduler status snapshots."""

    async def publish(self, snapshot: Dict[str, Any]) -> None: ...
