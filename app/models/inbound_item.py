"""
Ingestion ledger model.

One row per item the scheduler has seen. The row records whether the item was
processed or failed, and how many times a failed item has been retried, so the
retry timer can pick up failures after a restart.

Usage:
    from app.models.inbound_item import IngestedItem, ItemStatus

    if record.status == ItemStatus.FAILED and record.retry_count < 3:
        ...
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import Index

from app.core.typing import utc_now


class ItemStatus(str, Enum):
    """Status of an ingested item."""

    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class IngestedItem(SQLModel, table=True):
    """
    Ledger entry for a fetched item.

    Attributes:
        id: Primary key
        item_id: Transport-level id (unique)
        sender, subject, body, received_at: Copy of the item so it can be retried
        status: Current ingestion status
        retry_count: Number of retries attempted after a failure
        last_error: Error message from the most recent failure
        failed_at: When the item last failed (drives the retry lookback window)
        processed_at: When processing last succeeded
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    item_id: str = Field(unique=True, index=True)
    sender: str = ""
    subject: str = ""
    body: str = ""
    received_at: datetime = Field(default_factory=utc_now)
    status: ItemStatus = Field(default=ItemStatus.RECEIVED, index=True)
    retry_count: int = Field(default=0)
    last_error: Optional[str] = None
    failed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        # Retry query: status + retry_count + failed_at
        Index("ix_ingesteditem_retry", "status", "retry_count", "failed_at"),
    )


__all__ = ["IngestedItem", "ItemStatus"]
