from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from app.core.typing import utc_now


class InboundItem(BaseModel):
    """A raw item as delivered by the notification source (e.g. one inbound email)."""

    item_id: str  # Transport-level unique id (Message-ID for mail)
    sender: str = ""
    subject: str = ""
    body: str = ""
    received_at: datetime = Field(default_factory=utc_now)


class OutcomeStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ProcessOutcome(BaseModel):
    status: OutcomeStatus
    error: Optional[str] = None

    @classmethod
    def processed(cls) -> "ProcessOutcome":
        return cls(status=OutcomeStatus.PROCESSED)

    @classmethod
    def skipped(cls, reason: Optional[str] = None) -> "ProcessOutcome":
        return cls(status=OutcomeStatus.SKIPPED, error=reason)

    @classmethod
    def failed(cls, error: str) -> "ProcessOutcome":
        return cls(status=OutcomeStatus.FAILED, error=error)


class CycleResult(BaseModel):
    """Summary of one ingestion cycle (polling tick, push notification or manual trigger)."""

    trigger: str
    total: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    skipped_reason: Optional[str] = None  # Set when the whole cycle did not run

    @property
    def ran(self) -> bool:
        return self.skipped_reason is None


class SchedulerStats(BaseModel):
    total_checks: int = 0
    total_processed: int = 0
    total_errors: int = 0
    total_skipped_cycles: int = 0
    last_error: Optional[str] = None


class DependencyCheck(BaseModel):
    success: bool = False
    error: Optional[str] = None
