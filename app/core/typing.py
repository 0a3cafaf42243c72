"""
Type helpers for SQLModel queries and timestamps.

SQLModel fields are declared with Python types (e.g., `retry_count: int`) but
at the class level they're InstrumentedAttribute descriptors with column
methods like .desc(), .in_(), .is_(). col() tells the type checker so.
"""

from typing import TYPE_CHECKING, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op.

    Usage:
        select(IngestedItem).order_by(col(IngestedItem.failed_at).asc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """Current UTC time (timezone-aware). Use as default_factory in SQLModel fields."""
    return datetime.now(timezone.utc)


__all__ = ["col", "utc_now"]
