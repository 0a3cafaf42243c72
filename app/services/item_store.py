"""
SQL-backed ingestion ledger.

Implements the ItemStore interface on top of SQLModel. Every mutation opens its
own session and returns the refreshed record, so callers never hold a shared
mutable row between await points.

Usage:
    from app.db import engine
    from app.services.item_store import SqlItemStore

    store = SqlItemStore(engine)
    store.mark_failed(item, "parser crashed")

    for record in store.find_failed_items(max_retry_count=3, min_age_minutes=30, limit=5):
        refreshed = store.retry(record.item_id)
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, text
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.core.errors import ProcessingError
from app.core.typing import col, utc_now
from app.models.inbound_item import IngestedItem, ItemStatus
from app.schemas import InboundItem

logger = logging.getLogger(__name__)


class SqlItemStore:
    def __init__(self, engine: Engine):
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    @staticmethod
    def _get(session: Session, item_id: str) -> Optional[IngestedItem]:
        return session.exec(select(IngestedItem).where(col(IngestedItem.item_id) == item_id)).first()

    @staticmethod
    def _new_record(item: InboundItem) -> IngestedItem:
        return IngestedItem(
            item_id=item.item_id,
            sender=item.sender,
            subject=item.subject,
            body=item.body,
            received_at=item.received_at,
        )

    def ping(self) -> None:
        with self._session() as session:
            session.execute(text("SELECT 1"))

    def has_processed(self, item_id: str) -> bool:
        with self._session() as session:
            record = self._get(session, item_id)
            return record is not None and record.status == ItemStatus.PROCESSED

    def mark_processed(self, item: InboundItem) -> IngestedItem:
        with self._session() as session:
            record = self._get(session, item.item_id) or self._new_record(item)
            now = utc_now()
            record.status = ItemStatus.PROCESSED
            record.last_error = None
            record.processed_at = now
            record.updated_at = now
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def mark_failed(self, item: InboundItem, error: str) -> IngestedItem:
        with self._session() as session:
            record = self._get(session, item.item_id) or self._new_record(item)
            now = utc_now()
            record.status = ItemStatus.FAILED
            record.last_error = error
            record.failed_at = now
            record.updated_at = now
            session.add(record)
            session.commit()
            session.refresh(record)
            logger.debug(f"Marked {item.item_id} failed (retry_count={record.retry_count})")
            return record

    def find_failed_items(self, max_retry_count: int, min_age_minutes: int, limit: int) -> List[IngestedItem]:
        cutoff = utc_now() - timedelta(minutes=min_age_minutes)
        stmt = (
            select(IngestedItem)
            .where(
                col(IngestedItem.status) == ItemStatus.FAILED,
                col(IngestedItem.retry_count) < max_retry_count,
                col(IngestedItem.failed_at) <= cutoff,
            )
            .order_by(col(IngestedItem.failed_at).asc())
            .limit(limit)
        )
        with self._session() as session:
            return list(session.exec(stmt).all())

    def retry(self, item_id: str) -> IngestedItem:
        """
        Bump the retry counter of a failed item before it is re-attempted.

        The item stays FAILED until mark_processed() records a success, so an
        attempt that is skipped or whose outcome cannot be written remains
        eligible for the next retry pass.

        Raises:
            ProcessingError: if the item does not exist or is not failed
        """
        with self._session() as session:
            record = self._get(session, item_id)
            if record is None:
                raise ProcessingError(item_id, "item not found")
            if record.status != ItemStatus.FAILED:
                raise ProcessingError(item_id, "item is not in failed status")

            record.retry_count += 1
            record.updated_at = utc_now()
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def count_by_status(self) -> Dict[str, int]:
        stmt = select(IngestedItem.status, func.count()).group_by(IngestedItem.status)
        counts = {status.value: 0 for status in ItemStatus}
        with self._session() as session:
            for status, count in session.exec(stmt).all():
                key = status.value if isinstance(status, ItemStatus) else str(status)
                counts[key] = count
        return counts
