"""Durable work queue for scanned withholding documents.

Items move pending -> processing -> completed | failed. Every transition is a
conditional UPDATE on the expected source status, so two workers can never
claim the same item. Failed items go back to pending only through ``retry``
and only while attempts remain.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from withholdings.db import SessionLocal
from withholdings.db_models import UploadBatchORM, UploadQueueItemORM
from withholdings.models import BatchProgress, QueueItem, QueueStatus, UploadDocument
from withholdings.settings import get_settings

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
}

BATCH_OPEN = "open"
BATCH_CANCELLED = "cancelled"


class QueueError(Exception):
    pass


class InvalidTransitionError(QueueError):
    pass


class RetryLimitExceededError(QueueError):
    pass


class UnknownQueueItemError(QueueError, KeyError):
    pass


class UnknownBatchError(QueueError, KeyError):
    pass


class UnsupportedDocumentError(QueueError, ValueError):
    pass


class RetryReport(BaseModel):
    retried: List[str] = Field(default_factory=list)
    exhausted: List[str] = Field(default_factory=list)


def _to_item(row: UploadQueueItemORM) -> QueueItem:
    return QueueItem(
        id=row.id,
        batch_id=row.batch_id,
        file_name=row.file_name,
        payload_ref=row.payload_ref,
        mime_type=row.mime_type,
        fiscal_year=row.fiscal_year,
        status=QueueStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        confidence=row.confidence,
        extracted_data=row.extracted_data,
        warnings=list(row.warnings_json or []),
        needs_review=bool(row.needs_review),
        error_message=row.error_message,
        record_count=row.record_count or 0,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


class UploadQueueStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal, max_attempts: Optional[int] = None):
        self._session_factory = session_factory
        self.max_attempts = max_attempts if max_attempts is not None else get_settings().queue_max_attempts

    # -- batches -----------------------------------------------------------

    def create_batch(self, documents: Iterable[UploadDocument], fiscal_year: int) -> str:
        documents = list(documents)
        for doc in documents:
            if doc.mime_type.lower() not in SUPPORTED_MIME_TYPES:
                raise UnsupportedDocumentError(f"Unsupported document type {doc.mime_type} for {doc.file_name}")

        with self._session_factory() as db:
            batch = UploadBatchORM(fiscal_year=fiscal_year, status=BATCH_OPEN)
            db.add(batch)
            db.flush()
            for doc in documents:
                db.add(
                    UploadQueueItemORM(
                        batch_id=batch.id,
                        file_name=doc.file_name,
                        payload_ref=doc.payload_ref,
                        mime_type=doc.mime_type.lower(),
                        fiscal_year=fiscal_year,
                        status=QueueStatus.PENDING.value,
                        attempts=0,
                        max_attempts=self.max_attempts,
                    )
                )
            db.commit()
            logger.info("Queued batch %s with %s documents for %s", batch.id, len(documents), fiscal_year)
            return batch.id

    def cancel_batch(self, batch_id: str) -> None:
        with self._session_factory() as db:
            batch = db.get(UploadBatchORM, batch_id)
            if batch is None:
                raise UnknownBatchError(batch_id)
            batch.status = BATCH_CANCELLED
            db.commit()
        logger.info("Batch %s cancelled", batch_id)

    def is_cancelled(self, batch_id: str) -> bool:
        with self._session_factory() as db:
            batch = db.get(UploadBatchORM, batch_id)
            if batch is None:
                raise UnknownBatchError(batch_id)
            return batch.status == BATCH_CANCELLED

    def items(self, batch_id: str) -> List[QueueItem]:
        with self._session_factory() as db:
            rows = (
                db.query(UploadQueueItemORM)
                .filter(UploadQueueItemORM.batch_id == batch_id)
                .order_by(UploadQueueItemORM.created_at, UploadQueueItemORM.id)
                .all()
            )
            return [_to_item(r) for r in rows]

    def get(self, item_id: str) -> QueueItem:
        with self._session_factory() as db:
            row = db.get(UploadQueueItemORM, item_id)
            if row is None:
                raise UnknownQueueItemError(item_id)
            return _to_item(row)

    def progress(self, batch_id: str) -> BatchProgress:
        with self._session_factory() as db:
            batch = db.get(UploadBatchORM, batch_id)
            if batch is None:
                raise UnknownBatchError(batch_id)
            counts = dict(
                db.execute(
                    select(UploadQueueItemORM.status, func.count())
                    .where(UploadQueueItemORM.batch_id == batch_id)
                    .group_by(UploadQueueItemORM.status)
                ).all()
            )
            rows = db.query(UploadQueueItemORM).filter(UploadQueueItemORM.batch_id == batch_id).all()
            return BatchProgress(
                batch_id=batch_id,
                cancelled=batch.status == BATCH_CANCELLED,
                total=len(rows),
                pending=counts.get(QueueStatus.PENDING.value, 0),
                processing=counts.get(QueueStatus.PROCESSING.value, 0),
                completed=counts.get(QueueStatus.COMPLETED.value, 0),
                failed=counts.get(QueueStatus.FAILED.value, 0),
                needs_review=sum(
                    1 for r in rows if r.status == QueueStatus.COMPLETED.value and r.needs_review
                ),
                exhausted=sum(
                    1 for r in rows if r.status == QueueStatus.FAILED.value and r.attempts >= r.max_attempts
                ),
                extracted_records=sum(r.record_count or 0 for r in rows),
            )

    # -- transitions -------------------------------------------------------

    def claim_next(self, batch_id: str) -> Optional[QueueItem]:
        """Atomically move the oldest pending item of an open batch to processing."""
        open_batches = select(UploadBatchORM.id).where(UploadBatchORM.status == BATCH_OPEN)
        with self._session_factory() as db:
            candidate_ids = db.execute(
                select(UploadQueueItemORM.id)
                .where(
                    UploadQueueItemORM.batch_id == batch_id,
                    UploadQueueItemORM.status == QueueStatus.PENDING.value,
                )
                .order_by(UploadQueueItemORM.created_at, UploadQueueItemORM.id)
            ).scalars().all()
            for item_id in candidate_ids:
                result = db.execute(
                    update(UploadQueueItemORM)
                    .where(
                        UploadQueueItemORM.id == item_id,
                        UploadQueueItemORM.status == QueueStatus.PENDING.value,
                        UploadQueueItemORM.batch_id.in_(open_batches),
                    )
                    .values(
                        status=QueueStatus.PROCESSING.value,
                        attempts=UploadQueueItemORM.attempts + 1,
                        started_at=datetime.utcnow(),
                        completed_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                claimed = result.rowcount == 1
                db.commit()
                if claimed:
                    logger.info("Claimed queue item %s", item_id)
                    return self.get(item_id)
        return None

    def _transition(self, item_id: str, expected: QueueStatus, values: Dict[str, Any]) -> QueueItem:
        with self._session_factory() as db:
            result = db.execute(
                update(UploadQueueItemORM)
                .where(UploadQueueItemORM.id == item_id, UploadQueueItemORM.status == expected.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount
            db.commit()
        if changed != 1:
            current = self.get(item_id)
            raise InvalidTransitionError(
                f"Item {item_id} is {current.status.value}, expected {expected.value} for -> {values.get('status')}"
            )
        return self.get(item_id)

    def complete(
        self,
        item_id: str,
        confidence: float,
        extracted_data: Optional[Dict[str, Any]] = None,
        warnings: Optional[List[str]] = None,
        needs_review: bool = False,
        record_count: int = 0,
    ) -> QueueItem:
        item = self._transition(
            item_id,
            QueueStatus.PROCESSING,
            {
                "status": QueueStatus.COMPLETED.value,
                "confidence": confidence,
                "extracted_data": extracted_data,
                "warnings_json": list(warnings or []),
                "needs_review": needs_review,
                "record_count": record_count,
                "error_message": None,
                "completed_at": datetime.utcnow(),
            },
        )
        logger.info("Queue item %s completed (confidence %.2f, review=%s)", item_id, confidence, needs_review)
        return item

    def fail(self, item_id: str, error_message: str) -> QueueItem:
        item = self._transition(
            item_id,
            QueueStatus.PROCESSING,
            {
                "status": QueueStatus.FAILED.value,
                "error_message": error_message,
                "completed_at": datetime.utcnow(),
            },
        )
        logger.warning(
            "Queue item %s failed (attempt %s/%s): %s", item_id, item.attempts, item.max_attempts, error_message
        )
        return item

    def retry(self, item_id: str) -> QueueItem:
        """Explicitly move a failed item back to pending while attempts remain."""
        with self._session_factory() as db:
            result = db.execute(
                update(UploadQueueItemORM)
                .where(
                    UploadQueueItemORM.id == item_id,
                    UploadQueueItemORM.status == QueueStatus.FAILED.value,
                    UploadQueueItemORM.attempts < UploadQueueItemORM.max_attempts,
                )
                .values(status=QueueStatus.PENDING.value, error_message=None, completed_at=None)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount
            db.commit()
        item = self.get(item_id)
        if changed != 1:
            if item.status != QueueStatus.FAILED:
                raise InvalidTransitionError(f"Only failed items can be retried; {item_id} is {item.status.value}")
            raise RetryLimitExceededError(
                f"Item {item_id} used {item.attempts} of {item.max_attempts} attempts"
            )
        logger.info("Queue item %s re-queued (attempt %s/%s used)", item_id, item.attempts, item.max_attempts)
        return item

    def retry_failed(self, batch_id: str) -> RetryReport:
        report = RetryReport()
        for item in self.items(batch_id):
            if item.status != QueueStatus.FAILED:
                continue
            try:
                self.retry(item.id)
                report.retried.append(item.id)
            except RetryLimitExceededError:
                report.exhausted.append(item.id)
        if report.exhausted:
            logger.warning("Batch %s: %s items exhausted their attempts", batch_id, len(report.exhausted))
        return report
