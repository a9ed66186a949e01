"""Bounded asyncio worker pool over the upload queue."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from withholdings.extraction import ExtractionResult, build_record_from_extraction, score_confidence
from withholdings.models import BatchProgress, NormalizedRecord, QueueItem, UploadDocument
from withholdings.reconciler import ReconciliationTolerances
from withholdings.settings import get_settings
from withholdings.upload_queue import RetryReport, UploadQueueStore

logger = logging.getLogger(__name__)

Extractor = Callable[[UploadDocument], Union[ExtractionResult, Dict[str, Any], Awaitable[Any]]]
RecordSink = Callable[[NormalizedRecord], Any]
ProgressCallback = Callable[[BatchProgress], None]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class QueueProcessor:
    def __init__(
        self,
        store: UploadQueueStore,
        extractor: Extractor,
        concurrency: Optional[int] = None,
        high_confidence: Optional[float] = None,
        on_record: Optional[RecordSink] = None,
        tolerances: Optional[ReconciliationTolerances] = None,
    ):
        settings = get_settings()
        if concurrency is None:
            concurrency = settings.queue_concurrency
        if high_confidence is None:
            high_confidence = settings.queue_high_confidence
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.extractor = extractor
        self.concurrency = concurrency
        self.high_confidence = high_confidence
        self.on_record = on_record
        self.tolerances = tolerances
        self._slots = asyncio.Semaphore(concurrency)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._subscribers: Dict[str, List[ProgressCallback]] = {}

    async def submit(self, documents: Iterable[UploadDocument], fiscal_year: int) -> str:
        """Queue a batch and start processing it in the background."""
        batch_id = self.store.create_batch(documents, fiscal_year)
        self._start(batch_id)
        return batch_id

    def _start(self, batch_id: str) -> None:
        running = self._tasks.get(batch_id)
        if running is not None and not running.done():
            return
        self._tasks[batch_id] = asyncio.create_task(self.run_batch(batch_id))

    async def wait(self, batch_id: str) -> BatchProgress:
        task = self._tasks.get(batch_id)
        if task is not None:
            await task
        return self.progress(batch_id)

    def progress(self, batch_id: str) -> BatchProgress:
        return self.store.progress(batch_id)

    def subscribe(self, batch_id: str, callback: ProgressCallback) -> None:
        self._subscribers.setdefault(batch_id, []).append(callback)

    def cancel(self, batch_id: str) -> None:
        """Stop claiming new items; items already in flight still finish."""
        self.store.cancel_batch(batch_id)
        self._notify(batch_id)

    async def retry_failed(self, batch_id: str) -> RetryReport:
        report = self.store.retry_failed(batch_id)
        if report.retried:
            self._start(batch_id)
        return report

    async def run_batch(self, batch_id: str) -> BatchProgress:
        while True:
            await asyncio.gather(*[self._worker(batch_id) for _ in range(self.concurrency)])
            progress = self.progress(batch_id)
            # Items re-queued after the last worker returned are picked up here.
            if progress.cancelled or progress.pending == 0:
                break
        logger.info(
            "Batch %s finished: %s completed, %s failed, %s need review",
            batch_id,
            progress.completed,
            progress.failed,
            progress.needs_review,
        )
        return progress

    async def _worker(self, batch_id: str) -> None:
        while True:
            async with self._slots:
                item = self.store.claim_next(batch_id)
                if item is None:
                    return
                self._notify(batch_id)
                await self._process(item)
            self._notify(batch_id)
            await asyncio.sleep(0)

    async def _extract(self, item: QueueItem) -> ExtractionResult:
        document = UploadDocument(file_name=item.file_name, payload_ref=item.payload_ref, mime_type=item.mime_type)
        raw = await _maybe_await(self.extractor(document))
        if isinstance(raw, ExtractionResult):
            return raw
        return ExtractionResult.model_validate(raw)

    async def _process(self, item: QueueItem) -> None:
        try:
            result = await self._extract(item)
            confidence, warnings = score_confidence(result.fields, result.confidence)
            record, record_warnings = build_record_from_extraction(
                result.fields, item.file_name, item.fiscal_year, self.tolerances
            )
            warnings.extend(w for w in record_warnings if w not in warnings)

            record_count = 0
            if record is not None and confidence > 0 and record.tax_id and record.gross_amount > 0:
                if self.on_record is not None:
                    await _maybe_await(self.on_record(record))
                record_count = 1
        except Exception as exc:
            logger.exception("Extraction failed for queue item %s (%s)", item.id, item.file_name)
            self.store.fail(item.id, str(exc) or exc.__class__.__name__)
            return

        self.store.complete(
            item.id,
            confidence=confidence,
            extracted_data=json.loads(json.dumps(result.fields, default=str)),
            warnings=warnings,
            needs_review=confidence < self.high_confidence,
            record_count=record_count,
        )

    def _notify(self, batch_id: str) -> None:
        callbacks = self._subscribers.get(batch_id)
        if not callbacks:
            return
        progress = self.progress(batch_id)
        for callback in callbacks:
            try:
                callback(progress)
            except Exception:
                logger.exception("Progress callback for batch %s raised", batch_id)
