import asyncio

import pytest

from withholdings.models import QueueStatus, UploadDocument
from withholdings.queue_processor import QueueProcessor
from withholdings.upload_queue import UnsupportedDocumentError, UploadQueueStore


def _docs(n):
    return [
        UploadDocument(file_name=f"doc{i}.pdf", payload_ref=f"uploads/doc{i}.pdf", mime_type="application/pdf")
        for i in range(1, n + 1)
    ]


def _fields(doc: UploadDocument, **overrides):
    fields = {
        "beneficiary_nif": "123456789",
        "beneficiary_name": "Ana Silva",
        "income_category": "B",
        "gross_amount": 1000,
        "withholding_amount": 230,
        "payment_date": "2025-03-01",
        "document_reference": doc.file_name,
    }
    fields.update(overrides)
    return fields


def good_extractor(doc: UploadDocument):
    return {"fields": _fields(doc), "confidence": 0.95}


@pytest.mark.asyncio
async def test_batch_runs_to_completion_and_emits_records(session_factory):
    records = []
    processor = QueueProcessor(UploadQueueStore(session_factory), good_extractor, on_record=records.append)

    batch_id = await processor.submit(_docs(4), 2025)
    progress = await processor.wait(batch_id)

    assert progress.done
    assert progress.completed == 4
    assert progress.needs_review == 0
    assert progress.extracted_records == 4
    assert len(records) == 4
    assert records[0].gross_amount == 1000
    item = processor.store.items(batch_id)[0]
    assert item.confidence == pytest.approx(0.95)
    assert item.extracted_data["beneficiary_nif"] == "123456789"


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_batch(session_factory):
    async def extractor(doc):
        await asyncio.sleep(0)
        if doc.file_name == "doc2.pdf":
            raise RuntimeError("recognition service timeout")
        return {"fields": _fields(doc), "confidence": 95}

    processor = QueueProcessor(UploadQueueStore(session_factory), extractor, concurrency=2)
    batch_id = await processor.submit(_docs(5), 2025)
    progress = await processor.wait(batch_id)

    assert progress.completed == 4
    assert progress.failed == 1
    failed = [i for i in processor.store.items(batch_id) if i.status == QueueStatus.FAILED]
    assert failed[0].error_message == "recognition service timeout"


@pytest.mark.asyncio
async def test_low_confidence_is_flagged_for_review(session_factory):
    def extractor(doc):
        if doc.file_name == "doc1.pdf":
            return {"fields": _fields(doc, beneficiary_nif="123456780"), "confidence": 0.99}
        return {"fields": _fields(doc), "confidence": 0.5}

    records = []
    processor = QueueProcessor(UploadQueueStore(session_factory), extractor, on_record=records.append)
    batch_id = await processor.submit(_docs(2), 2025)
    progress = await processor.wait(batch_id)

    assert progress.completed == 2
    assert progress.needs_review == 2
    assert progress.extracted_records == 1
    assert len(records) == 1
    invalid = next(i for i in processor.store.items(batch_id) if i.file_name == "doc1.pdf")
    assert invalid.confidence == 0
    assert any("checksum" in w for w in invalid.warnings)


@pytest.mark.asyncio
async def test_worker_pool_is_bounded(session_factory):
    in_flight = 0
    peak = 0

    async def extractor(doc):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return {"fields": _fields(doc), "confidence": 0.9}

    processor = QueueProcessor(UploadQueueStore(session_factory), extractor, concurrency=3)
    batch_id = await processor.submit(_docs(10), 2025)
    progress = await processor.wait(batch_id)

    assert progress.completed == 10
    assert peak == 3


@pytest.mark.asyncio
async def test_cancel_lets_in_flight_items_finish(session_factory):
    holder = {}

    async def extractor(doc):
        processor.cancel(holder["batch_id"])
        await asyncio.sleep(0)
        return {"fields": _fields(doc), "confidence": 0.9}

    processor = QueueProcessor(UploadQueueStore(session_factory), extractor, concurrency=1)
    holder["batch_id"] = await processor.submit(_docs(5), 2025)
    progress = await processor.wait(holder["batch_id"])

    assert progress.cancelled
    assert progress.completed == 1
    assert progress.pending == 4
    assert progress.done


@pytest.mark.asyncio
async def test_explicit_retry_reprocesses_failed_items(session_factory):
    calls = {}

    def flaky(doc):
        calls[doc.file_name] = calls.get(doc.file_name, 0) + 1
        if doc.file_name == "doc1.pdf" and calls[doc.file_name] == 1:
            raise ConnectionError("reset by peer")
        return {"fields": _fields(doc), "confidence": 0.9}

    processor = QueueProcessor(UploadQueueStore(session_factory), flaky)
    batch_id = await processor.submit(_docs(2), 2025)
    first = await processor.wait(batch_id)
    assert first.failed == 1

    report = await processor.retry_failed(batch_id)
    assert len(report.retried) == 1
    second = await processor.wait(batch_id)

    assert second.completed == 2
    assert second.failed == 0
    retried = next(i for i in processor.store.items(batch_id) if i.file_name == "doc1.pdf")
    assert retried.attempts == 2


@pytest.mark.asyncio
async def test_exhausted_items_stay_failed(session_factory):
    def broken(doc):
        raise ValueError("unreadable scan")

    processor = QueueProcessor(UploadQueueStore(session_factory, max_attempts=2), broken)
    batch_id = await processor.submit(_docs(1), 2025)
    await processor.wait(batch_id)
    await processor.retry_failed(batch_id)
    await processor.wait(batch_id)

    report = await processor.retry_failed(batch_id)
    progress = await processor.wait(batch_id)

    assert report.retried == []
    assert len(report.exhausted) == 1
    assert progress.failed == 1
    assert progress.exhausted == 1


@pytest.mark.asyncio
async def test_subscribers_see_progress(session_factory):
    snapshots = []
    processor = QueueProcessor(UploadQueueStore(session_factory), good_extractor, concurrency=1)
    batch_id = await processor.submit(_docs(3), 2025)
    processor.subscribe(batch_id, snapshots.append)
    await processor.wait(batch_id)

    assert any(s.processing == 1 for s in snapshots)
    assert snapshots[-1].completed == 3
    assert snapshots[-1].done


@pytest.mark.asyncio
async def test_unsupported_documents_are_rejected_on_submit(session_factory):
    processor = QueueProcessor(UploadQueueStore(session_factory), good_extractor)
    with pytest.raises(UnsupportedDocumentError):
        await processor.submit(
            [UploadDocument(file_name="notes.txt", payload_ref="uploads/notes.txt", mime_type="text/plain")], 2025
        )


class _RetryWhenDrained(UploadQueueStore):
    """Re-queues failed items at the moment the last worker finds nothing to claim."""

    retried = False

    def claim_next(self, batch_id):
        item = super().claim_next(batch_id)
        if item is None and not self.retried:
            self.retried = True
            self.retry_failed(batch_id)
        return item


@pytest.mark.asyncio
async def test_items_retried_while_workers_exit_are_still_processed(session_factory):
    calls = {}

    def flaky(doc):
        calls[doc.file_name] = calls.get(doc.file_name, 0) + 1
        if calls[doc.file_name] == 1:
            raise ConnectionError("reset by peer")
        return {"fields": _fields(doc), "confidence": 0.9}

    processor = QueueProcessor(_RetryWhenDrained(session_factory), flaky, concurrency=1)
    batch_id = await processor.submit(_docs(1), 2025)
    progress = await processor.wait(batch_id)

    assert progress.pending == 0
    assert progress.completed == 1
    assert calls["doc1.pdf"] == 2


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_strand_items(session_factory):
    def broken_callback(progress):
        raise RuntimeError("dashboard offline")

    processor = QueueProcessor(UploadQueueStore(session_factory), good_extractor, concurrency=2)
    batch_id = await processor.submit(_docs(3), 2025)
    processor.subscribe(batch_id, broken_callback)
    progress = await processor.wait(batch_id)

    assert progress.completed == 3
    assert progress.processing == 0


@pytest.mark.asyncio
async def test_pool_settings_come_from_the_environment(monkeypatch, session_factory):
    monkeypatch.setenv("QUEUE_CONCURRENCY", "2")
    monkeypatch.setenv("QUEUE_HIGH_CONFIDENCE", "0.99")
    monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "1")
    store = UploadQueueStore(session_factory)
    processor = QueueProcessor(store, good_extractor)

    assert processor.concurrency == 2
    assert store.max_attempts == 1

    batch_id = await processor.submit(_docs(1), 2025)
    progress = await processor.wait(batch_id)
    assert progress.needs_review == 1
