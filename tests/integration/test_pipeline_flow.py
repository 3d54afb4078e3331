"""
Integration Tests — one batch from submission to summary
════════════════════════════════════════════════════════
Drives the whole pipeline (worker pool, OCR, extraction, vendor
resolution, state machine, analysis, event publisher, live gateway) over
the in-memory collaborators and checks what each outer surface saw.
"""

from __future__ import annotations

import json
from decimal import Decimal

import pytest

from invoiceflow.domain.status import BatchStatus, DocumentStatus, InvoiceStatus
from invoiceflow.events import EventKind
from invoiceflow.notifications.gateway import BROADCAST


def _bodies(event_log, topic: str) -> list[dict]:
    return [json.loads(r.body) for r in event_log.records(topic)]


def _drain_queue(queue) -> list[dict]:
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages


@pytest.mark.integration
class TestBatchLifecycle:

    async def test_single_invoice_batch(self, pipeline, make_batch, repository, event_log, test_settings):
        watcher = pipeline.gateway.register("watcher")
        pipeline.gateway.subscribe(watcher.id, BROADCAST)

        batch, docs = await make_batch(pipeline, [b"%PDF-1.4 march"])
        await pipeline.drain()

        # persisted state
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert (stored.processed_count, stored.failed_count) == (1, 0)

        doc = await repository.get_document(docs[0].id)
        assert doc.status == DocumentStatus.PROCESSED
        assert "INV-100" in doc.extracted_text

        invoice = await repository.get_invoice_for_document(doc.id)
        assert invoice.invoice_number == "INV-100"
        assert invoice.amount == Decimal("250.00")
        assert invoice.tax_amount == Decimal("50.00")
        assert invoice.status == InvoiceStatus.PENDING
        assert (await repository.get_vendor(invoice.vendor_id)).name == "Acme Co"

        analysis = await repository.get_analysis(batch.id)
        assert analysis.summary == "1 invoice(s) totalling 250.00."
        assert analysis.metadata["model"] == "scripted"

        # event log
        processed = _bodies(event_log, test_settings.topic_document_processed)
        assert [e["event_type"] for e in processed] == [EventKind.DOCUMENT_PROCESSED.value]
        assert processed[0]["document_id"] == doc.id

        statuses = [e["status"] for e in _bodies(event_log, test_settings.topic_batch_status_changed)]
        assert statuses[0] == BatchStatus.PROCESSING.value
        assert statuses[-1] == BatchStatus.COMPLETED.value
        assert statuses.count(BatchStatus.COMPLETED.value) == 1

        assert len(_bodies(event_log, test_settings.topic_batch_created)) == 1
        assert len(_bodies(event_log, test_settings.topic_batch_ocr_completed)) == 1
        assert len(_bodies(event_log, test_settings.topic_batch_analysis_completed)) == 1

        # live notifications
        messages = _drain_queue(watcher.queue)
        batch_updates = [m["data"]["status"] for m in messages if m["type"] == "batch_update"]
        assert batch_updates[0] == BatchStatus.CREATED.value
        assert batch_updates[-1] == BatchStatus.COMPLETED.value
        doc_updates = [m["data"]["status"] for m in messages if m["type"] == "document_update"]
        assert doc_updates[-1] == DocumentStatus.PROCESSED.value

    async def test_events_for_one_batch_share_a_partition(self, pipeline, make_batch, event_log, test_settings):
        batch, _ = await make_batch(pipeline, [b"%PDF-1", b"%PDF-2"])
        await pipeline.drain()

        records = event_log.records(test_settings.topic_batch_status_changed)
        assert {r.key for r in records} == {batch.id}
        assert len({r.partition for r in records}) == 1
        assert [r.offset for r in records] == sorted(r.offset for r in records)

    async def test_two_batches_run_independently(self, pipeline, make_batch, repository, ocr):
        ocr.fail_on = {b"%PDF-bad"}
        good, _ = await make_batch(pipeline, [b"%PDF-1", b"%PDF-2"], name="good")
        bad, _ = await make_batch(pipeline, [b"%PDF-bad"], name="bad")
        await pipeline.drain()

        assert (await repository.get_batch(good.id)).status == BatchStatus.COMPLETED
        assert (await repository.get_batch(bad.id)).status == BatchStatus.FAILED
        assert await repository.get_analysis(bad.id) is None
