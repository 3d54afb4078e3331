"""
Unit Tests — AnalysisAggregator and payload bounding
═════════════════════════════════════════════════════
Coverage targets:
  ✅ Payload totals cover every invoice, vendors resolved by name
  ✅ Bounding drops OCR excerpts first, then the oldest invoices
  ✅ Totals survive bounding; invoices_omitted is reported
  ✅ Success → Analysis persisted, batch COMPLETED, metadata filled
  ✅ Summarizer failing every attempt → ANALYSIS_FAILED, no Analysis
  ✅ Second analyze() for the same batch is a no-op
  ✅ Batch cancelled mid-summarization → result discarded
  ✅ Any other error after analysis began → ANALYSIS_FAILED with the reason
  ✅ Failed-document detail is bounded too: errors cut, entries dropped
  ✅ Payload counts FAILED and REJECTED documents, incomplete invoices
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from invoiceflow.core.errors import NotFoundError
from invoiceflow.domain.models import Invoice, Vendor
from invoiceflow.domain.status import BatchStatus, DocumentStatus, InvoiceStatus
from invoiceflow.llm.summarizer import Summarizer, SummaryResult
from invoiceflow.services.analysis import AnalysisAggregator, bound_payload, payload_length
from invoiceflow.services.state_machine import BatchStateMachine
from tests.conftest import FAST_RETRY


async def _ready_batch(repository, make_document, amounts: list[str], *, text: str = "Total: 1.00"):
    """A batch at EXTRACTION_COMPLETED with one invoice per amount."""
    machine = BatchStateMachine(repository)
    batch, docs = await make_document(len(amounts))
    vendor = await repository.insert_vendor(Vendor(name="Acme Co", normalized_name="acme co"))
    for i, (doc, amount) in enumerate(zip(docs, amounts)):
        doc.status = DocumentStatus.PROCESSED
        doc.extracted_text = text
        await repository.update_document(doc)
        await repository.save_invoice(Invoice(
            document_id=doc.id,
            invoice_number=f"INV-{i}",
            invoice_date=date(2024, 1, i + 1),
            amount=Decimal(amount),
            vendor_id=vendor.id,
        ))
    await machine.on_document_settled(batch.id)
    await machine.complete_extraction(batch.id)
    return batch, machine


def _aggregator(repository, summarizer, machine, **kwargs) -> AnalysisAggregator:
    options = dict(policy=FAST_RETRY, timeout=1.0, max_content_length=4000)
    options.update(kwargs)
    return AnalysisAggregator(repository, summarizer, machine, **options)


def _payload(n: int, excerpt: str = "x" * 300) -> dict:
    return {
        "batch": {"id": "b1", "failed_count": 0},
        "totals": {"invoice_count": n, "total_amount": "999.00"},
        "invoices": [
            {"invoice_number": f"INV-{i}", "invoice_date": f"2024-01-{i + 10:02d}", "excerpt": excerpt}
            for i in range(n)
        ],
    }


@pytest.mark.unit
class TestBoundPayload:

    def test_small_payload_untouched(self):
        payload = _payload(2, excerpt="short")
        assert bound_payload(payload, 10_000) == _payload(2, excerpt="short")

    def test_excerpts_dropped_before_invoices(self):
        payload = _payload(3)
        no_excerpts = _payload(3)
        for entry in no_excerpts["invoices"]:
            del entry["excerpt"]

        bound_payload(payload, payload_length(no_excerpts) + 50)

        assert len(payload["invoices"]) == 3
        assert all("excerpt" not in e for e in payload["invoices"])
        assert payload["invoices_omitted"] == 0

    def test_oldest_invoices_dropped_last(self):
        payload = _payload(5)

        bound_payload(payload, 320)

        assert payload_length(payload) <= 320
        kept = [e["invoice_number"] for e in payload["invoices"]]
        assert kept and "INV-0" not in kept
        assert "INV-4" in kept
        assert payload["totals"] == {"invoice_count": 5, "total_amount": "999.00"}
        assert payload["invoices_omitted"] == 5 - len(kept)


@pytest.mark.unit
class TestAnalysisAggregator:

    async def test_success_completes_batch(self, repository, make_document, summarizer):
        batch, machine = await _ready_batch(repository, make_document, ["100.00", "150.00"])

        analysis = await _aggregator(repository, summarizer, machine).analyze(batch.id)

        assert analysis is not None
        assert analysis.summary == "2 invoice(s) totalling 250.00."
        assert analysis.recommendations == ("Pay INV-100 before 2024-02-15",)
        assert analysis.metadata["invoice_count"] == 2
        assert analysis.metadata["total_amount"] == "250.00"
        assert analysis.metadata["invoices_omitted"] == 0
        assert analysis.metadata["model"] == "scripted"
        assert (await repository.get_batch(batch.id)).status == BatchStatus.COMPLETED
        assert (await repository.get_analysis(batch.id)).id == analysis.id

        payload = summarizer.payloads[0]
        assert payload["totals"]["vendor_count"] == 1
        assert {e["vendor"] for e in payload["invoices"]} == {"Acme Co"}

    async def test_totals_survive_bounding(self, repository, make_document, summarizer):
        batch, machine = await _ready_batch(
            repository, make_document, ["10.00"] * 8, text="lorem ipsum " * 50,
        )

        analysis = await _aggregator(
            repository, summarizer, machine, max_content_length=900,
        ).analyze(batch.id)

        payload = summarizer.payloads[0]
        assert payload_length(payload) <= 900
        assert payload["totals"]["total_amount"] == "80.00"
        assert analysis.metadata["invoice_count"] == 8
        assert analysis.metadata["invoices_omitted"] == 8 - len(payload["invoices"])

    async def test_exhausted_attempts_fail_analysis(self, repository, make_document, summarizer):
        summarizer.failures = 3
        batch, machine = await _ready_batch(repository, make_document, ["100.00"])
        seen = []

        async def announce(transition, analysis):
            seen.append((transition.current, analysis))

        result = await _aggregator(repository, summarizer, machine, announce=announce).analyze(batch.id)

        assert result is None
        assert summarizer.calls == 3
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.ANALYSIS_FAILED
        assert "after 3 attempt(s)" in stored.failure_reason
        assert await repository.get_analysis(batch.id) is None
        assert seen == [
            (BatchStatus.ANALYSIS_IN_PROGRESS, None),
            (BatchStatus.ANALYSIS_FAILED, None),
        ]

    async def test_second_run_is_noop(self, repository, make_document, summarizer):
        batch, machine = await _ready_batch(repository, make_document, ["1.00"])
        aggregator = _aggregator(repository, summarizer, machine)

        assert await aggregator.analyze(batch.id) is not None
        assert await aggregator.analyze(batch.id) is None
        assert summarizer.calls == 1

    async def test_cancel_during_summarization_discards_result(self, repository, make_document):
        batch, machine = await _ready_batch(repository, make_document, ["1.00"])

        class CancellingSummarizer(Summarizer):
            async def summarize(self, data, max_content_length):
                await machine.cancel(data["batch"]["id"], "operator request")
                return SummaryResult(summary="too late")

        result = await _aggregator(repository, CancellingSummarizer(), machine).analyze(batch.id)

        assert result is None
        assert await repository.get_analysis(batch.id) is None
        assert (await repository.get_batch(batch.id)).status == BatchStatus.CANCELLED


@pytest.mark.unit
class TestUnexpectedFailures:

    async def test_summarizer_outside_its_contract_fails_analysis(self, repository, make_document):
        batch, machine = await _ready_batch(repository, make_document, ["100.00"])

        class BrokenSummarizer(Summarizer):
            async def summarize(self, data, max_content_length):
                raise RuntimeError("unexpected")

        result = await _aggregator(repository, BrokenSummarizer(), machine).analyze(batch.id)

        assert result is None
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.ANALYSIS_FAILED
        assert stored.failure_reason == "Analysis failed: RuntimeError: unexpected"
        assert await repository.get_analysis(batch.id) is None

    async def test_payload_error_fails_analysis(self, repository, make_document, summarizer, monkeypatch):
        batch, machine = await _ready_batch(repository, make_document, ["100.00"])

        async def vendor_gone(vendor_id):
            raise NotFoundError("Vendor", vendor_id)

        monkeypatch.setattr(repository, "get_vendor", vendor_gone)
        seen = []

        async def announce(transition, analysis):
            seen.append(transition.current)

        result = await _aggregator(repository, summarizer, machine, announce=announce).analyze(batch.id)

        assert result is None
        assert summarizer.calls == 0
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.ANALYSIS_FAILED
        assert "NotFoundError" in stored.failure_reason
        assert seen == [BatchStatus.ANALYSIS_IN_PROGRESS, BatchStatus.ANALYSIS_FAILED]

    async def test_store_error_fails_analysis(self, repository, make_document, summarizer, monkeypatch):
        batch, machine = await _ready_batch(repository, make_document, ["100.00"])

        async def broken_stage(aggregate, analysis):
            raise OSError("disk full")

        monkeypatch.setattr(repository, "stage_analysis", broken_stage)

        result = await _aggregator(repository, summarizer, machine).analyze(batch.id)

        assert result is None
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.ANALYSIS_FAILED
        assert stored.failure_reason == "Analysis not stored: OSError: disk full"
        assert await repository.get_analysis(batch.id) is None


def _failing_payload(failed: int, error_chars: int, invoices: int = 1) -> dict:
    return {
        "batch": {
            "id": "b1",
            "name": "March invoices",
            "failed_count": failed,
            "failed_documents": [
                {"file_name": f"scan-{i:03d}.pdf", "error": "e" * error_chars} for i in range(failed)
            ],
        },
        "totals": {"invoice_count": invoices, "total_amount": "10.00"},
        "invoices": [
            {"invoice_number": f"INV-{i}", "invoice_date": f"2024-02-{i + 1:02d}", "amount": "10.00"}
            for i in range(invoices)
        ],
    }


@pytest.mark.unit
class TestBoundFailedDocuments:

    def test_many_long_errors_fit_the_limit(self):
        payload = _failing_payload(50, 200)

        bound_payload(payload, 4000)

        assert payload_length(payload) <= 4000
        assert payload["batch"]["failed_count"] == 50
        assert len(payload["invoices"]) == 1
        assert payload["invoices_omitted"] == 0
        kept = payload["batch"]["failed_documents"]
        assert all(len(d["error"]) <= 120 for d in kept)
        assert payload["failed_documents_omitted"] == 50 - len(kept)
        assert kept[0]["file_name"] == "scan-000.pdf"

    def test_truncating_errors_alone_can_be_enough(self):
        payload = _failing_payload(5, 1000)

        bound_payload(payload, 1500)

        assert payload_length(payload) <= 1500
        assert len(payload["batch"]["failed_documents"]) == 5
        assert payload["batch"]["failed_documents"][0]["error"].endswith("...")
        assert "failed_documents_omitted" not in payload

    def test_long_batch_name_is_cut_last(self):
        payload = _failing_payload(0, 0, invoices=0)
        payload["batch"]["name"] = "n" * 2000

        bound_payload(payload, 400)

        assert payload_length(payload) <= 400
        assert payload["batch"]["name"].endswith("...")

    async def test_payload_lists_failed_and_rejected_documents(
        self, repository, make_document, summarizer,
    ):
        batch, docs = await make_document(3)
        docs[0].status = DocumentStatus.PROCESSED
        docs[1].status, docs[1].error_message = DocumentStatus.FAILED, "scanner jammed"
        docs[2].status, docs[2].error_message = DocumentStatus.REJECTED, "not an invoice"
        for doc in docs:
            await repository.update_document(doc)
        await repository.save_invoice(Invoice(document_id=docs[0].id, status=InvoiceStatus.EXTRACTION_FAILED))

        payload = await _aggregator(repository, summarizer, BatchStateMachine(repository)).build_payload(batch.id)

        failed = {d["file_name"]: d["error"] for d in payload["batch"]["failed_documents"]}
        assert failed == {"d1.pdf": "scanner jammed", "d2.pdf": "not an invoice"}
        assert payload["totals"]["incomplete"] == 1
