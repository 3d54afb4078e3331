"""
Analysis Aggregator
═══════════════════

Runs once per batch, right after EXTRACTION_COMPLETED:

  1. begin_analysis()          compare-and-set; a second caller gets None and stops
  2. build the batch payload   totals over every invoice + per-invoice entries
  3. bound the payload         excerpts, failed-document detail, then the oldest invoices
  4. summarize                 timeout per attempt, RetryPolicy across attempts
  5. complete_analysis()       Analysis row + COMPLETED in one write
     or fail_analysis()        reason recorded, ANALYSIS_FAILED, no Analysis row

Batch-level totals are computed before bounding, so the summary can state
correct figures even when individual invoices had to be omitted.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable

from invoiceflow.core.errors import InvalidTransition, ProviderError
from invoiceflow.core.retry import RetryPolicy, retry_async
from invoiceflow.domain.models import Analysis, Invoice
from invoiceflow.domain.status import DocumentStatus, InvoiceStatus
from invoiceflow.llm.summarizer import Summarizer
from invoiceflow.observability.tracing import traced
from invoiceflow.repositories.base import PipelineRepository
from invoiceflow.services.state_machine import BatchStateMachine, BatchTransition

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 400
FAILED_ERROR_CHARS = 120
BATCH_NAME_CHARS = 80

Announce = Callable[[BatchTransition, "Analysis | None"], Awaitable[None]]


def payload_length(payload: dict[str, Any]) -> int:
    return len(json.dumps(payload, default=str, separators=(",", ":")))


def bound_payload(payload: dict[str, Any], max_length: int) -> dict[str, Any]:
    """
    Shrink `payload` in place until it serializes within `max_length`,
    stopping as soon as it fits:

      1. drop OCR excerpts, longest first
      2. cut failed-document error messages to FAILED_ERROR_CHARS
      3. drop failed-document entries, latest first (failed_count keeps the total)
      4. drop the oldest invoices by invoice date (undated ones count as oldest)
      5. cut the batch name to BATCH_NAME_CHARS

    Batch totals are never touched. Only a limit smaller than the bare
    skeleton (totals, counters, no entries) is left unmet. Returns the payload.
    """
    if payload_length(payload) <= max_length:
        return payload

    def fits() -> bool:
        return payload_length(payload) <= max_length

    invoices: list[dict[str, Any]] = payload["invoices"]
    failed: list[dict[str, Any]] = payload["batch"].get("failed_documents") or []
    # present while measuring so the final size includes it
    payload["invoices_omitted"] = 0

    for entry in sorted(invoices, key=lambda e: len(e.get("excerpt") or ""), reverse=True):
        if entry.pop("excerpt", None) is not None and fits():
            return payload

    for entry in failed:
        error = entry.get("error")
        if error and len(error) > FAILED_ERROR_CHARS:
            entry["error"] = error[:FAILED_ERROR_CHARS - 3] + "..."
    if fits():
        return payload

    if failed:
        payload["failed_documents_omitted"] = 0
    while failed and not fits():
        failed.pop()
        payload["failed_documents_omitted"] += 1

    if not fits():
        invoices.sort(key=lambda e: e.get("invoice_date") or "")
        while invoices and not fits():
            invoices.pop(0)
            payload["invoices_omitted"] += 1
        # newest first reads better in the prompt
        invoices.reverse()

    name = payload["batch"].get("name") or ""
    if not fits() and len(name) > BATCH_NAME_CHARS:
        payload["batch"]["name"] = name[:BATCH_NAME_CHARS - 3] + "..."

    if not fits():
        logger.warning("Analysis | payload still %d chars after bounding to %d",
                       payload_length(payload), max_length)
    return payload


def _iso(d: date | None) -> str | None:
    return d.isoformat() if d else None


class AnalysisAggregator:

    def __init__(
        self,
        repository: PipelineRepository,
        summarizer: Summarizer,
        state_machine: BatchStateMachine,
        *,
        policy: RetryPolicy,
        timeout: float,
        max_content_length: int,
        announce: Announce | None = None,
    ) -> None:
        self._repo = repository
        self._summarizer = summarizer
        self._machine = state_machine
        self._policy = policy
        self._timeout = timeout
        self._max_len = max_content_length
        self._announce = announce

    @traced("analysis.analyze")
    async def analyze(self, batch_id: str) -> Analysis | None:
        """
        Attempt analysis for `batch_id`. Returns the persisted Analysis, or
        None when analysis already ran, failed, or the batch was cancelled.
        """
        started = await self._machine.begin_analysis(batch_id)
        if started is None:
            logger.debug("Analysis | batch=%s not ready or already attempted", batch_id)
            return None
        await self._notify(started, None)

        try:
            payload = await self.build_payload(batch_id)
            bound_payload(payload, self._max_len)
            result = await retry_async(
                self._policy,
                lambda: self._summarizer.summarize(payload, self._max_len),
                timeout=self._timeout,
                operation="summarize",
            )
        except ProviderError as exc:
            reason = f"Summarization failed after {self._policy.max_attempts} attempt(s): {exc.message}"
            logger.error("Analysis | batch=%s %s", batch_id, reason)
            await self._fail_and_notify(batch_id, reason)
            return None
        except Exception as exc:
            logger.exception("Analysis | batch=%s crashed before a summary was produced", batch_id)
            await self._fail_and_notify(batch_id, f"Analysis failed: {type(exc).__name__}: {exc}")
            return None

        metadata: dict[str, Any] = {
            **result.metadata,
            "invoice_count":    payload["totals"]["invoice_count"],
            "invoices_omitted": payload.get("invoices_omitted", 0),
            "failed_documents_omitted": payload.get("failed_documents_omitted", 0),
            "total_amount":     payload["totals"]["total_amount"],
            "failed_documents": payload["batch"]["failed_count"],
        }
        analysis = Analysis(
            batch_id=batch_id,
            summary=result.summary,
            recommendations=tuple(result.recommendations),
            metadata=metadata,
        )

        try:
            completed = await self._machine.complete_analysis(batch_id, analysis)
        except InvalidTransition as exc:
            # cancelled while the summarizer was running
            logger.warning("Analysis | batch=%s result discarded: %s", batch_id, exc.message)
            return None
        except Exception as exc:
            logger.exception("Analysis | batch=%s result could not be stored", batch_id)
            await self._fail_and_notify(batch_id, f"Analysis not stored: {type(exc).__name__}: {exc}")
            return None

        await self._notify(completed, analysis)
        return analysis

    async def abandon(self, batch_id: str, reason: str) -> None:
        """Fail an analysis no process is running any more."""
        logger.warning("Analysis | batch=%s abandoned: %s", batch_id, reason)
        await self._fail_and_notify(batch_id, reason)

    async def _fail_and_notify(self, batch_id: str, reason: str) -> None:
        failed = await self._fail(batch_id, reason)
        if failed is not None:
            await self._notify(failed, None)

    async def _fail(self, batch_id: str, reason: str) -> BatchTransition | None:
        try:
            return await self._machine.fail_analysis(batch_id, reason)
        except InvalidTransition as exc:
            logger.warning("Analysis | batch=%s failure not recorded: %s", batch_id, exc.message)
            return None

    async def _notify(self, transition: BatchTransition, analysis: Analysis | None) -> None:
        if self._announce is not None:
            await self._announce(transition, analysis)

    # ── Payload ────────────────────────────────────────────────────────────

    async def build_payload(self, batch_id: str) -> dict[str, Any]:
        batch = await self._repo.get_batch(batch_id)
        documents = {d.id: d for d in await self._repo.list_documents(batch_id)}
        invoices = await self._repo.list_invoices(batch_id)

        vendor_names: dict[str, str] = {}
        for vendor_id in {i.vendor_id for i in invoices if i.vendor_id}:
            vendor_names[vendor_id] = (await self._repo.get_vendor(vendor_id)).name

        entries = [self._entry(inv, vendor_names, documents) for inv in invoices]
        total = sum((inv.amount for inv in invoices), Decimal("0.00"))
        currencies = sorted({inv.currency for inv in invoices})

        return {
            "batch": {
                "id":              batch.id,
                "name":            batch.name,
                "document_count":  batch.document_count,
                "processed_count": batch.processed_count,
                "failed_count":    batch.failed_count,
                "failed_documents": [
                    {"file_name": d.file_name, "error": d.error_message}
                    for d in documents.values() if d.status in (DocumentStatus.FAILED, DocumentStatus.REJECTED)
                ],
            },
            "totals": {
                "invoice_count":  len(invoices),
                "total_amount":   str(total),
                "currencies":     currencies,
                "vendor_count":   len(vendor_names),
                "incomplete":     sum(1 for inv in invoices if inv.status == InvoiceStatus.EXTRACTION_FAILED),
            },
            "invoices": entries,
        }

    @staticmethod
    def _entry(inv: Invoice, vendor_names: dict[str, str], documents: dict) -> dict[str, Any]:
        doc = documents.get(inv.document_id)
        entry: dict[str, Any] = {
            "invoice_number": inv.invoice_number,
            "vendor":         vendor_names.get(inv.vendor_id or ""),
            "invoice_date":   _iso(inv.invoice_date),
            "due_date":       _iso(inv.due_date),
            "amount":         str(inv.amount),
            "tax_amount":     str(inv.tax_amount),
            "currency":       inv.currency,
            "status":         inv.status.value,
            "line_items":     len(inv.line_items),
        }
        if doc is not None and doc.extracted_text:
            entry["excerpt"] = doc.extracted_text[:EXCERPT_CHARS]
        return entry
