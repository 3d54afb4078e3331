"""
Batch Pipeline: per-document OCR/extraction and the settle chain.

Per document (one worker task each, siblings unordered):

    retrieve bytes ─► OCR (timeout) ─► parse fields ─► resolve vendor
        ─► save invoice ─► document PROCESSED ─► event + live push ─► settle

    failure: retry_count += 1
        below ceiling, batch not cancelled ─► submit_later(delay_for(retry_count))
        otherwise                          ─► FAILED ─► event + live push ─► settle

Settle chain (only the caller that receives a transition continues):

    on_document_settled ─► OCR_COMPLETED ─► complete_extraction
        ─► EXTRACTION_COMPLETED ─► analysis task (background)

The pipeline never calls `repository.update_document` while it holds the
aggregate lock of the same batch: every state-machine call is awaited on
its own.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from invoiceflow.core.config import Settings
from invoiceflow.core.errors import (
    DuplicateKeyError,
    NotFoundError,
    ProviderError,
    StorageError,
    ValidationError,
)
from invoiceflow.core.retry import RetryPolicy, call_with_timeout
from invoiceflow.domain.models import Analysis, Batch, Document, ExtractedInvoice, Invoice
from invoiceflow.domain.status import BatchStatus, DocumentStatus
from invoiceflow.events.events import BatchEvent
from invoiceflow.events.publisher import EventPublisher
from invoiceflow.llm.summarizer import Summarizer
from invoiceflow.notifications.gateway import NotificationGateway
from invoiceflow.observability.tracing import traced
from invoiceflow.processing.ocr import OCRProvider
from invoiceflow.repositories.base import PipelineRepository
from invoiceflow.services.analysis import AnalysisAggregator
from invoiceflow.services.extraction import build_invoice, extract_invoice_fields
from invoiceflow.services.state_machine import BatchStateMachine, BatchTransition
from invoiceflow.services.vendors import VendorResolver
from invoiceflow.storage.s3 import StorageService
from invoiceflow.workers.pool import WorkerPool

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = (
    BatchStatus.CREATED,
    BatchStatus.PROCESSING,
    BatchStatus.OCR_COMPLETED,
    BatchStatus.EXTRACTION_COMPLETED,
    BatchStatus.ANALYSIS_IN_PROGRESS,
)


@dataclass(frozen=True)
class ProcessingError:
    document_id: str
    message:     str
    retryable:   bool


@dataclass(frozen=True)
class ProcessingResult:
    document_id: str
    extracted:   ExtractedInvoice | None = None
    error:       ProcessingError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchPipeline:

    def __init__(
        self,
        repository: PipelineRepository,
        storage: StorageService,
        ocr: OCRProvider,
        summarizer: Summarizer,
        publisher: EventPublisher,
        gateway: NotificationGateway,
        *,
        pool_size: int = 10,
        queue_capacity: int = 100,
        max_retries: int = 3,
        retry_policy: RetryPolicy | None = None,
        ocr_timeout: float | None = 120.0,
        analysis_policy: RetryPolicy | None = None,
        summarization_timeout: float | None = 60.0,
        max_content_length: int = 4000,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.publisher = publisher
        self.gateway = gateway
        self._ocr = ocr
        self._max_retries = max_retries
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=max_retries, base_delay=5.0, max_delay=60.0)
        self._ocr_timeout = ocr_timeout

        self.state_machine = BatchStateMachine(repository)
        self.vendors = VendorResolver(repository)
        self.aggregator = AnalysisAggregator(
            repository,
            summarizer,
            self.state_machine,
            policy=analysis_policy or RetryPolicy(max_attempts=3),
            timeout=summarization_timeout,
            max_content_length=max_content_length,
            announce=self._announce,
        )
        self.pool = WorkerPool(self.process_document, size=pool_size, capacity=queue_capacity)
        self._analysis_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        *,
        repository: PipelineRepository,
        storage: StorageService,
        ocr: OCRProvider,
        summarizer: Summarizer,
        publisher: EventPublisher,
        gateway: NotificationGateway,
    ) -> "BatchPipeline":
        return cls(
            repository, storage, ocr, summarizer, publisher, gateway,
            pool_size=cfg.worker_pool_size,
            queue_capacity=cfg.worker_queue_capacity,
            max_retries=cfg.document_max_retries,
            retry_policy=RetryPolicy(
                max_attempts=cfg.document_max_retries,
                base_delay=cfg.document_retry_base_delay_seconds,
                max_delay=cfg.document_retry_max_delay_seconds,
            ),
            ocr_timeout=cfg.ocr_timeout_seconds,
            analysis_policy=RetryPolicy(
                max_attempts=cfg.summarization_max_attempts,
                base_delay=cfg.summarization_backoff_seconds,
            ),
            summarization_timeout=cfg.summarization_timeout_seconds,
            max_content_length=cfg.summarization_max_content_length,
        )

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.publisher.start()
        await self.gateway.start()
        await self.pool.start()

    async def recover(self) -> dict[str, int]:
        """
        Pick up work an earlier process left unfinished. Run once, after
        start(), before the process accepts new batches.

        CREATED / PROCESSING      claimable documents re-queued; a batch whose
                                  documents are all terminal is settled
        OCR_COMPLETED             extraction completed
        EXTRACTION_COMPLETED      analysis scheduled
        ANALYSIS_IN_PROGRESS      ANALYSIS_FAILED (the summarizer call died with it)
        """
        counts = {"documents_requeued": 0, "batches_settled": 0, "analyses_scheduled": 0,
                  "analyses_abandoned": 0}
        for batch in await self.repository.list_batches_by_status(RECOVERABLE_STATUSES):
            if batch.status in (BatchStatus.CREATED, BatchStatus.PROCESSING):
                docs = await self.repository.list_documents(batch.id)
                pending = [d for d in docs if self._claimable(d, batch)]
                for doc in pending:
                    # waits for queue room instead of raising QueueFullError
                    self.pool.submit_later(doc.id, 0.0)
                counts["documents_requeued"] += len(pending)
                if not pending and all(d.is_terminal for d in docs):
                    await self._settle(batch.id)
                    counts["batches_settled"] += 1
            elif batch.status == BatchStatus.OCR_COMPLETED:
                await self._complete_extraction(batch.id)
                counts["batches_settled"] += 1
            elif batch.status == BatchStatus.EXTRACTION_COMPLETED:
                self._schedule_analysis(batch.id)
                counts["analyses_scheduled"] += 1
            elif batch.status == BatchStatus.ANALYSIS_IN_PROGRESS:
                await self.aggregator.abandon(batch.id, "Analysis interrupted by a restart")
                counts["analyses_abandoned"] += 1

        if any(counts.values()):
            logger.info("Pipeline | recovered %s", " ".join(f"{k}={v}" for k, v in counts.items()))
        return counts

    async def stop(self) -> None:
        await self.pool.stop()
        for task in list(self._analysis_tasks):
            task.cancel()
        await asyncio.gather(*self._analysis_tasks, return_exceptions=True)
        await self.gateway.stop()
        await self.publisher.stop()

    async def drain(self) -> None:
        """Wait until every queued document and every analysis has finished."""
        while True:
            await self.pool.join()
            if not self._analysis_tasks:
                break
            await asyncio.gather(*list(self._analysis_tasks), return_exceptions=True)
        await self.publisher.flush()

    # ── Submission ─────────────────────────────────────────────────────────

    async def submit_batch(self, batch: Batch, documents: Sequence[Document]) -> Batch:
        """
        Persist a new batch and queue every document. QueueFullError leaves
        nothing behind: the batch row is deleted before the error propagates.
        """
        batch.document_count = len(documents)
        batch = await self.repository.create_batch(batch, documents)
        try:
            self.pool.submit_many(d.id for d in documents)
        except Exception:
            await self.repository.delete_batch(batch.id)
            raise

        self.publisher.emit(BatchEvent.batch_created(batch))
        self.gateway.notify_batch(batch)
        logger.info("Pipeline | batch=%s queued documents=%d", batch.id, len(documents))
        return batch

    async def cancel_batch(self, batch_id: str, reason: str = "Cancelled by request") -> Batch:
        """
        Cancel a non-terminal batch. Queued documents and pending retries are
        failed when a worker next picks them up; in-flight OCR runs to the end.
        """
        transition = await self.state_machine.cancel(batch_id, reason)
        await self._announce(transition)
        return await self.repository.get_batch(batch_id)

    # ── Per-document processing ────────────────────────────────────────────

    async def process_document(self, document_id: str) -> ProcessingResult:
        try:
            doc = await self.repository.get_document(document_id)
            batch = await self.repository.get_batch(doc.batch_id)
        except NotFoundError as exc:
            logger.warning("Pipeline | document=%s skipped: %s", document_id, exc.message)
            return self._error(document_id, exc.message, retryable=False)

        if batch.status == BatchStatus.CANCELLED:
            if doc.is_terminal:
                return self._error(doc.id, "Batch cancelled", retryable=False)
            doc.mark_failed("Batch cancelled")
            return await self._settle_failure(doc)

        if not self._claimable(doc, batch):
            logger.debug("Pipeline | document=%s status=%s batch=%s not claimable",
                         doc.id, doc.status.value, batch.status.value)
            return self._error(doc.id, f"Document is {doc.status.value}", retryable=False)

        started = await self.state_machine.start_processing(doc.batch_id)
        if started is not None:
            await self._announce(started)

        doc.mark_processing()
        doc = await self.repository.update_document(doc)
        self.gateway.notify_document(doc)

        try:
            text = await self._run_ocr(doc)
        except (ProviderError, StorageError) as exc:
            return await self._handle_failure(doc, exc.message)

        doc.mark_ocr_completed(text)
        doc = await self.repository.update_document(doc)

        try:
            extracted = extract_invoice_fields(text)
            invoice = await self._save_invoice(doc, extracted)
        except ValidationError as exc:
            doc.mark_failed(f"Extraction failed: {exc.message}")
            return await self._settle_failure(doc)
        except Exception as exc:
            # a claimed document always reaches a terminal state
            logger.exception("Pipeline | document=%s extraction crashed", doc.id)
            doc.mark_failed(f"Extraction failed: {type(exc).__name__}: {exc}")
            return await self._settle_failure(doc)

        doc.mark_processed()
        doc = await self.repository.update_document(doc)
        self.publisher.emit(BatchEvent.document_processed(doc, invoice))
        self.gateway.notify_document(doc)
        logger.info(
            "Pipeline | document=%s PROCESSED invoice=%s number=%r status=%s",
            doc.id, invoice.id, invoice.invoice_number, invoice.status.value,
        )

        await self._settle(doc.batch_id)
        return ProcessingResult(doc.id, extracted=extracted)

    @traced("pipeline.ocr")
    async def _run_ocr(self, doc: Document) -> str:
        data = await self.storage.retrieve(doc.storage_path)
        return await call_with_timeout(
            lambda: self._ocr.extract_text(data, doc.content_type),
            self._ocr_timeout,
            "ocr",
        )

    def _claimable(self, doc: Document, batch: Batch) -> bool:
        if batch.status not in (BatchStatus.CREATED, BatchStatus.PROCESSING):
            return False
        if doc.status == DocumentStatus.FAILED:
            return doc.retry_count < self._max_retries
        return not doc.is_terminal

    async def _save_invoice(self, doc: Document, extracted: ExtractedInvoice) -> Invoice:
        # a document re-run after a crash keeps the invoice it already has
        existing = await self.repository.get_invoice_for_document(doc.id)
        if existing is not None:
            return existing

        # built before the vendor is resolved so a rejected invoice never bumps a vendor count
        invoice = build_invoice(doc.id, extracted)
        if extracted.vendor_name:
            try:
                invoice.vendor_id = (await self.vendors.resolve(extracted.vendor_name)).id
            except ValidationError:
                logger.info("Pipeline | document=%s vendor name %r unusable",
                            doc.id, extracted.vendor_name)

        try:
            return await self.repository.save_invoice(invoice)
        except DuplicateKeyError:
            return await self.repository.get_invoice_for_document(doc.id)

    async def _handle_failure(self, doc: Document, message: str) -> ProcessingResult:
        may_retry = doc.record_failure(message, self._max_retries)
        if may_retry:
            batch = await self.repository.get_batch(doc.batch_id)
            if batch.status == BatchStatus.CANCELLED:
                doc.mark_failed(f"{message} (batch cancelled, not retried)")
            else:
                delay = self._retry_policy.delay_for(doc.retry_count)
                doc = await self.repository.update_document(doc)
                self.gateway.notify_document(doc)
                self.pool.submit_later(doc.id, delay)
                logger.warning(
                    "Pipeline | document=%s attempt %d/%d failed, retry in %.1fs: %s",
                    doc.id, doc.retry_count, self._max_retries, delay, message,
                )
                return self._error(doc.id, message, retryable=True)

        logger.error("Pipeline | document=%s FAILED after %d attempt(s): %s",
                     doc.id, doc.retry_count, message)
        return await self._settle_failure(doc)

    async def _settle_failure(self, doc: Document) -> ProcessingResult:
        doc = await self.repository.update_document(doc)
        self.publisher.emit(BatchEvent.document_failed(doc))
        self.gateway.notify_document(doc)
        await self._settle(doc.batch_id)
        return self._error(doc.id, doc.error_message or "failed", retryable=False)

    @staticmethod
    def _error(document_id: str, message: str, *, retryable: bool) -> ProcessingResult:
        return ProcessingResult(
            document_id,
            error=ProcessingError(document_id, message, retryable),
        )

    # ── Settle chain ───────────────────────────────────────────────────────

    async def _settle(self, batch_id: str) -> None:
        settled = await self.state_machine.on_document_settled(batch_id)
        if settled is None:
            return
        await self._announce(settled)
        if settled.current == BatchStatus.OCR_COMPLETED:
            await self._complete_extraction(batch_id)

    async def _complete_extraction(self, batch_id: str) -> None:
        extracted = await self.state_machine.complete_extraction(batch_id)
        if extracted is None:
            return
        await self._announce(extracted)
        if extracted.current == BatchStatus.EXTRACTION_COMPLETED:
            self._schedule_analysis(batch_id)

    def _schedule_analysis(self, batch_id: str) -> None:
        task = asyncio.create_task(self.aggregator.analyze(batch_id), name=f"analysis-{batch_id}")
        self._analysis_tasks.add(task)
        task.add_done_callback(self._analysis_done)

    def _analysis_done(self, task: asyncio.Task) -> None:
        self._analysis_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Pipeline | analysis task %s crashed", task.get_name(), exc_info=exc)

    async def _announce(self, transition: BatchTransition, analysis: Analysis | None = None) -> None:
        """Publish events and push the live snapshot for one batch transition."""
        self.publisher.emit(BatchEvent.status_changed(
            transition.batch_id,
            transition.previous.value,
            transition.current.value,
            processed_count=transition.processed_count,
            failed_count=transition.failed_count,
            reason=transition.reason,
        ))
        if transition.current == BatchStatus.OCR_COMPLETED:
            self.publisher.emit(BatchEvent.ocr_completed(
                transition.batch_id, transition.processed_count, transition.failed_count,
            ))
        if analysis is not None:
            self.publisher.emit(BatchEvent.analysis_completed(analysis))

        try:
            batch = await self.repository.get_batch(transition.batch_id)
        except NotFoundError:
            return
        self.gateway.notify_batch(batch)
