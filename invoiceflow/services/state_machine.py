"""
Batch State Machine
═══════════════════

The only code that changes Batch.status. Every operation is a single
read-modify-write inside `repository.batch_for_update(batch_id)`, which
serializes concurrent callers for the same batch. That is what makes
"is this the last document?" race-safe: of N settlements racing, exactly one
observes the all-terminal aggregate while the batch is still PROCESSING, and
only that caller gets a BatchTransition back.

    CREATED → PROCESSING → OCR_COMPLETED → EXTRACTION_COMPLETED
            → ANALYSIS_IN_PROGRESS → COMPLETED | ANALYSIS_FAILED

    FAILED      every document failed, or a processed document has no invoice
    CANCELLED   operator request, from any non-terminal state

Recomputations (`on_document_settled`, `complete_extraction`,
`begin_analysis`) are idempotent: when the batch has already moved past the
state they act on, they return None. Explicit requests (`cancel`,
`transition`, `complete_analysis`, `fail_analysis`) raise InvalidTransition
instead, and change nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from invoiceflow.core.errors import InvalidTransition
from invoiceflow.domain.models import Analysis, BatchAggregate
from invoiceflow.domain.status import BatchStatus
from invoiceflow.repositories.base import PipelineRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchTransition:
    batch_id:        str
    previous:        BatchStatus
    current:         BatchStatus
    processed_count: int = 0
    failed_count:    int = 0
    reason:          str | None = None


def _snapshot(aggregate: BatchAggregate, previous: BatchStatus) -> BatchTransition:
    b = aggregate.batch
    return BatchTransition(
        batch_id=b.id,
        previous=previous,
        current=b.status,
        processed_count=b.processed_count,
        failed_count=b.failed_count,
        reason=b.failure_reason,
    )


class BatchStateMachine:

    def __init__(self, repository: PipelineRepository) -> None:
        self._repo = repository

    # ── Document-driven recomputation ──────────────────────────────────────

    async def start_processing(self, batch_id: str) -> BatchTransition | None:
        """CREATED → PROCESSING on the first document; no-op afterwards."""
        async with self._repo.batch_for_update(batch_id) as agg:
            if agg.batch.status != BatchStatus.CREATED:
                return None
            previous = agg.batch.move_to(BatchStatus.PROCESSING)
            transition = _snapshot(agg, previous)
        logger.info("Batch | id=%s %s → %s", batch_id, previous.value, BatchStatus.PROCESSING.value)
        return transition

    async def on_document_settled(self, batch_id: str) -> BatchTransition | None:
        """
        Called after every document reaches a terminal state.

        Fires at most once per batch: when every document is terminal, moves
        the batch to OCR_COMPLETED (at least one PROCESSED) or FAILED (none).
        """
        async with self._repo.batch_for_update(batch_id) as agg:
            batch = agg.batch
            if batch.status not in (BatchStatus.CREATED, BatchStatus.PROCESSING):
                return None
            if not agg.all_terminal:
                return None

            previous = batch.status
            if batch.status == BatchStatus.CREATED:
                batch.move_to(BatchStatus.PROCESSING)

            batch.processed_count = len(agg.processed)
            batch.failed_count = len(agg.failed)
            if batch.processed_count == 0:
                batch.move_to(
                    BatchStatus.FAILED,
                    reason=f"All {batch.document_count} documents failed processing",
                )
            else:
                batch.move_to(BatchStatus.OCR_COMPLETED)
            transition = _snapshot(agg, previous)

        logger.info(
            "Batch | id=%s %s → %s processed=%d failed=%d",
            batch_id, previous.value, transition.current.value,
            transition.processed_count, transition.failed_count,
        )
        return transition

    async def complete_extraction(self, batch_id: str) -> BatchTransition | None:
        """OCR_COMPLETED → EXTRACTION_COMPLETED once every PROCESSED document has its invoice."""
        async with self._repo.batch_for_update(batch_id) as agg:
            if agg.batch.status != BatchStatus.OCR_COMPLETED:
                return None

            missing = [
                d.id for d in agg.processed
                if await self._repo.get_invoice_for_document(d.id) is None
            ]
            if missing:
                previous = agg.batch.move_to(
                    BatchStatus.FAILED,
                    reason=f"Invoice missing for {len(missing)} processed document(s)",
                )
            else:
                previous = agg.batch.move_to(BatchStatus.EXTRACTION_COMPLETED)
            transition = _snapshot(agg, previous)

        logger.info("Batch | id=%s %s → %s", batch_id, previous.value, transition.current.value)
        return transition

    # ── Analysis stage ─────────────────────────────────────────────────────

    async def begin_analysis(self, batch_id: str) -> BatchTransition | None:
        """Compare-and-set EXTRACTION_COMPLETED → ANALYSIS_IN_PROGRESS."""
        async with self._repo.batch_for_update(batch_id) as agg:
            if agg.batch.status != BatchStatus.EXTRACTION_COMPLETED:
                return None
            previous = agg.batch.move_to(BatchStatus.ANALYSIS_IN_PROGRESS)
            transition = _snapshot(agg, previous)
        logger.info("Batch | id=%s analysis started", batch_id)
        return transition

    async def complete_analysis(self, batch_id: str, analysis: Analysis) -> BatchTransition:
        """Persist `analysis` and move ANALYSIS_IN_PROGRESS → COMPLETED in one write."""
        async with self._repo.batch_for_update(batch_id) as agg:
            self._require(agg, BatchStatus.ANALYSIS_IN_PROGRESS, BatchStatus.COMPLETED)
            await self._repo.stage_analysis(agg, analysis)
            previous = agg.batch.move_to(BatchStatus.COMPLETED)
            transition = _snapshot(agg, previous)
        logger.info("Batch | id=%s analysis=%s → COMPLETED", batch_id, analysis.id)
        return transition

    async def fail_analysis(self, batch_id: str, reason: str) -> BatchTransition:
        """ANALYSIS_IN_PROGRESS → ANALYSIS_FAILED; terminal, never retried."""
        async with self._repo.batch_for_update(batch_id) as agg:
            self._require(agg, BatchStatus.ANALYSIS_IN_PROGRESS, BatchStatus.ANALYSIS_FAILED)
            previous = agg.batch.move_to(BatchStatus.ANALYSIS_FAILED, reason=reason)
            transition = _snapshot(agg, previous)
        logger.warning("Batch | id=%s → ANALYSIS_FAILED reason=%s", batch_id, reason)
        return transition

    # ── Explicit requests ──────────────────────────────────────────────────

    async def cancel(self, batch_id: str, reason: str = "Cancelled by request") -> BatchTransition:
        return await self.transition(batch_id, BatchStatus.CANCELLED, reason=reason)

    async def transition(
        self,
        batch_id: str,
        target: BatchStatus,
        reason: str | None = None,
    ) -> BatchTransition:
        """Generic guarded transition; InvalidTransition if the table forbids it."""
        async with self._repo.batch_for_update(batch_id) as agg:
            previous = agg.batch.move_to(target, reason=reason)
            transition = _snapshot(agg, previous)
        logger.info("Batch | id=%s %s → %s", batch_id, previous.value, target.value)
        return transition

    @staticmethod
    def _require(agg: BatchAggregate, expected: BatchStatus, target: BatchStatus) -> None:
        if agg.batch.status != expected:
            raise InvalidTransition("Batch", agg.batch.id, agg.batch.status.value, target.value)
