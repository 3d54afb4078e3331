"""
BatchEvent: the single event payload published for every pipeline stage.

One pydantic model tagged by `event_type` instead of one class per event;
consumers switch on `event_type` and read structured fields plus `metadata`.
Serialized uniformly with `model_dump_json()`.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from invoiceflow.domain.models import Analysis, Batch, Document, Invoice


class EventKind(str, Enum):
    BATCH_CREATED            = "batch.created"
    BATCH_STATUS_CHANGED     = "batch.status_changed"
    BATCH_OCR_COMPLETED      = "batch.ocr_completed"
    BATCH_ANALYSIS_COMPLETED = "batch.analysis_completed"
    DOCUMENT_PROCESSED       = "document.processed"
    DOCUMENT_FAILED          = "document.failed"

    @property
    def is_document_event(self) -> bool:
        return self in (EventKind.DOCUMENT_PROCESSED, EventKind.DOCUMENT_FAILED)


class BatchEvent(BaseModel):
    event_id:    str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type:  EventKind
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    batch_id:    str
    document_id: Optional[str] = None
    status:      Optional[str] = None
    metadata:    dict[str, Any] = Field(default_factory=dict)

    @property
    def partition_key(self) -> str:
        """Document events are keyed by document, everything else by batch."""
        if self.event_type.is_document_event and self.document_id:
            return self.document_id
        return self.batch_id

    # ── Factories ──────────────────────────────────────────────────────────

    @classmethod
    def batch_created(cls, batch: Batch) -> "BatchEvent":
        return cls(
            event_type=EventKind.BATCH_CREATED,
            batch_id=batch.id,
            status=batch.status.value,
            metadata={
                "name":           batch.name,
                "document_count": batch.document_count,
                "created_by":     batch.created_by,
            },
        )

    @classmethod
    def status_changed(
        cls,
        batch_id: str,
        previous: str,
        current: str,
        *,
        processed_count: int = 0,
        failed_count: int = 0,
        reason: str | None = None,
    ) -> "BatchEvent":
        metadata: dict[str, Any] = {
            "previous_status": previous,
            "processed_count": processed_count,
            "failed_count":    failed_count,
        }
        if reason:
            metadata["reason"] = reason
        return cls(
            event_type=EventKind.BATCH_STATUS_CHANGED,
            batch_id=batch_id,
            status=current,
            metadata=metadata,
        )

    @classmethod
    def ocr_completed(cls, batch_id: str, processed_count: int, failed_count: int) -> "BatchEvent":
        return cls(
            event_type=EventKind.BATCH_OCR_COMPLETED,
            batch_id=batch_id,
            status="OCR_COMPLETED",
            metadata={"processed_count": processed_count, "failed_count": failed_count},
        )

    @classmethod
    def analysis_completed(cls, analysis: Analysis) -> "BatchEvent":
        return cls(
            event_type=EventKind.BATCH_ANALYSIS_COMPLETED,
            batch_id=analysis.batch_id,
            status="COMPLETED",
            metadata={
                "analysis_id":          analysis.id,
                "recommendation_count": len(analysis.recommendations),
            },
        )

    @classmethod
    def document_processed(cls, document: Document, invoice: Invoice) -> "BatchEvent":
        return cls(
            event_type=EventKind.DOCUMENT_PROCESSED,
            batch_id=document.batch_id,
            document_id=document.id,
            status=document.status.value,
            metadata={
                "invoice_id":     invoice.id,
                "invoice_number": invoice.invoice_number,
                "invoice_status": invoice.status.value,
                "vendor_id":      invoice.vendor_id,
                "amount":         str(invoice.amount),
            },
        )

    @classmethod
    def document_failed(cls, document: Document) -> "BatchEvent":
        return cls(
            event_type=EventKind.DOCUMENT_FAILED,
            batch_id=document.batch_id,
            document_id=document.id,
            status=document.status.value,
            metadata={
                "error":       document.error_message,
                "retry_count": document.retry_count,
            },
        )
