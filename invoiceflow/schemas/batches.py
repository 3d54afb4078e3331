"""
Batch API — Pydantic Request/Response Schemas

Covers:
  - POST /api/v1/batches (202 Accepted)
  - Batch, document, invoice and analysis read models
  - The uniform ErrorResponse envelope used for every 4xx/5xx

Design decisions:
  - ids are server-generated UUID4 strings; never client-supplied.
  - Money is serialized as a decimal string ("250.00") so no client ever
    sees a float rounding artefact.
  - All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_serializer

from invoiceflow.domain.models import Analysis, Batch, Document, Invoice
from invoiceflow.notifications.gateway import batch_snapshot


# ---------------------------------------------------------------------------
# Upload limits, enforced before touching storage
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/tiff",
    }
)

ALLOWED_EXTENSIONS: frozenset[str] = frozenset(
    {".pdf", ".jpg", ".jpeg", ".png", ".tif", ".tiff"}
)


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

class BatchUploadResponse(BaseModel):
    """HTTP 202: files are stored, processing is asynchronous."""
    batch_id:       str      = Field(..., description="Server-generated batch id")
    name:           str
    status:         str      = Field(..., description="Always CREATED on upload")
    document_count: int
    document_ids:   list[str]
    created_at:     datetime

    @classmethod
    def from_domain(cls, batch: Batch, documents: list[Document]) -> "BatchUploadResponse":
        return cls(
            batch_id=batch.id,
            name=batch.name,
            status=batch.status.value,
            document_count=batch.document_count,
            document_ids=[d.id for d in documents],
            created_at=batch.created_at,
        )


class BatchStatusResponse(BaseModel):
    batch_id:        str
    name:            str
    description:     str | None = None
    created_by:      str | None = None
    status:          str
    is_terminal:     bool
    document_count:  int
    processed_count: int
    failed_count:    int
    progress:        int = Field(0, ge=0, le=100, description="Percentage of settled documents")
    failure_reason:  str | None = None
    created_at:      datetime
    updated_at:      datetime

    @classmethod
    def from_domain(cls, batch: Batch) -> "BatchStatusResponse":
        snap = batch_snapshot(batch)
        return cls(
            batch_id=batch.id,
            name=batch.name,
            description=batch.description,
            created_by=batch.created_by,
            status=batch.status.value,
            is_terminal=batch.is_terminal,
            document_count=batch.document_count,
            processed_count=batch.processed_count,
            failed_count=batch.failed_count,
            progress=snap["progress"],
            failure_reason=batch.failure_reason,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
        )


class BatchListResponse(BaseModel):
    page:    int
    limit:   int
    total:   int
    batches: list[BatchStatusResponse]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentResponse(BaseModel):
    document_id:   str
    batch_id:      str
    file_name:     str
    content_type:  str
    size_bytes:    int
    status:        str
    retry_count:   int
    error_message: str | None = None
    has_text:      bool = Field(False, description="OCR produced text for this document")
    created_at:    datetime
    updated_at:    datetime

    @classmethod
    def from_domain(cls, doc: Document) -> "DocumentResponse":
        return cls(
            document_id=doc.id,
            batch_id=doc.batch_id,
            file_name=doc.file_name,
            content_type=doc.content_type,
            size_bytes=doc.size_bytes,
            status=doc.status.value,
            retry_count=doc.retry_count,
            error_message=doc.error_message,
            has_text=bool(doc.extracted_text),
            created_at=doc.created_at,
            updated_at=doc.updated_at,
        )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class LineItemResponse(BaseModel):
    description: str
    quantity:    Decimal
    unit_price:  Decimal
    amount:      Decimal

    @field_serializer("quantity", "unit_price", "amount")
    def _decimal_str(self, value: Decimal) -> str:
        return str(value)


class InvoiceResponse(BaseModel):
    invoice_id:     str
    document_id:    str
    vendor_id:      str | None = None
    invoice_number: str | None = None
    invoice_date:   date | None = None
    due_date:       date | None = None
    amount:         Decimal
    tax_amount:     Decimal
    currency:       str
    status:         str
    line_items:     list[LineItemResponse] = Field(default_factory=list)
    notes:          str | None = None

    @field_serializer("amount", "tax_amount")
    def _decimal_str(self, value: Decimal) -> str:
        return str(value)

    @classmethod
    def from_domain(cls, inv: Invoice) -> "InvoiceResponse":
        return cls(
            invoice_id=inv.id,
            document_id=inv.document_id,
            vendor_id=inv.vendor_id,
            invoice_number=inv.invoice_number,
            invoice_date=inv.invoice_date,
            due_date=inv.due_date,
            amount=inv.amount,
            tax_amount=inv.tax_amount,
            currency=inv.currency,
            status=inv.status.value,
            line_items=[
                LineItemResponse(
                    description=li.description,
                    quantity=li.quantity,
                    unit_price=li.unit_price,
                    amount=li.amount,
                )
                for li in inv.line_items
            ],
            notes=inv.notes,
        )


class AnalysisResponse(BaseModel):
    analysis_id:     str
    batch_id:        str
    summary:         str
    recommendations: list[str]
    metadata:        dict[str, Any] = Field(default_factory=dict)
    created_at:      datetime

    @classmethod
    def from_domain(cls, analysis: Analysis) -> "AnalysisResponse":
        return cls(
            analysis_id=analysis.id,
            batch_id=analysis.batch_id,
            summary=analysis.summary,
            recommendations=list(analysis.recommendations),
            metadata=dict(analysis.metadata),
            created_at=analysis.created_at,
        )


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")
