"""
Domain records for the batch pipeline.

Ownership:
  Batch    owns its Documents (the repository deletes them with the batch)
  Document carries batch_id only, resolved by lookup, never a live reference
  Invoice  is 1:1 with a Document and references a Vendor by id
  Vendor   is shared by many invoices; nobody owns its lifecycle
  Analysis is 1:1 with a Batch and immutable once written

These are plain dataclasses; both repository implementations hand out copies,
so mutating a record never changes stored state until it is saved back.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from invoiceflow.core.errors import InvalidTransition, ValidationError
from invoiceflow.domain.status import (
    BatchStatus,
    DocumentStatus,
    InvoiceStatus,
    VendorStatus,
)

CENTS = Decimal("0.01")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value: Decimal | int | float | str) -> Decimal:
    """Coerce to a 2-place Decimal."""
    return Decimal(str(value)).quantize(CENTS)


# ---------------------------------------------------------------------------
# Documents & batches
# ---------------------------------------------------------------------------

@dataclass
class Document:
    batch_id:       str
    file_name:      str
    content_type:   str
    storage_path:   str
    size_bytes:     int = 0
    status:         DocumentStatus = DocumentStatus.CREATED
    extracted_text: str | None = None
    retry_count:    int = 0
    error_message:  str | None = None
    id:             str = field(default_factory=new_id)
    created_at:     datetime = field(default_factory=utcnow)
    updated_at:     datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark_processing(self) -> None:
        self.status = DocumentStatus.PROCESSING
        self.updated_at = utcnow()

    def mark_ocr_completed(self, text: str) -> None:
        self.extracted_text = text
        self.status = DocumentStatus.OCR_COMPLETED
        self.updated_at = utcnow()

    def mark_processed(self) -> None:
        self.status = DocumentStatus.PROCESSED
        self.error_message = None
        self.updated_at = utcnow()

    def record_failure(self, message: str, ceiling: int) -> bool:
        """
        Count one failed attempt.  Returns True when the document may be
        retried, False once the ceiling is reached (document is now FAILED).
        """
        self.retry_count = min(self.retry_count + 1, ceiling)
        self.error_message = message
        self.updated_at = utcnow()
        if self.retry_count >= ceiling:
            self.status = DocumentStatus.FAILED
            return False
        self.status = DocumentStatus.PROCESSING
        return True

    def mark_failed(self, message: str) -> None:
        self.status = DocumentStatus.FAILED
        self.error_message = message
        self.updated_at = utcnow()


@dataclass
class Batch:
    name:            str
    description:     str | None = None
    created_by:      str | None = None
    status:          BatchStatus = BatchStatus.CREATED
    document_count:  int = 0
    processed_count: int = 0
    failed_count:    int = 0
    failure_reason:  str | None = None
    id:              str = field(default_factory=new_id)
    created_at:      datetime = field(default_factory=utcnow)
    updated_at:      datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def move_to(self, target: BatchStatus, reason: str | None = None) -> BatchStatus:
        """Guarded transition; returns the previous status."""
        if not self.status.can_move_to(target):
            raise InvalidTransition("Batch", self.id, self.status.value, target.value)
        previous = self.status
        self.status = target
        if reason:
            self.failure_reason = reason
        self.updated_at = utcnow()
        return previous


@dataclass
class BatchAggregate:
    """A batch together with every document it owns, read as one unit."""
    batch:     Batch
    documents: list[Document]
    # written together with the batch when the aggregate is saved
    pending_analysis: Analysis | None = None

    @property
    def all_terminal(self) -> bool:
        return bool(self.documents) and all(d.is_terminal for d in self.documents)

    @property
    def processed(self) -> list[Document]:
        return [d for d in self.documents if d.status == DocumentStatus.PROCESSED]

    @property
    def failed(self) -> list[Document]:
        return [
            d for d in self.documents
            if d.status in (DocumentStatus.FAILED, DocumentStatus.REJECTED)
        ]


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

@dataclass
class LineItem:
    description: str
    quantity:    Decimal
    unit_price:  Decimal

    def __post_init__(self) -> None:
        self.quantity = Decimal(str(self.quantity))
        self.unit_price = money(self.unit_price)
        if self.quantity <= 0:
            raise ValidationError("Line item quantity must be positive.", field="quantity")
        if self.unit_price < 0:
            raise ValidationError("Line item unit price cannot be negative.", field="unit_price")

    @property
    def amount(self) -> Decimal:
        return money(self.quantity * self.unit_price)

    def to_dict(self) -> dict[str, str]:
        return {
            "description": self.description,
            "quantity":    str(self.quantity),
            "unit_price":  str(self.unit_price),
            "amount":      str(self.amount),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        return cls(
            description=data["description"],
            quantity=Decimal(str(data["quantity"])),
            unit_price=Decimal(str(data["unit_price"])),
        )


@dataclass
class Invoice:
    document_id:    str
    invoice_number: str | None = None
    invoice_date:   date | None = None
    due_date:       date | None = None
    amount:         Decimal = Decimal("0.00")
    tax_amount:     Decimal = Decimal("0.00")
    currency:       str = "USD"
    vendor_id:      str | None = None
    status:         InvoiceStatus = InvoiceStatus.DRAFT
    line_items:     list[LineItem] = field(default_factory=list)
    notes:          str | None = None
    id:             str = field(default_factory=new_id)
    created_at:     datetime = field(default_factory=utcnow)
    updated_at:     datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.amount = money(self.amount)
        self.tax_amount = money(self.tax_amount)
        if self.amount < 0:
            raise ValidationError("Invoice amount cannot be negative.", field="amount")
        if self.tax_amount < 0:
            raise ValidationError("Invoice tax cannot be negative.", field="tax_amount")
        if self.line_items:
            self.recalculate()

    def add_line_item(self, item: LineItem) -> None:
        self.line_items.append(item)
        self.recalculate()

    def set_tax(self, tax: Decimal) -> None:
        self.tax_amount = money(tax)
        if self.tax_amount < 0:
            raise ValidationError("Invoice tax cannot be negative.", field="tax_amount")
        if self.line_items:
            self.recalculate()

    def recalculate(self) -> None:
        """amount = Σ line amounts + tax, whenever line items exist."""
        subtotal = sum((li.amount for li in self.line_items), Decimal("0.00"))
        self.amount = money(subtotal + self.tax_amount)
        self.updated_at = utcnow()

    def transition_to(self, target: InvoiceStatus) -> None:
        if not self.status.can_move_to(target):
            raise InvalidTransition("Invoice", self.id, self.status.value, target.value)
        self.status = target
        self.updated_at = utcnow()


# ---------------------------------------------------------------------------
# Vendors & analyses
# ---------------------------------------------------------------------------

@dataclass
class Vendor:
    name:            str
    normalized_name: str
    status:          VendorStatus = VendorStatus.ACTIVE
    invoice_count:   int = 1
    email:           str | None = None
    phone:           str | None = None
    address:         str | None = None
    tax_id:          str | None = None
    id:              str = field(default_factory=new_id)
    created_at:      datetime = field(default_factory=utcnow)
    updated_at:      datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Analysis:
    batch_id:        str
    summary:         str
    recommendations: tuple[str, ...] = ()
    metadata:        dict[str, Any] = field(default_factory=dict)
    id:              str = field(default_factory=new_id)
    created_at:      datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Extraction output
# ---------------------------------------------------------------------------

@dataclass
class ExtractedInvoice:
    """Best-effort fields parsed from OCR text; anything may be missing."""
    vendor_name:    str | None = None
    invoice_number: str | None = None
    invoice_date:   date | None = None
    due_date:       date | None = None
    amount:         Decimal | None = None
    tax_amount:     Decimal | None = None
    currency:       str = "USD"
    po_number:      str | None = None
    line_items:     list[LineItem] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return bool(self.invoice_number) and self.amount is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "vendor_name":    self.vendor_name,
            "invoice_number": self.invoice_number,
            "invoice_date":   self.invoice_date.isoformat() if self.invoice_date else None,
            "due_date":       self.due_date.isoformat() if self.due_date else None,
            "amount":         str(self.amount) if self.amount is not None else None,
            "tax_amount":     str(self.tax_amount) if self.tax_amount is not None else None,
            "currency":       self.currency,
            "po_number":      self.po_number,
            "line_items":     [li.to_dict() for li in self.line_items],
        }
