"""
Status enums for batches, documents, invoices and vendors.

Terminal membership and the allowed transition graph live in static tables
next to each enum; callers ask `status.is_terminal` / `status.can_move_to()`
instead of comparing against literal lists.

Batch state machine:

    CREATED → PROCESSING → OCR_COMPLETED → EXTRACTION_COMPLETED
            → ANALYSIS_IN_PROGRESS → ANALYSIS_COMPLETED | ANALYSIS_FAILED

    COMPLETED, FAILED, CANCELLED are side exits from any non-terminal state.
"""

from __future__ import annotations

from enum import Enum


class BatchStatus(str, Enum):
    CREATED              = "CREATED"
    PROCESSING           = "PROCESSING"
    OCR_COMPLETED        = "OCR_COMPLETED"
    EXTRACTION_COMPLETED = "EXTRACTION_COMPLETED"
    ANALYSIS_IN_PROGRESS = "ANALYSIS_IN_PROGRESS"
    ANALYSIS_COMPLETED   = "ANALYSIS_COMPLETED"
    COMPLETED            = "COMPLETED"
    ANALYSIS_FAILED      = "ANALYSIS_FAILED"
    FAILED               = "FAILED"
    CANCELLED            = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _BATCH_TERMINAL

    def can_move_to(self, target: "BatchStatus") -> bool:
        return target in _BATCH_TRANSITIONS[self]


_BATCH_TERMINAL: frozenset[BatchStatus] = frozenset({
    BatchStatus.COMPLETED,
    BatchStatus.ANALYSIS_COMPLETED,
    BatchStatus.FAILED,
    BatchStatus.ANALYSIS_FAILED,
    BatchStatus.CANCELLED,
})

_SIDE_EXITS = frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED})

_BATCH_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.CREATED:              frozenset({BatchStatus.PROCESSING}) | _SIDE_EXITS,
    BatchStatus.PROCESSING:           frozenset({BatchStatus.OCR_COMPLETED}) | _SIDE_EXITS,
    BatchStatus.OCR_COMPLETED:        frozenset({BatchStatus.EXTRACTION_COMPLETED}) | _SIDE_EXITS,
    BatchStatus.EXTRACTION_COMPLETED: frozenset({BatchStatus.ANALYSIS_IN_PROGRESS}) | _SIDE_EXITS,
    BatchStatus.ANALYSIS_IN_PROGRESS: frozenset({
        BatchStatus.ANALYSIS_COMPLETED,
        BatchStatus.ANALYSIS_FAILED,
    }) | _SIDE_EXITS,
    # terminal states accept nothing
    BatchStatus.ANALYSIS_COMPLETED:   frozenset(),
    BatchStatus.COMPLETED:            frozenset(),
    BatchStatus.ANALYSIS_FAILED:      frozenset(),
    BatchStatus.FAILED:               frozenset(),
    BatchStatus.CANCELLED:            frozenset(),
}


class DocumentStatus(str, Enum):
    CREATED       = "CREATED"
    PROCESSING    = "PROCESSING"      # also held while a retry is pending
    OCR_COMPLETED = "OCR_COMPLETED"
    PROCESSED     = "PROCESSED"
    FAILED        = "FAILED"
    REJECTED      = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in _DOCUMENT_TERMINAL


_DOCUMENT_TERMINAL: frozenset[DocumentStatus] = frozenset({
    DocumentStatus.PROCESSED,
    DocumentStatus.FAILED,
    DocumentStatus.REJECTED,
})


class InvoiceStatus(str, Enum):
    DRAFT             = "DRAFT"
    PENDING           = "PENDING"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    PROCESSED         = "PROCESSED"
    REQUIRES_REVIEW   = "REQUIRES_REVIEW"
    IN_REVIEW         = "IN_REVIEW"
    APPROVED          = "APPROVED"
    REJECTED          = "REJECTED"
    PENDING_PAYMENT   = "PENDING_PAYMENT"
    PAID              = "PAID"
    VOIDED            = "VOIDED"

    @property
    def is_terminal(self) -> bool:
        return not _INVOICE_TRANSITIONS[self]

    def can_move_to(self, target: "InvoiceStatus") -> bool:
        return target in _INVOICE_TRANSITIONS[self]


# Forward-only, except the review loop (IN_REVIEW → REQUIRES_REVIEW) and
# the explicit reject paths.
_INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({
        InvoiceStatus.PENDING, InvoiceStatus.EXTRACTION_FAILED,
        InvoiceStatus.APPROVED, InvoiceStatus.REJECTED, InvoiceStatus.VOIDED,
    }),
    InvoiceStatus.PENDING: frozenset({
        InvoiceStatus.PROCESSED, InvoiceStatus.REQUIRES_REVIEW,
        InvoiceStatus.APPROVED, InvoiceStatus.REJECTED, InvoiceStatus.VOIDED,
    }),
    InvoiceStatus.EXTRACTION_FAILED: frozenset({
        InvoiceStatus.REQUIRES_REVIEW, InvoiceStatus.REJECTED, InvoiceStatus.VOIDED,
    }),
    InvoiceStatus.PROCESSED: frozenset({
        InvoiceStatus.REQUIRES_REVIEW, InvoiceStatus.APPROVED,
        InvoiceStatus.REJECTED, InvoiceStatus.VOIDED,
    }),
    InvoiceStatus.REQUIRES_REVIEW: frozenset({
        InvoiceStatus.IN_REVIEW, InvoiceStatus.REJECTED, InvoiceStatus.VOIDED,
    }),
    InvoiceStatus.IN_REVIEW: frozenset({
        InvoiceStatus.APPROVED, InvoiceStatus.REJECTED, InvoiceStatus.REQUIRES_REVIEW,
    }),
    InvoiceStatus.APPROVED: frozenset({
        InvoiceStatus.PENDING_PAYMENT, InvoiceStatus.PAID, InvoiceStatus.VOIDED,
    }),
    InvoiceStatus.PENDING_PAYMENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOIDED}),
    InvoiceStatus.PAID:     frozenset(),
    InvoiceStatus.REJECTED: frozenset(),
    InvoiceStatus.VOIDED:   frozenset(),
}


class VendorStatus(str, Enum):
    ACTIVE   = "ACTIVE"     # available for business
    INACTIVE = "INACTIVE"   # temporarily disabled
    BLOCKED  = "BLOCKED"    # compliance hold
    PENDING  = "PENDING"    # awaiting verification
