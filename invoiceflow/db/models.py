"""
SQLAlchemy ORM Models — Batches, Documents, Invoices, Vendors, Analyses

Using SQLAlchemy 2.x mapped classes for full async support. Column types are
kept portable (String ids, JSON with a JSONB variant) so the same mapping
runs on PostgreSQL in production and on SQLite in tests.

Uniqueness carried by the schema, not by application checks:
  invoices.document_id       one invoice per document
  vendors.normalized_name    one vendor per canonical name
  analyses.batch_id          one analysis per batch
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB, "postgresql")


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Batch — batches
# ---------------------------------------------------------------------------

class BatchRow(Base):
    """
    One upload of N invoice files.

    document_count is written once at creation and always equals the number
    of owned document rows (documents cascade with the batch).
    """

    __tablename__ = "batches"
    __table_args__ = (
        Index("idx_batches_status",     "status"),
        Index("idx_batches_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="CREATED")

    document_count: Mapped[int]  = mapped_column(Integer, nullable=False, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int]    = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated on FAILED / ANALYSIS_FAILED",
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    documents: Mapped[list["DocumentRow"]] = relationship(
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentRow.created_at",
    )

    def __repr__(self) -> str:
        return f"<BatchRow id={self.id} status={self.status} docs={self.document_count}>"


# ---------------------------------------------------------------------------
# Document — documents
# ---------------------------------------------------------------------------

class DocumentRow(Base):
    """One uploaded file and its OCR/extraction state."""

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="documents_retry_count_check"),
        Index("idx_documents_batch_id", "batch_id"),
        Index("idx_documents_status",   "batch_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    batch_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=False,
    )

    file_name: Mapped[str]    = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="MIME type detected server-side from magic bytes",
    )
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int]   = mapped_column(BigInteger, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="CREATED")
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    batch: Mapped[BatchRow] = relationship(back_populates="documents")


# ---------------------------------------------------------------------------
# Vendor — vendors
# ---------------------------------------------------------------------------

class VendorRow(Base):
    __tablename__ = "vendors"
    __table_args__ = (
        UniqueConstraint("normalized_name", name="uq_vendors_normalized_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="NFKC + whitespace-collapsed + case-folded name",
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")
    invoice_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    email: Mapped[Optional[str]]   = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]]   = mapped_column(String(50), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tax_id: Mapped[Optional[str]]  = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Invoice — invoices
# ---------------------------------------------------------------------------

class InvoiceRow(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("document_id", name="uq_invoices_document_id"),
        CheckConstraint("amount >= 0", name="invoices_amount_check"),
        Index("idx_invoices_vendor_id", "vendor_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    vendor_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("vendors.id", ondelete="SET NULL"),
        nullable=True,
    )

    invoice_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    invoice_date: Mapped[Optional[date]]  = mapped_column(Date, nullable=True)
    due_date: Mapped[Optional[date]]      = mapped_column(Date, nullable=True)
    amount: Mapped[Decimal]     = mapped_column(Numeric(14, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str]   = mapped_column(String(32), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Ordered list of {description, quantity, unit_price, amount}; decimals as strings
    line_items: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Analysis — analyses
# ---------------------------------------------------------------------------

class AnalysisRow(Base):
    """Immutable once written; rows are never updated."""

    __tablename__ = "analyses"
    __table_args__ = (
        UniqueConstraint("batch_id", name="uq_analyses_batch_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    batch_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    recommendations: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    analysis_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        JSONType,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
