"""
SQLAlchemy-async repository.

batch_for_update() is a transactional read-modify-write: the batch row and
its document rows are read with SELECT ... FOR UPDATE, the caller mutates
the domain aggregate, and the changes are flushed in the same transaction.
A process-local lock per batch sits in front of the row lock so that
concurrent tasks in one process queue up in Python instead of holding
pooled connections while they wait on the database.

Unique-key violations surface as DuplicateKeyError, never IntegrityError.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from invoiceflow.core.errors import DuplicateKeyError, NotFoundError
from invoiceflow.db.models import AnalysisRow, BatchRow, DocumentRow, InvoiceRow, VendorRow
from invoiceflow.db.session import build_session_factory, check_db_health, transaction
from invoiceflow.domain.models import (
    Analysis,
    Batch,
    BatchAggregate,
    Document,
    Invoice,
    LineItem,
    Vendor,
    utcnow,
)
from invoiceflow.domain.status import BatchStatus, DocumentStatus, InvoiceStatus, VendorStatus
from invoiceflow.repositories.base import PipelineRepository
from invoiceflow.repositories.locks import KeyedLocks

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row ↔ domain conversion
# ---------------------------------------------------------------------------

def _batch(row: BatchRow) -> Batch:
    return Batch(
        id=row.id,
        name=row.name,
        description=row.description,
        created_by=row.created_by,
        status=BatchStatus(row.status),
        document_count=row.document_count,
        processed_count=row.processed_count,
        failed_count=row.failed_count,
        failure_reason=row.failure_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _document(row: DocumentRow) -> Document:
    return Document(
        id=row.id,
        batch_id=row.batch_id,
        file_name=row.file_name,
        content_type=row.content_type,
        storage_path=row.storage_path,
        size_bytes=row.size_bytes,
        status=DocumentStatus(row.status),
        extracted_text=row.extracted_text,
        retry_count=row.retry_count,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _invoice(row: InvoiceRow) -> Invoice:
    invoice = Invoice(
        id=row.id,
        document_id=row.document_id,
        vendor_id=row.vendor_id,
        invoice_number=row.invoice_number,
        invoice_date=row.invoice_date,
        due_date=row.due_date,
        amount=row.amount,
        tax_amount=row.tax_amount,
        currency=row.currency,
        status=InvoiceStatus(row.status),
        notes=row.notes,
        created_at=row.created_at,
    )
    # Assigned after construction: the stored amount is authoritative.
    invoice.line_items = [LineItem.from_dict(li) for li in row.line_items or []]
    invoice.updated_at = row.updated_at
    return invoice


def _vendor(row: VendorRow) -> Vendor:
    return Vendor(
        id=row.id,
        name=row.name,
        normalized_name=row.normalized_name,
        status=VendorStatus(row.status),
        invoice_count=row.invoice_count,
        email=row.email,
        phone=row.phone,
        address=row.address,
        tax_id=row.tax_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _analysis(row: AnalysisRow) -> Analysis:
    return Analysis(
        id=row.id,
        batch_id=row.batch_id,
        summary=row.summary,
        recommendations=tuple(row.recommendations or ()),
        metadata=dict(row.analysis_metadata or {}),
        created_at=row.created_at,
    )


def _copy_batch(row: BatchRow, batch: Batch) -> None:
    row.status = batch.status.value
    row.processed_count = batch.processed_count
    row.failed_count = batch.failed_count
    row.failure_reason = batch.failure_reason
    row.updated_at = batch.updated_at


def _copy_document(row: DocumentRow, doc: Document) -> None:
    row.status = doc.status.value
    row.extracted_text = doc.extracted_text
    row.retry_count = doc.retry_count
    row.error_message = doc.error_message
    row.updated_at = doc.updated_at


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class SqlPipelineRepository(PipelineRepository):

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._engine = engine
        self._factory = session_factory or build_session_factory(engine)
        self._batch_locks = KeyedLocks()

    # ── Batches ────────────────────────────────────────────────────────────

    async def create_batch(self, batch: Batch, documents: Sequence[Document]) -> Batch:
        batch.document_count = len(documents)
        row = BatchRow(
            id=batch.id,
            name=batch.name,
            description=batch.description,
            created_by=batch.created_by,
            status=batch.status.value,
            document_count=batch.document_count,
            processed_count=0,
            failed_count=0,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
        )
        row.documents = [
            DocumentRow(
                id=d.id,
                batch_id=batch.id,
                file_name=d.file_name,
                content_type=d.content_type,
                storage_path=d.storage_path,
                size_bytes=d.size_bytes,
                status=d.status.value,
                retry_count=d.retry_count,
                created_at=d.created_at,
                updated_at=d.updated_at,
            )
            for d in documents
        ]
        try:
            async with transaction(self._factory) as session:
                session.add(row)
        except IntegrityError as exc:
            raise DuplicateKeyError(f"Batch {batch.id} already exists.") from exc
        return batch

    async def get_batch(self, batch_id: str) -> Batch:
        async with self._factory() as session:
            row = await session.get(BatchRow, batch_id)
            if row is None:
                raise NotFoundError("Batch", batch_id)
            return _batch(row)

    async def list_batches(self, *, limit: int = 20, offset: int = 0) -> tuple[list[Batch], int]:
        async with self._factory() as session:
            total = (await session.execute(select(func.count()).select_from(BatchRow))).scalar_one()
            rows = (
                await session.execute(
                    select(BatchRow)
                    .order_by(BatchRow.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()
            return [_batch(r) for r in rows], total

    async def list_batches_by_status(self, statuses: Sequence[BatchStatus]) -> list[Batch]:
        async with self._factory() as session:
            rows = (
                await session.execute(
                    select(BatchRow)
                    .where(BatchRow.status.in_([s.value for s in statuses]))
                    .order_by(BatchRow.created_at)
                )
            ).scalars().all()
            return [_batch(r) for r in rows]

    async def delete_batch(self, batch_id: str) -> None:
        async with self._batch_locks(batch_id):
            async with transaction(self._factory) as session:
                if await session.get(BatchRow, batch_id) is None:
                    raise NotFoundError("Batch", batch_id)
                # explicit deletes: SQLite does not enforce ON DELETE CASCADE by default
                owned_docs = select(DocumentRow.id).where(DocumentRow.batch_id == batch_id)
                await session.execute(delete(InvoiceRow).where(InvoiceRow.document_id.in_(owned_docs)))
                await session.execute(delete(AnalysisRow).where(AnalysisRow.batch_id == batch_id))
                await session.execute(delete(DocumentRow).where(DocumentRow.batch_id == batch_id))
                await session.execute(delete(BatchRow).where(BatchRow.id == batch_id))

    @asynccontextmanager
    async def batch_for_update(self, batch_id: str) -> AsyncIterator[BatchAggregate]:
        async with self._batch_locks(batch_id):
            try:
                async with transaction(self._factory) as session:
                    row = (
                        await session.execute(
                            select(BatchRow).where(BatchRow.id == batch_id).with_for_update()
                        )
                    ).scalar_one_or_none()
                    if row is None:
                        raise NotFoundError("Batch", batch_id)
                    doc_rows = (
                        await session.execute(
                            select(DocumentRow)
                            .where(DocumentRow.batch_id == batch_id)
                            .order_by(DocumentRow.created_at)
                            .with_for_update()
                        )
                    ).scalars().all()

                    aggregate = BatchAggregate(
                        batch=_batch(row),
                        documents=[_document(d) for d in doc_rows],
                    )
                    yield aggregate

                    _copy_batch(row, aggregate.batch)
                    by_id = {d.id: d for d in aggregate.documents}
                    for doc_row in doc_rows:
                        _copy_document(doc_row, by_id[doc_row.id])
                    if aggregate.pending_analysis is not None:
                        a = aggregate.pending_analysis
                        session.add(AnalysisRow(
                            id=a.id,
                            batch_id=a.batch_id,
                            summary=a.summary,
                            recommendations=list(a.recommendations),
                            analysis_metadata=dict(a.metadata),
                            created_at=a.created_at,
                        ))
                    await session.flush()
            except IntegrityError as exc:
                logger.warning("Repository | aggregate write rejected batch=%s: %s", batch_id, exc.orig)
                raise DuplicateKeyError(f"Batch {batch_id} already has an analysis.") from exc

    # ── Documents ──────────────────────────────────────────────────────────

    async def get_document(self, document_id: str) -> Document:
        async with self._factory() as session:
            row = await session.get(DocumentRow, document_id)
            if row is None:
                raise NotFoundError("Document", document_id)
            return _document(row)

    async def list_documents(self, batch_id: str) -> list[Document]:
        async with self._factory() as session:
            if await session.get(BatchRow, batch_id) is None:
                raise NotFoundError("Batch", batch_id)
            rows = (
                await session.execute(
                    select(DocumentRow)
                    .where(DocumentRow.batch_id == batch_id)
                    .order_by(DocumentRow.created_at)
                )
            ).scalars().all()
            return [_document(r) for r in rows]

    async def update_document(self, document: Document) -> Document:
        document.updated_at = utcnow()
        async with self._batch_locks(document.batch_id):
            async with transaction(self._factory) as session:
                row = (
                    await session.execute(
                        select(DocumentRow)
                        .where(DocumentRow.id == document.id)
                        .with_for_update()
                    )
                ).scalar_one_or_none()
                if row is None:
                    raise NotFoundError("Document", document.id)
                _copy_document(row, document)
        return document

    # ── Invoices ───────────────────────────────────────────────────────────

    async def save_invoice(self, invoice: Invoice) -> Invoice:
        row = InvoiceRow(
            id=invoice.id,
            document_id=invoice.document_id,
            vendor_id=invoice.vendor_id,
            invoice_number=invoice.invoice_number,
            invoice_date=invoice.invoice_date,
            due_date=invoice.due_date,
            amount=invoice.amount,
            tax_amount=invoice.tax_amount,
            currency=invoice.currency,
            status=invoice.status.value,
            notes=invoice.notes,
            line_items=[li.to_dict() for li in invoice.line_items],
            created_at=invoice.created_at,
            updated_at=invoice.updated_at,
        )
        try:
            async with transaction(self._factory) as session:
                session.add(row)
        except IntegrityError as exc:
            raise DuplicateKeyError(
                f"Document {invoice.document_id} already has an invoice."
            ) from exc
        return invoice

    async def get_invoice_for_document(self, document_id: str) -> Invoice | None:
        async with self._factory() as session:
            row = (
                await session.execute(
                    select(InvoiceRow).where(InvoiceRow.document_id == document_id)
                )
            ).scalar_one_or_none()
            return _invoice(row) if row else None

    async def list_invoices(self, batch_id: str) -> list[Invoice]:
        async with self._factory() as session:
            rows = (
                await session.execute(
                    select(InvoiceRow)
                    .join(DocumentRow, DocumentRow.id == InvoiceRow.document_id)
                    .where(DocumentRow.batch_id == batch_id)
                    .order_by(DocumentRow.created_at)
                )
            ).scalars().all()
            return [_invoice(r) for r in rows]

    # ── Vendors ────────────────────────────────────────────────────────────

    async def find_vendor(self, normalized_name: str) -> Vendor | None:
        async with self._factory() as session:
            row = (
                await session.execute(
                    select(VendorRow).where(VendorRow.normalized_name == normalized_name)
                )
            ).scalar_one_or_none()
            return _vendor(row) if row else None

    async def insert_vendor(self, vendor: Vendor) -> Vendor:
        row = VendorRow(
            id=vendor.id,
            name=vendor.name,
            normalized_name=vendor.normalized_name,
            status=vendor.status.value,
            invoice_count=vendor.invoice_count,
            email=vendor.email,
            phone=vendor.phone,
            address=vendor.address,
            tax_id=vendor.tax_id,
            created_at=vendor.created_at,
            updated_at=vendor.updated_at,
        )
        try:
            async with transaction(self._factory) as session:
                session.add(row)
        except IntegrityError as exc:
            raise DuplicateKeyError(f"Vendor '{vendor.normalized_name}' already exists.") from exc
        return vendor

    async def increment_vendor_invoices(self, vendor_id: str) -> Vendor:
        async with transaction(self._factory) as session:
            result = await session.execute(
                update(VendorRow)
                .where(VendorRow.id == vendor_id)
                .values(invoice_count=VendorRow.invoice_count + 1, updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise NotFoundError("Vendor", vendor_id)
            row = (
                await session.execute(
                    select(VendorRow)
                    .where(VendorRow.id == vendor_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            return _vendor(row)

    async def get_vendor(self, vendor_id: str) -> Vendor:
        async with self._factory() as session:
            row = await session.get(VendorRow, vendor_id)
            if row is None:
                raise NotFoundError("Vendor", vendor_id)
            return _vendor(row)

    # ── Analyses ───────────────────────────────────────────────────────────

    async def get_analysis(self, batch_id: str) -> Analysis | None:
        async with self._factory() as session:
            row = (
                await session.execute(
                    select(AnalysisRow).where(AnalysisRow.batch_id == batch_id)
                )
            ).scalar_one_or_none()
            return _analysis(row) if row else None

    async def stage_analysis(self, aggregate: BatchAggregate, analysis: Analysis) -> None:
        if aggregate.pending_analysis is not None or await self.get_analysis(aggregate.batch.id):
            raise DuplicateKeyError(f"Batch {aggregate.batch.id} already has an analysis.")
        aggregate.pending_analysis = analysis

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._engine.dispose()

    async def health(self) -> dict:
        return await check_db_health(self._engine)
