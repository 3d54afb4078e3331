"""
Process-local repository.

Every read returns a deep copy and every write stores one, so callers can
never mutate stored state behind the repository's back (the same contract
the SQL implementation gives through fresh ORM→domain conversions).
"""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

from invoiceflow.core.errors import DuplicateKeyError, NotFoundError
from invoiceflow.domain.models import (
    Analysis,
    Batch,
    BatchAggregate,
    Document,
    Invoice,
    Vendor,
    utcnow,
)
from invoiceflow.domain.status import BatchStatus
from invoiceflow.repositories.base import PipelineRepository
from invoiceflow.repositories.locks import KeyedLocks


class InMemoryPipelineRepository(PipelineRepository):

    def __init__(self) -> None:
        self._batches:   dict[str, Batch] = {}
        self._documents: dict[str, Document] = {}
        self._batch_docs: dict[str, list[str]] = {}
        self._invoices:  dict[str, Invoice] = {}          # keyed by document_id
        self._vendors:   dict[str, Vendor] = {}           # keyed by vendor id
        self._vendor_keys: dict[str, str] = {}            # normalized_name → id
        self._analyses:  dict[str, Analysis] = {}         # keyed by batch_id

        self._batch_locks = KeyedLocks()
        # guards short single-record writes (documents, vendors, invoices)
        self._write_lock = asyncio.Lock()

    # ── Batches ────────────────────────────────────────────────────────────

    async def create_batch(self, batch: Batch, documents: Sequence[Document]) -> Batch:
        async with self._write_lock:
            if batch.id in self._batches:
                raise DuplicateKeyError(f"Batch {batch.id} already exists.")
            batch.document_count = len(documents)
            self._batches[batch.id] = copy.deepcopy(batch)
            self._batch_docs[batch.id] = [d.id for d in documents]
            for doc in documents:
                self._documents[doc.id] = copy.deepcopy(doc)
        return copy.deepcopy(batch)

    async def get_batch(self, batch_id: str) -> Batch:
        try:
            return copy.deepcopy(self._batches[batch_id])
        except KeyError:
            raise NotFoundError("Batch", batch_id) from None

    async def list_batches(self, *, limit: int = 20, offset: int = 0) -> tuple[list[Batch], int]:
        ordered = sorted(self._batches.values(), key=lambda b: b.created_at, reverse=True)
        page = ordered[offset: offset + limit]
        return [copy.deepcopy(b) for b in page], len(ordered)

    async def list_batches_by_status(self, statuses: Sequence[BatchStatus]) -> list[Batch]:
        wanted = set(statuses)
        matching = [b for b in self._batches.values() if b.status in wanted]
        return [copy.deepcopy(b) for b in sorted(matching, key=lambda b: b.created_at)]

    async def delete_batch(self, batch_id: str) -> None:
        async with self._batch_locks(batch_id):
            if batch_id not in self._batches:
                raise NotFoundError("Batch", batch_id)
            for doc_id in self._batch_docs.pop(batch_id, []):
                self._documents.pop(doc_id, None)
                self._invoices.pop(doc_id, None)
            self._analyses.pop(batch_id, None)
            del self._batches[batch_id]

    @asynccontextmanager
    async def batch_for_update(self, batch_id: str) -> AsyncIterator[BatchAggregate]:
        if batch_id not in self._batches:
            raise NotFoundError("Batch", batch_id)
        async with self._batch_locks(batch_id):
            aggregate = BatchAggregate(
                batch=copy.deepcopy(self._batches[batch_id]),
                documents=[
                    copy.deepcopy(self._documents[d])
                    for d in self._batch_docs.get(batch_id, [])
                ],
            )
            yield aggregate
            if aggregate.pending_analysis is not None:
                if batch_id in self._analyses:
                    raise DuplicateKeyError(f"Batch {batch_id} already has an analysis.")
                self._analyses[batch_id] = aggregate.pending_analysis
            self._batches[batch_id] = copy.deepcopy(aggregate.batch)
            for doc in aggregate.documents:
                self._documents[doc.id] = copy.deepcopy(doc)

    # ── Documents ──────────────────────────────────────────────────────────

    async def get_document(self, document_id: str) -> Document:
        try:
            return copy.deepcopy(self._documents[document_id])
        except KeyError:
            raise NotFoundError("Document", document_id) from None

    async def list_documents(self, batch_id: str) -> list[Document]:
        if batch_id not in self._batches:
            raise NotFoundError("Batch", batch_id)
        return [copy.deepcopy(self._documents[d]) for d in self._batch_docs.get(batch_id, [])]

    async def update_document(self, document: Document) -> Document:
        # Serialized with the owning batch's aggregate writes, so a document
        # update can never be overwritten by a stale aggregate copy.
        async with self._batch_locks(document.batch_id):
            if document.id not in self._documents:
                raise NotFoundError("Document", document.id)
            document.updated_at = utcnow()
            self._documents[document.id] = copy.deepcopy(document)
        return copy.deepcopy(document)

    # ── Invoices ───────────────────────────────────────────────────────────

    async def save_invoice(self, invoice: Invoice) -> Invoice:
        async with self._write_lock:
            if invoice.document_id in self._invoices:
                raise DuplicateKeyError(
                    f"Document {invoice.document_id} already has an invoice."
                )
            self._invoices[invoice.document_id] = copy.deepcopy(invoice)
        return copy.deepcopy(invoice)

    async def get_invoice_for_document(self, document_id: str) -> Invoice | None:
        inv = self._invoices.get(document_id)
        return copy.deepcopy(inv) if inv else None

    async def list_invoices(self, batch_id: str) -> list[Invoice]:
        return [
            copy.deepcopy(self._invoices[d])
            for d in self._batch_docs.get(batch_id, [])
            if d in self._invoices
        ]

    # ── Vendors ────────────────────────────────────────────────────────────

    async def find_vendor(self, normalized_name: str) -> Vendor | None:
        vendor_id = self._vendor_keys.get(normalized_name)
        return copy.deepcopy(self._vendors[vendor_id]) if vendor_id else None

    async def insert_vendor(self, vendor: Vendor) -> Vendor:
        async with self._write_lock:
            if vendor.normalized_name in self._vendor_keys:
                raise DuplicateKeyError(f"Vendor '{vendor.normalized_name}' already exists.")
            self._vendors[vendor.id] = copy.deepcopy(vendor)
            self._vendor_keys[vendor.normalized_name] = vendor.id
        return copy.deepcopy(vendor)

    async def increment_vendor_invoices(self, vendor_id: str) -> Vendor:
        async with self._write_lock:
            vendor = self._vendors.get(vendor_id)
            if vendor is None:
                raise NotFoundError("Vendor", vendor_id)
            vendor.invoice_count += 1
            vendor.updated_at = utcnow()
            return copy.deepcopy(vendor)

    async def get_vendor(self, vendor_id: str) -> Vendor:
        try:
            return copy.deepcopy(self._vendors[vendor_id])
        except KeyError:
            raise NotFoundError("Vendor", vendor_id) from None

    # ── Analyses ───────────────────────────────────────────────────────────

    async def get_analysis(self, batch_id: str) -> Analysis | None:
        return self._analyses.get(batch_id)

    async def stage_analysis(self, aggregate: BatchAggregate, analysis: Analysis) -> None:
        if aggregate.batch.id in self._analyses or aggregate.pending_analysis is not None:
            raise DuplicateKeyError(f"Batch {aggregate.batch.id} already has an analysis.")
        aggregate.pending_analysis = analysis
