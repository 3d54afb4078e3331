"""
Persistence contract for the batch pipeline.

Two implementations ship:
  InMemoryPipelineRepository  (repositories/memory.py)  per-batch asyncio.Lock
  SqlPipelineRepository       (repositories/sql.py)     SELECT ... FOR UPDATE

The single synchronization point the pipeline needs is `batch_for_update()`:
an async context manager yielding the batch and all of its documents as one
aggregate. Changes made to the aggregate inside the block are written back
atomically when the block exits cleanly, and discarded if it raises. Two
concurrent holders for the same batch are serialized.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Sequence

from invoiceflow.domain.models import (
    Analysis,
    Batch,
    BatchAggregate,
    Document,
    Invoice,
    Vendor,
)
from invoiceflow.domain.status import BatchStatus


class PipelineRepository(ABC):

    # ── Batches ────────────────────────────────────────────────────────────

    @abstractmethod
    async def create_batch(self, batch: Batch, documents: Sequence[Document]) -> Batch:
        """Persist a batch together with its documents in one write."""

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Batch:
        """Raises NotFoundError."""

    @abstractmethod
    async def list_batches(self, *, limit: int = 20, offset: int = 0) -> tuple[list[Batch], int]:
        """Newest first; returns (page, total)."""

    @abstractmethod
    async def list_batches_by_status(self, statuses: Sequence[BatchStatus]) -> list[Batch]:
        """Every batch currently in one of `statuses`, oldest first."""

    @abstractmethod
    async def delete_batch(self, batch_id: str) -> None:
        """Delete a batch and, with it, every document it owns."""

    @abstractmethod
    def batch_for_update(self, batch_id: str) -> AbstractAsyncContextManager[BatchAggregate]:
        """Exclusive read-modify-write over one batch aggregate."""

    # ── Documents ──────────────────────────────────────────────────────────

    @abstractmethod
    async def get_document(self, document_id: str) -> Document:
        """Raises NotFoundError."""

    @abstractmethod
    async def list_documents(self, batch_id: str) -> list[Document]: ...

    @abstractmethod
    async def update_document(self, document: Document) -> Document: ...

    # ── Invoices ───────────────────────────────────────────────────────────

    @abstractmethod
    async def save_invoice(self, invoice: Invoice) -> Invoice:
        """Insert; DuplicateKeyError if the document already has an invoice."""

    @abstractmethod
    async def get_invoice_for_document(self, document_id: str) -> Invoice | None: ...

    @abstractmethod
    async def list_invoices(self, batch_id: str) -> list[Invoice]: ...

    # ── Vendors ────────────────────────────────────────────────────────────

    @abstractmethod
    async def find_vendor(self, normalized_name: str) -> Vendor | None: ...

    @abstractmethod
    async def insert_vendor(self, vendor: Vendor) -> Vendor:
        """DuplicateKeyError if the normalized name is already taken."""

    @abstractmethod
    async def increment_vendor_invoices(self, vendor_id: str) -> Vendor:
        """Atomic invoice_count += 1; returns the updated vendor."""

    @abstractmethod
    async def get_vendor(self, vendor_id: str) -> Vendor: ...

    # ── Analyses ───────────────────────────────────────────────────────────

    @abstractmethod
    async def get_analysis(self, batch_id: str) -> Analysis | None: ...

    # Analyses are written through the aggregate so that the record and the
    # batch's COMPLETED status land together.
    @abstractmethod
    async def stage_analysis(self, aggregate: BatchAggregate, analysis: Analysis) -> None:
        """
        Attach `analysis` to an aggregate held by batch_for_update(); it is
        written with the aggregate. DuplicateKeyError if one already exists.
        """

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Release connections; no-op by default."""

    async def health(self) -> dict:
        return {"status": "ok"}
