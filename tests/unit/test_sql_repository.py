"""
Unit Tests — SqlPipelineRepository on SQLite (aiosqlite)
═════════════════════════════════════════════════════════
Same contract as the in-memory repository, exercised against a real
SQLAlchemy engine backed by a temporary SQLite file.

Coverage targets:
  ✅ Batch + documents written together, listed newest first
  ✅ batch_for_update: changes persisted on clean exit, discarded on error
  ✅ Unique keys surface as DuplicateKeyError (invoice per document, vendor name, analysis per batch)
  ✅ Vendor invoice_count increment
  ✅ Invoice amounts and line items survive the round trip
  ✅ delete_batch removes documents and invoices
  ✅ list_batches_by_status; per-batch lock entries released after use
  ✅ build_engine takes URL and pool options from the Settings it is given
  ✅ A full batch runs through the pipeline on this repository
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio

from invoiceflow.core.errors import DuplicateKeyError, NotFoundError
from invoiceflow.db.session import build_engine, create_schema
from invoiceflow.domain.models import Analysis, Batch, Document, Invoice, LineItem, Vendor
from invoiceflow.domain.status import BatchStatus, DocumentStatus, InvoiceStatus
from invoiceflow.repositories.sql import SqlPipelineRepository


@pytest_asyncio.fixture
async def repository(tmp_path):
    """Overrides the in-memory repository for every test in this module."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await create_schema(engine)
    repo = SqlPipelineRepository(engine)
    yield repo
    await repo.close()


async def _batch_with_docs(repository, n: int = 2) -> tuple[Batch, list[Document]]:
    batch = Batch(name="sql", created_by="alice")
    docs = [
        Document(batch_id=batch.id, file_name=f"{i}.pdf", content_type="application/pdf",
                 storage_path=f"mem/{batch.id}/{i}.pdf", size_bytes=10)
        for i in range(n)
    ]
    await repository.create_batch(batch, docs)
    return batch, docs


@pytest.mark.unit
class TestSqlBatches:

    async def test_create_and_read(self, repository):
        batch, docs = await _batch_with_docs(repository)

        stored = await repository.get_batch(batch.id)
        assert stored.name == "sql"
        assert stored.document_count == 2
        assert stored.status == BatchStatus.CREATED
        assert {d.id for d in await repository.list_documents(batch.id)} == {d.id for d in docs}

        page, total = await repository.list_batches(limit=10)
        assert total == 1 and page[0].id == batch.id

    async def test_missing_rows(self, repository):
        with pytest.raises(NotFoundError):
            await repository.get_batch("nope")
        with pytest.raises(NotFoundError):
            await repository.get_document("nope")
        with pytest.raises(NotFoundError):
            async with repository.batch_for_update("nope"):
                pass

    async def test_aggregate_write_and_rollback(self, repository):
        batch, docs = await _batch_with_docs(repository)

        async with repository.batch_for_update(batch.id) as agg:
            agg.batch.move_to(BatchStatus.PROCESSING)
            next(d for d in agg.documents if d.id == docs[0].id).mark_failed("bad scan")

        with pytest.raises(RuntimeError):
            async with repository.batch_for_update(batch.id) as agg:
                agg.batch.move_to(BatchStatus.CANCELLED)
                raise RuntimeError("abort")

        assert (await repository.get_batch(batch.id)).status == BatchStatus.PROCESSING
        doc = await repository.get_document(docs[0].id)
        assert doc.status == DocumentStatus.FAILED
        assert doc.error_message == "bad scan"

    async def test_delete_batch_cascades(self, repository):
        batch, docs = await _batch_with_docs(repository)
        await repository.save_invoice(Invoice(document_id=docs[0].id, amount=Decimal("1.00")))

        await repository.delete_batch(batch.id)

        with pytest.raises(NotFoundError):
            await repository.get_document(docs[0].id)
        assert await repository.get_invoice_for_document(docs[0].id) is None

    async def test_list_by_status(self, repository):
        fresh, _ = await _batch_with_docs(repository, 1)
        cancelled, _ = await _batch_with_docs(repository, 1)
        async with repository.batch_for_update(cancelled.id) as agg:
            agg.batch.move_to(BatchStatus.CANCELLED)

        active = await repository.list_batches_by_status([BatchStatus.CREATED, BatchStatus.PROCESSING])

        assert [b.id for b in active] == [fresh.id]

    async def test_lock_table_only_holds_batches_in_use(self, repository):
        batch, docs = await _batch_with_docs(repository)

        async with repository.batch_for_update(batch.id) as agg:
            assert batch.id in repository._batch_locks
            agg.batch.move_to(BatchStatus.PROCESSING)
        docs[0].mark_failed("bad scan")
        await repository.update_document(docs[0])
        await repository.delete_batch(batch.id)

        assert len(repository._batch_locks) == 0


@pytest.mark.unit
class TestSqlInvoicesAndVendors:

    async def test_invoice_round_trip(self, repository):
        _, docs = await _batch_with_docs(repository, 1)
        invoice = Invoice(
            document_id=docs[0].id,
            invoice_number="INV-100",
            invoice_date=date(2024, 1, 15),
            tax_amount=Decimal("50.00"),
            line_items=[LineItem("Widget", Decimal("2"), Decimal("100.00"))],
            status=InvoiceStatus.PENDING,
        )
        await repository.save_invoice(invoice)

        stored = await repository.get_invoice_for_document(docs[0].id)
        assert stored.amount == Decimal("250.00")
        assert stored.invoice_date == date(2024, 1, 15)
        assert stored.line_items[0].amount == Decimal("200.00")
        assert stored.status == InvoiceStatus.PENDING

        with pytest.raises(DuplicateKeyError):
            await repository.save_invoice(Invoice(document_id=docs[0].id))

    async def test_vendor_unique_name_and_increment(self, repository):
        vendor = await repository.insert_vendor(Vendor(name="Acme Co", normalized_name="acme co"))

        with pytest.raises(DuplicateKeyError):
            await repository.insert_vendor(Vendor(name="ACME CO", normalized_name="acme co"))

        bumped = await repository.increment_vendor_invoices(vendor.id)
        assert bumped.invoice_count == 2
        assert (await repository.find_vendor("acme co")).id == vendor.id

    async def test_one_analysis_per_batch(self, repository):
        batch, _ = await _batch_with_docs(repository, 1)

        async with repository.batch_for_update(batch.id) as agg:
            await repository.stage_analysis(agg, Analysis(batch_id=batch.id, summary="first",
                                                          recommendations=("a",)))

        with pytest.raises(DuplicateKeyError):
            async with repository.batch_for_update(batch.id) as agg:
                await repository.stage_analysis(agg, Analysis(batch_id=batch.id, summary="second"))

        stored = await repository.get_analysis(batch.id)
        assert stored.summary == "first"
        assert stored.recommendations == ("a",)

    async def test_health(self, repository):
        assert (await repository.health())["status"] == "ok"


@pytest.mark.unit
class TestEngineOptions:

    async def test_options_come_from_the_given_settings(self, test_settings):
        cfg = test_settings.model_copy(update={
            "database_url": "postgresql+asyncpg://u:p@db.invalid:5432/invoiceflow",
            "db_pool_size": 3,
            "db_echo_sql": True,
        })

        engine = build_engine(cfg=cfg)

        assert engine.url.host == "db.invalid"
        assert engine.sync_engine.pool.size() == 3
        assert engine.sync_engine.echo is True
        await engine.dispose()


@pytest.mark.integration
class TestPipelineOnSql:

    async def test_batch_completes(self, make_pipeline, make_batch, repository):
        # one worker: SQLite serializes writers
        pipeline = make_pipeline(pool_size=1)
        await pipeline.start()
        try:
            batch, _ = await make_batch(pipeline, [b"%PDF-1", b"%PDF-2"])
            await pipeline.drain()
        finally:
            await pipeline.stop()

        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert stored.processed_count == 2
        invoices = await repository.list_invoices(batch.id)
        assert {i.invoice_number for i in invoices} == {"INV-100"}
        vendor = await repository.get_vendor(invoices[0].vendor_id)
        assert vendor.invoice_count == 2
        assert (await repository.get_analysis(batch.id)).metadata["invoice_count"] == 2
