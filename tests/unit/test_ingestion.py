"""
Unit Tests — IngestionService
══════════════════════════════
Tests for every branch of batch ingestion.

All tests:
  • Use the in-memory repository and FakeStorage from conftest.py
  • Build the pipeline without starting its workers, so queued documents
    stay queued and nothing is OCR'd

Coverage targets:
  ✅ PDF + PNG      → BatchUploadResponse, files stored under <batch>/<document><ext>
  ✅ Blank name     → INVALID_BATCH_NAME
  ✅ No files       → MISSING_FILE
  ✅ Too many files → TOO_MANY_FILES
  ✅ Empty file     → MISSING_FILE
  ✅ Oversized      → FILE_TOO_LARGE
  ✅ Bad magic      → UNSUPPORTED_FILE_TYPE
  ✅ Ext mismatch   → UNSUPPORTED_FILE_TYPE
  ✅ Filename sanitization → path traversal stripped
  ✅ Storage failure mid-batch → earlier files deleted, no batch row
  ✅ Queue without room → QueueFullError before anything is stored
"""

from __future__ import annotations

import io

import pytest
from fastapi import UploadFile

from invoiceflow.auth.users import User
from invoiceflow.core.errors import QueueFullError, StorageError, ValidationError
from invoiceflow.domain.status import BatchStatus
from invoiceflow.services.ingestion import (
    IngestionService,
    detect_content_type,
    sanitize_filename,
)
from tests.conftest import FakeStorage

PDF = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32

ALICE = User(username="alice", role="member")


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_upload_file(filename: str, content: bytes) -> UploadFile:
    """Build a FastAPI UploadFile backed by an in-memory BytesIO buffer."""
    return UploadFile(filename=filename, file=io.BytesIO(content))


def _service(pipeline, test_settings) -> IngestionService:
    return IngestionService(pipeline, test_settings)


@pytest.mark.unit
@pytest.mark.ingestion
class TestHappyPath:

    async def test_pdf_and_png_batch(self, make_pipeline, test_settings, repository, storage):
        service = _service(make_pipeline(), test_settings)

        resp = await service.ingest(
            [_make_upload_file("march.pdf", PDF), _make_upload_file("receipt.png", PNG)],
            "  March invoices ",
            "Q1 close",
            ALICE,
        )

        assert resp.status == "CREATED"
        assert resp.name == "March invoices"
        assert resp.document_count == 2
        assert len(resp.document_ids) == 2

        batch = await repository.get_batch(resp.batch_id)
        assert batch.created_by == "alice"
        assert batch.description == "Q1 close"
        assert batch.status == BatchStatus.CREATED

        docs = await repository.list_documents(resp.batch_id)
        assert {d.content_type for d in docs} == {"application/pdf", "image/png"}
        for doc in docs:
            ext = ".pdf" if doc.content_type == "application/pdf" else ".png"
            assert doc.storage_path == f"mem/{resp.batch_id}/{doc.id}{ext}"
            assert await storage.exists(doc.storage_path)

    async def test_path_traversal_is_stripped(self, make_pipeline, test_settings, repository):
        service = _service(make_pipeline(), test_settings)

        resp = await service.ingest([_make_upload_file("../../etc/inv oice.pdf", PDF)], "b", None, ALICE)

        docs = await repository.list_documents(resp.batch_id)
        assert docs[0].file_name == "inv_oice.pdf"

    def test_helpers(self):
        assert detect_content_type(PNG[:8]) == "image/png"
        assert detect_content_type(b"II*\x00abcd") == "image/tiff"
        assert detect_content_type(b"GIF89a") == "application/octet-stream"
        assert sanitize_filename("C:\\scans\\a.pdf") == "a.pdf"
        assert sanitize_filename("") == "upload"


@pytest.mark.unit
@pytest.mark.ingestion
class TestValidation:

    @pytest.mark.parametrize("files,name,code", [
        ([("a.pdf", PDF)], "   ",  "INVALID_BATCH_NAME"),
        ([],               "b",    "MISSING_FILE"),
        ([("a.pdf", b"")], "b",    "MISSING_FILE"),
        ([("a.gif", b"GIF89a....")], "b", "UNSUPPORTED_FILE_TYPE"),
        ([("a.pdf", PNG)], "b",    "UNSUPPORTED_FILE_TYPE"),
        ([("a.txt", PDF)], "b",    "UNSUPPORTED_FILE_TYPE"),
    ])
    async def test_rejections(self, make_pipeline, test_settings, storage, files, name, code):
        service = _service(make_pipeline(), test_settings)

        with pytest.raises(ValidationError) as exc_info:
            await service.ingest([_make_upload_file(n, c) for n, c in files], name, None, ALICE)

        assert exc_info.value.error_code == code
        assert storage.stores == 0

    async def test_too_many_files(self, make_pipeline, test_settings):
        service = _service(make_pipeline(), test_settings)
        files = [_make_upload_file(f"{i}.pdf", PDF) for i in range(test_settings.max_batch_files + 1)]

        with pytest.raises(ValidationError) as exc_info:
            await service.ingest(files, "b", None, ALICE)
        assert exc_info.value.error_code == "TOO_MANY_FILES"

    async def test_oversized_file(self, make_pipeline, test_settings):
        service = _service(make_pipeline(), test_settings)
        big = PDF + b"x" * test_settings.max_file_size_bytes

        with pytest.raises(ValidationError) as exc_info:
            await service.ingest([_make_upload_file("big.pdf", big)], "b", None, ALICE)
        assert exc_info.value.error_code == "FILE_TOO_LARGE"


@pytest.mark.unit
@pytest.mark.ingestion
class TestFailureCleanup:

    async def test_storage_failure_deletes_stored_files(self, make_pipeline, test_settings, repository):
        storage = FakeStorage(fail_store_at=2)
        service = _service(make_pipeline(storage=storage), test_settings)

        with pytest.raises(StorageError):
            await service.ingest(
                [_make_upload_file("a.pdf", PDF), _make_upload_file("b.pdf", PDF)], "b", None, ALICE,
            )

        assert storage.objects == {}
        assert len(storage.deleted) == 1
        _, total = await repository.list_batches()
        assert total == 0

    async def test_queue_without_room_rejects_before_storing(
        self, make_pipeline, test_settings, repository, storage,
    ):
        service = _service(make_pipeline(queue_capacity=1), test_settings)

        with pytest.raises(QueueFullError):
            await service.ingest(
                [_make_upload_file("a.pdf", PDF), _make_upload_file("b.pdf", PDF)], "b", None, ALICE,
            )

        assert storage.stores == 0
        _, total = await repository.list_batches()
        assert total == 0
