"""
Batch Ingestion Service

Orchestrates POST /api/v1/batches:
  1. Validate batch name and file count
  2. Read each file with a hard size ceiling
  3. Detect type from magic bytes, then check the extension agrees
  4. Check worker-queue capacity before anything is written
  5. Store every file under <prefix>/<batch_id>/<document_id><ext>
  6. Persist batch + documents (CREATED) and queue the documents
  7. Return the 202 response

Security invariants enforced here:
  - created_by is ALWAYS taken from the verified user, never the request body.
  - Storage keys are built server-side; the client filename is sanitized
    and only ever stored as metadata.
  - Type detection uses file magic bytes, not the client's Content-Type header.

Nothing half-written survives a failure: files already stored are deleted
if a later file cannot be stored or the queue rejects the batch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from fastapi import UploadFile

from invoiceflow.auth.users import User
from invoiceflow.core.config import Settings
from invoiceflow.core.errors import QueueFullError, StorageError, ValidationError
from invoiceflow.domain.models import Batch, Document
from invoiceflow.schemas.batches import (
    ALLOWED_CONTENT_TYPES,
    ALLOWED_EXTENSIONS,
    BatchUploadResponse,
)
from invoiceflow.services.pipeline import BatchPipeline

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type validation helpers
# ---------------------------------------------------------------------------

# Checked against the first 8 bytes of the file content
_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":              "application/pdf",
    b"\xff\xd8\xff":      "image/jpeg",
    b"\x89PNG\r\n\x1a\n": "image/png",
    b"II*\x00":           "image/tiff",   # little-endian
    b"MM\x00*":           "image/tiff",   # big-endian
}

_EXTENSION_TYPES: dict[str, str] = {
    ".pdf":  "application/pdf",
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png":  "image/png",
    ".tif":  "image/tiff",
    ".tiff": "image/tiff",
}


def detect_content_type(file_head: bytes) -> str:
    """Content type from magic bytes; never trusts the client header."""
    for magic, mime in _MAGIC_BYTES.items():
        if file_head.startswith(magic):
            return mime
    return "application/octet-stream"


def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def sanitize_filename(filename: str) -> str:
    """Basename only, unsafe characters replaced, capped at 200 chars."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200] or "upload"


@dataclass
class _Upload:
    file_name:    str
    extension:    str
    content_type: str
    data:         bytes


# ---------------------------------------------------------------------------
# Ingestion orchestrator
# ---------------------------------------------------------------------------

class IngestionService:
    """One instance per request; all dependencies injected."""

    def __init__(self, pipeline: BatchPipeline, cfg: Settings) -> None:
        self._pipeline = pipeline
        self._storage = pipeline.storage
        self._max_file_size = cfg.max_file_size_bytes
        self._max_files = cfg.max_batch_files

    async def ingest(
        self,
        files: Sequence[UploadFile],
        name: str,
        description: str | None,
        user: User,
    ) -> BatchUploadResponse:
        name = (name or "").strip()
        if not name or len(name) > 255:
            raise ValidationError(
                "Batch name must be 1-255 characters.",
                field="name", error_code="INVALID_BATCH_NAME",
            )
        if not files:
            raise ValidationError(
                "At least one file is required.",
                field="files", error_code="MISSING_FILE",
            )
        if len(files) > self._max_files:
            raise ValidationError(
                f"A batch may contain at most {self._max_files} files; received {len(files)}.",
                field="files", error_code="TOO_MANY_FILES",
            )

        uploads = [await self._read_upload(f) for f in files]

        # fail fast before writing anything to storage
        if len(uploads) > self._pipeline.pool.remaining_capacity:
            raise QueueFullError(
                f"Processing queue cannot take {len(uploads)} more document(s); retry later."
            )

        batch = Batch(name=name, description=(description or "").strip() or None, created_by=user.username)
        logger.info("Ingest start | batch=%s user=%s files=%d bytes=%d",
                    batch.id, user.username, len(uploads), sum(len(u.data) for u in uploads))

        documents = await self._store_all(batch, uploads)
        try:
            batch = await self._pipeline.submit_batch(batch, documents)
        except QueueFullError:
            logger.warning("Ingest rejected | batch=%s queue full", batch.id)
            await self._delete_quietly([d.storage_path for d in documents])
            raise

        return BatchUploadResponse.from_domain(batch, documents)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _read_upload(self, file: UploadFile) -> _Upload:
        if file is None or not file.filename:
            raise ValidationError("Every file part needs a filename.", field="files", error_code="MISSING_FILE")

        data = await file.read()
        if not data:
            raise ValidationError(f"'{file.filename}' is empty.", field="files", error_code="MISSING_FILE")
        if len(data) > self._max_file_size:
            raise ValidationError(
                f"'{file.filename}' is {len(data):,} bytes; limit is {self._max_file_size:,} bytes.",
                field="files", error_code="FILE_TOO_LARGE",
            )

        detected = detect_content_type(data[:8])
        if detected not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"'{file.filename}' is not a PDF, JPEG, PNG or TIFF file.",
                field="files", error_code="UNSUPPORTED_FILE_TYPE",
            )

        ext = _get_extension(file.filename)
        if ext not in ALLOWED_EXTENSIONS or _EXTENSION_TYPES[ext] != detected:
            raise ValidationError(
                f"'{file.filename}' has extension '{ext}' but its content is {detected}.",
                field="files", error_code="UNSUPPORTED_FILE_TYPE",
            )

        return _Upload(sanitize_filename(file.filename), ext, detected, data)

    async def _store_all(self, batch: Batch, uploads: list[_Upload]) -> list[Document]:
        documents: list[Document] = []
        try:
            for up in uploads:
                doc = Document(
                    batch_id=batch.id,
                    file_name=up.file_name,
                    content_type=up.content_type,
                    storage_path="",
                    size_bytes=len(up.data),
                )
                doc.storage_path = await self._storage.store(
                    up.data, f"{batch.id}/{doc.id}{up.extension}", up.content_type,
                )
                documents.append(doc)
        except StorageError:
            logger.exception("Ingest storage failure | batch=%s stored=%d/%d",
                             batch.id, len(documents), len(uploads))
            await self._delete_quietly([d.storage_path for d in documents])
            raise
        return documents

    async def _delete_quietly(self, paths: list[str]) -> None:
        for path in paths:
            try:
                await self._storage.delete(path)
            except StorageError as exc:
                logger.warning("Ingest cleanup | could not delete %s: %s", path, exc.message)
