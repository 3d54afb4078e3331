"""
Batch API Router

  POST /api/v1/batches                       upload (member)      202
  GET  /api/v1/batches                       paginated list       (viewer)
  GET  /api/v1/batches/{batch_id}            status snapshot      (viewer)
  GET  /api/v1/batches/{batch_id}/documents                       (viewer)
  GET  /api/v1/batches/{batch_id}/invoices                        (viewer)
  GET  /api/v1/batches/{batch_id}/analysis   404 until analysed   (viewer)
  POST /api/v1/batches/{batch_id}/cancel     409 when terminal    (member)
  GET  /api/v1/documents/{document_id}                            (viewer)

Pipeline errors are not caught here: the handlers registered in main.py turn
them into the ErrorResponse envelope with the right status code.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import JSONResponse

from invoiceflow.auth.dependencies import AppSettings, Pipeline
from invoiceflow.auth.rbac import require_role
from invoiceflow.auth.users import User
from invoiceflow.core.errors import NotFoundError
from invoiceflow.schemas.batches import (
    AnalysisResponse,
    BatchListResponse,
    BatchStatusResponse,
    BatchUploadResponse,
    DocumentResponse,
    ErrorResponse,
    InvoiceResponse,
)
from invoiceflow.services.ingestion import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Batches"])

_READ_ERRORS = {
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# POST /batches
# ---------------------------------------------------------------------------

@router.post(
    "/batches",
    response_model=BatchUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a batch of invoice documents",
    description=(
        "Accepts PDF, JPEG, PNG or TIFF files (max 50 MB each, 100 per batch). "
        "Returns 202 immediately; poll GET /batches/{id} or subscribe to live updates."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Invalid file type, name or file count"},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse, "description": "Requires member or above"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        500: {"model": ErrorResponse, "description": "Storage failure"},
        503: {"model": ErrorResponse, "description": "Processing queue is full"},
    },
)
async def upload_batch(
    pipeline: Pipeline,
    cfg:      AppSettings,
    files:    list[UploadFile] = File(..., description="Invoice files"),
    name:     str = Form(..., max_length=255, description="Display name for the batch"),
    description: Optional[str] = Form(None, max_length=2000),
    user:     User = Depends(require_role("member")),
) -> JSONResponse:
    service = IngestionService(pipeline, cfg)
    result = await service.ingest(files, name, description, user)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json"),
        headers={
            "X-Batch-ID": result.batch_id,
            "Location":   f"/api/v1/batches/{result.batch_id}",
        },
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@router.get("/batches", response_model=BatchListResponse, summary="List batches, newest first")
async def list_batches(
    pipeline: Pipeline,
    page:  int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user:  User = Depends(require_role("viewer")),
) -> BatchListResponse:
    batches, total = await pipeline.repository.list_batches(limit=limit, offset=(page - 1) * limit)
    return BatchListResponse(
        page=page,
        limit=limit,
        total=total,
        batches=[BatchStatusResponse.from_domain(b) for b in batches],
    )


@router.get(
    "/batches/{batch_id}",
    response_model=BatchStatusResponse,
    summary="Batch status with counts and progress",
    responses=_READ_ERRORS,
)
async def get_batch(
    batch_id: str,
    pipeline: Pipeline,
    user: User = Depends(require_role("viewer")),
) -> BatchStatusResponse:
    return BatchStatusResponse.from_domain(await pipeline.repository.get_batch(batch_id))


@router.get(
    "/batches/{batch_id}/documents",
    response_model=list[DocumentResponse],
    responses=_READ_ERRORS,
)
async def list_batch_documents(
    batch_id: str,
    pipeline: Pipeline,
    user: User = Depends(require_role("viewer")),
) -> list[DocumentResponse]:
    docs = await pipeline.repository.list_documents(batch_id)
    return [DocumentResponse.from_domain(d) for d in docs]


@router.get(
    "/batches/{batch_id}/invoices",
    response_model=list[InvoiceResponse],
    responses=_READ_ERRORS,
)
async def list_batch_invoices(
    batch_id: str,
    pipeline: Pipeline,
    user: User = Depends(require_role("viewer")),
) -> list[InvoiceResponse]:
    await pipeline.repository.get_batch(batch_id)
    invoices = await pipeline.repository.list_invoices(batch_id)
    return [InvoiceResponse.from_domain(i) for i in invoices]


@router.get(
    "/batches/{batch_id}/analysis",
    response_model=AnalysisResponse,
    summary="AI summary of the batch",
    responses=_READ_ERRORS,
)
async def get_batch_analysis(
    batch_id: str,
    pipeline: Pipeline,
    user: User = Depends(require_role("viewer")),
) -> AnalysisResponse:
    await pipeline.repository.get_batch(batch_id)
    analysis = await pipeline.repository.get_analysis(batch_id)
    if analysis is None:
        raise NotFoundError("Analysis", batch_id)
    return AnalysisResponse.from_domain(analysis)


@router.get(
    "/documents/{document_id}",
    response_model=DocumentResponse,
    responses=_READ_ERRORS,
)
async def get_document(
    document_id: str,
    pipeline: Pipeline,
    user: User = Depends(require_role("viewer")),
) -> DocumentResponse:
    return DocumentResponse.from_domain(await pipeline.repository.get_document(document_id))


# ---------------------------------------------------------------------------
# POST /batches/{batch_id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/batches/{batch_id}/cancel",
    response_model=BatchStatusResponse,
    summary="Cancel a batch that has not finished",
    responses={**_READ_ERRORS, 409: {"model": ErrorResponse, "description": "Batch already terminal"}},
)
async def cancel_batch(
    batch_id: str,
    pipeline: Pipeline,
    user: User = Depends(require_role("member")),
) -> BatchStatusResponse:
    batch = await pipeline.cancel_batch(batch_id, reason=f"Cancelled by {user.username}")
    logger.info("Batch cancelled | batch=%s user=%s", batch_id, user.username)
    return BatchStatusResponse.from_domain(batch)
