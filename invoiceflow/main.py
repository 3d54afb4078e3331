"""
FastAPI Application — Entry Point

Invoice batch pipeline API

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication is HS256 JWT, checked against an injected user directory
  - Pipeline collaborators (repository, storage, OCR, summarizer, event log)
    are built in the lifespan and hung on app.state; create_app() accepts
    overrides so tests can wire in-memory fakes
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS: restrict to configured origins
  2. Request ID injection: X-Request-ID header on every response
  3. Gzip: compress responses > 1 KB
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from invoiceflow.api.v1.batches import router as batches_router
from invoiceflow.api.v1.live import router as live_router
from invoiceflow.auth.users import StaticUserDirectory, UserDirectory
from invoiceflow.core.config import Settings, settings
from invoiceflow.core.errors import (
    DuplicateKeyError,
    InvalidTransition,
    NotFoundError,
    PipelineError,
    ProviderError,
    QueueFullError,
    ValidationError,
)
from invoiceflow.events import EventLog, EventPublisher, build_event_log, topics_from_settings
from invoiceflow.llm.summarizer import LLMSummarizer, Summarizer
from invoiceflow.notifications.gateway import NotificationGateway
from invoiceflow.observability.tracing import TracingConfig
from invoiceflow.processing.ocr import OCRProvider, build_ocr_provider
from invoiceflow.repositories import PipelineRepository, build_repository
from invoiceflow.schemas.batches import ErrorDetail, ErrorResponse
from invoiceflow.services.pipeline import BatchPipeline
from invoiceflow.storage.s3 import S3StorageService, StorageService

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_HTTP_ERROR_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def status_for(exc: PipelineError) -> int:
    """HTTP status for a pipeline error escaping a route."""
    if isinstance(exc, ValidationError):
        if exc.error_code == "FILE_TOO_LARGE":
            return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (InvalidTransition, DuplicateKeyError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, QueueFullError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, ProviderError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())


def _error_response(request: Request, code: int, body: ErrorResponse, headers: dict | None = None) -> JSONResponse:
    request_id = _request_id(request)
    body.request_id = request_id
    return JSONResponse(
        status_code=code,
        content=body.model_dump(mode="json"),
        headers={**(headers or {}), "X-Request-ID": request_id},
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    cfg: Settings | None = None,
    *,
    repository: PipelineRepository | None = None,
    storage: StorageService | None = None,
    ocr: OCRProvider | None = None,
    summarizer: Summarizer | None = None,
    event_log: EventLog | None = None,
    users: UserDirectory | None = None,
) -> FastAPI:
    cfg = cfg or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: build every collaborator not injected, start workers,
        publisher and heartbeat. Shutdown: stop them in reverse order.
        """
        logger.info(
            "Starting invoiceflow | env=%s persistence=%s ocr=%s events=%s",
            cfg.app_env, cfg.persistence_backend, cfg.ocr_backend, cfg.event_backend,
        )
        TracingConfig.init(cfg)
        repo = repository or await build_repository(cfg)
        log = event_log or build_event_log(cfg)
        pipeline = BatchPipeline.from_settings(
            cfg,
            repository=repo,
            storage=storage or S3StorageService(cfg),
            ocr=ocr or build_ocr_provider(cfg),
            summarizer=summarizer or LLMSummarizer(cfg),
            publisher=EventPublisher(log, topics_from_settings(cfg), cfg.event_buffer_size),
            gateway=NotificationGateway(
                queue_size=cfg.subscriber_queue_size,
                heartbeat_interval=cfg.heartbeat_interval_seconds,
            ),
        )
        app.state.settings = cfg
        app.state.users = users or StaticUserDirectory.from_settings(cfg)
        app.state.pipeline = pipeline

        await pipeline.start()
        await pipeline.recover()
        logger.info("Pipeline started | workers=%d queue=%d",
                    cfg.worker_pool_size, cfg.worker_queue_capacity)

        yield

        logger.info("Shutting down invoiceflow")
        await pipeline.stop()
        await repo.close()

    app = FastAPI(
        title="invoiceflow",
        description=(
            "Invoice batch pipeline: upload scanned invoices, track OCR and extraction "
            "live, and read the AI summary of each batch."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not cfg.is_production else None,
        redoc_url="/api/redoc" if not cfg.is_production else None,
        openapi_url="/api/openapi.json" if not cfg.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added is outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if cfg.app_env == "development" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Batch-ID", "Location"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method, request.url.path, response.status_code, duration_ms,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        code = status_for(exc)
        log = logger.error if code >= 500 else logger.info
        log("Pipeline error | path=%s code=%s: %s", request.url.path, exc.error_code, exc.message)
        details = [ErrorDetail(field=exc.field, message=exc.message, code=exc.error_code)] if exc.field else []
        return _error_response(
            request, code,
            ErrorResponse(error_code=exc.error_code, message=exc.message, details=details),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(
            request, exc.status_code,
            ErrorResponse(
                error_code=_HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
                message=str(exc.detail),
            ),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        return _error_response(
            request, status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorResponse(error_code="VALIDATION_ERROR", message="Request validation failed.", details=details),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions; never expose stack traces."""
        logger.exception("Unhandled exception | path=%s request_id=%s",
                         request.url.path, _request_id(request))
        return _error_response(
            request, status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorResponse(error_code="INTERNAL_ERROR", message="An unexpected error occurred."),
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(batches_router, prefix="/api/v1")
    app.include_router(live_router,    prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth, used by load balancer)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "invoiceflow"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness(request: Request) -> JSONResponse:
        pipeline: BatchPipeline = request.app.state.pipeline
        checks = {
            "repository": await pipeline.repository.health(),
            "storage":    await pipeline.storage.health(),
            "workers":    {"status": "ok" if pipeline.pool.running else "error"},
        }
        ready = all(c["status"] == "ok" for c in checks.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ready else "not_ready", **checks},
        )

    return app


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "invoiceflow.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
