"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : repository, storage, ocr, summarizer, event_log,
                    make_pipeline / pipeline, make_batch, make_token,
                    app / async_client

Environment strategy:
  - Persistence, event log and storage are in-memory; nothing needs docker.
  - OCR and summarization are scripted fakes that can be told to fail.
  - JWTs are HS256-signed with a test secret against a static user directory.
  - Retry delays are a few milliseconds so retry paths run fast.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # pipeline + API end-to-end tests
"""

from __future__ import annotations

import asyncio
import os
import time
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("PERSISTENCE_BACKEND",   "memory")
os.environ.setdefault("EVENT_BACKEND",         "memory")
os.environ.setdefault("OCR_BACKEND",           "pymupdf")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("JWT_SECRET",            "test-secret")
os.environ.setdefault("APP_ENV",               "development")

from invoiceflow.auth.users import StaticUserDirectory, User  # noqa: E402
from invoiceflow.core.config import Settings  # noqa: E402
from invoiceflow.core.errors import ProviderError, StorageError  # noqa: E402
from invoiceflow.core.retry import RetryPolicy  # noqa: E402
from invoiceflow.domain.models import Batch, Document  # noqa: E402
from invoiceflow.events import EventPublisher, InMemoryEventLog, topics_from_settings  # noqa: E402
from invoiceflow.llm.summarizer import Summarizer, SummaryResult  # noqa: E402
from invoiceflow.notifications.gateway import NotificationGateway  # noqa: E402
from invoiceflow.processing.ocr import OCRProvider  # noqa: E402
from invoiceflow.repositories.memory import InMemoryPipelineRepository  # noqa: E402
from invoiceflow.services.pipeline import BatchPipeline  # noqa: E402
from invoiceflow.storage.s3 import StorageService  # noqa: E402

TEST_SECRET = "test-secret"

INVOICE_TEXT = """\
Vendor: Acme Co
Invoice #: INV-100
Invoice Date: 01/15/2024
Due Date: 02/15/2024

Widget 2 x 100.00

Tax: 50.00
Total: 250.00
"""

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.01, multiplier=2.0, max_delay=0.05)


# ─────────────────────────────────────────────────────────────────────────────
# Fakes for the external collaborators
# ─────────────────────────────────────────────────────────────────────────────

class FakeStorage(StorageService):
    """Dict-backed storage; `fail_store_at` makes the n-th store() fail."""

    def __init__(self, fail_store_at: int | None = None) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_store_at = fail_store_at
        self.stores = 0

    async def store(self, data: bytes, path_hint: str, content_type: str | None = None) -> str:
        self.stores += 1
        if self.fail_store_at is not None and self.stores >= self.fail_store_at:
            raise StorageError(f"bucket unavailable storing {path_hint}")
        path = f"mem/{path_hint}"
        self.objects[path] = data
        return path

    async def retrieve(self, path: str) -> bytes:
        try:
            return self.objects[path]
        except KeyError:
            raise StorageError(f"Object not found: {path}") from None

    async def delete(self, path: str) -> None:
        self.objects.pop(path, None)
        self.deleted.append(path)

    async def exists(self, path: str) -> bool:
        return path in self.objects


class ScriptedOCR(OCRProvider):
    """
    Returns `texts[data]` (or the default text). The first `failures` calls
    raise ProviderError; data listed in `fail_on` always fails. The first
    `hangs` calls sleep far past any test timeout.
    """

    name = "scripted"

    def __init__(
        self,
        text: str = INVOICE_TEXT,
        *,
        texts: dict[bytes, str] | None = None,
        failures: int = 0,
        fail_on: set[bytes] | None = None,
        hangs: int = 0,
    ) -> None:
        self.text = text
        self.hangs = hangs
        self.texts = texts or {}
        self.failures = failures
        self.fail_on = fail_on or set()
        self.calls = 0

    async def extract_text(self, data: bytes, content_type: str) -> str:
        self.calls += 1
        if self.calls <= self.hangs:
            await asyncio.sleep(3600)
        if self.calls <= self.failures or data in self.fail_on:
            raise ProviderError(self.name, f"scripted failure on call {self.calls}")
        return self.texts.get(data, self.text)


class ScriptedSummarizer(Summarizer):

    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0
        self.payloads: list[dict] = []

    async def summarize(self, data: dict, max_content_length: int) -> SummaryResult:
        self.calls += 1
        self.payloads.append(data)
        if self.calls <= self.failures:
            raise ProviderError("scripted-llm", f"scripted failure on call {self.calls}")
        return SummaryResult(
            summary=f"{data['totals']['invoice_count']} invoice(s) totalling {data['totals']['total_amount']}.",
            recommendations=["Pay INV-100 before 2024-02-15"],
            metadata={"model": "scripted"},
        )


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        persistence_backend="memory",
        event_backend="memory",
        jwt_secret=TEST_SECRET,
        worker_pool_size=4,
        worker_queue_capacity=50,
        document_retry_base_delay_seconds=0.01,
        document_retry_max_delay_seconds=0.05,
        summarization_backoff_seconds=0.01,
        ocr_timeout_seconds=5.0,
        summarization_timeout_seconds=5.0,
        heartbeat_interval_seconds=3600.0,
        max_batch_files=5,
        max_file_size_bytes=1024 * 1024,
    )


@pytest.fixture
def repository() -> InMemoryPipelineRepository:
    return InMemoryPipelineRepository()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def ocr() -> ScriptedOCR:
    return ScriptedOCR()


@pytest.fixture
def summarizer() -> ScriptedSummarizer:
    return ScriptedSummarizer()


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog(partitions=3)


@pytest.fixture
def make_pipeline(repository, storage, ocr, summarizer, event_log, test_settings):
    """
    Factory: BatchPipeline over the shared fakes with fast retry policies.

    Usage:
        pipeline = make_pipeline(max_retries=1, queue_capacity=2)
    """
    def _build(**overrides) -> BatchPipeline:
        store = overrides.pop("storage", storage)
        options = dict(
            pool_size=4,
            queue_capacity=50,
            max_retries=3,
            retry_policy=FAST_RETRY,
            ocr_timeout=5.0,
            analysis_policy=FAST_RETRY,
            summarization_timeout=5.0,
            max_content_length=4000,
        )
        options.update(overrides)
        return BatchPipeline(
            repository,
            store,
            ocr,
            summarizer,
            EventPublisher(event_log, topics_from_settings(test_settings), buffer_size=1000),
            NotificationGateway(queue_size=100, heartbeat_interval=3600.0),
            **options,
        )

    return _build


@pytest_asyncio.fixture
async def pipeline(make_pipeline) -> AsyncGenerator[BatchPipeline, None]:
    p = make_pipeline()
    await p.start()
    yield p
    await p.stop()


@pytest.fixture
def make_batch(storage):
    """
    Factory: store `contents` and submit them as one batch.

    Usage:
        batch, docs = await make_batch(pipeline, [b"%PDF-1", b"%PDF-2"])
    """
    async def _build(pipeline: BatchPipeline, contents: list[bytes], name: str = "March invoices"):
        batch = Batch(name=name, created_by="alice")
        docs = []
        for i, data in enumerate(contents):
            doc = Document(
                batch_id=batch.id,
                file_name=f"invoice-{i}.pdf",
                content_type="application/pdf",
                storage_path="",
                size_bytes=len(data),
            )
            doc.storage_path = await storage.store(data, f"{batch.id}/{doc.id}.pdf")
            docs.append(doc)
        batch = await pipeline.submit_batch(batch, docs)
        return batch, docs

    return _build


@pytest.fixture
def make_document(repository):
    """Factory: persist a batch holding `n` CREATED documents, without queuing them."""
    async def _build(n: int = 1) -> tuple[Batch, list[Document]]:
        batch = Batch(name="direct", document_count=n)
        docs = [
            Document(batch_id=batch.id, file_name=f"d{i}.pdf", content_type="application/pdf",
                     storage_path=f"mem/{batch.id}/d{i}.pdf")
            for i in range(n)
        ]
        await repository.create_batch(batch, docs)
        return batch, docs

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Auth fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def users() -> StaticUserDirectory:
    return StaticUserDirectory([
        User(username="alice", role="member"),
        User(username="vera",  role="viewer"),
        User(username="root",  role="admin"),
        User(username="ghost", role="member", active=False),
    ])


@pytest.fixture
def make_token():
    """
    Factory fixture: returns a function that builds signed test JWTs.

    Usage:
        token = make_token("alice")
        token = make_token("alice", expired=True)
    """
    from jose import jwt as jose_jwt

    def _build(sub: str = "alice", *, expired: bool = False, secret: str = TEST_SECRET) -> str:
        now = int(time.time())
        claims = {"sub": sub, "iat": now, "exp": now - 60 if expired else now + 3600}
        return jose_jwt.encode(claims, secret, algorithm="HS256")

    return _build


@pytest.fixture
def auth_header(make_token):
    def _build(sub: str = "alice") -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(sub)}"}
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app wired with the fakes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app(test_settings, repository, storage, ocr, summarizer, event_log, users):
    from invoiceflow.main import create_app

    return create_app(
        test_settings,
        repository=repository,
        storage=storage,
        ocr=ocr,
        summarizer=summarizer,
        event_log=event_log,
        users=users,
    )


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over ASGITransport, with the app's lifespan running."""
    from httpx import ASGITransport

    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
