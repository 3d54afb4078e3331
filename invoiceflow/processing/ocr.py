"""
OCR Providers  —  Text Extraction from Invoice Files
════════════════════════════════════════════════════

Design: Strategy + Factory
──────────────────────────
  PyMuPDFProvider   native PDF text layer; in-process, no API calls
  TextractProvider  AWS Textract DetectDocumentText; scanned PDFs and images
  AutoOCRProvider   PyMuPDF first, Textract when the PDF looks scanned
                    (or the file is an image)

Contract: `extract_text(data, content_type) -> str`. Unlike a best-effort
extractor, a provider that cannot produce text raises ProviderError. The
worker pool counts that as a failed attempt and retries with backoff, so a
transient Textract outage does not silently yield empty invoices.

Timeouts are applied by the caller (core.retry.call_with_timeout); blocking
SDK calls run in the default executor so they never stall the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from invoiceflow.core.config import Settings
from invoiceflow.core.errors import ProviderError

logger = logging.getLogger(__name__)

# If average extracted chars per page is below this threshold,
# the PDF is classified as scanned / image-based.
MIN_CHARS_PER_PAGE_THRESHOLD = 50

PDF = "application/pdf"
IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/tiff"})


@dataclass
class PageText:
    page_number: int
    text:        str
    confidence:  float = -1.0     # -1.0 = not applicable (text layer)


def _join(pages: list[PageText]) -> str:
    return "\n\n".join(p.text for p in pages if p.text.strip())


def _avg_chars(pages: list[PageText]) -> float:
    if not pages:
        return 0.0
    return sum(len(p.text) for p in pages) / len(pages)


class OCRProvider(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name for logging."""

    @abstractmethod
    async def extract_text(self, data: bytes, content_type: str) -> str:
        """Return the document's text; ProviderError when none can be produced."""


# ---------------------------------------------------------------------------
# PyMuPDF (fitz)
# ---------------------------------------------------------------------------

class PyMuPDFProvider(OCRProvider):
    """
    Reads the native PDF text layer. Cannot OCR image-only pages; those
    come back empty, which AutoOCRProvider uses to detect scans.
    """

    @property
    def name(self) -> str:
        return "pymupdf"

    async def extract_pages(self, data: bytes) -> list[PageText]:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        try:
            pages = await loop.run_in_executor(None, self._extract_sync, data)
        except (RuntimeError, ValueError) as exc:
            # fitz raises RuntimeError subclasses (FileDataError) on corrupt input
            raise ProviderError(self.name, f"cannot read PDF: {exc}") from exc
        logger.info(
            "PyMuPDF | pages=%d avg_chars_per_page=%.0f elapsed_ms=%.0f",
            len(pages), _avg_chars(pages), (time.monotonic() - t0) * 1000,
        )
        return pages

    def _extract_sync(self, data: bytes) -> list[PageText]:
        """Blocking extraction; runs in a thread executor."""
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[PageText] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = page.get_text("text") or ""
                pages.append(PageText(page_number=page_num, text=raw.strip()))
        return pages

    async def extract_text(self, data: bytes, content_type: str) -> str:
        if content_type != PDF:
            raise ProviderError(self.name, f"unsupported content type {content_type}")
        text = _join(await self.extract_pages(data))
        if not text:
            raise ProviderError(self.name, "PDF has no text layer")
        return text


# ---------------------------------------------------------------------------
# AWS Textract
# ---------------------------------------------------------------------------

class TextractProvider(OCRProvider):
    """
    Managed OCR via the synchronous DetectDocumentText API (JPEG, PNG, TIFF
    and single-page PDFs up to 10 MB).

    IAM permission required on the service role: textract:DetectDocumentText
    """

    def __init__(self, region: str = "us-east-1") -> None:
        self._region = region

    @property
    def name(self) -> str:
        return "textract"

    async def extract_text(self, data: bytes, content_type: str) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        try:
            pages = await loop.run_in_executor(None, self._extract_sync, data)
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(self.name, str(exc)) from exc

        logger.info(
            "Textract | pages=%d elapsed_ms=%.0f",
            len(pages), (time.monotonic() - t0) * 1000,
        )
        text = _join(pages)
        if not text:
            raise ProviderError(self.name, "no text detected")
        return text

    def _extract_sync(self, data: bytes) -> list[PageText]:
        import boto3

        client = boto3.client("textract", region_name=self._region)
        response = client.detect_document_text(Document={"Bytes": data})

        lines: dict[int, list[str]] = {}
        confidences: dict[int, list[float]] = {}
        for block in response.get("Blocks", []):
            if block["BlockType"] != "LINE":
                continue
            page_num = block.get("Page", 1)
            lines.setdefault(page_num, []).append(block.get("Text", ""))
            confidences.setdefault(page_num, []).append(block.get("Confidence", 0.0) / 100.0)

        return [
            PageText(
                page_number=pn,
                text="\n".join(lines[pn]),
                confidence=round(sum(confidences[pn]) / len(confidences[pn]), 3),
            )
            for pn in sorted(lines)
        ]


# ---------------------------------------------------------------------------
# Auto: text layer first, OCR for scans and images
# ---------------------------------------------------------------------------

class AutoOCRProvider(OCRProvider):

    def __init__(self, text_layer: PyMuPDFProvider, ocr: TextractProvider) -> None:
        self._text_layer = text_layer
        self._ocr = ocr

    @property
    def name(self) -> str:
        return "auto"

    async def extract_text(self, data: bytes, content_type: str) -> str:
        if content_type in IMAGE_TYPES:
            return await self._ocr.extract_text(data, content_type)

        pages = await self._text_layer.extract_pages(data)
        if pages and _avg_chars(pages) >= MIN_CHARS_PER_PAGE_THRESHOLD:
            return _join(pages)

        logger.info("OCR | PDF looks scanned (avg_chars=%.0f), falling back to Textract",
                    _avg_chars(pages))
        return await self._ocr.extract_text(data, content_type)


def build_ocr_provider(cfg: Settings) -> OCRProvider:
    backend = cfg.ocr_backend.lower()
    if backend == "pymupdf":
        return PyMuPDFProvider()
    if backend == "textract":
        return TextractProvider(region=cfg.aws_region)
    if backend == "auto":
        return AutoOCRProvider(PyMuPDFProvider(), TextractProvider(region=cfg.aws_region))
    raise ValueError(f"Unknown OCR backend: {cfg.ocr_backend!r}")
