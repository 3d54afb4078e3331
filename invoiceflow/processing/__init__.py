"""
Document Processing Package
════════════════════════════

  ocr.py   OCR provider strategies (PyMuPDF text layer → AWS Textract)

Field parsing lives in services/extraction.py; this package only turns
bytes into text.
"""

from invoiceflow.processing.ocr import (
    AutoOCRProvider,
    OCRProvider,
    PyMuPDFProvider,
    TextractProvider,
    build_ocr_provider,
)

__all__ = [
    "AutoOCRProvider",
    "OCRProvider",
    "PyMuPDFProvider",
    "TextractProvider",
    "build_ocr_provider",
]
