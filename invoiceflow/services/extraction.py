"""
Invoice Field Extraction
════════════════════════

Best-effort parsing of structured invoice fields out of raw OCR text.

Fields
──────
  vendor_name      "From:" / "Vendor:" / "Supplier:" / "Company:" line
  invoice_number   "Invoice #", "Invoice No.", "INV:" … (token must contain a digit)
  invoice_date     "Invoice Date", "Date", "Dated", "Issue Date"
  due_date         "Due Date", "Payment Due", "Pay By"
  amount           "Grand Total" > "Total Due" > "Amount Due" > "Balance Due" > "Total" > "Amount"
  tax_amount       "Tax", "VAT", "GST", "Sales Tax"
  po_number        "PO #", "P.O.", "Purchase Order"
  line_items       "<description> <qty> x|@ <unit price>" rows

Nothing here raises on unparseable input: a field that cannot be found is
left as None. A document whose text yields no fields at all still produces
an ExtractedInvoice (and later an EXTRACTION_FAILED invoice).
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from invoiceflow.core.errors import ValidationError
from invoiceflow.domain.models import ExtractedInvoice, Invoice, LineItem, money
from invoiceflow.domain.status import InvoiceStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_NUMBER = r"([0-9][0-9,]*(?:\.[0-9]{1,2})?)"
_CURRENCY_PREFIX = r"(?:[A-Z]{3}\s*)?[$€£]?\s*"
_TOKEN = r"(?=[A-Z0-9\-/]*\d)([A-Z0-9][A-Z0-9\-/]*)"

_DATE_VALUE = (
    r"(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}"
    r"|\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}"
    r"|[A-Za-z]{3,9}\.?\s+\d{1,2},?\s+\d{4}"
    r"|\d{1,2}\s+[A-Za-z]{3,9},?\s+\d{4})"
)

INVOICE_NUMBER_PATTERN = re.compile(
    r"\b(?:invoice|inv|bill)\b\.?\s*(?:#|no\.?|num(?:ber)?)?\s*[:#]?\s*" + _TOKEN,
    re.IGNORECASE,
)

PO_NUMBER_PATTERN = re.compile(
    r"(?:\bp\.o\.|\bpo\b|\bpurchase\s+order\b)\s*(?:#|no\.?|num(?:ber)?)?\s*[:#]?\s*" + _TOKEN,
    re.IGNORECASE,
)

VENDOR_PATTERN = re.compile(
    r"^\s*(?:bill\s+from|sold\s+by|from|vendor|supplier|company)\s*[:\-]\s*(.+?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)

INVOICE_DATE_PATTERN = re.compile(
    r"(?<!due )\b(?:invoice\s+date|issue\s+date|date\s+of\s+issue|dated|date)\b\s*[:\-]?\s*"
    + _DATE_VALUE,
    re.IGNORECASE,
)

DUE_DATE_PATTERN = re.compile(
    r"\b(?:due\s+date|payment\s+due|pay\s+by)\b\s*[:\-]?\s*" + _DATE_VALUE,
    re.IGNORECASE,
)

TAX_PATTERN = re.compile(
    r"\b(?:sales\s+tax|tax|vat|gst)\b\s*(?:\(\s*[0-9.]+\s*%\s*\))?\s*[:\-]?\s*"
    + _CURRENCY_PREFIX + _NUMBER,
    re.IGNORECASE,
)

# Highest-priority label first; "Subtotal" never matches because of \b.
_AMOUNT_LABELS = (
    r"grand\s+total",
    r"total\s+due",
    r"amount\s+due",
    r"balance\s+due",
    r"total",
    r"amount",
)
AMOUNT_PATTERNS = tuple(
    re.compile(r"\b" + label + r"\b\s*[:\-]?\s*" + _CURRENCY_PREFIX + _NUMBER, re.IGNORECASE)
    for label in _AMOUNT_LABELS
)

LINE_ITEM_PATTERN = re.compile(
    r"^\s*(?P<desc>[A-Za-z][^\n]*?)\s+(?P<qty>\d+(?:\.\d+)?)\s*(?:x|×|@)\s*[$€£]?\s*"
    r"(?P<price>\d[\d,]*(?:\.\d{1,2})?)",
    re.IGNORECASE | re.MULTILINE,
)

_SUMMARY_WORDS = re.compile(r"\b(?:total|subtotal|tax|vat|gst|amount|balance)\b", re.IGNORECASE)

_DATE_FORMATS = (
    "%m/%d/%Y", "%m-%d-%Y", "%m.%d.%Y",
    "%m/%d/%y", "%m-%d-%y",
    "%Y/%m/%d", "%Y-%m-%d", "%Y.%m.%d",
    "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y",
    "%b %d, %Y", "%b %d %Y", "%B %d, %Y", "%B %d %Y",
    "%d %b %Y", "%d %B %Y", "%d %b, %Y", "%d %B, %Y",
)

# largest value the invoices.amount column (Numeric(14, 2)) can hold
MAX_AMOUNT = Decimal("999999999999.99")

_CURRENCY_HINTS = (
    (re.compile(r"€|\bEUR\b"), "EUR"),
    (re.compile(r"£|\bGBP\b"), "GBP"),
    (re.compile(r"\bCAD\b"),   "CAD"),
)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def parse_amount(raw: str) -> Decimal | None:
    try:
        value = money(raw.replace(",", ""))
    except (InvalidOperation, ValueError):
        logger.warning("Extraction | unparseable amount=%r", raw)
        return None
    if abs(value) > MAX_AMOUNT:
        logger.warning("Extraction | amount out of range=%r", raw)
        return None
    return value


def parse_date(raw: str) -> date | None:
    """Try each known format in order; month-first wins for ambiguous dates."""
    cleaned = re.sub(r"\s+", " ", raw.strip()).replace(".,", ",")
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    logger.debug("Extraction | unparseable date=%r", raw)
    return None


def _first(pattern: re.Pattern, text: str) -> str | None:
    m = pattern.search(text)
    return m.group(1).strip() if m else None


def _extract_vendor(text: str) -> str | None:
    m = VENDOR_PATTERN.search(text)
    if not m:
        return None
    name = m.group(1).strip().strip(",;:-").strip()
    return name or None


def _extract_amount(text: str) -> Decimal | None:
    for pattern in AMOUNT_PATTERNS:
        m = pattern.search(text)
        if m:
            return parse_amount(m.group(1))
    return None


def _extract_line_items(text: str) -> list[LineItem]:
    items: list[LineItem] = []
    for m in LINE_ITEM_PATTERN.finditer(text):
        desc = m.group("desc").strip()
        if _SUMMARY_WORDS.search(desc):
            continue
        price = parse_amount(m.group("price"))
        if price is None:
            continue
        try:
            item = LineItem(description=desc, quantity=Decimal(m.group("qty")), unit_price=price)
            amount = item.amount
        except ValidationError as exc:
            logger.debug("Extraction | skipped line item %r: %s", desc, exc.message)
            continue
        except InvalidOperation:
            logger.debug("Extraction | skipped line item %r: amount not representable", desc)
            continue
        if amount > MAX_AMOUNT:
            logger.debug("Extraction | skipped line item %r: amount out of range", desc)
            continue
        items.append(item)
    return items


def _detect_currency(text: str) -> str:
    for pattern, code in _CURRENCY_HINTS:
        if pattern.search(text):
            return code
    return "USD"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def extract_invoice_fields(text: str) -> ExtractedInvoice:
    """Parse every field we know how to find; missing fields stay None."""
    extracted = ExtractedInvoice(
        vendor_name=_extract_vendor(text),
        invoice_number=_first(INVOICE_NUMBER_PATTERN, text),
        invoice_date=None,
        due_date=None,
        amount=_extract_amount(text),
        tax_amount=None,
        currency=_detect_currency(text),
        po_number=_first(PO_NUMBER_PATTERN, text),
        line_items=_extract_line_items(text),
    )

    raw_date = _first(INVOICE_DATE_PATTERN, text)
    if raw_date:
        extracted.invoice_date = parse_date(raw_date)
    raw_due = _first(DUE_DATE_PATTERN, text)
    if raw_due:
        extracted.due_date = parse_date(raw_due)
    raw_tax = _first(TAX_PATTERN, text)
    if raw_tax:
        extracted.tax_amount = parse_amount(raw_tax)

    logger.debug(
        "Extraction | vendor=%r number=%r amount=%s tax=%s line_items=%d",
        extracted.vendor_name, extracted.invoice_number,
        extracted.amount, extracted.tax_amount, len(extracted.line_items),
    )
    return extracted


def build_invoice(
    document_id: str,
    extracted: ExtractedInvoice,
    vendor_id: str | None = None,
) -> Invoice:
    """
    Turn extracted fields into a DRAFT invoice and move it to its first
    real status: PENDING when both number and amount were found, otherwise
    EXTRACTION_FAILED.

    When the document states a total and it disagrees with its own line
    items plus tax, the stated total is kept and the line items dropped,
    so that amount == Σ line amounts + tax holds whenever items are present.
    """
    tax = extracted.tax_amount or Decimal("0.00")
    line_items = list(extracted.line_items)
    notes: list[str] = []

    if line_items:
        computed = money(sum((li.amount for li in line_items), Decimal("0.00")) + tax)
        if computed > MAX_AMOUNT:
            notes.append("Line items discarded: their sum is out of range")
            line_items = []
        elif extracted.amount is not None and computed != extracted.amount:
            logger.info(
                "Extraction | line items disagree with stated total document_id=%s "
                "stated=%s computed=%s",
                document_id, extracted.amount, computed,
            )
            notes.append(f"Line items discarded: they sum to {computed}")
            line_items = []

    if extracted.po_number:
        notes.append(f"PO Number: {extracted.po_number}")

    invoice = Invoice(
        document_id=document_id,
        vendor_id=vendor_id,
        invoice_number=extracted.invoice_number,
        invoice_date=extracted.invoice_date,
        due_date=extracted.due_date,
        amount=extracted.amount if extracted.amount is not None else Decimal("0.00"),
        tax_amount=tax,
        currency=extracted.currency,
        line_items=line_items,
        notes="\n".join(notes) or None,
    )

    if extracted.is_complete or (extracted.invoice_number and line_items):
        invoice.transition_to(InvoiceStatus.PENDING)
    else:
        invoice.transition_to(InvoiceStatus.EXTRACTION_FAILED)
        logger.warning("Extraction | incomplete invoice document_id=%s", document_id)
    return invoice
