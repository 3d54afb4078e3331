"""
Vendor resolution. Maps free-text vendor names onto canonical Vendor rows.

Concurrency: optimistic create. Two documents from the same vendor processed
in parallel both miss the lookup and both try to insert; the repository's
unique key on normalized_name lets exactly one win, and the loser falls back
to lookup-and-increment. No lock is held across the provider calls.
"""

from __future__ import annotations

import logging
import re
import unicodedata

from invoiceflow.core.errors import DuplicateKeyError, ValidationError
from invoiceflow.domain.models import Vendor
from invoiceflow.domain.status import VendorStatus
from invoiceflow.repositories.base import PipelineRepository

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")

# bound on insert/lookup rounds; a lost insert is followed by a successful
# lookup unless the winning row was deleted in between
_MAX_ROUNDS = 3


def normalize_vendor_name(name: str) -> str:
    """NFKC, trim, collapse internal whitespace, case-fold."""
    folded = unicodedata.normalize("NFKC", name)
    return _WHITESPACE.sub(" ", folded).strip().casefold()


def _display_name(name: str) -> str:
    return _WHITESPACE.sub(" ", unicodedata.normalize("NFKC", name)).strip()


class VendorResolver:

    def __init__(self, repository: PipelineRepository) -> None:
        self._repo = repository

    async def resolve(self, name: str) -> Vendor:
        """
        Return the canonical vendor for `name`, counting one more invoice
        against it. Creates an ACTIVE vendor with invoice_count=1 on first
        sight.
        """
        key = normalize_vendor_name(name)
        if not key:
            raise ValidationError("Vendor name is empty.", field="vendor_name")

        for _ in range(_MAX_ROUNDS):
            existing = await self._repo.find_vendor(key)
            if existing is not None:
                vendor = await self._repo.increment_vendor_invoices(existing.id)
                logger.debug(
                    "Vendor | reused id=%s key=%r invoice_count=%d",
                    vendor.id, key, vendor.invoice_count,
                )
                return vendor

            try:
                vendor = await self._repo.insert_vendor(Vendor(
                    name=_display_name(name),
                    normalized_name=key,
                    status=VendorStatus.ACTIVE,
                    invoice_count=1,
                ))
            except DuplicateKeyError:
                # lost the race; the winner's row is visible now
                logger.debug("Vendor | insert lost race key=%r, retrying lookup", key)
                continue

            logger.info("Vendor | created id=%s name=%r", vendor.id, vendor.name)
            return vendor

        raise DuplicateKeyError(f"Vendor '{key}' could not be resolved.")
