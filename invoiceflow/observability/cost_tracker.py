"""
Cost Tracker — token usage accounting for batch summaries

Accumulates token consumption per (model, month) in process and prices it
from MODEL_PRICING. Every call returns its own cost so the summarizer can
attach it to the analysis it produced.

Model pricing catalogue (USD per 1 000 tokens):
  All prices are public list prices. Update MODEL_PRICING when rates change.

Token counts come from the provider's usage report when the response carries
one; otherwise they are estimated at 4 characters per token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

logger = logging.getLogger(__name__)


# (input_price_per_1k, output_price_per_1k)
MODEL_PRICING: dict[str, tuple[str, str]] = {
    "gpt-4o":        ("0.0050",  "0.0150"),
    "gpt-4o-mini":   ("0.00015", "0.0006"),
    "gpt-4-turbo":   ("0.0100",  "0.0300"),
    "gpt-3.5-turbo": ("0.0005",  "0.0015"),
}

_DEFAULT_PRICING = ("0.001", "0.002")   # fallback for unknown models

_COST_QUANTUM = Decimal("0.000000001")


def compute_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    """USD cost of one call, exact to nine decimal places."""
    price_in, price_out = MODEL_PRICING.get(model, _DEFAULT_PRICING)
    cost = (Decimal(input_tokens) * Decimal(price_in) + Decimal(output_tokens) * Decimal(price_out)) / 1000
    return cost.quantize(_COST_QUANTUM)


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0


def _month_year() -> str:
    """Return the current month as 'YYYY-MM', e.g. '2025-01'."""
    return date.today().strftime("%Y-%m")


@dataclass
class ModelUsage:
    """Aggregated token usage for one model-month."""
    model:         str
    month_year:    str
    input_tokens:  int = 0
    output_tokens: int = 0
    request_count: int = 0
    cost_usd:      Decimal = Decimal("0")


class CostTracker:
    """
    Usage::

        tracker = CostTracker()
        cost = tracker.track_usage(model="gpt-4o-mini", input_tokens=500, output_tokens=150)
        tracker.monthly_usage()   # [ModelUsage(...)]
    """

    def __init__(self) -> None:
        self._usage: dict[tuple[str, str], ModelUsage] = {}

    def track_usage(
        self,
        model:         str,
        input_tokens:  int,
        output_tokens: int,
        month_year:    str | None = None,
    ) -> Decimal:
        period = month_year or _month_year()
        cost = compute_cost(model, input_tokens, output_tokens)

        usage = self._usage.get((model, period))
        if usage is None:
            usage = self._usage[(model, period)] = ModelUsage(model=model, month_year=period)
        usage.input_tokens  += input_tokens
        usage.output_tokens += output_tokens
        usage.request_count += 1
        usage.cost_usd      += cost

        logger.debug(
            "CostTracker | model=%s tokens_in=%d tokens_out=%d cost_usd=%s month_total=%s",
            model, input_tokens, output_tokens, cost, usage.cost_usd,
        )
        return cost

    def monthly_usage(self, month_year: str | None = None) -> list[ModelUsage]:
        """Per-model usage for one month, most expensive first."""
        period = month_year or _month_year()
        rows = [u for (_, m), u in self._usage.items() if m == period]
        return sorted(rows, key=lambda u: u.cost_usd, reverse=True)

    def total_cost(self, month_year: str | None = None) -> Decimal:
        return sum((u.cost_usd for u in self.monthly_usage(month_year)), Decimal("0"))
