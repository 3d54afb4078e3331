"""
Batch summarization collaborator.

Contract::

    result = await summarizer.summarize(payload, max_content_length=4000)
    result.summary            # non-empty text
    result.recommendations    # ordered list of short action items

Any failure (transport error, rate limit, malformed JSON or an empty summary)
raises ProviderError so that the analysis aggregator's retry policy treats
them all alike. Timeouts are applied by the caller.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import openai
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from invoiceflow.core.config import Settings
from invoiceflow.core.errors import ProviderError
from invoiceflow.observability.cost_tracker import CostTracker, estimate_tokens
from invoiceflow.observability.tracing import traced

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are an accounts-payable analyst reviewing a batch of invoices \
that were extracted automatically from scanned documents.

Respond with a single JSON object and nothing else:
{
  "summary": "<3-6 sentences: totals, vendors, date range, notable anomalies>",
  "recommendations": ["<short actionable item>", "..."]
}

Flag missing invoice numbers, duplicate invoice numbers, unusually large amounts, \
overdue due dates and failed documents. Do not invent figures that are not in the data."""


@dataclass
class SummaryResult:
    summary:         str
    recommendations: list[str] = field(default_factory=list)
    metadata:        dict[str, Any] = field(default_factory=dict)


class _SummaryPayload(BaseModel):
    summary: str = Field(min_length=1)
    recommendations: list[str] = Field(default_factory=list)


class Summarizer(ABC):

    @abstractmethod
    async def summarize(self, data: dict[str, Any], max_content_length: int) -> SummaryResult:
        """Summarize structured batch data; ProviderError on any failure."""


class LLMSummarizer(Summarizer):
    """LangChain ChatOpenAI in JSON mode."""

    def __init__(self, cfg: Settings, llm: Any | None = None, cost_tracker: CostTracker | None = None) -> None:
        self._model = cfg.llm_model
        self.cost_tracker = cost_tracker or CostTracker()
        if llm is None:
            from langchain_openai import ChatOpenAI

            llm = ChatOpenAI(
                model=cfg.llm_model,
                api_key=cfg.openai_api_key or None,
                temperature=cfg.llm_temperature,
                max_tokens=cfg.llm_max_tokens,
                max_retries=0,      # retries belong to the aggregator's policy
                model_kwargs={"response_format": {"type": "json_object"}},
            )
        self._llm = llm

    @staticmethod
    def build_messages(data: dict[str, Any], max_content_length: int) -> list[BaseMessage]:
        body = json.dumps(data, default=str, separators=(",", ":"))
        if len(body) > max_content_length:
            # only reached when bound_payload() could not get under the limit
            body = body[:max_content_length]
        return [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(content=f"Invoice batch data (JSON):\n{body}"),
        ]

    @traced("llm.summarize")
    async def summarize(self, data: dict[str, Any], max_content_length: int) -> SummaryResult:
        messages = self.build_messages(data, max_content_length)
        t0 = time.perf_counter()
        try:
            response = await self._llm.ainvoke(messages)
        except openai.OpenAIError as exc:
            raise ProviderError("openai", str(exc)) from exc
        latency = (time.perf_counter() - t0) * 1000

        content = response.content if isinstance(response.content, str) else str(response.content)
        input_tokens, output_tokens = self._token_usage(response, messages, content)
        # a malformed reply is billed too
        cost = self.cost_tracker.track_usage(self._model, input_tokens, output_tokens)

        try:
            parsed = _SummaryPayload.model_validate_json(content)
        except PydanticValidationError as exc:
            raise ProviderError("openai", f"malformed summary response: {exc.error_count()} error(s)") from exc

        summary = parsed.summary.strip()
        if not summary:
            raise ProviderError("openai", "empty summary")

        logger.info(
            "Summarizer | model=%s tokens_in=%d tokens_out=%d cost_usd=%s recommendations=%d latency_ms=%.1f",
            self._model, input_tokens, output_tokens, cost, len(parsed.recommendations), latency,
        )
        return SummaryResult(
            summary=summary,
            recommendations=[r.strip() for r in parsed.recommendations if r.strip()],
            metadata={
                "model":         self._model,
                "latency_ms":    round(latency, 1),
                "input_tokens":  input_tokens,
                "output_tokens": output_tokens,
                "cost_usd":      str(cost),
            },
        )

    @staticmethod
    def _token_usage(response: Any, messages: list[BaseMessage], content: str) -> tuple[int, int]:
        """Provider-reported counts when present, otherwise estimated."""
        usage = getattr(response, "usage_metadata", None) or {}
        input_tokens = usage.get("input_tokens") or estimate_tokens("".join(str(m.content) for m in messages))
        output_tokens = usage.get("output_tokens") or estimate_tokens(content)
        return int(input_tokens), int(output_tokens)
