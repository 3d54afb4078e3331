"""
Observability Tracing — LangSmith + OpenTelemetry

Traces the expensive stages of a batch:
  stored bytes → OCR → field extraction → analysis payload → LLM summary

Supported backends:

  LangSmith (hosted):
    - Activated through LANGCHAIN_TRACING_V2 / LANGCHAIN_API_KEY / LANGCHAIN_PROJECT
    - LangChain picks these up itself, so every summarizer call is traced
      with no code changes

  OTEL (OpenTelemetry) generic:
    - For Jaeger, Zipkin, Datadog APM: set OTEL_ENABLED=true and
      OTEL_EXPORTER_OTLP_ENDPOINT
    - Needs the `tracing` extra (opentelemetry-sdk + OTLP exporter)

Decorator `@traced(name)`:
  Instruments any async function with timing and error recording. Works
  regardless of backend.

Environment variables:
  LANGSMITH_API_KEY=ls__...
  LANGSMITH_PROJECT=invoiceflow

  OTEL_ENABLED=false
  OTEL_EXPORTER_OTLP_ENDPOINT=http://otel-collector:4318/v1/traces
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Any, Callable, Coroutine, TypeVar

from invoiceflow.core.config import Settings

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


# ---------------------------------------------------------------------------
# TracingConfig — initialise at app startup
# ---------------------------------------------------------------------------

class TracingConfig:
    """
    Initialise all active tracing backends.

    Call once at application startup::

        from invoiceflow.observability.tracing import TracingConfig
        TracingConfig.init(settings)
    """

    _initialised: bool = False

    @classmethod
    def init(cls, cfg: Settings) -> None:
        """Initialise all enabled tracing backends; later calls are no-ops."""
        if cls._initialised:
            return
        cls._initialised = True

        cls._init_langsmith(cfg)
        cls._init_otel(cfg)

    @staticmethod
    def _init_langsmith(cfg: Settings) -> None:
        """
        LangSmith activation is purely environment-variable-driven: LangChain
        reads these on every call. Values already in the environment win.
        """
        if cfg.langsmith_api_key and not os.environ.get("LANGCHAIN_API_KEY"):
            os.environ["LANGCHAIN_TRACING_V2"] = "true"
            os.environ["LANGCHAIN_API_KEY"]    = cfg.langsmith_api_key
            os.environ["LANGCHAIN_PROJECT"]    = cfg.langsmith_project
            logger.info("LangSmith tracing enabled | project=%s", cfg.langsmith_project)
        elif os.environ.get("LANGCHAIN_TRACING_V2") == "true":
            logger.info(
                "LangSmith tracing active (from env) | project=%s",
                os.environ.get("LANGCHAIN_PROJECT", "default"),
            )
        else:
            logger.debug("LangSmith tracing disabled (LANGSMITH_API_KEY not set)")

    @staticmethod
    def _init_otel(cfg: Settings) -> None:
        """Generic OTLP span export; requires otel_enabled and an endpoint."""
        if not cfg.otel_enabled or not cfg.otel_exporter_otlp_endpoint:
            logger.debug("OTEL tracing disabled")
            return

        try:
            from opentelemetry import trace
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
            from opentelemetry.sdk.resources import Resource
            from opentelemetry.sdk.trace import TracerProvider
            from opentelemetry.sdk.trace.export import BatchSpanProcessor

            provider = TracerProvider(resource=Resource.create({"service.name": "invoiceflow"}))
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otel_exporter_otlp_endpoint))
            )
            trace.set_tracer_provider(provider)
            logger.info("OTEL tracing enabled | endpoint=%s", cfg.otel_exporter_otlp_endpoint)
        except Exception as exc:
            logger.warning("OTEL tracing init failed (install invoiceflow[tracing]): %s", exc)


# ---------------------------------------------------------------------------
# @traced decorator
# ---------------------------------------------------------------------------

def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing and error logging.

    Usage::

        @traced("pipeline.ocr")
        async def _run_ocr(self, doc: Document) -> str:
            ...

        @traced()   # uses the function's qualified name as span name
        async def summarize(...):
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.warning(
                    "trace | span=%s elapsed_ms=%.1f error=%s: %s",
                    span_name, elapsed_ms, type(exc).__name__, exc,
                )
                raise
            elapsed_ms = (time.perf_counter() - t0) * 1000
            logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
