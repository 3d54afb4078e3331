"""
Observability Package — Tracing + Cost Tracking

Provides:
  TracingConfig   — LangSmith / OpenTelemetry initialisation
  traced          — decorator timing the OCR, summarize and analysis stages
  CostTracker     — token usage and USD cost per model and month

Usage::

    # At app startup (in main.py lifespan):
    from invoiceflow.observability.tracing import TracingConfig
    TracingConfig.init(settings)

    # After an LLM call:
    cost = tracker.track_usage(model="gpt-4o-mini", input_tokens=900, output_tokens=120)
"""

from invoiceflow.observability.cost_tracker import CostTracker
from invoiceflow.observability.tracing import TracingConfig, traced

__all__ = ["CostTracker", "TracingConfig", "traced"]
