"""
Event Publication Package

  events.py     BatchEvent (single tagged-union payload) + EventKind
  log.py        EventLog: InMemoryEventLog, KombuEventLog (AMQP)
  publisher.py  EventPublisher: non-blocking publish through one outbound queue
"""

from __future__ import annotations

from invoiceflow.core.config import Settings
from invoiceflow.events.events import BatchEvent, EventKind
from invoiceflow.events.log import EventLog, InMemoryEventLog, KombuEventLog, partition_for
from invoiceflow.events.publisher import EventPublisher, topics_from_settings


def build_event_log(cfg: Settings) -> EventLog:
    backend = cfg.event_backend.lower()
    if backend == "memory":
        return InMemoryEventLog(cfg.event_partitions)
    if backend == "amqp":
        return KombuEventLog(cfg.amqp_url, cfg.event_partitions)
    raise ValueError(f"Unknown event backend: {cfg.event_backend!r}")


__all__ = [
    "BatchEvent",
    "EventKind",
    "EventLog",
    "InMemoryEventLog",
    "KombuEventLog",
    "EventPublisher",
    "build_event_log",
    "partition_for",
    "topics_from_settings",
]
