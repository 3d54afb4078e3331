"""
Event Publisher: fire-and-forget publication onto the EventLog.

    publish(topic, key, event)   never blocks, never raises
          │
          ▼
    outbound asyncio.Queue  (bounded; one per process)
          │   single drain task, strictly FIFO
          ▼
    EventLog.append(topic, key, body, headers)

A single queue drained by a single task is what preserves per-key order:
two events for the same batch are appended in the order they were
published. A PublicationError from the log is logged and the event is
dropped; the state transition that produced it is never rolled back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import NamedTuple

from invoiceflow.core.config import Settings
from invoiceflow.core.errors import PublicationError
from invoiceflow.events.events import BatchEvent, EventKind
from invoiceflow.events.log import EventLog

logger = logging.getLogger(__name__)


class _Outbound(NamedTuple):
    topic: str
    key:   str
    event: BatchEvent


def topics_from_settings(cfg: Settings) -> dict[EventKind, str]:
    return {
        EventKind.BATCH_CREATED:            cfg.topic_batch_created,
        EventKind.BATCH_STATUS_CHANGED:     cfg.topic_batch_status_changed,
        EventKind.BATCH_OCR_COMPLETED:      cfg.topic_batch_ocr_completed,
        EventKind.BATCH_ANALYSIS_COMPLETED: cfg.topic_batch_analysis_completed,
        EventKind.DOCUMENT_PROCESSED:       cfg.topic_document_processed,
        EventKind.DOCUMENT_FAILED:          cfg.topic_document_processed,
    }


class EventPublisher:

    def __init__(
        self,
        log: EventLog,
        topics: dict[EventKind, str],
        buffer_size: int = 1000,
    ) -> None:
        self._log = log
        self._topics = topics
        self._queue: asyncio.Queue[_Outbound] = asyncio.Queue(maxsize=buffer_size)
        self._drain_task: asyncio.Task | None = None
        self.dropped = 0

    @property
    def log(self) -> EventLog:
        return self._log

    async def start(self) -> None:
        if self._drain_task is None:
            self._drain_task = asyncio.create_task(self._drain(), name="event-publisher")

    async def stop(self) -> None:
        """Flush what is queued, then stop the drain task."""
        if self._drain_task is None:
            return
        await self.flush()
        self._drain_task.cancel()
        await asyncio.gather(self._drain_task, return_exceptions=True)
        self._drain_task = None
        await self._log.close()

    async def flush(self) -> None:
        await self._queue.join()

    # ── Publication ────────────────────────────────────────────────────────

    def publish(self, topic: str, key: str, event: BatchEvent) -> bool:
        """Queue one event; returns False if it had to be dropped."""
        try:
            self._queue.put_nowait(_Outbound(topic, key, event))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Events | outbound buffer full, dropped type=%s key=%s dropped_total=%d",
                event.event_type.value, key, self.dropped,
            )
            return False
        return True

    def emit(self, event: BatchEvent) -> bool:
        """publish() with the topic and key derived from the event itself."""
        return self.publish(self._topics[event.event_type], event.partition_key, event)

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._log.append(
                    item.topic,
                    item.key,
                    item.event.model_dump_json().encode("utf-8"),
                    headers={
                        "event_id":   item.event.event_id,
                        "event_type": item.event.event_type.value,
                    },
                )
                logger.debug("Events | published type=%s topic=%s key=%s",
                             item.event.event_type.value, item.topic, item.key)
            except PublicationError as exc:
                logger.warning("Events | publication failed type=%s key=%s: %s",
                               item.event.event_type.value, item.key, exc)
            except Exception:
                logger.exception("Events | unexpected error publishing type=%s key=%s",
                                 item.event.event_type.value, item.key)
            finally:
                self._queue.task_done()
