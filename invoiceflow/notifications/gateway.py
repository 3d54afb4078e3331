"""
Notification Gateway: live status fan-out to connected clients.

Registry
────────
  subscriber id → set of batch ids   (what a client listens to)
  batch id      → set of subscriber ids   (inverse index used for fan-out)

The batch id "*" is the broadcast topic: its subscribers receive every
batch and document update.

Delivery
────────
Each subscriber owns a bounded asyncio.Queue that its transport (WebSocket
or SSE handler) drains. Pushes use put_nowait: a slow client whose queue is
full loses that message, and the worker that triggered the push never
waits. Live updates are best-effort by contract; the REST snapshot
endpoints are the source of truth.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from invoiceflow.domain.models import Batch, Document

logger = logging.getLogger(__name__)

BROADCAST = "*"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def batch_snapshot(batch: Batch) -> dict[str, Any]:
    settled = batch.processed_count + batch.failed_count
    progress = int(settled * 100 / batch.document_count) if batch.document_count else 0
    if batch.is_terminal:
        progress = 100
    return {
        "batch_id":        batch.id,
        "name":            batch.name,
        "status":          batch.status.value,
        "document_count":  batch.document_count,
        "processed_count": batch.processed_count,
        "failed_count":    batch.failed_count,
        "progress":        progress,
        "failure_reason":  batch.failure_reason,
    }


def document_snapshot(document: Document) -> dict[str, Any]:
    return {
        "batch_id":      document.batch_id,
        "document_id":   document.id,
        "file_name":     document.file_name,
        "status":        document.status.value,
        "retry_count":   document.retry_count,
        "error_message": document.error_message,
    }


@dataclass(eq=False)
class Subscriber:
    id:    str
    queue: asyncio.Queue
    dropped: int = 0
    batch_ids: set[str] = field(default_factory=set)

    def offer(self, message: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False


class NotificationGateway:

    def __init__(self, *, queue_size: int = 100, heartbeat_interval: float = 30.0) -> None:
        self._queue_size = queue_size
        self._heartbeat_interval = heartbeat_interval
        self._subscribers: dict[str, Subscriber] = {}
        self._by_batch: defaultdict[str, set[str]] = defaultdict(set)
        self._heartbeat_task: asyncio.Task | None = None

    # ── Registry ───────────────────────────────────────────────────────────

    def register(self, subscriber_id: str | None = None) -> Subscriber:
        """Create (or return the existing) subscriber with its own queue."""
        sid = subscriber_id or str(uuid.uuid4())
        existing = self._subscribers.get(sid)
        if existing is not None:
            return existing
        sub = Subscriber(id=sid, queue=asyncio.Queue(maxsize=self._queue_size))
        self._subscribers[sid] = sub
        logger.debug("Live | registered subscriber=%s", sid)
        return sub

    def unregister(self, subscriber_id: str) -> None:
        sub = self._subscribers.pop(subscriber_id, None)
        if sub is None:
            return
        for batch_id in sub.batch_ids:
            self._drop_index(batch_id, subscriber_id)
        logger.debug("Live | unregistered subscriber=%s dropped=%d", subscriber_id, sub.dropped)

    def subscribe(self, subscriber_id: str, batch_id: str) -> None:
        sub = self._subscribers.get(subscriber_id) or self.register(subscriber_id)
        sub.batch_ids.add(batch_id)
        self._by_batch[batch_id].add(subscriber_id)

    def unsubscribe(self, subscriber_id: str, batch_id: str) -> None:
        sub = self._subscribers.get(subscriber_id)
        if sub is not None:
            sub.batch_ids.discard(batch_id)
        self._drop_index(batch_id, subscriber_id)

    def subscriptions(self, subscriber_id: str) -> set[str]:
        sub = self._subscribers.get(subscriber_id)
        return set(sub.batch_ids) if sub else set()

    def subscribers_of(self, batch_id: str) -> set[str]:
        return set(self._by_batch.get(batch_id, ()))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _drop_index(self, batch_id: str, subscriber_id: str) -> None:
        members = self._by_batch.get(batch_id)
        if members is None:
            return
        members.discard(subscriber_id)
        if not members:
            del self._by_batch[batch_id]

    # ── Fan-out ────────────────────────────────────────────────────────────

    def notify_batch(self, batch: Batch) -> int:
        return self._fan_out(batch.id, {
            "type":      "batch_update",
            "timestamp": _now(),
            "data":      batch_snapshot(batch),
        })

    def notify_document(self, document: Document) -> int:
        return self._fan_out(document.batch_id, {
            "type":      "document_update",
            "timestamp": _now(),
            "data":      document_snapshot(document),
        })

    def _fan_out(self, batch_id: str, message: dict[str, Any]) -> int:
        targets = self._by_batch.get(batch_id, set()) | self._by_batch.get(BROADCAST, set())
        delivered = 0
        for sid in targets:
            sub = self._subscribers.get(sid)
            if sub is None:
                continue
            if sub.offer(message):
                delivered += 1
            else:
                logger.warning("Live | queue full, dropped %s for subscriber=%s",
                               message["type"], sid)
        return delivered

    # ── Heartbeat ──────────────────────────────────────────────────────────

    def heartbeat(self) -> int:
        """Push one heartbeat to every subscriber; returns the number reached."""
        message = {
            "type":        "heartbeat",
            "status":      "ALIVE",
            "timestamp":   _now(),
            "subscribers": len(self._subscribers),
        }
        return sum(1 for sub in list(self._subscribers.values()) if sub.offer(message))

    async def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="live-heartbeat")

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            reached = self.heartbeat()
            logger.debug("Live | heartbeat reached=%d", reached)
