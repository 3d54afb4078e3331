"""
Partitioned append-only event log.

  InMemoryEventLog   process-local; default, and what tests inspect
  KombuEventLog      AMQP topic exchange; routing key "<topic>.p<partition>"

Partitioning is a stable hash of the key (MD5, not Python's randomized
hash()), so every event for one batch or document lands in the same
partition across processes and restarts. Within a partition records are
kept in append order.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field

from invoiceflow.core.errors import PublicationError

logger = logging.getLogger(__name__)


def partition_for(key: str, partitions: int) -> int:
    digest = hashlib.md5(key.encode("utf-8"), usedforsecurity=False).digest()
    return int.from_bytes(digest[:4], "big") % partitions


@dataclass(frozen=True)
class LogRecord:
    topic:     str
    partition: int
    offset:    int
    key:       str
    body:      bytes
    headers:   dict[str, str] = field(default_factory=dict)


class EventLog(ABC):

    def __init__(self, partitions: int = 6) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.partitions = partitions

    @abstractmethod
    async def append(
        self,
        topic: str,
        partition_key: str,
        body: bytes,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Append one record; PublicationError when the log is unreachable."""

    async def close(self) -> None:
        """Release connections; no-op by default."""


class InMemoryEventLog(EventLog):

    def __init__(self, partitions: int = 6) -> None:
        super().__init__(partitions)
        self._topics: defaultdict[str, list[list[LogRecord]]] = defaultdict(
            lambda: [[] for _ in range(self.partitions)]
        )

    async def append(
        self,
        topic: str,
        partition_key: str,
        body: bytes,
        headers: dict[str, str] | None = None,
    ) -> None:
        partition = partition_for(partition_key, self.partitions)
        log = self._topics[topic][partition]
        log.append(LogRecord(
            topic=topic,
            partition=partition,
            offset=len(log),
            key=partition_key,
            body=body,
            headers=dict(headers or {}),
        ))

    def partition(self, topic: str, partition: int) -> list[LogRecord]:
        return list(self._topics[topic][partition])

    def records(self, topic: str) -> list[LogRecord]:
        """Every record of a topic, partition by partition."""
        return [r for part in self._topics[topic] for r in part]

    def topics(self) -> list[str]:
        return list(self._topics)


class KombuEventLog(EventLog):
    """
    Publishes to a durable topic exchange. kombu is synchronous, so each
    publish runs in the default executor; a connection is opened lazily and
    reused, and dropped after any failure so the next append reconnects.
    """

    def __init__(
        self,
        amqp_url: str,
        partitions: int = 6,
        exchange_name: str = "invoiceflow.events",
    ) -> None:
        super().__init__(partitions)
        from kombu import Exchange

        self._url = amqp_url
        self._exchange = Exchange(exchange_name, type="topic", durable=True)
        self._connection = None
        self._producer = None

    def _ensure_producer(self):
        from kombu import Connection, Producer

        if self._producer is None:
            self._connection = Connection(self._url, connect_timeout=5)
            channel = self._connection.channel()
            self._exchange(channel).declare()
            self._producer = Producer(channel, exchange=self._exchange)
        return self._producer

    def _publish_sync(self, topic: str, partition: int, body: bytes, headers: dict[str, str]) -> None:
        producer = self._ensure_producer()
        producer.publish(
            body,
            routing_key=f"{topic}.p{partition}",
            headers=headers,
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=2,        # persistent
            retry=False,
        )

    def _reset(self) -> None:
        if self._connection is not None:
            try:
                self._connection.release()
            except OSError as exc:
                logger.debug("EventLog | connection release failed: %s", exc)
        self._connection = None
        self._producer = None

    async def append(
        self,
        topic: str,
        partition_key: str,
        body: bytes,
        headers: dict[str, str] | None = None,
    ) -> None:
        from kombu.exceptions import KombuError, OperationalError

        partition = partition_for(partition_key, self.partitions)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self._publish_sync(topic, partition, body, dict(headers or {})),
            )
        except (KombuError, OperationalError, OSError) as exc:
            self._reset()
            raise PublicationError(f"AMQP publish to {topic} failed: {exc}") from exc

    async def close(self) -> None:
        self._reset()
