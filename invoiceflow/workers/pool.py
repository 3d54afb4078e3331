"""
In-process worker pool: N asyncio tasks draining one bounded queue.

Back-pressure: `submit()` / `submit_many()` never wait. When the queue
cannot take the work it raises QueueFullError, which the API maps to 503.
Delayed re-submissions (`submit_later`) are different: that work was
already accepted, so the timer task waits for queue space instead of
dropping it.

`join()` resolves once nothing is queued, running, or waiting on a timer,
which is what tests and graceful shutdown need.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

from invoiceflow.core.errors import QueueFullError

logger = logging.getLogger(__name__)

Handler = Callable[[str], Awaitable[Any]]


class WorkerPool:

    def __init__(
        self,
        handler: Handler,
        *,
        size: int = 10,
        capacity: int = 100,
        name: str = "documents",
    ) -> None:
        if size < 1 or capacity < 1:
            raise ValueError("pool size and capacity must be >= 1")
        self._handler = handler
        self._size = size
        self._name = name
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=capacity)
        self._workers: list[asyncio.Task] = []
        self._timers: set[asyncio.Task] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # ── Lifecycle ──────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._run(i), name=f"{self._name}-worker-{i}")
            for i in range(self._size)
        ]
        logger.info("WorkerPool | name=%s started size=%d capacity=%d",
                    self._name, self._size, self._queue.maxsize)

    async def stop(self) -> None:
        for task in [*self._timers, *self._workers]:
            task.cancel()
        await asyncio.gather(*self._timers, *self._workers, return_exceptions=True)
        self._timers.clear()
        self._workers = []
        logger.info("WorkerPool | name=%s stopped", self._name)

    async def join(self) -> None:
        """Wait until no work is queued, running, or scheduled."""
        await self._idle.wait()

    # ── Submission ─────────────────────────────────────────────────────────

    @property
    def remaining_capacity(self) -> int:
        return self._queue.maxsize - self._queue.qsize()

    def submit(self, item: str) -> None:
        self.submit_many([item])

    def submit_many(self, items: Iterable[str]) -> None:
        """All-or-nothing: either every item is queued or none is."""
        items = list(items)
        if len(items) > self.remaining_capacity:
            raise QueueFullError(
                f"Worker queue is full ({self._queue.qsize()}/{self._queue.maxsize}); "
                f"cannot accept {len(items)} more item(s)."
            )
        for item in items:
            self._queue.put_nowait(item)
            self._track(+1)

    def submit_later(self, item: str, delay: float) -> None:
        """Re-queue `item` after `delay` seconds."""
        self._track(+1)
        task = asyncio.create_task(self._delayed_put(item, delay))
        self._timers.add(task)
        task.add_done_callback(self._timer_done)

    async def _delayed_put(self, item: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put(item)

    def _timer_done(self, task: asyncio.Task) -> None:
        self._timers.discard(task)
        # a timer cancelled before it fired never reaches the queue
        if task.cancelled():
            self._track(-1)

    # ── Internals ──────────────────────────────────────────────────────────

    def _track(self, delta: int) -> None:
        self._outstanding += delta
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()
        else:
            self._idle.clear()

    async def _run(self, index: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._handler(item)
            except asyncio.CancelledError:
                raise
            except Exception:
                # one bad item must not take the worker down
                logger.exception("WorkerPool | name=%s worker=%d item=%s failed",
                                  self._name, index, item)
            finally:
                self._queue.task_done()
                self._track(-1)
