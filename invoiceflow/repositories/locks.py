"""
Per-key asyncio locks whose table only holds keys somebody is using.

    locks = KeyedLocks()
    async with locks(batch_id):
        ...

A key's entry is created by its first user and removed when the last
holder or waiter leaves, so the table stays as small as the set of batches
currently being written.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator


@dataclass
class _Slot:
    lock:  asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLocks:

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, key: str) -> bool:
        return key in self._slots

    @asynccontextmanager
    async def __call__(self, key: str) -> AsyncIterator[None]:
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]
