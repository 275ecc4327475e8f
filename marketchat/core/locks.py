"""
Per-key asyncio locks.

Chat status changes, offer resolution and chat creation are check-then-write
sequences. Within one process they are serialized by a lock keyed on the chat
(or on the participant triple when the chat does not exist yet); across
processes the row lock taken inside the same transaction does the job.
"""
import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger()


class KeyedLock:
    """
    A registry of asyncio.Lock objects created on demand per key.

    Locks are dropped as soon as nobody holds or waits for them, so the
    registry only ever contains keys that are currently contended.

    Usage:
        chat_locks = KeyedLock("chat")

        async with chat_locks.acquire(chat_id):
            ...
    """

    def __init__(self, name: str):
        self.name = name
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._holders[key] = 0
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


# Keyed by chat id
chat_locks = KeyedLock("chat")
# Keyed by (listing_id, buyer_id, vendor_id)
chat_creation_locks = KeyedLock("chat_creation")
