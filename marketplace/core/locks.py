"""
Per-key asyncio locks.

Row locks (``SELECT ... FOR UPDATE``) serialize writers across processes on
PostgreSQL, but SQLite has no row locks and a single process can interleave
two coroutines between their read and their write.  ``KeyedLock`` gives every
entity key its own ``asyncio.Lock`` so read-check-write sequences on the same
contract or RFP never overlap inside one process.

Locks are created lazily and dropped again once no coroutine holds or waits
on them, so the table stays bounded by the number of in-flight keys.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class KeyedLock:
    """A family of asyncio locks addressed by key."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# Shared by all service instances in the process: services are built per
# session, but the keys they guard are global.
entity_locks = KeyedLock()
