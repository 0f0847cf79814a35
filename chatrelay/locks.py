"""
Per-contact serialization for chat mutations.

Mutations of one contact thread (ingest, status update, mark-read, removal)
run one at a time so the store, the conversation aggregate and the events
pushed to viewers all see them in the same order. Different contacts never
contend with each other; there is no store-wide lock.

Usage:

    locks = KeyedLock()

    async with locks.hold(contact_id):
        ...  # write, update aggregate, publish

Locks are created on first use and discarded once nobody holds or waits
for them, so the table only grows with the number of busy contacts.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """A table of asyncio locks keyed by string (contact id)."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
