"""Per-key mutual exclusion for sync passes and token refreshes."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """One ``asyncio.Lock`` per key, kept only while it is held or awaited.

    Callers sharing a key while any of them is inside ``checkout`` see the
    same lock; the entry is dropped when the last of them leaves.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, key: str) -> asyncio.Lock | None:
        return self._locks.get(key)

    @asynccontextmanager
    async def checkout(self, key: str) -> AsyncIterator[asyncio.Lock]:
        """Yield the lock for ``key`` without acquiring it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            yield lock
        finally:
            remaining = self._users.pop(key) - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._locks[key]

    @asynccontextmanager
    async def exclusive(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key``, waiting as long as it takes."""
        async with self.checkout(key) as lock, lock:
            yield


class MappingLocks(KeyedLocks):
    """In-process registry of one ``asyncio.Lock`` per calendar mapping.

    ``hold`` yields whether the lock was obtained; callers that get ``False``
    must not touch the mapping's checkpoint or events.
    """

    def is_locked(self, mapping_id: str) -> bool:
        lock = self.get(mapping_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, mapping_id: str, *, wait_s: float = 0.0) -> AsyncIterator[bool]:
        async with self.checkout(mapping_id) as lock:
            acquired = False
            if wait_s > 0:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=wait_s)
                    acquired = True
                except TimeoutError:
                    acquired = False
            elif not lock.locked():
                await lock.acquire()
                acquired = True
            try:
                yield acquired
            finally:
                if acquired:
                    lock.release()
