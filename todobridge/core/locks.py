"""Keyed asyncio locks."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLocks:
    """One asyncio.Lock per key, created on first use.

    Serializes work for the same key (a user, a task) while letting
    different keys proceed concurrently. A key's lock is dropped once its
    last holder or waiter leaves, so the table only holds keys in use.
    Must be used from a single event loop.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        return key in self._locks and self._locks[key].locked()

    def __len__(self) -> int:
        return len(self._locks)
