"""
Per-key asyncio locks.

Callers serialize work on one logical key without blocking other keys.
Locks are dropped once no coroutine holds or waits on them.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable
import asyncio


class KeyedLocks:

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
