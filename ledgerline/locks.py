from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class OrderLocks:
    """One asyncio lock per order id, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        self._users[order_id] = self._users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[order_id] -= 1
            if self._users[order_id] == 0:
                del self._users[order_id]
                del self._locks[order_id]

    def is_held(self, order_id: str) -> bool:
        lock = self._locks.get(order_id)
        return bool(lock and lock.locked())
