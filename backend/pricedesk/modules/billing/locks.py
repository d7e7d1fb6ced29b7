"""Per-shop asyncio locks.

One registry per mutation path, so reconciliation and usage tracking for
the same shop serialize independently without blocking each other.
"""

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ShopLockRegistry:
    """Hands out one asyncio.Lock per shop; unused locks are garbage collected."""

    def __init__(self, name: str):
        self.name = name
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, shop: str) -> asyncio.Lock:
        lock = self._locks.get(shop)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[shop] = lock
        return lock

    @asynccontextmanager
    async def hold(self, shop: str) -> AsyncIterator[None]:
        lock = self.get(shop)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


reconciliation_locks = ShopLockRegistry("reconciliation")
quota_locks = ShopLockRegistry("quota")
