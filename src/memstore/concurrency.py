"""Per-scope mutual exclusion for ingestion and maintenance."""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from memstore.memory.schemas import Scope


class ScopeLocks:
    """Lazily created ``asyncio.Lock`` per scope key; there is no global lock.

    Locks are process-local.  Cross-process safety comes from the store's
    optimistic transactions.  A lock is dropped from the registry once no
    holder or waiter references it, so idle scopes do not accumulate.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, scope: Scope) -> asyncio.Lock:
        if scope.is_pool:
            raise ValueError("the shared pool is a read scope and cannot be locked")
        lock = self._locks.get(scope.key)
        if lock is None:
            lock = self._locks[scope.key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, scope: Scope) -> AsyncIterator[None]:
        async with self.lock_for(scope):
            yield

    def locked(self, scope: Scope) -> bool:
        lock = self._locks.get(scope.key)
        return lock is not None and lock.locked()
