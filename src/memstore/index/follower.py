"""Keeps a process-local ``VectorIndex`` in step with the record store.

Every store transition that can change a record's searchability appends
the record id to the store's index log in the same transaction.  Before an
index read, ``catch_up`` replays what was logged since the last read and
reconciles each record with its current stored state, so records embedded,
archived or reactivated by another process (a cron maintenance run, a
second server) reach this index too.  If the log was trimmed past the last
read position, the index is rebuilt from the store instead.
"""

from __future__ import annotations

import asyncio
import logging

from memstore.index.vector_index import VectorIndex
from memstore.memory.store import parse_stream_id
from memstore.memory.store import RecordStore

logger = logging.getLogger(__name__)


class IndexFollower:
    """Replays the store's index log into one ``VectorIndex``."""

    def __init__(
        self,
        store: RecordStore,
        index: VectorIndex,
        *,
        batch_size: int = 500,
    ) -> None:
        self._store = store
        self._index = index
        self._batch_size = max(batch_size, 1)
        self._position: str | None = None
        self._lock = asyncio.Lock()

    @property
    def position(self) -> str | None:
        """Last index-log entry applied, ``None`` before the first load."""
        return self._position

    async def rebuild(self) -> int:
        """Reload the whole index from the store; returns records indexed."""
        async with self._lock:
            return await self._rebuild()

    async def catch_up(self) -> int:
        """Apply log entries written since the last call.

        The first call on a fresh follower loads the index from the store.
        Returns the number of records reconciled.
        """
        async with self._lock:
            if self._position is None:
                await self._rebuild()
                return 0
            reconciled = 0
            while True:
                entries = await self._store.read_index_log(
                    self._position, self._batch_size
                )
                if not entries:
                    break
                trimmed = await self._store.index_log_trimmed_until()
                if trimmed is not None and parse_stream_id(trimmed) > parse_stream_id(
                    self._position
                ):
                    logger.warning(
                        "Index log trimmed past position %s, rebuilding", self._position
                    )
                    await self._rebuild()
                    return reconciled
                reconciled += await self._reconcile([rid for _, rid in entries])
                self._position = entries[-1][0]
                if len(entries) < self._batch_size:
                    break
            if reconciled:
                logger.debug(
                    "Index caught up to %s (%d records)", self._position, reconciled
                )
            return reconciled

    async def _rebuild(self) -> int:
        # Read the head first: entries logged during the scan are replayed
        # later, and reconciling is idempotent.
        head = await self._store.index_log_head()
        records = [record async for record in self._store.iter_records()]
        indexed = self._index.rebuild(records)
        self._position = head
        return indexed

    async def _reconcile(self, record_ids: list[str]) -> int:
        ids = list(dict.fromkeys(record_ids))
        current = {r.id: r for r in await self._store.get_many(ids)}
        for record_id in ids:
            record = current.get(record_id)
            if record is not None and record.is_searchable:
                if record_id not in self._index:
                    self._index.insert(record.id, record.embedding, record.scope)
            else:
                self._index.remove(record_id)
        return len(ids)
