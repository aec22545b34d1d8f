"""Redis-backed record store.

Records are stored as JSON strings keyed by ``{prefix}:record:{id}``.
A sorted set ``{prefix}:records`` tracks every id (score = ``created_at``).
Per scope, ``{prefix}:active:{scope}`` holds the ids of active records and
``{prefix}:fact:{scope}:{hash}`` points at the active record carrying that
fact hash.  ``{prefix}:status:{status}`` sets back the health counters and
``{prefix}:pending_embedding`` queues records still missing a vector.

The stream ``{prefix}:index_log`` receives the id of every record whose
searchability may have changed, written in the same transaction as the
change.  Process-local vector indexes replay it to follow the store.

Every mutation is an optimistic ``WATCH``/``MULTI`` transaction on the
record key (and on the fact pointer it may touch), so status transitions
are compare-and-swap even across processes sharing one Redis.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import WatchError

from memstore.audit.schemas import ConflictAuditEntry
from memstore.audit.store import AuditLog
from memstore.config import StoreConfig
from memstore.errors import ConcurrentConflictRetry
from memstore.errors import RecordNotFound
from memstore.errors import SupersessionCycleError
from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import MemoryStatus
from memstore.memory.schemas import Scope

logger = logging.getLogger(__name__)

_SCAN_BATCH_SIZE = 100


def _decode(raw: bytes | str | None) -> str | None:
    if raw is None:
        return None
    return raw.decode() if isinstance(raw, bytes) else raw


@dataclass(frozen=True)
class Supersession:
    """Instruction to mark *loser_id* contradicted in favour of *winner_id*."""

    loser_id: str
    winner_id: str


class RecordStore:
    """Transactional persistence for memory records."""

    def __init__(
        self,
        redis: Redis,
        *,
        audit: AuditLog,
        config: StoreConfig | None = None,
    ) -> None:
        self._redis = redis
        self._audit = audit
        self.config = config or StoreConfig()
        prefix = self.config.key_prefix
        self._prefix = prefix
        self._records_key = f"{prefix}:records"
        self._scopes_key = f"{prefix}:scopes"
        self._pending_key = f"{prefix}:pending_embedding"
        self._index_log_key = f"{prefix}:index_log"
        self._index_trimmed_key = f"{prefix}:index_log:trimmed_until"

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _record_key(self, record_id: str) -> str:
        return f"{self._prefix}:record:{record_id}"

    def _active_key(self, scope: Scope) -> str:
        return f"{self._prefix}:active:{scope.key}"

    def _fact_key(self, scope: Scope, fact_hash: str) -> str:
        return f"{self._prefix}:fact:{scope.key}:{fact_hash}"

    def _status_key(self, status: MemoryStatus) -> str:
        return f"{self._prefix}:status:{status.value}"

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> MemoryRecord | None:
        """Retrieve a record by ID, or ``None`` if missing."""
        raw = await self._redis.get(self._record_key(record_id))
        if raw is None:
            return None
        return MemoryRecord.model_validate_json(raw)

    async def get_many(self, record_ids: list[str]) -> list[MemoryRecord]:
        """Batch-fetch records, silently skipping unknown IDs, order preserved."""
        if not record_ids:
            return []
        raws = await self._redis.mget([self._record_key(rid) for rid in record_ids])
        return [MemoryRecord.model_validate_json(raw) for raw in raws if raw is not None]

    async def find_active_by_fact_hash(
        self, scope: Scope, fact_hash: str
    ) -> MemoryRecord | None:
        """Return the active record in *scope* carrying *fact_hash*, if any."""
        pointer = _decode(await self._redis.get(self._fact_key(scope, fact_hash)))
        if pointer is None:
            return None
        record = await self.get(pointer)
        if record is None or record.status != MemoryStatus.active:
            return None
        return record

    async def active_ids(self, scope: Scope) -> list[str]:
        members = await self._redis.smembers(self._active_key(scope))
        return sorted(_decode(m) for m in members)

    async def active_records(self, scope: Scope) -> list[MemoryRecord]:
        records = await self.get_many(await self.active_ids(scope))
        # Set membership and the document can briefly disagree under races
        return [r for r in records if r.status == MemoryStatus.active]

    async def list_scopes(self) -> list[Scope]:
        members = await self._redis.smembers(self._scopes_key)
        return sorted(
            (Scope.from_key(_decode(m)) for m in members),
            key=lambda s: s.key,
        )

    async def pending_embedding_ids(self, limit: int) -> list[str]:
        """Oldest records still waiting for an embedding."""
        ids = await self._redis.zrange(self._pending_key, 0, max(limit, 1) - 1)
        return [_decode(i) for i in ids]

    async def pending_embedding_count(self) -> int:
        return await self._redis.zcard(self._pending_key)

    async def count(self) -> int:
        return await self._redis.zcard(self._records_key)

    async def status_counts(self) -> dict[MemoryStatus, int]:
        pipe = self._redis.pipeline()
        for status in MemoryStatus:
            pipe.scard(self._status_key(status))
        counts = await pipe.execute()
        return dict(zip(MemoryStatus, (int(c) for c in counts)))

    async def iter_records(self) -> AsyncIterator[MemoryRecord]:
        """Yield every record, oldest first, in fixed-size batches."""
        start = 0
        while True:
            ids = await self._redis.zrange(
                self._records_key, start, start + _SCAN_BATCH_SIZE - 1
            )
            if not ids:
                return
            for record in await self.get_many([_decode(i) for i in ids]):
                yield record
            start += _SCAN_BATCH_SIZE

    async def follow_supersession(self, record_id: str) -> MemoryRecord:
        """Follow ``superseded_by`` links from *record_id* to the chain's end.

        Raises ``SupersessionCycleError`` if the chain is longer than the
        total number of records, which can only happen on a cycle.
        """
        budget = await self.count()
        current = await self.get(record_id)
        if current is None:
            raise RecordNotFound(record_id)
        steps = 0
        while current.superseded_by is not None:
            steps += 1
            if steps > budget:
                raise SupersessionCycleError(f"cycle reachable from {record_id}")
            nxt = await self.get(current.superseded_by)
            if nxt is None:
                raise RecordNotFound(current.superseded_by)
            current = nxt
        return current

    # ------------------------------------------------------------------
    # Index log
    # ------------------------------------------------------------------

    async def index_log_head(self) -> str:
        """ID of the newest index-log entry, or ``"0-0"`` for an empty log."""
        entries = await self._redis.xrevrange(self._index_log_key, count=1)
        return _decode(entries[0][0]) if entries else "0-0"

    async def read_index_log(self, after: str, count: int) -> list[tuple[str, str]]:
        """Up to *count* ``(entry_id, record_id)`` pairs logged after *after*."""
        response = await self._redis.xread({self._index_log_key: after}, count=count)
        if not response:
            return []
        _, entries = response[0]
        return [
            (_decode(entry_id), _decode(fields.get(b"id", fields.get("id"))))
            for entry_id, fields in entries
        ]

    async def index_log_trimmed_until(self) -> str | None:
        """Entries older than this id may have been trimmed away."""
        return _decode(await self._redis.get(self._index_trimmed_key))

    async def trim_index_log(self, retention_days: float) -> int:
        """Drop index-log entries older than *retention_days* before the head.

        The trim marker is written before trimming so a reader that finds
        entries missing always sees the marker too.  The head entry is never
        trimmed.  Returns the number of entries removed.
        """
        head = await self.index_log_head()
        if head == "0-0":
            return 0
        cutoff_ms = parse_stream_id(head)[0] - int(retention_days * 86_400_000)
        if cutoff_ms <= 0:
            return 0
        minid = f"{cutoff_ms}-0"
        oldest = await self._redis.xrange(self._index_log_key, count=1)
        if parse_stream_id(_decode(oldest[0][0])) >= parse_stream_id(minid):
            return 0
        marker = await self.index_log_trimmed_until()
        if marker is None or parse_stream_id(marker) < parse_stream_id(minid):
            await self._redis.set(self._index_trimmed_key, minid)
        removed = await self._redis.xtrim(
            self._index_log_key, minid=minid, approximate=False
        )
        if removed:
            logger.info("Trimmed %d index-log entries before %s", removed, minid)
        return removed

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def insert(
        self,
        record: MemoryRecord,
        *,
        supersede: Supersession | None = None,
        audit: ConflictAuditEntry | None = None,
    ) -> bool:
        """Persist a new *record* in one transaction.

        When *supersede* is given, its loser is moved ``active ->
        contradicted`` in the same transaction (compare-and-swap on the
        loser's status).  Returns ``False`` without writing anything when
        the state the caller decided on no longer holds: another active
        record took the fact hash, or the loser is no longer active.
        """
        fact_key = self._fact_key(record.scope, record.fact_hash)
        for _ in range(self.config.max_cas_attempts):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(fact_key)
                    pointer = _decode(await pipe.get(fact_key))
                    if pointer is not None and pointer != record.id:
                        return False

                    loser: MemoryRecord | None = None
                    loser_pointer: str | None = None
                    if supersede is not None:
                        loser = await self._watch_record(pipe, supersede.loser_id)
                        if loser.status != MemoryStatus.active:
                            return False
                        if supersede.winner_id != record.id:
                            raise ValueError("inserted record must be the winner")
                        if loser.id == record.id:
                            raise SupersessionCycleError("record cannot supersede itself")
                        loser_pointer = await self._watch_pointer(pipe, loser)

                    pipe.multi()
                    self._stage_write(pipe, record, None, pointer)
                    if loser is not None:
                        contradicted = loser.model_copy(
                            update={
                                "status": MemoryStatus.contradicted,
                                "superseded_by": record.id,
                            }
                        )
                        self._stage_write(pipe, contradicted, loser, loser_pointer)
                    if audit is not None:
                        self._audit.stage_conflict(pipe, audit)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue
        raise ConcurrentConflictRetry(f"insert of {record.id} kept racing")

    async def supersede(
        self,
        loser_id: str,
        winner_id: str,
        *,
        audit: ConflictAuditEntry | None = None,
        absorb_access: bool = False,
    ) -> bool:
        """Mark *loser_id* contradicted with ``superseded_by = winner_id``.

        Returns ``False`` if the loser is no longer active.  Raises
        ``SupersessionCycleError`` if the winner is not active or its chain
        leads back to the loser.  With *absorb_access* the winner takes over
        the loser's access count.
        """
        if loser_id == winner_id:
            raise SupersessionCycleError("record cannot supersede itself")
        for _ in range(self.config.max_cas_attempts):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    loser = await self._watch_record(pipe, loser_id)
                    if loser.status != MemoryStatus.active:
                        return False
                    winner = await self._watch_record(pipe, winner_id)
                    await self._reject_cycle(pipe, loser_id, winner)
                    loser_pointer = await self._watch_pointer(pipe, loser)

                    pipe.multi()
                    contradicted = loser.model_copy(
                        update={
                            "status": MemoryStatus.contradicted,
                            "superseded_by": winner_id,
                        }
                    )
                    self._stage_write(pipe, contradicted, loser, loser_pointer)
                    if absorb_access and loser.access_count:
                        absorbed = winner.model_copy(
                            update={
                                "access_count": winner.access_count + loser.access_count
                            }
                        )
                        # Status unchanged, so the fact pointer is untouched
                        self._stage_write(pipe, absorbed, winner, None)
                    if audit is not None:
                        self._audit.stage_conflict(pipe, audit)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue
        raise ConcurrentConflictRetry(f"supersede of {loser_id} kept racing")

    async def update(
        self,
        record_id: str,
        mutate: Callable[[MemoryRecord], MemoryRecord | None],
        *,
        audit: ConflictAuditEntry | None = None,
    ) -> MemoryRecord | None:
        """Apply *mutate* to the current record under optimistic locking.

        *mutate* may be called several times and must be pure.  Returning
        ``None`` from it means "nothing to do" and leaves the record as is;
        ``update`` then returns ``None`` too.  Use ``insert``/``supersede``
        for transitions into ``contradicted``.
        """
        for _ in range(self.config.max_cas_attempts):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    current = await self._watch_record(pipe, record_id)
                    updated = mutate(current)
                    if updated is None:
                        return None
                    _check_immutable(current, updated)
                    pointer = None
                    if updated.status != current.status:
                        pointer = await self._watch_pointer(pipe, current)
                    pipe.multi()
                    self._stage_write(pipe, updated, current, pointer)
                    if audit is not None:
                        self._audit.stage_conflict(pipe, audit)
                    await pipe.execute()
                    return updated
                except WatchError:
                    continue
        raise ConcurrentConflictRetry(f"update of {record_id} kept racing")

    async def record_access(
        self,
        record_id: str,
        *,
        now: datetime,
        importance_boost: float,
        audit: ConflictAuditEntry | None = None,
    ) -> MemoryRecord | None:
        """Count one access on an active record.

        Returns the updated record, or ``None`` if it is no longer active
        (in which case *audit* is not written either).
        """

        def bump(record: MemoryRecord) -> MemoryRecord | None:
            if record.status != MemoryStatus.active:
                return None
            return record.model_copy(
                update={
                    "access_count": record.access_count + 1,
                    "last_accessed_at": now,
                    "importance": min(1.0, record.importance + importance_boost),
                }
            )

        return await self.update(record_id, bump, audit=audit)

    async def set_embedding(
        self, record_id: str, embedding: list[float]
    ) -> MemoryRecord | None:
        """Attach *embedding* unless the record already has one."""

        def attach(record: MemoryRecord) -> MemoryRecord | None:
            if record.embedding is not None:
                return None
            return record.model_copy(update={"embedding": embedding})

        return await self.update(record_id, attach)

    async def clear(self) -> None:
        """Remove every key under the store prefix (test helper).

        Deletes in batches to avoid loading all keys into memory at once.
        """
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}:*"):
            batch.append(key)
            if len(batch) >= _SCAN_BATCH_SIZE:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _watch_record(self, pipe: Any, record_id: str) -> MemoryRecord:
        key = self._record_key(record_id)
        await pipe.watch(key)
        raw = await pipe.get(key)
        if raw is None:
            raise RecordNotFound(record_id)
        return MemoryRecord.model_validate_json(raw)

    async def _watch_pointer(self, pipe: Any, record: MemoryRecord) -> str | None:
        key = self._fact_key(record.scope, record.fact_hash)
        await pipe.watch(key)
        return _decode(await pipe.get(key))

    async def _reject_cycle(
        self, pipe: Any, loser_id: str, winner: MemoryRecord
    ) -> None:
        if winner.status != MemoryStatus.active:
            raise SupersessionCycleError(
                f"winner {winner.id} is {winner.status.value}, not active"
            )
        # An active winner has no outgoing link; walk anyway so a corrupted
        # chain is caught here rather than persisted.
        budget = await pipe.zcard(self._records_key)
        seen = {winner.id}
        current = winner
        while current.superseded_by is not None:
            nxt_id = current.superseded_by
            if nxt_id == loser_id or nxt_id in seen or len(seen) > budget:
                raise SupersessionCycleError(
                    f"superseding {loser_id} by {winner.id} would create a cycle"
                )
            seen.add(nxt_id)
            raw = await pipe.get(self._record_key(nxt_id))
            if raw is None:
                break
            current = MemoryRecord.model_validate_json(raw)

    def _stage_write(
        self,
        pipe: Any,
        record: MemoryRecord,
        previous: MemoryRecord | None,
        fact_pointer: str | None,
    ) -> None:
        """Queue the document write plus every index it affects."""
        pipe.set(self._record_key(record.id), record.model_dump_json())
        scope = record.scope

        if previous is None:
            pipe.zadd(self._records_key, {record.id: record.created_at.timestamp()})
            pipe.sadd(self._scopes_key, scope.key)

        if previous is None or previous.status != record.status:
            if previous is not None:
                pipe.srem(self._status_key(previous.status), record.id)
            pipe.sadd(self._status_key(record.status), record.id)
            fact_key = self._fact_key(scope, record.fact_hash)
            if record.status == MemoryStatus.active:
                pipe.sadd(self._active_key(scope), record.id)
                if fact_pointer is None:
                    pipe.set(fact_key, record.id)
            else:
                pipe.srem(self._active_key(scope), record.id)
                if fact_pointer == record.id:
                    pipe.delete(fact_key)

        if record.embedding is None and record.status != MemoryStatus.contradicted:
            if previous is None:
                pipe.zadd(self._pending_key, {record.id: record.created_at.timestamp()})
        elif previous is None or previous.embedding is None:
            pipe.zrem(self._pending_key, record.id)

        if (
            previous is None
            or previous.status != record.status
            or (previous.embedding is None) != (record.embedding is None)
        ):
            pipe.xadd(self._index_log_key, {"id": record.id})


def parse_stream_id(entry_id: str) -> tuple[int, int]:
    """``"<ms>-<seq>"`` as a comparable tuple."""
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)


def _check_immutable(current: MemoryRecord, updated: MemoryRecord) -> None:
    for name in ("id", "owner_agent", "visibility", "fact_hash", "created_at"):
        if getattr(current, name) != getattr(updated, name):
            raise ValueError(f"{name} is immutable")
    if updated.status == MemoryStatus.contradicted and (
        current.status != MemoryStatus.contradicted
    ):
        raise ValueError("use supersede() to contradict a record")
    if current.status == MemoryStatus.contradicted and (
        updated.status != MemoryStatus.contradicted
    ):
        raise ValueError("contradicted is terminal")
