"""Ingestion pipeline: validate, hash, embed, resolve, persist.

The exact-duplicate fast path runs before any provider call.  Everything
from the re-checked hash lookup to the index update runs under the scope
lock, and the commit itself is a single store transaction, so a lost race
on a neighbour's status is detected and the resolution re-derived.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from time import perf_counter

from memstore.audit.schemas import ConflictAuditEntry
from memstore.concurrency import ScopeLocks
from memstore.config import EmbeddingConfig
from memstore.config import IngestionConfig
from memstore.embedding.provider import embed_batch_with_timeout
from memstore.embedding.provider import embed_with_timeout
from memstore.embedding.provider import EmbeddingProvider
from memstore.engine.resolver import ConflictResolver
from memstore.engine.resolver import Neighbor
from memstore.engine.resolver import Outcome
from memstore.engine.resolver import Resolution
from memstore.errors import ConcurrentConflictRetry
from memstore.errors import EmbeddingUnavailable
from memstore.errors import InvalidInput
from memstore.errors import RecordNotFound
from memstore.errors import ResolutionFailed
from memstore.index.follower import IndexFollower
from memstore.index.vector_index import VectorIndex
from memstore.memory import create_memory_record
from memstore.memory import fact_hash
from memstore.memory import normalize_content
from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import MemoryStatus
from memstore.memory.schemas import Scope
from memstore.memory.schemas import utcnow
from memstore.memory.schemas import Visibility
from memstore.memory.store import RecordStore
from memstore.memory.store import Supersession
from memstore.observability import record_latency
from memstore.observability import record_outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillResult:
    """Outcome of one backfill pass."""

    processed: int = 0
    failed: int = 0


def parse_visibility(value: Visibility | str) -> Visibility:
    try:
        return Visibility(value)
    except ValueError as exc:
        raise InvalidInput(
            f"visibility must be 'private' or 'shared', got {value!r}"
        ) from exc


class IngestionPipeline:
    """Turns raw agent text into persisted, indexed memories."""

    def __init__(
        self,
        store: RecordStore,
        index: VectorIndex,
        embedder: EmbeddingProvider,
        *,
        resolver: ConflictResolver | None = None,
        locks: ScopeLocks | None = None,
        follower: IndexFollower | None = None,
        config: IngestionConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._index = index
        self._embedder = embedder
        self._resolver = resolver or ConflictResolver()
        self._locks = locks or ScopeLocks()
        self._follower = follower
        self.config = config or IngestionConfig()
        self.embedding_config = embedding_config or EmbeddingConfig()
        self._clock = clock

    # ----- Ingest -----

    async def ingest(
        self,
        owner_agent: str,
        content: str,
        visibility: Visibility | str = Visibility.private,
        *,
        source_agent: str | None = None,
    ) -> MemoryRecord:
        """Store *content* for *owner_agent* and return the resulting record.

        The returned record is the existing one for exact and semantic
        duplicates, otherwise the newly created record.
        """
        start = perf_counter()
        ok = False
        try:
            record = await self._ingest(owner_agent, content, visibility, source_agent)
            ok = True
            return record
        finally:
            record_latency(
                operation="ingestion.ingest",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def promote(self, owner_agent: str, record_id: str) -> MemoryRecord:
        """Copy an owner's private memory into their shared scope.

        The copy goes through normal ingestion, so duplicates and conflicts
        among shared memories are resolved as usual.  ``source_agent`` keeps
        pointing at the original author.
        """
        record = await self._store.get(record_id)
        if record is None or record.owner_agent != owner_agent:
            raise RecordNotFound(record_id)
        if record.visibility != Visibility.private:
            raise InvalidInput(f"{record_id} is already shared")
        if record.status != MemoryStatus.active:
            raise InvalidInput(f"{record_id} is {record.status.value}, not active")
        return await self.ingest(
            owner_agent,
            record.content,
            Visibility.shared,
            source_agent=record.source_agent,
        )

    async def _ingest(
        self,
        owner_agent: str,
        content: str,
        visibility: Visibility | str,
        source_agent: str | None,
    ) -> MemoryRecord:
        if not isinstance(owner_agent, str) or not owner_agent.strip():
            raise InvalidInput("owner_agent must be a non-empty string")
        if not isinstance(content, str):
            raise InvalidInput("content must be a string")
        scope = Scope(owner_agent=owner_agent, visibility=parse_visibility(visibility))
        normalized = normalize_content(content)
        if not normalized:
            raise InvalidInput("content is empty")
        if len(normalized) > self.config.max_content_chars:
            raise InvalidInput(
                f"content exceeds {self.config.max_content_chars} characters"
            )
        digest = fact_hash(normalized)

        try:
            existing = await self._reinforce_exact(scope, digest)
        except ConcurrentConflictRetry as exc:
            # Retried below under the scope lock
            logger.info("Exact-duplicate race in %s: %s", scope.key, exc)
            existing = None
        if existing is not None:
            return existing

        try:
            embedding: list[float] | None = await embed_with_timeout(
                self._embedder,
                normalized,
                timeout_seconds=self.embedding_config.timeout_seconds,
                dimensions=self.embedding_config.dimensions,
            )
        except EmbeddingUnavailable as exc:
            logger.warning(
                "Embedding unavailable for %s ingest, storing unembedded: %s",
                scope.key,
                exc,
            )
            embedding = None

        async with self._locks.hold(scope):
            for attempt in range(self.config.max_resolution_retries + 1):
                try:
                    return await self._resolve_and_commit(
                        scope, normalized, digest, embedding, source_agent
                    )
                except ConcurrentConflictRetry as exc:
                    record_outcome("ingestion.cas_retry")
                    logger.info(
                        "Resolution race in %s (attempt %d): %s",
                        scope.key,
                        attempt + 1,
                        exc,
                    )
        raise ResolutionFailed(
            f"gave up resolving ingest in {scope.key} after "
            f"{self.config.max_resolution_retries + 1} attempts"
        )

    async def _reinforce_exact(self, scope: Scope, digest: str) -> MemoryRecord | None:
        existing = await self._store.find_active_by_fact_hash(scope, digest)
        if existing is None:
            return None
        updated = await self._store.record_access(
            existing.id,
            now=self._clock(),
            importance_boost=self.config.access_importance_boost,
        )
        if updated is not None:
            record_outcome("ingestion.exact_duplicate")
        return updated

    async def _resolve_and_commit(
        self,
        scope: Scope,
        normalized: str,
        digest: str,
        embedding: list[float] | None,
        source_agent: str | None,
    ) -> MemoryRecord:
        existing = await self._reinforce_exact(scope, digest)
        if existing is not None:
            return existing

        record = create_memory_record(
            scope.owner_agent,
            normalized,
            visibility=scope.visibility,
            importance=self.config.initial_importance,
            now=self._clock(),
            embedding=embedding,
            source_agent=source_agent,
        )
        if embedding is None:
            if not await self._store.insert(record):
                raise ConcurrentConflictRetry("fact hash claimed concurrently")
            record_outcome("ingestion.pending_embedding")
            return record

        if self._follower is not None:
            await self._follower.catch_up()
        hits = self._index.query(embedding, scope, self.config.neighbor_k)
        hint_of = dict(hits)
        neighbours = [
            Neighbor(record=r, hint=hint_of[r.id])
            for r in await self._store.get_many([rid for rid, _ in hits])
        ]
        resolution = self._resolver.resolve(embedding, normalized, neighbours)
        result = await self._commit(record, resolution)
        record_outcome(f"resolution.{resolution.outcome.value}")
        return result

    async def _commit(self, record: MemoryRecord, resolution: Resolution) -> MemoryRecord:
        neighbour = resolution.neighbor
        if resolution.outcome == Outcome.duplicate:
            entry = self._audit_entry(
                record, resolution, winning_id=neighbour.id, losing_id=None
            )
            updated = await self._store.record_access(
                neighbour.id,
                now=self._clock(),
                importance_boost=self.config.access_importance_boost,
                audit=entry,
            )
            if updated is None:
                raise ConcurrentConflictRetry(f"{neighbour.id} left active state")
            return updated

        supersede = None
        entry = None
        if resolution.outcome == Outcome.superseded:
            supersede = Supersession(loser_id=neighbour.id, winner_id=record.id)
            entry = self._audit_entry(
                record, resolution, winning_id=record.id, losing_id=neighbour.id
            )
        elif resolution.outcome == Outcome.kept_both:
            entry = self._audit_entry(
                record, resolution, winning_id=record.id, losing_id=neighbour.id
            )

        if not await self._store.insert(record, supersede=supersede, audit=entry):
            raise ConcurrentConflictRetry(
                f"state changed under {record.scope.key} before commit"
            )
        if supersede is not None:
            self._index.remove(supersede.loser_id)
            logger.info("%s superseded %s", record.id, supersede.loser_id)
        self._index.insert(record.id, record.embedding, record.scope)
        return record

    def _audit_entry(
        self,
        record: MemoryRecord,
        resolution: Resolution,
        *,
        winning_id: str,
        losing_id: str | None,
    ) -> ConflictAuditEntry:
        return ConflictAuditEntry(
            owner_agent=record.owner_agent,
            winning_id=winning_id,
            losing_id=losing_id,
            similarity_score=resolution.similarity,
            resolution=resolution.audit_kind,
            reason=resolution.reason,
            created_at=self._clock(),
        )

    # ----- Backfill -----

    async def backfill_embeddings(self, batch_size: int | None = None) -> BackfillResult:
        """Embed every record still missing a vector, oldest first.

        Records that fail stay queued for the next pass.  Safe to re-run.
        """
        size = max(batch_size or self.embedding_config.batch_size, 1)
        processed = 0
        attempted: set[str] = set()
        start = perf_counter()
        while True:
            queued = await self._store.pending_embedding_ids(size + len(attempted))
            batch_ids = [rid for rid in queued if rid not in attempted][:size]
            if not batch_ids:
                break
            attempted.update(batch_ids)
            records = await self._store.get_many(batch_ids)
            vectors = await self._embed_records(records)
            for record in records:
                vector = vectors.get(record.id)
                if vector is None:
                    continue
                async with self._locks.hold(record.scope):
                    updated = await self._store.set_embedding(record.id, vector)
                    if updated is not None and updated.is_searchable:
                        self._index.insert(updated.id, updated.embedding, updated.scope)
                processed += 1

        failed = len(attempted) - processed
        record_outcome("backfill.processed", processed)
        record_outcome("backfill.failed", failed)
        record_latency(
            operation="ingestion.backfill_embeddings",
            duration_ms=(perf_counter() - start) * 1000,
            ok=failed == 0,
        )
        if attempted:
            logger.info("Backfill embedded %d records, %d failed", processed, failed)
        return BackfillResult(processed=processed, failed=failed)

    async def _embed_records(
        self, records: list[MemoryRecord]
    ) -> dict[str, list[float] | None]:
        cfg = self.embedding_config
        try:
            vectors = await embed_batch_with_timeout(
                self._embedder,
                [r.content for r in records],
                timeout_seconds=cfg.timeout_seconds,
                dimensions=cfg.dimensions,
            )
            return {r.id: v for r, v in zip(records, vectors)}
        except EmbeddingUnavailable as exc:
            logger.warning(
                "Batch embedding failed, retrying %d records individually: %s",
                len(records),
                exc,
            )

        results: dict[str, list[float] | None] = {}
        for record in records:
            try:
                results[record.id] = await embed_with_timeout(
                    self._embedder,
                    record.content,
                    timeout_seconds=cfg.timeout_seconds,
                    dimensions=cfg.dimensions,
                )
            except EmbeddingUnavailable as exc:
                logger.warning("Backfill failed for %s: %s", record.id, exc)
                results[record.id] = None
        return results
