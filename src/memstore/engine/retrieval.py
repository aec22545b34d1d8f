"""Ranked semantic retrieval with visibility rules and access reinforcement."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime
from time import perf_counter

import numpy as np

from memstore.concurrency import ScopeLocks
from memstore.config import EmbeddingConfig
from memstore.config import IngestionConfig
from memstore.config import RetrievalConfig
from memstore.embedding.provider import embed_with_timeout
from memstore.embedding.provider import EmbeddingProvider
from memstore.errors import InvalidInput
from memstore.errors import RecordNotFound
from memstore.index.follower import IndexFollower
from memstore.index.hnsw import normalize
from memstore.index.vector_index import VectorIndex
from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import MemoryStatus
from memstore.memory.schemas import Scope
from memstore.memory.schemas import utcnow
from memstore.memory.schemas import Visibility
from memstore.memory.store import RecordStore
from memstore.observability import record_latency

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400.0


class RetrievalService:
    """Read path over the vector index.

    ``search`` never takes a scope lock; its only writes are per-record
    access bookkeeping, which is an independent optimistic update.
    """

    def __init__(
        self,
        store: RecordStore,
        index: VectorIndex,
        embedder: EmbeddingProvider,
        *,
        locks: ScopeLocks | None = None,
        follower: IndexFollower | None = None,
        config: RetrievalConfig | None = None,
        ingestion_config: IngestionConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._index = index
        self._embedder = embedder
        self._locks = locks or ScopeLocks()
        self._follower = follower
        self.config = config or RetrievalConfig()
        self.ingestion_config = ingestion_config or IngestionConfig()
        self.embedding_config = embedding_config or EmbeddingConfig()
        self._clock = clock

    def score(self, record: MemoryRecord, similarity: float, now: datetime) -> float:
        """Blend similarity, recency of last access and access frequency."""
        cfg = self.config
        days = max((now - record.last_accessed_at).total_seconds(), 0.0) / _SECONDS_PER_DAY
        recency = 0.5 ** (days / cfg.recency_half_life_days)
        return (
            cfg.similarity_weight * similarity
            + cfg.recency_weight * recency
            + cfg.frequency_weight * math.log1p(record.access_count)
        )

    async def search(
        self,
        requesting_agent: str,
        query_text: str,
        k: int = 10,
        include_shared: bool = True,
    ) -> list[MemoryRecord]:
        """Top-*k* active memories visible to *requesting_agent*.

        Raises ``EmbeddingUnavailable`` when the query cannot be embedded.
        Every returned record has had one access counted.
        """
        if not isinstance(requesting_agent, str) or not requesting_agent.strip():
            raise InvalidInput("requesting_agent must be a non-empty string")
        if not isinstance(query_text, str) or not query_text.strip():
            raise InvalidInput("query_text is empty")
        if k < 1:
            raise InvalidInput("k must be at least 1")

        start = perf_counter()
        embedding = await embed_with_timeout(
            self._embedder,
            query_text,
            timeout_seconds=self.embedding_config.timeout_seconds,
            dimensions=self.embedding_config.dimensions,
        )
        query = normalize(embedding)
        if self._follower is not None:
            await self._follower.catch_up()
        fetch = k * max(self.config.oversample, 1)

        hints: dict[str, float] = {}
        scopes = [Scope(owner_agent=requesting_agent, visibility=Visibility.private)]
        if include_shared:
            scopes.append(Scope.shared_pool())
        for scope in scopes:
            for record_id, similarity in self._index.query(embedding, scope, fetch):
                hints[record_id] = max(similarity, hints.get(record_id, -1.0))

        now = self._clock()
        scored: list[tuple[float, MemoryRecord]] = []
        for record in await self._store.get_many(list(hints)):
            if not self._eligible(record, requesting_agent, include_shared):
                continue
            if record.embedding is not None:
                similarity = float(np.dot(query, normalize(record.embedding)))
            else:
                similarity = hints[record.id]
            if similarity < self.config.min_similarity:
                continue
            scored.append((self.score(record, similarity, now), record))
        scored.sort(key=lambda item: (item[0], item[1].created_at), reverse=True)

        results: list[MemoryRecord] = []
        for _, record in scored:
            if len(results) == k:
                break
            updated = await self._store.record_access(
                record.id,
                now=now,
                importance_boost=self.ingestion_config.access_importance_boost,
            )
            if updated is None:
                # Left active state since the index lookup
                continue
            results.append(updated)

        record_latency(
            operation="retrieval.search",
            duration_ms=(perf_counter() - start) * 1000,
        )
        return results

    async def get(self, requesting_agent: str, record_id: str) -> MemoryRecord:
        """Exact-key read honoring visibility; no bookkeeping."""
        record = await self._store.get(record_id)
        if record is None or not record.visible_to(requesting_agent):
            raise RecordNotFound(record_id)
        return record

    async def reactivate(self, requesting_agent: str, record_id: str) -> MemoryRecord:
        """Bring an archived record back to ``active`` by explicit access.

        Already-active records only get the access counted.  If another
        active record in the scope now holds the same fact, that record is
        reinforced and returned instead.
        """
        record = await self.get(requesting_agent, record_id)
        if record.status == MemoryStatus.contradicted:
            raise InvalidInput(
                f"{record_id} is contradicted (superseded by {record.superseded_by})"
            )

        now = self._clock()
        boost = self.ingestion_config.access_importance_boost
        async with self._locks.hold(record.scope):
            twin = await self._store.find_active_by_fact_hash(
                record.scope, record.fact_hash
            )
            if twin is not None and twin.id != record.id:
                logger.info("%s already covered by active %s", record_id, twin.id)
                record_id = twin.id

            def activate(current: MemoryRecord) -> MemoryRecord | None:
                if current.status == MemoryStatus.contradicted:
                    return None
                return current.model_copy(
                    update={
                        "status": MemoryStatus.active,
                        "access_count": current.access_count + 1,
                        "last_accessed_at": now,
                        "importance": min(1.0, current.importance + boost),
                    }
                )

            updated = await self._store.update(record_id, activate)
            if updated is None:
                raise InvalidInput(f"{record_id} was contradicted concurrently")
            if updated.is_searchable:
                self._index.insert(updated.id, updated.embedding, updated.scope)
        if record.status == MemoryStatus.archived and updated.id == record.id:
            logger.info("Reactivated %s", record.id)
        return updated

    @staticmethod
    def _eligible(record: MemoryRecord, agent: str, include_shared: bool) -> bool:
        if record.status != MemoryStatus.active:
            return False
        if record.visibility == Visibility.shared:
            return include_shared
        return record.owner_agent == agent
