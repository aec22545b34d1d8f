"""MemoryService: the narrow facade the rest of the application calls.

Wires one Redis client into the record store and audit log, loads the
in-memory vector index and keeps it following the store's index log, and
shares a single ``ScopeLocks`` registry between ingestion, retrieval and
maintenance.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from redis.asyncio import Redis  # type: ignore[import-untyped]

from memstore.audit.schemas import ConflictAuditEntry
from memstore.audit.schemas import MaintenanceRunSummary
from memstore.audit.store import AuditLog
from memstore.concurrency import ScopeLocks
from memstore.config import ConflictConfig
from memstore.config import EmbeddingConfig
from memstore.config import IndexConfig
from memstore.config import IngestionConfig
from memstore.config import MaintenanceConfig
from memstore.config import RetrievalConfig
from memstore.config import StoreConfig
from memstore.embedding import build_embedding_provider
from memstore.embedding import EmbeddingProvider
from memstore.engine.ingestion import BackfillResult
from memstore.engine.ingestion import IngestionPipeline
from memstore.engine.maintenance import MaintenanceEngine
from memstore.engine.resolver import ConflictResolver
from memstore.engine.retrieval import RetrievalService
from memstore.errors import InvalidInput
from memstore.index import IndexFollower
from memstore.index import VectorIndex
from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import MemoryStatus
from memstore.memory.schemas import utcnow
from memstore.memory.schemas import Visibility
from memstore.memory.store import RecordStore
from memstore.observability import track_latency
from memstore.schemas import AgentStats
from memstore.schemas import HealthReport

logger = logging.getLogger(__name__)


class MemoryService:
    """Agent memory store facade."""

    def __init__(
        self,
        redis: Redis,
        embedder: EmbeddingProvider,
        *,
        embedding_config: EmbeddingConfig | None = None,
        index_config: IndexConfig | None = None,
        ingestion_config: IngestionConfig | None = None,
        conflict_config: ConflictConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
        maintenance_config: MaintenanceConfig | None = None,
        store_config: StoreConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._redis = redis
        self.embedder = embedder
        self.audit = AuditLog(redis, config=store_config)
        self.store = RecordStore(redis, audit=self.audit, config=store_config)
        self.index = VectorIndex(index_config)
        self.index_follower = IndexFollower(self.store, self.index)
        self.locks = ScopeLocks()
        self.resolver = ConflictResolver(conflict_config)
        self.ingestion = IngestionPipeline(
            self.store,
            self.index,
            embedder,
            resolver=self.resolver,
            locks=self.locks,
            follower=self.index_follower,
            config=ingestion_config,
            embedding_config=embedding_config,
            clock=clock,
        )
        self.retrieval = RetrievalService(
            self.store,
            self.index,
            embedder,
            locks=self.locks,
            follower=self.index_follower,
            config=retrieval_config,
            ingestion_config=ingestion_config,
            embedding_config=embedding_config,
            clock=clock,
        )
        self.maintenance = MaintenanceEngine(
            self.store,
            self.index,
            self.audit,
            resolver=self.resolver,
            locks=self.locks,
            ingestion=self.ingestion,
            follower=self.index_follower,
            config=maintenance_config,
            clock=clock,
        )

    @classmethod
    async def connect(
        cls,
        redis_url: str = "redis://localhost:6379",
        *,
        embedder: EmbeddingProvider | None = None,
        embedding_config: EmbeddingConfig | None = None,
        **kwargs,
    ) -> MemoryService:
        """Build a service against *redis_url* and load the index from the store."""
        embedding_config = embedding_config or EmbeddingConfig()
        provider = embedder or build_embedding_provider(embedding_config)
        client = Redis.from_url(redis_url)
        service = cls(client, provider, embedding_config=embedding_config, **kwargs)
        await service.rebuild_index()
        return service

    async def close(self) -> None:
        """Release the Redis client."""
        await self._redis.aclose()

    async def rebuild_index(self) -> int:
        """Reload every searchable record into the vector index.

        Afterwards the index follows the store through its index log, so
        changes made by other processes are picked up before each read.
        """
        with track_latency("service.rebuild_index"):
            indexed = await self.index_follower.rebuild()
        logger.info(
            "Vector index loaded: %d records, log position %s",
            indexed,
            self.index_follower.position,
        )
        return indexed

    # ----- Memories -----

    async def ingest(
        self,
        owner_agent: str,
        content: str,
        visibility: Visibility | str = Visibility.private,
    ) -> MemoryRecord:
        return await self.ingestion.ingest(owner_agent, content, visibility)

    async def search(
        self,
        requesting_agent: str,
        query_text: str,
        k: int = 10,
        include_shared: bool = True,
    ) -> list[MemoryRecord]:
        return await self.retrieval.search(
            requesting_agent, query_text, k=k, include_shared=include_shared
        )

    async def get(self, requesting_agent: str, record_id: str) -> MemoryRecord:
        return await self.retrieval.get(requesting_agent, record_id)

    async def reactivate(self, requesting_agent: str, record_id: str) -> MemoryRecord:
        return await self.retrieval.reactivate(requesting_agent, record_id)

    async def promote(self, owner_agent: str, record_id: str) -> MemoryRecord:
        """Share one of *owner_agent*'s private memories with every agent."""
        return await self.ingestion.promote(owner_agent, record_id)

    async def backfill_embeddings(self, batch_size: int | None = None) -> BackfillResult:
        return await self.ingestion.backfill_embeddings(batch_size)

    # ----- Audit and maintenance -----

    async def get_conflict_audit(
        self,
        owner_agent: str,
        since: datetime | None = None,
    ) -> list[ConflictAuditEntry]:
        if not owner_agent:
            raise InvalidInput("owner_agent must be a non-empty string")
        return await self.audit.read_conflicts(owner_agent, since=since)

    async def get_maintenance_runs(
        self, since: datetime | None = None
    ) -> list[MaintenanceRunSummary]:
        return await self.audit.read_runs(since=since)

    async def run_cycle(self) -> MaintenanceRunSummary:
        return await self.maintenance.run_cycle()

    async def health_report(self) -> HealthReport:
        """Status counts, embedding coverage and a per-agent breakdown."""
        await self.index_follower.catch_up()
        counts = await self.store.status_counts()
        total = await self.store.count()
        pending = await self.store.pending_embedding_count()

        agents: dict[str, AgentStats] = {}
        importance_sums: dict[str, float] = {}
        embedded = 0
        async for record in self.store.iter_records():
            if record.embedding is not None:
                embedded += 1
            stats = agents.setdefault(
                record.owner_agent, AgentStats(agent=record.owner_agent)
            )
            stats.total += 1
            if record.visibility == Visibility.shared:
                stats.shared += 1
            if record.status == MemoryStatus.active:
                stats.active += 1
                importance_sums[record.owner_agent] = (
                    importance_sums.get(record.owner_agent, 0.0) + record.importance
                )
            elif record.status == MemoryStatus.archived:
                stats.archived += 1
            else:
                stats.contradicted += 1
        for agent, stats in agents.items():
            if stats.active:
                stats.avg_importance = round(importance_sums[agent] / stats.active, 6)

        return HealthReport(
            total_records=total,
            status_counts={status.value: count for status, count in counts.items()},
            pending_embedding_count=pending,
            embedding_coverage=round(embedded / total, 6) if total else 1.0,
            indexed_count=len(self.index),
            conflict_count=await self.audit.conflict_count(),
            maintenance_run_count=await self.audit.run_count(),
            last_run_at=await self.audit.last_run_at(),
            last_conflict_at=await self.audit.last_conflict_at(),
            agents=sorted(agents.values(), key=lambda s: s.agent),
        )
