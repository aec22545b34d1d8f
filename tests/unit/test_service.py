"""MemoryService facade tests: index rebuild, health report, audit access."""

from __future__ import annotations

import pytest

from memstore.errors import InvalidInput
from memstore.memory import MemoryStatus
from memstore.observability import latency_metrics_snapshot
from memstore.observability import outcome_counts_snapshot
from memstore.observability import reset_latency_metrics
from memstore.service import MemoryService
from tests.helpers.embedding import random_unit
from tests.helpers.embedding import with_similarity

BASE = random_unit("dairy")


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_latency_metrics()
    yield
    reset_latency_metrics()


async def _populate(service: MemoryService, embedder) -> dict[str, str]:
    embedder.register("Carissa is dairy-free", BASE)
    embedder.register(
        "Carissa is dairy-free and gluten-free", with_similarity(BASE, 0.9, seed=1)
    )
    old = await service.ingest("agent-a", "Carissa is dairy-free")
    new = await service.ingest("agent-a", "Carissa is dairy-free and gluten-free")
    embedder.down = True
    pending = await service.ingest("agent-a", "Wedding is July 12")
    embedder.down = False
    shared = await service.ingest("agent-b", "Office closes at 6pm", "shared")
    return {"old": old.id, "new": new.id, "pending": pending.id, "shared": shared.id}


class TestRebuildIndex:
    async def test_fresh_service_rebuilds_from_store(
        self, service, redis_client, embedder, embedding_config, clock
    ):
        ids = await _populate(service, embedder)

        restarted = MemoryService(
            redis_client, embedder, embedding_config=embedding_config, clock=clock
        )
        indexed = await restarted.rebuild_index()

        assert indexed == 2
        assert ids["new"] in restarted.index
        assert ids["shared"] in restarted.index
        assert ids["old"] not in restarted.index
        assert ids["pending"] not in restarted.index
        hits = await restarted.search("agent-a", "Carissa is dairy-free and gluten-free")
        assert hits[0].id == ids["new"]

    async def test_rebuild_latency_is_recorded(self, service):
        await service.rebuild_index()
        assert latency_metrics_snapshot()["service.rebuild_index"]["count"] == 1


class TestHealthReport:
    async def test_empty_store(self, service):
        report = await service.health_report()
        assert report.total_records == 0
        assert report.embedding_coverage == 1.0
        assert report.agents == []
        assert report.last_run_at is None

    async def test_counts_and_breakdown(self, service, embedder, clock):
        await _populate(service, embedder)
        await service.run_cycle()

        report = await service.health_report()

        assert report.total_records == 4
        assert report.status_counts[MemoryStatus.active.value] == 3
        assert report.status_counts[MemoryStatus.contradicted.value] == 1
        assert report.status_counts[MemoryStatus.archived.value] == 0
        assert report.pending_embedding_count == 0
        assert report.embedding_coverage == 1.0
        assert report.indexed_count == 3
        assert report.conflict_count == 1
        assert report.maintenance_run_count == 1
        assert report.last_run_at == clock.now
        assert report.last_conflict_at == clock.now

        agent_a, agent_b = report.agents
        assert (agent_a.agent, agent_a.total, agent_a.active) == ("agent-a", 3, 2)
        assert agent_a.contradicted == 1
        assert agent_a.avg_importance == pytest.approx(0.5)
        assert (agent_b.agent, agent_b.shared, agent_b.active) == ("agent-b", 1, 1)

    async def test_pending_embeddings_lower_coverage(self, service, embedder):
        embedder.down = True
        await service.ingest("agent-a", "Wedding is July 12")
        embedder.down = False
        await service.ingest("agent-a", "Venue is the old mill")

        report = await service.health_report()

        assert report.pending_embedding_count == 1
        assert report.embedding_coverage == pytest.approx(0.5)
        assert report.indexed_count == 1


class TestAuditAccess:
    async def test_conflict_audit_requires_owner(self, service):
        with pytest.raises(InvalidInput):
            await service.get_conflict_audit("")

    async def test_resolution_outcomes_are_counted(self, service, embedder):
        before = outcome_counts_snapshot().get("resolution.superseded", 0)
        await _populate(service, embedder)
        assert outcome_counts_snapshot()["resolution.superseded"] == before + 1
