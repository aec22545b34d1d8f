"""Reliability tests: cross-process races, restarts and store invariants.

Two ``MemoryService`` instances over one Redis share nothing in memory, so
these tests exercise the optimistic transactions rather than the scope
locks.
"""

from __future__ import annotations

import asyncio

from memstore.audit import ResolutionKind
from memstore.memory import create_memory_record
from memstore.memory import MemoryStatus
from memstore.memory import Scope
from memstore.memory import Visibility
from tests.helpers.embedding import random_unit
from tests.helpers.embedding import START
from tests.helpers.embedding import with_similarity

PRIVATE_A = Scope(owner_agent="agent-a", visibility=Visibility.private)


async def _assert_chains_terminate(service) -> None:
    async for record in service.store.iter_records():
        if record.status != MemoryStatus.contradicted:
            continue
        end = await service.store.follow_supersession(record.id)
        assert end is not None
        assert end.status == MemoryStatus.active


class TestCrossProcessRaces:
    async def test_identical_ingest_from_two_processes(self, make_service):
        first, second = make_service(), make_service()

        results = await asyncio.gather(
            *(
                service.ingest("agent-a", "Wedding is July 12")
                for service in (first, second, first, second)
            )
        )

        assert len({r.id for r in results}) == 1
        assert await first.store.count() == 1
        assert (await first.store.get(results[0].id)).access_count == 3

    async def test_competing_supersessions_contradict_loser_once(
        self, make_service, embedder
    ):
        base = random_unit("diet")
        left = with_similarity(base, 0.9, seed=1)
        right = (2 * 0.9 * base - left).tolist()
        embedder.register("Carissa is dairy-free", base)
        embedder.register("Carissa is dairy-free since May", left)
        embedder.register("Carissa eats dairy again", right)

        writer, other = make_service(), make_service()
        old = await writer.ingest("agent-a", "Carissa is dairy-free")
        assert await other.rebuild_index() == 1

        await asyncio.gather(
            writer.ingest("agent-a", "Carissa is dairy-free since May"),
            other.ingest("agent-a", "Carissa eats dairy again"),
        )

        stored = await writer.store.get(old.id)
        assert stored.status == MemoryStatus.contradicted
        entries = await writer.get_conflict_audit("agent-a")
        superseded = [e for e in entries if e.resolution == ResolutionKind.superseded]
        assert len(superseded) == 1
        assert superseded[0].winning_id == stored.superseded_by
        assert len(await writer.store.active_ids(PRIVATE_A)) == 2
        await _assert_chains_terminate(writer)

    async def test_many_parallel_ingests_across_scopes(self, make_service):
        service = make_service()
        agents = [f"agent-{i}" for i in range(4)]

        records = await asyncio.gather(
            *(
                service.ingest(agent, f"{agent} fact number {n}")
                for agent in agents
                for n in range(5)
            )
        )

        assert await service.store.count() == 20
        assert all(record.id in service.index for record in records)
        for agent in agents:
            scope = Scope(owner_agent=agent, visibility=Visibility.private)
            assert len(await service.store.active_ids(scope)) == 5


class TestRestartSafety:
    async def test_cycle_after_restart_is_a_noop_the_same_day(self, make_service, clock):
        before = make_service()
        await before.ingest("agent-a", "Wedding is July 12")
        await before.ingest("agent-a", "Venue is the old mill")
        clock.advance(days=2)
        first = await before.run_cycle()

        after = make_service()
        await after.rebuild_index()
        second = await after.run_cycle()

        assert first.decayed_count == 2
        assert (second.decayed_count, second.archived_count) == (0, 0)
        assert second.consolidated_count == 0
        assert len(await after.get_maintenance_runs()) == 2

    async def test_rebuilt_index_serves_search(self, make_service):
        before = make_service()
        record = await before.ingest("agent-a", "Wedding is July 12")

        after = make_service()
        await after.rebuild_index()

        hits = await after.search("agent-a", "Wedding is July 12")
        assert [h.id for h in hits] == [record.id]


class TestIndexFollowsStore:
    async def test_backfill_by_cron_process_reaches_running_server(
        self, make_service, embedder
    ):
        server, cron = make_service(), make_service()
        embedder.down = True
        record = await server.ingest("planner", "Wedding is July 12")
        embedder.down = False
        assert await server.search("planner", "Wedding is July 12") == []

        summary = await cron.run_cycle()
        assert summary.details.backfilled_count == 1

        hits = await server.search("planner", "Wedding is July 12")
        assert [h.id for h in hits] == [record.id]

    async def test_reactivation_elsewhere_reaches_running_server(
        self, make_service, clock
    ):
        server = make_service()
        record = await server.ingest("planner", "Venue is the old mill")
        clock.advance(days=80)
        assert (await server.run_cycle()).archived_count == 1
        assert await server.search("planner", "Venue is the old mill") == []

        await make_service().reactivate("planner", record.id)

        hits = await server.search("planner", "Venue is the old mill")
        assert [h.id for h in hits] == [record.id]

    async def test_supersession_elsewhere_leaves_running_index(
        self, make_service, embedder
    ):
        base = random_unit("diet")
        embedder.register("Carissa is dairy-free", base)
        embedder.register("Carissa eats dairy again", with_similarity(base, 0.9, seed=4))
        server, other = make_service(), make_service()
        old = await server.ingest("agent-a", "Carissa is dairy-free")

        new = await other.ingest("agent-a", "Carissa eats dairy again")
        await server.search("agent-a", "Carissa is dairy-free")

        assert (await server.store.get(old.id)).superseded_by == new.id
        assert old.id not in server.index
        assert new.id in server.index


class TestConsolidation:
    async def test_cycle_reduces_duplicate_clusters(self, make_service):
        service = make_service()
        base = random_unit("duplicates")
        for i in range(5):
            record = create_memory_record(
                "agent-a",
                f"Standup is at 9:30 (copy {i})",
                importance=0.5,
                now=START,
                embedding=with_similarity(base, 0.99, seed=i),
            )
            assert await service.store.insert(record)
        for i in range(3):
            record = create_memory_record(
                "agent-a",
                f"Unrelated fact {i}",
                importance=0.5,
                now=START,
                embedding=random_unit(f"unrelated{i}").tolist(),
            )
            assert await service.store.insert(record)
        await service.rebuild_index()

        summary = await service.run_cycle()

        assert summary.consolidated_count == 4
        assert len(await service.store.active_ids(PRIVATE_A)) == 4
        await _assert_chains_terminate(service)
