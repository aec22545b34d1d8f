"""Unit tests for the Redis-backed audit log."""

from __future__ import annotations

from datetime import datetime
from datetime import timedelta
from datetime import UTC

import pytest

from memstore.audit import AuditLog
from memstore.audit import ConflictAuditEntry
from memstore.audit import MaintenanceRunDetails
from memstore.audit import MaintenanceRunSummary
from memstore.audit import MaintenanceStepError
from memstore.audit import ResolutionKind

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_entry(
    owner: str = "agent-a",
    *,
    at: datetime = T0,
    resolution: ResolutionKind = ResolutionKind.superseded,
) -> ConflictAuditEntry:
    return ConflictAuditEntry(
        owner_agent=owner,
        winning_id="mem_new",
        losing_id="mem_old",
        similarity_score=0.9,
        resolution=resolution,
        reason="test",
        created_at=at,
    )


@pytest.fixture()
def audit(redis_client) -> AuditLog:
    return AuditLog(redis_client)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class TestSchemas:
    def test_entry_is_frozen(self):
        entry = _make_entry()
        with pytest.raises(Exception):
            entry.reason = "changed"  # type: ignore[misc]

    def test_entry_id_prefix(self):
        assert _make_entry().id.startswith("conf_")

    def test_run_summary_ok_reflects_errors(self):
        clean = MaintenanceRunSummary()
        failed = MaintenanceRunSummary(
            details=MaintenanceRunDetails(
                errors=(MaintenanceStepError(step="decay", scope="private:a", message="x"),)
            )
        )
        assert clean.ok
        assert not failed.ok
        assert clean.run_type == "daily"


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TestConflictLog:
    async def test_append_and_read_per_owner(self, audit):
        await audit.append_conflict(_make_entry("agent-a"))
        await audit.append_conflict(_make_entry("agent-b"))

        entries = await audit.read_conflicts("agent-a")
        assert len(entries) == 1
        assert entries[0].owner_agent == "agent-a"
        assert entries[0].resolution == ResolutionKind.superseded

    async def test_since_filter_is_inclusive(self, audit):
        for hours in (0, 1, 2):
            await audit.append_conflict(_make_entry(at=T0 + timedelta(hours=hours)))

        entries = await audit.read_conflicts("agent-a", since=T0 + timedelta(hours=1))
        assert [e.created_at for e in entries] == [
            T0 + timedelta(hours=1),
            T0 + timedelta(hours=2),
        ]

    async def test_entries_are_oldest_first(self, audit):
        late = _make_entry(at=T0 + timedelta(minutes=5))
        early = _make_entry(at=T0)
        await audit.append_conflict(late)
        await audit.append_conflict(early)
        entries = await audit.read_conflicts("agent-a")
        assert [e.id for e in entries] == [early.id, late.id]

    async def test_unknown_owner_is_empty(self, audit):
        assert await audit.read_conflicts("nobody") == []

    async def test_malformed_member_is_skipped(self, audit, redis_client):
        await audit.append_conflict(_make_entry())
        await redis_client.zadd(
            "memstore:audit:conflict_log:agent-a", {"not json": T0.timestamp()}
        )
        entries = await audit.read_conflicts("agent-a")
        assert len(entries) == 1

    async def test_counts_and_last_timestamp(self, audit):
        assert await audit.conflict_count() == 0
        assert await audit.last_conflict_at() is None

        await audit.append_conflict(_make_entry(at=T0))
        await audit.append_conflict(_make_entry("agent-b", at=T0 + timedelta(hours=3)))

        assert await audit.conflict_count() == 2
        assert await audit.last_conflict_at() == T0 + timedelta(hours=3)

    async def test_staged_entry_commits_with_transaction(self, audit, redis_client):
        pipe = redis_client.pipeline(transaction=True)
        audit.stage_conflict(pipe, _make_entry())
        assert await audit.conflict_count() == 0
        await pipe.execute()
        assert await audit.conflict_count() == 1


# ---------------------------------------------------------------------------
# Maintenance runs
# ---------------------------------------------------------------------------


class TestRunLog:
    async def test_append_and_read_runs(self, audit):
        summary = MaintenanceRunSummary(
            archived_count=2,
            consolidated_count=1,
            decayed_count=7,
            details=MaintenanceRunDetails(scopes_processed=3, backfilled_count=4),
            created_at=T0,
        )
        await audit.append_run(summary)

        runs = await audit.read_runs()
        assert runs == [summary]
        assert await audit.run_count() == 1
        assert await audit.last_run_at() == T0

    async def test_since_filter(self, audit):
        await audit.append_run(MaintenanceRunSummary(created_at=T0))
        await audit.append_run(MaintenanceRunSummary(created_at=T0 + timedelta(days=1)))
        runs = await audit.read_runs(since=T0 + timedelta(hours=12))
        assert len(runs) == 1
