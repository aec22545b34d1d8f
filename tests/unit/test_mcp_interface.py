"""MCP interface contract tests.

All tests use ``fastmcp.Client`` to exercise the full MCP protocol
(serialization, validation).  The server is configured with a
``MemoryService`` backed by the test Redis and the scripted embedder.
"""

from __future__ import annotations

import json

import pytest
from fastmcp import Client

from memstore import server
from memstore.errors import ConcurrentConflictRetry
from memstore.memory import MemoryStatus
from tests.helpers.embedding import random_unit
from tests.helpers.embedding import with_similarity


def _parse(result) -> dict:
    """Extract the JSON payload from a CallToolResult."""
    return json.loads(result.content[0].text)


async def _ingest(mcp_client, content: str, **kwargs) -> dict:
    args = {"agent_id": "agent-a", "content": content}
    args.update(kwargs)
    return _parse(await mcp_client.call_tool("ingest_memory", args))


# -----------------------------------------------------------------------
# ingest_memory
# -----------------------------------------------------------------------


class TestIngestMemory:
    """Contract tests for the ingest_memory tool."""

    async def test_accepts_valid_payload(self, mcp_client):
        data = await _ingest(mcp_client, "Wedding is July 12")
        assert data["status"] == "accepted"
        assert data["memory_id"].startswith("mem_")
        memory = data["memory"]
        assert memory["content"] == "Wedding is July 12"
        assert memory["visibility"] == "private"
        assert memory["searchable"] is True
        assert "embedding" not in memory

    async def test_repeat_returns_same_memory(self, mcp_client):
        first = await _ingest(mcp_client, "Wedding is July 12")
        second = await _ingest(mcp_client, "wedding is july 12")
        assert second["memory_id"] == first["memory_id"]
        assert second["memory"]["access_count"] == 1

    async def test_accepts_shared_visibility(self, mcp_client):
        data = await _ingest(mcp_client, "Office closes at 6pm", visibility="shared")
        assert data["memory"]["visibility"] == "shared"

    async def test_rejects_unknown_visibility(self, mcp_client):
        data = await _ingest(mcp_client, "Office closes at 6pm", visibility="public")
        assert data["status"] == "rejected"
        assert data["error_code"] == "validation_error"

    async def test_rejects_blank_content(self, mcp_client):
        data = await _ingest(mcp_client, "   ")
        assert data["status"] == "rejected"
        assert data["error_code"] == "invalid_input"

    async def test_rejects_missing_content(self, mcp_client):
        with pytest.raises(Exception):
            await mcp_client.call_tool("ingest_memory", {"agent_id": "agent-a"})

    async def test_unembedded_memory_is_flagged(self, mcp_client, embedder):
        embedder.down = True
        data = await _ingest(mcp_client, "Wedding is July 12")
        assert data["status"] == "accepted"
        assert data["memory"]["searchable"] is False

    async def test_exhausted_access_retries_are_structured(
        self, mcp_client, service, monkeypatch
    ):
        await _ingest(mcp_client, "Venue deposit is paid")

        async def _racing(record_id, **kwargs):
            raise ConcurrentConflictRetry(f"update of {record_id} kept racing")

        monkeypatch.setattr(service.store, "record_access", _racing)
        data = await _ingest(mcp_client, "Venue deposit is paid")

        assert data["status"] == "error"
        assert data["error_code"] == "resolution_failed"


# -----------------------------------------------------------------------
# search_memory
# -----------------------------------------------------------------------


class TestSearchMemory:
    """Contract tests for the search_memory tool."""

    async def test_returns_matching_memories(self, mcp_client):
        ingested = await _ingest(mcp_client, "Wedding is July 12")
        result = await mcp_client.call_tool(
            "search_memory", {"agent_id": "agent-a", "query": "Wedding is July 12"}
        )
        data = _parse(result)
        assert data["status"] == "ok"
        assert [m["id"] for m in data["memories"]] == [ingested["memory_id"]]

    async def test_other_agent_sees_nothing_private(self, mcp_client):
        await _ingest(mcp_client, "Wedding is July 12")
        result = await mcp_client.call_tool(
            "search_memory", {"agent_id": "agent-b", "query": "Wedding is July 12"}
        )
        assert _parse(result)["memories"] == []

    async def test_rejects_out_of_range_limit(self, mcp_client):
        result = await mcp_client.call_tool(
            "search_memory", {"agent_id": "agent-a", "query": "x", "limit": 0}
        )
        data = _parse(result)
        assert data["status"] == "error"
        assert data["error_code"] == "validation_error"

    async def test_reports_embedding_outage(self, mcp_client, embedder):
        embedder.down = True
        result = await mcp_client.call_tool(
            "search_memory", {"agent_id": "agent-a", "query": "Wedding"}
        )
        data = _parse(result)
        assert data["status"] == "error"
        assert data["error_code"] == "embedding_unavailable"

    async def test_reports_exhausted_access_retries(
        self, mcp_client, service, monkeypatch
    ):
        await _ingest(mcp_client, "Wedding is July 12")

        async def _racing(record_id, **kwargs):
            raise ConcurrentConflictRetry(f"update of {record_id} kept racing")

        monkeypatch.setattr(service.store, "record_access", _racing)
        result = await mcp_client.call_tool(
            "search_memory", {"agent_id": "agent-a", "query": "Wedding is July 12"}
        )
        data = _parse(result)
        assert data["status"] == "error"
        assert data["error_code"] == "concurrent_conflict"


# -----------------------------------------------------------------------
# get_conflict_audit
# -----------------------------------------------------------------------


class TestGetConflictAudit:
    """Contract tests for the get_conflict_audit tool."""

    async def _supersede(self, mcp_client, embedder) -> tuple[str, str]:
        base = random_unit("dairy")
        embedder.register("Carissa is dairy-free", base)
        embedder.register(
            "Carissa is dairy-free and gluten-free", with_similarity(base, 0.9, seed=1)
        )
        old = await _ingest(mcp_client, "Carissa is dairy-free")
        new = await _ingest(mcp_client, "Carissa is dairy-free and gluten-free")
        return old["memory_id"], new["memory_id"]

    async def test_lists_resolutions(self, mcp_client, embedder):
        old_id, new_id = await self._supersede(mcp_client, embedder)

        result = await mcp_client.call_tool("get_conflict_audit", {"agent_id": "agent-a"})

        data = _parse(result)
        assert data["status"] == "ok"
        [entry] = data["entries"]
        assert entry["resolution"] == "superseded"
        assert (entry["winning_id"], entry["losing_id"]) == (new_id, old_id)

    async def test_since_filter(self, mcp_client, embedder, clock):
        await self._supersede(mcp_client, embedder)
        later = clock.advance(hours=1)

        result = await mcp_client.call_tool(
            "get_conflict_audit", {"agent_id": "agent-a", "since": later.isoformat()}
        )
        assert _parse(result)["entries"] == []

    async def test_rejects_malformed_since(self, mcp_client):
        result = await mcp_client.call_tool(
            "get_conflict_audit", {"agent_id": "agent-a", "since": "yesterday-ish"}
        )
        data = _parse(result)
        assert data["status"] == "error"
        assert data["error_code"] == "validation_error"


# -----------------------------------------------------------------------
# run_maintenance
# -----------------------------------------------------------------------


class TestRunMaintenance:
    async def test_returns_summary(self, mcp_client, clock):
        await _ingest(mcp_client, "Wedding is July 12")
        clock.advance(days=1)

        data = _parse(await mcp_client.call_tool("run_maintenance", {}))

        assert data["status"] == "ok"
        assert data["summary"]["decayed_count"] == 1
        assert data["summary"]["run_type"] == "daily"

    async def test_partial_when_a_step_fails(self, mcp_client, service, monkeypatch):
        await _ingest(mcp_client, "Wedding is July 12")

        async def _boom(scope):
            raise RuntimeError("redis hiccup")

        monkeypatch.setattr(service.store, "active_records", _boom)
        data = _parse(await mcp_client.call_tool("run_maintenance", {}))

        assert data["status"] == "partial"
        steps = {e["step"] for e in data["summary"]["details"]["errors"]}
        assert steps == {"decay", "archive", "consolidate"}


# -----------------------------------------------------------------------
# reactivate_memory
# -----------------------------------------------------------------------


class TestReactivateMemory:
    async def test_reactivates_archived_memory(self, mcp_client, service):
        data = await _ingest(mcp_client, "Wedding is July 12")
        await service.store.update(
            data["memory_id"],
            lambda r: r.model_copy(update={"status": MemoryStatus.archived}),
        )

        result = await mcp_client.call_tool(
            "reactivate_memory", {"agent_id": "agent-a", "memory_id": data["memory_id"]}
        )

        payload = _parse(result)
        assert payload["status"] == "ok"
        assert payload["memory"]["status"] == "active"

    async def test_unknown_memory_is_not_found(self, mcp_client):
        result = await mcp_client.call_tool(
            "reactivate_memory", {"agent_id": "agent-a", "memory_id": "mem_missing"}
        )
        data = _parse(result)
        assert data["status"] == "rejected"
        assert data["error_code"] == "not_found"


# -----------------------------------------------------------------------
# memory_health
# -----------------------------------------------------------------------


class TestMemoryHealth:
    async def test_reports_counts_per_agent(self, mcp_client, embedder):
        await _ingest(mcp_client, "Wedding is July 12")
        await _ingest(mcp_client, "Office closes at 6pm", visibility="shared")
        embedder.down = True
        await _ingest(mcp_client, "Venue deposit is paid", agent_id="agent-b")

        data = _parse(await mcp_client.call_tool("memory_health", {}))

        assert data["status"] == "ok"
        report = data["report"]
        assert report["total_records"] == 3
        assert report["status_counts"]["active"] == 3
        assert report["pending_embedding_count"] == 1
        assert report["indexed_count"] == 2
        assert [a["agent"] for a in report["agents"]] == ["agent-a", "agent-b"]
        assert report["agents"][0]["shared"] == 1

    async def test_empty_store(self, mcp_client):
        report = _parse(await mcp_client.call_tool("memory_health", {}))["report"]
        assert report["total_records"] == 0
        assert report["embedding_coverage"] == 1.0
        assert report["agents"] == []


# -----------------------------------------------------------------------
# Server lifecycle
# -----------------------------------------------------------------------


class TestUnconfigured:
    async def test_tools_fail_without_service(self, monkeypatch):
        monkeypatch.setattr(server, "_service", None)
        async with Client(server.mcp) as client:
            with pytest.raises(Exception):
                await client.call_tool(
                    "ingest_memory", {"agent_id": "a", "content": "fact"}
                )
