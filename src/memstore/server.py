"""memstore FastMCP server.

Tools delegate to a configured ``MemoryService``; the module holds nothing
but that reference.  Call ``configure(...)`` before using the server.
"""

from __future__ import annotations

from time import perf_counter

from fastmcp import FastMCP
from pydantic import ValidationError

from memstore.errors import ConcurrentConflictRetry
from memstore.errors import EmbeddingUnavailable
from memstore.errors import InvalidInput
from memstore.errors import RecordNotFound
from memstore.errors import ResolutionFailed
from memstore.observability import record_latency
from memstore.schemas import ConflictAuditInput
from memstore.schemas import ConflictAuditResult
from memstore.schemas import IngestMemoryInput
from memstore.schemas import IngestMemoryResult
from memstore.schemas import MaintenanceResult
from memstore.schemas import MemoryHealthResult
from memstore.schemas import MemoryView
from memstore.schemas import ReactivateMemoryInput
from memstore.schemas import ReactivateMemoryResult
from memstore.schemas import SearchMemoryInput
from memstore.schemas import SearchMemoryResult
from memstore.service import MemoryService

mcp = FastMCP("memstore")

# ---------------------------------------------------------------------------
# Service instance (set via configure())
# ---------------------------------------------------------------------------

_service: MemoryService | None = None


async def configure(
    redis_url: str = "redis://localhost:6379",
    *,
    service: MemoryService | None = None,
    **kwargs,
) -> None:
    """Attach the server to a memory service.

    Pass a ready *service*, or let one be built from *redis_url* and the
    keyword arguments accepted by ``MemoryService.connect``.
    """
    global _service
    if _service is not None and _service is not service:
        try:
            await _service.close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass
    _service = service or await MemoryService.connect(redis_url, **kwargs)


async def shutdown() -> None:
    """Close the backend client and release server resources."""
    global _service
    if _service is not None:
        await _service.close()
        _service = None


def _get_service() -> MemoryService:
    """Return the memory service or raise."""
    if _service is None:
        raise RuntimeError("Memory service not configured. Call configure() first.")
    return _service


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    return str(err.get("msg", "Invalid input"))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def ingest_memory(
    agent_id: str,
    content: str,
    visibility: str = "private",
) -> IngestMemoryResult:
    """Store a fact for an agent, resolving duplicates and contradictions.

    Args:
        agent_id: Agent that owns the memory.
        content: The fact as free text.
        visibility: "private" (default) or "shared".
    """
    start = perf_counter()
    ok = False
    try:
        service = _get_service()
        try:
            validated = IngestMemoryInput.model_validate(
                {"agent_id": agent_id, "content": content, "visibility": visibility}
            )
        except ValidationError as exc:
            return IngestMemoryResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        try:
            record = await service.ingest(
                validated.agent_id, validated.content, validated.visibility
            )
        except InvalidInput as exc:
            return IngestMemoryResult(
                status="rejected", error_code="invalid_input", message=str(exc)
            )
        except (ConcurrentConflictRetry, ResolutionFailed) as exc:
            return IngestMemoryResult(
                status="error", error_code="resolution_failed", message=str(exc)
            )

        ok = True
        return IngestMemoryResult(
            memory_id=record.id, memory=MemoryView.from_record(record)
        )
    finally:
        record_latency(
            operation="mcp.ingest_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def search_memory(
    agent_id: str,
    query: str,
    limit: int = 10,
    include_shared: bool = True,
) -> SearchMemoryResult:
    """Retrieve the memories most relevant to a query.

    Args:
        agent_id: Agent issuing the query; sees its own private memories.
        query: Natural language query.
        limit: Max memories returned.
        include_shared: Also search memories shared by any agent.
    """
    start = perf_counter()
    ok = False
    try:
        service = _get_service()
        try:
            validated = SearchMemoryInput.model_validate(
                {
                    "agent_id": agent_id,
                    "query": query,
                    "limit": limit,
                    "include_shared": include_shared,
                }
            )
        except ValidationError as exc:
            return SearchMemoryResult(
                status="error",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        try:
            records = await service.search(
                validated.agent_id,
                validated.query,
                k=validated.limit,
                include_shared=validated.include_shared,
            )
        except InvalidInput as exc:
            return SearchMemoryResult(
                status="error", error_code="invalid_input", message=str(exc)
            )
        except EmbeddingUnavailable as exc:
            return SearchMemoryResult(
                status="error", error_code="embedding_unavailable", message=str(exc)
            )
        except ConcurrentConflictRetry as exc:
            return SearchMemoryResult(
                status="error", error_code="concurrent_conflict", message=str(exc)
            )

        ok = True
        return SearchMemoryResult(
            memories=[MemoryView.from_record(record) for record in records]
        )
    finally:
        record_latency(
            operation="mcp.search_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def get_conflict_audit(
    agent_id: str,
    since: str | None = None,
) -> ConflictAuditResult:
    """List conflict resolutions recorded for an agent's memories.

    Args:
        agent_id: Owner whose audit trail to read.
        since: Optional ISO-8601 timestamp; older entries are skipped.
    """
    start = perf_counter()
    ok = False
    try:
        service = _get_service()
        try:
            validated = ConflictAuditInput.model_validate(
                {"agent_id": agent_id, "since": since}
            )
        except ValidationError as exc:
            return ConflictAuditResult(
                status="error",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        entries = await service.get_conflict_audit(
            validated.agent_id, since=validated.since
        )
        ok = True
        return ConflictAuditResult(entries=entries)
    finally:
        record_latency(
            operation="mcp.get_conflict_audit",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def run_maintenance() -> MaintenanceResult:
    """Run one maintenance cycle (decay, archive, consolidate) now."""
    start = perf_counter()
    ok = False
    try:
        summary = await _get_service().run_cycle()
        ok = summary.ok
        return MaintenanceResult(
            status="ok" if summary.ok else "partial",
            summary=summary,
        )
    finally:
        record_latency(
            operation="mcp.run_maintenance",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def reactivate_memory(agent_id: str, memory_id: str) -> ReactivateMemoryResult:
    """Bring an archived memory back into search results.

    Args:
        agent_id: Agent requesting the memory by exact id.
        memory_id: ID of the archived memory.
    """
    start = perf_counter()
    ok = False
    try:
        service = _get_service()
        try:
            validated = ReactivateMemoryInput.model_validate(
                {"agent_id": agent_id, "memory_id": memory_id}
            )
        except ValidationError as exc:
            return ReactivateMemoryResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        try:
            record = await service.reactivate(validated.agent_id, validated.memory_id)
        except RecordNotFound:
            return ReactivateMemoryResult(
                status="rejected",
                error_code="not_found",
                message=f"Memory '{validated.memory_id}' not found",
            )
        except InvalidInput as exc:
            return ReactivateMemoryResult(
                status="rejected", error_code="invalid_input", message=str(exc)
            )
        ok = True
        return ReactivateMemoryResult(memory=MemoryView.from_record(record))
    finally:
        record_latency(
            operation="mcp.reactivate_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def memory_health() -> MemoryHealthResult:
    """Report record counts, embedding coverage and audit totals per agent."""
    start = perf_counter()
    ok = False
    try:
        report = await _get_service().health_report()
        ok = True
        return MemoryHealthResult(report=report)
    finally:
        record_latency(
            operation="mcp.memory_health",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )
