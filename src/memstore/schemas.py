"""Pydantic models for the MCP tool surface and the health report."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from pydantic import Field

from memstore.audit.schemas import ConflictAuditEntry
from memstore.audit.schemas import MaintenanceRunSummary
from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import Visibility

# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class IngestMemoryInput(BaseModel):
    """Input for ingest_memory tool."""

    agent_id: str = Field(
        min_length=1,
        description="Agent that owns the memory.",
    )
    content: str = Field(
        description="The fact as free text.",
    )
    visibility: Visibility = Field(
        default=Visibility.private,
        description="private (owner only) or shared (all agents).",
    )


class SearchMemoryInput(BaseModel):
    """Input for search_memory tool."""

    agent_id: str = Field(
        min_length=1,
        description="Agent issuing the query.",
    )
    query: str = Field(
        min_length=1,
        description="Natural language search query.",
    )
    limit: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum number of memories to return.",
    )
    include_shared: bool = Field(
        default=True,
        description="Also search memories shared by any agent.",
    )


class ConflictAuditInput(BaseModel):
    """Input for get_conflict_audit tool."""

    agent_id: str = Field(min_length=1)
    since: datetime | None = Field(
        default=None,
        description="Only entries created at or after this instant.",
    )


class ReactivateMemoryInput(BaseModel):
    """Input for reactivate_memory tool."""

    agent_id: str = Field(min_length=1)
    memory_id: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class MemoryView(BaseModel):
    """A memory as returned to agents (no embedding payload)."""

    id: str
    owner_agent: str
    content: str
    status: str
    visibility: str
    importance: float
    access_count: int
    source_agent: str
    superseded_by: str | None = None
    searchable: bool = Field(
        description="False while the record still waits for an embedding.",
    )
    created_at: datetime
    last_accessed_at: datetime

    @classmethod
    def from_record(cls, record: MemoryRecord) -> MemoryView:
        return cls(
            id=record.id,
            owner_agent=record.owner_agent,
            content=record.content,
            status=record.status.value,
            visibility=record.visibility.value,
            importance=round(record.importance, 6),
            access_count=record.access_count,
            source_agent=record.source_agent,
            superseded_by=record.superseded_by,
            searchable=record.embedding is not None,
            created_at=record.created_at,
            last_accessed_at=record.last_accessed_at,
        )


class IngestMemoryResult(BaseModel):
    """Response from ingest_memory."""

    memory_id: str = Field(default="")
    status: str = Field(
        default="accepted",
        description="Ingestion status (accepted, rejected, error).",
    )
    memory: MemoryView | None = None
    error_code: str | None = None
    message: str | None = None


class SearchMemoryResult(BaseModel):
    """Response from search_memory."""

    status: str = "ok"
    memories: list[MemoryView] = Field(default_factory=list)
    error_code: str | None = None
    message: str | None = None


class ConflictAuditResult(BaseModel):
    status: str = "ok"
    entries: list[ConflictAuditEntry] = Field(default_factory=list)
    error_code: str | None = None
    message: str | None = None


class MaintenanceResult(BaseModel):
    status: str = "ok"
    summary: MaintenanceRunSummary | None = None
    error_code: str | None = None
    message: str | None = None


class ReactivateMemoryResult(BaseModel):
    status: str = "ok"
    memory: MemoryView | None = None
    error_code: str | None = None
    message: str | None = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class AgentStats(BaseModel):
    """Per-owner record counts."""

    agent: str
    total: int = 0
    active: int = 0
    archived: int = 0
    contradicted: int = 0
    shared: int = 0
    avg_importance: float = Field(
        default=0.0,
        description="Mean importance over the agent's active records.",
    )


class HealthReport(BaseModel):
    """Store-wide health snapshot."""

    total_records: int
    status_counts: dict[str, int]
    pending_embedding_count: int
    embedding_coverage: float = Field(
        description="Fraction of records that carry an embedding.",
    )
    indexed_count: int
    conflict_count: int
    maintenance_run_count: int
    last_run_at: datetime | None = None
    last_conflict_at: datetime | None = None
    agents: list[AgentStats] = Field(default_factory=list)


class MemoryHealthResult(BaseModel):
    status: str = "ok"
    report: HealthReport | None = None
    error_code: str | None = None
    message: str | None = None
