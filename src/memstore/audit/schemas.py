"""Audit entry types and data models."""

from __future__ import annotations

import uuid
from datetime import datetime
from datetime import UTC
from enum import StrEnum

from pydantic import BaseModel
from pydantic import Field


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class ResolutionKind(StrEnum):
    """How a conflict between two memories was settled."""

    duplicate = "duplicate"
    superseded = "superseded"
    kept_both = "kept_both"
    consolidated = "consolidated"


class ConflictAuditEntry(BaseModel):
    """A single immutable conflict-resolution record."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: f"conf_{uuid.uuid4().hex}")
    owner_agent: str
    winning_id: str
    losing_id: str | None = Field(
        default=None,
        description="None when the losing side was never persisted (duplicates).",
    )
    similarity_score: float
    resolution: ResolutionKind
    reason: str
    created_at: datetime = Field(default_factory=_utcnow)


class MaintenanceStepError(BaseModel):
    """One failed maintenance step for one scope."""

    model_config = {"frozen": True}

    step: str
    scope: str
    message: str


class MaintenanceRunDetails(BaseModel):
    """Closed, typed detail block of a maintenance run."""

    model_config = {"frozen": True}

    scopes_processed: int = 0
    backfilled_count: int = 0
    backfill_failed_count: int = 0
    errors: tuple[MaintenanceStepError, ...] = ()


class MaintenanceRunSummary(BaseModel):
    """Outcome of one maintenance cycle; one per run, append-only."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: f"run_{uuid.uuid4().hex}")
    run_type: str = "daily"
    archived_count: int = 0
    consolidated_count: int = 0
    decayed_count: int = 0
    details: MaintenanceRunDetails = Field(default_factory=MaintenanceRunDetails)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def ok(self) -> bool:
        return not self.details.errors
