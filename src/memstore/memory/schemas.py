"""Memory domain data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from datetime import UTC
from enum import StrEnum

from pydantic import BaseModel
from pydantic import Field


class Visibility(StrEnum):
    """Who may read a memory besides its owner."""

    private = "private"
    shared = "shared"


class MemoryStatus(StrEnum):
    """Lifecycle states of a memory record."""

    active = "active"
    archived = "archived"
    contradicted = "contradicted"


@dataclass(frozen=True)
class Scope:
    """An ``(owner_agent, visibility)`` partition of the record set.

    ``owner_agent=None`` is only valid with shared visibility and denotes
    the shared pool: every owner's shared records at once.  The pool is a
    read scope; writes always target a concrete owner.
    """

    owner_agent: str | None
    visibility: Visibility

    def __post_init__(self) -> None:
        if self.owner_agent is None and self.visibility != Visibility.shared:
            raise ValueError("only shared scopes may omit owner_agent")

    @classmethod
    def shared_pool(cls) -> Scope:
        return cls(owner_agent=None, visibility=Visibility.shared)

    @classmethod
    def from_key(cls, key: str) -> Scope:
        visibility, _, owner = key.partition(":")
        return cls(owner_agent=owner or None, visibility=Visibility(visibility))

    @property
    def is_pool(self) -> bool:
        return self.owner_agent is None

    @property
    def key(self) -> str:
        # Visibility first so owners may contain ':'
        return f"{self.visibility.value}:{self.owner_agent or ''}"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class MemoryRecord(BaseModel):
    """A single persisted memory."""

    id: str = Field(
        default_factory=lambda: f"mem_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as mem_{uuid4_hex}.",
    )
    owner_agent: str = Field(
        description="Agent that authored the memory.",
    )
    content: str = Field(
        description="Normalized text of the fact.",
    )
    embedding: list[float] | None = Field(
        default=None,
        description="Provider vector; absent until the provider succeeds.",
    )
    fact_hash: str = Field(
        description="SHA-256 of the normalized, case-folded content.",
    )
    status: MemoryStatus = MemoryStatus.active
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    access_count: int = Field(default=0, ge=0)
    last_accessed_at: datetime = Field(default_factory=utcnow)
    visibility: Visibility = Visibility.private
    source_agent: str = Field(
        description="Originating agent; differs from owner only after promotion.",
    )
    superseded_by: str | None = Field(
        default=None,
        description="Record that replaced this one; set only when contradicted.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    decayed_at: datetime | None = Field(
        default=None,
        description="Anchor of the last applied decay step.",
    )

    @property
    def scope(self) -> Scope:
        return Scope(owner_agent=self.owner_agent, visibility=self.visibility)

    @property
    def is_searchable(self) -> bool:
        return self.status == MemoryStatus.active and self.embedding is not None

    def visible_to(self, agent: str) -> bool:
        return self.visibility == Visibility.shared or self.owner_agent == agent
