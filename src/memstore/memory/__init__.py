"""Memory domain: records, normalization and persistence."""

from __future__ import annotations

import hashlib
import re
import unicodedata
from datetime import datetime

from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import MemoryStatus
from memstore.memory.schemas import Scope
from memstore.memory.schemas import Visibility
from memstore.memory.store import RecordStore
from memstore.memory.store import Supersession

__all__ = [
    "MemoryRecord",
    "MemoryStatus",
    "RecordStore",
    "Scope",
    "Supersession",
    "Visibility",
    "create_memory_record",
    "fact_hash",
    "normalize_content",
]

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_content(content: str) -> str:
    """Unicode NFC, trimmed, with internal whitespace collapsed."""
    text = unicodedata.normalize("NFC", content)
    return _WHITESPACE_RE.sub(" ", text).strip()


def fact_hash(normalized: str) -> str:
    """Deterministic hash used for the exact-duplicate fast path.

    Case-folded so "Wedding is July 12" and "wedding is july 12" collide.
    """
    return hashlib.sha256(normalized.casefold().encode("utf-8")).hexdigest()


def create_memory_record(
    owner_agent: str,
    content: str,
    *,
    visibility: Visibility = Visibility.private,
    importance: float,
    now: datetime,
    embedding: list[float] | None = None,
    source_agent: str | None = None,
) -> MemoryRecord:
    """Factory for a new active record with all domain invariants.

    *content* must already be normalized.
    """
    return MemoryRecord(
        owner_agent=owner_agent,
        content=content,
        embedding=embedding,
        fact_hash=fact_hash(content),
        importance=importance,
        last_accessed_at=now,
        visibility=visibility,
        source_agent=source_agent or owner_agent,
        created_at=now,
    )
