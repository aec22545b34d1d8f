"""Exception hierarchy for the memory store.

Only ``InvalidInput``, ``RecordNotFound`` and ``EmbeddingUnavailable`` are
meant to reach callers; the remaining types are raised and handled inside
the engine and surface only when a retry budget is exhausted.
"""

from __future__ import annotations


class MemoryStoreError(Exception):
    """Base class for every error raised by memstore."""


class InvalidInput(MemoryStoreError):
    """Content or arguments rejected before any side effect."""


class RecordNotFound(MemoryStoreError):
    """The record does not exist or is not visible to the caller."""


class EmbeddingUnavailable(MemoryStoreError):
    """The embedding provider failed or timed out."""


class ConcurrentConflictRetry(MemoryStoreError):
    """A compare-and-swap on a neighbor's status lost a race."""


class ResolutionFailed(MemoryStoreError):
    """Conflict resolution kept losing races past the retry budget."""


class SupersessionCycleError(MemoryStoreError):
    """A supersession would create a cycle or point at a non-active record."""


class MaintenanceRunFailed(MemoryStoreError):
    """One maintenance step failed for one scope."""

    def __init__(self, step: str, scope_key: str, message: str) -> None:
        super().__init__(f"{step} failed for scope {scope_key}: {message}")
        self.step = step
        self.scope_key = scope_key
        self.message = message
