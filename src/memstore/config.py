"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing, just plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding provider settings shared by ingestion and retrieval."""

    provider: str = "openai"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    dimensions: int = 1536
    timeout_seconds: float = 10.0
    max_input_chars: int = 32_000
    batch_size: int = 100


@dataclass(frozen=True)
class IndexConfig:
    """HNSW graph parameters for the per-scope vector index."""

    m: int = 16
    ef_construction: int = 100
    ef_search: int = 64
    seed: int | None = None


@dataclass(frozen=True)
class IngestionConfig:
    """Limits and defaults applied when new memories are written."""

    max_content_chars: int = 2000
    neighbor_k: int = 5
    initial_importance: float = 0.5
    access_importance_boost: float = 0.1
    max_resolution_retries: int = 3


@dataclass(frozen=True)
class ConflictConfig:
    """Similarity thresholds for duplicate and contradiction detection."""

    # Cosine similarity at or above which two memories say the same thing
    duplicate_threshold: float = 0.95
    # Lower bound of the "related, possibly contradictory" band
    conflict_threshold: float = 0.85
    # Width of the weak-evidence band just above conflict_threshold
    ambiguity_margin: float = 0.02


@dataclass(frozen=True)
class RetrievalConfig:
    """Ranking weights for semantic search (must sum to 1.0)."""

    similarity_weight: float = 0.7
    recency_weight: float = 0.2
    frequency_weight: float = 0.1
    recency_half_life_days: float = 30.0
    min_similarity: float = 0.0
    # Candidates fetched from the index per requested result
    oversample: int = 3


@dataclass(frozen=True)
class MaintenanceConfig:
    """Tuneable parameters for the daily maintenance cycle."""

    decay_factor: float = 0.98
    importance_floor: float = 0.01
    archive_threshold: float = 0.1
    archive_min_age_days: int = 30
    consolidation_neighbors: int = 10
    backfill_on_cycle: bool = True
    backfill_batch_size: int = 50


@dataclass(frozen=True)
class StoreConfig:
    """Redis key namespace for records and audit entries."""

    key_prefix: str = "memstore"
    max_cas_attempts: int = 16
    # Index-log entries older than this (relative to the newest) are trimmed
    index_log_retention_days: float = 7.0
