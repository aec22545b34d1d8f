"""Conflict arbitration between a candidate memory and its neighbours.

The resolver is pure: it reads records and vectors and returns a decision.
Committing that decision (and losing races while doing so) is the job of
the ingestion pipeline and the maintenance engine.

Bands on the top neighbour's cosine similarity ``s``:

* ``s >= duplicate_threshold``: duplicate, nothing new is stored.
* ``conflict_threshold + ambiguity_margin <= s < duplicate_threshold``:
  the candidate supersedes the neighbour (newer facts win).
* ``conflict_threshold <= s < conflict_threshold + ambiguity_margin``:
  evidence too weak to overwrite, both stay active.
* below ``conflict_threshold``: unrelated, plain insert.
"""

from __future__ import annotations

from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from enum import StrEnum

import numpy as np

from memstore.audit.schemas import ResolutionKind
from memstore.config import ConflictConfig
from memstore.index.hnsw import normalize
from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import MemoryStatus


class Outcome(StrEnum):
    insert = "insert"
    duplicate = "duplicate"
    superseded = "superseded"
    kept_both = "kept_both"


@dataclass(frozen=True)
class Neighbor:
    """An existing record near the candidate, with the index's score as a hint."""

    record: MemoryRecord
    hint: float


@dataclass(frozen=True)
class Resolution:
    outcome: Outcome
    neighbor: MemoryRecord | None = None
    similarity: float | None = None
    reason: str = ""

    @property
    def audit_kind(self) -> ResolutionKind | None:
        if self.outcome == Outcome.insert:
            return None
        return ResolutionKind(self.outcome.value)


@dataclass(frozen=True)
class ConsolidationPlan:
    """One duplicate cluster folded into its representative."""

    representative: MemoryRecord
    losers: tuple[MemoryRecord, ...]
    similarities: Mapping[str, float] = field(default_factory=dict)


def consolidation_priority(record: MemoryRecord) -> tuple:
    """Most accessed first, newest on ties; id keeps the order total."""
    return (record.access_count, record.created_at, record.id)


class ConflictResolver:
    """Threshold-based arbitration for ingestion and consolidation."""

    def __init__(self, config: ConflictConfig | None = None) -> None:
        self.config = config or ConflictConfig()
        cfg = self.config
        if not -1.0 <= cfg.conflict_threshold < cfg.duplicate_threshold <= 1.0:
            raise ValueError(
                "conflict_threshold must be below duplicate_threshold, both in [-1, 1]"
            )
        if cfg.ambiguity_margin < 0:
            raise ValueError("ambiguity_margin must be non-negative")

    def resolve(
        self,
        candidate_embedding: list[float],
        candidate_content: str,
        neighbors: Iterable[Neighbor],
    ) -> Resolution:
        """Decide what happens to the candidate given its nearest neighbours."""
        del candidate_content  # arbitration is purely similarity-based
        query = normalize(candidate_embedding)
        best: tuple[float, MemoryRecord] | None = None
        for neighbor in neighbors:
            record = neighbor.record
            if record.status != MemoryStatus.active:
                continue
            if record.embedding is not None:
                similarity = float(np.dot(query, normalize(record.embedding)))
            else:
                similarity = neighbor.hint
            if best is None or (similarity, record.created_at) > (
                best[0],
                best[1].created_at,
            ):
                best = (similarity, record)

        if best is None:
            return Resolution(Outcome.insert, reason="no active neighbours")

        similarity, record = best
        cfg = self.config
        if similarity >= cfg.duplicate_threshold:
            return Resolution(
                Outcome.duplicate,
                record,
                similarity,
                f"similarity {similarity:.4f} >= duplicate threshold "
                f"{cfg.duplicate_threshold:.2f}; existing memory reinforced",
            )
        if similarity >= cfg.conflict_threshold + cfg.ambiguity_margin:
            return Resolution(
                Outcome.superseded,
                record,
                similarity,
                f"similarity {similarity:.4f} in conflict band "
                f"[{cfg.conflict_threshold:.2f}, {cfg.duplicate_threshold:.2f}); "
                "newer statement supersedes older",
            )
        if similarity >= cfg.conflict_threshold:
            return Resolution(
                Outcome.kept_both,
                record,
                similarity,
                f"similarity {similarity:.4f} within {cfg.ambiguity_margin:.2f} of "
                f"conflict threshold {cfg.conflict_threshold:.2f}; "
                "evidence too weak to overwrite",
            )
        return Resolution(
            Outcome.insert,
            record,
            similarity,
            f"similarity {similarity:.4f} below conflict threshold",
        )

    def plan_consolidation(
        self,
        records: Iterable[MemoryRecord],
        candidates: Mapping[str, Iterable[str]],
    ) -> list[ConsolidationPlan]:
        """Greedy clique clustering of near-duplicates.

        *candidates* maps a record id to ids worth comparing against (the
        index's nearest neighbours); edges are symmetrised and every pair
        inside a cluster is checked exactly against ``duplicate_threshold``.
        """
        by_id = {
            r.id: r
            for r in records
            if r.status == MemoryStatus.active and r.embedding is not None
        }
        if len(by_id) < 2:
            return []
        vectors = {rid: normalize(r.embedding) for rid, r in by_id.items()}
        adjacency: dict[str, set[str]] = {rid: set() for rid in by_id}
        for rid, others in candidates.items():
            if rid not in by_id:
                continue
            for other in others:
                if other != rid and other in by_id:
                    adjacency[rid].add(other)
                    adjacency[other].add(rid)

        def sim(a: str, b: str) -> float:
            return float(np.dot(vectors[a], vectors[b]))

        threshold = self.config.duplicate_threshold
        ordered = sorted(by_id.values(), key=consolidation_priority, reverse=True)
        assigned: set[str] = set()
        plans: list[ConsolidationPlan] = []
        for seed in ordered:
            if seed.id in assigned:
                continue
            members = [seed.id]
            pool = sorted(
                (by_id[o] for o in adjacency[seed.id] if o not in assigned),
                key=consolidation_priority,
                reverse=True,
            )
            for other in pool:
                if all(sim(other.id, m) >= threshold for m in members):
                    members.append(other.id)
            if len(members) < 2:
                continue
            assigned.update(members)
            cluster = sorted(
                (by_id[m] for m in members), key=consolidation_priority, reverse=True
            )
            representative = cluster[0]
            plans.append(
                ConsolidationPlan(
                    representative=representative,
                    losers=tuple(cluster[1:]),
                    similarities={
                        loser.id: sim(loser.id, representative.id)
                        for loser in cluster[1:]
                    },
                )
            )
        return plans
