"""Scope-partitioned vector index.

One ``HNSWIndex`` per ``(owner_agent, visibility)`` scope.  Private scopes
never mix; the shared pool scope fans a query out over every owner's
shared graph and merges the hits.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from operator import itemgetter

from memstore.config import IndexConfig
from memstore.index.hnsw import HNSWIndex
from memstore.memory.schemas import MemoryRecord
from memstore.memory.schemas import Scope
from memstore.memory.schemas import Visibility

logger = logging.getLogger(__name__)


class VectorIndex:
    """In-memory ANN index over active, embedded records."""

    def __init__(self, config: IndexConfig | None = None) -> None:
        self.config = config or IndexConfig()
        self._graphs: dict[str, HNSWIndex] = {}
        self._scope_of: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._scope_of)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._scope_of

    def scope_of(self, record_id: str) -> Scope | None:
        key = self._scope_of.get(record_id)
        return Scope.from_key(key) if key is not None else None

    # ----- Write -----

    def insert(self, record_id: str, embedding: list[float], scope: Scope) -> None:
        """Index *record_id* under *scope*, moving it if it lived elsewhere."""
        if scope.is_pool:
            raise ValueError("records are indexed under a concrete owner scope")
        previous = self._scope_of.get(record_id)
        if previous is not None and previous != scope.key:
            self.remove(record_id)
        graph = self._graphs.get(scope.key)
        if graph is None:
            graph = HNSWIndex(
                m=self.config.m,
                ef_construction=self.config.ef_construction,
                ef_search=self.config.ef_search,
                seed=self.config.seed,
            )
            self._graphs[scope.key] = graph
        graph.add(record_id, embedding)
        self._scope_of[record_id] = scope.key

    def remove(self, record_id: str) -> bool:
        """Drop *record_id* from results.  Unknown ids are a no-op."""
        key = self._scope_of.pop(record_id, None)
        if key is None:
            return False
        graph = self._graphs[key]
        graph.remove(record_id)
        if graph.needs_compaction:
            logger.debug(
                "Compacting scope %s (%d live, %d tombstones)",
                key,
                len(graph),
                graph.tombstone_count,
            )
            graph.compact()
        return True

    def rebuild(self, records: Iterable[MemoryRecord]) -> int:
        """Replace the whole index with the searchable subset of *records*."""
        self._graphs.clear()
        self._scope_of.clear()
        for record in records:
            if record.is_searchable:
                self.insert(record.id, record.embedding, record.scope)
        logger.info(
            "Vector index rebuilt: %d records across %d scopes",
            len(self._scope_of),
            len(self._graphs),
        )
        return len(self._scope_of)

    # ----- Read -----

    def query(
        self,
        embedding: list[float],
        scope: Scope,
        k: int,
    ) -> list[tuple[str, float]]:
        """Top-*k* ``(record_id, cosine_similarity)`` pairs within *scope*."""
        if k <= 0:
            return []
        if scope.is_pool:
            prefix = f"{Visibility.shared.value}:"
            graphs = [g for key, g in self._graphs.items() if key.startswith(prefix)]
        else:
            graph = self._graphs.get(scope.key)
            graphs = [graph] if graph is not None else []
        hits = (hit for graph in graphs for hit in graph.search(embedding, k))
        return heapq.nlargest(k, hits, key=itemgetter(1))
