"""Cosine HNSW graph keyed by string ids, backed by ``hnswlib``.

hnswlib labels are integers, so every add takes a fresh label and the
label <-> id maps live here.  Removal marks the label deleted: the node
keeps routing searches but is never returned.  Callers compact the graph
once tombstones outnumber live nodes.
"""

from __future__ import annotations

import math

import hnswlib  # type: ignore[import-untyped]
import numpy as np

_INITIAL_CAPACITY = 64
_DEFAULT_SEED = 100


def normalize(vector: list[float] | np.ndarray) -> np.ndarray:
    """Return *vector* as a unit-length float64 array."""
    array = np.asarray(vector, dtype=np.float64)
    if array.ndim != 1:
        raise ValueError("expected a one-dimensional vector")
    norm = float(np.linalg.norm(array))
    if norm == 0.0 or not math.isfinite(norm):
        raise ValueError("cannot normalize a zero or non-finite vector")
    return array / norm


def cosine_similarity(a: list[float] | np.ndarray, b: list[float] | np.ndarray) -> float:
    return float(np.dot(normalize(a), normalize(b)))


class HNSWIndex:
    """Approximate nearest-neighbour graph keyed by string ids."""

    def __init__(
        self,
        *,
        m: int = 16,
        ef_construction: int = 100,
        ef_search: int = 64,
        seed: int | None = None,
    ) -> None:
        if m < 2:
            raise ValueError("m must be at least 2")
        self._m = m
        self._ef_construction = max(ef_construction, m)
        self._ef_search = ef_search
        self._seed = _DEFAULT_SEED if seed is None else seed
        self._dimensions: int | None = None
        self._reset()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._label_of)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._label_of

    @property
    def dimensions(self) -> int | None:
        return self._dimensions

    @property
    def tombstone_count(self) -> int:
        return self._deleted

    @property
    def needs_compaction(self) -> bool:
        return self._deleted > len(self._label_of)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, item_id: str, vector: list[float] | np.ndarray) -> None:
        """Insert *item_id*; re-adding an existing id replaces its vector."""
        unit = normalize(vector).astype(np.float32)
        if self._dimensions is not None and unit.shape[0] != self._dimensions:
            raise ValueError(
                f"vector has {unit.shape[0]} dimensions, index uses {self._dimensions}"
            )
        if self._graph is None:
            self._dimensions = unit.shape[0]
            self._graph = self._new_graph(self._dimensions)
        if item_id in self._label_of:
            self.remove(item_id)

        capacity = self._graph.get_max_elements()
        if self._next_label >= capacity:
            self._graph.resize_index(capacity * 2)
        label = self._next_label
        self._graph.add_items(unit.reshape(1, -1), np.array([label]), num_threads=1)
        self._next_label += 1
        self._label_of[item_id] = label
        self._id_of[label] = item_id

    def remove(self, item_id: str) -> bool:
        """Tombstone *item_id*.  Returns ``False`` if it was not present."""
        label = self._label_of.pop(item_id, None)
        if label is None:
            return False
        self._graph.mark_deleted(label)
        del self._id_of[label]
        self._deleted += 1
        return True

    def compact(self) -> None:
        """Rebuild the graph from live nodes only, in insertion order."""
        live = sorted(self._label_of.items(), key=lambda item: item[1])
        vectors = (
            np.asarray(self._graph.get_items([label for _, label in live]))
            if live
            else []
        )
        self._reset()
        for (item_id, _), vector in zip(live, vectors):
            self.add(item_id, vector)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def search(
        self,
        vector: list[float] | np.ndarray,
        k: int,
        *,
        ef: int | None = None,
    ) -> list[tuple[str, float]]:
        """Top-*k* live items by cosine similarity, best first."""
        if k <= 0 or not self._label_of:
            return []
        query = normalize(vector).astype(np.float32)
        if query.shape[0] != self._dimensions:
            raise ValueError(
                f"query has {query.shape[0]} dimensions, index uses {self._dimensions}"
            )
        k = min(k, len(self._label_of))
        # Deleted nodes still occupy the beam, so widen it by the tombstones
        self._graph.set_ef(max(ef or self._ef_search, k + self._deleted))
        labels, distances = self._graph.knn_query(
            query.reshape(1, -1), k=k, num_threads=1
        )
        return [
            (self._id_of[int(label)], 1.0 - float(distance))
            for label, distance in zip(labels[0], distances[0])
        ]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        self._graph: hnswlib.Index | None = None
        self._next_label = 0
        self._label_of: dict[str, int] = {}
        self._id_of: dict[int, str] = {}
        self._deleted = 0

    def _new_graph(self, dimensions: int) -> hnswlib.Index:
        graph = hnswlib.Index(space="cosine", dim=dimensions)
        graph.init_index(
            max_elements=_INITIAL_CAPACITY,
            ef_construction=self._ef_construction,
            M=self._m,
            random_seed=self._seed,
        )
        graph.set_ef(self._ef_search)
        return graph
