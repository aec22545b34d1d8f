"""Approximate nearest-neighbour index."""

from memstore.index.follower import IndexFollower
from memstore.index.hnsw import cosine_similarity
from memstore.index.hnsw import HNSWIndex
from memstore.index.hnsw import normalize
from memstore.index.vector_index import VectorIndex

__all__ = [
    "HNSWIndex",
    "IndexFollower",
    "VectorIndex",
    "cosine_similarity",
    "normalize",
]
