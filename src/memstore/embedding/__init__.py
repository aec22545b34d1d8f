"""Embedding providers."""

from memstore.embedding.adapters import build_embedding_provider
from memstore.embedding.adapters import HashingEmbeddingProvider
from memstore.embedding.adapters import OpenAICompatibleEmbeddingProvider
from memstore.embedding.provider import embed_batch_with_timeout
from memstore.embedding.provider import embed_with_timeout
from memstore.embedding.provider import EmbeddingError
from memstore.embedding.provider import EmbeddingProvider

__all__ = [
    "EmbeddingError",
    "EmbeddingProvider",
    "HashingEmbeddingProvider",
    "OpenAICompatibleEmbeddingProvider",
    "build_embedding_provider",
    "embed_batch_with_timeout",
    "embed_with_timeout",
]
