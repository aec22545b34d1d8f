"""Embedding provider protocol and the timeout guard used by the engine."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Protocol

from memstore.errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Protocol for text embedding providers.

    Identical input must map to the same vector (or vectors close enough
    not to cross the duplicate threshold).  Tests use a scripted provider.
    """

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


class EmbeddingError(Exception):
    """Raised by embedding providers when a call fails."""


def _check_vector(vector: list[float], dimensions: int | None) -> list[float]:
    if dimensions is not None and len(vector) != dimensions:
        raise EmbeddingUnavailable(
            f"provider returned {len(vector)} dimensions, expected {dimensions}"
        )
    if not all(math.isfinite(v) for v in vector):
        raise EmbeddingUnavailable("provider returned non-finite values")
    if not any(vector):
        raise EmbeddingUnavailable("provider returned a zero vector")
    return [float(v) for v in vector]


async def embed_with_timeout(
    provider: EmbeddingProvider,
    text: str,
    *,
    timeout_seconds: float,
    dimensions: int | None = None,
) -> list[float]:
    """Embed *text*, mapping any provider failure to ``EmbeddingUnavailable``.

    Cancellation is not a provider failure and propagates unchanged.
    """
    try:
        vector = await asyncio.wait_for(provider.embed(text), timeout=timeout_seconds)
    except TimeoutError as exc:
        logger.warning("Embedding timed out after %.1fs", timeout_seconds)
        raise EmbeddingUnavailable(
            f"embedding timed out after {timeout_seconds}s"
        ) from exc
    except EmbeddingError as exc:
        logger.warning("Embedding provider failed: %s", exc)
        raise EmbeddingUnavailable(str(exc)) from exc
    except Exception as exc:
        logger.warning(
            "Embedding provider raised %s", type(exc).__name__, exc_info=True
        )
        raise EmbeddingUnavailable(f"provider raised {type(exc).__name__}") from exc
    return _check_vector(vector, dimensions)


async def embed_batch_with_timeout(
    provider: EmbeddingProvider,
    texts: list[str],
    *,
    timeout_seconds: float,
    dimensions: int | None = None,
) -> list[list[float]]:
    """Batch variant of ``embed_with_timeout``; the whole batch shares one deadline."""
    if not texts:
        return []
    try:
        vectors = await asyncio.wait_for(
            provider.embed_batch(texts), timeout=timeout_seconds
        )
    except TimeoutError as exc:
        logger.warning("Batch embedding timed out after %.1fs", timeout_seconds)
        raise EmbeddingUnavailable(
            f"batch embedding timed out after {timeout_seconds}s"
        ) from exc
    except EmbeddingError as exc:
        logger.warning("Batch embedding failed: %s", exc)
        raise EmbeddingUnavailable(str(exc)) from exc
    except Exception as exc:
        logger.warning(
            "Embedding provider raised %s on a batch", type(exc).__name__, exc_info=True
        )
        raise EmbeddingUnavailable(f"provider raised {type(exc).__name__}") from exc
    if len(vectors) != len(texts):
        raise EmbeddingUnavailable(
            f"provider returned {len(vectors)} vectors for {len(texts)} texts"
        )
    return [_check_vector(v, dimensions) for v in vectors]
