"""Concrete embedding providers and factory helpers."""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

import numpy as np

from memstore.config import EmbeddingConfig
from memstore.embedding.provider import EmbeddingError
from memstore.embedding.provider import EmbeddingProvider

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic offline provider based on signed feature hashing.

    Texts sharing most of their tokens land close together, which is
    enough for local runs and smoke tests.  Not a semantic model.
    """

    def __init__(self, *, dimensions: int = 1536, max_input_chars: int = 32_000) -> None:
        self._dimensions = dimensions
        self._max_input_chars = max_input_chars

    async def embed(self, text: str) -> list[float]:
        return self._embed_sync(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._embed_sync(text) for text in texts]

    def _embed_sync(self, text: str) -> list[float]:
        vector = np.zeros(self._dimensions, dtype=np.float64)
        tokens = _TOKEN_RE.findall(text[: self._max_input_chars].casefold())
        for token in tokens or [""]:
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm == 0.0:
            vector[0] = 1.0
            norm = 1.0
        return (vector / norm).tolist()


class OpenAICompatibleEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        dimensions: int | None = None,
        max_input_chars: int = 32_000,
        batch_size: int = 100,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._dimensions = dimensions
        self._max_input_chars = max_input_chars
        self._batch_size = max(batch_size, 1)
        self._timeout_seconds = timeout_seconds

    async def embed(self, text: str) -> list[float]:
        vectors = await asyncio.to_thread(self._embed_sync, [text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self._batch_size):
            chunk = texts[start : start + self._batch_size]
            vectors.extend(await asyncio.to_thread(self._embed_sync, chunk))
        return vectors

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        payload: dict = {
            "model": self._model,
            "input": [text[: self._max_input_chars] for text in texts],
        }
        if self._dimensions is not None:
            payload["dimensions"] = self._dimensions
        request = Request(
            url=f"{self._base_url}/embeddings",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise EmbeddingError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise EmbeddingError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise EmbeddingError(f"provider IO error: {exc}") from exc

        try:
            data = json.loads(raw)
            items = sorted(data["data"], key=lambda item: item["index"])
            vectors = [item["embedding"] for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingError("provider response missing data[].embedding") from exc

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"provider returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Create a concrete provider from ``EmbeddingConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError(
                "embedding_config.api_key is required when provider='openai'"
            )
        return OpenAICompatibleEmbeddingProvider(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            dimensions=config.dimensions,
            max_input_chars=config.max_input_chars,
            batch_size=config.batch_size,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "hashing":
        return HashingEmbeddingProvider(
            dimensions=config.dimensions,
            max_input_chars=config.max_input_chars,
        )
    raise ValueError(
        f"Unsupported embedding_config.provider '{config.provider}'. "
        "Supported providers: openai, hashing."
    )
