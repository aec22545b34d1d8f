"""Integration fixtures: services sharing one Redis, as separate processes would."""

from __future__ import annotations

import pytest
from fastmcp import Client

from memstore.config import EmbeddingConfig
from memstore.config import IndexConfig
from memstore.service import MemoryService
from tests.helpers.embedding import DIM
from tests.helpers.embedding import FakeClock
from tests.helpers.embedding import ScriptedEmbeddingProvider
from tests.helpers.embedding import START


@pytest.fixture()
def embedder() -> ScriptedEmbeddingProvider:
    return ScriptedEmbeddingProvider(DIM)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture()
def make_service(redis_client, embedder, clock):
    """Factory for independent services over the same Redis.

    Each service has its own vector index and scope locks, so two of them
    behave like two processes; only Redis transactions keep them consistent.
    """

    def _make(**kwargs) -> MemoryService:
        kwargs.setdefault(
            "embedding_config",
            EmbeddingConfig(provider="hashing", dimensions=DIM, timeout_seconds=0.5),
        )
        kwargs.setdefault("index_config", IndexConfig(seed=11))
        kwargs.setdefault("clock", clock)
        return MemoryService(redis_client, embedder, **kwargs)

    return _make


@pytest.fixture()
async def mcp_client(make_service, monkeypatch):
    """Yield a FastMCP Client over a freshly configured server."""
    from memstore import server

    monkeypatch.setattr(server, "_service", None)
    await server.configure(service=make_service())

    async with Client(server.mcp) as client:
        yield client
