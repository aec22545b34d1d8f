"""Unit test fixtures: scripted embedder, frozen clock and a wired service."""

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
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(provider="hashing", dimensions=DIM, timeout_seconds=0.2)


@pytest.fixture()
def service(redis_client, embedder, clock, embedding_config) -> MemoryService:
    """Return a MemoryService wired to the test Redis."""
    return MemoryService(
        redis_client,
        embedder,
        embedding_config=embedding_config,
        index_config=IndexConfig(seed=42),
        clock=clock,
    )


@pytest.fixture()
async def mcp_client(service, monkeypatch):
    """Yield a FastMCP Client wired to the memstore server."""
    from memstore import server

    # configure() replaces the module global; restore it after the test.
    monkeypatch.setattr(server, "_service", None)
    await server.configure(service=service)

    async with Client(server.mcp) as client:
        yield client
