"""Shared fixtures: real SQLite backends under tmp_path and deterministic fake providers."""

from pathlib import Path

import pytest

from helpers import DIMS, FAST_RETRY, FakeEmbeddingProvider
from mnemo.core.config import Settings
from mnemo.memory.embedding import EmbeddingCache, EmbeddingClient
from mnemo.memory.episodic import EpisodicStore
from mnemo.memory.semantic import SemanticStore
from mnemo.memory.sqlite import open_backends


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,  # Don't load .env in tests
        data_dir=tmp_path / "data",
        embedding_dimensions=DIMS,
        retry_attempts=2,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        request_timeout_seconds=5.0,
        extraction_enabled=False,
    )


@pytest.fixture
async def backends(tmp_path: Path):
    """Connected (db, graph, vector) over a temporary database."""
    db, graph, vector = await open_backends(tmp_path / "test.db")
    yield db, graph, vector
    await db.close()


@pytest.fixture
def episodic(backends) -> EpisodicStore:
    _, graph, _ = backends
    return EpisodicStore(graph, **FAST_RETRY)


@pytest.fixture
def semantic(backends, episodic: EpisodicStore) -> SemanticStore:
    _, _, vector = backends
    return SemanticStore(vector, DIMS, source_checker=episodic.known_ids, **FAST_RETRY)


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embedder(embedding_provider: FakeEmbeddingProvider) -> EmbeddingClient:
    return EmbeddingClient(embedding_provider, DIMS, cache=EmbeddingCache(64), **FAST_RETRY)
