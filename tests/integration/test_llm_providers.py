"""
Integration tests for LLM providers.

Run with: pytest tests/integration -v -m integration
Requires: .env with MNEMO_COMPLETION_MODEL / MNEMO_EMBEDDING_MODEL pointing at
reachable providers (a local Ollama works with the defaults).
"""

import pytest

from mnemo.core.config import get_settings
from mnemo.llm.base import LLMConfig
from mnemo.llm.litellm_adapter import create_providers
from mnemo.memory.embedding import EmbeddingClient

# Mark all tests in this module as integration tests
pytestmark = pytest.mark.integration


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def providers(settings):
    return create_providers(settings)


@pytest.mark.asyncio
async def test_completion(providers):
    """Completion provider answers a trivial prompt."""
    completion, _ = providers
    if not await completion.health_check():
        pytest.skip("Completion provider not reachable")

    messages = [{"role": "user", "content": "Say 'test ok' and nothing else."}]
    response = await completion.complete(messages, LLMConfig(max_tokens=20, temperature=0))

    assert "ok" in response.content.lower()
    assert response.model


@pytest.mark.asyncio
async def test_embedding_dimensions(settings, providers):
    """Embedding provider returns vectors of the configured size."""
    _, embedding = providers
    if not await embedding.health_check():
        pytest.skip("Embedding provider not reachable")

    client = EmbeddingClient(embedding, settings.embedding_dimensions)
    await client.validate_dimensions()

    first, second = await client.embed_batch(["The cat sat on the mat", "A cat is sitting on a rug"])
    assert len(first) == settings.embedding_dimensions
    assert first != second
