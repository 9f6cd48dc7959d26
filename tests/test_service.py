"""Tests for the memory context service facade."""

import json

import pytest

from helpers import FakeCompletionProvider, FakeEmbeddingProvider
from mnemo.context.service import create_service, estimate_importance
from mnemo.core.errors import DimensionMismatch


@pytest.fixture
def completion() -> FakeCompletionProvider:
    return FakeCompletionProvider()


@pytest.fixture
async def service(settings, completion):
    svc = await create_service(settings, completion=completion, embedding=FakeEmbeddingProvider())
    await svc.start()
    yield svc
    await svc.close()


def test_estimate_importance():
    assert estimate_importance("ok") == 0.3
    assert estimate_importance("Tell me something about the weather") == 0.5
    salient = estimate_importance("Please remember that I'm allergic to peanuts, it's important")
    assert salient > 0.7
    assert salient <= 1.0
    assert 0.3 <= estimate_importance("x" * 500) <= 1.0


@pytest.mark.asyncio
async def test_create_service_creates_database(settings, service):
    assert settings.db_path.exists()
    assert service.counter.model == settings.completion_model


@pytest.mark.asyncio
async def test_start_rejects_wrong_dimensions(settings, completion):
    svc = await create_service(settings, completion=completion, embedding=FakeEmbeddingProvider(dims=4))
    try:
        with pytest.raises(DimensionMismatch):
            await svc.start()
    finally:
        await svc.close()


@pytest.mark.asyncio
async def test_record_turn_and_get_context(service):
    first = await service.record_turn("u1", "s1", "I'm planning a trip to Kyoto in April")
    await service.record_turn("u1", "s1", "Kyoto temples are on my list")

    assert first.id
    assert first.metadata == {"source": "conversation"}
    assert first.importance == estimate_importance(first.content)

    context = await service.get_context("u1", "s1", "What should I see in Kyoto?", max_tokens=200)
    assert context.token_count <= 200
    assert "kyoto" in context.current_topic
    assert "Kyoto temples are on my list" in context.compressed_content
    # Extraction is disabled in test settings
    assert service.worker.pending == 0


@pytest.mark.asyncio
async def test_remember_and_profile(service):
    memory = await service.remember("u1", "Tea", "Prefers green tea", category="Preference", confidence=0.9)
    assert memory.id
    assert memory.source == "direct"

    context = await service.get_context("u1", "s1", "hello", max_tokens=200)
    assert context.user_profile.preferences == ["Prefers green tea"]


@pytest.mark.asyncio
async def test_goals_in_context(service):
    await service.goals.create_goal("u1", "Run a marathon", priority=3)
    context = await service.get_context("u1", "s1", "hello", max_tokens=200)
    assert [g.description for g in context.active_goals] == ["Run a marathon"]
    assert "Run a marathon" in context.compressed_content


@pytest.mark.asyncio
async def test_extract_now(service, completion):
    turn = await service.record_turn("u1", "s1", "I have been writing Go for ten years")
    completion.responses.append(
        json.dumps(
            {
                "concepts": [
                    {
                        "concept": "Go",
                        "description": "Experienced Go developer",
                        "category": "Expertise",
                        "confidence": 0.95,
                        "sourceMemoryId": turn.id,
                    }
                ]
            }
        )
    )

    result = await service.extract_now("u1")

    assert result.stats.created == 1
    stats = await service.stats("u1")
    assert stats["semantic"]["count"] == 1
    assert stats["semantic"]["categories"] == ["Expertise"]


@pytest.mark.asyncio
async def test_stats_and_clear_user(service):
    await service.record_turn("u1", "s1", "hello there")
    await service.remember("u1", "Chess", "Plays chess on weekends", category="Interest")

    stats = await service.stats("u1")
    assert stats["episodic"]["count"] == 1
    assert stats["semantic"]["count"] == 1
    assert set(stats) == {"episodic", "semantic", "embedding_cache", "extraction"}

    assert await service.clear_user("u1") == {"episodic": 1, "semantic": 1}
    stats = await service.stats("u1")
    assert stats["episodic"]["count"] == 0
    assert stats["semantic"]["count"] == 0


@pytest.mark.asyncio
async def test_background_extraction(settings, completion):
    settings.extraction_enabled = True
    completion.default = json.dumps({"concepts": []})
    svc = await create_service(settings, completion=completion, embedding=FakeEmbeddingProvider())
    await svc.start()
    try:
        await svc.record_turn("u1", "s1", "I like long walks")
        await svc.worker.drain()
        assert svc.worker.completed == 1
        assert len(completion.prompts) == 1
    finally:
        await svc.close()


@pytest.mark.asyncio
async def test_health(service):
    assert await service.health() == {"completion": True, "embedding": True}


@pytest.mark.asyncio
async def test_explicit_zero_budget_is_rejected(service):
    with pytest.raises(ValueError):
        await service.get_context("u1", "s1", "hello", max_tokens=0)
