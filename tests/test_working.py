"""Tests for goals and working memory assembly."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from helpers import FAST_RETRY, FakeEmbeddingProvider, axis, similar_to_axis
from mnemo.context.compressor import ContextCompressor
from mnemo.context.scorer import RelevanceScorer
from mnemo.context.working import GoalBook, WorkingMemoryAssembler, rank_goals
from mnemo.core.errors import DimensionMismatch, NotFound, StoreUnavailable
from mnemo.core.types import EpisodicMemory, Goal, GoalStatus, SemanticMemory
from mnemo.llm.tokens import TokenCounter
from mnemo.memory.embedding import EmbeddingClient

MESSAGE = "Any tips for my Tokyo trip?"


@pytest.fixture
def goals(semantic, embedder) -> GoalBook:
    return GoalBook(semantic, embedder)


@pytest.fixture
def assembler(episodic, semantic, embedder) -> WorkingMemoryAssembler:
    return WorkingMemoryAssembler(
        episodic,
        semantic,
        embedder,
        RelevanceScorer(),
        ContextCompressor(counter=TokenCounter()),
    )


async def _seed(episodic, semantic, embedding_provider, user: str = "u1"):
    now = datetime.now(timezone.utc)
    for i, text in enumerate(["Booked flights to Tokyo", "Looking at hotels in Shinjuku"]):
        await episodic.store(
            EpisodicMemory(
                user_id=user,
                session_id="s1",
                content=text,
                timestamp=now - timedelta(minutes=10 - i),
                importance=0.8,
                tags={"tokyo", "travel"},
            )
        )
    embedding_provider.vectors[MESSAGE] = axis()
    await semantic.upsert(
        SemanticMemory(
            user_id=user,
            concept="Japanese food",
            description="Loves ramen and sushi",
            category="Preference",
            confidence=0.9,
            embedding=similar_to_axis(0.9),
        )
    )


@pytest.mark.asyncio
async def test_goal_lifecycle(goals: GoalBook):
    goal = await goals.create_goal("u1", "Learn Japanese", priority=2, success_criteria=["JLPT N5"])
    assert goal.id

    fetched = await goals.get_goal("u1", goal.id)
    assert fetched.description == "Learn Japanese"
    assert fetched.priority == 2
    assert fetched.status == GoalStatus.PENDING
    assert fetched.success_criteria == ["JLPT N5"]

    updated = await goals.update_goal("u1", goal.id, description="Learn Japanese to N4", status=GoalStatus.IN_PROGRESS)
    assert updated.description == "Learn Japanese to N4"
    assert (await goals.get_goal("u1", goal.id)).status == GoalStatus.IN_PROGRESS

    await goals.complete_goal("u1", goal.id)
    assert await goals.active_goals("u1") == []
    assert len(await goals.goals("u1")) == 1


@pytest.mark.asyncio
async def test_goal_validation(goals: GoalBook, semantic):
    with pytest.raises(ValueError):
        await goals.create_goal("u1", "   ")

    fact_id = await semantic.upsert(
        SemanticMemory(user_id="u1", concept="x", description="y", category="Fact", embedding=axis())
    )
    with pytest.raises(NotFound):
        await goals.get_goal("u1", fact_id)


def test_rank_goals():
    t = datetime(2024, 1, 1, tzinfo=timezone.utc)
    goals = [
        Goal(id="low", description="a", priority=1, created_at=t),
        Goal(id="done", description="b", priority=9, status=GoalStatus.COMPLETED, created_at=t),
        Goal(id="high-new", description="c", priority=3, created_at=t + timedelta(days=1)),
        Goal(id="high-old", description="d", priority=3, created_at=t),
    ]
    assert [g.id for g in rank_goals(goals)] == ["high-old", "high-new", "low"]


@pytest.mark.asyncio
async def test_assemble_within_budget(assembler, episodic, semantic, embedding_provider, goals):
    await _seed(episodic, semantic, embedding_provider)
    await goals.create_goal("u1", "Plan the Tokyo itinerary", priority=2)

    context = await assembler.assemble("u1", "s1", MESSAGE, max_tokens=300)

    assert context.token_count <= 300
    assert context.token_count == assembler.compressor.counter.count(context.compressed_content)
    assert not context.degraded
    assert "tokyo" in context.current_topic
    assert [g.description for g in context.active_goals] == ["Plan the Tokyo itinerary"]
    assert context.user_profile.preferences == ["Loves ramen and sushi"]
    assert "Current topic:" in context.compressed_content
    assert "Plan the Tokyo itinerary" in context.compressed_content
    assert "Booked flights to Tokyo" in context.compressed_content
    assert context.metadata["query_embedded"]
    # Goals are not scored as ordinary memories
    assert all(getattr(m.memory, "category", "") != "Goal" for m in context.memories)


@pytest.mark.asyncio
async def test_small_budget_is_still_honoured(assembler, episodic, semantic, embedding_provider):
    await _seed(episodic, semantic, embedding_provider)
    for budget in (1, 5, 20, 60):
        context = await assembler.assemble("u1", "s1", MESSAGE, max_tokens=budget)
        assert context.token_count <= budget


@pytest.mark.asyncio
async def test_invalid_budget(assembler):
    with pytest.raises(ValueError):
        await assembler.assemble("u1", "s1", MESSAGE, max_tokens=0)


@pytest.mark.asyncio
async def test_new_user_gets_minimal_context(assembler):
    context = await assembler.assemble("nobody", "s1", "hello", max_tokens=100)
    assert context.memories == []
    assert context.active_goals == []
    assert context.user_profile.is_empty
    assert context.current_topic == "general conversation"
    assert not context.degraded


@pytest.mark.asyncio
async def test_other_users_memories_never_leak(assembler, episodic, semantic, embedding_provider):
    await _seed(episodic, semantic, embedding_provider, user="alice")
    context = await assembler.assemble("bob", "s1", MESSAGE, max_tokens=300)
    assert context.memories == []
    assert "ramen" not in context.compressed_content


@pytest.mark.asyncio
async def test_embedding_failure_degrades(episodic, semantic, embedding_provider):
    await _seed(episodic, semantic, embedding_provider)
    provider = FakeEmbeddingProvider()
    provider.embed_batch = AsyncMock(side_effect=ConnectionError("provider down"))
    embedder = EmbeddingClient(provider, 8, **FAST_RETRY)
    assembler = WorkingMemoryAssembler(
        episodic, semantic, embedder, RelevanceScorer(), ContextCompressor(counter=TokenCounter())
    )

    context = await assembler.assemble("u1", "s1", MESSAGE, max_tokens=300)

    assert context.degraded
    assert any("embedding" in w for w in context.warnings)
    assert not context.metadata["query_embedded"]
    # Episodic memories are still available
    assert "Booked flights to Tokyo" in context.compressed_content


@pytest.mark.asyncio
async def test_episodic_outage_degrades(assembler, episodic, semantic, embedding_provider):
    await _seed(episodic, semantic, embedding_provider)
    episodic.recent = AsyncMock(side_effect=StoreUnavailable("database is locked"))

    context = await assembler.assemble("u1", "s1", MESSAGE, max_tokens=300)

    assert context.degraded
    assert any("episodic" in w for w in context.warnings)
    assert context.user_profile.preferences == ["Loves ramen and sushi"]


@pytest.mark.asyncio
async def test_dimension_mismatch_propagates(episodic, semantic):
    embedder = EmbeddingClient(FakeEmbeddingProvider(dims=4), 8, **FAST_RETRY)
    assembler = WorkingMemoryAssembler(
        episodic, semantic, embedder, RelevanceScorer(), ContextCompressor(counter=TokenCounter())
    )
    with pytest.raises(DimensionMismatch):
        await assembler.assemble("u1", "s1", MESSAGE, max_tokens=100)


@pytest.mark.asyncio
async def test_timeout(assembler):
    async def slow(*args, **kwargs):
        await asyncio.sleep(5)
        return []

    assembler.episodic.recent = slow
    with pytest.raises(TimeoutError):
        await assembler.assemble("u1", "s1", MESSAGE, max_tokens=100, timeout=0.05)
