"""Tests for core memory types."""

from datetime import datetime, timedelta, timezone

import pytest

from mnemo.core.types import (
    CompressionResult,
    EpisodicMemory,
    EpisodicPatch,
    Goal,
    GoalStatus,
    RelevanceScore,
    ScoredMemory,
    SemanticMemory,
    SemanticPatch,
)


def _score(memory_id: str = "m", relevance: float = 0.5) -> RelevanceScore:
    return RelevanceScore(
        memory_id=memory_id, relevance=relevance, recency=0.5, importance=0.5, context_relevance=0.0
    )


def test_episodic_defaults():
    memory = EpisodicMemory(user_id="u1", session_id="s1", content="Hello")
    assert memory.importance == 0.5
    assert memory.tags == set()
    assert memory.relationships.previous is None
    assert memory.category == "conversation"
    assert memory.timestamp.tzinfo is not None


def test_episodic_naive_timestamp_is_utc():
    memory = EpisodicMemory(
        user_id="u1", session_id="s1", content="x", timestamp=datetime(2024, 5, 1, 12, 0)
    )
    assert memory.timestamp == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_episodic_category_from_tags():
    memory = EpisodicMemory(user_id="u", session_id="s", content="x", tags={"travel", "food"})
    assert memory.category == "food"


@pytest.mark.parametrize("importance", [-0.1, 1.1])
def test_episodic_importance_range(importance):
    with pytest.raises(ValueError):
        EpisodicMemory(user_id="u", session_id="s", content="x", importance=importance)


def test_episodic_context_line():
    memory = EpisodicMemory(
        user_id="u",
        session_id="s",
        content="Booked flight to Lisbon",
        timestamp=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
    )
    assert memory.to_context_line() == "[2024-05-01 09:30] Booked flight to Lisbon"


def test_semantic_derived_properties():
    created = datetime.now(timezone.utc) - timedelta(days=2)
    memory = SemanticMemory(
        user_id="u",
        concept="Python",
        description="User writes Python daily",
        confidence=0.9,
        keywords=["Python", "Code"],
        created_at=created,
    )
    assert memory.importance == 0.9
    assert memory.tags == {"python", "code"}
    assert memory.timestamp == created
    assert memory.to_context_line() == "Python: User writes Python daily"

    memory.last_accessed = created + timedelta(days=1)
    assert memory.timestamp == created + timedelta(days=1)


def test_semantic_confidence_range():
    with pytest.raises(ValueError):
        SemanticMemory(user_id="u", concept="c", description="d", confidence=1.2)


def test_patches_validate_ranges():
    with pytest.raises(ValueError):
        EpisodicPatch(importance=2.0)
    with pytest.raises(ValueError):
        SemanticPatch(confidence=-1.0)
    assert EpisodicPatch().content is None


def test_relevance_score_range():
    with pytest.raises(ValueError):
        RelevanceScore(memory_id="m", relevance=1.01, recency=0.5, importance=0.5, context_relevance=0)


def test_scored_memory_text_defaults_to_context_line():
    memory = SemanticMemory(id="s1", user_id="u", concept="Tea", description="Prefers green tea")
    scored = ScoredMemory(memory=memory, score=_score("s1", 0.8))
    assert scored.text == "Tea: Prefers green tea"
    assert scored.id == "s1"
    assert scored.relevance == 0.8
    assert scored.category == "General"


def test_compression_result_render():
    memory = SemanticMemory(id="s1", user_id="u", concept="Tea", description="Green")
    result = CompressionResult(
        kept=[ScoredMemory(memory=memory, score=_score("s1"))],
        summary="[Fact summary] Likes hiking",
        compression_ratio=0.5,
        removed_ids=["s2"],
    )
    assert result.render() == "Tea: Green\n[Fact summary] Likes hiking"


def test_goal_activity():
    goal = Goal(id="g", description="Learn Rust")
    assert goal.is_active
    goal.status = GoalStatus.COMPLETED
    assert not goal.is_active
    assert "Learn Rust" in goal.to_context_line()
