"""
Working memory - per-turn context assembly and persistent goals.

The assembler is composition only: it fans out the store reads, derives the
topic, scores, compresses and renders. Store and embedding outages degrade the
context (with warnings) instead of failing the turn.
"""

import asyncio
import contextlib
from datetime import datetime

from mnemo.context.compressor import ContextCompressor
from mnemo.context.scorer import RelevanceScorer, derive_topic
from mnemo.core.errors import BudgetViolation, EmbeddingFailure, NotFound, is_transient
from mnemo.core.logging import get_logger
from mnemo.core.types import (
    EpisodicMemory,
    Goal,
    GoalStatus,
    Memory,
    ScoredSemantic,
    SemanticFilter,
    SemanticMemory,
    SemanticPatch,
    WorkingMemoryContext,
    utcnow,
)
from mnemo.core.typing import Vector
from mnemo.memory.embedding import EmbeddingClient
from mnemo.memory.episodic import EpisodicStore
from mnemo.memory.profile import PROFILE_CATEGORIES, UserProfile
from mnemo.memory.semantic import SemanticStore

logger = get_logger("context.working")

GOAL_CATEGORY = "Goal"


def _goal_from_memory(memory: SemanticMemory) -> Goal:
    data = memory.metadata.get("goal", {})
    updated_at = data.get("updated_at")
    return Goal(
        id=memory.id,
        description=memory.description,
        priority=data.get("priority", 1),
        status=GoalStatus(data.get("status", GoalStatus.PENDING.value)),
        subgoals=data.get("subgoals", []),
        success_criteria=data.get("success_criteria", []),
        created_at=memory.created_at,
        updated_at=datetime.fromisoformat(updated_at) if updated_at else memory.created_at,
    )


def _goal_metadata(goal: Goal) -> dict:
    return {
        "goal": {
            "status": goal.status.value,
            "priority": goal.priority,
            "subgoals": goal.subgoals,
            "success_criteria": goal.success_criteria,
            "updated_at": goal.updated_at.isoformat(),
        }
    }


def rank_goals(goals: list[Goal]) -> list[Goal]:
    """Active goals by priority (highest first), then oldest first."""
    return sorted((g for g in goals if g.is_active), key=lambda g: (-g.priority, g.created_at))


class GoalBook:
    """Goals persisted as semantic memories of category ``Goal``."""

    def __init__(self, semantic: SemanticStore, embedder: EmbeddingClient):
        self.semantic = semantic
        self.embedder = embedder

    async def create_goal(
        self,
        user_id: str,
        description: str,
        priority: int = 1,
        subgoals: list[str] | None = None,
        success_criteria: list[str] | None = None,
    ) -> Goal:
        if not description.strip():
            raise ValueError("Goal requires a description")
        memory = SemanticMemory(
            user_id=user_id,
            concept=f"goal: {description.strip()[:80]}",
            description=description.strip(),
            category=GOAL_CATEGORY,
            confidence=1.0,
            embedding=await self.embedder.embed(description),
            source="goal",
        )
        goal = Goal(
            id="",
            description=memory.description,
            priority=priority,
            subgoals=list(subgoals or []),
            success_criteria=list(success_criteria or []),
            created_at=memory.created_at,
        )
        memory.metadata = _goal_metadata(goal)
        goal.id = await self.semantic.upsert(memory)
        logger.info(f"Created goal {goal.id} for {user_id} (priority {priority})")
        return goal

    async def get_goal(self, user_id: str, goal_id: str) -> Goal:
        memory = await self.semantic.get(goal_id, user_id)
        if memory.category != GOAL_CATEGORY:
            raise NotFound(goal_id, "goal")
        return _goal_from_memory(memory)

    async def update_goal(
        self,
        user_id: str,
        goal_id: str,
        description: str | None = None,
        priority: int | None = None,
        status: GoalStatus | None = None,
        subgoals: list[str] | None = None,
        success_criteria: list[str] | None = None,
    ) -> Goal:
        goal = await self.get_goal(user_id, goal_id)
        if priority is not None:
            goal.priority = priority
        if status is not None:
            goal.status = status
        if subgoals is not None:
            goal.subgoals = subgoals
        if success_criteria is not None:
            goal.success_criteria = success_criteria
        goal.updated_at = utcnow()

        patch = SemanticPatch(metadata=_goal_metadata(goal))
        if description is not None and description.strip() != goal.description:
            goal.description = description.strip()
            patch.description = goal.description
            patch.embedding = await self.embedder.embed(goal.description)

        await self.semantic.update(goal_id, patch, user_id=user_id)
        return goal

    async def complete_goal(self, user_id: str, goal_id: str) -> Goal:
        return await self.update_goal(user_id, goal_id, status=GoalStatus.COMPLETED)

    async def goals(self, user_id: str) -> list[Goal]:
        memories = await self.semantic.list_memories(user_id, SemanticFilter(category=GOAL_CATEGORY))
        return [_goal_from_memory(m) for m in memories]

    async def active_goals(self, user_id: str) -> list[Goal]:
        return rank_goals(await self.goals(user_id))


class WorkingMemoryAssembler:
    """Builds the token-bounded WorkingMemoryContext for one turn."""

    def __init__(
        self,
        episodic: EpisodicStore,
        semantic: SemanticStore,
        embedder: EmbeddingClient,
        scorer: RelevanceScorer,
        compressor: ContextCompressor,
        recent_limit: int = 50,
        semantic_top_k: int = 20,
        similarity_threshold: float = 0.7,
        topic_window: int = 5,
        embed_episodic: bool = False,
    ):
        self.episodic = episodic
        self.semantic = semantic
        self.embedder = embedder
        self.scorer = scorer
        self.compressor = compressor
        self.recent_limit = recent_limit
        self.semantic_top_k = semantic_top_k
        self.similarity_threshold = similarity_threshold
        self.topic_window = topic_window
        self.embed_episodic = embed_episodic

    async def assemble(
        self,
        user_id: str,
        session_id: str,
        new_message: str,
        max_tokens: int,
        timeout: float | None = None,
        now: datetime | None = None,
    ) -> WorkingMemoryContext:
        """Assemble context for ``new_message`` within ``max_tokens``.

        The whole turn, including every store and provider call, runs under
        ``timeout`` seconds; expiry raises TimeoutError.
        """
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        deadline = asyncio.timeout(timeout) if timeout else contextlib.nullcontext()
        async with deadline:
            return await self._assemble(user_id, session_id, new_message, max_tokens, now or utcnow())

    async def _assemble(
        self,
        user_id: str,
        session_id: str,
        new_message: str,
        max_tokens: int,
        now: datetime,
    ) -> WorkingMemoryContext:
        warnings: list[str] = []

        recent_result, semantic_result, listing_result = await asyncio.gather(
            self.episodic.recent(user_id, session_id, limit=self.recent_limit),
            self._semantic_candidates(user_id, new_message, warnings),
            self.semantic.list_memories(user_id),
            return_exceptions=True,
        )

        recent: list[EpisodicMemory] = self._degrade(recent_result, [], "episodic store", warnings)
        query_vector, hits = self._degrade(semantic_result, (None, []), "semantic store", warnings)
        listing: list[SemanticMemory] = self._degrade(listing_result, [], "goals/profile", warnings)

        active_goals = rank_goals([_goal_from_memory(m) for m in listing if m.category == GOAL_CATEGORY])
        profile = UserProfile.from_memories(
            user_id, [m for m in listing if m.category in PROFILE_CATEGORIES]
        )

        topic = derive_topic([new_message] + [m.content for m in recent[: self.topic_window]])

        candidates: list[Memory] = list(recent)
        candidates += [h.memory for h in hits if h.memory.category != GOAL_CATEGORY]
        embeddings = await self._episodic_embeddings(recent, query_vector, warnings)
        scored = self.scorer.score_all(candidates, query_vector, topic, now, embeddings)

        header = self._header(topic, active_goals, profile, max_tokens // 2)
        header_cost = sum(self.compressor.line_cost(line) for line in header)
        compression = await self.compressor.compress(scored, max_tokens - header_cost)

        parts = list(header)
        body = compression.render()
        if body:
            parts.append(body)
        content = "\n".join(parts)
        token_count = self.compressor.counter.count(content)
        if token_count > max_tokens:
            content = self.compressor.counter.truncate(content, max_tokens)
            token_count = self.compressor.counter.count(content)
            logger.warning(f"Context for {user_id} truncated to honour budget")
            if token_count > max_tokens:
                raise BudgetViolation(f"Context uses {token_count} > {max_tokens} tokens")

        if warnings:
            logger.warning(f"Degraded context for {user_id}/{session_id}: {'; '.join(warnings)}")

        return WorkingMemoryContext(
            conversation_id=session_id,
            user_id=user_id,
            current_topic=topic,
            active_goals=active_goals,
            user_profile=profile,
            token_budget=max_tokens,
            compressed_content=content,
            memories=compression.kept,
            summary=compression.summary,
            token_count=token_count,
            compression_ratio=compression.compression_ratio,
            degraded=bool(warnings),
            warnings=warnings,
            metadata={
                "candidates": len(candidates),
                "removed_ids": compression.removed_ids,
                "summarized_ids": compression.summarized_ids,
                "query_embedded": query_vector is not None,
            },
        )

    @staticmethod
    def _degrade(result, fallback, source: str, warnings: list[str]):
        """Pass through a gather() result, degrading transient failures."""
        if isinstance(result, Exception):
            if is_transient(result):
                warnings.append(f"{source} unavailable: {result}")
                return fallback
            raise result
        if isinstance(result, BaseException):
            raise result
        return result

    async def _semantic_candidates(
        self, user_id: str, new_message: str, warnings: list[str]
    ) -> tuple[Vector | None, list[ScoredSemantic]]:
        try:
            vector = await self.embedder.embed(new_message)
        except EmbeddingFailure as e:
            warnings.append(f"query embedding failed: {e}")
            return None, []
        hits = await self.semantic.query(
            user_id, vector, top_k=self.semantic_top_k, threshold=self.similarity_threshold
        )
        return vector, hits

    async def _episodic_embeddings(
        self, recent: list[EpisodicMemory], query_vector: Vector | None, warnings: list[str]
    ) -> dict[str, Vector]:
        if not self.embed_episodic or query_vector is None or not recent:
            return {}
        try:
            vectors = await self.embedder.embed_batch([m.content for m in recent])
        except EmbeddingFailure as e:
            warnings.append(f"episodic embedding failed: {e}")
            return {}
        return {m.id: v for m, v in zip(recent, vectors)}

    def _header(
        self, topic: str, goals: list[Goal], profile: UserProfile, budget: int
    ) -> list[str]:
        """Topic, goals and profile lines that fit ``budget``, in that priority."""
        lines: list[str] = []
        used = 0

        def add(line: str) -> bool:
            nonlocal used
            cost = self.compressor.line_cost(line)
            if used + cost > budget:
                return False
            lines.append(line)
            used += cost
            return True

        if not add(f"Current topic: {topic}"):
            return []
        if goals and add("Active goals:"):
            for goal in goals:
                if not add(goal.to_context_line()):
                    break
        if not profile.is_empty and add("User profile:"):
            for line in profile.to_prompt_context().splitlines():
                if not add(line):
                    break
        return lines
