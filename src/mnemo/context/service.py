"""
Memory context service - the facade used by the conversational agent.

Per turn: ``get_context`` assembles a bounded working context and
``record_turn`` stores the turn as an episodic memory, then schedules
background extraction.
"""

import re
from typing import Any

from mnemo.context.compressor import ContextCompressor
from mnemo.context.extractor import ExtractionResult, SemanticExtractor
from mnemo.context.scorer import RelevanceScorer
from mnemo.context.worker import ExtractionWorker
from mnemo.context.working import GoalBook, WorkingMemoryAssembler
from mnemo.core.config import Settings
from mnemo.core.logging import get_logger
from mnemo.core.types import EpisodicMemory, SemanticMemory, WorkingMemoryContext
from mnemo.llm.base import CompletionProvider, EmbeddingProvider
from mnemo.llm.tokens import TokenCounter
from mnemo.memory.embedding import EmbeddingCache, EmbeddingClient
from mnemo.memory.episodic import EpisodicStore
from mnemo.memory.semantic import SemanticStore
from mnemo.memory.sqlite import SQLiteDatabase, open_backends

logger = get_logger("context.service")

# Phrases that usually carry durable information about the user
SALIENT_MARKERS = re.compile(
    r"\b(remember|important|always|never|prefer|favou?rite|my name|i am|i'm|i work|i live"
    r"|deadline|goal|plan to|allergic)\b",
    re.IGNORECASE,
)


def estimate_importance(content: str) -> float:
    """Heuristic importance in [0.3, 1.0] from length and salient phrases."""
    score = 0.5
    if len(content) < 20:
        score -= 0.2
    elif len(content) > 200:
        score += 0.1
    score += 0.1 * min(3, len(SALIENT_MARKERS.findall(content)))
    return round(min(1.0, max(0.3, score)), 2)


class MemoryContextService:
    """Composes stores, scorer, compressor and extractor behind one API."""

    def __init__(
        self,
        settings: Settings,
        episodic: EpisodicStore,
        semantic: SemanticStore,
        embedder: EmbeddingClient,
        llm: CompletionProvider,
        db: SQLiteDatabase | None = None,
    ):
        self.settings = settings
        self.episodic = episodic
        self.semantic = semantic
        self.embedder = embedder
        self.llm = llm
        self.db = db

        retry = {
            "attempts": settings.retry_attempts,
            "timeout": settings.request_timeout_seconds,
            "base_delay": settings.retry_base_delay,
            "max_delay": settings.retry_max_delay,
        }
        self.counter = TokenCounter(settings.completion_model)
        self.scorer = RelevanceScorer(
            half_life_hours=settings.recency_half_life_hours,
            tie_epsilon=settings.tie_epsilon,
        )
        self.compressor = ContextCompressor(
            llm=llm,
            counter=self.counter,
            scorer=self.scorer,
            relevance_floor=settings.relevance_floor,
            summary_max_tokens=settings.summary_max_tokens,
            **retry,
        )
        self.goals = GoalBook(semantic, embedder)
        self.assembler = WorkingMemoryAssembler(
            episodic,
            semantic,
            embedder,
            self.scorer,
            self.compressor,
            recent_limit=settings.recent_episodic_limit,
            semantic_top_k=settings.semantic_top_k,
            similarity_threshold=settings.similarity_threshold,
            topic_window=settings.topic_window,
        )
        self.extractor = SemanticExtractor(
            llm,
            embedder,
            episodic,
            semantic,
            batch_size=settings.extraction_batch_size,
            min_confidence=settings.extraction_min_confidence,
            max_concepts_per_memory=settings.extraction_max_concepts_per_memory,
            max_attempts=settings.extraction_max_attempts,
            categories=settings.extraction_categories,
            relationships=settings.extraction_relationships,
            **retry,
        )
        self.worker = ExtractionWorker(self.extractor)

    async def start(self, validate_dimensions: bool = True) -> None:
        """Validate the embedding dimension and start background extraction."""
        if validate_dimensions:
            await self.embedder.validate_dimensions()
        if self.settings.extraction_enabled:
            await self.worker.start()
        logger.info("Memory context service started")

    async def close(self) -> None:
        await self.worker.stop()
        await self.embedder.close()
        if self.db is not None:
            await self.db.close()
        logger.info("Memory context service closed")

    async def get_context(
        self,
        user_id: str,
        session_id: str,
        new_message: str,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> WorkingMemoryContext:
        """Bounded working context for ``new_message``."""
        return await self.assembler.assemble(
            user_id,
            session_id,
            new_message,
            self.settings.max_context_tokens if max_tokens is None else max_tokens,
            timeout=timeout,
        )

    async def record_turn(
        self,
        user_id: str,
        session_id: str,
        content: str,
        importance: float | None = None,
        tags: set[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> EpisodicMemory:
        """Store a turn as an episodic memory and schedule extraction."""
        memory = EpisodicMemory(
            user_id=user_id,
            session_id=session_id,
            content=content,
            importance=estimate_importance(content) if importance is None else importance,
            tags=set(tags or ()),
            metadata=dict(metadata or {"source": "conversation"}),
        )
        await self.episodic.store(memory)
        if self.settings.extraction_enabled and self.worker.running:
            self.worker.schedule(user_id, session_id)
        return memory

    async def remember(
        self,
        user_id: str,
        concept: str,
        description: str,
        category: str = "General",
        confidence: float = 0.8,
        source_episodic_ids: list[str] | None = None,
        keywords: list[str] | None = None,
    ) -> SemanticMemory:
        """Write a semantic memory directly."""
        memory = SemanticMemory(
            user_id=user_id,
            concept=concept,
            description=description,
            category=category,
            confidence=confidence,
            embedding=await self.embedder.embed(f"{concept}: {description}"),
            source_episodic_ids=list(source_episodic_ids or []),
            keywords=list(keywords or []),
            source="direct",
        )
        await self.semantic.upsert(memory)
        return memory

    async def extract_now(self, user_id: str, session_id: str | None = None) -> ExtractionResult:
        """Run one extraction batch in the foreground."""
        return await self.extractor.extract_batch(user_id, session_id)

    async def clear_user(self, user_id: str) -> dict[str, int]:
        episodic = await self.episodic.clear_user(user_id)
        semantic = await self.semantic.delete_user(user_id)
        return {"episodic": episodic, "semantic": semantic}

    async def stats(self, user_id: str) -> dict[str, Any]:
        episodic = await self.episodic.stats(user_id)
        semantic = await self.semantic.stats(user_id)
        return {
            "episodic": {
                "count": episodic.count,
                "avg_importance": round(episodic.avg_importance, 3),
                "oldest": episodic.oldest.isoformat() if episodic.oldest else None,
                "newest": episodic.newest.isoformat() if episodic.newest else None,
            },
            "semantic": {
                "count": semantic.count,
                "avg_confidence": round(semantic.avg_confidence, 3),
                "categories": semantic.categories,
            },
            "embedding_cache": {
                "size": len(self.embedder.cache),
                "hits": self.embedder.cache.hits,
                "misses": self.embedder.cache.misses,
            },
            "extraction": {
                "pending_jobs": self.worker.pending,
                "completed_jobs": self.worker.completed,
                "failed_jobs": self.worker.failed,
            },
        }

    async def health(self) -> dict[str, bool]:
        """Provider reachability."""
        return {
            "completion": await self.llm.health_check(),
            "embedding": await self.embedder.provider.health_check(),
        }


async def create_service(
    settings: Settings,
    completion: CompletionProvider | None = None,
    embedding: EmbeddingProvider | None = None,
) -> MemoryContextService:
    """Open the SQLite backends and build a service from settings.

    Providers default to the LiteLLM adapters for the configured models.
    """
    if completion is None or embedding is None:
        from mnemo.llm.litellm_adapter import create_providers

        default_completion, default_embedding = create_providers(settings)
        completion = completion or default_completion
        embedding = embedding or default_embedding

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    db, graph, vectors = await open_backends(settings.db_path)

    retry = {
        "attempts": settings.retry_attempts,
        "timeout": settings.request_timeout_seconds,
        "base_delay": settings.retry_base_delay,
        "max_delay": settings.retry_max_delay,
    }
    embedder = EmbeddingClient(
        embedding,
        settings.embedding_dimensions,
        cache=EmbeddingCache(settings.embedding_cache_size),
        batch_size=settings.embedding_batch_size,
        **retry,
    )
    episodic = EpisodicStore(graph, **retry)
    semantic = SemanticStore(
        vectors,
        settings.embedding_dimensions,
        source_checker=episodic.known_ids,
        **retry,
    )
    return MemoryContextService(settings, episodic, semantic, embedder, completion, db=db)
