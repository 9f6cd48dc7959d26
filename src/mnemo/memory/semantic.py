"""
Semantic store - adapter over a vector similarity backend.

Concepts are stored one record per memory; everything except the vector
lives in the record metadata so the backend can filter on it.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

from mnemo.core.errors import DimensionMismatch, NotFound, UserIsolationViolation
from mnemo.core.logging import get_logger, get_security_logger
from mnemo.core.retry import call_with_retry
from mnemo.core.types import (
    ScoredSemantic,
    SemanticFilter,
    SemanticMemory,
    SemanticPatch,
    SemanticRelationships,
    SemanticStats,
)
from mnemo.core.typing import Vector
from mnemo.memory.base import VectorBackend, VectorRecord

logger = get_logger("memory.semantic")
security_logger = get_security_logger()

# (user_id, ids) -> subset of ids that exist or were tombstoned
SourceChecker = Callable[[str, list[str]], Awaitable[set[str]]]


def _to_metadata(memory: SemanticMemory) -> dict[str, Any]:
    return {
        "user_id": memory.user_id,
        "concept": memory.concept,
        "description": memory.description,
        "category": memory.category,
        "confidence": memory.confidence,
        "keywords": list(memory.keywords),
        "tags": sorted(memory.tags),
        "source_episodic_ids": list(memory.source_episodic_ids),
        "relationships": {
            "similar": list(memory.relationships.similar),
            "parent": memory.relationships.parent,
            "children": list(memory.relationships.children),
        },
        "source": memory.source,
        "access_count": memory.access_count,
        "created_at": memory.created_at.isoformat(),
        "last_accessed": memory.last_accessed.isoformat() if memory.last_accessed else None,
        "metadata": memory.metadata,
    }


def _from_record(record: VectorRecord) -> SemanticMemory:
    meta = record.metadata
    rel = meta.get("relationships") or {}
    last_accessed = meta.get("last_accessed")
    return SemanticMemory(
        id=record.id,
        user_id=meta["user_id"],
        concept=meta["concept"],
        description=meta.get("description", ""),
        category=meta.get("category", "General"),
        confidence=meta.get("confidence", 0.8),
        embedding=record.vector,
        source_episodic_ids=meta.get("source_episodic_ids", []),
        keywords=meta.get("keywords", []),
        relationships=SemanticRelationships(
            similar=rel.get("similar", []),
            parent=rel.get("parent"),
            children=rel.get("children", []),
        ),
        source=meta.get("source", "direct"),
        access_count=meta.get("access_count", 0),
        created_at=datetime.fromisoformat(meta["created_at"]),
        last_accessed=datetime.fromisoformat(last_accessed) if last_accessed else None,
        metadata=meta.get("metadata", {}),
    )


def _filter_clause(user_id: str, filter: SemanticFilter | None) -> dict[str, Any]:
    clause: dict[str, Any] = {"user_id": user_id}
    if filter is None:
        return clause
    if filter.category:
        clause["category"] = filter.category
    if filter.tags:
        clause["tags"] = {"$in": sorted(t.lower() for t in filter.tags)}
    if filter.min_confidence is not None:
        clause["confidence"] = {"$gte": filter.min_confidence}
    return clause


class SemanticStore:
    """CRUD and nearest-neighbour search over concept vectors, keyed by user."""

    def __init__(
        self,
        backend: VectorBackend,
        dimensions: int,
        source_checker: SourceChecker | None = None,
        attempts: int = 3,
        timeout: float | None = 30.0,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ):
        self.backend = backend
        self.dimensions = dimensions
        self.source_checker = source_checker
        self._retry = {
            "attempts": attempts,
            "timeout": timeout,
            "base_delay": base_delay,
            "max_delay": max_delay,
        }

    async def _io(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        label = getattr(fn, "__name__", "store")
        return await call_with_retry(fn, *args, label=label, **self._retry, **kwargs)

    def _check_vector(self, vector: Vector, context: str) -> None:
        if len(vector) != self.dimensions:
            raise DimensionMismatch(self.dimensions, len(vector), context)

    @staticmethod
    def _check_owner(owner: str, user_id: str | None, memory_id: str) -> None:
        if user_id is not None and owner != user_id:
            security_logger.warning(
                f"Isolation violation: user={user_id!r} semantic={memory_id} owner={owner!r}"
            )
            raise UserIsolationViolation(user_id, owner, memory_id)

    async def _read(self, memory_id: str, user_id: str | None = None) -> VectorRecord:
        record = await self._io(self.backend.fetch, memory_id)
        if record is None:
            raise NotFound(memory_id, "semantic memory")
        self._check_owner(record.metadata["user_id"], user_id, memory_id)
        return record

    async def upsert(self, memory: SemanticMemory) -> str:
        """Insert or replace a semantic memory. Returns its id.

        New memories must reference only known (existing or tombstoned)
        episodic sources; replacing another user's record is rejected.
        """
        if not memory.user_id:
            raise ValueError("Semantic memory requires user_id")
        if not memory.concept.strip():
            raise ValueError("Semantic memory requires a concept")
        self._check_vector(memory.embedding, f"semantic memory {memory.concept!r}")

        memory.id = memory.id or str(uuid4())
        existing = await self._io(self.backend.fetch, memory.id)
        if existing is not None:
            self._check_owner(existing.metadata["user_id"], memory.user_id, memory.id)
        elif memory.source_episodic_ids and self.source_checker is not None:
            known = await self.source_checker(memory.user_id, memory.source_episodic_ids)
            unknown = [i for i in memory.source_episodic_ids if i not in known]
            if unknown:
                raise ValueError(f"Unknown source episodic ids: {', '.join(unknown)}")

        await self._io(
            self.backend.upsert,
            VectorRecord(id=memory.id, vector=list(memory.embedding), metadata=_to_metadata(memory)),
        )
        logger.debug(f"Upserted semantic memory {memory.id} ({memory.concept!r})")
        return memory.id

    async def get(self, memory_id: str, user_id: str | None = None) -> SemanticMemory:
        return _from_record(await self._read(memory_id, user_id))

    async def query(
        self,
        user_id: str,
        vector: Vector,
        top_k: int = 20,
        filter: SemanticFilter | None = None,
        threshold: float = 0.7,
    ) -> list[ScoredSemantic]:
        """Nearest concepts by cosine similarity, descending.

        Results below ``threshold`` are dropped before truncating to ``top_k``.
        """
        self._check_vector(vector, "query vector")
        if top_k <= 0:
            return []
        records = await self._io(
            self.backend.query,
            vector,
            _filter_clause(user_id, filter),
            min_score=threshold,
            limit=top_k,
        )
        results = []
        for record in records:
            self._check_owner(record.metadata["user_id"], user_id, record.id)
            if record.score < threshold:
                continue
            results.append(ScoredSemantic(memory=_from_record(record), similarity=record.score))
        return results

    async def list_memories(
        self,
        user_id: str,
        filter: SemanticFilter | None = None,
        limit: int | None = None,
    ) -> list[SemanticMemory]:
        """Metadata-only listing; no query vector needed."""
        records = await self._io(self.backend.scan, _filter_clause(user_id, filter), limit=limit)
        memories = []
        for record in records:
            self._check_owner(record.metadata["user_id"], user_id, record.id)
            memories.append(_from_record(record))
        return memories

    async def update(
        self, memory_id: str, patch: SemanticPatch, user_id: str | None = None
    ) -> SemanticMemory:
        """Apply an explicit patch. Metadata keys are merged, lists replaced."""
        memory = _from_record(await self._read(memory_id, user_id))

        for name in (
            "description",
            "category",
            "confidence",
            "source_episodic_ids",
            "keywords",
            "relationships",
            "access_count",
            "last_accessed",
        ):
            value = getattr(patch, name)
            if value is not None:
                setattr(memory, name, value)
        if patch.embedding is not None:
            self._check_vector(patch.embedding, f"semantic memory {memory_id}")
            memory.embedding = patch.embedding
        if patch.metadata is not None:
            memory.metadata = {**memory.metadata, **patch.metadata}

        await self._io(
            self.backend.upsert,
            VectorRecord(id=memory.id, vector=list(memory.embedding), metadata=_to_metadata(memory)),
        )
        return memory

    async def delete(self, memory_id: str, user_id: str | None = None) -> None:
        await self._read(memory_id, user_id)
        if not await self._io(self.backend.delete, memory_id):
            raise NotFound(memory_id, "semantic memory")

    async def delete_user(self, user_id: str) -> int:
        count = await self._io(self.backend.delete_where, {"user_id": user_id})
        logger.info(f"Deleted {count} semantic memories for user {user_id}")
        return count

    async def stats(self, user_id: str) -> SemanticStats:
        memories = await self.list_memories(user_id)
        if not memories:
            return SemanticStats()
        return SemanticStats(
            count=len(memories),
            avg_confidence=sum(m.confidence for m in memories) / len(memories),
            categories=sorted({m.category for m in memories}),
        )
