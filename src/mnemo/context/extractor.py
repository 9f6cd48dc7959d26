"""
Semantic extractor - distills episodic memories into semantic concepts.

Runs in the background. A batch of episodic memories that are not yet linked
to any concept is sent to the completion provider; accepted proposals are
stored with back-references to their sources instead of copies of the raw
content. Concept ids are derived from (user, normalized concept), so running
the same batch twice updates rather than duplicates.
"""

import asyncio
import json
import re
import time
import weakref
from dataclasses import dataclass, field
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mnemo.core.config import DEFAULT_CATEGORIES
from mnemo.core.errors import ExtractionParseFailure, NotFound, is_transient
from mnemo.core.logging import get_logger
from mnemo.core.retry import call_with_retry
from mnemo.core.types import (
    EpisodicMemory,
    SemanticMemory,
    SemanticPatch,
    SemanticRelationships,
    utcnow,
)
from mnemo.llm.base import CompletionProvider, LLMConfig
from mnemo.memory.embedding import EmbeddingClient
from mnemo.memory.episodic import EpisodicStore
from mnemo.memory.semantic import SemanticStore

logger = get_logger("context.extractor")

EXTRACTION_PROMPT = """Extract durable semantic knowledge from these conversation memories.
Identify the key concepts (facts, preferences, interests, expertise), describe each one clearly,
assign it to a category and rate your confidence from 0 to 1.

Categories: {categories}

Rules:
- Only extract concepts that are clearly stated or strongly implied.
- At most {max_concepts} concepts per memory.
- Use the memory id in brackets as sourceMemoryId.
- Give a few keywords that identify the concept.
- List relationships between the concepts you extracted (similar, related, parent, child).

Memories:
{memories}

Respond with a single JSON object:
{{
  "concepts": [
    {{"concept": "name", "description": "what it means for this user", "category": "Preference",
      "confidence": 0.8, "sourceMemoryId": "memory id", "keywords": ["kw1", "kw2"]}}
  ],
  "relationships": [
    {{"sourceConcept": "name", "targetConcept": "other name", "relationshipType": "similar",
      "confidence": 0.7}}
  ]
}}"""

CONCEPT_NAMESPACE = uuid5(NAMESPACE_URL, "mnemo:semantic-concept")


class ConceptProposal(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    concept: str = Field(min_length=1)
    description: str = ""
    category: str = "General"
    confidence: float = Field(ge=0.0, le=1.0)
    source_memory_id: str | None = Field(default=None, alias="sourceMemoryId")
    keywords: list[str] = Field(default_factory=list)


class RelationshipProposal(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source_concept: str = Field(min_length=1, alias="sourceConcept")
    target_concept: str = Field(min_length=1, alias="targetConcept")
    relationship_type: str = Field(default="related", alias="relationshipType")
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


@dataclass
class ExtractionStats:
    processed: int = 0
    proposed: int = 0
    accepted: int = 0
    rejected_low_confidence: int = 0
    invalid: int = 0
    created: int = 0
    updated: int = 0
    parse_failures: int = 0
    processing_ms: float = 0.0
    by_category: dict[str, int] = field(default_factory=dict)


@dataclass
class ExtractionResult:
    created: list[SemanticMemory] = field(default_factory=list)
    updated: list[SemanticMemory] = field(default_factory=list)
    stats: ExtractionStats = field(default_factory=ExtractionStats)


def normalize_concept(concept: str) -> str:
    return " ".join(concept.lower().split())


def concept_id(user_id: str, concept: str) -> str:
    """Deterministic semantic id for one user's concept."""
    return str(uuid5(CONCEPT_NAMESPACE, f"{user_id}:{normalize_concept(concept)}"))


def parse_extraction(content: str) -> dict[str, Any]:
    """Parse model output into ``{"concepts": [...], "relationships": [...]}``.

    Raises ExtractionParseFailure if no JSON object can be recovered.
    """
    text = content.strip()
    # Handle common LLM output patterns
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]

    match = re.search(r"\{.*\}", text, re.DOTALL)
    candidate = match.group(0) if match else text
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ExtractionParseFailure(f"Unparsable extraction output: {e}") from e

    if isinstance(data, list):
        data = {"concepts": data}
    if not isinstance(data, dict):
        raise ExtractionParseFailure(f"Expected JSON object, got {type(data).__name__}")
    concepts = data.get("concepts", [])
    relationships = data.get("relationships", [])
    if not isinstance(concepts, list) or not isinstance(relationships, list):
        raise ExtractionParseFailure("concepts and relationships must be lists")
    return {"concepts": concepts, "relationships": relationships}


class SemanticExtractor:
    """Turns batches of episodic memories into semantic concepts."""

    def __init__(
        self,
        llm: CompletionProvider,
        embedder: EmbeddingClient,
        episodic: EpisodicStore,
        semantic: SemanticStore,
        batch_size: int = 5,
        min_confidence: float = 0.7,
        max_concepts_per_memory: int = 3,
        max_attempts: int = 3,
        categories: list[str] | None = None,
        relationships: bool = True,
        attempts: int = 3,
        timeout: float | None = 30.0,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ):
        self.llm = llm
        self.embedder = embedder
        self.episodic = episodic
        self.semantic = semantic
        self.batch_size = batch_size
        self.min_confidence = min_confidence
        self.max_concepts_per_memory = max_concepts_per_memory
        self.max_attempts = max_attempts
        self.categories = list(categories or DEFAULT_CATEGORIES)
        self.relationships = relationships
        self._retry = {
            "attempts": attempts,
            "timeout": timeout,
            "base_delay": base_delay,
            "max_delay": max_delay,
        }
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    def _category(self, category: str) -> str | None:
        for allowed in self.categories:
            if allowed.lower() == category.strip().lower():
                return allowed
        return "General" if "General" in self.categories else None

    async def extract_batch(self, user_id: str, session_id: str | None = None) -> ExtractionResult:
        """Process one batch of unextracted memories for a user."""
        async with self._user_lock(user_id):
            started = time.monotonic()
            result = await self._extract(user_id, session_id)
            result.stats.processing_ms = (time.monotonic() - started) * 1000
        if result.stats.processed:
            s = result.stats
            logger.info(
                f"Extraction for {user_id}: processed={s.processed} accepted={s.accepted} "
                f"created={s.created} updated={s.updated} parse_failures={s.parse_failures}"
            )
        return result

    async def _extract(self, user_id: str, session_id: str | None) -> ExtractionResult:
        result = ExtractionResult()
        stats = result.stats

        pending = await self.episodic.pending_extraction(
            user_id, session_id, limit=self.batch_size, max_attempts=self.max_attempts
        )
        if not pending:
            return result
        stats.processed = len(pending)

        try:
            content = await self._complete(pending)
            payload = parse_extraction(content)
        except ExtractionParseFailure as e:
            stats.parse_failures += 1
            logger.warning(f"Skipping extraction batch for {user_id}: {e}")
            await self._record_failure(pending)
            return result
        except Exception as e:
            if not is_transient(e):
                raise
            logger.warning(f"Extraction completion failed for {user_id}: {e}")
            await self._record_failure(pending)
            return result

        proposals = self._accept(payload["concepts"], pending, stats)
        if proposals:
            try:
                vectors = await self.embedder.embed_batch(
                    [f"{p.concept}: {p.description}" for p, _ in proposals]
                )
            except Exception as e:
                if not is_transient(e):
                    raise
                logger.warning(f"Extraction embedding failed for {user_id}: {e}")
                await self._record_failure(pending)
                return result
        else:
            vectors = []

        by_concept: dict[str, SemanticMemory] = {}
        for (proposal, sources), vector in zip(proposals, vectors):
            memory = await self._store_concept(user_id, proposal, sources, vector, result)
            by_concept[normalize_concept(proposal.concept)] = memory

        if self.relationships and len(by_concept) > 1:
            await self._apply_relationships(payload["relationships"], by_concept)

        for episode in pending:
            linked = [m.id for m in by_concept.values() if episode.id in m.source_episodic_ids]
            await self.episodic.mark_extracted(episode.id, linked)
        return result

    async def _record_failure(self, pending: list[EpisodicMemory]) -> None:
        for episode in pending:
            await self.episodic.record_extraction_failure(episode.id)

    async def _complete(self, pending: list[EpisodicMemory]) -> str:
        memories = "\n".join(f"[{m.id}] {m.content}" for m in pending)
        prompt = EXTRACTION_PROMPT.format(
            categories=", ".join(self.categories),
            max_concepts=self.max_concepts_per_memory,
            memories=memories,
        )
        response = await call_with_retry(
            self.llm.complete,
            [{"role": "user", "content": prompt}],
            LLMConfig(max_tokens=2000, temperature=0.3),
            label="extract",
            **self._retry,
        )
        return response.content

    def _accept(
        self,
        raw_concepts: list[Any],
        pending: list[EpisodicMemory],
        stats: ExtractionStats,
    ) -> list[tuple[ConceptProposal, list[str]]]:
        """Validate proposals; returns (proposal, source ids) merged per concept."""
        batch_ids = [m.id for m in pending]
        per_source: dict[str, int] = {}
        accepted: dict[str, tuple[ConceptProposal, list[str]]] = {}

        for raw in raw_concepts:
            stats.proposed += 1
            try:
                proposal = ConceptProposal.model_validate(raw)
            except ValidationError as e:
                stats.invalid += 1
                logger.debug(f"Invalid concept proposal skipped: {e.error_count()} errors")
                continue

            if proposal.confidence < self.min_confidence:
                stats.rejected_low_confidence += 1
                continue
            category = self._category(proposal.category)
            if category is None or not normalize_concept(proposal.concept):
                stats.invalid += 1
                continue
            proposal.category = category

            if proposal.source_memory_id in batch_ids:
                sources = [proposal.source_memory_id]
            else:
                sources = list(batch_ids)
            if any(per_source.get(s, 0) >= self.max_concepts_per_memory for s in sources):
                stats.invalid += 1
                continue

            key = normalize_concept(proposal.concept)
            if key in accepted:
                previous, prev_sources = accepted[key]
                previous.confidence = max(previous.confidence, proposal.confidence)
                previous.keywords = list(dict.fromkeys(previous.keywords + proposal.keywords))
                accepted[key] = (previous, list(dict.fromkeys(prev_sources + sources)))
                continue

            for s in sources:
                per_source[s] = per_source.get(s, 0) + 1
            accepted[key] = (proposal, sources)
            stats.accepted += 1
            stats.by_category[category] = stats.by_category.get(category, 0) + 1

        return list(accepted.values())

    async def _store_concept(
        self,
        user_id: str,
        proposal: ConceptProposal,
        sources: list[str],
        vector: list[float],
        result: ExtractionResult,
    ) -> SemanticMemory:
        memory_id = concept_id(user_id, proposal.concept)
        try:
            existing = await self.semantic.get(memory_id, user_id)
        except NotFound:
            existing = None

        if existing is None:
            memory = SemanticMemory(
                id=memory_id,
                user_id=user_id,
                concept=proposal.concept.strip(),
                description=proposal.description.strip(),
                category=proposal.category,
                confidence=proposal.confidence,
                embedding=vector,
                source_episodic_ids=sources,
                keywords=proposal.keywords,
                source="extraction",
            )
            await self.semantic.upsert(memory)
            result.created.append(memory)
            result.stats.created += 1
            return memory

        memory = await self.semantic.update(
            memory_id,
            SemanticPatch(
                confidence=max(existing.confidence, proposal.confidence),
                source_episodic_ids=list(dict.fromkeys(existing.source_episodic_ids + sources)),
                keywords=list(dict.fromkeys(existing.keywords + proposal.keywords)),
                access_count=existing.access_count + 1,
                last_accessed=utcnow(),
            ),
            user_id=user_id,
        )
        result.updated.append(memory)
        result.stats.updated += 1
        return memory

    async def _apply_relationships(
        self, raw_relationships: list[Any], by_concept: dict[str, SemanticMemory]
    ) -> None:
        changed: dict[str, SemanticRelationships] = {}

        def rel(memory: SemanticMemory) -> SemanticRelationships:
            return changed.setdefault(memory.id, memory.relationships)

        for raw in raw_relationships:
            try:
                proposal = RelationshipProposal.model_validate(raw)
            except ValidationError:
                continue
            if proposal.confidence < self.min_confidence:
                continue
            source = by_concept.get(normalize_concept(proposal.source_concept))
            target = by_concept.get(normalize_concept(proposal.target_concept))
            if source is None or target is None or source.id == target.id:
                continue

            kind = proposal.relationship_type.lower()
            if kind in ("similar", "related"):
                for a, b in ((source, target), (target, source)):
                    if b.id not in rel(a).similar:
                        rel(a).similar.append(b.id)
            elif kind in ("parent", "child"):
                parent, child = (target, source) if kind == "parent" else (source, target)
                rel(child).parent = parent.id
                if child.id not in rel(parent).children:
                    rel(parent).children.append(child.id)

        for memory_id, relationships in changed.items():
            await self.semantic.update(memory_id, SemanticPatch(relationships=relationships))
