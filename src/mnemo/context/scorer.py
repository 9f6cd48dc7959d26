"""
Relevance scoring.

relevance = 0.4 * semantic + 0.2 * recency + 0.2 * importance + 0.2 * context

Memories without an embedding have the semantic weight spread proportionally
over the other three factors. When the query could not be embedded the
semantic factor is simply zero (degraded, not redistributed).
"""

import math
import re
from collections import Counter
from datetime import datetime

import numpy as np

from mnemo.core.errors import DimensionMismatch
from mnemo.core.types import Memory, RelevanceScore, ScoredMemory, SemanticMemory, utcnow
from mnemo.core.typing import Vector

SEMANTIC_WEIGHT = 0.4
RECENCY_WEIGHT = 0.2
IMPORTANCE_WEIGHT = 0.2
CONTEXT_WEIGHT = 0.2

DEFAULT_TOPIC = "general conversation"

_TERM_RE = re.compile(r"[a-z0-9][a-z0-9+#_-]*")

STOPWORDS = frozenset(
    """
    a about above after again all also am an and any are as at be because been before
    being below between both but by can could did do does doing down during each few for
    from further had has have having he her here hers him his how i if in into is it its
    just let me more most my myself no nor not now of off on once only or other our ours
    out over own please same she should so some such than that the their theirs them then
    there these they this those through to too under until up very was we were what when
    where which while who whom why will with would you your yours yourself hi hello hey
    thanks thank ok okay yes yeah sure like want need get got know think tell really
    """.split()
)


def extract_terms(text: str) -> list[str]:
    """Lowercase content terms in order of appearance, stopwords removed."""
    return [
        t.strip("-_")
        for t in _TERM_RE.findall(text.lower())
        if t not in STOPWORDS and len(t.strip("-_")) > 1
    ]


def derive_topic(texts: list[str], max_terms: int = 3) -> str:
    """Most frequent content terms across ``texts`` (newest first).

    Equal counts prefer the term seen in the newest text.
    """
    counts: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    position = 0
    for text in texts:
        for term in extract_terms(text):
            counts[term] += 1
            first_seen.setdefault(term, position)
            position += 1
    if not counts:
        return DEFAULT_TOPIC
    ranked = sorted(counts, key=lambda t: (-counts[t], first_seen[t]))
    return " ".join(ranked[:max_terms])


def cosine(a: Vector, b: Vector) -> float:
    if len(a) != len(b):
        raise DimensionMismatch(len(b), len(a), "cosine similarity")
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(va @ vb / denom)


def _unit(value: float) -> float:
    return min(1.0, max(0.0, value))


class RelevanceScorer:
    """Scores memories against the current query and topic."""

    def __init__(self, half_life_hours: float = 24.0, tie_epsilon: float = 0.01):
        if half_life_hours <= 0:
            raise ValueError("half_life_hours must be positive")
        self.half_life_hours = half_life_hours
        self.tie_epsilon = tie_epsilon

    def recency(self, timestamp: datetime, now: datetime | None = None) -> float:
        """exp(-age_hours / half_life). Future timestamps count as brand new."""
        now = now or utcnow()
        age_hours = max(0.0, (now - timestamp).total_seconds() / 3600)
        return math.exp(-age_hours / self.half_life_hours)

    @staticmethod
    def memory_terms(memory: Memory) -> set[str]:
        terms: set[str] = set()
        for tag in memory.tags:
            terms.update(extract_terms(tag))
        if isinstance(memory, SemanticMemory):
            terms.update(extract_terms(memory.category))
            terms.update(extract_terms(memory.concept))
        if not terms:
            terms.update(extract_terms(memory.to_context_line()))
        return terms

    def context_relevance(self, memory: Memory, topic: str) -> float:
        """Fraction of topic terms covered by the memory's tags/category/concept."""
        if not topic or topic == DEFAULT_TOPIC:
            return 0.0
        topic_terms = set(extract_terms(topic))
        if not topic_terms:
            return 0.0
        return len(topic_terms & self.memory_terms(memory)) / len(topic_terms)

    def score(
        self,
        memory: Memory,
        query_embedding: Vector | None,
        topic: str,
        now: datetime | None = None,
        embedding: Vector | None = None,
    ) -> RelevanceScore:
        """Score one memory.

        ``embedding`` overrides the memory's own vector (episodic memories carry none).
        """
        vector = embedding if embedding is not None else getattr(memory, "embedding", None)
        recency = self.recency(memory.timestamp, now)
        importance = _unit(memory.importance)
        context = _unit(self.context_relevance(memory, topic))
        rest = RECENCY_WEIGHT * recency + IMPORTANCE_WEIGHT * importance + CONTEXT_WEIGHT * context

        if not vector:
            semantic = 0.0
            relevance = rest / (RECENCY_WEIGHT + IMPORTANCE_WEIGHT + CONTEXT_WEIGHT)
        elif query_embedding is None:
            semantic = 0.0
            relevance = rest
        else:
            semantic = _unit(cosine(vector, query_embedding))
            relevance = SEMANTIC_WEIGHT * semantic + rest

        return RelevanceScore(
            memory_id=memory.id,
            relevance=_unit(relevance),
            recency=recency,
            importance=importance,
            context_relevance=context,
            semantic=semantic,
        )

    def rank(self, scored: list[ScoredMemory]) -> list[ScoredMemory]:
        """Relevance descending; near-ties go to the more recent memory, then id.

        Memories within ``tie_epsilon`` of the most relevant one not yet placed
        form a tie group, ordered newest first. The result depends only on the
        set of memories, never on input order.
        """
        pending = sorted(scored, key=lambda m: (-m.relevance, -m.timestamp.timestamp(), m.id))
        ranked: list[ScoredMemory] = []
        while pending:
            leader = pending[0].relevance
            group = [m for m in pending if leader - m.relevance <= self.tie_epsilon]
            pending = pending[len(group):]
            ranked.extend(sorted(group, key=lambda m: (-m.timestamp.timestamp(), m.id)))
        return ranked

    def score_all(
        self,
        memories: list[Memory],
        query_embedding: Vector | None,
        topic: str,
        now: datetime | None = None,
        embeddings: dict[str, Vector] | None = None,
    ) -> list[ScoredMemory]:
        """Score and rank ``memories``; ``embeddings`` supplies vectors by memory id."""
        now = now or utcnow()
        embeddings = embeddings or {}
        scored = [
            ScoredMemory(
                memory=m,
                score=self.score(m, query_embedding, topic, now, embeddings.get(m.id)),
            )
            for m in memories
        ]
        return self.rank(scored)
