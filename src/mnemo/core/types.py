"""
Shared type definitions.

Memory data model used across stores, scoring and context assembly.
Relationships are id references resolved through the stores, never object
pointers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from mnemo.core.typing import JSONDict, Vector

if TYPE_CHECKING:
    from mnemo.memory.profile import UserProfile


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


class GoalStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RelationKind(Enum):
    RELATED = "related"
    PREVIOUS = "previous"
    NEXT = "next"


@dataclass
class EpisodicRelationships:
    previous: str | None = None
    next: str | None = None
    related: list[str] = field(default_factory=list)


@dataclass
class EpisodicMemory:
    """A timestamped interaction event owned by one user/session."""

    user_id: str
    session_id: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    importance: float = 0.5  # 0-1 ranking
    tags: set[str] = field(default_factory=set)
    relationships: EpisodicRelationships = field(default_factory=EpisodicRelationships)
    metadata: JSONDict = field(default_factory=dict)
    id: str = ""

    def __post_init__(self) -> None:
        _check_unit("importance", self.importance)
        self.timestamp = ensure_aware(self.timestamp)
        self.tags = set(self.tags)

    @property
    def category(self) -> str:
        """Grouping key used by the compressor."""
        return sorted(self.tags)[0] if self.tags else "conversation"

    @property
    def semantic_ids(self) -> list[str]:
        return list(self.metadata.get("semantic_ids", []))

    def to_context_line(self) -> str:
        return f"[{self.timestamp:%Y-%m-%d %H:%M}] {self.content}"


@dataclass
class SemanticRelationships:
    similar: list[str] = field(default_factory=list)
    parent: str | None = None
    children: list[str] = field(default_factory=list)


@dataclass
class SemanticMemory:
    """A distilled concept retrievable by meaning."""

    user_id: str
    concept: str
    description: str
    category: str = "General"
    confidence: float = 0.8
    embedding: Vector = field(default_factory=list)
    source_episodic_ids: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    relationships: SemanticRelationships = field(default_factory=SemanticRelationships)
    source: str = "direct"  # direct | extraction | goal
    access_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime | None = None
    metadata: JSONDict = field(default_factory=dict)
    id: str = ""

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)
        self.created_at = ensure_aware(self.created_at)
        if self.last_accessed is not None:
            self.last_accessed = ensure_aware(self.last_accessed)

    @property
    def timestamp(self) -> datetime:
        return self.last_accessed or self.created_at

    @property
    def importance(self) -> float:
        return self.confidence

    @property
    def tags(self) -> set[str]:
        return {k.lower() for k in self.keywords}

    def to_context_line(self) -> str:
        return f"{self.concept}: {self.description}"


Memory = EpisodicMemory | SemanticMemory


@dataclass
class EpisodicFilter:
    """Search filter for episodic memories. All set fields must match."""

    session_id: str | None = None
    tags: set[str] | None = None  # any-of
    time_range: tuple[datetime, datetime] | None = None  # inclusive
    text_contains: str | None = None  # case-insensitive
    min_importance: float | None = None


@dataclass
class SemanticFilter:
    category: str | None = None
    tags: set[str] | None = None  # any-of, matched against keywords
    min_confidence: float | None = None


@dataclass
class EpisodicPatch:
    """Explicit update. ``None`` leaves a field unchanged."""

    content: str | None = None
    importance: float | None = None
    tags: set[str] | None = None
    metadata: JSONDict | None = None

    def __post_init__(self) -> None:
        if self.importance is not None:
            _check_unit("importance", self.importance)


@dataclass
class SemanticPatch:
    description: str | None = None
    category: str | None = None
    confidence: float | None = None
    embedding: Vector | None = None
    source_episodic_ids: list[str] | None = None
    keywords: list[str] | None = None
    relationships: SemanticRelationships | None = None
    access_count: int | None = None
    last_accessed: datetime | None = None
    metadata: JSONDict | None = None

    def __post_init__(self) -> None:
        if self.confidence is not None:
            _check_unit("confidence", self.confidence)


@dataclass
class EpisodicStats:
    count: int = 0
    avg_importance: float = 0.0
    oldest: datetime | None = None
    newest: datetime | None = None


@dataclass
class SemanticStats:
    count: int = 0
    avg_confidence: float = 0.0
    categories: list[str] = field(default_factory=list)


@dataclass
class ScoredSemantic:
    """Semantic query hit with its cosine similarity."""

    memory: SemanticMemory
    similarity: float


@dataclass
class RelevanceScore:
    """Per-request score breakdown. Never persisted."""

    memory_id: str
    relevance: float
    recency: float
    importance: float
    context_relevance: float
    semantic: float = 0.0

    def __post_init__(self) -> None:
        for name in ("relevance", "recency", "importance", "context_relevance", "semantic"):
            _check_unit(name, getattr(self, name))


@dataclass
class ScoredMemory:
    """A candidate memory paired with its score and the text charged to the budget."""

    memory: Memory
    score: RelevanceScore
    text: str = ""
    truncated: bool = False

    def __post_init__(self) -> None:
        if not self.text:
            self.text = self.memory.to_context_line()

    @property
    def id(self) -> str:
        return self.memory.id

    @property
    def relevance(self) -> float:
        return self.score.relevance

    @property
    def timestamp(self) -> datetime:
        return self.memory.timestamp

    @property
    def category(self) -> str:
        return self.memory.category

    @property
    def importance(self) -> float:
        return self.memory.importance


@dataclass
class CompressionResult:
    kept: list[ScoredMemory]
    summary: str
    compression_ratio: float
    removed_ids: list[str]
    token_count: int = 0
    summarized_ids: list[str] = field(default_factory=list)

    def render(self) -> str:
        """Kept memories followed by the summary, as charged to the budget."""
        parts = [m.text for m in self.kept]
        if self.summary:
            parts.append(self.summary)
        return "\n".join(parts)


@dataclass
class Goal:
    id: str
    description: str
    priority: int = 1
    status: GoalStatus = GoalStatus.PENDING
    subgoals: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in (GoalStatus.PENDING, GoalStatus.IN_PROGRESS)

    def to_context_line(self) -> str:
        return f"- {self.description} ({self.status.value}, priority {self.priority})"


@dataclass
class WorkingMemoryContext:
    """Per-turn assembled context handed to the language model."""

    conversation_id: str
    user_id: str
    current_topic: str
    active_goals: list[Goal]
    user_profile: "UserProfile"
    token_budget: int
    compressed_content: str
    memories: list[ScoredMemory] = field(default_factory=list)
    summary: str = ""
    token_count: int = 0
    compression_ratio: float = 1.0
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
