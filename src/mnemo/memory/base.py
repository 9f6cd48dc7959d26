"""
Backend interfaces consumed by the memory stores.

The episodic store adapts a graph-oriented backend (nodes keyed by
user/session/memory with first-class edges); the semantic store adapts a
vector similarity backend (upsert / query-by-vector / delete with metadata
filtering).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from mnemo.core.typing import JSONDict, Vector


@dataclass(frozen=True)
class Edge:
    """Directed relationship between two nodes."""

    source_id: str
    target_id: str
    kind: str  # "NEXT" | "RELATED"


@dataclass
class Node:
    """Graph node record. ``properties`` holds everything but the keys."""

    id: str
    user_id: str
    session_id: str
    timestamp: datetime
    properties: JSONDict


@dataclass
class VectorRecord:
    id: str
    vector: Vector
    metadata: JSONDict
    score: float = 0.0


class GraphBackend(ABC):
    """Graph-oriented storage for episodic memories."""

    @abstractmethod
    async def create_node(self, node: Node) -> None:
        ...

    @abstractmethod
    async def insert_node(
        self,
        node: Node,
        edges: list[Edge],
        replace_out: list[tuple[str, str]] | None = None,
    ) -> None:
        """Create ``node`` with ``edges`` in one transaction.

        ``replace_out`` holds (node_id, kind) pairs whose outgoing edges of that
        kind are dropped first. Nothing is written if any step fails.
        """
        ...

    @abstractmethod
    async def replace_edge(self, edge: Edge) -> None:
        """Make ``edge`` the only out-edge of its source and in-edge of its target for its kind."""
        ...

    @abstractmethod
    async def read_node(self, node_id: str) -> Node | None:
        ...

    @abstractmethod
    async def update_node(self, node_id: str, properties: JSONDict) -> bool:
        """Replace node properties. Returns False if the node does not exist."""
        ...

    @abstractmethod
    async def delete_node(self, node_id: str) -> bool:
        """Delete node and all attached edges, leaving a tombstone."""
        ...

    @abstractmethod
    async def find_nodes(
        self,
        user_id: str,
        session_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Node]:
        """Nodes of a user (optionally one session), newest first."""
        ...

    @abstractmethod
    async def create_edge(self, edge: Edge) -> None:
        ...

    @abstractmethod
    async def delete_edges(
        self,
        node_id: str,
        kind: str | None = None,
        direction: str = "both",
    ) -> int:
        """Delete edges touching ``node_id``. direction: out | in | both."""
        ...

    @abstractmethod
    async def edges(self, node_id: str, kind: str | None = None) -> list[Edge]:
        """All edges touching ``node_id``, in either direction."""
        ...

    @abstractmethod
    async def delete_user_nodes(self, user_id: str, session_id: str | None = None) -> int:
        ...

    @abstractmethod
    async def tombstoned(self, user_id: str, node_ids: list[str]) -> set[str]:
        """Subset of ``node_ids`` deleted from this user's graph."""
        ...


class VectorBackend(ABC):
    """Vector similarity storage for semantic memories."""

    @abstractmethod
    async def upsert(self, record: VectorRecord) -> None:
        ...

    @abstractmethod
    async def fetch(self, record_id: str) -> VectorRecord | None:
        ...

    @abstractmethod
    async def query(
        self,
        vector: Vector,
        filter: dict[str, Any],
        min_score: float | None = None,
        limit: int | None = None,
    ) -> list[VectorRecord]:
        """Records matching ``filter`` by descending cosine similarity.

        ``min_score`` is applied before ``limit``.
        """
        ...

    @abstractmethod
    async def scan(self, filter: dict[str, Any], limit: int | None = None) -> list[VectorRecord]:
        """Records matching ``filter`` without similarity ranking."""
        ...

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_where(self, filter: dict[str, Any]) -> int:
        ...
