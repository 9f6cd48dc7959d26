"""
Episodic store - adapter over a graph backend.

Each session's memories form a chain of NEXT edges strictly increasing in
time. Writes that touch a chain hold that session's lock; different sessions
never contend.
"""

import asyncio
import weakref
from datetime import timedelta
from typing import Any
from uuid import uuid4

from mnemo.core.errors import NotFound, UserIsolationViolation
from mnemo.core.logging import get_logger, get_security_logger
from mnemo.core.retry import call_with_retry
from mnemo.core.types import (
    EpisodicFilter,
    EpisodicMemory,
    EpisodicPatch,
    EpisodicRelationships,
    EpisodicStats,
    RelationKind,
    utcnow,
)
from mnemo.memory.base import Edge, GraphBackend, Node

logger = get_logger("memory.episodic")
security_logger = get_security_logger()

NEXT = "NEXT"
RELATED = "RELATED"

# Minimum spacing applied when a new memory collides with an existing timestamp
TIMESTAMP_STEP = timedelta(microseconds=1)


class EpisodicStore:
    """CRUD, relationships and chain maintenance for episodic memories."""

    def __init__(
        self,
        backend: GraphBackend,
        attempts: int = 3,
        timeout: float | None = 30.0,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ):
        self.backend = backend
        self._retry = {
            "attempts": attempts,
            "timeout": timeout,
            "base_delay": base_delay,
            "max_delay": max_delay,
        }
        self._session_locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def _io(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        label = getattr(fn, "__name__", "store")
        return await call_with_retry(fn, *args, label=label, **self._retry, **kwargs)

    def _session_lock(self, user_id: str, session_id: str) -> asyncio.Lock:
        key = (user_id, session_id)
        lock = self._session_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[key] = lock
        return lock

    @staticmethod
    def _check_owner(owner: str, user_id: str | None, memory_id: str) -> None:
        if user_id is not None and owner != user_id:
            security_logger.warning(
                f"Isolation violation: user={user_id!r} memory={memory_id} owner={owner!r}"
            )
            raise UserIsolationViolation(user_id, owner, memory_id)

    # Conversion

    @staticmethod
    def _properties(memory: EpisodicMemory) -> dict[str, Any]:
        return {
            "content": memory.content,
            "importance": memory.importance,
            "tags": sorted(memory.tags),
            "metadata": memory.metadata,
        }

    @staticmethod
    def _to_memory(node: Node, edges: list[Edge]) -> EpisodicMemory:
        relationships = EpisodicRelationships()
        for edge in edges:
            if edge.kind == NEXT:
                if edge.target_id == node.id:
                    relationships.previous = edge.source_id
                elif edge.source_id == node.id:
                    relationships.next = edge.target_id
            elif edge.kind == RELATED:
                other = edge.target_id if edge.source_id == node.id else edge.source_id
                if other not in relationships.related:
                    relationships.related.append(other)

        props = node.properties
        return EpisodicMemory(
            id=node.id,
            user_id=node.user_id,
            session_id=node.session_id,
            timestamp=node.timestamp,
            content=props["content"],
            importance=props.get("importance", 0.5),
            tags=set(props.get("tags", [])),
            relationships=relationships,
            metadata=props.get("metadata", {}),
        )

    async def _load(self, node: Node) -> EpisodicMemory:
        edges = await self._io(self.backend.edges, node.id)
        return self._to_memory(node, edges)

    async def _read(self, memory_id: str, user_id: str | None = None) -> Node:
        node = await self._io(self.backend.read_node, memory_id)
        if node is None:
            raise NotFound(memory_id, "episodic memory")
        self._check_owner(node.user_id, user_id, memory_id)
        return node

    # Core operations

    async def store(self, memory: EpisodicMemory) -> str:
        """Store memory and splice it into its session chain. Returns the id."""
        if not memory.user_id or not memory.session_id:
            raise ValueError("Episodic memory requires user_id and session_id")

        memory_id = memory.id or str(uuid4())

        async with self._session_lock(memory.user_id, memory.session_id):
            if memory.id and await self._io(self.backend.read_node, memory_id) is not None:
                raise ValueError(f"Episodic memory already exists: {memory_id}")

            latest = await self._io(
                self.backend.find_nodes, memory.user_id, memory.session_id, limit=1
            )
            timestamp = memory.timestamp
            if latest and latest[0].timestamp < timestamp:
                # Common case: appending to the end of the chain
                predecessor, successor = latest[0], None
            else:
                nodes = await self._io(self.backend.find_nodes, memory.user_id, memory.session_id)
                taken = {n.timestamp for n in nodes}
                while timestamp in taken:
                    timestamp += TIMESTAMP_STEP
                predecessor = next((n for n in nodes if n.timestamp < timestamp), None)
                successor = None
                for n in nodes:  # newest first
                    if n.timestamp > timestamp:
                        successor = n
                    else:
                        break

            edges, replace_out = [], []
            if predecessor is not None:
                replace_out.append((predecessor.id, NEXT))
                edges.append(Edge(predecessor.id, memory_id, NEXT))
            if successor is not None:
                edges.append(Edge(memory_id, successor.id, NEXT))

            # Node and chain edges land together or not at all
            await self._io(
                self.backend.insert_node,
                Node(
                    id=memory_id,
                    user_id=memory.user_id,
                    session_id=memory.session_id,
                    timestamp=timestamp,
                    properties=self._properties(memory),
                ),
                edges,
                replace_out,
            )

        for related_id in memory.relationships.related:
            await self.link_related(memory_id, related_id, RelationKind.RELATED, user_id=memory.user_id)

        memory.id = memory_id
        memory.timestamp = timestamp
        logger.debug(f"Stored episodic memory {memory_id} (session={memory.session_id})")
        return memory_id

    async def get(self, memory_id: str, user_id: str | None = None) -> EpisodicMemory:
        """Get memory by id. Raises NotFound; UserIsolationViolation if owned by another user."""
        node = await self._read(memory_id, user_id)
        return await self._load(node)

    async def search(
        self,
        user_id: str,
        filter: EpisodicFilter | None = None,
        limit: int = 20,
    ) -> list[EpisodicMemory]:
        """Memories of one user matching ``filter``, newest first."""
        filter = filter or EpisodicFilter()
        since, until = filter.time_range if filter.time_range else (None, None)
        nodes = await self._io(
            self.backend.find_nodes, user_id, filter.session_id, since=since, until=until
        )

        needle = filter.text_contains.lower() if filter.text_contains else None
        wanted_tags = {t.lower() for t in filter.tags} if filter.tags else None

        results = []
        for node in nodes:
            self._check_owner(node.user_id, user_id, node.id)
            props = node.properties
            if needle and needle not in props["content"].lower():
                continue
            if wanted_tags and not wanted_tags & {t.lower() for t in props.get("tags", [])}:
                continue
            if filter.min_importance is not None and props.get("importance", 0.5) < filter.min_importance:
                continue
            results.append(await self._load(node))
            if len(results) >= limit:
                break
        return results

    async def recent(self, user_id: str, session_id: str, limit: int = 20) -> list[EpisodicMemory]:
        """Most recent memories of a session, newest first."""
        return await self.search(user_id, EpisodicFilter(session_id=session_id), limit=limit)

    async def update(
        self, memory_id: str, patch: EpisodicPatch, user_id: str | None = None
    ) -> EpisodicMemory:
        """Apply an explicit patch; metadata keys are merged."""
        node = await self._read(memory_id, user_id)
        props = dict(node.properties)
        if patch.content is not None:
            props["content"] = patch.content
        if patch.importance is not None:
            props["importance"] = patch.importance
        if patch.tags is not None:
            props["tags"] = sorted(patch.tags)
        if patch.metadata is not None:
            props["metadata"] = {**props.get("metadata", {}), **patch.metadata}

        if not await self._io(self.backend.update_node, memory_id, props):
            raise NotFound(memory_id, "episodic memory")
        node.properties = props
        return await self._load(node)

    async def delete(self, memory_id: str, user_id: str | None = None) -> None:
        """Delete memory, reconnecting its chain neighbours. Leaves a tombstone."""
        node = await self._read(memory_id, user_id)
        async with self._session_lock(node.user_id, node.session_id):
            edges = await self._io(self.backend.edges, memory_id, NEXT)
            previous = next((e.source_id for e in edges if e.target_id == memory_id), None)
            following = next((e.target_id for e in edges if e.source_id == memory_id), None)

            if not await self._io(self.backend.delete_node, memory_id):
                raise NotFound(memory_id, "episodic memory")
            if previous and following:
                await self._io(self.backend.create_edge, Edge(previous, following, NEXT))
        logger.debug(f"Deleted episodic memory {memory_id}")

    async def link_related(
        self,
        memory_id: str,
        related_id: str,
        kind: RelationKind = RelationKind.RELATED,
        user_id: str | None = None,
    ) -> None:
        """Link two memories of the same user.

        RELATED is symmetric. NEXT/PREVIOUS must respect session time order and
        replace the existing link on both ends; linking past other memories of
        the session is rejected.
        """
        if memory_id == related_id:
            raise ValueError("A memory cannot be linked to itself")
        source = await self._read(memory_id, user_id)
        target = await self._read(related_id, user_id or source.user_id)

        if kind == RelationKind.RELATED:
            existing = await self._io(self.backend.edges, memory_id, RELATED)
            if any({e.source_id, e.target_id} == {memory_id, related_id} for e in existing):
                return
            await self._io(self.backend.create_edge, Edge(memory_id, related_id, RELATED))
            return

        earlier, later = (source, target) if kind == RelationKind.NEXT else (target, source)
        if earlier.session_id != later.session_id:
            raise ValueError("previous/next links must stay within one session")
        if not earlier.timestamp < later.timestamp:
            raise ValueError(
                f"Temporal order violated: {earlier.id} ({earlier.timestamp}) "
                f"must precede {later.id} ({later.timestamp})"
            )

        async with self._session_lock(earlier.user_id, earlier.session_id):
            window = await self._io(
                self.backend.find_nodes,
                earlier.user_id,
                earlier.session_id,
                since=earlier.timestamp,
                until=later.timestamp,
            )
            between = [n.id for n in window if earlier.timestamp < n.timestamp < later.timestamp]
            if between:
                raise ValueError(
                    f"Cannot link {earlier.id} to {later.id}: "
                    f"{len(between)} memories of the session lie between them"
                )
            await self._io(self.backend.replace_edge, Edge(earlier.id, later.id, NEXT))

    async def related(
        self,
        memory_id: str,
        kind: RelationKind | None = None,
        user_id: str | None = None,
    ) -> list[EpisodicMemory]:
        """Memories linked to ``memory_id``, optionally by one relationship kind."""
        memory = await self.get(memory_id, user_id)
        rel = memory.relationships
        if kind == RelationKind.PREVIOUS:
            ids = [rel.previous] if rel.previous else []
        elif kind == RelationKind.NEXT:
            ids = [rel.next] if rel.next else []
        elif kind == RelationKind.RELATED:
            ids = list(rel.related)
        else:
            ids = [i for i in (rel.previous, rel.next) if i] + list(rel.related)

        results = []
        for related_id in ids:
            try:
                results.append(await self.get(related_id, memory.user_id))
            except NotFound:
                continue
        return results

    async def stats(self, user_id: str) -> EpisodicStats:
        nodes = await self._io(self.backend.find_nodes, user_id)
        if not nodes:
            return EpisodicStats()
        importances = [n.properties.get("importance", 0.5) for n in nodes]
        return EpisodicStats(
            count=len(nodes),
            avg_importance=sum(importances) / len(importances),
            oldest=nodes[-1].timestamp,
            newest=nodes[0].timestamp,
        )

    async def clear_user(self, user_id: str) -> int:
        count = await self._io(self.backend.delete_user_nodes, user_id)
        logger.info(f"Cleared {count} episodic memories for user {user_id}")
        return count

    async def clear_session(self, user_id: str, session_id: str) -> int:
        async with self._session_lock(user_id, session_id):
            count = await self._io(self.backend.delete_user_nodes, user_id, session_id)
        logger.info(f"Cleared {count} episodic memories for session {session_id}")
        return count

    async def known_ids(self, user_id: str, memory_ids: list[str]) -> set[str]:
        """Ids that exist for this user or were deleted (tombstoned)."""
        known = set(await self._io(self.backend.tombstoned, user_id, memory_ids))
        for memory_id in memory_ids:
            if memory_id in known:
                continue
            node = await self._io(self.backend.read_node, memory_id)
            if node is not None:
                self._check_owner(node.user_id, user_id, memory_id)
                known.add(memory_id)
        return known

    # Extraction bookkeeping (metadata only; content is never touched)

    async def pending_extraction(
        self,
        user_id: str,
        session_id: str | None = None,
        limit: int = 5,
        max_attempts: int = 3,
    ) -> list[EpisodicMemory]:
        """Oldest memories not yet distilled into semantic memory."""
        nodes = await self._io(self.backend.find_nodes, user_id, session_id)
        pending = []
        for node in reversed(nodes):  # oldest first
            meta = node.properties.get("metadata", {})
            if meta.get("semantic_ids") or meta.get("extracted_at"):
                continue
            if meta.get("extraction_attempts", 0) >= max_attempts:
                continue
            pending.append(await self._load(node))
            if len(pending) >= limit:
                break
        return pending

    async def mark_extracted(self, memory_id: str, semantic_ids: list[str]) -> None:
        node = await self._read(memory_id)
        meta = node.properties.get("metadata", {})
        merged = sorted(set(meta.get("semantic_ids", [])) | set(semantic_ids))
        await self.update(
            memory_id,
            EpisodicPatch(metadata={"semantic_ids": merged, "extracted_at": utcnow().isoformat()}),
        )

    async def record_extraction_failure(self, memory_id: str) -> None:
        node = await self._read(memory_id)
        attempts = node.properties.get("metadata", {}).get("extraction_attempts", 0) + 1
        await self.update(memory_id, EpisodicPatch(metadata={"extraction_attempts": attempts}))
