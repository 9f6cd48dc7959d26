"""SQLite graph and vector backends sharing one aiosqlite connection."""

import contextlib
import json
import sqlite3
from collections.abc import AsyncIterator, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import numpy as np

from mnemo.core.errors import DimensionMismatch, StoreUnavailable
from mnemo.core.logging import get_logger
from mnemo.core.typing import Vector
from mnemo.memory.base import Edge, GraphBackend, Node, VectorBackend, VectorRecord

logger = get_logger("memory.sqlite")


def _adapt_datetime(dt: datetime) -> str:
    """UTC ISO string with fixed precision so text order matches time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _convert_datetime(val: str) -> datetime:
    return datetime.fromisoformat(val)


SCHEMA = """
-- Graph nodes: one row per episodic memory
CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    properties TEXT NOT NULL  -- JSON object
);

CREATE INDEX IF NOT EXISTS idx_nodes_user_session_time
    ON nodes(user_id, session_id, timestamp);

-- Relationship edges (NEXT is directed in time, RELATED is read both ways)
CREATE TABLE IF NOT EXISTS edges (
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    PRIMARY KEY (source_id, target_id, kind)
);

CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id);

-- Deleted node ids, still valid as back-references
CREATE TABLE IF NOT EXISTS tombstones (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    deleted_at TEXT NOT NULL
);

-- Semantic vectors with JSON metadata
CREATE TABLE IF NOT EXISTS vectors (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    vector TEXT NOT NULL,  -- JSON array
    metadata TEXT NOT NULL  -- JSON object
);

CREATE INDEX IF NOT EXISTS idx_vectors_user ON vectors(user_id);
"""


@contextlib.contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Surface SQLite operational failures (locked, I/O) as StoreUnavailable."""
    try:
        yield
    except sqlite3.OperationalError as e:
        logger.warning(f"SQLite {operation} failed: {e}")
        raise StoreUnavailable(f"{operation}: {e}") from e


class SQLiteDatabase:
    """Owns the aiosqlite connection and schema."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.db_path)
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()
        logger.info(f"Connected to memory database: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Memory database not connected. Call connect() first.")
        return self._conn


class SQLiteGraphBackend(GraphBackend):
    """Episodic graph over ``nodes``/``edges``/``tombstones`` tables."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    @staticmethod
    def _row_to_node(row: tuple) -> Node:
        return Node(
            id=row[0],
            user_id=row[1],
            session_id=row[2],
            timestamp=_convert_datetime(row[3]),
            properties=json.loads(row[4]),
        )

    async def create_node(self, node: Node) -> None:
        with _store_errors("create_node"):
            await self.db.conn.execute(
                """INSERT INTO nodes (id, user_id, session_id, timestamp, properties)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    node.id,
                    node.user_id,
                    node.session_id,
                    _adapt_datetime(node.timestamp),
                    json.dumps(node.properties),
                ),
            )
            await self.db.conn.commit()

    @contextlib.asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        conn = self.db.conn
        with _store_errors(operation):
            try:
                yield conn
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def insert_node(
        self,
        node: Node,
        edges: list[Edge],
        replace_out: list[tuple[str, str]] | None = None,
    ) -> None:
        async with self._transaction("insert_node") as conn:
            for source_id, kind in replace_out or []:
                await conn.execute(
                    "DELETE FROM edges WHERE source_id = ? AND kind = ?", (source_id, kind)
                )
            await conn.execute(
                """INSERT INTO nodes (id, user_id, session_id, timestamp, properties)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    node.id,
                    node.user_id,
                    node.session_id,
                    _adapt_datetime(node.timestamp),
                    json.dumps(node.properties),
                ),
            )
            for edge in edges:
                await conn.execute(
                    "INSERT OR IGNORE INTO edges (source_id, target_id, kind) VALUES (?, ?, ?)",
                    (edge.source_id, edge.target_id, edge.kind),
                )

    async def replace_edge(self, edge: Edge) -> None:
        async with self._transaction("replace_edge") as conn:
            await conn.execute(
                "DELETE FROM edges WHERE kind = ? AND (source_id = ? OR target_id = ?)",
                (edge.kind, edge.source_id, edge.target_id),
            )
            await conn.execute(
                "INSERT INTO edges (source_id, target_id, kind) VALUES (?, ?, ?)",
                (edge.source_id, edge.target_id, edge.kind),
            )

    async def read_node(self, node_id: str) -> Node | None:
        with _store_errors("read_node"):
            async with self.db.conn.execute(
                "SELECT id, user_id, session_id, timestamp, properties FROM nodes WHERE id = ?",
                (node_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_node(row) if row else None

    async def update_node(self, node_id: str, properties: dict[str, Any]) -> bool:
        with _store_errors("update_node"):
            cursor = await self.db.conn.execute(
                "UPDATE nodes SET properties = ? WHERE id = ?",
                (json.dumps(properties), node_id),
            )
            await self.db.conn.commit()
        return cursor.rowcount > 0

    async def delete_node(self, node_id: str) -> bool:
        with _store_errors("delete_node"):
            async with self.db.conn.execute(
                "SELECT user_id FROM nodes WHERE id = ?", (node_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return False

            await self.db.conn.execute(
                "DELETE FROM edges WHERE source_id = ? OR target_id = ?", (node_id, node_id)
            )
            await self.db.conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
            await self.db.conn.execute(
                "INSERT OR REPLACE INTO tombstones (id, user_id, deleted_at) VALUES (?, ?, ?)",
                (node_id, row[0], _adapt_datetime(datetime.now(timezone.utc))),
            )
            await self.db.conn.commit()
        return True

    async def find_nodes(
        self,
        user_id: str,
        session_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Node]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_adapt_datetime(since))
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(_adapt_datetime(until))

        sql = (
            "SELECT id, user_id, session_id, timestamp, properties FROM nodes "
            f"WHERE {' AND '.join(clauses)} ORDER BY timestamp DESC, id DESC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with _store_errors("find_nodes"):
            async with self.db.conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_node(row) for row in rows]

    async def create_edge(self, edge: Edge) -> None:
        with _store_errors("create_edge"):
            await self.db.conn.execute(
                "INSERT OR IGNORE INTO edges (source_id, target_id, kind) VALUES (?, ?, ?)",
                (edge.source_id, edge.target_id, edge.kind),
            )
            await self.db.conn.commit()

    async def delete_edges(
        self,
        node_id: str,
        kind: str | None = None,
        direction: str = "both",
    ) -> int:
        if direction == "out":
            where, params = "source_id = ?", [node_id]
        elif direction == "in":
            where, params = "target_id = ?", [node_id]
        else:
            where, params = "(source_id = ? OR target_id = ?)", [node_id, node_id]
        if kind is not None:
            where += " AND kind = ?"
            params.append(kind)

        with _store_errors("delete_edges"):
            cursor = await self.db.conn.execute(f"DELETE FROM edges WHERE {where}", params)
            await self.db.conn.commit()
        return cursor.rowcount

    async def edges(self, node_id: str, kind: str | None = None) -> list[Edge]:
        sql = "SELECT source_id, target_id, kind FROM edges WHERE (source_id = ? OR target_id = ?)"
        params: list[Any] = [node_id, node_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY kind, source_id, target_id"

        with _store_errors("edges"):
            async with self.db.conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [Edge(source_id=r[0], target_id=r[1], kind=r[2]) for r in rows]

    async def delete_user_nodes(self, user_id: str, session_id: str | None = None) -> int:
        where, params = "user_id = ?", [user_id]
        if session_id is not None:
            where += " AND session_id = ?"
            params.append(session_id)

        now = _adapt_datetime(datetime.now(timezone.utc))
        with _store_errors("delete_user_nodes"):
            await self.db.conn.execute(
                f"""INSERT OR REPLACE INTO tombstones (id, user_id, deleted_at)
                    SELECT id, user_id, ? FROM nodes WHERE {where}""",
                [now, *params],
            )
            await self.db.conn.execute(
                f"""DELETE FROM edges WHERE source_id IN (SELECT id FROM nodes WHERE {where})
                    OR target_id IN (SELECT id FROM nodes WHERE {where})""",
                [*params, *params],
            )
            cursor = await self.db.conn.execute(f"DELETE FROM nodes WHERE {where}", params)
            await self.db.conn.commit()
        return cursor.rowcount

    async def tombstoned(self, user_id: str, node_ids: list[str]) -> set[str]:
        if not node_ids:
            return set()
        placeholders = ", ".join("?" for _ in node_ids)
        with _store_errors("tombstoned"):
            async with self.db.conn.execute(
                f"SELECT id FROM tombstones WHERE user_id = ? AND id IN ({placeholders})",
                [user_id, *node_ids],
            ) as cursor:
                rows = await cursor.fetchall()
        return {row[0] for row in rows}


def _matches(metadata: dict[str, Any], filter: dict[str, Any]) -> bool:
    """Pinecone-style metadata filter: equality, ``$eq``, ``$gte``, ``$in``."""
    for key, condition in filter.items():
        value = metadata.get(key)
        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op == "$eq":
                    if value != operand:
                        return False
                elif op == "$gte":
                    if value is None or value < operand:
                        return False
                elif op == "$in":
                    candidates = value if isinstance(value, list) else [value]
                    if not set(candidates) & set(operand):
                        return False
                else:
                    raise ValueError(f"Unsupported filter operator: {op}")
        elif isinstance(value, list):
            if condition not in value:
                return False
        elif value != condition:
            return False
    return True


class SQLiteVectorBackend(VectorBackend):
    """Exact brute-force cosine search over the ``vectors`` table."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    async def upsert(self, record: VectorRecord) -> None:
        user_id = record.metadata.get("user_id")
        if not user_id:
            raise ValueError("Vector metadata must carry user_id")
        with _store_errors("upsert"):
            await self.db.conn.execute(
                """INSERT INTO vectors (id, user_id, vector, metadata) VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     user_id=excluded.user_id, vector=excluded.vector, metadata=excluded.metadata""",
                (record.id, user_id, json.dumps(record.vector), json.dumps(record.metadata)),
            )
            await self.db.conn.commit()

    async def fetch(self, record_id: str) -> VectorRecord | None:
        with _store_errors("fetch"):
            async with self.db.conn.execute(
                "SELECT id, vector, metadata FROM vectors WHERE id = ?", (record_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return VectorRecord(id=row[0], vector=json.loads(row[1]), metadata=json.loads(row[2]))

    async def _candidates(self, filter: dict[str, Any]) -> list[VectorRecord]:
        sql = "SELECT id, vector, metadata FROM vectors"
        params: list[Any] = []
        user_id = filter.get("user_id")
        if isinstance(user_id, str):
            sql += " WHERE user_id = ?"
            params.append(user_id)
        sql += " ORDER BY id"

        with _store_errors("scan"):
            async with self.db.conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()

        records = []
        for row in rows:
            metadata = json.loads(row[2])
            if _matches(metadata, filter):
                records.append(VectorRecord(id=row[0], vector=json.loads(row[1]), metadata=metadata))
        return records

    async def query(
        self,
        vector: Vector,
        filter: dict[str, Any],
        min_score: float | None = None,
        limit: int | None = None,
    ) -> list[VectorRecord]:
        records = await self._candidates(filter)
        if not records:
            return []

        for record in records:
            if len(record.vector) != len(vector):
                raise DimensionMismatch(len(vector), len(record.vector), f"stored vector {record.id}")

        matrix = np.asarray([r.vector for r in records], dtype=np.float64)
        query = np.asarray(vector, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / norms, 0.0)

        for record, score in zip(records, scores):
            record.score = float(score)

        hits = records
        if min_score is not None:
            hits = [r for r in hits if r.score >= min_score]
        hits.sort(key=lambda r: (-r.score, r.id))
        return hits[:limit] if limit is not None else hits

    async def scan(self, filter: dict[str, Any], limit: int | None = None) -> list[VectorRecord]:
        records = await self._candidates(filter)
        return records[:limit] if limit is not None else records

    async def delete(self, record_id: str) -> bool:
        with _store_errors("delete"):
            cursor = await self.db.conn.execute("DELETE FROM vectors WHERE id = ?", (record_id,))
            await self.db.conn.commit()
        return cursor.rowcount > 0

    async def delete_where(self, filter: dict[str, Any]) -> int:
        records = await self._candidates(filter)
        if not records:
            return 0
        placeholders = ", ".join("?" for _ in records)
        with _store_errors("delete_where"):
            cursor = await self.db.conn.execute(
                f"DELETE FROM vectors WHERE id IN ({placeholders})", [r.id for r in records]
            )
            await self.db.conn.commit()
        return cursor.rowcount


async def open_backends(
    db_path: Path | str,
) -> tuple[SQLiteDatabase, SQLiteGraphBackend, SQLiteVectorBackend]:
    """Connect the shared database and build both backends over it."""
    db = SQLiteDatabase(db_path)
    await db.connect()
    return db, SQLiteGraphBackend(db), SQLiteVectorBackend(db)
