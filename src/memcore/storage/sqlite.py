"""SQLite-backed memory storage.

Persists memories in a single SQLite file. Scalar columns that are
filtered on (scope, tier, deletion, expiry) are stored as columns; the
rest of the record is a JSON document, and the embedding is a float64
blob. Similarity is computed in-process with numpy over the scoped rows,
which is fine for per-user memory counts in the low thousands.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from memcore.errors import FatalStorageError, MemoryNotFoundError, RetryableStorageError
from memcore.models import Memory, MemoryTier, utcnow
from memcore.storage.base import (
    MemoryFindCriteria,
    VectorSearchOptions,
    VectorSearchResult,
    apply_changes,
    check_version,
    due_for_consolidation,
    matches_criteria,
    matches_search,
    touch,
)

logger = logging.getLogger(__name__)


class SQLiteMemoryStorage:
    """Persistent :class:`MemoryStorage` on SQLite.

    Example:
        >>> storage = SQLiteMemoryStorage("data/memcore.db")
        >>> await storage.initialize()
        >>> await storage.save(memory)
        >>> await storage.close()
    """

    def __init__(self, db_path: str | Path) -> None:
        """Initialize storage.

        Args:
            db_path: Path to SQLite database (will be created if needed).
                ":memory:" keeps everything in RAM.
        """
        self._db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema.

        Must be called before other methods. Safe to call twice.
        """
        if self._conn is not None:
            return

        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(self._db_path)
            self._conn.row_factory = sqlite3.Row
            self._create_schema()
        except sqlite3.DatabaseError as e:
            raise FatalStorageError(f"Failed to open memory database {self._db_path}: {e}") from e

        logger.info(f"SQLite memory storage ready at {self._db_path}")

    def _create_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        cursor = self._db.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                chatbot_id TEXT,
                tier TEXT NOT NULL,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                expires_at TEXT,
                data TEXT NOT NULL,
                embedding BLOB
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_memories_scope
            ON memories(tenant_id, user_id)
        """
        )
        self._db.commit()

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    # ===== Row mapping =====

    @staticmethod
    def _to_row(memory: Memory) -> tuple[Any, ...]:
        data = memory.to_dict()
        data.pop("embedding")
        blob = sqlite3.Binary(np.asarray(memory.embedding, dtype=np.float64).tobytes())
        return (
            memory.id,
            memory.user_id,
            memory.tenant_id,
            memory.chatbot_id,
            memory.tier.value,
            int(memory.is_deleted),
            memory.expires_at.isoformat() if memory.expires_at else None,
            json.dumps(data),
            blob,
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Memory:
        data = json.loads(row["data"])
        blob = row["embedding"]
        data["embedding"] = np.frombuffer(blob, dtype=np.float64).tolist() if blob else []
        return Memory.from_dict(data)

    def _write(self, memory: Memory) -> None:
        self._db.execute(
            """
            INSERT OR REPLACE INTO memories
                (id, user_id, tenant_id, chatbot_id, tier, is_deleted, expires_at, data, embedding)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            self._to_row(memory),
        )

    def _read(self, memory_id: str) -> Memory | None:
        row = self._db.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return self._from_row(row) if row else None

    def _require(self, memory_id: str) -> Memory:
        memory = self._read(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        return memory

    def _select(self, sql: str, params: tuple[Any, ...]) -> list[Memory]:
        return [self._from_row(row) for row in self._db.execute(sql, params).fetchall()]

    def _commit(self) -> None:
        try:
            self._db.commit()
        except sqlite3.OperationalError as e:
            # "database is locked" and friends clear up on their own
            raise RetryableStorageError(f"SQLite commit failed: {e}") from e

    # ===== CRUD =====

    async def save(self, memory: Memory) -> None:
        async with self._lock:
            self._write(memory)
            self._commit()

    async def get(self, memory_id: str) -> Memory | None:
        async with self._lock:
            return self._read(memory_id)

    async def update(
        self,
        memory_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> Memory:
        async with self._lock:
            memory = self._require(memory_id)
            check_version(memory, expected_version)
            apply_changes(memory, changes)
            self._write(memory)
            self._commit()
            return memory

    async def soft_delete(self, memory_id: str, expected_version: int | None = None) -> None:
        async with self._lock:
            memory = self._read(memory_id)
            if memory is None or memory.is_deleted:
                return
            check_version(memory, expected_version)
            memory.is_deleted = True
            touch(memory)
            self._write(memory)
            self._commit()

    async def hard_delete(self, memory_id: str) -> None:
        async with self._lock:
            self._db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            self._commit()

    # ===== Queries =====

    async def vector_search(
        self,
        query_vector: list[float],
        user_id: str,
        tenant_id: str,
        options: VectorSearchOptions | None = None,
    ) -> list[VectorSearchResult]:
        options = options or VectorSearchOptions()
        async with self._lock:
            rows = self._select(
                "SELECT * FROM memories WHERE tenant_id = ? AND user_id = ?",
                (tenant_id, user_id),
            )

        candidates = [m for m in rows if matches_search(m, user_id, tenant_id, options)]
        candidates = [m for m in candidates if len(m.embedding) == len(query_vector)]
        if not candidates:
            return []

        matrix = np.asarray([m.embedding for m in candidates], dtype=np.float64)
        query = np.asarray(query_vector, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 1e-12, matrix @ query / norms, 0.0)

        results = [
            VectorSearchResult(memory=m, similarity=float(s))
            for m, s in zip(candidates, scores)
            if options.min_similarity is None or s >= options.min_similarity
        ]
        results.sort(key=lambda r: (-r.similarity, r.memory.id))
        return results[: options.limit] if options.limit else results

    async def find_by_criteria(self, criteria: MemoryFindCriteria) -> list[Memory]:
        now = utcnow()
        async with self._lock:
            rows = self._select("SELECT * FROM memories WHERE tenant_id = ?", (criteria.tenant_id,))
        return [m for m in rows if matches_criteria(m, criteria, now)]

    async def get_for_consolidation(
        self,
        tenant_id: str,
        user_id: str | None = None,
        min_age_hours: float = 1.0,
        limit: int | None = None,
    ) -> list[Memory]:
        now = utcnow()
        async with self._lock:
            rows = self._select(
                "SELECT * FROM memories WHERE tenant_id = ? AND is_deleted = 0 AND tier != ?",
                (tenant_id, MemoryTier.EPISODIC.value),
            )
        results = [m for m in rows if due_for_consolidation(m, tenant_id, user_id, min_age_hours, now)]
        results.sort(key=lambda m: (m.decay.score, m.id))
        return results[:limit] if limit else results

    async def count_by_user(self, user_id: str, tenant_id: str) -> int:
        async with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM memories WHERE user_id = ? AND tenant_id = ? AND is_deleted = 0",
                (user_id, tenant_id),
            ).fetchone()
        return int(row[0])

    # ===== Targeted updates =====

    async def update_tier(
        self, memory_id: str, tier: MemoryTier, expected_version: int | None = None
    ) -> Memory:
        async with self._lock:
            memory = self._require(memory_id)
            check_version(memory, expected_version)
            memory.tier = tier
            memory.tier_entered_at = utcnow()
            touch(memory)
            self._write(memory)
            self._commit()
            return memory

    async def update_decay(
        self, memory_id: str, score: float, expected_version: int | None = None
    ) -> Memory:
        async with self._lock:
            memory = self._require(memory_id)
            check_version(memory, expected_version)
            memory.decay.score = score
            memory.decay.last_calculated = utcnow()
            touch(memory)
            self._write(memory)
            self._commit()
            return memory

    async def update_access(self, memory_id: str, accessed_at: datetime) -> None:
        async with self._lock:
            memory = self._read(memory_id)
            if memory is None:
                return
            memory.last_accessed_at = accessed_at
            memory.access_count += 1
            touch(memory)
            self._write(memory)
            self._commit()

    # ===== Batch =====

    async def save_batch(self, memories: list[Memory]) -> None:
        async with self._lock:
            for memory in memories:
                self._write(memory)
            self._commit()

    async def delete_batch(self, memory_ids: list[str], hard: bool = False) -> None:
        for memory_id in memory_ids:
            if hard:
                await self.hard_delete(memory_id)
            else:
                await self.soft_delete(memory_id)

    # ===== Maintenance =====

    async def cleanup_expired(self) -> int:
        now = utcnow().isoformat()
        async with self._lock:
            cursor = self._db.execute(
                "DELETE FROM memories WHERE expires_at IS NOT NULL AND expires_at < ?",
                (now,),
            )
            self._commit()
        if cursor.rowcount:
            logger.info(f"Removed {cursor.rowcount} expired memories")
        return cursor.rowcount

    async def health_check(self) -> bool:
        if self._conn is None:
            return False
        try:
            async with self._lock:
                self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"SQLite health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "SQLiteMemoryStorage":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
