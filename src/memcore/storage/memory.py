"""In-process memory storage.

Keeps memories in a dict guarded by an asyncio lock. Suitable for unit
tests, local development, and single-process deployments that can
afford to lose data on restart.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from memcore.embeddings.base import cosine_similarity
from memcore.errors import MemoryNotFoundError
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


class InMemoryStorage:
    """Dict-backed implementation of :class:`MemoryStorage`.

    Example:
        >>> storage = InMemoryStorage()
        >>> await storage.save(memory)
        >>> await storage.get(memory.id)
    """

    def __init__(self) -> None:
        self._memories: dict[str, Memory] = {}
        self._lock = asyncio.Lock()

    def _require(self, memory_id: str) -> Memory:
        memory = self._memories.get(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        return memory

    # ===== CRUD =====

    async def save(self, memory: Memory) -> None:
        async with self._lock:
            self._memories[memory.id] = memory.copy()

    async def get(self, memory_id: str) -> Memory | None:
        async with self._lock:
            memory = self._memories.get(memory_id)
            return memory.copy() if memory else None

    async def update(
        self,
        memory_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> Memory:
        async with self._lock:
            memory = self._require(memory_id)
            check_version(memory, expected_version)
            updated = memory.copy()
            apply_changes(updated, changes)
            self._memories[memory_id] = updated
            return updated.copy()

    async def soft_delete(self, memory_id: str, expected_version: int | None = None) -> None:
        async with self._lock:
            memory = self._memories.get(memory_id)
            if memory is None or memory.is_deleted:
                return
            check_version(memory, expected_version)
            memory.is_deleted = True
            touch(memory)

    async def hard_delete(self, memory_id: str) -> None:
        async with self._lock:
            self._memories.pop(memory_id, None)

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
            candidates = [
                m.copy() for m in self._memories.values()
                if matches_search(m, user_id, tenant_id, options)
            ]

        results: list[VectorSearchResult] = []
        for memory in candidates:
            similarity = cosine_similarity(query_vector, memory.embedding)
            if options.min_similarity is not None and similarity < options.min_similarity:
                continue
            results.append(VectorSearchResult(memory=memory, similarity=similarity))

        results.sort(key=lambda r: (-r.similarity, r.memory.id))
        return results[: options.limit] if options.limit else results

    async def find_by_criteria(self, criteria: MemoryFindCriteria) -> list[Memory]:
        now = utcnow()
        async with self._lock:
            return [
                m.copy() for m in self._memories.values()
                if matches_criteria(m, criteria, now)
            ]

    async def get_for_consolidation(
        self,
        tenant_id: str,
        user_id: str | None = None,
        min_age_hours: float = 1.0,
        limit: int | None = None,
    ) -> list[Memory]:
        now = utcnow()
        async with self._lock:
            results = [
                m.copy() for m in self._memories.values()
                if due_for_consolidation(m, tenant_id, user_id, min_age_hours, now)
            ]

        # Lowest decay first: those need attention most
        results.sort(key=lambda m: (m.decay.score, m.id))
        return results[:limit] if limit else results

    async def count_by_user(self, user_id: str, tenant_id: str) -> int:
        async with self._lock:
            return sum(
                1 for m in self._memories.values()
                if m.user_id == user_id and m.tenant_id == tenant_id and not m.is_deleted
            )

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
            return memory.copy()

    async def update_decay(
        self, memory_id: str, score: float, expected_version: int | None = None
    ) -> Memory:
        async with self._lock:
            memory = self._require(memory_id)
            check_version(memory, expected_version)
            memory.decay.score = score
            memory.decay.last_calculated = utcnow()
            touch(memory)
            return memory.copy()

    async def update_access(self, memory_id: str, accessed_at: datetime) -> None:
        async with self._lock:
            memory = self._memories.get(memory_id)
            if memory is None:
                logger.debug(f"Access recorded for unknown memory {memory_id}")
                return
            memory.last_accessed_at = accessed_at
            memory.access_count += 1
            touch(memory)

    # ===== Batch =====

    async def save_batch(self, memories: list[Memory]) -> None:
        for memory in memories:
            await self.save(memory)

    async def delete_batch(self, memory_ids: list[str], hard: bool = False) -> None:
        for memory_id in memory_ids:
            if hard:
                await self.hard_delete(memory_id)
            else:
                await self.soft_delete(memory_id)

    # ===== Maintenance =====

    async def cleanup_expired(self) -> int:
        now = utcnow()
        async with self._lock:
            expired = [
                memory_id for memory_id, m in self._memories.items()
                if m.expires_at is not None and m.expires_at < now
            ]
            for memory_id in expired:
                del self._memories[memory_id]
        if expired:
            logger.info(f"Removed {len(expired)} expired memories")
        return len(expired)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def clear(self) -> None:
        """Drop everything (test helper)."""
        self._memories.clear()

    def __len__(self) -> int:
        return len(self._memories)
