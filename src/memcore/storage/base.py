"""Storage interface for the memory engine.

The memory service operates only through :class:`MemoryStorage`, so the
backend is swappable: in-process dict for tests, SQLite for a single
node, or a Postgres/pgvector adapter outside this package.

Every mutating call bumps ``Memory.version``. Callers that pass
``expected_version`` get optimistic concurrency: a stale version raises
:class:`~memcore.errors.ConcurrencyError` and nothing is written.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Protocol

from memcore.errors import ConcurrencyError, ValidationError
from memcore.models import Memory, MemoryTier, MemoryType, days_between, utcnow

# Fields callers may never overwrite through update()
PROTECTED_FIELDS = frozenset({"id", "user_id", "tenant_id", "version", "created_at"})
_MEMORY_FIELDS = frozenset(f.name for f in fields(Memory))


@dataclass
class VectorSearchOptions:
    """Filters for vector similarity search."""

    chatbot_id: str | None = None
    include_global: bool = True
    limit: int | None = None
    tiers: list[MemoryTier] | None = None
    types: list[MemoryType] | None = None
    tags: list[str] | None = None
    min_similarity: float | None = None
    exclude_ids: list[str] | None = None
    include_deleted: bool = False


@dataclass
class VectorSearchResult:
    """A search hit."""

    memory: Memory
    similarity: float


@dataclass
class MemoryFindCriteria:
    """Criteria for find_by_criteria. Unset fields do not filter."""

    tenant_id: str
    user_id: str | None = None
    chatbot_id: str | None = None
    types: list[MemoryType] | None = None
    tags: list[str] | None = None
    max_decay_score: float | None = None
    older_than_days: float | None = None
    memory_ids: list[str] | None = None
    include_deleted: bool = False


class MemoryStorage(Protocol):
    """
    Protocol for memory storage backends.

    Reads return copies; mutating a returned Memory never changes storage.
    """

    # ===== CRUD =====

    async def save(self, memory: Memory) -> None:
        """Save a new memory (or overwrite one with the same id)."""
        ...

    async def get(self, memory_id: str) -> Memory | None:
        """Get a memory by id, including soft-deleted ones."""
        ...

    async def update(
        self,
        memory_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> Memory:
        """Apply field changes and return the updated memory."""
        ...

    async def soft_delete(self, memory_id: str, expected_version: int | None = None) -> None:
        """Flag a memory as deleted; it stays stored for audit.

        Raises:
            ConcurrencyError: If expected_version is given and the stored version moved on
        """
        ...

    async def hard_delete(self, memory_id: str) -> None:
        """Remove a memory permanently."""
        ...

    # ===== Queries =====

    async def vector_search(
        self,
        query_vector: list[float],
        user_id: str,
        tenant_id: str,
        options: VectorSearchOptions | None = None,
    ) -> list[VectorSearchResult]:
        """Nearest neighbours by cosine similarity, best first."""
        ...

    async def find_by_criteria(self, criteria: MemoryFindCriteria) -> list[Memory]:
        """Find memories matching criteria."""
        ...

    async def get_for_consolidation(
        self,
        tenant_id: str,
        user_id: str | None = None,
        min_age_hours: float = 1.0,
        limit: int | None = None,
    ) -> list[Memory]:
        """Live, non-episodic memories older than min_age_hours, lowest decay first."""
        ...

    async def count_by_user(self, user_id: str, tenant_id: str) -> int:
        """Count live memories for a user."""
        ...

    # ===== Targeted updates =====

    async def update_tier(
        self, memory_id: str, tier: MemoryTier, expected_version: int | None = None
    ) -> Memory:
        """Move a memory to a tier and reset its tier clock."""
        ...

    async def update_decay(
        self, memory_id: str, score: float, expected_version: int | None = None
    ) -> Memory:
        """Store a recomputed decay score."""
        ...

    async def update_access(self, memory_id: str, accessed_at: datetime) -> None:
        """Record a retrieval: bump access_count and last_accessed_at."""
        ...

    # ===== Batch =====

    async def save_batch(self, memories: list[Memory]) -> None:
        """Save several memories."""
        ...

    async def delete_batch(self, memory_ids: list[str], hard: bool = False) -> None:
        """Delete several memories."""
        ...

    # ===== Maintenance =====

    async def cleanup_expired(self) -> int:
        """Hard-delete memories whose expires_at has passed. Returns the count."""
        ...

    async def health_check(self) -> bool:
        """Check the backend is usable."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


# ===== Helpers shared by backends =====


def check_version(memory: Memory, expected_version: int | None) -> None:
    """Raise ConcurrencyError if the stored version moved on."""
    if expected_version is not None and memory.version != expected_version:
        raise ConcurrencyError(memory.id, expected_version, memory.version)


def apply_changes(memory: Memory, changes: dict[str, Any]) -> None:
    """Apply a field-change dict to a memory in place and bump its version."""
    for name, value in changes.items():
        if name in PROTECTED_FIELDS:
            raise ValidationError(f"Field {name!r} cannot be updated")
        if name not in _MEMORY_FIELDS:
            raise ValidationError(f"Unknown memory field {name!r}")
        setattr(memory, name, value)
    touch(memory)


def touch(memory: Memory) -> None:
    memory.updated_at = utcnow()
    memory.version += 1


def in_scope(memory: Memory, chatbot_id: str | None, include_global: bool) -> bool:
    """Chatbot scoping: an exact match, or a global memory when allowed."""
    if chatbot_id is None or memory.chatbot_id == chatbot_id:
        return True
    return include_global and memory.chatbot_id is None


def matches_search(
    memory: Memory, user_id: str, tenant_id: str, options: VectorSearchOptions
) -> bool:
    """Apply the non-vector filters of a search."""
    if memory.user_id != user_id or memory.tenant_id != tenant_id:
        return False
    if memory.is_deleted and not options.include_deleted:
        return False
    if options.exclude_ids and memory.id in options.exclude_ids:
        return False
    if options.types and memory.type not in options.types:
        return False
    if options.tiers and memory.tier not in options.tiers:
        return False
    if options.tags and not any(t in memory.tags for t in options.tags):
        return False
    if not in_scope(memory, options.chatbot_id, options.include_global):
        return False
    return bool(memory.embedding)


def matches_criteria(memory: Memory, criteria: MemoryFindCriteria, now: datetime) -> bool:
    """Apply find_by_criteria filters."""
    if memory.tenant_id != criteria.tenant_id:
        return False
    if memory.is_deleted and not criteria.include_deleted:
        return False
    if criteria.user_id and memory.user_id != criteria.user_id:
        return False
    if criteria.chatbot_id and memory.chatbot_id != criteria.chatbot_id:
        return False
    if criteria.types and memory.type not in criteria.types:
        return False
    if criteria.tags and not any(t in memory.tags for t in criteria.tags):
        return False
    if criteria.memory_ids and memory.id not in criteria.memory_ids:
        return False
    if criteria.max_decay_score is not None and memory.decay.score > criteria.max_decay_score:
        return False
    if criteria.older_than_days is not None:
        if days_between(memory.created_at, now) < criteria.older_than_days:
            return False
    return True


def due_for_consolidation(
    memory: Memory, tenant_id: str, user_id: str | None, min_age_hours: float, now: datetime
) -> bool:
    if memory.tenant_id != tenant_id or memory.is_deleted:
        return False
    if user_id and memory.user_id != user_id:
        return False
    if memory.tier == MemoryTier.EPISODIC:
        return False
    return days_between(memory.created_at, now) * 24 >= min_age_hours
