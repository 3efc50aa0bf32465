"""Core data records for the memory engine.

Memories move through four tiers (working, short-term, long-term,
episodic) and carry an importance score with its factor breakdown, a
decay state, and an embedding vector for semantic search.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Self


def utcnow() -> datetime:
    """Timezone-aware current time. All engine timestamps are UTC."""
    return datetime.now(timezone.utc)


def days_between(earlier: datetime, later: datetime) -> float:
    """Elapsed days between two timestamps, never negative."""
    return max(0.0, (later - earlier).total_seconds() / 86400.0)


def dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def dt_from_str(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class MemoryTier(str, Enum):
    """Memory hierarchy tiers, ordered by expected lifespan."""
    WORKING = "working"
    SHORT_TERM = "short-term"
    LONG_TERM = "long-term"
    EPISODIC = "episodic"


class MemoryType(str, Enum):
    """Semantic category of a memory."""
    FACT = "fact"
    PREFERENCE = "preference"
    EVENT = "event"
    RELATIONSHIP = "relationship"
    SKILL = "skill"
    GOAL = "goal"
    CONTEXT = "context"
    FEEDBACK = "feedback"


class MemorySource(str, Enum):
    """How a memory was acquired."""
    EXPLICIT_STATEMENT = "explicit_statement"
    INFERENCE = "inference"
    CORRECTION = "correction"
    OBSERVATION = "observation"
    EXTERNAL_IMPORT = "external_import"
    SYSTEM_GENERATED = "system_generated"


@dataclass(frozen=True)
class MemoryScope:
    """Ownership scope: a user within a tenant, optionally narrowed to one chatbot."""

    user_id: str
    tenant_id: str
    chatbot_id: str | None = None

    @property
    def key(self) -> str:
        return f"{self.tenant_id}:{self.user_id}:{self.chatbot_id or 'global'}"


@dataclass
class ImportanceBreakdown:
    """Per-group contributions behind an importance score."""

    content: float = 0.0
    source: float = 0.0
    context: float = 0.0
    usage: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "content": self.content,
            "source": self.source,
            "context": self.context,
            "usage": self.usage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, float] | None) -> Self:
        data = data or {}
        return cls(
            content=float(data.get("content", 0.0)),
            source=float(data.get("source", 0.0)),
            context=float(data.get("context", 0.0)),
            usage=float(data.get("usage", 0.0)),
        )


@dataclass
class DecayState:
    """Decay bookkeeping.

    Attributes:
        score: 1.0 = fresh, 0.0 = forgotten
        rate_per_day: Base decay rate for the memory's type
        protected: Exempt from decay (set when importance was very high at creation)
        last_calculated: When the score was last written by a sweep
    """

    score: float = 1.0
    rate_per_day: float = 0.05
    protected: bool = False
    last_calculated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "rate_per_day": self.rate_per_day,
            "protected": self.protected,
            "last_calculated": dt_to_str(self.last_calculated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Self:
        data = data or {}
        return cls(
            score=float(data.get("score", 1.0)),
            rate_per_day=float(data.get("rate_per_day", 0.05)),
            protected=bool(data.get("protected", False)),
            last_calculated=dt_from_str(data.get("last_calculated")) or utcnow(),
        )


@dataclass
class Memory:
    """A single remembered unit of information about a user."""

    id: str
    user_id: str
    tenant_id: str
    type: MemoryType
    content: str
    source: MemorySource
    tier: MemoryTier = MemoryTier.WORKING
    chatbot_id: str | None = None
    structured_data: dict[str, Any] = field(default_factory=dict)
    importance_score: float = 0.5
    importance_breakdown: ImportanceBreakdown = field(default_factory=ImportanceBreakdown)
    confidence: float = 0.5
    reinforcements: int = 1
    decay: DecayState = field(default_factory=DecayState)
    embedding: list[float] = field(default_factory=list)
    embedding_model: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime | None = None
    tier_entered_at: datetime = field(default_factory=utcnow)
    access_count: int = 0
    is_deleted: bool = False
    tags: list[str] = field(default_factory=list)
    source_conversation_id: str | None = None
    source_message_ids: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    version: int = 1

    @property
    def scope(self) -> MemoryScope:
        return MemoryScope(self.user_id, self.tenant_id, self.chatbot_id)

    @property
    def last_activity_at(self) -> datetime:
        """Last access, falling back to creation time."""
        return self.last_accessed_at or self.created_at

    def copy(self) -> Memory:
        """Deep copy, so callers never share mutable state with storage."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "chatbot_id": self.chatbot_id,
            "type": self.type.value,
            "content": self.content,
            "source": self.source.value,
            "tier": self.tier.value,
            "structured_data": self.structured_data,
            "importance_score": self.importance_score,
            "importance_breakdown": self.importance_breakdown.to_dict(),
            "confidence": self.confidence,
            "reinforcements": self.reinforcements,
            "decay": self.decay.to_dict(),
            "embedding": list(self.embedding),
            "embedding_model": self.embedding_model,
            "created_at": dt_to_str(self.created_at),
            "updated_at": dt_to_str(self.updated_at),
            "last_accessed_at": dt_to_str(self.last_accessed_at),
            "tier_entered_at": dt_to_str(self.tier_entered_at),
            "access_count": self.access_count,
            "is_deleted": self.is_deleted,
            "tags": list(self.tags),
            "source_conversation_id": self.source_conversation_id,
            "source_message_ids": list(self.source_message_ids),
            "expires_at": dt_to_str(self.expires_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create a Memory from :meth:`to_dict` output."""
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            tenant_id=str(data["tenant_id"]),
            chatbot_id=data.get("chatbot_id"),
            type=MemoryType(data["type"]),
            content=str(data["content"]),
            source=MemorySource(data["source"]),
            tier=MemoryTier(data.get("tier", MemoryTier.WORKING.value)),
            structured_data=dict(data.get("structured_data") or {}),
            importance_score=float(data.get("importance_score", 0.5)),
            importance_breakdown=ImportanceBreakdown.from_dict(data.get("importance_breakdown")),
            confidence=float(data.get("confidence", 0.5)),
            reinforcements=int(data.get("reinforcements", 1)),
            decay=DecayState.from_dict(data.get("decay")),
            embedding=[float(x) for x in data.get("embedding") or []],
            embedding_model=str(data.get("embedding_model", "")),
            created_at=dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=dt_from_str(data.get("updated_at")) or utcnow(),
            last_accessed_at=dt_from_str(data.get("last_accessed_at")),
            tier_entered_at=dt_from_str(data.get("tier_entered_at")) or utcnow(),
            access_count=int(data.get("access_count", 0)),
            is_deleted=bool(data.get("is_deleted", False)),
            tags=list(data.get("tags") or []),
            source_conversation_id=data.get("source_conversation_id"),
            source_message_ids=list(data.get("source_message_ids") or []),
            expires_at=dt_from_str(data.get("expires_at")),
            version=int(data.get("version", 1)),
        )


@dataclass
class MemoryCandidate:
    """Input to :meth:`MemoryService.store`.

    ``importance_score`` may be precomputed; when None the service runs the
    importance scorer. ``metadata`` feeds the scorer's context signals
    (``goal_related``, ``topic_clustered``, ``repeated``, ``recency_days``).
    """

    scope: MemoryScope
    type: MemoryType
    content: str
    source: MemorySource = MemorySource.INFERENCE
    importance_score: float | None = None
    tier: MemoryTier | None = None
    confidence: float | None = None
    tags: list[str] = field(default_factory=list)
    structured_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    source_conversation_id: str | None = None
    source_message_ids: list[str] = field(default_factory=list)
    expires_at: datetime | None = None


# ===== Retrieval =====


@dataclass
class RetrievalOptions:
    """Knobs for ranked retrieval.

    The boost weights and diversity threshold are empirical defaults and
    meant to be tuned per deployment.
    """

    limit: int = 20
    similarity_threshold: float = 0.5
    recency_weight: float = 0.3
    importance_weight: float = 0.4
    recency_half_life_days: float = 30.0
    diversity_sampling: bool = True
    diversity_threshold: float = 0.8
    tiers: list[MemoryTier] | None = None
    types: list[MemoryType] | None = None
    tags: list[str] | None = None
    exclude_ids: list[str] | None = None
    include_global: bool = True


@dataclass
class ScoreBreakdown:
    """Components of a retrieval rank score."""

    similarity: float
    recency: float
    importance: float


@dataclass
class RetrievedMemory:
    """A memory with its ranking metadata."""

    memory: Memory
    similarity: float
    score: float
    breakdown: ScoreBreakdown


@dataclass
class RetrievalResult:
    """Ranked memories plus a prompt-ready context block."""

    memories: list[RetrievedMemory]
    total_matched: int
    query: str
    duration_ms: float
    context_block: str = ""
    tiers_searched: list[MemoryTier] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.memories)


# ===== Forgetting =====


@dataclass
class ForgetCriteria:
    """Selection of memories to forget. Unset fields do not filter."""

    tenant_id: str
    user_id: str | None = None
    chatbot_id: str | None = None
    types: list[MemoryType] | None = None
    tags: list[str] | None = None
    decay_threshold: float | None = None
    older_than_days: float | None = None
    memory_ids: list[str] | None = None
    contains_keywords: list[str] | None = None
    hard_delete: bool = False
    skip_high_importance: bool = False
    importance_threshold: float = 0.8


@dataclass
class ForgetResult:
    """Outcome of a forget operation."""

    forgotten: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    evaluated: int = 0
    hard_delete: bool = False
    duration_ms: float = 0.0
