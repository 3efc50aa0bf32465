"""Ranked, diversified retrieval.

Turns a raw nearest-neighbour candidate set into the final result:

    score = similarity
          + recency_weight * 0.5 ** (age_days / half_life)
          + importance_weight * importance

Both boosts are bounded by their weights, so similarity stays the
dominant signal while recent or important memories can overtake
marginally more similar but stale ones. An optional diversity pass
(simplified maximal marginal relevance) then drops candidates that are
too similar to something already selected.
"""

from __future__ import annotations

import logging
from datetime import datetime

from memcore.embeddings.base import cosine_similarity
from memcore.errors import ValidationError
from memcore.models import (
    Memory,
    MemoryType,
    RetrievalOptions,
    RetrievedMemory,
    ScoreBreakdown,
    days_between,
    utcnow,
)
from memcore.storage.base import VectorSearchResult

logger = logging.getLogger(__name__)

TYPE_LABELS = {
    MemoryType.FACT: "Facts",
    MemoryType.PREFERENCE: "Preferences",
    MemoryType.EVENT: "Events",
    MemoryType.RELATIONSHIP: "Relationships",
    MemoryType.SKILL: "Skills",
    MemoryType.GOAL: "Goals",
    MemoryType.CONTEXT: "Context",
    MemoryType.FEEDBACK: "Feedback",
}


def validate_options(options: RetrievalOptions) -> None:
    """Reject option sets that can never produce a result."""
    if options.limit <= 0:
        raise ValidationError(f"limit must be positive, got {options.limit}")
    if options.recency_half_life_days <= 0:
        raise ValidationError("recency_half_life_days must be positive")


class RetrievalRanker:
    """Reorders, filters, diversifies, and caps search candidates.

    Example:
        >>> ranker = RetrievalRanker()
        >>> ranked = ranker.rank(candidates, RetrievalOptions(limit=5))
    """

    def rank(
        self,
        candidates: list[VectorSearchResult],
        options: RetrievalOptions | None = None,
        now: datetime | None = None,
    ) -> list[RetrievedMemory]:
        """Rank candidates.

        Args:
            candidates: Search hits with their query similarity
            options: Retrieval options; defaults are used when None
            now: Reference time for recency (defaults to the current time)

        Returns:
            At most ``options.limit`` results, best first.

        Raises:
            ValidationError: If limit is not positive
        """
        options = options or RetrievalOptions()
        validate_options(options)
        now = now or utcnow()

        eligible = [c for c in candidates if self._passes_filters(c, options)]
        scored = [self._score(c, options, now) for c in eligible]
        scored.sort(key=lambda r: (-r.score, r.memory.id))

        if options.diversity_sampling:
            selected = self._diversify(scored, options.diversity_threshold, options.limit)
        else:
            selected = scored[: options.limit]

        logger.debug(
            f"Ranked {len(candidates)} candidates: {len(eligible)} eligible, {len(selected)} selected"
        )
        return selected

    @staticmethod
    def _passes_filters(candidate: VectorSearchResult, options: RetrievalOptions) -> bool:
        memory = candidate.memory
        if memory.is_deleted:
            return False
        if options.exclude_ids and memory.id in options.exclude_ids:
            return False
        if options.tiers and memory.tier not in options.tiers:
            return False
        if options.types and memory.type not in options.types:
            return False
        if options.tags and not any(t in memory.tags for t in options.tags):
            return False
        return candidate.similarity >= options.similarity_threshold

    @staticmethod
    def recency_boost(memory: Memory, options: RetrievalOptions, now: datetime) -> float:
        """Half-life decay of the time since last access, scaled by the recency weight."""
        age_days = days_between(memory.last_activity_at, now)
        return options.recency_weight * 0.5 ** (age_days / options.recency_half_life_days)

    @staticmethod
    def importance_boost(memory: Memory, options: RetrievalOptions) -> float:
        return options.importance_weight * max(0.0, min(1.0, memory.importance_score))

    def _score(
        self, candidate: VectorSearchResult, options: RetrievalOptions, now: datetime
    ) -> RetrievedMemory:
        recency = self.recency_boost(candidate.memory, options, now)
        importance = self.importance_boost(candidate.memory, options)
        return RetrievedMemory(
            memory=candidate.memory,
            similarity=candidate.similarity,
            score=candidate.similarity + recency + importance,
            breakdown=ScoreBreakdown(
                similarity=candidate.similarity,
                recency=recency,
                importance=importance,
            ),
        )

    @staticmethod
    def _diversify(
        ranked: list[RetrievedMemory], threshold: float, limit: int
    ) -> list[RetrievedMemory]:
        selected: list[RetrievedMemory] = []
        for candidate in ranked:
            if len(selected) >= limit:
                break
            too_similar = any(
                cosine_similarity(candidate.memory.embedding, chosen.memory.embedding) > threshold
                for chosen in selected
            )
            if not too_similar:
                selected.append(candidate)
        return selected


def build_context_block(results: list[RetrievedMemory]) -> str:
    """Format ranked memories as a markdown block for prompt injection.

    Memories are grouped by type; groups appear in the order of their best
    ranked member, and members keep their rank order.
    """
    if not results:
        return ""

    groups: dict[MemoryType, list[str]] = {}
    for result in results:
        groups.setdefault(result.memory.type, []).append(result.memory.content)

    lines = ["## Remembered Context"]
    for memory_type, contents in groups.items():
        lines.append("")
        lines.append(f"### {TYPE_LABELS.get(memory_type, memory_type.value)}")
        lines.extend(f"- {content}" for content in contents)
    return "\n".join(lines)
