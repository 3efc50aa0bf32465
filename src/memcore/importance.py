"""Importance scoring for memories.

Maps four factor groups (content, source, context, usage) to a single
score in [0, 1] with a per-group breakdown. Every group is saturated at
1.0 before the groups are combined as a weighted mean, so the final score
is bounded for any weight table and never decreases when a positive
factor increases.

Scoring is pure: identical inputs and weights always give identical
output.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from memcore.config import ImportanceWeights
from memcore.models import ImportanceBreakdown, MemorySource, MemoryType

logger = logging.getLogger(__name__)

STORE_THRESHOLD = 0.1
LONG_TERM_PROMOTION_THRESHOLD = 0.6
ACCELERATED_DECAY_THRESHOLD = 0.3
DECAY_PROTECTION_THRESHOLD = 0.9


class RetrievalPriority(str, Enum):
    """Coarse retrieval priority derived from an importance score."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    MINIMAL = "minimal"


# Lightweight detectors, English and Norwegian
ENTITY_PATTERNS = [
    re.compile(r"\b[A-ZÆØÅ][a-zæøå]+(?:\s+[A-ZÆØÅ][a-zæøå]+)+\b"),
    re.compile(r"\b(?:AS|ASA|Inc|Ltd|LLC|GmbH|Corp)\b"),
    re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.]+\b"),
    re.compile(r"https?://\S+"),
]

TEMPORAL_PATTERNS = [
    re.compile(r"\b\d{1,2}[./-]\d{1,2}(?:[./-]\d{2,4})?\b"),
    re.compile(
        r"\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
        r"mandag|tirsdag|onsdag|torsdag|fredag|lørdag|søndag)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:january|february|march|april|may|june|july|august|september|october|"
        r"november|december|januar|februar|mars|mai|juni|juli|oktober|desember)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:today|tomorrow|yesterday|next week|last week|deadline|"
        r"i dag|i morgen|i går|neste uke|forrige uke|frist)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b\d{1,2}:\d{2}\b"),
]

EMOTIONAL_PATTERNS = [
    re.compile(
        r"\b(?:love|hate|happy|sad|angry|excited|worried|frustrated|afraid|proud|"
        r"elsker|hater|glad|lei meg|sint|spent|bekymret|frustrert|redd|stolt)\b",
        re.IGNORECASE,
    ),
    re.compile(r"!{2,}"),
]

NUMERICAL_PATTERNS = [
    re.compile(r"\b\d+(?:[.,]\d+)?\s*(?:%|kr|nok|usd|eur|\$|€)", re.IGNORECASE),
    re.compile(r"\b\d{2,}\b"),
]

EMPHASIS_PATTERNS = [
    re.compile(
        r"\b(?:remember(?: this| that)?|important|don't forget|do not forget|note that|"
        r"husk(?: dette| at)?|viktig|ikke glem|merk at)\b",
        re.IGNORECASE,
    ),
]

VAGUE_WORDS = frozenset({
    "something", "stuff", "things", "thing", "maybe", "probably", "somehow",
    "sometimes", "kind", "sort", "whatever", "etc",
    "noe", "ting", "kanskje", "sikkert", "liksom", "greier",
})


@dataclass
class ContentFactors:
    """Signals derived from the memory text itself."""

    has_entities: bool = False
    has_temporal: bool = False
    has_emotional: bool = False
    has_numerical: bool = False
    length: int = 0
    specificity: float = 0.5


@dataclass
class SourceFactors:
    """Signals about how the memory was acquired."""

    method: MemorySource = MemorySource.INFERENCE
    explicit: bool = False
    user_emphasis: bool = False
    repeated: bool = False


@dataclass
class ContextFactors:
    """Signals about the memory's place in the user's context.

    ``recency_days`` is an age: older memories score lower.
    """

    type_weight: float = 0.5
    recency_days: float = 0.0
    goal_related: bool = False
    topic_clustered: bool = False


@dataclass
class UsageFactors:
    """Signals about demonstrated usefulness."""

    retrieval_count: int = 0
    usage_rate: float = 0.0
    feedback: float = 0.0


@dataclass
class ImportanceFactors:
    """All inputs to an importance calculation."""

    content: ContentFactors = field(default_factory=ContentFactors)
    source: SourceFactors = field(default_factory=SourceFactors)
    context: ContextFactors = field(default_factory=ContextFactors)
    usage: UsageFactors = field(default_factory=UsageFactors)


@dataclass
class ImportanceScore:
    """Normalised score plus the breakdown that produced it."""

    score: float
    breakdown: ImportanceBreakdown
    weights_version: str

    def __str__(self) -> str:
        return f"ImportanceScore({self.score:.3f}, v{self.weights_version})"


METHOD_BONUS = {
    MemorySource.EXPLICIT_STATEMENT: 0.2,
    MemorySource.CORRECTION: 0.15,
    MemorySource.OBSERVATION: 0.1,
    MemorySource.EXTERNAL_IMPORT: 0.05,
    MemorySource.INFERENCE: 0.0,
    MemorySource.SYSTEM_GENERATED: 0.0,
}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _matches_any(patterns: list[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


class ImportanceScorer:
    """Computes importance scores with an auditable breakdown.

    Example:
        >>> scorer = ImportanceScorer()
        >>> result = scorer.score_content(
        ...     "Remember: my deadline is Friday", MemoryType.GOAL,
        ...     MemorySource.EXPLICIT_STATEMENT,
        ... )
        >>> 0.0 <= result.score <= 1.0
        True
    """

    def __init__(self, weights: ImportanceWeights | None = None) -> None:
        self._weights = weights or ImportanceWeights()

    @property
    def weights(self) -> ImportanceWeights:
        return self._weights

    # ===== Factor extraction =====

    def extract_factors(
        self,
        content: str,
        memory_type: MemoryType,
        source: MemorySource,
        metadata: dict[str, Any] | None = None,
    ) -> ImportanceFactors:
        """Derive scoring factors from content and metadata.

        Args:
            content: Memory text
            memory_type: Semantic type, selects the baseline type weight
            source: Acquisition method
            metadata: Optional context hints. Recognised keys are
                ``recency_days``, ``goal_related``, ``topic_clustered``,
                ``repeated``, ``emphasis``, ``retrieval_count``, ``usage_rate`` and
                ``feedback``.

        Returns:
            ImportanceFactors ready for :meth:`calculate`.
        """
        metadata = metadata or {}
        emphasis = _matches_any(EMPHASIS_PATTERNS, content)

        return ImportanceFactors(
            content=ContentFactors(
                has_entities=_matches_any(ENTITY_PATTERNS, content),
                has_temporal=_matches_any(TEMPORAL_PATTERNS, content),
                has_emotional=_matches_any(EMOTIONAL_PATTERNS, content),
                has_numerical=_matches_any(NUMERICAL_PATTERNS, content),
                length=len(content),
                specificity=self._specificity(content),
            ),
            source=SourceFactors(
                method=source,
                explicit=source == MemorySource.EXPLICIT_STATEMENT,
                user_emphasis=emphasis or bool(metadata.get("emphasis", False)),
                repeated=bool(metadata.get("repeated", False)),
            ),
            context=ContextFactors(
                type_weight=self._weights.type_weight(memory_type),
                recency_days=float(metadata.get("recency_days", 0.0)),
                goal_related=bool(metadata.get("goal_related", memory_type == MemoryType.GOAL)),
                topic_clustered=bool(metadata.get("topic_clustered", False)),
            ),
            usage=UsageFactors(
                retrieval_count=int(metadata.get("retrieval_count", 0)),
                usage_rate=float(metadata.get("usage_rate", 0.0)),
                feedback=float(metadata.get("feedback", 0.0)),
            ),
        )

    @staticmethod
    def _specificity(content: str) -> float:
        """Inverse of vague-word density, in [0, 1]."""
        words = re.findall(r"[\wæøå']+", content.lower())
        if not words:
            return 0.0
        vague = sum(1 for w in words if w in VAGUE_WORDS)
        return 1.0 - min(1.0, vague / len(words) * 5)

    # ===== Calculation =====

    def calculate(
        self,
        factors: ImportanceFactors,
        weights: ImportanceWeights | None = None,
    ) -> ImportanceScore:
        """Combine factor groups into a normalised importance score.

        Args:
            factors: Output of :meth:`extract_factors` (or hand-built)
            weights: Weight table override. Defaults to the scorer's table.

        Returns:
            ImportanceScore with score in [0, 1] and the per-group breakdown.
        """
        w = weights or self._weights
        breakdown = ImportanceBreakdown(
            content=self._content_score(factors.content, w),
            source=self._source_score(factors.source, w),
            context=self._context_score(factors.context, w),
            usage=self._usage_score(factors.usage, w),
        )

        weighted = (
            breakdown.content * w.content_weight
            + breakdown.source * w.source_weight
            + breakdown.context * w.context_weight
            + breakdown.usage * w.usage_weight
        )
        score = _clamp(weighted / w.group_total)
        return ImportanceScore(score=score, breakdown=breakdown, weights_version=w.version)

    def recalculate_with_usage(
        self,
        current_score: float,
        usage: UsageFactors,
        weights: ImportanceWeights | None = None,
    ) -> ImportanceScore:
        """Blend a stored score with freshly observed usage.

        Lets importance grow with demonstrated utility regardless of the
        original content signals.
        """
        w = weights or self._weights
        usage_score = self._usage_score(usage, w)
        blended = _clamp(current_score * (1 - w.usage_multiplier) + usage_score * w.usage_multiplier)
        return ImportanceScore(
            score=blended,
            breakdown=ImportanceBreakdown(usage=usage_score),
            weights_version=w.version,
        )

    def score_content(
        self,
        content: str,
        memory_type: MemoryType,
        source: MemorySource,
        metadata: dict[str, Any] | None = None,
    ) -> ImportanceScore:
        """Shortcut for extract_factors followed by calculate."""
        factors = self.extract_factors(content, memory_type, source, metadata)
        result = self.calculate(factors)
        logger.debug(f"Scored {memory_type.value} memory: {result}")
        return result

    @staticmethod
    def _content_score(c: ContentFactors, w: ImportanceWeights) -> float:
        score = 0.3
        if c.has_entities:
            score += w.entity_bonus
        if c.has_temporal:
            score += w.temporal_bonus
        if c.has_emotional:
            score += w.emotional_bonus
        if c.has_numerical:
            score += w.numerical_bonus
        score += min(0.1, max(0, c.length) / 1000 * 0.1)
        score += _clamp(c.specificity) * w.specificity_multiplier
        return _clamp(score)

    @staticmethod
    def _source_score(s: SourceFactors, w: ImportanceWeights) -> float:
        score = 0.4
        if s.explicit:
            score *= w.explicit_source_multiplier
        if s.user_emphasis:
            score *= w.user_emphasis_multiplier
        if s.repeated:
            score *= w.repetition_multiplier
        score += METHOD_BONUS.get(s.method, 0.0)
        return _clamp(score)

    @staticmethod
    def _context_score(c: ContextFactors, w: ImportanceWeights) -> float:
        freshness = 1 - min(0.5, max(0.0, c.recency_days) * w.recency_decay)
        score = _clamp(c.type_weight) * freshness
        if c.goal_related:
            score += w.goal_related_bonus
        if c.topic_clustered:
            score += w.clustered_bonus
        return _clamp(score)

    @staticmethod
    def _usage_score(u: UsageFactors, w: ImportanceWeights) -> float:
        score = 0.3
        score += w.retrieval_weight * min(1.0, max(0, u.retrieval_count) / 20)
        score += w.usage_rate_weight * _clamp(u.usage_rate)
        score += w.feedback_weight * (_clamp(u.feedback, -1.0, 1.0) + 1) / 2
        return _clamp(score)

    # ===== Thresholds =====

    @staticmethod
    def should_store(score: float) -> bool:
        return score >= STORE_THRESHOLD

    @staticmethod
    def should_promote_long_term(score: float) -> bool:
        return score >= LONG_TERM_PROMOTION_THRESHOLD

    @staticmethod
    def is_decay_protected(score: float) -> bool:
        return score >= DECAY_PROTECTION_THRESHOLD

    @staticmethod
    def retrieval_priority(score: float) -> RetrievalPriority:
        if score >= 0.7:
            return RetrievalPriority.HIGH
        if score >= 0.4:
            return RetrievalPriority.MEDIUM
        if score >= 0.2:
            return RetrievalPriority.LOW
        return RetrievalPriority.MINIMAL
