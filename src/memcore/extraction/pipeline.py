"""Extraction pipeline: one conversation turn in, memory drafts and insights out.

The pattern extractors are the default. Anything satisfying the
:class:`Extractor` protocol (an LLM-backed extractor, for instance) can be
plugged in without touching the memory service.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from memcore.extraction.entities import Entity, EntityExtractor
from memcore.extraction.facts import Fact, FactExtractor
from memcore.extraction.insights import Insight, InsightCategory, InsightExtractor
from memcore.extraction.preferences import Preference, PreferenceDetector
from memcore.models import MemoryCandidate, MemoryScope, MemorySource, MemoryType

logger = logging.getLogger(__name__)


@dataclass
class MemoryCandidateDraft:
    """A memory proposal that has not been scoped or scored yet."""

    type: MemoryType
    content: str
    confidence: float
    source: MemorySource = MemorySource.INFERENCE
    structured_data: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_candidate(
        self,
        scope: MemoryScope,
        conversation_id: str | None = None,
        message_ids: list[str] | None = None,
    ) -> MemoryCandidate:
        return MemoryCandidate(
            scope=scope,
            type=self.type,
            content=self.content,
            source=self.source,
            confidence=self.confidence,
            tags=list(self.tags),
            structured_data=dict(self.structured_data),
            metadata=dict(self.metadata),
            source_conversation_id=conversation_id,
            source_message_ids=list(message_ids or []),
        )


@dataclass
class ExtractionResult:
    drafts: list[MemoryCandidateDraft] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)
    entities: list[Entity] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not (self.drafts or self.insights or self.entities)


@runtime_checkable
class Extractor(Protocol):
    """Produces memory drafts from free text."""

    def extract(self, text: str) -> list[MemoryCandidateDraft]:
        ...


SKILL_PREDICATES = frozenset({"has_skill", "speaks"})
PREFERENCE_PREDICATES = frozenset({"prefers", "dislikes"})
PROFILE_PREDICATES = frozenset({"works_at", "has_job_title", "lives_in", "is_from"})


def fact_memory_type(fact: Fact) -> MemoryType:
    """Map a fact predicate to the memory type it is stored as."""
    if fact.predicate in SKILL_PREDICATES:
        return MemoryType.SKILL
    if fact.predicate in PREFERENCE_PREDICATES:
        return MemoryType.PREFERENCE
    if not fact.about_user:
        return MemoryType.RELATIONSHIP
    if fact.predicate.startswith("has_") and fact.predicate not in PROFILE_PREDICATES:
        return MemoryType.RELATIONSHIP
    return MemoryType.FACT


def fact_to_draft(fact: Fact) -> MemoryCandidateDraft:
    return MemoryCandidateDraft(
        type=fact_memory_type(fact),
        content=fact.statement,
        confidence=fact.confidence,
        source=MemorySource.EXPLICIT_STATEMENT if fact.about_user else MemorySource.OBSERVATION,
        structured_data=fact.to_dict(),
        tags=["fact", fact.predicate],
    )


def preference_to_draft(preference: Preference) -> MemoryCandidateDraft:
    return MemoryCandidateDraft(
        type=MemoryType.PREFERENCE,
        content=preference.statement,
        confidence=preference.confidence,
        source=MemorySource.EXPLICIT_STATEMENT,
        structured_data={
            "category": preference.category.value,
            "key": preference.key,
            "value": preference.value,
            "polarity": preference.polarity.value,
            "strength": preference.strength.value,
            "evidence": preference.evidence,
        },
        tags=["preference", preference.category.value],
        metadata={"emphasis": preference.strength.value == "strong"},
    )


def goal_to_draft(insight: Insight) -> MemoryCandidateDraft:
    return MemoryCandidateDraft(
        type=MemoryType.GOAL,
        content=f"User wants to {insight.value}",
        confidence=insight.confidence,
        source=MemorySource.EXPLICIT_STATEMENT,
        structured_data=insight.to_dict(),
        tags=["goal"],
        metadata={"goal_related": True},
    )


class PatternExtractor:
    """Regex :class:`Extractor` built from the fact and preference extractors."""

    def __init__(
        self,
        fact_extractor: FactExtractor | None = None,
        preference_detector: PreferenceDetector | None = None,
    ) -> None:
        self.facts = fact_extractor or FactExtractor()
        self.preferences = preference_detector or PreferenceDetector()

    def extract(self, text: str) -> list[MemoryCandidateDraft]:
        drafts = [fact_to_draft(f) for f in self.facts.extract_facts(text)]
        drafts.extend(preference_to_draft(p) for p in self.preferences.detect_preferences(text))
        return drafts


class ExtractionPipeline:
    """Runs every extractor over a conversation turn.

    A failing stage is logged and contributes nothing; the other stages
    still run.
    """

    def __init__(
        self,
        extractor: Extractor | None = None,
        insight_extractor: InsightExtractor | None = None,
        entity_extractor: EntityExtractor | None = None,
        extract_goals: bool = True,
    ) -> None:
        self.extractor = extractor or PatternExtractor()
        self.insight_extractor = insight_extractor or InsightExtractor()
        self.entity_extractor = entity_extractor or EntityExtractor()
        self.extract_goals = extract_goals

    def process_turn(self, user_message: str, assistant_response: str = "") -> ExtractionResult:
        """Extract drafts, insights and entities from one exchange.

        Drafts come from the user message only. The assistant response is
        used to boost insights it acknowledges.
        """
        start = time.perf_counter()
        result = ExtractionResult()
        if not user_message or not user_message.strip():
            return result

        try:
            result.drafts = list(self.extractor.extract(user_message))
        except Exception as e:
            logger.warning(f"Draft extraction failed: {e}")

        try:
            result.insights = self.insight_extractor.extract_insights(user_message, assistant_response)
        except Exception as e:
            logger.warning(f"Insight extraction failed: {e}")

        try:
            result.entities = self.entity_extractor.extract_entities(user_message)
        except Exception as e:
            logger.warning(f"Entity extraction failed: {e}")

        if self.extract_goals:
            result.drafts.extend(
                goal_to_draft(i) for i in result.insights if i.category == InsightCategory.GOAL
            )

        if result.entities:
            names = sorted({e.value for e in result.entities})
            for draft in result.drafts:
                mentioned = [n for n in names if n.lower() in draft.content.lower()]
                if mentioned:
                    draft.metadata.setdefault("entities", mentioned)

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            f"Turn extraction: {len(result.drafts)} drafts, {len(result.insights)} insights, "
            f"{len(result.entities)} entities in {result.duration_ms:.1f}ms"
        )
        return result
