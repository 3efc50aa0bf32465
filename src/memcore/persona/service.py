"""Persona service: learns who the user is from conversation insights."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Callable, Iterable

from memcore.config import PersonaConfig
from memcore.errors import ConcurrencyError, PersonaNotFoundError
from memcore.extraction.insights import Insight, InsightCategory, InsightField
from memcore.models import utcnow
from memcore.persona.composer import ComposedEmail, EmailRequest, compose_email
from memcore.persona.models import InfoFormat, KeyPerson, PersonaFact, UserPersona
from memcore.persona.questions import (
    PROBING_QUESTIONS,
    ProbingQuestion,
    is_field_empty,
    score_question,
)
from memcore.persona.store import InMemoryPersonaStore, PersonaStore

logger = logging.getLogger(__name__)

MAX_SIGNATURES = 5
STYLE_BLEND = 0.3

Handler = Callable[[UserPersona, Insight], None]


def _append_unique(items: list[str], value: str) -> None:
    if value.strip().lower() not in {i.strip().lower() for i in items}:
        items.append(value.strip())


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


# ===== Insight handlers =====


def _set_title(persona: UserPersona, insight: Insight) -> None:
    persona.professional_profile.title = str(insight.value)


def _set_company(persona: UserPersona, insight: Insight) -> None:
    persona.professional_profile.company = str(insight.value)


def _set_industry(persona: UserPersona, insight: Insight) -> None:
    persona.professional_profile.industry = str(insight.value)


def _set_team_size(persona: UserPersona, insight: Insight) -> None:
    persona.professional_profile.team_size = int(float(insight.value))


def _add_goal(persona: UserPersona, insight: Insight) -> None:
    _append_unique(persona.professional_profile.goals, str(insight.value))


def _add_challenge(persona: UserPersona, insight: Insight) -> None:
    _append_unique(persona.professional_profile.challenges, str(insight.value))


def _add_interest(persona: UserPersona, insight: Insight) -> None:
    _append_unique(persona.preferences.interests, str(insight.value))


def _add_avoid_topic(persona: UserPersona, insight: Insight) -> None:
    _append_unique(persona.preferences.avoid_topics, str(insight.value))


def _set_info_format(persona: UserPersona, insight: Insight) -> None:
    persona.preferences.info_format = InfoFormat(str(insight.value))


def _add_person(persona: UserPersona, insight: Insight) -> None:
    name = str(insight.value).strip()
    if persona.relationships.find_person(name) is not None:
        return
    persona.relationships.key_people.append(
        KeyPerson(name=name, role=insight.metadata.get("role"), notes=insight.source or None)
    )


def _style_adjuster(attribute: str, raise_words: tuple[str, ...]) -> Handler:
    """Handler for a numeric style attribute.

    Numeric values (from style analysis) are blended in; words such as
    "formal" or "brief" nudge the attribute up or down.
    """

    def handle(persona: UserPersona, insight: Insight) -> None:
        style = persona.communication_style
        current = getattr(style, attribute)
        if isinstance(insight.value, (int, float)):
            updated = current * (1 - STYLE_BLEND) + float(insight.value) * STYLE_BLEND
        else:
            step = 0.15 if insight.confidence > 0.8 else 0.05
            updated = current + step if str(insight.value).lower() in raise_words else current - step
        setattr(style, attribute, _clamp(updated))

    return handle


def _set_language(persona: UserPersona, insight: Insight) -> None:
    persona.communication_style.preferred_language = str(insight.value)


def _add_greeting(persona: UserPersona, insight: Insight) -> None:
    greetings = persona.communication_style.greetings
    if len(greetings) < MAX_SIGNATURES:
        _append_unique(greetings, str(insight.value))


def _add_signoff(persona: UserPersona, insight: Insight) -> None:
    signoffs = persona.communication_style.signoffs
    if len(signoffs) < MAX_SIGNATURES:
        _append_unique(signoffs, str(insight.value))


def _add_general_fact(persona: UserPersona, insight: Insight) -> None:
    record_fact(persona, categorize_fact(str(insight.value)), str(insight.value), insight.confidence, insight.source)


INSIGHT_HANDLERS: dict[InsightField, Handler] = {
    InsightField.PROFESSIONAL_TITLE: _set_title,
    InsightField.PROFESSIONAL_COMPANY: _set_company,
    InsightField.PROFESSIONAL_INDUSTRY: _set_industry,
    InsightField.PROFESSIONAL_TEAM_SIZE: _set_team_size,
    InsightField.PROFESSIONAL_GOAL: _add_goal,
    InsightField.PROFESSIONAL_CHALLENGE: _add_challenge,
    InsightField.PREFERENCE_INTEREST: _add_interest,
    InsightField.PREFERENCE_AVOID: _add_avoid_topic,
    InsightField.PREFERENCE_INFO_FORMAT: _set_info_format,
    InsightField.RELATIONSHIP_PERSON: _add_person,
    InsightField.STYLE_FORMALITY: _style_adjuster("formality", ("formal", "more")),
    InsightField.STYLE_VERBOSITY: _style_adjuster("verbosity", ("detailed", "more")),
    InsightField.STYLE_DIRECTNESS: _style_adjuster("directness", ("direct", "more")),
    InsightField.STYLE_EMOTIONALITY: _style_adjuster("emotionality", ("emotional", "more")),
    InsightField.STYLE_TECHNICALITY: _style_adjuster("technicality", ("technical", "more")),
    InsightField.STYLE_LANGUAGE: _set_language,
    InsightField.STYLE_GREETING: _add_greeting,
    InsightField.STYLE_SIGNOFF: _add_signoff,
    InsightField.GENERAL_FACT: _add_general_fact,
}

# Categories whose insights are also kept as persona facts
FACT_CATEGORIES = {
    InsightCategory.PROFESSIONAL: "professional",
    InsightCategory.RELATIONSHIP: "relationships",
}


def categorize_fact(content: str) -> str:
    lowered = content.lower()
    if any(w in lowered for w in ("job", "work", "company", "jobb", "bedrift", "firma")):
        return "professional"
    if any(w in lowered for w in ("like", "prefer", "enjoy", "liker", "foretrekker")):
        return "preferences"
    if any(w in lowered for w in ("family", "friend", "colleague", "familie", "venn", "kollega")):
        return "relationships"
    return "general"


def record_fact(persona: UserPersona, category: str, content: str, confidence: float, source: str = "") -> None:
    """Add a fact, or raise the confidence of an existing one with the same normalised content."""
    facts = persona.facts.setdefault(category, [])
    normalised = content.strip().lower()
    for fact in facts:
        if fact.content.strip().lower() == normalised:
            fact.confidence = max(fact.confidence, confidence)
            return
    facts.append(PersonaFact(content=content.strip(), confidence=confidence, source=source))


def calculate_confidence(persona: UserPersona, min_conversations: int = 5) -> float:
    """Mean of conversation volume, fact volume and profile completeness."""
    conversation_factor = min(1.0, persona.conversations_analyzed / max(1, min_conversations))
    fact_factor = min(1.0, persona.fact_count / 10)
    profile_factor = persona.professional_profile.filled_fields() / 4
    return min(1.0, (conversation_factor + fact_factor + profile_factor) / 3)


class PersonaService:
    """Builds and serves user personas.

    Updates to one persona are serialised with a per-persona lock and
    saved with an optimistic version check, so concurrent turns for the
    same user never lose each other's insights.

    Example:
        >>> service = PersonaService(InMemoryPersonaStore())
        >>> persona = await service.get_or_create_persona("user-1", "tenant-1")
        >>> persona = await service.update_from_insights(persona.id, insights)
    """

    def __init__(self, store: PersonaStore | None = None, config: PersonaConfig | None = None) -> None:
        self._store = store if store is not None else InMemoryPersonaStore()
        self._config = config or PersonaConfig()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def store(self) -> PersonaStore:
        return self._store

    async def get_or_create_persona(
        self, user_id: str, tenant_id: str, chatbot_id: str | None = None
    ) -> UserPersona:
        """Return the persona for this scope, creating a default one at version 1."""
        existing = await self._store.get(user_id, tenant_id, chatbot_id)
        if existing is not None:
            return existing

        persona = UserPersona(user_id=user_id, tenant_id=tenant_id, chatbot_id=chatbot_id)
        persona.communication_style.preferred_language = self._config.preferred_language
        try:
            created = await self._store.save(persona, expected_version=0)
        except ConcurrencyError:
            # Created concurrently by another turn
            created = await self._store.get(user_id, tenant_id, chatbot_id)
            if created is None:
                raise
        logger.info(f"Created persona {created.key}")
        return created

    async def get_persona(self, persona_id: str) -> UserPersona | None:
        return await self._store.get_by_id(persona_id)

    async def update_from_insights(self, persona_id: str, insights: Iterable[Insight]) -> UserPersona:
        """Apply insights to a persona and save it.

        Each insight goes through its field handler; an insight that fails
        is logged and skipped. Conversation count and version are bumped
        once per call.

        Raises:
            PersonaNotFoundError: If the persona does not exist
            ConcurrencyError: If the save keeps conflicting after the configured retries
        """
        insights = list(insights)
        async with self._locks[persona_id]:
            attempts = max(1, self._config.max_update_retries)
            for attempt in range(attempts):
                persona = await self._store.get_by_id(persona_id)
                if persona is None:
                    raise PersonaNotFoundError(persona_id)

                expected = persona.version
                applied = self._apply_insights(persona, insights)
                persona.conversations_analyzed += 1
                persona.overall_confidence = calculate_confidence(
                    persona, self._config.min_conversations_for_reliability
                )
                persona.version = expected + 1
                persona.updated_at = utcnow()

                try:
                    saved = await self._store.save(persona, expected_version=expected)
                except ConcurrencyError as e:
                    if attempt == attempts - 1:
                        logger.error(f"Giving up on persona {persona_id} after {attempts} conflicts")
                        raise
                    logger.warning(f"Persona {persona_id} changed during update, retrying: {e}")
                    continue

                logger.debug(
                    f"Persona {persona_id} v{saved.version}: applied {applied}/{len(insights)} insights, "
                    f"confidence {saved.overall_confidence:.2f}"
                )
                return saved

        raise PersonaNotFoundError(persona_id)

    async def update_for_scope(
        self,
        user_id: str,
        tenant_id: str,
        insights: Iterable[Insight],
        chatbot_id: str | None = None,
    ) -> UserPersona:
        """get_or_create_persona followed by update_from_insights."""
        persona = await self.get_or_create_persona(user_id, tenant_id, chatbot_id)
        return await self.update_from_insights(persona.id, insights)

    @staticmethod
    def _apply_insights(persona: UserPersona, insights: list[Insight]) -> int:
        applied = 0
        for insight in insights:
            handler = INSIGHT_HANDLERS.get(insight.field)
            if handler is None:
                logger.warning(f"No persona handler for insight field {insight.field}")
                continue
            try:
                handler(persona, insight)
            except Exception as e:
                logger.warning(f"Skipping insight {insight.field.value}={insight.value!r}: {e}")
                continue

            fact_category = FACT_CATEGORIES.get(insight.category)
            if fact_category is not None:
                content = f"{insight.field.value.split('.')[-1]}: {insight.value}"
                record_fact(persona, fact_category, content, insight.confidence, insight.source)
            applied += 1
        return applied

    # ===== Questions =====

    def get_next_probing_question(
        self,
        persona: UserPersona,
        asked_ids: Iterable[str] = (),
        language: str | None = None,
    ) -> ProbingQuestion | None:
        """Best question for the persona's current gaps, or None.

        Questions already asked, and questions whose target fields are all
        filled, are skipped. Ties keep catalog order.
        """
        if not self._config.auto_ask_questions:
            return None

        asked = set(asked_ids)
        best: ProbingQuestion | None = None
        best_score = float("-inf")
        for question in PROBING_QUESTIONS:
            if question.id in asked:
                continue
            if not any(is_field_empty(persona, f) for f in question.target_fields):
                continue
            score = score_question(question, persona)
            if score > best_score:
                best, best_score = question, score

        if best is not None:
            lang = language or persona.communication_style.preferred_language
            logger.debug(f"Next probing question for {persona.key}: {best.id} ({best.text(lang)})")
        return best

    def question_text(self, question: ProbingQuestion, persona: UserPersona, language: str | None = None) -> str:
        return question.text(language or persona.communication_style.preferred_language)

    # ===== Composition =====

    def compose_email(self, persona: UserPersona, request: EmailRequest) -> ComposedEmail:
        return compose_email(persona, request, self._config.low_confidence_threshold)
