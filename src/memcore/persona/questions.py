"""Catalog of probing questions used to fill persona gaps."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from memcore.persona.models import InfoFormat, UserPersona


class QuestionCategory(str, Enum):
    PROFESSIONAL = "professional"
    GOALS = "goals"
    COMMUNICATION = "communication"
    PREFERENCES = "preferences"
    RELATIONSHIPS = "relationships"


@dataclass(frozen=True)
class ProbingQuestion:
    id: str
    category: QuestionCategory
    text_no: str
    text_en: str
    target_fields: tuple[str, ...]
    priority: int
    success_rate: float
    follow_ups: tuple[str, ...] = field(default_factory=tuple)

    def text(self, language: str = "no") -> str:
        return self.text_no if language == "no" else self.text_en


# Style scalars count as empty while still at their neutral default
_FIELD_VALUES: dict[str, Callable[[UserPersona], Any]] = {
    "professional.title": lambda p: p.professional_profile.title,
    "professional.company": lambda p: p.professional_profile.company,
    "professional.industry": lambda p: p.professional_profile.industry,
    "professional.goals": lambda p: p.professional_profile.goals,
    "professional.challenges": lambda p: p.professional_profile.challenges,
    "preferences.interests": lambda p: p.preferences.interests,
    "preferences.preferred_contact_time": lambda p: p.preferences.preferred_contact_time,
    "preferences.info_format": lambda p: None if p.preferences.info_format == InfoFormat.MIXED else p.preferences.info_format,
    "style.formality": lambda p: None if p.communication_style.formality == 0.5 else p.communication_style.formality,
    "style.verbosity": lambda p: None if p.communication_style.verbosity == 0.5 else p.communication_style.verbosity,
    "relationships.key_people": lambda p: p.relationships.key_people,
}


def is_field_empty(persona: UserPersona, target: str) -> bool:
    getter = _FIELD_VALUES.get(target)
    if getter is None:
        raise KeyError(f"Unknown persona field: {target}")
    value = getter(persona)
    return value is None or value == "" or value == []


PROBING_QUESTIONS: tuple[ProbingQuestion, ...] = (
    ProbingQuestion(
        id="prof-1",
        category=QuestionCategory.PROFESSIONAL,
        text_no="Hva er din rolle i bedriften?",
        text_en="What's your role at your company?",
        target_fields=("professional.title", "professional.company"),
        priority=10,
        success_rate=0.85,
        follow_ups=("What are your main responsibilities?", "How large is your team?"),
    ),
    ProbingQuestion(
        id="prof-2",
        category=QuestionCategory.PROFESSIONAL,
        text_no="Hvilken bransje jobber du i?",
        text_en="What industry do you work in?",
        target_fields=("professional.industry",),
        priority=9,
        success_rate=0.9,
    ),
    ProbingQuestion(
        id="prof-3",
        category=QuestionCategory.PROFESSIONAL,
        text_no="Hva er de største utfordringene du står overfor på jobb akkurat nå?",
        text_en="What are the biggest challenges you're facing at work right now?",
        target_fields=("professional.challenges",),
        priority=8,
        success_rate=0.75,
    ),
    ProbingQuestion(
        id="goals-1",
        category=QuestionCategory.GOALS,
        text_no="Hva er hovedmålene dine for neste kvartal?",
        text_en="What are your main goals for the next quarter?",
        target_fields=("professional.goals",),
        priority=8,
        success_rate=0.7,
    ),
    ProbingQuestion(
        id="goals-2",
        category=QuestionCategory.GOALS,
        text_no="Hvilke prosjekter er du mest begeistret for akkurat nå?",
        text_en="What projects are you most excited about right now?",
        target_fields=("professional.goals", "preferences.interests"),
        priority=7,
        success_rate=0.8,
    ),
    ProbingQuestion(
        id="comm-1",
        category=QuestionCategory.COMMUNICATION,
        text_no="Foretrekker du formell eller uformell kommunikasjon?",
        text_en="Do you prefer formal or casual communication?",
        target_fields=("style.formality",),
        priority=6,
        success_rate=0.85,
    ),
    ProbingQuestion(
        id="comm-2",
        category=QuestionCategory.COMMUNICATION,
        text_no="Foretrekker du korte sammendrag eller detaljerte forklaringer?",
        text_en="Do you prefer brief summaries or detailed explanations?",
        target_fields=("style.verbosity",),
        priority=6,
        success_rate=0.8,
    ),
    ProbingQuestion(
        id="pref-1",
        category=QuestionCategory.PREFERENCES,
        text_no="Når foretrekker du vanligvis å jobbe med viktige oppgaver?",
        text_en="When do you usually prefer to work on important tasks?",
        target_fields=("preferences.preferred_contact_time",),
        priority=5,
        success_rate=0.7,
    ),
    ProbingQuestion(
        id="pref-2",
        category=QuestionCategory.PREFERENCES,
        text_no="Hvordan liker du at informasjon presenteres - punktlister, detaljerte avsnitt, eller noe annet?",
        text_en="How do you like information presented - bullet points, detailed paragraphs, or something else?",
        target_fields=("preferences.info_format",),
        priority=5,
        success_rate=0.75,
    ),
    ProbingQuestion(
        id="rel-1",
        category=QuestionCategory.RELATIONSHIPS,
        text_no="Hvem er de viktigste interessentene du jobber med?",
        text_en="Who are the key stakeholders you work with?",
        target_fields=("relationships.key_people",),
        priority=4,
        success_rate=0.65,
    ),
)


def score_question(question: ProbingQuestion, persona: UserPersona) -> float:
    """priority + 3 per empty target field + 2 x success rate."""
    empty = sum(1 for f in question.target_fields if is_field_empty(persona, f))
    return question.priority + 3 * empty + 2 * question.success_rate


def questions_by_category(category: QuestionCategory) -> list[ProbingQuestion]:
    return [q for q in PROBING_QUESTIONS if q.category == category]
