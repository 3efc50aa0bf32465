"""Persona insights extracted from a conversation turn.

An insight is a typed observation about the user ("works at Visma",
"prefers bullet points") addressed to one persona field. Insights are
what the persona service consumes; memories are what retrieval serves.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class InsightCategory(str, Enum):
    PROFESSIONAL = "professional"
    PREFERENCE = "preference"
    GOAL = "goal"
    CHALLENGE = "challenge"
    RELATIONSHIP = "relationship"
    STYLE = "style"
    FACT = "fact"


class InsightField(str, Enum):
    """Persona field an insight updates."""
    PROFESSIONAL_TITLE = "professional.title"
    PROFESSIONAL_COMPANY = "professional.company"
    PROFESSIONAL_INDUSTRY = "professional.industry"
    PROFESSIONAL_TEAM_SIZE = "professional.team_size"
    PROFESSIONAL_GOAL = "professional.goals"
    PROFESSIONAL_CHALLENGE = "professional.challenges"
    PREFERENCE_INTEREST = "preferences.interests"
    PREFERENCE_AVOID = "preferences.avoid_topics"
    PREFERENCE_INFO_FORMAT = "preferences.info_format"
    RELATIONSHIP_PERSON = "relationships.key_people"
    STYLE_FORMALITY = "style.formality"
    STYLE_VERBOSITY = "style.verbosity"
    STYLE_DIRECTNESS = "style.directness"
    STYLE_EMOTIONALITY = "style.emotionality"
    STYLE_TECHNICALITY = "style.technicality"
    STYLE_LANGUAGE = "style.preferred_language"
    STYLE_GREETING = "style.greetings"
    STYLE_SIGNOFF = "style.signoffs"
    GENERAL_FACT = "facts.general"


@dataclass
class Insight:
    """One observation about the user."""

    category: InsightCategory
    field: InsightField
    value: str | float
    confidence: float
    source: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "field": self.field.value,
            "value": self.value,
            "confidence": self.confidence,
            "source": self.source,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class InsightRule:
    """A regex plus a builder turning its match into insights."""

    category: InsightCategory
    pattern: re.Pattern
    build: Callable[[re.Match], list[tuple[InsightField, str | float]]]
    confidence: float


_END = r"(?=[.,!?;]|\s+(?:and|but|og|men)\b|$)"
_COMPANY = r"(?-i:[A-ZÆØÅ0-9][\w&-]*(?:\.[\w&-]+)*(?:\s+[A-ZÆØÅ][\w&-]*(?:\.[\w&-]+)*)*)"
_NAME = r"(?-i:[A-ZÆØÅ][a-zæøå]+(?:\s+[A-ZÆØÅ][a-zæøå]+)?)"

UNINFORMATIVE_PREFIXES = (
    "fine", "good", "ok", "okay", "interested", "here", "ready", "sure", "not sure",
    "bra", "fin", "klar", "her", "looking", "wondering", "trying", "asking",
    "thinking", "hoping", "wanting", "going", "glad", "happy", "sorry", "just",
)


def is_uninformative(statement: str) -> bool:
    lowered = statement.lower().strip()
    return any(lowered == u or lowered.startswith(u + " ") for u in UNINFORMATIVE_PREFIXES)


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip(" .,;:!?")


def _title_and_company(match: re.Match) -> list[tuple[InsightField, str | float]]:
    title = _clean(match.group("title"))
    company = _clean(match.group("company"))
    if is_uninformative(title) or len(title.split()) > 5:
        return []
    return [
        (InsightField.PROFESSIONAL_TITLE, title),
        (InsightField.PROFESSIONAL_COMPANY, company),
    ]


def _one(insight_field: InsightField, group: str = "value") -> Callable[[re.Match], list[tuple[InsightField, str | float]]]:
    def build(match: re.Match) -> list[tuple[InsightField, str | float]]:
        value = _clean(match.group(group))
        if len(value) < 2:
            return []
        return [(insight_field, value)]
    return build


def _constant(insight_field: InsightField, value: str | float) -> Callable[[re.Match], list[tuple[InsightField, str | float]]]:
    return lambda match: [(insight_field, value)]


def _team_size(match: re.Match) -> list[tuple[InsightField, str | float]]:
    return [(InsightField.PROFESSIONAL_TEAM_SIZE, float(match.group("value")))]


def _rx(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


P, PR, G, C, R, S = (
    InsightCategory.PROFESSIONAL,
    InsightCategory.PREFERENCE,
    InsightCategory.GOAL,
    InsightCategory.CHALLENGE,
    InsightCategory.RELATIONSHIP,
    InsightCategory.STYLE,
)

RULES: list[InsightRule] = [
    # Professional
    InsightRule(P, _rx(rf"\b(?:i am|i'm|jeg er)\s+(?:an?\s+|en\s+)?(?P<title>[\w\s-]+?)\s+(?:at|hos|i)\s+(?P<company>{_COMPANY})"), _title_and_company, 0.9),
    InsightRule(P, _rx(rf"\b(?:i work|i am working|jeg jobber|jeg arbeider)\s+(?:as|som)\s+(?:an?\s+|en\s+)?(?P<title>[\w\s-]+?)\s+(?:at|for|hos|i)\s+(?P<company>{_COMPANY})"), _title_and_company, 0.9),
    InsightRule(P, _rx(rf"\b(?:i work for|i work at|jeg jobber for|jeg jobber hos)\s+(?P<value>{_COMPANY})"), _one(InsightField.PROFESSIONAL_COMPANY), 0.85),
    InsightRule(P, _rx(rf"\b(?:my company|our company|firmaet mitt|bedriften min)(?:,)?\s+(?P<value>{_COMPANY})(?:,)?\s+(?:does|makes|provides|sells|driver med|lager|tilbyr|selger)"), _one(InsightField.PROFESSIONAL_COMPANY), 0.85),
    InsightRule(P, _rx(r"\b(?:i manage|i lead|jeg leder)\s+(?:a team of\s+|et team på\s+)?(?P<value>\d+)\s+(?:people|employees|developers|engineers|folk|ansatte|personer)"), _team_size, 0.9),
    InsightRule(P, _rx(rf"\b(?:i work in|we are in|jeg jobber i|vi er i)\s+(?:the\s+)?(?P<value>[\w\s-]+?)\s+(?:industry|sector|bransjen|sektoren){_END}"), _one(InsightField.PROFESSIONAL_INDUSTRY), 0.85),
    # Preferences
    InsightRule(PR, _rx(rf"\b(?:i prefer|i like|jeg foretrekker|jeg liker)\s+(?!ikke\b)(?:to have |å ha |to receive |å motta )?(?P<value>[^.,!?;]+?){_END}"), _one(InsightField.PREFERENCE_INTEREST), 0.8),
    InsightRule(PR, _rx(rf"\b(?:i don't like|i do not like|i dislike|i hate|jeg liker ikke|jeg misliker)\s+(?P<value>[^.,!?;]+?){_END}"), _one(InsightField.PREFERENCE_AVOID), 0.8),
    InsightRule(PR, _rx(r"\b(?:keep it|make it|gjør det|hold det)\s+(?:short|brief|simple|kort|enkelt)"), _constant(InsightField.STYLE_VERBOSITY, "brief"), 0.85),
    InsightRule(PR, _rx(r"\b(?:give me|send me|i want|gi meg|send meg|jeg vil ha)\s+(?:more\s+|mer\s+)?(?:details?|detaljer)"), _constant(InsightField.STYLE_VERBOSITY, "detailed"), 0.8),
    # Goals
    InsightRule(G, _rx(rf"\b(?:i want to|i need to|i'm trying to|my goal is to|jeg vil|jeg må|jeg prøver å|målet mitt er å)\s+(?P<value>[^.,!?;]+?){_END}"), _one(InsightField.PROFESSIONAL_GOAL), 0.75),
    InsightRule(G, _rx(rf"\b(?:we're working on|we are working on|we need to|vi jobber med|vi må)\s+(?P<value>[^.,!?;]+?){_END}"), _one(InsightField.PROFESSIONAL_GOAL), 0.7),
    # Challenges
    InsightRule(C, _rx(rf"\b(?:i'm struggling with|i am struggling with|i have trouble with|the problem is|my challenge is|jeg sliter med|problemet er|utfordringen min er)\s+(?P<value>[^.,!?;]+?){_END}"), _one(InsightField.PROFESSIONAL_CHALLENGE), 0.8),
    InsightRule(C, _rx(rf"\b(?:it's difficult to|it's hard to|it is hard to|det er vanskelig å|det er utfordrende å)\s+(?P<value>[^.,!?;]+?){_END}"), _one(InsightField.PROFESSIONAL_CHALLENGE), 0.75),
    # Relationships
    InsightRule(R, _rx(rf"\b(?:my\s+)?(?P<role>boss|manager|colleague|coworker|team lead|sjefen min|lederen min|kollegaen min)\s+(?:is\s+|er\s+|,\s*)(?P<value>{_NAME})"), _one(InsightField.RELATIONSHIP_PERSON), 0.7),
    InsightRule(R, _rx(rf"\b(?P<role>i report to|i work with|i work under|jeg rapporterer til|jeg jobber med)\s+(?P<value>{_NAME})"), _one(InsightField.RELATIONSHIP_PERSON), 0.75),
    # Style
    InsightRule(S, _rx(r"\b(?:please be|can you be|could you be|vær så snill å være|kan du være)\s+(?:more\s+|mer\s+)?(?:formal|professional|formell|profesjonell)"), _constant(InsightField.STYLE_FORMALITY, "formal"), 0.9),
    InsightRule(S, _rx(r"\b(?:please be|can you be|could you be|vær så snill å være|kan du være)\s+(?:more\s+|mer\s+)?(?:casual|relaxed|avslappet|uformell)"), _constant(InsightField.STYLE_FORMALITY, "casual"), 0.9),
    InsightRule(S, _rx(r"\b(?:bullet points?|bullets|numbered list|punktliste|kulepunkter|nummerert liste)"), _constant(InsightField.PREFERENCE_INFO_FORMAT, "bullet_points"), 0.85),
]

GENERAL_FACT_PATTERNS = [
    _rx(r"(?:^|[.!?]\s+)(?:i am|i'm|jeg er)\s+(?:an?\s+|en\s+)?(?P<value>[^,.!?]+)"),
    _rx(r"(?:^|[.!?]\s+)(?:i have|i've got|jeg har)\s+(?P<value>[^,.!?]+)"),
    _rx(r"(?:^|[.!?]\s+)(?:i live in|i'm from|i'm based in|jeg bor i|jeg er fra)\s+(?P<value>[^,.!?]+)"),
]

ACKNOWLEDGEMENT_BOOST = 0.1


class InsightExtractor:
    """Regex insight extractor for English and Norwegian."""

    def __init__(self, rules: list[InsightRule] | None = None, include_general_facts: bool = True) -> None:
        self._rules = rules if rules is not None else RULES
        self._include_general_facts = include_general_facts

    def extract_insights(self, user_message: str, assistant_response: str = "") -> list[Insight]:
        """Extract insights from a user message.

        An insight whose value the assistant echoes back (first 20
        characters, case-insensitive) gains 0.1 confidence.
        """
        if not user_message or not user_message.strip():
            return []

        insights = self._from_rules(user_message)
        if self._include_general_facts:
            insights.extend(self._general_facts(user_message))
        insights = _dedupe(insights)

        response = (assistant_response or "").lower()
        if response:
            for insight in insights:
                probe = str(insight.value).lower()[:20]
                if probe and probe in response:
                    insight.confidence = min(1.0, insight.confidence + ACKNOWLEDGEMENT_BOOST)

        logger.debug(f"Extracted {len(insights)} insights")
        return insights

    def _from_rules(self, text: str) -> list[Insight]:
        insights: list[Insight] = []
        for rule in self._rules:
            match = rule.pattern.search(text)
            if match is None:
                continue
            for insight_field, value in rule.build(match):
                metadata = {}
                if "role" in match.groupdict() and match.group("role"):
                    metadata["role"] = match.group("role").lower()
                insights.append(
                    Insight(
                        category=rule.category,
                        field=insight_field,
                        value=value,
                        confidence=rule.confidence,
                        source=match.group(0).strip(),
                        metadata=metadata,
                    )
                )
        return insights

    @staticmethod
    def _general_facts(text: str) -> list[Insight]:
        insights = []
        for pattern in GENERAL_FACT_PATTERNS:
            for match in pattern.finditer(text):
                content = match.group("value").strip()
                if 3 < len(content) < 100 and not is_uninformative(content):
                    insights.append(
                        Insight(
                            category=InsightCategory.FACT,
                            field=InsightField.GENERAL_FACT,
                            value=f"User: {content}",
                            confidence=0.7,
                            source=match.group(0).strip(" .!?"),
                        )
                    )
        return insights


def _dedupe(insights: list[Insight]) -> list[Insight]:
    seen: set[tuple[str, str]] = set()
    unique = []
    for insight in insights:
        key = (insight.field.value, str(insight.value).lower())
        if key not in seen:
            seen.add(key)
            unique.append(insight)
    return unique
