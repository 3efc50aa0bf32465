"""Detection of stated user preferences.

Rules are grouped by category. Each rule names the preference key and
value it establishes and a base strength; intensifiers in the same
sentence raise the strength one level.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from enum import Enum

from memcore.text import extract_sentences

logger = logging.getLogger(__name__)


class PreferenceCategory(str, Enum):
    COMMUNICATION = "communication"
    SCHEDULING = "scheduling"
    FORMAT = "format"
    LANGUAGE = "language"
    FREQUENCY = "frequency"
    WORKFLOW = "workflow"
    INTERACTION = "interaction"


class PreferenceStrength(str, Enum):
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"


class Polarity(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


STRENGTH_CONFIDENCE = {
    PreferenceStrength.WEAK: 0.5,
    PreferenceStrength.MODERATE: 0.7,
    PreferenceStrength.STRONG: 0.9,
}

_STRENGTH_ORDER = [PreferenceStrength.WEAK, PreferenceStrength.MODERATE, PreferenceStrength.STRONG]

INTENSIFIERS = re.compile(
    r"\b(?:really|always|definitely|absolutely|strongly|hate|love|virkelig|alltid|absolutt|hater|elsker)\b",
    re.IGNORECASE,
)


@dataclass
class Preference:
    """One detected preference."""

    category: PreferenceCategory
    key: str
    value: str
    polarity: Polarity
    strength: PreferenceStrength
    evidence: str
    confidence: float

    @property
    def statement(self) -> str:
        verb = "prefers" if self.polarity == Polarity.POSITIVE else "avoids"
        return f"User {verb} {self.value.replace('_', ' ')} ({self.category.value})"


@dataclass(frozen=True)
class PreferenceRule:
    pattern: re.Pattern
    key: str
    value: str
    strength: PreferenceStrength = PreferenceStrength.MODERATE
    polarity: Polarity = Polarity.POSITIVE


def _rule(
    pattern: str,
    key: str,
    value: str,
    strength: PreferenceStrength = PreferenceStrength.MODERATE,
    polarity: Polarity = Polarity.POSITIVE,
) -> PreferenceRule:
    return PreferenceRule(re.compile(pattern, re.IGNORECASE), key, value, strength, polarity)


W, M, S = PreferenceStrength.WEAK, PreferenceStrength.MODERATE, PreferenceStrength.STRONG

RULES: dict[PreferenceCategory, list[PreferenceRule]] = {
    PreferenceCategory.COMMUNICATION: [
        _rule(r"\b(?:prefer|like|want)\s+(?:to use\s+)?e-?mail", "channel", "email", M),
        _rule(r"\b(?:best|reach me|contact me)\s+(?:via|by|through|on)\s+e-?mail", "channel", "email", S),
        _rule(r"\b(?:send|email)\s+me\b", "channel", "email", W),
        _rule(r"\bprefer\s+(?:chat|messaging|slack|teams)", "channel", "instant_messaging", M),
        _rule(r"\b(?:reach me|contact me|message me)\s+(?:on|via)\s+(?:slack|teams|chat)", "channel", "instant_messaging", S),
        _rule(r"\b(?:call me|prefer (?:a )?(?:phone )?calls?|ring meg)\b", "channel", "phone", M),
    ],
    PreferenceCategory.SCHEDULING: [
        _rule(r"\bmornings?\s+(?:work|are|is)\s+(?:best|better)", "time_of_day", "morning_meetings", M),
        _rule(r"\b(?:prefer|like)\s+(?:morning|early)\s+(?:meetings?|calls?)", "time_of_day", "morning_meetings", M),
        _rule(r"\bafternoons?\s+(?:works?|are|is)\s+(?:best|better)", "time_of_day", "afternoon_meetings", M),
        _rule(r"\b(?:not\s+available|avoid)\s+(?:in the\s+)?(?:mornings?|before\s+\d{1,2})", "time_of_day", "morning_meetings", S, Polarity.NEGATIVE),
        _rule(r"\b(?:prefer|like)\s+(?:short|brief|quick)\s+(?:meetings?|calls?)", "meeting_length", "short_meetings", M),
        _rule(r"\b(?:keep|make)\s+(?:it|meetings?)\s+(?:short|brief|under\s+\d+\s*min)", "meeting_length", "short_meetings", M),
    ],
    PreferenceCategory.FORMAT: [
        _rule(r"\b(?:prefer|like|use)\s+pdfs?\b", "document", "pdf", M),
        _rule(r"\b(?:prefer|like|use)\s+(?:word|\.docx?)\b", "document", "word", M),
        _rule(r"\b(?:prefer|like|use)\s+(?:excel|\.xlsx?|spreadsheets?)\b", "document", "excel", M),
        _rule(r"\b(?:prefer|like)\s+(?:plain\s+)?text\b", "document", "plain_text", M),
        _rule(r"\b(?:prefer|like|want)\s+(?:bullet|bulleted)\s+(?:points?|lists?)|\bkulepunkter\b", "structure", "bullet_points", M),
        _rule(r"\b(?:prefer|like)\s+(?:detailed|long|thorough)\s+(?:explanations?|responses?|answers?)", "length", "detailed", M),
        _rule(r"\b(?:prefer|like)\s+(?:brief|concise|short)\s+(?:explanations?|responses?|answers?)", "length", "concise", M),
        _rule(r"\b(?:keep\s+it|be)\s+(?:brief|concise|short)\b|\bkort og konsist\b", "length", "concise", M),
    ],
    PreferenceCategory.LANGUAGE: [
        _rule(r"\b(?:speak|write|respond|answer|svar)\s+(?:in\s+|på\s+)?(?:norwegian|norsk)", "language", "norwegian", S),
        _rule(r"\b(?:speak|write|respond|answer|svar)\s+(?:in\s+|på\s+)?(?:english|engelsk)", "language", "english", S),
        _rule(r"\b(?:prefer|like)\s+(?:a\s+)?(?:formal|professional)\s+(?:tone|language)", "tone", "formal_tone", M),
        _rule(r"\b(?:prefer|like)\s+(?:a\s+)?(?:casual|informal|friendly)\s+(?:tone|language)", "tone", "casual_tone", M),
    ],
    PreferenceCategory.FREQUENCY: [
        _rule(r"\b(?:daily|every day|hver dag)\s+(?:updates?|summar(?:y|ies)|reports?|oppdateringer?)", "updates", "daily", M),
        _rule(r"\b(?:weekly|every week|hver uke|ukentlig)\s+(?:updates?|summar(?:y|ies)|reports?|oppdateringer?)", "updates", "weekly", M),
        _rule(r"\b(?:don't|do not)\s+(?:send|notify)\s+me\s+(?:too\s+)?often", "updates", "infrequent", M, Polarity.NEGATIVE),
    ],
    PreferenceCategory.WORKFLOW: [
        _rule(r"\b(?:prefer|like)\s+(?:to\s+)?(?:work|do things)\s+(?:alone|independently)", "work_style", "independent_work", M),
        _rule(r"\b(?:prefer|like)\s+(?:team|collaborative)\s+(?:work|projects)", "work_style", "collaborative_work", M),
        _rule(r"\b(?:prefer|like)\s+(?:async|asynchronous)\s+(?:communication|work)", "work_style", "async_work", M),
    ],
    PreferenceCategory.INTERACTION: [
        _rule(r"\b(?:don't|do not)\s+(?:need|want)\s+(?:small\s+)?talk", "conversation", "skip_small_talk", M),
        _rule(r"\b(?:get|go)\s+(?:straight|right)\s+to\s+(?:the\s+)?(?:point|business)", "conversation", "direct_communication", M),
        _rule(r"\b(?:like|appreciate)\s+(?:it\s+)?(?:when\s+you\s+)?(?:explain|clarify)", "conversation", "detailed_explanations", W),
        _rule(r"\b(?:just|only)\s+(?:give|tell)\s+me\s+(?:the\s+)?(?:answer|result|bottom\s+line)", "conversation", "direct_answers", S),
    ],
}


class PreferenceDetector:
    """Rule-based preference detector."""

    def __init__(
        self,
        min_confidence: float = 0.5,
        categories: list[PreferenceCategory] | None = None,
    ) -> None:
        self.min_confidence = min_confidence
        self.categories = categories or list(RULES.keys())

    def detect_preferences(self, text: str) -> list[Preference]:
        """Detect preferences in a text.

        Each rule contributes at most one preference per text.
        """
        if not text or not text.strip():
            return []

        sentences = extract_sentences(text) or [text]
        found: list[Preference] = []
        for category in self.categories:
            for rule in RULES.get(category, []):
                match = rule.pattern.search(text)
                if match is None:
                    continue
                strength = rule.strength
                sentence = _sentence_containing(sentences, match.group(0))
                if INTENSIFIERS.search(sentence):
                    strength = _upgrade(strength)
                found.append(
                    Preference(
                        category=category,
                        key=rule.key,
                        value=rule.value,
                        polarity=rule.polarity,
                        strength=strength,
                        evidence=match.group(0),
                        confidence=STRENGTH_CONFIDENCE[strength],
                    )
                )

        return [p for p in _dedupe(found) if p.confidence >= self.min_confidence]

    def detect_from_conversation(self, messages: list[dict[str, str]]) -> list[Preference]:
        """Detect preferences in the user messages of a conversation and merge them."""
        groups = [
            self.detect_preferences(m.get("content", ""))
            for m in messages
            if m.get("role") == "user"
        ]
        return merge_preferences(groups)


def merge_preferences(groups: list[list[Preference]]) -> list[Preference]:
    """Merge preferences detected in several texts.

    Preferences sharing (category, value, polarity) collapse to the most
    confident one, boosted by 0.05 per extra text (at most 0.15). Two
    sightings upgrade moderate to strong, three upgrade weak to moderate.
    """
    grouped: dict[tuple[str, str, str], list[Preference]] = {}
    for group in groups:
        for pref in _dedupe(group):
            grouped.setdefault(_key(pref), []).append(pref)

    merged: list[Preference] = []
    for items in grouped.values():
        best = max(items, key=lambda p: p.confidence)
        n = len(items)
        if n == 1:
            merged.append(best)
            continue

        strength = best.strength
        if strength == PreferenceStrength.MODERATE and n >= 2:
            strength = PreferenceStrength.STRONG
        elif strength == PreferenceStrength.WEAK and n >= 3:
            strength = PreferenceStrength.MODERATE

        boost = min(0.15, (n - 1) * 0.05)
        merged.append(
            replace(
                best,
                strength=strength,
                confidence=min(1.0, best.confidence + boost),
                evidence="; ".join(p.evidence for p in items),
            )
        )
    return merged


def _key(pref: Preference) -> tuple[str, str, str]:
    return (pref.category.value, pref.value, pref.polarity.value)


def _dedupe(preferences: list[Preference]) -> list[Preference]:
    seen: dict[tuple[str, str, str], Preference] = {}
    for pref in preferences:
        current = seen.get(_key(pref))
        if current is None or pref.confidence > current.confidence:
            seen[_key(pref)] = pref
    return list(seen.values())


def _upgrade(strength: PreferenceStrength) -> PreferenceStrength:
    index = _STRENGTH_ORDER.index(strength)
    return _STRENGTH_ORDER[min(index + 1, len(_STRENGTH_ORDER) - 1)]


def _sentence_containing(sentences: list[str], evidence: str) -> str:
    lowered = evidence.lower()
    for sentence in sentences:
        if lowered in sentence.lower():
            return sentence
    return evidence
