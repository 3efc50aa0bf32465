"""Subject-predicate-object fact extraction from conversational text."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

USER_SUBJECT = "user"

# Object spans stop at punctuation, a conjunction, or the end of the text
_STOP = r"(?=\s*[.,!?;:]|\s+(?:and|but|og|men|so|because|fordi)\b|\s*$)"
_PHRASE = r"[\w\s&'-]+?"
# Proper nouns stay case-sensitive and stop at a sentence-ending period
_PROPER = r"(?-i:[A-ZÆØÅ0-9][\w&-]*(?:\.[\w&-]+)*(?:\s+[A-ZÆØÅ][\w&-]*(?:\.[\w&-]+)*)*)"
_NAME = r"(?-i:[A-ZÆØÅ][a-zæøå]+)"

JOB_INDICATORS = (
    "manager", "director", "engineer", "developer", "designer", "analyst",
    "consultant", "specialist", "coordinator", "assistant", "architect",
    "lead", "officer", "scientist", "advisor", "owner", "founder", "ceo",
    "cto", "cfo", "accountant", "lawyer", "teacher", "nurse", "doctor",
    "leder", "rådgiver", "konsulent", "ingeniør", "utvikler", "daglig leder",
)

RELATIONSHIP_ALIASES = {
    "wife": "spouse", "husband": "spouse", "spouse": "spouse", "kone": "spouse",
    "mann": "spouse", "samboer": "spouse",
    "partner": "partner", "girlfriend": "partner", "boyfriend": "partner", "kjæreste": "partner",
    "mother": "parent", "father": "parent", "mom": "parent", "dad": "parent",
    "mor": "parent", "far": "parent",
    "brother": "sibling", "sister": "sibling", "bror": "sibling", "søster": "sibling",
    "son": "child", "daughter": "child", "sønn": "child", "datter": "child",
    "boss": "manager", "manager": "manager", "sjef": "manager", "leder": "manager",
    "colleague": "colleague", "coworker": "colleague", "kollega": "colleague",
}


@dataclass
class Fact:
    """A single extracted statement of the form subject/predicate/object."""

    subject: str
    predicate: str
    object: str
    confidence: float
    source_text: str = ""
    about_user: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Deduplication key: subject, predicate and case-folded object."""
        return f"{self.subject}:{self.predicate}:{self.object.lower()}"

    @property
    def statement(self) -> str:
        """Human-readable rendering used as memory content."""
        subject = "User" if self.about_user else self.subject
        relation = self.predicate
        if relation.startswith("has_") and relation not in ("has_job_title", "has_skill"):
            return f"{subject}'s {relation[4:]} is {self.object}"
        phrases = {
            "works_at": "works at",
            "has_job_title": "works as",
            "lives_in": "lives in",
            "is_from": "is from",
            "has_skill": "knows",
        }
        return f"{subject} {phrases.get(relation, relation)} {self.object}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "predicate": self.predicate,
            "object": self.object,
            "confidence": self.confidence,
            "source_text": self.source_text,
            "about_user": self.about_user,
        }


def clean_entity(text: str) -> str:
    """Collapse whitespace and drop punctuation other than hyphens and ampersands."""
    text = re.sub(r"\s+", " ", text.strip())
    return re.sub(r"[^\w\s&-]", "", text).strip()


def looks_like_job_title(text: str) -> bool:
    lowered = text.lower()
    return any(indicator in lowered for indicator in JOB_INDICATORS)


def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


class FactExtractor:
    """Pattern-based fact extractor for English and Norwegian.

    Recognised families: occupation, relationships, third-party employment,
    likes and dislikes, location and skills.
    """

    ROLE_AT_COMPANY = [
        _compile(
            rf"\b(?:i|jeg)\s+(?:work|am working|jobber|arbeider)\s+(?:as|som)\s+(?:an?\s+|en\s+)?"
            rf"(?P<title>{_PHRASE})\s+(?:at|for|hos|i)\s+(?P<company>{_PROPER})"
        ),
        _compile(
            rf"\b(?:i'm|i am|jeg er)\s+(?:an?\s+|en\s+)?(?P<title>{_PHRASE})\s+(?:at|for|hos|i)\s+(?P<company>{_PROPER})"
        ),
    ]
    WORKS_AT = [
        _compile(rf"\b(?:i|jeg)\s+(?:work|jobber|arbeider)\s+(?:at|for|hos|i)\s+(?P<company>{_PROPER})"),
        _compile(rf"\b(?:i'm|i am)\s+(?:working|employed)\s+(?:at|for|by)\s+(?P<company>{_PROPER})"),
        _compile(rf"\bmy\s+(?:employer|company|workplace)\s+is\s+(?P<company>{_PROPER})"),
    ]
    JOB_TITLE = [
        _compile(rf"\bmy\s+(?:job|role|position|title)\s+is\s+(?P<title>{_PHRASE}){_STOP}"),
        _compile(rf"\b(?:i'm|i am|jeg er)\s+(?:an?|en)\s+(?P<title>{_PHRASE}){_STOP}"),
    ]
    RELATIONSHIP = _compile(
        rf"\bmy\s+(?P<relation>{'|'.join(sorted(RELATIONSHIP_ALIASES, key=len, reverse=True))})"
        rf"(?:,)?\s+(?:is\s+)?(?:named\s+|called\s+)?(?P<name>{_NAME})"
    )
    THIRD_PARTY_WORK = re.compile(
        rf"\b(?P<name>{_NAME}(?:\s+{_NAME})?)\s+(?:works|jobber|arbeider)\s+(?:at|for|hos|i)\s+(?P<company>{_PROPER})"
    )
    LIKES = [
        (_compile(rf"\b(?:i|jeg)\s+(?:don't like|do not like|dislike|hate|can't stand|liker ikke|hater)\s+(?P<object>{_PHRASE}){_STOP}"), "dislikes"),
        (_compile(rf"\b(?:i|jeg)\s+(?:really\s+)?(?:prefer|like|love|enjoy|foretrekker|liker|elsker)\s+(?P<object>{_PHRASE})(?:{_STOP}|\s+over\b)"), "prefers"),
    ]
    LOCATION = [
        (_compile(rf"\b(?:i|jeg)\s+(?:live|bor)\s+(?:in|i)\s+(?P<place>{_PROPER})"), "lives_in"),
        (_compile(rf"\bmy\s+(?:home|house|apartment|office)\s+is\s+in\s+(?P<place>{_PROPER})"), "lives_in"),
        (_compile(rf"\b(?:i am from|i'm from|i come from|jeg er fra|jeg kommer fra)\s+(?P<place>{_PROPER})"), "is_from"),
    ]
    SKILLS = [
        (_compile(rf"\b(?:i|jeg)\s+(?:know|am good at|am skilled in|am fluent in|er flink (?:til|med)|kan)\s+(?P<skill>{_PHRASE}){_STOP}"), "has_skill"),
        (_compile(rf"\b(?:i|jeg)\s+(?:have experience with|am experienced in|har erfaring med)\s+(?P<skill>{_PHRASE}){_STOP}"), "has_skill"),
        (_compile(r"\b(?:i|jeg)\s+(?:speak|snakker)\s+(?P<skill>[\wæøå]+)"), "speaks"),
    ]

    def __init__(
        self,
        min_confidence: float = 0.6,
        max_facts: int = 10,
        include_other_facts: bool = True,
    ) -> None:
        self.min_confidence = min_confidence
        self.max_facts = max_facts
        self.include_other_facts = include_other_facts

    # ===== Public API =====

    def extract_facts(self, text: str) -> list[Fact]:
        """Extract facts from a single text.

        Duplicates within the text keep the highest confidence.
        """
        if not text or not text.strip():
            return []

        try:
            facts = self._collect(text)
        except re.error as e:
            logger.warning(f"Fact extraction failed: {e}")
            return []

        unique = _dedupe(facts)
        return self._finalise(unique)

    def extract_from_conversation(self, messages: list[dict[str, str]]) -> list[Fact]:
        """Extract facts across a conversation.

        Only user messages are read. A fact stated in several turns gains
        0.05 confidence per extra turn, at most 0.15.

        Args:
            messages: Dicts with "role" and "content" keys
        """
        best: dict[str, Fact] = {}
        turns: Counter[str] = Counter()

        for message in messages:
            if message.get("role") != "user":
                continue
            per_turn = _dedupe(self._collect(message.get("content", "")))
            for fact in per_turn:
                turns[fact.key] += 1
                current = best.get(fact.key)
                if current is None or fact.confidence > current.confidence:
                    best[fact.key] = fact

        boosted = []
        for key, fact in best.items():
            boost = min(0.15, (turns[key] - 1) * 0.05)
            fact.confidence = min(1.0, fact.confidence + boost)
            boosted.append(fact)

        return self._finalise(boosted)

    # ===== Pattern families =====

    def _collect(self, text: str) -> list[Fact]:
        facts: list[Fact] = []
        facts.extend(self._occupation(text))
        facts.extend(self._relationships(text))
        facts.extend(self._third_party(text))
        facts.extend(self._likes(text))
        facts.extend(self._locations(text))
        facts.extend(self._skills(text))
        return facts

    def _occupation(self, text: str) -> list[Fact]:
        facts: list[Fact] = []
        covered: list[tuple[int, int]] = []

        for pattern in self.ROLE_AT_COMPANY:
            for match in pattern.finditer(text):
                title = clean_entity(match.group("title"))
                company = clean_entity(match.group("company"))
                if not looks_like_job_title(title):
                    continue
                covered.append(match.span())
                facts.append(_user_fact("works_at", company, 0.85, match.group(0)))
                facts.append(_user_fact("has_job_title", title, 0.75, match.group(0)))

        for pattern in self.WORKS_AT:
            for match in pattern.finditer(text):
                company = clean_entity(match.group("company"))
                if len(company) >= 2:
                    facts.append(_user_fact("works_at", company, 0.85, match.group(0)))

        for pattern in self.JOB_TITLE:
            for match in pattern.finditer(text):
                if any(start <= match.start() < end for start, end in covered):
                    continue
                title = clean_entity(match.group("title"))
                if len(title) > 3 and looks_like_job_title(title):
                    facts.append(_user_fact("has_job_title", title, 0.75, match.group(0)))

        return facts

    def _relationships(self, text: str) -> list[Fact]:
        facts = []
        for match in self.RELATIONSHIP.finditer(text):
            relation = RELATIONSHIP_ALIASES[match.group("relation").lower()]
            name = clean_entity(match.group("name"))
            if len(name) > 1:
                facts.append(_user_fact(f"has_{relation}", name, 0.8, match.group(0)))
        return facts

    def _third_party(self, text: str) -> list[Fact]:
        facts = []
        for match in self.THIRD_PARTY_WORK.finditer(text):
            name = clean_entity(match.group("name"))
            if name.lower() in ("i", "jeg", "my", "she", "he"):
                continue
            facts.append(
                Fact(
                    subject=name,
                    predicate="works_at",
                    object=clean_entity(match.group("company")),
                    confidence=0.8,
                    source_text=match.group(0),
                    about_user=False,
                )
            )
        return facts

    def _likes(self, text: str) -> list[Fact]:
        facts = []
        disliked_spans: list[tuple[int, int]] = []
        for pattern, predicate in self.LIKES:
            for match in pattern.finditer(text):
                # "I don't like" must not also count as "I like"
                if predicate == "prefers" and any(s <= match.start() < e for s, e in disliked_spans):
                    continue
                obj = clean_entity(match.group("object"))
                if len(obj) > 2:
                    facts.append(_user_fact(predicate, obj, 0.7, match.group(0)))
                    if predicate == "dislikes":
                        disliked_spans.append(match.span())
        return facts

    def _locations(self, text: str) -> list[Fact]:
        facts = []
        for pattern, predicate in self.LOCATION:
            for match in pattern.finditer(text):
                place = clean_entity(match.group("place"))
                if len(place) > 2:
                    facts.append(_user_fact(predicate, place, 0.75, match.group(0)))
        return facts

    def _skills(self, text: str) -> list[Fact]:
        facts = []
        for pattern, predicate in self.SKILLS:
            for match in pattern.finditer(text):
                skill = clean_entity(match.group("skill"))
                if len(skill) > 2:
                    facts.append(_user_fact(predicate, skill, 0.7, match.group(0)))
        return facts

    # ===== Helpers =====

    def _finalise(self, facts: list[Fact]) -> list[Fact]:
        result = [f for f in facts if f.confidence >= self.min_confidence]
        if not self.include_other_facts:
            result = [f for f in result if f.about_user]
        return result[: self.max_facts]


def _user_fact(predicate: str, obj: str, confidence: float, evidence: str) -> Fact:
    return Fact(
        subject=USER_SUBJECT,
        predicate=predicate,
        object=obj,
        confidence=confidence,
        source_text=evidence,
        about_user=True,
    )


def _dedupe(facts: list[Fact]) -> list[Fact]:
    """Keep one fact per key, the one with the highest confidence, in first-seen order."""
    seen: dict[str, Fact] = {}
    for fact in facts:
        current = seen.get(fact.key)
        if current is None or fact.confidence > current.confidence:
            seen[fact.key] = fact
    return list(seen.values())
