"""Pattern-based entity extraction.

Finds people, organizations, locations, dates, times, money amounts,
emails, phone numbers and URLs in English and Norwegian text. Each
pattern carries a fixed confidence; overlapping matches are resolved in
favour of the higher confidence, then the longer span.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    """Kinds of entity the extractor recognises."""
    PERSON = "person"
    ORGANIZATION = "organization"
    LOCATION = "location"
    DATE = "date"
    TIME = "time"
    MONEY = "money"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"


@dataclass
class Entity:
    """A detected entity span."""

    type: EntityType
    value: str
    start: int
    end: int
    confidence: float
    normalized: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def length(self) -> int:
        return self.end - self.start

    def overlaps(self, other: Entity) -> bool:
        return self.start < other.end and other.start < self.end

    def __str__(self) -> str:
        return f"Entity({self.type.value}, {self.value!r}, {self.confidence:.2f})"


@dataclass(frozen=True)
class EntityPattern:
    """One regex rule. ``group`` selects the capture holding the value."""

    regex: re.Pattern
    confidence: float
    group: int = 0
    normalizer: str | None = None


MONTHS = {
    "januar": 1, "january": 1, "februar": 2, "february": 2, "mars": 3, "march": 3,
    "april": 4, "mai": 5, "may": 5, "juni": 6, "june": 6, "juli": 7, "july": 7,
    "august": 8, "september": 9, "oktober": 10, "october": 10, "november": 11,
    "desember": 12, "december": 12,
}

_MONTH_NAMES = "|".join(sorted(MONTHS, key=len, reverse=True))
_CAP_WORD = r"[A-ZÆØÅ][a-zæøå]+"
_ORG_SUFFIXES = r"AS|ASA|ANS|DA|ENK|NUF|SA|SE|BA|Inc|Ltd|LLC|GmbH|Corp"


class EntityExtractor:
    """
    Regex entity extractor for English and Norwegian.

    A production deployment can replace this with an NER model; the rest of
    the pipeline only depends on the :class:`Entity` records it returns.
    """

    PATTERNS: dict[EntityType, list[EntityPattern]] = {
        EntityType.EMAIL: [
            EntityPattern(re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), 0.95, normalizer="lower"),
        ],
        EntityType.URL: [
            EntityPattern(re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+", re.IGNORECASE), 0.95),
        ],
        EntityType.PHONE: [
            EntityPattern(re.compile(r"(?:\+47|0047)[\s-]?\d{2}[\s-]?\d{2}[\s-]?\d{2}[\s-]?\d{2}\b"), 0.85, normalizer="digits"),
            EntityPattern(re.compile(r"\b\d{2}[\s-]\d{2}[\s-]\d{2}[\s-]\d{2}\b|\b\d{3}\s\d{2}\s\d{3}\b"), 0.85, normalizer="digits"),
            EntityPattern(re.compile(r"\+\d{1,3}[\s.-]?\d{2,4}[\s.-]?\d{2,4}[\s.-]?\d{2,4}"), 0.8, normalizer="digits"),
        ],
        EntityType.DATE: [
            EntityPattern(re.compile(r"\b\d{1,2}\.\s?\d{1,2}\.\s?\d{2,4}\b"), 0.8, normalizer="date"),
            EntityPattern(re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"), 0.8, normalizer="date"),
            EntityPattern(re.compile(r"\b\d{4}-\d{2}-\d{2}\b"), 0.8, normalizer="date"),
            EntityPattern(
                re.compile(rf"\b\d{{1,2}}\.?\s*(?:{_MONTH_NAMES})(?:\s+\d{{4}})?\b", re.IGNORECASE),
                0.85,
                normalizer="month_date",
            ),
            EntityPattern(
                re.compile(
                    r"\b(?:i dag|i morgen|i går|neste uke|forrige uke|today|tomorrow|yesterday|next week|last week)\b",
                    re.IGNORECASE,
                ),
                0.7,
                normalizer="lower",
            ),
        ],
        EntityType.TIME: [
            EntityPattern(re.compile(r"\b(?:kl\.?|klokken)\s*\d{1,2}(?::\d{2})?\b", re.IGNORECASE), 0.75),
            EntityPattern(re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?\b"), 0.75),
            EntityPattern(re.compile(r"\b\d{1,2}\s*(?:am|pm)\b", re.IGNORECASE), 0.75),
        ],
        EntityType.MONEY: [
            EntityPattern(re.compile(r"\b(?:kr|NOK|kroner)\s?\d+(?:[,.\s]\d+)*\b", re.IGNORECASE), 0.85),
            EntityPattern(re.compile(r"\b\d+(?:[,.]\d+)*\s?(?:kr|NOK|kroner)\b", re.IGNORECASE), 0.85),
            EntityPattern(re.compile(r"\$\d[\d,]*(?:\.\d{2})?"), 0.8),
            EntityPattern(re.compile(r"€\d[\d,]*(?:\.\d{2})?"), 0.8),
            EntityPattern(re.compile(r"\b\d[\d,]*(?:\.\d{2})?\s*(?:USD|EUR|GBP|SEK|DKK)\b", re.IGNORECASE), 0.8),
        ],
        EntityType.PERSON: [
            EntityPattern(
                re.compile(rf"\b(?:Mr|Mrs|Ms|Dr|Prof|Herr|Fru|Frk|Doktor|Professor)\.?\s+({_CAP_WORD}(?:\s+{_CAP_WORD})*)"),
                0.8,
            ),
            EntityPattern(re.compile(rf"\b{_CAP_WORD}(?:\s+{_CAP_WORD})+\b"), 0.6),
        ],
        EntityType.ORGANIZATION: [
            EntityPattern(
                re.compile(rf"\b[A-ZÆØÅ][\wæøåÆØÅ&.-]*(?:\s+[A-ZÆØÅ][\wæøåÆØÅ&.-]*)*\s+(?:{_ORG_SUFFIXES})\b"),
                0.85,
            ),
            EntityPattern(re.compile(r"\borg\.?\s*(?:nr\.?|nummer)\s*(\d{3}\s?\d{3}\s?\d{3})\b", re.IGNORECASE), 0.75, group=1, normalizer="digits"),
        ],
        EntityType.LOCATION: [
            EntityPattern(
                re.compile(rf"\b(?:live in|lives in|living in|based in|located in|moved to|bor i|bosatt i|flyttet til)\s+({_CAP_WORD}(?:\s+{_CAP_WORD})*)"),
                0.7,
                group=1,
            ),
        ],
    }

    def __init__(
        self,
        min_confidence: float = 0.5,
        entity_types: list[EntityType] | None = None,
        normalize: bool = True,
    ) -> None:
        """Initialize the extractor.

        Args:
            min_confidence: Matches below this confidence are dropped
            entity_types: Types to extract. None extracts all.
            normalize: Fill ``Entity.normalized`` where a normaliser exists
        """
        self._min_confidence = min_confidence
        self._entity_types = entity_types or list(self.PATTERNS.keys())
        self._normalize = normalize
        self._normalizers: dict[str, Callable[[str], str]] = {
            "lower": str.lower,
            "digits": lambda v: re.sub(r"[^\d+]", "", v),
            "date": normalize_date,
            "month_date": normalize_month_date,
        }

    def extract_entities(self, text: str) -> list[Entity]:
        """Extract entities from text.

        Args:
            text: Input text

        Returns:
            Non-overlapping entities ordered by position. Empty when nothing matches.
        """
        if not text:
            return []

        entities: list[Entity] = []
        for entity_type in self._entity_types:
            entities.extend(self.extract_type(text, entity_type))

        entities = [e for e in entities if e.confidence >= self._min_confidence]
        return remove_overlapping(entities)

    def extract_type(self, text: str, entity_type: EntityType) -> list[Entity]:
        """Extract entities of one type, without overlap resolution."""
        patterns = self.PATTERNS.get(entity_type)
        if patterns is None:
            logger.warning(f"Unknown entity type: {entity_type}")
            return []

        found: list[Entity] = []
        for pattern in patterns:
            for match in pattern.regex.finditer(text):
                value = match.group(pattern.group)
                if not value:
                    continue
                start, end = match.span(pattern.group)
                normalized = None
                if self._normalize and pattern.normalizer:
                    normalized = self._normalizers[pattern.normalizer](value)
                found.append(
                    Entity(
                        type=entity_type,
                        value=value,
                        start=start,
                        end=end,
                        confidence=pattern.confidence,
                        normalized=normalized,
                    )
                )
        return found


def remove_overlapping(entities: list[Entity]) -> list[Entity]:
    """Resolve intersecting spans.

    Higher confidence wins; on equal confidence the longer span wins.
    The survivors are returned in text order.
    """
    ranked = sorted(entities, key=lambda e: (-e.confidence, -e.length, e.start))
    kept: list[Entity] = []
    for entity in ranked:
        if not any(entity.overlaps(k) for k in kept):
            kept.append(entity)
    return sorted(kept, key=lambda e: e.start)


def _expand_year(year: str) -> str:
    if len(year) == 2:
        return f"19{year}" if int(year) > 50 else f"20{year}"
    return year


def normalize_date(value: str) -> str:
    """Convert DD.MM.YYYY, DD/MM/YY and ISO dates to YYYY-MM-DD."""
    cleaned = value.strip()
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", cleaned):
        return cleaned

    match = re.search(r"(\d{1,2})\s*[./-]\s*(\d{1,2})\s*[./-]\s*(\d{2,4})", cleaned)
    if match:
        day, month, year = match.groups()
        return f"{_expand_year(year)}-{int(month):02d}-{int(day):02d}"
    return cleaned


def normalize_month_date(value: str) -> str:
    """Convert "5. mars 2024" / "5 March 2024" to ISO; without a year, "--MM-DD"."""
    match = re.search(rf"(\d{{1,2}})\.?\s*({_MONTH_NAMES})(?:\s+(\d{{4}}))?", value, re.IGNORECASE)
    if not match:
        return value.strip()
    day, month_name, year = match.groups()
    month = MONTHS[month_name.lower()]
    if year:
        return f"{year}-{month:02d}-{int(day):02d}"
    return f"--{month:02d}-{int(day):02d}"
