"""Writing-style analysis over a user's messages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from memcore.extraction.insights import Insight, InsightCategory, InsightField
from memcore.text import detect_language

FORMAL_WORDS = (
    "please", "kindly", "regarding", "hereby", "therefore", "consequently", "sincerely",
    "vennligst", "angående", "vedrørende", "dermed", "følgelig",
)
CASUAL_WORDS = (
    "hey", "yeah", "cool", "awesome", "gonna", "wanna", "lol",
    "joa", "kult", "fett", "digg",
)
EMOTIONAL_WORDS = (
    "love", "hate", "amazing", "terrible", "excited", "frustrated", "awful",
    "elsker", "hater", "fantastisk", "fryktelig", "spent", "frustrert",
)
HEDGE_WORDS = ("maybe", "perhaps", "possibly", "might", "kanskje", "muligens")
DIRECT_WORDS = ("must", "need", "should", "will", "må", "trenger", "skal")

TECHNICAL_PATTERNS = [
    re.compile(r"\b(?:API|SDK|CLI|UI|UX|SQL|JSON|REST|HTTP|TCP|DNS)\b", re.IGNORECASE),
    re.compile(r"\b(?:function|class|method|variable|array|object|interface)\b", re.IGNORECASE),
    re.compile(r"\b(?:database|server|client|backend|frontend|deployment)\b", re.IGNORECASE),
    re.compile(r"\b(?:algoritme|klient|utrulling|kode)\b", re.IGNORECASE),
]

EMOJI = re.compile("[\U0001F300-\U0001FAFF☀-➿]")

GREETING_PATTERNS = [
    re.compile(r"^(Hei[!,]?|Hi[!,]?|Hello[!,]?|Hey[!,]?|Dear\s+\w+,?|Kjære\s+\w+,?)", re.IGNORECASE),
    re.compile(r"^(Good\s+(?:morning|afternoon|evening)[!,]?|God\s+(?:morgen|ettermiddag|kveld)[!,]?)", re.IGNORECASE),
]
SIGNOFF_PATTERNS = [
    re.compile(r"((?:Best|Kind|Warm)\s+regards,?|(?:Beste|Vennlig)\s+hilsen,?|Med vennlig hilsen,?)\s*$", re.IGNORECASE),
    re.compile(r"(Thanks[!,]?|Takk[!,]?|Mvh[,.]?|Cheers[!,]?)\s*$", re.IGNORECASE | re.MULTILINE),
]


@dataclass
class WritingStyle:
    """Averaged style scores, each in [0, 1]."""

    formality: float = 0.5
    verbosity: float = 0.5
    directness: float = 0.5
    emotionality: float = 0.0
    technicality: float = 0.0
    language: str = "unknown"
    sample_size: int = 0


@dataclass
class SignaturePatterns:
    greetings: list[str] = field(default_factory=list)
    signoffs: list[str] = field(default_factory=list)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _count(words: tuple[str, ...], lowered: str) -> int:
    return sum(1 for w in words if re.search(rf"\b{re.escape(w)}\b", lowered))


def score_message(message: str) -> WritingStyle:
    """Style scores for a single message."""
    lowered = message.lower()

    formality = 0.5 + 0.1 * _count(FORMAL_WORDS, lowered) - 0.1 * _count(CASUAL_WORDS, lowered)

    words = len(message.split())
    sentences = max(1, len([s for s in re.split(r"[.!?]+", message) if s.strip()]))
    verbosity = (words / sentences - 5) / 30

    hedges = _count(HEDGE_WORDS, lowered)
    directs = _count(DIRECT_WORDS, lowered)
    directness = 0.7 if directs > hedges else 0.3 if hedges > directs else 0.5

    emotionality = (
        message.count("!") * 0.1
        + len(EMOJI.findall(message)) * 0.15
        + _count(EMOTIONAL_WORDS, lowered) * 0.2
    )
    technicality = sum(1 for p in TECHNICAL_PATTERNS if p.search(message)) * 0.2

    return WritingStyle(
        formality=_clamp(formality),
        verbosity=_clamp(verbosity),
        directness=directness,
        emotionality=_clamp(emotionality),
        technicality=_clamp(technicality),
        language=detect_language(message),
        sample_size=1,
    )


def analyze_writing_style(messages: list[str]) -> WritingStyle:
    """Average per-message style over a set of user messages.

    The language is decided on the concatenated text.
    """
    samples = [score_message(m) for m in messages if m and m.strip()]
    if not samples:
        return WritingStyle()

    n = len(samples)
    return WritingStyle(
        formality=sum(s.formality for s in samples) / n,
        verbosity=sum(s.verbosity for s in samples) / n,
        directness=sum(s.directness for s in samples) / n,
        emotionality=sum(s.emotionality for s in samples) / n,
        technicality=sum(s.technicality for s in samples) / n,
        language=detect_language(" ".join(messages)),
        sample_size=n,
    )


def extract_signature_patterns(messages: list[str]) -> SignaturePatterns:
    """Collect distinct greetings and signoffs, in first-seen order."""
    result = SignaturePatterns()
    for message in messages:
        text = message.strip()
        for pattern in GREETING_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1) not in result.greetings:
                result.greetings.append(match.group(1))
        for pattern in SIGNOFF_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1) not in result.signoffs:
                result.signoffs.append(match.group(1))
    return result


def style_insights(style: WritingStyle, signatures: SignaturePatterns | None = None) -> list[Insight]:
    """Turn measured style into persona insights.

    Confidence grows with the number of messages analysed, capped at 0.9.
    """
    if style.sample_size == 0:
        return []

    confidence = min(0.9, 0.5 + 0.05 * style.sample_size)
    source = f"style analysis over {style.sample_size} messages"
    measured = {
        InsightField.STYLE_FORMALITY: style.formality,
        InsightField.STYLE_VERBOSITY: style.verbosity,
        InsightField.STYLE_DIRECTNESS: style.directness,
        InsightField.STYLE_EMOTIONALITY: style.emotionality,
        InsightField.STYLE_TECHNICALITY: style.technicality,
    }
    insights = [
        Insight(InsightCategory.STYLE, insight_field, round(value, 4), confidence, source)
        for insight_field, value in measured.items()
    ]
    if style.language in ("no", "en"):
        insights.append(Insight(InsightCategory.STYLE, InsightField.STYLE_LANGUAGE, style.language, confidence, source))

    if signatures is not None:
        insights.extend(
            Insight(InsightCategory.STYLE, InsightField.STYLE_GREETING, g, confidence, source)
            for g in signatures.greetings
        )
        insights.extend(
            Insight(InsightCategory.STYLE, InsightField.STYLE_SIGNOFF, s, confidence, source)
            for s in signatures.signoffs
        )
    return insights
