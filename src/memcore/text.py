"""Text helpers shared by extraction, embeddings, and retrieval."""

from __future__ import annotations

import re

_ABBREVIATIONS = re.compile(r"\b(Mr|Mrs|Ms|Dr|Prof|Inc|Ltd|Corp|vs|etc|e\.g|i\.e)\.", re.IGNORECASE)
_INITIALS = re.compile(r"\b([A-Z])\.")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")

NORWEGIAN_MARKERS = frozenset({
    "og", "jeg", "det", "er", "på", "for", "med", "har", "som", "til",
    "av", "var", "fra", "om", "eller", "men", "når", "hvor", "hvordan",
    "ikke", "meg", "vi", "hei", "takk",
})

ENGLISH_MARKERS = frozenset({
    "the", "and", "is", "are", "was", "were", "have", "has", "been",
    "with", "that", "this", "from", "they", "which", "would", "could",
    "i", "my", "you", "thanks", "hello",
})


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces and blank lines, normalise newlines."""
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
    text = re.sub(r" +", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def extract_sentences(text: str) -> list[str]:
    """Split text into sentences, keeping common abbreviations intact."""
    protected = _ABBREVIATIONS.sub(r"\1<DOT>", text)
    protected = _INITIALS.sub(r"\1<DOT>", protected)
    sentences = (s.replace("<DOT>", ".").strip() for s in _SENTENCE_BOUNDARY.split(protected))
    return [s for s in sentences if s]


def estimate_token_count(text: str) -> int:
    """Rough token estimate: about 4 characters per token."""
    return (len(text) + 3) // 4


def detect_language(text: str) -> str:
    """Guess "no", "en", or "unknown" from marker words and æ/ø/å."""
    words = re.findall(r"[a-zæøå]+", text.lower())
    norwegian = sum(1 for w in words if w in NORWEGIAN_MARKERS)
    english = sum(1 for w in words if w in ENGLISH_MARKERS)

    if re.search(r"[æøå]", text, re.IGNORECASE):
        norwegian += 5

    if norwegian == 0 and english == 0:
        return "unknown"
    return "no" if norwegian > english else "en"
