"""Deterministic embeddings via random indexing.

Each word and each character n-gram is mapped to a pseudo-random unit
vector seeded from its SHA-256 hash; a text's embedding is the weighted
sum of its feature vectors, L2-normalised. No model or network is
needed, and identical text always yields the identical vector, which
makes this provider the default for tests and offline use.
"""

from __future__ import annotations

import hashlib
import math
import re
import time
from collections import Counter
from functools import lru_cache
from typing import Sequence

import numpy as np

from memcore.embeddings.base import (
    BatchEmbeddingResult,
    EmbeddingResult,
    cosine_similarity,
    normalize,
)
from memcore.text import estimate_token_count

_WORD_RE = re.compile(r"[a-z0-9æøå']+")
_STOPWORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "to", "of",
    "in", "for", "on", "with", "at", "by", "from", "as", "and", "but", "or",
    "it", "this", "that", "i", "me", "my", "we", "you", "your",
    "og", "i", "på", "til", "med", "som", "er", "det", "en", "et", "jeg",
})

WORD_WEIGHT = 3.0
NGRAM_WEIGHT = 1.0


def _char_ngrams(word: str, sizes: tuple[int, ...] = (3, 4)) -> list[str]:
    padded = f"#{word}#"
    grams: list[str] = []
    for n in sizes:
        grams.extend(padded[i:i + n] for i in range(len(padded) - n + 1))
    return grams


def tokenise(text: str) -> tuple[list[str], list[str]]:
    """Return (content words, character n-grams) for a text."""
    all_words = _WORD_RE.findall(text.lower())
    words = [w for w in all_words if w not in _STOPWORDS and len(w) > 1]
    ngrams: list[str] = []
    for w in all_words:
        if len(w) > 2:
            ngrams.extend(_char_ngrams(w))
    return words, ngrams


class HashEmbeddingProvider:
    """Random-indexing embedding provider.

    Example:
        >>> provider = HashEmbeddingProvider(dimension=384)
        >>> result = await provider.embed("I work at Visma")
        >>> len(result.embedding)
        384
    """

    def __init__(self, dimension: int = 384, model: str = "hash-ri-v1") -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension
        self._model = model
        self._feature_vector = lru_cache(maxsize=10000)(self._make_feature_vector)

    @property
    def name(self) -> str:
        return "hash"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _make_feature_vector(self, feature: str) -> np.ndarray:
        """Deterministic unit vector for one feature."""
        needed = self._dimension * 4
        chunks: list[bytes] = []
        seed = feature.encode("utf-8")
        while sum(len(c) for c in chunks) < needed:
            seed = hashlib.sha256(seed).digest()
            chunks.append(seed)
        raw = np.frombuffer(b"".join(chunks)[:needed], dtype=">u4").astype(np.float64)
        vector = raw / 2147483647.5 - 1.0
        return normalize(vector)

    def embed_text(self, text: str) -> list[float]:
        """Synchronous embedding of one text."""
        words, ngrams = tokenise(text)
        vector = np.zeros(self._dimension, dtype=np.float64)
        if not words and not ngrams:
            return vector.tolist()

        for word, count in Counter(words).items():
            vector += WORD_WEIGHT * (1.0 + math.log(count)) * self._feature_vector(f"w:{word}")
        for gram, count in Counter(ngrams).items():
            vector += NGRAM_WEIGHT * (1.0 + math.log(count)) * self._feature_vector(f"c:{gram}")

        return normalize(vector).tolist()

    async def embed(self, text: str) -> EmbeddingResult:
        start = time.perf_counter()
        embedding = self.embed_text(text)
        return EmbeddingResult(
            embedding=embedding,
            model=self._model,
            token_count=estimate_token_count(text),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    async def embed_batch(self, texts: list[str]) -> BatchEmbeddingResult:
        start = time.perf_counter()
        results = [await self.embed(text) for text in texts]
        return BatchEmbeddingResult(
            embeddings=results,
            total_tokens=sum(r.token_count for r in results),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
