"""Embedding provider interface and vector helpers.

Providers turn text into fixed-dimension vectors. The memory service
depends only on :class:`EmbeddingProvider`, so a hash-based provider for
tests and an Ollama-backed provider for production are interchangeable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Sequence

import numpy as np


@dataclass
class EmbeddingResult:
    """Result of embedding one text."""

    embedding: list[float]
    model: str
    token_count: int
    duration_ms: float


@dataclass
class BatchEmbeddingResult:
    """Result of embedding several texts."""

    embeddings: list[EmbeddingResult] = field(default_factory=list)
    total_tokens: int = 0
    duration_ms: float = 0.0


class EmbeddingProvider(Protocol):
    """
    Protocol for embedding provider implementations.

    Every vector a provider returns has exactly ``dimension`` components.
    """

    @property
    def name(self) -> str:
        """Provider name for identification."""
        ...

    @property
    def dimension(self) -> int:
        """Length of every vector this provider produces."""
        ...

    async def embed(self, text: str) -> EmbeddingResult:
        """Embed a single text."""
        ...

    async def embed_batch(self, texts: list[str]) -> BatchEmbeddingResult:
        """Embed several texts."""
        ...

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        """Cosine similarity between two vectors."""
        ...

    async def health_check(self) -> bool:
        """Check if the provider is reachable."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. Mismatched or zero vectors give 0.0."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom < 1e-12:
        return 0.0
    return float(np.dot(va, vb) / denom)


def normalize(vector: np.ndarray) -> np.ndarray:
    """L2-normalise; a zero vector is returned unchanged."""
    norm = float(np.linalg.norm(vector))
    if norm < 1e-12:
        return vector
    return vector / norm
