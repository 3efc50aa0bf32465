"""Embedding providers for semantic memory search."""

from __future__ import annotations

from memcore.embeddings.base import (
    BatchEmbeddingResult,
    EmbeddingProvider,
    EmbeddingResult,
    cosine_similarity,
)
from memcore.embeddings.hashing import HashEmbeddingProvider
from memcore.embeddings.ollama import OllamaEmbeddingProvider

__all__ = [
    "BatchEmbeddingResult",
    "EmbeddingProvider",
    "EmbeddingResult",
    "HashEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "cosine_similarity",
]
