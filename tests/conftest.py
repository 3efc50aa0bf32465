"""Shared pytest fixtures for memcore tests."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Sequence
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from memcore.config import MemcoreConfig, ServiceConfig, StorageConfig
from memcore.embeddings.base import BatchEmbeddingResult, EmbeddingResult, cosine_similarity
from memcore.embeddings.hashing import HashEmbeddingProvider
from memcore.models import Memory, MemoryScope, MemorySource, MemoryTier, MemoryType, utcnow
from memcore.persona.service import PersonaService
from memcore.persona.store import InMemoryPersonaStore
from memcore.service import MemoryService
from memcore.storage.memory import InMemoryStorage

TEST_DIMENSION = 64


class StaticEmbeddingProvider:
    """Embedding provider that returns the same vector for every text.

    Every stored memory then has similarity 1.0 to every query, which
    makes ranking depend only on recency and importance.
    """

    def __init__(self, vector: Sequence[float] | None = None, dimension: int = TEST_DIMENSION) -> None:
        self._vector = list(vector) if vector is not None else [1.0] + [0.0] * (dimension - 1)
        self._dimension = dimension
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "static"

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls.append(text)
        return EmbeddingResult(embedding=list(self._vector), model="static", token_count=1, duration_ms=0.0)

    async def embed_batch(self, texts: list[str]) -> BatchEmbeddingResult:
        return BatchEmbeddingResult(embeddings=[await self.embed(t) for t in texts])

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for test data."""
    return tmp_path


@pytest.fixture
def mock_config(temp_dir: Path) -> MemcoreConfig:
    """Return test configuration with fast retries and a temporary database path."""
    return MemcoreConfig(
        log_level="DEBUG",
        storage=StorageConfig(db_path=str(temp_dir / "memcore.db")),
        service=ServiceConfig(
            operation_timeout_seconds=2.0,
            max_retries=2,
            retry_base_delay=0.001,
            style_min_messages=3,
        ),
    )


@pytest.fixture
def scope() -> MemoryScope:
    """Return a default user scope."""
    return MemoryScope(user_id="user-1", tenant_id="tenant-a")


@pytest.fixture
def storage() -> InMemoryStorage:
    """Return an empty in-memory storage backend."""
    return InMemoryStorage()


@pytest.fixture
def hash_embeddings() -> HashEmbeddingProvider:
    """Return a small deterministic embedding provider."""
    return HashEmbeddingProvider(dimension=TEST_DIMENSION)


@pytest.fixture
def static_embeddings() -> StaticEmbeddingProvider:
    """Return an embedding provider giving every text the same vector."""
    return StaticEmbeddingProvider()


@pytest.fixture
def persona_service(mock_config: MemcoreConfig) -> PersonaService:
    """Return a persona service over an in-memory store."""
    return PersonaService(InMemoryPersonaStore(), mock_config.persona)


@pytest.fixture
async def memory_service(
    storage: InMemoryStorage,
    hash_embeddings: HashEmbeddingProvider,
    persona_service: PersonaService,
    mock_config: MemcoreConfig,
) -> AsyncGenerator[MemoryService, None]:
    """Yield an initialized MemoryService over in-memory storage."""
    service = MemoryService(
        storage=storage,
        embeddings=hash_embeddings,
        persona_service=persona_service,
        config=mock_config,
    )
    async with service:
        yield service


@pytest.fixture
def make_memory() -> Callable[..., Memory]:
    """Return a factory for Memory records with sensible defaults."""

    def _make(
        content: str = "User lives in Oslo",
        *,
        user_id: str = "user-1",
        tenant_id: str = "tenant-a",
        memory_type: MemoryType = MemoryType.FACT,
        tier: MemoryTier = MemoryTier.WORKING,
        importance: float = 0.5,
        embedding: list[float] | None = None,
        age_days: float = 0.0,
        **overrides: Any,
    ) -> Memory:
        created = utcnow() - timedelta(days=age_days)
        memory = Memory(
            id=overrides.pop("id", str(uuid.uuid4())),
            user_id=user_id,
            tenant_id=tenant_id,
            type=memory_type,
            content=content,
            source=overrides.pop("source", MemorySource.EXPLICIT_STATEMENT),
            tier=tier,
            importance_score=importance,
            embedding=embedding if embedding is not None else [1.0] + [0.0] * (TEST_DIMENSION - 1),
            created_at=created,
            updated_at=created,
            tier_entered_at=overrides.pop("tier_entered_at", created),
        )
        for key, value in overrides.items():
            setattr(memory, key, value)
        return memory

    return _make


@pytest.fixture
def unit_vector() -> Callable[[int], list[float]]:
    """Return a factory for axis-aligned unit vectors."""

    def _vector(axis: int, dimension: int = TEST_DIMENSION) -> list[float]:
        vector = [0.0] * dimension
        vector[axis] = 1.0
        return vector

    return _vector


@pytest.fixture
def mock_httpx_client() -> MagicMock:
    """Return a mock httpx.AsyncClient."""
    mock_client = MagicMock(spec=httpx.AsyncClient)
    mock_client.aclose = AsyncMock()
    return mock_client


@pytest.fixture
def fixed_now() -> datetime:
    """Return a fixed reference time for decay and tier tests."""
    return utcnow()
