"""Build a MemoryService from configuration."""

from __future__ import annotations

import logging

from memcore.config import EmbeddingProviderName, MemcoreConfig, StorageBackend
from memcore.embeddings.base import EmbeddingProvider
from memcore.embeddings.hashing import HashEmbeddingProvider
from memcore.embeddings.ollama import OllamaEmbeddingProvider
from memcore.extraction.pipeline import ExtractionPipeline
from memcore.importance import ImportanceScorer
from memcore.persona.service import PersonaService
from memcore.persona.store import InMemoryPersonaStore, PersonaStore
from memcore.retrieval import RetrievalRanker
from memcore.service import MemoryService
from memcore.storage.base import MemoryStorage
from memcore.storage.memory import InMemoryStorage
from memcore.storage.sqlite import SQLiteMemoryStorage
from memcore.tiers import TierManager

logger = logging.getLogger(__name__)


def create_embedding_provider(config: MemcoreConfig) -> EmbeddingProvider:
    embedding = config.embedding
    if embedding.provider == EmbeddingProviderName.OLLAMA:
        return OllamaEmbeddingProvider(
            host=embedding.host,
            model=embedding.model,
            dimension=embedding.dimension,
            timeout=embedding.timeout,
            max_batch_size=embedding.max_batch_size,
        )
    return HashEmbeddingProvider(dimension=embedding.dimension)


def create_storage(config: MemcoreConfig) -> MemoryStorage:
    if config.storage.backend == StorageBackend.SQLITE:
        return SQLiteMemoryStorage(config.storage.db_path)
    return InMemoryStorage()


def build_memory_service(
    config: MemcoreConfig | None = None,
    persona_store: PersonaStore | None = None,
    with_persona: bool = True,
) -> MemoryService:
    """Wire a MemoryService and its collaborators from configuration.

    The returned service is not initialized yet; use it as an async context
    manager or call ``initialize()`` before the first operation.

    Args:
        config: Engine configuration. Loaded from YAML and environment when None.
        persona_store: Persona store. An in-memory store is used when None.
        with_persona: Set False to skip persona learning entirely.

    Returns:
        A ready-to-initialize MemoryService.
    """
    config = config or MemcoreConfig.load()

    persona_service = None
    if with_persona:
        persona_service = PersonaService(persona_store or InMemoryPersonaStore(), config.persona)

    service = MemoryService(
        storage=create_storage(config),
        embeddings=create_embedding_provider(config),
        scorer=ImportanceScorer(config.importance),
        tier_manager=TierManager(config.consolidation),
        ranker=RetrievalRanker(),
        pipeline=ExtractionPipeline(),
        persona_service=persona_service,
        config=config,
    )
    logger.info(
        f"Built memory service (storage={config.storage.backend.value}, "
        f"embeddings={config.embedding.provider.value}, persona={with_persona})"
    )
    return service
