"""End-to-end memory flows through MemoryService."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from memcore.config import EmbeddingConfig, EmbeddingProviderName, MemcoreConfig, StorageBackend, StorageConfig
from memcore.embeddings.base import EmbeddingProvider
from memcore.factory import build_memory_service
from memcore.models import ForgetCriteria, Memory, MemoryCandidate, MemoryScope, MemoryType, RetrievalOptions
from memcore.persona.service import PersonaService
from memcore.service import MemoryService
from memcore.storage.memory import InMemoryStorage


class TestRetrievalFlow:
    """Ranking over a populated store."""

    @pytest.mark.asyncio
    async def test_equal_similarity_ranks_by_importance(
        self,
        storage: InMemoryStorage,
        static_embeddings: EmbeddingProvider,
        mock_config: MemcoreConfig,
        scope: MemoryScope,
        make_memory: Callable[..., Memory],
    ) -> None:
        """Test importance decides the order when every memory matches equally."""
        importances = [0.9, 0.2, 0.8, 0.3, 0.95]
        memories = [make_memory(f"Memory {i}", importance=imp) for i, imp in enumerate(importances)]
        for memory in memories:
            await storage.save(memory)
        await storage.soft_delete(memories[4].id)

        async with MemoryService(storage, static_embeddings, config=mock_config) as service:
            result = await service.retrieve(
                "anything",
                scope,
                RetrievalOptions(limit=3, similarity_threshold=0.0, diversity_sampling=False),
            )

        assert [r.memory.content for r in result.memories] == ["Memory 0", "Memory 2", "Memory 3"]
        assert result.total_matched == 4
        assert result.context_block.startswith("## Remembered Context")

    @pytest.mark.asyncio
    async def test_chatbot_scoping(
        self,
        storage: InMemoryStorage,
        static_embeddings: EmbeddingProvider,
        mock_config: MemcoreConfig,
        make_memory: Callable[..., Memory],
    ) -> None:
        """Test a chatbot sees its own and global memories, not another bot's."""
        await storage.save(make_memory("Global", chatbot_id=None))
        await storage.save(make_memory("Bot A", chatbot_id="bot-a"))
        await storage.save(make_memory("Bot B", chatbot_id="bot-b"))
        options = RetrievalOptions(similarity_threshold=0.0, diversity_sampling=False)
        bot_a = MemoryScope(user_id="user-1", tenant_id="tenant-a", chatbot_id="bot-a")

        async with MemoryService(storage, static_embeddings, config=mock_config) as service:
            with_global = await service.retrieve("anything", bot_a, options)
            options.include_global = False
            own_only = await service.retrieve("anything", bot_a, options)

        assert {r.memory.content for r in with_global.memories} == {"Global", "Bot A"}
        assert [r.memory.content for r in own_only.memories] == ["Bot A"]


class TestConversationFlow:
    """From a conversation turn to stored memories and a learned persona."""

    @pytest.mark.asyncio
    async def test_turn_to_retrieval(
        self, memory_service: MemoryService, persona_service: PersonaService, scope: MemoryScope
    ) -> None:
        """Test extracted memories are retrievable and the persona is filled in."""
        await memory_service.extract_from_conversation(
            "I work as a backend engineer at Visma.",
            "Nice, Visma is a great place to work.",
            scope,
        )
        await memory_service.extract_from_conversation("I live in Oslo.", "", scope)

        result = await memory_service.retrieve(
            "User works at Visma", scope, RetrievalOptions(similarity_threshold=0.0, diversity_sampling=False)
        )
        contents = [r.memory.content for r in result.memories]

        assert contents[0] == "User works at Visma"
        assert set(contents) == {"User works at Visma", "User works as backend engineer", "User lives in Oslo"}

        persona = await persona_service.store.get("user-1", "tenant-a")
        assert persona.professional_profile.title == "backend engineer"
        assert persona.professional_profile.company == "Visma"

    @pytest.mark.asyncio
    async def test_forget_then_retrieve(self, memory_service: MemoryService, scope: MemoryScope) -> None:
        """Test forgotten memories no longer come back."""
        await memory_service.extract_from_conversation("I live in Oslo. I know Python.", "", scope)

        await memory_service.forget(
            ForgetCriteria(tenant_id="tenant-a", user_id="user-1", contains_keywords=["oslo"])
        )
        result = await memory_service.retrieve(
            "User lives in Oslo", scope, RetrievalOptions(similarity_threshold=0.0, diversity_sampling=False)
        )

        assert "User lives in Oslo" not in [r.memory.content for r in result.memories]


class TestPersistentBackend:
    """The SQLite backend through a service built from configuration."""

    @pytest.mark.asyncio
    async def test_memories_survive_restart(self, tmp_path: Path, scope: MemoryScope) -> None:
        """Test memories stored by one service are found by the next."""
        config = MemcoreConfig(
            storage=StorageConfig(backend=StorageBackend.SQLITE, db_path=str(tmp_path / "memcore.db")),
            embedding=EmbeddingConfig(provider=EmbeddingProviderName.HASH, dimension=64),
        )

        async with build_memory_service(config) as service:
            stored = await service.store(
                MemoryCandidate(scope=scope, type=MemoryType.FACT, content="User lives in Oslo")
            )

        async with build_memory_service(config) as service:
            fetched = await service.get(stored.id)
            result = await service.retrieve("User lives in Oslo", scope)

        assert fetched is not None
        assert fetched.content == "User lives in Oslo"
        assert fetched.embedding == pytest.approx(stored.embedding)
        assert [r.memory.id for r in result.memories] == [stored.id]
