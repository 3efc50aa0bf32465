"""Tests for the storage backends.

Every test runs against both the in-memory and the SQLite backend.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import AsyncGenerator, Callable

import pytest

from memcore.errors import ConcurrencyError, MemoryNotFoundError, ValidationError
from memcore.models import DecayState, Memory, MemoryTier, MemoryType, utcnow
from memcore.storage.base import MemoryFindCriteria, MemoryStorage, VectorSearchOptions
from memcore.storage.memory import InMemoryStorage
from memcore.storage.sqlite import SQLiteMemoryStorage


@pytest.fixture(params=["memory", "sqlite"])
async def backend(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncGenerator[MemoryStorage, None]:
    """Yield an initialized storage backend."""
    if request.param == "sqlite":
        storage = SQLiteMemoryStorage(tmp_path / "memories.db")
        await storage.initialize()
    else:
        storage = InMemoryStorage()
    yield storage
    await storage.close()


class TestCrud:
    """Tests for save, get, update and delete."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, backend: MemoryStorage, make_memory: Callable[..., Memory]) -> None:
        """Test a saved memory round-trips through storage."""
        memory = make_memory(tags=["home"], structured_data={"city": "Oslo"})
        await backend.save(memory)

        stored = await backend.get(memory.id)

        assert stored is not None
        assert stored.content == memory.content
        assert stored.tags == ["home"]
        assert stored.structured_data == {"city": "Oslo"}
        assert stored.embedding == pytest.approx(memory.embedding)

    @pytest.mark.asyncio
    async def test_get_missing(self, backend: MemoryStorage) -> None:
        """Test an unknown id returns None."""
        assert await backend.get("missing") is None

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, backend: MemoryStorage, make_memory: Callable[..., Memory]) -> None:
        """Test update applies changes and increments the version."""
        memory = make_memory()
        await backend.save(memory)

        updated = await backend.update(memory.id, {"content": "User lives in Bergen"}, expected_version=1)

        assert updated.content == "User lives in Bergen"
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_update_stale_version(self, backend: MemoryStorage, make_memory: Callable[..., Memory]) -> None:
        """Test a stale expected version raises ConcurrencyError."""
        memory = make_memory()
        await backend.save(memory)
        await backend.update(memory.id, {"confidence": 0.9})

        with pytest.raises(ConcurrencyError):
            await backend.update(memory.id, {"confidence": 0.1}, expected_version=1)

    @pytest.mark.asyncio
    async def test_update_protected_field(self, backend: MemoryStorage, make_memory: Callable[..., Memory]) -> None:
        """Test identity fields cannot be changed."""
        memory = make_memory()
        await backend.save(memory)

        with pytest.raises(ValidationError, match="cannot be updated"):
            await backend.update(memory.id, {"user_id": "someone-else"})

    @pytest.mark.asyncio
    async def test_update_missing(self, backend: MemoryStorage) -> None:
        """Test updating an unknown id raises MemoryNotFoundError."""
        with pytest.raises(MemoryNotFoundError):
            await backend.update("missing", {"confidence": 0.9})

    @pytest.mark.asyncio
    async def test_soft_and_hard_delete(self, backend: MemoryStorage, make_memory: Callable[..., Memory]) -> None:
        """Test soft delete flags the record and hard delete removes it."""
        soft = make_memory("soft")
        hard = make_memory("hard")
        await backend.save_batch([soft, hard])

        await backend.soft_delete(soft.id)
        await backend.hard_delete(hard.id)

        assert (await backend.get(soft.id)).is_deleted
        assert await backend.get(hard.id) is None
        assert await backend.count_by_user("user-1", "tenant-a") == 0

    @pytest.mark.asyncio
    async def test_soft_delete_stale_version(
        self, backend: MemoryStorage, make_memory: Callable[..., Memory]
    ) -> None:
        """Test a versioned soft delete refuses a record that changed since it was read."""
        memory = make_memory()
        await backend.save(memory)
        await backend.update_access(memory.id, utcnow())

        with pytest.raises(ConcurrencyError):
            await backend.soft_delete(memory.id, expected_version=memory.version)
        assert not (await backend.get(memory.id)).is_deleted

        await backend.soft_delete(memory.id, expected_version=memory.version + 1)
        assert (await backend.get(memory.id)).is_deleted


class TestQueries:
    """Tests for search and criteria queries."""

    @pytest.mark.asyncio
    async def test_vector_search_orders_by_similarity(
        self, backend: MemoryStorage, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test hits come back most similar first."""
        exact = make_memory("exact", embedding=unit_vector(0))
        partial = make_memory("partial", embedding=[0.6, 0.8] + [0.0] * 62)
        orthogonal = make_memory("orthogonal", embedding=unit_vector(2))
        await backend.save_batch([orthogonal, partial, exact])

        results = await backend.vector_search(unit_vector(0), "user-1", "tenant-a")

        assert [r.memory.content for r in results] == ["exact", "partial", "orthogonal"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[1].similarity == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_vector_search_scoping(
        self, backend: MemoryStorage, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test user, tenant, chatbot and deletion scoping."""
        mine_global = make_memory("global")
        mine_bot = make_memory("bot-a", chatbot_id="bot-a")
        other_bot = make_memory("bot-b", chatbot_id="bot-b")
        other_user = make_memory("other-user", user_id="user-2")
        other_tenant = make_memory("other-tenant", tenant_id="tenant-b")
        deleted = make_memory("deleted", is_deleted=True)
        await backend.save_batch([mine_global, mine_bot, other_bot, other_user, other_tenant, deleted])

        scoped = await backend.vector_search(
            unit_vector(0), "user-1", "tenant-a", VectorSearchOptions(chatbot_id="bot-a")
        )
        exact_only = await backend.vector_search(
            unit_vector(0), "user-1", "tenant-a", VectorSearchOptions(chatbot_id="bot-a", include_global=False)
        )

        assert {r.memory.content for r in scoped} == {"global", "bot-a"}
        assert [r.memory.content for r in exact_only] == ["bot-a"]

    @pytest.mark.asyncio
    async def test_vector_search_filters(
        self, backend: MemoryStorage, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test type, tier, min similarity and limit filters."""
        pref = make_memory("pref", memory_type=MemoryType.PREFERENCE, tier=MemoryTier.LONG_TERM)
        fact = make_memory("fact")
        far = make_memory("far", memory_type=MemoryType.PREFERENCE, embedding=unit_vector(5))
        await backend.save_batch([pref, fact, far])

        results = await backend.vector_search(
            unit_vector(0), "user-1", "tenant-a",
            VectorSearchOptions(types=[MemoryType.PREFERENCE], min_similarity=0.5, limit=5),
        )

        assert [r.memory.content for r in results] == ["pref"]

    @pytest.mark.asyncio
    async def test_find_by_criteria(self, backend: MemoryStorage, make_memory: Callable[..., Memory]) -> None:
        """Test criteria filters combine."""
        old = make_memory("old", age_days=40, tags=["work"])
        new = make_memory("new", tags=["work"])
        decayed = make_memory("decayed", decay=DecayState(score=0.1))
        await backend.save_batch([old, new, decayed])

        by_age = await backend.find_by_criteria(MemoryFindCriteria(tenant_id="tenant-a", older_than_days=30))
        by_tag = await backend.find_by_criteria(MemoryFindCriteria(tenant_id="tenant-a", tags=["work"]))
        by_decay = await backend.find_by_criteria(MemoryFindCriteria(tenant_id="tenant-a", max_decay_score=0.2))

        assert [m.content for m in by_age] == ["old"]
        assert {m.content for m in by_tag} == {"old", "new"}
        assert [m.content for m in by_decay] == ["decayed"]

    @pytest.mark.asyncio
    async def test_get_for_consolidation(self, backend: MemoryStorage, make_memory: Callable[..., Memory]) -> None:
        """Test only old enough, live, non-archived memories are due."""
        due = make_memory("due", age_days=1)
        too_young = make_memory("young")
        archived = make_memory("archived", age_days=1, tier=MemoryTier.EPISODIC)
        await backend.save_batch([due, too_young, archived])

        batch = await backend.get_for_consolidation("tenant-a", "user-1", min_age_hours=1.0)

        assert [m.content for m in batch] == ["due"]


class TestTargetedUpdates:
    """Tests for tier, decay and access updates."""

    @pytest.mark.asyncio
    async def test_update_tier_resets_tier_clock(
        self, backend: MemoryStorage, make_memory: Callable[..., Memory]
    ) -> None:
        """Test a tier change records when the memory entered the tier."""
        memory = make_memory(age_days=10)
        await backend.save(memory)

        updated = await backend.update_tier(memory.id, MemoryTier.SHORT_TERM, expected_version=1)

        assert updated.tier == MemoryTier.SHORT_TERM
        assert utcnow() - updated.tier_entered_at < timedelta(minutes=1)
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_update_decay_and_access(
        self, backend: MemoryStorage, make_memory: Callable[..., Memory]
    ) -> None:
        """Test decay and access bookkeeping."""
        memory = make_memory()
        await backend.save(memory)
        now = utcnow()

        await backend.update_decay(memory.id, 0.42)
        await backend.update_access(memory.id, now)
        stored = await backend.get(memory.id)

        assert stored.decay.score == pytest.approx(0.42)
        assert stored.access_count == 1
        assert stored.last_accessed_at == now

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, backend: MemoryStorage, make_memory: Callable[..., Memory]) -> None:
        """Test expired memories are removed."""
        expired = make_memory("expired", expires_at=utcnow() - timedelta(hours=1))
        live = make_memory("live", expires_at=utcnow() + timedelta(days=1))
        await backend.save_batch([expired, live])

        removed = await backend.cleanup_expired()

        assert removed == 1
        assert await backend.get(expired.id) is None
        assert await backend.get(live.id) is not None

    @pytest.mark.asyncio
    async def test_health_check(self, backend: MemoryStorage) -> None:
        """Test an open backend reports healthy."""
        assert await backend.health_check() is True


class TestSQLiteLifecycle:
    """Tests specific to the SQLite backend."""

    @pytest.mark.asyncio
    async def test_requires_initialize(self, tmp_path: Path) -> None:
        """Test using the backend before initialize() fails clearly."""
        storage = SQLiteMemoryStorage(tmp_path / "memories.db")
        with pytest.raises(RuntimeError, match="not initialized"):
            await storage.get("anything")

    @pytest.mark.asyncio
    async def test_persists_across_connections(
        self, tmp_path: Path, make_memory: Callable[..., Memory]
    ) -> None:
        """Test data survives closing and reopening the database."""
        memory = make_memory()
        async with SQLiteMemoryStorage(tmp_path / "memories.db") as storage:
            await storage.save(memory)

        async with SQLiteMemoryStorage(tmp_path / "memories.db") as storage:
            stored = await storage.get(memory.id)

        assert stored is not None
        assert stored.version == memory.version

    @pytest.mark.asyncio
    async def test_health_check_after_close(self, tmp_path: Path) -> None:
        """Test a closed backend reports unhealthy."""
        storage = SQLiteMemoryStorage(tmp_path / "memories.db")
        await storage.initialize()
        await storage.close()
        assert await storage.health_check() is False
