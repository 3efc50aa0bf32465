"""Tests for RetrievalRanker and the context block."""

from __future__ import annotations

from datetime import timedelta
from typing import Callable

import pytest

from memcore.embeddings.base import cosine_similarity
from memcore.errors import ValidationError
from memcore.models import Memory, MemoryTier, MemoryType, RetrievalOptions, utcnow
from memcore.retrieval import RetrievalRanker, build_context_block
from memcore.storage.base import VectorSearchResult


@pytest.fixture
def ranker() -> RetrievalRanker:
    """Create a ranker."""
    return RetrievalRanker()


def hits(memories: list[Memory], similarity: float = 0.9) -> list[VectorSearchResult]:
    return [VectorSearchResult(memory=m, similarity=similarity) for m in memories]


class TestRanking:
    """Tests for scoring and ordering."""

    def test_empty_input(self, ranker: RetrievalRanker) -> None:
        """Test no candidates yields no results."""
        assert ranker.rank([], RetrievalOptions()) == []

    @pytest.mark.parametrize("limit", [0, -1])
    def test_non_positive_limit_rejected(self, ranker: RetrievalRanker, limit: int) -> None:
        """Test a limit of zero or less is a validation error."""
        with pytest.raises(ValidationError, match="limit must be positive"):
            ranker.rank([], RetrievalOptions(limit=limit))

    def test_importance_breaks_similarity_ties(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test higher importance ranks first when similarity and age are equal."""
        now = utcnow()
        low = make_memory("low", importance=0.2, embedding=unit_vector(0), created_at=now)
        high = make_memory("high", importance=0.9, embedding=unit_vector(1), created_at=now)

        ranked = ranker.rank(hits([low, high]), RetrievalOptions(diversity_sampling=False), now=now)

        assert [r.memory.content for r in ranked] == ["high", "low"]

    def test_recent_access_breaks_ties(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test a recently accessed memory outranks a stale one."""
        now = utcnow()
        stale = make_memory("stale", embedding=unit_vector(0), created_at=now - timedelta(days=90))
        fresh = make_memory(
            "fresh",
            embedding=unit_vector(1),
            created_at=now - timedelta(days=90),
            last_accessed_at=now - timedelta(hours=1),
        )

        ranked = ranker.rank(hits([stale, fresh]), RetrievalOptions(diversity_sampling=False), now=now)

        assert ranked[0].memory.content == "fresh"
        assert ranked[0].breakdown.recency > ranked[1].breakdown.recency

    def test_full_ties_ordered_by_id(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test identical scores fall back to a stable id order."""
        now = utcnow()
        memories = [
            make_memory(id=mid, embedding=unit_vector(i), created_at=now)
            for i, mid in enumerate(["c", "a", "b"])
        ]

        first = ranker.rank(hits(memories), RetrievalOptions(diversity_sampling=False), now=now)
        second = ranker.rank(hits(list(reversed(memories))), RetrievalOptions(diversity_sampling=False), now=now)

        assert [r.memory.id for r in first] == ["a", "b", "c"]
        assert [r.memory.id for r in second] == ["a", "b", "c"]

    def test_score_breakdown(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory]
    ) -> None:
        """Test the score is the sum of its breakdown."""
        now = utcnow()
        memory = make_memory(importance=0.5, created_at=now - timedelta(days=30))

        [result] = ranker.rank(hits([memory], similarity=0.8), RetrievalOptions(), now=now)

        assert result.breakdown.similarity == pytest.approx(0.8)
        assert result.breakdown.recency == pytest.approx(0.15)
        assert result.breakdown.importance == pytest.approx(0.2)
        assert result.score == pytest.approx(1.15)

    def test_limit_caps_results(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test results never exceed the limit."""
        memories = [make_memory(embedding=unit_vector(i)) for i in range(10)]
        ranked = ranker.rank(hits(memories), RetrievalOptions(limit=4))
        assert len(ranked) == 4


class TestFilters:
    """Tests for candidate filtering."""

    def test_deleted_and_excluded_dropped(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test deleted and excluded memories never appear."""
        keep = make_memory("keep", embedding=unit_vector(0))
        deleted = make_memory("deleted", embedding=unit_vector(1), is_deleted=True)
        excluded = make_memory("excluded", embedding=unit_vector(2))

        ranked = ranker.rank(hits([keep, deleted, excluded]), RetrievalOptions(exclude_ids=[excluded.id]))

        assert [r.memory.content for r in ranked] == ["keep"]

    def test_similarity_threshold(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory]
    ) -> None:
        """Test candidates below the similarity threshold are dropped."""
        candidates = [VectorSearchResult(make_memory("weak"), 0.3)]
        assert ranker.rank(candidates, RetrievalOptions(similarity_threshold=0.5)) == []

    def test_tier_type_and_tag_filters(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test tier, type and tag filters combine."""
        match = make_memory(
            "match", embedding=unit_vector(0), tier=MemoryTier.LONG_TERM,
            memory_type=MemoryType.PREFERENCE, tags=["food"],
        )
        wrong_tier = make_memory(
            "tier", embedding=unit_vector(1), memory_type=MemoryType.PREFERENCE, tags=["food"],
        )
        wrong_tag = make_memory(
            "tag", embedding=unit_vector(2), tier=MemoryTier.LONG_TERM,
            memory_type=MemoryType.PREFERENCE, tags=["work"],
        )

        options = RetrievalOptions(
            tiers=[MemoryTier.LONG_TERM], types=[MemoryType.PREFERENCE], tags=["food"],
        )
        ranked = ranker.rank(hits([match, wrong_tier, wrong_tag]), options)

        assert [r.memory.content for r in ranked] == ["match"]


class TestDiversity:
    """Tests for diversity sampling."""

    def test_near_duplicates_removed(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test a near-identical lower-ranked memory is skipped."""
        base = unit_vector(0)
        near = [0.99] + [0.0] * (len(base) - 2) + [0.141]
        top = make_memory("top", importance=0.9, embedding=base)
        twin = make_memory("twin", importance=0.5, embedding=near)
        other = make_memory("other", importance=0.1, embedding=unit_vector(1))

        ranked = ranker.rank(hits([top, twin, other]), RetrievalOptions(diversity_threshold=0.8))

        assert [r.memory.content for r in ranked] == ["top", "other"]

    def test_no_selected_pair_above_threshold(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory]
    ) -> None:
        """Test every pair of results is at or below the diversity threshold."""
        dimension = 64
        memories = []
        for i in range(12):
            vector = [0.0] * dimension
            vector[i % 4] = 1.0
            vector[4 + i] = 0.3 * (i % 3)
            memories.append(make_memory(f"m{i}", importance=i / 12, embedding=vector))

        ranked = ranker.rank(hits(memories), RetrievalOptions(limit=12, diversity_threshold=0.8))

        for i, a in enumerate(ranked):
            for b in ranked[i + 1:]:
                assert cosine_similarity(a.memory.embedding, b.memory.embedding) <= 0.8


class TestContextBlock:
    """Tests for build_context_block."""

    def test_empty(self) -> None:
        """Test no results gives an empty block."""
        assert build_context_block([]) == ""

    def test_grouped_by_type_in_rank_order(
        self, ranker: RetrievalRanker, make_memory: Callable[..., Memory], unit_vector
    ) -> None:
        """Test groups follow the best-ranked member of each type."""
        now = utcnow()
        pref = make_memory("Prefers tea", memory_type=MemoryType.PREFERENCE, importance=0.9,
                           embedding=unit_vector(0), created_at=now)
        fact = make_memory("Lives in Oslo", importance=0.6, embedding=unit_vector(1), created_at=now)
        pref2 = make_memory("Dislikes meetings", memory_type=MemoryType.PREFERENCE, importance=0.3,
                            embedding=unit_vector(2), created_at=now)

        ranked = ranker.rank(hits([fact, pref2, pref]), RetrievalOptions(), now=now)
        block = build_context_block(ranked)

        assert block == (
            "## Remembered Context\n"
            "\n"
            "### Preferences\n"
            "- Prefers tea\n"
            "- Dislikes meetings\n"
            "\n"
            "### Facts\n"
            "- Lives in Oslo"
        )
