"""Tier state machine: decay, promotion, demotion, archival.

    working -> short-term -> long-term
        \\            \\
         +----------> episodic (archive)

A sweep walks a batch of memories that are due for re-evaluation and
decides one action per record. Decay is recomputed from timestamps, never
from the previously stored decay score, and every tier change resets the
memory's tier clock. Together these make a second sweep right after the
first a no-op, and concurrent sweeps cannot double-charge decay.

Records are isolated: a failure on one is logged and counted, and the
rest of the batch still runs.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from memcore.config import ConsolidationConfig
from memcore.embeddings.base import cosine_similarity
from memcore.errors import ConcurrencyError
from memcore.models import Memory, MemoryTier, days_between, utcnow
from memcore.storage.base import MemoryFindCriteria, MemoryStorage

logger = logging.getLogger(__name__)

PROMOTION_TARGETS: dict[MemoryTier, MemoryTier] = {
    MemoryTier.WORKING: MemoryTier.SHORT_TERM,
    MemoryTier.SHORT_TERM: MemoryTier.LONG_TERM,
}

DEMOTION_TARGETS: dict[MemoryTier, MemoryTier] = {
    MemoryTier.LONG_TERM: MemoryTier.SHORT_TERM,
    MemoryTier.SHORT_TERM: MemoryTier.EPISODIC,
    MemoryTier.WORKING: MemoryTier.EPISODIC,
}

# Caps are enforced top-down so demoted overflow is counted in the tier below
CAP_ORDER = [MemoryTier.LONG_TERM, MemoryTier.SHORT_TERM, MemoryTier.WORKING]


def promotion_target(tier: MemoryTier) -> MemoryTier | None:
    return PROMOTION_TARGETS.get(tier)


def demotion_target(tier: MemoryTier) -> MemoryTier | None:
    return DEMOTION_TARGETS.get(tier)


class TierAction(str, Enum):
    """What a sweep does with one memory."""
    PROMOTE = "promote"
    DEMOTE = "demote"
    DELETE = "delete"
    KEEP = "keep"


@dataclass
class TierDecision:
    """Outcome of evaluating one memory."""

    action: TierAction
    decay: float
    target: MemoryTier | None = None
    reason: str = ""


@dataclass
class TierChange:
    """A tier transition that happened (or would, in a dry run)."""

    memory_id: str
    from_tier: MemoryTier
    to_tier: MemoryTier
    reason: str


@dataclass
class MergeRecord:
    """Memories folded into one surviving target."""

    target_id: str
    source_ids: list[str]


@dataclass
class ConsolidationResult:
    """Summary of one sweep."""

    promoted: list[TierChange] = field(default_factory=list)
    demoted: list[TierChange] = field(default_factory=list)
    archived: list[TierChange] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    merged: list[MergeRecord] = field(default_factory=list)
    processed: int = 0
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    dry_run: bool = False
    duration_ms: float = 0.0

    @property
    def changed(self) -> int:
        """Number of records whose tier or liveness changed."""
        return (
            len(self.promoted) + len(self.demoted) + len(self.archived)
            + len(self.deleted) + sum(len(m.source_ids) for m in self.merged)
        )

    def record_change(self, change: TierChange) -> None:
        if change.to_tier == MemoryTier.EPISODIC:
            self.archived.append(change)
        elif change.to_tier == PROMOTION_TARGETS.get(change.from_tier):
            self.promoted.append(change)
        else:
            self.demoted.append(change)

    def __str__(self) -> str:
        return (
            f"ConsolidationResult(processed={self.processed}, promoted={len(self.promoted)}, "
            f"demoted={len(self.demoted)}, archived={len(self.archived)}, "
            f"deleted={len(self.deleted)}, merged={len(self.merged)}, "
            f"skipped={len(self.skipped)}, failed={len(self.failed)})"
        )


class TierManager:
    """Applies the tier state machine to stored memories.

    Example:
        >>> manager = TierManager(ConsolidationConfig())
        >>> result = await manager.sweep(storage, tenant_id="t1", user_id="u1")
        >>> result.changed
        0
    """

    def __init__(self, config: ConsolidationConfig | None = None) -> None:
        self._config = config or ConsolidationConfig()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def config(self) -> ConsolidationConfig:
        return self._config

    # ===== Pure rules =====

    def decay_rate(self, memory: Memory) -> float:
        """Per-day rate for a memory, from its type unless stored explicitly."""
        return memory.decay.rate_per_day or self._config.decay_rates.get(memory.type, 0.05)

    def compute_decay(self, memory: Memory, now: datetime | None = None) -> float:
        """Decay score from time since last activity.

        Important memories decay up to twice as slowly; memories below the
        accelerated-decay threshold decay faster. Protected memories keep
        their stored score.
        """
        if memory.decay.protected:
            return memory.decay.score

        now = now or utcnow()
        days = days_between(memory.last_activity_at, now)
        importance = max(0.0, min(1.0, memory.importance_score))
        slowdown = 1.0 - 0.5 * importance
        accel = (
            self._config.accelerated_decay_multiplier
            if importance < self._config.accelerated_decay_threshold
            else 1.0
        )
        return max(0.0, min(1.0, math.exp(-self.decay_rate(memory) * days * slowdown * accel)))

    def is_protected(self, importance: float) -> bool:
        return importance >= self._config.protection_threshold

    def evaluate(self, memory: Memory, now: datetime | None = None) -> TierDecision:
        """Decide what a sweep should do with one memory. Pure."""
        now = now or utcnow()
        decay = self.compute_decay(memory, now)

        if memory.tier == MemoryTier.EPISODIC or memory.is_deleted:
            return TierDecision(TierAction.KEEP, decay, reason="inactive tier")

        policy = self._config.policy(memory.tier)
        hours_in_tier = days_between(memory.tier_entered_at, now) * 24
        dwell_elapsed = hours_in_tier >= policy.min_dwell_hours
        idle_days = days_between(memory.last_activity_at, now)
        recently_accessed = idle_days < self._config.recent_access_days
        importance = memory.importance_score

        if (
            not memory.decay.protected
            and decay < self._config.delete_floor
            and importance < self._config.accelerated_decay_threshold
            and not recently_accessed
        ):
            return TierDecision(TierAction.DELETE, decay, reason="fully decayed")

        if decay < self._config.decay_floor and not recently_accessed:
            # A decayed memory is never promoted, even once its dwell is over
            target = demotion_target(memory.tier)
            if dwell_elapsed and target is not None:
                return TierDecision(TierAction.DEMOTE, decay, target, "decayed below floor")
            return TierDecision(TierAction.KEEP, decay, reason="decayed, dwell pending")

        promote_to = promotion_target(memory.tier)
        eligible = importance > policy.consolidation_threshold and promote_to is not None

        if policy.ttl_hours is not None and hours_in_tier >= policy.ttl_hours:
            if eligible:
                return TierDecision(TierAction.PROMOTE, decay, promote_to, "ttl elapsed, important")
            target = demotion_target(memory.tier)
            if target is not None:
                return TierDecision(TierAction.DEMOTE, decay, target, "ttl elapsed")

        if eligible and dwell_elapsed:
            return TierDecision(TierAction.PROMOTE, decay, promote_to, "above consolidation threshold")

        return TierDecision(TierAction.KEEP, decay)

    # ===== Sweep =====

    async def sweep(
        self,
        storage: MemoryStorage,
        tenant_id: str,
        user_id: str | None = None,
        dry_run: bool = False,
        merge_similar: bool = False,
        now: datetime | None = None,
    ) -> ConsolidationResult:
        """Run one consolidation sweep over a tenant or a single user.

        Args:
            storage: Backend holding the memories
            tenant_id: Tenant to sweep
            user_id: Restrict to one user; None sweeps the whole tenant
            dry_run: Report decisions without writing anything
            merge_similar: Also fold near-identical memories together
            now: Reference time (defaults to the current time)

        Returns:
            ConsolidationResult describing every change.
        """
        lock = self._locks[f"{tenant_id}:{user_id or '*'}"]
        async with lock:
            start = time.perf_counter()
            now = now or utcnow()
            result = ConsolidationResult(dry_run=dry_run)

            batch = await storage.get_for_consolidation(
                tenant_id,
                user_id,
                min_age_hours=self._config.min_age_hours,
                limit=self._config.batch_size,
            )

            touched: set[str] = set()
            for memory in batch:
                result.processed += 1
                decision = self.evaluate(memory, now)
                try:
                    if await self._apply(storage, memory, decision, result, dry_run):
                        touched.add(memory.id)
                except ConcurrencyError as e:
                    logger.debug(f"Skipping {memory.id}: {e}")
                    result.skipped.append(memory.id)
                except Exception as e:
                    logger.warning(f"Consolidation failed for memory {memory.id}: {e}")
                    result.failed.append(memory.id)

            await self._enforce_caps(storage, tenant_id, user_id, result, dry_run, now)

            if merge_similar and not dry_run:
                survivors = [m for m in batch if m.id not in touched]
                await self._merge_similar(storage, survivors, result)

            result.duration_ms = (time.perf_counter() - start) * 1000
            logger.info(f"Sweep {tenant_id}/{user_id or '*'}: {result}")
            return result

    async def _apply(
        self,
        storage: MemoryStorage,
        memory: Memory,
        decision: TierDecision,
        result: ConsolidationResult,
        dry_run: bool,
    ) -> bool:
        """Execute one decision. Returns True if the record's tier or liveness changed."""
        if decision.action == TierAction.DELETE:
            if not dry_run:
                await storage.soft_delete(memory.id, expected_version=memory.version)
            result.deleted.append(memory.id)
            return True

        if decision.action in (TierAction.PROMOTE, TierAction.DEMOTE) and decision.target:
            if not dry_run:
                await storage.update_tier(memory.id, decision.target, expected_version=memory.version)
            result.record_change(
                TierChange(memory.id, memory.tier, decision.target, decision.reason)
            )
            return True

        if not dry_run and abs(decision.decay - memory.decay.score) > 1e-4:
            updated = await storage.update_decay(
                memory.id, decision.decay, expected_version=memory.version
            )
            # Keep the batch copy current for the merge pass
            memory.decay = updated.decay
            memory.version = updated.version
        return False

    async def _enforce_caps(
        self,
        storage: MemoryStorage,
        tenant_id: str,
        user_id: str | None,
        result: ConsolidationResult,
        dry_run: bool,
        now: datetime,
    ) -> None:
        """Demote the weakest members of any tier that exceeds its cap."""
        live = await storage.find_by_criteria(MemoryFindCriteria(tenant_id=tenant_id, user_id=user_id))
        gone = set(result.deleted)

        by_user: dict[str, dict[MemoryTier, list[Memory]]] = defaultdict(lambda: defaultdict(list))
        for memory in live:
            if memory.id not in gone:
                by_user[memory.user_id][memory.tier].append(memory)

        for owner, tiers in by_user.items():
            for tier in CAP_ORDER:
                members = tiers[tier]
                cap = self._config.policy(tier).max_memories
                if len(members) <= cap:
                    continue

                target = demotion_target(tier)
                if target is None:
                    continue
                members.sort(key=lambda m: (m.importance_score * self.compute_decay(m, now), m.id))
                overflow = members[: len(members) - cap]
                logger.info(f"Tier {tier.value} over cap for user {owner}: demoting {len(overflow)}")

                for memory in overflow:
                    try:
                        moved = memory
                        if not dry_run:
                            # The lower tier's cap pass needs the current version
                            moved = await storage.update_tier(memory.id, target, expected_version=memory.version)
                        result.record_change(TierChange(memory.id, tier, target, "tier over capacity"))
                        tiers[target].append(moved)
                    except ConcurrencyError as e:
                        logger.debug(f"Skipping cap demotion of {memory.id}: {e}")
                        result.skipped.append(memory.id)
                    except Exception as e:
                        logger.warning(f"Cap demotion failed for memory {memory.id}: {e}")
                        result.failed.append(memory.id)
                tiers[tier] = members[len(overflow):]

    async def _merge_similar(
        self, storage: MemoryStorage, memories: list[Memory], result: ConsolidationResult
    ) -> None:
        """Fold groups of near-identical memories into their most important member."""
        threshold = self._config.merge_threshold
        processed: set[str] = set()

        for memory in memories:
            if memory.id in processed or not memory.embedding:
                continue
            group = [memory] + [
                other for other in memories
                if other.id != memory.id
                and other.id not in processed
                and other.user_id == memory.user_id
                and other.type == memory.type
                and other.embedding
                and cosine_similarity(memory.embedding, other.embedding) >= threshold
            ]
            if len(group) < 2:
                continue
            processed.update(m.id for m in group)

            group.sort(key=lambda m: (-m.importance_score, m.id))
            target, sources = group[0], group[1:]
            longest = max(group, key=lambda m: len(m.content))
            try:
                await storage.update(
                    target.id,
                    {
                        "content": longest.content,
                        "embedding": list(longest.embedding),
                        "importance_score": min(1.0, target.importance_score + 0.1),
                        "reinforcements": target.reinforcements + sum(s.reinforcements for s in sources),
                    },
                    expected_version=target.version,
                )
            except ConcurrencyError as e:
                logger.debug(f"Skipping merge into {target.id}: {e}")
                result.skipped.append(target.id)
                continue
            except Exception as e:
                logger.warning(f"Merge into memory {target.id} failed: {e}")
                result.failed.append(target.id)
                continue

            # A source touched since the batch read stays live; the next sweep can merge it
            folded: list[str] = []
            for source in sources:
                try:
                    await storage.soft_delete(source.id, expected_version=source.version)
                    folded.append(source.id)
                except ConcurrencyError as e:
                    logger.debug(f"Keeping merge source {source.id}: {e}")
                    result.skipped.append(source.id)
                except Exception as e:
                    logger.warning(f"Deleting merge source {source.id} failed: {e}")
                    result.failed.append(source.id)

            if folded:
                result.merged.append(MergeRecord(target.id, folded))
