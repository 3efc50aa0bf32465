"""Memory service: the single entry point for storing, retrieving and maintaining memories.

Wires together extraction, importance scoring, storage, embeddings,
ranking, tier management and (optionally) persona learning. Every
storage and embedding call runs under a timeout and is retried with
exponential backoff when the failure is transient.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict, deque
from typing import Any, Awaitable, Callable, TypeVar

from memcore.config import MemcoreConfig
from memcore.embeddings.base import EmbeddingProvider
from memcore.errors import (
    ConcurrencyError,
    MemoryNotFoundError,
    MemoryRejectedError,
    RetryableEmbeddingError,
    RetryableError,
    RetryableStorageError,
    ValidationError,
    retry_async,
    with_timeout,
)
from memcore.extraction.pipeline import ExtractionPipeline
from memcore.extraction.style import analyze_writing_style, extract_signature_patterns, style_insights
from memcore.importance import ImportanceScorer, UsageFactors
from memcore.models import (
    DecayState,
    ForgetCriteria,
    ForgetResult,
    ImportanceBreakdown,
    Memory,
    MemoryCandidate,
    MemoryScope,
    MemorySource,
    MemoryTier,
    MemoryType,
    RetrievalOptions,
    RetrievalResult,
    days_between,
    utcnow,
)
from memcore.persona.service import PersonaService
from memcore.retrieval import RetrievalRanker, build_context_block, validate_options
from memcore.storage.base import MemoryFindCriteria, MemoryStorage, VectorSearchOptions
from memcore.text import normalize_whitespace
from memcore.tiers import ConsolidationResult, TierManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

REINFORCEMENT_IMPORTANCE_BONUS = 0.1
REINFORCEMENT_CONFIDENCE_BONUS = 0.05
STYLE_HISTORY_SIZE = 50


class MemoryService:
    """Orchestrates the memory engine for many tenants and users.

    Construct one per process and share it; all state that matters lives in
    the storage backend and the persona store.

    Example:
        >>> async with MemoryService(InMemoryStorage(), HashEmbeddingProvider()) as service:
        ...     await service.store(MemoryCandidate(scope, MemoryType.FACT, "User lives in Oslo"))
        ...     result = await service.retrieve("where does the user live?", scope)
        ...     print(result.context_block)
    """

    def __init__(
        self,
        storage: MemoryStorage,
        embeddings: EmbeddingProvider,
        scorer: ImportanceScorer | None = None,
        tier_manager: TierManager | None = None,
        ranker: RetrievalRanker | None = None,
        pipeline: ExtractionPipeline | None = None,
        persona_service: PersonaService | None = None,
        config: MemcoreConfig | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            storage: Memory storage backend
            embeddings: Embedding provider; its dimension is the required vector size
            scorer: Importance scorer. Defaults to one built from config.importance.
            tier_manager: Tier manager. Defaults to one built from config.consolidation.
            ranker: Retrieval ranker
            pipeline: Extraction pipeline. Defaults to the pattern extractors.
            persona_service: Receives insights from extracted turns when set
            config: Engine configuration. Defaults are used when None.
        """
        self._config = config or MemcoreConfig()
        self._storage = storage
        self._embeddings = embeddings
        self._scorer = scorer or ImportanceScorer(self._config.importance)
        self._tiers = tier_manager or TierManager(self._config.consolidation)
        self._ranker = ranker or RetrievalRanker()
        self._pipeline = pipeline or ExtractionPipeline()
        self._persona = persona_service
        # Least recently active scope first
        self._user_messages: OrderedDict[str, deque[str]] = OrderedDict()

    @property
    def config(self) -> MemcoreConfig:
        return self._config

    @property
    def storage(self) -> MemoryStorage:
        return self._storage

    @property
    def persona_service(self) -> PersonaService | None:
        return self._persona

    # ===== Call plumbing =====

    async def _call(
        self,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        error_cls: type[RetryableError] = RetryableStorageError,
        retry: bool = True,
    ) -> T:
        """Run a backend call with the configured timeout and, optionally, retries."""
        service = self._config.service

        async def attempt() -> T:
            return await with_timeout(factory(), service.operation_timeout_seconds, operation, error_cls)

        if not retry:
            return await attempt()
        return await retry_async(
            attempt,
            max_retries=service.max_retries,
            base_delay=service.retry_base_delay,
            operation=operation,
        )

    async def _embed(self, text: str) -> tuple[list[float], str]:
        result = await self._call("embed", lambda: self._embeddings.embed(text), RetryableEmbeddingError)
        if len(result.embedding) != self._embeddings.dimension:
            raise ValidationError(
                f"Embedding dimension mismatch: expected {self._embeddings.dimension}, "
                f"got {len(result.embedding)}"
            )
        return result.embedding, result.model

    # ===== Store =====

    async def store(self, candidate: MemoryCandidate) -> Memory:
        """Store a memory candidate.

        A candidate nearly identical to an existing memory of the same type
        reinforces that memory instead of creating a new one.

        Args:
            candidate: What to remember and for whom

        Returns:
            The stored (or reinforced) memory.

        Raises:
            ValidationError: If the content is empty, the precomputed importance is
                out of range, or the embedding has the wrong dimension
            MemoryRejectedError: If the importance is below the storage threshold
        """
        content = normalize_whitespace(candidate.content or "")
        if not content:
            raise ValidationError("content must not be empty")
        if candidate.importance_score is not None and not 0.0 <= candidate.importance_score <= 1.0:
            raise ValidationError("importance_score must be between 0.0 and 1.0")

        if candidate.importance_score is not None:
            importance = candidate.importance_score
            breakdown = ImportanceBreakdown()
        else:
            scored = self._scorer.score_content(content, candidate.type, candidate.source, candidate.metadata)
            importance, breakdown = scored.score, scored.breakdown

        min_importance = self._config.service.min_importance_to_store
        if importance < min_importance:
            raise MemoryRejectedError(f"importance {importance:.3f} below {min_importance}")

        embedding, model = await self._embed(content)
        scope = candidate.scope
        confidence = candidate.confidence if candidate.confidence is not None else 0.5

        duplicate = await self._find_duplicate(embedding, candidate)
        if duplicate is not None:
            return await self._reinforce(duplicate, importance, confidence)

        now = utcnow()
        memory = Memory(
            id=str(uuid.uuid4()),
            user_id=scope.user_id,
            tenant_id=scope.tenant_id,
            chatbot_id=scope.chatbot_id,
            type=candidate.type,
            content=content,
            source=candidate.source,
            tier=candidate.tier or self._config.service.default_tier,
            structured_data=dict(candidate.structured_data),
            importance_score=importance,
            importance_breakdown=breakdown,
            confidence=confidence,
            decay=DecayState(
                score=1.0,
                rate_per_day=self._config.consolidation.decay_rates.get(candidate.type, 0.05),
                protected=self._tiers.is_protected(importance),
                last_calculated=now,
            ),
            embedding=embedding,
            embedding_model=model,
            created_at=now,
            updated_at=now,
            tier_entered_at=now,
            tags=list(candidate.tags),
            source_conversation_id=candidate.source_conversation_id,
            source_message_ids=list(candidate.source_message_ids),
            expires_at=candidate.expires_at,
        )

        await self._call("save", lambda: self._storage.save(memory))
        logger.debug(f"Stored {memory.type.value} memory {memory.id} for {scope.key} (importance {importance:.2f})")

        await self._check_capacity(scope)
        return memory

    async def _find_duplicate(self, embedding: list[float], candidate: MemoryCandidate) -> Memory | None:
        scope = candidate.scope
        options = VectorSearchOptions(
            chatbot_id=scope.chatbot_id,
            include_global=False,
            limit=5,
            types=[candidate.type],
            min_similarity=self._config.service.deduplication_threshold,
        )
        hits = await self._call(
            "vector_search",
            lambda: self._storage.vector_search(embedding, scope.user_id, scope.tenant_id, options),
        )
        for hit in hits:
            if hit.memory.chatbot_id == scope.chatbot_id:
                return hit.memory
        return None

    async def _reinforce(self, existing: Memory, importance: float, confidence: float) -> Memory:
        """Fold a repeated statement into the memory it repeats."""
        memory = existing
        attempts = self._config.service.max_retries + 1
        for attempt in range(attempts):
            now = utcnow()
            boosted = min(1.0, (memory.importance_score + importance) / 2 + REINFORCEMENT_IMPORTANCE_BONUS)
            changes: dict[str, Any] = {
                "importance_score": boosted,
                "confidence": min(1.0, max(memory.confidence, confidence) + REINFORCEMENT_CONFIDENCE_BONUS),
                "reinforcements": memory.reinforcements + 1,
                "last_accessed_at": now,
                "decay": DecayState(
                    score=1.0,
                    rate_per_day=memory.decay.rate_per_day,
                    protected=self._tiers.is_protected(boosted),
                    last_calculated=now,
                ),
            }
            try:
                updated = await self._call(
                    "update",
                    lambda: self._storage.update(memory.id, changes, expected_version=memory.version),
                    retry=False,
                )
            except ConcurrencyError:
                if attempt == attempts - 1:
                    raise
                fresh = await self._call("get", lambda: self._storage.get(existing.id))
                if fresh is None:
                    raise MemoryNotFoundError(existing.id)
                memory = fresh
                continue

            logger.debug(f"Reinforced memory {updated.id} (x{updated.reinforcements})")
            return updated

        raise MemoryNotFoundError(existing.id)

    async def _check_capacity(self, scope: MemoryScope) -> None:
        limit = self._config.service.max_memories_per_user
        count = await self._call("count_by_user", lambda: self._storage.count_by_user(scope.user_id, scope.tenant_id))
        if count <= limit:
            return

        logger.warning(f"{scope.key} holds {count} memories, above the limit of {limit}")
        if not self._config.service.auto_consolidate:
            return
        try:
            await self.consolidate(scope)
        except Exception as e:
            logger.warning(f"Auto-consolidation for {scope.key} failed: {e}")

    # ===== Retrieve =====

    async def retrieve(
        self,
        query: str,
        scope: MemoryScope,
        options: RetrievalOptions | None = None,
    ) -> RetrievalResult:
        """Find the memories most relevant to a query.

        Args:
            query: Natural-language query
            scope: Whose memories to search
            options: Ranking and filter options. Defaults come from config.retrieval.

        Returns:
            RetrievalResult with ranked memories and a markdown context block.

        Raises:
            ValidationError: If the query is empty or the options are invalid
        """
        start = time.perf_counter()
        options = options or self._config.retrieval.to_options()
        validate_options(options)
        if not query or not query.strip():
            raise ValidationError("query must not be empty")

        embedding, _ = await self._embed(query)
        search = VectorSearchOptions(
            chatbot_id=scope.chatbot_id,
            include_global=options.include_global,
            limit=options.limit * 3,
            tiers=options.tiers,
            types=options.types,
            tags=options.tags,
            min_similarity=options.similarity_threshold,
            exclude_ids=options.exclude_ids,
        )
        candidates = await self._call(
            "vector_search",
            lambda: self._storage.vector_search(embedding, scope.user_id, scope.tenant_id, search),
        )

        ranked = self._ranker.rank(candidates, options)
        await self._record_access([r.memory for r in ranked])

        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Retrieved {len(ranked)}/{len(candidates)} memories for {scope.key} in {duration_ms:.1f}ms")
        return RetrievalResult(
            memories=ranked,
            total_matched=len(candidates),
            query=query,
            duration_ms=duration_ms,
            context_block=build_context_block(ranked),
            tiers_searched=list(options.tiers) if options.tiers else list(MemoryTier),
        )

    async def _record_access(self, memories: list[Memory]) -> None:
        if not memories:
            return
        now = utcnow()
        outcomes = await asyncio.gather(
            *(
                self._call("update_access", lambda m=m: self._storage.update_access(m.id, now))
                for m in memories
            ),
            return_exceptions=True,
        )
        for memory, outcome in zip(memories, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"Failed to record access for {memory.id}: {outcome}")
                continue
            memory.last_accessed_at = now
            memory.access_count += 1

    # ===== Extraction =====

    async def extract_from_conversation(
        self,
        user_message: str,
        assistant_response: str,
        scope: MemoryScope,
        conversation_id: str | None = None,
    ) -> list[Memory]:
        """Extract and store memories from one conversation turn.

        Drafts are stored concurrently; one failing store does not affect
        the others. Insights go to the persona service when one is
        configured, and persona failures never fail the turn.

        Returns:
            The memories stored or reinforced by this turn.
        """
        extraction = self._pipeline.process_turn(user_message, assistant_response)
        threshold = self._config.service.min_extraction_confidence
        drafts = [d for d in extraction.drafts if d.confidence >= threshold]

        outcomes = await asyncio.gather(
            *(self.store(d.to_candidate(scope, conversation_id)) for d in drafts),
            return_exceptions=True,
        )
        stored: list[Memory] = []
        for draft, outcome in zip(drafts, outcomes):
            if isinstance(outcome, MemoryRejectedError):
                logger.debug(f"Draft not stored: {outcome}")
            elif isinstance(outcome, BaseException):
                logger.warning(f"Failed to store extracted {draft.type.value} memory: {outcome}")
            else:
                stored.append(outcome)

        insights = list(extraction.insights)
        history = self._style_history(scope.key)
        if user_message and user_message.strip():
            history.append(user_message)
        if len(history) >= self._config.service.style_min_messages:
            messages = list(history)
            insights.extend(style_insights(analyze_writing_style(messages), extract_signature_patterns(messages)))

        if self._persona is not None and insights:
            try:
                await self._persona.update_for_scope(scope.user_id, scope.tenant_id, insights, scope.chatbot_id)
            except Exception as e:
                logger.warning(f"Persona update for {scope.key} failed: {e}")

        logger.info(
            f"Turn for {scope.key}: {len(stored)}/{len(extraction.drafts)} memories stored, "
            f"{len(insights)} insights"
        )
        return stored

    def _style_history(self, scope_key: str) -> deque[str]:
        """Recent user messages for a scope, evicting the least recently active scopes."""
        history = self._user_messages.get(scope_key)
        if history is None:
            history = deque(maxlen=STYLE_HISTORY_SIZE)
            self._user_messages[scope_key] = history
        else:
            self._user_messages.move_to_end(scope_key)

        limit = self._config.service.style_history_scopes
        while len(self._user_messages) > limit:
            evicted, _ = self._user_messages.popitem(last=False)
            logger.debug(f"Dropped style history for {evicted}")
        return history

    # ===== Consolidation =====

    async def consolidate(self, scope: MemoryScope, dry_run: bool = False, merge_similar: bool = False) -> int:
        """Run one consolidation sweep for a user. Returns the number of changed memories."""
        result = await self.consolidate_with_report(scope, dry_run=dry_run, merge_similar=merge_similar)
        return result.changed

    async def consolidate_with_report(
        self, scope: MemoryScope, dry_run: bool = False, merge_similar: bool = False
    ) -> ConsolidationResult:
        """Run one consolidation sweep for a user and return the full report."""
        return await self._tiers.sweep(
            self._storage,
            scope.tenant_id,
            scope.user_id,
            dry_run=dry_run,
            merge_similar=merge_similar,
        )

    # ===== Single-memory operations =====

    async def get(self, memory_id: str) -> Memory | None:
        return await self._call("get", lambda: self._storage.get(memory_id))

    async def update(self, memory_id: str, changes: dict[str, Any]) -> Memory:
        """Update fields of a memory.

        Changing the content re-embeds and re-scores the memory.

        Raises:
            MemoryNotFoundError: If the memory does not exist
            ValidationError: If a new value is invalid or a field can't be changed
        """
        changes = dict(changes)
        if "content" in changes:
            content = normalize_whitespace(changes["content"] or "")
            if not content:
                raise ValidationError("content must not be empty")
            current = await self.get(memory_id)
            if current is None:
                raise MemoryNotFoundError(memory_id)
            embedding, model = await self._embed(content)
            scored = self._scorer.score_content(content, current.type, current.source)
            changes.update(
                content=content,
                embedding=embedding,
                embedding_model=model,
                importance_score=scored.score,
                importance_breakdown=scored.breakdown,
            )
        self._validate_changes(changes)
        return await self._call("update", lambda: self._storage.update(memory_id, changes), retry=False)

    def _validate_changes(self, changes: dict[str, Any]) -> None:
        """Check and coerce caller-supplied field values in place."""
        if "importance_score" in changes:
            score = changes["importance_score"]
            if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0.0 <= score <= 1.0:
                raise ValidationError(f"importance_score must be between 0.0 and 1.0, got {score!r}")
            changes["importance_score"] = float(score)

        for field, enum_type in (("tier", MemoryTier), ("type", MemoryType), ("source", MemorySource)):
            if field in changes:
                try:
                    changes[field] = enum_type(changes[field])
                except ValueError as e:
                    raise ValidationError(f"Invalid {field}: {changes[field]!r}") from e

        if "embedding" in changes:
            embedding = changes["embedding"]
            if embedding is None or len(embedding) != self._embeddings.dimension:
                size = "none" if embedding is None else len(embedding)
                raise ValidationError(
                    f"embedding must have {self._embeddings.dimension} dimensions, got {size}"
                )
            changes["embedding"] = [float(v) for v in embedding]

    async def record_feedback(self, memory_id: str, feedback: float) -> Memory:
        """Blend user feedback (-1 to 1) and observed usage into a memory's importance."""
        if not -1.0 <= feedback <= 1.0:
            raise ValidationError("feedback must be between -1.0 and 1.0")
        memory = await self.get(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)

        age_days = max(1.0, days_between(memory.created_at, utcnow()))
        usage = UsageFactors(
            retrieval_count=memory.access_count,
            usage_rate=min(1.0, memory.access_count / age_days),
            feedback=feedback,
        )
        rescored = self._scorer.recalculate_with_usage(memory.importance_score, usage)
        breakdown = ImportanceBreakdown(
            content=memory.importance_breakdown.content,
            source=memory.importance_breakdown.source,
            context=memory.importance_breakdown.context,
            usage=rescored.breakdown.usage,
        )
        return await self._call(
            "update",
            lambda: self._storage.update(
                memory_id,
                {"importance_score": rescored.score, "importance_breakdown": breakdown},
                expected_version=memory.version,
            ),
            retry=False,
        )

    async def forget(self, criteria: ForgetCriteria) -> ForgetResult:
        """Delete the memories matching the criteria.

        With ``skip_high_importance`` set, memories at or above
        ``importance_threshold`` are kept and reported as skipped.
        """
        start = time.perf_counter()
        find = MemoryFindCriteria(
            tenant_id=criteria.tenant_id,
            user_id=criteria.user_id,
            chatbot_id=criteria.chatbot_id,
            types=criteria.types,
            tags=criteria.tags,
            max_decay_score=criteria.decay_threshold,
            older_than_days=criteria.older_than_days,
            memory_ids=criteria.memory_ids,
        )
        matches = await self._call("find_by_criteria", lambda: self._storage.find_by_criteria(find))

        if criteria.contains_keywords:
            keywords = [k.lower() for k in criteria.contains_keywords]
            matches = [m for m in matches if any(k in m.content.lower() for k in keywords)]

        result = ForgetResult(evaluated=len(matches), hard_delete=criteria.hard_delete)
        for memory in matches:
            if criteria.skip_high_importance and memory.importance_score >= criteria.importance_threshold:
                result.skipped.append(memory.id)
            else:
                result.forgotten.append(memory.id)

        if result.forgotten:
            await self._call(
                "delete_batch",
                lambda: self._storage.delete_batch(result.forgotten, hard=criteria.hard_delete),
            )

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Forgot {len(result.forgotten)} memories in tenant {criteria.tenant_id} "
            f"({len(result.skipped)} skipped, hard={criteria.hard_delete})"
        )
        return result

    # ===== Maintenance =====

    async def cleanup_expired(self) -> int:
        return await self._call("cleanup_expired", self._storage.cleanup_expired)

    async def health_check(self) -> dict[str, bool]:
        """Report the health of storage and embeddings. Never raises."""
        status: dict[str, bool] = {}
        for name, check in (("storage", self._storage.health_check), ("embeddings", self._embeddings.health_check)):
            try:
                status[name] = bool(await with_timeout(check(), self._config.service.operation_timeout_seconds, name))
            except Exception as e:
                logger.warning(f"Health check for {name} failed: {e}")
                status[name] = False
        return status

    async def initialize(self) -> None:
        """Initialize backends that need it (e.g. open the SQLite database)."""
        initialize = getattr(self._storage, "initialize", None)
        if initialize is not None:
            await initialize()
        logger.info("MemoryService initialized")

    async def close(self) -> None:
        """Close the embedding provider and the storage backend."""
        await self._embeddings.close()
        await self._storage.close()
        logger.info("MemoryService closed")

    async def __aenter__(self) -> "MemoryService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
