"""memcore - the memory engine of a multi-tenant conversational AI platform.

Learns what matters about each user from their conversations and hands it
back when relevant:

1. **Extraction:** Facts, preferences, entities and persona insights from each turn
2. **Importance:** A bounded score for how much a memory deserves to be kept
3. **Tiers:** Working, short-term, long-term and episodic tiers with decay
4. **Retrieval:** Similarity ranked with recency and importance boosts, diversified
5. **Personas:** A per-user profile of style, profession and preferences

Example:
    >>> from memcore import MemcoreConfig, MemoryScope, build_memory_service
    >>>
    >>> config = MemcoreConfig.load()
    >>> async with build_memory_service(config) as service:
    ...     scope = MemoryScope(user_id="u1", tenant_id="acme")
    ...     await service.extract_from_conversation("I work as a backend engineer at Visma", "", scope)
    ...     result = await service.retrieve("where does the user work?", scope)
    ...     print(result.context_block)
"""

from __future__ import annotations

from memcore.config import MemcoreConfig
from memcore.errors import (
    ConcurrencyError,
    FatalError,
    MemcoreError,
    MemoryNotFoundError,
    MemoryRejectedError,
    PersonaNotFoundError,
    RetryableError,
    ValidationError,
)
from memcore.factory import build_memory_service
from memcore.models import (
    ForgetCriteria,
    ForgetResult,
    Memory,
    MemoryCandidate,
    MemoryScope,
    MemorySource,
    MemoryTier,
    MemoryType,
    RetrievalOptions,
    RetrievalResult,
)
from memcore.service import MemoryService

__all__ = [
    "ConcurrencyError",
    "FatalError",
    "ForgetCriteria",
    "ForgetResult",
    "MemcoreConfig",
    "MemcoreError",
    "Memory",
    "MemoryCandidate",
    "MemoryNotFoundError",
    "MemoryRejectedError",
    "MemoryScope",
    "MemoryService",
    "MemorySource",
    "MemoryTier",
    "MemoryType",
    "PersonaNotFoundError",
    "RetrievalOptions",
    "RetrievalResult",
    "RetryableError",
    "ValidationError",
    "build_memory_service",
]
