"""Storage backends for memories."""

from __future__ import annotations

from memcore.storage.base import (
    MemoryFindCriteria,
    MemoryStorage,
    VectorSearchOptions,
    VectorSearchResult,
)
from memcore.storage.memory import InMemoryStorage
from memcore.storage.sqlite import SQLiteMemoryStorage

__all__ = [
    "InMemoryStorage",
    "MemoryFindCriteria",
    "MemoryStorage",
    "SQLiteMemoryStorage",
    "VectorSearchOptions",
    "VectorSearchResult",
]
