"""Error taxonomy for the memory engine.

Three families of failures are distinguished:

1. **Validation errors** - bad input (empty content, wrong embedding
   dimension, non-positive limits). Raised synchronously, never retried.
2. **Retryable errors** - timeouts, dropped connections, version conflicts.
   Safe to retry with backoff via :func:`retry_async`.
3. **Fatal errors** - authorization or schema problems in a collaborator.
   Surfaced to the caller unchanged.

Extraction misses are not errors: an extractor that finds nothing returns
an empty list.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MemcoreError(Exception):
    """Base class for all memory engine errors."""


class ValidationError(MemcoreError, ValueError):
    """Input rejected before any side effect took place."""


class MemoryNotFoundError(MemcoreError):
    """Raised when a memory id does not exist in storage."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"Memory not found: {memory_id}")
        self.memory_id = memory_id


class PersonaNotFoundError(MemcoreError):
    """Raised when a persona id does not exist in the persona store."""

    def __init__(self, persona_id: str) -> None:
        super().__init__(f"Persona not found: {persona_id}")
        self.persona_id = persona_id


class MemoryRejectedError(MemcoreError):
    """Raised when a candidate is not worth storing (e.g. importance too low)."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Memory rejected: {reason}")
        self.reason = reason


class RetryableError(MemcoreError):
    """A transient failure. The same call may succeed later."""

    retryable = True


class FatalError(MemcoreError):
    """A permanent failure. Retrying will not help."""

    retryable = False


class StorageError(MemcoreError):
    """Failure reported by a storage backend."""


class EmbeddingError(MemcoreError):
    """Failure reported by an embedding provider."""


class RetryableStorageError(StorageError, RetryableError):
    """Storage timeout or connection problem."""


class FatalStorageError(StorageError, FatalError):
    """Storage authorization or schema problem."""


class RetryableEmbeddingError(EmbeddingError, RetryableError):
    """Embedding timeout, connection problem, or server overload."""


class FatalEmbeddingError(EmbeddingError, FatalError):
    """Embedding provider rejected the request or returned garbage."""


class ConcurrencyError(RetryableError):
    """Optimistic concurrency check failed: the record changed underneath us."""

    def __init__(self, key: str, expected: int, actual: int) -> None:
        super().__init__(f"Version conflict on {key}: expected {expected}, found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


def is_retryable(error: BaseException) -> bool:
    """Return True if the error is worth retrying."""
    return isinstance(error, RetryableError)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 0.5,
    operation: str = "operation",
) -> T:
    """Run an async callable, retrying on :class:`RetryableError`.

    Waits ``base_delay * 2**attempt`` seconds between attempts. Any
    non-retryable exception propagates immediately.

    Args:
        func: Zero-argument callable returning an awaitable
        max_retries: Retries after the first attempt
        base_delay: Initial backoff delay in seconds
        operation: Name used in log messages

    Returns:
        The callable's result.

    Raises:
        RetryableError: If every attempt failed with a retryable error
    """
    attempt = 0
    while True:
        try:
            return await func()
        except RetryableError as e:
            if attempt >= max_retries:
                logger.error(f"{operation} failed after {max_retries} retries: {e}")
                raise
            wait_time = base_delay * 2**attempt
            logger.warning(
                f"{operation} failed ({e}), retrying in {wait_time}s... "
                f"(attempt {attempt + 1}/{max_retries})"
            )
            await asyncio.sleep(wait_time)
            attempt += 1


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    operation: str,
    error_cls: type[RetryableError] = RetryableStorageError,
) -> T:
    """Await with a timeout, converting expiry into a retryable error."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise error_cls(f"{operation} timed out after {timeout}s") from e
