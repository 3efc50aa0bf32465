"""Embedding provider backed by a local Ollama server.

Posts to ``{host}/api/embeddings`` with httpx. Failures are classified so
the memory service can decide whether to retry:

- timeouts, connection errors, HTTP 429 and 5xx -> RetryableEmbeddingError
- any other HTTP error or a vector of the wrong size -> FatalEmbeddingError
"""

from __future__ import annotations

import logging
import time
from typing import Sequence

import httpx

from memcore.embeddings.base import BatchEmbeddingResult, EmbeddingResult, cosine_similarity
from memcore.errors import FatalEmbeddingError, RetryableEmbeddingError
from memcore.text import estimate_token_count

logger = logging.getLogger(__name__)


class OllamaEmbeddingProvider:
    """Embeddings from an Ollama model such as nomic-embed-text.

    Example:
        >>> async with OllamaEmbeddingProvider(dimension=768) as provider:
        ...     result = await provider.embed("Hello")
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimension: int = 768,
        timeout: float = 30.0,
        max_batch_size: int = 32,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            host: Ollama API endpoint
            model: Embedding model name (must support embeddings in Ollama)
            dimension: Expected vector length; other lengths are rejected
            timeout: Request timeout in seconds
            max_batch_size: Texts embedded per batch chunk
            client: Optional preconfigured httpx client (for testing)
        """
        self._host = host.rstrip("/")
        self._model = model
        self._dimension = dimension
        self._timeout = timeout
        self._max_batch_size = max_batch_size
        self._client = client
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def embed(self, text: str) -> EmbeddingResult:
        """Generate an embedding for one text.

        Raises:
            RetryableEmbeddingError: Timeout, connection failure, 429 or 5xx
            FatalEmbeddingError: Other HTTP errors or unexpected response shape
        """
        start = time.perf_counter()
        client = self._get_client()

        try:
            response = await client.post(
                f"{self._host}/api/embeddings",
                json={
                    "model": self._model,
                    "prompt": text,
                },
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RetryableEmbeddingError(f"Embedding request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429 or status >= 500:
                raise RetryableEmbeddingError(f"Embedding server error {status}: {e}") from e
            raise FatalEmbeddingError(f"Embedding request rejected ({status}): {e}") from e
        except httpx.HTTPError as e:
            raise RetryableEmbeddingError(f"Failed to generate embedding: {e}") from e

        data = response.json()
        if "embedding" not in data:
            raise FatalEmbeddingError(f"Unexpected Ollama response: {data}")

        embedding = [float(x) for x in data["embedding"]]
        if len(embedding) != self._dimension:
            raise FatalEmbeddingError(
                f"Model {self._model} returned {len(embedding)} dimensions, expected {self._dimension}"
            )

        return EmbeddingResult(
            embedding=embedding,
            model=self._model,
            token_count=estimate_token_count(text),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    async def embed_batch(self, texts: list[str]) -> BatchEmbeddingResult:
        """Embed texts in chunks of max_batch_size.

        The embeddings endpoint takes one prompt per call, so chunks only
        bound how much work is queued before results are collected.
        """
        start = time.perf_counter()
        results: list[EmbeddingResult] = []
        for i in range(0, len(texts), self._max_batch_size):
            for text in texts[i:i + self._max_batch_size]:
                results.append(await self.embed(text))

        return BatchEmbeddingResult(
            embeddings=results,
            total_tokens=sum(r.token_count for r in results),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    async def health_check(self) -> bool:
        """Return True if the Ollama server answers."""
        try:
            response = await self._get_client().get(f"{self._host}/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OllamaEmbeddingProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
