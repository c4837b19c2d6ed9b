"""Embedding gateway: batching, concurrency cap and retry around a provider."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from latent_mcp.errors import PersistentProviderError, TransientProviderError
from latent_mcp.providers.base import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_MAX_ATTEMPTS = 3

# Backoff: base * 2**attempt, capped, plus up to `base` seconds of jitter
BACKOFF_BASE_DELAY = 0.5  # seconds
BACKOFF_MAX_DELAY = 8.0  # seconds


@dataclass
class EmbeddingBatch:
    """Vectors for a list of texts, in input order."""

    vectors: list[list[float]]
    model: str


class EmbeddingGateway:
    """
    Wraps an EmbeddingProvider.

    - Splits input into provider batches of ``batch_size`` texts
    - At most ``max_concurrency`` provider calls are in flight; extra callers
      wait for a slot instead of being rejected
    - TransientProviderError is retried with exponential backoff and jitter,
      PersistentProviderError is raised at once
    - All or nothing: if any batch fails, embed_batch raises and no vectors
      are returned
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = BACKOFF_BASE_DELAY,
        max_delay: float = BACKOFF_MAX_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size <= 0:
            raise ValueError(f"Batch size must be positive, got {batch_size}")
        if max_concurrency <= 0:
            raise ValueError(f"Max concurrency must be positive, got {max_concurrency}")
        if max_attempts <= 0:
            raise ValueError(f"Max attempts must be positive, got {max_attempts}")

        self.provider = provider
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @property
    def model(self) -> str:
        return self.provider.embedding_model

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        """Embed every text, one vector per input, order preserved."""
        if not texts:
            return EmbeddingBatch(vectors=[], model=self.model)

        batches = [
            texts[start : start + self.batch_size]
            for start in range(0, len(texts), self.batch_size)
        ]
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(self._embed_with_retry(batch)) for batch in batches]
        except ExceptionGroup as eg:
            # The first failing batch cancels its siblings
            raise eg.exceptions[0] from None

        vectors = [vector for task in tasks for vector in task.result()]
        return EmbeddingBatch(vectors=vectors, model=self.model)

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search query."""
        batch = await self.embed_batch([text])
        return batch.vectors[0]

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))
        return delay + random.uniform(0, self._base_delay)

    async def _embed_with_retry(self, batch: list[str]) -> list[list[float]]:
        """Embed one provider batch, retrying transient failures."""
        attempt = 1
        while True:
            try:
                async with self._semaphore:
                    vectors = await self.provider.embed(batch)
            except TransientProviderError as e:
                if attempt >= self.max_attempts:
                    raise TransientProviderError(
                        f"Giving up after {attempt} attempts: {e.message}",
                        provider=e.provider,
                        status_code=e.status_code,
                        details={"attempts": attempt},
                    ) from e
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "Embedding attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if len(vectors) != len(batch):
                raise PersistentProviderError(
                    f"Provider returned {len(vectors)} vectors for {len(batch)} texts",
                    provider=self.provider.name,
                )
            return vectors
