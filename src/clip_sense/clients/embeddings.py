"""Async client wrapper for the OpenAI-compatible embeddings endpoint."""

import logging
import time
from collections.abc import Sequence

from openai import AsyncOpenAI

from clip_sense.config import settings
from clip_sense.governor import CapabilityKind, RateLimiterRegistry

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Async client for text embeddings used by the dialogue and scene corpus.

    Every batch request acquires the ``embedding`` rate limiter first.
    """

    # Maximum items per batch request
    DEFAULT_BATCH_SIZE = 32

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        *,
        rate_limiters: RateLimiterRegistry | None = None,
    ) -> None:
        self._client = AsyncOpenAI(
            base_url=base_url or settings.llm_base_url,
            api_key=api_key or settings.llm_api_key,
        )
        self._batch_size = batch_size
        self._limiters = rate_limiters or RateLimiterRegistry.from_settings()

    async def embed_text(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate text embeddings.

        Args:
            texts: List of text strings to embed.

        Returns:
            One vector per input, in input order.
        """
        if not texts:
            return []

        start_time = time.time()
        embeddings: list[list[float]] = []

        for batch in self._batches(list(texts)):
            await self._limiters.acquire(CapabilityKind.EMBEDDING)
            response = await self._client.embeddings.create(
                model=settings.model_text_embedding,
                input=batch,
            )
            # Results are returned in order of input
            embeddings.extend([item.embedding for item in response.data])

        if settings.log_api_calls:
            elapsed = (time.time() - start_time) * 1000  # ms
            logger.info(
                "[EMBED] %s (%d items) → %d-dim (%.0fms)",
                settings.model_text_embedding, len(texts), settings.dim_text_embedding, elapsed
            )

        return embeddings

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single string."""
        embeddings = await self.embed_text([text])
        return embeddings[0]

    def _batches(self, items: list[str]) -> list[list[str]]:
        """Split items into batches."""
        return [items[i : i + self._batch_size] for i in range(0, len(items), self._batch_size)]
