"""Tests for the embedding client."""

from unittest.mock import AsyncMock, MagicMock, patch

from clip_sense.clients.embeddings import EmbeddingClient
from clip_sense.governor import RateLimiterRegistry


class MockEmbeddingData:
    """Mock for openai embedding response data item."""

    def __init__(self, embedding: list[float]) -> None:
        self.embedding = embedding


class MockEmbeddingResponse:
    """Mock for openai embedding response."""

    def __init__(self, embeddings: list[list[float]]) -> None:
        self.data = [MockEmbeddingData(e) for e in embeddings]


def mocked_client(batch_size: int = 32) -> EmbeddingClient:
    with patch.object(EmbeddingClient, "__init__", lambda self, **kwargs: None):
        client = EmbeddingClient()
    client._batch_size = batch_size
    client._limiters = RateLimiterRegistry.from_settings()
    client._client = MagicMock()
    client._client.embeddings = MagicMock()
    return client


class TestEmbeddingClient:
    """Unit tests for EmbeddingClient with mocked OpenAI client."""

    async def test_embed_text_empty(self) -> None:
        client = EmbeddingClient()
        result = await client.embed_text([])
        assert result == []

    async def test_embed_text_single(self) -> None:
        client = mocked_client()
        client._client.embeddings.create = AsyncMock(
            return_value=MockEmbeddingResponse([[0.1] * 1536])
        )

        result = await client.embed_text(["why so serious"])

        assert len(result) == 1
        assert len(result[0]) == 1536
        client._client.embeddings.create.assert_called_once()

    async def test_embed_text_batching(self) -> None:
        """Large inputs are split into batches, each charged to the limiter."""
        client = mocked_client(batch_size=2)
        embedding = [0.1] * 8
        client._client.embeddings.create = AsyncMock(
            side_effect=[
                MockEmbeddingResponse([embedding] * 2),
                MockEmbeddingResponse([embedding] * 2),
                MockEmbeddingResponse([embedding] * 1),
            ]
        )

        result = await client.embed_text([f"line {i}" for i in range(5)])

        assert len(result) == 5
        assert client._client.embeddings.create.call_count == 3
        assert client._limiters.usage()["embedding"].current == 3

    async def test_embed_one(self) -> None:
        client = mocked_client()
        client._client.embeddings.create = AsyncMock(
            return_value=MockEmbeddingResponse([[0.5, 0.25]])
        )
        assert await client.embed_one("hello") == [0.5, 0.25]
        call_args = client._client.embeddings.create.call_args
        assert call_args.kwargs["input"] == ["hello"]
