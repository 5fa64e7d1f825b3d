"""Adapters for external services: OpenAI, embeddings and TMDB."""

from clip_sense.clients.embeddings import EmbeddingClient
from clip_sense.clients.tmdb import TMDBClient, format_external_id, parse_external_id
from clip_sense.clients.vision import OpenAITranscriber, VisionClient

__all__ = [
    "EmbeddingClient",
    "OpenAITranscriber",
    "TMDBClient",
    "VisionClient",
    "format_external_id",
    "parse_external_id",
]
