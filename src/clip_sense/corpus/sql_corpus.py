"""SQL-backed dialogue and scene corpus.

Text searches use case-insensitive ``LIKE`` over ``dialogue_lines``. Semantic
searches embed the query and rank rows by pgvector cosine distance; a hit's
``score`` is ``1 - distance``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clip_sense.capabilities.schemas import CorpusMatch
from clip_sense.clients.embeddings import EmbeddingClient
from clip_sense.models import DialogueLine, DialogueSource, MediaRecord, SceneRecord
from clip_sense.recognition.cache_resolver import escape_like

logger = logging.getLogger(__name__)


def _match(record: MediaRecord, text: str, score: float = 1.0) -> CorpusMatch:
    return CorpusMatch(
        record_id=record.record_id,
        title=record.title,
        year=record.year,
        external_id=record.external_id,
        score=score,
        matched_text=text,
    )


class SqlDialogueCorpus:
    """Dialogue corpus over the local store.

    Semantic searches need an ``EmbeddingClient``; without one they return
    no matches.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedder: EmbeddingClient | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._embedder = embedder

    # ── Text search ──────────────────────────────────────────────────────────

    async def search_phrase(self, phrase: str, *, limit: int = 10) -> list[CorpusMatch]:
        return await self._search_text(phrase, limit)

    async def search_keyword(self, keyword: str, *, limit: int = 20) -> list[CorpusMatch]:
        return await self._search_text(keyword, limit)

    async def _search_text(self, needle: str, limit: int) -> list[CorpusMatch]:
        needle = needle.strip()
        if not needle:
            return []
        async with self._session_factory() as session:
            stmt = (
                select(DialogueLine, MediaRecord)
                .join(MediaRecord, DialogueLine.record_id == MediaRecord.record_id)
                .where(DialogueLine.text.ilike(f"%{escape_like(needle)}%", escape="\\"))
                .order_by(DialogueLine.record_id, DialogueLine.line_id)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_match(record, line.text) for line, record in result.all()]

    # ── Semantic search ──────────────────────────────────────────────────────

    async def search_dialogue(self, text: str, *, limit: int = 5) -> list[CorpusMatch]:
        if self._embedder is None or not text.strip():
            return []
        embedding = await self._embedder.embed_one(text)
        distance = DialogueLine.embedding.cosine_distance(embedding).label("distance")
        async with self._session_factory() as session:
            stmt = (
                select(DialogueLine, MediaRecord, distance)
                .join(MediaRecord, DialogueLine.record_id == MediaRecord.record_id)
                .where(DialogueLine.embedding.isnot(None))
                .order_by("distance")
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_match(record, line.text, 1.0 - dist) for line, record, dist in result.all()]

    async def search_scenes(self, description: str, *, limit: int = 5) -> list[CorpusMatch]:
        if self._embedder is None or not description.strip():
            return []
        embedding = await self._embedder.embed_one(description)
        distance = SceneRecord.embedding.cosine_distance(embedding).label("distance")
        async with self._session_factory() as session:
            stmt = (
                select(SceneRecord, MediaRecord, distance)
                .join(MediaRecord, SceneRecord.record_id == MediaRecord.record_id)
                .where(SceneRecord.embedding.isnot(None))
                .order_by("distance")
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [
                _match(record, scene.description, 1.0 - dist)
                for scene, record, dist in result.all()
            ]

    # ── Ingestion ────────────────────────────────────────────────────────────

    async def add_dialogue(
        self,
        record_id: int,
        lines: Sequence[str],
        *,
        source: DialogueSource = DialogueSource.MANUAL,
    ) -> int:
        """Store dialogue lines for a title, embedding them when possible.

        Returns:
            Number of lines stored.
        """
        texts = [line.strip() for line in lines if line.strip()]
        if not texts:
            return 0
        embeddings: list[list[float] | None] = [None] * len(texts)
        if self._embedder is not None:
            embeddings = list(await self._embedder.embed_text(texts))

        async with self._session_factory() as session:
            session.add_all(
                DialogueLine(record_id=record_id, text=text, source=source, embedding=embedding)
                for text, embedding in zip(texts, embeddings, strict=True)
            )
            await session.commit()
        logger.info("Stored %d dialogue lines for record %d", len(texts), record_id)
        return len(texts)

    async def add_scene(self, record_id: int, description: str) -> None:
        embedding = None
        if self._embedder is not None:
            embedding = await self._embedder.embed_one(description)
        async with self._session_factory() as session:
            session.add(
                SceneRecord(record_id=record_id, description=description, embedding=embedding)
            )
            await session.commit()
