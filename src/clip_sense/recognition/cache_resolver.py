"""Cache Resolver: local-first lookup and race-safe creation of MediaRecords.

Resolution order for ``resolve(title, year)``:
1. Exact title (case-insensitive). Prefer the row whose year matches.
2. Substring title match (at most 5 rows). Prefer the row whose year matches.
3. Normalized title against the same year, so that subtitled or numbered
   variants ("Ghostbusters: Answer the Call", "Rocky II") find their base
   entry.

Lookups are read-only and ordered by ``record_id``, so repeated calls against
an unchanged store return the same record.

Creation is keyed by the provider's external identifier. Concurrent creators
race on the unique constraint; losers roll back and read back the winner.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import flag_modified

from clip_sense.capabilities.schemas import ExternalTitle
from clip_sense.config import settings
from clip_sense.errors import StoreWriteConflict
from clip_sense.models import ArtifactKind, MediaRecord
from clip_sense.recognition.evidence import CandidateKey

logger = logging.getLogger(__name__)

# Rows considered by the substring pass
PARTIAL_MATCH_LIMIT = 5

# Rows considered by the normalized-title pass
NORMALIZED_MATCH_LIMIT = 20

_SUBTITLE_SUFFIX = re.compile(
    r":\s*(answer the call|afterlife|frozen empire|the sequel|part \d+|vol\.\s*\d+)",
    re.IGNORECASE,
)
_SEQUEL_NUMERAL = re.compile(r"\s*(ii|iii|iv|v|2|3|4|5)$", re.IGNORECASE)
_BASE_TITLE_SPLIT = re.compile(r"[:\-–]")


def normalize_title(title: str) -> str:
    """Lowercase a title and strip known subtitle suffixes and trailing sequel numerals.

    >>> normalize_title("Ghostbusters: Answer the Call")
    'ghostbusters'
    >>> normalize_title("Rocky II")
    'rocky'
    """
    text = _SUBTITLE_SUFFIX.sub("", title.lower())
    text = _SEQUEL_NUMERAL.sub("", text)
    return text.strip()


def base_title(title: str) -> str:
    """The part of a title before its first colon or dash, lowercased."""
    return _BASE_TITLE_SPLIT.split(title, maxsplit=1)[0].strip().lower()


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _prefer_year(rows: Sequence[MediaRecord], year: int | None) -> MediaRecord | None:
    if not rows:
        return None
    if year is not None:
        for row in rows:
            if row.year == year:
                return row
    return rows[0]


class CacheResolver:
    """Canonical title store accessor used by the recognition cascade.

    Each operation opens its own short session from the factory, so a
    resolver can be shared by concurrent requests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        artifact_ttls: dict[ArtifactKind, timedelta] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ttls = artifact_ttls or {
            ArtifactKind.CAST: timedelta(days=settings.artifact_ttl_cast_days),
            ArtifactKind.SIMILAR: timedelta(days=settings.artifact_ttl_similar_days),
            ArtifactKind.AVAILABILITY: timedelta(days=settings.artifact_ttl_availability_days),
        }

    # ── Lookup ───────────────────────────────────────────────────────────────

    async def resolve(self, title: str, year: int | None = None) -> MediaRecord | None:
        """Find a stored record for a title without any external call.

        Args:
            title: Title as recognized (any casing, possibly with a subtitle).
            year: Release year, used to choose between same-titled records.

        Returns:
            The best stored match, or None.
        """
        title = title.strip()
        if not title:
            return None

        async with self._session_factory() as session:
            exact = await self._exact_matches(session, title)
            if record := _prefer_year(exact, year):
                logger.debug("Resolved %r exactly -> %s", title, record.record_id)
                return record

            partial = await self._partial_matches(session, title)
            if record := _prefer_year(partial, year):
                logger.debug("Resolved %r by substring -> %s", title, record.record_id)
                return record

            if year is not None:
                record = await self._normalized_match(session, title, year)
                if record is not None:
                    logger.debug("Resolved %r by normalized title -> %s", title, record.record_id)
                    return record

        return None

    async def resolve_key(self, key: CandidateKey) -> MediaRecord | None:
        """Resolve a candidate, by external id first when it has one."""
        if key.external_id:
            record = await self.get_by_external_id(key.external_id)
            if record is not None:
                return record
        return await self.resolve(key.title, key.year)

    async def get(self, record_id: int) -> MediaRecord | None:
        async with self._session_factory() as session:
            return await session.get(MediaRecord, record_id)

    async def get_many(self, record_ids: Sequence[int]) -> list[MediaRecord]:
        """Records for the given ids, in the given order; missing ids are skipped."""
        if not record_ids:
            return []
        async with self._session_factory() as session:
            stmt = select(MediaRecord).where(MediaRecord.record_id.in_(record_ids))
            by_id = {r.record_id: r for r in (await session.execute(stmt)).scalars().all()}
        return [by_id[i] for i in record_ids if i in by_id]

    async def get_by_external_id(self, external_id: str) -> MediaRecord | None:
        async with self._session_factory() as session:
            return await self._find_external(session, external_id)

    # ── Creation ─────────────────────────────────────────────────────────────

    async def create_if_absent(self, external: ExternalTitle) -> MediaRecord:
        """Insert a record for an external title unless one already exists.

        Safe under concurrent callers: exactly one row is stored per external id
        and every caller gets that row back.

        Raises:
            StoreWriteConflict: The insert collided but no winner could be read back.
        """
        async with self._session_factory() as session:
            existing = await self._find_external(session, external.external_id)
            if existing is not None:
                return existing

            record = MediaRecord(
                external_id=external.external_id,
                title=external.title,
                year=external.year,
                media_type=external.media_type,
                imdb_id=external.imdb_id,
                overview=external.overview,
                poster_url=external.poster_url,
                backdrop_url=external.backdrop_url,
                popularity=external.popularity,
                artifacts={},
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                # Another request inserted the same external id first
                await session.rollback()
                winner = await self._find_external(session, external.external_id)
                if winner is None:
                    raise StoreWriteConflict(external.external_id) from None
                logger.info(
                    "Concurrent insert for %s, using record %s",
                    external.external_id,
                    winner.record_id,
                )
                return winner

            logger.info("Created record %s for %s", record.record_id, external.external_id)
            return record

    # ── Derived artifacts ────────────────────────────────────────────────────

    def fresh_artifact(
        self,
        record: MediaRecord,
        kind: ArtifactKind,
        *,
        now: datetime | None = None,
    ) -> Any | None:
        """Return a cached artifact value if it exists and has not expired."""
        entry = (record.artifacts or {}).get(kind.value)
        if not isinstance(entry, dict) or "fetched_at" not in entry:
            return None
        try:
            fetched_at = datetime.fromisoformat(entry["fetched_at"])
        except (TypeError, ValueError):
            return None
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=UTC)
        now = now or datetime.now(UTC)
        if now - fetched_at > self._ttls[kind]:
            return None
        return entry.get("value")

    async def store_artifact(
        self,
        record_id: int,
        kind: ArtifactKind,
        value: Any,
        *,
        now: datetime | None = None,
    ) -> MediaRecord | None:
        """Cache derived data on a record. Returns the updated record, or None if missing."""
        fetched_at = (now or datetime.now(UTC)).isoformat()
        async with self._session_factory() as session:
            record = await session.get(MediaRecord, record_id)
            if record is None:
                return None
            artifacts = dict(record.artifacts or {})
            artifacts[kind.value] = {"value": value, "fetched_at": fetched_at}
            record.artifacts = artifacts
            flag_modified(record, "artifacts")
            await session.commit()
            return record

    # ── Queries ──────────────────────────────────────────────────────────────

    async def _find_external(self, session: AsyncSession, external_id: str) -> MediaRecord | None:
        stmt = select(MediaRecord).where(MediaRecord.external_id == external_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _exact_matches(self, session: AsyncSession, title: str) -> Sequence[MediaRecord]:
        stmt = (
            select(MediaRecord)
            .where(func.lower(MediaRecord.title) == title.lower())
            .order_by(MediaRecord.record_id)
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    async def _partial_matches(self, session: AsyncSession, title: str) -> Sequence[MediaRecord]:
        pattern = f"%{escape_like(title)}%"
        stmt = (
            select(MediaRecord)
            .where(MediaRecord.title.ilike(pattern, escape="\\"))
            .order_by(MediaRecord.record_id)
            .limit(PARTIAL_MATCH_LIMIT)
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    async def _normalized_match(
        self, session: AsyncSession, title: str, year: int
    ) -> MediaRecord | None:
        wanted = normalize_title(title)
        base = base_title(title)
        if not base:
            return None
        stmt = (
            select(MediaRecord)
            .where(MediaRecord.year == year)
            .where(MediaRecord.title.ilike(f"%{escape_like(base)}%", escape="\\"))
            .order_by(MediaRecord.record_id)
            .limit(NORMALIZED_MATCH_LIMIT)
        )
        result = await session.execute(stmt)
        for row in result.scalars():
            if normalize_title(row.title) == wanted or row.title.lower() == base:
                return row
        return None
