"""Shared pytest fixtures for ClipSense tests."""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clip_sense.capabilities.schemas import ExternalTitle
from clip_sense.db import init_db
from clip_sense.models import MediaRecord, MediaType
from clip_sense.recognition import CacheResolver

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine


MakeRecord = Callable[..., Awaitable[MediaRecord]]


@pytest.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """On-disk SQLite database, one per test.

    A file (not ``:memory:``) so that concurrent sessions see each other's
    commits and unique-constraint races behave like they do on PostgreSQL.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'clip_sense.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def resolver(session_factory: async_sessionmaker[AsyncSession]) -> CacheResolver:
    return CacheResolver(session_factory)


@pytest.fixture
def make_record(session_factory: async_sessionmaker[AsyncSession]) -> MakeRecord:
    """Factory fixture storing a MediaRecord and returning it."""
    ids = itertools.count(1000)

    async def _make(
        title: str,
        year: int | None = None,
        *,
        external_id: str | None = None,
        media_type: MediaType = MediaType.MOVIE,
        **kwargs: Any,
    ) -> MediaRecord:
        record = MediaRecord(
            external_id=external_id or f"tmdb:{media_type.value}:{next(ids)}",
            title=title,
            year=year,
            media_type=media_type,
            artifacts=kwargs.pop("artifacts", {}),
            **kwargs,
        )
        async with session_factory() as session:
            session.add(record)
            await session.commit()
        return record

    return _make


@pytest.fixture
def make_external() -> Callable[..., ExternalTitle]:
    """Factory fixture for provider titles."""

    def _make(
        title: str,
        year: int | None = None,
        external_id: str = "tmdb:movie:1",
        **kwargs: Any,
    ) -> ExternalTitle:
        return ExternalTitle(external_id=external_id, title=title, year=year, **kwargs)

    return _make
