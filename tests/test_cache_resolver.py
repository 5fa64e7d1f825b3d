"""Tests for local-first title resolution and race-safe record creation."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clip_sense.capabilities.schemas import ExternalTitle
from clip_sense.errors import StoreWriteConflict
from clip_sense.models import ArtifactKind, MediaRecord
from clip_sense.recognition import CacheResolver, CandidateKey, normalize_title
from clip_sense.recognition.cache_resolver import base_title, escape_like
from conftest import MakeRecord

MakeExternal = Callable[..., ExternalTitle]


async def count_records(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(MediaRecord))
        return result.scalar_one()


class TestTitleHelpers:
    @pytest.mark.parametrize(
        ("title", "expected"),
        [
            ("Ghostbusters: Answer the Call", "ghostbusters"),
            ("Ghostbusters: Frozen Empire", "ghostbusters"),
            ("Rocky II", "rocky"),
            ("Toy Story 3", "toy story"),
            ("Kill Bill: Vol. 2", "kill bill"),
            ("Heat", "heat"),
        ],
    )
    def test_normalize_title(self, title: str, expected: str) -> None:
        assert normalize_title(title) == expected

    def test_base_title(self) -> None:
        assert base_title("Mission: Impossible - Fallout") == "mission"
        assert base_title("Alien") == "alien"

    def test_escape_like(self) -> None:
        assert escape_like("100%_sure\\") == "100\\%\\_sure\\\\"


class TestResolve:
    async def test_exact_match_case_insensitive(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        stored = await make_record("The Matrix", 1999)
        found = await resolver.resolve("the matrix")
        assert found is not None
        assert found.record_id == stored.record_id

    async def test_exact_match_prefers_year(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        await make_record("Dune", 1984)
        newer = await make_record("Dune", 2021)
        found = await resolver.resolve("Dune", 2021)
        assert found is not None
        assert found.record_id == newer.record_id

    async def test_exact_match_without_year_takes_lowest_id(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        older = await make_record("Dune", 1984)
        await make_record("Dune", 2021)
        found = await resolver.resolve("Dune")
        assert found is not None
        assert found.record_id == older.record_id

    async def test_partial_match(self, resolver: CacheResolver, make_record: MakeRecord) -> None:
        stored = await make_record("The Dark Knight Rises", 2012)
        found = await resolver.resolve("Dark Knight Rises")
        assert found is not None
        assert found.record_id == stored.record_id

    async def test_normalized_match_finds_base_entry(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        stored = await make_record("Ghostbusters", 2016)
        found = await resolver.resolve("Ghostbusters: Answer the Call", 2016)
        assert found is not None
        assert found.record_id == stored.record_id

    async def test_normalized_match_requires_year(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        await make_record("Ghostbusters", 2016)
        assert await resolver.resolve("Ghostbusters: Answer the Call") is None

    async def test_no_match(self, resolver: CacheResolver, make_record: MakeRecord) -> None:
        await make_record("Heat", 1995)
        assert await resolver.resolve("Casablanca", 1942) is None
        assert await resolver.resolve("   ") is None

    async def test_like_wildcards_are_literal(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        await make_record("Heat", 1995)
        assert await resolver.resolve("%") is None

    async def test_resolve_is_repeatable(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        await make_record("Alien", 1979)
        await make_record("Aliens", 1986)
        first = await resolver.resolve("alie")
        second = await resolver.resolve("alie")
        assert first is not None and second is not None
        assert first.record_id == second.record_id

    async def test_resolve_key_prefers_external_id(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        await make_record("Heat", 1995, external_id="tmdb:movie:1")
        target = await make_record("Heat", 1986, external_id="tmdb:movie:2")
        found = await resolver.resolve_key(CandidateKey("Heat", 1995, "tmdb:movie:2"))
        assert found is not None
        assert found.record_id == target.record_id

    async def test_resolve_key_falls_back_to_title(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        stored = await make_record("Heat", 1995)
        found = await resolver.resolve_key(CandidateKey("Heat", 1995, "tmdb:movie:404"))
        assert found is not None
        assert found.record_id == stored.record_id

    async def test_get_many_keeps_order_and_skips_missing(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        heat = await make_record("Heat", 1995)
        ronin = await make_record("Ronin", 1998)
        found = await resolver.get_many([ronin.record_id, 99999, heat.record_id])
        assert [r.title for r in found] == ["Ronin", "Heat"]
        assert await resolver.get_many([]) == []


class TestCreateIfAbsent:
    async def test_creates_record(
        self,
        resolver: CacheResolver,
        make_external: MakeExternal,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        record = await resolver.create_if_absent(
            make_external("The Matrix", 1999, "tmdb:movie:603", overview="Neo wakes up")
        )
        assert record.record_id is not None
        assert record.title == "The Matrix"
        assert record.overview == "Neo wakes up"
        assert record.artifacts == {}
        assert await count_records(session_factory) == 1

    async def test_is_idempotent(
        self,
        resolver: CacheResolver,
        make_external: MakeExternal,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        external = make_external("The Matrix", 1999, "tmdb:movie:603")
        first = await resolver.create_if_absent(external)
        second = await resolver.create_if_absent(external)
        assert first.record_id == second.record_id
        assert await count_records(session_factory) == 1

    async def test_concurrent_creators_share_one_row(
        self,
        resolver: CacheResolver,
        make_external: MakeExternal,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        external = make_external("Heat", 1995, "tmdb:movie:949")
        records = await asyncio.gather(*(resolver.create_if_absent(external) for _ in range(5)))
        assert len({r.record_id for r in records}) == 1
        assert await count_records(session_factory) == 1

    async def test_lost_race_reads_back_winner(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_record: MakeRecord,
        make_external: MakeExternal,
    ) -> None:
        winner = await make_record("Heat", 1995, external_id="tmdb:movie:949")

        class BlindResolver(CacheResolver):
            """Misses the existing row on the first lookup, as a racing request would."""

            lookups = 0

            async def _find_external(
                self, session: AsyncSession, external_id: str
            ) -> MediaRecord | None:
                self.lookups += 1
                if self.lookups == 1:
                    return None
                return await super()._find_external(session, external_id)

        resolver = BlindResolver(session_factory)
        record = await resolver.create_if_absent(
            make_external("Heat", 1995, "tmdb:movie:949")
        )
        assert record.record_id == winner.record_id
        assert await count_records(session_factory) == 1

    async def test_conflict_without_winner_raises(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_record: MakeRecord,
        make_external: MakeExternal,
    ) -> None:
        await make_record("Heat", 1995, external_id="tmdb:movie:949")

        class AlwaysBlind(CacheResolver):
            async def _find_external(
                self, session: AsyncSession, external_id: str
            ) -> MediaRecord | None:
                return None

        with pytest.raises(StoreWriteConflict):
            await AlwaysBlind(session_factory).create_if_absent(
                make_external("Heat", 1995, "tmdb:movie:949")
            )


class TestArtifacts:
    async def test_store_and_read_fresh(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        record = await make_record("Heat", 1995)
        cast = [{"name": "Al Pacino"}, {"name": "Robert De Niro"}]
        updated = await resolver.store_artifact(record.record_id, ArtifactKind.CAST, cast)

        assert updated is not None
        assert resolver.fresh_artifact(updated, ArtifactKind.CAST) == cast
        reloaded = await resolver.get(record.record_id)
        assert reloaded is not None
        assert resolver.fresh_artifact(reloaded, ArtifactKind.CAST) == cast

    async def test_expired_artifact_is_none(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        record = await make_record("Heat", 1995)
        fetched = datetime(2024, 1, 1, tzinfo=UTC)
        updated = await resolver.store_artifact(
            record.record_id, ArtifactKind.AVAILABILITY, ["netflix"], now=fetched
        )
        assert updated is not None
        assert (
            resolver.fresh_artifact(
                updated, ArtifactKind.AVAILABILITY, now=fetched + timedelta(hours=12)
            )
            == ["netflix"]
        )
        assert (
            resolver.fresh_artifact(
                updated, ArtifactKind.AVAILABILITY, now=fetched + timedelta(days=2)
            )
            is None
        )

    async def test_each_kind_has_own_ttl(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        resolver = CacheResolver(
            session_factory,
            artifact_ttls={
                ArtifactKind.CAST: timedelta(days=30),
                ArtifactKind.SIMILAR: timedelta(days=7),
                ArtifactKind.AVAILABILITY: timedelta(days=1),
            },
        )
        fetched = datetime(2024, 1, 1, tzinfo=UTC)
        record = MediaRecord(
            external_id="tmdb:movie:1",
            title="Heat",
            artifacts={
                "cast": {"value": ["a"], "fetched_at": fetched.isoformat()},
                "similar": {"value": ["b"], "fetched_at": fetched.isoformat()},
            },
        )
        later = fetched + timedelta(days=10)
        assert resolver.fresh_artifact(record, ArtifactKind.CAST, now=later) == ["a"]
        assert resolver.fresh_artifact(record, ArtifactKind.SIMILAR, now=later) is None

    async def test_missing_or_malformed_artifact(self, resolver: CacheResolver) -> None:
        record = MediaRecord(
            external_id="tmdb:movie:1",
            title="Heat",
            artifacts={"cast": {"value": ["a"], "fetched_at": "yesterday"}},
        )
        assert resolver.fresh_artifact(record, ArtifactKind.CAST) is None
        assert resolver.fresh_artifact(record, ArtifactKind.SIMILAR) is None

    async def test_store_artifact_missing_record(self, resolver: CacheResolver) -> None:
        assert await resolver.store_artifact(999, ArtifactKind.CAST, []) is None
