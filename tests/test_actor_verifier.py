"""Tests for cast verification, correction rules and filmography intersection."""

from clip_sense.models import ArtifactKind, MediaType
from clip_sense.recognition import (
    ActorVerifier,
    CacheResolver,
    CandidateKey,
    CorrectionRule,
)
from clip_sense.recognition.actor_verifier import actor_matches, is_plausible_actor
from conftest import MakeRecord
from stubs import StubMetadata, credit

DIE_HART = "tmdb:tv:100"


class TestNameMatching:
    def test_plausible_actor(self) -> None:
        assert is_plausible_actor("Keanu Reeves")
        assert not is_plausible_actor("Unknown actor")
        assert not is_plausible_actor("Person in red")
        assert not is_plausible_actor("Al")

    def test_substring_match_either_way(self) -> None:
        assert actor_matches("Keanu Reeves", "keanu reeves")
        assert actor_matches("Reeves", "Keanu Reeves")

    def test_name_part_match(self) -> None:
        assert actor_matches("Dwayne 'The Rock' Johnson", "Dwayne Johnson")

    def test_short_parts_do_not_match(self) -> None:
        assert not actor_matches("Al Gore", "Al Pacino")

    def test_name_part_must_be_a_whole_word(self) -> None:
        assert not actor_matches("Dwayne Johnson", "John Travolta")

    def test_empty_never_matches(self) -> None:
        assert not actor_matches("", "Al Pacino")


class TestVerify:
    async def test_empty_claims_never_fetch(self) -> None:
        metadata = StubMetadata()
        result = await ActorVerifier(metadata).verify(DIE_HART, [])
        assert result.verified
        assert metadata.calls == []

    async def test_all_claims_in_cast(self) -> None:
        metadata = StubMetadata(casts={DIE_HART: ["Kevin Hart", "John Travolta"]})
        result = await ActorVerifier(metadata).verify(DIE_HART, ["kevin hart"])
        assert result.verified
        assert result.checked
        assert result.matched_actors == ["kevin hart"]

    async def test_missing_actor_is_mismatch(self) -> None:
        metadata = StubMetadata(casts={DIE_HART: ["Kevin Hart", "John Travolta"]})
        result = await ActorVerifier(metadata).verify(DIE_HART, ["Kevin Hart", "Dwayne Johnson"])
        assert not result.verified
        assert result.matched_actors == ["Kevin Hart"]
        assert result.missing_actors == ["Dwayne Johnson"]

    async def test_fetch_failure_counts_as_verified(self) -> None:
        metadata = StubMetadata(fail=frozenset({"get_cast"}))
        result = await ActorVerifier(metadata).verify(DIE_HART, ["Kevin Hart"])
        assert result.verified
        assert not result.checked

    async def test_no_provider_counts_as_verified(self) -> None:
        result = await ActorVerifier(None).verify(DIE_HART, ["Kevin Hart"])
        assert result.verified
        assert not result.checked

    async def test_cast_cached_on_record(
        self, resolver: CacheResolver, make_record: MakeRecord
    ) -> None:
        record = await make_record("Die Hart", 2020, external_id=DIE_HART, media_type=MediaType.TV)
        metadata = StubMetadata(casts={DIE_HART: ["Kevin Hart", "John Travolta"]})
        verifier = ActorVerifier(metadata, resolver=resolver)

        await verifier.verify(DIE_HART, ["Kevin Hart"], record=record)
        stored = await resolver.get(record.record_id)
        assert stored is not None
        cached = resolver.fresh_artifact(stored, ArtifactKind.CAST)
        assert [member["name"] for member in cached] == ["Kevin Hart", "John Travolta"]

        # Second verification is served from the cached cast
        result = await verifier.verify(DIE_HART, ["John Travolta"], record=stored)
        assert result.verified
        assert metadata.count("get_cast") == 1


class TestCorrect:
    def test_spy_context(self) -> None:
        rule = ActorVerifier(None).correct(
            ["Kevin Hart", "Dwayne Johnson"], "the cia wants you back, agent"
        )
        assert rule is not None
        assert rule.name == "hart-johnson-spy"
        assert rule.resolved == CandidateKey("Central Intelligence", 2016)

    def test_jungle_context(self) -> None:
        rule = ActorVerifier(None).correct(
            ["Kevin Hart", "The Rock"], "we are stuck inside a video game jungle"
        )
        assert rule is not None
        assert rule.resolved == CandidateKey("Jumanji: Welcome to the Jungle", 2017)

    def test_default_without_context(self) -> None:
        rule = ActorVerifier(None).correct(["Kevin Hart", "Dwayne Johnson"], "")
        assert rule is not None
        assert rule.name == "hart-johnson-default"

    def test_keyword_must_start_a_word(self) -> None:
        # "magenta" contains "agent" but not at a word start
        rule = ActorVerifier(None).correct(["Kevin Hart", "Dwayne Johnson"], "a magenta car")
        assert rule is not None
        assert rule.name == "hart-johnson-default"

    def test_single_actor_never_corrects(self) -> None:
        assert ActorVerifier(None).correct(["Kevin Hart"], "cia agent") is None

    def test_unrelated_actors(self) -> None:
        assert ActorVerifier(None).correct(["Al Pacino", "Robert De Niro"], "cia") is None

    def test_custom_rules(self) -> None:
        rule = CorrectionRule(
            name="heat",
            actor_patterns=(("pacino",), ("de niro",)),
            resolved=CandidateKey("Heat", 1995),
        )
        verifier = ActorVerifier(None, rules=[rule])
        assert verifier.correct(["Al Pacino", "Robert De Niro"], "") is rule
        assert verifier.correct(["Kevin Hart", "Dwayne Johnson"], "") is None


class TestFindSharedWorks:
    def metadata(self) -> StubMetadata:
        return StubMetadata(
            people={"Kevin Hart": "1", "Dwayne Johnson": "2", "Jack Black": "3"},
            filmographies={
                "1": [
                    credit("tmdb:movie:10", "Central Intelligence", 2016, popularity=40),
                    credit("tmdb:movie:11", "Jumanji: Welcome to the Jungle", 2017, popularity=60),
                    credit("tmdb:tv:12", "The Tonight Show Starring Jimmy Fallon", 2014),
                    credit("tmdb:movie:13", "Ride Along", 2014),
                ],
                "2": [
                    credit("tmdb:movie:10", "Central Intelligence", 2016, popularity=40),
                    credit("tmdb:movie:11", "Jumanji: Welcome to the Jungle", 2017, popularity=60),
                    credit("tmdb:tv:12", "The Tonight Show Starring Jimmy Fallon", 2014),
                    credit("tmdb:movie:14", "Moana", 2016),
                ],
                "3": [
                    credit("tmdb:movie:11", "Jumanji: Welcome to the Jungle", 2017, popularity=60),
                ],
            },
        )

    async def test_intersection_excludes_talk_shows(self) -> None:
        works = await ActorVerifier(self.metadata()).find_shared_works(
            ["Kevin Hart", "Dwayne Johnson"]
        )
        assert [w.title for w in works] == [
            "Jumanji: Welcome to the Jungle",
            "Central Intelligence",
        ]
        assert works[0].matched_actors == ["Kevin Hart", "Dwayne Johnson"]

    async def test_more_matched_actors_rank_first(self) -> None:
        works = await ActorVerifier(self.metadata()).find_shared_works(
            ["Kevin Hart", "Dwayne Johnson", "Jack Black"]
        )
        assert works[0].external_id == "tmdb:movie:11"
        assert len(works[0].matched_actors) == 3

    async def test_single_actor_keeps_all_works(self) -> None:
        works = await ActorVerifier(self.metadata()).find_shared_works(["Jack Black"])
        assert [w.external_id for w in works] == ["tmdb:movie:11"]

    async def test_unresolved_second_actor_keeps_pair_rule(self) -> None:
        metadata = self.metadata()
        metadata.people = {"Kevin Hart": "1"}
        works = await ActorVerifier(metadata).find_shared_works(["Kevin Hart", "Dwayne Johnson"])
        assert works == []

    async def test_failed_second_filmography_keeps_pair_rule(self) -> None:
        metadata = self.metadata()
        metadata.filmographies.pop("2")
        works = await ActorVerifier(metadata).find_shared_works(["Kevin Hart", "Dwayne Johnson"])
        assert works == []

    async def test_failed_lookup_skips_actor(self) -> None:
        metadata = self.metadata()
        metadata.fail = frozenset({"get_filmography"})
        assert await ActorVerifier(metadata).find_shared_works(["Kevin Hart"]) == []

    async def test_implausible_and_unknown_actors(self) -> None:
        verifier = ActorVerifier(self.metadata())
        assert await verifier.find_shared_works(["Unknown person"]) == []
        assert await verifier.find_shared_works(["Nobody Known"]) == []

    async def test_no_provider(self) -> None:
        assert await ActorVerifier(None).find_shared_works(["Kevin Hart"]) == []

    async def test_movies_before_tv(self) -> None:
        metadata = StubMetadata(
            people={"Ann Actor": "1", "Bob Actor": "2"},
            filmographies={
                "1": [
                    credit("tmdb:tv:1", "Series", 2020, media_type=MediaType.TV),
                    credit("tmdb:movie:2", "Feature", 2010),
                ],
                "2": [
                    credit("tmdb:tv:1", "Series", 2020, media_type=MediaType.TV),
                    credit("tmdb:movie:2", "Feature", 2010),
                ],
            },
        )
        works = await ActorVerifier(metadata).find_shared_works(["Ann Actor", "Bob Actor"])
        assert [w.title for w in works] == ["Feature", "Series"]
