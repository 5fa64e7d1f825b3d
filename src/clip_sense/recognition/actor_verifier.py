"""Actor Verifier: check claimed actors against a candidate's cast.

Verification is advisory. It can narrow or correct a decision but never
blocks one: an empty claim list, a missing metadata provider, or a failed
cast fetch all count as verified.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from clip_sense.capabilities.ports import MetadataProvider
from clip_sense.models import ArtifactKind, MediaType
from clip_sense.recognition.evidence import CandidateKey

if TYPE_CHECKING:
    from clip_sense.models import MediaRecord
    from clip_sense.recognition.cache_resolver import CacheResolver

logger = logging.getLogger(__name__)

# Cast members cached per record
CAST_CACHE_SIZE = 10

# Actors whose filmographies are intersected
MAX_FILMOGRAPHY_ACTORS = 3

# Name parts shorter than this never count as a match on their own
MIN_NAME_PART_LENGTH = 4

# Talk, variety and award shows that put unrelated actors side by side
EXCLUDED_WORK_PATTERNS: tuple[str, ...] = (
    "tonight show", "late show", "late night", "jimmy fallon", "jimmy kimmel",
    "conan", "ellen", "graham norton", "jonathan ross", "james corden",
    "good morning", "today show", "entertainment tonight", "access hollywood",
    "e! news", "extra", "inside edition", "the view", "live with",
    "saturday night live", "snl", "comic con", "award", "ceremony",
    "premiere", "red carpet", "interview", "behind the scenes",
    "making of", "documentary", "themselves",
)  # fmt: skip

_IMPLAUSIBLE_NAME_PARTS = ("unknown", "person", "for unsolved")


def is_plausible_actor(name: str) -> bool:
    """Reject placeholder or junk names returned by actor identification."""
    lowered = name.strip().lower()
    return len(lowered) > 3 and not any(part in lowered for part in _IMPLAUSIBLE_NAME_PARTS)


def actor_matches(claimed: str, cast_name: str) -> bool:
    """Fuzzy, case-insensitive match between a claimed actor and a cast member.

    Matches when either name contains the other, or when the two share a whole
    name word of at least four characters (handles "Dwayne 'The Rock' Johnson"
    against "Dwayne Johnson" without letting "John" match "Johnson").
    """
    claim = claimed.strip().lower()
    name = cast_name.strip().lower()
    if not claim or not name:
        return False
    if claim in name or name in claim:
        return True
    claim_words = set(re.findall(r"\w+", claim))
    return any(
        len(part) >= MIN_NAME_PART_LENGTH and part in claim_words
        for part in re.findall(r"\w+", name)
    )


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    matched_actors: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    missing_actors: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    checked: bool = True
    """False when the cast could not be fetched and the result is assumed."""


@dataclass(frozen=True)
class CorrectionRule:
    """Declarative override for a known misidentification.

    A rule matches when every group in ``actor_patterns`` is satisfied by some
    claimed actor (a group is satisfied if any of its substrings appears in the
    claim), and, if ``context_keywords`` is non-empty, at least one keyword
    starts a word in the context text.
    """

    name: str
    actor_patterns: tuple[tuple[str, ...], ...]
    resolved: CandidateKey
    context_keywords: tuple[str, ...] = ()

    def matches(self, claimed_actors: Sequence[str], context_text: str) -> bool:
        claims = [actor.lower() for actor in claimed_actors]
        for group in self.actor_patterns:
            if not any(pattern in claim for claim in claims for pattern in group):
                return False
        if not self.context_keywords:
            return True
        context = context_text.lower()
        return any(re.search(rf"\b{re.escape(kw)}", context) for kw in self.context_keywords)


_HART = ("kevin hart",)
_JOHNSON = ("dwayne", "rock", "johnson")

# Ordered: first match wins
DEFAULT_CORRECTION_RULES: tuple[CorrectionRule, ...] = (
    CorrectionRule(
        name="hart-johnson-spy",
        actor_patterns=(_HART, _JOHNSON),
        context_keywords=("cia", "agent", "spy", "calvin", "jet", "interpol"),
        resolved=CandidateKey("Central Intelligence", 2016),
    ),
    CorrectionRule(
        name="hart-johnson-jungle",
        actor_patterns=(_HART, _JOHNSON),
        context_keywords=("jungle", "game", "avatar", "level", "npc"),
        resolved=CandidateKey("Jumanji: Welcome to the Jungle", 2017),
    ),
    CorrectionRule(
        name="hart-johnson-default",
        actor_patterns=(_HART, _JOHNSON),
        resolved=CandidateKey("Central Intelligence", 2016),
    ),
)


@dataclass
class SharedWork:
    """A work in which several of the identified actors appear."""

    external_id: str
    title: str
    year: int | None
    media_type: MediaType
    popularity: float
    matched_actors: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]


class ActorVerifier:
    """Cast verification, rule-based correction and filmography intersection."""

    def __init__(
        self,
        metadata: MetadataProvider | None,
        *,
        resolver: CacheResolver | None = None,
        rules: Sequence[CorrectionRule] = DEFAULT_CORRECTION_RULES,
    ) -> None:
        self._metadata = metadata
        self._resolver = resolver
        self._rules = tuple(rules)

    async def verify(
        self,
        external_id: str,
        claimed_actors: Sequence[str],
        *,
        record: MediaRecord | None = None,
    ) -> VerificationResult:
        """Check that every claimed actor appears in the title's cast.

        Args:
            external_id: Provider identifier of the candidate title.
            claimed_actors: Names reported by actor identification.
            record: Stored record for the title, whose cached cast is used when fresh.

        Returns:
            Verified only when no claimed actor is missing from the cast.
        """
        claims = list(claimed_actors)
        if not claims:
            return VerificationResult(verified=True, checked=False)

        cast_names = await self._cast_names(external_id, record)
        if cast_names is None:
            return VerificationResult(verified=True, matched_actors=claims, checked=False)

        matched = [a for a in claims if any(actor_matches(a, name) for name in cast_names)]
        missing = [a for a in claims if a not in matched]
        if missing:
            logger.info("Actor mismatch for %s: missing %s", external_id, ", ".join(missing))
        return VerificationResult(
            verified=not missing, matched_actors=matched, missing_actors=missing
        )

    def correct(self, claimed_actors: Sequence[str], context_text: str) -> CorrectionRule | None:
        """Return the first correction rule matching the claims and context.

        Requires at least two claimed actors; a single actor is never enough
        to override the leading candidate.
        """
        if len(claimed_actors) < 2:
            return None
        for rule in self._rules:
            if rule.matches(claimed_actors, context_text):
                logger.info("Correction rule %s -> %s", rule.name, rule.resolved)
                return rule
        return None

    async def find_shared_works(self, actors: Sequence[str]) -> list[SharedWork]:
        """Intersect the filmographies of up to three plausible actors.

        Talk shows and similar non-narrative credits are excluded. With two or
        more plausible actors requested, only works shared by at least two are
        kept, even when some of those lookups fail.

        Returns:
            Works sorted by matched-actor count, movies before TV, newest first,
            then by popularity.
        """
        if self._metadata is None:
            return []
        plausible = [a for a in dict.fromkeys(actors) if is_plausible_actor(a)]
        if not plausible:
            return []

        requested = plausible[:MAX_FILMOGRAPHY_ACTORS]
        min_shared = 2 if len(requested) >= 2 else 1
        works: dict[str, SharedWork] = {}
        for actor in requested:
            try:
                person_id = await self._metadata.search_person(actor)
                if person_id is None:
                    continue
                credits = await self._metadata.get_filmography(person_id)
            except Exception:
                logger.warning("Filmography lookup failed for %s", actor, exc_info=True)
                continue
            for credit in credits:
                title_lower = credit.title.lower()
                if any(pattern in title_lower for pattern in EXCLUDED_WORK_PATTERNS):
                    continue
                work = works.setdefault(
                    credit.external_id,
                    SharedWork(
                        external_id=credit.external_id,
                        title=credit.title,
                        year=credit.year,
                        media_type=credit.media_type,
                        popularity=credit.popularity,
                    ),
                )
                if actor not in work.matched_actors:
                    work.matched_actors.append(actor)

        shared = [w for w in works.values() if len(w.matched_actors) >= min_shared]
        shared.sort(
            key=lambda w: (
                -len(w.matched_actors),
                w.media_type != MediaType.MOVIE,
                -(w.year or 0),
                -w.popularity,
            )
        )
        return shared

    async def _cast_names(self, external_id: str, record: MediaRecord | None) -> list[str] | None:
        if record is not None and self._resolver is not None:
            cached = self._resolver.fresh_artifact(record, ArtifactKind.CAST)
            if cached is not None:
                return [member["name"] for member in cached if member.get("name")]

        if self._metadata is None:
            return None
        try:
            cast = await self._metadata.get_cast(external_id)
        except Exception:
            logger.warning(
                "Cast fetch failed for %s, assuming verified", external_id, exc_info=True
            )
            return None

        if record is not None and self._resolver is not None:
            top = [member.model_dump() for member in cast[:CAST_CACHE_SIZE]]
            try:
                await self._resolver.store_artifact(record.record_id, ArtifactKind.CAST, top)
            except Exception:
                logger.warning(
                    "Could not cache cast for record %s", record.record_id, exc_info=True
                )
        return [member.name for member in cast]
