"""Capability contracts consumed by the recognition cascade.

Each capability is optional. A missing capability, or one that raises or
times out, contributes zero signals; the cascade never depends on any single
one succeeding.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from clip_sense.capabilities.schemas import (
    ActorIdentification,
    CastMember,
    CorpusMatch,
    EvidenceBundle,
    ExternalTitle,
    FilmographyCredit,
    ScreenText,
    TitleGuess,
    WatchAvailability,
)


class Transcriber(Protocol):
    """Speech-to-text over a clip's audio track."""

    async def transcribe(self, audio: bytes, *, filename: str | None = None) -> str: ...


class SceneDescriber(Protocol):
    """Natural-language description of a frame."""

    async def describe(self, image: bytes) -> str: ...


class ScreenTextReader(Protocol):
    """OCR of titles, credits and other text in a frame."""

    async def read(self, image: bytes) -> ScreenText: ...


class ActorIdentifier(Protocol):
    """Face-based actor recognition in a frame."""

    async def identify(self, image: bytes) -> ActorIdentification: ...


class TitleAggregator(Protocol):
    """Generative model that proposes a title from a bundle of evidence."""

    async def aggregate(self, bundle: EvidenceBundle) -> TitleGuess: ...


class MetadataProvider(Protocol):
    """Authoritative external title and person metadata."""

    async def search_title(self, title: str, year: int | None = None) -> list[ExternalTitle]: ...

    async def get_by_external_id(self, external_id: str) -> ExternalTitle | None: ...

    async def get_cast(self, external_id: str) -> list[CastMember]: ...

    async def search_person(self, name: str) -> str | None:
        """Return the provider's person id for the best match, if any."""
        ...

    async def get_filmography(self, person_id: str) -> list[FilmographyCredit]: ...

    async def get_similar(self, external_id: str) -> list[ExternalTitle]:
        """Titles related to ``external_id``, most relevant first."""
        ...

    async def get_availability(self, external_id: str, country: str) -> WatchAvailability:
        """Streaming, rental and purchase offers in one country."""
        ...


class DialogueCorpus(Protocol):
    """Searchable dialogue and scene corpus keyed to stored titles."""

    async def search_phrase(self, phrase: str, *, limit: int = 10) -> list[CorpusMatch]:
        """Case-insensitive substring search over dialogue lines."""
        ...

    async def search_keyword(self, keyword: str, *, limit: int = 20) -> list[CorpusMatch]:
        """Lines containing a single distinctive word."""
        ...

    async def search_dialogue(self, text: str, *, limit: int = 5) -> list[CorpusMatch]:
        """Embedding similarity over dialogue lines."""
        ...

    async def search_scenes(self, description: str, *, limit: int = 5) -> list[CorpusMatch]:
        """Embedding similarity over scene descriptions."""
        ...


@dataclass
class Capabilities:
    """The set of capabilities available to a cascade; ``None`` means unavailable."""

    transcriber: Transcriber | None = None
    scene_describer: SceneDescriber | None = None
    screen_text_reader: ScreenTextReader | None = None
    actor_identifier: ActorIdentifier | None = None
    aggregator: TitleAggregator | None = None
    metadata: MetadataProvider | None = None
    corpus: DialogueCorpus | None = None
