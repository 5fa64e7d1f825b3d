"""Pydantic schemas exchanged with recognition capabilities.

Vision and aggregation models return these as structured output; the
metadata provider and dialogue corpus return them from lookups.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from clip_sense.models.enums import MediaType


class ScreenText(BaseModel):
    """Text visible in a frame."""

    text: str = Field(default="", description="All legible text in the frame, verbatim")
    title: str | None = Field(
        default=None,
        description="A movie or TV title if one is displayed (title card, poster, credits)",
    )
    credits: list[str] = Field(
        default_factory=list,
        description="Person names shown as credits (e.g. 'starring', 'directed by')",
    )


class ActorIdentification(BaseModel):
    """Actors recognized in a frame."""

    names: list[str] = Field(
        default_factory=list, description="Full names of recognized actors, most prominent first"
    )
    confidence: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Overall confidence in the identification"
    )


class AlternativeTitle(BaseModel):
    """A runner-up title from the aggregation model."""

    title: str
    year: int | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class TitleGuess(BaseModel):
    """The aggregation model's verdict over a bundle of evidence."""

    title: str | None = Field(
        default=None, description="Most likely movie or TV title, or null if unknown"
    )
    year: int | None = Field(default=None, description="Release year of that title")
    confidence: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Probability the title is correct"
    )
    reasoning: str = Field(default="", description="Brief explanation of the evidence used")
    matched_signals: list[str] = Field(
        default_factory=list,
        description="Evidence kinds that support the title (dialogue, visual, text, actors)",
    )
    alternatives: list[AlternativeTitle] = Field(
        default_factory=list, description="Up to three other plausible titles"
    )


class EvidenceBundle(BaseModel):
    """Everything gathered for one clip, as handed to the aggregation model."""

    transcript: str = ""
    scene_descriptions: list[str] = Field(default_factory=list)
    screen_text: list[str] = Field(default_factory=list)
    on_screen_title: str | None = None
    actors: list[str] = Field(default_factory=list)
    candidate_titles: list[str] = Field(default_factory=list)
    hint: str | None = None
    """A title suggested by another strategy, to confirm or refute."""

    @property
    def is_empty(self) -> bool:
        return not (
            self.transcript.strip()
            or self.scene_descriptions
            or self.screen_text
            or self.on_screen_title
            or self.actors
        )


class ExternalTitle(BaseModel):
    """A title as described by the external metadata provider."""

    external_id: str
    title: str
    year: int | None = None
    media_type: MediaType = MediaType.MOVIE
    imdb_id: str | None = None
    overview: str | None = None
    poster_url: str | None = None
    backdrop_url: str | None = None
    popularity: float | None = None


class CastMember(BaseModel):
    name: str
    character: str | None = None
    order: int = 0


class FilmographyCredit(BaseModel):
    """One work in a person's filmography."""

    external_id: str
    title: str
    year: int | None = None
    media_type: MediaType = MediaType.MOVIE
    popularity: float = 0.0
    character: str | None = None


class CorpusMatch(BaseModel):
    """A dialogue or scene corpus hit, already linked to a stored title."""

    record_id: int
    title: str
    year: int | None = None
    external_id: str | None = None
    score: float = 1.0
    """Similarity for embedding searches, 1.0 for exact text hits."""

    matched_text: str = ""


class WatchProvider(BaseModel):
    """A service offering a title in one country."""

    name: str
    offer: str = Field(description="subscription, free, ads, rent or buy")
    logo_url: str | None = None


class WatchAvailability(BaseModel):
    """Where a title can be watched in one country."""

    country: str
    link: str | None = None
    providers: list[WatchProvider] = Field(default_factory=list)
