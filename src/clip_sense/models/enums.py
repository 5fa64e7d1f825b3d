"""Enumerations for the ClipSense data model."""

from enum import Enum


class MediaType(str, Enum):
    """Kind of title a MediaRecord describes."""

    MOVIE = "movie"
    TV = "tv"


class ArtifactKind(str, Enum):
    """Derived data cached on a MediaRecord, each with its own TTL."""

    CAST = "cast"
    SIMILAR = "similar"
    AVAILABILITY = "availability"


class DialogueSource(str, Enum):
    """Where a corpus dialogue line came from."""

    SUBTITLES = "subtitles"
    QUOTES = "quotes"
    MANUAL = "manual"


class AuditOutcome(str, Enum):
    """Terminal state of an audited recognition request."""

    DONE = "done"
    FAILED = "failed"
