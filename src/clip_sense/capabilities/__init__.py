"""Contracts and data shapes for external recognition capabilities."""

from clip_sense.capabilities.ports import (
    ActorIdentifier,
    Capabilities,
    DialogueCorpus,
    MetadataProvider,
    SceneDescriber,
    ScreenTextReader,
    TitleAggregator,
    Transcriber,
)
from clip_sense.capabilities.schemas import (
    ActorIdentification,
    AlternativeTitle,
    CastMember,
    CorpusMatch,
    EvidenceBundle,
    ExternalTitle,
    FilmographyCredit,
    ScreenText,
    TitleGuess,
    WatchAvailability,
    WatchProvider,
)

__all__ = [
    "ActorIdentification",
    "ActorIdentifier",
    "AlternativeTitle",
    "Capabilities",
    "CastMember",
    "CorpusMatch",
    "DialogueCorpus",
    "EvidenceBundle",
    "ExternalTitle",
    "FilmographyCredit",
    "MetadataProvider",
    "SceneDescriber",
    "ScreenText",
    "ScreenTextReader",
    "TitleAggregator",
    "TitleGuess",
    "Transcriber",
    "WatchAvailability",
    "WatchProvider",
]
