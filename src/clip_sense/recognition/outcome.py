"""Cascade states, progress events and terminal outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from clip_sense.models import MediaRecord


class CascadeState(str, Enum):
    INIT = "init"
    FAST_LOOKUP = "fast_lookup"
    DEEP_ANALYSIS = "deep_analysis"
    ACTOR_CHECK = "actor_check"
    RESOLVE = "resolve"
    RECONCILE = "reconcile"
    ACCEPT = "accept"
    DONE = "done"
    FAILED = "failed"


# Approximate completion fraction reported with each state
STATE_PROGRESS: dict[CascadeState, float] = {
    CascadeState.INIT: 0.0,
    CascadeState.FAST_LOOKUP: 0.1,
    CascadeState.DEEP_ANALYSIS: 0.3,
    CascadeState.ACTOR_CHECK: 0.6,
    CascadeState.RESOLVE: 0.7,
    CascadeState.RECONCILE: 0.8,
    CascadeState.ACCEPT: 0.9,
    CascadeState.DONE: 1.0,
    CascadeState.FAILED: 1.0,
}


class Strategy(str, Enum):
    """Which path produced the accepted answer."""

    INSTANT = "instant"
    PRIMARY = "primary"
    SECOND_OPINION = "second_opinion"
    GENERATIVE = "generative"
    ACTOR_FALLBACK = "actor_fallback"


class FailureReason(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_MEDIA = "invalid_media"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class CascadeEvent:
    """Emitted to observers on every state transition."""

    request_id: str
    state: CascadeState
    progress: float
    detail: dict[str, Any] = field(default_factory=dict)  # pyright: ignore[reportUnknownVariableType]


@dataclass(frozen=True)
class Alternate:
    title: str
    year: int | None
    confidence: float


def record_summary(record: MediaRecord) -> dict[str, Any]:
    """The public fields of a stored title."""
    return {
        "record_id": record.record_id,
        "external_id": record.external_id,
        "title": record.title,
        "year": record.year,
        "media_type": record.media_type.value,
        "overview": record.overview,
        "poster_url": record.poster_url,
    }


@dataclass
class RecognitionResult:
    """A recognized title with its calibrated confidence."""

    request_id: str
    record: MediaRecord
    confidence: float
    signal_kinds: list[str]
    explanation: str
    strategy: Strategy
    low_confidence: bool = False
    cached: bool = True
    """True when the record already existed before this request."""

    correction: str | None = None
    """Name of the correction rule applied after an actor mismatch, if any."""

    alternates: list[Alternate] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    states: list[CascadeState] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    processing_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "done",
            "request_id": self.request_id,
            "record": record_summary(self.record),
            "confidence": round(self.confidence, 4),
            "signal_kinds": self.signal_kinds,
            "explanation": self.explanation,
            "strategy": self.strategy.value,
            "low_confidence": self.low_confidence,
            "cached": self.cached,
            "correction": self.correction,
            "alternates": [
                {"title": a.title, "year": a.year, "confidence": round(a.confidence, 4)}
                for a in self.alternates
            ],
            "states": [state.value for state in self.states],
            "processing_ms": self.processing_ms,
        }


@dataclass
class RecognitionFailure:
    """No title could be recognized, or the cycle was aborted."""

    request_id: str
    reason: FailureReason
    explanation: str
    alternates: list[Alternate] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    diagnostic_id: str | None = None
    states: list[CascadeState] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    processing_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "failed",
            "request_id": self.request_id,
            "reason": self.reason.value,
            "explanation": self.explanation,
            "alternates": [
                {"title": a.title, "year": a.year, "confidence": round(a.confidence, 4)}
                for a in self.alternates
            ],
            "diagnostic_id": self.diagnostic_id,
            "states": [state.value for state in self.states],
            "processing_ms": self.processing_ms,
        }


RecognitionOutcome = RecognitionResult | RecognitionFailure
