"""Per-request evidence types: signals, candidate keys and candidates."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum


class SignalKind(str, Enum):
    """Independent sources of evidence linking a clip to a title."""

    DIALOGUE_TEXT = "dialogue_text"  # Exact transcript phrase found in the corpus
    DIALOGUE_EMBEDDING = "dialogue_embedding"  # Semantic transcript match
    VISUAL = "visual"  # Scene description similarity
    ON_SCREEN_TEXT = "on_screen_text"  # Title read off a frame
    ACTOR_IDENTITY = "actor_identity"  # Filmography intersection of recognized actors


def canonical_title(title: str) -> str:
    """Casefold a title and collapse punctuation and whitespace.

    >>> canonical_title("  Spider-Man:  No Way Home ")
    'spiderman no way home'
    """
    text = unicodedata.normalize("NFKC", title).casefold()
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


@dataclass(frozen=True)
class CandidateKey:
    """Identity of a candidate title within one request.

    The external identifier wins when known; otherwise the canonical title plus
    year identifies the candidate.
    """

    title: str
    year: int | None = None
    external_id: str | None = None

    @property
    def title_identity(self) -> str:
        return f"{canonical_title(self.title)}|{self.year or ''}"

    @property
    def identity(self) -> str:
        return self.external_id or self.title_identity

    def __str__(self) -> str:
        return f"{self.title} ({self.year})" if self.year else self.title


@dataclass(frozen=True)
class Signal:
    """One piece of weak evidence for a candidate."""

    kind: SignalKind
    key: CandidateKey
    strength: float
    record_id: int | None = None
    """Stored MediaRecord the signal came from, when it came from the store."""

    detail: str = ""


@dataclass
class Candidate:
    """Signals for one candidate identity, with its score and normalized confidence."""

    key: CandidateKey
    score: float
    confidence: float
    signals: list[Signal] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    record_id: int | None = None
    in_store: bool = False

    @property
    def identity(self) -> str:
        return self.key.identity

    @property
    def signal_kinds(self) -> list[SignalKind]:
        return sorted({signal.kind for signal in self.signals}, key=lambda kind: kind.value)

    @property
    def signal_count(self) -> int:
        return len(self.signals)


@dataclass
class Aggregation:
    """Ranked candidates for one request. Empty when there was no usable evidence."""

    candidates: list[Candidate] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    total_score: float = 0.0

    @property
    def has_evidence(self) -> bool:
        return bool(self.candidates)

    @property
    def top(self) -> Candidate | None:
        return self.candidates[0] if self.candidates else None

    @property
    def confidence(self) -> float:
        return self.candidates[0].confidence if self.candidates else 0.0
