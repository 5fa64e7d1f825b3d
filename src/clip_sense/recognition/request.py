"""Inbound recognition request types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4


@dataclass(frozen=True)
class MediaPayload:
    """A decoded clip: the audio track and a handful of still frames."""

    audio: bytes | None = None
    frames: tuple[bytes, ...] = ()
    filename: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.audio and not any(self.frames)

    def frame(self, index: int) -> bytes | None:
        """Frame at ``index``, or None if the clip has fewer frames."""
        if 0 <= index < len(self.frames) and self.frames[index]:
            return self.frames[index]
        return None


@dataclass(frozen=True)
class RecognitionRequest:
    media: MediaPayload
    request_id: str = field(default_factory=lambda: uuid4().hex)
    requester_id: str | None = None
    priority: int = 0
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
