"""Database models for ClipSense."""

from clip_sense.models.audit import RecognitionAudit
from clip_sense.models.base import Base
from clip_sense.models.dialogue import DialogueLine, SceneRecord
from clip_sense.models.enums import ArtifactKind, AuditOutcome, DialogueSource, MediaType
from clip_sense.models.media_record import MediaRecord

__all__ = [
    "ArtifactKind",
    "AuditOutcome",
    "Base",
    "DialogueLine",
    "DialogueSource",
    "MediaRecord",
    "MediaType",
    "RecognitionAudit",
    "SceneRecord",
]
