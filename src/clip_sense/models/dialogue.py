"""Corpus models: dialogue lines and scene descriptions linked to titles."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pgvector.sqlalchemy import Vector  # type: ignore[import-untyped]
from sqlalchemy import ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clip_sense.config import settings
from clip_sense.models.base import Base
from clip_sense.models.enums import DialogueSource

if TYPE_CHECKING:
    from clip_sense.models.media_record import MediaRecord


class DialogueLine(Base):
    """One line of a title's dialogue, optionally embedded for semantic search."""

    __tablename__ = "dialogue_lines"

    line_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[int] = mapped_column(ForeignKey("media_records.record_id"), index=True)
    text: Mapped[str] = mapped_column(Text)
    start_ms: Mapped[int | None] = mapped_column(Integer)
    end_ms: Mapped[int | None] = mapped_column(Integer)
    source: Mapped[DialogueSource] = mapped_column(default=DialogueSource.SUBTITLES)
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.dim_text_embedding), nullable=True
    )

    # Relationships
    record: Mapped[MediaRecord] = relationship(back_populates="dialogue_lines")


class SceneRecord(Base):
    """A textual description of a memorable scene, embedded for visual matching."""

    __tablename__ = "scene_records"

    scene_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[int] = mapped_column(ForeignKey("media_records.record_id"), index=True)
    description: Mapped[str] = mapped_column(Text)
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.dim_text_embedding), nullable=True
    )

    # Relationships
    record: Mapped[MediaRecord] = relationship(back_populates="scenes")
