"""MediaRecord model: the canonical, cacheable entry for an identified title."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clip_sense.models.base import Base, JSONType
from clip_sense.models.enums import MediaType

if TYPE_CHECKING:
    from clip_sense.models.dialogue import DialogueLine, SceneRecord


class MediaRecord(Base):
    """A title the system has resolved at least once.

    Rows are created on first successful resolution (keyed by the metadata
    provider's identifier, e.g. ``tmdb:movie:603``) and updated
    opportunistically as derived artifacts are fetched. The recognition core
    never deletes them.

    ``artifacts`` maps an ArtifactKind value to ``{"value": ..., "fetched_at":
    <iso timestamp>}`` so each artifact can expire on its own schedule.
    """

    __tablename__ = "media_records"

    record_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(512), index=True)
    year: Mapped[int | None] = mapped_column(Integer, index=True)
    media_type: Mapped[MediaType] = mapped_column(default=MediaType.MOVIE)
    imdb_id: Mapped[str | None] = mapped_column(String(32))
    overview: Mapped[str | None] = mapped_column(Text)
    poster_url: Mapped[str | None] = mapped_column(String(1024))
    backdrop_url: Mapped[str | None] = mapped_column(String(1024))
    popularity: Mapped[float | None] = mapped_column(Float)
    artifacts: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    dialogue_lines: Mapped[list[DialogueLine]] = relationship(back_populates="record")
    scenes: Mapped[list[SceneRecord]] = relationship(back_populates="record")

    @property
    def display_title(self) -> str:
        return f"{self.title} ({self.year})" if self.year else self.title
