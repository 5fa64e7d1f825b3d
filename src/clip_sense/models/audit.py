"""RecognitionAudit model: one best-effort row per finished request."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from clip_sense.models.base import Base, JSONType
from clip_sense.models.enums import AuditOutcome


class RecognitionAudit(Base):
    """Audit trail for a recognition decision.

    Written after the result is emitted; a failed write never affects the
    caller.
    """

    __tablename__ = "recognition_audits"

    audit_id: Mapped[UUID] = mapped_column(primary_key=True)
    request_id: Mapped[str] = mapped_column(String(64), index=True)
    requester_id: Mapped[str | None] = mapped_column(String(255), index=True)
    outcome: Mapped[AuditOutcome] = mapped_column()
    record_id: Mapped[int | None] = mapped_column(
        ForeignKey("media_records.record_id"), index=True
    )
    confidence: Mapped[float | None] = mapped_column(Float)
    low_confidence: Mapped[bool] = mapped_column(Boolean, default=False)
    failure_reason: Mapped[str | None] = mapped_column(String(64))
    signal_kinds: Mapped[list[str]] = mapped_column(JSONType, default=list)
    states: Mapped[list[str]] = mapped_column(JSONType, default=list)
    explanation: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    processing_ms: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
