"""Best-effort audit trail for recognition decisions.

Rows are written from background tasks after the outcome has been returned to
the caller. A failed write is logged and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clip_sense.models import AuditOutcome, RecognitionAudit
from clip_sense.recognition.outcome import RecognitionFailure, RecognitionOutcome, RecognitionResult

logger = logging.getLogger(__name__)


def build_audit(outcome: RecognitionOutcome, requester_id: str | None = None) -> RecognitionAudit:
    """Map an outcome onto an audit row."""
    states = [state.value for state in outcome.states]
    if isinstance(outcome, RecognitionResult):
        return RecognitionAudit(
            audit_id=uuid4(),
            request_id=outcome.request_id,
            requester_id=requester_id,
            outcome=AuditOutcome.DONE,
            record_id=outcome.record.record_id,
            confidence=outcome.confidence,
            low_confidence=outcome.low_confidence,
            signal_kinds=list(outcome.signal_kinds),
            states=states,
            explanation=outcome.explanation,
            details={
                "strategy": outcome.strategy.value,
                "cached": outcome.cached,
                "correction": outcome.correction,
            },
            processing_ms=outcome.processing_ms,
        )
    return RecognitionAudit(
        audit_id=uuid4(),
        request_id=outcome.request_id,
        requester_id=requester_id,
        outcome=AuditOutcome.FAILED,
        failure_reason=outcome.reason.value,
        signal_kinds=[],
        states=states,
        explanation=outcome.explanation,
        details={"diagnostic_id": outcome.diagnostic_id},
        processing_ms=outcome.processing_ms,
    )


class AuditLog:
    """Writes RecognitionAudit rows, in the background when scheduled."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task[None]] = set()

    def schedule(self, outcome: RecognitionOutcome, requester_id: str | None = None) -> None:
        """Write an audit row without blocking the caller."""
        task = asyncio.create_task(self.write(outcome, requester_id))
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    async def write(self, outcome: RecognitionOutcome, requester_id: str | None = None) -> None:
        async with self._session_factory() as session:
            session.add(build_audit(outcome, requester_id))
            await session.commit()

    async def drain(self) -> None:
        """Wait for every scheduled write (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def recent(self, limit: int = 20) -> list[RecognitionAudit]:
        async with self._session_factory() as session:
            stmt = (
                select(RecognitionAudit)
                .order_by(RecognitionAudit.created_at.desc(), RecognitionAudit.request_id)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Audit write failed: %s", exc)


def describe_outcome(outcome: RecognitionOutcome) -> str:
    """One-line human summary of an outcome, for logs."""
    if isinstance(outcome, RecognitionFailure):
        return f"failed ({outcome.reason.value}): {outcome.explanation}"
    flag = " [low confidence]" if outcome.low_confidence else ""
    return f"{outcome.record.display_title} @ {outcome.confidence:.2f}{flag}"
