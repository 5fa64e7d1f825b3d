"""Recognition service: admission, deadline and failure containment around the cascade."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Sequence
from uuid import uuid4

from clip_sense.config import settings
from clip_sense.governor import AdmissionGovernor
from clip_sense.recognition.audit import AuditLog
from clip_sense.recognition.cascade import CascadeController, Observer
from clip_sense.recognition.outcome import (
    CascadeEvent,
    CascadeState,
    FailureReason,
    RecognitionFailure,
    RecognitionOutcome,
)
from clip_sense.recognition.policy import ThoroughnessPolicy
from clip_sense.recognition.request import RecognitionRequest

logger = logging.getLogger(__name__)


class RecognitionService:
    """Runs each request through the governor and the cascade under a deadline.

    ``CapacityExceeded`` and ``QueueTimeout`` propagate to the caller. Once a
    slot is held, every exit path releases it and yields an outcome: a
    deadline breach becomes a ``deadline_exceeded`` failure and any
    unexpected exception becomes an ``unexpected`` failure carrying a
    diagnostic id that also appears in the logs.
    """

    def __init__(
        self,
        governor: AdmissionGovernor,
        controller: CascadeController,
        *,
        audit: AuditLog | None = None,
        deadline_seconds: float | None = None,
    ) -> None:
        self.governor = governor
        self.controller = controller
        self.audit = audit
        self.deadline_seconds = deadline_seconds or settings.request_deadline_seconds

    async def recognize(
        self,
        request: RecognitionRequest,
        *,
        observers: Sequence[Observer] = (),
        policy: ThoroughnessPolicy | None = None,
    ) -> RecognitionOutcome:
        """Recognize one request.

        Args:
            request: The clip and its request metadata.
            observers: Cascade transition callbacks (e.g. progress streaming).
            policy: Overrides the controller's default thoroughness policy.

        Raises:
            CapacityExceeded: The admission queue is full.
            QueueTimeout: The request waited too long for a slot.
        """
        controller = self.controller if policy is None else self.controller.with_policy(policy)
        trail: list[CascadeState] = []

        def track(event: CascadeEvent) -> None:
            trail.append(event.state)

        async with self.governor.admit(request.request_id, request.priority):
            started = time.monotonic()
            try:
                async with asyncio.timeout(self.deadline_seconds):
                    return await controller.run(request, observers=[track, *observers])
            except TimeoutError:
                logger.warning(
                    "Request %s exceeded the %.0fs deadline",
                    request.request_id,
                    self.deadline_seconds,
                )
                failure = RecognitionFailure(
                    request_id=request.request_id,
                    reason=FailureReason.DEADLINE_EXCEEDED,
                    explanation=f"Recognition did not finish within {self.deadline_seconds:.0f}s",
                    states=[*trail, CascadeState.FAILED],
                    processing_ms=int((time.monotonic() - started) * 1000),
                )
            except Exception:
                diagnostic_id = uuid4().hex[:12]
                logger.exception(
                    "Request %s failed unexpectedly (diagnostic %s)",
                    request.request_id,
                    diagnostic_id,
                )
                failure = RecognitionFailure(
                    request_id=request.request_id,
                    reason=FailureReason.UNEXPECTED,
                    explanation="Recognition failed unexpectedly",
                    diagnostic_id=diagnostic_id,
                    states=[*trail, CascadeState.FAILED],
                    processing_ms=int((time.monotonic() - started) * 1000),
                )

        await self._notify(failure, observers)
        if self.audit is not None:
            self.audit.schedule(failure, request.requester_id)
        return failure

    async def _notify(self, failure: RecognitionFailure, observers: Sequence[Observer]) -> None:
        event = CascadeEvent(
            request_id=failure.request_id,
            state=CascadeState.FAILED,
            progress=1.0,
            detail={"failure": failure.to_dict()},
        )
        for observer in observers:
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Observer failed on failure event", exc_info=True)
