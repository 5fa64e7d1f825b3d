"""Exception hierarchy for ClipSense.

Admission errors (``CapacityExceeded``, ``QueueTimeout``) reach the caller and
are retryable. The remaining errors are raised and handled inside the
recognition cascade; none of them escape a decision cycle.
"""

from __future__ import annotations


class ClipSenseError(Exception):
    """Base class for all ClipSense errors."""

    retryable: bool = False


class CapacityExceeded(ClipSenseError):
    """The admission queue is full, or was force-reset while waiting."""

    retryable = True

    def __init__(self, message: str, *, retry_after_seconds: int = 30) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class QueueTimeout(ClipSenseError):
    """A queued request was not admitted before the queue timeout."""

    retryable = True

    def __init__(self, message: str, *, waited_seconds: float) -> None:
        super().__init__(message)
        self.waited_seconds = waited_seconds


class CapabilityUnavailable(ClipSenseError):
    """A recognition capability is unconfigured, failing or timed out."""

    def __init__(self, capability: str, message: str = "") -> None:
        super().__init__(message or f"capability unavailable: {capability}")
        self.capability = capability


class NoSignal(ClipSenseError):
    """Aggregation produced no candidates."""


class LowConfidence(ClipSenseError):
    """The leading candidate is below the trust threshold."""

    def __init__(self, confidence: float) -> None:
        super().__init__(f"confidence {confidence:.2f} below trust threshold")
        self.confidence = confidence


class VerificationMismatch(ClipSenseError):
    """Claimed actors do not appear in the candidate's cast."""

    def __init__(self, external_id: str, missing: list[str]) -> None:
        super().__init__(f"{external_id}: actors not in cast: {', '.join(missing)}")
        self.external_id = external_id
        self.missing = missing


class StoreWriteConflict(ClipSenseError):
    """A concurrent insert collided and the winning row could not be read back."""

    def __init__(self, external_id: str) -> None:
        super().__init__(f"write conflict for {external_id} with no readable winner")
        self.external_id = external_id
