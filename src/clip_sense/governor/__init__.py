"""Admission control and upstream rate limiting."""

from clip_sense.governor.admission import (
    AdmissionGovernor,
    GovernorStats,
    QueueSlot,
    SystemHealth,
)
from clip_sense.governor.rate_limit import (
    CapabilityKind,
    RateLimiterRegistry,
    RateUsage,
    SlidingWindowRateLimiter,
)

__all__ = [
    "AdmissionGovernor",
    "CapabilityKind",
    "GovernorStats",
    "QueueSlot",
    "RateLimiterRegistry",
    "RateUsage",
    "SlidingWindowRateLimiter",
    "SystemHealth",
]
