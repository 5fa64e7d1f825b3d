"""Sliding-window rate limiters for upstream capabilities.

Each outbound call to a rate-limited service (vision, chat, transcription,
embeddings, metadata) first awaits ``acquire()`` on that service's limiter.
Limiters never reject: a caller blocks until the window has headroom, and
waiters are served in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from clip_sense.config import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Slack added after the oldest timestamp leaves the window
WINDOW_SLACK_SECONDS = 0.1


class CapabilityKind(str, Enum):
    """Upstream services that each get their own rate window."""

    VISION = "vision"
    CHAT = "chat"
    TRANSCRIPTION = "transcription"
    EMBEDDING = "embedding"
    METADATA = "metadata"


@dataclass(frozen=True)
class RateUsage:
    """Snapshot of a limiter's current window."""

    current: int
    max_calls: int
    window_seconds: float

    @property
    def percentage(self) -> int:
        if self.max_calls <= 0:
            return 100
        return round(self.current / self.max_calls * 100)


class SlidingWindowRateLimiter:
    """Allow at most ``max_calls`` acquisitions in any ``window_seconds`` span."""

    def __init__(
        self,
        name: str,
        max_calls: int,
        window_seconds: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_calls < 1:
            raise ValueError(f"max_calls must be >= 1, got {max_calls}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0, got {window_seconds}")
        self.name = name
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until the window has headroom, then record a call."""
        # asyncio.Lock wakes waiters in FIFO order
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_calls:
                    self._timestamps.append(now)
                    return
                wait = self._timestamps[0] + self.window_seconds - now + WINDOW_SLACK_SECONDS
                logger.info("Rate limit hit for %s, waiting %.2fs", self.name, wait)
                await self._sleep(max(wait, 0.0))

    def get_usage(self) -> RateUsage:
        self._prune(self._clock())
        return RateUsage(
            current=len(self._timestamps),
            max_calls=self.max_calls,
            window_seconds=self.window_seconds,
        )

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()


class RateLimiterRegistry:
    """One limiter per capability kind."""

    def __init__(self, limiters: dict[str, SlidingWindowRateLimiter] | None = None) -> None:
        self._limiters: dict[str, SlidingWindowRateLimiter] = dict(limiters or {})

    @classmethod
    def from_settings(cls) -> RateLimiterRegistry:
        """Build the registry from configured per-capability limits."""
        limits = {
            CapabilityKind.VISION: (
                settings.rate_limit_vision_calls,
                settings.rate_limit_vision_window_seconds,
            ),
            CapabilityKind.CHAT: (
                settings.rate_limit_chat_calls,
                settings.rate_limit_chat_window_seconds,
            ),
            CapabilityKind.TRANSCRIPTION: (
                settings.rate_limit_transcription_calls,
                settings.rate_limit_transcription_window_seconds,
            ),
            CapabilityKind.EMBEDDING: (
                settings.rate_limit_embedding_calls,
                settings.rate_limit_embedding_window_seconds,
            ),
            CapabilityKind.METADATA: (
                settings.rate_limit_metadata_calls,
                settings.rate_limit_metadata_window_seconds,
            ),
        }
        return cls(
            {
                kind.value: SlidingWindowRateLimiter(kind.value, calls, window)
                for kind, (calls, window) in limits.items()
            }
        )

    def get(self, kind: CapabilityKind | str) -> SlidingWindowRateLimiter:
        name = kind.value if isinstance(kind, CapabilityKind) else kind
        try:
            return self._limiters[name]
        except KeyError:
            raise KeyError(f"no rate limiter registered for {name!r}") from None

    async def acquire(self, kind: CapabilityKind | str) -> None:
        await self.get(kind).acquire()

    def usage(self) -> dict[str, RateUsage]:
        return {name: limiter.get_usage() for name, limiter in sorted(self._limiters.items())}
