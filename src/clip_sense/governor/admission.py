"""Admission Governor: bounds concurrent recognition cycles.

The governor owns every piece of cross-request mutable state (active slots,
the waiting queue, processing-time history and the rate limiter registry).
All mutation happens synchronously on the event loop, with no ``await``
inside a critical section, so each update is atomic with respect to other
requests.

Queue discipline:
- A request is granted immediately while fewer than ``max_concurrent`` slots
  are held and nobody is waiting.
- Otherwise it waits, ordered by priority (higher first) and then FIFO.
- A full queue rejects new requests outright with ``CapacityExceeded``.
- A waiter not promoted within the queue timeout gets ``QueueTimeout``.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import math
import time
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from uuid import uuid4

from clip_sense.config import settings
from clip_sense.errors import CapacityExceeded, QueueTimeout
from clip_sense.governor.rate_limit import Clock, RateLimiterRegistry, RateUsage

logger = logging.getLogger(__name__)

# Window for the requests-last-minute statistic
REQUEST_RATE_WINDOW_SECONDS = 60.0

# ── Health thresholds ────────────────────────────────────────────────────────
RATE_USAGE_WARNING = 0.8
RATE_USAGE_UNHEALTHY_PERCENT = 90
QUEUE_LENGTH_WARNING = 10
QUEUE_LENGTH_UNHEALTHY = 20
SLOW_PROCESSING_MS = 45_000.0


@dataclass
class QueueSlot:
    """A concurrency ticket held by one running recognition request."""

    slot_id: str
    request_id: str
    priority: int
    acquired_at: float
    """Monotonic clock reading at grant time."""

    queue_position: int = 0
    """Position the request was first placed at (0 = admitted immediately)."""

    estimated_wait_seconds: int = 0
    """Wait estimate reported when the request was queued."""


@dataclass
class _Waiter:
    request_id: str
    priority: int
    enqueued_at: float
    queue_position: int
    estimated_wait_seconds: int
    future: asyncio.Future[QueueSlot] = field(repr=False)


@dataclass(frozen=True)
class GovernorStats:
    """Read-only view of the governor's state."""

    queue_length: int
    active_requests: int
    max_concurrent: int
    avg_processing_ms: float
    requests_last_minute: int
    estimated_wait_for_new: int
    stale_reclaimed: int


@dataclass(frozen=True)
class SystemHealth:
    """Governor stats plus rate-limit usage and operator recommendations."""

    healthy: bool
    stats: GovernorStats
    can_accept_requests: bool
    rate_limits: dict[str, RateUsage]
    recommendations: list[str]


class AdmissionGovernor:
    """Grant, queue, and release concurrency slots for recognition requests."""

    def __init__(
        self,
        *,
        max_concurrent: int | None = None,
        max_queue_size: int | None = None,
        queue_timeout_seconds: float | None = None,
        max_request_seconds: float | None = None,
        sweep_interval_seconds: float | None = None,
        history_size: int | None = None,
        default_processing_ms: float | None = None,
        rate_limiters: RateLimiterRegistry | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.max_concurrent = max_concurrent or settings.governor_max_concurrent
        self.max_queue_size = max_queue_size or settings.governor_max_queue_size
        self.queue_timeout_seconds = (
            queue_timeout_seconds or settings.governor_queue_timeout_seconds
        )
        self.max_request_seconds = max_request_seconds or settings.governor_max_request_seconds
        self.sweep_interval_seconds = (
            sweep_interval_seconds or settings.governor_sweep_interval_seconds
        )
        self.default_processing_ms = (
            default_processing_ms or settings.governor_default_processing_ms
        )
        self.rate_limiters = rate_limiters or RateLimiterRegistry.from_settings()
        self._clock = clock

        self._active: dict[str, QueueSlot] = {}
        self._queue: list[_Waiter] = []
        self._processing_ms: deque[float] = deque(
            maxlen=history_size or settings.governor_history_size
        )
        self._grant_times: deque[float] = deque()
        self._stale_reclaimed = 0
        self._anon_ids = itertools.count(1)
        self._sweeper: asyncio.Task[None] | None = None

    # ── Acquire / release ────────────────────────────────────────────────────

    async def request_slot(self, request_id: str | None = None, priority: int = 0) -> QueueSlot:
        """Acquire a slot, waiting in the queue if necessary.

        Args:
            request_id: Identifier of the requesting cycle (generated if omitted).
            priority: Higher values are promoted earlier.

        Returns:
            The granted slot. Its ``queue_position`` is 0 for an immediate grant.

        Raises:
            CapacityExceeded: The queue is full, or was force-reset while waiting.
            QueueTimeout: Not promoted within the queue timeout.
        """
        request_id = request_id or f"anon-{next(self._anon_ids)}"

        if len(self._queue) >= self.max_queue_size:
            retry_after = max(1, self._estimate_wait(len(self._queue) + 1))
            raise CapacityExceeded(
                f"Server busy: {len(self._queue)} requests in queue",
                retry_after_seconds=retry_after,
            )

        if len(self._active) < self.max_concurrent and not self._queue:
            return self._grant(request_id, priority)

        waiter = self._enqueue(request_id, priority)
        logger.info(
            "Request %s queued at position %d, estimated wait %ds",
            request_id,
            waiter.queue_position,
            waiter.estimated_wait_seconds,
        )

        try:
            await asyncio.wait({waiter.future}, timeout=self.queue_timeout_seconds)
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

        if not waiter.future.done():
            self._remove_waiter(waiter)
            waited = self._clock() - waiter.enqueued_at
            logger.warning("Request %s timed out in queue after %.1fs", request_id, waited)
            raise QueueTimeout(
                "Request timed out in queue, please try again", waited_seconds=waited
            )

        # Raises CapacityExceeded if the queue was force-reset
        return waiter.future.result()

    def release_slot(self, slot: QueueSlot, processing_ms: float | None = None) -> bool:
        """Release a held slot and promote waiters.

        Returns:
            False if the slot was already released or reclaimed (no-op).
        """
        if self._active.pop(slot.slot_id, None) is None:
            logger.debug("Slot %s for %s already released", slot.slot_id, slot.request_id)
            return False
        if processing_ms is not None and processing_ms > 0:
            self._processing_ms.append(processing_ms)
        self._promote()
        return True

    @contextlib.asynccontextmanager
    async def admit(
        self, request_id: str | None = None, priority: int = 0
    ) -> AsyncIterator[QueueSlot]:
        """Hold a slot for the duration of the block; released on every exit path."""
        slot = await self.request_slot(request_id, priority)
        started = self._clock()
        try:
            yield slot
        finally:
            self.release_slot(slot, processing_ms=(self._clock() - started) * 1000)

    # ── Stale sweep / reset ──────────────────────────────────────────────────

    def sweep_stale(self) -> list[QueueSlot]:
        """Reclaim slots held longer than ``max_request_seconds``.

        The original holder is not notified; its later release is a no-op.
        """
        now = self._clock()
        stale = [
            slot
            for slot in self._active.values()
            if now - slot.acquired_at > self.max_request_seconds
        ]
        for slot in stale:
            del self._active[slot.slot_id]
            self._stale_reclaimed += 1
            logger.warning(
                "Reclaimed stale slot %s held by %s for %.0fs",
                slot.slot_id,
                slot.request_id,
                now - slot.acquired_at,
            )
        if stale:
            self._promote()
        return stale

    def start(self) -> None:
        """Start the periodic stale sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="governor-sweep")

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    def force_reset(self) -> dict[str, int]:
        """Emergency clear of all slots and waiters.

        Queued waiters are rejected with a retryable ``CapacityExceeded``.

        Returns:
            Counts of cleared active slots and rejected waiters.
        """
        waiters, self._queue = self._queue, []
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(
                    CapacityExceeded("Queue was reset, please try again", retry_after_seconds=1)
                )
        cleared = len(self._active)
        self._active.clear()
        logger.warning("Governor force reset: %d active, %d queued cleared", cleared, len(waiters))
        return {"active_cleared": cleared, "waiters_rejected": len(waiters)}

    # ── Introspection ────────────────────────────────────────────────────────

    def get_stats(self) -> GovernorStats:
        now = self._clock()
        self._prune_grant_times(now)
        return GovernorStats(
            queue_length=len(self._queue),
            active_requests=len(self._active),
            max_concurrent=self.max_concurrent,
            avg_processing_ms=self._average_processing_ms(),
            requests_last_minute=len(self._grant_times),
            estimated_wait_for_new=self._estimate_wait(len(self._queue) + 1),
            stale_reclaimed=self._stale_reclaimed,
        )

    def can_accept_request(self) -> bool:
        return len(self._queue) < self.max_queue_size

    def queue_position(self, request_id: str) -> int:
        """1-based position of a waiting request, or 0 if it is not queued."""
        for index, waiter in enumerate(self._queue):
            if waiter.request_id == request_id:
                return index + 1
        return 0

    def health(self) -> SystemHealth:
        """Summarize capacity and rate-limit pressure for operators."""
        stats = self.get_stats()
        rate_limits = self.rate_limiters.usage()
        recommendations: list[str] = []

        for name, usage in rate_limits.items():
            if usage.current / usage.max_calls > RATE_USAGE_WARNING:
                recommendations.append(f"{name} API at {usage.percentage}% capacity")
        if stats.queue_length > QUEUE_LENGTH_WARNING:
            recommendations.append("High queue length - consider scaling up")
        if stats.avg_processing_ms > SLOW_PROCESSING_MS:
            recommendations.append("Slow processing times - check API latency")

        healthy = stats.queue_length < QUEUE_LENGTH_UNHEALTHY and all(
            usage.percentage < RATE_USAGE_UNHEALTHY_PERCENT for usage in rate_limits.values()
        )
        return SystemHealth(
            healthy=healthy,
            stats=stats,
            can_accept_requests=self.can_accept_request(),
            rate_limits=rate_limits,
            recommendations=recommendations,
        )

    # ── Internals ────────────────────────────────────────────────────────────

    def _grant(
        self,
        request_id: str,
        priority: int,
        *,
        queue_position: int = 0,
        estimated_wait_seconds: int = 0,
    ) -> QueueSlot:
        now = self._clock()
        slot = QueueSlot(
            slot_id=uuid4().hex,
            request_id=request_id,
            priority=priority,
            acquired_at=now,
            queue_position=queue_position,
            estimated_wait_seconds=estimated_wait_seconds,
        )
        self._active[slot.slot_id] = slot
        self._grant_times.append(now)
        return slot

    def _enqueue(self, request_id: str, priority: int) -> _Waiter:
        # Insert before the first waiter with strictly lower priority
        index = next(
            (i for i, waiter in enumerate(self._queue) if waiter.priority < priority),
            len(self._queue),
        )
        position = index + 1
        waiter = _Waiter(
            request_id=request_id,
            priority=priority,
            enqueued_at=self._clock(),
            queue_position=position,
            estimated_wait_seconds=self._estimate_wait(position),
            future=asyncio.get_running_loop().create_future(),
        )
        self._queue.insert(index, waiter)
        return waiter

    def _promote(self) -> None:
        while len(self._active) < self.max_concurrent and self._queue:
            waiter = self._queue.pop(0)
            if waiter.future.done():
                continue
            slot = self._grant(
                waiter.request_id,
                waiter.priority,
                queue_position=waiter.queue_position,
                estimated_wait_seconds=waiter.estimated_wait_seconds,
            )
            waiter.future.set_result(slot)
            logger.info("Request %s proceeding from queue", waiter.request_id)

    def _remove_waiter(self, waiter: _Waiter) -> None:
        with contextlib.suppress(ValueError):
            self._queue.remove(waiter)

    def _abandon(self, waiter: _Waiter) -> None:
        """Clean up after a waiter whose caller was cancelled."""
        if waiter in self._queue:
            self._queue.remove(waiter)
            return
        future = waiter.future
        if future.done() and not future.cancelled() and future.exception() is None:
            # Promoted between the wake-up and the cancellation
            self.release_slot(future.result())

    def _average_processing_ms(self) -> float:
        if not self._processing_ms:
            return self.default_processing_ms
        return math.fsum(self._processing_ms) / len(self._processing_ms)

    def _estimate_wait(self, position: int) -> int:
        cycles = math.ceil(position / self.max_concurrent)
        return round(cycles * self._average_processing_ms() / 1000)

    def _prune_grant_times(self, now: float) -> None:
        cutoff = now - REQUEST_RATE_WINDOW_SECONDS
        while self._grant_times and self._grant_times[0] <= cutoff:
            self._grant_times.popleft()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep_stale()
            self._prune_grant_times(self._clock())
