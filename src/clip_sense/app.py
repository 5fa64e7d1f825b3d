"""FastAPI application for ClipSense.

Besides recognition itself the app serves stored records with their related
titles and watch providers, and exposes the governor's operational
surface: health with recommendations, raw stats and an emergency reset.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from clip_sense import __version__
from clip_sense.config import settings
from clip_sense.errors import CapabilityUnavailable, CapacityExceeded, QueueTimeout
from clip_sense.models import MediaRecord
from clip_sense.recognition import (
    CascadeEvent,
    FailureReason,
    MediaPayload,
    RecognitionFailure,
    RecognitionOutcome,
    RecognitionRequest,
    RelatedTitles,
    ThoroughnessPolicy,
    record_summary,
)
from clip_sense.runtime import Runtime

logger = logging.getLogger(__name__)

FAILURE_STATUS: dict[FailureReason, int] = {
    FailureReason.NOT_FOUND: 404,
    FailureReason.INVALID_MEDIA: 400,
    FailureReason.DEADLINE_EXCEEDED: 504,
    FailureReason.UNEXPECTED: 500,
}


class RecognizeBody(BaseModel):
    """A clip submitted for recognition, media base64-encoded."""

    audio: str | None = Field(default=None, description="Base64 audio track (wav, mp3, m4a)")
    frames: list[str] = Field(default_factory=list, description="Base64 still frames, in order")
    filename: str | None = Field(default=None, description="Original audio filename")
    requester_id: str | None = None
    priority: int = Field(default=0, description="Higher is admitted first")
    policy: str | None = Field(default=None, description="standard, fast or thorough")


def _decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=400,
            detail={"reason": "invalid_media", "explanation": f"{what} is not valid base64"},
        ) from None


def _to_request(body: RecognizeBody) -> tuple[RecognitionRequest, ThoroughnessPolicy | None]:
    media = MediaPayload(
        audio=_decode(body.audio, "audio") if body.audio else None,
        frames=tuple(_decode(f, f"frame {i}") for i, f in enumerate(body.frames)),
        filename=body.filename,
    )
    policy = None
    if body.policy:
        try:
            policy = ThoroughnessPolicy.by_name(body.policy)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
    request = RecognitionRequest(
        media=media, requester_id=body.requester_id, priority=body.priority
    )
    return request, policy


def _outcome_response(outcome: RecognitionOutcome) -> JSONResponse:
    if isinstance(outcome, RecognitionFailure):
        return JSONResponse(outcome.to_dict(), status_code=FAILURE_STATUS[outcome.reason])
    return JSONResponse(outcome.to_dict())


def _event_dict(event: CascadeEvent) -> dict[str, Any]:
    return {
        "request_id": event.request_id,
        "state": event.state.value,
        "progress": event.progress,
        **event.detail,
    }


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create the application.

    Args:
        runtime: Pre-built collaborators. When omitted the lifespan creates
            the tables and builds a runtime from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        if getattr(app.state, "runtime", None) is None:
            from clip_sense.db import init_db
            from clip_sense.runtime import build_runtime

            await init_db()
            app.state.runtime = build_runtime()
        app.state.runtime.governor.start()
        yield
        await app.state.runtime.aclose()

    app = FastAPI(
        title="ClipSense",
        description="Identify the movie or TV show a short video clip comes from",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    def current(request: Request) -> Runtime:
        return request.app.state.runtime

    # ── Error mapping ────────────────────────────────────────────────────────

    @app.exception_handler(CapacityExceeded)
    async def capacity_exceeded(request: Request, exc: CapacityExceeded) -> JSONResponse:
        return JSONResponse(
            {"error": str(exc), "retryable": True, "retry_after_seconds": exc.retry_after_seconds},
            status_code=503,
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    @app.exception_handler(QueueTimeout)
    async def queue_timeout(request: Request, exc: QueueTimeout) -> JSONResponse:
        retry_after = max(1, current(request).governor.get_stats().estimated_wait_for_new)
        return JSONResponse(
            {"error": str(exc), "retryable": True, "retry_after_seconds": retry_after},
            status_code=503,
            headers={"Retry-After": str(retry_after)},
        )

    @app.exception_handler(CapabilityUnavailable)
    async def capability_unavailable(request: Request, exc: CapabilityUnavailable) -> JSONResponse:
        return JSONResponse(
            {"error": str(exc), "capability": exc.capability, "retryable": False},
            status_code=503,
        )

    # ── Operations ───────────────────────────────────────────────────────────

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check with capacity, performance and rate-limit usage."""
        report = current(request).governor.health()
        stats = report.stats
        return {
            "status": "healthy" if report.healthy else "degraded",
            "version": __version__,
            "capacity": {
                "active": stats.active_requests,
                "max": stats.max_concurrent,
                "queued": stats.queue_length,
                "canAcceptRequests": report.can_accept_requests,
            },
            "performance": {
                "avgProcessingMs": round(stats.avg_processing_ms),
                "requestsLastMinute": stats.requests_last_minute,
                "estimatedWaitSeconds": stats.estimated_wait_for_new,
            },
            "rateLimits": {
                name: {
                    "current": usage.current,
                    "max": usage.max_calls,
                    "windowSeconds": usage.window_seconds,
                    "percentage": usage.percentage,
                }
                for name, usage in report.rate_limits.items()
            },
            "recommendations": report.recommendations,
        }

    @app.get("/stats")
    async def stats(request: Request) -> dict[str, Any]:
        return asdict(current(request).governor.get_stats())

    @app.post("/admin/reset")
    async def admin_reset(request: Request, secret: str = "") -> dict[str, Any]:
        """Drop every active slot and reject every waiter."""
        expected = settings.admin_secret
        if not expected or not hmac.compare_digest(secret.encode(), expected.encode()):
            raise HTTPException(status_code=401, detail="invalid admin secret")
        cleared = current(request).governor.force_reset()
        logger.warning("Governor reset via admin endpoint: %s", cleared)
        return {"status": "reset", **cleared}

    # ── Recognition ──────────────────────────────────────────────────────────

    @app.post("/recognize")
    async def recognize(request: Request, body: RecognizeBody) -> JSONResponse:
        recognition, policy = _to_request(body)
        outcome = await current(request).service.recognize(recognition, policy=policy)
        return _outcome_response(outcome)

    @app.post("/recognize/stream")
    async def recognize_stream(request: Request, body: RecognizeBody) -> StreamingResponse:
        """Server-sent events: one per cascade transition, the last carrying the outcome."""
        recognition, policy = _to_request(body)
        service = current(request).service

        async def events() -> AsyncIterator[str]:
            queue: asyncio.Queue[CascadeEvent | None] = asyncio.Queue()

            async def run() -> RecognitionOutcome:
                try:
                    return await service.recognize(
                        recognition, observers=[queue.put_nowait], policy=policy
                    )
                finally:
                    queue.put_nowait(None)

            task = asyncio.create_task(run())
            try:
                yield _sse(
                    {"request_id": recognition.request_id, "state": "queued", "progress": 0.0}
                )
                while (event := await queue.get()) is not None:
                    yield _sse(_event_dict(event))
                await task
            except (CapacityExceeded, QueueTimeout) as exc:
                yield _sse(
                    {
                        "request_id": recognition.request_id,
                        "state": "rejected",
                        "error": str(exc),
                        "retryable": True,
                    }
                )
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(events(), media_type="text/event-stream")

    # ── Records ──────────────────────────────────────────────────────────────

    async def stored(request: Request, record_id: int) -> MediaRecord:
        record = await current(request).resolver.get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"record {record_id} not found")
        return record

    def related_titles(request: Request) -> RelatedTitles:
        related = current(request).related
        if related is None:
            raise CapabilityUnavailable("metadata", "related titles are not configured")
        return related

    @app.get("/records/{record_id}")
    async def get_record(request: Request, record_id: int) -> dict[str, Any]:
        return record_summary(await stored(request, record_id))

    @app.get("/records/{record_id}/similar")
    async def get_similar(request: Request, record_id: int) -> dict[str, Any]:
        """Titles related to a stored record, cached on the record."""
        record = await stored(request, record_id)
        similar = await related_titles(request).similar(record)
        return {"record_id": record_id, "similar": [record_summary(r) for r in similar]}

    @app.get("/records/{record_id}/availability")
    async def get_availability(
        request: Request, record_id: int, country: str = "US"
    ) -> dict[str, Any]:
        """Where a stored record can be watched, cached per record."""
        record = await stored(request, record_id)
        availability = await related_titles(request).availability(record, country)
        return {"record_id": record_id, **availability.model_dump(mode="json")}

    return app
