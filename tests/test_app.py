"""Tests for the FastAPI application."""

import asyncio
import base64
import json
from collections.abc import AsyncGenerator, Callable

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clip_sense import __version__
from clip_sense.app import create_app
from clip_sense.capabilities import Capabilities
from clip_sense.capabilities.schemas import ExternalTitle, WatchProvider
from clip_sense.config import settings
from clip_sense.corpus import SqlDialogueCorpus
from clip_sense.governor import AdmissionGovernor
from clip_sense.recognition import (
    ActorVerifier,
    AuditLog,
    CacheResolver,
    CandidateKey,
    CascadeController,
    RecognitionService,
    RelatedTitles,
    Signal,
    SignalKind,
)
from clip_sense.runtime import Runtime
from conftest import MakeRecord
from stubs import Pass, PresetGatherer, StubMetadata, StubSecondOpinion

BuildRuntime = Callable[..., Runtime]


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


CLIP = {"audio": b64(b"audio"), "frames": [b64(b"frame")]}


@pytest.fixture
def build_runtime(
    session_factory: async_sessionmaker[AsyncSession], resolver: CacheResolver
) -> BuildRuntime:
    def _build(
        *passes: Pass,
        governor: AdmissionGovernor | None = None,
        metadata: StubMetadata | None = None,
    ) -> Runtime:
        audit = AuditLog(session_factory)
        controller = CascadeController(
            Capabilities(),
            resolver,
            ActorVerifier(None),
            gatherer=PresetGatherer(*passes),  # type: ignore[arg-type]
            second_opinion=StubSecondOpinion(),  # type: ignore[arg-type]
            audit=audit,
        )
        governor = governor or AdmissionGovernor(max_concurrent=3, max_queue_size=5)
        return Runtime(
            service=RecognitionService(governor, controller, audit=audit, deadline_seconds=5.0),
            governor=governor,
            resolver=resolver,
            corpus=SqlDialogueCorpus(session_factory),
            audit=audit,
            related=RelatedTitles(resolver, metadata),
        )

    return _build


@pytest.fixture
async def client(build_runtime: BuildRuntime) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(build_runtime())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def heat_pass(make_record: MakeRecord) -> Pass:
    heat = await make_record("Heat", 1995)
    key = CandidateKey(heat.title, heat.year, heat.external_id)
    return Pass(signals=[Signal(SignalKind.DIALOGUE_TEXT, key, 2.0, heat.record_id)])


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"] == __version__
    assert body["capacity"] == {"active": 0, "max": 3, "queued": 0, "canAcceptRequests": True}
    assert set(body["rateLimits"]) == {"chat", "embedding", "metadata", "transcription", "vision"}
    assert body["rateLimits"]["vision"]["percentage"] == 0


async def test_stats(client: AsyncClient) -> None:
    response = await client.get("/stats")
    assert response.status_code == 200
    body = response.json()
    assert body["active_requests"] == 0
    assert body["queue_length"] == 0
    assert body["max_concurrent"] == 3


async def test_admin_reset_disabled_without_secret(
    client: AsyncClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "admin_secret", "")
    response = await client.post("/admin/reset", params={"secret": ""})
    assert response.status_code == 401


async def test_admin_reset(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "admin_secret", "s3cret")

    wrong = await client.post("/admin/reset", params={"secret": "guess"})
    assert wrong.status_code == 401

    response = await client.post("/admin/reset", params={"secret": "s3cret"})
    assert response.status_code == 200
    assert response.json() == {"status": "reset", "active_cleared": 0, "waiters_rejected": 0}


async def test_recognize(build_runtime: BuildRuntime, make_record: MakeRecord) -> None:
    app = create_app(build_runtime(await heat_pass(make_record)))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/recognize", json={**CLIP, "requester_id": "web"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "done"
    assert body["record"]["title"] == "Heat"
    assert body["strategy"] == "instant"
    assert body["states"] == ["init", "fast_lookup", "accept", "done"]


async def test_recognize_not_found(client: AsyncClient) -> None:
    response = await client.post("/recognize", json=CLIP)
    assert response.status_code == 404
    assert response.json()["reason"] == "not_found"


async def test_recognize_empty_clip(client: AsyncClient) -> None:
    response = await client.post("/recognize", json={})
    assert response.status_code == 400
    assert response.json()["reason"] == "invalid_media"


async def test_recognize_bad_base64(client: AsyncClient) -> None:
    response = await client.post("/recognize", json={"frames": ["not base64!"]})
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "invalid_media"


async def test_recognize_unknown_policy(client: AsyncClient) -> None:
    response = await client.post("/recognize", json={**CLIP, "policy": "exhaustive"})
    assert response.status_code == 400
    assert "unknown policy" in response.json()["detail"]


async def test_recognize_when_full(build_runtime: BuildRuntime) -> None:
    governor = AdmissionGovernor(max_concurrent=1, max_queue_size=1)
    await governor.request_slot("holder")
    waiter = asyncio.create_task(governor.request_slot("waiting"))
    for _ in range(10):
        await asyncio.sleep(0)

    app = create_app(build_runtime(governor=governor))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/recognize", json=CLIP)

    assert response.status_code == 503
    assert int(response.headers["Retry-After"]) >= 1
    assert response.json()["retryable"] is True

    waiter.cancel()
    await asyncio.gather(waiter, return_exceptions=True)


async def test_recognize_stream(build_runtime: BuildRuntime, make_record: MakeRecord) -> None:
    app = create_app(build_runtime(await heat_pass(make_record)))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/recognize/stream", json=CLIP)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(line.removeprefix("data: "))
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]
    assert [e["state"] for e in events] == ["queued", "init", "fast_lookup", "accept", "done"]
    assert events[-1]["result"]["record"]["title"] == "Heat"


async def test_get_record(client: AsyncClient, make_record: MakeRecord) -> None:
    heat = await make_record("Heat", 1995, external_id="tmdb:movie:949")
    response = await client.get(f"/records/{heat.record_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Heat"
    assert body["external_id"] == "tmdb:movie:949"
    assert body["media_type"] == "movie"


async def test_get_record_missing(client: AsyncClient) -> None:
    response = await client.get("/records/99999")
    assert response.status_code == 404


async def test_similar_and_availability(
    build_runtime: BuildRuntime, make_record: MakeRecord
) -> None:
    heat = await make_record("Heat", 1995, external_id="tmdb:movie:949")
    metadata = StubMetadata(
        similar={"tmdb:movie:949": [ExternalTitle(external_id="tmdb:movie:8487", title="Ronin")]},
        availability={
            ("tmdb:movie:949", "GB"): [WatchProvider(name="Netflix", offer="subscription")]
        },
    )
    app = create_app(build_runtime(metadata=metadata))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        similar = await client.get(f"/records/{heat.record_id}/similar")
        again = await client.get(f"/records/{heat.record_id}/similar")
        availability = await client.get(
            f"/records/{heat.record_id}/availability", params={"country": "gb"}
        )

    assert similar.status_code == 200
    assert [r["title"] for r in similar.json()["similar"]] == ["Ronin"]
    assert again.json() == similar.json()
    assert metadata.count("get_similar") == 1

    assert availability.status_code == 200
    body = availability.json()
    assert body["record_id"] == heat.record_id
    assert body["country"] == "GB"
    assert body["providers"] == [{"name": "Netflix", "offer": "subscription", "logo_url": None}]


async def test_similar_without_metadata(client: AsyncClient, make_record: MakeRecord) -> None:
    heat = await make_record("Heat", 1995)
    response = await client.get(f"/records/{heat.record_id}/similar")
    assert response.status_code == 503
    body = response.json()
    assert body["capability"] == "metadata"
    assert body["retryable"] is False


async def test_availability_missing_record(client: AsyncClient) -> None:
    response = await client.get("/records/99999/availability")
    assert response.status_code == 404
