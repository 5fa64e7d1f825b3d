"""Runtime wiring: build the recognition service from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clip_sense.capabilities import Capabilities
from clip_sense.clients import EmbeddingClient, OpenAITranscriber, TMDBClient, VisionClient
from clip_sense.config import settings
from clip_sense.corpus import SqlDialogueCorpus
from clip_sense.governor import AdmissionGovernor, RateLimiterRegistry
from clip_sense.inference import TitleAggregatorAgent
from clip_sense.recognition import (
    ActorVerifier,
    AuditLog,
    CacheResolver,
    CascadeController,
    RecognitionService,
    RelatedTitles,
    ThoroughnessPolicy,
)
from clip_sense.recognition.gathering import SignalGatherer
from clip_sense.recognition.strategies import KeywordVoteStrategy

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every long-lived collaborator of a running ClipSense process."""

    service: RecognitionService
    governor: AdmissionGovernor
    resolver: CacheResolver
    corpus: SqlDialogueCorpus
    audit: AuditLog
    related: RelatedTitles | None = None
    tmdb: TMDBClient | None = None

    async def aclose(self) -> None:
        await self.governor.stop()
        await self.audit.drain()
        if self.tmdb is not None:
            await self.tmdb.aclose()


def build_capabilities(
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiters: RateLimiterRegistry,
) -> tuple[Capabilities, SqlDialogueCorpus, TMDBClient | None]:
    """Instantiate the adapters that are configured.

    The metadata provider is left out when no TMDB key is set; every other
    capability talks to the configured LLM gateway.
    """
    vision = VisionClient(rate_limiters=rate_limiters)
    corpus = SqlDialogueCorpus(session_factory, EmbeddingClient(rate_limiters=rate_limiters))
    tmdb = TMDBClient(rate_limiters=rate_limiters) if settings.tmdb_api_key else None
    if tmdb is None:
        logger.warning("TMDB_API_KEY not set; metadata lookups disabled")

    capabilities = Capabilities(
        transcriber=OpenAITranscriber(rate_limiters=rate_limiters),
        scene_describer=vision,
        screen_text_reader=vision,
        actor_identifier=vision,
        aggregator=TitleAggregatorAgent(rate_limiters=rate_limiters),
        metadata=tmdb,
        corpus=corpus,
    )
    return capabilities, corpus, tmdb


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    policy: ThoroughnessPolicy | None = None,
) -> Runtime:
    """Assemble the governor, the cascade and their collaborators."""
    if session_factory is None:
        from clip_sense.db import async_session_factory

        session_factory = async_session_factory

    rate_limiters = RateLimiterRegistry.from_settings()
    capabilities, corpus, tmdb = build_capabilities(session_factory, rate_limiters)

    resolver = CacheResolver(session_factory)
    verifier = ActorVerifier(capabilities.metadata, resolver=resolver)
    audit = AuditLog(session_factory)
    controller = CascadeController(
        capabilities,
        resolver,
        verifier,
        policy=policy or ThoroughnessPolicy.standard(),
        gatherer=SignalGatherer(capabilities, resolver, verifier),
        second_opinion=KeywordVoteStrategy(capabilities, resolver),
        audit=audit,
    )
    governor = AdmissionGovernor(rate_limiters=rate_limiters)
    service = RecognitionService(governor, controller, audit=audit)
    return Runtime(
        service=service,
        governor=governor,
        resolver=resolver,
        corpus=corpus,
        audit=audit,
        related=RelatedTitles(resolver, capabilities.metadata),
        tmdb=tmdb,
    )
