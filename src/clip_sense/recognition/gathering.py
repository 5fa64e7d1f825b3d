"""Signal gathering: run capabilities over a clip and turn their output into signals.

Every capability call is individually timed out. A missing, failing or
timed-out capability contributes zero signals and is recorded in
``GatheredEvidence.unavailable``; gathering itself never raises for a
capability failure.

A second pass over the same ``GatheredEvidence`` reuses every step the first
pass completed, so escalating from the fast plan to the deep plan only pays
for what is new.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from clip_sense.capabilities.ports import Capabilities
from clip_sense.capabilities.schemas import (
    ActorIdentification,
    CorpusMatch,
    EvidenceBundle,
    ScreenText,
)
from clip_sense.config import settings
from clip_sense.recognition.actor_verifier import ActorVerifier, is_plausible_actor
from clip_sense.recognition.cache_resolver import CacheResolver
from clip_sense.recognition.evidence import CandidateKey, Signal, SignalKind
from clip_sense.recognition.policy import GatheringPlan
from clip_sense.recognition.request import MediaPayload

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Dialogue phrase extraction ───────────────────────────────────────────────
MAX_KEY_PHRASES = 5
MIN_SENTENCE_LENGTH = 10
PHRASE_PREFIX_LENGTH = 50
SEARCH_PHRASE_LENGTH = 30
MIN_SEARCH_PHRASE_LENGTH = 10
PHRASE_MATCH_LIMIT = 3

# Embedding search result counts
DIALOGUE_EMBEDDING_LIMIT = 5
SCENE_MATCH_LIMIT = 5

# Shared-filmography works turned into signals
MAX_FILMOGRAPHY_SIGNALS = 3

# Transcripts shorter than this are too thin to search
MIN_TRANSCRIPT_LENGTH = 10


def extract_key_phrases(transcript: str) -> list[str]:
    """Pick short, punctuation-free sentence openings to search the corpus with.

    >>> extract_key_phrases("Why so serious? Let's put a smile on that face!")
    ['Why so serious', 'Lets put a smile on that face']
    """
    sentences = [s.strip() for s in re.split(r"[.!?]", transcript)]
    sentences = [s for s in sentences if len(s) > MIN_SENTENCE_LENGTH][:MAX_KEY_PHRASES]
    phrases: list[str] = []
    for sentence in sentences:
        phrase = re.sub(r"[^\w\s]", "", sentence[:PHRASE_PREFIX_LENGTH])
        phrase = phrase[:SEARCH_PHRASE_LENGTH].strip()
        if len(phrase) >= MIN_SEARCH_PHRASE_LENGTH:
            phrases.append(phrase)
    return phrases


async def guarded_call(
    capability: str,
    call: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    unavailable: set[str] | None = None,
) -> T | None:
    """Await one capability call under a timeout.

    Timeouts and errors are logged, the capability is added to
    ``unavailable``, and the caller gets None. Cancellation propagates.
    """
    try:
        return await asyncio.wait_for(call(), timeout=timeout)
    except TimeoutError:
        logger.warning("%s timed out after %.0fs", capability, timeout)
    except Exception:
        logger.warning("%s failed", capability, exc_info=True)
    if unavailable is not None:
        unavailable.add(capability)
    return None


def _match_key(match: CorpusMatch) -> CandidateKey:
    return CandidateKey(match.title, match.year, match.external_id)


@dataclass
class GatheredEvidence:
    """Everything gathered for one request, across passes."""

    transcript: str = ""
    scene_descriptions: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    screen_texts: list[ScreenText] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    actors: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    actor_confidence: float = 0.0
    signals: list[Signal] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    unavailable: set[str] = field(default_factory=set)  # pyright: ignore[reportUnknownVariableType]
    """Capabilities that were missing, failed or timed out."""

    completed: set[str] = field(default_factory=set)  # pyright: ignore[reportUnknownVariableType]
    """Gathering steps already run (successfully or not)."""

    @property
    def on_screen_title(self) -> str | None:
        return next((st.title for st in self.screen_texts if st.title), None)

    @property
    def plausible_actors(self) -> list[str]:
        return [actor for actor in self.actors if is_plausible_actor(actor)]

    @property
    def context_text(self) -> str:
        """Transcript, screen text and scene descriptions as one lowercase blob."""
        parts = [self.transcript, *(st.text for st in self.screen_texts), *self.scene_descriptions]
        return " ".join(p for p in parts if p).lower()

    def bundle(
        self, candidate_titles: Sequence[str] = (), *, hint: str | None = None
    ) -> EvidenceBundle:
        return EvidenceBundle(
            transcript=self.transcript,
            scene_descriptions=list(self.scene_descriptions),
            screen_text=[st.text for st in self.screen_texts if st.text],
            on_screen_title=self.on_screen_title,
            actors=self.plausible_actors,
            candidate_titles=list(candidate_titles),
            hint=hint,
        )


class SignalGatherer:
    """Runs a GatheringPlan against the available capabilities."""

    def __init__(
        self,
        capabilities: Capabilities,
        resolver: CacheResolver,
        verifier: ActorVerifier,
        *,
        timeout_seconds: float | None = None,
        dialogue_text_strength: float | None = None,
        on_screen_title_strength: float | None = None,
        actor_filmography_strength: float | None = None,
    ) -> None:
        self._caps = capabilities
        self._resolver = resolver
        self._verifier = verifier
        self._timeout = timeout_seconds or settings.capability_timeout_seconds
        self._dialogue_text_strength = dialogue_text_strength or settings.strength_dialogue_text
        self._on_screen_title_strength = (
            on_screen_title_strength or settings.strength_on_screen_title
        )
        self._actor_filmography_strength = (
            actor_filmography_strength or settings.strength_actor_filmography
        )

    async def gather(
        self,
        media: MediaPayload,
        plan: GatheringPlan,
        evidence: GatheredEvidence | None = None,
    ) -> GatheredEvidence:
        """Run one gathering pass.

        Args:
            media: The decoded clip.
            plan: Which signals to gather and from which frames.
            evidence: Evidence from an earlier pass to extend in place.

        Returns:
            The (possibly extended) evidence.
        """
        evidence = evidence or GatheredEvidence()

        # Stage 1: raw capability output (audio and frames in parallel)
        await asyncio.gather(
            self._transcribe(media, plan, evidence),
            self._analyze_frames(media, plan, evidence),
        )

        # Stage 2: corpus, store and filmography lookups on that output
        await asyncio.gather(
            self._dialogue_text(plan, evidence),
            self._dialogue_embedding(plan, evidence),
            self._scene_matches(evidence),
            self._on_screen_titles(evidence),
            self._actor_filmography(plan, evidence),
        )

        logger.info(
            "Gathered %d signals (%s unavailable)",
            len(evidence.signals),
            ", ".join(sorted(evidence.unavailable)) or "none",
        )
        return evidence

    # ── Stage 1 ──────────────────────────────────────────────────────────────

    async def _transcribe(
        self, media: MediaPayload, plan: GatheringPlan, evidence: GatheredEvidence
    ) -> None:
        if not plan.transcribe or "transcript" in evidence.completed or not media.audio:
            return
        evidence.completed.add("transcript")
        transcriber = self._caps.transcriber
        if transcriber is None:
            evidence.unavailable.add("transcriber")
            return
        audio = media.audio
        text = await self._call(
            "transcriber",
            lambda: transcriber.transcribe(audio, filename=media.filename),
            evidence,
        )
        evidence.transcript = (text or "").strip()
        logger.debug("Transcript: %r", evidence.transcript[:120])

    async def _analyze_frames(
        self, media: MediaPayload, plan: GatheringPlan, evidence: GatheredEvidence
    ) -> None:
        steps: list[Callable[[], Awaitable[None]]] = []
        for index in plan.screen_text_frames:
            steps.extend(self._frame_step("screen", index, media, evidence))
        for index in plan.scene_frames:
            steps.extend(self._frame_step("scene", index, media, evidence))
        for index in plan.actor_frames:
            steps.extend(self._frame_step("actors", index, media, evidence))

        batch_size = max(1, plan.frame_batch_size)
        for start in range(0, len(steps), batch_size):
            await asyncio.gather(*(step() for step in steps[start : start + batch_size]))

    def _frame_step(
        self, step: str, index: int, media: MediaPayload, evidence: GatheredEvidence
    ) -> list[Callable[[], Awaitable[None]]]:
        key = f"{step}:{index}"
        image = media.frame(index)
        if image is None or key in evidence.completed:
            return []
        evidence.completed.add(key)

        async def run() -> None:
            if step == "screen":
                await self._read_screen(image, evidence)
            elif step == "scene":
                await self._describe_scene(image, evidence)
            else:
                await self._identify_actors(image, evidence)

        return [run]

    async def _read_screen(self, image: bytes, evidence: GatheredEvidence) -> None:
        reader = self._caps.screen_text_reader
        if reader is None:
            evidence.unavailable.add("screen_text_reader")
            return
        result = await self._call("screen_text_reader", lambda: reader.read(image), evidence)
        if result is not None and (result.text or result.title):
            evidence.screen_texts.append(result)

    async def _describe_scene(self, image: bytes, evidence: GatheredEvidence) -> None:
        describer = self._caps.scene_describer
        if describer is None:
            evidence.unavailable.add("scene_describer")
            return
        description = await self._call(
            "scene_describer", lambda: describer.describe(image), evidence
        )
        if description and description.strip():
            evidence.scene_descriptions.append(description.strip())

    async def _identify_actors(self, image: bytes, evidence: GatheredEvidence) -> None:
        identifier = self._caps.actor_identifier
        if identifier is None:
            evidence.unavailable.add("actor_identifier")
            return
        result: ActorIdentification | None = await self._call(
            "actor_identifier", lambda: identifier.identify(image), evidence
        )
        if result is None or not result.names:
            return
        for name in result.names:
            name = name.strip()
            if name and name.lower() not in {a.lower() for a in evidence.actors}:
                evidence.actors.append(name)
        evidence.actor_confidence = max(evidence.actor_confidence, result.confidence)

    # ── Stage 2 ──────────────────────────────────────────────────────────────

    async def _dialogue_text(self, plan: GatheringPlan, evidence: GatheredEvidence) -> None:
        if not plan.dialogue_text or "dialogue_text" in evidence.completed:
            return
        if len(evidence.transcript) <= MIN_TRANSCRIPT_LENGTH:
            return
        evidence.completed.add("dialogue_text")
        corpus = self._caps.corpus
        if corpus is None:
            evidence.unavailable.add("corpus")
            return

        for phrase in extract_key_phrases(evidence.transcript):
            matches = await self._call(
                "corpus",
                lambda phrase=phrase: corpus.search_phrase(phrase, limit=PHRASE_MATCH_LIMIT),
                evidence,
            )
            for match in matches or []:
                evidence.signals.append(
                    Signal(
                        kind=SignalKind.DIALOGUE_TEXT,
                        key=_match_key(match),
                        strength=self._dialogue_text_strength,
                        record_id=match.record_id,
                        detail=phrase,
                    )
                )

    async def _dialogue_embedding(self, plan: GatheringPlan, evidence: GatheredEvidence) -> None:
        if not plan.dialogue_embedding or "dialogue_embedding" in evidence.completed:
            return
        if len(evidence.transcript) <= MIN_TRANSCRIPT_LENGTH:
            return
        evidence.completed.add("dialogue_embedding")
        corpus = self._caps.corpus
        if corpus is None:
            evidence.unavailable.add("corpus")
            return

        transcript = evidence.transcript
        matches = await self._call(
            "corpus",
            lambda: corpus.search_dialogue(transcript, limit=DIALOGUE_EMBEDDING_LIMIT),
            evidence,
        )
        for match in matches or []:
            if match.score < settings.dialogue_min_similarity:
                continue
            evidence.signals.append(
                Signal(
                    kind=SignalKind.DIALOGUE_EMBEDDING,
                    key=_match_key(match),
                    strength=match.score,
                    record_id=match.record_id,
                    detail=match.matched_text[:80],
                )
            )

    async def _scene_matches(self, evidence: GatheredEvidence) -> None:
        pending = [
            (i, d)
            for i, d in enumerate(evidence.scene_descriptions)
            if f"scene_match:{i}" not in evidence.completed
        ]
        if not pending:
            return
        corpus = self._caps.corpus
        if corpus is None:
            evidence.unavailable.add("corpus")
            return

        for index, description in pending:
            evidence.completed.add(f"scene_match:{index}")
            matches = await self._call(
                "corpus",
                lambda d=description: corpus.search_scenes(d, limit=SCENE_MATCH_LIMIT),
                evidence,
            )
            for match in matches or []:
                if match.score < settings.scene_min_similarity:
                    continue
                evidence.signals.append(
                    Signal(
                        kind=SignalKind.VISUAL,
                        key=_match_key(match),
                        strength=match.score,
                        record_id=match.record_id,
                        detail=description[:80],
                    )
                )

    async def _on_screen_titles(self, evidence: GatheredEvidence) -> None:
        for index, screen in enumerate(evidence.screen_texts):
            key = f"title_match:{index}"
            if not screen.title or key in evidence.completed:
                continue
            evidence.completed.add(key)
            record = await self._call(
                "store", lambda t=screen.title: self._resolver.resolve(t), evidence
            )
            if record is None:
                continue
            evidence.signals.append(
                Signal(
                    kind=SignalKind.ON_SCREEN_TEXT,
                    key=CandidateKey(record.title, record.year, record.external_id),
                    strength=self._on_screen_title_strength,
                    record_id=record.record_id,
                    detail=screen.title,
                )
            )

    async def _actor_filmography(self, plan: GatheringPlan, evidence: GatheredEvidence) -> None:
        if not plan.actor_filmography or "filmography" in evidence.completed:
            return
        actors = evidence.plausible_actors
        if len(actors) < 2:
            return
        evidence.completed.add("filmography")

        works = await self._call(
            "metadata", lambda: self._verifier.find_shared_works(actors), evidence
        )
        queried = min(len(actors), 3)
        for work in (works or [])[:MAX_FILMOGRAPHY_SIGNALS]:
            record = await self._call(
                "store", lambda w=work: self._resolver.get_by_external_id(w.external_id), evidence
            )
            evidence.signals.append(
                Signal(
                    kind=SignalKind.ACTOR_IDENTITY,
                    key=CandidateKey(work.title, work.year, work.external_id),
                    strength=self._actor_filmography_strength * len(work.matched_actors) / queried,
                    record_id=record.record_id if record is not None else None,
                    detail=", ".join(work.matched_actors),
                )
            )

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _call(
        self,
        capability: str,
        call: Callable[[], Awaitable[T]],
        evidence: GatheredEvidence,
    ) -> T | None:
        return await guarded_call(
            capability, call, timeout=self._timeout, unavailable=evidence.unavailable
        )
