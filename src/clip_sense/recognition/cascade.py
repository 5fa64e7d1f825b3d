"""Cascade Controller: the recognition decision state machine.

    INIT → FAST_LOOKUP → (ACCEPT | DEEP_ANALYSIS) → ACTOR_CHECK → RESOLVE
         → (ACCEPT | RECONCILE) → DONE | FAILED

- FAST_LOOKUP gathers the cheapest signals. A leading candidate at or above
  the instant-accept confidence that already has a local record ends the
  cascade immediately: no deep analysis, no external lookups.
- DEEP_ANALYSIS gathers the full signal set, reusing the fast pass.
- With no candidates at all, a generative guess (capped) and then an
  actor-only fallback are tried before failing.
- ACTOR_CHECK verifies two or more identified actors against the leading
  candidate's cast and applies a correction rule on mismatch.
- RESOLVE looks the candidate up locally, then makes exactly one external
  metadata fetch and creates the record if absent.
- RECONCILE asks the second-opinion strategy when confidence is below the
  trust threshold or nothing could be resolved.

Every collaborator failure degrades to "no signal from that source". The
controller never retries a capability within one request.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from clip_sense.capabilities.ports import Capabilities
from clip_sense.capabilities.schemas import ExternalTitle, TitleGuess
from clip_sense.config import settings
from clip_sense.errors import LowConfidence, NoSignal, VerificationMismatch
from clip_sense.models import MediaRecord
from clip_sense.recognition.actor_verifier import ActorVerifier
from clip_sense.recognition.aggregator import EvidenceAggregator
from clip_sense.recognition.audit import AuditLog, describe_outcome
from clip_sense.recognition.cache_resolver import CacheResolver
from clip_sense.recognition.evidence import Aggregation, CandidateKey, SignalKind
from clip_sense.recognition.gathering import GatheredEvidence, SignalGatherer, guarded_call
from clip_sense.recognition.outcome import (
    STATE_PROGRESS,
    Alternate,
    CascadeEvent,
    CascadeState,
    FailureReason,
    RecognitionFailure,
    RecognitionOutcome,
    RecognitionResult,
    Strategy,
)
from clip_sense.recognition.policy import ThoroughnessPolicy
from clip_sense.recognition.request import RecognitionRequest
from clip_sense.recognition.strategies import KeywordVoteStrategy, StrategyHint

logger = logging.getLogger(__name__)

Observer = Callable[[CascadeEvent], Awaitable[None] | None]

# Runner-up candidates reported with an outcome
MAX_ALTERNATES = 3

_UNKNOWN_TITLES = {"", "unknown", "n/a", "none"}


@dataclass
class _Lead:
    """The answer the cascade is currently working with."""

    key: CandidateKey
    confidence: float
    signal_kinds: list[str]
    strategy: Strategy
    explanation: str
    record_id: int | None = None


@dataclass
class _Run:
    request: RecognitionRequest
    observers: Sequence[Observer]
    started: float
    evidence: GatheredEvidence = field(default_factory=GatheredEvidence)
    states: list[CascadeState] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    alternates: list[Alternate] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    correction: str | None = None
    prefetched: ExternalTitle | None = None
    """Metadata fetched during ACTOR_CHECK, reused by RESOLVE."""

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def _kinds(kinds: Sequence[SignalKind]) -> list[str]:
    return [kind.value for kind in kinds]


def _usable_guess(guess: TitleGuess | None) -> bool:
    return (
        guess is not None
        and guess.title is not None
        and guess.title.strip().lower() not in _UNKNOWN_TITLES
        and guess.confidence > 0
    )


class CascadeController:
    """Drives one recognition request from INIT to DONE or FAILED."""

    def __init__(
        self,
        capabilities: Capabilities,
        resolver: CacheResolver,
        verifier: ActorVerifier,
        *,
        policy: ThoroughnessPolicy | None = None,
        gatherer: SignalGatherer | None = None,
        second_opinion: KeywordVoteStrategy | None = None,
        audit: AuditLog | None = None,
        generative_guess_cap: float | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._caps = capabilities
        self._resolver = resolver
        self._verifier = verifier
        self.policy = policy or ThoroughnessPolicy.standard()
        self._timeout = timeout_seconds or settings.capability_timeout_seconds
        self._gatherer = gatherer or SignalGatherer(
            capabilities, resolver, verifier, timeout_seconds=self._timeout
        )
        self._second_opinion = second_opinion or KeywordVoteStrategy(
            capabilities, resolver, timeout_seconds=self._timeout
        )
        self._aggregator = EvidenceAggregator(self.policy.weights)
        self._audit = audit
        self._guess_cap = generative_guess_cap or settings.generative_guess_cap

    def with_policy(self, policy: ThoroughnessPolicy) -> CascadeController:
        """A controller sharing every collaborator but using another policy."""
        return CascadeController(
            self._caps,
            self._resolver,
            self._verifier,
            policy=policy,
            gatherer=self._gatherer,
            second_opinion=self._second_opinion,
            audit=self._audit,
            generative_guess_cap=self._guess_cap,
            timeout_seconds=self._timeout,
        )

    async def run(
        self,
        request: RecognitionRequest,
        *,
        observers: Sequence[Observer] = (),
    ) -> RecognitionOutcome:
        """Recognize the title in a request's media.

        The caller must already hold an admission slot.

        Args:
            request: The request to decide.
            observers: Callbacks invoked on every state transition.

        Returns:
            A RecognitionResult, or a RecognitionFailure explaining why not.
        """
        run = _Run(request=request, observers=observers, started=time.monotonic())
        thresholds = self.policy.thresholds

        await self._enter(run, CascadeState.INIT, policy=self.policy.name)
        if request.media.is_empty:
            return await self._fail(run, FailureReason.INVALID_MEDIA, "No audio or frames in clip")

        aggregation = Aggregation()

        # ── FAST_LOOKUP ──────────────────────────────────────────────────────
        if self.policy.fast_plan is not None:
            await self._enter(run, CascadeState.FAST_LOOKUP)
            await self._gatherer.gather(request.media, self.policy.fast_plan, run.evidence)
            aggregation = self._aggregator.aggregate(run.evidence.signals)
            top = aggregation.top
            if top is not None and top.confidence >= thresholds.instant_accept:
                record = await self._local_record(top.key, top.record_id)
                if record is not None:
                    await self._enter(run, CascadeState.ACCEPT, title=record.title)
                    run.alternates = self._alternates(aggregation)
                    return await self._finish(
                        run,
                        record,
                        confidence=top.confidence,
                        signal_kinds=_kinds(top.signal_kinds),
                        strategy=Strategy.INSTANT,
                        explanation=self._explain(aggregation),
                        cached=True,
                    )

        # ── DEEP_ANALYSIS ────────────────────────────────────────────────────
        if self.policy.deep_plan is not None:
            await self._enter(run, CascadeState.DEEP_ANALYSIS)
            await self._gatherer.gather(request.media, self.policy.deep_plan, run.evidence)
            aggregation = self._aggregator.aggregate(run.evidence.signals)

        run.alternates = self._alternates(aggregation)
        try:
            lead = self._primary_lead(aggregation)
        except NoSignal as exc:
            logger.info("Request %s: %s", request.request_id, exc)
            lead = await self._without_candidates(run)
            if lead is None:
                return await self._fail(
                    run, FailureReason.NOT_FOUND, "No signal identified a title"
                )

        # ── ACTOR_CHECK ──────────────────────────────────────────────────────
        actors = run.evidence.plausible_actors
        if len(actors) >= 2 and lead.strategy != Strategy.ACTOR_FALLBACK:
            await self._enter(run, CascadeState.ACTOR_CHECK, actors=actors)
            lead = await self._check_actors(run, lead, actors)

        # ── RESOLVE ──────────────────────────────────────────────────────────
        await self._enter(
            run,
            CascadeState.RESOLVE,
            title=lead.key.title,
            year=lead.key.year,
            confidence=round(lead.confidence, 4),
        )
        record, cached = await self._resolve(run, lead)

        if record is not None and lead.confidence >= thresholds.trust:
            await self._enter(run, CascadeState.ACCEPT, title=record.title)
            return await self._finish(
                run,
                record,
                confidence=lead.confidence,
                signal_kinds=lead.signal_kinds,
                strategy=lead.strategy,
                explanation=lead.explanation,
                cached=cached,
            )
        if record is not None:
            logger.info("Request %s: %s", request.request_id, LowConfidence(lead.confidence))

        # ── RECONCILE ────────────────────────────────────────────────────────
        if self.policy.allow_reconcile:
            await self._enter(run, CascadeState.RECONCILE, confidence=round(lead.confidence, 4))
            return await self._reconcile(run, lead, record, cached)

        if record is not None:
            return await self._finish(
                run,
                record,
                confidence=lead.confidence,
                signal_kinds=lead.signal_kinds,
                strategy=lead.strategy,
                explanation=lead.explanation,
                cached=cached,
                low_confidence=True,
            )
        return await self._fail(
            run, FailureReason.NOT_FOUND, f"Could not resolve {lead.key} to a known title"
        )

    # ── Phases ───────────────────────────────────────────────────────────────

    def _primary_lead(self, aggregation: Aggregation) -> _Lead:
        top = aggregation.top
        if top is None:
            raise NoSignal("no candidate from any signal")
        return _Lead(
            key=top.key,
            confidence=top.confidence,
            signal_kinds=_kinds(top.signal_kinds),
            strategy=Strategy.PRIMARY,
            explanation=self._explain(aggregation),
            record_id=top.record_id,
        )

    async def _without_candidates(self, run: _Run) -> _Lead | None:
        """Generative guess, then actor-only fallback."""
        evidence = run.evidence
        thresholds = self.policy.thresholds

        aggregator = self._caps.aggregator
        bundle = evidence.bundle()
        if aggregator is not None and not bundle.is_empty:
            guess = await guarded_call(
                "aggregator",
                lambda: aggregator.aggregate(bundle),
                timeout=self._timeout,
                unavailable=evidence.unavailable,
            )
            if guess is not None and _usable_guess(guess):
                assert guess.title is not None
                run.alternates = [
                    Alternate(a.title, a.year, min(a.confidence, self._guess_cap))
                    for a in guess.alternatives[:MAX_ALTERNATES]
                ]
                return _Lead(
                    key=CandidateKey(guess.title.strip(), guess.year),
                    confidence=min(guess.confidence, self._guess_cap),
                    signal_kinds=["generative"],
                    strategy=Strategy.GENERATIVE,
                    explanation=guess.reasoning or "Generative guess from gathered evidence",
                )

        actors = evidence.plausible_actors
        if actors and evidence.actor_confidence >= thresholds.actor_fallback_floor:
            works = await guarded_call(
                "metadata",
                lambda: self._verifier.find_shared_works(actors),
                timeout=self._timeout,
                unavailable=evidence.unavailable,
            )
            if works:
                best = works[0]
                return _Lead(
                    key=CandidateKey(best.title, best.year, best.external_id),
                    confidence=min(thresholds.actor_fallback_cap, evidence.actor_confidence),
                    signal_kinds=[SignalKind.ACTOR_IDENTITY.value],
                    strategy=Strategy.ACTOR_FALLBACK,
                    explanation=(
                        f"Actor-only match: {', '.join(best.matched_actors)} "
                        f"appear in {best.title}"
                    ),
                )
        return None

    async def _check_actors(self, run: _Run, lead: _Lead, actors: list[str]) -> _Lead:
        record = await self._local_record(lead.key, lead.record_id)
        external_id = lead.key.external_id or (record.external_id if record else None)

        metadata = self._caps.metadata
        if external_id is None and metadata is not None:
            found = await guarded_call(
                "metadata",
                lambda: metadata.search_title(lead.key.title, lead.key.year),
                timeout=self._timeout,
                unavailable=run.evidence.unavailable,
            )
            if found:
                run.prefetched = found[0]
                external_id = found[0].external_id
        if external_id is None:
            logger.info("Cannot verify actors for %s: no external id", lead.key)
            return lead

        lead = replace(
            lead,
            key=CandidateKey(lead.key.title, lead.key.year, external_id),
            record_id=record.record_id if record is not None else lead.record_id,
        )
        verification = await self._verifier.verify(external_id, actors, record=record)
        if verification.verified:
            return lead

        mismatch = VerificationMismatch(external_id, verification.missing_actors)
        logger.info("Request %s: %s", run.request.request_id, mismatch)
        rule = self._verifier.correct(actors, run.evidence.context_text)
        if rule is None or rule.resolved.identity == lead.key.identity:
            return lead

        run.correction = rule.name
        run.prefetched = None
        kinds = sorted({*lead.signal_kinds, SignalKind.ACTOR_IDENTITY.value})
        return _Lead(
            key=rule.resolved,
            confidence=lead.confidence,
            signal_kinds=kinds,
            strategy=lead.strategy,
            explanation=(
                f"{lead.key} does not feature {', '.join(verification.missing_actors)}; "
                f"corrected to {rule.resolved} by rule {rule.name}"
            ),
        )

    async def _resolve(self, run: _Run, lead: _Lead) -> tuple[MediaRecord | None, bool]:
        """Local lookup first, then one external fetch and create-if-absent.

        Returns:
            The record (or None) and whether it already existed locally.
        """
        record = await self._local_record(lead.key, lead.record_id)
        if record is not None:
            return record, True

        external = run.prefetched
        metadata = self._caps.metadata
        if external is None and metadata is not None:
            key = lead.key
            if key.external_id:
                external = await guarded_call(
                    "metadata",
                    lambda: metadata.get_by_external_id(key.external_id or ""),
                    timeout=self._timeout,
                    unavailable=run.evidence.unavailable,
                )
            else:
                found = await guarded_call(
                    "metadata",
                    lambda: metadata.search_title(key.title, key.year),
                    timeout=self._timeout,
                    unavailable=run.evidence.unavailable,
                )
                external = found[0] if found else None
        if external is None:
            logger.info("No metadata for %s", lead.key)
            return None, False

        return await self._resolver.create_if_absent(external), False

    async def _reconcile(
        self, run: _Run, lead: _Lead, record: MediaRecord | None, cached: bool
    ) -> RecognitionOutcome:
        thresholds = self.policy.thresholds
        hint = StrategyHint(
            key=lead.key,
            confidence=lead.confidence,
            record_id=record.record_id if record is not None else None,
        )
        second = await self._second_opinion.evaluate(run.evidence, hint)

        if second is not None and second.confidence > thresholds.trust:
            return await self._finish(
                run,
                second.record,
                confidence=second.confidence,
                signal_kinds=second.signal_kinds,
                strategy=Strategy.SECOND_OPINION,
                explanation=second.explanation,
                cached=True,
            )

        primary_wins = record is not None and (
            second is None or lead.confidence >= second.confidence
        )
        if primary_wins:
            assert record is not None
            return await self._finish(
                run,
                record,
                confidence=lead.confidence,
                signal_kinds=lead.signal_kinds,
                strategy=lead.strategy,
                explanation=lead.explanation,
                cached=cached,
                low_confidence=True,
            )
        if second is not None:
            return await self._finish(
                run,
                second.record,
                confidence=second.confidence,
                signal_kinds=second.signal_kinds,
                strategy=Strategy.SECOND_OPINION,
                explanation=second.explanation,
                cached=True,
                low_confidence=True,
            )
        return await self._fail(
            run,
            FailureReason.NOT_FOUND,
            f"Could not resolve {lead.key} and no second opinion was found",
        )

    # ── Terminal states ──────────────────────────────────────────────────────

    async def _finish(
        self,
        run: _Run,
        record: MediaRecord,
        *,
        confidence: float,
        signal_kinds: list[str],
        strategy: Strategy,
        explanation: str,
        cached: bool,
        low_confidence: bool = False,
    ) -> RecognitionResult:
        run.states.append(CascadeState.DONE)
        result = RecognitionResult(
            request_id=run.request.request_id,
            record=record,
            confidence=confidence,
            signal_kinds=signal_kinds,
            explanation=explanation,
            strategy=strategy,
            low_confidence=low_confidence,
            cached=cached,
            correction=run.correction,
            alternates=[a for a in run.alternates if a.title != record.title],
            states=list(run.states),
            processing_ms=run.elapsed_ms,
        )
        logger.info("Request %s: %s", run.request.request_id, describe_outcome(result))
        await self._notify(run, CascadeState.DONE, result=result.to_dict())
        self._schedule_audit(run, result)
        return result

    async def _fail(
        self, run: _Run, reason: FailureReason, explanation: str
    ) -> RecognitionFailure:
        run.states.append(CascadeState.FAILED)
        failure = RecognitionFailure(
            request_id=run.request.request_id,
            reason=reason,
            explanation=explanation,
            alternates=list(run.alternates),
            states=list(run.states),
            processing_ms=run.elapsed_ms,
        )
        logger.info("Request %s: %s", run.request.request_id, describe_outcome(failure))
        await self._notify(run, CascadeState.FAILED, failure=failure.to_dict())
        self._schedule_audit(run, failure)
        return failure

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _local_record(self, key: CandidateKey, record_id: int | None) -> MediaRecord | None:
        if record_id is not None:
            record = await self._resolver.get(record_id)
            if record is not None:
                return record
        return await self._resolver.resolve_key(key)

    async def _enter(self, run: _Run, state: CascadeState, **detail: Any) -> None:
        run.states.append(state)
        logger.debug("Request %s -> %s", run.request.request_id, state.value)
        await self._notify(run, state, **detail)

    async def _notify(self, run: _Run, state: CascadeState, **detail: Any) -> None:
        event = CascadeEvent(
            request_id=run.request.request_id,
            state=state,
            progress=STATE_PROGRESS[state],
            detail=detail,
        )
        for observer in run.observers:
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Cascade observer failed on %s", state.value, exc_info=True)

    def _schedule_audit(self, run: _Run, outcome: RecognitionOutcome) -> None:
        if self._audit is None:
            return
        try:
            self._audit.schedule(outcome, run.request.requester_id)
        except Exception:
            logger.warning("Could not schedule audit for %s", run.request.request_id, exc_info=True)

    @staticmethod
    def _alternates(aggregation: Aggregation) -> list[Alternate]:
        return [
            Alternate(c.key.title, c.key.year, c.confidence)
            for c in aggregation.candidates[1 : 1 + MAX_ALTERNATES]
        ]

    @staticmethod
    def _explain(aggregation: Aggregation) -> str:
        top = aggregation.top
        if top is None:
            return ""
        kinds = ", ".join(_kinds(top.signal_kinds))
        return (
            f"{top.key}: {top.signal_count} signal(s) from {kinds}, "
            f"score {top.score:.2f} of {aggregation.total_score:.2f}"
        )
