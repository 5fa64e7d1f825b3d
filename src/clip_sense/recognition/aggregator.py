"""Evidence Aggregator: fuse heterogeneous signals into ranked candidates.

Scoring:
    score(candidate) = Σ weight(kind) × strength over its signals
    confidence(candidate) = score / Σ score over all candidates

Non-positive strengths carry no evidence and are dropped. Summation uses
``math.fsum`` so the result does not depend on the order signals arrived in.
Ties on score prefer a candidate already in the local store, then fall back to
identity order so the ranking is deterministic.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Collection, Iterable

from clip_sense.recognition.evidence import Aggregation, Candidate, CandidateKey, Signal
from clip_sense.recognition.policy import SignalWeights

logger = logging.getLogger(__name__)


class EvidenceAggregator:
    """Groups signals by candidate identity and normalizes scores to confidences."""

    def __init__(self, weights: SignalWeights | None = None) -> None:
        self.weights = weights or SignalWeights()

    def aggregate(
        self,
        signals: Iterable[Signal],
        *,
        stored_identities: Collection[str] = (),
    ) -> Aggregation:
        """Rank candidates from the signals gathered so far.

        Args:
            signals: Signals produced this request. Failed capabilities produce none.
            stored_identities: Candidate identities known to exist in the local store.

        Returns:
            Aggregation whose candidates are sorted best first. Empty when no
            signal carried positive weight.
        """
        groups = self._group(s for s in signals if self._weighted(s) > 0)
        if not groups:
            return Aggregation()

        scores = {
            identity: math.fsum(self._weighted(s) for s in group)
            for identity, group in groups.items()
        }
        total = math.fsum(scores.values())
        if total <= 0:
            return Aggregation()

        candidates: list[Candidate] = []
        for identity, group in groups.items():
            record_id = next((s.record_id for s in group if s.record_id is not None), None)
            candidates.append(
                Candidate(
                    key=self._representative_key(group),
                    score=scores[identity],
                    confidence=scores[identity] / total,
                    signals=sorted(group, key=lambda s: (s.kind.value, -s.strength, s.detail)),
                    record_id=record_id,
                    in_store=record_id is not None or identity in stored_identities,
                )
            )

        candidates.sort(key=lambda c: (-c.score, not c.in_store, c.identity))
        logger.debug(
            "Aggregated %d candidates, top=%s (%.3f)",
            len(candidates),
            candidates[0].key,
            candidates[0].confidence,
        )
        return Aggregation(candidates=candidates, total_score=total)

    def _weighted(self, signal: Signal) -> float:
        return self.weights.weight(signal.kind) * signal.strength

    def _group(self, signals: Iterable[Signal]) -> dict[str, list[Signal]]:
        """Group by identity, folding title-only keys into a matching external id.

        When several external ids share a title and year, the smallest id takes
        the title-only signals, so the grouping does not depend on arrival order.
        """
        by_identity: dict[str, list[Signal]] = {}
        external_by_title: dict[str, str] = {}
        title_only: list[Signal] = []

        for signal in signals:
            if signal.key.external_id:
                by_identity.setdefault(signal.key.identity, []).append(signal)
                title = signal.key.title_identity
                current = external_by_title.get(title)
                if current is None or signal.key.identity < current:
                    external_by_title[title] = signal.key.identity
            else:
                title_only.append(signal)

        for signal in title_only:
            identity = external_by_title.get(signal.key.title_identity, signal.key.identity)
            by_identity.setdefault(identity, []).append(signal)
        return by_identity

    @staticmethod
    def _representative_key(group: list[Signal]) -> CandidateKey:
        keys = [s.key for s in group]
        with_id = [k for k in keys if k.external_id]
        pool = with_id or keys
        return min(pool, key=lambda k: (k.title, k.year or 0, k.external_id or ""))
