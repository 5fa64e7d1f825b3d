"""Second-opinion strategy used when the primary cascade is not confident.

``KeywordVoteStrategy`` looks for distinctive transcript words in the dialogue
corpus and lets stored titles vote by how many of those words their lines
contain. It is deliberately independent of the primary scoring: different
evidence (single words rather than phrases), different weighting and a
different confidence formula. When the corpus has nothing, it asks the
generative aggregator, passing the primary guess along as a hint.

The strategy only ever resolves against the local store.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from clip_sense.capabilities.ports import Capabilities
from clip_sense.config import settings
from clip_sense.models import MediaRecord
from clip_sense.recognition.cache_resolver import CacheResolver
from clip_sense.recognition.evidence import CandidateKey, SignalKind
from clip_sense.recognition.gathering import GatheredEvidence, guarded_call

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {
        "about", "would", "could", "should", "there", "their", "where", "which",
        "these", "those", "being", "going", "doing", "having", "think", "really",
        "something",
    }
)  # fmt: skip

MIN_KEYWORD_LENGTH = 5
MAX_KEYWORDS = 10
MAX_KEYWORD_SEARCHES = 6
KEYWORD_MATCH_LIMIT = 10

# Transcripts shorter than this are not voted on
MIN_TRANSCRIPT_LENGTH = 20

# ── Scoring ──────────────────────────────────────────────────────────────────
SCORE_PER_WORD = 0.15
MAX_WORD_SCORE = 0.9
MIN_MATCHED_WORDS = 3
MIN_VOTE_SCORE = 0.45
HINT_AGREEMENT_BOOST = 0.15
MAX_CONFIDENCE = 0.95

# Opinions below this are discarded
MIN_CONFIDENCE = 0.40

# A generative guess must reach this to be considered
MIN_GUESS_CONFIDENCE = 0.5


def extract_keywords(transcript: str) -> list[str]:
    """Distinctive words of a transcript in first-seen order.

    >>> extract_keywords("Hasta la vista, baby. I'll be back, I think. Really.")
    ['hasta', 'vista']
    """
    words = re.sub(r"[^\w\s]", " ", transcript.lower()).split()
    keywords = [w for w in words if len(w) >= MIN_KEYWORD_LENGTH and w not in STOP_WORDS]
    return list(dict.fromkeys(keywords))[:MAX_KEYWORDS]


@dataclass(frozen=True)
class StrategyHint:
    """The primary cascade's leading answer, offered for confirmation."""

    key: CandidateKey
    confidence: float
    record_id: int | None = None


@dataclass
class SecondOpinion:
    record: MediaRecord
    confidence: float
    signal_kinds: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    explanation: str = ""


class KeywordVoteStrategy:
    """Keyword voting over the dialogue corpus, with a generative fallback."""

    def __init__(
        self,
        capabilities: Capabilities,
        resolver: CacheResolver,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._caps = capabilities
        self._resolver = resolver
        self._timeout = timeout_seconds or settings.capability_timeout_seconds

    async def evaluate(
        self, evidence: GatheredEvidence, hint: StrategyHint | None = None
    ) -> SecondOpinion | None:
        """Form an independent opinion from already-gathered evidence.

        Returns:
            The opinion, or None when nothing reaches ``MIN_CONFIDENCE``
            (a validated hint is returned at its own confidence).
        """
        votes = await self._keyword_votes(evidence.transcript)
        if votes:
            return await self._from_votes(votes, hint)

        opinion = await self._generative_guess(evidence, hint)
        if opinion is not None:
            return opinion
        return await self._validate_hint(hint)

    async def _keyword_votes(self, transcript: str) -> dict[int, set[str]]:
        corpus = self._caps.corpus
        if corpus is None or len(transcript) <= MIN_TRANSCRIPT_LENGTH:
            return {}

        keywords = extract_keywords(transcript)
        if not keywords:
            return {}
        logger.debug("Keyword vote over %s", ", ".join(keywords[:5]))

        matched_words: dict[int, set[str]] = {}
        for word in keywords[:MAX_KEYWORD_SEARCHES]:
            matches = await guarded_call(
                "corpus",
                lambda w=word: corpus.search_keyword(w, limit=KEYWORD_MATCH_LIMIT),
                timeout=self._timeout,
            )
            for match in matches or []:
                text = match.matched_text.lower()
                words = matched_words.setdefault(match.record_id, set())
                words.update(kw for kw in keywords if kw in text)

        return {
            record_id: words
            for record_id, words in matched_words.items()
            if len(words) >= MIN_MATCHED_WORDS
            and min(len(words) * SCORE_PER_WORD, MAX_WORD_SCORE) >= MIN_VOTE_SCORE
        }

    async def _from_votes(
        self, votes: dict[int, set[str]], hint: StrategyHint | None
    ) -> SecondOpinion | None:
        scores: dict[int, float] = {}
        for record_id, words in votes.items():
            score = min(len(words) * SCORE_PER_WORD, MAX_WORD_SCORE)
            if hint is not None and hint.record_id == record_id:
                score = min(score + HINT_AGREEMENT_BOOST, MAX_CONFIDENCE)
            scores[record_id] = score

        # Ties go to the lower record id
        best_id = min(scores, key=lambda rid: (-scores[rid], rid))
        # One evidence kind, so confidence is the vote score itself
        signal_kinds = [SignalKind.DIALOGUE_TEXT.value]
        confidence = min(scores[best_id] / len(signal_kinds), MAX_CONFIDENCE)
        if confidence < MIN_CONFIDENCE:
            logger.info("Keyword vote best %s below threshold (%.2f)", best_id, confidence)
            return None

        record = await self._resolver.get(best_id)
        if record is None:
            return None
        matched = votes[best_id]
        return SecondOpinion(
            record=record,
            confidence=confidence,
            signal_kinds=signal_kinds,
            explanation=(
                f"{len(matched)} distinctive transcript words found in dialogue"
                f" ({', '.join(sorted(matched))})"
            ),
        )

    async def _generative_guess(
        self, evidence: GatheredEvidence, hint: StrategyHint | None
    ) -> SecondOpinion | None:
        aggregator = self._caps.aggregator
        if aggregator is None:
            return None
        bundle = evidence.bundle(hint=str(hint.key) if hint is not None else None)
        if bundle.is_empty:
            return None

        guess = await guarded_call(
            "aggregator", lambda: aggregator.aggregate(bundle), timeout=self._timeout
        )
        if guess is None or not guess.title or guess.confidence < MIN_GUESS_CONFIDENCE:
            return None

        record = await self._resolver.resolve(guess.title, guess.year)
        if record is None:
            logger.info("Generative second opinion %r not in store", guess.title)
            return None
        return SecondOpinion(
            record=record,
            confidence=min(guess.confidence, MAX_CONFIDENCE),
            signal_kinds=["generative"],
            explanation=guess.reasoning or f"Generative guess {guess.title!r}",
        )

    async def _validate_hint(self, hint: StrategyHint | None) -> SecondOpinion | None:
        if hint is None or hint.record_id is None:
            return None
        record = await self._resolver.get(hint.record_id)
        if record is None:
            return None
        return SecondOpinion(
            record=record,
            confidence=hint.confidence,
            signal_kinds=["hint_validated"],
            explanation="No independent evidence; primary answer re-validated",
        )
