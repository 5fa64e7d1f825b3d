"""Recognition decision engine: evidence, cascade and resolution."""

from clip_sense.recognition.actor_verifier import ActorVerifier, CorrectionRule, VerificationResult
from clip_sense.recognition.aggregator import EvidenceAggregator
from clip_sense.recognition.audit import AuditLog
from clip_sense.recognition.cache_resolver import CacheResolver, normalize_title
from clip_sense.recognition.cascade import CascadeController
from clip_sense.recognition.evidence import (
    Aggregation,
    Candidate,
    CandidateKey,
    Signal,
    SignalKind,
)
from clip_sense.recognition.outcome import (
    CascadeEvent,
    CascadeState,
    FailureReason,
    RecognitionFailure,
    RecognitionOutcome,
    RecognitionResult,
    Strategy,
    record_summary,
)
from clip_sense.recognition.policy import ConfidenceThresholds, SignalWeights, ThoroughnessPolicy
from clip_sense.recognition.related import RelatedTitles
from clip_sense.recognition.request import MediaPayload, RecognitionRequest
from clip_sense.recognition.service import RecognitionService

__all__ = [
    "ActorVerifier",
    "Aggregation",
    "AuditLog",
    "CacheResolver",
    "Candidate",
    "CandidateKey",
    "CascadeController",
    "CascadeEvent",
    "CascadeState",
    "ConfidenceThresholds",
    "CorrectionRule",
    "EvidenceAggregator",
    "FailureReason",
    "MediaPayload",
    "RecognitionFailure",
    "RecognitionOutcome",
    "RecognitionRequest",
    "RecognitionResult",
    "RecognitionService",
    "RelatedTitles",
    "Signal",
    "SignalKind",
    "SignalWeights",
    "Strategy",
    "ThoroughnessPolicy",
    "VerificationResult",
    "normalize_title",
    "record_summary",
]
