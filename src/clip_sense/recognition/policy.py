"""Decision policy: confidence thresholds, signal weights and gathering plans.

Every threshold the cascade compares against lives here, so a decision can be
explained by pointing at one named constant.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from clip_sense.recognition.evidence import SignalKind

# Fast-path confidence that, with a local cache hit, ends the cascade at once
INSTANT_ACCEPT_CONFIDENCE = 0.92

# At or above this the leading candidate is accepted without a second opinion
TRUST_CONFIDENCE = 0.40

# Minimum aggregate actor confidence for the actor-only fallback
ACTOR_FALLBACK_FLOOR = 0.30

# Confidence ceiling for an actor-only fallback result
ACTOR_FALLBACK_CAP = 0.70


@dataclass(frozen=True)
class ConfidenceThresholds:
    instant_accept: float = INSTANT_ACCEPT_CONFIDENCE
    trust: float = TRUST_CONFIDENCE
    actor_fallback_floor: float = ACTOR_FALLBACK_FLOOR
    actor_fallback_cap: float = ACTOR_FALLBACK_CAP


@dataclass(frozen=True)
class SignalWeights:
    """Multipliers applied to signal strengths before scoring."""

    dialogue_text: float = 1.0
    dialogue_embedding: float = 1.0
    visual: float = 1.0
    on_screen_text: float = 1.0
    actor_identity: float = 1.0

    def weight(self, kind: SignalKind) -> float:
        return float(getattr(self, kind.value))


@dataclass(frozen=True)
class GatheringPlan:
    """Which signals one gathering pass collects, and from which frames."""

    transcribe: bool = True
    dialogue_text: bool = True
    dialogue_embedding: bool = False
    screen_text_frames: tuple[int, ...] = ()
    scene_frames: tuple[int, ...] = ()
    actor_frames: tuple[int, ...] = ()
    actor_filmography: bool = False
    frame_batch_size: int = 3
    """Frames analyzed concurrently per batch."""


FAST_PLAN = GatheringPlan(screen_text_frames=(0,))

DEEP_PLAN = GatheringPlan(
    dialogue_embedding=True,
    screen_text_frames=(0, 2, 5),
    scene_frames=(1, 3),
    actor_frames=(0, 1, 2),
    actor_filmography=True,
)


@dataclass(frozen=True)
class ThoroughnessPolicy:
    """Parameterizes one cascade run.

    ``fast_plan`` and ``deep_plan`` may each be ``None`` to skip that phase.
    """

    name: str
    fast_plan: GatheringPlan | None = FAST_PLAN
    deep_plan: GatheringPlan | None = DEEP_PLAN
    allow_reconcile: bool = True
    thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    weights: SignalWeights = field(default_factory=SignalWeights)

    @classmethod
    def standard(cls) -> ThoroughnessPolicy:
        """Fast pass, deep pass when needed, second opinion on low confidence."""
        return cls(name="standard")

    @classmethod
    def fast_only(cls) -> ThoroughnessPolicy:
        """Single cheap pass; no deep analysis and no second opinion."""
        return cls(name="fast", deep_plan=None, allow_reconcile=False)

    @classmethod
    def thorough(cls) -> ThoroughnessPolicy:
        """Skip the fast pass and gather everything up front."""
        return cls(name="thorough", fast_plan=None)

    @classmethod
    def by_name(cls, name: str) -> ThoroughnessPolicy:
        presets = {"standard": cls.standard, "fast": cls.fast_only, "thorough": cls.thorough}
        try:
            return presets[name]()
        except KeyError:
            raise ValueError(
                f"unknown policy {name!r}, expected one of {sorted(presets)}"
            ) from None
