"""
Turn raw evaluations into per-evaluator score sets.

Each evaluation is resolved component by component; the evaluator's overall
accuracy/quality is the mean of the component finals that exist (missing
components are excluded, not counted as zero). The evaluator's expertise
weight places them in one of four tiers.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from records import AGGREGATION_BLEND, FORM_BLEND, BlendWeights, EvaluatorProfile, RawEvaluation
from score_resolver import (
    AGREEMENT_BONUS_FACTOR,
    COMPONENT_KEYS,
    MIN_AUTOMATED_WEIGHT,
    ComponentScoreSet,
    confidence_weighted_score,
    resolve,
)
from score_stats import mean

# ---------------------------------------------------------------------------
# Expertise tiers
# ---------------------------------------------------------------------------

# Half-open [low, high) bands over the 1.0-5.0 expertise weight.
EXPERTISE_TIERS: dict[str, tuple[float, float]] = {
    "expert": (4.0, 5.1),
    "senior": (3.0, 4.0),
    "intermediate": (2.0, 3.0),
    "junior": (0.0, 2.0),
}

TIER_LABELS: dict[str, str] = {
    "expert": "Expert",
    "senior": "Senior",
    "intermediate": "Intermediate",
    "junior": "Junior",
}

DEFAULT_EXPERTISE_WEIGHT = 1.0


def expertise_tier(weight: float | None) -> str:
    w = DEFAULT_EXPERTISE_WEIGHT if weight is None else weight
    for tier, (low, high) in EXPERTISE_TIERS.items():
        if low <= w < high:
            return tier
    return "junior"


def clamp_weight(weight: float | None) -> float:
    """Expertise weight clamped to [1, 5]; missing counts as 1."""
    if weight is None:
        return DEFAULT_EXPERTISE_WEIGHT
    return max(1.0, min(5.0, float(weight)))


# ---------------------------------------------------------------------------
# Score sets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluatorScoreSet:
    evaluator_id: str
    profile: EvaluatorProfile
    tier: str
    components: dict[str, ComponentScoreSet]
    overall_accuracy: float | None = None
    overall_quality: float | None = None
    automated_mean: float | None = None
    user_rating_mean: float | None = None
    confidence_weighted_accuracy: float | None = None
    token: str | None = None
    timestamp: str | None = None
    paper_key: str | None = field(default=None, compare=False)

    @property
    def name(self) -> str:
        parts = [self.profile.first_name, self.profile.last_name]
        return " ".join(p for p in parts if p) or self.evaluator_id

    @property
    def expertise_weight(self) -> float:
        return clamp_weight(self.profile.expertise_weight)

    def overall(self, mode: str) -> float | None:
        return self.overall_accuracy if mode == "accuracy" else self.overall_quality

    def component_score(self, key: str, mode: str) -> float | None:
        comp = self.components.get(key)
        return comp.score(mode) if comp is not None else None

    def to_dict(self) -> dict:
        return {
            "evaluator_id": self.evaluator_id,
            "name": self.name,
            "role": self.profile.role,
            "tier": self.tier,
            "expertise_weight": self.profile.expertise_weight,
            "token": self.token,
            "timestamp": self.timestamp,
            "overall_accuracy": self.overall_accuracy,
            "overall_quality": self.overall_quality,
            "automated_mean": self.automated_mean,
            "user_rating_mean": self.user_rating_mean,
            "confidence_weighted_accuracy": self.confidence_weighted_accuracy,
            "components": {k: c.to_dict() for k, c in self.components.items()},
        }


def evaluator_id(profile: EvaluatorProfile, token: str | None, index: int) -> str:
    if profile.first_name or profile.last_name:
        return f"{profile.first_name or ''}_{profile.last_name or ''}"
    if profile.email:
        return profile.email
    if token:
        return token
    return f"evaluator-{index}"


def process_evaluation(
    evaluation: RawEvaluation,
    index: int = 0,
    paper_key: str | None = None,
    weights: BlendWeights = AGGREGATION_BLEND,
    form_weights: BlendWeights = FORM_BLEND,
    min_automated_weight: float = MIN_AUTOMATED_WEIGHT,
    agreement_bonus_factor: float = AGREEMENT_BONUS_FACTOR,
) -> EvaluatorScoreSet:
    """Resolve every component of one evaluation into an ``EvaluatorScoreSet``."""
    profile = evaluation.user_info
    components = {key: resolve(key, evaluation.component_blob(key), weights) for key in COMPONENT_KEYS}

    confidence_scores = [
        confidence_weighted_score(
            c.accuracy.automated,
            c.accuracy.user_rating,
            profile.expertise_weight,
            weights=form_weights,
            min_automated_weight=min_automated_weight,
            agreement_bonus_factor=agreement_bonus_factor,
        )["final_score"]
        for c in components.values()
        if c.accuracy.automated is not None and c.accuracy.user_rating is not None
    ]

    return EvaluatorScoreSet(
        evaluator_id=evaluator_id(profile, evaluation.token, index),
        profile=profile,
        tier=expertise_tier(profile.expertise_weight),
        components=components,
        overall_accuracy=mean(c.accuracy.final for c in components.values()),
        overall_quality=mean(c.quality.final for c in components.values()),
        automated_mean=mean(c.accuracy.automated for c in components.values()),
        user_rating_mean=mean(c.accuracy.user_rating for c in components.values()),
        confidence_weighted_accuracy=mean(confidence_scores),
        token=evaluation.token,
        timestamp=evaluation.submitted_at,
        paper_key=paper_key,
    )


def process_group(group, **kwargs) -> list[EvaluatorScoreSet]:
    """Score sets for every evaluation attached to a ``PaperGroup``."""
    return [
        process_evaluation(ev, index=i, paper_key=group.key, **kwargs)
        for i, ev in enumerate(group.evaluations)
    ]
