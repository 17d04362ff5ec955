"""
Per-component score resolution.

Each of the five extraction components stores its accuracy/quality numbers in
a different JSON shape. ``resolve()`` dispatches on the component key to a pure
strategy that validates the blob into its typed record and returns a uniform
``ComponentScoreSet``:

    accuracy:  {automated, user_rating, final}
    quality:   {automated, user_rating, final}
    ground_truth_comparison: {reference_value, extracted_value, match_score}

A missing blob, or one whose shape matches no known layout, resolves to a
fully-null set; it never raises.

Human ratings on the 1-5 scale are normalized to [0, 1] via (rating - 1) / 4
before they are mixed with automated scores. Ratings that the export already
delivers as ``normalizedRating`` are used as-is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from records import (
    AGGREGATION_BLEND,
    FORM_BLEND,
    BlendWeights,
    ContentBlob,
    MetadataBlob,
    ResearchFieldBlob,
    ResearchProblemBlob,
    TemplateBlob,
)
from score_stats import mean

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COMPONENT_KEYS = ("metadata", "research_field", "research_problem", "template", "content")

COMPONENT_LABELS: dict[str, str] = {
    "metadata": "Metadata",
    "research_field": "Research Field",
    "research_problem": "Research Problem",
    "template": "Template",
    "content": "Content",
}

MIN_AUTOMATED_WEIGHT = 0.1
AGREEMENT_BONUS_FACTOR = 0.1

# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoreTriple:
    automated: float | None = None
    user_rating: float | None = None
    final: float | None = None

    def to_dict(self) -> dict:
        return {"automated": self.automated, "user_rating": self.user_rating, "final": self.final}


@dataclass(frozen=True)
class GroundTruthComparison:
    reference_value: Any = None
    extracted_value: Any = None
    match_score: float | None = None

    @property
    def has_comparison(self) -> bool:
        return self.reference_value is not None or self.extracted_value is not None

    def to_dict(self) -> dict:
        return {
            "reference_value": self.reference_value,
            "extracted_value": self.extracted_value,
            "match_score": self.match_score,
            "has_comparison": self.has_comparison,
        }


@dataclass(frozen=True)
class ComponentScoreSet:
    accuracy: ScoreTriple = field(default_factory=ScoreTriple)
    quality: ScoreTriple = field(default_factory=ScoreTriple)
    ground_truth_comparison: GroundTruthComparison = field(default_factory=GroundTruthComparison)

    @property
    def is_empty(self) -> bool:
        return self.accuracy.final is None and self.quality.final is None

    def score(self, mode: str) -> float | None:
        """Final score for ``mode`` ("accuracy" or "quality")."""
        return getattr(self, mode).final

    def to_dict(self) -> dict:
        return {
            "accuracy": self.accuracy.to_dict(),
            "quality": self.quality.to_dict(),
            "ground_truth_comparison": self.ground_truth_comparison.to_dict(),
        }


EMPTY_COMPONENT = ComponentScoreSet()

# ---------------------------------------------------------------------------
# Blending
# ---------------------------------------------------------------------------


def normalize_rating(rating: float | None) -> float | None:
    """Map a 1-5 Likert rating onto [0, 1]."""
    if rating is None:
        return None
    return (float(rating) - 1.0) / 4.0


def blend(
    automated: float | None,
    user_rating: float | None,
    weights: BlendWeights = AGGREGATION_BLEND,
) -> float | None:
    """Combine an automated score with a normalized user rating.

    Either side alone is returned unchanged; both missing gives None.
    """
    if automated is None:
        return user_rating
    if user_rating is None:
        return automated
    return automated * weights.automated + user_rating * weights.user


def u_shaped_confidence(score: float) -> float:
    """Confidence in an automated score: 1 at 0 and 1, 0 at 0.5."""
    return 1.0 - (abs(score - 0.5) * 2.0) ** 2


def expertise_to_multiplier(expertise_weight: float | None) -> float:
    """Map an expertise weight (1-5) onto a user-weight multiplier (0.8-1.6)."""
    if not expertise_weight:
        return 1.0
    return 0.8 + (expertise_weight - 1.0) * 0.2


def confidence_weighted_score(
    automated: float | None,
    user_rating: float | None,
    expertise_weight: float | None = None,
    weights: BlendWeights = FORM_BLEND,
    min_automated_weight: float = MIN_AUTOMATED_WEIGHT,
    agreement_bonus_factor: float = AGREEMENT_BONUS_FACTOR,
) -> dict:
    """Evaluation-form composition of an automated score and a user rating.

    The automated weight shrinks where the automated score is least decisive
    (near 0.5) and the user weight grows with expertise. Agreement between the
    two earns a bonus of up to ``agreement_bonus_factor``, and the result is
    clamped to [0, 1]; ``is_capped`` reports whether clamping kicked in.

    ``user_rating`` is expected on the normalized [0, 1] scale.
    """
    a = automated if automated is not None else 0.0
    u = user_rating if user_rating is not None else 0.0

    confidence = u_shaped_confidence(a)
    agreement = 1.0 - abs(a - u)

    raw_automated = max(min_automated_weight, weights.automated * confidence)
    raw_user = weights.user * expertise_to_multiplier(expertise_weight)
    total = raw_automated + raw_user
    automated_weight = raw_automated / total
    user_weight = raw_user / total

    combined = automated_weight * a + user_weight * u
    bonus = agreement * agreement_bonus_factor
    final = combined * (1.0 + bonus)

    return {
        "automated_confidence": confidence,
        "automated_weight": automated_weight,
        "user_weight": user_weight,
        "agreement": agreement,
        "agreement_bonus": bonus,
        "combined_score": combined,
        "final_score": max(0.0, min(1.0, final)),
        "is_capped": final > 1.0,
    }


def _first(*values: float | None) -> float | None:
    for v in values:
        if v is not None:
            return v
    return None


def _assemble(
    accuracy_automated: float | None,
    user_rating: float | None,
    accuracy_final: float | None,
    quality_automated: float | None,
    comparison: GroundTruthComparison,
    weights: BlendWeights,
) -> ComponentScoreSet:
    if accuracy_final is None:
        accuracy_final = blend(accuracy_automated, user_rating, weights)

    if quality_automated is not None and user_rating is not None:
        quality_final = blend(quality_automated, user_rating, weights)
    else:
        quality_final = _first(quality_automated, accuracy_final)

    return ComponentScoreSet(
        accuracy=ScoreTriple(accuracy_automated, user_rating, accuracy_final),
        quality=ScoreTriple(quality_automated, user_rating, quality_final),
        ground_truth_comparison=comparison,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def resolve_metadata(raw: dict, weights: BlendWeights = AGGREGATION_BLEND) -> ComponentScoreSet:
    blob = MetadataBlob.model_validate(raw)
    ratings = [normalize_rating(a.rating) for a in blob.field_assessments() if a.rating is not None]
    title = blob.title
    comparison = (
        GroundTruthComparison(title.reference_value, title.extracted_value, title.score)
        if title is not None
        else GroundTruthComparison()
    )
    return _assemble(
        blob.overall.accuracy_score,
        mean(ratings),
        blob.overall.overall_score,
        blob.overall.quality_score,
        comparison,
        weights,
    )


def resolve_research_field(raw: dict, weights: BlendWeights = AGGREGATION_BLEND) -> ComponentScoreSet:
    blob = ResearchFieldBlob.model_validate(raw)
    acc = blob.accuracy_metrics
    qual = blob.quality_metrics
    sim = acc.similarity_data
    gt, sys_out = blob.ground_truth or {}, blob.system_output or {}
    comparison = GroundTruthComparison(
        sim.reference_value or gt.get("name"),
        sim.extracted_value or sys_out.get("name"),
        sim.max_similarity,
    )
    return _assemble(
        _first(acc.automated_score.value, sim.automated_overall_score),
        acc.score_details.normalized_rating,
        _first(blob.overall_score, acc.score_details.final_score),
        _first(qual.overall_quality.value, qual.quality_data.overall_score),
        comparison,
        weights,
    )


def resolve_research_problem(raw: dict, weights: BlendWeights = AGGREGATION_BLEND) -> ComponentScoreSet:
    blob = ResearchProblemBlob.model_validate(raw)
    detail = blob.overall.research_problem
    if detail is None:
        return EMPTY_COMPONENT

    overall_quality = detail.quality.overall_quality if detail.quality else None
    quality_automated = (
        _first(overall_quality.final_score, overall_quality.automated) if overall_quality else None
    )
    if quality_automated is None and detail.quality is not None:
        quality_automated = mean(detail.quality.dimension_scores())

    gt, sys_out = blob.ground_truth or {}, blob.system_output or {}
    comparison = GroundTruthComparison(
        detail.reference_value or gt.get("description"),
        detail.extracted_value or sys_out.get("description"),
        None,
    )
    return _assemble(
        detail.accuracy.overall_accuracy.automated,
        normalize_rating(detail.user_ratings.overall_rating),
        detail.accuracy.overall_accuracy.final_score,
        quality_automated,
        comparison,
        weights,
    )


def resolve_template(raw: dict, weights: BlendWeights = AGGREGATION_BLEND) -> ComponentScoreSet:
    blob = TemplateBlob.model_validate(raw)
    results = blob.accuracy_results
    sim = results.similarity_data

    quality_automated = blob.quality_score
    if not quality_automated:
        metrics = blob.quality_results.quality_data.field_specific_metrics
        fallback = mean(m.score for m in metrics.values())
        if fallback is not None:
            quality_automated = fallback

    gt, sys_out = blob.ground_truth or {}, blob.system_output or {}
    comparison = GroundTruthComparison(
        sim.reference_value or gt.get("name"),
        sim.extracted_value or sys_out.get("name"),
        sim.max_similarity,
    )
    return _assemble(
        _first(sim.automated_overall_score, blob.accuracy_score),
        results.score_details.normalized_rating,
        _first(results.score_details.final_score, blob.overall_score),
        quality_automated,
        comparison,
        weights,
    )


def resolve_content(raw: dict, weights: BlendWeights = AGGREGATION_BLEND) -> ComponentScoreSet:
    blob = ContentBlob.model_validate(raw)
    props = blob.properties()
    ratings = [
        normalize_rating(blob.user_ratings[key].rating)
        for key in props
        if key in blob.user_ratings and blob.user_ratings[key].rating is not None
    ]
    return _assemble(
        mean(p.accuracy_score for p in props.values()),
        mean(ratings),
        None,
        mean(p.quality_score for p in props.values()),
        GroundTruthComparison(),
        weights,
    )


Strategy = Callable[[dict, BlendWeights], ComponentScoreSet]

RESOLVERS: dict[str, Strategy] = {
    "metadata": resolve_metadata,
    "research_field": resolve_research_field,
    "research_problem": resolve_research_problem,
    "template": resolve_template,
    "content": resolve_content,
}

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve(
    component_key: str,
    raw_blob: Any,
    weights: BlendWeights = AGGREGATION_BLEND,
) -> ComponentScoreSet:
    """Resolve one component blob into a ``ComponentScoreSet``."""
    if not raw_blob:
        return EMPTY_COMPONENT
    strategy = RESOLVERS.get(component_key)
    if strategy is None:
        log.warning("Unknown component %r; treating as missing", component_key)
        return EMPTY_COMPONENT
    if not isinstance(raw_blob, dict):
        log.warning("Component %s is a %s, not an object; treating as missing", component_key, type(raw_blob).__name__)
        return EMPTY_COMPONENT
    try:
        return strategy(raw_blob, weights)
    except ValidationError as exc:
        log.warning("Unrecognised %s shape (%d errors); treating as missing", component_key, exc.error_count())
        return EMPTY_COMPONENT
