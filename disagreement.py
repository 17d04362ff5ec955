"""
Evaluator disagreement per paper and across the corpus.

A paper is flagged when the population standard deviation of its evaluators'
overall accuracy, or of any single component's accuracy, exceeds the threshold
T (0.15 by default). Each unordered evaluator pair is flagged when the absolute
difference of their overall accuracy exceeds 2T. Every spread needs at least
two non-null values; nothing is imputed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations

from evaluation_processor import EXPERTISE_TIERS, TIER_LABELS, EvaluatorScoreSet
from paper_grouping import PaperGroup
from score_resolver import COMPONENT_KEYS
from score_stats import clean, mean, std, variance

DISAGREEMENT_THRESHOLD = 0.15

AGREEMENT_BUCKETS: list[tuple[str, float]] = [
    ("high_agreement", 0.01),
    ("medium_agreement", 0.05),
    ("low_agreement", 0.1),
]

# ---------------------------------------------------------------------------
# Per-paper analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PairDifference:
    evaluator_1: str
    evaluator_2: str
    score_1: float
    score_2: float
    difference: float
    flagged: bool

    def to_dict(self) -> dict:
        return {
            "evaluator_1": self.evaluator_1,
            "evaluator_2": self.evaluator_2,
            "score_1": self.score_1,
            "score_2": self.score_2,
            "difference": self.difference,
            "flagged": self.flagged,
        }


@dataclass(frozen=True)
class DisagreementReport:
    paper_key: str
    evaluator_count: int
    has_disagreement: bool = False
    overall_variance: float | None = None
    overall_std: float | None = None
    by_component: dict[str, dict] = field(default_factory=dict)
    pairs: tuple[PairDifference, ...] = ()
    title: str | None = None

    @property
    def is_multi_evaluator(self) -> bool:
        return self.evaluator_count >= 2

    @property
    def disputed_components(self) -> list[str]:
        return [k for k, v in self.by_component.items() if v["has_disagreement"]]

    def to_dict(self) -> dict:
        return {
            "paper_key": self.paper_key,
            "title": self.title,
            "evaluator_count": self.evaluator_count,
            "has_disagreement": self.has_disagreement,
            "overall_variance": self.overall_variance,
            "overall_std": self.overall_std,
            "by_component": self.by_component,
            "pairs": [p.to_dict() for p in self.pairs],
            "flagged_pairs": sum(p.flagged for p in self.pairs),
        }


def _spread(values: list[float | None]) -> tuple[float | None, float | None, int]:
    vals = clean(values)
    if len(vals) < 2:
        return None, None, len(vals)
    return variance(vals), std(vals), len(vals)


def pairwise_differences(
    score_sets: list[EvaluatorScoreSet],
    threshold: float = DISAGREEMENT_THRESHOLD,
) -> list[PairDifference]:
    pairs = []
    for a, b in combinations(score_sets, 2):
        if a.overall_accuracy is None or b.overall_accuracy is None:
            continue
        diff = abs(a.overall_accuracy - b.overall_accuracy)
        pairs.append(
            PairDifference(
                evaluator_1=a.evaluator_id,
                evaluator_2=b.evaluator_id,
                score_1=a.overall_accuracy,
                score_2=b.overall_accuracy,
                difference=diff,
                flagged=diff > 2 * threshold,
            )
        )
    return pairs


def analyze(
    group: PaperGroup,
    score_sets: list[EvaluatorScoreSet],
    threshold: float = DISAGREEMENT_THRESHOLD,
) -> DisagreementReport:
    """Disagreement flags, spreads and pair differences for one paper."""
    overall_var, overall_std, _ = _spread([s.overall_accuracy for s in score_sets])

    by_component: dict[str, dict] = {}
    for key in COMPONENT_KEYS:
        values = [s.component_score(key, "accuracy") for s in score_sets]
        comp_var, comp_std, n = _spread(values)
        by_component[key] = {
            "count": n,
            "mean": mean(values),
            "variance": comp_var,
            "std": comp_std,
            "has_disagreement": comp_std is not None and comp_std > threshold,
        }

    flagged = (overall_std is not None and overall_std > threshold) or any(
        c["has_disagreement"] for c in by_component.values()
    )
    return DisagreementReport(
        paper_key=group.key,
        title=group.title,
        evaluator_count=len(score_sets),
        has_disagreement=flagged,
        overall_variance=overall_var,
        overall_std=overall_std,
        by_component=by_component,
        pairs=tuple(pairwise_differences(score_sets, threshold)),
    )


# ---------------------------------------------------------------------------
# Corpus summary
# ---------------------------------------------------------------------------


def summarize(reports: list[DisagreementReport]) -> dict:
    multi = [r for r in reports if r.is_multi_evaluator]
    flagged = [r for r in multi if r.has_disagreement]

    dispute_counts = {key: 0 for key in COMPONENT_KEYS}
    for r in multi:
        for key in r.disputed_components:
            dispute_counts[key] += 1

    most_disputed = None
    top = 0
    for key in COMPONENT_KEYS:
        if dispute_counts[key] > top:
            most_disputed, top = key, dispute_counts[key]

    highest = sorted(multi, key=lambda r: r.overall_std or 0.0, reverse=True)[:5]

    return {
        "total_multi_eval": len(multi),
        "total_with_disagreement": len(flagged),
        "disagreement_rate": len(flagged) / len(multi) if multi else 0.0,
        "component_dispute_counts": dispute_counts,
        "most_disputed_component": most_disputed,
        "flagged_pairs": sum(p.flagged for r in multi for p in r.pairs),
        "highest_disagreement_papers": [
            {
                "paper_key": r.paper_key,
                "title": r.title,
                "variance": r.overall_variance,
                "std": r.overall_std,
                "evaluator_count": r.evaluator_count,
            }
            for r in highest
        ],
        "agreement_buckets": agreement_buckets(multi),
    }


def agreement_buckets(reports: list[DisagreementReport]) -> dict[str, int]:
    """Count multi-evaluator papers by overall-accuracy variance."""
    counts = {name: 0 for name, _ in AGREEMENT_BUCKETS}
    counts["disagreement"] = 0
    for r in reports:
        if r.overall_variance is None:
            continue
        for name, limit in AGREEMENT_BUCKETS:
            if r.overall_variance < limit:
                counts[name] += 1
                break
        else:
            counts["disagreement"] += 1
    return counts


# ---------------------------------------------------------------------------
# Agreement by evaluator background
# ---------------------------------------------------------------------------


def variance_agreement(values: list[float]) -> float | None:
    """Agreement score in [0, 1] from the spread of a set of scores."""
    var = variance(values)
    if var is None:
        return None
    return 1.0 - min(var * 10.0, 1.0)


def _background_stats(score_sets: list[EvaluatorScoreSet]) -> dict:
    scores = clean(s.overall_accuracy for s in score_sets)
    return {
        "evaluator_count": len({s.evaluator_id for s in score_sets}),
        "evaluation_count": len(score_sets),
        "mean_accuracy": mean(scores),
        "std": std(scores),
        "agreement": variance_agreement(scores),
    }


def tier_agreement(score_sets: list[EvaluatorScoreSet]) -> dict:
    """Score spread within each expertise tier and by prior tool experience."""
    by_tier = {
        tier: {"label": TIER_LABELS[tier], **_background_stats([s for s in score_sets if s.tier == tier])}
        for tier in EXPERTISE_TIERS
    }
    experienced = [s for s in score_sets if s.profile.has_prior_experience]
    inexperienced = [s for s in score_sets if not s.profile.has_prior_experience]
    return {
        "by_tier": by_tier,
        "by_experience": {
            "experienced": _background_stats(experienced),
            "inexperienced": _background_stats(inexperienced),
        },
    }
