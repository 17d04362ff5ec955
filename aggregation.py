"""
Roll evaluator score sets up into aggregate statistics.

``aggregate()`` works on any list of ``EvaluatorScoreSet``s: one paper's
evaluators or the pooled corpus. In quality mode a score of exactly 0 means
"no quality data extracted" and is dropped; accuracy zeros are real zeros.

Also here: the expertise-weighted final score, the quality-vs-accuracy
comparison, score distributions, the temporal trend, and a long-form score
table for export.
"""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
import pandas as pd

from evaluation_processor import EvaluatorScoreSet
from paper_grouping import PaperGroup
from score_resolver import COMPONENT_KEYS, COMPONENT_LABELS
from score_stats import describe, mean, pearson, score_distribution

log = logging.getLogger(__name__)

MODES = ("accuracy", "quality")

TREND_EPSILON = 0.01
ALIGNED_GAP = 0.05

# ---------------------------------------------------------------------------
# Mode-aware filtering
# ---------------------------------------------------------------------------


def keep_score(value: float | None, mode: str) -> bool:
    if value is None:
        return False
    if mode == "quality" and value == 0:
        return False
    return True


def filter_scores(values: Iterable[float | None], mode: str) -> list[float]:
    return [v for v in values if keep_score(v, mode)]


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def aggregate(score_sets: list[EvaluatorScoreSet], mode: str) -> dict:
    """Overall and per-component ``AggregateStatistics`` for one mode."""
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
    overall = describe(filter_scores((s.overall(mode) for s in score_sets), mode))
    by_component = {
        key: describe(filter_scores((s.component_score(key, mode) for s in score_sets), mode))
        for key in COMPONENT_KEYS
    }
    return {"overall": overall, "by_component": by_component}


def stats_to_dict(agg: dict) -> dict:
    return {
        "overall": agg["overall"].to_dict(),
        "by_component": {k: v.to_dict() for k, v in agg["by_component"].items()},
    }


def weighted_final_score(score_sets: list[EvaluatorScoreSet], mode: str = "quality") -> float | None:
    """Expertise-weighted mean of evaluators' overall scores."""
    num = den = 0.0
    for s in score_sets:
        value = s.overall(mode)
        if not keep_score(value, mode):
            continue
        w = s.expertise_weight
        num += w * value
        den += w
    return num / den if den > 0 else None


def corpus_weighted_final_score(per_paper: dict[str, float | None]) -> float | None:
    """Each paper counts once: the mean of per-paper weighted scores."""
    return mean(per_paper.values())


def final_scores(score_sets_by_paper: dict[str, list[EvaluatorScoreSet]]) -> dict:
    out: dict = {"by_paper": {}, "corpus": {}}
    for mode in MODES:
        per_paper = {key: weighted_final_score(sets, mode) for key, sets in score_sets_by_paper.items()}
        for key, value in per_paper.items():
            out["by_paper"].setdefault(key, {})[mode] = value
        out["corpus"][mode] = corpus_weighted_final_score(per_paper)
    return out


# ---------------------------------------------------------------------------
# Paper-level means
# ---------------------------------------------------------------------------


def paper_means(score_sets: list[EvaluatorScoreSet]) -> dict:
    """Per-component accuracy/quality means for one paper."""
    out: dict = {}
    for mode in MODES:
        agg = aggregate(score_sets, mode)
        out[mode] = {
            "overall": agg["overall"].mean,
            "by_component": {k: v.mean for k, v in agg["by_component"].items()},
        }
    return out


# ---------------------------------------------------------------------------
# Quality vs accuracy
# ---------------------------------------------------------------------------


def interpret_quality_vs_accuracy(
    accuracy_mean: float | None,
    quality_mean: float | None,
    correlation: float | None,
    aligned_gap: float = ALIGNED_GAP,
) -> list[str]:
    notes: list[str] = []
    if accuracy_mean is not None and quality_mean is not None:
        diff = quality_mean - accuracy_mean
        if abs(diff) < aligned_gap:
            notes.append("Quality and accuracy scores are closely aligned")
        elif diff > 0:
            notes.append(f"Quality scores are {diff * 100:.1f}% higher than accuracy scores on average")
        else:
            notes.append(f"Accuracy scores are {abs(diff) * 100:.1f}% higher than quality scores on average")

    if correlation is not None:
        if correlation > 0.8:
            notes.append("Strong positive correlation between quality and accuracy")
        elif correlation > 0.5:
            notes.append("Moderate positive correlation between quality and accuracy")
        elif correlation > 0.2:
            notes.append("Weak positive correlation between quality and accuracy")
        else:
            notes.append("Little to no correlation between quality and accuracy scores")
    return notes


def _paired_summary(pairs: list[tuple[float, float]]) -> dict:
    return {
        "paired_count": len(pairs),
        "mean_difference": mean(q - a for a, q in pairs),
        "correlation": pearson([a for a, _ in pairs], [q for _, q in pairs]),
    }


def compare_quality_accuracy(
    paper_scores: dict[str, dict],
    titles: dict[str, str] | None = None,
    aligned_gap: float = ALIGNED_GAP,
) -> dict:
    """Contrast accuracy and quality across papers.

    ``paper_scores`` maps paper key to the output of ``paper_means``. A paper
    is paired when both its mean component accuracy and its mean (non-zero)
    component quality exist.
    """
    titles = titles or {}
    acc_values: list[float] = []
    qual_values: list[float] = []
    paired: list[dict] = []

    for key, means in paper_scores.items():
        comp_acc = [v for v in means["accuracy"]["by_component"].values() if keep_score(v, "accuracy")]
        comp_qual = [v for v in means["quality"]["by_component"].values() if keep_score(v, "quality")]
        acc = mean(comp_acc)
        qual = mean(comp_qual)
        if acc is not None:
            acc_values.append(acc)
        if qual is not None:
            qual_values.append(qual)
        if acc is not None and qual is not None:
            paired.append({
                "paper_key": key,
                "title": titles.get(key, key),
                "accuracy": acc,
                "quality": qual,
                "difference": qual - acc,
                "percent_difference": (qual - acc) / acc * 100 if acc > 0 else 0.0,
            })

    by_component: dict = {}
    for comp in COMPONENT_KEYS:
        comp_pairs: list[tuple[float, float]] = []
        accs, quals = [], []
        for means in paper_scores.values():
            a = means["accuracy"]["by_component"].get(comp)
            q = means["quality"]["by_component"].get(comp)
            if keep_score(a, "accuracy"):
                accs.append(a)
            if keep_score(q, "quality"):
                quals.append(q)
            if keep_score(a, "accuracy") and keep_score(q, "quality"):
                comp_pairs.append((a, q))
        by_component[comp] = {
            "label": COMPONENT_LABELS[comp],
            "accuracy": describe(accs).to_dict(),
            "quality": describe(quals).to_dict(),
            **_paired_summary(comp_pairs),
        }

    overall_pairs = [(p["accuracy"], p["quality"]) for p in paired]
    acc_stats = describe(acc_values)
    qual_stats = describe(qual_values)
    summary = _paired_summary(overall_pairs)
    largest_gaps = sorted(paired, key=lambda p: abs(p["difference"]), reverse=True)[:5]

    return {
        "overall": {"accuracy": acc_stats.to_dict(), "quality": qual_stats.to_dict(), **summary},
        "by_component": by_component,
        "paired": paired,
        "largest_gaps": largest_gaps,
        "interpretation": interpret_quality_vs_accuracy(
            acc_stats.mean, qual_stats.mean, summary["correlation"], aligned_gap
        ),
    }


# ---------------------------------------------------------------------------
# Distribution and trend
# ---------------------------------------------------------------------------


def distributions(score_sets: list[EvaluatorScoreSet]) -> dict:
    return {
        mode: score_distribution(filter_scores((s.overall(mode) for s in score_sets), mode))
        for mode in MODES
    }


def trend_label(slope: float | None, epsilon: float = TREND_EPSILON) -> str:
    if slope is None:
        return "insufficient_data"
    if slope > epsilon:
        return "improving"
    if slope < -epsilon:
        return "declining"
    return "stable"


def temporal_summary(score_sets: list[EvaluatorScoreSet]) -> dict:
    """Daily evaluation counts and mean accuracy, with a linear trend."""
    rows = [
        {"timestamp": s.timestamp, "accuracy": s.overall_accuracy}
        for s in score_sets
        if s.timestamp
    ]
    empty = {"daily": [], "first": None, "last": None, "slope": None, "trend": trend_label(None)}
    if not rows:
        return empty

    df = pd.DataFrame(rows)
    df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True, format="ISO8601")
    df = df.dropna(subset=["timestamp"])
    if df.empty:
        return empty

    df["date"] = df["timestamp"].dt.strftime("%Y-%m-%d")
    daily = (
        df.groupby("date")
        .agg(n_evaluations=("accuracy", "size"), mean_accuracy=("accuracy", "mean"))
        .reset_index()
        .sort_values("date")
    )
    means = daily["mean_accuracy"].dropna()
    slope = None
    if len(means) >= 2:
        slope = float(np.polyfit(np.arange(len(means)), means.to_numpy(dtype=float), 1)[0])

    return {
        "daily": [
            {
                "date": r.date,
                "count": int(r.n_evaluations),
                "mean_accuracy": None if pd.isna(r.mean_accuracy) else float(r.mean_accuracy),
            }
            for r in daily.itertuples(index=False)
        ],
        "first": df["timestamp"].min().isoformat(),
        "last": df["timestamp"].max().isoformat(),
        "slope": slope,
        "trend": trend_label(slope),
    }


# ---------------------------------------------------------------------------
# Export table
# ---------------------------------------------------------------------------

SCORE_TABLE_COLUMNS = [
    "paper_key",
    "evaluator_id",
    "tier",
    "component",
    "accuracy_automated",
    "accuracy_user_rating",
    "accuracy_final",
    "quality_automated",
    "quality_final",
    "gt_match_score",
]


def score_table(groups: list[PaperGroup], score_sets_by_paper: dict[str, list[EvaluatorScoreSet]]) -> pd.DataFrame:
    """Long format: one row per paper x evaluator x component."""
    rows = []
    for group in groups:
        for s in score_sets_by_paper.get(group.key, []):
            for comp_key, comp in s.components.items():
                rows.append({
                    "paper_key": group.key,
                    "evaluator_id": s.evaluator_id,
                    "tier": s.tier,
                    "component": comp_key,
                    "accuracy_automated": comp.accuracy.automated,
                    "accuracy_user_rating": comp.accuracy.user_rating,
                    "accuracy_final": comp.accuracy.final,
                    "quality_automated": comp.quality.automated,
                    "quality_final": comp.quality.final,
                    "gt_match_score": comp.ground_truth_comparison.match_score,
                })
    return pd.DataFrame(rows, columns=SCORE_TABLE_COLUMNS)
