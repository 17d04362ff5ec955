"""
Inter-rater reliability across multi-evaluator papers.

Continuous [0, 1] scores are binned into five equal-width ordinal categories
(score s falls in bin min(floor(s * 5), 4)) and Fleiss' kappa is computed over
every paper rated by at least two evaluators: once on the evaluators' overall
accuracy and once per component on that component's final accuracy.

Metrics:
    - Fleiss' kappa (overall and per component)
    - Krippendorff's alpha (interval, handles missing ratings)
    - Light's kappa (mean pairwise Cohen's kappa on binned component scores)
    - Pairwise Cohen's kappa matrix
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from itertools import combinations

import krippendorff
import numpy as np
import pandas as pd
from sklearn.metrics import cohen_kappa_score

from evaluation_processor import EvaluatorScoreSet
from paper_grouping import PaperGroup
from score_resolver import COMPONENT_KEYS
from score_stats import EMPTY_STATS, clean, describe, std

log = logging.getLogger(__name__)

N_BINS = 5
PAIRWISE_MIN_ITEMS = 4

# (upper bound, label); kappa below the bound gets the label.
KAPPA_BANDS: list[tuple[float, str]] = [
    (0.0, "Poor"),
    (0.2, "Slight"),
    (0.4, "Fair"),
    (0.6, "Moderate"),
    (0.8, "Substantial"),
]

# ---------------------------------------------------------------------------
# Binning
# ---------------------------------------------------------------------------


def score_to_bin(score: float, n_bins: int = N_BINS) -> int:
    return max(0, min(int(math.floor(score * n_bins)), n_bins - 1))


def build_ratings_matrix(subjects: list[list[float | None]], n_bins: int = N_BINS) -> np.ndarray:
    """(n_subjects, n_bins) count matrix; subjects with < 2 ratings are dropped."""
    rows = []
    for scores in subjects:
        vals = clean(scores)
        if len(vals) < 2:
            continue
        counts = np.zeros(n_bins, dtype=int)
        for v in vals:
            counts[score_to_bin(v, n_bins)] += 1
        rows.append(counts)
    if not rows:
        return np.zeros((0, n_bins), dtype=int)
    return np.vstack(rows)


# ---------------------------------------------------------------------------
# Fleiss' kappa
# ---------------------------------------------------------------------------


def interpret_kappa(kappa: float | None) -> str:
    if kappa is None or math.isnan(kappa):
        return "N/A"
    for bound, label in KAPPA_BANDS:
        if kappa < bound:
            return label
    return "Almost Perfect"


@dataclass(frozen=True)
class ReliabilityResult:
    kappa: float | None = None
    p_bar: float | None = None
    p_bar_e: float | None = None
    interpretation: str = "N/A"
    n_subjects: int = 0
    n_raters: int = 0
    excluded_subjects: int = 0

    def to_dict(self) -> dict:
        return {
            "kappa": self.kappa,
            "p_bar": self.p_bar,
            "p_bar_e": self.p_bar_e,
            "interpretation": self.interpretation,
            "n_subjects": self.n_subjects,
            "n_raters": self.n_raters,
            "excluded_subjects": self.excluded_subjects,
        }


def fleiss_kappa(matrix: np.ndarray) -> ReliabilityResult:
    """Fleiss' kappa for multi-rater ordinal agreement.

    Args:
        matrix: (n_subjects, n_categories), each cell = count of raters for
            that category. The first row's total fixes the rater count n;
            subjects with a different total are excluded and counted in
            ``excluded_subjects``.
    """
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        return ReliabilityResult()

    n = float(matrix[0].sum())
    if n < 2:
        return ReliabilityResult()

    valid = matrix.sum(axis=1) == n
    excluded = int((~valid).sum())
    if excluded:
        log.warning("Fleiss' kappa: excluding %d subject(s) without %d raters", excluded, int(n))
    matrix = matrix[valid]
    n_subjects = len(matrix)

    p_i = (matrix * (matrix - 1)).sum(axis=1) / (n * (n - 1))
    p_bar = float(p_i.mean())

    p_j = matrix.sum(axis=0) / (n_subjects * n)
    p_bar_e = float((p_j**2).sum())

    kappa = 1.0 if np.isclose(p_bar_e, 1.0) else (p_bar - p_bar_e) / (1.0 - p_bar_e)
    return ReliabilityResult(
        kappa=float(kappa),
        p_bar=p_bar,
        p_bar_e=p_bar_e,
        interpretation=interpret_kappa(kappa),
        n_subjects=n_subjects,
        n_raters=int(n),
        excluded_subjects=excluded,
    )


# ---------------------------------------------------------------------------
# Krippendorff's alpha
# ---------------------------------------------------------------------------


def build_wide(score_sets: list[EvaluatorScoreSet], component: str | None = None) -> pd.DataFrame:
    """Pivot to wide format: (paper_key index, evaluator columns).

    Values are overall accuracy, or the final accuracy of ``component``.
    """
    rows = []
    for s in score_sets:
        value = s.overall_accuracy if component is None else s.component_score(component, "accuracy")
        if value is not None:
            rows.append({"paper_key": s.paper_key, "evaluator_id": s.evaluator_id, "score": value})
    if not rows:
        return pd.DataFrame()
    df = pd.DataFrame(rows)
    return df.pivot_table(index="paper_key", columns="evaluator_id", values="score", aggfunc="mean")


def compute_kripp_alpha(wide: pd.DataFrame, level: str = "interval") -> float | None:
    """Krippendorff's alpha from a wide-format DataFrame; None when undefined."""
    if wide.empty or wide.shape[1] < 2:
        return None
    if (wide.notna().sum(axis=1) >= 2).sum() < 2:
        return None
    matrix = wide.to_numpy(dtype=float, na_value=np.nan).T  # (n_raters, n_items)
    try:
        alpha = float(krippendorff.alpha(reliability_data=matrix, level_of_measurement=level))
    except (ValueError, ZeroDivisionError) as exc:
        log.warning("Krippendorff's alpha undefined: %s", exc)
        return None
    return None if math.isnan(alpha) else alpha


# ---------------------------------------------------------------------------
# Pairwise Cohen's kappa
# ---------------------------------------------------------------------------


def build_binned_wide(score_sets: list[EvaluatorScoreSet], n_bins: int = N_BINS) -> pd.DataFrame:
    """(paper_key, component) index, evaluator columns, binned final accuracy."""
    rows = []
    for s in score_sets:
        for key in COMPONENT_KEYS:
            value = s.component_score(key, "accuracy")
            if value is None:
                continue
            rows.append({
                "paper_key": s.paper_key,
                "component": key,
                "evaluator_id": s.evaluator_id,
                "bin": score_to_bin(value, n_bins),
            })
    if not rows:
        return pd.DataFrame()
    df = pd.DataFrame(rows)
    wide = df.pivot_table(index=["paper_key", "component"], columns="evaluator_id", values="bin", aggfunc="first")
    return wide.reindex(columns=sorted(wide.columns))


def _pair_kappa(y1: np.ndarray, y2: np.ndarray, n_bins: int) -> float | None:
    with np.errstate(divide="ignore", invalid="ignore"):
        k = cohen_kappa_score(y1, y2, labels=list(range(n_bins)), weights="linear")
    return None if math.isnan(k) else float(k)


def compute_pairwise_matrix(
    wide: pd.DataFrame,
    n_bins: int = N_BINS,
    min_items: int = PAIRWISE_MIN_ITEMS,
) -> np.ndarray:
    """NxN pairwise linear-weighted Cohen's kappa matrix (NaN where undefined)."""
    names = wide.columns.tolist()
    n = len(names)
    matrix = np.full((n, n), np.nan)
    np.fill_diagonal(matrix, 1.0)

    for i, j in combinations(range(n), 2):
        mask = wide.iloc[:, i].notna() & wide.iloc[:, j].notna()
        y1 = wide.iloc[:, i][mask].astype(int).values
        y2 = wide.iloc[:, j][mask].astype(int).values
        if len(y1) < min_items:
            continue
        k = _pair_kappa(y1, y2, n_bins)
        if k is not None:
            matrix[i, j] = matrix[j, i] = k

    return matrix


def compute_lights_kappa(matrix: np.ndarray) -> dict:
    """Light's kappa: mean of all defined pairwise Cohen's kappas."""
    n = matrix.shape[0]
    kappas = [matrix[i, j] for i, j in combinations(range(n), 2) if not np.isnan(matrix[i, j])]
    if not kappas:
        return {"mean": None, "std": None, "min": None, "max": None, "n_pairs": 0}
    return {
        "mean": float(np.mean(kappas)),
        "std": float(np.std(kappas)),
        "min": float(np.min(kappas)),
        "max": float(np.max(kappas)),
        "n_pairs": len(kappas),
    }


def pairwise_kappa(
    score_sets: list[EvaluatorScoreSet],
    n_bins: int = N_BINS,
    min_items: int = PAIRWISE_MIN_ITEMS,
) -> dict:
    wide = build_binned_wide(score_sets, n_bins)
    if wide.empty:
        return {"names": [], "matrix": [], "lights_kappa": compute_lights_kappa(np.zeros((0, 0)))}
    matrix = compute_pairwise_matrix(wide, n_bins, min_items)
    return {
        "names": wide.columns.tolist(),
        "matrix": matrix,
        "lights_kappa": compute_lights_kappa(matrix),
    }


# ---------------------------------------------------------------------------
# Full reliability report
# ---------------------------------------------------------------------------


def inter_rater_reliability(
    groups: list[PaperGroup],
    score_sets_by_paper: dict[str, list[EvaluatorScoreSet]],
    n_bins: int = N_BINS,
) -> dict:
    """Fleiss' kappa overall and per component, plus supporting agreement stats."""
    multi = [g for g in groups if len(score_sets_by_paper.get(g.key, [])) >= 2]
    total = len(groups)

    if not multi:
        return {
            "has_data": False,
            "fleiss_kappa": None,
            "interpretation": "N/A",
            "p_bar": None,
            "p_bar_e": None,
            "multi_eval_count": 0,
            "total_papers": total,
            "coverage": 0.0,
            "by_component": {},
            "agreement_stats": EMPTY_STATS.to_dict(),
            "krippendorff_alpha": None,
        }

    multi_sets = [score_sets_by_paper[g.key] for g in multi]
    overall = fleiss_kappa(build_ratings_matrix([[s.overall_accuracy for s in sets] for sets in multi_sets], n_bins))

    by_component: dict[str, dict] = {}
    for key in COMPONENT_KEYS:
        matrix = build_ratings_matrix(
            [[s.component_score(key, "accuracy") for s in sets] for sets in multi_sets], n_bins
        )
        if len(matrix):
            by_component[key] = fleiss_kappa(matrix).to_dict()

    agreement = []
    for sets in multi_sets:
        scores = clean(s.overall_accuracy for s in sets)
        if len(scores) >= 2:
            agreement.append(1.0 - min(std(scores) * 2.0, 1.0))

    pooled = [s for sets in multi_sets for s in sets]
    log.info(
        "Fleiss' kappa over %d multi-evaluator papers: %s (%s)",
        len(multi),
        "n/a" if overall.kappa is None else f"{overall.kappa:.3f}",
        overall.interpretation,
    )
    return {
        "has_data": True,
        "fleiss_kappa": overall.kappa,
        "interpretation": overall.interpretation,
        "p_bar": overall.p_bar,
        "p_bar_e": overall.p_bar_e,
        "n_subjects": overall.n_subjects,
        "excluded_subjects": overall.excluded_subjects,
        "multi_eval_count": len(multi),
        "total_papers": total,
        "coverage": len(multi) / total if total else 0.0,
        "by_component": by_component,
        "agreement_stats": describe(agreement).to_dict(),
        "krippendorff_alpha": compute_kripp_alpha(build_wide(pooled)),
    }
