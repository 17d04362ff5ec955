"""
Per-evaluator summaries and the pairwise evaluator agreement matrix.

For every evaluator: papers touched, mean/std of overall accuracy, and the pool
of every component-level score they produced. The reported spread (``std``)
comes from the component pool whenever it holds more than one value, and from
the overall-accuracy list otherwise; ``std_source`` records which.

For every pair sharing at least one paper: mean agreement (1 - |delta|) and
mean absolute difference of overall accuracy across the shared papers.
"""

from __future__ import annotations

import logging
from itertools import combinations
from pathlib import Path

import numpy as np

from aggregation import keep_score
from evaluation_processor import EvaluatorScoreSet
from paper_grouping import PaperGroup
from reliability import N_BINS, PAIRWISE_MIN_ITEMS, pairwise_kappa
from score_stats import mean, std

try:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    import seaborn as sns

    HAS_PLOT = True
except ImportError:
    HAS_PLOT = False

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Per-evaluator accumulation
# ---------------------------------------------------------------------------


def _component_pool(score_set: EvaluatorScoreSet) -> list[float]:
    pool = []
    for comp in score_set.components.values():
        if keep_score(comp.accuracy.final, "accuracy"):
            pool.append(comp.accuracy.final)
        if keep_score(comp.quality.final, "quality"):
            pool.append(comp.quality.final)
    return pool


def evaluator_summaries(
    groups: list[PaperGroup],
    score_sets_by_paper: dict[str, list[EvaluatorScoreSet]],
) -> list[dict]:
    acc: dict[str, dict] = {}
    for group in groups:
        for s in score_sets_by_paper.get(group.key, []):
            entry = acc.setdefault(
                s.evaluator_id,
                {
                    "evaluator_id": s.evaluator_id,
                    "name": s.name,
                    "role": s.profile.role,
                    "tier": s.tier,
                    "expertise_weight": s.expertise_weight,
                    "has_prior_experience": s.profile.has_prior_experience,
                    "papers": [],
                    "_overall": [],
                    "_components": [],
                },
            )
            if group.key not in entry["papers"]:
                entry["papers"].append(group.key)
            if s.overall_accuracy is not None:
                entry["_overall"].append(s.overall_accuracy)
            entry["_components"].extend(_component_pool(s))

    summaries = []
    for entry in acc.values():
        overall = entry.pop("_overall")
        components = entry.pop("_components")
        spread_pool = components if len(components) > 1 else overall
        summaries.append({
            **entry,
            "paper_count": len(entry["papers"]),
            "evaluation_count": len(overall),
            "mean_accuracy": mean(overall),
            "std_accuracy": std(overall),
            "component_score_count": len(components),
            "mean_component_score": mean(components),
            "std": std(spread_pool),
            "std_source": "components" if spread_pool is components else "overall",
        })
    return summaries


# ---------------------------------------------------------------------------
# Pairwise agreement
# ---------------------------------------------------------------------------


def pairwise_agreement(
    groups: list[PaperGroup],
    score_sets_by_paper: dict[str, list[EvaluatorScoreSet]],
) -> list[dict]:
    """Agreement for every evaluator pair with at least one shared paper.

    Pairs whose shared papers all lack an overall accuracy are kept with a
    null agreement.
    """
    pairs: dict[tuple[str, str], dict] = {}
    for group in groups:
        for a, b in combinations(score_sets_by_paper.get(group.key, []), 2):
            if a.evaluator_id == b.evaluator_id:
                continue
            first, second = sorted((a, b), key=lambda s: s.evaluator_id)
            entry = pairs.setdefault(
                (first.evaluator_id, second.evaluator_id),
                {"evaluator_1": first.evaluator_id, "evaluator_2": second.evaluator_id, "shared_papers": [], "_diffs": []},
            )
            entry["shared_papers"].append(group.key)
            if first.overall_accuracy is not None and second.overall_accuracy is not None:
                entry["_diffs"].append(abs(first.overall_accuracy - second.overall_accuracy))

    matrix = []
    for entry in pairs.values():
        diffs = entry.pop("_diffs")
        matrix.append({
            **entry,
            "shared_count": len(entry["shared_papers"]),
            "agreement": mean(1.0 - d for d in diffs),
            "mean_difference": mean(diffs),
        })
    return matrix


def build(
    groups: list[PaperGroup],
    score_sets_by_paper: dict[str, list[EvaluatorScoreSet]],
    n_bins: int = N_BINS,
    min_items: int = PAIRWISE_MIN_ITEMS,
) -> dict:
    """Evaluator summaries, pairwise agreement matrix and headline pairs."""
    evaluators = evaluator_summaries(groups, score_sets_by_paper)
    matrix = pairwise_agreement(groups, score_sets_by_paper)
    pooled = [s for g in groups for s in score_sets_by_paper.get(g.key, [])]
    kappa = pairwise_kappa(pooled, n_bins, min_items)

    scored = [p for p in matrix if p["agreement"] is not None]
    by_agreement = sorted(scored, key=lambda p: p["agreement"], reverse=True)
    most_active = max(evaluators, key=lambda e: e["paper_count"], default=None)
    return {
        "evaluators": evaluators,
        "pairwise_matrix": matrix,
        "evaluator_count": len(evaluators),
        "pair_count": len(matrix),
        "most_active": most_active["evaluator_id"] if most_active else None,
        "highest_agreement_pair": by_agreement[0] if by_agreement else None,
        "lowest_agreement_pair": by_agreement[-1] if by_agreement else None,
        "mean_pair_agreement": mean(p["agreement"] for p in matrix),
        "cohen_kappa": kappa,
    }


# ---------------------------------------------------------------------------
# Plot
# ---------------------------------------------------------------------------


def agreement_square(matrix: dict) -> tuple[np.ndarray, list[str]]:
    """Square evaluator x evaluator agreement array from the pair list."""
    names = sorted({e["evaluator_id"] for e in matrix["evaluators"]})
    index = {n: i for i, n in enumerate(names)}
    square = np.full((len(names), len(names)), np.nan)
    np.fill_diagonal(square, 1.0)
    for p in matrix["pairwise_matrix"]:
        i, j = index[p["evaluator_1"]], index[p["evaluator_2"]]
        if p["agreement"] is not None:
            square[i, j] = square[j, i] = p["agreement"]
    return square, names


def plot_agreement_heatmap(matrix: dict, output_path: Path) -> bool:
    """Write the pairwise agreement heatmap; False when plotting is unavailable."""
    if not HAS_PLOT:
        log.warning("matplotlib/seaborn not available; skipping plots.")
        return False
    square, names = agreement_square(matrix)
    if len(names) < 2 or np.isnan(square[~np.eye(len(names), dtype=bool)]).all():
        log.info("Fewer than two evaluators share a paper; no heatmap written.")
        return False

    size = max(4, 0.6 * len(names) + 2)
    fig, ax = plt.subplots(figsize=(size, size * 0.85))
    sns.heatmap(
        square,
        mask=np.eye(len(names), dtype=bool),
        annot=len(names) <= 12,
        fmt=".2f",
        cmap="RdYlGn",
        xticklabels=names,
        yticklabels=names,
        vmin=0,
        vmax=1,
        ax=ax,
        square=True,
        cbar_kws={"shrink": 0.8},
    )
    ax.set_title("Pairwise evaluator agreement (1 - |delta|)", fontsize=12)
    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    log.info("Saved %s", output_path)
    return True
