"""
Human-readable statistical observations for the report.

A pure reporting transform over numbers computed elsewhere. Each finding is
built independently; one that cannot be built (missing or malformed input) is
logged and left out instead of failing the report.
"""

from __future__ import annotations

import logging
from typing import Callable

from score_resolver import COMPONENT_LABELS

log = logging.getLogger(__name__)

SCORE_BANDS: list[tuple[float, str]] = [
    (0.8, "Excellent"),
    (0.6, "Good"),
    (0.4, "Moderate"),
]

ALIGNED_GAP = 0.05


def score_band(value: float, bands: list[tuple[float, str]] = SCORE_BANDS) -> str:
    for floor, label in bands:
        if value >= floor:
            return label
    return "Needs Improvement"


def bands_from_thresholds(excellent: float, good: float, moderate: float) -> list[tuple[float, str]]:
    return [(excellent, "Excellent"), (good, "Good"), (moderate, "Moderate")]


def rank_components(by_component: dict) -> list[dict]:
    """Components with a mean, best first."""
    ranked = [
        {"key": key, "label": COMPONENT_LABELS.get(key, key), "mean": stats["mean"], "count": stats["count"]}
        for key, stats in by_component.items()
        if stats.get("mean") is not None
    ]
    return sorted(ranked, key=lambda c: c["mean"], reverse=True)


# ---------------------------------------------------------------------------
# Individual findings
# ---------------------------------------------------------------------------


def _overall_accuracy(ctx: dict) -> dict | None:
    stats = ctx["accuracy"]["overall"]
    value = stats["mean"]
    if value is None:
        return None
    return {
        "id": "overall_accuracy",
        "category": "Performance",
        "title": "Overall Accuracy",
        "value": value,
        "interpretation": score_band(value, ctx["bands"]),
        "description": (
            f"System achieves {value * 100:.1f}% mean accuracy "
            f"(SD={(stats['std'] or 0) * 100:.1f}%) across {ctx['total_papers']} papers."
        ),
        "significance": "high",
    }


def _overall_quality(ctx: dict) -> dict | None:
    stats = ctx["quality"]["overall"]
    value = stats["mean"]
    if value is None or value <= 0:
        return None
    return {
        "id": "overall_quality",
        "category": "Performance",
        "title": "Overall Quality",
        "value": value,
        "interpretation": score_band(value, ctx["bands"]),
        "description": (
            f"System achieves {value * 100:.1f}% mean quality "
            f"(SD={(stats['std'] or 0) * 100:.1f}%) for extraction completeness and validity."
        ),
        "significance": "high",
    }


def _best_component(ctx: dict) -> dict | None:
    ranked = ctx["ranked"]
    if not ranked:
        return None
    best = ranked[0]
    return {
        "id": "best_accuracy_component",
        "category": "Components",
        "title": "Best Accuracy Component",
        "value": best["mean"],
        "interpretation": best["label"],
        "description": f"{best['label']} extraction achieves highest accuracy at {best['mean'] * 100:.1f}%.",
        "significance": "medium",
    }


def _worst_component(ctx: dict) -> dict | None:
    ranked = ctx["ranked"]
    if not ranked or ranked[-1]["key"] == ranked[0]["key"]:
        return None
    worst = ranked[-1]
    return {
        "id": "worst_accuracy_component",
        "category": "Components",
        "title": "Area for Improvement",
        "value": worst["mean"],
        "interpretation": worst["label"],
        "description": f"{worst['label']} extraction shows lowest accuracy at {worst['mean'] * 100:.1f}%.",
        "significance": "medium",
    }


def _reliability(ctx: dict) -> dict | None:
    irr = ctx["reliability"]
    kappa = irr.get("fleiss_kappa")
    if not irr.get("has_data") or kappa is None:
        return None
    return {
        "id": "irr",
        "category": "Reliability",
        "title": "Inter-Rater Reliability",
        "value": kappa,
        "interpretation": irr["interpretation"],
        "description": (
            f"Fleiss' kappa = {kappa:.3f} indicates {irr['interpretation'].lower()} evaluator agreement "
            f"across {irr['multi_eval_count']} multi-evaluator papers."
        ),
        "significance": "high",
    }


def _quality_accuracy_gap(ctx: dict) -> dict | None:
    acc = ctx["accuracy"]["overall"]["mean"]
    qual = ctx["quality"]["overall"]["mean"]
    if not acc or not qual or qual <= 0:
        return None
    diff = qual - acc
    if abs(diff) < ctx["aligned_gap"]:
        interpretation, description = "Aligned", "Quality and accuracy scores are well-aligned."
    else:
        interpretation = "Quality Higher" if diff > 0 else "Accuracy Higher"
        description = f"Quality scores are {abs(diff) * 100:.1f}% {'higher' if diff > 0 else 'lower'} than accuracy."
    return {
        "id": "quality_accuracy_gap",
        "category": "Analysis",
        "title": "Quality vs Accuracy Gap",
        "value": diff,
        "interpretation": interpretation,
        "description": description,
        "significance": "medium",
    }


def _ground_truth_coverage(ctx: dict) -> dict | None:
    total = ctx["total_papers"]
    if total <= 0:
        return None
    with_gt = ctx["ground_truth"]["total_with_ground_truth"]
    share = with_gt / total
    return {
        "id": "gt_coverage",
        "category": "Data Quality",
        "title": "Ground Truth Coverage",
        "value": share,
        "interpretation": f"{share * 100:.0f}%",
        "description": f"{with_gt} of {total} papers have ground truth for validation.",
        "significance": "medium",
    }


FINDING_BUILDERS: list[Callable[[dict], dict | None]] = [
    _overall_accuracy,
    _overall_quality,
    _best_component,
    _worst_component,
    _reliability,
    _quality_accuracy_gap,
    _ground_truth_coverage,
]

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def generate_findings(
    accuracy: dict,
    quality: dict,
    reliability: dict,
    ground_truth: dict,
    total_papers: int,
    bands: list[tuple[float, str]] = SCORE_BANDS,
    aligned_gap: float = ALIGNED_GAP,
) -> dict:
    """Ordered findings plus a short summary.

    ``accuracy``/``quality`` are serialized aggregates (``{"overall": stats,
    "by_component": {key: stats}}``); ``reliability`` and ``ground_truth`` are
    the corresponding report sections.
    """
    if total_papers <= 0:
        return {"findings": [], "summary": summarize_findings([])}

    ctx = {
        "accuracy": accuracy,
        "quality": quality,
        "reliability": reliability,
        "ground_truth": ground_truth,
        "total_papers": total_papers,
        "bands": bands,
        "aligned_gap": aligned_gap,
        "ranked": [],
    }
    try:
        ctx["ranked"] = rank_components(accuracy.get("by_component", {}))
    except (KeyError, TypeError) as exc:
        log.warning("Could not rank components: %s", exc)

    findings = []
    for builder in FINDING_BUILDERS:
        try:
            finding = builder(ctx)
        except (KeyError, TypeError, ValueError, ZeroDivisionError) as exc:
            log.warning("Skipping finding %s: %s", builder.__name__.lstrip("_"), exc)
            continue
        if finding is not None:
            findings.append(finding)

    return {"findings": findings, "summary": summarize_findings(findings)}


def summarize_findings(findings: list[dict]) -> dict:
    key_insights = [f["description"] for f in findings if f.get("significance") == "high"]
    accuracy = next((f for f in findings if f["id"] == "overall_accuracy"), None)
    return {
        "total_findings": len(findings),
        "key_insights": key_insights,
        "overall_assessment": accuracy["interpretation"] if accuracy else "N/A",
    }
