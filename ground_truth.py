"""
System output vs. ground truth, independent of evaluator ratings.

``compare()`` scores the title, research field, research problem and template
the pipeline extracted against the reference record with a bounded [0, 1]
string similarity. The similarity function is injected; the default is a
character-set overlap good enough for a coarse match signal.
"""

from __future__ import annotations

from typing import Any, Callable

from evaluation_processor import EvaluatorScoreSet
from paper_grouping import PaperGroup
from score_stats import describe, mean

Similarity = Callable[[str, str], float]

GT_FIELDS = ("title", "research_field", "research_problem", "template")


def char_overlap_similarity(a: str, b: str) -> float:
    """Share of the longer string's distinct characters found in the shorter one."""
    if not a or not b:
        return 0.0
    s1, s2 = str(a).lower().strip(), str(b).lower().strip()
    if s1 == s2:
        return 1.0
    longer, shorter = (s1, s2) if len(s1) > len(s2) else (s2, s1)
    longer_chars = set(longer)
    if not longer_chars:
        return 1.0
    return len(set(shorter) & longer_chars) / len(longer_chars)


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------


def _first_text(*values: Any) -> str | None:
    for v in values:
        if isinstance(v, list):
            v = v[0] if v else None
        if v:
            return str(v)
    return None


def _system_value(system_output: dict, section: str) -> str | None:
    node = system_output.get(section) or {}
    if isinstance(node, str):
        return node or None
    if not isinstance(node, dict):
        return None
    return _first_text(node.get("name"), node.get("label"), node.get("extractedValue"))


def _reference_values(gt: dict) -> dict[str, str | None]:
    return {
        "title": _first_text(gt.get("title")),
        "research_field": _first_text(gt.get("research_field_name"), gt.get("research_field")),
        "research_problem": _first_text(gt.get("research_problem"), gt.get("research_problem_name")),
        "template": _first_text(gt.get("template_name"), gt.get("template")),
    }


def _extracted_values(system_output: dict) -> dict[str, str | None]:
    metadata = system_output.get("metadata") or {}
    return {
        "title": _first_text(metadata.get("title")) if isinstance(metadata, dict) else None,
        "research_field": _system_value(system_output, "research_field"),
        "research_problem": _system_value(system_output, "research_problem"),
        "template": _system_value(system_output, "template"),
    }


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def compare(
    ground_truth: dict | None,
    system_output: dict | None,
    similarity: Similarity = char_overlap_similarity,
) -> dict:
    """Per-field match of system output against ground truth.

    A ground-truth field the system did not extract scores 0. The title is
    compared only when both sides have one.
    """
    if not ground_truth:
        return {"has_ground_truth": False, "matches": {}, "overall_match": None, "match_count": 0}

    refs = _reference_values(ground_truth)
    extracted = _extracted_values(system_output or {})
    matches: dict[str, dict] = {}
    for name in GT_FIELDS:
        ref, ext = refs[name], extracted[name]
        if ref is None:
            continue
        if name == "title" and ext is None:
            continue
        matches[name] = {
            "ground_truth": ref,
            "extracted": ext,
            "match_score": similarity(ref, ext) if ext is not None else 0.0,
        }

    scores = [m["match_score"] for m in matches.values()]
    return {
        "has_ground_truth": True,
        "matches": matches,
        "overall_match": mean(scores),
        "match_count": len(scores),
    }


def summarize_ground_truth(
    groups: list[PaperGroup],
    comparisons: dict[str, dict],
    score_sets_by_paper: dict[str, list[EvaluatorScoreSet]],
) -> dict:
    """Coverage, per-field match stats, and accuracy with vs. without GT."""
    with_gt = [g for g in groups if g.has_ground_truth]
    without_gt = [g for g in groups if not g.has_ground_truth]

    field_matches: dict[str, list[float]] = {name: [] for name in GT_FIELDS}
    for g in with_gt:
        for name, m in comparisons.get(g.key, {}).get("matches", {}).items():
            field_matches[name].append(m["match_score"])

    def paper_accuracy(group: PaperGroup) -> float | None:
        return mean(s.overall_accuracy for s in score_sets_by_paper.get(group.key, []))

    with_scores = [paper_accuracy(g) for g in with_gt]
    without_scores = [paper_accuracy(g) for g in without_gt]
    with_stats, without_stats = describe(with_scores), describe(without_scores)
    difference = (
        with_stats.mean - without_stats.mean
        if with_stats.mean is not None and without_stats.mean is not None
        else None
    )

    return {
        "total_with_ground_truth": len(with_gt),
        "total_without_ground_truth": len(without_gt),
        "coverage": len(with_gt) / len(groups) if groups else 0.0,
        "field_match_stats": {name: describe(vals).to_dict() for name, vals in field_matches.items()},
        "overall_match_stats": describe(comparisons.get(g.key, {}).get("overall_match") for g in with_gt).to_dict(),
        "score_comparison": {
            "with_ground_truth": with_stats.to_dict(),
            "without_ground_truth": without_stats.to_dict(),
            "difference": difference,
        },
    }
