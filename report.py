#!/usr/bin/env python3
"""
Evaluation report for human ratings of paper-extraction output.

Groups raw evaluation records into papers, resolves every evaluator's
component scores, and assembles the full report:

    - accuracy/quality statistics overall and per component
    - expertise-weighted final scores per paper and per corpus
    - inter-rater reliability (Fleiss' kappa, Krippendorff's alpha, Light's kappa)
    - disagreement flags and evaluator-pair differences
    - pairwise evaluator agreement matrix
    - system output vs. ground truth
    - quality-vs-accuracy comparison, score distribution, temporal trend
    - ordered findings

Outputs:
    - evaluation_report.json
    - evaluation_scores.csv (one row per paper x evaluator x component)
    - LaTeX tables (booktabs): component_summary.tex, evaluator_pairwise.tex
    - evaluator_agreement_heatmap.pdf (when matplotlib/seaborn are installed)

Usage:
    python report.py --input evaluations.json
    python report.py --input evaluations.json --config engine_config.yaml --no-plots
"""

from __future__ import annotations

import argparse
import copy
import hashlib
import json
import logging
from pathlib import Path
from typing import Iterable

import numpy as np

import disagreement
import evaluator_matrix
import ground_truth
from aggregation import (
    MODES,
    aggregate,
    compare_quality_accuracy,
    distributions,
    final_scores,
    paper_means,
    score_table,
    stats_to_dict,
    temporal_summary,
)
from evaluation_processor import EvaluatorScoreSet, process_group
from findings import bands_from_thresholds, generate_findings
from paper_grouping import PaperGroup, group_papers
from records import DEFAULT_CONFIG_PATH, EngineConfig, PaperRecord, load_config, load_papers
from reliability import inter_rater_reliability
from score_resolver import COMPONENT_KEYS, COMPONENT_LABELS

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_groups(
    papers: list[PaperRecord],
    evaluation_index: Iterable[str] = (),
    config: EngineConfig | None = None,
) -> tuple[list[PaperGroup], dict[str, list[EvaluatorScoreSet]]]:
    """Group papers and resolve every evaluation into a score set."""
    config = config or EngineConfig()
    weights = config.weights
    groups = group_papers(papers, evaluation_index, matching=config.grouping.doi_matching)
    score_sets_by_paper = {
        g.key: process_group(
            g,
            weights=weights.aggregation_blend,
            form_weights=weights.form_blend,
            min_automated_weight=weights.min_automated_weight,
            agreement_bonus_factor=weights.agreement_bonus_factor,
        )
        for g in groups
    }
    return groups, score_sets_by_paper


# ---------------------------------------------------------------------------
# Report assembly
# ---------------------------------------------------------------------------


def _paper_entry(
    group: PaperGroup,
    score_sets: list[EvaluatorScoreSet],
    means: dict,
    final: dict,
    comparison: dict,
    report: disagreement.DisagreementReport,
) -> dict:
    return {
        "paper_key": group.key,
        "title": group.title,
        "doi": group.doi,
        "evaluation_count": group.evaluation_count,
        "has_ground_truth": group.has_ground_truth,
        "means": means,
        "final_score": final,
        "ground_truth_comparison": comparison,
        "has_disagreement": report.has_disagreement,
        "evaluations": [s.to_dict() for s in score_sets],
    }


def assemble_report(
    groups: list[PaperGroup],
    score_sets_by_paper: dict[str, list[EvaluatorScoreSet]],
    config: EngineConfig | None = None,
    similarity: ground_truth.Similarity = ground_truth.char_overlap_similarity,
) -> dict:
    """Every report section from already-scored groups."""
    config = config or EngineConfig()
    thresholds = config.thresholds
    pooled = [s for g in groups for s in score_sets_by_paper.get(g.key, [])]

    aggregates = {mode: stats_to_dict(aggregate(pooled, mode)) for mode in MODES}
    per_paper_means = {g.key: paper_means(score_sets_by_paper.get(g.key, [])) for g in groups}
    finals = final_scores({g.key: score_sets_by_paper.get(g.key, []) for g in groups})

    reliability = inter_rater_reliability(groups, score_sets_by_paper, n_bins=thresholds.reliability_bins)

    reports = [
        disagreement.analyze(g, score_sets_by_paper.get(g.key, []), threshold=thresholds.disagreement_std)
        for g in groups
    ]
    comparisons = {g.key: ground_truth.compare(g.ground_truth, g.system_output, similarity) for g in groups}
    gt_summary = ground_truth.summarize_ground_truth(groups, comparisons, score_sets_by_paper)

    matrix = evaluator_matrix.build(
        groups,
        score_sets_by_paper,
        n_bins=thresholds.reliability_bins,
        min_items=thresholds.pairwise_min_items,
    )

    findings = generate_findings(
        aggregates["accuracy"],
        aggregates["quality"],
        reliability,
        gt_summary,
        total_papers=len(groups),
        bands=bands_from_thresholds(thresholds.excellent, thresholds.good, thresholds.moderate),
        aligned_gap=thresholds.aligned_gap,
    )

    log.info(
        "Report: %d papers, %d evaluations, %d flagged for disagreement",
        len(groups),
        len(pooled),
        sum(r.has_disagreement for r in reports),
    )
    return {
        "total_papers": len(groups),
        "total_evaluations": len(pooled),
        "overall_stats": {mode: aggregates[mode]["overall"] for mode in MODES},
        "by_component_stats": {mode: aggregates[mode]["by_component"] for mode in MODES},
        "final_scores": finals,
        "reliability": reliability,
        "disagreements": {
            **disagreement.summarize(reports),
            "papers": [r.to_dict() for r in reports if r.is_multi_evaluator],
            "tier_agreement": disagreement.tier_agreement(pooled),
        },
        "evaluator_matrix": matrix,
        "ground_truth_comparison": {**gt_summary, "papers": comparisons},
        "quality_vs_accuracy": compare_quality_accuracy(
            per_paper_means,
            titles={g.key: g.title for g in groups},
            aligned_gap=thresholds.aligned_gap,
        ),
        "score_distribution": distributions(pooled),
        "temporal": temporal_summary(pooled),
        "findings": findings["findings"],
        "findings_summary": findings["summary"],
        "papers": [
            _paper_entry(
                g,
                score_sets_by_paper.get(g.key, []),
                per_paper_means[g.key],
                finals["by_paper"].get(g.key, {}),
                comparisons[g.key],
                r,
            )
            for g, r in zip(groups, reports)
        ],
    }


# ---------------------------------------------------------------------------
# Memo
# ---------------------------------------------------------------------------


class ReportCache:
    """Caller-owned memo of finished reports.

    Entries are keyed by the SHA-256 of the canonical JSON of the input
    papers, the already-aggregated keys, the engine config and the name of the
    similarity function.
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(
        papers: list[PaperRecord],
        evaluation_index: Iterable[str],
        config: EngineConfig,
        similarity: ground_truth.Similarity,
    ) -> str:
        payload = {
            "papers": [p.model_dump(mode="json", by_alias=True) for p in papers],
            "evaluation_index": list(evaluation_index),
            "config": config.model_dump(mode="json"),
            "similarity": f"{similarity.__module__}.{getattr(similarity, '__qualname__', repr(similarity))}",
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def get(self, key: str) -> dict | None:
        """Stored report for ``key`` as an independent copy, or None."""
        report = self._entries.get(key)
        if report is None:
            self.misses += 1
            return None
        self.hits += 1
        return copy.deepcopy(report)

    def put(self, key: str, report: dict) -> None:
        self._entries[key] = copy.deepcopy(report)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def build_report(
    papers: list[PaperRecord],
    evaluation_index: Iterable[str] = (),
    config: EngineConfig | None = None,
    similarity: ground_truth.Similarity = ground_truth.char_overlap_similarity,
    cache: ReportCache | None = None,
) -> dict:
    """Full evaluation report for a batch of paper records."""
    config = config or EngineConfig()
    evaluation_index = list(evaluation_index)

    key = None
    if cache is not None:
        key = ReportCache.key(papers, evaluation_index, config, similarity)
        cached = cache.get(key)
        if cached is not None:
            log.info("Report cache hit (%s)", key[:12])
            return cached

    groups, score_sets_by_paper = score_groups(papers, evaluation_index, config)
    report = assemble_report(groups, score_sets_by_paper, config, similarity)

    if cache is not None:
        cache.put(key, report)
    return report


# ---------------------------------------------------------------------------
# JSON serialization
# ---------------------------------------------------------------------------


def sanitize(obj):
    """Recursively convert numpy types to Python-native for JSON; NaN becomes None."""
    if isinstance(obj, dict):
        return {k: sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [sanitize(v) for v in obj]
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj) if not np.isnan(obj) else None
    if isinstance(obj, np.ndarray):
        return sanitize(obj.tolist())
    if isinstance(obj, float) and np.isnan(obj):
        return None
    return obj


# ---------------------------------------------------------------------------
# LaTeX output
# ---------------------------------------------------------------------------


def _fmt(val, decimals: int = 2) -> str:
    if val is None or (isinstance(val, float) and np.isnan(val)):
        return "--"
    return f"{val:.{decimals}f}"


def _esc(s: str) -> str:
    return s.replace("_", r"\_").replace("&", r"\&").replace("%", r"\%")


def generate_component_tex(report: dict) -> str:
    """Per-component accuracy, quality and Fleiss' kappa."""
    acc = report["by_component_stats"]["accuracy"]
    qual = report["by_component_stats"]["quality"]
    kappas = report["reliability"].get("by_component", {})

    rows = []
    for key in COMPONENT_KEYS:
        a, q = acc.get(key, {}), qual.get(key, {})
        rows.append(
            f"    {COMPONENT_LABELS[key]} & {a.get('count', 0)} & {_fmt(a.get('mean'))} & {_fmt(a.get('std'))}"
            f" & {_fmt(q.get('mean'))} & {_fmt(q.get('std'))} & {_fmt(kappas.get(key, {}).get('kappa'))} \\\\"
        )
    overall_acc = report["overall_stats"]["accuracy"]
    overall_qual = report["overall_stats"]["quality"]
    rows.append(r"    \midrule")
    rows.append(
        f"    Overall & {overall_acc['count']} & {_fmt(overall_acc['mean'])} & {_fmt(overall_acc['std'])}"
        f" & {_fmt(overall_qual['mean'])} & {_fmt(overall_qual['std'])}"
        f" & {_fmt(report['reliability'].get('fleiss_kappa'))} \\\\"
    )

    return rf"""\begin{{table}}[t]
\centering
\caption{{Accuracy and quality per extraction component across {report['total_papers']} papers
and {report['total_evaluations']} evaluations. Fleiss' $\kappa$ on binned final accuracy of
multi-evaluator papers.}}
\label{{tab:component-summary}}
\begin{{tabular}}{{lcccccc}}
\toprule
Component & $N$ & Acc. mean & Acc. SD & Qual. mean & Qual. SD & $\kappa$ \\
\midrule
{chr(10).join(rows)}
\bottomrule
\end{{tabular}}
\end{{table}}"""


def generate_pairwise_tex(square: np.ndarray, names: list[str], caption: str) -> str:
    """Lower-triangular pairwise agreement table."""
    n = len(names)
    display = [_esc(name) for name in names]

    header = " & ".join(rf"\textbf{{{d}}}" for d in display[:-1])

    rows = []
    for i in range(1, n):
        cells = [_fmt(square[i, j]) for j in range(i)]
        while len(cells) < n - 1:
            cells.append("")
        rows.append(rf"    \textbf{{{display[i]}}} & {' & '.join(cells)} \\")

    col_spec = "l" + "c" * (n - 1)

    return rf"""\begin{{table}}[t]
\centering
\caption{{{caption}}}
\label{{tab:evaluator-pairwise}}
\small
\begin{{tabular}}{{{col_spec}}}
\toprule
 & {header} \\
\midrule
{chr(10).join(rows)}
\bottomrule
\end{{tabular}}
\end{{table}}"""


def write_tables(report: dict, output_dir: Path) -> list[Path]:
    tables = {"component_summary.tex": generate_component_tex(report)}

    square, names = evaluator_matrix.agreement_square(report["evaluator_matrix"])
    if len(names) >= 2:
        tables["evaluator_pairwise.tex"] = generate_pairwise_tex(
            square,
            names,
            rf"Pairwise evaluator agreement ($1 - |\Delta|$ of overall accuracy) across {len(names)} evaluators.",
        )
    else:
        log.info("Fewer than two evaluators; skipping evaluator_pairwise.tex")

    written = []
    for filename, content in tables.items():
        out = output_dir / filename
        with open(out, "w", encoding="utf-8") as f:
            f.write(content)
        log.info("Wrote %s", out)
        written.append(out)
    return written


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def print_summary(report: dict, output_dir: Path) -> None:
    irr = report["reliability"]
    dis = report["disagreements"]
    print()
    print("=" * 60)
    print("EVALUATION REPORT COMPLETE")
    print("=" * 60)
    print(f"Papers: {report['total_papers']}  Evaluations: {report['total_evaluations']}")
    print(
        f"Accuracy: mean={_fmt(report['overall_stats']['accuracy']['mean'])}"
        f"  Quality: mean={_fmt(report['overall_stats']['quality']['mean'])}"
    )
    print(f"Weighted final (quality): {_fmt(report['final_scores']['corpus']['quality'])}")
    print(
        f"Fleiss' kappa={_fmt(irr['fleiss_kappa'], 3)} ({irr['interpretation']})"
        f"  multi-evaluator papers: {irr['multi_eval_count']}"
    )
    print(f"Disagreement: {dis['total_with_disagreement']}/{dis['total_multi_eval']} papers flagged")
    print()
    for f in report["findings"]:
        print(f"  [{f['category']}] {f['title']}: {f['description']}")
    print()
    print(f"Output: {output_dir.resolve()}")
    print("=" * 60)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    parser = argparse.ArgumentParser(description="Aggregate human evaluations of paper-extraction output.")
    script_dir = Path(__file__).parent

    parser.add_argument("--input", type=Path, required=True, help="Evaluation export (JSON).")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--output-dir", type=Path, default=script_dir / "output")
    parser.add_argument("--no-plots", action="store_true", help="Skip the agreement heatmap.")
    parser.add_argument("--no-tex", action="store_true", help="Skip LaTeX tables.")

    args = parser.parse_args(argv)

    config = load_config(args.config if args.config and args.config.exists() else None)
    if config.blend_discrepancy():
        agg, form = config.weights.aggregation_blend, config.weights.form_blend
        log.warning(
            "Blend weights differ: aggregation %.2f/%.2f vs. evaluation form %.2f/%.2f (automated/user)",
            agg.automated,
            agg.user,
            form.automated,
            form.user,
        )

    try:
        papers, aggregated_keys = load_papers(args.input)
    except (OSError, ValueError) as exc:
        log.error("Cannot read %s: %s", args.input, exc)
        return 1

    args.output_dir.mkdir(parents=True, exist_ok=True)

    groups, score_sets_by_paper = score_groups(papers, aggregated_keys, config)
    report = assemble_report(groups, score_sets_by_paper, config)

    # ---- JSON ----
    json_path = args.output_dir / "evaluation_report.json"
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(sanitize(report), f, indent=2)
    log.info("Wrote %s", json_path)

    # ---- CSV ----
    csv_path = args.output_dir / "evaluation_scores.csv"
    score_table(groups, score_sets_by_paper).to_csv(csv_path, index=False)
    log.info("Wrote %s", csv_path)

    # ---- LaTeX tables ----
    if config.output.tex and not args.no_tex:
        write_tables(report, args.output_dir)

    # ---- Plots ----
    if config.output.plots and not args.no_plots:
        evaluator_matrix.plot_agreement_heatmap(
            report["evaluator_matrix"], args.output_dir / "evaluator_agreement_heatmap.pdf"
        )

    print_summary(report, args.output_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
