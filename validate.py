"""Validate evaluation export JSON before aggregation.

Checks that the file parses, that every paper and evaluation record matches
the expected shape, that scores lie in [0, 1] and 1-5 ratings in [1, 5], that
evaluation tokens are unique, that every paper carries at least one
evaluation, and that expertise weights lie in [1, 5]. Nothing is modified.

Usage:
    python validate.py evaluations.json
    python validate.py exports/*.json
"""

from __future__ import annotations

import argparse
import logging
import numbers
import sys
from pathlib import Path
from typing import Any, Iterator

import pandas as pd
from pydantic import ValidationError

from records import PaperRecord, RawEvaluation, read_export

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key definitions
# ---------------------------------------------------------------------------

# Compared after dropping underscores and lower-casing, so camelCase and
# snake_case spellings both hit.
SCORE_KEYS = {
    "accuracyscore",
    "qualityscore",
    "overallscore",
    "finalscore",
    "automatedoverallscore",
    "automated",
    "normalizedrating",
    "maxsimilarity",
    "score",
    "value",
}

RATING_KEYS = {"rating", "overallrating"}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _norm_key(key: str) -> str:
    return str(key).replace("_", "").lower()


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _walk(node: Any, path: str) -> Iterator[tuple[str, str, Any]]:
    """Yield (path, key, value) for every leaf under a nested blob."""
    if isinstance(node, dict):
        for k, v in node.items():
            child = f"{path}.{k}"
            if isinstance(v, (dict, list)):
                yield from _walk(v, child)
            else:
                yield child, str(k), v
    elif isinstance(node, list):
        for i, v in enumerate(node):
            yield from _walk(v, f"{path}[{i}]")


def _evaluations(raw: dict) -> list[Any]:
    evals = raw.get("userEvaluations", raw.get("user_evaluations")) or []
    if not evals and raw.get("evaluation"):
        evals = [raw["evaluation"]]
    return evals if isinstance(evals, list) else []


def _evaluation_frame(raw_papers: list[Any]) -> pd.DataFrame:
    """One row per evaluation: paper index, evaluation index, token, weight."""
    rows = []
    for p_idx, paper in enumerate(raw_papers):
        if not isinstance(paper, dict):
            continue
        for e_idx, ev in enumerate(_evaluations(paper)):
            if not isinstance(ev, dict):
                continue
            info = ev.get("userInfo", ev.get("user_info")) or {}
            rows.append({
                "paper": p_idx,
                "evaluation": e_idx,
                "token": ev.get("token"),
                "expertise_weight": info.get("expertiseWeight", info.get("expertise_weight"))
                if isinstance(info, dict)
                else None,
            })
    return pd.DataFrame(rows, columns=["paper", "evaluation", "token", "expertise_weight"])


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def _check_records(raw_papers: list[Any]) -> list[str]:
    """Every paper and evaluation must validate against its record model."""
    errors: list[str] = []
    for p_idx, paper in enumerate(raw_papers):
        try:
            PaperRecord.model_validate(paper)
        except ValidationError as exc:
            errors.append(f"Paper #{p_idx}: {exc.error_count()} validation error(s): {exc.errors()[0]['msg']}")
            continue
        for e_idx, ev in enumerate(_evaluations(paper)):
            try:
                RawEvaluation.model_validate(ev)
            except ValidationError as exc:
                errors.append(
                    f"Paper #{p_idx} evaluation #{e_idx}: {exc.error_count()} validation error(s): "
                    f"{exc.errors()[0]['msg']}"
                )
    return errors


def _check_value_ranges(raw_papers: list[Any]) -> list[str]:
    """Scores in [0, 1]; 1-5 ratings in [1, 5]."""
    errors: list[str] = []
    for p_idx, paper in enumerate(raw_papers):
        if not isinstance(paper, dict):
            continue
        for e_idx, ev in enumerate(_evaluations(paper)):
            if not isinstance(ev, dict):
                continue
            metrics = ev.get("evaluationMetrics", ev.get("evaluation_metrics")) or {}
            for path, key, value in _walk(metrics, f"paper[{p_idx}].evaluation[{e_idx}]"):
                if not _is_number(value):
                    continue
                k = _norm_key(key)
                if k in RATING_KEYS and not 1 <= value <= 5:
                    errors.append(f"Rating out of range [1, 5] at {path}: {value}")
                elif k in SCORE_KEYS and not 0 <= value <= 1:
                    errors.append(f"Score out of range [0, 1] at {path}: {value}")
    return errors


def _check_token_uniqueness(evals: pd.DataFrame) -> list[str]:
    """No duplicate evaluation tokens."""
    tokens = evals["token"].dropna()
    dupes = tokens[tokens.duplicated(keep=False)]
    if not dupes.empty:
        return [f"Duplicate evaluation tokens: {sorted(dupes.astype(str).unique().tolist())}"]
    return []


def _check_papers_have_evaluations(raw_papers: list[Any], evals: pd.DataFrame) -> list[str]:
    """Every paper record must carry at least one evaluation."""
    with_evals = set(evals["paper"].tolist())
    missing = [i for i in range(len(raw_papers)) if i not in with_evals]
    if missing:
        return [f"Papers without evaluations: index {missing}"]
    return []


def _check_expertise_weights(evals: pd.DataFrame) -> list[str]:
    """Expertise weights, where given, must lie in [1, 5]."""
    weights = pd.to_numeric(evals["expertise_weight"], errors="coerce")
    given = evals["expertise_weight"].notna()
    non_numeric = evals[given & weights.isna()]
    bad = evals[weights.notna() & ~weights.between(1, 5)]
    errors = []
    if not non_numeric.empty:
        errors.append(f"Non-numeric expertise weights in {len(non_numeric)} evaluation(s)")
    for _, row in bad.iterrows():
        errors.append(
            f"Expertise weight out of range [1, 5] for paper #{row['paper']} "
            f"evaluation #{row['evaluation']}: {row['expertise_weight']}"
        )
    return errors


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

CHECK_NAMES = [
    "records",
    "value_ranges",
    "token_uniqueness",
    "papers_have_evaluations",
    "expertise_weights",
]


def validate_file(path: Path) -> list[str]:
    """Validate a single evaluation export. Returns a list of error strings (empty = all good)."""
    if not path.exists():
        return [f"File not found: {path}"]

    try:
        raw_papers, _ = read_export(path)
    except (OSError, ValueError) as exc:
        return [f"Failed to read JSON: {exc}"]

    if not raw_papers:
        return ["Export contains no paper records"]

    evals = _evaluation_frame(raw_papers)

    errors: list[str] = []
    errors.extend(_check_records(raw_papers))
    errors.extend(_check_value_ranges(raw_papers))
    errors.extend(_check_token_uniqueness(evals))
    errors.extend(_check_papers_have_evaluations(raw_papers, evals))
    errors.extend(_check_expertise_weights(evals))
    return errors


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Validate evaluation export JSON files.")
    parser.add_argument("json_files", nargs="+", type=Path, help="Path(s) to evaluation export JSON")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")

    all_ok = True
    for json_path in args.json_files:
        logger.info("Validating: %s", json_path)
        logger.info("-" * 60)

        errors = validate_file(json_path)

        if errors:
            for err in errors:
                logger.info("[FAIL] %s", err)
            all_ok = False
        else:
            logger.info("[PASS] All checks passed")
        logger.info("")

    if len(args.json_files) > 1:
        logger.info("=" * 60)
        logger.info(
            "Overall: %d file(s) validated, %s",
            len(args.json_files),
            "ALL PASSED" if all_ok else "SOME FAILURES",
        )

    return 0 if all_ok else 1


if __name__ == "__main__":
    sys.exit(main())
