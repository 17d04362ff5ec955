"""
Canonical paper identities and evaluation grouping.

Evaluations of the same paper arrive as separate records. They are grouped by
normalized DOI, falling back to a positional ``no-doi-{index}`` key that is
only meaningful within one grouping call and must never be persisted.

Papers with no attached evaluation are dropped unless their key matches one of
the caller's already-aggregated keys (``evaluation_index``). That match goes
through ``keys_match`` so its behaviour can be tested and switched from the
default substring containment to exact matching.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from records import PaperRecord, RawEvaluation

log = logging.getLogger(__name__)

DOI_PREFIX_RE = re.compile(r"^(https?://)?(dx\.)?doi\.org/")
NO_DOI_PREFIX = "no-doi-"

# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def normalize_doi(doi: str | None) -> str | None:
    """Lower-case, trim and strip any resolver prefix from a DOI.

    >>> normalize_doi("https://doi.org/10.1000/ABC")
    '10.1000/abc'
    """
    if not doi:
        return None
    key = DOI_PREFIX_RE.sub("", str(doi).strip().lower()).strip()
    return key or None


def paper_key(paper: PaperRecord, index: int) -> str:
    return normalize_doi(paper.candidate_doi()) or f"{NO_DOI_PREFIX}{index}"


def is_fallback_key(key: str) -> bool:
    return key.startswith(NO_DOI_PREFIX)


def keys_match(a: str, b: str, mode: str = "substring") -> bool:
    """Whether two paper keys refer to the same paper.

    ``substring`` treats containment in either direction as a match, which
    over-merges short or purely numeric keys; ``exact`` requires equality.
    """
    if not a or not b:
        return False
    a, b = a.lower(), b.lower()
    if mode == "exact":
        return a == b
    if mode != "substring":
        raise ValueError(f"Unknown key matching mode: {mode}")
    return a in b or b in a


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaperGroup:
    key: str
    evaluations: tuple[RawEvaluation, ...] = ()
    ground_truth: dict[str, Any] | None = None
    system_output: dict[str, Any] | None = None
    doi: str | None = None
    tokens: tuple[str, ...] = field(default=())

    @property
    def evaluation_count(self) -> int:
        return len(self.evaluations)

    @property
    def is_multi_evaluator(self) -> bool:
        return len(self.evaluations) >= 2

    @property
    def has_ground_truth(self) -> bool:
        return bool(self.ground_truth)

    @property
    def title(self) -> str:
        if self.ground_truth and self.ground_truth.get("title"):
            return str(self.ground_truth["title"])
        metadata = (self.system_output or {}).get("metadata") or {}
        if isinstance(metadata, dict) and metadata.get("title"):
            return str(metadata["title"])
        return self.key


def merge_first_non_null(base: dict[str, Any] | None, extra: dict[str, Any] | None) -> dict[str, Any] | None:
    """Key-wise union of two reference dicts; earlier non-null values win."""
    if not extra:
        return base
    if not base:
        return dict(extra)
    merged = dict(base)
    for k, v in extra.items():
        if merged.get(k) is None and v is not None:
            merged[k] = v
    return merged


def _matches_index(key: str, evaluation_index: Iterable[str], mode: str) -> bool:
    return any(keys_match(key, known, mode) for known in evaluation_index)


def group_papers(
    papers: list[PaperRecord],
    evaluation_index: Iterable[str] = (),
    matching: str = "substring",
) -> list[PaperGroup]:
    """Group paper records into canonical ``PaperGroup``s, in first-seen order."""
    index = [normalize_doi(k) or k for k in evaluation_index if k]
    accum: dict[str, dict[str, Any]] = {}

    for i, paper in enumerate(papers):
        key = paper_key(paper, i)
        evals = paper.evaluations
        if not evals:
            # Positional keys carry no identity to match on.
            if is_fallback_key(key) or not _matches_index(key, index, matching):
                continue

        slot = accum.setdefault(
            key,
            {"evaluations": [], "ground_truth": None, "system_output": None, "doi": None, "tokens": []},
        )
        slot["evaluations"].extend(evals)
        slot["ground_truth"] = merge_first_non_null(slot["ground_truth"], paper.ground_truth)
        slot["system_output"] = merge_first_non_null(slot["system_output"], paper.system_output)
        slot["doi"] = slot["doi"] or paper.candidate_doi()
        if paper.token:
            slot["tokens"].append(paper.token)

    groups = [
        PaperGroup(
            key=key,
            evaluations=tuple(slot["evaluations"]),
            ground_truth=slot["ground_truth"],
            system_output=slot["system_output"],
            doi=slot["doi"],
            tokens=tuple(slot["tokens"]),
        )
        for key, slot in accum.items()
    ]
    log.info(
        "Grouped %d paper records into %d papers (%d with multiple evaluators)",
        len(papers),
        len(groups),
        sum(g.is_multi_evaluator for g in groups),
    )
    return groups
