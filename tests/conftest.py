"""Shared pytest fixtures and builders for the evaluation engine tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Directory constants
# ---------------------------------------------------------------------------

ENGINE_DIR = Path(__file__).resolve().parent.parent

COMPONENTS = ("metadata", "research_field", "research_problem", "template", "content")


# ---------------------------------------------------------------------------
# Component blobs (camelCase, as exported)
# ---------------------------------------------------------------------------


def _component_blob(key: str, final: float) -> dict:
    """Smallest blob of component ``key`` whose final accuracy is ``final``."""
    if key == "metadata":
        return {"overall": {"accuracyScore": final, "overallScore": final}}
    if key == "research_field":
        return {"accuracyMetrics": {"automatedScore": {"value": final}}, "overallScore": final}
    if key == "research_problem":
        return {
            "overall": {
                "research_problem": {
                    "accuracy": {"overallAccuracy": {"automated": final, "finalScore": final}},
                }
            }
        }
    if key == "template":
        return {"accuracyResults": {"scoreDetails": {"finalScore": final}}, "accuracyScore": final}
    if key == "content":
        return {"method": {"accuracyScore": final}}
    raise KeyError(key)


def _make_evaluation(
    finals: dict[str, float | None] | float | None = None,
    first_name: str | None = "Ada",
    last_name: str | None = "Lovelace",
    expertise_weight: float | None = 3.0,
    token: str | None = None,
    timestamp: str | None = "2024-03-01T10:00:00Z",
    **overrides,
) -> dict:
    """One raw evaluation; ``finals`` is a per-component final accuracy or one value for all five."""
    if finals is None:
        finals = 0.8
    if not isinstance(finals, dict):
        finals = {key: finals for key in COMPONENTS}
    base = {
        "token": token,
        "timestamp": timestamp,
        "userInfo": {
            "firstName": first_name,
            "lastName": last_name,
            "email": None,
            "role": "Researcher",
            "expertiseWeight": expertise_weight,
        },
        "evaluationMetrics": {
            "overall": {k: _component_blob(k, v) for k, v in finals.items() if v is not None},
        },
    }
    base.update(overrides)
    return base


def _make_paper(
    doi: str | None = "10.1000/abc",
    evaluations: list[dict] | None = None,
    ground_truth: dict | None = None,
    system_output: dict | None = None,
    **overrides,
) -> dict:
    base = {
        "doi": doi,
        "token": None,
        "groundTruth": ground_truth,
        "systemOutput": system_output,
        "userEvaluations": evaluations if evaluations is not None else [_make_evaluation()],
    }
    base.update(overrides)
    return base


# ---------------------------------------------------------------------------
# Scenario fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def two_rater_paper() -> dict:
    """One paper rated 0.7 and 0.9 across every component by two evaluators."""
    return _make_paper(
        evaluations=[
            _make_evaluation(0.7, first_name="Ada", last_name="Lovelace", token="t1", expertise_weight=2.0),
            _make_evaluation(0.9, first_name="Alan", last_name="Turing", token="t2", expertise_weight=4.5),
        ],
        ground_truth={
            "doi": "10.1000/abc",
            "title": "Graph neural networks for materials",
            "research_field_name": "Materials Science",
        },
        system_output={
            "metadata": {"title": "Graph neural networks for materials"},
            "research_field": {"name": "Materials Science"},
        },
    )


@pytest.fixture()
def corpus() -> list[dict]:
    """Three papers: one multi-evaluator, one single-evaluator, one DOI-less."""
    return [
        _make_paper(
            doi="https://doi.org/10.1000/ONE",
            evaluations=[
                _make_evaluation(0.9, first_name="Ada", last_name="Lovelace", token="a1"),
                _make_evaluation(0.5, first_name="Alan", last_name="Turing", token="b1"),
            ],
            ground_truth={"title": "Paper one", "research_field_name": "Physics"},
            system_output={"metadata": {"title": "Paper one"}, "research_field": {"name": "Physics"}},
        ),
        _make_paper(
            doi="10.1000/two",
            evaluations=[_make_evaluation(0.6, token="a2", timestamp="2024-03-02T09:00:00Z")],
        ),
        _make_paper(
            doi=None,
            evaluations=[_make_evaluation(0.4, first_name="Grace", last_name="Hopper", token="c3")],
        ),
    ]


@pytest.fixture()
def export_json(tmp_path, corpus) -> Path:
    """Write the corpus as ``{"papers": [...]}`` and return its path."""
    path = tmp_path / "evaluations.json"
    path.write_text(json.dumps({"papers": corpus}), encoding="utf-8")
    return path
