"""Tests for the evaluation aggregation engine.

Covers:
  - records.py             boundary models and config loading
  - score_stats.py         descriptive statistics
  - score_resolver.py      per-component score shapes and blending
  - paper_grouping.py      DOI canonicalization and grouping
  - evaluation_processor.py  evaluator score sets and tiers
  - aggregation.py         aggregates, weighted finals, trend
  - disagreement.py        flags and pair differences
  - reliability.py         Fleiss' kappa and friends
  - ground_truth.py        system output vs. ground truth
  - evaluator_matrix.py    per-evaluator summaries and pairs
  - findings.py            ordered findings
  - validate.py            export lint
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import numpy as np
import pytest
from pydantic import ValidationError

# ---------------------------------------------------------------------------
# Make the engine modules importable when running from the tests/ subdirectory
# ---------------------------------------------------------------------------

ENGINE_DIR = Path(__file__).resolve().parent.parent
if str(ENGINE_DIR) not in sys.path:
    sys.path.insert(0, str(ENGINE_DIR))

import aggregation as agg  # noqa: E402
import disagreement as dis  # noqa: E402
import evaluator_matrix as em  # noqa: E402
import ground_truth as gt  # noqa: E402
import reliability as rel  # noqa: E402
import validate as val  # noqa: E402
from conftest import _component_blob, _make_evaluation, _make_paper  # noqa: E402
from evaluation_processor import evaluator_id, expertise_tier, process_evaluation, process_group  # noqa: E402
from findings import generate_findings, rank_components, score_band  # noqa: E402
from paper_grouping import group_papers, is_fallback_key, keys_match, normalize_doi  # noqa: E402
from records import (  # noqa: E402
    BlendWeights,
    EngineConfig,
    EvaluatorProfile,
    Grouping,
    PaperRecord,
    RawEvaluation,
    load_config,
    load_papers,
    parse_papers,
)
from report import build_report  # noqa: E402
from score_resolver import (  # noqa: E402
    EMPTY_COMPONENT,
    blend,
    confidence_weighted_score,
    normalize_rating,
    resolve,
)
from score_stats import describe, pearson, score_distribution  # noqa: E402

# ---------------------------------------------------------------------------
# Helpers shared by multiple test groups
# ---------------------------------------------------------------------------


def _score_set(finals=0.8, **kwargs):
    return process_evaluation(RawEvaluation.model_validate(_make_evaluation(finals, **kwargs)))


def _groups(papers: list[dict], **kwargs):
    return group_papers(parse_papers(papers), **kwargs)


def _scored(papers: list[dict]):
    groups = _groups(papers)
    return groups, {g.key: process_group(g) for g in groups}


def _write_export(path: Path, papers) -> Path:
    path.write_text(json.dumps({"papers": papers}), encoding="utf-8")
    return path


# ===========================================================================
# 1. records.py
# ===========================================================================


class TestRecords:
    def test_camel_case_aliases(self):
        """camelCase export keys populate snake_case fields."""
        paper = PaperRecord.model_validate(_make_paper())
        ev = paper.evaluations[0]
        assert ev.user_info.first_name == "Ada"
        assert ev.user_info.expertise_weight == 3.0
        assert "metadata" in ev.evaluation_metrics.overall

    def test_unknown_keys_kept(self):
        paper = PaperRecord.model_validate(_make_paper(reviewStatus="done"))
        assert paper.model_extra["reviewStatus"] == "done"

    def test_null_user_info_tolerated(self):
        ev = RawEvaluation.model_validate({"token": "x", "userInfo": None, "evaluationMetrics": None})
        assert ev.user_info.first_name is None
        assert ev.component_blob("metadata") is None

    def test_malformed_evaluation_dropped(self):
        """An evaluation that fails validation is dropped; its siblings survive."""
        paper = PaperRecord.model_validate(
            _make_paper(evaluations=[_make_evaluation(token="ok"), {"token": "bad", "userInfo": "not a profile"}])
        )
        assert [e.token for e in paper.evaluations] == ["ok"]

    def test_parse_papers_skips_malformed(self):
        papers = parse_papers([_make_paper(), "not a paper", _make_paper(doi="10.1/x")])
        assert len(papers) == 2

    def test_candidate_doi_fallbacks(self):
        from_gt = PaperRecord.model_validate(_make_paper(doi=None, ground_truth={"doi": "10.1/gt"}))
        from_sys = PaperRecord.model_validate(
            _make_paper(doi=None, system_output={"metadata": {"doi": "10.1/sys"}})
        )
        assert from_gt.candidate_doi() == "10.1/gt"
        assert from_sys.candidate_doi() == "10.1/sys"

    def test_single_evaluation_field(self):
        paper = PaperRecord.model_validate(
            {"doi": "10.1/x", "evaluation": _make_evaluation(token="solo"), "userEvaluations": []}
        )
        assert [e.token for e in paper.evaluations] == ["solo"]

    @pytest.mark.parametrize(
        "value, expected",
        [("never", False), ("None", False), ("weekly", True), (True, True), (None, False)],
    )
    def test_prior_experience(self, value, expected):
        profile = EvaluatorProfile.model_validate({"orkgExperience": value})
        assert profile.has_prior_experience is expected

    def test_load_papers_shapes(self, tmp_path):
        """Bare list, {"papers": [...]} and {"papers": {id: ...}} all load."""
        bare = tmp_path / "bare.json"
        bare.write_text(json.dumps([_make_paper()]))
        keyed = tmp_path / "keyed.json"
        keyed.write_text(json.dumps({"papers": {"p1": _make_paper()}, "aggregatedKeys": ["10.1000/abc"]}))

        papers, keys = load_papers(bare)
        assert len(papers) == 1 and keys == []
        papers, keys = load_papers(keyed)
        assert len(papers) == 1 and keys == ["10.1000/abc"]

    def test_submission_date_fallback(self):
        ev = RawEvaluation.model_validate(
            _make_evaluation(timestamp=None, submissionDate="2024-03-01T10:00:00.000Z")
        )
        assert ev.submitted_at == "2024-03-01T10:00:00.000Z"
        assert process_evaluation(ev).timestamp == "2024-03-01T10:00:00.000Z"

    def test_timestamp_wins_over_submission_date(self):
        ev = RawEvaluation.model_validate(_make_evaluation(submissionDate="2023-01-01T00:00:00Z"))
        assert ev.submitted_at == "2024-03-01T10:00:00Z"

    def test_numeric_timestamp_and_token_kept(self):
        """Epoch-millisecond timestamps and numeric tokens do not drop the evaluation."""
        paper = PaperRecord.model_validate(
            _make_paper(evaluations=[_make_evaluation(timestamp=1709287200000, token=42)])
        )
        ev = paper.evaluations[0]
        assert ev.token == "42"
        assert ev.timestamp.startswith("2024-03-01T10:00:00")
        assert process_evaluation(ev).overall_accuracy == pytest.approx(0.8)


class TestConfig:
    def test_load_config_file(self):
        """engine_config.yaml loads and matches the built-in defaults."""
        config = load_config(ENGINE_DIR / "engine_config.yaml")
        assert config == EngineConfig()
        assert config.thresholds.disagreement_std == pytest.approx(0.15)
        assert config.weights.aggregation_blend.automated == pytest.approx(0.6)
        assert config.weights.form_blend.user == pytest.approx(0.6)

    def test_partial_config_keeps_defaults(self, tmp_path):
        path = tmp_path / "partial.yaml"
        path.write_text("thresholds:\n  disagreement_std: 0.2\ngrouping:\n  doi_matching: exact\n")
        config = load_config(path)
        assert config.thresholds.disagreement_std == pytest.approx(0.2)
        assert config.thresholds.reliability_bins == 5
        assert config.grouping.doi_matching == "exact"

    def test_no_path_gives_defaults(self):
        assert load_config(None) == EngineConfig()

    def test_blend_discrepancy(self):
        assert EngineConfig().blend_discrepancy() is True
        same = EngineConfig.model_validate(
            {"weights": {"form_blend": {"automated": 0.6, "user": 0.4}}}
        )
        assert same.blend_discrepancy() is False

    def test_blend_weight_out_of_range(self):
        with pytest.raises(ValidationError):
            BlendWeights(automated=1.5, user=0.0)

    def test_unknown_matching_mode(self):
        with pytest.raises(ValidationError):
            Grouping(doi_matching="fuzzy")


# ===========================================================================
# 2. score_stats.py
# ===========================================================================


class TestScoreStats:
    def test_describe_population_std(self):
        """[0.2, 0.4, 0.6, 0.8] has mean 0.5 and population std ~0.2236."""
        stats = describe([0.2, 0.4, 0.6, 0.8])
        assert stats.mean == pytest.approx(0.5)
        assert stats.std == pytest.approx(0.2236, abs=1e-4)
        assert stats.median == pytest.approx(0.5)
        assert (stats.min, stats.max, stats.count) == (pytest.approx(0.2), pytest.approx(0.8), 4)

    def test_describe_empty(self):
        d = describe([]).to_dict()
        assert d["count"] == 0
        assert d["values"] == []
        assert all(d[k] is None for k in ("mean", "std", "median", "min", "max"))

    def test_describe_drops_none_and_nan(self):
        stats = describe([None, 0.5, float("nan"), 1.0])
        assert stats.count == 2
        assert stats.mean == pytest.approx(0.75)

    def test_pearson(self):
        assert pearson([0.1, 0.2, 0.3], [0.2, 0.4, 0.6]) == pytest.approx(1.0)
        assert pearson([0.1, 0.2, 0.3], [0.3, 0.2, 0.1]) == pytest.approx(-1.0)

    @pytest.mark.parametrize(
        "x, y",
        [([0.5, 0.5, 0.5], [0.1, 0.2, 0.3]), ([0.1], [0.2]), ([0.1, 0.2], [0.1])],
    )
    def test_pearson_degenerate(self, x, y):
        """Zero variance, a single pair, or mismatched lengths give None."""
        assert pearson(x, y) is None

    def test_score_distribution_top_bin_includes_one(self):
        dist = score_distribution([0.1, 0.5, 1.0])
        assert [b["count"] for b in dist] == [1, 0, 1, 0, 1]
        assert sum(b["percentage"] for b in dist) == pytest.approx(100.0)


# ===========================================================================
# 3. score_resolver.py
# ===========================================================================


class TestBlending:
    @pytest.mark.parametrize("rating, expected", [(1, 0.0), (3, 0.5), (5, 1.0), (None, None)])
    def test_normalize_rating(self, rating, expected):
        assert normalize_rating(rating) == expected

    def test_blend(self):
        assert blend(0.5, 1.0) == pytest.approx(0.7)
        assert blend(0.5, None) == 0.5
        assert blend(None, 0.25) == 0.25
        assert blend(None, None) is None

    def test_blend_custom_weights(self):
        assert blend(0.5, 1.0, BlendWeights(automated=0.4, user=0.6)) == pytest.approx(0.8)

    def test_confidence_weighted_capped(self):
        """Perfect agreement at the extremes overflows 1 and is clamped."""
        result = confidence_weighted_score(1.0, 1.0, expertise_weight=5.0)
        assert result["final_score"] == 1.0
        assert result["is_capped"] is True
        assert result["automated_confidence"] == pytest.approx(0.0)

    def test_confidence_weighted_midpoint(self):
        result = confidence_weighted_score(0.5, 0.5)
        assert result["automated_weight"] == pytest.approx(0.4)
        assert result["user_weight"] == pytest.approx(0.6)
        assert result["final_score"] == pytest.approx(0.55)
        assert result["is_capped"] is False

    def test_expertise_raises_user_weight(self):
        low = confidence_weighted_score(0.9, 0.3, expertise_weight=1.0)
        high = confidence_weighted_score(0.9, 0.3, expertise_weight=5.0)
        assert high["user_weight"] > low["user_weight"]


class TestResolver:
    def test_metadata_field_ratings(self):
        blob = {
            "overall": {"accuracyScore": 0.8, "qualityScore": 0.9},
            "title": {"rating": 5, "referenceValue": "A", "extractedValue": "A", "score": 1.0},
            "authors": {"rating": 3},
        }
        s = resolve("metadata", blob)
        assert s.accuracy.user_rating == pytest.approx(0.75)
        assert s.accuracy.final == pytest.approx(0.78)
        assert s.quality.final == pytest.approx(0.84)
        assert s.ground_truth_comparison.match_score == 1.0

    def test_metadata_explicit_final_wins(self):
        s = resolve("metadata", {"overall": {"accuracyScore": 0.2, "overallScore": 0.9}})
        assert s.accuracy.final == 0.9

    def test_research_field_fallbacks(self):
        blob = {
            "accuracyMetrics": {
                "similarityData": {"automatedOverallScore": 0.5, "referenceValue": "Physics", "maxSimilarity": 0.4},
                "scoreDetails": {"normalizedRating": 1.0},
            },
            "qualityMetrics": {"qualityData": {"overallScore": 0.6}},
        }
        s = resolve("research_field", blob)
        assert s.accuracy.automated == 0.5
        assert s.accuracy.final == pytest.approx(0.7)
        assert s.quality.automated == 0.6
        assert s.ground_truth_comparison.reference_value == "Physics"

    def test_research_problem_quality_dimensions(self):
        blob = {
            "overall": {
                "research_problem": {
                    "accuracy": {"overallAccuracy": {"automated": 0.5}},
                    "quality": {"problemTitle": {"score": 0.8}, "relevance": {"score": 0.6}},
                    "userRatings": {"overallRating": 5},
                }
            }
        }
        s = resolve("research_problem", blob)
        assert s.accuracy.final == pytest.approx(0.7)
        assert s.quality.automated == pytest.approx(0.7)
        assert s.quality.final == pytest.approx(0.82)

    def test_research_problem_missing_detail(self):
        assert resolve("research_problem", {"overall": {}}) is EMPTY_COMPONENT

    def test_template_quality_from_field_metrics(self):
        blob = {
            "accuracyResults": {"similarityData": {"automatedOverallScore": 0.7}},
            "qualityScore": 0,
            "qualityResults": {"qualityData": {"fieldSpecificMetrics": {"a": {"score": 0.4}, "b": {"score": 0.8}}}},
        }
        s = resolve("template", blob)
        assert s.accuracy.final == 0.7
        assert s.quality.automated == pytest.approx(0.6)

    def test_content_means_over_properties(self):
        blob = {
            "p1": {"accuracyScore": 0.6, "qualityScore": 0.8},
            "p2": {"accuracyScore": 0.8},
            "userRatings": {"p1": {"rating": 3}},
            "_aggregate": {"accuracyScore": 0.0},
        }
        s = resolve("content", blob)
        assert s.accuracy.automated == pytest.approx(0.7)
        assert s.accuracy.user_rating == pytest.approx(0.5)
        assert s.accuracy.final == pytest.approx(0.62)
        assert s.quality.final == pytest.approx(0.68)

    def test_quality_falls_back_to_accuracy_final(self):
        s = resolve("metadata", {"overall": {"overallScore": 0.66}})
        assert s.quality.automated is None
        assert s.quality.final == 0.66

    @pytest.mark.parametrize("key", ["metadata", "research_field", "research_problem", "template", "content"])
    def test_missing_blob_is_empty(self, key):
        assert resolve(key, None) is EMPTY_COMPONENT
        assert resolve(key, {}) is EMPTY_COMPONENT

    def test_structural_mismatch_is_empty(self):
        """A blob that fails validation resolves to the null set without raising."""
        assert resolve("metadata", {"overall": "oops"}) is EMPTY_COMPONENT
        assert resolve("template", {"accuracyScore": "high"}) is EMPTY_COMPONENT

    def test_unknown_component_is_empty(self):
        assert resolve("figures", {"x": 1}) is EMPTY_COMPONENT

    @pytest.mark.parametrize("key", ["metadata", "research_field", "research_problem", "template", "content"])
    def test_fixture_blobs_resolve(self, key):
        assert resolve(key, _component_blob(key, 0.42)).accuracy.final == pytest.approx(0.42)


# ===========================================================================
# 4. paper_grouping.py
# ===========================================================================


class TestPaperGrouping:
    @pytest.mark.parametrize(
        "raw",
        ["10.1000/ABC", "https://doi.org/10.1000/abc", "dx.doi.org/10.1000/Abc", "  http://dx.doi.org/10.1000/abc "],
    )
    def test_normalize_doi(self, raw):
        assert normalize_doi(raw) == "10.1000/abc"

    def test_normalize_doi_empty(self):
        assert normalize_doi(None) is None
        assert normalize_doi("   ") is None

    def test_keys_match_modes(self):
        assert keys_match("10.1000/abc", "10.1000/abc.v2") is True
        assert keys_match("10.1000/abc", "10.1000/abc.v2", mode="exact") is False
        assert keys_match("10.1000/ABC", "10.1000/abc", mode="exact") is True
        assert keys_match("", "10.1000/abc") is False

    def test_keys_match_unknown_mode(self):
        with pytest.raises(ValueError):
            keys_match("a", "b", mode="fuzzy")

    def test_grouping_is_idempotent(self, corpus):
        """Grouping the same input twice gives identical groups."""
        assert _groups(corpus) == _groups(corpus)

    def test_aggregates_independent_of_input_order(self, corpus):
        """Reversing the input changes no aggregate statistic."""
        forward = build_report(parse_papers(corpus))
        backward = build_report(parse_papers(list(reversed(corpus))))
        for mode in ("accuracy", "quality"):
            fwd, bwd = forward["overall_stats"][mode], backward["overall_stats"][mode]
            for stat in ("mean", "std", "median", "min", "max", "count"):
                assert fwd[stat] == pytest.approx(bwd[stat])
            for key, stats in forward["by_component_stats"][mode].items():
                other = backward["by_component_stats"][mode][key]
                assert stats["mean"] == pytest.approx(other["mean"])
                assert stats["std"] == pytest.approx(other["std"])
        assert forward["reliability"]["fleiss_kappa"] == pytest.approx(backward["reliability"]["fleiss_kappa"])
        assert forward["final_scores"]["corpus"] == pytest.approx(backward["final_scores"]["corpus"])

    def test_grouping_keys(self, corpus):
        groups = _groups(corpus)
        assert [g.key for g in groups] == ["10.1000/one", "10.1000/two", "no-doi-2"]
        assert is_fallback_key(groups[2].key)

    def test_same_doi_merges(self):
        papers = [
            _make_paper(doi="10.1000/ABC", evaluations=[_make_evaluation(token="a")], ground_truth={"title": "T"}),
            _make_paper(
                doi="https://doi.org/10.1000/abc",
                evaluations=[_make_evaluation(token="b")],
                ground_truth={"title": "Other", "research_field_name": "Physics"},
            ),
        ]
        groups = _groups(papers)
        assert len(groups) == 1
        g = groups[0]
        assert [e.token for e in g.evaluations] == ["a", "b"]
        assert g.ground_truth == {"title": "T", "research_field_name": "Physics"}
        assert g.is_multi_evaluator

    def test_paper_without_evaluations_dropped(self):
        papers = [_make_paper(doi="10.1000/abc", evaluations=[])]
        assert _groups(papers) == []

    def test_paper_without_evaluations_kept_when_indexed(self):
        papers = [_make_paper(doi="10.1000/abc", evaluations=[])]
        groups = _groups(papers, evaluation_index=["https://doi.org/10.1000/abc"])
        assert [g.key for g in groups] == ["10.1000/abc"]
        assert groups[0].evaluation_count == 0

    def test_index_match_respects_mode(self):
        papers = [_make_paper(doi="10.1000/abc", evaluations=[])]
        assert len(_groups(papers, evaluation_index=["10.1000/abc.v2"])) == 1
        assert _groups(papers, evaluation_index=["10.1000/abc.v2"], matching="exact") == []

    def test_fallback_key_never_index_matched(self):
        papers = [_make_paper(doi=None, evaluations=[])]
        assert _groups(papers, evaluation_index=["no-doi-0"]) == []

    def test_title_resolution(self):
        from_gt, from_sys, bare = _groups([
            _make_paper(doi="10.1/a", ground_truth={"title": "GT title"}, system_output={"metadata": {"title": "S"}}),
            _make_paper(doi="10.1/b", system_output={"metadata": {"title": "System title"}}),
            _make_paper(doi="10.1/c"),
        ])
        assert from_gt.title == "GT title"
        assert from_sys.title == "System title"
        assert bare.title == "10.1/c"


# ===========================================================================
# 5. evaluation_processor.py
# ===========================================================================


class TestEvaluationProcessor:
    def test_overall_is_mean_of_components(self):
        s = _score_set({"metadata": 0.2, "research_field": 0.4, "research_problem": 0.6, "template": 0.8, "content": 1.0})
        assert s.overall_accuracy == pytest.approx(0.6)

    def test_missing_template_excluded(self):
        """A missing template leaves overall equal to the mean of the other four."""
        s = _score_set({"metadata": 0.8, "research_field": 0.6, "research_problem": 0.4, "template": None, "content": 0.2})
        assert s.components["template"].is_empty
        assert s.overall_accuracy == pytest.approx(0.5)

    def test_no_components(self):
        s = _score_set({})
        assert s.overall_accuracy is None
        assert s.overall_quality is None

    @pytest.mark.parametrize(
        "weight, tier",
        [(5.0, "expert"), (4.0, "expert"), (3.99, "senior"), (3.0, "senior"), (2.0, "intermediate"),
         (1.99, "junior"), (1.0, "junior"), (None, "junior")],
    )
    def test_expertise_tier(self, weight, tier):
        assert expertise_tier(weight) == tier

    def test_evaluator_id_fallbacks(self):
        assert evaluator_id(EvaluatorProfile(first_name="Ada", last_name="Lovelace"), "t", 0) == "Ada_Lovelace"
        assert evaluator_id(EvaluatorProfile(email="ada@example.org"), "t", 0) == "ada@example.org"
        assert evaluator_id(EvaluatorProfile(), "tok", 0) == "tok"
        assert evaluator_id(EvaluatorProfile(), None, 3) == "evaluator-3"

    def test_confidence_weighted_accuracy(self):
        """Only components with both an automated score and a user rating contribute."""
        ev = _make_evaluation({"metadata": 0.8})
        ev["evaluationMetrics"]["overall"]["research_field"] = {
            "accuracyMetrics": {"automatedScore": {"value": 0.5}, "scoreDetails": {"normalizedRating": 0.5}},
        }
        s = process_evaluation(RawEvaluation.model_validate(ev))
        expected = confidence_weighted_score(0.5, 0.5, 3.0)["final_score"]
        assert s.confidence_weighted_accuracy == pytest.approx(expected)

    def test_process_group_tags_paper_key(self, two_rater_paper):
        group = _groups([two_rater_paper])[0]
        sets = process_group(group)
        assert [s.paper_key for s in sets] == ["10.1000/abc", "10.1000/abc"]
        assert [s.tier for s in sets] == ["intermediate", "expert"]


# ===========================================================================
# 6. aggregation.py
# ===========================================================================


class TestAggregation:
    def test_aggregate_modes(self, two_rater_paper):
        _, by_paper = _scored([two_rater_paper])
        sets = by_paper["10.1000/abc"]
        result = agg.aggregate(sets, "accuracy")
        assert result["overall"].mean == pytest.approx(0.8)
        assert result["overall"].std == pytest.approx(0.1)
        assert result["by_component"]["template"].count == 2

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            agg.aggregate([], "speed")

    def test_quality_zero_dropped_accuracy_zero_kept(self):
        s = process_evaluation(RawEvaluation.model_validate(
            _make_evaluation({}, evaluationMetrics={"overall": {"metadata": {"overall": {"overallScore": 0.0, "qualityScore": 0.0}}}})
        ))
        assert agg.aggregate([s], "accuracy")["overall"].count == 1
        assert agg.aggregate([s], "quality")["overall"].count == 0

    def test_weighted_final_score(self, two_rater_paper):
        _, by_paper = _scored([two_rater_paper])
        score = agg.weighted_final_score(by_paper["10.1000/abc"], "quality")
        assert score == pytest.approx((2.0 * 0.7 + 4.5 * 0.9) / 6.5)

    def test_weight_clamped(self):
        heavy = _score_set(0.9, expertise_weight=50.0)
        light = _score_set(0.5, expertise_weight=0.1, first_name="B")
        assert agg.weighted_final_score([heavy, light], "accuracy") == pytest.approx((5 * 0.9 + 1 * 0.5) / 6)

    def test_corpus_final_is_mean_of_papers(self, corpus):
        _, by_paper = _scored(corpus)
        finals = agg.final_scores(by_paper)
        per_paper = [v["accuracy"] for v in finals["by_paper"].values()]
        assert finals["corpus"]["accuracy"] == pytest.approx(np.mean(per_paper))

    def test_compare_quality_accuracy(self, corpus):
        groups, by_paper = _scored(corpus)
        means = {g.key: agg.paper_means(by_paper[g.key]) for g in groups}
        result = agg.compare_quality_accuracy(means)
        assert result["overall"]["paired_count"] == 3
        assert result["overall"]["mean_difference"] == pytest.approx(0.0)
        assert result["interpretation"][0] == "Quality and accuracy scores are closely aligned"

    @pytest.mark.parametrize(
        "slope, label",
        [(None, "insufficient_data"), (0.02, "improving"), (-0.02, "declining"), (0.005, "stable")],
    )
    def test_trend_label(self, slope, label):
        assert agg.trend_label(slope) == label

    def test_temporal_summary(self):
        sets = [
            _score_set(0.5, timestamp="2024-03-01T10:00:00Z"),
            _score_set(0.9, timestamp="2024-03-02T10:00:00Z"),
            _score_set(0.9, timestamp="not a date"),
        ]
        t = agg.temporal_summary(sets)
        assert [d["date"] for d in t["daily"]] == ["2024-03-01", "2024-03-02"]
        assert t["slope"] == pytest.approx(0.4)
        assert t["trend"] == "improving"

    def test_temporal_mixed_iso_precision(self):
        """Timestamps with and without milliseconds all land in the daily counts."""
        sets = [
            _score_set(0.5, timestamp="2024-03-01T10:00:00.123Z"),
            _score_set(0.6, timestamp="2024-03-02T09:00:00Z"),
            _score_set(0.7, timestamp="2024-03-03T09:00:00.000Z"),
        ]
        t = agg.temporal_summary(sets)
        assert [d["date"] for d in t["daily"]] == ["2024-03-01", "2024-03-02", "2024-03-03"]
        assert sum(d["count"] for d in t["daily"]) == 3
        assert t["slope"] == pytest.approx(0.1)

    def test_temporal_single_day(self):
        t = agg.temporal_summary([_score_set(0.5), _score_set(0.7)])
        assert t["daily"][0]["count"] == 2
        assert t["trend"] == "insufficient_data"

    def test_score_table(self, corpus):
        groups, by_paper = _scored(corpus)
        df = agg.score_table(groups, by_paper)
        assert list(df.columns) == agg.SCORE_TABLE_COLUMNS
        assert len(df) == 4 * 5


# ===========================================================================
# 7. disagreement.py
# ===========================================================================


class TestDisagreement:
    @pytest.mark.parametrize("a, b, flagged", [(0.90, 0.60, True), (0.80, 0.75, False)])
    def test_pair_flag(self, a, b, flagged):
        sets = [_score_set({"metadata": a}, first_name="A"), _score_set({"metadata": b}, first_name="B")]
        pairs = dis.pairwise_differences(sets)
        assert len(pairs) == 1
        assert pairs[0].flagged is flagged

    def test_pair_with_null_skipped(self):
        sets = [_score_set(0.9, first_name="A"), _score_set({}, first_name="B")]
        assert dis.pairwise_differences(sets) == []

    def test_close_scores_not_flagged(self, two_rater_paper):
        groups, by_paper = _scored([two_rater_paper])
        report = dis.analyze(groups[0], by_paper[groups[0].key])
        assert report.overall_std == pytest.approx(0.1)
        assert report.has_disagreement is False

    def test_spread_flags_paper_and_components(self, corpus):
        groups, by_paper = _scored(corpus)
        report = dis.analyze(groups[0], by_paper[groups[0].key])
        assert report.has_disagreement is True
        assert report.disputed_components == ["metadata", "research_field", "research_problem", "template", "content"]

    def test_component_needs_two_values(self):
        sets = [_score_set({"metadata": 0.9}, first_name="A"), _score_set({"metadata": 0.9, "template": 0.1}, first_name="B")]
        group = _groups([_make_paper()])[0]
        report = dis.analyze(group, sets)
        assert report.by_component["template"]["std"] is None
        assert report.by_component["template"]["has_disagreement"] is False

    def test_summarize(self, corpus):
        groups, by_paper = _scored(corpus)
        reports = [dis.analyze(g, by_paper[g.key]) for g in groups]
        summary = dis.summarize(reports)
        assert summary["total_multi_eval"] == 1
        assert summary["total_with_disagreement"] == 1
        assert summary["disagreement_rate"] == pytest.approx(1.0)
        assert summary["most_disputed_component"] == "metadata"
        assert summary["flagged_pairs"] == 1

    def test_summarize_without_disputes(self, two_rater_paper):
        groups, by_paper = _scored([two_rater_paper])
        summary = dis.summarize([dis.analyze(groups[0], by_paper[groups[0].key])])
        assert summary["most_disputed_component"] is None
        assert summary["disagreement_rate"] == 0.0

    def test_agreement_buckets(self, corpus):
        same = _make_paper(
            doi="10.1/same",
            evaluations=[_make_evaluation(0.8, first_name="A"), _make_evaluation(0.8, first_name="B")],
        )
        groups, by_paper = _scored(corpus + [same])
        reports = [dis.analyze(g, by_paper[g.key]) for g in groups if len(by_paper[g.key]) > 1]
        buckets = dis.agreement_buckets(reports)
        # variance 0.04 (0.9/0.5) and 0 (0.8/0.8)
        assert buckets == {"high_agreement": 1, "medium_agreement": 1, "low_agreement": 0, "disagreement": 0}

    def test_tier_agreement(self, two_rater_paper):
        _, by_paper = _scored([two_rater_paper])
        tiers = dis.tier_agreement(by_paper["10.1000/abc"])
        assert tiers["by_tier"]["expert"]["evaluator_count"] == 1
        assert tiers["by_tier"]["senior"]["mean_accuracy"] is None
        assert tiers["by_experience"]["inexperienced"]["evaluation_count"] == 2


# ===========================================================================
# 8. reliability.py
# ===========================================================================


class TestFleissKappa:
    def test_perfect_agreement(self):
        result = rel.fleiss_kappa(np.array([[2, 0, 0, 0, 0], [0, 0, 0, 0, 2]]))
        assert result.kappa == pytest.approx(1.0)
        assert result.interpretation == "Almost Perfect"

    def test_chance_agreement(self):
        matrix = np.array([[2, 0, 0, 0, 0], [1, 1, 0, 0, 0], [1, 1, 0, 0, 0], [0, 2, 0, 0, 0]])
        result = rel.fleiss_kappa(matrix)
        assert result.p_bar == pytest.approx(0.5)
        assert result.p_bar_e == pytest.approx(0.5)
        assert result.kappa == pytest.approx(0.0)

    def test_single_category(self):
        """Every rating in one bin: expected agreement is 1, kappa is 1."""
        result = rel.fleiss_kappa(np.array([[3, 0, 0, 0, 0], [3, 0, 0, 0, 0]]))
        assert result.kappa == 1.0

    def test_empty_matrix(self):
        result = rel.fleiss_kappa(np.zeros((0, 5)))
        assert result.kappa is None
        assert result.interpretation == "N/A"

    def test_rows_with_other_rater_count_excluded(self):
        result = rel.fleiss_kappa(np.array([[2, 0, 0, 0, 0], [0, 0, 0, 0, 2], [1, 1, 1, 0, 0]]))
        assert result.excluded_subjects == 1
        assert result.n_subjects == 2
        assert result.kappa == pytest.approx(1.0)

    @pytest.mark.parametrize(
        "kappa, band",
        [(None, "N/A"), (-0.1, "Poor"), (0.0, "Slight"), (0.19, "Slight"), (0.2, "Fair"), (0.5, "Moderate"),
         (0.7, "Substantial"), (0.8, "Almost Perfect"), (1.0, "Almost Perfect")],
    )
    def test_interpretation_bands(self, kappa, band):
        assert rel.interpret_kappa(kappa) == band

    @pytest.mark.parametrize("score, expected", [(0.0, 0), (0.19, 0), (0.2, 1), (0.7, 3), (0.9, 4), (1.0, 4)])
    def test_score_to_bin(self, score, expected):
        assert rel.score_to_bin(score) == expected

    def test_ratings_matrix_skips_single_rater(self):
        matrix = rel.build_ratings_matrix([[0.7, 0.9], [0.5], [None, 0.3, 0.35]])
        assert matrix.tolist() == [[0, 0, 0, 1, 1], [0, 2, 0, 0, 0]]


class TestInterRaterReliability:
    def test_single_multi_evaluator_paper(self, two_rater_paper):
        groups, by_paper = _scored([two_rater_paper])
        irr = rel.inter_rater_reliability(groups, by_paper)
        assert irr["has_data"] is True
        assert irr["multi_eval_count"] == 1
        assert irr["p_bar"] == pytest.approx(0.0)
        assert irr["p_bar_e"] == pytest.approx(0.5)
        assert irr["fleiss_kappa"] == pytest.approx(-1.0)
        assert irr["interpretation"] == "Poor"
        assert set(irr["by_component"]) == {"metadata", "research_field", "research_problem", "template", "content"}
        assert irr["agreement_stats"]["mean"] == pytest.approx(0.8)

    def test_no_multi_evaluator_papers(self):
        groups, by_paper = _scored([_make_paper()])
        irr = rel.inter_rater_reliability(groups, by_paper)
        assert irr["has_data"] is False
        assert irr["fleiss_kappa"] is None
        assert irr["interpretation"] == "N/A"
        assert irr["total_papers"] == 1

    def test_krippendorff_needs_two_items(self, two_rater_paper):
        _, by_paper = _scored([two_rater_paper])
        assert rel.compute_kripp_alpha(rel.build_wide(by_paper["10.1000/abc"])) is None

    def test_krippendorff_perfect(self):
        papers = [
            _make_paper(doi=f"10.1/{i}", evaluations=[
                _make_evaluation(v, first_name="A"), _make_evaluation(v, first_name="B"),
            ])
            for i, v in enumerate([0.2, 0.5, 0.9])
        ]
        _, by_paper = _scored(papers)
        pooled = [s for sets in by_paper.values() for s in sets]
        assert rel.compute_kripp_alpha(rel.build_wide(pooled)) == pytest.approx(1.0)

    def test_pairwise_kappa(self):
        """Identical binned component scores give a pairwise kappa of 1."""
        papers = [
            _make_paper(doi=f"10.1/{i}", evaluations=[
                _make_evaluation(v, first_name="A"), _make_evaluation(v, first_name="B"),
            ])
            for i, v in enumerate([0.1, 0.9])
        ]
        _, by_paper = _scored(papers)
        pooled = [s for sets in by_paper.values() for s in sets]
        result = rel.pairwise_kappa(pooled)
        assert result["names"] == ["A_Lovelace", "B_Lovelace"]
        assert result["matrix"][0, 1] == pytest.approx(1.0)
        assert result["lights_kappa"]["n_pairs"] == 1

    def test_pairwise_kappa_min_items(self, two_rater_paper):
        _, by_paper = _scored([two_rater_paper])
        result = rel.pairwise_kappa(by_paper["10.1000/abc"], min_items=6)
        assert np.isnan(result["matrix"][0, 1])
        assert result["lights_kappa"]["mean"] is None


# ===========================================================================
# 9. ground_truth.py
# ===========================================================================


class TestGroundTruth:
    def test_char_overlap(self):
        assert gt.char_overlap_similarity("Physics", "physics ") == 1.0
        assert gt.char_overlap_similarity("", "x") == 0.0
        assert 0.0 < gt.char_overlap_similarity("abcd", "ab") < 1.0

    def test_compare_matches(self, two_rater_paper):
        result = gt.compare(two_rater_paper["groundTruth"], two_rater_paper["systemOutput"])
        assert result["has_ground_truth"] is True
        assert set(result["matches"]) == {"title", "research_field"}
        assert result["overall_match"] == pytest.approx(1.0)

    def test_missing_system_value_scores_zero(self):
        result = gt.compare({"research_field_name": "Physics", "template_name": "T"}, {"research_field": {"label": "Physics"}})
        assert result["matches"]["template"]["match_score"] == 0.0
        assert result["matches"]["template"]["extracted"] is None
        assert result["overall_match"] == pytest.approx(0.5)

    def test_title_needs_both_sides(self):
        result = gt.compare({"title": "A title"}, {})
        assert "title" not in result["matches"]
        assert result["overall_match"] is None

    def test_extracted_value_list(self):
        result = gt.compare({"research_field": "Physics"}, {"research_field": {"extractedValue": ["Physics", "Math"]}})
        assert result["matches"]["research_field"]["extracted"] == "Physics"

    def test_injected_similarity(self):
        result = gt.compare({"title": "a"}, {"metadata": {"title": "b"}}, similarity=lambda a, b: 0.25)
        assert result["overall_match"] == 0.25

    def test_no_ground_truth(self):
        assert gt.compare(None, {"metadata": {}})["has_ground_truth"] is False

    def test_summarize(self, corpus):
        groups, by_paper = _scored(corpus)
        comparisons = {g.key: gt.compare(g.ground_truth, g.system_output) for g in groups}
        summary = gt.summarize_ground_truth(groups, comparisons, by_paper)
        assert summary["total_with_ground_truth"] == 1
        assert summary["coverage"] == pytest.approx(1 / 3)
        assert summary["field_match_stats"]["research_field"]["count"] == 1
        assert summary["score_comparison"]["with_ground_truth"]["mean"] == pytest.approx(0.7)
        assert summary["score_comparison"]["without_ground_truth"]["mean"] == pytest.approx(0.5)
        assert summary["score_comparison"]["difference"] == pytest.approx(0.2)


# ===========================================================================
# 10. evaluator_matrix.py
# ===========================================================================


class TestEvaluatorMatrix:
    def test_build(self, corpus):
        groups, by_paper = _scored(corpus)
        matrix = em.build(groups, by_paper)
        ids = {e["evaluator_id"] for e in matrix["evaluators"]}
        assert ids == {"Ada_Lovelace", "Alan_Turing", "Grace_Hopper"}
        assert matrix["most_active"] == "Ada_Lovelace"
        assert matrix["pair_count"] == 1
        pair = matrix["pairwise_matrix"][0]
        assert (pair["evaluator_1"], pair["evaluator_2"]) == ("Ada_Lovelace", "Alan_Turing")
        assert pair["agreement"] == pytest.approx(0.6)
        assert pair["mean_difference"] == pytest.approx(0.4)

    def test_evaluator_spread_source(self, corpus):
        groups, by_paper = _scored(corpus)
        evaluators = {e["evaluator_id"]: e for e in em.evaluator_summaries(groups, by_paper)}
        ada = evaluators["Ada_Lovelace"]
        assert ada["paper_count"] == 2
        assert ada["mean_accuracy"] == pytest.approx(0.75)
        assert ada["std_source"] == "components"
        assert ada["std"] == pytest.approx(0.15)

    def test_agreement_square(self, corpus):
        groups, by_paper = _scored(corpus)
        square, names = em.agreement_square(em.build(groups, by_paper))
        assert names == ["Ada_Lovelace", "Alan_Turing", "Grace_Hopper"]
        assert square[0, 1] == square[1, 0] == pytest.approx(0.6)
        assert np.isnan(square[0, 2])

    def test_pair_without_overall_accuracy_kept(self):
        """A shared paper with no overall accuracy still yields a pair, with null agreement."""
        paper = _make_paper(
            evaluations=[
                _make_evaluation({}, first_name="Ada", token="e1"),
                _make_evaluation({}, first_name="Alan", last_name="Turing", token="e2"),
            ]
        )
        groups, by_paper = _scored([paper])
        matrix = em.build(groups, by_paper)
        assert matrix["pair_count"] == 1
        pair = matrix["pairwise_matrix"][0]
        assert pair["shared_count"] == 1
        assert pair["agreement"] is None
        assert matrix["highest_agreement_pair"] is None
        square, _ = em.agreement_square(matrix)
        assert np.isnan(square[0, 1])


# ===========================================================================
# 11. findings.py
# ===========================================================================


def _stats(mean, std=0.1, count=3):
    return {"mean": mean, "std": std, "median": mean, "min": mean, "max": mean, "count": count, "values": []}


class TestFindings:
    @pytest.mark.parametrize(
        "value, band",
        [(0.95, "Excellent"), (0.8, "Excellent"), (0.6, "Good"), (0.45, "Moderate"), (0.1, "Needs Improvement")],
    )
    def test_score_band(self, value, band):
        assert score_band(value) == band

    def test_rank_components(self):
        ranked = rank_components({"metadata": _stats(0.5), "template": _stats(0.9), "content": _stats(None)})
        assert [c["key"] for c in ranked] == ["template", "metadata"]

    def _inputs(self):
        accuracy = {"overall": _stats(0.7), "by_component": {"metadata": _stats(0.9), "template": _stats(0.5)}}
        quality = {"overall": _stats(0.8), "by_component": {}}
        reliability = {"has_data": True, "fleiss_kappa": 0.5, "interpretation": "Moderate", "multi_eval_count": 2}
        ground_truth = {"total_with_ground_truth": 1}
        return accuracy, quality, reliability, ground_truth

    def test_order(self):
        result = generate_findings(*self._inputs(), total_papers=4)
        assert [f["id"] for f in result["findings"]] == [
            "overall_accuracy",
            "overall_quality",
            "best_accuracy_component",
            "worst_accuracy_component",
            "irr",
            "quality_accuracy_gap",
            "gt_coverage",
        ]
        assert result["summary"]["overall_assessment"] == "Good"
        assert len(result["summary"]["key_insights"]) == 3

    def test_finding_fields(self):
        result = generate_findings(*self._inputs(), total_papers=4)
        for f in result["findings"]:
            assert set(f) == {"id", "category", "title", "value", "interpretation", "description", "significance"}

    def test_empty_input(self):
        result = generate_findings(*self._inputs(), total_papers=0)
        assert result["findings"] == []

    def test_conditional_findings(self):
        accuracy, quality, reliability, ground_truth = self._inputs()
        accuracy["by_component"] = {"metadata": _stats(0.9)}
        quality["overall"] = _stats(0.0)
        reliability = {"has_data": False, "fleiss_kappa": None}
        ids = [f["id"] for f in generate_findings(accuracy, quality, reliability, ground_truth, 2)["findings"]]
        assert ids == ["overall_accuracy", "best_accuracy_component", "gt_coverage"]

    def test_failing_finding_skipped(self):
        """A malformed section drops its finding instead of raising."""
        accuracy, quality, _, _ = self._inputs()
        reliability = {"has_data": True, "fleiss_kappa": 0.5}
        ids = [f["id"] for f in generate_findings(accuracy, quality, reliability, {}, 4)["findings"]]
        assert "irr" not in ids
        assert "gt_coverage" not in ids
        assert ids[0] == "overall_accuracy"


# ===========================================================================
# 12. validate.py
# ===========================================================================


class TestValidate:
    def test_valid_export(self, export_json):
        assert val.validate_file(export_json) == []

    def test_missing_file(self, tmp_path):
        errors = val.validate_file(tmp_path / "nope.json")
        assert errors and "File not found" in errors[0]

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        assert any("Failed to read JSON" in e for e in val.validate_file(path))

    def test_score_out_of_range(self, tmp_path):
        path = _write_export(tmp_path / "e.json", [_make_paper(evaluations=[_make_evaluation(1.5)])])
        assert any("Score out of range" in e for e in val.validate_file(path))

    def test_rating_out_of_range(self, tmp_path):
        ev = _make_evaluation({"metadata": 0.8})
        ev["evaluationMetrics"]["overall"]["metadata"]["title"] = {"rating": 7}
        path = _write_export(tmp_path / "e.json", [_make_paper(evaluations=[ev])])
        assert any("Rating out of range" in e for e in val.validate_file(path))

    def test_reference_values_not_range_checked(self, tmp_path):
        ev = _make_evaluation({"metadata": 0.8})
        ev["evaluationMetrics"]["overall"]["metadata"]["publication_year"] = {"referenceValue": 2021, "rating": 4}
        path = _write_export(tmp_path / "e.json", [_make_paper(evaluations=[ev])])
        assert val.validate_file(path) == []

    def test_duplicate_tokens(self, tmp_path):
        papers = [
            _make_paper(doi="10.1/a", evaluations=[_make_evaluation(token="dup")]),
            _make_paper(doi="10.1/b", evaluations=[_make_evaluation(token="dup")]),
        ]
        path = _write_export(tmp_path / "e.json", papers)
        assert any("Duplicate evaluation tokens" in e for e in val.validate_file(path))

    def test_paper_without_evaluations(self, tmp_path):
        path = _write_export(tmp_path / "e.json", [_make_paper(), _make_paper(doi="10.1/b", evaluations=[])])
        assert any("Papers without evaluations" in e for e in val.validate_file(path))

    def test_expertise_weight_out_of_range(self, tmp_path):
        path = _write_export(tmp_path / "e.json", [_make_paper(evaluations=[_make_evaluation(expertise_weight=7)])])
        assert any("Expertise weight out of range" in e for e in val.validate_file(path))

    def test_record_validation_error(self, tmp_path):
        path = _write_export(tmp_path / "e.json", [_make_paper(userEvaluations="not a list")])
        assert any("validation error" in e for e in val.validate_file(path))

    def test_main_exit_codes(self, tmp_path, export_json):
        bad = _write_export(tmp_path / "bad.json", [_make_paper(evaluations=[_make_evaluation(2.0)])])
        assert val.main([str(export_json)]) == 0
        assert val.main([str(export_json), str(bad)]) == 1

    def test_validate_never_modifies(self, export_json):
        before = export_json.read_text()
        val.validate_file(export_json)
        assert export_json.read_text() == before
