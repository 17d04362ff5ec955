"""
Typed boundary records for raw evaluation JSON and engine configuration.

Raw evaluation exports are camelCase, deeply nested, and differ per extraction
component. Everything here is validated once, at load time, into pydantic
models: the paper/evaluation envelope in ``PaperRecord``/``RawEvaluation`` and
the five component blob shapes in the ``*Blob`` models that the score resolver
validates lazily, one component at a time, so a malformed component never takes
its siblings down with it.

Every model accepts both the camelCase keys of the export and the snake_case
field names, and keeps unknown keys (``extra="allow"``).

Usage:
    from records import load_config, load_papers
    config = load_config(Path("engine_config.yaml"))
    papers, aggregated_keys = load_papers(Path("evaluations.json"))
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Literal, TypeVar

import yaml
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "engine_config.yaml"

# ---------------------------------------------------------------------------
# Base record
# ---------------------------------------------------------------------------


class Record(BaseModel):
    """Lenient record: camelCase or snake_case keys, unknown keys kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


def _none_to_empty(value: Any) -> Any:
    return {} if value is None else value


T = TypeVar("T")

# A nested sub-record that may be absent or explicitly null in the export.
Nested = Annotated[T, BeforeValidator(_none_to_empty)]


def _to_text(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _to_iso_timestamp(value: Any) -> Any:
    """Epoch milliseconds become an ISO-8601 UTC string; strings pass through."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).isoformat()
    return value


Text = Annotated[str | None, BeforeValidator(_to_text)]
Timestamp = Annotated[str | None, BeforeValidator(_to_iso_timestamp)]

# ---------------------------------------------------------------------------
# Evaluator profile and evaluation envelope
# ---------------------------------------------------------------------------

NO_EXPERIENCE_VALUES = {"", "never", "no", "none", "false", "0"}


class EvaluatorProfile(Record):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    role: str | None = None
    domain_expertise: str | None = None
    prior_experience: str | bool | None = Field(default=None, alias="orkgExperience")
    expertise_weight: float | None = None

    @property
    def has_prior_experience(self) -> bool:
        if isinstance(self.prior_experience, bool):
            return self.prior_experience
        if self.prior_experience is None:
            return False
        return self.prior_experience.strip().lower() not in NO_EXPERIENCE_VALUES


class EvaluationMetrics(Record):
    overall: dict[str, Any] = Field(default_factory=dict)

    @field_validator("overall", mode="before")
    @classmethod
    def _null_overall(cls, value: Any) -> Any:
        return {} if value is None else value


class RawEvaluation(Record):
    """One evaluator's submission for one paper occurrence."""

    token: Text = None
    timestamp: Timestamp = None
    submission_date: Timestamp = None
    user_info: Nested[EvaluatorProfile] = Field(default_factory=EvaluatorProfile)
    evaluation_metrics: Nested[EvaluationMetrics] = Field(default_factory=EvaluationMetrics)

    def component_blob(self, key: str) -> Any:
        """Raw blob for one component, or None when the evaluation skipped it."""
        blob = self.evaluation_metrics.overall.get(key)
        if blob is None and self.evaluation_metrics.model_extra:
            blob = self.evaluation_metrics.model_extra.get(key)
        return blob

    @property
    def submitted_at(self) -> str | None:
        return self.timestamp or self.submission_date


class PaperRecord(Record):
    """One paper occurrence with its attached evaluations."""

    doi: str | None = None
    token: Text = None
    title: str | None = None
    ground_truth: dict[str, Any] | None = None
    system_output: dict[str, Any] | None = None
    user_evaluations: list[RawEvaluation] = Field(default_factory=list)
    evaluation: RawEvaluation | None = None

    @field_validator("user_evaluations", mode="before")
    @classmethod
    def _drop_malformed_evaluations(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        kept = []
        for i, item in enumerate(value):
            try:
                kept.append(RawEvaluation.model_validate(item))
            except ValidationError as exc:
                log.warning("Dropping malformed evaluation #%d (%d errors)", i, exc.error_count())
        return kept

    @property
    def evaluations(self) -> list[RawEvaluation]:
        evals = list(self.user_evaluations)
        if self.evaluation is not None and not evals:
            evals.append(self.evaluation)
        return evals

    def candidate_doi(self) -> str | None:
        """DOI from the record itself, then ground truth, then system output."""
        if self.doi:
            return self.doi
        if self.ground_truth and self.ground_truth.get("doi"):
            return str(self.ground_truth["doi"])
        metadata = (self.system_output or {}).get("metadata") or {}
        if isinstance(metadata, dict) and metadata.get("doi"):
            return str(metadata["doi"])
        return None


# ---------------------------------------------------------------------------
# Component blob shapes
# ---------------------------------------------------------------------------


class ScoreValue(Record):
    value: float | None = None


class FieldScore(Record):
    score: float | None = None


class ScoreDetails(Record):
    normalized_rating: float | None = None
    final_score: float | None = None


class SimilarityData(Record):
    automated_overall_score: float | None = None
    reference_value: Any = None
    extracted_value: Any = None
    max_similarity: float | None = None


class QualityData(Record):
    overall_score: float | None = None
    field_specific_metrics: dict[str, Nested[FieldScore]] = Field(default_factory=dict)

    @field_validator("field_specific_metrics", mode="before")
    @classmethod
    def _null_metrics(cls, value: Any) -> Any:
        return {} if value is None else value


class FieldAssessment(Record):
    rating: float | None = None
    score: float | None = None
    reference_value: Any = None
    extracted_value: Any = None


class MetadataOverall(Record):
    accuracy_score: float | None = None
    overall_score: float | None = None
    quality_score: float | None = None


METADATA_FIELDS = ("title", "authors", "doi", "publication_year", "venue")


class MetadataBlob(Record):
    overall: Nested[MetadataOverall] = Field(default_factory=MetadataOverall)
    title: FieldAssessment | None = None
    authors: FieldAssessment | None = None
    doi: FieldAssessment | None = None
    publication_year: FieldAssessment | None = Field(default=None, alias="publication_year")
    venue: FieldAssessment | None = None

    def field_assessments(self) -> list[FieldAssessment]:
        return [a for a in (getattr(self, f) for f in METADATA_FIELDS) if a is not None]


class AccuracyMetrics(Record):
    automated_score: Nested[ScoreValue] = Field(default_factory=ScoreValue)
    similarity_data: Nested[SimilarityData] = Field(default_factory=SimilarityData)
    score_details: Nested[ScoreDetails] = Field(default_factory=ScoreDetails)


class QualityMetrics(Record):
    overall_quality: Nested[ScoreValue] = Field(default_factory=ScoreValue)
    quality_data: Nested[QualityData] = Field(default_factory=QualityData)


class ResearchFieldBlob(Record):
    accuracy_metrics: Nested[AccuracyMetrics] = Field(default_factory=AccuracyMetrics)
    quality_metrics: Nested[QualityMetrics] = Field(default_factory=QualityMetrics)
    overall_score: float | None = None
    ground_truth: dict[str, Any] | None = None
    system_output: dict[str, Any] | None = None


class ProblemScore(Record):
    automated: float | None = None
    final_score: float | None = None


class ProblemAccuracy(Record):
    overall_accuracy: Nested[ProblemScore] = Field(default_factory=ProblemScore)


class ProblemQuality(Record):
    overall_quality: Nested[ProblemScore] = Field(default_factory=ProblemScore)
    problem_title: FieldScore | None = None
    problem_description: FieldScore | None = None
    relevance: FieldScore | None = None
    evidence_quality: FieldScore | None = None

    def dimension_scores(self) -> list[float]:
        dims = (self.problem_title, self.problem_description, self.relevance, self.evidence_quality)
        return [d.score for d in dims if d is not None and d.score is not None]


class ProblemUserRatings(Record):
    overall_rating: float | None = None


class ProblemDetail(Record):
    accuracy: Nested[ProblemAccuracy] = Field(default_factory=ProblemAccuracy)
    quality: ProblemQuality | None = None
    user_ratings: Nested[ProblemUserRatings] = Field(default_factory=ProblemUserRatings)
    reference_value: Any = None
    extracted_value: Any = None


class ProblemOverall(Record):
    research_problem: ProblemDetail | None = Field(default=None, alias="research_problem")


class ResearchProblemBlob(Record):
    overall: Nested[ProblemOverall] = Field(default_factory=ProblemOverall)
    ground_truth: dict[str, Any] | None = None
    system_output: dict[str, Any] | None = None


class AccuracyResults(Record):
    similarity_data: Nested[SimilarityData] = Field(default_factory=SimilarityData)
    score_details: Nested[ScoreDetails] = Field(default_factory=ScoreDetails)


class QualityResults(Record):
    quality_data: Nested[QualityData] = Field(default_factory=QualityData)


class TemplateBlob(Record):
    accuracy_results: Nested[AccuracyResults] = Field(default_factory=AccuracyResults)
    accuracy_score: float | None = None
    overall_score: float | None = None
    quality_score: float | None = None
    quality_results: Nested[QualityResults] = Field(default_factory=QualityResults)
    ground_truth: dict[str, Any] | None = None
    system_output: dict[str, Any] | None = None


class ContentProperty(Record):
    accuracy_score: float | None = None
    quality_score: float | None = None


class PropertyRating(Record):
    rating: float | None = None


CONTENT_RESERVED_KEYS = {"userRatings", "user_ratings", "_aggregate"}


class ContentBlob(Record):
    """Content scores live under arbitrary property keys next to ``userRatings``."""

    user_ratings: dict[str, Nested[PropertyRating]] = Field(default_factory=dict)

    @field_validator("user_ratings", mode="before")
    @classmethod
    def _null_ratings(cls, value: Any) -> Any:
        return {} if value is None else value

    def properties(self) -> dict[str, ContentProperty]:
        extra = self.model_extra or {}
        return {
            key: ContentProperty.model_validate(value)
            for key, value in extra.items()
            if key not in CONTENT_RESERVED_KEYS and isinstance(value, dict)
        }


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------


class BlendWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    automated: float = Field(ge=0.0, le=1.0)
    user: float = Field(ge=0.0, le=1.0)


# The aggregation path and the evaluation-form path ship opposite
# automated/user splits. Both are kept and overridable in engine_config.yaml.
AGGREGATION_BLEND = BlendWeights(automated=0.6, user=0.4)
FORM_BLEND = BlendWeights(automated=0.4, user=0.6)


class Thresholds(BaseModel):
    disagreement_std: float = 0.15
    reliability_bins: int = Field(default=5, ge=2)
    excellent: float = 0.8
    good: float = 0.6
    moderate: float = 0.4
    aligned_gap: float = 0.05
    pairwise_min_items: int = 4


class Weights(BaseModel):
    aggregation_blend: BlendWeights = AGGREGATION_BLEND
    form_blend: BlendWeights = FORM_BLEND
    min_automated_weight: float = 0.1
    agreement_bonus_factor: float = 0.1


class Grouping(BaseModel):
    doi_matching: Literal["substring", "exact"] = "substring"


class OutputOptions(BaseModel):
    plots: bool = True
    tex: bool = True


class EngineConfig(BaseModel):
    thresholds: Thresholds = Field(default_factory=Thresholds)
    weights: Weights = Field(default_factory=Weights)
    grouping: Grouping = Field(default_factory=Grouping)
    output: OutputOptions = Field(default_factory=OutputOptions)

    def blend_discrepancy(self) -> bool:
        """True when the two blending surfaces disagree on the split."""
        agg, form = self.weights.aggregation_blend, self.weights.form_blend
        return (agg.automated, agg.user) != (form.automated, form.user)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(config_path: Path | None = None) -> EngineConfig:
    if config_path is None:
        return EngineConfig()
    return EngineConfig.model_validate(yaml.safe_load(config_path.read_text()) or {})


def parse_papers(raw_papers: list[Any]) -> list[PaperRecord]:
    """Validate raw paper dicts, skipping (and logging) malformed ones."""
    papers: list[PaperRecord] = []
    for i, item in enumerate(raw_papers):
        try:
            papers.append(PaperRecord.model_validate(item))
        except ValidationError as exc:
            log.warning("Skipping malformed paper record #%d (%d errors)", i, exc.error_count())
    return papers


def read_export(path: Path) -> tuple[list[Any], list[str]]:
    """Raw paper dicts and already-aggregated keys from an evaluation export.

    Accepts a bare list of paper records, ``{"papers": [...]}``, or
    ``{"papers": {id: record}}``. Already-aggregated keys, when present, are
    read from ``aggregatedKeys``.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    aggregated_keys: list[str] = []
    if isinstance(data, dict):
        raw = data.get("papers", [])
        if isinstance(raw, dict):
            raw = list(raw.values())
        aggregated_keys = [str(k) for k in data.get("aggregatedKeys") or data.get("aggregated_keys") or []]
    else:
        raw = data
    if not isinstance(raw, list):
        raise ValueError(f"Expected a list of paper records in {path}, got {type(raw).__name__}")
    return raw, aggregated_keys


def load_papers(path: Path) -> tuple[list[PaperRecord], list[str]]:
    """Load and validate an evaluation export (see ``read_export``)."""
    raw, aggregated_keys = read_export(path)
    papers = parse_papers(raw)
    log.info("Loaded %d paper records from %s", len(papers), path)
    return papers, aggregated_keys
