"""
Core value types for the adaptive exam engine.

Items, exam definitions, sessions, results and calibration outputs are plain
dataclasses. The engine mutates only ``QuestionItem.exposure_count`` and
``ExamSession``; everything else is treated as read-only once constructed.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from adaptive_exam.core.datetime_utils import utc_now
from adaptive_exam.models.enums import (
    AdjustmentType,
    AssessmentPurpose,
    EstimationMethod,
    PerformanceLevel,
    QuestionType,
    SessionState,
    StopReason,
)

# Tolerance for floating-point proportion summation checks
_PROPORTION_SUM_TOLERANCE = 0.01


@dataclass(frozen=True)
class IRTParameters:
    """3PL item parameters.

    Attributes:
        discrimination: a parameter, must be > 0.
        difficulty: b parameter, on the theta scale.
        guessing: c parameter (lower asymptote), must be in [0, 1).
    """

    discrimination: float
    difficulty: float
    guessing: float = 0.0

    def __post_init__(self) -> None:
        if not math.isfinite(self.discrimination) or self.discrimination <= 0:
            raise ValueError(
                f"Discrimination parameter must be positive, got {self.discrimination}"
            )
        if not math.isfinite(self.difficulty):
            raise ValueError(f"Difficulty parameter must be finite, got {self.difficulty}")
        if not (0.0 <= self.guessing < 1.0):
            raise ValueError(
                f"Guessing parameter must be in [0, 1), got {self.guessing}"
            )

    @property
    def a(self) -> float:
        return self.discrimination

    @property
    def b(self) -> float:
        return self.difficulty

    @property
    def c(self) -> float:
        return self.guessing


@dataclass
class QuestionItem:
    """An assessment item with its statistical description.

    ``content_ref`` points at question content owned by the content pipeline;
    the engine never reads it. ``answer_key`` is interpreted per
    ``question_type`` by :mod:`adaptive_exam.core.cat.response_scoring`.
    """

    item_id: str
    question_type: QuestionType
    objective_tags: FrozenSet[str]
    irt_params: IRTParameters
    exposure_count: int = 0
    content_ref: Any = None
    answer_key: Any = None
    max_points: float = 1.0
    numeric_tolerance: float = 1e-6
    estimated_time_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        self.question_type = QuestionType(self.question_type)
        self.objective_tags = frozenset(self.objective_tags)
        if self.exposure_count < 0:
            raise ValueError(
                f"exposure_count must be non-negative, got {self.exposure_count}"
            )
        if self.max_points <= 0:
            raise ValueError(f"max_points must be positive, got {self.max_points}")
        if self.numeric_tolerance < 0:
            raise ValueError(
                f"numeric_tolerance must be non-negative, got {self.numeric_tolerance}"
            )


@dataclass(frozen=True)
class LearningObjective:
    """A learning objective and how many items should cover it."""

    objective_id: str
    target_count: int
    min_count: Optional[int] = None
    title: str = ""
    weight: Optional[float] = None

    def __post_init__(self) -> None:
        if self.target_count < 1:
            raise ValueError(
                f"target_count must be >= 1 for objective '{self.objective_id}', "
                f"got {self.target_count}"
            )
        if self.min_count is None:
            object.__setattr__(self, "min_count", self.target_count)
        elif not (0 <= self.min_count <= self.target_count):
            raise ValueError(
                f"min_count must be in [0, target_count] for objective "
                f"'{self.objective_id}', got {self.min_count}"
            )

    @property
    def required_count(self) -> int:
        # min_count is always populated by __post_init__
        return int(self.min_count)  # type: ignore[arg-type]


@dataclass(frozen=True)
class ExamConstraints:
    """Assembly and administration constraints for an exam."""

    total_questions: int
    difficulty_range: Tuple[float, float] = (-3.0, 3.0)
    question_type_distribution: Mapping[QuestionType, float] = field(
        default_factory=dict
    )
    max_per_objective: Optional[int] = None
    time_limit_minutes: Optional[float] = None

    def __post_init__(self) -> None:
        if self.total_questions < 1:
            raise ValueError(
                f"total_questions must be >= 1, got {self.total_questions}"
            )
        low, high = self.difficulty_range
        if low >= high:
            raise ValueError(
                f"difficulty_range must be (low, high) with low < high, "
                f"got {self.difficulty_range}"
            )
        if self.max_per_objective is not None and self.max_per_objective < 1:
            raise ValueError(
                f"max_per_objective must be >= 1, got {self.max_per_objective}"
            )

        distribution = {
            QuestionType(qt): float(p)
            for qt, p in self.question_type_distribution.items()
        }
        if distribution:
            if any(p < 0 for p in distribution.values()):
                raise ValueError("Question type proportions must be non-negative")
            total = sum(distribution.values())
            if abs(total - 1.0) > _PROPORTION_SUM_TOLERANCE:
                raise ValueError(
                    f"Question type proportions must sum to ~1.0, got {total:.3f}"
                )
        object.__setattr__(self, "question_type_distribution", distribution)
        object.__setattr__(self, "difficulty_range", (float(low), float(high)))


@dataclass(frozen=True)
class ExamRequirements:
    """What an exam must measure and under which constraints."""

    learning_objectives: List[LearningObjective]
    constraints: ExamConstraints
    purpose: AssessmentPurpose = AssessmentPurpose.FORMATIVE
    title: str = ""
    passing_theta: Optional[float] = None
    fixed_form: bool = False

    def __post_init__(self) -> None:
        if not self.learning_objectives:
            raise ValueError("At least one learning objective is required")
        ids = [obj.objective_id for obj in self.learning_objectives]
        duplicates = sorted({oid for oid in ids if ids.count(oid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate learning objective ids: {duplicates}")
        object.__setattr__(self, "purpose", AssessmentPurpose(self.purpose))
        object.__setattr__(self, "learning_objectives", list(self.learning_objectives))

    @property
    def objective_ids(self) -> List[str]:
        return [obj.objective_id for obj in self.learning_objectives]


@dataclass(frozen=True)
class ObjectiveCoverage:
    """How well the generated pool covers one objective."""

    objective_id: str
    required: int
    target: int
    available: int
    selected: int
    difficulty_bands: Tuple[int, ...] = ()

    @property
    def satisfied(self) -> bool:
        return self.selected >= self.required


@dataclass(frozen=True)
class AdaptiveExam:
    """An assembled exam: requirements plus the eligible item pool."""

    exam_id: str
    requirements: ExamRequirements
    item_pool: Tuple[QuestionItem, ...]
    coverage: Mapping[str, ObjectiveCoverage] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=utc_now)
    version: str = "1.0"
    _index: Dict[str, QuestionItem] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        pool = tuple(self.item_pool)
        object.__setattr__(self, "item_pool", pool)
        index = {item.item_id: item for item in pool}
        if len(index) != len(pool):
            raise ValueError(f"Exam {self.exam_id} item pool contains duplicate ids")
        object.__setattr__(self, "_index", index)

    def get_item(self, item_id: str) -> Optional[QuestionItem]:
        return self._index.get(item_id)

    @property
    def pool_size(self) -> int:
        return len(self.item_pool)


@dataclass
class ExamResponse:
    """A single scored learner response."""

    item_id: str
    raw_response: Any
    is_correct: bool
    response_time_ms: float
    confidence_level: Optional[float] = None
    timestamp: datetime = field(default_factory=utc_now)
    points_earned: float = 0.0


@dataclass
class AdaptiveAdjustment:
    """One logged estimator/selector decision."""

    adjustment_id: str
    trigger: str
    adjustment_type: AdjustmentType
    old_value: Any
    new_value: Any
    rationale: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class PerformanceIndicators:
    """Running indicators derived from the response history."""

    accuracy_rate: float = 0.0
    avg_response_time_ms: float = 0.0
    consistency_score: float = 0.0


@dataclass
class ExamSession:
    """In-memory representation of one learner's adaptive exam session."""

    session_id: str
    exam_id: str
    learner_id: str
    state: SessionState
    ability_estimate: float
    standard_error: float
    parameter_version: int
    item_parameters: Mapping[str, IRTParameters]
    prior_mean: float = 0.0
    prior_sd: float = 1.0
    administered_items: List[str] = field(default_factory=list)
    responses: List[ExamResponse] = field(default_factory=list)
    adaptive_adjustments: List[AdaptiveAdjustment] = field(default_factory=list)
    performance_indicators: PerformanceIndicators = field(
        default_factory=PerformanceIndicators
    )
    objective_coverage: Dict[str, int] = field(default_factory=dict)
    # Estimates recorded after each response, one entry per administered item
    theta_history: List[float] = field(default_factory=list)
    se_history: List[float] = field(default_factory=list)
    estimation_method: EstimationMethod = EstimationMethod.PRIOR
    pending_item_id: Optional[str] = None
    stop_reason: Optional[StopReason] = None
    started_at: datetime = field(default_factory=utc_now)
    last_activity_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    final_results: Optional["ExamResults"] = None

    @property
    def items_administered(self) -> int:
        return len(self.administered_items)

    @property
    def correct_count(self) -> int:
        return sum(1 for r in self.responses if r.is_correct)


@dataclass
class ScoredResponse:
    """Outcome of submitting one response."""

    is_correct: bool
    points_earned: float
    adaptive_adjustments: List[AdaptiveAdjustment]
    ability_estimate: float
    standard_error: float
    items_administered: int
    state: SessionState
    stop_reason: Optional[StopReason] = None


@dataclass(frozen=True)
class ObjectiveMastery:
    """Per-objective performance and mastery estimate."""

    objective_id: str
    items_attempted: int
    correct_count: int
    accuracy: float
    points_earned: float
    max_points: float
    theta_estimate: float
    theta_se: float
    mastery_probability: float
    avg_difficulty: Optional[float]


@dataclass(frozen=True)
class ExamResults:
    """Immutable score report for a finished session."""

    session_id: str
    exam_id: str
    learner_id: str
    ability_estimate: float
    standard_error: float
    confidence_interval: Tuple[float, float]
    percentile: float
    total_score: float
    max_possible_score: float
    percentage_score: float
    performance_level: PerformanceLevel
    passed: Optional[bool]
    objective_mastery: Tuple[ObjectiveMastery, ...]
    items_administered: int
    correct_count: int
    stop_reason: Optional[StopReason]
    completion_state: SessionState
    parameter_version: int
    performance_indicators: PerformanceIndicators
    completed_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ExamStatistics:
    """Aggregate delivery statistics for one exam over its live sessions.

    Means are None when no session qualifies: ``mean_theta`` and
    ``mean_duration_minutes`` use terminal sessions, ``mean_percentage_score``
    uses sessions with compiled results.
    """

    exam_id: str
    total_attempts: int
    completed: int
    abandoned: int
    in_progress: int
    completion_rate: float
    mean_theta: Optional[float]
    mean_percentage_score: Optional[float]
    mean_duration_minutes: Optional[float]


@dataclass(frozen=True)
class ResponseRecord:
    """One row of a calibration response log.

    ``learner_id`` is the ability placeholder: responses sharing it are
    treated as coming from the same latent ability.
    """

    learner_id: str
    item_id: str
    correct: bool
    response_time_ms: Optional[float] = None


@dataclass(frozen=True)
class ItemCalibrationResult:
    """Parameter estimates and diagnostics for a single item."""

    item_id: str
    irt_params: IRTParameters
    se_discrimination: float
    se_difficulty: float
    se_guessing: float
    n_responses: int
    p_value: float
    point_biserial: Optional[float]
    avg_response_time_ms: Optional[float]
    recalibrated: bool


@dataclass(frozen=True)
class FitStatistics:
    """Convergence and fit diagnostics for a calibration run."""

    log_likelihood: float
    converged: bool
    iterations: int
    max_parameter_change: float
    excluded_items: Tuple[str, ...] = ()

    @property
    def low_confidence(self) -> bool:
        return not self.converged


@dataclass(frozen=True)
class DifficultyCalibration:
    """Result of a calibration run. Never mutated after creation."""

    calibration_id: str
    response_matrix_ref: str
    item_results: Mapping[str, ItemCalibrationResult]
    fit_statistics: FitStatistics
    sample_size: int
    n_responses: int
    created_at: datetime = field(default_factory=utc_now)

    def updated_parameters(self) -> Dict[str, IRTParameters]:
        """Parameters for items that were actually re-estimated."""
        return {
            item_id: result.irt_params
            for item_id, result in self.item_results.items()
            if result.recalibrated
        }
