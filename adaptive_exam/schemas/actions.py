"""
Pydantic schemas for engine actions.

Every request into the engine is one of the action models below,
discriminated on the ``action`` field. Untyped payloads (for example decoded
JSON) are validated with :func:`parse_action`.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from typing_extensions import Self

from adaptive_exam.models import (
    AssessmentPurpose,
    ExamConstraints,
    ExamRequirements,
    LearningObjective,
    QuestionType,
    ResponseRecord,
    SessionState,
)


# =============================================================================
# Exam requirements
# =============================================================================


class LearningObjectiveSchema(BaseModel):
    """Schema for a learning objective in exam requirements."""

    objective_id: str = Field(..., min_length=1, description="Learning objective ID")
    target_count: int = Field(..., ge=1, description="Target number of items")
    min_count: Optional[int] = Field(
        None, ge=0, description="Minimum items required (defaults to target_count)"
    )
    title: str = Field("", description="Human-readable objective title")
    weight: Optional[float] = Field(
        None, gt=0.0, description="Relative weight for content balancing"
    )

    @model_validator(mode="after")
    def validate_min_count(self) -> Self:
        """Ensure min_count does not exceed target_count."""
        if self.min_count is not None and self.min_count > self.target_count:
            raise ValueError(
                f"min_count ({self.min_count}) must be <= target_count ({self.target_count})"
            )
        return self

    def to_domain(self) -> LearningObjective:
        return LearningObjective(
            objective_id=self.objective_id,
            target_count=self.target_count,
            min_count=self.min_count,
            title=self.title,
            weight=self.weight,
        )


class ExamConstraintsSchema(BaseModel):
    """Schema for exam assembly constraints."""

    total_questions: int = Field(..., ge=1, description="Maximum items per session")
    difficulty_range: Tuple[float, float] = Field(
        (-3.0, 3.0), description="Preferred (low, high) difficulty range on the theta scale"
    )
    question_type_distribution: Dict[QuestionType, float] = Field(
        default_factory=dict,
        description="Target proportion per question type (empty = any type)",
    )
    max_per_objective: Optional[int] = Field(
        None, ge=1, description="Hard cap on items per objective in a session"
    )
    time_limit_minutes: Optional[float] = Field(None, gt=0.0)

    @field_validator("question_type_distribution")
    @classmethod
    def validate_distribution(cls, v: Dict[QuestionType, float]) -> Dict[QuestionType, float]:
        """Ensure proportions are non-negative and sum to ~1."""
        if not v:
            return v
        if any(p < 0 for p in v.values()):
            raise ValueError("Question type proportions must be non-negative")
        total = sum(v.values())
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"Question type proportions must sum to ~1.0, got {total:.3f}")
        return v

    @model_validator(mode="after")
    def validate_difficulty_range(self) -> Self:
        """Ensure low < high."""
        low, high = self.difficulty_range
        if low >= high:
            raise ValueError(f"difficulty_range low ({low}) must be < high ({high})")
        return self

    def to_domain(self) -> ExamConstraints:
        return ExamConstraints(
            total_questions=self.total_questions,
            difficulty_range=self.difficulty_range,
            question_type_distribution=dict(self.question_type_distribution),
            max_per_objective=self.max_per_objective,
            time_limit_minutes=self.time_limit_minutes,
        )


class ExamRequirementsSchema(BaseModel):
    """Schema for exam requirements."""

    learning_objectives: List[LearningObjectiveSchema] = Field(..., min_length=1)
    constraints: ExamConstraintsSchema
    purpose: AssessmentPurpose = AssessmentPurpose.FORMATIVE
    title: str = ""
    passing_theta: Optional[float] = Field(
        None, description="Theta cut for pass/fail (None = no pass/fail decision)"
    )
    fixed_form: bool = Field(
        False, description="Assemble a fixed form of exactly total_questions items"
    )

    @field_validator("learning_objectives")
    @classmethod
    def validate_unique_objectives(
        cls, v: List[LearningObjectiveSchema]
    ) -> List[LearningObjectiveSchema]:
        """Reject duplicate objective ids."""
        ids = [obj.objective_id for obj in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Learning objective ids must be unique")
        return v

    def to_domain(self) -> ExamRequirements:
        return ExamRequirements(
            learning_objectives=[obj.to_domain() for obj in self.learning_objectives],
            constraints=self.constraints.to_domain(),
            purpose=self.purpose,
            title=self.title,
            passing_theta=self.passing_theta,
            fixed_form=self.fixed_form,
        )


class ResponseRecordSchema(BaseModel):
    """Schema for one calibration response log row."""

    learner_id: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)
    correct: bool
    response_time_ms: Optional[float] = Field(None, ge=0.0)

    def to_domain(self) -> ResponseRecord:
        return ResponseRecord(
            learner_id=self.learner_id,
            item_id=self.item_id,
            correct=self.correct,
            response_time_ms=self.response_time_ms,
        )


# =============================================================================
# Actions
# =============================================================================


class GenerateExamAction(BaseModel):
    """Assemble an exam from the item bank."""

    action: Literal["generate_exam"] = "generate_exam"
    requirements: ExamRequirementsSchema
    item_ids: Optional[List[str]] = Field(
        None, description="Restrict the pool to these bank items (None = whole bank)"
    )
    exam_id: Optional[str] = None
    run_in_background: bool = Field(
        False, description="Return a job id instead of waiting for the exam"
    )


class StartSessionAction(BaseModel):
    """Start a session on a generated exam."""

    action: Literal["start_session"] = "start_session"
    exam_id: str = Field(..., min_length=1)
    learner_id: str = Field(..., min_length=1)
    initial_ability: Optional[float] = Field(None, ge=-6.0, le=6.0)
    prior_sd: Optional[float] = Field(None, gt=0.0)
    session_id: Optional[str] = None


class GetNextQuestionAction(BaseModel):
    """Issue (or re-issue) the next item for a session."""

    action: Literal["get_next_question"] = "get_next_question"
    session_id: str = Field(..., min_length=1)


class SubmitResponseAction(BaseModel):
    """Submit a learner's response to the outstanding item."""

    action: Literal["submit_response"] = "submit_response"
    session_id: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)
    response: Any = Field(None, description="Raw answer; shape depends on question type")
    response_time_ms: float = Field(..., ge=0.0)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    external_score: Optional[float] = Field(
        None, ge=0.0, le=1.0, description="Rubric score for essay/code items"
    )


class CompleteExamAction(BaseModel):
    """Finish a session and return its results."""

    action: Literal["complete_exam"] = "complete_exam"
    session_id: str = Field(..., min_length=1)


class AbandonSessionAction(BaseModel):
    """Abandon an open session."""

    action: Literal["abandon_session"] = "abandon_session"
    session_id: str = Field(..., min_length=1)
    reason: Literal["abandoned", "timeout"] = "abandoned"


class CalibrateAction(BaseModel):
    """Recalibrate bank items from a response log."""

    action: Literal["calibrate"] = "calibrate"
    responses: List[ResponseRecordSchema] = Field(..., min_length=1)
    item_ids: Optional[List[str]] = Field(
        None, description="Items to calibrate (None = every bank item in the log)"
    )
    min_sample_size: Optional[int] = Field(None, ge=1)
    max_iterations: Optional[int] = Field(None, ge=1)
    tolerance: Optional[float] = Field(None, gt=0.0)
    publish: bool = Field(True, description="Publish fitted parameters on success")
    run_in_background: bool = Field(
        False, description="Run on the calibration runner and return a job id"
    )


class GetJobAction(BaseModel):
    """Look up a background generation or calibration job."""

    action: Literal["get_job"] = "get_job"
    job_id: str = Field(..., min_length=1)


class CancelJobAction(BaseModel):
    """Cancel a background generation job."""

    action: Literal["cancel_job"] = "cancel_job"
    job_id: str = Field(..., min_length=1)


class GetExamAction(BaseModel):
    """Look up a registered exam."""

    action: Literal["get_exam"] = "get_exam"
    exam_id: str = Field(..., min_length=1)


class GetExamStatisticsAction(BaseModel):
    """Aggregate delivery statistics over an exam's sessions."""

    action: Literal["get_exam_statistics"] = "get_exam_statistics"
    exam_id: str = Field(..., min_length=1)


class GetSessionAction(BaseModel):
    """Look up a live session."""

    action: Literal["get_session"] = "get_session"
    session_id: str = Field(..., min_length=1)


class ListSessionsAction(BaseModel):
    """List live sessions for monitoring, optionally filtered."""

    action: Literal["list_sessions"] = "list_sessions"
    exam_id: Optional[str] = None
    state: Optional[SessionState] = None


Action = Annotated[
    Union[
        GenerateExamAction,
        StartSessionAction,
        GetNextQuestionAction,
        SubmitResponseAction,
        CompleteExamAction,
        AbandonSessionAction,
        CalibrateAction,
        GetJobAction,
        CancelJobAction,
        GetExamAction,
        GetExamStatisticsAction,
        GetSessionAction,
        ListSessionsAction,
    ],
    Field(discriminator="action"),
]

_action_adapter: TypeAdapter[Action] = TypeAdapter(Action)


def parse_action(payload: Any) -> Action:
    """
    Validate an untyped payload into an action model.

    Raises:
        pydantic.ValidationError: Unknown ``action`` or invalid fields.
    """
    if isinstance(payload, BaseModel):
        return _action_adapter.validate_python(payload.model_dump())
    return _action_adapter.validate_python(payload)
