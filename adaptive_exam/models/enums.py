"""Shared domain enums for the adaptive exam engine.

This module is the single source of truth for the string enums used by the
core engine, the boundary schemas and the service layer.

Usage:
    from adaptive_exam.models.enums import QuestionType, SessionState
"""

import enum


class QuestionType(str, enum.Enum):
    """Item formats supported by the engine."""

    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    SHORT_ANSWER = "short_answer"
    ESSAY = "essay"
    CODE = "code"
    MATCHING = "matching"
    DRAG_DROP = "drag_drop"
    NUMERICAL = "numerical"

    @property
    def allows_guessing(self) -> bool:
        """Selected-response formats can be answered correctly by chance."""
        return self in SELECTED_RESPONSE_TYPES

    @property
    def requires_external_grading(self) -> bool:
        """Formats whose answers are graded by an external rubric grader."""
        return self in (QuestionType.ESSAY, QuestionType.CODE)


SELECTED_RESPONSE_TYPES = frozenset(
    {
        QuestionType.MULTIPLE_CHOICE,
        QuestionType.TRUE_FALSE,
        QuestionType.MATCHING,
        QuestionType.DRAG_DROP,
    }
)


class AssessmentPurpose(str, enum.Enum):
    """Why the exam is being administered."""

    DIAGNOSTIC = "diagnostic"
    FORMATIVE = "formative"
    SUMMATIVE = "summative"
    PLACEMENT = "placement"
    CERTIFICATION = "certification"
    PRACTICE = "practice"


class SessionState(str, enum.Enum):
    """Exam session lifecycle state."""

    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABANDONED)


class StopReason(str, enum.Enum):
    """Why a session stopped administering items."""

    SE_THRESHOLD = "se_threshold"
    MAX_ITEMS = "max_items"
    POOL_EXHAUSTED = "pool_exhausted"
    COMPLETED_BY_REQUEST = "completed_by_request"
    ABANDONED = "abandoned"
    TIMEOUT = "timeout"


class EstimationMethod(str, enum.Enum):
    """Ability estimation method used for the current estimate."""

    PRIOR = "prior"
    EAP = "eap"
    MLE = "mle"


class AdjustmentType(str, enum.Enum):
    """Kinds of decisions recorded in a session's adaptive adjustment log."""

    ABILITY_UPDATE = "ability_update"
    ESTIMATOR_SWITCH = "estimator_switch"
    ESTIMATOR_FALLBACK = "estimator_fallback"
    OBJECTIVE_SATURATED = "objective_saturated"
    TERMINATION = "termination"


class PerformanceLevel(str, enum.Enum):
    """Reporting band derived from the final ability estimate."""

    BELOW_BASIC = "below_basic"
    BASIC = "basic"
    PROFICIENT = "proficient"
    ADVANCED = "advanced"
    EXPERT = "expert"


class JobStatus(str, enum.Enum):
    """Status for background generation and calibration jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
