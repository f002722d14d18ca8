"""
Models package for the adaptive exam engine.
"""
from .domain import (
    AdaptiveAdjustment,
    AdaptiveExam,
    DifficultyCalibration,
    ExamConstraints,
    ExamRequirements,
    ExamResponse,
    ExamResults,
    ExamSession,
    ExamStatistics,
    FitStatistics,
    IRTParameters,
    ItemCalibrationResult,
    LearningObjective,
    ObjectiveCoverage,
    ObjectiveMastery,
    PerformanceIndicators,
    QuestionItem,
    ResponseRecord,
    ScoredResponse,
)
from .enums import (
    AdjustmentType,
    AssessmentPurpose,
    EstimationMethod,
    JobStatus,
    PerformanceLevel,
    QuestionType,
    SessionState,
    StopReason,
)

__all__ = [
    "AdaptiveAdjustment",
    "AdaptiveExam",
    "DifficultyCalibration",
    "ExamConstraints",
    "ExamRequirements",
    "ExamResponse",
    "ExamResults",
    "ExamSession",
    "ExamStatistics",
    "FitStatistics",
    "IRTParameters",
    "ItemCalibrationResult",
    "LearningObjective",
    "ObjectiveCoverage",
    "ObjectiveMastery",
    "PerformanceIndicators",
    "QuestionItem",
    "ResponseRecord",
    "ScoredResponse",
    "AdjustmentType",
    "AssessmentPurpose",
    "EstimationMethod",
    "JobStatus",
    "PerformanceLevel",
    "QuestionType",
    "SessionState",
    "StopReason",
]
