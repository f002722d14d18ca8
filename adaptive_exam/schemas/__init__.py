"""
Pydantic schemas for the engine boundary.
"""
from .actions import (
    AbandonSessionAction,
    Action,
    CalibrateAction,
    CancelJobAction,
    CompleteExamAction,
    ExamConstraintsSchema,
    ExamRequirementsSchema,
    GenerateExamAction,
    GetExamAction,
    GetExamStatisticsAction,
    GetJobAction,
    GetNextQuestionAction,
    GetSessionAction,
    LearningObjectiveSchema,
    ListSessionsAction,
    ResponseRecordSchema,
    StartSessionAction,
    SubmitResponseAction,
    parse_action,
)

__all__ = [
    "Action",
    "parse_action",
    "GenerateExamAction",
    "StartSessionAction",
    "GetNextQuestionAction",
    "SubmitResponseAction",
    "CompleteExamAction",
    "AbandonSessionAction",
    "CalibrateAction",
    "GetJobAction",
    "CancelJobAction",
    "GetExamAction",
    "GetExamStatisticsAction",
    "GetSessionAction",
    "ListSessionsAction",
    "ExamRequirementsSchema",
    "ExamConstraintsSchema",
    "LearningObjectiveSchema",
    "ResponseRecordSchema",
]
