"""
Service layer for the adaptive exam engine.
"""
from .exam_service import ExamEngineService, ServiceResponse
from .generation_jobs import GenerationJob, GenerationJobStore

__all__ = [
    "ExamEngineService",
    "ServiceResponse",
    "GenerationJob",
    "GenerationJobStore",
]
