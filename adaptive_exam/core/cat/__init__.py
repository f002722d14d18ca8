"""
CAT (Computerized Adaptive Testing) engine.

This package provides 3PL IRT ability estimation, item selection, session
management, exam generation and MML-EM item calibration.
"""

from .ability_estimation import (
    AbilityEstimate,
    compute_prior_theta,
    estimate_ability,
    estimate_ability_eap,
    estimate_ability_mle,
)
from .calibration import (
    ParameterRecoveryReport,
    build_response_matrix,
    calibrate,
    validate_recovery,
)
from .calibration_runner import CalibrationJobState, CalibrationRunner
from .engine import EngineConfig, ExamSessionManager
from .errors import (
    CalibrationError,
    ExamEngineError,
    ExamNotFound,
    GenerationCancelled,
    InsufficientPoolCoverage,
    ItemNotAdministered,
    PoolExhausted,
    ResponseScoringError,
    SessionNotFound,
    SessionTerminated,
)
from .exam_generator import (
    CancellationToken,
    GenerationProgress,
    generate_exam,
    generate_exam_with_progress,
)
from .exposure_control import ExposureTracker
from .irt import fisher_information_3pl, probability_3pl
from .item_selection import select_next_item
from .parameter_registry import ItemParameterRegistry, ParameterSnapshot
from .response_scoring import score_response
from .score_conversion import compile_results
from .stopping_rules import StoppingDecision, check_stopping_criteria

__all__ = [
    "AbilityEstimate",
    "estimate_ability",
    "estimate_ability_eap",
    "estimate_ability_mle",
    "compute_prior_theta",
    "calibrate",
    "build_response_matrix",
    "validate_recovery",
    "ParameterRecoveryReport",
    "CalibrationRunner",
    "CalibrationJobState",
    "EngineConfig",
    "ExamSessionManager",
    "ExamEngineError",
    "ExamNotFound",
    "SessionNotFound",
    "SessionTerminated",
    "ItemNotAdministered",
    "ResponseScoringError",
    "PoolExhausted",
    "InsufficientPoolCoverage",
    "CalibrationError",
    "GenerationCancelled",
    "CancellationToken",
    "GenerationProgress",
    "generate_exam",
    "generate_exam_with_progress",
    "ExposureTracker",
    "probability_3pl",
    "fisher_information_3pl",
    "select_next_item",
    "ItemParameterRegistry",
    "ParameterSnapshot",
    "score_response",
    "compile_results",
    "StoppingDecision",
    "check_stopping_criteria",
]
