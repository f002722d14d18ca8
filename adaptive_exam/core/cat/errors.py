"""
Exception hierarchy and user-facing message templates for the exam engine.

Errors fall into three categories:

- ``not_found``: the caller referenced an exam or session the engine does not
  know. Surfaced immediately, never retried.
- ``protocol``: out-of-order or malformed client calls. Surfaced, and the
  session is left exactly as it was before the call.
- ``data_sufficiency``: expected edge cases with defined fallback behaviour
  (early termination, partial fulfillment report, low-confidence flag).

Numerical edge cases in estimation are recovered locally and never raised.

Usage:
    from adaptive_exam.core.cat.errors import ErrorMessages, SessionNotFound

    raise SessionNotFound(
        ErrorMessages.session_not_found(session_id),
        context={"session_id": session_id},
    )
"""

from typing import Any, Dict, List, Mapping, Optional

CATEGORY_NOT_FOUND = "not_found"
CATEGORY_PROTOCOL = "protocol"
CATEGORY_DATA_SUFFICIENCY = "data_sufficiency"
CATEGORY_CANCELLED = "cancelled"


class ExamEngineError(Exception):
    """Base class for all engine errors.

    Carries a human-readable message plus a context dict; both are folded into
    ``str(exc)`` so log lines are self-describing.
    """

    code = "engine_error"
    category = CATEGORY_DATA_SUFFICIENCY

    def __init__(  # noqa: D107
        self,
        message: str,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg = f"{msg} (context: {ctx_str})"
        if self.original_error:
            msg = f"{msg} - caused by: {str(self.original_error)}"
        return msg

    def to_dict(self) -> Dict[str, Any]:
        """Serializable error payload for the service boundary."""
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "context": dict(self.context),
        }


# --- Not found ---


class ExamNotFound(ExamEngineError):
    code = "exam_not_found"
    category = CATEGORY_NOT_FOUND


class SessionNotFound(ExamEngineError):
    code = "session_not_found"
    category = CATEGORY_NOT_FOUND


# --- Protocol ---


class SessionTerminated(ExamEngineError):
    """The session is completed or abandoned and accepts no further writes."""

    code = "session_terminated"
    category = CATEGORY_PROTOCOL


class ItemNotAdministered(ExamEngineError):
    """A response was submitted for an item that is not the outstanding one."""

    code = "item_not_administered"
    category = CATEGORY_PROTOCOL


class ResponseScoringError(ExamEngineError):
    """The raw response cannot be scored against the item's answer key."""

    code = "response_scoring_error"
    category = CATEGORY_PROTOCOL


# --- Data sufficiency ---


class PoolExhausted(ExamEngineError):
    """No eligible item remains. The session has been completed."""

    code = "pool_exhausted"


class InsufficientPoolCoverage(ExamEngineError):
    """One or more objectives cannot reach their minimum item count.

    ``report`` maps objective id to its
    :class:`~adaptive_exam.models.ObjectiveCoverage`.
    """

    code = "insufficient_pool_coverage"

    def __init__(  # noqa: D107
        self,
        message: str,
        report: Mapping[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ):
        self.report = dict(report)
        super().__init__(message, context=context)

    @property
    def unsatisfied_objectives(self) -> List[str]:
        return [oid for oid, cov in self.report.items() if not cov.satisfied]

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["report"] = {
            oid: {
                "required": cov.required,
                "target": cov.target,
                "available": cov.available,
                "selected": cov.selected,
            }
            for oid, cov in self.report.items()
        }
        return payload


class CalibrationError(ExamEngineError):
    """Calibration input is unusable (as opposed to merely not converging)."""

    code = "calibration_error"


# --- Cancellation ---


class GenerationCancelled(ExamEngineError):
    code = "generation_cancelled"
    category = CATEGORY_CANCELLED


class ErrorMessages:
    """Centralized user-facing message constants and templates.

    Naming Convention:
    - Constants: SCREAMING_SNAKE_CASE for static messages
    - Methods: snake_case for templates that accept parameters
    """

    NO_RESPONSES = "Response log is empty."
    GENERATION_CANCELLED = "Exam generation was cancelled."
    EXTERNAL_SCORE_REQUIRED = (
        "This question type is graded externally. "
        "Please supply an external score between 0 and 1."
    )

    @staticmethod
    def exam_not_found(exam_id: str) -> str:
        return f"Exam not found (ID: {exam_id})."

    @staticmethod
    def session_not_found(session_id: str) -> str:
        return f"Exam session not found (ID: {session_id})."

    @staticmethod
    def session_terminated(session_id: str, state: str) -> str:
        """Message for writes against a completed or abandoned session."""
        return (
            f"Exam session {session_id} is {state} and no longer accepts responses."
        )

    @staticmethod
    def item_not_administered(item_id: str, pending_item_id: Optional[str]) -> str:
        if pending_item_id is None:
            return (
                f"Question {item_id} was not issued. "
                "Please request the next question before responding."
            )
        return (
            f"Question {item_id} is not the outstanding question "
            f"(expected {pending_item_id})."
        )

    @staticmethod
    def pool_exhausted(session_id: str, administered: int) -> str:
        return (
            f"No eligible questions remain for session {session_id} "
            f"after {administered} items. Please complete the exam."
        )

    @staticmethod
    def insufficient_coverage(objective_ids: List[str]) -> str:
        return (
            "Item pool cannot satisfy the minimum item count for objectives: "
            f"{', '.join(objective_ids)}."
        )

    @staticmethod
    def unscorable_response(item_id: str, reason: str) -> str:
        return f"Response to question {item_id} could not be scored: {reason}."
