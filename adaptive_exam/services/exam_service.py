"""
Service facade that routes validated actions to the engine.

ExamEngineService owns the item bank, the session manager, the parameter
registry and the background job runners. Callers either pass a parsed action
to :meth:`ExamEngineService.dispatch` (errors raise) or an untyped payload to
:meth:`ExamEngineService.handle` (errors come back as a structured payload).
"""
import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, assert_never

from pydantic import ValidationError

from adaptive_exam.core.cat.calibration import calibrate
from adaptive_exam.core.cat.calibration_runner import CalibrationRunner
from adaptive_exam.core.cat.engine import EngineConfig, ExamSessionManager
from adaptive_exam.core.cat.errors import ExamEngineError
from adaptive_exam.core.cat.exam_generator import generate_exam
from adaptive_exam.core.cat.parameter_registry import ItemParameterRegistry
from adaptive_exam.core.logging_config import session_id_context
from adaptive_exam.models import QuestionItem, StopReason
from adaptive_exam.schemas.actions import (
    AbandonSessionAction,
    Action,
    CalibrateAction,
    CancelJobAction,
    CompleteExamAction,
    GenerateExamAction,
    GetExamAction,
    GetExamStatisticsAction,
    GetJobAction,
    GetNextQuestionAction,
    GetSessionAction,
    ListSessionsAction,
    StartSessionAction,
    SubmitResponseAction,
    parse_action,
)
from adaptive_exam.services.generation_jobs import GenerationJobStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceResponse:
    """Outcome of :meth:`ExamEngineService.handle`."""

    ok: bool
    action: Optional[str]
    result: Any = None
    error: Optional[Dict[str, Any]] = None


class ExamEngineService:
    """Single entry point for exam generation, delivery and calibration."""

    def __init__(
        self,
        items: Iterable[QuestionItem] = (),
        config: Optional[EngineConfig] = None,
        registry: Optional[ItemParameterRegistry] = None,
    ):
        self.registry = registry or ItemParameterRegistry()
        self.manager = ExamSessionManager(config=config, registry=self.registry)
        self.calibration_runner = CalibrationRunner(self.registry)
        self.generation_jobs = GenerationJobStore()
        self._bank_lock = threading.Lock()
        self._bank: Dict[str, QuestionItem] = {}
        self.add_items(items)

    # ------------------------------------------------------------------
    # Item bank
    # ------------------------------------------------------------------

    def add_items(self, items: Iterable[QuestionItem]) -> int:
        """Add items to the bank and register their parameters. Returns the count added."""
        items = list(items)
        with self._bank_lock:
            for item in items:
                self._bank[item.item_id] = item
        self.registry.register_items(items)
        if items:
            logger.info(f"Added {len(items)} items to the bank")
        return len(items)

    def bank_items(self, item_ids: Optional[Iterable[str]] = None) -> List[QuestionItem]:
        """
        Bank items, optionally restricted to ``item_ids``.

        Raises:
            ValueError: If any requested id is not in the bank.
        """
        with self._bank_lock:
            if item_ids is None:
                return list(self._bank.values())
            ids = list(item_ids)
            missing = [iid for iid in ids if iid not in self._bank]
            if missing:
                raise ValueError(f"Unknown item ids: {missing}")
            return [self._bank[iid] for iid in ids]

    def _items_with_current_parameters(self, items: List[QuestionItem]) -> List[QuestionItem]:
        """Copies of ``items`` carrying the registry's current parameters."""
        snapshot = self.registry.snapshot()
        return [
            dataclasses.replace(item, irt_params=snapshot.get(item.item_id) or item.irt_params)
            for item in items
        ]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle(self, payload: Any) -> ServiceResponse:
        """
        Validate and dispatch an untyped payload.

        Validation failures and engine errors are returned, not raised.
        """
        try:
            action = parse_action(payload)
        except ValidationError as e:
            logger.info(f"Rejected invalid action payload: {e.error_count()} errors")
            return ServiceResponse(
                ok=False,
                action=payload.get("action") if isinstance(payload, dict) else None,
                error={
                    "code": "validation_error",
                    "category": "protocol",
                    "message": "Invalid action payload",
                    "context": {"errors": e.errors(include_url=False)},
                },
            )

        try:
            result = self.dispatch(action)
        except ExamEngineError as e:
            return ServiceResponse(ok=False, action=action.action, error=e.to_dict())
        except ValueError as e:
            return ServiceResponse(
                ok=False,
                action=action.action,
                error={
                    "code": "invalid_request",
                    "category": "protocol",
                    "message": str(e),
                    "context": {},
                },
            )
        return ServiceResponse(ok=True, action=action.action, result=result)

    def dispatch(self, action: Action) -> Any:
        """
        Execute a validated action.

        Returns the engine's result object for the action type. Engine errors
        propagate unchanged.
        """
        session_id = getattr(action, "session_id", None)
        token = session_id_context.set(session_id)
        try:
            logger.debug(f"Dispatching {action.action}", extra={"action": action.action})
            return self._dispatch(action)
        finally:
            session_id_context.reset(token)

    def _dispatch(self, action: Action) -> Any:
        match action:
            case GenerateExamAction():
                return self._generate_exam(action)
            case StartSessionAction():
                return self.manager.start_session(
                    action.exam_id,
                    action.learner_id,
                    initial_ability=action.initial_ability,
                    prior_sd=action.prior_sd,
                    session_id=action.session_id,
                )
            case GetNextQuestionAction():
                return self.manager.get_next_question(action.session_id)
            case SubmitResponseAction():
                return self.manager.submit_response(
                    action.session_id,
                    action.item_id,
                    action.response,
                    response_time_ms=action.response_time_ms,
                    confidence=action.confidence,
                    external_score=action.external_score,
                )
            case CompleteExamAction():
                return self.manager.complete_exam(action.session_id)
            case AbandonSessionAction():
                return self.manager.abandon_session(
                    action.session_id, reason=StopReason(action.reason)
                )
            case CalibrateAction():
                return self._calibrate(action)
            case GetJobAction():
                job = self.generation_jobs.get_job(action.job_id)
                if job is None:
                    job = self.calibration_runner.get_job(action.job_id)
                if job is None:
                    raise ValueError(f"Unknown job id: {action.job_id}")
                return job
            case CancelJobAction():
                return self.generation_jobs.cancel(action.job_id)
            case GetExamAction():
                return self.manager.get_exam(action.exam_id)
            case GetExamStatisticsAction():
                return self.manager.exam_statistics(action.exam_id)
            case GetSessionAction():
                return self.manager.get_session(action.session_id)
            case ListSessionsAction():
                sessions = self.manager.list_sessions(action.state)
                if action.exam_id is not None:
                    sessions = [s for s in sessions if s.exam_id == action.exam_id]
                return sessions
            case _:
                assert_never(action)

    def _generate_exam(self, action: GenerateExamAction) -> Any:
        requirements = action.requirements.to_domain()
        pool = self.bank_items(action.item_ids)

        if action.run_in_background:
            return self.generation_jobs.submit(
                requirements,
                pool,
                exam_id=action.exam_id,
                on_complete=self.manager.register_exam,
            )

        exam = generate_exam(requirements, pool, exam_id=action.exam_id)
        self.manager.register_exam(exam)
        return exam

    def _calibrate(self, action: CalibrateAction) -> Any:
        records = [r.to_domain() for r in action.responses]
        if action.item_ids is not None:
            items = self.bank_items(action.item_ids)
        else:
            logged = {r.item_id for r in records}
            items = [item for item in self.bank_items() if item.item_id in logged]
        items = self._items_with_current_parameters(items)

        kwargs = {
            "min_sample_size": action.min_sample_size,
            "max_iterations": action.max_iterations,
            "tolerance": action.tolerance,
        }

        if action.run_in_background:
            return self.calibration_runner.start_job(
                items, records, publish=action.publish, **kwargs
            )

        calibration = calibrate(items, records, **kwargs)
        if action.publish:
            self.registry.publish(
                calibration.updated_parameters(),
                source=f"calibration:{calibration.calibration_id}",
            )
        return calibration
