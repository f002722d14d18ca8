"""
ExamSessionManager: state machine and orchestrator for adaptive exam sessions.

Session lifecycle:

    created --get_next_question--> in_progress --stopping rule--> completed
       |                               |
       +------ abandon / timeout ------+--------------------------> abandoned

Every operation on a session runs under that session's lock, so response
submission, re-estimation and the stopping-rule check happen atomically.
Operations on different sessions proceed in parallel. An operation that
raises leaves its session exactly as it found it: all new values are computed
first and committed only once nothing else can fail.

Sessions take a snapshot of the item parameter registry at start and use it
for every estimate and selection until they finish.
"""

import logging
import math
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Sequence

from adaptive_exam.core.cat.ability_estimation import AbilityEstimate, estimate_ability
from adaptive_exam.core.cat.errors import (
    ErrorMessages,
    ExamNotFound,
    ItemNotAdministered,
    PoolExhausted,
    SessionNotFound,
    SessionTerminated,
)
from adaptive_exam.core.cat.exposure_control import ExposureTracker, session_rng
from adaptive_exam.core.cat.irt import probability_3pl
from adaptive_exam.core.cat.item_selection import eligible_items, select_next_item
from adaptive_exam.core.cat.parameter_registry import ItemParameterRegistry
from adaptive_exam.core.cat.response_scoring import score_response
from adaptive_exam.core.cat.score_conversion import compile_results
from adaptive_exam.core.cat.stopping_rules import check_stopping_criteria
from adaptive_exam.core.config import settings
from adaptive_exam.core.datetime_utils import seconds_since, utc_now
from adaptive_exam.models import (
    AdaptiveAdjustment,
    AdaptiveExam,
    AdjustmentType,
    EstimationMethod,
    ExamResponse,
    ExamResults,
    ExamSession,
    ExamStatistics,
    PerformanceIndicators,
    QuestionItem,
    ScoredResponse,
    SessionState,
    StopReason,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Tunable CAT parameters. Defaults come from settings."""

    se_threshold: float = 0.30
    min_items: int = 5
    prior_mean: float = 0.0
    prior_sd: float = 1.0
    quadrature_points: int = 61
    mle_min_responses: int = 5
    mle_max_iterations: int = 25
    theta_bound: float = 6.0
    exposure_percentile: float = 90.0
    exposure_penalty: float = 0.5
    randomesque_k: int = 1
    session_idle_timeout_seconds: float = 3600.0
    mastery_theta_cut: float = 0.0
    certification_passing_theta: float = 0.5

    @classmethod
    def from_settings(cls, **overrides: Any) -> "EngineConfig":
        """Build a config from the settings singleton, with optional overrides."""
        config = cls(
            se_threshold=settings.CAT_SE_THRESHOLD,
            min_items=settings.CAT_MIN_ITEMS,
            prior_mean=settings.CAT_PRIOR_MEAN,
            prior_sd=settings.CAT_PRIOR_SD,
            quadrature_points=settings.CAT_QUADRATURE_POINTS,
            mle_min_responses=settings.CAT_MLE_MIN_RESPONSES,
            mle_max_iterations=settings.CAT_MLE_MAX_ITERATIONS,
            theta_bound=settings.CAT_THETA_BOUND,
            exposure_percentile=settings.CAT_EXPOSURE_PERCENTILE,
            exposure_penalty=settings.CAT_EXPOSURE_PENALTY,
            randomesque_k=settings.CAT_RANDOMESQUE_K,
            session_idle_timeout_seconds=settings.CAT_SESSION_IDLE_TIMEOUT_SECONDS,
            mastery_theta_cut=settings.MASTERY_THETA_CUT,
            certification_passing_theta=settings.CERTIFICATION_PASSING_THETA,
        )
        return replace(config, **overrides) if overrides else config


def compute_performance_indicators(
    responses: Sequence[ExamResponse],
    session: ExamSession,
    theta: float,
) -> PerformanceIndicators:
    """
    Running accuracy, mean response time and response consistency.

    consistency_score = 1 - mean(|u_i - P_i(theta)|), i.e. how closely the
    observed pattern follows the model's expectation at the current estimate.
    """
    if not responses:
        return PerformanceIndicators()

    n = len(responses)
    correct = sum(1 for r in responses if r.is_correct)
    avg_time = sum(r.response_time_ms for r in responses) / n

    residual = 0.0
    for r in responses:
        params = session.item_parameters[r.item_id]
        p = float(probability_3pl(theta, params.a, params.b, params.c))
        residual += abs((1.0 if r.is_correct else 0.0) - p)

    return PerformanceIndicators(
        accuracy_rate=round(correct / n, 4),
        avg_response_time_ms=round(avg_time, 2),
        consistency_score=round(max(0.0, 1.0 - residual / n), 4),
    )


class ExamSessionManager:
    """
    Orchestrator for adaptive exam sessions.

    Manages:
    - Exam registration and per-exam item pools
    - Session creation with parameter snapshots and priors
    - Item issuing (with re-issue of an outstanding item)
    - Response scoring, ability re-estimation and the adjustment log
    - Stopping criteria, completion, abandonment and idle timeouts
    - Final result compilation (cached, so completion is idempotent)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        registry: Optional[ItemParameterRegistry] = None,
        exposure_tracker: Optional[ExposureTracker] = None,
    ):
        self.config = config or EngineConfig.from_settings()
        self.registry = registry or ItemParameterRegistry()
        self.exposure_tracker = exposure_tracker or ExposureTracker()

        self._lock = threading.Lock()
        self._exams: Dict[str, AdaptiveExam] = {}
        self._sessions: Dict[str, ExamSession] = {}
        self._session_locks: Dict[str, threading.Lock] = {}

        logger.info(
            f"ExamSessionManager initialized (SE threshold={self.config.se_threshold}, "
            f"min items={self.config.min_items}, "
            f"randomesque K={self.config.randomesque_k})"
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def register_exam(self, exam: AdaptiveExam) -> None:
        """Make an exam available for sessions and register its item parameters."""
        self.registry.register_items(exam.item_pool)
        with self._lock:
            self._exams[exam.exam_id] = exam
        logger.info(f"Registered exam {exam.exam_id} with {exam.pool_size} items")

    def get_exam(self, exam_id: str) -> AdaptiveExam:
        with self._lock:
            exam = self._exams.get(exam_id)
        if exam is None:
            raise ExamNotFound(
                ErrorMessages.exam_not_found(exam_id), context={"exam_id": exam_id}
            )
        return exam

    def get_session(self, session_id: str) -> ExamSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(
                ErrorMessages.session_not_found(session_id),
                context={"session_id": session_id},
            )
        return session

    def _session_and_lock(self, session_id: str):
        with self._lock:
            session = self._sessions.get(session_id)
            lock = self._session_locks.get(session_id)
        if session is None or lock is None:
            raise SessionNotFound(
                ErrorMessages.session_not_found(session_id),
                context={"session_id": session_id},
            )
        return session, lock

    def list_sessions(self, state: Optional[SessionState] = None) -> List[ExamSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        if state is None:
            return sessions
        return [s for s in sessions if s.state == state]

    def exam_statistics(self, exam_id: str) -> ExamStatistics:
        """
        Aggregate the live (not archived) sessions of an exam.

        ``in_progress`` counts every open session, including ones that have
        not been issued an item yet. ``completion_rate`` is completed sessions
        over all attempts.

        Raises:
            ExamNotFound: If the exam is not registered.
        """
        self.get_exam(exam_id)
        sessions = [s for s in self.list_sessions() if s.exam_id == exam_id]

        completed = [s for s in sessions if s.state == SessionState.COMPLETED]
        abandoned = [s for s in sessions if s.state == SessionState.ABANDONED]
        finished = completed + abandoned
        scored = [s.final_results for s in sessions if s.final_results is not None]
        durations = [
            (s.completed_at - s.started_at).total_seconds() / 60.0
            for s in finished
            if s.completed_at is not None
        ]

        def mean(values: List[float]) -> Optional[float]:
            return round(sum(values) / len(values), 4) if values else None

        return ExamStatistics(
            exam_id=exam_id,
            total_attempts=len(sessions),
            completed=len(completed),
            abandoned=len(abandoned),
            in_progress=len(sessions) - len(finished),
            completion_rate=round(len(completed) / len(sessions), 4) if sessions else 0.0,
            mean_theta=mean([s.ability_estimate for s in finished]),
            mean_percentage_score=mean([r.percentage_score for r in scored]),
            mean_duration_minutes=mean(durations),
        )

    def archive_session(self, session_id: str) -> ExamSession:
        """
        Remove a terminal session and hand it to the caller for persistence.

        Raises:
            SessionNotFound: If the session does not exist.
            ValueError: If the session is still open.
        """
        session, lock = self._session_and_lock(session_id)
        with lock:
            if not session.state.is_terminal:
                raise ValueError(
                    f"Session {session_id} is {session.state.value}; "
                    "only completed or abandoned sessions can be archived"
                )
            with self._lock:
                self._sessions.pop(session_id, None)
                self._session_locks.pop(session_id, None)
        logger.info(f"Archived session {session_id}")
        return session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        exam_id: str,
        learner_id: str,
        initial_ability: Optional[float] = None,
        prior_sd: Optional[float] = None,
        session_id: Optional[str] = None,
    ) -> ExamSession:
        """
        Create a session in the ``created`` state.

        Args:
            exam_id: Registered exam to run.
            learner_id: Learner taking the exam.
            initial_ability: Prior mean for theta (defaults to the configured prior).
            prior_sd: Prior SD (defaults to the configured prior SD). Use
                :func:`compute_prior_theta` to derive both from past sessions.
            session_id: Optional caller-provided id.

        Raises:
            ExamNotFound: If ``exam_id`` is not registered.
            ValueError: If ``session_id`` is already in use or the prior is invalid.
        """
        exam = self.get_exam(exam_id)

        prior_mean = (
            float(initial_ability) if initial_ability is not None else self.config.prior_mean
        )
        sd = float(prior_sd) if prior_sd is not None else self.config.prior_sd
        if not math.isfinite(prior_mean):
            raise ValueError(f"initial_ability must be finite, got {initial_ability}")
        if not (sd > 0 and math.isfinite(sd)):
            raise ValueError(f"prior_sd must be positive, got {prior_sd}")

        snapshot = self.registry.snapshot()
        item_parameters = MappingProxyType(
            self.registry.parameters_for(exam.item_pool, snapshot)
        )

        session = ExamSession(
            session_id=session_id or uuid.uuid4().hex,
            exam_id=exam_id,
            learner_id=learner_id,
            state=SessionState.CREATED,
            ability_estimate=prior_mean,
            standard_error=sd,
            parameter_version=snapshot.version,
            item_parameters=item_parameters,
            prior_mean=prior_mean,
            prior_sd=sd,
            objective_coverage={oid: 0 for oid in exam.requirements.objective_ids},
        )

        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session id {session.session_id} already exists")
            self._sessions[session.session_id] = session
            self._session_locks[session.session_id] = threading.Lock()

        logger.info(
            f"Started session {session.session_id} for learner {learner_id} "
            f"on exam {exam_id} (prior theta={prior_mean:.3f}, "
            f"parameter version={snapshot.version})"
        )
        return session

    def get_next_question(self, session_id: str) -> QuestionItem:
        """
        Issue the next item for a session.

        If an item is already outstanding it is returned again without a new
        exposure. The first call moves the session to ``in_progress``.

        Raises:
            SessionNotFound: Unknown session.
            SessionTerminated: Session is completed or abandoned.
            PoolExhausted: No eligible item remains; the session is now completed.
        """
        session, lock = self._session_and_lock(session_id)
        with lock:
            self._ensure_open(session)
            exam = self.get_exam(session.exam_id)

            if session.pending_item_id is not None:
                pending = exam.get_item(session.pending_item_id)
                if pending is not None:
                    logger.debug(
                        f"Session {session_id}: re-issuing outstanding item "
                        f"{session.pending_item_id}"
                    )
                    return pending

            item = select_next_item(
                available_items=exam.item_pool,
                administered_items=session.administered_items,
                theta_estimate=session.ability_estimate,
                constraints=exam.requirements.constraints,
                objectives=exam.requirements.learning_objectives,
                objective_coverage=session.objective_coverage,
                item_parameters=session.item_parameters,
                exposure_percentile=self.config.exposure_percentile,
                exposure_penalty=self.config.exposure_penalty,
                randomesque_k=self.config.randomesque_k,
                rng=session_rng(f"{session_id}:{session.items_administered}"),
            )

            now = utc_now()
            if item is None:
                session.adaptive_adjustments.append(
                    self._adjustment(
                        session,
                        trigger="item_selection",
                        adjustment_type=AdjustmentType.TERMINATION,
                        old_value=session.state.value,
                        new_value=SessionState.COMPLETED.value,
                        rationale=StopReason.POOL_EXHAUSTED.value,
                        timestamp=now,
                    )
                )
                session.state = SessionState.COMPLETED
                session.stop_reason = StopReason.POOL_EXHAUSTED
                session.completed_at = now
                session.last_activity_at = now
                logger.info(
                    f"Session {session_id}: pool exhausted after "
                    f"{session.items_administered} items"
                )
                raise PoolExhausted(
                    ErrorMessages.pool_exhausted(session_id, session.items_administered),
                    context={"session_id": session_id},
                )

            self.exposure_tracker.record_administration(item)
            if session.state == SessionState.CREATED:
                session.state = SessionState.IN_PROGRESS
            session.administered_items.append(item.item_id)
            session.pending_item_id = item.item_id
            session.last_activity_at = now

            logger.debug(
                f"Session {session_id}: issued item {item.item_id} "
                f"(#{session.items_administered}, theta={session.ability_estimate:.3f})"
            )
            return item

    def submit_response(
        self,
        session_id: str,
        item_id: str,
        response: Any,
        response_time_ms: float,
        confidence: Optional[float] = None,
        external_score: Optional[float] = None,
    ) -> ScoredResponse:
        """
        Score a response to the outstanding item and update the session.

        Appends the response, re-estimates ability, logs adjustments and
        evaluates the stopping rule as one atomic step.

        Raises:
            SessionNotFound: Unknown session.
            SessionTerminated: Session is completed or abandoned.
            ItemNotAdministered: ``item_id`` is not the outstanding item.
            ResponseScoringError: The response cannot be scored.
            ValueError: Negative response time or confidence outside [0, 1].
        """
        session, lock = self._session_and_lock(session_id)
        with lock:
            self._ensure_open(session)
            if session.pending_item_id is None or session.pending_item_id != item_id:
                raise ItemNotAdministered(
                    ErrorMessages.item_not_administered(item_id, session.pending_item_id),
                    context={"session_id": session_id, "item_id": item_id},
                )
            if response_time_ms < 0 or not math.isfinite(response_time_ms):
                raise ValueError(
                    f"response_time_ms must be a non-negative number, got {response_time_ms}"
                )
            if confidence is not None and not (0.0 <= confidence <= 1.0):
                raise ValueError(f"confidence must be in [0, 1], got {confidence}")

            exam = self.get_exam(session.exam_id)
            item = exam.get_item(item_id)
            if item is None:
                raise ItemNotAdministered(
                    ErrorMessages.item_not_administered(item_id, session.pending_item_id),
                    context={"session_id": session_id, "item_id": item_id},
                )

            is_correct, points = score_response(item, response, external_score)

            now = utc_now()
            exam_response = ExamResponse(
                item_id=item_id,
                raw_response=response,
                is_correct=is_correct,
                response_time_ms=float(response_time_ms),
                confidence_level=confidence,
                timestamp=now,
                points_earned=points,
            )
            responses = session.responses + [exam_response]

            estimate = self._estimate(session, responses)

            coverage = dict(session.objective_coverage)
            for tag in item.objective_tags:
                if tag in coverage:
                    coverage[tag] += 1

            adjustments = self._response_adjustments(
                session, item, estimate, coverage, now
            )

            constraints = exam.requirements.constraints
            remaining = eligible_items(
                exam.item_pool, session.administered_items, constraints, coverage
            )
            decision = check_stopping_criteria(
                se=estimate.standard_error,
                num_items=len(responses),
                max_items=constraints.total_questions,
                se_threshold=self.config.se_threshold,
                min_items=self.config.min_items,
                pool_exhausted=not remaining,
            )

            new_state = session.state
            if decision.should_stop:
                new_state = SessionState.COMPLETED
                adjustments.append(
                    self._adjustment(
                        session,
                        trigger=f"response:{item_id}",
                        adjustment_type=AdjustmentType.TERMINATION,
                        old_value=session.state.value,
                        new_value=new_state.value,
                        rationale=decision.reason.value,
                        timestamp=now,
                        offset=len(adjustments),
                    )
                )

            indicators = compute_performance_indicators(
                responses, session, estimate.theta
            )

            # Commit
            session.responses = responses
            session.ability_estimate = estimate.theta
            session.standard_error = estimate.standard_error
            session.estimation_method = estimate.method
            session.theta_history.append(estimate.theta)
            session.se_history.append(estimate.standard_error)
            session.objective_coverage = coverage
            session.adaptive_adjustments.extend(adjustments)
            session.performance_indicators = indicators
            session.pending_item_id = None
            session.last_activity_at = now
            if decision.should_stop:
                session.state = new_state
                session.stop_reason = decision.reason
                session.completed_at = now

            logger.debug(
                f"Session {session_id}: response #{len(responses)} "
                f"({item_id}, correct={is_correct}) -> "
                f"theta={estimate.theta:.3f}, SE={estimate.standard_error:.3f} "
                f"[{estimate.method.value}], stop={decision.should_stop}"
            )
            if decision.should_stop:
                logger.info(
                    f"Session {session_id} completed: {decision.reason.value} "
                    f"after {len(responses)} items "
                    f"(theta={estimate.theta:.3f}, SE={estimate.standard_error:.3f})"
                )

            return ScoredResponse(
                is_correct=is_correct,
                points_earned=points,
                adaptive_adjustments=adjustments,
                ability_estimate=estimate.theta,
                standard_error=estimate.standard_error,
                items_administered=len(responses),
                state=session.state,
                stop_reason=session.stop_reason,
            )

    def complete_exam(self, session_id: str) -> ExamResults:
        """
        Finish a session and return its results.

        Open sessions are completed with ``completed_by_request``. Abandoned
        sessions keep their state and get results for the responses they have.
        Results are cached, so repeated calls return the same object.

        Raises:
            SessionNotFound: Unknown session.
        """
        session, lock = self._session_and_lock(session_id)
        with lock:
            if session.final_results is not None:
                return session.final_results

            exam = self.get_exam(session.exam_id)
            new_state = session.state
            stop_reason = session.stop_reason
            completed_at = session.completed_at
            if not session.state.is_terminal:
                new_state = SessionState.COMPLETED
                stop_reason = StopReason.COMPLETED_BY_REQUEST
                completed_at = utc_now()

            results = compile_results(
                session,
                exam,
                mastery_cut=self.config.mastery_theta_cut,
                certification_cut=self.config.certification_passing_theta,
                completion_state=new_state,
                stop_reason=stop_reason,
                completed_at=completed_at,
            )

            if new_state != session.state:
                session.adaptive_adjustments.append(
                    self._adjustment(
                        session,
                        trigger="complete_exam",
                        adjustment_type=AdjustmentType.TERMINATION,
                        old_value=session.state.value,
                        new_value=new_state.value,
                        rationale=stop_reason.value,
                        timestamp=completed_at,
                    )
                )
            session.state = new_state
            session.stop_reason = stop_reason
            session.completed_at = completed_at or results.completed_at
            session.pending_item_id = None
            session.final_results = results

            logger.info(
                f"Session {session_id} finalized: "
                f"theta={results.ability_estimate:.3f}, SE={results.standard_error:.3f}, "
                f"items={results.items_administered}, correct={results.correct_count}, "
                f"level={results.performance_level.value}, "
                f"stop_reason={stop_reason.value if stop_reason else None}"
            )
            return results

    def abandon_session(
        self,
        session_id: str,
        reason: StopReason = StopReason.ABANDONED,
    ) -> ExamSession:
        """
        Move an open session to ``abandoned``.

        Raises:
            SessionNotFound: Unknown session.
            SessionTerminated: Session is already completed or abandoned.
            ValueError: If ``reason`` is not ABANDONED or TIMEOUT.
        """
        reason = StopReason(reason)
        if reason not in (StopReason.ABANDONED, StopReason.TIMEOUT):
            raise ValueError(f"Abandon reason must be abandoned or timeout, got {reason.value}")

        session, lock = self._session_and_lock(session_id)
        with lock:
            self._ensure_open(session)
            self._abandon(session, reason, utc_now())
        return session

    def expire_idle_sessions(
        self,
        max_idle_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Abandon open sessions idle for longer than ``max_idle_seconds``.

        Returns:
            Ids of the sessions that timed out.
        """
        limit = (
            max_idle_seconds
            if max_idle_seconds is not None
            else self.config.session_idle_timeout_seconds
        )
        reference = now or utc_now()

        with self._lock:
            candidates = [
                (sid, self._sessions[sid], self._session_locks[sid])
                for sid in self._sessions
            ]

        expired: List[str] = []
        for sid, session, lock in candidates:
            with lock:
                if session.state.is_terminal:
                    continue
                if seconds_since(session.last_activity_at, reference) > limit:
                    self._abandon(session, StopReason.TIMEOUT, reference)
                    expired.append(sid)

        if expired:
            logger.info(f"Expired {len(expired)} idle sessions (limit={limit}s)")
        return expired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_open(self, session: ExamSession) -> None:
        if session.state.is_terminal:
            raise SessionTerminated(
                ErrorMessages.session_terminated(session.session_id, session.state.value),
                context={"session_id": session.session_id, "state": session.state.value},
            )

    def _abandon(self, session: ExamSession, reason: StopReason, now: datetime) -> None:
        session.adaptive_adjustments.append(
            self._adjustment(
                session,
                trigger=reason.value,
                adjustment_type=AdjustmentType.TERMINATION,
                old_value=session.state.value,
                new_value=SessionState.ABANDONED.value,
                rationale=reason.value,
                timestamp=now,
            )
        )
        session.state = SessionState.ABANDONED
        session.stop_reason = reason
        session.pending_item_id = None
        session.completed_at = now
        session.last_activity_at = now
        logger.info(
            f"Session {session.session_id} abandoned ({reason.value}) after "
            f"{len(session.responses)} responses"
        )

    def _estimate(
        self,
        session: ExamSession,
        responses: Sequence[ExamResponse],
    ) -> AbilityEstimate:
        return estimate_ability(
            responses,
            session.item_parameters,
            prior_mean=session.prior_mean,
            prior_sd=session.prior_sd,
            n_points=self.config.quadrature_points,
            mle_min_responses=self.config.mle_min_responses,
            mle_max_iterations=self.config.mle_max_iterations,
            theta_bound=self.config.theta_bound,
        )

    def _response_adjustments(
        self,
        session: ExamSession,
        item: QuestionItem,
        estimate: AbilityEstimate,
        coverage: Dict[str, int],
        now: datetime,
    ) -> List[AdaptiveAdjustment]:
        """Adjustments caused by one response, in the order they happened."""
        trigger = f"response:{item.item_id}"
        adjustments: List[AdaptiveAdjustment] = []

        def add(adjustment_type: AdjustmentType, old: Any, new: Any, rationale: str) -> None:
            adjustments.append(
                self._adjustment(
                    session,
                    trigger=trigger,
                    adjustment_type=adjustment_type,
                    old_value=old,
                    new_value=new,
                    rationale=rationale,
                    timestamp=now,
                    offset=len(adjustments),
                )
            )

        add(
            AdjustmentType.ABILITY_UPDATE,
            {"theta": round(session.ability_estimate, 4), "se": round(session.standard_error, 4)},
            {"theta": round(estimate.theta, 4), "se": round(estimate.standard_error, 4)},
            f"{estimate.method.value} estimate after {len(session.responses) + 1} responses",
        )

        previous = session.estimation_method
        if (
            previous != EstimationMethod.PRIOR
            and estimate.method != previous
            and estimate.fallback_reason is None
        ):
            add(
                AdjustmentType.ESTIMATOR_SWITCH,
                previous.value,
                estimate.method.value,
                "mixed response pattern with enough responses for MLE"
                if estimate.method == EstimationMethod.MLE
                else "response pattern no longer supports MLE",
            )
        if estimate.fallback_reason is not None:
            add(
                AdjustmentType.ESTIMATOR_FALLBACK,
                EstimationMethod.MLE.value,
                EstimationMethod.EAP.value,
                estimate.fallback_reason,
            )

        exam = self.get_exam(session.exam_id)
        cap = exam.requirements.constraints.max_per_objective
        if cap is not None:
            for tag in sorted(item.objective_tags):
                if tag in coverage and coverage[tag] == cap:
                    add(
                        AdjustmentType.OBJECTIVE_SATURATED,
                        cap - 1,
                        cap,
                        f"objective {tag} reached max_per_objective",
                    )
        return adjustments

    def _adjustment(
        self,
        session: ExamSession,
        trigger: str,
        adjustment_type: AdjustmentType,
        old_value: Any,
        new_value: Any,
        rationale: str,
        timestamp: Optional[datetime] = None,
        offset: int = 0,
    ) -> AdaptiveAdjustment:
        sequence = len(session.adaptive_adjustments) + offset + 1
        return AdaptiveAdjustment(
            adjustment_id=f"{session.session_id}-{sequence:04d}",
            trigger=trigger,
            adjustment_type=adjustment_type,
            old_value=old_value,
            new_value=new_value,
            rationale=rationale,
            timestamp=timestamp or utc_now(),
        )
