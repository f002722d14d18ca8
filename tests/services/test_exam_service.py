"""
Tests for the ExamEngineService facade.

This module tests:
- Payload validation and structured error responses
- The full generate -> start -> answer -> complete flow through actions
- Exam, session and statistics lookups
- Background generation and calibration jobs
- Publishing calibrated parameters without disturbing running sessions
"""
import pytest

from adaptive_exam.core.cat.engine import EngineConfig
from adaptive_exam.core.cat.errors import SessionNotFound
from adaptive_exam.core.cat.simulation import generate_item_pool, generate_response_log
from adaptive_exam.models import (
    AdaptiveExam,
    DifficultyCalibration,
    ExamResults,
    JobStatus,
    SessionState,
    StopReason,
)
from adaptive_exam.schemas import GetNextQuestionAction
from adaptive_exam.services import ExamEngineService


def _generate_payload(exam_id="exam-1", **extra):
    payload = {
        "action": "generate_exam",
        "exam_id": exam_id,
        "requirements": {
            "learning_objectives": [{"objective_id": "obj-1", "target_count": 4}],
            "constraints": {"total_questions": 4},
        },
    }
    payload.update(extra)
    return payload


def _start(service, learner_id):
    return service.handle(
        {"action": "start_session", "exam_id": "exam-1", "learner_id": learner_id}
    ).result.session_id


def _run_to_completion(service, session_id):
    while True:
        item = service.dispatch(GetNextQuestionAction(session_id=session_id))
        scored = service.handle(
            {
                "action": "submit_response",
                "session_id": session_id,
                "item_id": item.item_id,
                "response": "A",
                "response_time_ms": 1000,
            }
        )
        if scored.result.state.is_terminal:
            return scored.result


@pytest.fixture
def service(make_pool):
    return ExamEngineService(items=make_pool(12), config=EngineConfig())


@pytest.fixture
def exam_service(service):
    response = service.handle(_generate_payload())
    assert response.ok, response.error
    return service


class TestHandleErrors:
    def test_invalid_payload(self, service):
        response = service.handle({"action": "start_session", "exam_id": ""})
        assert not response.ok
        assert response.action == "start_session"
        assert response.error["code"] == "validation_error"
        assert response.error["category"] == "protocol"
        assert response.error["context"]["errors"]

    def test_unknown_action(self, service):
        response = service.handle({"action": "reticulate_splines"})
        assert response.error["code"] == "validation_error"

    def test_non_dict_payload(self, service):
        response = service.handle(["not", "a", "dict"])
        assert not response.ok
        assert response.action is None

    def test_engine_error_payload(self, service):
        response = service.handle({"action": "get_next_question", "session_id": "missing"})
        assert not response.ok
        assert response.error["code"] == "session_not_found"
        assert response.error["category"] == "not_found"

    def test_unknown_bank_items(self, service):
        response = service.handle(_generate_payload(item_ids=["obj-1-00", "nope"]))
        assert response.error["code"] == "invalid_request"
        assert "nope" in response.error["message"]

    def test_dispatch_raises(self, service):
        with pytest.raises(SessionNotFound):
            service.dispatch(GetNextQuestionAction(session_id="missing"))


class TestSessionFlow:
    def test_generate_registers_exam(self, exam_service):
        exam = exam_service.manager.get_exam("exam-1")
        assert isinstance(exam, AdaptiveExam)
        assert exam.coverage["obj-1"].selected >= 4

    def test_full_session(self, exam_service):
        started = exam_service.handle(
            {"action": "start_session", "exam_id": "exam-1", "learner_id": "learner-1"}
        )
        assert started.ok
        session_id = started.result.session_id

        while True:
            issued = exam_service.handle(
                {"action": "get_next_question", "session_id": session_id}
            )
            assert issued.ok, issued.error
            scored = exam_service.handle(
                {
                    "action": "submit_response",
                    "session_id": session_id,
                    "item_id": issued.result.item_id,
                    "response": "A",
                    "response_time_ms": 2000,
                }
            )
            assert scored.ok, scored.error
            if scored.result.state == SessionState.COMPLETED:
                break

        assert scored.result.stop_reason == StopReason.MAX_ITEMS
        completed = exam_service.handle({"action": "complete_exam", "session_id": session_id})
        assert isinstance(completed.result, ExamResults)
        assert completed.result.items_administered == 4
        assert completed.result.correct_count == 4

    def test_submit_wrong_item(self, exam_service):
        session_id = exam_service.handle(
            {"action": "start_session", "exam_id": "exam-1", "learner_id": "learner-1"}
        ).result.session_id
        exam_service.handle({"action": "get_next_question", "session_id": session_id})
        response = exam_service.handle(
            {
                "action": "submit_response",
                "session_id": session_id,
                "item_id": "not-issued",
                "response": "A",
                "response_time_ms": 100,
            }
        )
        assert response.error["code"] == "item_not_administered"

    def test_abandon_with_timeout(self, exam_service):
        session_id = exam_service.handle(
            {"action": "start_session", "exam_id": "exam-1", "learner_id": "learner-1"}
        ).result.session_id
        response = exam_service.handle(
            {"action": "abandon_session", "session_id": session_id, "reason": "timeout"}
        )
        assert response.ok
        assert response.result.state == SessionState.ABANDONED
        assert response.result.stop_reason == StopReason.TIMEOUT


class TestLookupActions:
    def test_get_exam(self, exam_service):
        response = exam_service.handle({"action": "get_exam", "exam_id": "exam-1"})
        assert response.ok
        assert isinstance(response.result, AdaptiveExam)
        assert response.result.exam_id == "exam-1"

    def test_get_unknown_exam(self, exam_service):
        response = exam_service.handle({"action": "get_exam", "exam_id": "missing"})
        assert response.error["code"] == "exam_not_found"

    def test_get_session(self, exam_service):
        session_id = _start(exam_service, "learner-1")
        response = exam_service.handle({"action": "get_session", "session_id": session_id})
        assert response.ok
        assert response.result.session_id == session_id
        assert response.result.state == SessionState.CREATED

    def test_get_unknown_session(self, exam_service):
        response = exam_service.handle({"action": "get_session", "session_id": "missing"})
        assert response.error["code"] == "session_not_found"

    def test_list_sessions_filters(self, exam_service):
        open_id = _start(exam_service, "learner-1")
        abandoned_id = _start(exam_service, "learner-2")
        exam_service.handle({"action": "abandon_session", "session_id": abandoned_id})

        everything = exam_service.handle({"action": "list_sessions", "exam_id": "exam-1"})
        assert {s.session_id for s in everything.result} == {open_id, abandoned_id}

        abandoned = exam_service.handle({"action": "list_sessions", "state": "abandoned"})
        assert [s.session_id for s in abandoned.result] == [abandoned_id]

        other_exam = exam_service.handle({"action": "list_sessions", "exam_id": "exam-2"})
        assert other_exam.result == []


class TestExamStatistics:
    def test_no_sessions(self, exam_service):
        response = exam_service.handle({"action": "get_exam_statistics", "exam_id": "exam-1"})
        assert response.ok
        stats = response.result
        assert stats.total_attempts == 0
        assert stats.completion_rate == 0.0
        assert stats.mean_theta is None
        assert stats.mean_percentage_score is None
        assert stats.mean_duration_minutes is None

    def test_aggregates_sessions(self, exam_service):
        completed_id = _start(exam_service, "learner-1")
        _run_to_completion(exam_service, completed_id)
        exam_service.handle({"action": "complete_exam", "session_id": completed_id})

        abandoned_id = _start(exam_service, "learner-2")
        exam_service.handle({"action": "abandon_session", "session_id": abandoned_id})
        _start(exam_service, "learner-3")

        stats = exam_service.handle(
            {"action": "get_exam_statistics", "exam_id": "exam-1"}
        ).result
        completed = exam_service.manager.get_session(completed_id)
        abandoned = exam_service.manager.get_session(abandoned_id)

        assert stats.total_attempts == 3
        assert stats.completed == 1
        assert stats.abandoned == 1
        assert stats.in_progress == 1
        assert stats.completion_rate == pytest.approx(1 / 3, abs=1e-4)
        assert stats.mean_theta == pytest.approx(
            (completed.ability_estimate + abandoned.ability_estimate) / 2, abs=1e-4
        )
        assert stats.mean_percentage_score == pytest.approx(100.0)
        assert stats.mean_duration_minutes is not None
        assert stats.mean_duration_minutes >= 0.0

    def test_unknown_exam(self, exam_service):
        response = exam_service.handle({"action": "get_exam_statistics", "exam_id": "missing"})
        assert response.error["code"] == "exam_not_found"


class TestBackgroundJobs:
    def test_background_generation(self, service):
        response = service.handle(_generate_payload(exam_id="exam-bg", run_in_background=True))
        assert response.ok
        job_id = response.result.job_id

        service.generation_jobs.wait(job_id, timeout=30)
        lookup = service.handle({"action": "get_job", "job_id": job_id})
        assert lookup.result.status == JobStatus.COMPLETED
        assert service.manager.get_exam("exam-bg").exam_id == "exam-bg"

    def test_unknown_job(self, service):
        response = service.handle({"action": "get_job", "job_id": "missing"})
        assert response.error["code"] == "invalid_request"

    def test_cancel_unknown_job(self, service):
        response = service.handle({"action": "cancel_job", "job_id": "missing"})
        assert response.ok
        assert response.result is False


@pytest.fixture
def calibration_service():
    items = generate_item_pool(n_items_per_objective=6, objectives=("obj-1",), seed=8)
    records, _ = generate_response_log(items, n_learners=150, seed=8)
    service = ExamEngineService(items=items, config=EngineConfig())
    responses = [
        {"learner_id": r.learner_id, "item_id": r.item_id, "correct": r.correct}
        for r in records
    ]
    return service, items, responses


class TestCalibration:
    def test_sync_calibration_publishes(self, calibration_service):
        service, items, responses = calibration_service
        version_before = service.registry.current_version

        response = service.handle(
            {
                "action": "calibrate",
                "responses": responses,
                "min_sample_size": 30,
                "max_iterations": 5,
            }
        )
        assert response.ok, response.error
        assert isinstance(response.result, DifficultyCalibration)
        assert service.registry.current_version == version_before + 1
        assert len(response.result.updated_parameters()) == len(items)

    def test_running_session_keeps_snapshot(self, calibration_service):
        service, items, responses = calibration_service
        service.handle(
            {
                "action": "generate_exam",
                "exam_id": "cal-exam",
                "requirements": {
                    "learning_objectives": [{"objective_id": "obj-1", "target_count": 3}],
                    "constraints": {"total_questions": 3},
                },
            }
        )
        session = service.handle(
            {"action": "start_session", "exam_id": "cal-exam", "learner_id": "l1"}
        ).result
        before = dict(session.item_parameters)

        service.handle(
            {
                "action": "calibrate",
                "responses": responses,
                "min_sample_size": 30,
                "max_iterations": 5,
            }
        )
        assert dict(session.item_parameters) == before
        later = service.handle(
            {"action": "start_session", "exam_id": "cal-exam", "learner_id": "l2"}
        ).result
        assert later.parameter_version > session.parameter_version

    def test_background_calibration(self, calibration_service):
        service, _, responses = calibration_service
        response = service.handle(
            {
                "action": "calibrate",
                "responses": responses,
                "min_sample_size": 30,
                "max_iterations": 3,
                "run_in_background": True,
                "publish": False,
            }
        )
        assert response.ok
        job = service.calibration_runner.wait(response.result.job_id, timeout=60)
        assert job.status == JobStatus.COMPLETED
        lookup = service.handle({"action": "get_job", "job_id": job.job_id})
        assert lookup.result is job

    def test_calibration_error_payload(self, calibration_service):
        service, _, responses = calibration_service
        response = service.handle(
            {"action": "calibrate", "responses": responses[:5], "min_sample_size": 30}
        )
        assert not response.ok
        assert response.error["code"] == "calibration_error"
