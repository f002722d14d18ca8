"""
Pytest configuration and shared fixtures for testing.
"""
from typing import Callable, Iterable, List, Optional

import pytest

from adaptive_exam.core.cat.engine import EngineConfig, ExamSessionManager
from adaptive_exam.models import (
    AdaptiveExam,
    AssessmentPurpose,
    ExamConstraints,
    ExamRequirements,
    IRTParameters,
    LearningObjective,
    QuestionItem,
    QuestionType,
)


def build_item(
    item_id: str,
    b: float = 0.0,
    a: float = 1.0,
    c: float = 0.0,
    objectives: Iterable[str] = ("obj-1",),
    question_type: QuestionType = QuestionType.MULTIPLE_CHOICE,
    answer_key="A",
    exposure_count: int = 0,
) -> QuestionItem:
    return QuestionItem(
        item_id=item_id,
        question_type=question_type,
        objective_tags=frozenset(objectives),
        irt_params=IRTParameters(discrimination=a, difficulty=b, guessing=c),
        answer_key=answer_key,
        exposure_count=exposure_count,
    )


def build_pool(
    n: int,
    objective: str = "obj-1",
    a: float = 1.0,
    c: float = 0.0,
    b_start: float = -2.0,
    b_step: float = 0.25,
    prefix: Optional[str] = None,
) -> List[QuestionItem]:
    """Pool of items with sequential ids and increasing difficulty."""
    prefix = prefix or objective
    return [
        build_item(f"{prefix}-{i:02d}", b=b_start + i * b_step, a=a, c=c, objectives=(objective,))
        for i in range(n)
    ]


def build_exam(
    items: List[QuestionItem],
    objectives: Optional[List[LearningObjective]] = None,
    total_questions: int = 10,
    max_per_objective: Optional[int] = None,
    purpose: AssessmentPurpose = AssessmentPurpose.FORMATIVE,
    passing_theta: Optional[float] = None,
    exam_id: str = "exam-1",
) -> AdaptiveExam:
    if objectives is None:
        tags = sorted({tag for item in items for tag in item.objective_tags})
        objectives = [
            LearningObjective(objective_id=tag, target_count=1, min_count=0) for tag in tags
        ]
    requirements = ExamRequirements(
        learning_objectives=objectives,
        constraints=ExamConstraints(
            total_questions=total_questions, max_per_objective=max_per_objective
        ),
        purpose=purpose,
        passing_theta=passing_theta,
    )
    return AdaptiveExam(exam_id=exam_id, requirements=requirements, item_pool=tuple(items))


@pytest.fixture
def make_item() -> Callable[..., QuestionItem]:
    return build_item


@pytest.fixture
def make_pool() -> Callable[..., List[QuestionItem]]:
    return build_pool


@pytest.fixture
def make_exam() -> Callable[..., AdaptiveExam]:
    return build_exam


@pytest.fixture
def engine_config() -> EngineConfig:
    """Deterministic engine defaults independent of the environment."""
    return EngineConfig()


@pytest.fixture
def manager(engine_config: EngineConfig) -> ExamSessionManager:
    """Create an ExamSessionManager instance."""
    return ExamSessionManager(config=engine_config)


@pytest.fixture
def two_objective_exam() -> AdaptiveExam:
    """20-item exam across two objectives with a 10-question cap."""
    items = build_pool(10, objective="algebra", b_start=-2.0, b_step=0.45) + build_pool(
        10, objective="geometry", b_start=-1.9, b_step=0.45
    )
    return build_exam(items, total_questions=10)
