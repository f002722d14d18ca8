"""
Results compilation for finished adaptive exam sessions.

Converts the final theta (ability) estimate into a score report:

95% Confidence Interval:
    CI = theta ± 1.96 × SE(theta)

Percentile Rank:
    percentile = Φ(theta) × 100

    Where Φ is the standard normal CDF, i.e. the rank within an N(0, 1)
    reference population on the theta scale.

Objective mastery:
    Each objective gets its own EAP estimate from the responses to items
    tagged with it (same prior as the session), and

        mastery_probability = P(theta_obj > cut) = 1 - Φ((cut - theta_obj) / SE_obj)

    With few items per objective the estimate leans heavily on the prior;
    accuracy and item counts are reported alongside for that reason.

Performance level bands on theta:
    below_basic  theta < -1.0
    basic        -1.0 <= theta < 0.0
    proficient   0.0 <= theta < 1.0
    advanced     1.0 <= theta < 2.0
    expert       theta >= 2.0
"""

import logging
import math
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from scipy.stats import norm

from adaptive_exam.core.cat.ability_estimation import estimate_ability_eap
from adaptive_exam.core.datetime_utils import utc_now
from adaptive_exam.models import (
    AdaptiveExam,
    AssessmentPurpose,
    ExamResponse,
    ExamResults,
    ExamSession,
    ObjectiveMastery,
    PerformanceLevel,
    SessionState,
    StopReason,
)

logger = logging.getLogger(__name__)

Z_95 = 1.96  # z-score for 95% confidence interval

# Lower theta bound of each level, highest first
PERFORMANCE_LEVEL_CUTS: Tuple[Tuple[float, PerformanceLevel], ...] = (
    (2.0, PerformanceLevel.EXPERT),
    (1.0, PerformanceLevel.ADVANCED),
    (0.0, PerformanceLevel.PROFICIENT),
    (-1.0, PerformanceLevel.BASIC),
)

# Purposes that fall back to the certification cut when the exam has none
CUT_SCORE_PURPOSES = frozenset(
    {AssessmentPurpose.CERTIFICATION, AssessmentPurpose.SUMMATIVE}
)


def confidence_interval(theta: float, se: float) -> Tuple[float, float]:
    """95% confidence interval on the theta scale."""
    if math.isnan(theta) or math.isinf(theta):
        raise ValueError(f"theta must be finite, got {theta}")
    if math.isnan(se) or se < 0:
        raise ValueError(f"se must be non-negative, got {se}")
    margin = Z_95 * se
    return (round(theta - margin, 4), round(theta + margin, 4))


def theta_to_percentile(theta: float) -> float:
    """
    Percentile rank of theta in the N(0, 1) reference population.

    Examples:
        >>> theta_to_percentile(0.0)
        50.0
        >>> theta_to_percentile(1.0)  # ~84.1
        84.1
    """
    return round(float(norm.cdf(theta)) * 100, 1)


def performance_level(theta: float) -> PerformanceLevel:
    for cut, level in PERFORMANCE_LEVEL_CUTS:
        if theta >= cut:
            return level
    return PerformanceLevel.BELOW_BASIC


def mastery_probability(theta: float, se: float, cut: float) -> float:
    """P(true theta > cut) under a normal approximation to the posterior."""
    if se <= 0 or not math.isfinite(se):
        return 1.0 if theta > cut else 0.0
    return round(float(norm.sf(cut, loc=theta, scale=se)), 4)


def resolve_cut_score(
    exam: AdaptiveExam,
    certification_cut: float,
) -> Optional[float]:
    """Cut score for pass/fail, or None when the exam has no pass/fail decision."""
    requirements = exam.requirements
    if requirements.passing_theta is not None:
        return requirements.passing_theta
    if requirements.purpose in CUT_SCORE_PURPOSES:
        return certification_cut
    return None


def compute_objective_mastery(
    session: ExamSession,
    exam: AdaptiveExam,
    mastery_cut: float,
) -> List[ObjectiveMastery]:
    """Per-objective accuracy, EAP estimate and mastery probability."""
    mastery: List[ObjectiveMastery] = []
    for objective_id in exam.requirements.objective_ids:
        responses: List[ExamResponse] = []
        max_points = 0.0
        difficulties: List[float] = []
        for response in session.responses:
            item = exam.get_item(response.item_id)
            if item is None or objective_id not in item.objective_tags:
                continue
            responses.append(response)
            max_points += item.max_points
            difficulties.append(session.item_parameters[item.item_id].b)

        pattern = [
            (session.item_parameters[r.item_id], r.is_correct) for r in responses
        ]
        theta, se = estimate_ability_eap(
            pattern, prior_mean=session.prior_mean, prior_sd=session.prior_sd
        )
        correct = sum(1 for r in responses if r.is_correct)
        mastery.append(
            ObjectiveMastery(
                objective_id=objective_id,
                items_attempted=len(responses),
                correct_count=correct,
                accuracy=round(correct / len(responses), 3) if responses else 0.0,
                points_earned=round(sum(r.points_earned for r in responses), 4),
                max_points=max_points,
                theta_estimate=round(theta, 4),
                theta_se=round(se, 4),
                mastery_probability=mastery_probability(theta, se, mastery_cut),
                avg_difficulty=(
                    round(sum(difficulties) / len(difficulties), 4)
                    if difficulties
                    else None
                ),
            )
        )
    return mastery


def compile_results(
    session: ExamSession,
    exam: AdaptiveExam,
    mastery_cut: float = 0.0,
    certification_cut: float = 0.5,
    completion_state: Optional[SessionState] = None,
    stop_reason: Optional[StopReason] = None,
    completed_at: Optional[datetime] = None,
) -> ExamResults:
    """
    Build the immutable score report for a session.

    Args:
        session: The session to report on. Not modified.
        exam: The exam the session ran against.
        mastery_cut: Theta cut for per-objective mastery probability.
        certification_cut: Pass/fail cut for certification and summative
            exams that do not define ``passing_theta``.
        completion_state: State to report; defaults to ``session.state``.
        stop_reason: Stop reason to report; defaults to ``session.stop_reason``.
        completed_at: Completion time; defaults to ``session.completed_at``.

    Returns:
        ExamResults snapshot.
    """
    theta = session.ability_estimate
    se = session.standard_error

    total_score = round(sum(r.points_earned for r in session.responses), 4)
    max_possible = 0.0
    for response in session.responses:
        item = exam.get_item(response.item_id)
        if item is not None:
            max_possible += item.max_points
    percentage = round(100.0 * total_score / max_possible, 2) if max_possible > 0 else 0.0

    cut = resolve_cut_score(exam, certification_cut)
    passed = None if cut is None else theta >= cut

    level = performance_level(theta)
    results = ExamResults(
        session_id=session.session_id,
        exam_id=session.exam_id,
        learner_id=session.learner_id,
        ability_estimate=round(theta, 4),
        standard_error=round(se, 4),
        confidence_interval=confidence_interval(theta, se),
        percentile=theta_to_percentile(theta),
        total_score=total_score,
        max_possible_score=max_possible,
        percentage_score=percentage,
        performance_level=level,
        passed=passed,
        objective_mastery=tuple(compute_objective_mastery(session, exam, mastery_cut)),
        items_administered=len(session.responses),
        correct_count=session.correct_count,
        stop_reason=stop_reason if stop_reason is not None else session.stop_reason,
        completion_state=completion_state or session.state,
        parameter_version=session.parameter_version,
        performance_indicators=session.performance_indicators,
        completed_at=completed_at or session.completed_at or utc_now(),
    )

    logger.debug(
        f"compile_results: theta={theta:.3f}, se={se:.3f} -> "
        f"level={level.value}, percentile={results.percentile}, passed={passed}"
    )
    return results


def summarize_objectives(
    mastery: Sequence[ObjectiveMastery],
    threshold: float = 0.8,
) -> Tuple[List[str], List[str]]:
    """Split objectives into (mastered, not_mastered) at a probability threshold."""
    mastered = [m.objective_id for m in mastery if m.mastery_probability >= threshold]
    not_mastered = [m.objective_id for m in mastery if m.mastery_probability < threshold]
    return mastered, not_mastered
