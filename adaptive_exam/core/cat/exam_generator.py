"""
Exam assembly: greedy, difficulty-stratified selection of an item pool.

Algorithm:
    For each learning objective, in requirement order:
        1. Candidates are pool items tagged with the objective whose question
           type is allowed by ``question_type_distribution`` (if given).
        2. ``difficulty_range`` is split into N equal-width bands (3-5).
           Each candidate joins the band containing its difficulty; within a
           band, items nearest the band centre come first, then higher
           discrimination, lower exposure, smaller item_id.
        3. Items are taken round-robin across bands until the objective's
           quota is met. Items outside ``difficulty_range`` are used only
           when the in-range candidates run out (logged as a fallback).
        4. Per-type caps derived from ``question_type_distribution`` are
           soft: if they would leave an objective below its minimum, the
           caps are ignored for that objective with a warning.

    Quota per objective is ``min(target_count, max_per_objective)``. Adaptive
    pools oversample each quota so the session has room to choose; a
    fixed-form pool holds exactly ``total_questions`` items.

    An item tagged with several objectives counts towards each of them.

    Any objective left below its minimum raises InsufficientPoolCoverage
    with the full per-objective report. A pool is never silently
    under-filled.

The progress-reporting variant checks a cancellation token between
objectives; cancelling discards all partial work.
"""

import logging
import math
import threading
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from adaptive_exam.core.cat.errors import (
    ErrorMessages,
    GenerationCancelled,
    InsufficientPoolCoverage,
)
from adaptive_exam.core.config import settings
from adaptive_exam.models import (
    AdaptiveExam,
    ExamRequirements,
    LearningObjective,
    ObjectiveCoverage,
    QuestionItem,
    QuestionType,
)

logger = logging.getLogger(__name__)

MIN_DIFFICULTY_BANDS = 3
MAX_DIFFICULTY_BANDS = 5

# (low, high, centre) on the difficulty scale
DifficultyBand = Tuple[float, float, float]


@dataclass
class GenerationProgress:
    """Progress snapshot reported once per objective."""

    objectives_total: int
    objectives_done: int
    current_objective: Optional[str]
    items_selected: int

    @property
    def fraction(self) -> float:
        if self.objectives_total == 0:
            return 1.0
        return self.objectives_done / self.objectives_total


class CancellationToken:
    """Thread-safe cancellation flag shared between a caller and a generation run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


ProgressCallback = Callable[[GenerationProgress], None]


def difficulty_bands(
    difficulty_range: Tuple[float, float],
    n_bands: int,
) -> List[DifficultyBand]:
    """Split ``difficulty_range`` into ``n_bands`` equal-width bands."""
    if not (MIN_DIFFICULTY_BANDS <= n_bands <= MAX_DIFFICULTY_BANDS):
        raise ValueError(
            f"n_bands must be between {MIN_DIFFICULTY_BANDS} and "
            f"{MAX_DIFFICULTY_BANDS}, got {n_bands}"
        )
    low, high = difficulty_range
    width = (high - low) / n_bands
    return [
        (low + i * width, low + (i + 1) * width, low + (i + 0.5) * width)
        for i in range(n_bands)
    ]


def band_index(difficulty: float, bands: Sequence[DifficultyBand]) -> Optional[int]:
    """Band containing ``difficulty``; the top edge belongs to the last band."""
    low = bands[0][0]
    high = bands[-1][1]
    if difficulty < low or difficulty > high:
        return None
    for i, (band_low, band_high, _) in enumerate(bands):
        if band_low <= difficulty < band_high:
            return i
    return len(bands) - 1


def objective_quota(objective: LearningObjective, max_per_objective: Optional[int]) -> int:
    if max_per_objective is None:
        return objective.target_count
    return min(objective.target_count, max_per_objective)


def _within_band_key(item: QuestionItem, centre: float) -> Tuple[float, float, int, str]:
    return (
        abs(item.irt_params.b - centre),
        -item.irt_params.a,
        item.exposure_count,
        item.item_id,
    )


def stratified_order(
    candidates: Sequence[QuestionItem],
    bands: Sequence[DifficultyBand],
) -> Tuple[List[QuestionItem], List[QuestionItem]]:
    """
    Order candidates for stratified selection.

    Returns:
        Tuple of (in_range, out_of_range). ``in_range`` interleaves the bands
        round-robin (band 0 best, band 1 best, ...); ``out_of_range`` is sorted
        by distance to the range, then discrimination, exposure and id.
    """
    by_band: List[List[QuestionItem]] = [[] for _ in bands]
    out_of_range: List[QuestionItem] = []
    for item in candidates:
        idx = band_index(item.irt_params.b, bands)
        if idx is None:
            out_of_range.append(item)
        else:
            by_band[idx].append(item)

    for idx, band_items in enumerate(by_band):
        band_items.sort(key=lambda item: _within_band_key(item, bands[idx][2]))

    in_range: List[QuestionItem] = []
    depth = max((len(b) for b in by_band), default=0)
    for level in range(depth):
        for band_items in by_band:
            if level < len(band_items):
                in_range.append(band_items[level])

    low, high = bands[0][0], bands[-1][1]
    out_of_range.sort(
        key=lambda item: (
            max(low - item.irt_params.b, item.irt_params.b - high),
            -item.irt_params.a,
            item.exposure_count,
            item.item_id,
        )
    )
    return in_range, out_of_range


class _Assembly:
    """Mutable working state for one generation run."""

    def __init__(self, requirements: ExamRequirements, planned_size: int):
        self.requirements = requirements
        self.selected: List[QuestionItem] = []
        self.selected_ids: Set[str] = set()
        self.type_counts: Dict[QuestionType, int] = {}
        distribution = requirements.constraints.question_type_distribution
        self.type_caps: Dict[QuestionType, int] = {
            qt: max(1, math.ceil(p * planned_size))
            for qt, p in distribution.items()
            if p > 0
        }

    def allows_type(self, question_type: QuestionType) -> bool:
        if not self.requirements.constraints.question_type_distribution:
            return True
        return question_type in self.type_caps

    def under_type_cap(self, item: QuestionItem) -> bool:
        cap = self.type_caps.get(item.question_type)
        if cap is None:
            return True
        return self.type_counts.get(item.question_type, 0) < cap

    def add(self, item: QuestionItem) -> None:
        self.selected.append(item)
        self.selected_ids.add(item.item_id)
        self.type_counts[item.question_type] = self.type_counts.get(item.question_type, 0) + 1

    def count_for(self, objective_id: str) -> int:
        return sum(1 for item in self.selected if objective_id in item.objective_tags)


def _select_for_objective(
    assembly: _Assembly,
    objective: LearningObjective,
    ordered: Sequence[QuestionItem],
    fallback: Sequence[QuestionItem],
    desired: int,
    required: int,
) -> int:
    """Greedy pick for one objective. Returns how many out-of-range items were used."""
    fallback_used = 0

    def take(pool: Sequence[QuestionItem], respect_caps: bool, goal: int) -> int:
        taken = 0
        for item in pool:
            if assembly.count_for(objective.objective_id) >= goal:
                break
            if item.item_id in assembly.selected_ids:
                continue
            if respect_caps and not assembly.under_type_cap(item):
                continue
            assembly.add(item)
            taken += 1
        return taken

    take(ordered, respect_caps=True, goal=desired)
    if assembly.count_for(objective.objective_id) < desired:
        fallback_used += take(fallback, respect_caps=True, goal=desired)

    if assembly.count_for(objective.objective_id) < required and assembly.type_caps:
        logger.warning(
            f"Question type caps block objective '{objective.objective_id}' "
            f"from reaching its minimum of {required}; relaxing caps"
        )
        take(ordered, respect_caps=False, goal=required)
        if assembly.count_for(objective.objective_id) < required:
            fallback_used += take(fallback, respect_caps=False, goal=required)

    if fallback_used:
        logger.warning(
            f"Objective '{objective.objective_id}': used {fallback_used} items "
            f"outside difficulty range {assembly.requirements.constraints.difficulty_range}"
        )
    return fallback_used


def _trim_fixed_form(
    assembly: _Assembly,
    required_by_objective: Dict[str, int],
    total: int,
) -> None:
    """Drop most recently selected items while every objective keeps its minimum."""
    idx = len(assembly.selected) - 1
    while len(assembly.selected) > total and idx >= 0:
        item = assembly.selected[idx]
        removable = all(
            assembly.count_for(oid) - 1 >= required
            for oid, required in required_by_objective.items()
            if oid in item.objective_tags
        )
        if removable:
            assembly.selected.pop(idx)
            assembly.selected_ids.discard(item.item_id)
            assembly.type_counts[item.question_type] -= 1
        idx -= 1

    if len(assembly.selected) > total:
        raise ValueError(
            f"Fixed-form exam cannot hold all objective minimums in "
            f"{total} questions (needs at least {len(assembly.selected)})"
        )


def generate_exam_with_progress(
    requirements: ExamRequirements,
    item_pool: Sequence[QuestionItem],
    progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    exam_id: Optional[str] = None,
    n_bands: Optional[int] = None,
    pool_oversampling: Optional[int] = None,
) -> AdaptiveExam:
    """
    Assemble an exam, reporting progress per objective and honouring cancellation.

    Args:
        requirements: Objectives and constraints.
        item_pool: Candidate items. Not modified.
        progress: Called with a GenerationProgress before and after each objective.
        cancel_token: Checked between objectives.
        exam_id: Optional id for the new exam (random if omitted).
        n_bands: Number of difficulty bands (default GENERATION_DIFFICULTY_BANDS).
        pool_oversampling: Multiple of each quota kept in an adaptive pool
            (default GENERATION_POOL_OVERSAMPLING). Ignored for fixed forms.

    Returns:
        The assembled AdaptiveExam.

    Raises:
        InsufficientPoolCoverage: An objective cannot reach its minimum, or
            the pool cannot supply ``total_questions`` items.
        GenerationCancelled: The token was cancelled during generation.
        ValueError: Duplicate item ids in the pool, or fixed-form minimums
            that do not fit in ``total_questions``.
    """
    constraints = requirements.constraints
    bands = difficulty_bands(
        constraints.difficulty_range,
        n_bands if n_bands is not None else settings.GENERATION_DIFFICULTY_BANDS,
    )
    oversampling = 1 if requirements.fixed_form else (
        pool_oversampling
        if pool_oversampling is not None
        else settings.GENERATION_POOL_OVERSAMPLING
    )
    if oversampling < 1:
        raise ValueError(f"pool_oversampling must be >= 1, got {oversampling}")

    ids = [item.item_id for item in item_pool]
    if len(set(ids)) != len(ids):
        raise ValueError("Item pool contains duplicate item ids")

    objectives = requirements.learning_objectives
    quotas = {
        obj.objective_id: objective_quota(obj, constraints.max_per_objective)
        for obj in objectives
    }
    required_by_objective = {
        obj.objective_id: min(obj.required_count, quotas[obj.objective_id])
        for obj in objectives
    }
    planned_size = (
        constraints.total_questions
        if requirements.fixed_form
        else max(constraints.total_questions, sum(quotas.values()) * oversampling)
    )
    assembly = _Assembly(requirements, planned_size)

    logger.info(
        f"Generating {'fixed-form' if requirements.fixed_form else 'adaptive'} exam: "
        f"{len(objectives)} objectives, pool of {len(item_pool)} items, "
        f"{len(bands)} difficulty bands"
    )

    def report(done: int, current: Optional[str]) -> None:
        if progress is not None:
            progress(
                GenerationProgress(
                    objectives_total=len(objectives),
                    objectives_done=done,
                    current_objective=current,
                    items_selected=len(assembly.selected),
                )
            )

    def check_cancelled() -> None:
        if cancel_token is not None and cancel_token.cancelled:
            logger.info("Exam generation cancelled; discarding partial pool")
            raise GenerationCancelled(
                ErrorMessages.GENERATION_CANCELLED,
                context={"objectives_done": done_count},
            )

    available_by_objective: Dict[str, int] = {}
    done_count = 0
    for objective in objectives:
        check_cancelled()
        report(done_count, objective.objective_id)

        candidates = [
            item
            for item in item_pool
            if objective.objective_id in item.objective_tags
            and assembly.allows_type(item.question_type)
        ]
        available_by_objective[objective.objective_id] = len(candidates)
        ordered, fallback = stratified_order(candidates, bands)

        quota = quotas[objective.objective_id]
        _select_for_objective(
            assembly,
            objective,
            ordered,
            fallback,
            desired=quota * oversampling,
            required=required_by_objective[objective.objective_id],
        )
        done_count += 1

    check_cancelled()

    if requirements.fixed_form and len(assembly.selected) > constraints.total_questions:
        _trim_fixed_form(assembly, required_by_objective, constraints.total_questions)

    coverage = {
        obj.objective_id: ObjectiveCoverage(
            objective_id=obj.objective_id,
            required=required_by_objective[obj.objective_id],
            target=quotas[obj.objective_id],
            available=available_by_objective[obj.objective_id],
            selected=assembly.count_for(obj.objective_id),
            difficulty_bands=tuple(
                sum(
                    1
                    for item in assembly.selected
                    if obj.objective_id in item.objective_tags
                    and band_index(item.irt_params.b, bands) == i
                )
                for i in range(len(bands))
            ),
        )
        for obj in objectives
    }

    unsatisfied = [oid for oid, cov in coverage.items() if not cov.satisfied]
    if unsatisfied:
        for oid in unsatisfied:
            cov = coverage[oid]
            logger.warning(
                f"Objective '{oid}' under-covered: {cov.selected}/{cov.required} "
                f"required ({cov.available} tagged items available)"
            )
        raise InsufficientPoolCoverage(
            ErrorMessages.insufficient_coverage(unsatisfied),
            report=coverage,
            context={"unsatisfied": len(unsatisfied)},
        )

    if len(assembly.selected) < constraints.total_questions:
        _fill_to_size(assembly, item_pool, bands, constraints.total_questions)
    if len(assembly.selected) < constraints.total_questions:
        raise InsufficientPoolCoverage(
            f"Item pool supplies {len(assembly.selected)} eligible items, "
            f"fewer than total_questions={constraints.total_questions}.",
            report=coverage,
            context={
                "selected": len(assembly.selected),
                "total_questions": constraints.total_questions,
            },
        )

    report(done_count, None)

    exam = AdaptiveExam(
        exam_id=exam_id or uuid.uuid4().hex,
        requirements=requirements,
        item_pool=tuple(assembly.selected),
        coverage=coverage,
    )
    logger.info(
        f"Generated exam {exam.exam_id}: {exam.pool_size} items for "
        f"{len(objectives)} objectives (total_questions={constraints.total_questions})"
    )
    return exam


def _fill_to_size(
    assembly: _Assembly,
    item_pool: Sequence[QuestionItem],
    bands: Sequence[DifficultyBand],
    total: int,
) -> None:
    """Top up a pool that has met every objective but is still below ``total``."""
    objective_ids = set(assembly.requirements.objective_ids)
    candidates = [
        item
        for item in item_pool
        if item.item_id not in assembly.selected_ids
        and assembly.allows_type(item.question_type)
        and not item.objective_tags.isdisjoint(objective_ids)
    ]
    ordered, fallback = stratified_order(candidates, bands)
    for respect_caps in (True, False):
        for item in list(ordered) + list(fallback):
            if len(assembly.selected) >= total:
                return
            if item.item_id in assembly.selected_ids:
                continue
            if respect_caps and not assembly.under_type_cap(item):
                continue
            assembly.add(item)
    logger.debug(f"Filled pool to {len(assembly.selected)} items (target {total})")


def generate_exam(
    requirements: ExamRequirements,
    item_pool: Sequence[QuestionItem],
    exam_id: Optional[str] = None,
    n_bands: Optional[int] = None,
    pool_oversampling: Optional[int] = None,
) -> AdaptiveExam:
    """
    Assemble an exam from ``item_pool``.

    See :func:`generate_exam_with_progress` for arguments and errors.
    """
    return generate_exam_with_progress(
        requirements,
        item_pool,
        exam_id=exam_id,
        n_bands=n_bands,
        pool_oversampling=pool_oversampling,
    )
