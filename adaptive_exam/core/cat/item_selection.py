"""
Maximum Fisher Information (MFI) item selection for Computerized Adaptive Testing.

Selects the next item from an eligible pool that maximizes 3PL Fisher
information at the current ability estimate (theta):

    I_i(theta) = a_i^2 (1 - c_i) / ((c_i + exp(a_i(theta - b_i))) (1 + exp(-a_i(theta - b_i)))^2)

The selection pipeline:
1. Filter out already-administered items
2. Filter out items whose exam objectives have all reached max_per_objective
3. Apply content balancing (objective minimums, then soft weights)
4. Compute Fisher information for each eligible item at current theta
5. Down-weight over-exposed items (percentile rule)
6. Rank by information, then exposure_count, then item_id
7. Optionally pick among the top-K (randomesque, seeded per session)

References:
    - van der Linden, W.J. (1998). Bayesian item selection criteria for
      adaptive testing.
    - Chang, H.-H., & Ying, Z. (1999). a-Stratified multistage
      computerized adaptive testing.
"""

import logging
import random
from typing import Collection, Dict, List, Mapping, Optional, Sequence

from adaptive_exam.core.cat.content_balancing import (
    apply_content_balancing,
    is_within_objective_caps,
)
from adaptive_exam.core.cat.exposure_control import (
    DEFAULT_EXPOSURE_PENALTY,
    DEFAULT_EXPOSURE_PERCENTILE,
    DEFAULT_RANDOMESQUE_K,
    ItemCandidate,
    apply_exposure_weighting,
    apply_randomesque,
    ranking_key,
)
from adaptive_exam.core.cat.irt import fisher_information_3pl
from adaptive_exam.models import (
    ExamConstraints,
    IRTParameters,
    LearningObjective,
    QuestionItem,
)

logger = logging.getLogger(__name__)


def item_information(
    item: QuestionItem,
    theta: float,
    item_parameters: Optional[Mapping[str, IRTParameters]] = None,
) -> float:
    """
    Fisher information of an item at theta.

    ``item_parameters`` is a session's parameter snapshot; when it holds an
    entry for the item, that entry wins over ``item.irt_params``.
    """
    params = _params_for(item, item_parameters)
    return float(fisher_information_3pl(theta, params.a, params.b, params.c))


def _params_for(
    item: QuestionItem,
    item_parameters: Optional[Mapping[str, IRTParameters]],
) -> IRTParameters:
    if item_parameters is not None:
        return item_parameters.get(item.item_id, item.irt_params)
    return item.irt_params


def eligible_items(
    available_items: Sequence[QuestionItem],
    administered_items: Collection[str],
    constraints: ExamConstraints,
    objective_coverage: Optional[Dict[str, int]] = None,
) -> List[QuestionItem]:
    """Items not yet administered and still within the objective caps."""
    administered = set(administered_items)
    coverage = objective_coverage or {}
    return [
        item
        for item in available_items
        if item.item_id not in administered
        and is_within_objective_caps(item, coverage, constraints.max_per_objective)
    ]


def rank_items(
    items: Sequence[QuestionItem],
    theta_estimate: float,
    item_parameters: Optional[Mapping[str, IRTParameters]] = None,
    exposure_percentile: float = DEFAULT_EXPOSURE_PERCENTILE,
    exposure_penalty: float = DEFAULT_EXPOSURE_PENALTY,
) -> List[ItemCandidate]:
    """Score, exposure-weight and sort candidates best-first."""
    candidates = [
        ItemCandidate(
            item=item,
            information=item_information(item, theta_estimate, item_parameters),
        )
        for item in items
    ]
    apply_exposure_weighting(candidates, exposure_percentile, exposure_penalty)
    candidates.sort(key=ranking_key)
    return candidates


def select_next_item(
    available_items: Sequence[QuestionItem],
    administered_items: Collection[str],
    theta_estimate: float,
    constraints: ExamConstraints,
    objectives: Sequence[LearningObjective] = (),
    objective_coverage: Optional[Dict[str, int]] = None,
    item_parameters: Optional[Mapping[str, IRTParameters]] = None,
    exposure_percentile: float = DEFAULT_EXPOSURE_PERCENTILE,
    exposure_penalty: float = DEFAULT_EXPOSURE_PENALTY,
    randomesque_k: int = DEFAULT_RANDOMESQUE_K,
    rng: Optional[random.Random] = None,
) -> Optional[QuestionItem]:
    """
    Select the next item using Maximum Fisher Information with constraints.

    Args:
        available_items: The exam's item pool.
        administered_items: Item ids already administered in this session.
        theta_estimate: Current ability estimate.
        constraints: Exam constraints (``max_per_objective`` and
            ``total_questions`` are used here).
        objectives: Exam learning objectives for content balancing.
        objective_coverage: Objective id -> administered count.
        item_parameters: Session parameter snapshot (item_id -> IRTParameters).
        exposure_percentile: Percentile above which items are down-weighted.
        exposure_penalty: Information multiplier for over-exposed items.
        randomesque_k: Choose among the top-K candidates. 1 disables.
        rng: Seeded Random for randomesque selection.

    Returns:
        The selected item, or None if no eligible item remains.
    """
    coverage = objective_coverage or {}
    eligible = eligible_items(available_items, administered_items, constraints, coverage)

    if not eligible:
        logger.info(
            "No eligible items remaining after filtering. "
            f"Pool size: {len(available_items)}, "
            f"administered: {len(administered_items)}"
        )
        return None

    if objectives:
        eligible = apply_content_balancing(
            eligible=eligible,
            coverage=coverage,
            objectives=objectives,
            items_administered=len(administered_items),
            max_items=constraints.total_questions,
        )

    ranked = rank_items(
        eligible,
        theta_estimate,
        item_parameters,
        exposure_percentile,
        exposure_penalty,
    )
    selected = apply_randomesque(ranked, randomesque_k, rng)

    params = _params_for(selected.item, item_parameters)
    logger.debug(
        f"Item selection: theta={theta_estimate:.3f}, "
        f"eligible={len(ranked)}, "
        f"selected {selected.item.item_id} "
        f"(a={params.a:.2f}, b={params.b:.2f}, c={params.c:.2f}, "
        f"info={selected.information:.4f})"
    )

    return selected.item
