"""
Content balancing over learning objectives during adaptive item selection.

Items carry a set of objective tags; an administered item counts towards every
exam objective it is tagged with.

Three constraint tiers:
    Cap: when ``max_per_objective`` is set, an item is eligible only while at
    least one of its exam objectives is below the cap.

    Hard minimum: while some objective is below its ``min_count`` and the
    remaining test length can still cover every such deficit, selection is
    restricted to items tagged with a deficit objective.

    Soft weights: once all minimums are met, objectives whose share of the
    administered items is below their normalized ``weight`` (by more than
    CONTENT_BALANCE_TOLERANCE) are preferred.

References:
    - van der Linden, W.J. (2005). Linear Models for Optimal Test Design.
    - Cheng, Y., & Chang, H.-H. (2009). The maximum priority index method
      for severely constrained item selection in CAT.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set

from adaptive_exam.models import LearningObjective, QuestionItem

logger = logging.getLogger(__name__)

# Soft constraint tolerance: objectives below (target share - tolerance) are prioritized.
CONTENT_BALANCE_TOLERANCE = 0.10


def track_objective_coverage(
    administered_items: Iterable[QuestionItem],
    objective_ids: Iterable[str],
) -> Dict[str, int]:
    """
    Count administered items per exam objective.

    Args:
        administered_items: Items already shown in the session.
        objective_ids: The exam's objective ids. Tags outside this set are ignored.

    Returns:
        Dict mapping every exam objective id to its administered count
        (zero included).
    """
    coverage = {oid: 0 for oid in objective_ids}
    for item in administered_items:
        for tag in item.objective_tags:
            if tag in coverage:
                coverage[tag] += 1
    return coverage


def saturated_objectives(
    coverage: Dict[str, int],
    max_per_objective: Optional[int],
) -> Set[str]:
    """Objectives that have reached ``max_per_objective``."""
    if max_per_objective is None:
        return set()
    return {oid for oid, count in coverage.items() if count >= max_per_objective}


def is_within_objective_caps(
    item: QuestionItem,
    coverage: Dict[str, int],
    max_per_objective: Optional[int],
) -> bool:
    """
    Check whether an item may still be administered under the objective cap.

    An item passes when the cap is unset, when it carries no exam objective
    tags, or when at least one of its exam objectives is below the cap.
    """
    if max_per_objective is None:
        return True
    relevant = [tag for tag in item.objective_tags if tag in coverage]
    if not relevant:
        return True
    return any(coverage[tag] < max_per_objective for tag in relevant)


def apply_content_balancing(
    eligible: Sequence[QuestionItem],
    coverage: Dict[str, int],
    objectives: Sequence[LearningObjective],
    items_administered: int,
    max_items: int,
) -> List[QuestionItem]:
    """
    Apply the hard-minimum and soft-weight constraints to an eligible pool.

    Args:
        eligible: Items that already passed the administered and cap filters.
        coverage: Current objective coverage counts.
        objectives: The exam's learning objectives, in requirement order.
        items_administered: Total items administered so far.
        max_items: Maximum items in the test.

    Returns:
        Filtered list of eligible items (unchanged if no constraint applies
        or if applying it would leave nothing to select).
    """
    items_remaining = max_items - items_administered

    # Hard constraint: objectives below their minimum count
    deficit_objectives = {
        obj.objective_id: obj.required_count - coverage.get(obj.objective_id, 0)
        for obj in objectives
        if coverage.get(obj.objective_id, 0) < obj.required_count
    }

    if deficit_objectives:
        total_deficit = sum(deficit_objectives.values())

        # Only enforce if there are enough remaining items to fill deficits
        if total_deficit <= items_remaining:
            constrained = [
                item
                for item in eligible
                if not item.objective_tags.isdisjoint(deficit_objectives)
            ]
            if constrained:
                logger.debug(
                    f"Content balancing: restricting to deficit objectives "
                    f"{sorted(deficit_objectives)} "
                    f"({len(constrained)} items available)"
                )
                return constrained

    # Soft constraint: prefer under-represented objectives once minimums are met
    target_weights = _normalized_weights(objectives)
    if items_administered > 0 and not deficit_objectives and target_weights:
        underweight = set()
        for oid, target in target_weights.items():
            actual = coverage.get(oid, 0) / items_administered
            if actual < target - CONTENT_BALANCE_TOLERANCE:
                underweight.add(oid)

        if underweight:
            preferred = [item for item in eligible if item.objective_tags & underweight]
            if preferred:
                logger.debug(
                    f"Content balancing: preferring underweight objectives "
                    f"{sorted(underweight)} ({len(preferred)} items available)"
                )
                return preferred

    return list(eligible)


def _normalized_weights(objectives: Sequence[LearningObjective]) -> Dict[str, float]:
    weights = {
        obj.objective_id: float(obj.weight)
        for obj in objectives
        if obj.weight is not None and obj.weight > 0
    }
    total = sum(weights.values())
    if total <= 0:
        return {}
    return {oid: w / total for oid, w in weights.items()}
