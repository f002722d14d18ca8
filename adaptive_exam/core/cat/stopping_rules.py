"""
Stopping rules for Computerized Adaptive Testing (CAT).

Evaluated after every scored response, in priority order:
    1. Maximum items: stop at ``total_questions`` (hard cap, overrides all)
    2. Pool exhausted: stop when no eligible item remains
    3. Minimum items: otherwise continue until ``min_items`` are administered
    4. SE threshold: stop once SE(theta) <= ``se_threshold``

The defaults (SE <= 0.30, at least 5 items) are common IRT-literature values
and are configurable through settings.

References:
    - Weiss, D. J., & Kingsbury, G. G. (1984). Application of computerized
      adaptive testing to educational problems. Journal of Educational
      Measurement, 21(4), 361-375.
    - van der Linden, W. J., & Glas, C. A. W. (Eds.). (2010). Elements of
      adaptive testing. New York: Springer.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from adaptive_exam.models import StopReason

logger = logging.getLogger(__name__)

# Primary stopping criterion: SE(theta) threshold
# SE = 0.30 corresponds to reliability ~0.91 (reliability = 1 - SE²)
SE_THRESHOLD = 0.30

# Minimum items before the SE rule may stop the test
MIN_ITEMS = 5


@dataclass
class StoppingDecision:
    """
    Result of evaluating stopping criteria for a session.

    Attributes:
        should_stop: Whether the session should terminate.
        reason: Primary reason for stopping (if should_stop=True), or None.
        details: Diagnostic values (se, num_items, thresholds, flags).
    """

    should_stop: bool
    reason: Optional[StopReason]
    details: Dict[str, Any]


def check_stopping_criteria(
    se: float,
    num_items: int,
    max_items: int,
    se_threshold: float = SE_THRESHOLD,
    min_items: int = MIN_ITEMS,
    pool_exhausted: bool = False,
) -> StoppingDecision:
    """
    Evaluate the stopping rule for a session.

    Args:
        se: Current standard error of the ability estimate.
        num_items: Number of items administered so far.
        max_items: Hard cap on test length (``constraints.total_questions``).
        se_threshold: Target SE for stopping.
        min_items: Minimum items before the SE rule applies.
        pool_exhausted: True when no eligible item remains.

    Returns:
        StoppingDecision with should_stop flag, reason, and diagnostic details.

    Raises:
        ValueError: If se or num_items is negative.
    """
    if se < 0:
        raise ValueError(f"Standard error must be non-negative, got {se}")
    if num_items < 0:
        raise ValueError(f"Number of items must be non-negative, got {num_items}")

    details: Dict[str, Any] = {
        "se": se,
        "num_items": num_items,
        "se_threshold": se_threshold,
        "min_items_met": num_items >= min_items,
        "at_max_items": num_items >= max_items,
        "pool_exhausted": pool_exhausted,
    }

    # Rule 1: Maximum items, stop immediately
    if num_items >= max_items:
        logger.info(f"Stopping: reached maximum items ({num_items}/{max_items})")
        return StoppingDecision(True, StopReason.MAX_ITEMS, details)

    # Rule 2: Nothing left to administer
    if pool_exhausted:
        logger.info(f"Stopping: item pool exhausted after {num_items} items")
        return StoppingDecision(True, StopReason.POOL_EXHAUSTED, details)

    # Rule 3: Minimum items, continue if not met
    if num_items < min_items:
        logger.debug(
            f"Continuing: {num_items}/{min_items} items administered (below minimum)"
        )
        return StoppingDecision(False, None, details)

    # Rule 4: SE threshold (primary stopping criterion)
    if se <= se_threshold:
        logger.info(
            f"Stopping: SE threshold met (SE={se:.4f} <= {se_threshold:.4f}) "
            f"after {num_items} items"
        )
        return StoppingDecision(True, StopReason.SE_THRESHOLD, details)

    logger.debug(
        f"Continuing: SE={se:.4f} (threshold={se_threshold:.4f}), items={num_items}"
    )
    return StoppingDecision(False, None, details)
