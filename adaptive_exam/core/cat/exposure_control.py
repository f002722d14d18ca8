"""
Item exposure control for Computerized Adaptive Testing.

Over-exposure occurs when a small subset of items is administered
disproportionately often, compromising item security across concurrent
sessions. Two complementary mechanisms are provided:

- Percentile down-weighting: items whose ``exposure_count`` exceeds the
  given percentile of the eligible pool's counts have their information
  multiplied by a penalty. Items are never excluded, so the pool cannot be
  exhausted by exposure control alone (Stocking & Lewis, 1998 in spirit).
- Randomesque selection (Kingsbury & Zara, 1989): choose among the top-K
  candidates. The RNG is seeded from the session id, so a session replayed
  with the same inputs receives the same items.

Exposure counts are incremented through :class:`ExposureTracker`, which
serialises increments across sessions.

References:
    - Kingsbury, G.G., & Zara, A.R. (1989). Procedures for selecting items for
      computerized adaptive tests.
    - Stocking, M.L., & Lewis, C. (1998). Controlling item exposure conditional
      on ability in computerized adaptive testing.
"""

import hashlib
import logging
import random
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from adaptive_exam.models import QuestionItem

logger = logging.getLogger(__name__)

DEFAULT_EXPOSURE_PERCENTILE = 90.0
DEFAULT_EXPOSURE_PENALTY = 0.5
# K=1 disables randomesque selection
DEFAULT_RANDOMESQUE_K = 1

# Default exposure rate threshold for logging alerts (15%)
DEFAULT_EXPOSURE_ALERT_THRESHOLD = 0.15


@dataclass
class ItemCandidate:
    """An item with its computed (possibly exposure-weighted) information."""

    item: QuestionItem
    information: float
    raw_information: float = 0.0
    penalized: bool = False


def ranking_key(candidate: ItemCandidate) -> Tuple[float, int, str]:
    """Sort key: highest information, then lowest exposure, then smallest id."""
    return (
        -candidate.information,
        candidate.item.exposure_count,
        candidate.item.item_id,
    )


def exposure_threshold(
    exposure_counts: Sequence[int],
    percentile: float = DEFAULT_EXPOSURE_PERCENTILE,
) -> float:
    """Exposure count at the given percentile (linear interpolation)."""
    if not exposure_counts:
        return 0.0
    return float(np.percentile(np.asarray(exposure_counts, dtype=float), percentile))


def apply_exposure_weighting(
    candidates: List[ItemCandidate],
    percentile: float = DEFAULT_EXPOSURE_PERCENTILE,
    penalty: float = DEFAULT_EXPOSURE_PENALTY,
) -> List[ItemCandidate]:
    """
    Down-weight over-exposed candidates in place.

    Args:
        candidates: Candidates with ``information`` set to raw Fisher information.
        percentile: Items with exposure strictly above this percentile of the
            candidates' counts are penalized.
        penalty: Multiplier in (0, 1] applied to penalized items.

    Returns:
        The same list, for chaining.
    """
    if not candidates:
        return candidates

    threshold = exposure_threshold(
        [c.item.exposure_count for c in candidates], percentile
    )
    penalized = 0
    for candidate in candidates:
        candidate.raw_information = candidate.information
        if candidate.item.exposure_count > threshold:
            candidate.information *= penalty
            candidate.penalized = True
            penalized += 1

    if penalized:
        logger.debug(
            f"Exposure control: down-weighted {penalized}/{len(candidates)} items "
            f"above exposure count {threshold:.1f} (p{percentile:.0f})"
        )
    return candidates


def session_rng(session_id: str) -> random.Random:
    """Deterministic RNG for a session.

    Seeded from a SHA-256 digest rather than ``hash()``, which is salted per
    process.
    """
    digest = hashlib.sha256(session_id.encode("utf-8")).digest()
    return random.Random(int.from_bytes(digest[:8], "big"))


def apply_randomesque(
    ranked_items: List[ItemCandidate],
    k: int = DEFAULT_RANDOMESQUE_K,
    rng: Optional[random.Random] = None,
) -> ItemCandidate:
    """
    Select from the top-K ranked candidates.

    With ``k == 1`` (the default) this is plain maximum-information selection.

    Args:
        ranked_items: Items sorted by :func:`ranking_key`.
        k: Number of top items to select from.
        rng: Random instance. Required for k > 1 so selection stays reproducible.

    Returns:
        The selected ItemCandidate.

    Raises:
        ValueError: If ranked_items is empty, k is not positive, or k > 1
            without an rng.
    """
    if not ranked_items:
        raise ValueError("Cannot select from empty ranked_items list")
    if k <= 0:
        raise ValueError(f"k must be positive, got {k}")

    top_k = ranked_items[: min(k, len(ranked_items))]
    if len(top_k) == 1:
        return top_k[0]
    if rng is None:
        raise ValueError("Randomesque selection with k > 1 requires an rng")

    selected = rng.choice(top_k)
    logger.debug(
        f"Randomesque selection: chose item {selected.item.item_id} "
        f"from top-{len(top_k)} (info={selected.information:.4f})"
    )
    return selected


class ExposureTracker:
    """
    Thread-safe exposure counting across all sessions of a process.

    ``record_administration`` increments ``QuestionItem.exposure_count`` under
    a lock and keeps per-item totals for exposure-rate monitoring. Reads of
    ``exposure_count`` elsewhere are unsynchronised; a slightly stale count only
    affects the soft exposure heuristic.

    Attributes:
        alert_threshold: Exposure rate above which items are flagged (0.0-1.0).
    """

    def __init__(self, alert_threshold: float = DEFAULT_EXPOSURE_ALERT_THRESHOLD):
        if not (0.0 <= alert_threshold <= 1.0):
            raise ValueError(
                f"alert_threshold must be in [0.0, 1.0], got {alert_threshold}"
            )

        self._lock = threading.Lock()
        self._item_counts: Dict[str, int] = {}
        self._total_selections = 0
        self.alert_threshold = alert_threshold

    def record_administration(self, item: QuestionItem) -> int:
        """
        Atomically increment an item's exposure count.

        Returns:
            The item's new exposure_count.
        """
        with self._lock:
            item.exposure_count += 1
            self._item_counts[item.item_id] = self._item_counts.get(item.item_id, 0) + 1
            self._total_selections += 1
            return item.exposure_count

    def get_exposure_rates(self) -> Dict[str, float]:
        """Selections per item divided by total selections recorded here."""
        with self._lock:
            if self._total_selections == 0:
                return {}
            return {
                item_id: count / self._total_selections
                for item_id, count in self._item_counts.items()
            }

    def check_and_alert(self) -> List[Tuple[str, float]]:
        """
        Log and return items whose exposure rate exceeds the alert threshold.

        Returns:
            (item_id, exposure_rate) tuples sorted by rate, descending.
        """
        rates = self.get_exposure_rates()
        overexposed = sorted(
            ((item_id, rate) for item_id, rate in rates.items() if rate > self.alert_threshold),
            key=lambda x: x[1],
            reverse=True,
        )
        if overexposed:
            logger.warning(
                f"Exposure alert: {len(overexposed)} items exceed "
                f"{self.alert_threshold:.1%} threshold"
            )
            for item_id, rate in overexposed[:10]:
                logger.warning(f"  Item {item_id}: {rate:.1%} exposure")
        return overexposed

    @property
    def total_selections(self) -> int:
        with self._lock:
            return self._total_selections

    def reset(self) -> None:
        """Reset monitoring counters. Item exposure counts are left as they are."""
        with self._lock:
            self._item_counts.clear()
            self._total_selections = 0
            logger.info("ExposureTracker counters reset")
