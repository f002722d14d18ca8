"""
Versioned store of item parameters.

Calibration never edits ``QuestionItem.irt_params`` in place. Instead it
publishes a new version here; each version is an immutable mapping built by
copying the previous one and applying the updates (copy-on-write). Sessions
take a snapshot when they start and keep using it until they finish, so a
recalibration never shifts parameters under a running session.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from adaptive_exam.core.datetime_utils import utc_now
from adaptive_exam.models import IRTParameters, QuestionItem

logger = logging.getLogger(__name__)

# Number of historical versions kept for inspection
DEFAULT_MAX_HISTORY = 20


@dataclass(frozen=True)
class ParameterSnapshot:
    """One immutable version of the item parameter table."""

    version: int
    parameters: Mapping[str, IRTParameters]
    source: str
    created_at: datetime = field(default_factory=utc_now)

    def get(self, item_id: str) -> Optional[IRTParameters]:
        return self.parameters.get(item_id)

    def __len__(self) -> int:
        return len(self.parameters)


class ItemParameterRegistry:
    """
    Thread-safe, versioned item parameter table.

    Readers never block on a publish for longer than a reference swap:
    ``snapshot()`` returns the current immutable version object.
    """

    def __init__(
        self,
        initial: Optional[Mapping[str, IRTParameters]] = None,
        max_history: int = DEFAULT_MAX_HISTORY,
    ):
        if max_history < 1:
            raise ValueError(f"max_history must be >= 1, got {max_history}")
        self._lock = threading.Lock()
        self._max_history = max_history
        self._current = ParameterSnapshot(
            version=0,
            parameters=MappingProxyType(dict(initial or {})),
            source="initial",
        )
        self._history: List[ParameterSnapshot] = [self._current]

    @property
    def current_version(self) -> int:
        return self._current.version

    def snapshot(self) -> ParameterSnapshot:
        """Return the current version."""
        return self._current

    def get_version(self, version: int) -> Optional[ParameterSnapshot]:
        """Return a retained historical version, or None if evicted/unknown."""
        with self._lock:
            for snap in self._history:
                if snap.version == version:
                    return snap
        return None

    def publish(self, updates: Mapping[str, IRTParameters], source: str) -> int:
        """
        Create a new version with ``updates`` applied on top of the current one.

        Args:
            updates: item_id -> new parameters.
            source: Where the update came from (e.g. a calibration id).

        Returns:
            The new version number. If ``updates`` is empty the current
            version is returned unchanged.
        """
        if not updates:
            return self._current.version

        with self._lock:
            merged: Dict[str, IRTParameters] = dict(self._current.parameters)
            merged.update(updates)
            new_snapshot = ParameterSnapshot(
                version=self._current.version + 1,
                parameters=MappingProxyType(merged),
                source=source,
            )
            self._history.append(new_snapshot)
            if len(self._history) > self._max_history:
                del self._history[: len(self._history) - self._max_history]
            self._current = new_snapshot

        logger.info(
            f"Published item parameter version {new_snapshot.version} "
            f"({len(updates)} items updated, source={source})"
        )
        return new_snapshot.version

    def register_items(self, items: Iterable[QuestionItem]) -> int:
        """
        Add parameters for items the registry has not seen yet.

        Known items are left untouched, so re-registering a pool never reverts
        calibrated parameters.

        Returns:
            The current version after registration.
        """
        known = self._current.parameters
        new_params = {
            item.item_id: item.irt_params
            for item in items
            if item.item_id not in known
        }
        return self.publish(new_params, source="register")

    def parameters_for(
        self,
        items: Iterable[QuestionItem],
        snapshot: Optional[ParameterSnapshot] = None,
    ) -> Dict[str, IRTParameters]:
        """Resolve parameters for ``items`` from a snapshot, defaulting to each item's own."""
        snap = snapshot or self._current
        return {
            item.item_id: snap.parameters.get(item.item_id, item.irt_params)
            for item in items
        }
