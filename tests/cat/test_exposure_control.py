"""
Tests for exposure control.

Tests cover:
- Percentile threshold and information down-weighting
- Randomesque top-K selection and its argument checks
- Deterministic session RNG
- ExposureTracker counting, rates and alerts
"""
import random
import threading

import pytest

from adaptive_exam.core.cat.exposure_control import (
    ExposureTracker,
    ItemCandidate,
    apply_exposure_weighting,
    apply_randomesque,
    exposure_threshold,
    session_rng,
)
from adaptive_exam.core.cat.item_selection import rank_items


class TestExposureWeighting:
    def test_threshold_percentile(self):
        assert exposure_threshold(list(range(11)), 90.0) == pytest.approx(9.0)

    def test_empty_counts(self):
        assert exposure_threshold([], 90.0) == pytest.approx(0.0)

    def test_overexposed_item_penalized(self, make_item):
        candidates = [
            ItemCandidate(item=make_item(f"i{n}", exposure_count=n), information=1.0)
            for n in range(10)
        ]
        apply_exposure_weighting(candidates, percentile=90.0, penalty=0.5)
        penalized = [c for c in candidates if c.penalized]
        assert [c.item.item_id for c in penalized] == ["i9"]
        assert penalized[0].information == pytest.approx(0.5)
        assert penalized[0].raw_information == pytest.approx(1.0)

    def test_uniform_exposure_not_penalized(self, make_item):
        candidates = [
            ItemCandidate(item=make_item(f"i{n}", exposure_count=4), information=1.0)
            for n in range(5)
        ]
        apply_exposure_weighting(candidates)
        assert not any(c.penalized for c in candidates)

    def test_overexposed_best_item_drops_in_ranking(self, make_item):
        hot = make_item("hot", b=0.0, exposure_count=100)
        others = [make_item(f"o{n}", b=0.3, exposure_count=1) for n in range(10)]
        ranked = rank_items([hot] + others, 0.0)
        assert ranked[0].item.item_id != "hot"


class TestRandomesque:
    def _ranked(self, make_item, n=5):
        return [
            ItemCandidate(item=make_item(f"i{k}"), information=float(n - k)) for k in range(n)
        ]

    def test_k1_returns_best(self, make_item):
        assert apply_randomesque(self._ranked(make_item), k=1).item.item_id == "i0"

    def test_requires_rng_for_k_above_one(self, make_item):
        with pytest.raises(ValueError, match="requires an rng"):
            apply_randomesque(self._ranked(make_item), k=3)

    def test_rejects_empty(self):
        with pytest.raises(ValueError, match="empty"):
            apply_randomesque([], k=1)

    def test_rejects_non_positive_k(self, make_item):
        with pytest.raises(ValueError, match="positive"):
            apply_randomesque(self._ranked(make_item), k=0)

    def test_k_larger_than_pool(self, make_item):
        ranked = self._ranked(make_item, n=2)
        selected = apply_randomesque(ranked, k=10, rng=random.Random(1))
        assert selected.item.item_id in {"i0", "i1"}


class TestSessionRng:
    def test_same_seed_same_sequence(self):
        assert session_rng("abc:3").random() == session_rng("abc:3").random()

    def test_different_seed_different_sequence(self):
        assert session_rng("abc:3").random() != session_rng("abc:4").random()


class TestExposureTracker:
    def test_record_increments_item(self, make_item):
        tracker = ExposureTracker()
        item = make_item("x")
        assert tracker.record_administration(item) == 1
        assert tracker.record_administration(item) == 2
        assert item.exposure_count == 2
        assert tracker.total_selections == 2

    def test_rates_and_alerts(self, make_item):
        tracker = ExposureTracker(alert_threshold=0.5)
        hot, cold = make_item("hot"), make_item("cold")
        for _ in range(3):
            tracker.record_administration(hot)
        tracker.record_administration(cold)
        assert tracker.get_exposure_rates() == {
            "hot": pytest.approx(0.75),
            "cold": pytest.approx(0.25),
        }
        assert tracker.check_and_alert() == [("hot", pytest.approx(0.75))]

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            ExposureTracker(alert_threshold=1.5)

    def test_concurrent_increments_are_not_lost(self, make_item):
        tracker = ExposureTracker()
        item = make_item("shared")

        def worker():
            for _ in range(500):
                tracker.record_administration(item)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert item.exposure_count == 4000

    def test_reset_keeps_item_counts(self, make_item):
        tracker = ExposureTracker()
        item = make_item("x")
        tracker.record_administration(item)
        tracker.reset()
        assert tracker.total_selections == 0
        assert tracker.get_exposure_rates() == {}
        assert item.exposure_count == 1
