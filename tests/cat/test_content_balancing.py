"""
Tests for objective coverage tracking and content balancing.
"""
from adaptive_exam.core.cat.content_balancing import (
    apply_content_balancing,
    is_within_objective_caps,
    saturated_objectives,
    track_objective_coverage,
)
from adaptive_exam.models import LearningObjective


class TestCoverageTracking:
    def test_counts_every_exam_tag(self, make_item):
        items = [
            make_item("q1", objectives=("algebra", "geometry")),
            make_item("q2", objectives=("algebra", "history")),
        ]
        coverage = track_objective_coverage(items, ["algebra", "geometry", "stats"])
        assert coverage == {"algebra": 2, "geometry": 1, "stats": 0}

    def test_saturated(self):
        coverage = {"algebra": 2, "geometry": 1}
        assert saturated_objectives(coverage, 2) == {"algebra"}
        assert saturated_objectives(coverage, None) == set()


class TestObjectiveCaps:
    def test_no_cap(self, make_item):
        assert is_within_objective_caps(make_item("q1"), {"obj-1": 50}, None)

    def test_single_tag_at_cap(self, make_item):
        assert not is_within_objective_caps(make_item("q1"), {"obj-1": 2}, 2)

    def test_multi_tag_passes_while_one_open(self, make_item):
        item = make_item("q1", objectives=("algebra", "geometry"))
        assert is_within_objective_caps(item, {"algebra": 2, "geometry": 1}, 2)
        assert not is_within_objective_caps(item, {"algebra": 2, "geometry": 2}, 2)

    def test_untagged_for_exam_passes(self, make_item):
        item = make_item("q1", objectives=("history",))
        assert is_within_objective_caps(item, {"algebra": 5}, 2)


class TestApplyContentBalancing:
    def test_restricts_to_deficit_objectives(self, make_item):
        eligible = [
            make_item("a1", objectives=("algebra",)),
            make_item("g1", objectives=("geometry",)),
        ]
        objectives = [LearningObjective("algebra", 2), LearningObjective("geometry", 2)]
        result = apply_content_balancing(
            eligible, {"algebra": 2, "geometry": 0}, objectives, items_administered=2, max_items=10
        )
        assert [i.item_id for i in result] == ["g1"]

    def test_minimum_skipped_when_unreachable(self, make_item):
        eligible = [
            make_item("a1", objectives=("algebra",)),
            make_item("g1", objectives=("geometry",)),
        ]
        objectives = [LearningObjective("algebra", 1), LearningObjective("geometry", 5)]
        result = apply_content_balancing(
            eligible, {"algebra": 1, "geometry": 0}, objectives, items_administered=8, max_items=10
        )
        assert len(result) == 2

    def test_soft_weights_prefer_underweight(self, make_item):
        eligible = [
            make_item("a1", objectives=("algebra",)),
            make_item("g1", objectives=("geometry",)),
        ]
        objectives = [
            LearningObjective("algebra", 1, weight=1.0),
            LearningObjective("geometry", 1, weight=1.0),
        ]
        result = apply_content_balancing(
            eligible, {"algebra": 4, "geometry": 1}, objectives, items_administered=5, max_items=10
        )
        assert [i.item_id for i in result] == ["g1"]

    def test_no_weights_keeps_pool(self, make_item):
        eligible = [make_item("a1", objectives=("algebra",))]
        objectives = [LearningObjective("algebra", 1)]
        result = apply_content_balancing(
            eligible, {"algebra": 3}, objectives, items_administered=3, max_items=10
        )
        assert result == eligible
