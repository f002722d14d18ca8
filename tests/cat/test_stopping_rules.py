"""
Tests for the CAT stopping rule.

Tests cover:
- Rule precedence: max items, pool exhaustion, minimum items, SE threshold
- Boundary values and input validation
"""
import pytest

from adaptive_exam.core.cat.stopping_rules import check_stopping_criteria
from adaptive_exam.models import StopReason


class TestCheckStoppingCriteria:
    def test_continue_below_minimum_even_with_low_se(self):
        decision = check_stopping_criteria(se=0.1, num_items=3, max_items=20)
        assert not decision.should_stop
        assert decision.reason is None

    def test_stop_on_se_threshold(self):
        decision = check_stopping_criteria(se=0.29, num_items=8, max_items=20)
        assert decision.should_stop
        assert decision.reason == StopReason.SE_THRESHOLD

    def test_se_threshold_is_inclusive(self):
        decision = check_stopping_criteria(se=0.30, num_items=8, max_items=20)
        assert decision.reason == StopReason.SE_THRESHOLD

    def test_continue_with_high_se(self):
        assert not check_stopping_criteria(se=0.45, num_items=8, max_items=20).should_stop

    def test_max_items_takes_precedence(self):
        decision = check_stopping_criteria(
            se=0.1, num_items=20, max_items=20, pool_exhausted=True
        )
        assert decision.reason == StopReason.MAX_ITEMS

    def test_max_items_below_minimum(self):
        decision = check_stopping_criteria(se=0.9, num_items=3, max_items=3, min_items=5)
        assert decision.reason == StopReason.MAX_ITEMS

    def test_pool_exhausted_before_minimum(self):
        decision = check_stopping_criteria(
            se=0.9, num_items=2, max_items=20, pool_exhausted=True
        )
        assert decision.reason == StopReason.POOL_EXHAUSTED

    @pytest.mark.parametrize(
        "se,num_items,expected",
        [
            (0.25, 5, True),
            (0.25, 4, False),
            (0.35, 6, False),
        ],
    )
    def test_min_items_boundary(self, se, num_items, expected):
        decision = check_stopping_criteria(se=se, num_items=num_items, max_items=20)
        assert decision.should_stop is expected

    def test_details_recorded(self):
        details = check_stopping_criteria(se=0.5, num_items=6, max_items=20).details
        assert details["min_items_met"] is True
        assert details["at_max_items"] is False

    @pytest.mark.parametrize("se,num_items", [(-0.1, 3), (0.3, -1)])
    def test_invalid_inputs(self, se, num_items):
        with pytest.raises(ValueError):
            check_stopping_criteria(se=se, num_items=num_items, max_items=10)
