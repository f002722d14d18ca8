"""
Tests for ability estimation (EAP, Newton-Raphson MLE and the combined estimator).

Tests cover:
- EAP prior return, direction of updates and SE shrinkage
- MLE convergence on mixed patterns and refusal on non-mixed patterns
- Estimator choice, fallback reporting and the reported SE
- Monotone theta for all-correct and all-incorrect histories
- Precision-weighted priors from previous sessions
"""
import math

import pytest

from adaptive_exam.core.cat.ability_estimation import (
    compute_prior_theta,
    estimate_ability,
    estimate_ability_eap,
    estimate_ability_mle,
)
from adaptive_exam.models import EstimationMethod, ExamResponse, IRTParameters


def _params(b: float, a: float = 1.0, c: float = 0.0) -> IRTParameters:
    return IRTParameters(discrimination=a, difficulty=b, guessing=c)


def _responses(pattern):
    """Build ExamResponses and a parameter map from (b, correct) pairs."""
    params = {f"i{n}": _params(b) for n, (b, _) in enumerate(pattern)}
    responses = [
        ExamResponse(item_id=f"i{n}", raw_response=None, is_correct=correct, response_time_ms=1000.0)
        for n, (_, correct) in enumerate(pattern)
    ]
    return responses, params


class TestEstimateAbilityEAP:
    def test_no_responses_returns_prior(self):
        assert estimate_ability_eap([], prior_mean=0.4, prior_sd=0.8) == (0.4, 0.8)

    def test_correct_response_raises_theta(self):
        theta, se = estimate_ability_eap([(_params(0.0), True)])
        assert theta > 0.0
        assert se < 1.0

    def test_incorrect_response_lowers_theta(self):
        theta, _ = estimate_ability_eap([(_params(0.0), False)])
        assert theta < 0.0

    def test_symmetric_pattern_centres_on_zero(self):
        theta, _ = estimate_ability_eap([(_params(0.0), True), (_params(0.0), False)])
        assert theta == pytest.approx(0.0, abs=1e-9)

    def test_se_shrinks_with_more_items(self):
        _, se_few = estimate_ability_eap([(_params(0.0), True), (_params(0.0), False)])
        pattern = [(_params(0.0), n % 2 == 0) for n in range(20)]
        _, se_many = estimate_ability_eap(pattern)
        assert se_many < se_few

    def test_long_history_does_not_underflow(self):
        pattern = [(_params(-1.0, a=2.5), True) for _ in range(400)]
        theta, se = estimate_ability_eap(pattern)
        assert math.isfinite(theta)
        assert se > 0.0


class TestEstimateAbilityMLE:
    def test_converges_on_mixed_pattern(self):
        pattern = [(_params(b), b < 0.5) for b in (-1.5, -0.5, 0.0, 0.5, 1.5)]
        result = estimate_ability_mle(pattern)
        assert result.converged
        assert -1.0 < result.theta < 1.5
        assert math.isfinite(result.standard_error)

    def test_se_is_inverse_root_information(self):
        pattern = [(_params(0.0), True), (_params(0.0), False)]
        result = estimate_ability_mle(pattern)
        # theta = 0, information = 2 * 0.25
        assert result.theta == pytest.approx(0.0, abs=1e-6)
        assert result.standard_error == pytest.approx(1.0 / math.sqrt(0.5), rel=1e-4)

    def test_all_correct_not_attempted(self):
        result = estimate_ability_mle([(_params(0.0), True), (_params(1.0), True)])
        assert not result.converged
        assert result.failure_reason == "non-mixed pattern"

    def test_bound_exceeded_reported(self):
        pattern = [(_params(2.0), True), (_params(2.0), False)]
        result = estimate_ability_mle(pattern, theta_bound=1.0)
        assert not result.converged
        assert result.failure_reason.startswith("|theta| exceeded")


class TestEstimateAbility:
    def test_no_responses_is_prior(self):
        estimate = estimate_ability([], {}, prior_mean=0.3, prior_sd=0.9)
        assert estimate.method == EstimationMethod.PRIOR
        assert estimate.theta == pytest.approx(0.3)
        assert estimate.standard_error == pytest.approx(0.9)

    def test_eap_below_minimum_responses(self):
        responses, params = _responses([(0.0, True), (0.0, False)])
        assert estimate_ability(responses, params).method == EstimationMethod.EAP

    def test_eap_for_all_correct_pattern(self):
        responses, params = _responses([(b, True) for b in (-1, -0.5, 0, 0.5, 1, 1.5)])
        estimate = estimate_ability(responses, params)
        assert estimate.method == EstimationMethod.EAP
        assert estimate.fallback_reason is None

    def test_mle_after_enough_mixed_responses(self):
        responses, params = _responses(
            [(-1.0, True), (-0.5, True), (0.0, False), (0.5, True), (1.0, False)]
        )
        estimate = estimate_ability(responses, params)
        assert estimate.method == EstimationMethod.MLE
        assert estimate.standard_error > 0.0

    def test_fallback_reason_when_mle_fails(self):
        responses, params = _responses(
            [(-1.0, True), (-0.5, True), (0.0, False), (0.5, True), (1.0, False)]
        )
        estimate = estimate_ability(responses, params, mle_max_iterations=1)
        assert estimate.method == EstimationMethod.EAP
        assert estimate.fallback_reason is not None

    def test_mle_reports_posterior_sd(self):
        pattern = [(-1.0, True), (-0.5, True), (0.0, False), (0.5, True), (1.0, False)]
        responses, params = _responses(pattern)
        estimate = estimate_ability(responses, params)
        _, posterior_sd = estimate_ability_eap([(_params(b), correct) for b, correct in pattern])

        assert estimate.method == EstimationMethod.MLE
        assert estimate.standard_error == pytest.approx(posterior_sd)
        assert estimate.information_se is not None
        assert estimate.information_se > 0.0

    def test_eap_has_no_information_se(self):
        responses, params = _responses([(0.0, True)])
        assert estimate_ability(responses, params).information_se is None


class TestMonotoneUniformPatterns:
    @pytest.mark.parametrize("correct,direction", [(True, 1.0), (False, -1.0)])
    def test_theta_moves_monotonically_with_length(self, correct, direction):
        thetas = []
        for n in range(1, 31):
            params = {f"i{k}": _params(0.0, c=0.2) for k in range(n)}
            responses = [
                ExamResponse(
                    item_id=f"i{k}", raw_response=None, is_correct=correct, response_time_ms=1000.0
                )
                for k in range(n)
            ]
            estimate = estimate_ability(responses, params)
            assert estimate.method == EstimationMethod.EAP
            thetas.append(estimate.theta)

        steps = [direction * (later - earlier) for earlier, later in zip(thetas, thetas[1:])]
        assert all(step > 0.0 for step in steps)
        assert all(-4.0 <= theta <= 4.0 for theta in thetas)
        assert direction * thetas[0] > 0.0


class TestComputePriorTheta:
    def test_no_history(self):
        assert compute_prior_theta([], []) == (0.0, 1.0)

    def test_precision_weighting(self):
        mean, sd = compute_prior_theta([1.0, -1.0], [0.5, 1.0])
        # weights 4 and 1
        assert mean == pytest.approx(0.6)
        assert sd == pytest.approx(1.0 / math.sqrt(5.0))

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="must match"):
            compute_prior_theta([0.0, 1.0], [0.3])
