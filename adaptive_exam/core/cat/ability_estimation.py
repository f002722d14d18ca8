"""
Ability (theta) estimation for Computerized Adaptive Testing.

Two estimators under the 3PL model:

EAP (Expected A Posteriori) integrates the posterior over a fixed quadrature
grid. It is defined for every response pattern, including all-correct and
all-incorrect histories where MLE diverges, and is the estimator used for
short tests (Bock & Mislevy, 1982).

    theta_hat = sum(theta_k * L(theta_k) * prior(theta_k)) / sum(L(theta_k) * prior(theta_k))
    SE        = posterior standard deviation

MLE (Maximum Likelihood) is obtained by Newton-Raphson in Fisher-scoring
form, started from the EAP estimate:

    theta_{t+1} = theta_t + S(theta_t) / I(theta_t)
    S(theta)    = sum((u_i - P_i) * P_i' / (P_i * (1 - P_i)))
    I(theta)    = sum(P_i'^2 / (P_i * (1 - P_i)))
    SE          = 1 / sqrt(I(theta_hat))

``estimate_ability`` chooses between them: EAP until enough responses with a
mixed pattern exist, then MLE, falling back to EAP whenever the Newton
iteration fails to converge, leaves the theta bounds, or hits non-positive
information. Numerical problems are never raised to the caller.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.special import logsumexp

from adaptive_exam.core.cat.irt import (
    PROBABILITY_EPSILON,
    fisher_information_3pl,
    log_likelihood_terms,
    probability_3pl,
    probability_derivative_3pl,
)
from adaptive_exam.models import EstimationMethod, ExamResponse, IRTParameters

logger = logging.getLogger(__name__)

# Quadrature configuration
QUADRATURE_POINTS = 61  # Number of integration points
QUADRATURE_RANGE = (-4.0, 4.0)  # Theta range for numerical integration

# MLE configuration
MLE_MIN_RESPONSES = 5
MLE_MAX_ITERATIONS = 25
MLE_TOLERANCE = 1e-4
THETA_BOUND = 6.0

# (item parameters, is_correct) pairs in administration order
ResponsePattern = Sequence[Tuple[IRTParameters, bool]]


@dataclass
class AbilityEstimate:
    """Result of an ability estimation step.

    ``standard_error`` is always the posterior SD, which the stopping rule
    consumes. ``information_se`` holds 1/sqrt(I(theta)) when MLE was used.
    ``fallback_reason`` is set when MLE was attempted but EAP was returned.
    """

    theta: float
    standard_error: float
    method: EstimationMethod
    fallback_reason: Optional[str] = None
    information_se: Optional[float] = None


@dataclass
class MLEResult:
    """Outcome of a Newton-Raphson MLE attempt."""

    theta: float
    standard_error: float
    converged: bool
    iterations: int
    failure_reason: Optional[str] = None


def _pattern_arrays(
    responses: ResponsePattern,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    a = np.array([params.a for params, _ in responses], dtype=float)
    b = np.array([params.b for params, _ in responses], dtype=float)
    c = np.array([params.c for params, _ in responses], dtype=float)
    u = np.array([bool(correct) for _, correct in responses], dtype=bool)
    return a, b, c, u


def quadrature_grid(n_points: int = QUADRATURE_POINTS) -> np.ndarray:
    """Evenly spaced theta nodes over QUADRATURE_RANGE."""
    theta_min, theta_max = QUADRATURE_RANGE
    return np.linspace(theta_min, theta_max, n_points)


def estimate_ability_eap(
    responses: ResponsePattern,
    prior_mean: float = 0.0,
    prior_sd: float = 1.0,
    n_points: int = QUADRATURE_POINTS,
) -> Tuple[float, float]:
    """
    Estimate ability using Expected A Posteriori (EAP) with numerical quadrature.

    The posterior is computed in log space and normalized with log-sum-exp,
    so long response histories never underflow.

    Args:
        responses: (IRTParameters, is_correct) pairs.
        prior_mean: Mean of the Gaussian prior on theta.
            Use 0.0 for new learners, a previous estimate for returning ones.
        prior_sd: Standard deviation of the Gaussian prior on theta.
        n_points: Number of quadrature nodes on [-4, 4].

    Returns:
        Tuple of (theta_estimate, standard_error).
        - theta_estimate: Posterior mean of the ability distribution
        - standard_error: Posterior SD, quantifying estimation uncertainty
    """
    # Edge case: no responses, return the prior
    if not responses:
        return (prior_mean, prior_sd)

    theta_points = quadrature_grid(n_points)

    # log N(theta | mu, sigma^2), dropping the constant (cancels on normalization)
    log_priors = -((theta_points - prior_mean) ** 2) / (2.0 * prior_sd**2)

    a, b, c, u = _pattern_arrays(responses)
    # Shape (n_points, n_responses) -> summed over responses
    log_likelihoods = log_likelihood_terms(
        theta_points[:, None], a[None, :], b[None, :], c[None, :], u[None, :]
    ).sum(axis=1)

    log_posteriors = log_priors + log_likelihoods
    if not np.all(np.isfinite(log_posteriors)):
        logger.warning(
            "Non-finite log-posterior at some quadrature points. "
            "Returning prior estimate."
        )
        return (prior_mean, prior_sd)

    posterior_probs = np.exp(log_posteriors - logsumexp(log_posteriors))

    theta_hat = float(np.dot(theta_points, posterior_probs))
    posterior_variance = float(np.dot((theta_points - theta_hat) ** 2, posterior_probs))

    # Degenerate case: the posterior collapsed onto a single node
    if posterior_variance <= 0.0:
        logger.warning(
            "Posterior collapsed onto a single quadrature point. "
            "Returning prior estimate."
        )
        return (prior_mean, prior_sd)

    return (theta_hat, math.sqrt(posterior_variance))


def estimate_ability_mle(
    responses: ResponsePattern,
    start_theta: float = 0.0,
    max_iterations: int = MLE_MAX_ITERATIONS,
    tolerance: float = MLE_TOLERANCE,
    theta_bound: float = THETA_BOUND,
) -> MLEResult:
    """
    Maximum likelihood ability estimate via Newton-Raphson (Fisher scoring).

    Never raises for numerical problems; a failed attempt is reported through
    ``converged=False`` and ``failure_reason`` so the caller can fall back.

    Args:
        responses: (IRTParameters, is_correct) pairs. Should contain at least
            one correct and one incorrect response.
        start_theta: Starting point, typically the EAP estimate.
        max_iterations: Iteration cap.
        tolerance: Convergence threshold on |delta theta|.
        theta_bound: Estimates with |theta| above this are treated as divergence.

    Returns:
        MLEResult with the final iterate.
    """
    if not responses:
        return MLEResult(start_theta, float("inf"), False, 0, "no responses")

    a, b, c, u = _pattern_arrays(responses)
    if u.all() or not u.any():
        return MLEResult(start_theta, float("inf"), False, 0, "non-mixed pattern")

    theta = float(start_theta)
    for iteration in range(1, max_iterations + 1):
        p = np.clip(
            probability_3pl(theta, a, b, c),
            PROBABILITY_EPSILON,
            1.0 - PROBABILITY_EPSILON,
        )
        dp = probability_derivative_3pl(theta, a, b, c)
        pq = p * (1.0 - p)
        score = float(np.sum((u.astype(float) - p) * dp / pq))
        information = float(np.sum(dp * dp / pq))

        if not math.isfinite(information) or information <= 0.0:
            return MLEResult(
                theta, float("inf"), False, iteration, "non-positive information"
            )

        step = score / information
        theta += step

        if not math.isfinite(theta) or abs(theta) > theta_bound:
            return MLEResult(
                theta, float("inf"), False, iteration, f"|theta| exceeded {theta_bound}"
            )

        if abs(step) < tolerance:
            final_info = float(np.sum(fisher_information_3pl(theta, a, b, c)))
            if final_info <= 0.0:
                return MLEResult(
                    theta, float("inf"), False, iteration, "non-positive information"
                )
            return MLEResult(theta, 1.0 / math.sqrt(final_info), True, iteration)

    return MLEResult(
        theta,
        float("inf"),
        False,
        max_iterations,
        f"no convergence after {max_iterations} iterations",
    )


def response_pattern(
    responses: Sequence[ExamResponse],
    item_parameters: Mapping[str, IRTParameters],
) -> List[Tuple[IRTParameters, bool]]:
    """Pair each response with its item's parameters.

    Raises:
        KeyError: If a response references an item with no parameters.
    """
    return [(item_parameters[r.item_id], r.is_correct) for r in responses]


def estimate_ability(
    responses: Sequence[ExamResponse],
    item_parameters: Mapping[str, IRTParameters],
    prior_mean: float = 0.0,
    prior_sd: float = 1.0,
    n_points: int = QUADRATURE_POINTS,
    mle_min_responses: int = MLE_MIN_RESPONSES,
    mle_max_iterations: int = MLE_MAX_ITERATIONS,
    theta_bound: float = THETA_BOUND,
) -> AbilityEstimate:
    """
    Estimate ability from a session's response history.

    EAP is used while fewer than ``mle_min_responses`` responses exist and
    for all-correct / all-incorrect patterns. Otherwise a Newton-Raphson MLE
    started from the EAP estimate is returned if it converges within bounds.
    The EAP pass always runs: it seeds the Newton iterations and supplies the
    posterior SD reported as ``standard_error`` for either method.

    Pure function of its inputs.
    """
    if not responses:
        return AbilityEstimate(prior_mean, prior_sd, EstimationMethod.PRIOR)

    pattern = response_pattern(responses, item_parameters)
    eap_theta, eap_se = estimate_ability_eap(pattern, prior_mean, prior_sd, n_points)

    n_correct = sum(1 for _, correct in pattern if correct)
    mixed = 0 < n_correct < len(pattern)
    if len(pattern) < mle_min_responses or not mixed:
        return AbilityEstimate(eap_theta, eap_se, EstimationMethod.EAP)

    mle = estimate_ability_mle(
        pattern,
        start_theta=eap_theta,
        max_iterations=mle_max_iterations,
        theta_bound=theta_bound,
    )
    if mle.converged:
        return AbilityEstimate(
            mle.theta, eap_se, EstimationMethod.MLE, information_se=mle.standard_error
        )

    logger.debug(
        f"MLE fell back to EAP after {mle.iterations} iterations: "
        f"{mle.failure_reason}"
    )
    return AbilityEstimate(
        eap_theta, eap_se, EstimationMethod.EAP, fallback_reason=mle.failure_reason
    )


def compute_prior_theta(
    previous_thetas: List[float],
    previous_ses: List[float],
) -> Tuple[float, float]:
    """
    Compute a prior ability estimate from a learner's previous sessions.

    Uses precision-weighted averaging of previous theta estimates, where
    precision = 1/SE^2, so sessions with lower SE carry more weight.

    Args:
        previous_thetas: Final theta estimates from past sessions.
        previous_ses: Corresponding SE values. Must be the same length as
            previous_thetas; non-positive values are skipped.

    Returns:
        Tuple of (prior_mean, prior_sd) for initializing a new session.
        If no valid sessions are provided, returns the population prior (0.0, 1.0).
    """
    if not previous_thetas or not previous_ses:
        return (0.0, 1.0)

    if len(previous_thetas) != len(previous_ses):
        raise ValueError(
            f"previous_thetas length ({len(previous_thetas)}) must match "
            f"previous_ses length ({len(previous_ses)})"
        )

    total_precision = 0.0
    weighted_sum = 0.0
    for theta, se in zip(previous_thetas, previous_ses):
        if se <= 0 or not math.isfinite(se):
            logger.warning(f"Skipping session with unusable SE: {se}")
            continue
        precision = 1.0 / (se**2)
        total_precision += precision
        weighted_sum += theta * precision

    if total_precision == 0:
        return (0.0, 1.0)

    prior_mean = weighted_sum / total_precision
    prior_sd = 1.0 / math.sqrt(total_precision)

    # Clamp to reasonable bounds
    prior_mean = max(-3.0, min(3.0, prior_mean))
    prior_sd = max(0.1, min(1.0, prior_sd))

    return (prior_mean, prior_sd)
