"""
Three-parameter logistic (3PL) IRT primitives.

    P(theta) = c + (1 - c) / (1 + exp(-a * (theta - b)))

    I(theta) = a^2 * (1 - c) / ((c + exp(a(theta - b))) * (1 + exp(-a(theta - b)))^2)

All functions accept scalars or numpy arrays and broadcast in the usual way.
The 2PL model is the special case c = 0, where I(theta) reduces to
a^2 * P * (1 - P).

References:
    - Birnbaum, A. (1968). Some latent trait models and their use in
      inferring an examinee's ability.
    - Lord, F.M. (1980). Applications of Item Response Theory to Practical
      Testing Problems.
"""

from typing import Union

import numpy as np
from scipy.special import expit

ArrayLike = Union[float, np.ndarray]

# Probabilities are clipped away from 0/1 before taking logs
PROBABILITY_EPSILON = 1e-12


def probability_3pl(
    theta: ArrayLike,
    discrimination: ArrayLike,
    difficulty: ArrayLike,
    guessing: ArrayLike = 0.0,
) -> ArrayLike:
    """
    Probability of a correct response under the 3PL model.

    Uses scipy's ``expit`` for a numerically stable logistic, so extreme
    logits never overflow.

    Args:
        theta: Ability value(s).
        discrimination: Item discrimination (a), must be > 0.
        difficulty: Item difficulty (b).
        guessing: Lower asymptote (c), in [0, 1).

    Returns:
        P(correct | theta), in [c, 1].
    """
    logit = np.multiply(discrimination, np.subtract(theta, difficulty))
    return guessing + (1.0 - np.asarray(guessing)) * expit(logit)


def probability_derivative_3pl(
    theta: ArrayLike,
    discrimination: ArrayLike,
    difficulty: ArrayLike,
    guessing: ArrayLike = 0.0,
) -> ArrayLike:
    """dP/dtheta = a * (1 - c) * P* * (1 - P*), where P* is the 2PL curve."""
    p_star = expit(np.multiply(discrimination, np.subtract(theta, difficulty)))
    return np.multiply(discrimination, 1.0 - np.asarray(guessing)) * p_star * (1.0 - p_star)


def fisher_information_3pl(
    theta: ArrayLike,
    discrimination: ArrayLike,
    difficulty: ArrayLike,
    guessing: ArrayLike = 0.0,
) -> ArrayLike:
    """
    Fisher information of a 3PL item at ability theta.

    Computed as (dP/dtheta)^2 / (P * (1 - P)), which is algebraically equal
    to the closed form in the module docstring but avoids evaluating
    exp(a(theta - b)) directly for large logits.

    Returns:
        Non-negative information value(s).
    """
    p = probability_3pl(theta, discrimination, difficulty, guessing)
    dp = probability_derivative_3pl(theta, discrimination, difficulty, guessing)
    pq = np.clip(p * (1.0 - p), PROBABILITY_EPSILON, None)
    return np.maximum(dp * dp / pq, 0.0)


def log_likelihood_terms(
    theta: ArrayLike,
    discrimination: ArrayLike,
    difficulty: ArrayLike,
    guessing: ArrayLike,
    correct: ArrayLike,
) -> ArrayLike:
    """Per-response log-likelihood contributions log P or log(1 - P)."""
    p = np.clip(
        probability_3pl(theta, discrimination, difficulty, guessing),
        PROBABILITY_EPSILON,
        1.0 - PROBABILITY_EPSILON,
    )
    return np.where(correct, np.log(p), np.log1p(-p))
