"""
3PL IRT item calibration by Marginal Maximum Likelihood (Bock & Aitkin, 1981).

Estimates discrimination (a), difficulty (b) and guessing (c) from a sparse
response log using Expectation-Maximization over a fixed quadrature grid.

E-step:
    For every learner j and quadrature node q (theta_q, prior weight w_q):
        L_j(theta_q) = prod_i P_i(theta_q)^u_ij (1 - P_i(theta_q))^(1 - u_ij)
        post_jq      = L_j(theta_q) w_q / sum_q' L_j(theta_q') w_q'
    computed in log space. Expected counts per item and node:
        n_iq = sum_j m_ij post_jq          (learners at node q who saw item i)
        r_iq = sum_j m_ij u_ij post_jq     (... and answered correctly)

M-step:
    Each calibratable item maximizes its expected complete-data
    log-likelihood plus weak priors by Fisher scoring with step halving:
        sum_q r_iq log P_i(theta_q) + (n_iq - r_iq) log(1 - P_i(theta_q))
        + log p(a) + log p(b) + log p(c)
    Priors: log(a) ~ N(0, 0.5²), b ~ N(0, 2²), c ~ Beta(5, 17).
    Items whose format cannot be guessed (constructed response) are fitted
    with c fixed at 0.

Convergence: max absolute parameter change < tolerance, or the iteration cap
(results are still returned, flagged low-confidence).

Items with fewer than ``min_sample_size`` responses keep their prior
parameters. They still inform the learners' posteriors in the E-step.

Functions:
    calibrate - Full MML-EM calibration returning a DifficultyCalibration
    build_response_matrix - Sparse response log -> dense girth-layout matrix
    validate_recovery - Compare recovered parameters to known values
"""

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, TypedDict

import girth
import numpy as np
from scipy.special import expit, logsumexp
from scipy.stats import norm

from adaptive_exam.core.cat.errors import CalibrationError, ErrorMessages
from adaptive_exam.core.cat.irt import PROBABILITY_EPSILON, probability_3pl
from adaptive_exam.core.config import settings
from adaptive_exam.models import (
    DifficultyCalibration,
    FitStatistics,
    IRTParameters,
    ItemCalibrationResult,
    QuestionItem,
    ResponseRecord,
)

logger = logging.getLogger(__name__)

# --- Calibration thresholds ---

# Minimum calibratable items required for model identification
MIN_ITEMS_FOR_CALIBRATION = 2

# Minimum distinct learners for a meaningful E-step
MIN_EXAMINEES_FOR_CALIBRATION = 10

# Quadrature range for the population distribution
QUADRATURE_RANGE = (-4.0, 4.0)

# --- Parameter bounds ---

DISCRIMINATION_BOUNDS = (0.05, 5.0)
DIFFICULTY_BOUNDS = (-6.0, 6.0)
# Lower bound keeps log(c) finite under the Beta prior
GUESSING_BOUNDS = (1e-3, 0.5)

# --- Priors ---

LOG_DISCRIMINATION_PRIOR_SD = 0.5
DIFFICULTY_PRIOR_SD = 2.0
GUESSING_PRIOR_ALPHA = 5.0
GUESSING_PRIOR_BETA = 17.0

# --- M-step Newton configuration ---

NEWTON_ITERATIONS = 10
NEWTON_TOLERANCE = 1e-6
MAX_STEP_HALVINGS = 8


class ParameterRecoveryReport(TypedDict):
    """Agreement between recovered and known item parameters."""

    n_items: int
    bias_difficulty: float
    rmse_difficulty: float
    mean_abs_error_difficulty: float
    max_abs_error_difficulty: float
    rmse_discrimination: float
    correlation_difficulty: float


@dataclass
class ResponseMatrix:
    """Dense response data in girth layout (items as rows, learners as columns)."""

    item_ids: List[str]
    learner_ids: List[str]
    matrix: np.ndarray
    response_times: Dict[str, List[float]]

    @property
    def observed(self) -> np.ndarray:
        return self.matrix != girth.INVALID_RESPONSE

    @property
    def responses_per_item(self) -> np.ndarray:
        return self.observed.sum(axis=1)


def build_response_matrix(
    records: Sequence[ResponseRecord],
    item_ids: Optional[Sequence[str]] = None,
) -> ResponseMatrix:
    """
    Build an [n_items x n_learners] matrix with girth.INVALID_RESPONSE for gaps.

    If a learner answered the same item more than once, the last record wins.

    Args:
        records: Sparse response log.
        item_ids: Row order. Defaults to the sorted item ids found in records.
    """
    rows = sorted({r.item_id for r in records}) if item_ids is None else list(item_ids)
    learners = sorted({r.learner_id for r in records})
    item_to_idx = {iid: i for i, iid in enumerate(rows)}
    learner_to_idx = {lid: j for j, lid in enumerate(learners)}

    matrix = np.full((len(rows), len(learners)), girth.INVALID_RESPONSE, dtype=int)
    times: Dict[str, List[float]] = {}
    duplicates = 0
    for r in records:
        i = item_to_idx.get(r.item_id)
        if i is None:
            continue
        j = learner_to_idx[r.learner_id]
        if matrix[i, j] != girth.INVALID_RESPONSE:
            duplicates += 1
        matrix[i, j] = 1 if r.correct else 0
        if r.response_time_ms is not None:
            times.setdefault(r.item_id, []).append(float(r.response_time_ms))

    if duplicates:
        logger.debug(f"Response log had {duplicates} repeated learner/item records")

    return ResponseMatrix(
        item_ids=rows, learner_ids=learners, matrix=matrix, response_times=times
    )


def _clip_params(params: np.ndarray, estimate_guessing: bool) -> np.ndarray:
    clipped = params.copy()
    clipped[0] = np.clip(clipped[0], *DISCRIMINATION_BOUNDS)
    clipped[1] = np.clip(clipped[1], *DIFFICULTY_BOUNDS)
    if estimate_guessing:
        clipped[2] = np.clip(clipped[2], *GUESSING_BOUNDS)
    return clipped


def _unpack(params: np.ndarray, estimate_guessing: bool) -> Tuple[float, float, float]:
    c = float(params[2]) if estimate_guessing else 0.0
    return float(params[0]), float(params[1]), c


def _log_prior(a: float, b: float, c: float, estimate_guessing: bool) -> float:
    log_a = math.log(a)
    value = -log_a - log_a**2 / (2.0 * LOG_DISCRIMINATION_PRIOR_SD**2)
    value -= b**2 / (2.0 * DIFFICULTY_PRIOR_SD**2)
    if estimate_guessing:
        value += (GUESSING_PRIOR_ALPHA - 1.0) * math.log(c)
        value += (GUESSING_PRIOR_BETA - 1.0) * math.log1p(-c)
    return value


def _penalized_log_likelihood(
    params: np.ndarray,
    n_q: np.ndarray,
    r_q: np.ndarray,
    nodes: np.ndarray,
    estimate_guessing: bool,
) -> float:
    a, b, c = _unpack(params, estimate_guessing)
    p = np.clip(
        probability_3pl(nodes, a, b, c), PROBABILITY_EPSILON, 1.0 - PROBABILITY_EPSILON
    )
    ll = float(np.sum(r_q * np.log(p) + (n_q - r_q) * np.log1p(-p)))
    return ll + _log_prior(a, b, c, estimate_guessing)


def _gradient_and_information(
    params: np.ndarray,
    n_q: np.ndarray,
    r_q: np.ndarray,
    nodes: np.ndarray,
    estimate_guessing: bool,
    include_prior: bool = True,
) -> Tuple[np.ndarray, np.ndarray]:
    """Score vector and expected information for one item's parameters."""
    a, b, c = _unpack(params, estimate_guessing)
    s = expit(a * (nodes - b))
    p = np.clip(c + (1.0 - c) * s, PROBABILITY_EPSILON, 1.0 - PROBABILITY_EPSILON)
    w = s * (1.0 - s)

    # dP/d(a, b[, c]) at every node, shape (n_params, n_nodes)
    rows = [(1.0 - c) * w * (nodes - b), -(1.0 - c) * w * a]
    if estimate_guessing:
        rows.append(1.0 - s)
    dp = np.vstack(rows)

    pq = p * (1.0 - p)
    gradient = dp @ ((r_q - n_q * p) / pq)
    information = (dp * (n_q / pq)) @ dp.T

    if include_prior:
        sigma2 = LOG_DISCRIMINATION_PRIOR_SD**2
        gradient[0] += -1.0 / a - math.log(a) / (sigma2 * a)
        information[0, 0] += 1.0 / (sigma2 * a * a)
        gradient[1] += -b / DIFFICULTY_PRIOR_SD**2
        information[1, 1] += 1.0 / DIFFICULTY_PRIOR_SD**2
        if estimate_guessing:
            alpha1 = GUESSING_PRIOR_ALPHA - 1.0
            beta1 = GUESSING_PRIOR_BETA - 1.0
            gradient[2] += alpha1 / c - beta1 / (1.0 - c)
            information[2, 2] += alpha1 / c**2 + beta1 / (1.0 - c) ** 2

    return gradient, information


def _m_step_item(
    params: np.ndarray,
    n_q: np.ndarray,
    r_q: np.ndarray,
    nodes: np.ndarray,
    estimate_guessing: bool,
) -> np.ndarray:
    """Fisher scoring with step halving on one item's penalized likelihood."""
    current = _clip_params(params, estimate_guessing)
    objective = _penalized_log_likelihood(current, n_q, r_q, nodes, estimate_guessing)

    for _ in range(NEWTON_ITERATIONS):
        gradient, information = _gradient_and_information(
            current, n_q, r_q, nodes, estimate_guessing
        )
        try:
            step = np.linalg.solve(information, gradient)
        except np.linalg.LinAlgError:
            logger.debug("Singular information matrix in M-step; keeping parameters")
            break

        scale = 1.0
        for _ in range(MAX_STEP_HALVINGS):
            candidate = _clip_params(current + scale * step, estimate_guessing)
            candidate_objective = _penalized_log_likelihood(
                candidate, n_q, r_q, nodes, estimate_guessing
            )
            if candidate_objective >= objective - 1e-12:
                break
            scale *= 0.5
        else:
            break  # no improving step

        change = float(np.max(np.abs(candidate - current)))
        current, objective = candidate, candidate_objective
        if change < NEWTON_TOLERANCE:
            break

    return current


def _e_step(
    observed: np.ndarray,
    correct: np.ndarray,
    a: np.ndarray,
    b: np.ndarray,
    c: np.ndarray,
    nodes: np.ndarray,
    log_weights: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, float]:
    """
    Posterior weights and expected counts.

    Returns:
        Tuple of (posterior [N x Q], n_iq [I x Q], r_iq [I x Q], log_likelihood).
    """
    p = np.clip(
        probability_3pl(nodes[None, :], a[:, None], b[:, None], c[:, None]),
        PROBABILITY_EPSILON,
        1.0 - PROBABILITY_EPSILON,
    )
    answered_correct = correct * observed
    answered_wrong = (1.0 - correct) * observed
    log_lik = answered_correct.T @ np.log(p) + answered_wrong.T @ np.log1p(-p)

    log_joint = log_lik + log_weights[None, :]
    log_marginal = logsumexp(log_joint, axis=1)
    posterior = np.exp(log_joint - log_marginal[:, None])

    n_iq = observed @ posterior
    r_iq = answered_correct @ posterior
    return posterior, n_iq, r_iq, float(log_marginal.sum())


def _point_biserial(responses: np.ndarray, thetas: np.ndarray) -> Optional[float]:
    if responses.size < 3 or np.std(responses) == 0 or np.std(thetas) == 0:
        return None
    return round(float(np.corrcoef(responses, thetas)[0, 1]), 4)


def calibrate(
    items: Sequence[QuestionItem],
    response_matrix: Sequence[ResponseRecord],
    min_sample_size: Optional[int] = None,
    max_iterations: Optional[int] = None,
    tolerance: Optional[float] = None,
    n_quadrature: Optional[int] = None,
    calibration_id: Optional[str] = None,
    response_matrix_ref: Optional[str] = None,
) -> DifficultyCalibration:
    """
    Calibrate item parameters from a response log by MML-EM.

    Never modifies ``items``; fitted parameters are returned for the caller
    to publish.

    Args:
        items: Items to calibrate. Their current parameters are the starting
            values and are kept for items below ``min_sample_size``.
        response_matrix: Sparse (learner, item, correct, time) records.
        min_sample_size: Minimum responses for an item to be re-estimated
            (default CALIBRATION_MIN_SAMPLE_SIZE).
        max_iterations: EM iteration cap (default CALIBRATION_MAX_ITERATIONS).
        tolerance: Convergence threshold on max parameter change
            (default CALIBRATION_TOLERANCE).
        n_quadrature: Quadrature nodes on [-4, 4]
            (default CALIBRATION_QUADRATURE_POINTS).
        calibration_id: Optional id for the result (random if omitted).
        response_matrix_ref: Opaque reference to the response snapshot.

    Returns:
        DifficultyCalibration with per-item results and fit statistics.

    Raises:
        CalibrationError: If the input cannot support calibration (no
            responses, no known items, too few calibratable items or learners).
    """
    min_sample_size = (
        min_sample_size if min_sample_size is not None else settings.CALIBRATION_MIN_SAMPLE_SIZE
    )
    max_iterations = (
        max_iterations if max_iterations is not None else settings.CALIBRATION_MAX_ITERATIONS
    )
    tolerance = tolerance if tolerance is not None else settings.CALIBRATION_TOLERANCE
    n_quadrature = (
        n_quadrature if n_quadrature is not None else settings.CALIBRATION_QUADRATURE_POINTS
    )
    calibration_id = calibration_id or uuid.uuid4().hex

    if not response_matrix:
        raise CalibrationError(ErrorMessages.NO_RESPONSES, context={"n_responses": 0})

    item_by_id = {item.item_id: item for item in items}
    known_records = [r for r in response_matrix if r.item_id in item_by_id]
    unknown = len(response_matrix) - len(known_records)
    if unknown:
        logger.warning(f"Ignoring {unknown} responses for items not in the calibration set")
    if not known_records:
        raise CalibrationError(
            "No responses reference the items being calibrated",
            context={"n_responses": len(response_matrix), "n_items": len(item_by_id)},
        )

    data = build_response_matrix(known_records, sorted(item_by_id))
    n_items, n_learners = data.matrix.shape
    counts = data.responses_per_item
    calibratable = counts >= min_sample_size

    if int(calibratable.sum()) < MIN_ITEMS_FOR_CALIBRATION:
        raise CalibrationError(
            f"At least {MIN_ITEMS_FOR_CALIBRATION} items with "
            f">= {min_sample_size} responses required for calibration",
            context={"calibratable": int(calibratable.sum()), "n_items": n_items},
        )
    if n_learners < MIN_EXAMINEES_FOR_CALIBRATION:
        raise CalibrationError(
            f"At least {MIN_EXAMINEES_FOR_CALIBRATION} learners required for calibration",
            context={"n_learners": n_learners},
        )

    excluded = [iid for iid, ok in zip(data.item_ids, calibratable) if not ok]
    if excluded:
        logger.warning(
            f"Excluding {len(excluded)} items with < {min_sample_size} responses; "
            "they keep their prior parameters"
        )

    observed = data.observed.astype(float)
    correct = (data.matrix == 1).astype(float)
    guessing_mask = np.array(
        [item_by_id[iid].question_type.allows_guessing for iid in data.item_ids]
    )

    a = np.array([item_by_id[iid].irt_params.a for iid in data.item_ids], dtype=float)
    b = np.array([item_by_id[iid].irt_params.b for iid in data.item_ids], dtype=float)
    c = np.array(
        [
            item_by_id[iid].irt_params.c if guessing_mask[i] else 0.0
            for i, iid in enumerate(data.item_ids)
        ],
        dtype=float,
    )
    for i in np.flatnonzero(calibratable):
        params = np.array([a[i], b[i], c[i]]) if guessing_mask[i] else np.array([a[i], b[i]])
        a[i], b[i], c[i] = _unpack(_clip_params(params, guessing_mask[i]), guessing_mask[i])

    nodes = np.linspace(QUADRATURE_RANGE[0], QUADRATURE_RANGE[1], n_quadrature)
    weights = norm.pdf(nodes)
    log_weights = np.log(weights / weights.sum())

    logger.info(
        f"Running MML-EM calibration: {int(calibratable.sum())}/{n_items} items, "
        f"{n_learners} learners, {int(observed.sum())} responses, "
        f"{n_quadrature} quadrature nodes"
    )

    converged = False
    iterations = 0
    max_change = float("inf")
    for iteration in range(1, max_iterations + 1):
        iterations = iteration
        _, n_iq, r_iq, log_likelihood = _e_step(
            observed, correct, a, b, c, nodes, log_weights
        )

        max_change = 0.0
        for i in np.flatnonzero(calibratable):
            estimate_guessing = bool(guessing_mask[i])
            start = np.array([a[i], b[i], c[i]]) if estimate_guessing else np.array([a[i], b[i]])
            updated = _m_step_item(start, n_iq[i], r_iq[i], nodes, estimate_guessing)
            max_change = max(max_change, float(np.max(np.abs(updated - start))))
            a[i], b[i], c[i] = _unpack(updated, estimate_guessing)

        logger.debug(
            f"EM iteration {iteration}: log-likelihood={log_likelihood:.3f}, "
            f"max change={max_change:.6f}"
        )
        if max_change < tolerance:
            converged = True
            break

    posterior, n_iq, r_iq, log_likelihood = _e_step(
        observed, correct, a, b, c, nodes, log_weights
    )
    theta_hat = posterior @ nodes

    if converged:
        logger.info(f"Calibration converged after {iterations} iterations")
    else:
        logger.warning(
            f"Calibration did not converge after {iterations} iterations "
            f"(max change={max_change:.6f}); results flagged low-confidence"
        )

    item_results: Dict[str, ItemCalibrationResult] = {}
    for i, iid in enumerate(data.item_ids):
        item = item_by_id[iid]
        answered = data.observed[i]
        n_resp = int(counts[i])
        item_responses = data.matrix[i, answered].astype(float)
        times = data.response_times.get(iid)

        if calibratable[i]:
            estimate_guessing = bool(guessing_mask[i])
            params = np.array([a[i], b[i], c[i]]) if estimate_guessing else np.array([a[i], b[i]])
            ses = _standard_errors(params, n_iq[i], r_iq[i], nodes, estimate_guessing)
            irt_params = IRTParameters(
                discrimination=round(float(a[i]), 6),
                difficulty=round(float(b[i]), 6),
                guessing=round(float(c[i]), 6),
            )
        else:
            ses = (float("nan"), float("nan"), float("nan"))
            irt_params = item.irt_params

        item_results[iid] = ItemCalibrationResult(
            item_id=iid,
            irt_params=irt_params,
            se_discrimination=ses[0],
            se_difficulty=ses[1],
            se_guessing=ses[2],
            n_responses=n_resp,
            p_value=round(float(item_responses.mean()), 4) if n_resp else float("nan"),
            point_biserial=_point_biserial(item_responses, theta_hat[answered]),
            avg_response_time_ms=round(sum(times) / len(times), 2) if times else None,
            recalibrated=bool(calibratable[i]),
        )

    calibration = DifficultyCalibration(
        calibration_id=calibration_id,
        response_matrix_ref=response_matrix_ref or f"{len(known_records)} responses",
        item_results=item_results,
        fit_statistics=FitStatistics(
            log_likelihood=round(log_likelihood, 4),
            converged=converged,
            iterations=iterations,
            max_parameter_change=max_change,
            excluded_items=tuple(excluded),
        ),
        sample_size=n_learners,
        n_responses=int(observed.sum()),
    )

    recalibrated = [r for r in item_results.values() if r.recalibrated]
    logger.info(
        f"Calibration {calibration_id} complete: {len(recalibrated)} items. "
        f"Mean b={np.mean([r.irt_params.b for r in recalibrated]):.2f}, "
        f"mean a={np.mean([r.irt_params.a for r in recalibrated]):.2f}"
    )
    return calibration


def _standard_errors(
    params: np.ndarray,
    n_q: np.ndarray,
    r_q: np.ndarray,
    nodes: np.ndarray,
    estimate_guessing: bool,
) -> Tuple[float, float, float]:
    """SEs from the inverse of the (prior-augmented) information matrix."""
    _, information = _gradient_and_information(
        params, n_q, r_q, nodes, estimate_guessing, include_prior=True
    )
    try:
        covariance = np.linalg.inv(information)
    except np.linalg.LinAlgError:
        logger.warning("Singular information matrix; standard errors unavailable")
        return (float("nan"), float("nan"), float("nan"))

    variances = np.clip(np.diag(covariance), 0.0, None)
    ses = [round(float(math.sqrt(v)), 6) for v in variances]
    if not estimate_guessing:
        ses.append(0.0)
    return (ses[0], ses[1], ses[2])


def validate_recovery(
    calibration: DifficultyCalibration,
    reference: Mapping[str, IRTParameters],
) -> ParameterRecoveryReport:
    """
    Compare recovered parameters with known generating values.

    Only items that were re-estimated and appear in ``reference`` are used.

    Raises:
        ValueError: If no items can be compared.
    """
    pairs = [
        (result.irt_params, reference[iid])
        for iid, result in calibration.item_results.items()
        if result.recalibrated and iid in reference
    ]
    if not pairs:
        raise ValueError("No recalibrated items with reference parameters to compare")

    est_b = np.array([est.b for est, _ in pairs])
    true_b = np.array([ref.b for _, ref in pairs])
    est_a = np.array([est.a for est, _ in pairs])
    true_a = np.array([ref.a for _, ref in pairs])
    diff_b = est_b - true_b

    if len(pairs) >= 2 and np.std(est_b) > 0 and np.std(true_b) > 0:
        correlation = float(np.corrcoef(est_b, true_b)[0, 1])
    else:
        correlation = float("nan")

    return {
        "n_items": len(pairs),
        "bias_difficulty": round(float(diff_b.mean()), 4),
        "rmse_difficulty": round(float(np.sqrt(np.mean(diff_b**2))), 4),
        "mean_abs_error_difficulty": round(float(np.mean(np.abs(diff_b))), 4),
        "max_abs_error_difficulty": round(float(np.max(np.abs(diff_b))), 4),
        "rmse_discrimination": round(float(np.sqrt(np.mean((est_a - true_a) ** 2))), 4),
        "correlation_difficulty": round(correlation, 4),
    }
