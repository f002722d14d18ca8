"""
CAT simulation engine for validating the adaptive testing algorithms.

Simulates N examinees with known ability levels taking adaptive exams through
the real ExamSessionManager, and generates synthetic response logs for
calibration studies.

Key Features:
- Synthetic 3PL item pools tagged across learning objectives
- Monte Carlo simulation with configurable N and theta distribution
- Synthetic calibration data via girth's dichotomous IRT generator
- Aggregate bias, RMSE, test length and convergence metrics

References:
    - Weiss, D. J. (2004). Computerized adaptive testing for effective and
      efficient measurement in counseling and education. Measurement and
      Evaluation in Counseling and Development, 37(2), 70-84.
"""

import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from girth.synthetic import create_synthetic_irt_dichotomous
import numpy as np

from adaptive_exam.core.cat.engine import EngineConfig, ExamSessionManager
from adaptive_exam.core.cat.errors import PoolExhausted
from adaptive_exam.core.cat.irt import probability_3pl
from adaptive_exam.models import (
    AdaptiveExam,
    ExamConstraints,
    ExamRequirements,
    IRTParameters,
    LearningObjective,
    QuestionItem,
    QuestionType,
    ResponseRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_OBJECTIVES = ("obj-1", "obj-2", "obj-3", "obj-4")

# Synthetic item parameter distributions (Lord, 1980)
DISCRIMINATION_LOGNORMAL_MEAN = 0.0
DISCRIMINATION_LOGNORMAL_SD = 0.3
DISCRIMINATION_MIN = 0.5
DISCRIMINATION_MAX = 2.5
DIFFICULTY_NORMAL_MEAN = 0.0
DIFFICULTY_NORMAL_SD = 1.0
DIFFICULTY_MIN = -3.0
DIFFICULTY_MAX = 3.0
# Four-option multiple choice
DEFAULT_GUESSING = 0.2

# Option ids used for simulated multiple-choice answers
_CORRECT_OPTION = "A"
_WRONG_OPTION = "B"


@dataclass
class SimulationConfig:
    """Configuration for a CAT simulation run."""

    n_examinees: int = 200  # Number of simulated examinees
    theta_mean: float = 0.0  # Mean of theta distribution
    theta_sd: float = 1.0  # SD of theta distribution
    se_threshold: float = 0.30  # Stopping criterion
    min_items: int = 5  # Min items before stopping
    max_items: int = 30  # Max items (safety limit)
    n_items_per_objective: int = 40
    objectives: Tuple[str, ...] = DEFAULT_OBJECTIVES
    guessing: float = DEFAULT_GUESSING
    seed: int = 42  # Random seed for reproducibility
    # K=1 keeps runs reproducible; larger K reproduces production randomesque
    randomesque_k: int = 1


@dataclass
class ExamineeResult:
    """Per-examinee simulation results."""

    true_theta: float  # True ability
    estimated_theta: float  # Final theta estimate
    final_se: float  # Final standard error
    bias: float  # estimated_theta - true_theta
    items_administered: int  # Test length
    stopping_reason: str  # Why the test stopped
    converged: bool  # Whether SE <= threshold
    objective_coverage: Dict[str, int] = field(default_factory=dict)


@dataclass
class SimulationResult:
    """Aggregate simulation results."""

    config: SimulationConfig
    examinee_results: List[ExamineeResult]
    overall_mean_items: float
    overall_median_items: float
    overall_mean_se: float
    overall_mean_bias: float
    overall_rmse: float
    overall_convergence_rate: float
    stopping_reason_counts: Dict[str, int]


def generate_item_pool(
    n_items_per_objective: int = 40,
    objectives: Sequence[str] = DEFAULT_OBJECTIVES,
    guessing: float = DEFAULT_GUESSING,
    question_type: QuestionType = QuestionType.MULTIPLE_CHOICE,
    seed: int = 42,
) -> List[QuestionItem]:
    """
    Generate a synthetic item pool with realistic 3PL parameters.

    Item parameters are drawn from distributions that match typical
    operational item banks (Lord, 1980):
        - Discrimination (a) ~ LogNormal(mean=0.0, sd=0.3), clipped to [0.5, 2.5]
        - Difficulty (b) ~ Normal(0.0, 1.0), clipped to [-3.0, 3.0]
        - Guessing (c) fixed, and 0 for formats that cannot be guessed

    Every item is tagged with exactly one objective and keyed to option "A".
    """
    rng = np.random.default_rng(seed)
    question_type = QuestionType(question_type)
    c = guessing if question_type.allows_guessing else 0.0

    items: List[QuestionItem] = []
    for objective_id in objectives:
        for index in range(n_items_per_objective):
            a = rng.lognormal(
                mean=DISCRIMINATION_LOGNORMAL_MEAN, sigma=DISCRIMINATION_LOGNORMAL_SD
            )
            a = float(np.clip(a, DISCRIMINATION_MIN, DISCRIMINATION_MAX))

            b = rng.normal(loc=DIFFICULTY_NORMAL_MEAN, scale=DIFFICULTY_NORMAL_SD)
            b = float(np.clip(b, DIFFICULTY_MIN, DIFFICULTY_MAX))

            items.append(
                QuestionItem(
                    item_id=f"{objective_id}-{index:03d}",
                    question_type=question_type,
                    objective_tags=frozenset({objective_id}),
                    irt_params=IRTParameters(discrimination=a, difficulty=b, guessing=c),
                    answer_key=_CORRECT_OPTION,
                )
            )

    logger.info(
        f"Generated item pool: {len(items)} items across {len(objectives)} objectives "
        f"({n_items_per_objective} per objective)"
    )
    return items


def generate_response_log(
    items: Sequence[QuestionItem],
    n_learners: int,
    theta_mean: float = 0.0,
    theta_sd: float = 1.0,
    seed: int = 42,
    response_rate: float = 1.0,
) -> Tuple[List[ResponseRecord], np.ndarray]:
    """
    Simulate a calibration response log from the items' current parameters.

    Args:
        items: Items with generating parameters.
        n_learners: Number of simulated learners.
        theta_mean: Mean of the ability distribution.
        theta_sd: SD of the ability distribution.
        seed: Random seed.
        response_rate: Probability each learner saw each item (sparse designs
            use < 1.0).

    Returns:
        Tuple of (response records, true thetas in learner order).
    """
    if not 0.0 < response_rate <= 1.0:
        raise ValueError(f"response_rate must be in (0, 1], got {response_rate}")

    rng = np.random.default_rng(seed)
    thetas = rng.normal(loc=theta_mean, scale=theta_sd, size=n_learners)

    difficulty = np.array([item.irt_params.b for item in items])
    discrimination = np.array([item.irt_params.a for item in items])
    guessing = np.array([item.irt_params.c for item in items])

    # [n_items x n_learners] 0/1 matrix
    matrix = create_synthetic_irt_dichotomous(
        difficulty, discrimination, thetas, guessing=guessing, seed=seed
    )

    seen = rng.uniform(size=matrix.shape) < response_rate
    records: List[ResponseRecord] = []
    for j in range(n_learners):
        learner_id = f"learner-{j:05d}"
        for i, item in enumerate(items):
            if not seen[i, j]:
                continue
            records.append(
                ResponseRecord(
                    learner_id=learner_id,
                    item_id=item.item_id,
                    correct=bool(matrix[i, j]),
                    response_time_ms=float(rng.gamma(shape=4.0, scale=5000.0)),
                )
            )

    logger.info(
        f"Generated response log: {len(records)} responses from {n_learners} learners "
        f"on {len(items)} items"
    )
    return records, thetas


def simulate_response(
    true_theta: float,
    params: IRTParameters,
    rng: random.Random,
) -> bool:
    """Draw a 3PL response for an examinee of known ability."""
    p = float(probability_3pl(true_theta, params.a, params.b, params.c))
    return rng.random() < p


def build_simulation_exam(
    items: Sequence[QuestionItem],
    config: SimulationConfig,
    exam_id: str = "simulation",
) -> AdaptiveExam:
    """Wrap a generated pool in an adaptive exam definition."""
    per_objective = max(1, config.max_items // max(1, len(config.objectives)))
    requirements = ExamRequirements(
        learning_objectives=[
            LearningObjective(objective_id=oid, target_count=per_objective, min_count=1)
            for oid in config.objectives
        ],
        constraints=ExamConstraints(total_questions=config.max_items),
        title="CAT simulation",
    )
    return AdaptiveExam(exam_id=exam_id, requirements=requirements, item_pool=tuple(items))


def run_simulation(
    config: Optional[SimulationConfig] = None,
    items: Optional[Sequence[QuestionItem]] = None,
) -> SimulationResult:
    """
    Run a Monte Carlo CAT simulation through ExamSessionManager.

    For each simulated examinee:
    1. Draw true_theta from N(config.theta_mean, config.theta_sd)
    2. Start a session with the configured prior
    3. Loop: get_next_question -> simulate response -> submit_response
    4. Record ExamineeResult with metrics

    Args:
        config: Simulation configuration (defaults to SimulationConfig()).
        items: Item pool. Generated from the config when omitted.

    Returns:
        SimulationResult with per-examinee and aggregate metrics.
    """
    config = config or SimulationConfig()
    if items is None:
        items = generate_item_pool(
            n_items_per_objective=config.n_items_per_objective,
            objectives=config.objectives,
            guessing=config.guessing,
            seed=config.seed,
        )

    logger.info(
        f"Starting CAT simulation: N={config.n_examinees}, "
        f"theta ~ N({config.theta_mean}, {config.theta_sd}²)"
    )

    manager = ExamSessionManager(
        config=EngineConfig.from_settings(
            se_threshold=config.se_threshold,
            min_items=config.min_items,
            prior_mean=config.theta_mean,
            prior_sd=config.theta_sd,
            randomesque_k=config.randomesque_k,
        )
    )
    exam = build_simulation_exam(items, config)
    manager.register_exam(exam)

    rng = random.Random(config.seed)
    np_rng = np.random.default_rng(config.seed)
    examinee_results: List[ExamineeResult] = []

    for examinee in range(1, config.n_examinees + 1):
        true_theta = float(np_rng.normal(loc=config.theta_mean, scale=config.theta_sd))
        session = manager.start_session(
            exam.exam_id,
            learner_id=f"examinee-{examinee}",
            session_id=f"sim-{config.seed}-{examinee}",
        )

        while not session.state.is_terminal:
            try:
                item = manager.get_next_question(session.session_id)
            except PoolExhausted:
                logger.warning(
                    f"Examinee {examinee}: no eligible items after "
                    f"{session.items_administered} items"
                )
                break

            correct = simulate_response(
                true_theta, session.item_parameters[item.item_id], rng
            )
            manager.submit_response(
                session.session_id,
                item.item_id,
                _CORRECT_OPTION if correct else _WRONG_OPTION,
                response_time_ms=0.0,
            )

        results = manager.complete_exam(session.session_id)
        manager.archive_session(session.session_id)

        examinee_results.append(
            ExamineeResult(
                true_theta=true_theta,
                estimated_theta=results.ability_estimate,
                final_se=results.standard_error,
                bias=results.ability_estimate - true_theta,
                items_administered=results.items_administered,
                stopping_reason=results.stop_reason.value if results.stop_reason else "unknown",
                converged=results.standard_error <= config.se_threshold,
                objective_coverage=dict(session.objective_coverage),
            )
        )

        if examinee % 100 == 0:
            logger.info(f"Completed {examinee}/{config.n_examinees} examinees")

    return _aggregate_results(config, examinee_results)


def _aggregate_results(
    config: SimulationConfig,
    examinee_results: List[ExamineeResult],
) -> SimulationResult:
    if not examinee_results:
        raise ValueError("Cannot aggregate an empty simulation")

    items = np.array([r.items_administered for r in examinee_results], dtype=float)
    ses = np.array([r.final_se for r in examinee_results])
    biases = np.array([r.bias for r in examinee_results])

    result = SimulationResult(
        config=config,
        examinee_results=examinee_results,
        overall_mean_items=float(np.mean(items)),
        overall_median_items=float(np.median(items)),
        overall_mean_se=float(np.mean(ses)),
        overall_mean_bias=float(np.mean(biases)),
        overall_rmse=float(np.sqrt(np.mean(biases**2))),
        overall_convergence_rate=float(np.mean([r.converged for r in examinee_results])),
        stopping_reason_counts=dict(Counter(r.stopping_reason for r in examinee_results)),
    )

    logger.info(
        f"Simulation complete: mean items={result.overall_mean_items:.1f}, "
        f"RMSE={result.overall_rmse:.3f}, bias={result.overall_mean_bias:.3f}, "
        f"convergence={result.overall_convergence_rate:.1%}"
    )
    return result
