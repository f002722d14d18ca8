"""
Scoring of raw learner responses against an item's answer key.

``answer_key`` format per question type:

    multiple_choice   option id (str or int)
    true_false        bool (or "true"/"false")
    short_answer      accepted answer (any scalar) or a list of accepted answers
    numerical         number; matches within ``item.numeric_tolerance``
    matching          mapping of left -> right; partial credit per pair
    drag_drop         ordered sequence; partial credit per position
    essay / code      none; graded externally, ``external_score`` in [0, 1]

``is_correct`` is True only for a fully correct answer (or an external score
of at least EXTERNAL_PASS_SCORE); ``points_earned`` carries partial credit.
"""

import logging
import math
import re
from collections.abc import Mapping, Sequence
from collections.abc import Set as AbstractSet
from typing import Any, Optional, Tuple

from adaptive_exam.core.cat.errors import ErrorMessages, ResponseScoringError
from adaptive_exam.models import QuestionItem, QuestionType

logger = logging.getLogger(__name__)

# Externally graded responses count as correct at or above this score
EXTERNAL_PASS_SCORE = 0.5

_TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "1"})
_FALSE_STRINGS = frozenset({"false", "f", "no", "n", "0"})
_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_PUNCT_RE = re.compile(r"[.!?;,]+$")


def normalize_text(value: Any) -> str:
    """Lower-case, trim, collapse whitespace and drop trailing punctuation."""
    text = _WHITESPACE_RE.sub(" ", str(value).strip().lower())
    return _TRAILING_PUNCT_RE.sub("", text)


def _fail(item: QuestionItem, reason: str) -> ResponseScoringError:
    return ResponseScoringError(
        ErrorMessages.unscorable_response(item.item_id, reason),
        context={"item_id": item.item_id, "question_type": item.question_type.value},
    )


def _coerce_bool(item: QuestionItem, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise _fail(item, f"cannot interpret {value!r} as true/false")


def _score_choice(item: QuestionItem, response: Any) -> float:
    key = item.answer_key
    # Option ids arrive from JSON as either strings or integers
    if isinstance(key, (str, int)) and isinstance(response, (str, int)):
        return 1.0 if str(key).strip().lower() == str(response).strip().lower() else 0.0
    return 1.0 if key == response else 0.0


def _score_true_false(item: QuestionItem, response: Any) -> float:
    return 1.0 if _coerce_bool(item, item.answer_key) == _coerce_bool(item, response) else 0.0


def _score_short_answer(item: QuestionItem, response: Any) -> float:
    if response is None:
        return 0.0
    key = item.answer_key
    if isinstance(key, (str, bytes)) or not isinstance(key, (Sequence, AbstractSet)):
        accepted = [key]
    else:
        accepted = list(key)
    normalized = normalize_text(response)
    return 1.0 if any(normalize_text(k) == normalized for k in accepted) else 0.0


def _score_numerical(item: QuestionItem, response: Any) -> float:
    try:
        value = float(response)
        expected = float(item.answer_key)
    except (TypeError, ValueError) as e:
        raise _fail(item, f"non-numeric value {response!r}") from e
    if not math.isfinite(value):
        raise _fail(item, f"non-finite value {response!r}")
    return 1.0 if abs(value - expected) <= item.numeric_tolerance else 0.0


def _score_matching(item: QuestionItem, response: Any) -> float:
    key = item.answer_key
    if not isinstance(key, Mapping) or not key:
        raise _fail(item, "matching answer key must be a non-empty mapping")
    if not isinstance(response, Mapping):
        raise _fail(item, "matching response must be a mapping")
    matched = sum(1 for left, right in key.items() if response.get(left) == right)
    return matched / len(key)


def _score_drag_drop(item: QuestionItem, response: Any) -> float:
    key = item.answer_key
    if isinstance(key, (str, bytes)) or not isinstance(key, Sequence) or not key:
        raise _fail(item, "drag_drop answer key must be a non-empty sequence")
    if isinstance(response, (str, bytes)) or not isinstance(response, Sequence):
        raise _fail(item, "drag_drop response must be a sequence")
    matched = sum(1 for expected, given in zip(key, response) if expected == given)
    return matched / len(key)


_AUTO_SCORERS = {
    QuestionType.MULTIPLE_CHOICE: _score_choice,
    QuestionType.TRUE_FALSE: _score_true_false,
    QuestionType.SHORT_ANSWER: _score_short_answer,
    QuestionType.NUMERICAL: _score_numerical,
    QuestionType.MATCHING: _score_matching,
    QuestionType.DRAG_DROP: _score_drag_drop,
}


def score_response(
    item: QuestionItem,
    raw_response: Any,
    external_score: Optional[float] = None,
) -> Tuple[bool, float]:
    """
    Score a response.

    Args:
        item: The administered item.
        raw_response: Learner's answer, shape depends on question type.
        external_score: Rubric score in [0, 1] for essay/code items.

    Returns:
        Tuple of (is_correct, points_earned).

    Raises:
        ResponseScoringError: If the response or key cannot be interpreted,
            or an externally graded item arrives without a valid score.
    """
    if item.question_type.requires_external_grading:
        if external_score is None:
            raise ResponseScoringError(
                ErrorMessages.EXTERNAL_SCORE_REQUIRED,
                context={"item_id": item.item_id},
            )
        if not (0.0 <= external_score <= 1.0):
            raise _fail(item, f"external score {external_score} outside [0, 1]")
        return (
            external_score >= EXTERNAL_PASS_SCORE,
            round(external_score * item.max_points, 6),
        )

    if item.answer_key is None:
        raise _fail(item, "item has no answer key")

    fraction = _AUTO_SCORERS[item.question_type](item, raw_response)
    is_correct = fraction >= 1.0
    points = round(fraction * item.max_points, 6)

    logger.debug(
        f"Scored {item.question_type.value} item {item.item_id}: "
        f"fraction={fraction:.3f}, points={points}"
    )
    return is_correct, points
