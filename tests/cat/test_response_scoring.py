"""
Tests for raw response scoring.
"""
import pytest

from adaptive_exam.core.cat.errors import ResponseScoringError
from adaptive_exam.core.cat.response_scoring import (
    EXTERNAL_PASS_SCORE,
    normalize_text,
    score_response,
)
from adaptive_exam.models import QuestionType


class TestNormalizeText:
    def test_normalizes_case_and_whitespace(self):
        assert normalize_text("  Photo   Synthesis. ") == "photo synthesis"

    def test_non_string(self):
        assert normalize_text(42) == "42"


class TestSelectedResponse:
    def test_multiple_choice_case_insensitive(self, make_item):
        item = make_item("mc", answer_key="B")
        assert score_response(item, "b") == (True, 1.0)
        assert score_response(item, " B ") == (True, 1.0)
        assert score_response(item, "C") == (False, 0.0)

    def test_multiple_choice_integer_option(self, make_item):
        item = make_item("mc", answer_key="2")
        assert score_response(item, 2) == (True, 1.0)

    def test_multiple_choice_integer_key_string_response(self, make_item):
        item = make_item("mc", answer_key=2)
        assert score_response(item, "2") == (True, 1.0)
        assert score_response(item, " 2 ") == (True, 1.0)
        assert score_response(item, 2) == (True, 1.0)
        assert score_response(item, "3") == (False, 0.0)

    @pytest.mark.parametrize(
        "response,expected",
        [(True, True), ("true", True), ("Yes", True), (0, False), ("false", False)],
    )
    def test_true_false(self, make_item, response, expected):
        item = make_item("tf", question_type=QuestionType.TRUE_FALSE, answer_key=True)
        is_correct, _ = score_response(item, response)
        assert is_correct is expected

    def test_true_false_unparseable(self, make_item):
        item = make_item("tf", question_type=QuestionType.TRUE_FALSE, answer_key=True)
        with pytest.raises(ResponseScoringError):
            score_response(item, "maybe")

    def test_matching_partial_credit(self, make_item):
        item = make_item(
            "match",
            question_type=QuestionType.MATCHING,
            answer_key={"H2O": "water", "NaCl": "salt"},
        )
        is_correct, points = score_response(item, {"H2O": "water", "NaCl": "sugar"})
        assert not is_correct
        assert points == pytest.approx(0.5)

    def test_matching_requires_mapping(self, make_item):
        item = make_item(
            "match", question_type=QuestionType.MATCHING, answer_key={"a": "b"}
        )
        with pytest.raises(ResponseScoringError):
            score_response(item, ["a", "b"])

    def test_drag_drop_positions(self, make_item):
        item = make_item(
            "order", question_type=QuestionType.DRAG_DROP, answer_key=["x", "y", "z", "w"]
        )
        assert score_response(item, ["x", "y", "z", "w"]) == (True, 1.0)
        _, points = score_response(item, ["x", "z", "y", "w"])
        assert points == pytest.approx(0.5)

    def test_drag_drop_rejects_string(self, make_item):
        item = make_item("order", question_type=QuestionType.DRAG_DROP, answer_key=["x"])
        with pytest.raises(ResponseScoringError):
            score_response(item, "x")


class TestConstructedResponse:
    def test_short_answer_accepts_alternatives(self, make_item):
        item = make_item(
            "sa",
            question_type=QuestionType.SHORT_ANSWER,
            answer_key=["Mitochondria", "the mitochondria"],
        )
        assert score_response(item, "the  Mitochondria.")[0]
        assert not score_response(item, "nucleus")[0]
        assert score_response(item, None) == (False, 0.0)

    def test_short_answer_scalar_key(self, make_item):
        item = make_item("sa", question_type=QuestionType.SHORT_ANSWER, answer_key=42)
        assert score_response(item, "42") == (True, 1.0)
        assert score_response(item, 42) == (True, 1.0)
        assert score_response(item, "41") == (False, 0.0)

    def test_short_answer_set_of_answers(self, make_item):
        item = make_item(
            "sa", question_type=QuestionType.SHORT_ANSWER, answer_key={"Paris", "paris, france"}
        )
        assert score_response(item, "Paris, France")[0]

    def test_numerical_tolerance(self, make_item):
        item = make_item("num", question_type=QuestionType.NUMERICAL, answer_key=3.14159)
        assert score_response(item, "3.14159")[0]
        assert not score_response(item, 3.14)[0]

    def test_numerical_rejects_garbage(self, make_item):
        item = make_item("num", question_type=QuestionType.NUMERICAL, answer_key=1.0)
        with pytest.raises(ResponseScoringError):
            score_response(item, "one")
        with pytest.raises(ResponseScoringError):
            score_response(item, float("nan"))

    def test_missing_answer_key(self, make_item):
        item = make_item("mc", answer_key=None)
        with pytest.raises(ResponseScoringError, match="no answer key"):
            score_response(item, "A")


class TestExternalGrading:
    @pytest.mark.parametrize("question_type", [QuestionType.ESSAY, QuestionType.CODE])
    def test_requires_external_score(self, make_item, question_type):
        item = make_item("ext", question_type=question_type, answer_key=None)
        with pytest.raises(ResponseScoringError):
            score_response(item, "print('hi')")

    def test_pass_threshold_inclusive(self, make_item):
        item = make_item("essay", question_type=QuestionType.ESSAY, answer_key=None)
        is_correct, points = score_response(item, "text", external_score=EXTERNAL_PASS_SCORE)
        assert is_correct
        assert points == pytest.approx(EXTERNAL_PASS_SCORE)
        assert not score_response(item, "text", external_score=0.49)[0]

    def test_score_out_of_range(self, make_item):
        item = make_item("essay", question_type=QuestionType.ESSAY, answer_key=None)
        with pytest.raises(ResponseScoringError):
            score_response(item, "text", external_score=1.5)

    def test_error_payload(self, make_item):
        item = make_item("essay", question_type=QuestionType.ESSAY, answer_key=None)
        with pytest.raises(ResponseScoringError) as exc_info:
            score_response(item, "text")
        payload = exc_info.value.to_dict()
        assert payload["context"] == {"item_id": "essay"}
