"""
Tests for exam assembly.
"""
import pytest

from adaptive_exam.core.cat.errors import GenerationCancelled, InsufficientPoolCoverage
from adaptive_exam.core.cat.exam_generator import (
    CancellationToken,
    band_index,
    difficulty_bands,
    generate_exam,
    generate_exam_with_progress,
    objective_quota,
    stratified_order,
)
from adaptive_exam.models import (
    ExamConstraints,
    ExamRequirements,
    LearningObjective,
    QuestionType,
)


def _requirements(
    objectives,
    total_questions,
    difficulty_range=(-3.0, 3.0),
    distribution=None,
    max_per_objective=None,
    fixed_form=False,
):
    return ExamRequirements(
        learning_objectives=objectives,
        constraints=ExamConstraints(
            total_questions=total_questions,
            difficulty_range=difficulty_range,
            question_type_distribution=distribution or {},
            max_per_objective=max_per_objective,
        ),
        fixed_form=fixed_form,
    )


class TestDifficultyBands:
    def test_equal_width(self):
        bands = difficulty_bands((-3.0, 3.0), 3)
        assert [b[:2] for b in bands] == [(-3.0, -1.0), (-1.0, 1.0), (1.0, 3.0)]
        assert bands[1][2] == pytest.approx(0.0)

    @pytest.mark.parametrize("n", [2, 6])
    def test_band_count_limits(self, n):
        with pytest.raises(ValueError):
            difficulty_bands((-3.0, 3.0), n)

    def test_band_index_edges(self):
        bands = difficulty_bands((-3.0, 3.0), 3)
        assert band_index(-3.0, bands) == 0
        assert band_index(-1.0, bands) == 1
        assert band_index(3.0, bands) == 2
        assert band_index(3.01, bands) is None

    def test_stratified_order_round_robin(self, make_item):
        items = [
            make_item("easy-1", b=-2.0),
            make_item("easy-2", b=-2.5),
            make_item("mid-1", b=0.1),
            make_item("hard-1", b=2.0),
            make_item("far", b=4.0),
        ]
        in_range, out_of_range = stratified_order(items, difficulty_bands((-3.0, 3.0), 3))
        assert [i.item_id for i in in_range] == ["easy-1", "mid-1", "hard-1", "easy-2"]
        assert [i.item_id for i in out_of_range] == ["far"]

    def test_objective_quota(self):
        objective = LearningObjective("obj-1", target_count=5)
        assert objective_quota(objective, None) == 5
        assert objective_quota(objective, 3) == 3


class TestGenerateExam:
    def test_meets_quotas(self, make_pool):
        pool = make_pool(10, objective="algebra") + make_pool(10, objective="geometry")
        requirements = _requirements(
            [LearningObjective("algebra", 3), LearningObjective("geometry", 3)],
            total_questions=6,
        )
        exam = generate_exam(requirements, pool, exam_id="gen-1", n_bands=3, pool_oversampling=1)

        assert exam.exam_id == "gen-1"
        assert exam.pool_size == 6
        assert exam.coverage["algebra"].selected == 3
        assert exam.coverage["geometry"].selected == 3
        assert all(cov.satisfied for cov in exam.coverage.values())

    def test_adaptive_pool_oversampled(self, make_pool):
        pool = make_pool(10, objective="algebra")
        requirements = _requirements([LearningObjective("algebra", 3)], total_questions=3)
        exam = generate_exam(requirements, pool, n_bands=3, pool_oversampling=2)
        assert exam.pool_size == 6

    def test_spreads_across_difficulty(self, make_item):
        pool = [
            make_item(f"item-{i}", b=b)
            for i, b in enumerate([-2.5, -2.0, -1.5, -0.5, 0.0, 0.5, 1.5, 2.0, 2.5])
        ]
        requirements = _requirements([LearningObjective("obj-1", 3)], total_questions=3)
        exam = generate_exam(requirements, pool, n_bands=3, pool_oversampling=1)
        assert exam.coverage["obj-1"].difficulty_bands == (1, 1, 1)
        assert sorted(item.irt_params.b for item in exam.item_pool) == [-2.0, 0.0, 2.0]

    def test_insufficient_coverage_reported(self, make_pool):
        requirements = _requirements([LearningObjective("obj-1", 5)], total_questions=5)
        with pytest.raises(InsufficientPoolCoverage) as exc_info:
            generate_exam(requirements, make_pool(3), n_bands=3, pool_oversampling=1)

        error = exc_info.value
        assert error.unsatisfied_objectives == ["obj-1"]
        coverage = error.report["obj-1"]
        assert coverage.required == 5
        assert coverage.available == 3
        assert coverage.selected == 3
        assert error.to_dict()["report"]["obj-1"]["selected"] == 3

    def test_min_count_allows_partial_target(self, make_pool):
        requirements = _requirements(
            [LearningObjective("obj-1", target_count=5, min_count=3)], total_questions=3
        )
        exam = generate_exam(requirements, make_pool(3), n_bands=3, pool_oversampling=1)
        assert exam.coverage["obj-1"].selected == 3
        assert exam.coverage["obj-1"].target == 5

    def test_pool_smaller_than_total_questions(self, make_pool):
        requirements = _requirements([LearningObjective("obj-1", 2)], total_questions=8)
        with pytest.raises(InsufficientPoolCoverage, match="fewer than total_questions"):
            generate_exam(requirements, make_pool(4), n_bands=3, pool_oversampling=1)

    def test_fills_to_total_questions(self, make_pool):
        requirements = _requirements([LearningObjective("obj-1", 2)], total_questions=5)
        exam = generate_exam(requirements, make_pool(8), n_bands=3, pool_oversampling=1)
        assert exam.pool_size == 5

    def test_question_type_filter(self, make_item):
        pool = [
            make_item("mc-1", b=-1.0),
            make_item("mc-2", b=1.0),
            make_item("tf-1", b=0.0, question_type=QuestionType.TRUE_FALSE, answer_key=True),
        ]
        requirements = _requirements(
            [LearningObjective("obj-1", 2)],
            total_questions=2,
            distribution={QuestionType.MULTIPLE_CHOICE: 1.0},
        )
        exam = generate_exam(requirements, pool, n_bands=3, pool_oversampling=1)
        assert {item.item_id for item in exam.item_pool} == {"mc-1", "mc-2"}
        assert exam.coverage["obj-1"].available == 2

    def test_type_caps_relaxed_for_minimum(self, make_item):
        pool = [make_item(f"mc-{i}", b=-1.5 + i) for i in range(4)]
        requirements = _requirements(
            [LearningObjective("obj-1", 4)],
            total_questions=4,
            distribution={QuestionType.MULTIPLE_CHOICE: 0.5, QuestionType.TRUE_FALSE: 0.5},
        )
        exam = generate_exam(requirements, pool, n_bands=3, pool_oversampling=1)
        assert exam.pool_size == 4

    def test_out_of_range_fallback(self, make_item):
        pool = [make_item("in-range", b=0.0), make_item("near", b=1.5), make_item("far", b=3.0)]
        requirements = _requirements(
            [LearningObjective("obj-1", 2)], total_questions=2, difficulty_range=(-1.0, 1.0)
        )
        exam = generate_exam(requirements, pool, n_bands=3, pool_oversampling=1)
        assert {item.item_id for item in exam.item_pool} == {"in-range", "near"}

    def test_multi_tag_item_counts_for_each_objective(self, make_item):
        shared = make_item("shared", objectives=("algebra", "geometry"))
        requirements = _requirements(
            [LearningObjective("algebra", 1), LearningObjective("geometry", 1)],
            total_questions=1,
        )
        exam = generate_exam(requirements, [shared], n_bands=3, pool_oversampling=1)
        assert exam.pool_size == 1
        assert exam.coverage["algebra"].selected == 1
        assert exam.coverage["geometry"].selected == 1

    def test_max_per_objective_caps_quota(self, make_pool):
        requirements = _requirements(
            [LearningObjective("obj-1", 6)], total_questions=2, max_per_objective=2
        )
        exam = generate_exam(requirements, make_pool(10), n_bands=3, pool_oversampling=1)
        assert exam.coverage["obj-1"].target == 2
        assert exam.pool_size == 2

    def test_fixed_form_trimmed_to_total(self, make_pool):
        pool = make_pool(6, objective="algebra") + make_pool(6, objective="geometry")
        requirements = _requirements(
            [
                LearningObjective("algebra", target_count=3, min_count=2),
                LearningObjective("geometry", target_count=3, min_count=2),
            ],
            total_questions=4,
            fixed_form=True,
        )
        exam = generate_exam(requirements, pool, n_bands=3)
        assert exam.pool_size == 4
        assert exam.coverage["algebra"].selected >= 2
        assert exam.coverage["geometry"].selected >= 2

    def test_fixed_form_minimums_do_not_fit(self, make_pool):
        pool = make_pool(6, objective="algebra") + make_pool(6, objective="geometry")
        requirements = _requirements(
            [LearningObjective("algebra", 3), LearningObjective("geometry", 3)],
            total_questions=4,
            fixed_form=True,
        )
        with pytest.raises(ValueError, match="Fixed-form"):
            generate_exam(requirements, pool, n_bands=3)

    def test_duplicate_pool_ids(self, make_item):
        requirements = _requirements([LearningObjective("obj-1", 1)], total_questions=1)
        with pytest.raises(ValueError, match="duplicate"):
            generate_exam(requirements, [make_item("x"), make_item("x", b=1.0)], n_bands=3)

    def test_deterministic(self, make_pool):
        pool = make_pool(12)
        requirements = _requirements([LearningObjective("obj-1", 4)], total_questions=4)
        first = generate_exam(requirements, pool, n_bands=4, pool_oversampling=1)
        second = generate_exam(requirements, pool, n_bands=4, pool_oversampling=1)
        assert [i.item_id for i in first.item_pool] == [i.item_id for i in second.item_pool]


class TestProgressAndCancellation:
    def test_progress_reported_per_objective(self, make_pool):
        pool = make_pool(5, objective="algebra") + make_pool(5, objective="geometry")
        requirements = _requirements(
            [LearningObjective("algebra", 2), LearningObjective("geometry", 2)],
            total_questions=4,
        )
        snapshots = []
        generate_exam_with_progress(
            requirements, pool, progress=snapshots.append, n_bands=3, pool_oversampling=1
        )

        assert [s.current_objective for s in snapshots] == ["algebra", "geometry", None]
        assert snapshots[0].fraction == pytest.approx(0.0)
        assert snapshots[1].objectives_done == 1
        assert snapshots[-1].fraction == pytest.approx(1.0)
        assert snapshots[-1].items_selected == 4

    def test_cancelled_before_start(self, make_pool):
        token = CancellationToken()
        token.cancel()
        requirements = _requirements([LearningObjective("obj-1", 2)], total_questions=2)
        with pytest.raises(GenerationCancelled):
            generate_exam_with_progress(requirements, make_pool(4), cancel_token=token, n_bands=3)

    def test_cancelled_mid_run(self, make_pool):
        pool = make_pool(5, objective="algebra") + make_pool(5, objective="geometry")
        requirements = _requirements(
            [LearningObjective("algebra", 2), LearningObjective("geometry", 2)],
            total_questions=4,
        )
        token = CancellationToken()

        def cancel_after_first(progress):
            if progress.current_objective == "algebra":
                token.cancel()

        with pytest.raises(GenerationCancelled) as exc_info:
            generate_exam_with_progress(
                requirements,
                pool,
                progress=cancel_after_first,
                cancel_token=token,
                n_bands=3,
                pool_oversampling=1,
            )
        assert exc_info.value.context == {"objectives_done": 1}
