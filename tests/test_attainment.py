"""
Test: Attainment rollup — weighted propagation, undefined values and scoped queries.
"""
import uuid

import pytest

from obe_platform.backend.database.models import LearningOutcome, OutcomeType
from obe_platform.backend.engine.attainment import (
    AttainmentScope, OutcomeGraph, OutcomeValue, classify_attainment, cohort_distribution,
    query_attainment, rollup, weighted_average
)
from obe_platform.backend.engine.grading import LevelSelection, record_submission, submit_grade
from obe_platform.backend.exceptions import ValidationException

from conftest import NOW


def build_graph(outcomes, edges):
    graph = OutcomeGraph()
    for outcome_id, outcome_type in outcomes:
        graph.outcomes[outcome_id] = LearningOutcome(id=outcome_id, outcome_type=outcome_type, title=str(outcome_id))
    for source, target, weight in edges:
        graph.incoming[target].append((source, weight))
        graph.outgoing[source].append(target)
    return graph


@pytest.fixture
def ids():
    return {name: uuid.uuid4() for name in ("clo_a", "clo_b", "plo", "ilo")}


@pytest.fixture
def graph(ids):
    return build_graph(
        [
            (ids["clo_a"], OutcomeType.CLO),
            (ids["clo_b"], OutcomeType.CLO),
            (ids["plo"], OutcomeType.PLO),
            (ids["ilo"], OutcomeType.ILO),
        ],
        [
            (ids["clo_a"], ids["plo"], 0.6),
            (ids["clo_b"], ids["plo"], 0.4),
            (ids["plo"], ids["ilo"], 1.0),
        ],
    )


class TestWeightedAverage:
    def test_normalizes_by_total_weight(self):
        assert weighted_average([(80, 0.3), (40, 0.3)]) == pytest.approx(60)

    def test_skips_undefined_values(self):
        assert weighted_average([(80, 0.6), (None, 0.4)]) == pytest.approx(80)

    def test_nothing_defined_is_none(self):
        assert weighted_average([(None, 0.6), (None, 0.4)]) is None
        assert weighted_average([]) is None

    def test_zero_weight_only_is_none(self):
        assert weighted_average([(90, 0.0)]) is None

    def test_bounded(self):
        assert weighted_average([(100, 1.0), (100, 1.0)]) == 100
        assert weighted_average([(0, 0.5)]) == 0


class TestRollup:
    def test_weighted_plo(self, graph, ids):
        values = rollup(
            {ids["clo_a"]: OutcomeValue(80, 1), ids["clo_b"]: OutcomeValue(50, 1)},
            graph,
        )
        # 0.6 * 80 + 0.4 * 50 = 68
        assert values[ids["plo"]].value == pytest.approx(68)
        assert values[ids["plo"]].sample_size == 2
        assert values[ids["ilo"]].value == pytest.approx(68)
        assert values[ids["ilo"]].sample_size == 1

    def test_zero_is_not_undefined(self, graph, ids):
        values = rollup({ids["clo_a"]: OutcomeValue(0, 1)}, graph)
        assert values[ids["clo_b"]].value is None
        assert values[ids["plo"]].value == 0
        assert values[ids["ilo"]].value == 0

    def test_no_evidence_stays_undefined(self, graph, ids):
        values = rollup({}, graph)
        assert all(value.value is None for value in values.values())
        assert values[ids["plo"]].sample_size == 0

    def test_unmapped_plo_is_undefined(self, ids):
        orphan = uuid.uuid4()
        graph = build_graph([(ids["clo_a"], OutcomeType.CLO), (orphan, OutcomeType.PLO)], [])
        values = rollup({ids["clo_a"]: OutcomeValue(90, 2)}, graph)
        assert values[orphan].value is None


class TestClassification:
    @pytest.mark.parametrize("value,label", [
        (None, None),
        (92, "Excellent"),
        (85, "Excellent"),
        (70, "Satisfactory"),
        (50, "Developing"),
        (49.99, "Not_Yet"),
        (0, "Not_Yet"),
    ])
    def test_levels(self, value, label):
        assert classify_attainment(value) == label


async def grade(db, world, criteria_ids, student_key, levels):
    result = await record_submission(db, world["assignment"].id, world[student_key].id, now=NOW)
    await submit_grade(db, result["submission"].id, [
        LevelSelection(criterion_id=cid, level_index=level) for cid, level in zip(criteria_ids, levels)
    ])


class TestQueryAttainment:
    async def test_student_course_scope(self, db, world, criteria_ids):
        await grade(db, world, criteria_ids, "student", (1, 1))
        rows = await query_attainment(
            db, AttainmentScope.student_course(world["student"].id, world["course"].id)
        )
        by_code = {row["code"]: row for row in rows}

        assert [row["outcome_type"] for row in rows] == ["CLO", "CLO", "PLO", "ILO"]
        assert by_code["CLO1"]["attainment"] == 70
        assert by_code["CLO2"]["attainment"] == 75
        assert by_code["PLO1"]["attainment"] == 72
        assert by_code["PLO1"]["level"] == "Satisfactory"
        assert by_code["ILO1"]["sample_size"] == 1

    async def test_ungraded_student_is_undefined(self, db, world, criteria_ids):
        await grade(db, world, criteria_ids, "student", (1, 1))
        rows = await query_attainment(
            db, AttainmentScope.student_course(world["other_student"].id, world["course"].id)
        )
        assert all(row["attainment"] is None for row in rows)
        assert all(row["sample_size"] == 0 for row in rows)

    async def test_program_scope_averages_students(self, db, world, criteria_ids):
        await grade(db, world, criteria_ids, "student", (1, 1))
        await grade(db, world, criteria_ids, "other_student", (2, 2))

        rows = await query_attainment(db, AttainmentScope.program(world["program"].id))
        by_code = {row["code"]: row for row in rows}

        assert by_code["CLO1"]["attainment"] == 85
        assert by_code["PLO1"]["attainment"] == 86
        assert by_code["PLO1"]["sample_size"] == 2

    async def test_single_outcome(self, db, world, criteria_ids):
        await grade(db, world, criteria_ids, "student", (1, 1))
        rows = await query_attainment(
            db,
            AttainmentScope.student_course(world["student"].id, world["course"].id),
            outcome_id=world["plo"].id,
        )
        assert len(rows) == 1
        assert rows[0]["attainment"] == 72

    def test_scope_requires_ids(self):
        with pytest.raises(ValidationException):
            AttainmentScope(AttainmentScope.STUDENT_COURSE, student_id=uuid.uuid4())
        with pytest.raises(ValidationException):
            AttainmentScope("department")


class TestCohortDistribution:
    async def test_distribution_from_cache(self, db, world, criteria_ids):
        await grade(db, world, criteria_ids, "student", (1, 1))
        await grade(db, world, criteria_ids, "other_student", (2, 2))

        result = await cohort_distribution(db, world["clo_a"].id, world["course"].id)
        assert result["sample_size"] == 2
        assert result["statistics"]["mean"] == 85
        assert result["levels"]["Excellent"] == 1
        assert result["levels"]["Satisfactory"] == 1

    async def test_empty_distribution(self, db, world):
        result = await cohort_distribution(db, world["clo_b"].id)
        assert result["sample_size"] == 0
        assert result["statistics"] is None
