"""
Test: At-risk detection — reasons, thresholds and ordering.
"""
from datetime import timedelta

import pytest

from obe_platform.backend.database.models import LearningOutcome, OutcomeType, StudentPerformance
from obe_platform.backend.engine.at_risk import assess_risk, identify_at_risk_students
from obe_platform.backend.exceptions import ValidationException

from conftest import NOW


class TestAssessRisk:
    def test_both_conditions(self):
        assert assess_risk(10, 3) == ["Inactive 7+ days", "Below 50% on 3 CLOs"]

    def test_inactivity_only(self):
        assert assess_risk(8, 0) == ["Inactive 7+ days"]

    def test_low_attainment_only(self):
        assert assess_risk(1, 2) == ["Below 50% on 2 CLOs"]

    def test_not_at_risk(self):
        assert assess_risk(6, 1) == []

    def test_custom_thresholds(self):
        assert assess_risk(3, 1, inactivity_days=3, attainment_threshold=60, low_clo_limit=1) == [
            "Inactive 3+ days", "Below 60% on 1 CLOs"
        ]


@pytest.fixture
async def struggling(db, world):
    """Sam: inactive 10 days and below 50% on three CLOs. Olive: inactive 8 days."""
    clo_c = LearningOutcome(code="CLO3", title="Test programs", outcome_type=OutcomeType.CLO,
                            course_id=world["course"].id)
    db.add(clo_c)
    await db.flush()

    student = world["student"]
    student.last_login = NOW - timedelta(days=10)
    world["other_student"].last_login = NOW - timedelta(days=8)
    db.add_all([
        StudentPerformance(student_id=student.id, outcome_id=world["clo_a"].id, average_score=45),
        StudentPerformance(student_id=student.id, outcome_id=world["clo_b"].id, average_score=20),
        StudentPerformance(student_id=student.id, outcome_id=clo_c.id, average_score=10),
    ])
    await db.flush()
    return world


class TestIdentifyAtRisk:
    async def test_reasons_and_order(self, db, struggling):
        results = await identify_at_risk_students(db, course_id=struggling["course"].id, now=NOW)

        assert [r["full_name"] for r in results] == ["Sam Student", "Olive Other"]
        sam, olive = results
        assert sam["reasons"] == ["Inactive 7+ days", "Below 50% on 3 CLOs"]
        assert sam["days_since_last_login"] == 10
        assert sam["low_clo_count"] == 3
        assert sam["flags"] == {"inactive": True, "low_performance": True}
        assert olive["reasons"] == ["Inactive 7+ days"]
        assert olive["low_clo_count"] == 0

    async def test_program_scope(self, db, struggling):
        results = await identify_at_risk_students(db, program_id=struggling["program"].id, now=NOW)
        assert len(results) == 2

    async def test_active_students_excluded(self, db, world):
        assert await identify_at_risk_students(db, course_id=world["course"].id, now=NOW) == []

    async def test_scope_required(self, db, world):
        with pytest.raises(ValidationException):
            await identify_at_risk_students(db, now=NOW)
