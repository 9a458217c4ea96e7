"""
Test: Grading engine — immutable grades, amendments, submissions and follow-up effects.
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from obe_platform.backend.database.models import (
    AcademicAlert, AlertPriority, AlertStatus, AlertType, Grade, GradeAmendment, Notification,
    StudentPerformance, StudentProgress
)
from obe_platform.backend.engine.grading import (
    DEADLINE_CLOSED, DEADLINE_LATE_WINDOW, DEADLINE_OPEN, LevelSelection, amend_grade,
    attach_rubric, deadline_status, effective_grade, record_submission,
    run_post_grade_effects, submit_grade
)
from obe_platform.backend.engine.scheduler import run_alert_sweep
from obe_platform.backend.exceptions import (
    ConcurrentAmendmentException, DuplicateSubmissionException, GradeAlreadyExistsException,
    InvalidRubricException, SubmissionClosedException, ValidationException
)

from conftest import NOW, rubric_specs


def selections(criteria_ids, *levels):
    return [LevelSelection(criterion_id=cid, level_index=level) for cid, level in zip(criteria_ids, levels)]


async def submit(db, world, student_key="student", now=NOW):
    result = await record_submission(db, world["assignment"].id, world[student_key].id, "my work", now=now)
    return result["submission"]


async def cached(db, student_id, outcome_id):
    result = await db.execute(
        select(StudentPerformance).where(
            StudentPerformance.student_id == student_id,
            StudentPerformance.outcome_id == outcome_id,
        )
    )
    return result.scalar_one_or_none()


class TestSubmitGrade:
    async def test_scores_and_rolls_up(self, db, world, criteria_ids):
        submission = await submit(db, world)
        grade = await submit_grade(db, submission.id, selections(criteria_ids, 1, 1),
                                   graded_by_id=world["teacher"].id)

        assert grade.total_score == 22
        assert grade.score_percent == 73

        student_id = world["student"].id
        assert (await cached(db, student_id, world["clo_a"].id)).average_score == pytest.approx(70)
        assert (await cached(db, student_id, world["clo_b"].id)).average_score == pytest.approx(75)
        plo = await cached(db, student_id, world["plo"].id)
        assert plo.average_score == pytest.approx(72)
        assert plo.total_submissions == 2
        assert (await cached(db, student_id, world["ilo"].id)).average_score == pytest.approx(72)

    async def test_second_grade_rejected(self, db, world, criteria_ids):
        submission = await submit(db, world)
        first = await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))

        with pytest.raises(GradeAlreadyExistsException):
            await submit_grade(db, submission.id, selections(criteria_ids, 2, 2))

        grades = (await db.execute(select(Grade).where(Grade.submission_id == submission.id))).scalars().all()
        assert len(grades) == 1
        assert grades[0].id == first.id
        assert grades[0].score_percent == 73

    async def test_incomplete_selection_leaves_no_grade(self, db, world, criteria_ids):
        submission = await submit(db, world)
        with pytest.raises(ValidationException):
            await submit_grade(db, submission.id, selections(criteria_ids[:1], 1))

        grade = (await db.execute(select(Grade).where(Grade.submission_id == submission.id))).scalar_one_or_none()
        assert grade is None

    async def test_other_students_cache_untouched(self, db, world, criteria_ids):
        submission = await submit(db, world)
        await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))
        assert await cached(db, world["other_student"].id, world["clo_a"].id) is None


class TestAmendGrade:
    async def test_latest_amendment_is_effective(self, db, world, criteria_ids):
        submission = await submit(db, world)
        grade = await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))

        amendment = await amend_grade(db, grade.id, selections(criteria_ids, 2, 2), "Re-marked after appeal")
        assert amendment.sequence == 1

        current = await effective_grade(db, submission.id)
        assert current.score_percent == 100
        assert current.amendment_count == 1

        original = await db.get(Grade, grade.id)
        assert original.score_percent == 73

        plo = await cached(db, world["student"].id, world["plo"].id)
        assert plo.average_score == pytest.approx(100)

    async def test_amendments_are_sequenced(self, db, world, criteria_ids):
        submission = await submit(db, world)
        grade = await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))
        await amend_grade(db, grade.id, selections(criteria_ids, 2, 2), "first")
        second = await amend_grade(db, grade.id, selections(criteria_ids, 0, 0), "second")

        assert second.sequence == 2
        current = await effective_grade(db, submission.id)
        assert current.total_score == 8

    async def test_sequence_collision_is_a_conflict(self, db, world, criteria_ids):
        submission = await submit(db, world)
        grade = await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))
        grade_id = grade.id
        # Another writer already took the next sequence number
        db.add(GradeAmendment(
            grade_id=grade_id, sequence=2, selections=[], total_score=30, max_score=30,
            score_percent=100, reason="parallel edit",
        ))
        await db.commit()

        with pytest.raises(ConcurrentAmendmentException) as exc_info:
            await amend_grade(db, grade_id, selections(criteria_ids, 2, 2), "re-marked")

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["conflict_type"] == "amendment_conflict"
        rows = (await db.execute(
            select(GradeAmendment.sequence).where(GradeAmendment.grade_id == grade_id)
        )).scalars().all()
        assert rows == [2]

    async def test_reason_required(self, db, world, criteria_ids):
        submission = await submit(db, world)
        grade = await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))
        with pytest.raises(ValidationException):
            await amend_grade(db, grade.id, selections(criteria_ids, 2, 2), "   ")


class TestAttachRubric:
    async def test_locked_after_grading(self, db, world, criteria_ids):
        submission = await submit(db, world)
        await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))

        with pytest.raises(InvalidRubricException):
            await attach_rubric(db, world["assignment"], rubric_specs(world["clo_a"].id, world["clo_b"].id))

    async def test_criteria_must_map_to_course_clos(self, db, world):
        with pytest.raises(InvalidRubricException):
            await attach_rubric(db, world["assignment"], rubric_specs(world["clo_a"].id, world["plo"].id))

    async def test_replaces_existing_rubric(self, db, world):
        rubric = await attach_rubric(db, world["assignment"], rubric_specs(world["clo_b"].id, world["clo_a"].id))
        assert rubric.max_score == 30
        assert world["assignment"].total_points == 30
        assert world["assignment"].rubric_data["criteria"][0]["outcome_id"] == str(world["clo_b"].id)


class TestSubmissions:
    def test_deadline_status(self):
        due = NOW
        assert deadline_status(due, 24, NOW - timedelta(minutes=1)) == DEADLINE_OPEN
        assert deadline_status(due, 24, NOW) == DEADLINE_OPEN
        assert deadline_status(due, 24, NOW + timedelta(hours=5)) == DEADLINE_LATE_WINDOW
        assert deadline_status(due, 24, NOW + timedelta(hours=25)) == DEADLINE_CLOSED

    async def test_on_time_submission_earns_full_xp(self, db, world):
        result = await record_submission(db, world["assignment"].id, world["student"].id, now=NOW)
        assert result["deadline_status"] == DEADLINE_OPEN
        assert result["submission"].is_late is False
        assert result["xp"]["xp_awarded"] == 50

    async def test_late_submission_earns_reduced_xp(self, db, world):
        late = world["assignment"].due_date + timedelta(hours=2)
        result = await record_submission(db, world["assignment"].id, world["student"].id, now=late)
        assert result["deadline_status"] == DEADLINE_LATE_WINDOW
        assert result["submission"].is_late is True
        assert result["xp"]["xp_awarded"] == 25

    async def test_closed_after_late_window(self, db, world):
        closed = world["assignment"].due_date + timedelta(hours=30)
        with pytest.raises(SubmissionClosedException):
            await record_submission(db, world["assignment"].id, world["student"].id, now=closed)

    async def test_one_submission_per_student(self, db, world):
        await record_submission(db, world["assignment"].id, world["student"].id, now=NOW)
        with pytest.raises(DuplicateSubmissionException):
            await record_submission(db, world["assignment"].id, world["student"].id, now=NOW)


class TestPostGradeEffects:
    async def test_badges_alerts_and_notification(self, db, session_factory, world, criteria_ids, dispatcher):
        student_id = world["student"].id
        submission = await submit(db, world)
        db.add(AcademicAlert(
            student_id=student_id,
            alert_type=AlertType.MISSED_DEADLINE,
            priority=AlertPriority.CRITICAL,
            status=AlertStatus.ACTIVE,
            title="Missed Deadline Alert",
            message="Lab 1 missed",
            context_data={"assignment_ids": [str(world["assignment"].id)]},
        ))
        await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))

        report = await run_post_grade_effects(submission.id, dispatcher, session_factory=session_factory)

        assert "first_submission" in report["new_badges"]
        assert report["resolved_alerts"] == 1
        assert report["notified"] is True
        kinds = [message["type"] for message in dispatcher.messages_for(student_id)]
        assert "notification" in kinds

        async with session_factory() as check:
            alert = (await check.execute(
                select(AcademicAlert).where(AcademicAlert.alert_type == AlertType.MISSED_DEADLINE)
            )).scalar_one()
            assert alert.status == AlertStatus.RESOLVED
            assert alert.context_data["assignment_ids"] == []

            notes = (await check.execute(select(Notification).where(Notification.user_id == student_id))).scalars().all()
            assert len(notes) == 1

            progress = (await check.execute(
                select(StudentProgress).where(StudentProgress.student_id == student_id)
            )).scalar_one()
            assert progress.total_badges == len(report["new_badges"])

    async def test_missing_submission_is_reported_not_raised(self, session_factory, world, dispatcher):
        report = await run_post_grade_effects(uuid.uuid4(), dispatcher, session_factory=session_factory)
        assert report == {"new_badges": [], "resolved_alerts": 0, "notified": False}

    async def test_late_submission_clears_missed_deadline(self, db, session_factory, world, criteria_ids, dispatcher):
        student_id = world["student"].id
        late = world["assignment"].due_date + timedelta(hours=2)

        sweep = await run_alert_sweep(session_factory, dispatcher, now=late)
        assert sweep["alerts_created"] == 2

        submission = await submit(db, world, now=late)
        assert submission.is_late is True
        await submit_grade(db, submission.id, selections(criteria_ids, 1, 1))

        report = await run_post_grade_effects(submission.id, dispatcher, session_factory=session_factory)
        assert report["resolved_alerts"] == 1

        async with session_factory() as check:
            alerts = (await check.execute(
                select(AcademicAlert).where(AcademicAlert.alert_type == AlertType.MISSED_DEADLINE)
            )).scalars().all()
            statuses = {alert.student_id: alert.status for alert in alerts}
            assert statuses == {
                student_id: AlertStatus.RESOLVED,
                world["other_student"].id: AlertStatus.ACTIVE,
            }
