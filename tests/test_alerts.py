"""
Test: Alert engine — dedup window, staff routing, lifecycle, visibility and sweep checks.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from obe_platform.backend.database.models import (
    AlertNotification, AlertPriority, AlertStatus, AlertType, Course,
    Enrollment, StudentPerformance, User, UserRole
)
from obe_platform.backend.engine.alerts import (
    change_alert_status, check_inactivity, check_low_performance, check_missed_deadlines,
    check_streak_break, query_alerts, raise_alert, resolve_missed_deadline, transition_alert
)
from obe_platform.backend.engine.gamification import get_or_create_progress
from obe_platform.backend.engine.grading import record_submission
from obe_platform.backend.exceptions import AuthorizationException, InvalidAlertTransitionException

from conftest import NOW


async def recipients(db, alert):
    result = await db.execute(select(AlertNotification.user_id).where(AlertNotification.alert_id == alert.id))
    return set(result.scalars())


class TestDedupWindow:
    async def test_duplicate_inside_window_is_skipped(self, db, world):
        student_id = world["student"].id
        first, created = await raise_alert(db, student_id, AlertType.INACTIVITY, "quiet", now=NOW)
        again, created_again = await raise_alert(
            db, student_id, AlertType.INACTIVITY, "still quiet", now=NOW + timedelta(hours=23)
        )

        assert created is True
        assert created_again is False
        assert again.id == first.id

    async def test_new_alert_after_window(self, db, world):
        student_id = world["student"].id
        first, _ = await raise_alert(db, student_id, AlertType.INACTIVITY, "quiet", now=NOW)
        later, created = await raise_alert(
            db, student_id, AlertType.INACTIVITY, "quiet again", now=NOW + timedelta(hours=25)
        )
        assert created is True
        assert later.id != first.id

    async def test_dismissed_alert_does_not_block(self, db, world):
        student_id = world["student"].id
        first, _ = await raise_alert(db, student_id, AlertType.INACTIVITY, "quiet", now=NOW)
        transition_alert(first, AlertStatus.DISMISSED)
        await db.flush()

        second, created = await raise_alert(
            db, student_id, AlertType.INACTIVITY, "quiet", now=NOW + timedelta(hours=1)
        )
        assert created is True
        assert second.id != first.id

    async def test_types_are_independent(self, db, world):
        student_id = world["student"].id
        await raise_alert(db, student_id, AlertType.INACTIVITY, "quiet", now=NOW)
        _, created = await raise_alert(db, student_id, AlertType.HELP_REQUEST, "help", now=NOW)
        assert created is True


class TestRouting:
    async def test_defaults_and_owner(self, db, world):
        alert, _ = await raise_alert(db, world["student"].id, AlertType.LOW_PERFORMANCE, "low", now=NOW)
        assert alert.priority == AlertPriority.HIGH
        assert alert.title == "Low Performance Alert"
        assert alert.assigned_to_id == world["teacher"].id

    async def test_high_priority_notifies_teacher_and_coordinator(self, db, world, dispatcher):
        alert, _ = await raise_alert(
            db, world["student"].id, AlertType.LOW_PERFORMANCE, "low", dispatcher=dispatcher, now=NOW
        )
        assert await recipients(db, alert) == {world["teacher"].id, world["coordinator"].id}
        assert len(dispatcher.sent) == 2

    async def test_medium_priority_notifies_teacher_only(self, db, world):
        alert, _ = await raise_alert(db, world["student"].id, AlertType.INACTIVITY, "quiet", now=NOW)
        assert await recipients(db, alert) == {world["teacher"].id}

    async def test_achievement_goes_to_programme_staff_and_student(self, db, world):
        alert, _ = await raise_alert(db, world["student"].id, AlertType.ACHIEVEMENT, "badge", now=NOW)
        assert alert.assigned_to_id == world["coordinator"].id
        assert await recipients(db, alert) == {
            world["coordinator"].id, world["admin"].id, world["student"].id
        }

    async def test_critical_escalates_to_admin(self, db, world):
        alert, _ = await raise_alert(db, world["student"].id, AlertType.MISSED_DEADLINE, "late", now=NOW)
        assert alert.priority == AlertPriority.CRITICAL
        assert await recipients(db, alert) == {
            world["teacher"].id, world["coordinator"].id, world["admin"].id
        }

    async def test_least_loaded_teacher_is_assigned(self, db, world):
        second_teacher = User(email="tess@example.edu", full_name="Tess Teacher", role=UserRole.TEACHER)
        db.add(second_teacher)
        await db.flush()
        course = Course(program_id=world["program"].id, teacher_id=second_teacher.id, code="CS102", name="Programming II")
        db.add(course)
        await db.flush()
        db.add(Enrollment(student_id=world["student"].id, course_id=course.id))
        await db.flush()

        first, _ = await raise_alert(db, world["student"].id, AlertType.INACTIVITY, "quiet", now=NOW)
        second, _ = await raise_alert(db, world["student"].id, AlertType.STREAK_BREAK, "streak", now=NOW)

        teachers = {world["teacher"].id, second_teacher.id}
        assert {first.assigned_to_id, second.assigned_to_id} == teachers
        assert first.assigned_to_id == min(teachers, key=str)


class TestLifecycle:
    async def test_acknowledge_then_resolve(self, db, world):
        alert, _ = await raise_alert(db, world["student"].id, AlertType.LOW_PERFORMANCE, "low", now=NOW)
        teacher = world["teacher"]

        await change_alert_status(db, alert.id, teacher, AlertStatus.ACKNOWLEDGED)
        assert alert.acknowledged_by_id == teacher.id

        await change_alert_status(db, alert.id, teacher, AlertStatus.RESOLVED, notes="Met with student")
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolution_notes == "Met with student"

    async def test_terminal_states_are_final(self, db, world):
        alert, _ = await raise_alert(db, world["student"].id, AlertType.LOW_PERFORMANCE, "low", now=NOW)
        transition_alert(alert, AlertStatus.RESOLVED)
        with pytest.raises(InvalidAlertTransitionException):
            transition_alert(alert, AlertStatus.ACKNOWLEDGED)

    async def test_students_cannot_change_status(self, db, world):
        alert, _ = await raise_alert(db, world["student"].id, AlertType.HELP_REQUEST, "help", now=NOW)
        with pytest.raises(AuthorizationException):
            await change_alert_status(db, alert.id, world["student"], AlertStatus.RESOLVED)


class TestVisibility:
    async def test_role_scoped_queries(self, db, world):
        mine, _ = await raise_alert(db, world["student"].id, AlertType.LOW_PERFORMANCE, "low", now=NOW)
        theirs, _ = await raise_alert(db, world["other_student"].id, AlertType.ACHIEVEMENT, "badge", now=NOW)

        assert {a.id for a in await query_alerts(db, world["admin"])} == {mine.id, theirs.id}
        assert {a.id for a in await query_alerts(db, world["coordinator"])} == {mine.id, theirs.id}
        assert {a.id for a in await query_alerts(db, world["teacher"])} == {mine.id}
        assert {a.id for a in await query_alerts(db, world["other_student"])} == {theirs.id}

    async def test_filters(self, db, world):
        await raise_alert(db, world["student"].id, AlertType.LOW_PERFORMANCE, "low", now=NOW)
        await raise_alert(db, world["student"].id, AlertType.INACTIVITY, "quiet", now=NOW)
        rows = await query_alerts(db, world["admin"], alert_type=AlertType.INACTIVITY)
        assert [a.alert_type for a in rows] == [AlertType.INACTIVITY]


class TestSweepChecks:
    async def test_inactivity(self, db, world):
        student = world["student"]
        student.last_login = NOW - timedelta(days=10)
        alert = await check_inactivity(db, student, None, NOW)
        assert alert.context_data["days_since_last_login"] == 10

        assert await check_inactivity(db, world["other_student"], None, NOW) is None

    async def test_low_performance_uses_cache(self, db, world):
        student = world["student"]
        db.add_all([
            StudentPerformance(student_id=student.id, outcome_id=world["clo_a"].id, average_score=40),
            StudentPerformance(student_id=student.id, outcome_id=world["clo_b"].id, average_score=30),
            StudentPerformance(student_id=student.id, outcome_id=world["plo"].id, average_score=36),
        ])
        await db.flush()

        alert = await check_low_performance(db, student, None, NOW)
        assert alert.context_data["low_clo_count"] == 2

    async def test_undefined_attainment_is_not_low(self, db, world):
        student = world["student"]
        db.add_all([
            StudentPerformance(student_id=student.id, outcome_id=world["clo_a"].id, average_score=None),
            StudentPerformance(student_id=student.id, outcome_id=world["clo_b"].id, average_score=30),
        ])
        await db.flush()
        assert await check_low_performance(db, student, None, NOW) is None

    async def test_streak_break(self, db, world):
        student = world["student"]
        progress = await get_or_create_progress(db, student.id)
        progress.current_streak = 5
        progress.last_activity_date = NOW.date() - timedelta(days=4)
        await db.flush()

        alert = await check_streak_break(db, student, None, NOW)
        assert alert.context_data["lost_streak"] == 5
        assert progress.current_streak == 0

    async def test_single_day_streak_resets_quietly(self, db, world):
        student = world["student"]
        progress = await get_or_create_progress(db, student.id)
        progress.current_streak = 1
        progress.last_activity_date = NOW.date() - timedelta(days=4)
        await db.flush()

        assert await check_streak_break(db, student, None, NOW) is None
        assert progress.current_streak == 0

    async def test_missed_deadline_raised_once_then_resolved(self, db, world):
        student = world["student"]
        assignment = world["assignment"]
        after_window = assignment.due_date + timedelta(days=2)

        alert = await check_missed_deadlines(db, student, None, after_window)
        assert alert.context_data["assignment_ids"] == [str(assignment.id)]
        assert await check_missed_deadlines(db, student, None, after_window + timedelta(days=2)) is None

        resolved = await resolve_missed_deadline(db, student.id, assignment.id)
        assert [a.id for a in resolved] == [alert.id]
        assert alert.status == AlertStatus.RESOLVED

    async def test_raised_when_late_window_opens(self, db, world):
        assignment = world["assignment"]
        assert await check_missed_deadlines(db, world["student"], None, assignment.due_date) is None

        alert = await check_missed_deadlines(db, world["student"], None, assignment.due_date + timedelta(minutes=1))
        assert alert.context_data["assignment_ids"] == [str(assignment.id)]

    async def test_submitted_assignment_is_not_missed(self, db, world):
        assignment = world["assignment"]
        await record_submission(db, assignment.id, world["student"].id, now=NOW)
        assert await check_missed_deadlines(db, world["student"], None, assignment.due_date + timedelta(days=2)) is None
