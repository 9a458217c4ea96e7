"""
Test: HTTP API — role guards, grading flow, outcomes, alerts, gamification and analytics.
"""
from datetime import timedelta

import pytest

from obe_platform.backend.database.models import User, UserRole
from obe_platform.backend.engine.grading import record_submission
from obe_platform.backend.utils.helpers import utcnow

from conftest import NOW


@pytest.fixture
async def submission(db, world):
    result = await record_submission(db, world["assignment"].id, world["student"].id, "work", now=NOW)
    await db.commit()
    return result["submission"]


def grade_body(criteria_ids, *levels):
    return {
        "selections": [
            {"criterion_id": cid, "level_index": level} for cid, level in zip(criteria_ids, levels)
        ],
        "feedback": "Solid start",
    }


class TestAuthentication:
    async def test_anonymous_request_rejected(self, client, world):
        response = await client.get("/alerts")
        assert response.status_code == 401
        assert response.json()["error"] == "AUTHENTICATION_FAILED"

    async def test_health(self, client, world):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestGradingAPI:
    async def test_grade_then_conflict(self, client, login_as, world, submission, criteria_ids):
        login_as(world["teacher"])
        response = await client.post(f"/grading/submissions/{submission.id}/grade", json=grade_body(criteria_ids, 1, 1))
        assert response.status_code == 201
        assert response.json()["score_percent"] == 73

        again = await client.post(f"/grading/submissions/{submission.id}/grade", json=grade_body(criteria_ids, 2, 2))
        assert again.status_code == 409
        assert again.json()["details"]["conflict_type"] == "grade_exists"

        login_as(world["student"])
        current = await client.get(f"/grading/submissions/{submission.id}/grade")
        assert current.json()["score_percent"] == 73

        notifications = await client.get("/notifications/general")
        assert [n["notification_type"] for n in notifications.json()] == ["grade_released"]

    async def test_amend(self, client, login_as, world, submission, criteria_ids):
        login_as(world["teacher"])
        graded = await client.post(f"/grading/submissions/{submission.id}/grade", json=grade_body(criteria_ids, 1, 1))
        grade_id = graded.json()["grade_id"]

        body = grade_body(criteria_ids, 2, 2)
        body["reason"] = "Moderation"
        amended = await client.post(f"/grading/grades/{grade_id}/amend", json=body)
        assert amended.status_code == 200
        assert amended.json()["score_percent"] == 100
        assert amended.json()["amendment_count"] == 1

    async def test_incomplete_grade_rejected(self, client, login_as, world, submission, criteria_ids):
        login_as(world["teacher"])
        response = await client.post(f"/grading/submissions/{submission.id}/grade", json=grade_body(criteria_ids[:1], 1))
        assert response.status_code == 422
        assert response.json()["error"] == "INCOMPLETE_GRADING"

    async def test_only_course_teacher_grades(self, client, db, login_as, world, submission, criteria_ids):
        outsider = User(email="out@example.edu", full_name="Otto Outsider", role=UserRole.TEACHER)
        db.add(outsider)
        await db.commit()

        login_as(outsider)
        response = await client.post(f"/grading/submissions/{submission.id}/grade", json=grade_body(criteria_ids, 1, 1))
        assert response.status_code == 403

    async def test_students_cannot_grade(self, client, login_as, world, submission, criteria_ids):
        login_as(world["student"])
        response = await client.post(f"/grading/submissions/{submission.id}/grade", json=grade_body(criteria_ids, 1, 1))
        assert response.status_code == 403

    async def test_student_submission(self, client, db, login_as, world):
        world["assignment"].due_date = utcnow() + timedelta(days=1)
        await db.commit()

        login_as(world["other_student"])
        url = f"/grading/assignments/{world['assignment'].id}/submissions"
        response = await client.post(url, json={"content": "done"})
        assert response.status_code == 201
        assert response.json()["deadline_status"] == "open"
        assert response.json()["xp_awarded"] == 50

        duplicate = await client.post(url, json={"content": "again"})
        assert duplicate.status_code == 409


class TestOutcomesAPI:
    async def test_student_reads_own_attainment(self, client, login_as, world):
        login_as(world["student"])
        response = await client.get(
            "/outcomes/attainment", params={"scope": "student_course", "course_id": str(world["course"].id)}
        )
        assert response.status_code == 200
        assert all(row["attainment"] is None for row in response.json()["outcomes"])

    async def test_student_cannot_read_others(self, client, login_as, world):
        login_as(world["student"])
        response = await client.get("/outcomes/attainment", params={
            "scope": "student_course",
            "course_id": str(world["course"].id),
            "student_id": str(world["other_student"].id),
        })
        assert response.status_code == 403

    async def test_program_scope_is_staff_only(self, client, login_as, world):
        login_as(world["student"])
        response = await client.get(
            "/outcomes/attainment", params={"scope": "program", "program_id": str(world["program"].id)}
        )
        assert response.status_code == 403

    async def test_mapping_warning(self, client, login_as, world):
        login_as(world["teacher"])
        response = await client.put("/outcomes/mappings", json={
            "source_outcome_id": str(world["clo_a"].id),
            "target_outcome_id": str(world["plo"].id),
            "weight": 0.2,
        })
        assert response.status_code == 200
        assert response.json()["weight_status"] == "under"
        assert "warning" in response.json()

    async def test_matrix_csv(self, client, login_as, world):
        login_as(world["coordinator"])
        response = await client.get(f"/outcomes/matrix/{world['program'].id}", params={"format": "csv"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text == "PLO,CS101\r\nPLO1,2\r\n"


class TestAlertsAPI:
    async def test_help_request_lifecycle(self, client, login_as, world):
        login_as(world["student"])
        created = await client.post("/alerts/help-request", json={"message": "Stuck on recursion"})
        assert created.status_code == 201
        alert = created.json()
        assert alert["alert_type"] == "help_request"
        assert alert["assigned_to_id"] == str(world["teacher"].id)

        forbidden = await client.put(f"/alerts/{alert['id']}/acknowledge")
        assert forbidden.status_code == 403

        login_as(world["teacher"])
        listed = await client.get("/alerts")
        assert [a["id"] for a in listed.json()] == [alert["id"]]

        acknowledged = await client.put(f"/alerts/{alert['id']}/acknowledge")
        assert acknowledged.json()["status"] == "acknowledged"

        resolved = await client.put(f"/alerts/{alert['id']}/resolve", json={"notes": "Office hours"})
        assert resolved.json()["status"] == "resolved"
        assert resolved.json()["resolution_notes"] == "Office hours"

        reopened = await client.put(f"/alerts/{alert['id']}/acknowledge")
        assert reopened.status_code == 400

    async def test_teacher_notified(self, client, login_as, world):
        login_as(world["student"])
        await client.post("/alerts/help-request", json={"message": "Please help"})

        login_as(world["teacher"])
        unread = await client.get("/notifications/unread")
        assert unread.json()["unread_count"] == 1
        assert unread.json()["notifications"][0]["alert_type"] == "help_request"


class TestGamificationAPI:
    async def test_streak_and_progress(self, client, login_as, world):
        login_as(world["student"])
        streak = await client.post("/gamification/streak", json={})
        assert streak.status_code == 200
        assert streak.json()["current_streak"] == 1

        progress = await client.get("/gamification/progress")
        assert progress.json()["current_streak"] == 1
        assert progress.json()["level"] == 1

    async def test_leaderboard_privacy(self, client, login_as, session_factory, world):
        login_as(world["student"])
        response = await client.put("/gamification/privacy", json={"leaderboard_anonymous": True})
        assert response.status_code == 200
        assert response.json()["leaderboard_anonymous"] is True

        async with session_factory() as check:
            student = await check.get(User, world["student"].id)
            assert student.leaderboard_anonymous is True

    async def test_catalogue_hides_mystery_from_students(self, client, login_as, world):
        login_as(world["student"])
        response = await client.get("/gamification/catalogue")
        names = {entry["code"]: entry["name"] for entry in response.json()}
        assert names["speed_demon"] == "???"

    async def test_badges_of_other_student_forbidden(self, client, login_as, world):
        login_as(world["student"])
        response = await client.get(f"/gamification/students/{world['other_student'].id}/badges")
        assert response.status_code == 403

    async def test_teacher_triggers_badge_check(self, client, login_as, world):
        login_as(world["teacher"])
        response = await client.post(
            f"/gamification/students/{world['student'].id}/badges/check", json={"trigger": "submission"}
        )
        assert response.status_code == 200
        assert response.json() == {"new_badges": []}


class TestAnalyticsAPI:
    async def test_teacher_must_scope_to_course(self, client, login_as, world):
        login_as(world["teacher"])
        response = await client.get("/analytics/at-risk")
        assert response.status_code == 403

    async def test_at_risk_listing(self, client, login_as, world):
        login_as(world["teacher"])
        response = await client.get("/analytics/at-risk", params={"course_id": str(world["course"].id)})
        assert response.status_code == 200
        body = response.json()
        # Seeded logins are in the past relative to the wall clock
        assert body["total"] == 2
        assert all("Inactive 7+ days" in s["reasons"] for s in body["students"])
        assert body["thresholds"]["inactivity_days"] == 7
