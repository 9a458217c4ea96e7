"""
Shared test fixtures for the OBE platform.
Every test gets its own in-memory SQLite database with a small seeded
programme: one coordinator, one teacher, one course, two CLOs mapped to a
PLO mapped to an ILO, and an assignment with a two-criterion rubric.
"""
import os

os.environ["ENVIRONMENT"] = "testing"

from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from obe_platform.config import get_settings

get_settings.cache_clear()

from obe_platform.backend.app import create_app
from obe_platform.backend.database import connection
from obe_platform.backend.database.models import (
    Assignment, Course, Enrollment, LearningOutcome, OutcomeMapping, OutcomeType,
    Program, User, UserRole
)
from obe_platform.backend.dependencies import get_current_user
from obe_platform.backend.engine.badges import seed_badge_catalogue
from obe_platform.backend.engine.dispatch import NotificationDispatcher
from obe_platform.backend.engine.grading import attach_rubric
from obe_platform.backend.engine.rubric import RubricCriterionSpec, RubricLevel

# Fixed clock used by time-sensitive tests
NOW = datetime(2026, 3, 10, 12, 0, 0)


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every pushed message in memory instead of delivering it"""

    def __init__(self):
        self.sent = []
        self.broadcasts = []

    async def send_to_user(self, user_id, message):
        self.sent.append((user_id, message))
        return True

    async def broadcast(self, message):
        self.broadcasts.append(message)

    def messages_for(self, user_id):
        return [message for uid, message in self.sent if uid == str(user_id)]


@pytest.fixture
async def engine():
    engine = connection.create_async_engine_instance("sqlite+aiosqlite://")
    await connection.create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(engine, monkeypatch):
    """Session factory, also installed as the app-wide one"""
    factory = connection.create_session_factory(engine)
    monkeypatch.setattr(connection, "AsyncSessionLocal", factory)
    return factory


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def rubric_specs(clo_a_id, clo_b_id):
    """Two criteria: 10 points on CLO A, 20 points on CLO B"""
    return [
        RubricCriterionSpec(
            description="Problem analysis",
            max_points=10,
            outcome_id=str(clo_a_id),
            levels=[
                RubricLevel(label="Beginning", points=3),
                RubricLevel(label="Developing", points=7),
                RubricLevel(label="Proficient", points=10),
            ],
        ),
        RubricCriterionSpec(
            description="Implementation",
            max_points=20,
            outcome_id=str(clo_b_id),
            levels=[
                RubricLevel(label="Beginning", points=5),
                RubricLevel(label="Developing", points=15),
                RubricLevel(label="Proficient", points=20),
            ],
        ),
    ]


@pytest.fixture
async def world(db):
    """Seeded programme; committed so other sessions can see it"""
    admin = User(email="admin@example.edu", full_name="Ada Admin", role=UserRole.ADMIN, last_login=NOW)
    coordinator = User(email="coord@example.edu", full_name="Cora Coordinator",
                       role=UserRole.COORDINATOR, last_login=NOW)
    teacher = User(email="teacher@example.edu", full_name="Theo Teacher", role=UserRole.TEACHER, last_login=NOW)
    student = User(email="sam@example.edu", full_name="Sam Student", role=UserRole.STUDENT, last_login=NOW)
    other_student = User(email="olive@example.edu", full_name="Olive Other",
                         role=UserRole.STUDENT, last_login=NOW)
    db.add_all([admin, coordinator, teacher, student, other_student])
    await db.flush()

    program = Program(name="Computer Science", code="BSCS", coordinator_id=coordinator.id)
    db.add(program)
    await db.flush()

    course = Course(program_id=program.id, teacher_id=teacher.id, code="CS101", name="Programming I")
    db.add(course)
    await db.flush()

    db.add_all([
        Enrollment(student_id=student.id, course_id=course.id),
        Enrollment(student_id=other_student.id, course_id=course.id),
    ])

    ilo = LearningOutcome(code="ILO1", title="Critical thinking", outcome_type=OutcomeType.ILO)
    plo = LearningOutcome(code="PLO1", title="Solve computing problems", outcome_type=OutcomeType.PLO,
                          program_id=program.id)
    clo_a = LearningOutcome(code="CLO1", title="Analyse problems", outcome_type=OutcomeType.CLO,
                            course_id=course.id)
    clo_b = LearningOutcome(code="CLO2", title="Implement solutions", outcome_type=OutcomeType.CLO,
                            course_id=course.id)
    db.add_all([ilo, plo, clo_a, clo_b])
    await db.flush()

    db.add_all([
        OutcomeMapping(source_outcome_id=clo_a.id, target_outcome_id=plo.id, weight=0.6),
        OutcomeMapping(source_outcome_id=clo_b.id, target_outcome_id=plo.id, weight=0.4),
        OutcomeMapping(source_outcome_id=plo.id, target_outcome_id=ilo.id, weight=1.0),
    ])

    assignment = Assignment(
        course_id=course.id,
        teacher_id=teacher.id,
        title="Lab 1",
        due_date=NOW + timedelta(days=3),
        published_at=NOW - timedelta(days=1),
        late_window_hours=24,
    )
    db.add(assignment)
    await db.flush()

    await attach_rubric(db, assignment, rubric_specs(clo_a.id, clo_b.id))
    await seed_badge_catalogue(db)
    await db.commit()

    return {
        "admin": admin,
        "coordinator": coordinator,
        "teacher": teacher,
        "student": student,
        "other_student": other_student,
        "program": program,
        "course": course,
        "ilo": ilo,
        "plo": plo,
        "clo_a": clo_a,
        "clo_b": clo_b,
        "assignment": assignment,
    }


@pytest.fixture
def criteria_ids(world):
    """Criterion ids of the seeded rubric, in rubric order"""
    snapshot = world["assignment"].rubric_data
    return [criterion["id"] for criterion in snapshot["criteria"]]


@pytest.fixture
def app(session_factory, dispatcher):
    return create_app(dispatcher=dispatcher)


@pytest.fixture
def login_as(app):
    """Authenticate API calls as the given user"""

    def _login(user):
        app.dependency_overrides[get_current_user] = lambda: user
        return user

    yield _login
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
