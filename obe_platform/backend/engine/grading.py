"""
OBE Learning Platform
Grading engine: rubric scoring, immutable grades, amendments and submissions
"""

import logging
import math
import uuid
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.connection import get_async_session
from ..database.models import (
    Assignment, BloomsLevel, Grade, GradeAmendment, LearningOutcome, NotificationType,
    OutcomeType, RubricCriterion, StudentSubmission
)
from ..exceptions import (
    ConcurrentAmendmentException, DuplicateSubmissionException, GradeAlreadyExistsException,
    IncompleteGradingException, InvalidRubricException, ResourceNotFoundByIdException,
    SubmissionClosedException, ValidationException
)
from ..utils.helpers import utcnow
from .alerts import resolve_missed_deadline
from .attainment import recompute_for_assignment
from .badges import check_badges
from .dispatch import NotificationDispatcher, create_notification
from .evidence import EffectiveGrade, load_effective_grades
from .gamification import LATE_SUBMISSION_XP, XP_SCHEDULE, award_xp
from .rubric import Rubric, RubricCriterionSpec

# Configure logging
logger = logging.getLogger(__name__)

DEADLINE_OPEN = "open"
DEADLINE_LATE_WINDOW = "late_window"
DEADLINE_CLOSED = "closed"


class LevelSelection(BaseModel):
    criterion_id: str
    level_index: int = Field(ge=0)


def score_selections(rubric: Rubric, selections: Iterable[LevelSelection]) -> Dict[str, Any]:
    """Score one level per criterion against a rubric.

    Every criterion must be selected exactly once; missing criteria are
    reported by description.
    """
    chosen: Dict[str, int] = {}
    for selection in selections:
        if not rubric.has_criterion(selection.criterion_id):
            raise ValidationException(
                f"Criterion '{selection.criterion_id}' is not part of this rubric",
                field="criterion_id", value=selection.criterion_id
            )
        if selection.criterion_id in chosen:
            raise ValidationException(
                f"Criterion '{selection.criterion_id}' selected more than once",
                field="criterion_id", value=selection.criterion_id
            )
        if selection.level_index >= rubric.level_count:
            raise ValidationException(
                f"Level {selection.level_index} does not exist; rubric has {rubric.level_count} levels",
                field="level_index", value=selection.level_index
            )
        chosen[selection.criterion_id] = selection.level_index

    missing = [c.description for c in rubric.criteria if c.id not in chosen]
    if missing:
        raise IncompleteGradingException(missing)

    scored = []
    total = 0.0
    for criterion in rubric.criteria:
        level = criterion.levels[chosen[criterion.id]]
        total += level.points
        scored.append({
            "criterion_id": criterion.id,
            "level_index": chosen[criterion.id],
            "points": level.points,
        })

    max_score = rubric.max_score
    percent = math.floor(total / max_score * 100 + 0.5) if max_score > 0 else 0
    return {
        "selections": scored,
        "total_score": total,
        "max_score": max_score,
        "score_percent": percent,
    }


async def load_rubric(db: AsyncSession, assignment_id: uuid.UUID) -> Rubric:
    result = await db.execute(
        select(RubricCriterion)
        .where(RubricCriterion.assignment_id == assignment_id)
        .order_by(RubricCriterion.order_index)
    )
    rows = result.scalars().all()
    if not rows:
        raise InvalidRubricException("assignment has no rubric", details={"assignment_id": str(assignment_id)})
    return Rubric.from_rows(rows)


async def attach_rubric(
    db: AsyncSession,
    assignment: Assignment,
    specs: List[RubricCriterionSpec],
) -> Rubric:
    """Replace an ungraded assignment's rubric; every criterion maps to a CLO of its course"""
    Rubric(specs)

    graded = await db.execute(
        select(func.count(Grade.id))
        .join(StudentSubmission, StudentSubmission.id == Grade.submission_id)
        .where(StudentSubmission.assignment_id == assignment.id)
    )
    if graded.scalar():
        raise InvalidRubricException("rubric cannot change once submissions are graded")

    outcome_ids = set()
    for spec in specs:
        if spec.outcome_id is None:
            raise InvalidRubricException(f"criterion '{spec.description}' must map to a CLO")
        try:
            outcome_ids.add(uuid.UUID(spec.outcome_id))
        except ValueError:
            raise InvalidRubricException(f"criterion '{spec.description}' has an invalid outcome id")

    clos = await db.execute(
        select(LearningOutcome.id).where(
            LearningOutcome.id.in_(outcome_ids),
            LearningOutcome.outcome_type == OutcomeType.CLO,
            LearningOutcome.course_id == assignment.course_id,
            LearningOutcome.is_active.is_(True),
        )
    )
    unknown = outcome_ids - set(clos.scalars())
    if unknown:
        raise InvalidRubricException(
            "criteria must map to active CLOs of the assignment's course",
            details={"outcome_ids": sorted(str(o) for o in unknown)}
        )

    await db.execute(delete(RubricCriterion).where(RubricCriterion.assignment_id == assignment.id))

    rows = []
    for index, spec in enumerate(specs):
        row = RubricCriterion(
            assignment_id=assignment.id,
            outcome_id=uuid.UUID(spec.outcome_id),
            description=spec.description,
            max_points=spec.resolved_max_points,
            weight=spec.weight,
            blooms_level=BloomsLevel(spec.blooms_level) if spec.blooms_level else None,
            order_index=index,
            levels=[level.model_dump() for level in spec.levels],
        )
        db.add(row)
        rows.append(row)
    await db.flush()

    rubric = Rubric.from_rows(rows)
    assignment.total_points = rubric.max_score
    assignment.rubric_data = rubric.to_snapshot()
    await db.flush()
    return rubric


async def _get_submission(db: AsyncSession, submission_id: uuid.UUID) -> StudentSubmission:
    submission = await db.get(StudentSubmission, submission_id)
    if submission is None:
        raise ResourceNotFoundByIdException("submission", submission_id)
    return submission


async def submit_grade(
    db: AsyncSession,
    submission_id: uuid.UUID,
    selections: List[LevelSelection],
    graded_by_id: Optional[uuid.UUID] = None,
    feedback: Optional[str] = None,
) -> Grade:
    """Create the one grade a submission may have and recompute attainment.

    A second grade for the same submission is rejected and the first is left
    untouched. Commits on success.
    """
    submission = await _get_submission(db, submission_id)

    existing = await db.execute(select(Grade.id).where(Grade.submission_id == submission_id))
    if existing.scalar_one_or_none() is not None:
        raise GradeAlreadyExistsException(str(submission_id))

    rubric = await load_rubric(db, submission.assignment_id)
    scored = score_selections(rubric, selections)

    grade = Grade(
        submission_id=submission_id,
        graded_by_id=graded_by_id,
        feedback=feedback,
        **scored,
    )
    db.add(grade)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise GradeAlreadyExistsException(str(submission_id))

    now = utcnow()
    submission.total_score = scored["total_score"]
    submission.feedback = feedback
    submission.graded_at = now
    submission.graded_by_id = graded_by_id

    await recompute_for_assignment(db, submission.student_id, submission.assignment_id)
    await db.commit()

    logger.info(f"Graded submission {submission_id}: {scored['total_score']}/{scored['max_score']}")
    return grade


async def amend_grade(
    db: AsyncSession,
    grade_id: uuid.UUID,
    selections: List[LevelSelection],
    reason: str,
    amended_by_id: Optional[uuid.UUID] = None,
) -> GradeAmendment:
    """Append a correction to a grade; the newest amendment becomes effective"""
    if not reason or not reason.strip():
        raise ValidationException("An amendment needs a reason", field="reason")

    grade = await db.get(Grade, grade_id)
    if grade is None:
        raise ResourceNotFoundByIdException("grade", grade_id)
    submission = await _get_submission(db, grade.submission_id)

    rubric = await load_rubric(db, submission.assignment_id)
    scored = score_selections(rubric, selections)

    count = await db.execute(select(func.count(GradeAmendment.id)).where(GradeAmendment.grade_id == grade_id))
    sequence = count.scalar() + 1
    amendment = GradeAmendment(
        grade_id=grade_id,
        sequence=sequence,
        amended_by_id=amended_by_id,
        reason=reason.strip(),
        **scored,
    )
    db.add(amendment)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise ConcurrentAmendmentException(grade_id, sequence)

    submission.total_score = scored["total_score"]
    await recompute_for_assignment(db, submission.student_id, submission.assignment_id)
    await db.commit()

    logger.info(f"Grade {grade_id} amended (#{amendment.sequence})")
    return amendment


async def effective_grade(db: AsyncSession, submission_id: uuid.UUID) -> EffectiveGrade:
    await _get_submission(db, submission_id)
    grades = await load_effective_grades(db, submission_ids=[submission_id])
    if not grades:
        raise ResourceNotFoundByIdException("grade", submission_id)
    return grades[0]


def deadline_status(due_date: datetime, late_window_hours: int, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    if now <= due_date:
        return DEADLINE_OPEN
    if now <= due_date + timedelta(hours=late_window_hours):
        return DEADLINE_LATE_WINDOW
    return DEADLINE_CLOSED


async def record_submission(
    db: AsyncSession,
    assignment_id: uuid.UUID,
    student_id: uuid.UUID,
    content: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Accept a submission inside the deadline or late window and award XP"""
    now = now or utcnow()
    assignment = await db.get(Assignment, assignment_id)
    if assignment is None:
        raise ResourceNotFoundByIdException("assignment", assignment_id)

    status = deadline_status(assignment.due_date, assignment.late_window_hours, now)
    if status == DEADLINE_CLOSED:
        raise SubmissionClosedException(str(assignment_id))

    existing = await db.execute(
        select(StudentSubmission.id).where(
            StudentSubmission.assignment_id == assignment_id,
            StudentSubmission.student_id == student_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise DuplicateSubmissionException(str(assignment_id))

    is_late = status == DEADLINE_LATE_WINDOW
    submission = StudentSubmission(
        assignment_id=assignment_id,
        student_id=student_id,
        content=content,
        submitted_at=now,
        is_late=is_late,
    )
    db.add(submission)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise DuplicateSubmissionException(str(assignment_id))

    xp = await award_xp(
        db, student_id,
        LATE_SUBMISSION_XP if is_late else XP_SCHEDULE["submission"],
        "submission",
        reference_id=str(submission.id),
        note="Late submission" if is_late else None,
        now=now,
    )
    return {"submission": submission, "deadline_status": status, "xp": xp}


SessionFactory = Callable[[], AbstractAsyncContextManager]


async def run_post_grade_effects(
    submission_id: uuid.UUID,
    dispatcher: Optional[NotificationDispatcher] = None,
    session_factory: SessionFactory = get_async_session,
) -> Dict[str, Any]:
    """Badge check, deadline alert cleanup and the grade notification.

    Runs after the grade is committed, each step in its own transaction;
    failures are logged and never reach the grading request.
    """
    report: Dict[str, Any] = {"new_badges": [], "resolved_alerts": 0, "notified": False}

    async with session_factory() as db:
        submission = await db.get(StudentSubmission, submission_id)
        if submission is None:
            logger.error(f"Post-grade effects skipped: submission {submission_id} not found")
            return report
        student_id = submission.student_id
        assignment_id = submission.assignment_id
        assignment = await db.get(Assignment, assignment_id)
        title = assignment.title if assignment else "an assignment"

    try:
        async with session_factory() as db:
            report["new_badges"] = await check_badges(
                db, student_id, "grade", {"submission_id": str(submission_id)}, dispatcher=dispatcher
            )
            await db.commit()
    except Exception:
        logger.exception(f"Badge check after grading {submission_id} failed")

    try:
        async with session_factory() as db:
            resolved = await resolve_missed_deadline(db, student_id, assignment_id)
            report["resolved_alerts"] = len(resolved)
            await db.commit()
    except Exception:
        logger.exception(f"Missed-deadline cleanup after grading {submission_id} failed")

    try:
        async with session_factory() as db:
            await create_notification(
                db, student_id, NotificationType.GRADE_RELEASED,
                "Grade released",
                f"Your submission for {title} has been graded.",
                payload={"submission_id": str(submission_id), "assignment_id": str(assignment_id)},
                dispatcher=dispatcher,
            )
            await db.commit()
            report["notified"] = True
    except Exception:
        logger.exception(f"Grade notification for {submission_id} failed")

    return report


async def run_post_submission_effects(
    student_id: uuid.UUID,
    submission_id: uuid.UUID,
    dispatcher: Optional[NotificationDispatcher] = None,
    session_factory: SessionFactory = get_async_session,
) -> List[str]:
    try:
        async with session_factory() as db:
            new_badges = await check_badges(
                db, student_id, "submission", {"submission_id": str(submission_id)}, dispatcher=dispatcher
            )
            await db.commit()
            return new_badges
    except Exception:
        logger.exception(f"Badge check after submission {submission_id} failed")
        return []


__all__ = [
    "LevelSelection",
    "score_selections",
    "load_rubric",
    "attach_rubric",
    "submit_grade",
    "amend_grade",
    "effective_grade",
    "deadline_status",
    "record_submission",
    "run_post_grade_effects",
    "run_post_submission_effects",
    "DEADLINE_OPEN",
    "DEADLINE_LATE_WINDOW",
    "DEADLINE_CLOSED",
]
