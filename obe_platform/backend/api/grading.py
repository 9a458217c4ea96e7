"""
OBE Learning Platform
Rubric grading API routes
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Path
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.connection import get_db
from ..database.models import Assignment, Course, Grade, StudentSubmission, User, UserRole
from ..dependencies import (
    ensure_student_access,
    get_dispatcher,
    require_authentication,
    require_student,
    require_teacher
)
from ..engine.dispatch import NotificationDispatcher
from ..engine.grading import (
    LevelSelection,
    amend_grade,
    attach_rubric,
    effective_grade,
    record_submission,
    run_post_grade_effects,
    run_post_submission_effects,
    submit_grade
)
from ..engine.rubric import RubricCriterionSpec
from ..exceptions import AuthorizationException, ResourceNotFoundByIdException

# Configure logging
logger = logging.getLogger(__name__)

# Router instance
router = APIRouter()


# Pydantic models
class RubricRequest(BaseModel):
    criteria: List[RubricCriterionSpec]


class GradeRequest(BaseModel):
    selections: List[LevelSelection]
    feedback: Optional[str] = None


class AmendRequest(BaseModel):
    selections: List[LevelSelection]
    reason: str = Field(..., min_length=1)


class SubmissionRequest(BaseModel):
    content: Optional[str] = None


class GradeResponse(BaseModel):
    grade_id: str
    submission_id: str
    selections: List[Dict[str, Any]]
    total_score: float
    max_score: float
    score_percent: int
    amendment_count: int = 0


class SubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    assignment_id: uuid.UUID
    student_id: uuid.UUID
    submitted_at: datetime
    is_late: bool
    deadline_status: str
    xp_awarded: int


async def _ensure_teaches(db: AsyncSession, user: User, course_id: uuid.UUID):
    if user.role == UserRole.ADMIN:
        return
    course = await db.get(Course, course_id)
    if course is None or course.teacher_id != user.id:
        raise AuthorizationException("Only the course teacher can grade this assignment")


async def _get_assignment(db: AsyncSession, assignment_id: uuid.UUID) -> Assignment:
    assignment = await db.get(Assignment, assignment_id)
    if assignment is None:
        raise ResourceNotFoundByIdException("assignment", assignment_id)
    return assignment


@router.put("/assignments/{assignment_id}/rubric")
async def set_assignment_rubric(
    request: RubricRequest,
    assignment_id: uuid.UUID = Path(..., description="Assignment ID"),
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db)
):
    """Attach or replace the rubric of an ungraded assignment"""
    assignment = await _get_assignment(db, assignment_id)
    await _ensure_teaches(db, current_user, assignment.course_id)

    rubric = await attach_rubric(db, assignment, request.criteria)
    await db.commit()

    return {"assignment_id": str(assignment_id), **rubric.to_snapshot()}


@router.post("/submissions/{submission_id}/grade", response_model=GradeResponse, status_code=201)
async def grade_submission(
    request: GradeRequest,
    background_tasks: BackgroundTasks,
    submission_id: uuid.UUID = Path(..., description="Submission ID"),
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Grade a submission against its rubric; a submission is graded once"""
    submission = await db.get(StudentSubmission, submission_id)
    if submission is None:
        raise ResourceNotFoundByIdException("submission", submission_id)
    assignment = await _get_assignment(db, submission.assignment_id)
    await _ensure_teaches(db, current_user, assignment.course_id)

    grade = await submit_grade(
        db, submission_id, request.selections,
        graded_by_id=current_user.id, feedback=request.feedback
    )

    # Badge, alert and notification follow-ups never hold up the response
    background_tasks.add_task(run_post_grade_effects, submission_id, dispatcher)

    return GradeResponse(
        grade_id=str(grade.id),
        submission_id=str(submission_id),
        selections=grade.selections,
        total_score=grade.total_score,
        max_score=grade.max_score,
        score_percent=grade.score_percent,
    )


@router.post("/grades/{grade_id}/amend", response_model=GradeResponse)
async def amend_submission_grade(
    request: AmendRequest,
    background_tasks: BackgroundTasks,
    grade_id: uuid.UUID = Path(..., description="Grade ID"),
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Record a correction; the original grade stays on file"""
    grade = await db.get(Grade, grade_id)
    if grade is None:
        raise ResourceNotFoundByIdException("grade", grade_id)
    submission = await db.get(StudentSubmission, grade.submission_id)
    assignment = await _get_assignment(db, submission.assignment_id)
    await _ensure_teaches(db, current_user, assignment.course_id)

    amendment = await amend_grade(
        db, grade_id, request.selections, request.reason, amended_by_id=current_user.id
    )

    background_tasks.add_task(run_post_grade_effects, grade.submission_id, dispatcher)

    logger.info(f"Grade {grade_id} amended by {current_user.email}")
    return GradeResponse(
        grade_id=str(grade_id),
        submission_id=str(grade.submission_id),
        selections=amendment.selections,
        total_score=amendment.total_score,
        max_score=amendment.max_score,
        score_percent=amendment.score_percent,
        amendment_count=amendment.sequence,
    )


@router.get("/submissions/{submission_id}/grade", response_model=GradeResponse)
async def get_submission_grade(
    submission_id: uuid.UUID = Path(..., description="Submission ID"),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Effective grade of a submission with its latest amendment applied"""
    submission = await db.get(StudentSubmission, submission_id)
    if submission is None:
        raise ResourceNotFoundByIdException("submission", submission_id)
    await ensure_student_access(db, current_user, submission.student_id)

    grade = await effective_grade(db, submission_id)
    return GradeResponse(
        grade_id=str(grade.grade_id),
        submission_id=str(grade.submission_id),
        selections=grade.selections,
        total_score=grade.total_score,
        max_score=grade.max_score,
        score_percent=grade.score_percent,
        amendment_count=grade.amendment_count,
    )


@router.post("/assignments/{assignment_id}/submissions", response_model=SubmissionResponse, status_code=201)
async def submit_assignment(
    request: SubmissionRequest,
    background_tasks: BackgroundTasks,
    assignment_id: uuid.UUID = Path(..., description="Assignment ID"),
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Submit work for an assignment inside its deadline or late window"""
    result = await record_submission(db, assignment_id, current_user.id, request.content)
    await db.commit()

    submission = result["submission"]
    background_tasks.add_task(run_post_submission_effects, current_user.id, submission.id, dispatcher)

    return SubmissionResponse(
        id=submission.id,
        assignment_id=submission.assignment_id,
        student_id=submission.student_id,
        submitted_at=submission.submitted_at,
        is_late=submission.is_late,
        deadline_status=result["deadline_status"],
        xp_awarded=result["xp"]["xp_awarded"],
    )
