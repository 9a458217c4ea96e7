"""
OBE Learning Platform
Effective graded evidence: grades with their latest amendment applied
"""

import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import (
    Assignment, Grade, GradeAmendment, RubricCriterion, StudentSubmission
)


class EffectiveGrade:
    """A graded submission as it currently stands"""

    __slots__ = (
        "grade_id", "submission_id", "student_id", "assignment_id",
        "selections", "total_score", "max_score", "score_percent",
        "amendment_count", "submitted_at",
    )

    def __init__(self, grade: Grade, submission: StudentSubmission, amendment: Optional[GradeAmendment]):
        source = amendment or grade
        self.grade_id = grade.id
        self.submission_id = submission.id
        self.student_id = submission.student_id
        self.assignment_id = submission.assignment_id
        self.submitted_at = submission.submitted_at
        self.selections: List[Dict[str, Any]] = list(source.selections or [])
        self.total_score = source.total_score
        self.max_score = source.max_score
        self.score_percent = source.score_percent
        self.amendment_count = amendment.sequence if amendment else 0

    def points_by_criterion(self) -> Dict[str, float]:
        return {str(s["criterion_id"]): float(s["points"]) for s in self.selections}


async def load_effective_grades(
    db: AsyncSession,
    student_ids: Optional[Iterable[uuid.UUID]] = None,
    course_ids: Optional[Iterable[uuid.UUID]] = None,
    submission_ids: Optional[Iterable[uuid.UUID]] = None,
) -> List[EffectiveGrade]:
    """Load graded submissions, applying the latest amendment of each grade"""

    query = (
        select(Grade, StudentSubmission)
        .join(StudentSubmission, Grade.submission_id == StudentSubmission.id)
    )
    if student_ids is not None:
        query = query.where(StudentSubmission.student_id.in_(list(student_ids)))
    if submission_ids is not None:
        query = query.where(StudentSubmission.id.in_(list(submission_ids)))
    if course_ids is not None:
        query = query.join(Assignment, Assignment.id == StudentSubmission.assignment_id).where(
            Assignment.course_id.in_(list(course_ids))
        )

    rows = (await db.execute(query)).all()
    if not rows:
        return []

    grade_ids = [grade.id for grade, _ in rows]
    amendments_result = await db.execute(
        select(GradeAmendment)
        .where(GradeAmendment.grade_id.in_(grade_ids))
        .order_by(GradeAmendment.grade_id, GradeAmendment.sequence)
    )
    latest: Dict[uuid.UUID, GradeAmendment] = {}
    for amendment in amendments_result.scalars():
        latest[amendment.grade_id] = amendment

    return [EffectiveGrade(grade, submission, latest.get(grade.id)) for grade, submission in rows]


async def load_criteria_by_assignment(
    db: AsyncSession,
    assignment_ids: Iterable[uuid.UUID],
) -> Dict[uuid.UUID, List[RubricCriterion]]:
    assignment_ids = list(set(assignment_ids))
    if not assignment_ids:
        return {}

    result = await db.execute(
        select(RubricCriterion)
        .where(RubricCriterion.assignment_id.in_(assignment_ids))
        .order_by(RubricCriterion.order_index)
    )
    grouped: Dict[uuid.UUID, List[RubricCriterion]] = defaultdict(list)
    for criterion in result.scalars():
        grouped[criterion.assignment_id].append(criterion)
    return grouped


__all__ = ["EffectiveGrade", "load_effective_grades", "load_criteria_by_assignment"]
