"""
OBE Learning Platform
Analytics API routes: at-risk students and outcome distributions
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.connection import get_db
from ..database.models import Course, User, UserRole
from ..dependencies import require_staff
from ..engine.attainment import cohort_distribution
from ..engine.at_risk import identify_at_risk_students
from ..exceptions import AuthorizationException, ResourceNotFoundByIdException
from ...config import get_settings

# Configure logging
logger = logging.getLogger(__name__)

# Router instance
router = APIRouter()


# Pydantic models
class AtRiskStudent(BaseModel):
    student_id: str
    full_name: str
    email: str
    reasons: List[str]
    days_since_last_login: int
    last_login: Optional[str]
    low_clo_count: int
    low_clo_ids: List[str]
    flags: Dict[str, bool]


class AtRiskResponse(BaseModel):
    course_id: Optional[str]
    program_id: Optional[str]
    thresholds: Dict[str, Any]
    total: int
    students: List[AtRiskStudent]


@router.get("/at-risk", response_model=AtRiskResponse)
async def get_at_risk_students(
    course_id: Optional[uuid.UUID] = Query(None),
    program_id: Optional[uuid.UUID] = Query(None),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db)
):
    """Students meeting either at-risk condition, with the reasons and counts used"""
    if current_user.role == UserRole.TEACHER:
        if course_id is None:
            raise AuthorizationException("Teachers must scope at-risk queries to one of their courses")
        course = await db.get(Course, course_id)
        if course is None:
            raise ResourceNotFoundByIdException("course", course_id)
        if course.teacher_id != current_user.id:
            raise AuthorizationException("Access denied to this course")

    students = await identify_at_risk_students(db, course_id=course_id, program_id=program_id)

    settings = get_settings()
    return AtRiskResponse(
        course_id=str(course_id) if course_id else None,
        program_id=str(program_id) if program_id else None,
        thresholds={
            "inactivity_days": settings.AT_RISK_INACTIVITY_DAYS,
            "attainment_threshold": settings.AT_RISK_ATTAINMENT_THRESHOLD,
            "low_clo_count": settings.AT_RISK_LOW_CLO_COUNT,
        },
        total=len(students),
        students=students,
    )


@router.get("/outcomes/{outcome_id}/distribution")
async def get_outcome_distribution(
    outcome_id: uuid.UUID = Path(..., description="Outcome ID"),
    course_id: Optional[uuid.UUID] = Query(None),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db)
):
    """Cohort statistics and attainment-level counts for one outcome"""
    return await cohort_distribution(db, outcome_id, course_id)
