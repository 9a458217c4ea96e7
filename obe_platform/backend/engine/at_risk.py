"""
OBE Learning Platform
At-risk detection over inactivity and low CLO attainment
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Course, Enrollment, EnrollmentStatus, User, UserRole
from ..exceptions import ValidationException
from ..utils.helpers import utcnow
from ...config import get_settings
from .alerts import low_clo_summary

# Configure logging
logger = logging.getLogger(__name__)


def assess_risk(
    days_since_last_login: int,
    low_clo_count: int,
    inactivity_days: Optional[int] = None,
    attainment_threshold: Optional[float] = None,
    low_clo_limit: Optional[int] = None,
) -> List[str]:
    """Reasons a student is at risk; empty when neither condition holds"""
    settings = get_settings()
    inactivity_days = settings.AT_RISK_INACTIVITY_DAYS if inactivity_days is None else inactivity_days
    attainment_threshold = (
        settings.AT_RISK_ATTAINMENT_THRESHOLD if attainment_threshold is None else attainment_threshold
    )
    low_clo_limit = settings.AT_RISK_LOW_CLO_COUNT if low_clo_limit is None else low_clo_limit

    reasons = []
    if days_since_last_login >= inactivity_days:
        reasons.append(f"Inactive {inactivity_days}+ days")
    if low_clo_count >= low_clo_limit:
        reasons.append(f"Below {attainment_threshold:g}% on {low_clo_count} CLOs")
    return reasons


async def identify_at_risk_students(
    db: AsyncSession,
    course_id: Optional[uuid.UUID] = None,
    program_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Actively enrolled students meeting either at-risk condition, once each.

    Low CLOs are counted within the scoped courses only.
    """
    if course_id is None and program_id is None:
        raise ValidationException("course_id or program_id is required", field="scope")
    now = now or utcnow()

    if course_id is not None:
        course_ids = [course_id]
    else:
        result = await db.execute(select(Course.id).where(Course.program_id == program_id))
        course_ids = list(result.scalars())
    if not course_ids:
        return []

    students = await db.execute(
        select(User)
        .join(Enrollment, Enrollment.student_id == User.id)
        .where(
            Enrollment.course_id.in_(course_ids),
            Enrollment.status == EnrollmentStatus.ACTIVE,
            User.role == UserRole.STUDENT,
            User.is_active.is_(True),
        )
        .distinct()
    )

    at_risk = []
    for student in students.scalars():
        last_seen = student.last_login or student.created_at
        days = (now - last_seen).days
        low = await low_clo_summary(db, student.id, course_ids)

        reasons = assess_risk(days, len(low))
        if not reasons:
            continue

        at_risk.append({
            "student_id": str(student.id),
            "full_name": student.full_name,
            "email": student.email,
            "reasons": reasons,
            "days_since_last_login": days,
            "last_login": student.last_login.isoformat() if student.last_login else None,
            "low_clo_count": len(low),
            "low_clo_ids": [item["clo_id"] for item in low],
            "flags": {
                "inactive": days >= get_settings().AT_RISK_INACTIVITY_DAYS,
                "low_performance": len(low) >= get_settings().AT_RISK_LOW_CLO_COUNT,
            },
        })

    at_risk.sort(key=lambda s: (-len(s["reasons"]), -s["days_since_last_login"], s["full_name"]))
    logger.info(f"Identified {len(at_risk)} at-risk students across {len(course_ids)} courses")
    return at_risk


__all__ = ["assess_risk", "identify_at_risk_students"]
