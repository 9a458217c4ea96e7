"""
OBE Learning Platform
Gamification API routes: badges, XP, streaks and journals
"""

import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.connection import get_db
from ..database.models import AlertType, JournalEntry, User, UserRole
from ..dependencies import (
    ensure_student_access,
    get_dispatcher,
    require_admin,
    require_authentication,
    require_student
)
from ..engine.alerts import raise_alert
from ..engine.badges import BADGE_TRIGGERS, badge_catalogue, check_badges, query_badges
from ..engine.dispatch import NotificationDispatcher
from ..engine.gamification import (
    XP_SCHEDULE,
    award_xp,
    get_or_create_progress,
    level_progress,
    milestone_progress,
    process_streak
)
from ..exceptions import AuthorizationException, ResourceNotFoundByIdException, ValidationException

# Configure logging
logger = logging.getLogger(__name__)

# Router instance
router = APIRouter()

# Roles that may trigger a badge check for someone else
BADGE_CHECK_ROLES = {UserRole.TEACHER, UserRole.ADMIN}


# Pydantic models
class BadgeCheckRequest(BaseModel):
    trigger: str
    context: Dict[str, Any] = Field(default_factory=dict)


class BadgeCheckResponse(BaseModel):
    new_badges: List[str]


class XPAwardRequest(BaseModel):
    amount: int
    source: str = "admin_adjustment"
    reason: Optional[str] = None
    apply_bonus: bool = True


class StreakRequest(BaseModel):
    activity_date: Optional[date] = None


class JournalRequest(BaseModel):
    title: Optional[str] = None
    content: str = Field(..., min_length=1)


class PrivacyRequest(BaseModel):
    leaderboard_anonymous: bool


async def _get_student(db: AsyncSession, student_id: uuid.UUID) -> User:
    student = await db.get(User, student_id)
    if student is None or student.role != UserRole.STUDENT:
        raise ResourceNotFoundByIdException("student", student_id)
    return student


@router.get("/students/{student_id}/badges")
async def get_student_badges(
    student_id: uuid.UUID = Path(..., description="Student ID"),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Awarded badge codes and total XP"""
    await ensure_student_access(db, current_user, student_id)
    await _get_student(db, student_id)
    return await query_badges(db, student_id)


@router.post("/students/{student_id}/badges/check", response_model=BadgeCheckResponse)
async def trigger_badge_check(
    request: BadgeCheckRequest,
    student_id: uuid.UUID = Path(..., description="Student ID"),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Evaluate badge rules for one trigger kind"""
    if current_user.id != student_id and current_user.role not in BADGE_CHECK_ROLES:
        raise AuthorizationException("Badge checks may only be triggered by the student, a teacher or an admin")
    if request.trigger not in BADGE_TRIGGERS:
        raise ValidationException(f"Unknown badge trigger '{request.trigger}'", field="trigger", value=request.trigger)
    await _get_student(db, student_id)

    new_badges = await check_badges(db, student_id, request.trigger, request.context, dispatcher=dispatcher)
    await db.commit()
    return BadgeCheckResponse(new_badges=new_badges)


@router.post("/students/{student_id}/xp")
async def award_student_xp(
    request: XPAwardRequest,
    student_id: uuid.UUID = Path(..., description="Student ID"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Append an XP ledger entry for a student (admins only)"""
    await _get_student(db, student_id)

    result = await award_xp(
        db, student_id, request.amount, request.source,
        reference_id=str(current_user.id),
        note=request.reason,
        apply_bonus=request.apply_bonus,
    )
    new_badges = []
    if result["xp_awarded"]:
        new_badges = await check_badges(db, student_id, "xp_award", dispatcher=dispatcher)
    await db.commit()

    logger.info(f"{current_user.email} awarded {result['xp_awarded']} XP to student {student_id}")
    return {**result, "new_badges": new_badges}


@router.get("/progress")
async def get_progress_summary(
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db)
):
    """XP, level and streak summary for the current student"""
    progress = await get_or_create_progress(db, current_user.id)
    await db.commit()

    return {
        "student_id": str(current_user.id),
        "total_xp": progress.total_xp,
        "total_badges": progress.total_badges,
        "current_streak": progress.current_streak,
        "longest_streak": progress.longest_streak,
        "streak_freezes_available": progress.streak_freezes_available,
        "leaderboard_anonymous": current_user.leaderboard_anonymous,
        **level_progress(progress.total_xp),
        **milestone_progress(progress.current_streak),
    }


@router.post("/streak")
async def record_streak_activity(
    request: StreakRequest,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Count today's activity toward the current student's streak"""
    result = await process_streak(db, current_user.id, request.activity_date)

    if result["broken_streak"]:
        await raise_alert(
            db, current_user.id, AlertType.STREAK_BREAK,
            f"{current_user.full_name} lost a {result['broken_streak']}-day learning streak.",
            context={"lost_streak": result["broken_streak"]},
            dispatcher=dispatcher,
        )

    result["new_badges"] = await check_badges(db, current_user.id, "streak_update", dispatcher=dispatcher)
    await db.commit()
    return result


@router.post("/journal", status_code=201)
async def create_journal_entry(
    request: JournalRequest,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Write a reflection entry; earns journal XP"""
    entry = JournalEntry(student_id=current_user.id, title=request.title, content=request.content)
    db.add(entry)
    await db.flush()

    xp = await award_xp(db, current_user.id, XP_SCHEDULE["journal"], "journal", reference_id=str(entry.id))
    new_badges = await check_badges(db, current_user.id, "journal", dispatcher=dispatcher)
    await db.commit()

    return {"id": str(entry.id), "xp": xp, "new_badges": new_badges}


@router.put("/privacy")
async def update_leaderboard_privacy(
    request: PrivacyRequest,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db)
):
    """Anonymous students are left out of classmates' rare badge announcements"""
    student = await _get_student(db, current_user.id)
    student.leaderboard_anonymous = request.leaderboard_anonymous
    await db.commit()

    logger.info(f"Student {student.id} set leaderboard_anonymous={request.leaderboard_anonymous}")
    return {"student_id": str(student.id), "leaderboard_anonymous": student.leaderboard_anonymous}


@router.get("/catalogue")
async def get_badge_catalogue(
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Active badge templates; mystery conditions stay hidden from students"""
    return await badge_catalogue(db, reveal_mystery=current_user.role != UserRole.STUDENT)
