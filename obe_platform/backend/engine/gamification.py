"""
OBE Learning Platform
XP ledger, levels and study streaks
"""

import logging
import math
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import BonusXPEvent, StudentProgress, XPTransaction
from ..exceptions import ValidationException
from ..utils.helpers import utc_date, utcnow

# Configure logging
logger = logging.getLogger(__name__)

XP_SCHEDULE = {
    "login": 10,
    "submission": 50,
    "grade": 25,
    "journal": 20,
    "streak_milestone": 100,
    "perfect_day": 50,
    "first_attempt_bonus": 25,
    "perfect_rubric": 75,
    "discussion_question": 10,
    "discussion_answer": 15,
    "survey_completion": 15,
    "quiz_completion": 50,
}
LATE_SUBMISSION_XP = 25

XP_SOURCES = frozenset(XP_SCHEDULE) | {"badge", "admin_adjustment", "bonus_event"}

MAX_LEVEL = 50


def _build_level_thresholds() -> List[int]:
    thresholds = [0, 100, 250]
    for level in range(4, MAX_LEVEL + 1):
        thresholds.append(math.floor(50 * level ** 1.5))
    return thresholds


# LEVEL_THRESHOLDS[n - 1] is the total XP needed for level n
LEVEL_THRESHOLDS = _build_level_thresholds()

STREAK_MILESTONES = {7: 100, 14: 100, 30: 250, 60: 250, 100: 500}


def level_for_xp(total_xp: int) -> int:
    level = 1
    for index, threshold in enumerate(LEVEL_THRESHOLDS):
        if total_xp >= threshold:
            level = index + 1
        else:
            break
    return level


def level_title(level: int) -> str:
    if level == 1:
        return "Newcomer"
    if level == 2:
        return "Beginner"
    if level == 3:
        return "Learner"
    if level <= 5:
        return "Apprentice"
    if level <= 10:
        return "Scholar"
    if level <= 15:
        return "Adept"
    if level <= 20:
        return "Expert"
    if level <= 30:
        return "Master"
    if level <= 40:
        return "Grandmaster"
    return "Legend"


def level_progress(total_xp: int) -> Dict[str, Any]:
    """Calculate level and progress from total XP"""
    level = level_for_xp(total_xp)
    current = LEVEL_THRESHOLDS[level - 1]
    if level >= MAX_LEVEL:
        return {
            "level": level,
            "title": level_title(level),
            "xp_to_next_level": 0,
            "level_progress_percentage": 100.0,
        }

    nxt = LEVEL_THRESHOLDS[level]
    return {
        "level": level,
        "title": level_title(level),
        "xp_to_next_level": nxt - total_xp,
        "level_progress_percentage": round((total_xp - current) / (nxt - current) * 100, 1),
    }


async def get_or_create_progress(db: AsyncSession, student_id: uuid.UUID) -> StudentProgress:
    result = await db.execute(select(StudentProgress).where(StudentProgress.student_id == student_id))
    progress = result.scalar_one_or_none()
    if progress is None:
        progress = StudentProgress(
            student_id=student_id,
            total_xp=0,
            level=1,
            current_streak=0,
            longest_streak=0,
            streak_freezes_available=0,
            total_badges=0,
        )
        db.add(progress)
        await db.flush()
    return progress


async def active_bonus_multiplier(db: AsyncSession, now: Optional[datetime] = None) -> float:
    """Highest multiplier among running bonus events, 1.0 if none"""
    now = now or utcnow()
    result = await db.execute(
        select(func.max(BonusXPEvent.multiplier)).where(
            BonusXPEvent.is_active.is_(True),
            BonusXPEvent.starts_at <= now,
            BonusXPEvent.ends_at >= now,
        )
    )
    multiplier = result.scalar()
    return max(1.0, float(multiplier)) if multiplier is not None else 1.0


async def award_xp(
    db: AsyncSession,
    student_id: uuid.UUID,
    amount: int,
    source: str,
    reference_id: Optional[str] = None,
    note: Optional[str] = None,
    apply_bonus: bool = True,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Append to the XP ledger and recompute the student's total and level.

    Zero-XP awards are still recorded but leave level untouched.
    """
    if source not in XP_SOURCES:
        raise ValidationException(f"Unknown XP source '{source}'", field="source", value=source)
    if amount < 0 and source != "admin_adjustment":
        raise ValidationException("Only admin adjustments may remove XP", field="amount", value=amount)

    progress = await get_or_create_progress(db, student_id)

    multiplier = 1.0
    if apply_bonus and amount > 0:
        multiplier = await active_bonus_multiplier(db, now)
    final_amount = math.floor(amount * multiplier)

    db.add(XPTransaction(
        student_id=student_id,
        amount=final_amount,
        source=source,
        reference_id=reference_id,
        note=note,
        multiplier=multiplier,
    ))
    await db.flush()

    if final_amount == 0:
        return {
            "xp_awarded": 0,
            "new_total": progress.total_xp,
            "level_up": False,
            "new_level": progress.level,
        }

    result = await db.execute(
        select(func.coalesce(func.sum(XPTransaction.amount), 0)).where(XPTransaction.student_id == student_id)
    )
    total = max(0, int(result.scalar()))
    old_level = progress.level
    progress.total_xp = total
    progress.level = level_for_xp(total)
    await db.flush()

    if progress.level > old_level:
        logger.info(f"Student {student_id} reached level {progress.level}")

    return {
        "xp_awarded": final_amount,
        "new_total": total,
        "level_up": progress.level > old_level,
        "new_level": progress.level,
    }


def next_streak(
    current_streak: int,
    last_activity: Optional[date],
    today: date,
    freezes_available: int,
) -> Dict[str, Any]:
    """Streak transition for an activity on `today` (UTC dates)"""
    if last_activity is None or current_streak <= 0:
        return {"streak": 1, "freezes": freezes_available, "outcome": "started"}

    gap = (today - last_activity).days
    if gap <= 0:
        return {"streak": current_streak, "freezes": freezes_available, "outcome": "unchanged"}
    if gap == 1:
        return {"streak": current_streak + 1, "freezes": freezes_available, "outcome": "continued"}
    if gap == 2 and freezes_available > 0:
        return {"streak": current_streak + 1, "freezes": freezes_available - 1, "outcome": "frozen"}
    return {"streak": 1, "freezes": freezes_available, "outcome": "reset"}


def milestone_progress(current_streak: int) -> Dict[str, Any]:
    upcoming = [m for m in sorted(STREAK_MILESTONES) if m > current_streak]
    if not upcoming:
        return {"next_milestone": None, "progress_percent": 100.0}
    target = upcoming[0]
    return {
        "next_milestone": target,
        "progress_percent": round(current_streak / target * 100, 1),
    }


async def process_streak(
    db: AsyncSession,
    student_id: uuid.UUID,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Apply one day of activity to the student's streak"""
    today = today or utc_date()
    progress = await get_or_create_progress(db, student_id)
    previous = progress.current_streak

    step = next_streak(previous, progress.last_activity_date, today, progress.streak_freezes_available)
    progress.current_streak = step["streak"]
    progress.streak_freezes_available = step["freezes"]
    progress.longest_streak = max(progress.longest_streak, progress.current_streak)
    if step["outcome"] != "unchanged":
        progress.last_activity_date = today
    await db.flush()

    milestone_xp = None
    if step["outcome"] in ("continued", "frozen") and progress.current_streak in STREAK_MILESTONES:
        milestone_xp = await award_xp(
            db,
            student_id,
            STREAK_MILESTONES[progress.current_streak],
            "streak_milestone",
            reference_id=f"streak_{progress.current_streak}",
            note=f"{progress.current_streak}-day streak",
        )

    return {
        "current_streak": progress.current_streak,
        "longest_streak": progress.longest_streak,
        "freezes_available": progress.streak_freezes_available,
        "outcome": step["outcome"],
        "broken_streak": previous if step["outcome"] == "reset" and previous >= 2 else None,
        "milestone_xp": milestone_xp,
        **milestone_progress(progress.current_streak),
    }


__all__ = [
    "XP_SCHEDULE",
    "XP_SOURCES",
    "LATE_SUBMISSION_XP",
    "LEVEL_THRESHOLDS",
    "STREAK_MILESTONES",
    "level_for_xp",
    "level_title",
    "level_progress",
    "get_or_create_progress",
    "active_bonus_multiplier",
    "award_xp",
    "next_streak",
    "milestone_progress",
    "process_streak",
]
