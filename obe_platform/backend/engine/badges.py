"""
OBE Learning Platform
Badge threshold engine: catalogue, rule evaluators and idempotent awards
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import (
    AlertType, Assignment, BadgeCategory, BadgeTemplate, Enrollment, EnrollmentStatus,
    JournalEntry, LearningOutcome, NotificationType, OutcomeType, StudentBadge,
    StudentPerformance, StudentSubmission, User
)
from ..exceptions import ValidationException
from ...config import get_settings
from .alerts import raise_alert
from .dispatch import NotificationDispatcher, create_notification
from .evidence import load_effective_grades
from .gamification import award_xp, get_or_create_progress

# Configure logging
logger = logging.getLogger(__name__)

BADGE_TRIGGERS = frozenset({"xp_award", "submission", "streak_update", "grade", "journal"})

CATEGORY_TRIGGERS: Dict[BadgeCategory, frozenset] = {
    BadgeCategory.STREAK: frozenset({"streak_update", "xp_award"}),
    BadgeCategory.ACADEMIC: frozenset({"submission", "grade"}),
    BadgeCategory.ENGAGEMENT: frozenset({"journal", "xp_award"}),
    BadgeCategory.MYSTERY: BADGE_TRIGGERS,
}

# Awards announced to classmates
RARE_BADGES = frozenset({
    "streak_30", "streak_60", "streak_100", "speed_demon", "night_owl", "perfectionist",
})


def _streak_badge(days: int, name: str, icon: str, xp: int) -> Dict[str, Any]:
    return {
        "code": f"streak_{days}",
        "name": name,
        "description": f"Maintain a {days}-day learning streak",
        "category": BadgeCategory.STREAK,
        "icon": icon,
        "is_mystery": False,
        "requirements": {"type": "streak", "count": days},
        "xp_reward": xp,
    }


BADGE_CATALOGUE: List[Dict[str, Any]] = [
    _streak_badge(7, "7-Day Warrior", "🔥", 50),
    _streak_badge(14, "Fortnight Fighter", "⚡", 75),
    _streak_badge(30, "30-Day Legend", "🏆", 100),
    _streak_badge(60, "Dedication King", "👑", 150),
    _streak_badge(100, "Century Legend", "💎", 250),
    {
        "code": "first_submission",
        "name": "First Steps",
        "description": "Submit your first assignment",
        "category": BadgeCategory.ACADEMIC,
        "icon": "🎯",
        "is_mystery": False,
        "requirements": {"type": "submissions", "count": 1},
        "xp_reward": 25,
    },
    {
        "code": "perfect_score",
        "name": "Flawless",
        "description": "Earn a perfect score on an assignment",
        "category": BadgeCategory.ACADEMIC,
        "icon": "⭐",
        "is_mystery": False,
        "requirements": {"type": "perfect_scores", "count": 1},
        "xp_reward": 75,
    },
    {
        "code": "all_clos_met",
        "name": "Outcome Achiever",
        "description": "Meet every learning outcome of a course",
        "category": BadgeCategory.ACADEMIC,
        "icon": "🎓",
        "is_mystery": False,
        "requirements": {"type": "all_clos_met"},
        "xp_reward": 100,
    },
    {
        "code": "journal_10",
        "name": "Reflective Mind",
        "description": "Write 10 journal entries",
        "category": BadgeCategory.ENGAGEMENT,
        "icon": "📓",
        "is_mystery": False,
        "requirements": {"type": "journal_entries", "count": 10},
        "xp_reward": 50,
    },
    {
        "code": "speed_demon",
        "name": "Speed Demon",
        "description": "Submit within an hour of an assignment being published",
        "category": BadgeCategory.MYSTERY,
        "icon": "🚀",
        "is_mystery": True,
        "requirements": {"type": "speed_submission", "within_hours": 1},
        "xp_reward": 75,
    },
    {
        "code": "night_owl",
        "name": "Night Owl",
        "description": "Submit three assignments between midnight and 5am",
        "category": BadgeCategory.MYSTERY,
        "icon": "🦉",
        "is_mystery": True,
        "requirements": {"type": "night_submissions", "count": 3},
        "xp_reward": 75,
    },
    {
        "code": "perfectionist",
        "name": "Perfectionist",
        "description": "Earn perfect scores on five different assignments",
        "category": BadgeCategory.MYSTERY,
        "icon": "💯",
        "is_mystery": True,
        "requirements": {"type": "perfect_scores", "count": 5},
        "xp_reward": 100,
    },
]


async def seed_badge_catalogue(db: AsyncSession) -> int:
    """Insert catalogue templates whose code is missing; returns the number created"""
    existing = set((await db.execute(select(BadgeTemplate.code))).scalars())
    created = 0
    for entry in BADGE_CATALOGUE:
        if entry["code"] in existing:
            continue
        db.add(BadgeTemplate(**entry))
        created += 1
    await db.flush()
    return created


# Requirement evaluators
async def _streak_met(db, student_id, requirements, context) -> bool:
    progress = await get_or_create_progress(db, student_id)
    return progress.current_streak >= requirements["count"]


async def _submissions_met(db, student_id, requirements, context) -> bool:
    result = await db.execute(
        select(func.count(StudentSubmission.id)).where(StudentSubmission.student_id == student_id)
    )
    return result.scalar() >= requirements.get("count", 1)


async def _perfect_scores_met(db, student_id, requirements, context) -> bool:
    grades = await load_effective_grades(db, student_ids=[student_id])
    perfect = {g.assignment_id for g in grades if g.score_percent == 100}
    return len(perfect) >= requirements.get("count", 1)


async def _all_clos_met(db, student_id, requirements, context) -> bool:
    """Every active CLO of at least one active enrolment is at or above the met threshold"""
    threshold = get_settings().CLO_MET_THRESHOLD
    courses = await db.execute(
        select(Enrollment.course_id).where(
            Enrollment.student_id == student_id,
            Enrollment.status == EnrollmentStatus.ACTIVE,
        )
    )
    for course_id in courses.scalars():
        clo_ids = list((await db.execute(
            select(LearningOutcome.id).where(
                LearningOutcome.course_id == course_id,
                LearningOutcome.outcome_type == OutcomeType.CLO,
                LearningOutcome.is_active.is_(True),
            )
        )).scalars())
        if not clo_ids:
            continue

        scores = dict((await db.execute(
            select(StudentPerformance.outcome_id, StudentPerformance.average_score).where(
                StudentPerformance.student_id == student_id,
                StudentPerformance.outcome_id.in_(clo_ids),
            )
        )).all())
        if all(scores.get(cid) is not None and scores[cid] >= threshold for cid in clo_ids):
            return True
    return False


async def _journal_entries_met(db, student_id, requirements, context) -> bool:
    result = await db.execute(
        select(func.count(JournalEntry.id)).where(JournalEntry.student_id == student_id)
    )
    return result.scalar() >= requirements.get("count", 1)


async def _speed_submission_met(db, student_id, requirements, context) -> bool:
    window = timedelta(hours=requirements.get("within_hours", 1))
    result = await db.execute(
        select(StudentSubmission.submitted_at, Assignment.published_at)
        .join(Assignment, Assignment.id == StudentSubmission.assignment_id)
        .where(StudentSubmission.student_id == student_id, Assignment.published_at.is_not(None))
    )
    return any(
        timedelta(0) <= submitted_at - published_at <= window
        for submitted_at, published_at in result.all()
    )


async def _night_submissions_met(db, student_id, requirements, context) -> bool:
    result = await db.execute(
        select(StudentSubmission.submitted_at).where(StudentSubmission.student_id == student_id)
    )
    night = [ts for ts in result.scalars() if 0 <= ts.hour < 5]
    return len(night) >= requirements.get("count", 3)


RequirementEvaluator = Callable[[AsyncSession, uuid.UUID, Dict[str, Any], Dict[str, Any]], Awaitable[bool]]

EVALUATORS: Dict[str, RequirementEvaluator] = {
    "streak": _streak_met,
    "submissions": _submissions_met,
    "perfect_scores": _perfect_scores_met,
    "all_clos_met": _all_clos_met,
    "journal_entries": _journal_entries_met,
    "speed_submission": _speed_submission_met,
    "night_submissions": _night_submissions_met,
}


async def _grant_badge(
    db: AsyncSession,
    student_id: uuid.UUID,
    template: BadgeTemplate,
    trigger: str,
) -> bool:
    """Insert the award; a concurrent duplicate collapses to a no-op"""
    try:
        async with db.begin_nested():
            db.add(StudentBadge(student_id=student_id, badge_template_id=template.id, trigger=trigger))
    except IntegrityError:
        logger.info(f"Badge {template.code} already awarded to student {student_id}")
        return False
    return True


async def notify_peers_of_rare_badges(
    db: AsyncSession,
    student_id: uuid.UUID,
    templates: List[BadgeTemplate],
    dispatcher: Optional[NotificationDispatcher] = None,
) -> int:
    """Tell classmates sharing an active course about rare awards.

    Students who stay anonymous on the leaderboard are not announced.
    Returns the number of notifications created.
    """
    student = await db.get(User, student_id)
    if student is None or student.leaderboard_anonymous:
        return 0

    courses = select(Enrollment.course_id).where(
        Enrollment.student_id == student_id,
        Enrollment.status == EnrollmentStatus.ACTIVE,
    )
    peers = (await db.execute(
        select(Enrollment.student_id).distinct().where(
            Enrollment.course_id.in_(courses),
            Enrollment.status == EnrollmentStatus.ACTIVE,
            Enrollment.student_id != student_id,
        )
    )).scalars().all()

    created = 0
    for template in templates:
        for peer_id in sorted(peers, key=str):
            await create_notification(
                db, peer_id, NotificationType.PEER_MILESTONE,
                "Badge Achievement",
                f"{student.full_name} just earned the {template.name} badge!",
                payload={
                    "milestone_type": "rare_badge",
                    "triggering_student_id": str(student_id),
                    "badge_code": template.code,
                },
                dispatcher=dispatcher,
            )
            created += 1

    if created:
        logger.info(f"Announced {len(templates)} rare badge(s) of student {student_id} to {len(peers)} peers")
    return created


async def check_badges(
    db: AsyncSession,
    student_id: uuid.UUID,
    trigger: str,
    context: Optional[Dict[str, Any]] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> List[str]:
    """Evaluate badge rules routed to this trigger and award the newly met ones.

    Returns the codes of badges awarded by this call.
    """
    if trigger not in BADGE_TRIGGERS:
        raise ValidationException(f"Unknown badge trigger '{trigger}'", field="trigger", value=trigger)
    context = context or {}

    awarded_ids = set((await db.execute(
        select(StudentBadge.badge_template_id).where(StudentBadge.student_id == student_id)
    )).scalars())
    templates = (await db.execute(
        select(BadgeTemplate).where(BadgeTemplate.is_active.is_(True)).order_by(BadgeTemplate.code)
    )).scalars().all()

    new_badges: List[str] = []
    rare: List[BadgeTemplate] = []
    for template in templates:
        if template.id in awarded_ids or trigger not in CATEGORY_TRIGGERS[template.category]:
            continue

        evaluator = EVALUATORS.get(template.requirements.get("type"))
        if evaluator is None:
            logger.warning(f"Badge {template.code} has unknown requirement type")
            continue
        if not await evaluator(db, student_id, template.requirements, context):
            continue
        if not await _grant_badge(db, student_id, template, trigger):
            continue

        progress = await get_or_create_progress(db, student_id)
        progress.total_badges += 1
        if template.xp_reward:
            await award_xp(db, student_id, template.xp_reward, "badge",
                           reference_id=template.code, note=template.name)

        await raise_alert(
            db, student_id, AlertType.ACHIEVEMENT,
            f"Earned the '{template.name}' badge.",
            context={"badge_code": template.code, "trigger": trigger},
            dispatcher=dispatcher,
            title=f"Badge earned: {template.name}",
        )
        new_badges.append(template.code)
        if template.code in RARE_BADGES:
            rare.append(template)
        logger.info(f"Awarded badge {template.code} to student {student_id} on {trigger}")

    if rare:
        await notify_peers_of_rare_badges(db, student_id, rare, dispatcher=dispatcher)

    await db.flush()
    return new_badges


async def query_badges(db: AsyncSession, student_id: uuid.UUID) -> Dict[str, Any]:
    result = await db.execute(
        select(StudentBadge, BadgeTemplate)
        .join(BadgeTemplate, BadgeTemplate.id == StudentBadge.badge_template_id)
        .where(StudentBadge.student_id == student_id)
        .order_by(StudentBadge.awarded_at)
    )
    rows = result.all()
    progress = await get_or_create_progress(db, student_id)
    return {
        "awarded": [template.code for _, template in rows],
        "total_xp": progress.total_xp,
        "badges": [
            {
                "code": template.code,
                "name": template.name,
                "category": template.category.value,
                "icon": template.icon,
                "awarded_at": badge.awarded_at.isoformat(),
                "trigger": badge.trigger,
            }
            for badge, template in rows
        ],
    }


async def badge_catalogue(db: AsyncSession, reveal_mystery: bool = False) -> List[Dict[str, Any]]:
    """Active templates; mystery conditions are hidden unless revealed"""
    result = await db.execute(
        select(BadgeTemplate).where(BadgeTemplate.is_active.is_(True)).order_by(BadgeTemplate.category, BadgeTemplate.code)
    )
    catalogue = []
    for template in result.scalars():
        hidden = template.is_mystery and not reveal_mystery
        catalogue.append({
            "code": template.code,
            "name": "???" if hidden else template.name,
            "description": "Keep learning to discover this badge" if hidden else template.description,
            "category": template.category.value,
            "icon": template.icon,
            "is_mystery": template.is_mystery,
            "xp_reward": template.xp_reward,
        })
    return catalogue


__all__ = [
    "BADGE_TRIGGERS",
    "CATEGORY_TRIGGERS",
    "BADGE_CATALOGUE",
    "EVALUATORS",
    "RARE_BADGES",
    "notify_peers_of_rare_badges",
    "seed_badge_catalogue",
    "check_badges",
    "query_badges",
    "badge_catalogue",
]
