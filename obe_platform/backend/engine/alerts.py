"""
OBE Learning Platform
Academic alert engine: creation with dedup, staff routing, lifecycle, sweep checks
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import (
    AcademicAlert, AlertNotification, AlertPriority, AlertStatus, AlertType,
    Assignment, Course, Enrollment, EnrollmentStatus, LearningOutcome, OutcomeType,
    Program, StudentPerformance, StudentProgress, StudentSubmission, User, UserRole
)
from ..exceptions import (
    AuthorizationException, InvalidAlertTransitionException, ResourceNotFoundByIdException
)
from ..utils.helpers import utc_date, utcnow
from ...config import get_settings
from .dispatch import NotificationDispatcher

# Configure logging
logger = logging.getLogger(__name__)

# Default priority and title per alert type
ALERT_DEFAULTS: Dict[AlertType, Tuple[AlertPriority, str]] = {
    AlertType.LOW_PERFORMANCE: (AlertPriority.HIGH, "Low Performance Alert"),
    AlertType.INACTIVITY: (AlertPriority.MEDIUM, "Student Inactivity Alert"),
    AlertType.MISSED_DEADLINE: (AlertPriority.CRITICAL, "Missed Deadline Alert"),
    AlertType.HELP_REQUEST: (AlertPriority.HIGH, "Student Help Request"),
    AlertType.ACHIEVEMENT: (AlertPriority.LOW, "Student Achievement"),
    AlertType.STREAK_BREAK: (AlertPriority.MEDIUM, "Learning Streak Broken"),
}

# Role tiers tried in order when picking an owner; first tier with staff wins
ASSIGNMENT_TIERS: Dict[AlertType, List[UserRole]] = {
    AlertType.MISSED_DEADLINE: [UserRole.TEACHER, UserRole.COORDINATOR, UserRole.ADMIN],
    AlertType.LOW_PERFORMANCE: [UserRole.TEACHER, UserRole.COORDINATOR],
    AlertType.HELP_REQUEST: [UserRole.TEACHER, UserRole.COORDINATOR],
    AlertType.INACTIVITY: [UserRole.TEACHER],
    AlertType.STREAK_BREAK: [UserRole.TEACHER],
    AlertType.ACHIEVEMENT: [UserRole.COORDINATOR, UserRole.ADMIN],
}
CRITICAL_TIERS = [UserRole.TEACHER, UserRole.COORDINATOR, UserRole.ADMIN]

# Staff roles notified per priority
NOTIFY_ROLES: Dict[AlertPriority, List[UserRole]] = {
    AlertPriority.CRITICAL: [UserRole.TEACHER, UserRole.COORDINATOR, UserRole.ADMIN],
    AlertPriority.HIGH: [UserRole.TEACHER, UserRole.COORDINATOR],
    AlertPriority.MEDIUM: [UserRole.TEACHER],
    AlertPriority.LOW: [],
}
LOW_PRIORITY_NOTIFY: Dict[AlertType, List[UserRole]] = {
    AlertType.ACHIEVEMENT: [UserRole.COORDINATOR, UserRole.ADMIN],
}
STUDENT_NOTIFIED_TYPES = {AlertType.ACHIEVEMENT, AlertType.STREAK_BREAK}

ALLOWED_TRANSITIONS: Dict[AlertStatus, Set[AlertStatus]] = {
    AlertStatus.ACTIVE: {AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.DISMISSED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED, AlertStatus.DISMISSED},
    AlertStatus.RESOLVED: set(),
    AlertStatus.DISMISSED: set(),
}
OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


# Role-scoped visibility, one handler per role
def _all_alerts(query, user: User):
    return query


def _assigned_alerts(query, user: User):
    return query.where(AcademicAlert.assigned_to_id == user.id)


def _own_alerts(query, user: User):
    return query.where(AcademicAlert.student_id == user.id)


ALERT_VISIBILITY: Dict[UserRole, Callable] = {
    UserRole.ADMIN: _all_alerts,
    UserRole.COORDINATOR: _all_alerts,
    UserRole.TEACHER: _assigned_alerts,
    UserRole.STUDENT: _own_alerts,
}


def scope_alert_query(query, user: User):
    return ALERT_VISIBILITY[user.role](query, user)


# Staff lookup
async def _related_staff(db: AsyncSession, student_id: uuid.UUID, role: UserRole) -> List[User]:
    """Teachers of the student's courses or coordinators of their programs"""
    if role == UserRole.TEACHER:
        query = (
            select(User).join(Course, Course.teacher_id == User.id)
            .join(Enrollment, Enrollment.course_id == Course.id)
            .where(Enrollment.student_id == student_id, Enrollment.status == EnrollmentStatus.ACTIVE)
        )
    elif role == UserRole.COORDINATOR:
        query = (
            select(User).join(Program, Program.coordinator_id == User.id)
            .join(Course, Course.program_id == Program.id)
            .join(Enrollment, Enrollment.course_id == Course.id)
            .where(Enrollment.student_id == student_id, Enrollment.status == EnrollmentStatus.ACTIVE)
        )
    else:
        return []

    result = await db.execute(query.where(User.is_active.is_(True), User.role == role).distinct())
    return list(result.scalars())


async def staff_for_role(db: AsyncSession, student_id: uuid.UUID, role: UserRole) -> List[User]:
    """Related staff when there are any, otherwise every active user of the role"""
    related = await _related_staff(db, student_id, role)
    if related:
        return related
    result = await db.execute(select(User).where(User.role == role, User.is_active.is_(True)))
    return list(result.scalars())


async def assign_staff_member(
    db: AsyncSession,
    student_id: uuid.UUID,
    alert_type: AlertType,
    priority: AlertPriority,
) -> Optional[uuid.UUID]:
    """Owner for a new alert: least open alerts in the first staffed tier, ties by id"""
    tiers = CRITICAL_TIERS if priority == AlertPriority.CRITICAL else ASSIGNMENT_TIERS.get(
        alert_type, [UserRole.TEACHER]
    )

    for role in tiers:
        candidates = await staff_for_role(db, student_id, role)
        if not candidates:
            continue

        loads = await db.execute(
            select(AcademicAlert.assigned_to_id, func.count(AcademicAlert.id))
            .where(
                AcademicAlert.assigned_to_id.in_([c.id for c in candidates]),
                AcademicAlert.status.in_(OPEN_STATUSES),
            )
            .group_by(AcademicAlert.assigned_to_id)
        )
        load_by_user = dict(loads.all())
        chosen = min(candidates, key=lambda u: (load_by_user.get(u.id, 0), str(u.id)))
        return chosen.id

    return None


async def notification_recipients(db: AsyncSession, alert: AcademicAlert) -> List[uuid.UUID]:
    roles = list(NOTIFY_ROLES[alert.priority])
    if alert.priority == AlertPriority.LOW:
        roles = LOW_PRIORITY_NOTIFY.get(alert.alert_type, [])

    recipients: List[uuid.UUID] = []
    for role in roles:
        for user in await staff_for_role(db, alert.student_id, role):
            recipients.append(user.id)
    if alert.assigned_to_id is not None:
        recipients.append(alert.assigned_to_id)
    if alert.alert_type in STUDENT_NOTIFIED_TYPES:
        recipients.append(alert.student_id)

    # De-duplicate, keeping first-seen order
    return list(dict.fromkeys(recipients))


def alert_payload(alert: AcademicAlert) -> Dict[str, Any]:
    return {
        "id": str(alert.id),
        "type": "new_alert",
        "title": alert.title,
        "message": alert.message,
        "priority": alert.priority.value,
        "alertType": alert.alert_type.value,
        "createdAt": alert.created_at.isoformat() if alert.created_at else None,
    }


async def notify_relevant_staff(
    db: AsyncSession,
    alert: AcademicAlert,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> List[uuid.UUID]:
    """Create one in-app notification per recipient and push the alert"""
    recipients = await notification_recipients(db, alert)
    rows = []
    for user_id in recipients:
        row = AlertNotification(alert_id=alert.id, user_id=user_id, channel="in_app")
        db.add(row)
        rows.append(row)
    await db.flush()

    if dispatcher is not None:
        payload = alert_payload(alert)
        for row in rows:
            try:
                if await dispatcher.send_to_user(str(row.user_id), payload):
                    row.is_delivered = True
                    row.delivered_at = utcnow()
            except Exception as e:
                logger.error(f"Failed to push alert {alert.id} to {row.user_id}: {e}")
        await db.flush()

    return recipients


async def find_recent_live_alert(
    db: AsyncSession,
    student_id: uuid.UUID,
    alert_type: AlertType,
    now: Optional[datetime] = None,
) -> Optional[AcademicAlert]:
    """Newest non-dismissed alert of this type inside the dedup window"""
    now = now or utcnow()
    window_start = now - timedelta(hours=get_settings().ALERT_DEDUP_WINDOW_HOURS)
    result = await db.execute(
        select(AcademicAlert)
        .where(
            AcademicAlert.student_id == student_id,
            AcademicAlert.alert_type == alert_type,
            AcademicAlert.status != AlertStatus.DISMISSED,
            AcademicAlert.created_at >= window_start,
        )
        .order_by(AcademicAlert.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def raise_alert(
    db: AsyncSession,
    student_id: uuid.UUID,
    alert_type: AlertType,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    triggered_by_id: Optional[uuid.UUID] = None,
    priority: Optional[AlertPriority] = None,
    title: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[AcademicAlert, bool]:
    """Create an alert unless a live one of the same type exists in the window.

    Returns (alert, created). A duplicate returns the existing alert.
    """
    existing = await find_recent_live_alert(db, student_id, alert_type, now)
    if existing is not None:
        logger.debug(f"Skipping duplicate {alert_type.value} alert for student {student_id}")
        return existing, False

    default_priority, default_title = ALERT_DEFAULTS[alert_type]
    priority = priority or default_priority

    alert = AcademicAlert(
        student_id=student_id,
        alert_type=alert_type,
        priority=priority,
        status=AlertStatus.ACTIVE,
        title=title or default_title,
        message=message,
        context_data=context or {},
        assigned_to_id=await assign_staff_member(db, student_id, alert_type, priority),
        triggered_by_id=triggered_by_id,
    )
    if now is not None:
        alert.created_at = now
    db.add(alert)
    await db.flush()

    await notify_relevant_staff(db, alert, dispatcher)
    logger.info(f"{alert_type.value} alert {alert.id} raised for student {student_id}")
    return alert, True


# Lifecycle
async def get_alert_for_user(db: AsyncSession, alert_id: uuid.UUID, user: User) -> AcademicAlert:
    result = await db.execute(
        scope_alert_query(select(AcademicAlert).where(AcademicAlert.id == alert_id), user)
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        raise ResourceNotFoundByIdException("alert", alert_id)
    return alert


def transition_alert(
    alert: AcademicAlert,
    target: AlertStatus,
    actor_id: Optional[uuid.UUID] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AcademicAlert:
    if target not in ALLOWED_TRANSITIONS[alert.status]:
        raise InvalidAlertTransitionException(alert.status.value, target.value)

    now = now or utcnow()
    if target == AlertStatus.ACKNOWLEDGED:
        alert.acknowledged_at = now
        alert.acknowledged_by_id = actor_id
    elif target == AlertStatus.RESOLVED:
        alert.resolved_at = now
        alert.resolved_by_id = actor_id
        alert.resolution_notes = notes
    elif target == AlertStatus.DISMISSED and notes:
        alert.resolution_notes = notes
    alert.status = target
    return alert


async def change_alert_status(
    db: AsyncSession,
    alert_id: uuid.UUID,
    user: User,
    target: AlertStatus,
    notes: Optional[str] = None,
) -> AcademicAlert:
    if user.role == UserRole.STUDENT:
        raise AuthorizationException("Students cannot change alert status")
    alert = await get_alert_for_user(db, alert_id, user)
    transition_alert(alert, target, actor_id=user.id, notes=notes)
    await db.flush()
    return alert


async def query_alerts(
    db: AsyncSession,
    user: User,
    student_id: Optional[uuid.UUID] = None,
    assigned_to_id: Optional[uuid.UUID] = None,
    status: Optional[AlertStatus] = None,
    alert_type: Optional[AlertType] = None,
    limit: int = 100,
    skip: int = 0,
) -> List[AcademicAlert]:
    query = scope_alert_query(select(AcademicAlert), user)
    if student_id is not None:
        query = query.where(AcademicAlert.student_id == student_id)
    if assigned_to_id is not None:
        query = query.where(AcademicAlert.assigned_to_id == assigned_to_id)
    if status is not None:
        query = query.where(AcademicAlert.status == status)
    if alert_type is not None:
        query = query.where(AcademicAlert.alert_type == alert_type)

    result = await db.execute(query.order_by(AcademicAlert.created_at.desc()).offset(skip).limit(limit))
    return list(result.scalars())


async def resolve_missed_deadline(
    db: AsyncSession,
    student_id: uuid.UUID,
    assignment_id: uuid.UUID,
    resolver_id: Optional[uuid.UUID] = None,
) -> List[AcademicAlert]:
    """Drop a graded assignment from open missed-deadline alerts; resolve emptied ones"""
    result = await db.execute(
        select(AcademicAlert).where(
            AcademicAlert.student_id == student_id,
            AcademicAlert.alert_type == AlertType.MISSED_DEADLINE,
            AcademicAlert.status.in_(OPEN_STATUSES),
        )
    )
    resolved = []
    for alert in result.scalars():
        context = dict(alert.context_data or {})
        pending = [a for a in context.get("assignment_ids", []) if a != str(assignment_id)]
        if len(pending) == len(context.get("assignment_ids", [])):
            continue
        context["assignment_ids"] = pending
        alert.context_data = context
        if not pending:
            transition_alert(alert, AlertStatus.RESOLVED, actor_id=resolver_id,
                             notes="Late submission received and graded")
            resolved.append(alert)
    await db.flush()
    return resolved


# Sweep predicates
async def low_clo_summary(
    db: AsyncSession,
    student_id: uuid.UUID,
    course_ids: Optional[List[uuid.UUID]] = None,
) -> List[Dict[str, Any]]:
    """Cached CLO attainments below the at-risk threshold"""
    query = (
        select(StudentPerformance.outcome_id, StudentPerformance.average_score)
        .join(LearningOutcome, LearningOutcome.id == StudentPerformance.outcome_id)
        .where(
            StudentPerformance.student_id == student_id,
            StudentPerformance.average_score.is_not(None),
            StudentPerformance.average_score < get_settings().AT_RISK_ATTAINMENT_THRESHOLD,
            LearningOutcome.outcome_type == OutcomeType.CLO,
            LearningOutcome.is_active.is_(True),
        )
    )
    if course_ids is not None:
        query = query.where(LearningOutcome.course_id.in_(course_ids))
    result = await db.execute(query)
    return [{"clo_id": str(oid), "attainment": score} for oid, score in result.all()]


async def check_low_performance(db, student: User, dispatcher, now: datetime) -> Optional[AcademicAlert]:
    low = await low_clo_summary(db, student.id)
    if len(low) < get_settings().AT_RISK_LOW_CLO_COUNT:
        return None
    alert, created = await raise_alert(
        db, student.id, AlertType.LOW_PERFORMANCE,
        f"{student.full_name} is below "
        f"{get_settings().AT_RISK_ATTAINMENT_THRESHOLD:g}% on {len(low)} course learning outcomes.",
        context={"low_clo_count": len(low), "low_clos": low},
        dispatcher=dispatcher, now=now,
    )
    return alert if created else None


async def check_inactivity(db, student: User, dispatcher, now: datetime) -> Optional[AcademicAlert]:
    last_seen = student.last_login or student.created_at
    days = (now - last_seen).days
    if days < get_settings().AT_RISK_INACTIVITY_DAYS:
        return None
    alert, created = await raise_alert(
        db, student.id, AlertType.INACTIVITY,
        f"{student.full_name} has not logged in for {days} days.",
        context={"days_since_last_login": days, "last_login": student.last_login.isoformat() if student.last_login else None},
        dispatcher=dispatcher, now=now,
    )
    return alert if created else None


def streak_is_broken(progress: StudentProgress, today) -> bool:
    if progress.current_streak <= 0 or progress.last_activity_date is None:
        return False
    gap = (today - progress.last_activity_date).days
    return gap >= 3 or (gap == 2 and progress.streak_freezes_available <= 0)


async def check_streak_break(db, student: User, dispatcher, now: datetime) -> Optional[AcademicAlert]:
    result = await db.execute(select(StudentProgress).where(StudentProgress.student_id == student.id))
    progress = result.scalar_one_or_none()
    if progress is None or not streak_is_broken(progress, utc_date(now)):
        return None

    lost = progress.current_streak
    progress.current_streak = 0
    await db.flush()
    if lost < 2:
        return None

    alert, created = await raise_alert(
        db, student.id, AlertType.STREAK_BREAK,
        f"{student.full_name} lost a {lost}-day learning streak.",
        context={"lost_streak": lost, "last_activity_date": progress.last_activity_date.isoformat()},
        dispatcher=dispatcher, now=now,
    )
    return alert if created else None


async def overdue_assignments(db: AsyncSession, student_id: uuid.UUID, now: datetime) -> List[Assignment]:
    """Assignments of active enrolments past their due date with no submission.

    Counted from the due date, not the close of the late window, so a late
    submission that gets graded can still resolve the alert.
    """
    settings = get_settings()
    lookback = now - timedelta(days=settings.MISSED_DEADLINE_LOOKBACK_DAYS)
    result = await db.execute(
        select(Assignment)
        .join(Enrollment, Enrollment.course_id == Assignment.course_id)
        .where(
            Enrollment.student_id == student_id,
            Enrollment.status == EnrollmentStatus.ACTIVE,
            Assignment.due_date >= lookback,
            Assignment.due_date < now,
        )
    )
    submitted = set((await db.execute(
        select(StudentSubmission.assignment_id).where(StudentSubmission.student_id == student_id)
    )).scalars())

    return [assignment for assignment in result.scalars() if assignment.id not in submitted]


async def check_missed_deadlines(db, student: User, dispatcher, now: datetime) -> Optional[AcademicAlert]:
    overdue = await overdue_assignments(db, student.id, now)
    if not overdue:
        return None

    # Assignments already covered by an open alert are not raised again
    open_alerts = await db.execute(
        select(AcademicAlert.context_data).where(
            AcademicAlert.student_id == student.id,
            AcademicAlert.alert_type == AlertType.MISSED_DEADLINE,
            AcademicAlert.status.in_(OPEN_STATUSES),
        )
    )
    covered = set()
    for context in open_alerts.scalars():
        covered.update((context or {}).get("assignment_ids", []))
    fresh = [a for a in overdue if str(a.id) not in covered]
    if not fresh:
        return None

    alert, created = await raise_alert(
        db, student.id, AlertType.MISSED_DEADLINE,
        f"{student.full_name} missed {len(fresh)} assignment deadline(s): "
        + ", ".join(a.title for a in fresh),
        context={
            "assignment_ids": [str(a.id) for a in fresh],
            "assignments": [{"id": str(a.id), "title": a.title, "due_date": a.due_date.isoformat()} for a in fresh],
        },
        dispatcher=dispatcher, now=now,
    )
    return alert if created else None


StudentCheck = Callable[[AsyncSession, User, Optional[NotificationDispatcher], datetime], Awaitable[Optional[AcademicAlert]]]

STUDENT_CHECKS: List[Tuple[str, StudentCheck]] = [
    ("low_performance", check_low_performance),
    ("inactivity", check_inactivity),
    ("streak_break", check_streak_break),
    ("missed_deadline", check_missed_deadlines),
]


__all__ = [
    "ALERT_DEFAULTS",
    "ASSIGNMENT_TIERS",
    "NOTIFY_ROLES",
    "ALLOWED_TRANSITIONS",
    "ALERT_VISIBILITY",
    "STUDENT_CHECKS",
    "scope_alert_query",
    "staff_for_role",
    "assign_staff_member",
    "notification_recipients",
    "notify_relevant_staff",
    "find_recent_live_alert",
    "raise_alert",
    "transition_alert",
    "change_alert_status",
    "get_alert_for_user",
    "query_alerts",
    "resolve_missed_deadline",
    "low_clo_summary",
    "streak_is_broken",
    "overdue_assignments",
]
