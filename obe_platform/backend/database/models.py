"""
OBE Learning Platform
SQLAlchemy Database Models
"""

import enum
import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, Date, Integer, String, Text, Float,
    ForeignKey, JSON, Enum, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator, CHAR

from ..utils.helpers import utcnow

# Base class for all models
Base = declarative_base()


class GUID(TypeDecorator):
    """Platform-independent GUID type"""
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(UUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, uuid.UUID):
                return "%.32x" % uuid.UUID(str(value)).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, uuid.UUID):
                return uuid.UUID(value)
            return value


# Enums
class UserRole(enum.Enum):
    ADMIN = "admin"
    COORDINATOR = "coordinator"
    TEACHER = "teacher"
    STUDENT = "student"


class OutcomeType(enum.Enum):
    ILO = "ILO"
    PLO = "PLO"
    CLO = "CLO"


class BloomsLevel(enum.Enum):
    REMEMBER = "remember"
    UNDERSTAND = "understand"
    APPLY = "apply"
    ANALYZE = "analyze"
    EVALUATE = "evaluate"
    CREATE = "create"


class EnrollmentStatus(enum.Enum):
    ACTIVE = "active"
    DROPPED = "dropped"
    COMPLETED = "completed"


class BadgeCategory(enum.Enum):
    STREAK = "streak"
    ACADEMIC = "academic"
    ENGAGEMENT = "engagement"
    MYSTERY = "mystery"


class AlertType(enum.Enum):
    LOW_PERFORMANCE = "low_performance"
    INACTIVITY = "inactivity"
    MISSED_DEADLINE = "missed_deadline"
    HELP_REQUEST = "help_request"
    ACHIEVEMENT = "achievement"
    STREAK_BREAK = "streak_break"


class AlertPriority(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(enum.Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class NotificationType(enum.Enum):
    GRADE_RELEASED = "grade_released"
    BADGE_EARNED = "badge_earned"
    LEVEL_UP = "level_up"
    PEER_MILESTONE = "peer_milestone"
    GENERAL = "general"


# Base model with common fields
class BaseModel(Base):
    __abstract__ = True

    id = Column(GUID(), primary_key=True, default=uuid.uuid4, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# People and programme structure
class User(BaseModel):
    __tablename__ = "users"

    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(200), nullable=False)
    role = Column(Enum(UserRole), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login = Column(DateTime)
    leaderboard_anonymous = Column(Boolean, default=False, nullable=False)

    progress = relationship("StudentProgress", back_populates="student", uselist=False)


class Program(BaseModel):
    __tablename__ = "programs"

    name = Column(String(255), nullable=False)
    code = Column(String(50), unique=True, nullable=False)
    description = Column(Text)
    coordinator_id = Column(GUID(), ForeignKey('users.id'))
    is_active = Column(Boolean, default=True, nullable=False)

    courses = relationship("Course", back_populates="program")


class Course(BaseModel):
    __tablename__ = "courses"

    program_id = Column(GUID(), ForeignKey('programs.id'), nullable=False)
    teacher_id = Column(GUID(), ForeignKey('users.id'))
    code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    program = relationship("Program", back_populates="courses")

    __table_args__ = (
        UniqueConstraint('program_id', 'code', name='_program_course_code_uc'),
    )


class Enrollment(BaseModel):
    __tablename__ = "enrollments"

    student_id = Column(GUID(), ForeignKey('users.id'), nullable=False)
    course_id = Column(GUID(), ForeignKey('courses.id'), nullable=False)
    status = Column(Enum(EnrollmentStatus), default=EnrollmentStatus.ACTIVE, nullable=False)

    __table_args__ = (
        UniqueConstraint('student_id', 'course_id', name='_student_course_uc'),
        Index('idx_enrollment_course_status', 'course_id', 'status'),
    )


# Outcome hierarchy
class LearningOutcome(BaseModel):
    __tablename__ = "learning_outcomes"

    code = Column(String(50))
    title = Column(String(255), nullable=False)
    description = Column(Text)
    outcome_type = Column(Enum(OutcomeType), nullable=False, index=True)
    blooms_level = Column(Enum(BloomsLevel), nullable=False, default=BloomsLevel.UNDERSTAND)
    program_id = Column(GUID(), ForeignKey('programs.id'), nullable=True)
    course_id = Column(GUID(), ForeignKey('courses.id'), nullable=True)
    version = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by_id = Column(GUID(), ForeignKey('users.id'))

    __table_args__ = (
        # ILO: institution-wide, PLO: one program, CLO: one course
        CheckConstraint(
            "(outcome_type = 'ILO' AND program_id IS NULL AND course_id IS NULL) OR "
            "(outcome_type = 'PLO' AND program_id IS NOT NULL AND course_id IS NULL) OR "
            "(outcome_type = 'CLO' AND course_id IS NOT NULL AND program_id IS NULL)",
            name='ck_outcome_scope'
        ),
        Index('idx_outcome_type_active', 'outcome_type', 'is_active'),
    )


class OutcomeMapping(BaseModel):
    __tablename__ = "outcome_mappings"

    source_outcome_id = Column(GUID(), ForeignKey('learning_outcomes.id'), nullable=False)
    target_outcome_id = Column(GUID(), ForeignKey('learning_outcomes.id'), nullable=False)
    weight = Column(Float, nullable=False, default=1.0)
    created_by_id = Column(GUID(), ForeignKey('users.id'))

    source = relationship("LearningOutcome", foreign_keys=[source_outcome_id])
    target = relationship("LearningOutcome", foreign_keys=[target_outcome_id])

    __table_args__ = (
        UniqueConstraint('source_outcome_id', 'target_outcome_id', name='_mapping_edge_uc'),
        CheckConstraint('weight >= 0 AND weight <= 1', name='ck_mapping_weight_range'),
        CheckConstraint('source_outcome_id != target_outcome_id', name='ck_mapping_no_self_loop'),
        Index('idx_mapping_target', 'target_outcome_id'),
    )


# Assessment
class Assignment(BaseModel):
    __tablename__ = "assignments"

    course_id = Column(GUID(), ForeignKey('courses.id'), nullable=False)
    teacher_id = Column(GUID(), ForeignKey('users.id'))
    title = Column(String(255), nullable=False)
    description = Column(Text)
    total_points = Column(Float, nullable=False, default=0)
    due_date = Column(DateTime, nullable=False)
    published_at = Column(DateTime)
    late_window_hours = Column(Integer, default=24, nullable=False)
    rubric_data = Column(JSON, default=dict)

    criteria = relationship(
        "RubricCriterion",
        back_populates="assignment",
        order_by="RubricCriterion.order_index",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index('idx_assignment_course_due', 'course_id', 'due_date'),
    )


class RubricCriterion(BaseModel):
    __tablename__ = "rubric_criteria"

    assignment_id = Column(GUID(), ForeignKey('assignments.id'), nullable=False)
    outcome_id = Column(GUID(), ForeignKey('learning_outcomes.id'), nullable=False)
    description = Column(String(500), nullable=False)
    max_points = Column(Float, nullable=False)
    weight = Column(Float, default=1.0, nullable=False)
    blooms_level = Column(Enum(BloomsLevel))
    order_index = Column(Integer, default=0, nullable=False)
    levels = Column(JSON, nullable=False)  # [{label, description, points}]

    assignment = relationship("Assignment", back_populates="criteria")

    __table_args__ = (
        CheckConstraint('max_points >= 0', name='ck_criterion_max_points'),
        Index('idx_criterion_outcome', 'outcome_id'),
    )


class StudentSubmission(BaseModel):
    __tablename__ = "student_submissions"

    assignment_id = Column(GUID(), ForeignKey('assignments.id'), nullable=False)
    student_id = Column(GUID(), ForeignKey('users.id'), nullable=False)
    content = Column(Text)
    submitted_at = Column(DateTime, default=utcnow, nullable=False)
    is_late = Column(Boolean, default=False, nullable=False)
    total_score = Column(Float)
    feedback = Column(Text)
    graded_at = Column(DateTime)
    graded_by_id = Column(GUID(), ForeignKey('users.id'))

    grade = relationship("Grade", back_populates="submission", uselist=False)

    __table_args__ = (
        UniqueConstraint('assignment_id', 'student_id', name='_assignment_student_uc'),
        Index('idx_submission_student', 'student_id', 'submitted_at'),
    )


class Grade(BaseModel):
    __tablename__ = "grades"

    submission_id = Column(GUID(), ForeignKey('student_submissions.id'), nullable=False, unique=True)
    graded_by_id = Column(GUID(), ForeignKey('users.id'))
    selections = Column(JSON, nullable=False)  # [{criterion_id, level_index, points}]
    total_score = Column(Float, nullable=False)
    max_score = Column(Float, nullable=False)
    score_percent = Column(Integer, nullable=False)
    feedback = Column(Text)

    submission = relationship("StudentSubmission", back_populates="grade")
    amendments = relationship(
        "GradeAmendment",
        back_populates="grade",
        order_by="GradeAmendment.sequence"
    )


class GradeAmendment(BaseModel):
    __tablename__ = "grade_amendments"

    grade_id = Column(GUID(), ForeignKey('grades.id'), nullable=False)
    sequence = Column(Integer, nullable=False)  # 1-based, latest wins
    amended_by_id = Column(GUID(), ForeignKey('users.id'))
    selections = Column(JSON, nullable=False)
    total_score = Column(Float, nullable=False)
    max_score = Column(Float, nullable=False)
    score_percent = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)

    grade = relationship("Grade", back_populates="amendments")

    __table_args__ = (
        UniqueConstraint('grade_id', 'sequence', name='_grade_amendment_seq_uc'),
    )


class StudentPerformance(BaseModel):
    """Attainment cache, rebuilt by the rollup engine only"""
    __tablename__ = "student_performance"

    student_id = Column(GUID(), ForeignKey('users.id'), nullable=False)
    outcome_id = Column(GUID(), ForeignKey('learning_outcomes.id'), nullable=False)
    average_score = Column(Float)  # NULL means no data, not 0%
    total_submissions = Column(Integer, default=0, nullable=False)
    last_updated = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('student_id', 'outcome_id', name='_student_outcome_uc'),
        Index('idx_performance_outcome', 'outcome_id'),
    )


# Gamification
class StudentProgress(BaseModel):
    __tablename__ = "student_progress"

    student_id = Column(GUID(), ForeignKey('users.id'), nullable=False, unique=True)
    total_xp = Column(Integer, default=0, nullable=False)
    level = Column(Integer, default=1, nullable=False)
    current_streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    streak_freezes_available = Column(Integer, default=0, nullable=False)
    last_activity_date = Column(Date)
    total_badges = Column(Integer, default=0, nullable=False)

    student = relationship("User", back_populates="progress")


class XPTransaction(BaseModel):
    __tablename__ = "xp_transactions"

    student_id = Column(GUID(), ForeignKey('users.id'), nullable=False)
    amount = Column(Integer, nullable=False)
    source = Column(String(50), nullable=False)
    reference_id = Column(String(64))
    note = Column(String(255))
    multiplier = Column(Float, default=1.0, nullable=False)

    __table_args__ = (
        Index('idx_xp_student_created', 'student_id', 'created_at'),
        Index('idx_xp_source', 'source', 'reference_id'),
    )


class BonusXPEvent(BaseModel):
    __tablename__ = "bonus_xp_events"

    title = Column(String(255), nullable=False)
    multiplier = Column(Float, nullable=False, default=1.0)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint('multiplier >= 1', name='ck_bonus_multiplier'),
    )


class BadgeTemplate(BaseModel):
    __tablename__ = "badge_templates"

    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(Enum(BadgeCategory), nullable=False)
    icon = Column(String(50))
    is_mystery = Column(Boolean, default=False, nullable=False)
    requirements = Column(JSON, nullable=False)  # {type, count, category?}
    xp_reward = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class StudentBadge(BaseModel):
    __tablename__ = "student_badges"

    student_id = Column(GUID(), ForeignKey('users.id'), nullable=False)
    badge_template_id = Column(GUID(), ForeignKey('badge_templates.id'), nullable=False)
    awarded_at = Column(DateTime, default=utcnow, nullable=False)
    trigger = Column(String(30))

    template = relationship("BadgeTemplate")

    __table_args__ = (
        UniqueConstraint('student_id', 'badge_template_id', name='_student_badge_uc'),
    )


class JournalEntry(BaseModel):
    __tablename__ = "journal_entries"

    student_id = Column(GUID(), ForeignKey('users.id'), nullable=False, index=True)
    title = Column(String(255))
    content = Column(Text, nullable=False)


# Alerting
class AcademicAlert(BaseModel):
    __tablename__ = "academic_alerts"

    student_id = Column(GUID(), ForeignKey('users.id'), nullable=False)
    alert_type = Column(Enum(AlertType), nullable=False)
    priority = Column(Enum(AlertPriority), nullable=False)
    status = Column(Enum(AlertStatus), default=AlertStatus.ACTIVE, nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    context_data = Column(JSON, default=dict)
    assigned_to_id = Column(GUID(), ForeignKey('users.id'))
    triggered_by_id = Column(GUID(), ForeignKey('users.id'))
    acknowledged_at = Column(DateTime)
    acknowledged_by_id = Column(GUID(), ForeignKey('users.id'))
    resolved_at = Column(DateTime)
    resolved_by_id = Column(GUID(), ForeignKey('users.id'))
    resolution_notes = Column(Text)

    __table_args__ = (
        Index('idx_alert_student_type_created', 'student_id', 'alert_type', 'created_at'),
        Index('idx_alert_assigned_status', 'assigned_to_id', 'status'),
    )


class AlertNotification(BaseModel):
    __tablename__ = "alert_notifications"

    alert_id = Column(GUID(), ForeignKey('academic_alerts.id'), nullable=False)
    user_id = Column(GUID(), ForeignKey('users.id'), nullable=False)
    channel = Column(String(20), default="in_app", nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime)
    is_delivered = Column(Boolean, default=False, nullable=False)
    delivered_at = Column(DateTime)

    alert = relationship("AcademicAlert")

    __table_args__ = (
        UniqueConstraint('alert_id', 'user_id', name='_alert_recipient_uc'),
        Index('idx_alert_notification_user_read', 'user_id', 'is_read'),
    )


class Notification(BaseModel):
    __tablename__ = "notifications"

    user_id = Column(GUID(), ForeignKey('users.id'), nullable=False)
    notification_type = Column(Enum(NotificationType), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, default=dict)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime)

    __table_args__ = (
        Index('idx_notification_user_read', 'user_id', 'is_read', 'created_at'),
    )


# Export all models
__all__ = [
    'Base', 'BaseModel', 'GUID',
    'User', 'Program', 'Course', 'Enrollment',
    'LearningOutcome', 'OutcomeMapping',
    'Assignment', 'RubricCriterion', 'StudentSubmission', 'Grade', 'GradeAmendment',
    'StudentPerformance',
    'StudentProgress', 'XPTransaction', 'BonusXPEvent',
    'BadgeTemplate', 'StudentBadge', 'JournalEntry',
    'AcademicAlert', 'AlertNotification', 'Notification',
    # Enums
    'UserRole', 'OutcomeType', 'BloomsLevel', 'EnrollmentStatus', 'BadgeCategory',
    'AlertType', 'AlertPriority', 'AlertStatus', 'NotificationType',
]
