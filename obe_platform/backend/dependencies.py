"""
OBE Learning Platform
Dependency injection: authentication, role guards, shared clients
"""

import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import jwt
import redis.asyncio as redis
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .database.connection import get_db
from .database.models import Course, Enrollment, EnrollmentStatus, User, UserRole
from .engine.dispatch import NotificationDispatcher
from .exceptions import AuthenticationException, AuthorizationException, NotFoundException
from .utils.helpers import utcnow
from ..config import get_redis_url, get_settings

# Configure logging
logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)

# Redis connection
_redis_client: Optional[redis.Redis] = None


async def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client instance, or None when Redis is unreachable"""
    global _redis_client

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                get_redis_url(),
                encoding="utf-8",
                decode_responses=True,
                health_check_interval=30
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}")
            _redis_client = None

    return _redis_client


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """Verify and decode JWT token"""
    settings = get_settings()

    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationException("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationException("Invalid token")


async def get_current_user_from_token(token: str, db: AsyncSession) -> User:
    """Resolve the token subject to an active user and stamp the login time"""
    payload = verify_jwt_token(token)
    user_id = payload.get("sub")

    if not user_id:
        raise AuthenticationException("Invalid token payload")
    try:
        user_uuid = uuid.UUID(str(user_id))
    except ValueError:
        raise AuthenticationException("Invalid token subject")

    # Check token blacklist (if Redis is available)
    redis_client = await get_redis_client()
    if redis_client:
        if await redis_client.get(f"blacklist:{token}"):
            raise AuthenticationException("Token has been revoked")

    result = await db.execute(select(User).where(User.id == user_uuid))
    user = result.scalar_one_or_none()

    if not user:
        raise NotFoundException("User not found", resource_type="user", resource_id=str(user_uuid))

    if not user.is_active:
        raise AuthorizationException("User account is not active")

    # Inactivity checks read last_login
    user.last_login = utcnow()
    await db.commit()

    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> Optional[User]:
    """Get current authenticated user (optional)"""

    if not credentials:
        return None

    return await get_current_user_from_token(credentials.credentials, db)


async def require_authentication(
    current_user: Optional[User] = Depends(get_current_user)
) -> User:
    """Require user authentication"""

    if not current_user:
        raise AuthenticationException("Authentication required")

    return current_user


def require_role(allowed_roles: List[UserRole]) -> Callable[..., Awaitable[User]]:
    """Factory function to create role-based dependencies"""

    async def check_role(current_user: User = Depends(require_authentication)) -> User:
        if current_user.role not in allowed_roles:
            raise AuthorizationException(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}",
                required_roles=[role.value for role in allowed_roles]
            )
        return current_user

    return check_role


# Pre-built role dependencies
require_student = require_role([UserRole.STUDENT])
require_teacher = require_role([UserRole.TEACHER, UserRole.ADMIN])
require_admin = require_role([UserRole.ADMIN])
require_curriculum_editor = require_role([UserRole.COORDINATOR, UserRole.TEACHER, UserRole.ADMIN])
require_programme_staff = require_role([UserRole.COORDINATOR, UserRole.ADMIN])
require_staff = require_role([UserRole.TEACHER, UserRole.COORDINATOR, UserRole.ADMIN])


# Per-role access to a student's records
async def _any_student(db: AsyncSession, user: User, student_id: uuid.UUID) -> bool:
    return True


async def _taught_student(db: AsyncSession, user: User, student_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(Enrollment.id)
        .join(Course, Course.id == Enrollment.course_id)
        .where(
            Course.teacher_id == user.id,
            Enrollment.student_id == student_id,
            Enrollment.status == EnrollmentStatus.ACTIVE,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _self_only(db: AsyncSession, user: User, student_id: uuid.UUID) -> bool:
    return user.id == student_id


STUDENT_ACCESS: Dict[UserRole, Callable[[AsyncSession, User, uuid.UUID], Awaitable[bool]]] = {
    UserRole.ADMIN: _any_student,
    UserRole.COORDINATOR: _any_student,
    UserRole.TEACHER: _taught_student,
    UserRole.STUDENT: _self_only,
}


async def ensure_student_access(db: AsyncSession, user: User, student_id: uuid.UUID):
    if not await STUDENT_ACCESS[user.role](db, user, student_id):
        raise AuthorizationException("Access denied to this student's records")


# Real-time delivery
def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


# Cleanup function
async def cleanup_dependencies():
    """Cleanup dependency resources"""
    global _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


# Export main dependencies
__all__ = [
    # Authentication
    "verify_jwt_token",
    "get_current_user",
    "require_authentication",
    "require_role",
    "require_student",
    "require_teacher",
    "require_admin",
    "require_curriculum_editor",
    "require_programme_staff",
    "require_staff",

    # Authorization
    "STUDENT_ACCESS",
    "ensure_student_access",

    # Utilities
    "get_redis_client",
    "get_dispatcher",
    "cleanup_dependencies"
]
