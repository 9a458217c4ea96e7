"""
OBE Learning Platform
Custom exception classes for structured error handling
"""

from typing import Optional, Dict, Any, List
from fastapi import status


class AppException(Exception):
    """Base application exception with structured error information"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
            "status_code": self.status_code
        }


# Authentication Exceptions
class AuthenticationException(AppException):
    """Raised when authentication fails"""

    def __init__(
        self,
        message: str = "Authentication failed",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="AUTHENTICATION_FAILED",
            details=details
        )


# Authorization Exceptions
class AuthorizationException(AppException):
    """Raised when user lacks permission for an action"""

    def __init__(
        self,
        message: str = "Access denied",
        required_roles: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        if details is None:
            details = {}

        if required_roles:
            details["required_roles"] = required_roles

        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="ACCESS_DENIED",
            details=details
        )


# Validation Exceptions
class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        if details is None:
            details = {}

        if field:
            details["field"] = field
        if value is not None:
            details["provided_value"] = str(value)

        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_ERROR",
            details=details
        )


class InvalidRubricException(ValidationException):
    """Raised when a rubric fails construction-time validation"""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Invalid rubric: {reason}",
            field="rubric",
            details=details
        )
        self.error_code = "INVALID_RUBRIC"


class IncompleteGradingException(ValidationException):
    """Raised when level selections do not cover every rubric criterion"""

    def __init__(self, missing_criteria: List[str]):
        super().__init__(
            message=f"Missing selections for criteria: {', '.join(missing_criteria)}",
            field="selections",
            details={"missing_criteria": missing_criteria}
        )
        self.error_code = "INCOMPLETE_GRADING"


class InvalidOutcomeMappingException(ValidationException):
    """Raised when a mapping edge would break the outcome hierarchy"""

    def __init__(self, reason: str, source_type: Optional[str] = None, target_type: Optional[str] = None):
        details = {}
        if source_type:
            details["source_type"] = source_type
        if target_type:
            details["target_type"] = target_type

        super().__init__(
            message=f"Invalid outcome mapping: {reason}",
            field="mapping",
            details=details
        )
        self.error_code = "INVALID_OUTCOME_MAPPING"


# Resource Exceptions
class NotFoundException(AppException):
    """Raised when requested resource is not found"""

    def __init__(
        self,
        message: str = "Resource not found",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None
    ):
        details = {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND",
            details=details
        )


class ResourceNotFoundByIdException(NotFoundException):
    """Raised when resource with specific ID is not found"""

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            message=f"{resource_type.replace('_', ' ').title()} with ID '{resource_id}' not found",
            resource_type=resource_type,
            resource_id=str(resource_id)
        )


# Conflict Exceptions
class ConflictException(AppException):
    """Raised when operation conflicts with current state"""

    def __init__(
        self,
        message: str = "Conflict with current state",
        conflict_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        if details is None:
            details = {}

        if conflict_type:
            details["conflict_type"] = conflict_type

        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="CONFLICT",
            details=details
        )


class GradeAlreadyExistsException(ConflictException):
    """Raised when a graded submission is graded a second time"""

    def __init__(self, submission_id: Any):
        super().__init__(
            message="Submission is already graded; use the amendment flow to correct it",
            conflict_type="grade_exists",
            details={"submission_id": str(submission_id)}
        )


class ConcurrentAmendmentException(ConflictException):
    """Raised when another amendment of the same grade landed first"""

    def __init__(self, grade_id: Any, sequence: int):
        super().__init__(
            message="Grade was amended concurrently; reload and retry",
            conflict_type="amendment_conflict",
            details={"grade_id": str(grade_id), "sequence": sequence}
        )


class DuplicateSubmissionException(ConflictException):
    """Raised when a student submits the same assignment twice"""

    def __init__(self, assignment_id: Any):
        super().__init__(
            message="Assignment already submitted",
            conflict_type="duplicate_submission",
            details={"assignment_id": str(assignment_id)}
        )


# Business Logic Exceptions
class BusinessLogicException(AppException):
    """Raised when business rules are violated"""

    def __init__(
        self,
        message: str,
        rule_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        if details is None:
            details = {}

        if rule_name:
            details["violated_rule"] = rule_name

        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="BUSINESS_RULE_VIOLATION",
            details=details
        )


class SubmissionClosedException(BusinessLogicException):
    """Raised when a submission arrives after the late window closed"""

    def __init__(self, assignment_id: Any):
        super().__init__(
            message="Submission window has closed",
            rule_name="submission_deadline",
            details={"assignment_id": str(assignment_id)}
        )


class InvalidAlertTransitionException(BusinessLogicException):
    """Raised when an alert status change is not allowed"""

    def __init__(self, current_status: str, target_status: str):
        super().__init__(
            message=f"Cannot move alert from {current_status} to {target_status}",
            rule_name="alert_lifecycle",
            details={"current_status": current_status, "target_status": target_status}
        )


# Export all exceptions
__all__ = [
    "AppException",
    "AuthenticationException",
    "AuthorizationException",
    "ValidationException",
    "InvalidRubricException",
    "IncompleteGradingException",
    "InvalidOutcomeMappingException",
    "NotFoundException",
    "ResourceNotFoundByIdException",
    "ConflictException",
    "GradeAlreadyExistsException",
    "ConcurrentAmendmentException",
    "DuplicateSubmissionException",
    "BusinessLogicException",
    "SubmissionClosedException",
    "InvalidAlertTransitionException",
]
