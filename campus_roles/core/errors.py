"""Exception taxonomy for the role engine and its HTTP status mapping."""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class RoleManagementError(Exception):
    """Base exception for the role engine.

    Carries enough context (operation, subject user, institution) to be
    logged centrally before the caller surfaces it.
    """

    code = "ROLE_MANAGEMENT_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str = "An error occurred",
        *,
        operation: Optional[str] = None,
        user_id: Optional[str] = None,
        institution_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.operation = operation
        self.user_id = user_id
        self.institution_id = institution_id
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        for key in ("operation", "user_id", "institution_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(RoleManagementError):
    """Raised when input is missing or malformed."""

    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs):
        self.field = field
        super().__init__(message, **kwargs)


class RateLimitExceeded(RoleManagementError):
    """Raised when the rate limiter denies a role request."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        reset_time: Optional[datetime] = None,
        **kwargs,
    ):
        self.retry_after = retry_after
        self.reset_time = reset_time
        super().__init__(message, **kwargs)


class EscalationBlocked(RoleManagementError):
    """Raised when escalation prevention rejects a role transition."""

    code = "ESCALATION_BLOCKED"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str, *, risk_score: Optional[int] = None, **kwargs):
        self.risk_score = risk_score
        super().__init__(message, **kwargs)


class InsufficientPermissions(RoleManagementError):
    """Raised when an approver or actor lacks the required role or grant."""

    code = "INSUFFICIENT_PERMISSIONS"
    status_code = status.HTTP_403_FORBIDDEN


class RequestNotFound(RoleManagementError):
    code = "REQUEST_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class AssignmentNotFound(RoleManagementError):
    code = "ASSIGNMENT_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class RequestAlreadyProcessed(RoleManagementError):
    """Raised when approve/deny targets a request that is no longer pending."""

    code = "REQUEST_ALREADY_PROCESSED"
    status_code = status.HTTP_409_CONFLICT


class AlreadyHasRole(RoleManagementError):
    code = "ALREADY_HAS_ROLE"
    status_code = status.HTTP_409_CONFLICT


class RoleChangeRequiresApproval(RoleManagementError):
    """Raised when a direct role change was turned into a role request."""

    code = "ROLE_CHANGE_REQUIRES_APPROVAL"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, *, request_id: str, **kwargs):
        self.request_id = request_id
        super().__init__(message, **kwargs)


class RoleSystemError(RoleManagementError):
    """Raised when the underlying store fails or leaves inconsistent state."""

    code = "SYSTEM_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: RoleManagementError) -> HTTPException:
    """Translate a role engine error into a FastAPI ``HTTPException``."""
    headers = None
    if isinstance(error, RateLimitExceeded) and error.retry_after is not None:
        headers = {
            "X-RateLimit-Remaining": "0",
            "Retry-After": str(error.retry_after),
        }
    return HTTPException(
        status_code=error.status_code,
        detail=error.to_dict(),
        headers=headers,
    )
