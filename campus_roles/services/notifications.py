"""
Notification side-effect channel for role lifecycle events.

The role services call ``RoleNotifier`` after their state change has been
committed. Delivery is best-effort and at-most-once: a failing dispatcher
is logged and the triggering operation carries on.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from campus_roles.core.roles import UserRole, as_role
from campus_roles.db.store import RoleStore
from campus_roles.models.roles import RoleRequest, UserRoleAssignment
from campus_roles.utils.helpers import truncate_string, utcnow

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Kinds of role notifications."""
    ROLE_REQUEST_SUBMITTED = "role_request_submitted"
    ROLE_REQUEST_REVIEW = "role_request_review"
    ROLE_REQUEST_APPROVED = "role_request_approved"
    ROLE_REQUEST_DENIED = "role_request_denied"
    ROLE_REQUEST_EXPIRED = "role_request_expired"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_CHANGED = "role_changed"
    ROLE_REVOKED = "role_revoked"
    TEMPORARY_ROLE_EXPIRING = "temporary_role_expiring"
    TEMPORARY_ROLE_EXPIRED = "temporary_role_expired"
    TEMPORARY_ROLE_EXTENDED = "temporary_role_extended"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Notification(BaseModel):
    """Message handed to a notification dispatcher."""
    user_id: str = Field(..., description="Recipient")
    type: NotificationType = Field(..., description="Notification kind")
    title: str = Field(..., description="Short title")
    message: str = Field(..., description="Human readable body")
    data: Dict[str, Any] = Field(default_factory=dict, description="Structured payload")
    channels: List[str] = Field(default_factory=lambda: ["email", "in_app"], description="Delivery channels")
    priority: NotificationPriority = Field(default=NotificationPriority.MEDIUM, description="Delivery priority")


class NotificationDeliveryError(Exception):
    """Raised by dispatchers when a notification could not be handed off."""
    pass


class NotificationDispatcher(ABC):
    """Fire-and-forget delivery of notifications."""

    @abstractmethod
    async def send_notification(self, notification: Notification) -> None:
        """Hand a notification to the delivery system."""

    async def close(self) -> None:
        """Release any resources held by the dispatcher."""


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Dispatcher that only writes notifications to the log."""

    async def send_notification(self, notification: Notification) -> None:
        logger.info(
            f"Notification for {notification.user_id}: {notification.title}",
            extra={
                "notification_type": notification.type.value,
                "recipient": notification.user_id,
                "channels": notification.channels,
            },
        )


class HttpNotificationDispatcher(NotificationDispatcher):
    """
    Dispatcher posting notifications to the platform notification service.

    The service accepts ``POST {base_url}/notifications`` with the JSON form
    of ``Notification``.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the dispatcher.

        Args:
            base_url: Base URL of the notification service
            timeout: Request timeout in seconds
            client: Optional preconfigured client (mainly for tests)
        """
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={
                "User-Agent": "campus-roles/1.0",
                "Accept": "application/json",
            },
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def send_notification(self, notification: Notification) -> None:
        url = f"{self.base_url}/notifications"
        try:
            response = await self.client.post(url, json=notification.model_dump(mode="json"))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationDeliveryError(
                f"Notification service returned {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise NotificationDeliveryError("Notification service timeout") from e
        except httpx.RequestError as e:
            raise NotificationDeliveryError(f"Notification request error: {str(e)}") from e


# Roles notified about a new request for a given role
_APPROVER_ROLES: Dict[UserRole, List[UserRole]] = {
    UserRole.TEACHER: [UserRole.DEPARTMENT_ADMIN, UserRole.INSTITUTION_ADMIN, UserRole.SYSTEM_ADMIN],
    UserRole.DEPARTMENT_ADMIN: [UserRole.INSTITUTION_ADMIN, UserRole.SYSTEM_ADMIN],
    UserRole.INSTITUTION_ADMIN: [UserRole.SYSTEM_ADMIN],
    UserRole.SYSTEM_ADMIN: [UserRole.SYSTEM_ADMIN],
}
_ANY_ADMIN = [UserRole.DEPARTMENT_ADMIN, UserRole.INSTITUTION_ADMIN, UserRole.SYSTEM_ADMIN]


class RoleNotifier:
    """Builds role notifications and delivers them best-effort."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        store: RoleStore,
        channels: Optional[List[str]] = None,
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dispatcher = dispatcher
        self.store = store
        self.channels = channels or ["email", "in_app"]
        self.enabled = enabled
        self.clock = clock

    async def _dispatch(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
    ) -> bool:
        """Send one notification. Returns False instead of raising on failure."""
        if not self.enabled:
            return False
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            data=data or {},
            channels=list(self.channels),
            priority=priority,
        )
        try:
            await self.dispatcher.send_notification(notification)
            return True
        except Exception as e:
            logger.error(f"Failed to send {type.value} notification to {user_id}: {e}")
            return False

    async def get_role_approvers(self, requested_role: UserRole, institution_id: str) -> List[str]:
        roles = _APPROVER_ROLES.get(as_role(requested_role), _ANY_ADMIN)
        return await self.store.list_role_holders(roles, now=self.clock(), institution_id=institution_id)

    async def notify_role_request_submitted(self, request: RoleRequest) -> None:
        role_name = request.requested_role.display_name
        await self._dispatch(
            request.user_id,
            NotificationType.ROLE_REQUEST_SUBMITTED,
            "Role Request Submitted",
            f"Your request for {role_name} role has been submitted and is pending review.",
            data={"request_id": request.id, "requested_role": request.requested_role.value},
        )

        try:
            approvers = await self.get_role_approvers(request.requested_role, request.institution_id)
        except Exception as e:
            logger.error(f"Failed to resolve approvers for role request {request.id}: {e}")
            return

        justification = truncate_string(request.justification or "", 120)
        for approver_id in approvers:
            if approver_id == request.user_id:
                continue
            await self._dispatch(
                approver_id,
                NotificationType.ROLE_REQUEST_REVIEW,
                "New Role Request",
                f"User {request.user_id} has requested {role_name} role. Justification: {justification}",
                data={
                    "request_id": request.id,
                    "requester_id": request.user_id,
                    "requested_role": request.requested_role.value,
                    "institution_id": request.institution_id,
                },
            )

    async def notify_role_request_approved(self, request: RoleRequest, approver_id: str) -> None:
        await self._dispatch(
            request.user_id,
            NotificationType.ROLE_REQUEST_APPROVED,
            "Role Request Approved",
            f"Your request for {request.requested_role.display_name} role has been approved.",
            data={"request_id": request.id, "approved_by": approver_id},
            priority=NotificationPriority.HIGH,
        )

    async def notify_role_request_denied(self, request: RoleRequest, denier_id: str, reason: str) -> None:
        await self._dispatch(
            request.user_id,
            NotificationType.ROLE_REQUEST_DENIED,
            "Role Request Denied",
            f"Your request for {request.requested_role.display_name} role has been denied. Reason: {reason}",
            data={"request_id": request.id, "denied_by": denier_id, "reason": reason},
        )

    async def notify_role_request_expired(self, request: RoleRequest) -> None:
        await self._dispatch(
            request.user_id,
            NotificationType.ROLE_REQUEST_EXPIRED,
            "Role Request Expired",
            f"Your request for {request.requested_role.display_name} role has expired without review.",
            data={"request_id": request.id},
            priority=NotificationPriority.LOW,
        )

    async def notify_role_assigned(
        self, assignment: UserRoleAssignment, previous_role: Optional[UserRole] = None
    ) -> None:
        role_name = assignment.role.display_name
        if previous_role is not None and previous_role != assignment.role:
            type_ = NotificationType.ROLE_CHANGED
            title = "Role Changed"
            message = f"Your role has been changed from {previous_role.display_name} to {role_name}."
        else:
            type_ = NotificationType.ROLE_ASSIGNED
            title = "Role Assigned"
            message = f"You have been assigned the {role_name} role."
        if assignment.is_temporary and assignment.expires_at:
            message += f" This is a temporary assignment until {assignment.expires_at:%Y-%m-%d %H:%M} UTC."

        await self._dispatch(
            assignment.user_id,
            type_,
            title,
            message,
            data={
                "assignment_id": assignment.id,
                "role": assignment.role.value,
                "previous_role": previous_role.value if previous_role else None,
                "is_temporary": assignment.is_temporary,
            },
            priority=NotificationPriority.HIGH,
        )

    async def notify_role_revoked(
        self, user_id: str, role: UserRole, revoked_by: str, reason: Optional[str] = None
    ) -> None:
        message = f"Your {role.display_name} role has been revoked."
        if reason:
            message += f" Reason: {reason}"
        await self._dispatch(
            user_id,
            NotificationType.ROLE_REVOKED,
            "Role Revoked",
            message,
            data={"role": role.value, "revoked_by": revoked_by},
            priority=NotificationPriority.HIGH,
        )

    async def notify_role_changed(
        self, user_id: str, old_role: UserRole, new_role: UserRole, reason: Optional[str] = None
    ) -> None:
        message = f"Your role has been changed from {old_role.display_name} to {new_role.display_name}."
        if reason:
            message += f" Reason: {reason}"
        await self._dispatch(
            user_id,
            NotificationType.ROLE_CHANGED,
            "Role Changed",
            message,
            data={"old_role": old_role.value, "new_role": new_role.value},
            priority=NotificationPriority.HIGH,
        )

    async def notify_temporary_role_expiring(self, assignment: UserRoleAssignment, hours_remaining: int) -> None:
        await self._dispatch(
            assignment.user_id,
            NotificationType.TEMPORARY_ROLE_EXPIRING,
            "Temporary Role Expiring Soon",
            f"Your temporary {assignment.role.display_name} role expires in {hours_remaining} hours.",
            data={"assignment_id": assignment.id, "expires_at": assignment.expires_at.isoformat()},
        )

    async def notify_temporary_role_expired(
        self, assignment: UserRoleAssignment, reverted_role: UserRole
    ) -> None:
        await self._dispatch(
            assignment.user_id,
            NotificationType.TEMPORARY_ROLE_EXPIRED,
            "Temporary Role Expired",
            f"Your temporary {assignment.role.display_name} role has expired. "
            f"Your role has been reverted to {reverted_role.display_name}.",
            data={"assignment_id": assignment.id, "reverted_role": reverted_role.value},
        )

    async def notify_temporary_role_extended(self, assignment: UserRoleAssignment, extended_by: str) -> None:
        await self._dispatch(
            assignment.user_id,
            NotificationType.TEMPORARY_ROLE_EXTENDED,
            "Temporary Role Extended",
            f"Your temporary {assignment.role.display_name} role has been extended until "
            f"{assignment.expires_at:%Y-%m-%d %H:%M} UTC.",
            data={"assignment_id": assignment.id, "extended_by": extended_by},
        )
