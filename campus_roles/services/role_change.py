"""
Role Change Processor.

Moves users between roles either immediately or through the role request
pipeline, depending on the approval policy for the transition. Approvals
and denials handled here are additionally gated by the ``role.approve``
permission and refresh the permission cache of the affected user.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from campus_roles.core.errors import (
    InsufficientPermissions,
    RequestAlreadyProcessed,
    RequestNotFound,
    RoleManagementError,
)
from campus_roles.core.roles import (
    ADMIN_ROLES,
    RoleRequestStatus,
    UserRole,
    as_role,
    get_role_permissions,
    is_upgrade,
)
from campus_roles.db.store import RoleStore
from campus_roles.models.roles import (
    RoleAssignmentRequest,
    RoleChangeRequest,
    RoleRequest,
    UserRoleAssignment,
)
from campus_roles.services.notifications import RoleNotifier
from campus_roles.services.permissions import PermissionChecker, PermissionScope
from campus_roles.services.role_manager import RoleManager
from campus_roles.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RoleChangeOptions:
    """Switches for ``process_role_change``."""
    skip_validation: bool = False
    force_approval: bool = False
    bypass_approval: bool = False
    notify_user: bool = True
    audit_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RoleChangeValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    requires_approval: bool = True
    approval_reason: Optional[str] = None


@dataclass
class RoleChangeResult:
    """Outcome of ``process_role_change``: an assignment, a role request or an error."""
    success: bool
    result: Optional[Union[UserRoleAssignment, RoleRequest]] = None
    error: Optional[str] = None


@dataclass
class ImpactPreview:
    """Permission keys gained and lost by moving between two roles."""
    current_permissions: List[str]
    new_permissions: List[str]
    added: List[str]
    removed: List[str]


class RoleChangeProcessor:
    """Validates and executes role changes."""

    def __init__(
        self,
        store: RoleStore,
        role_manager: RoleManager,
        permission_checker: PermissionChecker,
        notifier: RoleNotifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.role_manager = role_manager
        self.permission_checker = permission_checker
        self.notifier = notifier
        self.clock = clock

    async def validate_role_change(self, request: RoleChangeRequest) -> RoleChangeValidation:
        """
        Validate a role change without side effects.

        Errors make the change invalid; warnings are informational.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not request.user_id or not request.current_role or not request.new_role:
            errors.append("Missing required fields for role change")

        if request.current_role is not None and request.current_role == request.new_role:
            errors.append("Current role and new role cannot be the same")

        if not request.reason or not request.reason.strip():
            errors.append("Reason for role change is required")

        if request.user_id and request.current_role:
            try:
                assignments = await self.store.list_active_assignments(
                    request.user_id,
                    now=self.clock(),
                    institution_id=request.institution_id,
                    role=request.current_role,
                )
                if request.department_id:
                    assignments = [a for a in assignments if a.department_id == request.department_id]
                if not assignments:
                    errors.append("User does not have the specified current role")
            except Exception as e:
                logger.error(f"Failed to verify current role of user {request.user_id}: {e}")
                errors.append("Failed to verify user's current role")

            try:
                pending = await self.store.list_role_requests(
                    user_id=request.user_id,
                    institution_id=request.institution_id,
                    status=RoleRequestStatus.PENDING,
                )
                if pending:
                    warnings.append("User has existing pending role requests")
            except Exception as e:
                logger.error(f"Failed to list pending requests of user {request.user_id}: {e}")
                warnings.append("Could not check for existing pending requests")

        if request.changed_by != request.user_id:
            try:
                allowed = await self.permission_checker.has_permission(
                    request.changed_by or "",
                    "role.assign",
                    PermissionScope(request.institution_id, request.department_id),
                )
                if not allowed:
                    errors.append("Insufficient permissions to change roles for other users")
            except Exception as e:
                logger.error(f"Permission check failed for {request.changed_by}: {e}")
                errors.append("Failed to verify role change permissions")

        requires_approval, approval_reason = True, None
        if request.current_role and request.new_role:
            requires_approval, approval_reason = self.determine_approval_requirement(
                request.current_role, request.new_role
            )

        return RoleChangeValidation(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            requires_approval=requires_approval,
            approval_reason=approval_reason,
        )

    def determine_approval_requirement(
        self, current_role: UserRole, new_role: UserRole
    ) -> Tuple[bool, Optional[str]]:
        """
        Decide whether a transition needs approval.

        Rules, first match wins: administrative targets, Student to Teacher,
        any upgrade, downgrades to Student (no approval), everything else.
        """
        current_role, new_role = as_role(current_role), as_role(new_role)

        if new_role in ADMIN_ROLES:
            return True, "Administrative roles require approval"
        if current_role == UserRole.STUDENT and new_role == UserRole.TEACHER:
            return True, "Teacher role requires verification and approval"
        if is_upgrade(current_role, new_role):
            return True, "Role upgrades require administrator approval"
        if new_role == UserRole.STUDENT:
            return False, None
        return True, "Role changes require approval for security"

    async def process_role_change(
        self, request: RoleChangeRequest, options: Optional[RoleChangeOptions] = None
    ) -> RoleChangeResult:
        """
        Validate and carry out a role change.

        Returns a ``RoleChangeResult`` holding either the new assignment, the
        role request awaiting approval, or the error. Never raises.
        """
        options = options or RoleChangeOptions()
        try:
            requires_approval = request.requires_approval
            if not options.skip_validation:
                validation = await self.validate_role_change(request)
                if not validation.is_valid:
                    return RoleChangeResult(
                        success=False,
                        error=f"Validation failed: {', '.join(validation.errors)}",
                    )
                requires_approval = validation.requires_approval

            if options.force_approval:
                requires_approval = True
            elif options.bypass_approval:
                requires_approval = False

            if requires_approval:
                role_request = await self.role_manager.request_role(
                    request.user_id,
                    request.new_role,
                    request.institution_id,
                    justification=request.reason,
                    department_id=request.department_id,
                )
                return RoleChangeResult(success=True, result=role_request)

            assignment = await self.execute_role_change(request, options)
            if options.notify_user:
                await self.notifier.notify_role_changed(
                    request.user_id, as_role(request.current_role), as_role(request.new_role), request.reason
                )
            return RoleChangeResult(success=True, result=assignment)

        except RoleManagementError as e:
            logger.warning(f"Role change for user {request.user_id} failed: {e.message}")
            return RoleChangeResult(success=False, error=e.message)
        except Exception as e:
            logger.error(f"Error processing role change for user {request.user_id}: {e}", exc_info=True)
            return RoleChangeResult(success=False, error=str(e) or "Unknown error occurred")

    async def execute_role_change(
        self, request: RoleChangeRequest, options: Optional[RoleChangeOptions] = None
    ) -> UserRoleAssignment:
        """Revoke the current role and assign the new one immediately."""
        options = options or RoleChangeOptions()
        current_role, new_role = as_role(request.current_role), as_role(request.new_role)

        assignment = await self.role_manager.replace_role(
            current_role,
            RoleAssignmentRequest(
                user_id=request.user_id,
                role=new_role,
                assigned_by=request.changed_by,
                institution_id=request.institution_id,
                department_id=request.department_id,
                justification=f"Role change from {current_role.value} to {new_role.value}: {request.reason}",
                metadata={
                    **request.metadata,
                    **options.audit_metadata,
                    "role_change_type": "immediate",
                    "previous_role": current_role.value,
                },
            ),
            reason=f"Role change: {request.reason}",
        )

        self.permission_checker.invalidate_user_cache(request.user_id)
        return assignment

    async def _get_reviewable_request(self, request_id: str, approver_id: str, action: str) -> RoleRequest:
        role_request = await self.store.get_role_request(request_id)
        if role_request is None:
            raise RequestNotFound("Role request not found", details={"request_id": request_id})
        if not role_request.is_pending:
            raise RequestAlreadyProcessed(
                "Role request is not in pending status", details={"request_id": request_id}
            )

        allowed = await self.permission_checker.has_permission(
            approver_id,
            "role.approve",
            PermissionScope(role_request.institution_id, role_request.department_id),
        )
        if not allowed:
            raise InsufficientPermissions(
                f"Insufficient permissions to {action} role requests",
                operation=f"{action}_role_change",
                user_id=approver_id,
                institution_id=role_request.institution_id,
            )
        return role_request

    async def approve_role_change(
        self, request_id: str, approver_id: str, notes: Optional[str] = None
    ) -> UserRoleAssignment:
        """Approve a pending role request on behalf of a permitted approver."""
        role_request = await self._get_reviewable_request(request_id, approver_id, "approve")
        assignment = await self.role_manager.approve_role(request_id, approver_id, notes)
        self.permission_checker.invalidate_user_cache(role_request.user_id)
        return assignment

    async def deny_role_change(self, request_id: str, approver_id: str, reason: str) -> RoleRequest:
        """Deny a pending role request on behalf of a permitted approver."""
        role_request = await self._get_reviewable_request(request_id, approver_id, "deny")
        denied = await self.role_manager.deny_role(request_id, approver_id, reason)
        self.permission_checker.invalidate_user_cache(role_request.user_id)
        return denied

    def get_change_impact_preview(self, current_role: UserRole, new_role: UserRole) -> ImpactPreview:
        current_permissions = get_role_permissions(current_role)
        new_permissions = get_role_permissions(new_role)
        return ImpactPreview(
            current_permissions=sorted(current_permissions),
            new_permissions=sorted(new_permissions),
            added=sorted(new_permissions - current_permissions),
            removed=sorted(current_permissions - new_permissions),
        )
