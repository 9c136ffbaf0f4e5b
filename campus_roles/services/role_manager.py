"""
Role Manager.

Owns the role request lifecycle (Pending -> Approved | Denied | Expired) and
role assignments. ``request_role`` is the only creator of pending requests;
it runs validation, rate limiting and escalation prevention before anything
is persisted.

Approval policy resolution order:
1. Escalation prevention may force approval (rule, suspicious pattern or
   risk score above the approval threshold).
2. ``require_approval_for_roles`` selects admin approval as the
   verification method.
3. Only roles in ``auto_approve_roles`` verified by email domain, with no
   approval forced in step 1, are approved immediately by the system actor.

Notification and audit failures are logged and never fail an operation.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from campus_roles.config import RoleManagerConfig
from campus_roles.config.logging import StructuredLogger, security_logger
from campus_roles.core.errors import (
    AlreadyHasRole,
    AssignmentNotFound,
    EscalationBlocked,
    InsufficientPermissions,
    RateLimitExceeded,
    RequestAlreadyProcessed,
    RequestNotFound,
    RoleChangeRequiresApproval,
    RoleManagementError,
    RoleSystemError,
    ValidationError,
)
from campus_roles.core.roles import (
    ADMIN_ROLES,
    SYSTEM_ACTOR,
    AuditAction,
    RoleRequestStatus,
    RoleStatus,
    UserRole,
    VerificationMethod,
    as_role,
    can_approve_by_default,
    highest_role,
    is_role_equal_or_higher,
    is_upgrade,
)
from campus_roles.db.store import RoleStore
from campus_roles.models.roles import (
    BulkAssignmentError,
    BulkAssignmentResult,
    BulkRoleAssignment,
    RoleAssignmentRequest,
    RoleAuditEntry,
    RoleChangeRequest,
    RoleRequest,
    UserRoleAssignment,
)
from campus_roles.services.audit import RoleAuditService
from campus_roles.services.escalation import EscalationPreventionService, RequestContext
from campus_roles.services.notifications import RoleNotifier
from campus_roles.services.rate_limiter import RoleRequestRateLimiter
from campus_roles.utils.helpers import generate_id, utcnow

logger = logging.getLogger(__name__)
role_logger = StructuredLogger("campus_roles.roles")

AUTO_APPROVAL_NOTE = "Auto-approved based on verification"


class RoleManager:
    """Role request, approval and assignment operations."""

    def __init__(
        self,
        store: RoleStore,
        rate_limiter: RoleRequestRateLimiter,
        escalation: EscalationPreventionService,
        notifier: RoleNotifier,
        audit: RoleAuditService,
        config: Optional[RoleManagerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.escalation = escalation
        self.notifier = notifier
        self.audit = audit
        self.config = config or RoleManagerConfig()
        self.clock = clock

    @contextmanager
    def _operation(self, operation: str, user_id: Optional[str] = None, institution_id: Optional[str] = None):
        """Log role errors with context and wrap anything else as RoleSystemError."""
        try:
            yield
        except RoleManagementError as e:
            if e.operation is None:
                e.operation = operation
            if e.user_id is None:
                e.user_id = user_id
            if e.institution_id is None:
                e.institution_id = institution_id
            logger.warning(f"{operation} failed for user {user_id}: {e.message}", extra={"code": e.code})
            raise
        except Exception as e:
            logger.error(f"Unexpected error in {operation} for user {user_id}: {e}", exc_info=True)
            raise RoleSystemError(
                f"Unexpected error during {operation}",
                operation=operation,
                user_id=user_id,
                institution_id=institution_id,
            ) from e

    # ------------------------------------------------------------------
    # Role requests
    # ------------------------------------------------------------------

    async def request_role(
        self,
        user_id: str,
        role: UserRole,
        institution_id: str,
        justification: Optional[str] = None,
        department_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> RoleRequest:
        """
        Submit a role request.

        Args:
            user_id: Requesting user
            role: Role being requested
            institution_id: Institution the role applies to
            justification: Reason for the request (20-500 characters)
            department_id: Optional department scope
            client_ip: Client address, used for rate limiting
            context: Client details for escalation heuristics

        Returns:
            The stored request, already Approved when auto-approval applied

        Raises:
            ValidationError: Missing fields, bad justification or duplicate request
            RateLimitExceeded: The rate limiter denied the request
            EscalationBlocked: Escalation prevention denied the request
        """
        with self._operation("request_role", user_id, institution_id):
            if not user_id or not role or not institution_id:
                raise ValidationError("Missing required fields for role request", field="user_id")
            role = as_role(role)

            length = len(justification or "")
            if length < self.config.min_justification_length or length > self.config.max_justification_length:
                raise ValidationError(
                    f"Justification must be between {self.config.min_justification_length} "
                    f"and {self.config.max_justification_length} characters",
                    field="justification",
                )

            pending = await self.store.list_role_requests(
                user_id=user_id,
                institution_id=institution_id,
                status=RoleRequestStatus.PENDING,
                requested_role=role,
                limit=1,
            )
            if pending:
                raise ValidationError(
                    "You already have a pending request for this role",
                    field="role",
                    details={"request_id": pending[0].id},
                )

            if context is None and client_ip:
                context = RequestContext(ip_address=client_ip)
            if client_ip is None and context is not None:
                client_ip = context.ip_address

            rate_limit = await self.rate_limiter.check_rate_limit(user_id, role, institution_id, client_ip)
            if not rate_limit.allowed:
                raise RateLimitExceeded(
                    rate_limit.reason or "Rate limit exceeded",
                    retry_after=rate_limit.retry_after,
                    reset_time=rate_limit.reset_time,
                    details={"limit_type": rate_limit.limit_type},
                )

            current_role = await self.escalation.get_current_role(user_id, institution_id)
            decision = await self.escalation.validate_role_request(
                user_id, current_role, role, institution_id, context
            )
            if not decision.allowed:
                raise EscalationBlocked(
                    decision.reason or "Role request blocked",
                    risk_score=decision.risk_score,
                    details={"failed_checks": decision.failed_checks},
                )

            for field_name, value in (("user_id", user_id), ("institution_id", institution_id)):
                if not value.strip():
                    raise ValidationError(f"Invalid identifier for {field_name}", field=field_name)
            if department_id is not None and not department_id.strip():
                raise ValidationError("Invalid identifier for department_id", field="department_id")

            verification_method = self._determine_verification_method(role)
            requires_approval = (
                decision.requires_approval or verification_method == VerificationMethod.ADMIN_APPROVAL
            )

            now = self.clock()
            request = RoleRequest(
                id=generate_id(),
                user_id=user_id,
                requested_role=role,
                current_role=current_role,
                justification=justification,
                status=RoleRequestStatus.PENDING,
                requested_at=now,
                verification_method=verification_method,
                institution_id=institution_id,
                department_id=department_id,
                expires_at=now + timedelta(days=self.config.default_role_request_expiration),
                metadata={
                    "requires_approval": requires_approval,
                    "risk_score": decision.risk_score,
                    "failed_checks": decision.failed_checks,
                    "client_ip": client_ip,
                    "user_agent": context.user_agent if context else None,
                },
            )
            request = await self.store.add_role_request(request)

            await self.audit.log_action(
                AuditAction.REQUESTED,
                user_id=user_id,
                performed_by=user_id,
                old_role=current_role,
                new_role=role,
                reason=justification,
                institution_id=institution_id,
                department_id=department_id,
                metadata={"request_id": request.id, "risk_score": decision.risk_score},
            )
            role_logger.log_role_event(
                "requested",
                user_id,
                role=role.value,
                institution_id=institution_id,
                request_id=request.id,
                risk_score=decision.risk_score,
            )
            await self.notifier.notify_role_request_submitted(request)

            if self._can_auto_approve(role, verification_method) and not requires_approval:
                await self._approve(request, SYSTEM_ACTOR, AUTO_APPROVAL_NOTE, trusted=True)
                request = await self.store.get_role_request(request.id)

            return request

    async def approve_role(
        self, request_id: str, approver_id: str, notes: Optional[str] = None
    ) -> UserRoleAssignment:
        """
        Approve a pending role request and grant the role.

        Raises:
            RequestNotFound: No such request
            RequestAlreadyProcessed: The request is no longer pending
            InsufficientPermissions: The approver may not approve it
            RoleSystemError: The request was approved but the grant failed
        """
        with self._operation("approve_role", approver_id):
            request = await self._get_pending_request(request_id)
            return await self._approve(request, approver_id, notes, trusted=False)

    async def _approve(
        self,
        request: RoleRequest,
        approver_id: str,
        notes: Optional[str],
        trusted: bool,
    ) -> UserRoleAssignment:
        # Trusted approvals come from the engine itself (auto-approval)
        if not trusted:
            await self._validate_approver(request, approver_id, "approval")

        approved = await self.store.resolve_role_request(
            request.id,
            RoleRequestStatus.APPROVED,
            resolved_at=self.clock(),
            reviewed_by=approver_id,
            review_notes=notes,
        )
        if approved is None:
            raise RequestAlreadyProcessed("Role request is not in pending status", details={"request_id": request.id})

        security_logger.log_security_event(
            "role_request_approved",
            approved.user_id,
            severity="medium" if approved.requested_role in ADMIN_ROLES else "low",
            description=f"Role request for {approved.requested_role.value} approved",
            request_id=approved.id,
            approved_by=approver_id,
            institution_id=approved.institution_id,
        )
        await self.audit.log_action(
            AuditAction.APPROVED,
            user_id=approved.user_id,
            performed_by=approver_id,
            old_role=approved.current_role,
            new_role=approved.requested_role,
            reason=notes,
            institution_id=approved.institution_id,
            department_id=approved.department_id,
            metadata={"request_id": approved.id, "approver_validated": not trusted},
        )
        await self.notifier.notify_role_request_approved(approved, approver_id)

        try:
            return await self.assign_role(RoleAssignmentRequest(
                user_id=approved.user_id,
                role=approved.requested_role,
                assigned_by=approver_id,
                institution_id=approved.institution_id,
                department_id=approved.department_id,
                justification=f"Approved role request: {approved.justification}",
                metadata={"request_id": approved.id},
            ))
        except Exception as e:
            logger.critical(
                f"Role request {approved.id} was approved but assigning "
                f"{approved.requested_role.value} to {approved.user_id} failed: {e}",
                exc_info=True,
            )
            raise RoleSystemError(
                "Role request approved but role assignment failed",
                operation="approve_role",
                user_id=approved.user_id,
                institution_id=approved.institution_id,
                details={"request_id": approved.id},
            ) from e

    async def deny_role(self, request_id: str, approver_id: str, reason: str) -> RoleRequest:
        """
        Deny a pending role request. Assignments are left untouched.

        Raises:
            ValidationError: Empty reason
            RequestNotFound: No such request
            RequestAlreadyProcessed: The request is no longer pending
            InsufficientPermissions: The approver may not deny it
        """
        with self._operation("deny_role", approver_id):
            if not reason or not reason.strip():
                raise ValidationError("Reason for denial is required", field="reason")

            request = await self._get_pending_request(request_id)
            await self._validate_approver(request, approver_id, "denial")

            denied = await self.store.resolve_role_request(
                request.id,
                RoleRequestStatus.DENIED,
                resolved_at=self.clock(),
                reviewed_by=approver_id,
                review_notes=reason,
            )
            if denied is None:
                raise RequestAlreadyProcessed("Role request is not in pending status", details={"request_id": request_id})

            security_logger.log_security_event(
                "role_request_denied",
                denied.user_id,
                severity="low",
                description=f"Role request for {denied.requested_role.value} denied",
                request_id=denied.id,
                denied_by=approver_id,
                denial_reason=reason,
            )
            await self.audit.log_action(
                AuditAction.DENIED,
                user_id=denied.user_id,
                performed_by=approver_id,
                old_role=denied.current_role,
                new_role=denied.requested_role,
                reason=reason,
                institution_id=denied.institution_id,
                department_id=denied.department_id,
                metadata={"request_id": denied.id},
            )
            await self.notifier.notify_role_request_denied(denied, approver_id, reason)
            return denied

    async def _get_pending_request(self, request_id: str) -> RoleRequest:
        request = await self.store.get_role_request(request_id)
        if request is None:
            raise RequestNotFound("Role request not found", details={"request_id": request_id})
        if not request.is_pending:
            raise RequestAlreadyProcessed(
                "Role request is not in pending status",
                details={"request_id": request_id, "status": request.status.value},
            )
        return request

    async def _validate_approver(self, request: RoleRequest, approver_id: str, action: str) -> None:
        verdict = await self.escalation.validate_approver_permission(approver_id, request)
        if not verdict.allowed:
            security_logger.log_security_event(
                f"unauthorized_{action}_attempt",
                approver_id,
                severity="high",
                description=verdict.reason,
                request_id=request.id,
                requested_role=request.requested_role.value,
                institution_id=request.institution_id,
            )
            raise InsufficientPermissions(
                verdict.reason or f"Insufficient permissions for role request {action}",
                details={"request_id": request.id},
            )

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def _validate_assignment(self, request: RoleAssignmentRequest) -> None:
        if not request.user_id or not request.role or not request.assigned_by or not request.institution_id:
            raise ValidationError("Missing required fields for role assignment", field="user_id")
        if request.is_temporary and request.expires_at is None:
            raise ValidationError("Temporary role assignment requires an expiration date", field="expires_at")

    async def ensure_assignable(self, request: RoleAssignmentRequest) -> UserRole:
        """Raise unless ``assign_role`` would accept the request. Nothing is written."""
        self._validate_assignment(request)
        role = as_role(request.role)

        existing = await self.store.get_active_assignment(request.user_id, role, request.institution_id)
        if existing is not None:
            raise AlreadyHasRole("User already has this role", details={"assignment_id": existing.id})
        return role

    async def assign_role(self, request: RoleAssignmentRequest) -> UserRoleAssignment:
        """
        Grant a role directly.

        Raises:
            ValidationError: Missing fields
            AlreadyHasRole: The user already holds the role in the institution
        """
        with self._operation("assign_role", request.user_id, request.institution_id):
            role = await self.ensure_assignable(request)
            previous = await self.store.get_current_assignment(request.user_id, request.institution_id)

            now = self.clock()
            assignment = await self.store.add_assignment(UserRoleAssignment(
                id=generate_id(),
                user_id=request.user_id,
                role=role,
                status=RoleStatus.ACTIVE,
                assigned_by=request.assigned_by,
                assigned_at=now,
                expires_at=request.expires_at,
                department_id=request.department_id,
                institution_id=request.institution_id,
                is_temporary=request.is_temporary,
                metadata=dict(request.metadata),
                created_at=now,
                updated_at=now,
            ))

            await self.notifier.notify_role_assigned(assignment, previous.role if previous else None)
            await self.audit.log_action(
                AuditAction.ASSIGNED,
                user_id=assignment.user_id,
                performed_by=request.assigned_by,
                old_role=previous.role if previous else None,
                new_role=role,
                reason=request.justification,
                institution_id=assignment.institution_id,
                department_id=assignment.department_id,
                metadata={"assignment_id": assignment.id, "is_temporary": assignment.is_temporary},
            )
            role_logger.log_role_event(
                "assigned",
                assignment.user_id,
                role=role.value,
                performed_by=request.assigned_by,
                institution_id=assignment.institution_id,
                assignment_id=assignment.id,
            )
            return assignment

    async def assign_temporary_role(
        self,
        user_id: str,
        role: UserRole,
        assigned_by: str,
        institution_id: str,
        expires_at: datetime,
        department_id: Optional[str] = None,
        justification: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UserRoleAssignment:
        """
        Grant a role that reverts automatically at ``expires_at``.

        The user's current role is stored as ``previous_role`` so the
        expiry sweep can restore it.
        """
        with self._operation("assign_temporary_role", user_id, institution_id):
            now = self.clock()
            max_days = self.config.max_temporary_role_duration
            if expires_at is None or expires_at <= now:
                raise ValidationError("Temporary role expiration must be in the future", field="expires_at")
            if expires_at > now + timedelta(days=max_days):
                raise ValidationError(f"Temporary role cannot exceed {max_days} days", field="expires_at")

            values = dict(metadata or {})
            if user_id and institution_id:
                previous = await self.store.get_current_assignment(user_id, institution_id)
                if previous is not None:
                    values.setdefault("previous_role", previous.role.value)

        return await self.assign_role(RoleAssignmentRequest(
            user_id=user_id,
            role=role,
            assigned_by=assigned_by,
            institution_id=institution_id,
            department_id=department_id,
            is_temporary=True,
            expires_at=expires_at,
            justification=justification or "Temporary role assignment",
            metadata=values,
        ))

    async def revoke_role(
        self,
        user_id: str,
        role: UserRole,
        revoked_by: str,
        reason: Optional[str] = None,
        institution_id: Optional[str] = None,
    ) -> UserRoleAssignment:
        """Suspend a user's active assignment for ``role``. No replacement is granted."""
        with self._operation("revoke_role", user_id, institution_id):
            role = as_role(role)
            assignment = await self.store.get_active_assignment(user_id, role, institution_id)
            if assignment is None:
                raise AssignmentNotFound("Active role assignment not found", details={"role": role.value})

            revoked = await self.store.update_assignment(
                assignment.id, updated_at=self.clock(), status=RoleStatus.SUSPENDED
            )

            await self.audit.log_action(
                AuditAction.REVOKED,
                user_id=user_id,
                performed_by=revoked_by,
                old_role=role,
                reason=reason,
                institution_id=assignment.institution_id,
                department_id=assignment.department_id,
                metadata={"assignment_id": assignment.id},
            )
            role_logger.log_role_event(
                "revoked",
                user_id,
                role=role.value,
                performed_by=revoked_by,
                institution_id=assignment.institution_id,
                assignment_id=assignment.id,
            )
            await self.notifier.notify_role_revoked(user_id, role, revoked_by, reason)
            return revoked

    async def change_role(self, request: RoleChangeRequest) -> UserRoleAssignment:
        """
        Move a user from ``current_role`` to ``new_role``.

        Upgrades, and any change flagged ``requires_approval``, go through a
        role request unless the actor may authorize the change themselves
        (see ``can_authorize_change``). ``RoleChangeRequiresApproval`` then
        carries the request id.
        """
        with self._operation("change_role", request.user_id, request.institution_id):
            if (
                not request.user_id
                or not request.current_role
                or not request.new_role
                or not request.changed_by
                or not request.institution_id
            ):
                raise ValidationError("Missing required fields for role change", field="user_id")

            current = await self.store.get_active_assignment(
                request.user_id, request.current_role, request.institution_id
            )
            if current is None:
                raise AssignmentNotFound("Current role assignment not found")

            needs_approval = request.requires_approval or is_upgrade(request.current_role, request.new_role)
            if needs_approval and not await self.can_authorize_change(
                request.changed_by, request.current_role, request.new_role, request.institution_id
            ):
                role_request = await self.request_role(
                    request.user_id,
                    request.new_role,
                    request.institution_id,
                    justification=request.reason,
                    department_id=request.department_id,
                )
                raise RoleChangeRequiresApproval(
                    f"Role change requires approval. Request created: {role_request.id}",
                    request_id=role_request.id,
                )

            return await self.replace_role(
                request.current_role,
                RoleAssignmentRequest(
                    user_id=request.user_id,
                    role=request.new_role,
                    assigned_by=request.changed_by,
                    institution_id=request.institution_id,
                    department_id=request.department_id or current.department_id,
                    justification=f"Role change: {request.reason}",
                    metadata=request.metadata,
                ),
                reason=request.reason,
            )

    async def replace_role(
        self, current_role: UserRole, assignment: RoleAssignmentRequest, reason: Optional[str] = None
    ) -> UserRoleAssignment:
        """
        Revoke ``current_role`` and grant ``assignment.role`` in its place.

        The new assignment is checked before anything is written. If the
        grant still fails, the revoked assignment is reinstated.
        """
        await self.ensure_assignable(assignment)
        revoked = await self.revoke_role(
            assignment.user_id,
            current_role,
            assignment.assigned_by,
            reason,
            institution_id=assignment.institution_id,
        )
        try:
            return await self.assign_role(assignment)
        except Exception:
            await self.store.update_assignment(revoked.id, updated_at=self.clock(), status=RoleStatus.ACTIVE)
            logger.error(
                f"Reinstated {revoked.role.value} assignment {revoked.id} for user {revoked.user_id} "
                f"after the replacement grant failed"
            )
            raise

    async def can_authorize_change(
        self, actor_id: str, current_role: UserRole, new_role: UserRole, institution_id: str
    ) -> bool:
        """
        Whether an actor may carry out a role change without a role request.

        Only administrators qualify. A downgrade needs an actor at or above
        the user's current role; an upgrade needs the approver level of the
        matching escalation rule, or the default approval matrix when no
        rule names one.
        """
        assignments = await self.store.list_active_assignments(actor_id, now=self.clock())
        actor_role = highest_role([
            a.role for a in assignments
            if a.role == UserRole.SYSTEM_ADMIN or a.institution_id == institution_id
        ])
        if actor_role is None or actor_role not in ADMIN_ROLES:
            return False

        current_role, new_role = as_role(current_role), as_role(new_role)
        if not is_upgrade(current_role, new_role):
            return is_role_equal_or_higher(actor_role, current_role)

        rule = self.escalation.find_escalation_rule(current_role, new_role)
        if rule is not None and rule.required_approver_role is not None:
            return is_role_equal_or_higher(actor_role, rule.required_approver_role)
        return can_approve_by_default(actor_role, new_role)

    async def process_bulk_role_assignment(self, bulk: BulkRoleAssignment) -> BulkAssignmentResult:
        """
        Assign roles in bulk. Each item succeeds or fails on its own.

        With ``validate_only`` nothing is persisted; ``successful`` counts
        the items that passed validation.
        """
        result = BulkAssignmentResult()

        for index, item in enumerate(bulk.assignments):
            try:
                if bulk.validate_only:
                    self._validate_assignment(item)
                else:
                    result.assignments.append(await self.assign_role(item))
                result.successful += 1
            except RoleManagementError as e:
                result.failed += 1
                result.errors.append(BulkAssignmentError(index=index, user_id=item.user_id, error=e.message))

        logger.info(
            f"Bulk role assignment finished: {result.successful} succeeded, {result.failed} failed"
            + (" (validation only)" if bulk.validate_only else "")
        )
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def is_admin(self, user_id: str, institution_id: Optional[str] = None) -> bool:
        """Whether the user holds an administrative role in the institution (or is a system admin)."""
        assignments = await self.store.list_active_assignments(user_id, now=self.clock())
        for assignment in assignments:
            if assignment.role == UserRole.SYSTEM_ADMIN:
                return True
            if assignment.role in ADMIN_ROLES and (
                institution_id is None or assignment.institution_id == institution_id
            ):
                return True
        return False

    async def get_role_request(self, request_id: str) -> Optional[RoleRequest]:
        return await self.store.get_role_request(request_id)

    async def get_user_role_requests(
        self, user_id: str, status: Optional[RoleRequestStatus] = None
    ) -> List[RoleRequest]:
        return await self.store.list_role_requests(user_id=user_id, status=status)

    async def get_pending_requests(
        self, institution_id: str, department_id: Optional[str] = None
    ) -> List[RoleRequest]:
        """Pending requests of an institution (optionally one department), newest first."""
        return await self.store.list_role_requests(
            institution_id=institution_id,
            department_id=department_id,
            status=RoleRequestStatus.PENDING,
        )

    async def get_user_active_roles(
        self, user_id: str, institution_id: Optional[str] = None
    ) -> List[UserRoleAssignment]:
        return await self.store.list_active_assignments(user_id, now=self.clock(), institution_id=institution_id)

    async def get_current_role(self, user_id: str, institution_id: str) -> Optional[UserRole]:
        assignment = await self.store.get_current_assignment(user_id, institution_id)
        return assignment.role if assignment else None

    async def get_audit_log(
        self,
        user_id: Optional[str] = None,
        institution_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[RoleAuditEntry]:
        return await self.audit.get_audit_log(user_id=user_id, institution_id=institution_id, limit=limit)

    def _determine_verification_method(self, role: UserRole) -> VerificationMethod:
        if role in self.config.auto_approve_roles:
            return VerificationMethod.EMAIL_DOMAIN
        if role in self.config.require_approval_for_roles:
            return VerificationMethod.ADMIN_APPROVAL
        return VerificationMethod.MANUAL_REVIEW

    def _can_auto_approve(self, role: UserRole, method: VerificationMethod) -> bool:
        return role in self.config.auto_approve_roles and method == VerificationMethod.EMAIL_DOMAIN
