"""Integration tests for the role manager against the store."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from campus_roles.core.errors import (
    AlreadyHasRole,
    AssignmentNotFound,
    EscalationBlocked,
    InsufficientPermissions,
    RateLimitExceeded,
    RequestAlreadyProcessed,
    RequestNotFound,
    RoleChangeRequiresApproval,
    RoleSystemError,
    ValidationError,
)
from campus_roles.core.roles import (
    SYSTEM_ACTOR,
    AuditAction,
    RoleRequestStatus,
    RoleStatus,
    UserRole,
    VerificationMethod,
)
from campus_roles.models.roles import BulkRoleAssignment, RoleAssignmentRequest, RoleChangeRequest
from campus_roles.services.role_manager import AUTO_APPROVAL_NOTE
from tests.fixtures import FIXED_NOW, VALID_JUSTIFICATION


def assignment_request(user_id="user-1", role=UserRole.TEACHER, **overrides) -> RoleAssignmentRequest:
    data = {
        "user_id": user_id,
        "role": role,
        "assigned_by": "admin-1",
        "institution_id": "inst-1",
        "justification": "Hired for the spring term",
    }
    data.update(overrides)
    return RoleAssignmentRequest(**data)


class TestRequestRole:
    """Test cases for request_role."""

    @pytest.mark.asyncio
    async def test_teacher_request_is_pending(self, role_manager, audit_service):
        """Test a fresh user requesting the teacher role with default config."""
        request = await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

        assert request.status is RoleRequestStatus.PENDING
        assert request.verification_method is VerificationMethod.ADMIN_APPROVAL
        assert request.requires_approval is True
        assert request.current_role is UserRole.STUDENT
        assert request.requested_at == FIXED_NOW
        assert request.expires_at == request.requested_at + timedelta(days=7)

        stored = await role_manager.get_role_request(request.id)
        assert stored == request

        entries = await audit_service.get_audit_log(user_id="u1")
        assert [e.action for e in entries] == [AuditAction.REQUESTED]
        assert entries[0].metadata["request_id"] == request.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("justification", ["I want it", "", None, "x" * 501])
    async def test_justification_length(self, role_manager, justification):
        with pytest.raises(ValidationError, match="Justification must be between 20 and 500 characters"):
            await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", justification)

    @pytest.mark.asyncio
    async def test_missing_fields(self, role_manager):
        with pytest.raises(ValidationError, match="Missing required fields for role request"):
            await role_manager.request_role("", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

    @pytest.mark.asyncio
    async def test_duplicate_pending_request(self, role_manager, clock):
        await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)
        clock.advance(minutes=1)

        with pytest.raises(ValidationError, match="You already have a pending request for this role") as exc_info:
            await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

        assert exc_info.value.operation == "request_role"
        assert exc_info.value.user_id == "u1"

    @pytest.mark.asyncio
    async def test_client_ip_is_recorded(self, role_manager, store):
        request = await role_manager.request_role(
            "u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION, client_ip="8.8.8.8"
        )

        assert request.metadata["client_ip"] == "8.8.8.8"
        assert await store.list_client_ips("u1", FIXED_NOW - timedelta(hours=1)) == ["8.8.8.8"]

    @pytest.mark.asyncio
    async def test_rate_limited(self, role_manager, rate_limiter):
        await rate_limiter.block_user("u1", "admin-1", "Repeated spam")

        with pytest.raises(RateLimitExceeded, match="User is blocked: Repeated spam") as exc_info:
            await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

        assert exc_info.value.retry_after == 24 * 3600
        assert exc_info.value.status_code == 429
        assert exc_info.value.details["limit_type"] == "block"

    @pytest.mark.asyncio
    async def test_invalid_transition_is_blocked(self, role_manager, grant_role):
        await grant_role("u1", UserRole.TEACHER)

        with pytest.raises(EscalationBlocked) as exc_info:
            await role_manager.request_role("u1", UserRole.SYSTEM_ADMIN, "inst-1", VALID_JUSTIFICATION)

        assert exc_info.value.message == "Role transition from teacher to system_admin is not permitted"
        assert exc_info.value.risk_score == 70
        assert await role_manager.get_user_role_requests("u1") == []

    @pytest.mark.asyncio
    async def test_auto_approval(self, role_manager, grant_role, store):
        """Test that a downgrade to an auto-approved role is granted by the system actor."""
        await grant_role("u2", UserRole.TEACHER)

        request = await role_manager.request_role("u2", UserRole.STUDENT, "inst-1", VALID_JUSTIFICATION)

        assert request.status is RoleRequestStatus.APPROVED
        assert request.verification_method is VerificationMethod.EMAIL_DOMAIN
        assert request.reviewed_by == SYSTEM_ACTOR
        assert request.review_notes == AUTO_APPROVAL_NOTE
        assert request.requires_approval is False

        student = await store.get_active_assignment("u2", UserRole.STUDENT, "inst-1")
        assert student is not None
        assert student.assigned_by == SYSTEM_ACTOR
        assert student.metadata["request_id"] == request.id

    @pytest.mark.asyncio
    async def test_approvers_are_notified(self, role_manager, grant_role, dispatcher):
        await grant_role("dept-admin-1", UserRole.DEPARTMENT_ADMIN)
        await grant_role("inst-admin-2", UserRole.INSTITUTION_ADMIN, institution_id="inst-2")
        await grant_role("sys-admin-9", UserRole.SYSTEM_ADMIN, institution_id="inst-9")

        await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

        assert dispatcher.titles("u1") == ["Role Request Submitted"]
        assert dispatcher.titles("dept-admin-1") == ["New Role Request"]
        assert dispatcher.titles("sys-admin-9") == ["New Role Request"]
        assert dispatcher.titles("inst-admin-2") == []

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_request(self, role_manager, dispatcher):
        dispatcher.fail = True

        request = await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

        assert request.status is RoleRequestStatus.PENDING
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_store_failure_becomes_system_error(self, role_manager, store, monkeypatch):
        monkeypatch.setattr(store, "list_role_requests", AsyncMock(side_effect=RuntimeError("database down")))

        with pytest.raises(RoleSystemError) as exc_info:
            await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

        assert exc_info.value.operation == "request_role"
        assert exc_info.value.status_code == 500


class TestApproveAndDeny:
    """Test cases for approve_role and deny_role."""

    @pytest.fixture
    async def pending(self, role_manager, grant_role):
        await grant_role("dept-admin-1", UserRole.DEPARTMENT_ADMIN)
        return await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

    @pytest.mark.asyncio
    async def test_approve(self, role_manager, pending, audit_service, dispatcher, clock):
        clock.advance(hours=1)

        assignment = await role_manager.approve_role(pending.id, "dept-admin-1", "Welcome aboard")

        assert assignment.role is UserRole.TEACHER
        assert assignment.status is RoleStatus.ACTIVE
        assert assignment.assigned_by == "dept-admin-1"
        assert assignment.metadata == {"request_id": pending.id}

        request = await role_manager.get_role_request(pending.id)
        assert request.status is RoleRequestStatus.APPROVED
        assert request.reviewed_by == "dept-admin-1"
        assert request.review_notes == "Welcome aboard"
        assert request.reviewed_at == FIXED_NOW + timedelta(hours=1)

        actions = {e.action for e in await audit_service.get_audit_log(user_id="u1")}
        assert actions == {AuditAction.REQUESTED, AuditAction.APPROVED, AuditAction.ASSIGNED}
        assigned = await audit_service.get_audit_log(user_id="u1", action=AuditAction.ASSIGNED)
        assert assigned[0].reason == f"Approved role request: {VALID_JUSTIFICATION}"

        assert dispatcher.titles("u1") == ["Role Request Submitted", "Role Request Approved", "Role Assigned"]
        assert await role_manager.get_current_role("u1", "inst-1") is UserRole.TEACHER

    @pytest.mark.asyncio
    async def test_approve_twice(self, role_manager, pending):
        await role_manager.approve_role(pending.id, "dept-admin-1")

        with pytest.raises(RequestAlreadyProcessed, match="Role request is not in pending status"):
            await role_manager.approve_role(pending.id, "dept-admin-1")

    @pytest.mark.asyncio
    async def test_approve_unknown_request(self, role_manager):
        with pytest.raises(RequestNotFound, match="Role request not found"):
            await role_manager.approve_role("missing", "dept-admin-1")

    @pytest.mark.asyncio
    async def test_self_approval_is_refused(self, role_manager, grant_role, escalation_service):
        """Test that even a system administrator cannot approve their own request."""
        await grant_role("u1", UserRole.SYSTEM_ADMIN, institution_id="inst-9")
        request = await role_manager.request_role("u1", UserRole.TEACHER, "inst-1", VALID_JUSTIFICATION)

        with pytest.raises(InsufficientPermissions, match="Cannot approve your own role request"):
            await role_manager.approve_role(request.id, "u1")

        activities = await escalation_service.get_suspicious_activities(institution_id="inst-1")
        assert [a.activity_type for a in activities] == ["self_approval_attempt"]
        assert (await role_manager.get_role_request(request.id)).status is RoleRequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_approver_below_required_role(self, role_manager, pending, grant_role):
        await grant_role("teacher-1", UserRole.TEACHER)

        with pytest.raises(InsufficientPermissions, match="Approver must have department_admin role or higher"):
            await role_manager.approve_role(pending.id, "teacher-1")

    @pytest.mark.asyncio
    async def test_approver_without_roles(self, role_manager, pending):
        with pytest.raises(InsufficientPermissions, match="Approver has no active roles"):
            await role_manager.approve_role(pending.id, "nobody")

    @pytest.mark.asyncio
    async def test_approver_from_other_institution(self, role_manager, pending, grant_role):
        await grant_role("dept-admin-2", UserRole.DEPARTMENT_ADMIN, institution_id="inst-2")

        with pytest.raises(InsufficientPermissions, match="Approver has no active roles"):
            await role_manager.approve_role(pending.id, "dept-admin-2")

    @pytest.mark.asyncio
    async def test_grant_failure_after_approval(self, role_manager, pending, store, monkeypatch):
        monkeypatch.setattr(store, "add_assignment", AsyncMock(side_effect=RuntimeError("disk full")))

        with pytest.raises(RoleSystemError, match="Role request approved but role assignment failed"):
            await role_manager.approve_role(pending.id, "dept-admin-1")

        assert (await role_manager.get_role_request(pending.id)).status is RoleRequestStatus.APPROVED

    @pytest.mark.asyncio
    async def test_deny(self, role_manager, pending, store, dispatcher):
        denied = await role_manager.deny_role(pending.id, "dept-admin-1", "Credentials not verified")

        assert denied.status is RoleRequestStatus.DENIED
        assert denied.review_notes == "Credentials not verified"
        assert denied.reviewed_by == "dept-admin-1"
        assert await store.list_active_assignments("u1", now=FIXED_NOW) == []
        assert dispatcher.titles("u1")[-1] == "Role Request Denied"

        with pytest.raises(RequestAlreadyProcessed):
            await role_manager.deny_role(pending.id, "dept-admin-1", "Still no")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["", "   "])
    async def test_deny_requires_reason(self, role_manager, pending, reason):
        with pytest.raises(ValidationError, match="Reason for denial is required"):
            await role_manager.deny_role(pending.id, "dept-admin-1", reason)

    @pytest.mark.asyncio
    async def test_pending_queries(self, role_manager, pending):
        assert [r.id for r in await role_manager.get_pending_requests("inst-1")] == [pending.id]
        assert await role_manager.get_pending_requests("inst-2") == []
        assert [r.id for r in await role_manager.get_user_role_requests("u1", RoleRequestStatus.PENDING)] == [pending.id]


class TestAssignments:
    """Test cases for direct assignment, temporary roles and revocation."""

    @pytest.mark.asyncio
    async def test_assign_role(self, role_manager, dispatcher):
        assignment = await role_manager.assign_role(assignment_request())

        assert assignment.role is UserRole.TEACHER
        assert assignment.is_temporary is False
        assert dispatcher.titles("user-1") == ["Role Assigned"]

        with pytest.raises(AlreadyHasRole, match="User already has this role"):
            await role_manager.assign_role(assignment_request())

    @pytest.mark.asyncio
    async def test_same_role_in_other_institution(self, role_manager):
        await role_manager.assign_role(assignment_request())
        other = await role_manager.assign_role(assignment_request(institution_id="inst-2"))

        assert other.institution_id == "inst-2"

    @pytest.mark.asyncio
    async def test_assign_role_notifies_change(self, role_manager, grant_role, dispatcher):
        await grant_role("user-1", UserRole.STUDENT, assigned_at=FIXED_NOW - timedelta(days=30))

        await role_manager.assign_role(assignment_request())

        assert dispatcher.titles("user-1") == ["Role Changed"]

    @pytest.mark.asyncio
    async def test_assign_role_missing_fields(self, role_manager):
        with pytest.raises(ValidationError, match="Missing required fields for role assignment"):
            await role_manager.assign_role(assignment_request(assigned_by=None))

    @pytest.mark.asyncio
    async def test_temporary_role(self, role_manager, grant_role):
        await grant_role("user-1", UserRole.STUDENT, assigned_at=FIXED_NOW - timedelta(days=30))

        assignment = await role_manager.assign_temporary_role(
            "user-1", UserRole.TEACHER, "admin-1", "inst-1", FIXED_NOW + timedelta(days=14)
        )

        assert assignment.is_temporary is True
        assert assignment.expires_at == FIXED_NOW + timedelta(days=14)
        assert assignment.metadata["previous_role"] == "student"

    @pytest.mark.asyncio
    async def test_temporary_role_limits(self, role_manager):
        with pytest.raises(ValidationError, match="Temporary role cannot exceed 30 days"):
            await role_manager.assign_temporary_role(
                "user-1", UserRole.TEACHER, "admin-1", "inst-1", FIXED_NOW + timedelta(days=31)
            )

        with pytest.raises(ValidationError, match="Temporary role expiration must be in the future"):
            await role_manager.assign_temporary_role(
                "user-1", UserRole.TEACHER, "admin-1", "inst-1", FIXED_NOW - timedelta(minutes=1)
            )

    @pytest.mark.asyncio
    async def test_revoke_role(self, role_manager, grant_role, audit_service, dispatcher):
        await grant_role("user-1", UserRole.TEACHER)

        revoked = await role_manager.revoke_role("user-1", UserRole.TEACHER, "admin-1", "Contract ended")

        assert revoked.status is RoleStatus.SUSPENDED
        assert await role_manager.get_user_active_roles("user-1") == []
        entries = await audit_service.get_audit_log(user_id="user-1", action=AuditAction.REVOKED)
        assert entries[0].reason == "Contract ended"
        assert dispatcher.titles("user-1") == ["Role Revoked"]

        with pytest.raises(AssignmentNotFound, match="Active role assignment not found"):
            await role_manager.revoke_role("user-1", UserRole.TEACHER, "admin-1")

    @pytest.mark.asyncio
    async def test_is_admin(self, role_manager, grant_role):
        await grant_role("inst-admin-1", UserRole.INSTITUTION_ADMIN)
        await grant_role("sys-admin-1", UserRole.SYSTEM_ADMIN, institution_id="inst-9")
        await grant_role("teacher-1", UserRole.TEACHER)

        assert await role_manager.is_admin("inst-admin-1", "inst-1") is True
        assert await role_manager.is_admin("inst-admin-1", "inst-2") is False
        assert await role_manager.is_admin("sys-admin-1", "inst-1") is True
        assert await role_manager.is_admin("teacher-1", "inst-1") is False


class TestChangeRole:
    """Test cases for change_role."""

    @pytest.mark.asyncio
    async def test_admin_change_is_immediate(self, role_manager, grant_role, store, clock):
        await grant_role("inst-admin-1", UserRole.INSTITUTION_ADMIN)
        await grant_role("user-1", UserRole.TEACHER, department_id="dept-1")
        clock.advance(minutes=5)

        assignment = await role_manager.change_role(RoleChangeRequest(
            user_id="user-1",
            current_role=UserRole.TEACHER,
            new_role=UserRole.DEPARTMENT_ADMIN,
            changed_by="inst-admin-1",
            reason="Promoted to head of department",
            institution_id="inst-1",
            requires_approval=True,
        ))

        assert assignment.role is UserRole.DEPARTMENT_ADMIN
        assert assignment.department_id == "dept-1"
        assert await store.get_active_assignment("user-1", UserRole.TEACHER, "inst-1") is None
        assert await role_manager.get_current_role("user-1", "inst-1") is UserRole.DEPARTMENT_ADMIN

    @pytest.mark.asyncio
    async def test_change_requiring_approval_creates_request(self, role_manager, grant_role):
        await grant_role("user-1", UserRole.STUDENT)

        with pytest.raises(RoleChangeRequiresApproval) as exc_info:
            await role_manager.change_role(RoleChangeRequest(
                user_id="user-1",
                current_role=UserRole.STUDENT,
                new_role=UserRole.TEACHER,
                changed_by="user-1",
                reason=VALID_JUSTIFICATION,
                institution_id="inst-1",
                requires_approval=True,
            ))

        request = await role_manager.get_role_request(exc_info.value.request_id)
        assert request.status is RoleRequestStatus.PENDING
        assert str(exc_info.value) == f"Role change requires approval. Request created: {request.id}"
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_change_without_current_role(self, role_manager):
        with pytest.raises(AssignmentNotFound, match="Current role assignment not found"):
            await role_manager.change_role(RoleChangeRequest(
                user_id="user-1",
                current_role=UserRole.TEACHER,
                new_role=UserRole.STUDENT,
                changed_by="admin-1",
                reason="Stepping back",
                institution_id="inst-1",
            ))

    @pytest.mark.asyncio
    async def test_change_missing_fields(self, role_manager):
        with pytest.raises(ValidationError, match="Missing required fields for role change"):
            await role_manager.change_role(RoleChangeRequest(user_id="user-1", new_role=UserRole.TEACHER))

    @pytest.mark.asyncio
    async def test_change_to_held_role_keeps_current_role(self, role_manager, grant_role, store):
        await grant_role("inst-admin-1", UserRole.INSTITUTION_ADMIN)
        await grant_role("user-1", UserRole.STUDENT)
        teacher = await grant_role("user-1", UserRole.TEACHER)

        with pytest.raises(AlreadyHasRole, match="User already has this role"):
            await role_manager.change_role(RoleChangeRequest(
                user_id="user-1",
                current_role=UserRole.TEACHER,
                new_role=UserRole.STUDENT,
                changed_by="inst-admin-1",
                reason="Course load reduced",
                institution_id="inst-1",
            ))

        current = await store.get_active_assignment("user-1", UserRole.TEACHER, "inst-1")
        assert current is not None
        assert current.id == teacher.id
        assert current.status is RoleStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_grant_reinstates_current_role(self, role_manager, grant_role, store, monkeypatch):
        await grant_role("inst-admin-1", UserRole.INSTITUTION_ADMIN)
        teacher = await grant_role("user-1", UserRole.TEACHER)
        monkeypatch.setattr(
            role_manager, "assign_role", AsyncMock(side_effect=RoleSystemError("Unexpected error during assign_role"))
        )

        with pytest.raises(RoleSystemError):
            await role_manager.change_role(RoleChangeRequest(
                user_id="user-1",
                current_role=UserRole.TEACHER,
                new_role=UserRole.STUDENT,
                changed_by="inst-admin-1",
                reason="Course load reduced",
                institution_id="inst-1",
            ))

        current = await store.get_active_assignment("user-1", UserRole.TEACHER, "inst-1")
        assert current is not None
        assert current.id == teacher.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requires_approval", [True, False])
    async def test_department_admin_cannot_grant_institution_admin(
        self, role_manager, grant_role, store, requires_approval
    ):
        await grant_role("dept-admin-1", UserRole.DEPARTMENT_ADMIN, department_id="dept-1")
        await grant_role("user-1", UserRole.TEACHER, department_id="dept-1")

        with pytest.raises(RoleChangeRequiresApproval) as exc_info:
            await role_manager.change_role(RoleChangeRequest(
                user_id="user-1",
                current_role=UserRole.TEACHER,
                new_role=UserRole.INSTITUTION_ADMIN,
                changed_by="dept-admin-1",
                reason=VALID_JUSTIFICATION,
                institution_id="inst-1",
                requires_approval=requires_approval,
            ))

        request = await role_manager.get_role_request(exc_info.value.request_id)
        assert request.status is RoleRequestStatus.PENDING
        assert request.requested_role is UserRole.INSTITUTION_ADMIN
        assert await store.get_active_assignment("user-1", UserRole.INSTITUTION_ADMIN, "inst-1") is None
        assert await store.get_active_assignment("user-1", UserRole.TEACHER, "inst-1") is not None

    @pytest.mark.asyncio
    async def test_department_admin_cannot_grant_system_admin(self, role_manager, grant_role, store):
        await grant_role("dept-admin-1", UserRole.DEPARTMENT_ADMIN, department_id="dept-1")
        await grant_role("user-1", UserRole.TEACHER)

        with pytest.raises(EscalationBlocked):
            await role_manager.change_role(RoleChangeRequest(
                user_id="user-1",
                current_role=UserRole.TEACHER,
                new_role=UserRole.SYSTEM_ADMIN,
                changed_by="dept-admin-1",
                reason=VALID_JUSTIFICATION,
                institution_id="inst-1",
                requires_approval=True,
            ))

        assert await store.get_active_assignment("user-1", UserRole.SYSTEM_ADMIN, "inst-1") is None
        assert await store.get_active_assignment("user-1", UserRole.TEACHER, "inst-1") is not None

    @pytest.mark.asyncio
    async def test_can_authorize_change(self, role_manager, grant_role):
        await grant_role("dept-admin-1", UserRole.DEPARTMENT_ADMIN, department_id="dept-1")
        await grant_role("inst-admin-1", UserRole.INSTITUTION_ADMIN)
        await grant_role("sys-admin-1", UserRole.SYSTEM_ADMIN, institution_id="platform")
        await grant_role("teacher-1", UserRole.TEACHER)

        assert await role_manager.can_authorize_change(
            "dept-admin-1", UserRole.STUDENT, UserRole.TEACHER, "inst-1"
        ) is True
        assert await role_manager.can_authorize_change(
            "dept-admin-1", UserRole.TEACHER, UserRole.DEPARTMENT_ADMIN, "inst-1"
        ) is False
        assert await role_manager.can_authorize_change(
            "dept-admin-1", UserRole.INSTITUTION_ADMIN, UserRole.TEACHER, "inst-1"
        ) is False
        assert await role_manager.can_authorize_change(
            "inst-admin-1", UserRole.TEACHER, UserRole.DEPARTMENT_ADMIN, "inst-1"
        ) is True
        assert await role_manager.can_authorize_change(
            "inst-admin-1", UserRole.TEACHER, UserRole.DEPARTMENT_ADMIN, "inst-2"
        ) is False
        assert await role_manager.can_authorize_change(
            "sys-admin-1", UserRole.DEPARTMENT_ADMIN, UserRole.INSTITUTION_ADMIN, "inst-1"
        ) is True
        assert await role_manager.can_authorize_change(
            "teacher-1", UserRole.TEACHER, UserRole.STUDENT, "inst-1"
        ) is False


class TestBulkAssignment:
    """Test cases for process_bulk_role_assignment."""

    @pytest.mark.asyncio
    async def test_per_item_failures(self, role_manager):
        bulk = BulkRoleAssignment(assignments=[
            assignment_request("user-1"),
            assignment_request(""),
            assignment_request("user-3", UserRole.STUDENT),
            assignment_request(None),
            assignment_request("user-5"),
        ])

        result = await role_manager.process_bulk_role_assignment(bulk)

        assert result.successful == 3
        assert result.failed == 2
        assert [e.index for e in result.errors] == [1, 3]
        assert all("Missing required fields" in e.error for e in result.errors)
        assert [a.user_id for a in result.assignments] == ["user-1", "user-3", "user-5"]

    @pytest.mark.asyncio
    async def test_duplicate_is_isolated(self, role_manager):
        bulk = BulkRoleAssignment(assignments=[assignment_request("user-1"), assignment_request("user-1")])

        result = await role_manager.process_bulk_role_assignment(bulk)

        assert result.successful == 1
        assert result.errors[0].error == "User already has this role"

    @pytest.mark.asyncio
    async def test_validate_only(self, role_manager, store):
        bulk = BulkRoleAssignment(
            assignments=[assignment_request("user-1"), assignment_request("")],
            validate_only=True,
        )

        result = await role_manager.process_bulk_role_assignment(bulk)

        assert result.successful == 1
        assert result.failed == 1
        assert result.assignments == []
        assert await store.list_active_assignments("user-1", now=FIXED_NOW) == []
