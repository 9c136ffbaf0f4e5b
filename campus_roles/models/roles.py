"""
Role models for the campus role engine.

This module defines the persisted role entities (requests, assignments,
audit entries, security records) and the transient inputs accepted by the
role services.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from campus_roles.core.roles import (
    AuditAction,
    RoleRequestStatus,
    RoleStatus,
    Severity,
    UserRole,
    VerificationMethod,
)


class RoleRequest(BaseModel):
    """A user's ask for a new role."""
    id: str = Field(..., description="Unique identifier for the request")
    user_id: str = Field(..., description="Requesting user")
    requested_role: UserRole = Field(..., description="Role being requested")
    current_role: Optional[UserRole] = Field(default=None, description="Role held when the request was made")
    justification: Optional[str] = Field(default=None, description="Free text reason, 20-500 characters")
    status: RoleRequestStatus = Field(default=RoleRequestStatus.PENDING, description="Lifecycle status")
    requested_at: datetime = Field(..., description="Creation timestamp")
    reviewed_at: Optional[datetime] = Field(default=None, description="Resolution timestamp")
    reviewed_by: Optional[str] = Field(default=None, description="Approver or denier")
    review_notes: Optional[str] = Field(default=None, description="Approval notes or denial reason")
    verification_method: VerificationMethod = Field(..., description="How the role gets verified")
    institution_id: str = Field(..., description="Institution scope")
    department_id: Optional[str] = Field(default=None, description="Department scope")
    expires_at: datetime = Field(..., description="Moment a pending request lapses")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Security flags and client details")

    @property
    def requires_approval(self) -> bool:
        return bool(self.metadata.get("requires_approval", False))

    @property
    def is_pending(self) -> bool:
        return self.status == RoleRequestStatus.PENDING


class UserRoleAssignment(BaseModel):
    """A role binding held now or in the past."""
    id: str = Field(..., description="Unique identifier for the assignment")
    user_id: str = Field(..., description="User holding the role")
    role: UserRole = Field(..., description="Assigned role")
    status: RoleStatus = Field(default=RoleStatus.ACTIVE, description="Lifecycle status")
    assigned_by: str = Field(..., description="Actor that granted the role")
    assigned_at: datetime = Field(..., description="Grant timestamp")
    expires_at: Optional[datetime] = Field(default=None, description="Expiry for temporary roles")
    department_id: Optional[str] = Field(default=None, description="Department scope")
    institution_id: str = Field(..., description="Institution scope")
    is_temporary: bool = Field(default=False, description="Whether the role reverts automatically")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Grant details and extension history")
    created_at: datetime = Field(..., description="Row creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")

    @property
    def is_active(self) -> bool:
        return self.status == RoleStatus.ACTIVE


class RoleAuditEntry(BaseModel):
    """Append-only record of a state-changing role action."""
    id: str
    user_id: str
    action: AuditAction
    old_role: Optional[UserRole] = None
    new_role: Optional[UserRole] = None
    performed_by: str
    reason: Optional[str] = None
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class SuspiciousActivity(BaseModel):
    """Security finding raised by escalation prevention."""
    id: str
    user_id: str
    activity_type: str
    description: str
    severity: Severity
    institution_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    detected_at: datetime
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


class EscalationAttempt(BaseModel):
    """Record of one escalation validation, allowed or blocked."""
    id: str
    user_id: str
    from_role: UserRole
    to_role: UserRole
    institution_id: str
    allowed: bool
    reason: Optional[str] = None
    risk_score: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime


class RoleAssignmentRequest(BaseModel):
    """Input to ``RoleManager.assign_role``."""
    user_id: Optional[str] = Field(default=None, description="User receiving the role")
    role: Optional[UserRole] = Field(default=None, description="Role to grant")
    assigned_by: Optional[str] = Field(default=None, description="Granting actor")
    institution_id: Optional[str] = Field(default=None, description="Institution scope")
    department_id: Optional[str] = Field(default=None, description="Department scope")
    is_temporary: bool = Field(default=False, description="Whether the role expires")
    expires_at: Optional[datetime] = Field(default=None, description="Expiry for temporary roles")
    justification: Optional[str] = Field(default=None, description="Reason recorded in the audit log")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Extra assignment details")


class RoleChangeRequest(BaseModel):
    """A direct move from one role to another. Never persisted as such."""
    user_id: Optional[str] = None
    current_role: Optional[UserRole] = None
    new_role: Optional[UserRole] = None
    changed_by: Optional[str] = None
    reason: Optional[str] = None
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    requires_approval: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BulkRoleAssignment(BaseModel):
    """Batch of assignments processed with per-item isolation."""
    assignments: List[RoleAssignmentRequest] = Field(default_factory=list)
    validate_only: bool = Field(default=False, description="Validate without persisting")


class BulkAssignmentError(BaseModel):
    index: int
    user_id: Optional[str] = None
    error: str


class BulkAssignmentResult(BaseModel):
    """Outcome of a bulk assignment run."""
    successful: int = 0
    failed: int = 0
    errors: List[BulkAssignmentError] = Field(default_factory=list)
    assignments: List[UserRoleAssignment] = Field(default_factory=list)
