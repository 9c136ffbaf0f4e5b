"""
Role taxonomy for the campus role engine.

This module is the single source of truth for:
- The five platform roles and their hierarchy ordering
- Request, assignment and verification lifecycle states
- Audit actions and suspicious-activity severities
- The valid role-transition table and default approval matrix
- The permission catalogue granted by each role (with inheritance)

Every component compares roles through ``role_level`` so there is exactly
one ordering in the code base.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, Union


class UserRole(str, Enum):
    """Platform roles, lowest privilege first."""
    STUDENT = "student"
    TEACHER = "teacher"
    DEPARTMENT_ADMIN = "department_admin"
    INSTITUTION_ADMIN = "institution_admin"
    SYSTEM_ADMIN = "system_admin"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class RoleStatus(str, Enum):
    """Lifecycle of a role assignment."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class RoleRequestStatus(str, Enum):
    """Lifecycle of a role request. Only PENDING is non-terminal."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class VerificationMethod(str, Enum):
    """How a requested role gets verified."""
    EMAIL_DOMAIN = "email_domain"
    ADMIN_APPROVAL = "admin_approval"
    MANUAL_REVIEW = "manual_review"


class AuditAction(str, Enum):
    """State-changing actions recorded in the role audit log."""
    REQUESTED = "requested"
    APPROVED = "approved"
    DENIED = "denied"
    ASSIGNED = "assigned"
    REVOKED = "revoked"
    CHANGED = "changed"
    EXPIRED = "expired"


class Severity(str, Enum):
    """Suspicious activity severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_ROLE_ORDER: Tuple[UserRole, ...] = (
    UserRole.STUDENT,
    UserRole.TEACHER,
    UserRole.DEPARTMENT_ADMIN,
    UserRole.INSTITUTION_ADMIN,
    UserRole.SYSTEM_ADMIN,
)

# Roles whose request counts as an escalation attempt
HIGH_PRIVILEGE_ROLES: Tuple[UserRole, ...] = (
    UserRole.DEPARTMENT_ADMIN,
    UserRole.INSTITUTION_ADMIN,
    UserRole.SYSTEM_ADMIN,
)

ADMIN_ROLES = HIGH_PRIVILEGE_ROLES

LOW_PRIVILEGE_ROLES: Tuple[UserRole, ...] = (UserRole.STUDENT, UserRole.TEACHER)

# Actor id used for decisions taken by the engine itself (auto-approval, sweeps)
SYSTEM_ACTOR = "system"


def as_role(role: Union[UserRole, str]) -> UserRole:
    """Coerce a role value coming from storage or callers into ``UserRole``."""
    if isinstance(role, UserRole):
        return role
    return UserRole(role)


def role_level(role: Union[UserRole, str]) -> int:
    """Return the hierarchy level of a role (student = 0 ... system admin = 4)."""
    return _ROLE_ORDER.index(as_role(role))


def is_role_equal_or_higher(role: Union[UserRole, str], other: Union[UserRole, str]) -> bool:
    return role_level(role) >= role_level(other)


def is_upgrade(current: Union[UserRole, str], new: Union[UserRole, str]) -> bool:
    return role_level(new) > role_level(current)


def highest_role(roles: List[Union[UserRole, str]]) -> Optional[UserRole]:
    """Return the most privileged role of a list, or None for an empty list."""
    if not roles:
        return None
    return max((as_role(r) for r in roles), key=role_level)


VALID_TRANSITIONS: Dict[UserRole, Tuple[UserRole, ...]] = {
    UserRole.STUDENT: (UserRole.TEACHER,),
    UserRole.TEACHER: (UserRole.STUDENT, UserRole.DEPARTMENT_ADMIN),
    UserRole.DEPARTMENT_ADMIN: (UserRole.TEACHER, UserRole.INSTITUTION_ADMIN),
    UserRole.INSTITUTION_ADMIN: (UserRole.DEPARTMENT_ADMIN, UserRole.SYSTEM_ADMIN),
    UserRole.SYSTEM_ADMIN: (UserRole.INSTITUTION_ADMIN,),
}

# Approver role -> roles it may approve when no escalation rule applies
DEFAULT_APPROVAL_MATRIX: Dict[UserRole, Tuple[UserRole, ...]] = {
    UserRole.DEPARTMENT_ADMIN: (UserRole.TEACHER,),
    UserRole.INSTITUTION_ADMIN: (UserRole.TEACHER, UserRole.DEPARTMENT_ADMIN),
    UserRole.SYSTEM_ADMIN: (
        UserRole.TEACHER,
        UserRole.DEPARTMENT_ADMIN,
        UserRole.INSTITUTION_ADMIN,
    ),
}


def is_valid_transition(current: Union[UserRole, str], requested: Union[UserRole, str]) -> bool:
    return as_role(requested) in VALID_TRANSITIONS.get(as_role(current), ())


def can_approve_by_default(approver_role: Union[UserRole, str], requested: Union[UserRole, str]) -> bool:
    return as_role(requested) in DEFAULT_APPROVAL_MATRIX.get(as_role(approver_role), ())


@dataclass(frozen=True)
class Permission:
    """A single grant such as ``content.read`` or ``role.approve``."""
    resource: str
    action: str
    description: str = ""

    @property
    def key(self) -> str:
        return f"{self.resource}.{self.action}"

    def __str__(self) -> str:
        return self.key


@dataclass
class RoleDefinition:
    """Role metadata with its own grants and the role it inherits from."""
    role: UserRole
    description: str
    permissions: Set[str] = field(default_factory=set)
    parent_role: Optional[UserRole] = None

    def get_all_permissions(self) -> Set[str]:
        """Get all permissions including inherited ones."""
        all_permissions = set(self.permissions)
        if self.parent_role is not None:
            all_permissions.update(ROLE_DEFINITIONS[self.parent_role].get_all_permissions())
        return all_permissions


PERMISSIONS: Dict[str, Permission] = {
    p.key: p
    for p in (
        Permission("content", "read", "View course content"),
        Permission("content", "create", "Create course content"),
        Permission("content", "update", "Edit course content"),
        Permission("content", "delete", "Delete course content"),
        Permission("content", "manage", "Manage all content in a department"),
        Permission("class", "read", "View classes"),
        Permission("class", "create", "Create classes"),
        Permission("class", "update", "Edit classes"),
        Permission("class", "delete", "Delete classes"),
        Permission("class", "manage", "Manage all classes in a department"),
        Permission("enrollment", "create", "Enroll in classes"),
        Permission("enrollment", "read", "View enrollments"),
        Permission("enrollment", "update", "Update enrollments"),
        Permission("enrollment", "delete", "Remove enrollments"),
        Permission("enrollment", "approve", "Approve enrollment requests"),
        Permission("user", "read", "View user profiles"),
        Permission("user", "update", "Update own profile"),
        Permission("user", "create", "Create users"),
        Permission("user", "manage", "Manage users"),
        Permission("user", "delete", "Delete users"),
        Permission("analytics", "read", "View analytics"),
        Permission("analytics", "export", "Export analytics"),
        Permission("department", "manage", "Manage a department"),
        Permission("department", "create", "Create departments"),
        Permission("institution", "manage", "Manage an institution"),
        Permission("institution", "create", "Create institutions"),
        Permission("role", "assign", "Assign roles to users"),
        Permission("role", "revoke", "Revoke roles from users"),
        Permission("role", "approve", "Approve role requests"),
        Permission("role", "audit", "Review the role audit log"),
        Permission("system", "configure", "Configure the platform"),
        Permission("system", "audit", "Audit the platform"),
    )
}


ROLE_DEFINITIONS: Dict[UserRole, RoleDefinition] = {
    UserRole.STUDENT: RoleDefinition(
        role=UserRole.STUDENT,
        description="Learner enrolled in classes",
        permissions={
            "content.read", "class.read", "enrollment.create",
            "enrollment.read", "user.update",
        },
    ),
    UserRole.TEACHER: RoleDefinition(
        role=UserRole.TEACHER,
        description="Teaches classes and manages their content",
        permissions={
            "content.create", "content.update", "content.delete",
            "class.create", "class.update", "class.delete",
            "enrollment.update", "enrollment.approve",
            "user.read", "analytics.read",
        },
        parent_role=UserRole.STUDENT,
    ),
    UserRole.DEPARTMENT_ADMIN: RoleDefinition(
        role=UserRole.DEPARTMENT_ADMIN,
        description="Administers a department",
        permissions={
            "content.manage", "class.manage", "enrollment.delete",
            "department.manage",
        },
        parent_role=UserRole.TEACHER,
    ),
    UserRole.INSTITUTION_ADMIN: RoleDefinition(
        role=UserRole.INSTITUTION_ADMIN,
        description="Administers an institution",
        permissions={
            "user.create", "user.manage", "user.delete",
            "role.assign", "role.revoke", "role.approve", "role.audit",
            "analytics.export", "department.create", "institution.manage",
        },
        parent_role=UserRole.DEPARTMENT_ADMIN,
    ),
    UserRole.SYSTEM_ADMIN: RoleDefinition(
        role=UserRole.SYSTEM_ADMIN,
        description="Operates the whole platform",
        permissions={"system.configure", "system.audit", "institution.create"},
        parent_role=UserRole.INSTITUTION_ADMIN,
    ),
}


def get_role_permissions(role: Union[UserRole, str]) -> Set[str]:
    """Return every permission key a role grants, inherited ones included."""
    return ROLE_DEFINITIONS[as_role(role)].get_all_permissions()
