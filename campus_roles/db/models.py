"""SQLAlchemy models for the role engine tables.

Timestamps are written explicitly by the services (naive UTC) so that
every time window is computed against the same clock.
"""
import uuid

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint

from campus_roles.db.session import Base


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


class RoleRequestRecord(Base):
    """Role requests and their review outcome."""
    __tablename__ = "role_requests"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    requested_role = Column(String(32), nullable=False)
    current_role = Column(String(32), nullable=True)
    justification = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="pending", index=True)
    requested_at = Column(DateTime, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(64), nullable=True)
    review_notes = Column(Text, nullable=True)
    verification_method = Column(String(32), nullable=False)
    institution_id = Column(String(64), nullable=False, index=True)
    department_id = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    details = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_role_requests_user_role", "user_id", "requested_role", "requested_at"),
    )

    def __repr__(self):
        return f"<RoleRequestRecord(id={self.id}, user_id={self.user_id}, role={self.requested_role}, status={self.status})>"


class RoleAssignmentRecord(Base):
    """Role bindings. Rows are suspended or expired, never deleted."""
    __tablename__ = "user_role_assignments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    role = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="active", index=True)
    assigned_by = Column(String(64), nullable=False)
    assigned_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    department_id = Column(String(64), nullable=True)
    institution_id = Column(String(64), nullable=False, index=True)
    is_temporary = Column(Boolean, nullable=False, default=False)
    details = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_assignments_user_scope", "user_id", "institution_id", "status"),
        Index("idx_assignments_temporary", "is_temporary", "status", "expires_at"),
    )

    def __repr__(self):
        return f"<RoleAssignmentRecord(id={self.id}, user_id={self.user_id}, role={self.role}, status={self.status})>"


class RoleAuditLogRecord(Base):
    """Append-only role audit trail."""
    __tablename__ = "role_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    action = Column(String(16), nullable=False, index=True)
    old_role = Column(String(32), nullable=True)
    new_role = Column(String(32), nullable=True)
    performed_by = Column(String(64), nullable=False)
    reason = Column(Text, nullable=True)
    institution_id = Column(String(64), nullable=True, index=True)
    department_id = Column(String(64), nullable=True)
    details = Column("metadata", JSON, nullable=False, default=dict)
    timestamp = Column(DateTime, nullable=False, index=True)


class RateLimitEntryRecord(Base):
    """One row per accepted role request, counted over time windows."""
    __tablename__ = "role_request_rate_limits"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    requested_role = Column(String(32), nullable=False)
    institution_id = Column(String(64), nullable=False, index=True)
    client_ip = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, index=True)


class RoleCooldownRecord(Base):
    """Per user and role cooldown, upserted after each accepted request."""
    __tablename__ = "role_request_cooldowns"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False)
    requested_role = Column(String(32), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "requested_role", name="uq_cooldown_user_role"),
    )


class RoleRequestBlockRecord(Base):
    """Administrator issued block on role requests."""
    __tablename__ = "role_request_blocks"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    blocked_by = Column(String(64), nullable=False)
    reason = Column(Text, nullable=False)
    blocked_at = Column(DateTime, nullable=False)
    blocked_until = Column(DateTime, nullable=False)
    active = Column(Boolean, nullable=False, default=True)


class RateLimitViolationRecord(Base):
    __tablename__ = "rate_limit_violations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    violation_type = Column(String(32), nullable=False)
    reason = Column(Text, nullable=False)
    details = Column("metadata", JSON, nullable=False, default=dict)
    timestamp = Column(DateTime, nullable=False, index=True)


class RateLimitAdminActionRecord(Base):
    __tablename__ = "rate_limit_admin_actions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    admin_id = Column(String(64), nullable=False)
    action = Column(String(32), nullable=False)
    reason = Column(Text, nullable=True)
    duration_hours = Column(Integer, nullable=True)
    timestamp = Column(DateTime, nullable=False)


class EscalationAttemptRecord(Base):
    """Every escalation validation, allowed or blocked."""
    __tablename__ = "role_escalation_attempts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    from_role = Column(String(32), nullable=False)
    to_role = Column(String(32), nullable=False)
    institution_id = Column(String(64), nullable=False)
    allowed = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=True)
    risk_score = Column(Integer, nullable=False, default=0)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(DateTime, nullable=False, index=True)


class SuspiciousActivityRecord(Base):
    """Security findings awaiting administrator review."""
    __tablename__ = "suspicious_activities"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    activity_type = Column(String(64), nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(String(16), nullable=False, index=True)
    institution_id = Column(String(64), nullable=True, index=True)
    details = Column("metadata", JSON, nullable=False, default=dict)
    detected_at = Column(DateTime, nullable=False, index=True)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution = Column(Text, nullable=True)
