"""
Repository over the role engine tables.

Every method opens its own ``AsyncSession`` and commits before returning,
so no session outlives a single call. Rows are converted to the pydantic
models in ``campus_roles.models.roles`` on the way out.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from campus_roles.core.roles import RoleRequestStatus, RoleStatus, UserRole
from campus_roles.db.models import (
    EscalationAttemptRecord,
    RateLimitAdminActionRecord,
    RateLimitEntryRecord,
    RateLimitViolationRecord,
    RoleAssignmentRecord,
    RoleAuditLogRecord,
    RoleCooldownRecord,
    RoleRequestBlockRecord,
    RoleRequestRecord,
    SuspiciousActivityRecord,
)
from campus_roles.models.roles import (
    EscalationAttempt,
    RoleAuditEntry,
    RoleRequest,
    SuspiciousActivity,
    UserRoleAssignment,
)
from campus_roles.utils.helpers import generate_id

logger = logging.getLogger(__name__)


def _value(enum_or_str: Any) -> Any:
    return getattr(enum_or_str, "value", enum_or_str)


def _to_role_request(row: RoleRequestRecord) -> RoleRequest:
    return RoleRequest(
        id=row.id,
        user_id=row.user_id,
        requested_role=row.requested_role,
        current_role=row.current_role,
        justification=row.justification,
        status=row.status,
        requested_at=row.requested_at,
        reviewed_at=row.reviewed_at,
        reviewed_by=row.reviewed_by,
        review_notes=row.review_notes,
        verification_method=row.verification_method,
        institution_id=row.institution_id,
        department_id=row.department_id,
        expires_at=row.expires_at,
        metadata=dict(row.details or {}),
    )


def _to_assignment(row: RoleAssignmentRecord) -> UserRoleAssignment:
    return UserRoleAssignment(
        id=row.id,
        user_id=row.user_id,
        role=row.role,
        status=row.status,
        assigned_by=row.assigned_by,
        assigned_at=row.assigned_at,
        expires_at=row.expires_at,
        department_id=row.department_id,
        institution_id=row.institution_id,
        is_temporary=row.is_temporary,
        metadata=dict(row.details or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_audit_entry(row: RoleAuditLogRecord) -> RoleAuditEntry:
    return RoleAuditEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        old_role=row.old_role,
        new_role=row.new_role,
        performed_by=row.performed_by,
        reason=row.reason,
        institution_id=row.institution_id,
        department_id=row.department_id,
        metadata=dict(row.details or {}),
        timestamp=row.timestamp,
    )


def _to_suspicious_activity(row: SuspiciousActivityRecord) -> SuspiciousActivity:
    return SuspiciousActivity(
        id=row.id,
        user_id=row.user_id,
        activity_type=row.activity_type,
        description=row.description,
        severity=row.severity,
        institution_id=row.institution_id,
        metadata=dict(row.details or {}),
        detected_at=row.detected_at,
        resolved=row.resolved,
        resolved_by=row.resolved_by,
        resolved_at=row.resolved_at,
        resolution=row.resolution,
    )


def _to_escalation_attempt(row: EscalationAttemptRecord) -> EscalationAttempt:
    return EscalationAttempt(
        id=row.id,
        user_id=row.user_id,
        from_role=row.from_role,
        to_role=row.to_role,
        institution_id=row.institution_id,
        allowed=row.allowed,
        reason=row.reason,
        risk_score=row.risk_score,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=row.timestamp,
    )


class RoleStore:
    """Async data access for role requests, assignments and security logs."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Role requests
    # ------------------------------------------------------------------

    async def add_role_request(self, request: RoleRequest) -> RoleRequest:
        row = RoleRequestRecord(
            id=request.id,
            user_id=request.user_id,
            requested_role=_value(request.requested_role),
            current_role=_value(request.current_role),
            justification=request.justification,
            status=_value(request.status),
            requested_at=request.requested_at,
            verification_method=_value(request.verification_method),
            institution_id=request.institution_id,
            department_id=request.department_id,
            expires_at=request.expires_at,
            details=dict(request.metadata),
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        return _to_role_request(row)

    async def get_role_request(self, request_id: str) -> Optional[RoleRequest]:
        async with self._session_factory() as session:
            row = await session.get(RoleRequestRecord, request_id)
            return _to_role_request(row) if row else None

    async def resolve_role_request(
        self,
        request_id: str,
        status: RoleRequestStatus,
        resolved_at: datetime,
        reviewed_by: Optional[str] = None,
        review_notes: Optional[str] = None,
    ) -> Optional[RoleRequest]:
        """
        Move a pending request to a terminal status.

        The update is conditional on the row still being pending, so two
        concurrent resolutions cannot both succeed.

        Returns:
            The updated request, or None when it was no longer pending
        """
        values: Dict[str, Any] = {"status": _value(status), "reviewed_at": resolved_at}
        if reviewed_by is not None:
            values["reviewed_by"] = reviewed_by
        if review_notes is not None:
            values["review_notes"] = review_notes

        async with self._session_factory() as session:
            result = await session.execute(
                update(RoleRequestRecord)
                .where(RoleRequestRecord.id == request_id)
                .where(RoleRequestRecord.status == RoleRequestStatus.PENDING.value)
                .values(**values)
            )
            await session.commit()
            if result.rowcount == 0:
                return None
            row = await session.get(RoleRequestRecord, request_id, populate_existing=True)
            return _to_role_request(row)

    async def list_role_requests(
        self,
        user_id: Optional[str] = None,
        institution_id: Optional[str] = None,
        department_id: Optional[str] = None,
        status: Optional[RoleRequestStatus] = None,
        requested_role: Optional[UserRole] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[RoleRequest]:
        """List role requests matching every given filter, newest first."""
        query = select(RoleRequestRecord)
        if user_id is not None:
            query = query.where(RoleRequestRecord.user_id == user_id)
        if institution_id is not None:
            query = query.where(RoleRequestRecord.institution_id == institution_id)
        if department_id is not None:
            query = query.where(RoleRequestRecord.department_id == department_id)
        if status is not None:
            query = query.where(RoleRequestRecord.status == _value(status))
        if requested_role is not None:
            query = query.where(RoleRequestRecord.requested_role == _value(requested_role))
        if since is not None:
            query = query.where(RoleRequestRecord.requested_at >= since)
        query = query.order_by(RoleRequestRecord.requested_at.desc())
        if limit is not None:
            query = query.limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_to_role_request(row) for row in rows]

    async def count_role_requests(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        requested_role: Optional[UserRole] = None,
        status: Optional[RoleRequestStatus] = None,
    ) -> int:
        query = select(func.count()).select_from(RoleRequestRecord).where(
            RoleRequestRecord.user_id == user_id
        )
        if since is not None:
            query = query.where(RoleRequestRecord.requested_at >= since)
        if requested_role is not None:
            query = query.where(RoleRequestRecord.requested_role == _value(requested_role))
        if status is not None:
            query = query.where(RoleRequestRecord.status == _value(status))

        async with self._session_factory() as session:
            return (await session.execute(query)).scalar_one()

    async def get_last_resolved_request(
        self, user_id: str, requested_role: UserRole
    ) -> Optional[RoleRequest]:
        """Most recently reviewed approved or denied request for a role."""
        query = (
            select(RoleRequestRecord)
            .where(RoleRequestRecord.user_id == user_id)
            .where(RoleRequestRecord.requested_role == _value(requested_role))
            .where(RoleRequestRecord.status.in_(
                [RoleRequestStatus.APPROVED.value, RoleRequestStatus.DENIED.value]
            ))
            .where(RoleRequestRecord.reviewed_at.is_not(None))
            .order_by(RoleRequestRecord.reviewed_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(query)).scalars().first()
            return _to_role_request(row) if row else None

    async def list_stale_pending_requests(self, now: datetime) -> List[RoleRequest]:
        query = (
            select(RoleRequestRecord)
            .where(RoleRequestRecord.status == RoleRequestStatus.PENDING.value)
            .where(RoleRequestRecord.expires_at < now)
            .order_by(RoleRequestRecord.expires_at)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_to_role_request(row) for row in rows]

    # ------------------------------------------------------------------
    # Role assignments
    # ------------------------------------------------------------------

    async def add_assignment(self, assignment: UserRoleAssignment) -> UserRoleAssignment:
        row = RoleAssignmentRecord(
            id=assignment.id,
            user_id=assignment.user_id,
            role=_value(assignment.role),
            status=_value(assignment.status),
            assigned_by=assignment.assigned_by,
            assigned_at=assignment.assigned_at,
            expires_at=assignment.expires_at,
            department_id=assignment.department_id,
            institution_id=assignment.institution_id,
            is_temporary=assignment.is_temporary,
            details=dict(assignment.metadata),
            created_at=assignment.created_at,
            updated_at=assignment.updated_at,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        return _to_assignment(row)

    async def get_assignment(self, assignment_id: str) -> Optional[UserRoleAssignment]:
        async with self._session_factory() as session:
            row = await session.get(RoleAssignmentRecord, assignment_id)
            return _to_assignment(row) if row else None

    async def update_assignment(
        self, assignment_id: str, updated_at: datetime, **values: Any
    ) -> Optional[UserRoleAssignment]:
        """
        Update columns of one assignment.

        Args:
            assignment_id: Assignment to update
            updated_at: New ``updated_at`` value
            **values: Column values; ``metadata`` replaces the whole bag

        Returns:
            The updated assignment, or None if it does not exist
        """
        if "metadata" in values:
            values["details"] = dict(values.pop("metadata"))
        for key in ("status", "role"):
            if key in values:
                values[key] = _value(values[key])
        values["updated_at"] = updated_at

        async with self._session_factory() as session:
            row = await session.get(RoleAssignmentRecord, assignment_id)
            if row is None:
                return None
            for key, value in values.items():
                setattr(row, key, value)
            await session.commit()
            return _to_assignment(row)

    async def list_active_assignments(
        self,
        user_id: str,
        now: datetime,
        institution_id: Optional[str] = None,
        role: Optional[UserRole] = None,
    ) -> List[UserRoleAssignment]:
        """Active, unexpired assignments of a user, newest first."""
        query = (
            select(RoleAssignmentRecord)
            .where(RoleAssignmentRecord.user_id == user_id)
            .where(RoleAssignmentRecord.status == RoleStatus.ACTIVE.value)
            .where(or_(
                RoleAssignmentRecord.expires_at.is_(None),
                RoleAssignmentRecord.expires_at > now,
            ))
        )
        if institution_id is not None:
            query = query.where(RoleAssignmentRecord.institution_id == institution_id)
        if role is not None:
            query = query.where(RoleAssignmentRecord.role == _value(role))
        query = query.order_by(RoleAssignmentRecord.assigned_at.desc())

        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_to_assignment(row) for row in rows]

    async def get_active_assignment(
        self, user_id: str, role: UserRole, institution_id: Optional[str] = None
    ) -> Optional[UserRoleAssignment]:
        """Active assignment for a role, whether or not its expiry has passed."""
        query = (
            select(RoleAssignmentRecord)
            .where(RoleAssignmentRecord.user_id == user_id)
            .where(RoleAssignmentRecord.role == _value(role))
            .where(RoleAssignmentRecord.status == RoleStatus.ACTIVE.value)
        )
        if institution_id is not None:
            query = query.where(RoleAssignmentRecord.institution_id == institution_id)
        query = query.order_by(RoleAssignmentRecord.assigned_at.desc()).limit(1)

        async with self._session_factory() as session:
            row = (await session.execute(query)).scalars().first()
            return _to_assignment(row) if row else None

    async def get_current_assignment(
        self, user_id: str, institution_id: str
    ) -> Optional[UserRoleAssignment]:
        """The most recently granted Active assignment in an institution."""
        query = (
            select(RoleAssignmentRecord)
            .where(RoleAssignmentRecord.user_id == user_id)
            .where(RoleAssignmentRecord.institution_id == institution_id)
            .where(RoleAssignmentRecord.status == RoleStatus.ACTIVE.value)
            .order_by(
                RoleAssignmentRecord.assigned_at.desc(),
                RoleAssignmentRecord.created_at.desc(),
            )
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(query)).scalars().first()
            return _to_assignment(row) if row else None

    async def list_temporary_assignments(
        self,
        expires_before: Optional[datetime] = None,
        expires_after: Optional[datetime] = None,
        status: RoleStatus = RoleStatus.ACTIVE,
    ) -> List[UserRoleAssignment]:
        """
        Temporary assignments in a status, filtered on expiry bounds.

        Args:
            expires_before: Inclusive upper bound on ``expires_at``
            expires_after: Exclusive lower bound on ``expires_at``
            status: Assignment status to match
        """
        query = (
            select(RoleAssignmentRecord)
            .where(RoleAssignmentRecord.is_temporary.is_(True))
            .where(RoleAssignmentRecord.status == _value(status))
            .where(RoleAssignmentRecord.expires_at.is_not(None))
        )
        if expires_before is not None:
            query = query.where(RoleAssignmentRecord.expires_at <= expires_before)
        if expires_after is not None:
            query = query.where(RoleAssignmentRecord.expires_at > expires_after)
        query = query.order_by(RoleAssignmentRecord.expires_at)

        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_to_assignment(row) for row in rows]

    async def count_temporary_assignments(
        self,
        status: RoleStatus,
        expires_after: Optional[datetime] = None,
        expires_before: Optional[datetime] = None,
        updated_since: Optional[datetime] = None,
    ) -> int:
        query = (
            select(func.count())
            .select_from(RoleAssignmentRecord)
            .where(RoleAssignmentRecord.is_temporary.is_(True))
            .where(RoleAssignmentRecord.status == _value(status))
        )
        if expires_after is not None:
            query = query.where(RoleAssignmentRecord.expires_at > expires_after)
        if expires_before is not None:
            query = query.where(RoleAssignmentRecord.expires_at <= expires_before)
        if updated_since is not None:
            query = query.where(RoleAssignmentRecord.updated_at >= updated_since)

        async with self._session_factory() as session:
            return (await session.execute(query)).scalar_one()

    async def list_role_holders(
        self,
        roles: Iterable[UserRole],
        now: datetime,
        institution_id: Optional[str] = None,
    ) -> List[str]:
        """
        Ids of users holding any of ``roles``.

        System administrators are platform wide and match regardless of
        institution; every other role is matched inside ``institution_id``.
        """
        role_values = [_value(role) for role in roles]
        scoped = [value for value in role_values if value != UserRole.SYSTEM_ADMIN.value]

        conditions = []
        if scoped:
            scoped_condition = RoleAssignmentRecord.role.in_(scoped)
            if institution_id is not None:
                scoped_condition = scoped_condition & (RoleAssignmentRecord.institution_id == institution_id)
            conditions.append(scoped_condition)
        if UserRole.SYSTEM_ADMIN.value in role_values:
            conditions.append(RoleAssignmentRecord.role == UserRole.SYSTEM_ADMIN.value)
        if not conditions:
            return []

        query = (
            select(RoleAssignmentRecord.user_id)
            .where(RoleAssignmentRecord.status == RoleStatus.ACTIVE.value)
            .where(or_(
                RoleAssignmentRecord.expires_at.is_(None),
                RoleAssignmentRecord.expires_at > now,
            ))
            .where(or_(*conditions))
            .distinct()
        )
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def add_audit_entry(self, entry: RoleAuditEntry) -> RoleAuditEntry:
        row = RoleAuditLogRecord(
            id=entry.id,
            user_id=entry.user_id,
            action=_value(entry.action),
            old_role=_value(entry.old_role),
            new_role=_value(entry.new_role),
            performed_by=entry.performed_by,
            reason=entry.reason,
            institution_id=entry.institution_id,
            department_id=entry.department_id,
            details=dict(entry.metadata),
            timestamp=entry.timestamp,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        return entry

    async def list_audit_entries(
        self,
        user_id: Optional[str] = None,
        institution_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[RoleAuditEntry]:
        query = select(RoleAuditLogRecord)
        if user_id is not None:
            query = query.where(RoleAuditLogRecord.user_id == user_id)
        if institution_id is not None:
            query = query.where(RoleAuditLogRecord.institution_id == institution_id)
        if action is not None:
            query = query.where(RoleAuditLogRecord.action == _value(action))
        query = query.order_by(RoleAuditLogRecord.timestamp.desc()).limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_to_audit_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    async def add_rate_limit_entry(
        self,
        user_id: str,
        requested_role: UserRole,
        institution_id: str,
        client_ip: Optional[str],
        created_at: datetime,
    ) -> None:
        async with self._session_factory() as session:
            session.add(RateLimitEntryRecord(
                id=generate_id(),
                user_id=user_id,
                requested_role=_value(requested_role),
                institution_id=institution_id,
                client_ip=client_ip,
                created_at=created_at,
            ))
            await session.commit()

    async def count_rate_limit_entries(
        self,
        since: datetime,
        user_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        institution_id: Optional[str] = None,
        requested_role: Optional[UserRole] = None,
    ) -> int:
        query = (
            select(func.count())
            .select_from(RateLimitEntryRecord)
            .where(RateLimitEntryRecord.created_at >= since)
        )
        if user_id is not None:
            query = query.where(RateLimitEntryRecord.user_id == user_id)
        if client_ip is not None:
            query = query.where(RateLimitEntryRecord.client_ip == client_ip)
        if institution_id is not None:
            query = query.where(RateLimitEntryRecord.institution_id == institution_id)
        if requested_role is not None:
            query = query.where(RateLimitEntryRecord.requested_role == _value(requested_role))

        async with self._session_factory() as session:
            return (await session.execute(query)).scalar_one()

    async def list_client_ips(self, user_id: str, since: datetime) -> List[str]:
        """Distinct client addresses a user made role requests from."""
        query = (
            select(RateLimitEntryRecord.client_ip)
            .where(RateLimitEntryRecord.user_id == user_id)
            .where(RateLimitEntryRecord.created_at >= since)
            .where(RateLimitEntryRecord.client_ip.is_not(None))
            .distinct()
        )
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def get_oldest_rate_limit_entry_time(
        self, user_id: str, since: datetime
    ) -> Optional[datetime]:
        query = (
            select(func.min(RateLimitEntryRecord.created_at))
            .where(RateLimitEntryRecord.user_id == user_id)
            .where(RateLimitEntryRecord.created_at >= since)
        )
        async with self._session_factory() as session:
            return (await session.execute(query)).scalar_one_or_none()

    async def upsert_cooldown(
        self, user_id: str, requested_role: UserRole, expires_at: datetime, now: datetime
    ) -> None:
        async with self._session_factory() as session:
            row = (await session.execute(
                select(RoleCooldownRecord)
                .where(RoleCooldownRecord.user_id == user_id)
                .where(RoleCooldownRecord.requested_role == _value(requested_role))
            )).scalars().first()
            if row is None:
                session.add(RoleCooldownRecord(
                    id=generate_id(),
                    user_id=user_id,
                    requested_role=_value(requested_role),
                    expires_at=expires_at,
                    created_at=now,
                ))
            else:
                row.expires_at = expires_at
                row.created_at = now
            await session.commit()

    async def get_active_cooldown(
        self, user_id: str, requested_role: UserRole, now: datetime
    ) -> Optional[datetime]:
        """Return the cooldown expiry for (user, role) if it lies in the future."""
        query = (
            select(RoleCooldownRecord.expires_at)
            .where(RoleCooldownRecord.user_id == user_id)
            .where(RoleCooldownRecord.requested_role == _value(requested_role))
            .where(RoleCooldownRecord.expires_at > now)
        )
        async with self._session_factory() as session:
            return (await session.execute(query)).scalars().first()

    async def list_active_cooldowns(self, user_id: str, now: datetime) -> List[Tuple[str, datetime]]:
        query = (
            select(RoleCooldownRecord.requested_role, RoleCooldownRecord.expires_at)
            .where(RoleCooldownRecord.user_id == user_id)
            .where(RoleCooldownRecord.expires_at > now)
            .order_by(RoleCooldownRecord.expires_at)
        )
        async with self._session_factory() as session:
            return [(role, expires_at) for role, expires_at in (await session.execute(query)).all()]

    async def get_active_block(self, user_id: str, now: datetime) -> Optional[RoleRequestBlockRecord]:
        query = (
            select(RoleRequestBlockRecord)
            .where(RoleRequestBlockRecord.user_id == user_id)
            .where(RoleRequestBlockRecord.active.is_(True))
            .where(RoleRequestBlockRecord.blocked_until > now)
            .order_by(RoleRequestBlockRecord.blocked_until.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.execute(query)).scalars().first()

    async def add_block(
        self,
        user_id: str,
        blocked_by: str,
        reason: str,
        blocked_at: datetime,
        blocked_until: datetime,
    ) -> RoleRequestBlockRecord:
        """Replace any active block of the user with a new one."""
        row = RoleRequestBlockRecord(
            id=generate_id(),
            user_id=user_id,
            blocked_by=blocked_by,
            reason=reason,
            blocked_at=blocked_at,
            blocked_until=blocked_until,
            active=True,
        )
        async with self._session_factory() as session:
            await session.execute(
                update(RoleRequestBlockRecord)
                .where(RoleRequestBlockRecord.user_id == user_id)
                .where(RoleRequestBlockRecord.active.is_(True))
                .values(active=False)
            )
            session.add(row)
            await session.commit()
        return row

    async def deactivate_blocks(self, user_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(RoleRequestBlockRecord)
                .where(RoleRequestBlockRecord.user_id == user_id)
                .where(RoleRequestBlockRecord.active.is_(True))
                .values(active=False)
            )
            await session.commit()
            return result.rowcount

    async def delete_rate_limit_history(self, user_id: str) -> Tuple[int, int]:
        """Delete a user's request log and cooldowns.

        Returns:
            Tuple of (log rows deleted, cooldown rows deleted)
        """
        async with self._session_factory() as session:
            entries = await session.execute(
                delete(RateLimitEntryRecord).where(RateLimitEntryRecord.user_id == user_id)
            )
            cooldowns = await session.execute(
                delete(RoleCooldownRecord).where(RoleCooldownRecord.user_id == user_id)
            )
            await session.commit()
            return entries.rowcount, cooldowns.rowcount

    async def add_violation(
        self,
        user_id: str,
        violation_type: str,
        reason: str,
        timestamp: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._session_factory() as session:
            session.add(RateLimitViolationRecord(
                id=generate_id(),
                user_id=user_id,
                violation_type=violation_type,
                reason=reason,
                details=dict(metadata or {}),
                timestamp=timestamp,
            ))
            await session.commit()

    async def list_violations(
        self, user_id: str, since: Optional[datetime] = None, limit: int = 50
    ) -> List[RateLimitViolationRecord]:
        query = select(RateLimitViolationRecord).where(RateLimitViolationRecord.user_id == user_id)
        if since is not None:
            query = query.where(RateLimitViolationRecord.timestamp >= since)
        query = query.order_by(RateLimitViolationRecord.timestamp.desc()).limit(limit)

        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def add_admin_action(
        self,
        user_id: str,
        admin_id: str,
        action: str,
        timestamp: datetime,
        reason: Optional[str] = None,
        duration_hours: Optional[int] = None,
    ) -> None:
        async with self._session_factory() as session:
            session.add(RateLimitAdminActionRecord(
                id=generate_id(),
                user_id=user_id,
                admin_id=admin_id,
                action=action,
                reason=reason,
                duration_hours=duration_hours,
                timestamp=timestamp,
            ))
            await session.commit()

    async def list_admin_actions(self, user_id: str, limit: int = 50) -> List[RateLimitAdminActionRecord]:
        query = (
            select(RateLimitAdminActionRecord)
            .where(RateLimitAdminActionRecord.user_id == user_id)
            .order_by(RateLimitAdminActionRecord.timestamp.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    # ------------------------------------------------------------------
    # Escalation prevention
    # ------------------------------------------------------------------

    async def add_escalation_attempt(self, attempt: EscalationAttempt) -> None:
        async with self._session_factory() as session:
            session.add(EscalationAttemptRecord(
                id=attempt.id,
                user_id=attempt.user_id,
                from_role=_value(attempt.from_role),
                to_role=_value(attempt.to_role),
                institution_id=attempt.institution_id,
                allowed=attempt.allowed,
                reason=attempt.reason,
                risk_score=attempt.risk_score,
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                timestamp=attempt.timestamp,
            ))
            await session.commit()

    async def list_escalation_attempts(self, user_id: str, limit: int = 50) -> List[EscalationAttempt]:
        query = (
            select(EscalationAttemptRecord)
            .where(EscalationAttemptRecord.user_id == user_id)
            .order_by(EscalationAttemptRecord.timestamp.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_to_escalation_attempt(row) for row in rows]

    async def add_suspicious_activity(self, activity: SuspiciousActivity) -> None:
        async with self._session_factory() as session:
            session.add(SuspiciousActivityRecord(
                id=activity.id,
                user_id=activity.user_id,
                activity_type=activity.activity_type,
                description=activity.description,
                severity=_value(activity.severity),
                institution_id=activity.institution_id,
                details=dict(activity.metadata),
                detected_at=activity.detected_at,
                resolved=activity.resolved,
            ))
            await session.commit()

    async def list_suspicious_activities(
        self,
        institution_id: Optional[str] = None,
        user_id: Optional[str] = None,
        severities: Optional[Sequence[str]] = None,
        resolved: Optional[bool] = None,
        limit: int = 50,
    ) -> List[SuspiciousActivity]:
        query = select(SuspiciousActivityRecord)
        if institution_id is not None:
            query = query.where(SuspiciousActivityRecord.institution_id == institution_id)
        if user_id is not None:
            query = query.where(SuspiciousActivityRecord.user_id == user_id)
        if severities:
            query = query.where(SuspiciousActivityRecord.severity.in_([_value(s) for s in severities]))
        if resolved is not None:
            query = query.where(SuspiciousActivityRecord.resolved.is_(resolved))
        query = query.order_by(SuspiciousActivityRecord.detected_at.desc()).limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_to_suspicious_activity(row) for row in rows]

    async def resolve_suspicious_activity(
        self,
        activity_id: str,
        resolved_by: str,
        resolution: str,
        resolved_at: datetime,
    ) -> Optional[SuspiciousActivity]:
        async with self._session_factory() as session:
            row = await session.get(SuspiciousActivityRecord, activity_id)
            if row is None:
                return None
            row.resolved = True
            row.resolved_by = resolved_by
            row.resolution = resolution
            row.resolved_at = resolved_at
            await session.commit()
            return _to_suspicious_activity(row)
