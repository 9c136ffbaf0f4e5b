"""
Role audit trail writer.

Audit writes are isolated from the business operation that triggers them:
a failing write is logged and never unwinds the caller.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from campus_roles.core.roles import AuditAction, UserRole
from campus_roles.db.store import RoleStore
from campus_roles.models.roles import RoleAuditEntry
from campus_roles.utils.helpers import generate_id, utcnow

logger = logging.getLogger(__name__)


class RoleAuditService:
    """Appends entries to the role audit log and reads them back."""

    def __init__(self, store: RoleStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def log_action(
        self,
        action: AuditAction,
        user_id: str,
        performed_by: str,
        old_role: Optional[UserRole] = None,
        new_role: Optional[UserRole] = None,
        reason: Optional[str] = None,
        institution_id: Optional[str] = None,
        department_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[RoleAuditEntry]:
        """
        Record a state-changing role action.

        Returns:
            The stored entry, or None if the write failed
        """
        entry = RoleAuditEntry(
            id=generate_id(),
            user_id=user_id,
            action=action,
            old_role=old_role,
            new_role=new_role,
            performed_by=performed_by,
            reason=reason,
            institution_id=institution_id,
            department_id=department_id,
            metadata=metadata or {},
            timestamp=self.clock(),
        )
        try:
            return await self.store.add_audit_entry(entry)
        except Exception as e:
            logger.error(
                f"Failed to write audit entry {action.value} for user {user_id}: {e}",
                exc_info=True,
            )
            return None

    async def get_audit_log(
        self,
        user_id: Optional[str] = None,
        institution_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[RoleAuditEntry]:
        return await self.store.list_audit_entries(
            user_id=user_id,
            institution_id=institution_id,
            action=action,
            limit=limit,
        )
