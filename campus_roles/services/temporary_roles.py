"""
Temporary Role Processor.

Background sweep that expires temporary role assignments and reverts users
to their previous role, expires stale pending role requests, and sends
expiry warnings. The processor is constructed and started explicitly by the
composition root; nothing runs on import.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from campus_roles.config import TemporaryRoleConfig
from campus_roles.config.logging import StructuredLogger
from campus_roles.core.errors import AssignmentNotFound, ValidationError
from campus_roles.core.roles import SYSTEM_ACTOR, AuditAction, RoleRequestStatus, RoleStatus, UserRole, as_role
from campus_roles.db.store import RoleStore
from campus_roles.models.roles import UserRoleAssignment
from campus_roles.services.audit import RoleAuditService
from campus_roles.services.notifications import RoleNotifier
from campus_roles.services.permissions import PermissionChecker
from campus_roles.utils.helpers import generate_id, start_of_day, utcnow

logger = logging.getLogger(__name__)
sweep_logger = StructuredLogger("campus_roles.sweeps")


@dataclass
class ProcessingError:
    item_id: str
    user_id: str
    error: str


@dataclass
class ProcessingResult:
    """Outcome of one sweep."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    # Expiring assignments that were no longer current; left untouched
    skipped: int = 0
    errors: List[ProcessingError] = field(default_factory=list)


@dataclass
class TemporaryRoleStats:
    active: int
    expiring_soon: int
    expired_today: int


class TemporaryRoleProcessor:
    """Expires temporary roles on a fixed interval."""

    def __init__(
        self,
        store: RoleStore,
        notifier: RoleNotifier,
        audit: RoleAuditService,
        config: Optional[TemporaryRoleConfig] = None,
        permission_checker: Optional[PermissionChecker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.config = config or TemporaryRoleConfig()
        self.permission_checker = permission_checker
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._is_processing = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_processor(self, interval_minutes: Optional[int] = None) -> None:
        """
        Start the periodic sweep. A running processor is restarted.

        The first sweep runs immediately, then every ``interval_minutes``.
        """
        interval = interval_minutes or self.config.interval_minutes
        if self._task is not None:
            await self.stop_processor()

        logger.info(f"Starting temporary role processor with {interval} minute intervals")
        self._task = asyncio.create_task(self._processing_loop(interval * 60))

    async def stop_processor(self) -> None:
        """Stop the periodic sweep. No-op when it is not running."""
        if self._task is None:
            return

        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Temporary role processor stopped")

    async def _processing_loop(self, interval_seconds: float):
        while True:
            try:
                await self.run_cycle()
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in temporary role processing loop: {e}", exc_info=True)
                await asyncio.sleep(interval_seconds)

    async def run_cycle(self) -> None:
        """One sweep: expired temporary roles, then stale role requests."""
        await self.process_expired_roles()
        await self.process_expired_requests()

    async def process_expired_roles(self) -> ProcessingResult:
        """
        Expire every active temporary assignment whose expiry has passed.

        Per-assignment failures are collected and do not stop the sweep.
        A call made while another sweep is in flight returns an empty result.
        """
        if self._is_processing:
            logger.info("Role expiration processing already in progress, skipping")
            return ProcessingResult()

        self._is_processing = True
        started = time.time()
        try:
            expired = await self.store.list_temporary_assignments(
                expires_before=self.clock(), status=RoleStatus.ACTIVE
            )
            result = ProcessingResult(processed=len(expired))

            for assignment in expired:
                try:
                    if await self.process_role_expiration(assignment) is None:
                        result.skipped += 1
                    else:
                        result.successful += 1
                except Exception as e:
                    result.failed += 1
                    result.errors.append(ProcessingError(assignment.id, assignment.user_id, str(e)))
                    logger.error(f"Failed to expire role assignment {assignment.id} for user {assignment.user_id}: {e}")

            sweep_logger.log_sweep(
                "temporary_roles",
                processed=result.processed,
                successful=result.successful,
                failed=result.failed,
                skipped=result.skipped,
                duration_ms=round((time.time() - started) * 1000, 2),
            )
            return result
        finally:
            self._is_processing = False

    async def process_role_expiration(self, expired: UserRoleAssignment) -> Optional[UserRoleAssignment]:
        """
        Expire one temporary assignment and revert the user.

        Returns:
            The assignment the user was reverted to, or None when the
            expiring assignment is no longer the user's current one
        """
        now = self.clock()
        if expired.expires_at is None or expired.expires_at > now:
            raise ValidationError(f"Role assignment {expired.id} is not yet expired", field="expires_at")

        current = await self.store.get_current_assignment(expired.user_id, expired.institution_id)
        if current is None:
            raise AssignmentNotFound(
                f"No current role assignment found for user {expired.user_id}",
                user_id=expired.user_id,
                institution_id=expired.institution_id,
            )

        if current.id != expired.id:
            logger.warning(
                f"Skipping expiry of role assignment {expired.id} for user {expired.user_id}: "
                f"it is no longer the current assignment"
            )
            return None

        revert_to = self._determine_reversion_role(current)

        await self.store.update_assignment(expired.id, updated_at=now, status=RoleStatus.EXPIRED)

        reverted = await self.store.get_active_assignment(expired.user_id, revert_to, expired.institution_id)
        if reverted is None:
            reverted = await self.store.add_assignment(UserRoleAssignment(
                id=generate_id(),
                user_id=expired.user_id,
                role=revert_to,
                status=RoleStatus.ACTIVE,
                assigned_by=SYSTEM_ACTOR,
                assigned_at=now,
                department_id=expired.department_id,
                institution_id=expired.institution_id,
                is_temporary=False,
                metadata={
                    "auto_expired": True,
                    "reverted_from": expired.role.value,
                    "original_assignment_id": expired.id,
                },
                created_at=now,
                updated_at=now,
            ))

        await self.audit.log_action(
            AuditAction.EXPIRED,
            user_id=expired.user_id,
            performed_by=SYSTEM_ACTOR,
            old_role=expired.role,
            new_role=revert_to,
            reason="Temporary role assignment expired",
            institution_id=expired.institution_id,
            department_id=expired.department_id,
            metadata={
                "expired_assignment_id": expired.id,
                "new_assignment_id": reverted.id,
                "expiration_date": expired.expires_at.isoformat(),
            },
        )

        if self.permission_checker is not None:
            self.permission_checker.invalidate_user_cache(expired.user_id)

        if self.config.notify_on_expiration:
            await self.notifier.notify_temporary_role_expired(expired, revert_to)

        return reverted

    def _determine_reversion_role(self, assignment: UserRoleAssignment) -> UserRole:
        previous_role = assignment.metadata.get("previous_role")
        if self.config.preserve_original_role and previous_role:
            return as_role(previous_role)

        original_role = assignment.metadata.get("original_role")
        if original_role:
            return as_role(original_role)

        return self.config.default_role

    async def extend_temporary_role(
        self,
        assignment_id: str,
        new_expiration: datetime,
        extended_by: str,
        reason: str,
    ) -> UserRoleAssignment:
        """
        Move the expiry of an active temporary assignment.

        Every extension is appended to ``extension_history`` in the
        assignment metadata.
        """
        assignment = await self.store.get_assignment(assignment_id)
        if assignment is None:
            raise AssignmentNotFound(f"Role assignment {assignment_id} not found")

        if not assignment.is_temporary:
            raise ValidationError("Cannot extend non-temporary role assignment")

        if assignment.status != RoleStatus.ACTIVE:
            raise ValidationError(f"Cannot extend role assignment with status {assignment.status.value}")

        now = self.clock()
        if new_expiration <= now:
            raise ValidationError("New expiration date must be in the future", field="new_expiration")

        previous_expiration = assignment.expires_at.isoformat() if assignment.expires_at else None
        metadata = dict(assignment.metadata)
        metadata["extended"] = True
        metadata["extension_history"] = list(metadata.get("extension_history", [])) + [{
            "extended_by": extended_by,
            "extended_at": now.isoformat(),
            "previous_expiration": previous_expiration,
            "new_expiration": new_expiration.isoformat(),
            "reason": reason,
        }]

        updated = await self.store.update_assignment(
            assignment_id, updated_at=now, expires_at=new_expiration, metadata=metadata
        )

        await self.audit.log_action(
            AuditAction.CHANGED,
            user_id=assignment.user_id,
            performed_by=extended_by,
            old_role=assignment.role,
            new_role=assignment.role,
            reason=f"Temporary role extended: {reason}",
            institution_id=assignment.institution_id,
            department_id=assignment.department_id,
            metadata={
                "assignment_id": assignment_id,
                "previous_expiration": previous_expiration,
                "new_expiration": new_expiration.isoformat(),
            },
        )
        await self.notifier.notify_temporary_role_extended(updated, extended_by)
        return updated

    async def process_expired_requests(self) -> ProcessingResult:
        """Mark pending role requests past their expiry as Expired."""
        now = self.clock()
        stale = await self.store.list_stale_pending_requests(now)
        result = ProcessingResult(processed=len(stale))

        for request in stale:
            try:
                expired = await self.store.resolve_role_request(request.id, RoleRequestStatus.EXPIRED, resolved_at=now)
                if expired is None:
                    # Resolved by someone else since it was listed
                    continue
                await self.audit.log_action(
                    AuditAction.EXPIRED,
                    user_id=expired.user_id,
                    performed_by=SYSTEM_ACTOR,
                    old_role=expired.current_role,
                    new_role=expired.requested_role,
                    reason="Role request expired without review",
                    institution_id=expired.institution_id,
                    department_id=expired.department_id,
                    metadata={"request_id": expired.id},
                )
                await self.notifier.notify_role_request_expired(expired)
                result.successful += 1
            except Exception as e:
                result.failed += 1
                result.errors.append(ProcessingError(request.id, request.user_id, str(e)))
                logger.error(f"Failed to expire role request {request.id}: {e}")

        if result.processed:
            logger.info(f"Expired {result.successful} of {result.processed} stale role requests")
        return result

    async def get_roles_expiring_within(self, hours: int) -> List[UserRoleAssignment]:
        now = self.clock()
        return await self.store.list_temporary_assignments(
            expires_after=now,
            expires_before=now + timedelta(hours=hours),
            status=RoleStatus.ACTIVE,
        )

    async def send_expiration_warnings(self, hours: Optional[int] = None) -> int:
        """
        Warn holders of temporary roles expiring within ``hours``.

        Returns:
            Number of warnings handed to the dispatcher
        """
        hours = hours or self.config.warning_hours
        now = self.clock()
        sent = 0
        for assignment in await self.get_roles_expiring_within(hours):
            hours_remaining = max(1, math.ceil((assignment.expires_at - now).total_seconds() / 3600))
            await self.notifier.notify_temporary_role_expiring(assignment, hours_remaining)
            sent += 1
        return sent

    async def get_temporary_role_stats(self) -> TemporaryRoleStats:
        now = self.clock()
        return TemporaryRoleStats(
            active=await self.store.count_temporary_assignments(RoleStatus.ACTIVE, expires_after=now),
            expiring_soon=await self.store.count_temporary_assignments(
                RoleStatus.ACTIVE, expires_after=now, expires_before=now + timedelta(hours=24)
            ),
            expired_today=await self.store.count_temporary_assignments(
                RoleStatus.EXPIRED, updated_since=start_of_day(now)
            ),
        )
