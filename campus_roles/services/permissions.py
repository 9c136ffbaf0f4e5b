"""
Permission checks derived from active role assignments.

A user's grants inside an institution are the union of the permissions of
every active role they hold there (each role inheriting from the one below
it). Results are cached per user for a short TTL; role changes invalidate
the cache explicitly.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from campus_roles.core.roles import UserRole, get_role_permissions
from campus_roles.db.store import RoleStore
from campus_roles.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionScope:
    """Scope a permission is checked in."""
    institution_id: Optional[str] = None
    department_id: Optional[str] = None


class PermissionChecker(ABC):
    """Answers whether an actor holds a permission in a scope."""

    @abstractmethod
    async def has_permission(self, actor_id: str, permission_key: str, scope: PermissionScope) -> bool:
        """Check a single permission key such as ``role.assign``."""

    @abstractmethod
    def invalidate_user_cache(self, user_id: str) -> None:
        """Forget cached grants of a user."""


class RolePermissionChecker(PermissionChecker):
    """Permission checker backed by the role assignment store."""

    def __init__(
        self,
        store: RoleStore,
        cache_ttl: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.clock = clock
        self._cache_ttl = cache_ttl
        self._permission_cache: Dict[Tuple[str, Optional[str]], Set[str]] = {}
        self._cache_timestamps: Dict[Tuple[str, Optional[str]], float] = {}

    async def get_user_permissions(self, user_id: str, institution_id: Optional[str] = None) -> Set[str]:
        """Get all permission keys of a user in an institution (cached)."""
        cache_key = (user_id, institution_id)
        cached_at = self._cache_timestamps.get(cache_key)
        if cached_at is not None and time.time() - cached_at < self._cache_ttl:
            return self._permission_cache[cache_key]

        assignments = await self.store.list_active_assignments(
            user_id, now=self.clock(), institution_id=institution_id
        )
        # System administrators hold their grants in every institution
        if institution_id is not None:
            platform_roles = await self.store.list_active_assignments(
                user_id, now=self.clock(), role=UserRole.SYSTEM_ADMIN
            )
            assignments.extend(platform_roles)

        permissions: Set[str] = set()
        for assignment in assignments:
            permissions.update(get_role_permissions(assignment.role))

        self._permission_cache[cache_key] = permissions
        self._cache_timestamps[cache_key] = time.time()
        return permissions

    async def has_permission(self, actor_id: str, permission_key: str, scope: PermissionScope) -> bool:
        permissions = await self.get_user_permissions(actor_id, scope.institution_id)
        granted = permission_key in permissions
        if not granted:
            logger.debug(f"Permission '{permission_key}' not granted to '{actor_id}'")
        return granted

    def invalidate_user_cache(self, user_id: str) -> None:
        stale_keys: List[Tuple[str, Optional[str]]] = [
            key for key in self._permission_cache if key[0] == user_id
        ]
        for key in stale_keys:
            self._permission_cache.pop(key, None)
            self._cache_timestamps.pop(key, None)
        if stale_keys:
            logger.debug(f"Invalidated {len(stale_keys)} cached permission sets for '{user_id}'")
