"""Test fixtures for the role engine tests."""

from datetime import datetime, timedelta
from typing import List, Optional

import pytest

from campus_roles.config import DatabaseConfig, EscalationConfig, RateLimitConfig, RoleManagerConfig, TemporaryRoleConfig
from campus_roles.core.roles import RoleStatus, UserRole
from campus_roles.db.session import create_engine_from_config, create_session_factory, init_models
from campus_roles.db.store import RoleStore
from campus_roles.models.roles import UserRoleAssignment
from campus_roles.services.audit import RoleAuditService
from campus_roles.services.escalation import EscalationPreventionService
from campus_roles.services.notifications import (
    Notification,
    NotificationDeliveryError,
    NotificationDispatcher,
    RoleNotifier,
)
from campus_roles.services.permissions import RolePermissionChecker
from campus_roles.services.rate_limiter import RoleRequestRateLimiter
from campus_roles.services.role_change import RoleChangeProcessor
from campus_roles.services.role_manager import RoleManager
from campus_roles.services.temporary_roles import TemporaryRoleProcessor
from campus_roles.utils.helpers import generate_id

# Monday, inside business hours
FIXED_NOW = datetime(2024, 3, 4, 12, 0, 0)

VALID_JUSTIFICATION = "I have 5 years teaching experience at this institution"


class FakeClock:
    """Manually advanced clock injected into the services."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher keeping every notification in memory."""

    def __init__(self):
        self.sent: List[Notification] = []
        self.fail = False
        self.closed = False

    async def send_notification(self, notification: Notification) -> None:
        if self.fail:
            raise NotificationDeliveryError("Notification service unavailable")
        self.sent.append(notification)

    async def close(self) -> None:
        self.closed = True

    def for_user(self, user_id: str) -> List[Notification]:
        return [n for n in self.sent if n.user_id == user_id]

    def titles(self, user_id: Optional[str] = None) -> List[str]:
        return [n.title for n in self.sent if user_id is None or n.user_id == user_id]


@pytest.fixture
def clock():
    """Clock frozen at FIXED_NOW until advanced."""
    return FakeClock()


@pytest.fixture
async def db_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine_from_config(DatabaseConfig(url="sqlite+aiosqlite:///:memory:"))
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(db_engine):
    return RoleStore(create_session_factory(db_engine))


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifier(dispatcher, store, clock):
    return RoleNotifier(dispatcher, store, clock=clock)


@pytest.fixture
def audit_service(store, clock):
    return RoleAuditService(store, clock=clock)


@pytest.fixture
def rate_limit_config():
    return RateLimitConfig()


@pytest.fixture
def rate_limiter(store, rate_limit_config, clock):
    return RoleRequestRateLimiter(store, rate_limit_config, clock=clock)


@pytest.fixture
def escalation_service(store, clock):
    return EscalationPreventionService(store, EscalationConfig(), clock=clock)


@pytest.fixture
def permission_checker(store, clock):
    return RolePermissionChecker(store, cache_ttl=300, clock=clock)


@pytest.fixture
def role_manager(store, rate_limiter, escalation_service, notifier, audit_service, clock):
    return RoleManager(
        store,
        rate_limiter,
        escalation_service,
        notifier,
        audit_service,
        config=RoleManagerConfig(),
        clock=clock,
    )


@pytest.fixture
def role_change_processor(store, role_manager, permission_checker, notifier, clock):
    return RoleChangeProcessor(store, role_manager, permission_checker, notifier, clock=clock)


@pytest.fixture
def temporary_processor(store, notifier, audit_service, permission_checker, clock):
    return TemporaryRoleProcessor(
        store,
        notifier,
        audit_service,
        config=TemporaryRoleConfig(),
        permission_checker=permission_checker,
        clock=clock,
    )


@pytest.fixture
def grant_role(store, clock):
    """Seed an assignment directly in the store."""

    async def _grant(
        user_id: str,
        role: UserRole,
        institution_id: str = "inst-1",
        department_id: Optional[str] = None,
        is_temporary: bool = False,
        expires_at: Optional[datetime] = None,
        status: RoleStatus = RoleStatus.ACTIVE,
        assigned_at: Optional[datetime] = None,
        metadata: Optional[dict] = None,
    ) -> UserRoleAssignment:
        now = clock()
        return await store.add_assignment(UserRoleAssignment(
            id=generate_id(),
            user_id=user_id,
            role=role,
            status=status,
            assigned_by="seed",
            assigned_at=assigned_at or now,
            expires_at=expires_at,
            department_id=department_id,
            institution_id=institution_id,
            is_temporary=is_temporary,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        ))

    return _grant
