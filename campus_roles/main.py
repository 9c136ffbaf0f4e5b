"""
Composition root for the role engine.

``RoleEngine`` builds every collaborator explicitly from configuration and
owns the lifecycle of the background processor, the notification
dispatcher and the database engine. ``lifespan`` plugs the engine into a
FastAPI application.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI

from campus_roles.config import RoleEngineConfig, get_config
from campus_roles.config.logging import setup_logging
from campus_roles.db.session import create_engine_from_config, create_session_factory, init_models
from campus_roles.db.store import RoleStore
from campus_roles.services.audit import RoleAuditService
from campus_roles.services.escalation import EscalationPreventionService
from campus_roles.services.notifications import (
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    RoleNotifier,
)
from campus_roles.services.permissions import RolePermissionChecker
from campus_roles.services.rate_limiter import RoleRequestRateLimiter
from campus_roles.services.role_change import RoleChangeProcessor
from campus_roles.services.role_manager import RoleManager
from campus_roles.services.temporary_roles import TemporaryRoleProcessor
from campus_roles.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class RoleEngine:
    """All role engine services wired together."""

    def __init__(
        self,
        config: Optional[RoleEngineConfig] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
        configure_logging: bool = True,
    ):
        self.config = config or get_config()

        if configure_logging:
            setup_logging(
                log_level=self.config.logging.level,
                log_format=self.config.logging.format,
                log_file=self.config.logging.file,
            )

        self.engine = create_engine_from_config(self.config.database)
        self.session_factory = create_session_factory(self.engine)
        self.store = RoleStore(self.session_factory)

        self.dispatcher = dispatcher or self._create_dispatcher()
        self.notifier = RoleNotifier(
            self.dispatcher,
            self.store,
            channels=self.config.notifications.channels,
            enabled=self.config.notifications.enabled,
            clock=clock,
        )
        self.audit = RoleAuditService(self.store, clock=clock)
        self.permission_checker = RolePermissionChecker(
            self.store, cache_ttl=self.config.permissions.cache_ttl_seconds, clock=clock
        )
        self.rate_limiter = RoleRequestRateLimiter(self.store, self.config.rate_limit, clock=clock)
        self.escalation = EscalationPreventionService(self.store, self.config.escalation, clock=clock)
        self.role_manager = RoleManager(
            self.store,
            self.rate_limiter,
            self.escalation,
            self.notifier,
            self.audit,
            config=self.config.role_manager,
            clock=clock,
        )
        self.role_change = RoleChangeProcessor(
            self.store, self.role_manager, self.permission_checker, self.notifier, clock=clock
        )
        self.temporary_roles = TemporaryRoleProcessor(
            self.store,
            self.notifier,
            self.audit,
            config=self.config.temporary_roles,
            permission_checker=self.permission_checker,
            clock=clock,
        )

    def _create_dispatcher(self) -> NotificationDispatcher:
        settings = self.config.notifications
        if settings.service_url:
            return HttpNotificationDispatcher(settings.service_url, timeout=settings.timeout_seconds)
        return LoggingNotificationDispatcher()

    async def startup(self) -> None:
        """Create tables if configured and start the temporary role processor."""
        if self.config.database.create_tables:
            await init_models(self.engine)

        if self.config.temporary_roles.enabled:
            await self.temporary_roles.start_processor(self.config.temporary_roles.interval_minutes)

        logger.info("Role engine started")

    async def shutdown(self) -> None:
        """Stop background work and release connections."""
        await self.temporary_roles.stop_processor()
        await self.dispatcher.close()
        await self.engine.dispose()
        logger.info("Role engine stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan exposing the engine as ``app.state.role_engine``."""
    engine = RoleEngine()
    await engine.startup()
    app.state.role_engine = engine

    yield

    await engine.shutdown()
