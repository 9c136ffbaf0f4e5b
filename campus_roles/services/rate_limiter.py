"""
Role request rate limiter.

Limits are computed by counting rows of an append-only request log inside
trailing time windows, so there are no counters to race on. Checks run in
a fixed order and stop at the first denial:

1. administrator block
2. per-user hour/day/week windows
3. per-IP hour/day windows (when an IP is known)
4. per-institution hour/day windows
5. burst protection
6. per-role daily cap and cooldown

A request is recorded only after every check passed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from campus_roles.config import RateLimitConfig
from campus_roles.config.logging import security_logger
from campus_roles.core.roles import UserRole, as_role
from campus_roles.db.store import RoleStore
from campus_roles.utils.helpers import next_hour_boundary, next_midnight, seconds_until, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ERROR_REASON = "Unable to verify rate limits due to system error"


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None  # seconds
    remaining_requests: Optional[int] = None
    reset_time: Optional[datetime] = None
    limit_type: Optional[str] = None  # block, user, ip, institution, burst, role_limit, cooldown, system


@dataclass
class RateLimitStatus:
    """Remaining quota report for a user."""
    hourly_remaining: int
    daily_remaining: int
    weekly_remaining: int
    next_reset_time: datetime
    active_cooldowns: List[Dict[str, Any]] = field(default_factory=list)
    blocked_until: Optional[datetime] = None


class RoleRequestRateLimiter:
    """Multi-dimensional rate limiter for role requests."""

    def __init__(
        self,
        store: RoleStore,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or RateLimitConfig()
        self.clock = clock

    async def check_rate_limit(
        self,
        user_id: str,
        requested_role: UserRole,
        institution_id: str,
        client_ip: Optional[str] = None,
    ) -> RateLimitResult:
        """
        Check whether a role request may proceed and record it if so.

        Args:
            user_id: Requesting user
            requested_role: Role being requested
            institution_id: Institution the request targets
            client_ip: Client address, when known

        Returns:
            RateLimitResult; data errors produce a denial
        """
        requested_role = as_role(requested_role)
        now = self.clock()

        try:
            result = await self._evaluate(user_id, requested_role, institution_id, client_ip, now)
        except Exception as e:
            logger.error(f"Rate limit check failed for user {user_id}: {e}", exc_info=True)
            return RateLimitResult(
                allowed=False,
                reason=SYSTEM_ERROR_REASON,
                retry_after=60,
                limit_type="system",
            )

        if not result.allowed:
            await self._log_violation(user_id, requested_role, institution_id, client_ip, result, now)
            return result

        await self._record_request(user_id, requested_role, institution_id, client_ip, now)
        return result

    async def _evaluate(
        self,
        user_id: str,
        requested_role: UserRole,
        institution_id: str,
        client_ip: Optional[str],
        now: datetime,
    ) -> RateLimitResult:
        denial = await self._check_block(user_id, now)
        if denial:
            return denial

        user_limits = self.config.max_requests_per_user
        windows = [
            ("Hourly", timedelta(hours=1), user_limits.per_hour),
            ("Daily", timedelta(days=1), user_limits.per_day),
            ("Weekly", timedelta(days=7), user_limits.per_week),
        ]
        remaining = None
        for label, length, limit in windows:
            if limit is None:
                continue
            count = await self.store.count_rate_limit_entries(now - length, user_id=user_id)
            if count >= limit:
                reset_time = await self._window_reset(label, user_id, now)
                return RateLimitResult(
                    allowed=False,
                    reason=f"{label} limit exceeded ({count}/{limit})",
                    retry_after=seconds_until(reset_time, now),
                    remaining_requests=0,
                    reset_time=reset_time,
                    limit_type="user",
                )
            window_remaining = limit - count - 1
            remaining = window_remaining if remaining is None else min(remaining, window_remaining)

        if client_ip:
            denial = await self._check_scope_windows(
                "IP", "ip", self.config.max_requests_per_ip, now, client_ip=client_ip
            )
            if denial:
                return denial

        denial = await self._check_scope_windows(
            "Institution",
            "institution",
            self.config.max_requests_per_institution,
            now,
            institution_id=institution_id,
        )
        if denial:
            return denial

        denial = await self._check_burst(user_id, now)
        if denial:
            return denial

        denial = await self._check_role_limits(user_id, requested_role, now)
        if denial:
            return denial

        return RateLimitResult(
            allowed=True,
            remaining_requests=max(remaining, 0) if remaining is not None else None,
            reset_time=next_hour_boundary(now),
        )

    async def _check_block(self, user_id: str, now: datetime) -> Optional[RateLimitResult]:
        block = await self.store.get_active_block(user_id, now)
        if block is None:
            return None
        return RateLimitResult(
            allowed=False,
            reason=f"User is blocked: {block.reason}",
            retry_after=seconds_until(block.blocked_until, now),
            remaining_requests=0,
            reset_time=block.blocked_until,
            limit_type="block",
        )

    async def _window_reset(self, label: str, user_id: str, now: datetime) -> datetime:
        if label == "Hourly":
            return next_hour_boundary(now)
        if label == "Daily":
            return next_midnight(now)
        # The weekly window frees up when its oldest request leaves the lookback
        oldest = await self.store.get_oldest_rate_limit_entry_time(user_id, now - timedelta(days=7))
        return (oldest or now) + timedelta(days=7)

    async def _check_scope_windows(
        self,
        label: str,
        limit_type: str,
        limits,
        now: datetime,
        **scope: str,
    ) -> Optional[RateLimitResult]:
        """Hour and day windows for an IP or institution scope."""
        for window, length, limit, reset_time in (
            ("hourly", timedelta(hours=1), limits.per_hour, next_hour_boundary(now)),
            ("daily", timedelta(days=1), limits.per_day, next_midnight(now)),
        ):
            count = await self.store.count_rate_limit_entries(now - length, **scope)
            if count >= limit:
                return RateLimitResult(
                    allowed=False,
                    reason=f"{label} {window} limit exceeded ({count}/{limit})",
                    retry_after=seconds_until(reset_time, now),
                    remaining_requests=0,
                    reset_time=reset_time,
                    limit_type=limit_type,
                )
        return None

    async def _check_burst(self, user_id: str, now: datetime) -> Optional[RateLimitResult]:
        burst = self.config.burst_protection
        window = timedelta(minutes=burst.window_size_minutes)
        count = await self.store.count_rate_limit_entries(now - window, user_id=user_id)
        if count < burst.max_requests_in_window:
            return None
        return RateLimitResult(
            allowed=False,
            reason=(
                f"Burst protection triggered ({count}/{burst.max_requests_in_window} "
                f"requests in {burst.window_size_minutes} minutes)"
            ),
            retry_after=int(window.total_seconds()),
            remaining_requests=0,
            reset_time=now + window,
            limit_type="burst",
        )

    async def _check_role_limits(
        self, user_id: str, requested_role: UserRole, now: datetime
    ) -> Optional[RateLimitResult]:
        role_limit = self.config.role_specific_limits.get(requested_role)
        if role_limit is None:
            return None

        count = await self.store.count_rate_limit_entries(
            now - timedelta(days=1), user_id=user_id, requested_role=requested_role
        )
        if count >= role_limit.max_per_day:
            reset_time = next_midnight(now)
            return RateLimitResult(
                allowed=False,
                reason=f"Daily limit for {requested_role.value} requests exceeded ({count}/{role_limit.max_per_day})",
                retry_after=seconds_until(reset_time, now),
                remaining_requests=0,
                reset_time=reset_time,
                limit_type="role_limit",
            )

        # Cooldown is a courtesy check: lookup errors let the request through
        try:
            cooldown_until = await self.store.get_active_cooldown(user_id, requested_role, now)
        except Exception as e:
            logger.warning(f"Cooldown check failed for user {user_id}, allowing request: {e}")
            return None

        if cooldown_until is None:
            return None
        return RateLimitResult(
            allowed=False,
            reason=f"Role cooldown active for {requested_role.value}",
            retry_after=seconds_until(cooldown_until, now),
            remaining_requests=0,
            reset_time=cooldown_until,
            limit_type="cooldown",
        )

    async def _record_request(
        self,
        user_id: str,
        requested_role: UserRole,
        institution_id: str,
        client_ip: Optional[str],
        now: datetime,
    ) -> None:
        """Append the request to the log and refresh the role cooldown."""
        try:
            await self.store.add_rate_limit_entry(user_id, requested_role, institution_id, client_ip, now)

            role_limit = self.config.role_specific_limits.get(requested_role)
            if role_limit is not None and role_limit.cooldown_hours > 0:
                await self.store.upsert_cooldown(
                    user_id,
                    requested_role,
                    expires_at=now + timedelta(hours=role_limit.cooldown_hours),
                    now=now,
                )
        except Exception as e:
            logger.error(f"Failed to record role request for rate limiting (user {user_id}): {e}")

    async def _log_violation(
        self,
        user_id: str,
        requested_role: UserRole,
        institution_id: str,
        client_ip: Optional[str],
        result: RateLimitResult,
        now: datetime,
    ) -> None:
        logger.warning(f"Rate limit violation for user {user_id}: {result.reason}")
        try:
            await self.store.add_violation(
                user_id=user_id,
                violation_type=result.limit_type or "user",
                reason=result.reason or "",
                timestamp=now,
                metadata={
                    "requested_role": requested_role.value,
                    "institution_id": institution_id,
                    "client_ip": client_ip,
                    "retry_after": result.retry_after,
                },
            )
        except Exception as e:
            logger.error(f"Failed to log rate limit violation for user {user_id}: {e}")

    async def get_rate_limit_status(self, user_id: str) -> RateLimitStatus:
        """Remaining quota of a user. Reports no quota if the store fails."""
        now = self.clock()
        limits = self.config.max_requests_per_user
        try:
            hourly = await self.store.count_rate_limit_entries(now - timedelta(hours=1), user_id=user_id)
            daily = await self.store.count_rate_limit_entries(now - timedelta(days=1), user_id=user_id)
            weekly = await self.store.count_rate_limit_entries(now - timedelta(days=7), user_id=user_id)
            cooldowns = await self.store.list_active_cooldowns(user_id, now)
            block = await self.store.get_active_block(user_id, now)
        except Exception as e:
            logger.error(f"Failed to get rate limit status for user {user_id}: {e}")
            return RateLimitStatus(
                hourly_remaining=0,
                daily_remaining=0,
                weekly_remaining=0,
                next_reset_time=next_hour_boundary(now),
            )

        return RateLimitStatus(
            hourly_remaining=max(0, limits.per_hour - hourly),
            daily_remaining=max(0, limits.per_day - daily),
            weekly_remaining=max(0, (limits.per_week or 0) - weekly),
            next_reset_time=next_hour_boundary(now),
            active_cooldowns=[
                {"role": role, "expires_at": expires_at} for role, expires_at in cooldowns
            ],
            blocked_until=block.blocked_until if block else None,
        )

    async def reset_user_rate_limit(self, user_id: str, admin_id: str, reason: Optional[str] = None) -> None:
        """Clear the request log and cooldowns of a user."""
        entries, cooldowns = await self.store.delete_rate_limit_history(user_id)
        await self.store.add_admin_action(
            user_id=user_id,
            admin_id=admin_id,
            action="reset_rate_limit",
            timestamp=self.clock(),
            reason=reason,
        )
        security_logger.log_security_event(
            "rate_limit_reset",
            user_id,
            severity="low",
            description=f"Rate limits reset by {admin_id}",
            admin_id=admin_id,
            entries_deleted=entries,
            cooldowns_deleted=cooldowns,
        )

    async def block_user(self, user_id: str, admin_id: str, reason: str, duration_hours: int = 24) -> datetime:
        """
        Block a user from making role requests.

        Returns:
            The moment the block ends
        """
        now = self.clock()
        blocked_until = now + timedelta(hours=duration_hours)
        await self.store.add_block(user_id, admin_id, reason, now, blocked_until)
        await self.store.add_admin_action(
            user_id=user_id,
            admin_id=admin_id,
            action="block_user",
            timestamp=now,
            reason=reason,
            duration_hours=duration_hours,
        )
        security_logger.log_security_event(
            "user_blocked",
            user_id,
            severity="medium",
            description=reason,
            admin_id=admin_id,
            duration_hours=duration_hours,
        )
        return blocked_until

    async def unblock_user(self, user_id: str, admin_id: str) -> bool:
        lifted = await self.store.deactivate_blocks(user_id)
        await self.store.add_admin_action(
            user_id=user_id,
            admin_id=admin_id,
            action="unblock_user",
            timestamp=self.clock(),
        )
        return lifted > 0

    async def get_violations(self, user_id: str, since: Optional[datetime] = None, limit: int = 50):
        return await self.store.list_violations(user_id, since=since, limit=limit)
