"""
Role Escalation Prevention Service.

This module decides whether a proposed role transition may proceed:
- Base risk from the distance between the current and requested role
- Security heuristics (timing, client address, session, behaviour history,
  cross-institution activity) that add to the risk score when they fail
- Escalation rules with per-transition daily limits, cooldowns and
  approver requirements, falling back to the static transition table
- Suspicious pattern detection (rapid requests, privilege jumps, unusual
  progression, automation signatures)
- Approver validation for pending requests

Every decision is logged as an escalation attempt; blocked attempts are also
recorded as suspicious activities. Internal errors fail closed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from campus_roles.config import EscalationConfig
from campus_roles.config.logging import security_logger
from campus_roles.core.roles import (
    HIGH_PRIVILEGE_ROLES,
    LOW_PRIVILEGE_ROLES,
    RoleRequestStatus,
    Severity,
    UserRole,
    as_role,
    can_approve_by_default,
    highest_role,
    is_role_equal_or_higher,
    is_valid_transition,
    role_level,
)
from campus_roles.db.store import RoleStore
from campus_roles.models.roles import EscalationAttempt, RoleRequest, SuspiciousActivity
from campus_roles.utils.helpers import (
    generate_id,
    interval_variance,
    is_automation_user_agent,
    is_suspicious_ip,
    utcnow,
)

logger = logging.getLogger(__name__)

VALIDATION_ERROR_REASON = "Unable to validate role request due to system error"
APPROVER_ERROR_REASON = "Unable to validate approver permissions due to system error"
SUSPICIOUS_BLOCK_REASON = "Request blocked due to suspicious activity"

# Requests for these roles count as privileged in the cross-institution check
CROSS_INSTITUTION_PRIVILEGED_ROLES = (UserRole.INSTITUTION_ADMIN, UserRole.SYSTEM_ADMIN)

# Failing either of these checks blocks the request regardless of score
CRITICAL_CHECKS = ("session_security", "behavior_pattern")


@dataclass
class RequestContext:
    """Client details captured with a role request."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class EscalationRule:
    """Approval, rate and cooldown policy for one role transition."""
    id: str
    from_role: UserRole
    to_role: UserRole
    requires_approval: bool = True
    requires_verification: bool = True
    max_requests_per_day: int = 1
    cooldown_period: int = 24  # hours
    required_approver_role: Optional[UserRole] = None
    description: str = ""


DEFAULT_ESCALATION_RULES: List[EscalationRule] = [
    EscalationRule(
        id="student-to-teacher",
        from_role=UserRole.STUDENT,
        to_role=UserRole.TEACHER,
        max_requests_per_day=1,
        cooldown_period=24,
        required_approver_role=UserRole.DEPARTMENT_ADMIN,
        description="Student requesting teacher role",
    ),
    EscalationRule(
        id="teacher-to-dept-admin",
        from_role=UserRole.TEACHER,
        to_role=UserRole.DEPARTMENT_ADMIN,
        max_requests_per_day=1,
        cooldown_period=72,
        required_approver_role=UserRole.INSTITUTION_ADMIN,
        description="Teacher requesting department admin role",
    ),
    EscalationRule(
        id="dept-admin-to-inst-admin",
        from_role=UserRole.DEPARTMENT_ADMIN,
        to_role=UserRole.INSTITUTION_ADMIN,
        max_requests_per_day=1,
        cooldown_period=168,
        required_approver_role=UserRole.SYSTEM_ADMIN,
        description="Department admin requesting institution admin role",
    ),
    EscalationRule(
        id="any-to-system-admin",
        from_role=UserRole.STUDENT,
        to_role=UserRole.SYSTEM_ADMIN,
        max_requests_per_day=1,
        cooldown_period=720,
        required_approver_role=UserRole.SYSTEM_ADMIN,
        description="Any role requesting system admin",
    ),
]


@dataclass
class CheckResult:
    """Outcome of one security heuristic."""
    passed: bool
    risk_increase: int = 0
    reason: Optional[str] = None


@dataclass
class SecurityCheckSummary:
    risk_increase: int = 0
    failed_checks: List[str] = field(default_factory=list)

    @property
    def critical_failure(self) -> bool:
        return any(check in CRITICAL_CHECKS for check in self.failed_checks)


@dataclass
class SuspiciousPattern:
    pattern: str
    severity: Severity
    reason: str


@dataclass
class EscalationDecision:
    """Verdict on a proposed role transition."""
    allowed: bool
    reason: Optional[str] = None
    requires_approval: bool = False
    risk_score: int = 0
    failed_checks: List[str] = field(default_factory=list)


@dataclass
class ApproverDecision:
    allowed: bool
    reason: Optional[str] = None


def _clamp(score: int) -> int:
    return max(0, min(100, score))


class EscalationPreventionService:
    """Risk scoring and policy gate for role escalation."""

    def __init__(
        self,
        store: RoleStore,
        config: Optional[EscalationConfig] = None,
        rules: Optional[List[EscalationRule]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or EscalationConfig()
        self.rules = list(rules) if rules is not None else list(DEFAULT_ESCALATION_RULES)
        self.clock = clock

    # ------------------------------------------------------------------
    # Role request validation
    # ------------------------------------------------------------------

    async def validate_role_request(
        self,
        user_id: str,
        current_role: Optional[UserRole],
        requested_role: UserRole,
        institution_id: str,
        context: Optional[RequestContext] = None,
    ) -> EscalationDecision:
        """
        Validate a role request against escalation policy.

        Args:
            user_id: Requesting user
            current_role: Role the user holds; looked up when None
            requested_role: Role being requested
            institution_id: Institution scope
            context: Optional client details (IP, user agent, session)

        Returns:
            EscalationDecision with the accumulated risk score
        """
        now = self.clock()
        requested_role = as_role(requested_role)
        from_role = UserRole.STUDENT

        try:
            if current_role is None:
                current_role = await self.get_current_role(user_id, institution_id)
            from_role = as_role(current_role)

            risk_score = self.calculate_base_risk(from_role, requested_role)

            security = await self.run_security_checks(user_id, requested_role, institution_id, context, now)
            risk_score = _clamp(risk_score + security.risk_increase)

            if security.critical_failure or risk_score > self.config.block_risk_threshold:
                failures = security.failed_checks or [
                    f"risk score {risk_score} exceeds {self.config.block_risk_threshold}"
                ]
                decision = EscalationDecision(
                    allowed=False,
                    reason=f"Security checks failed: {', '.join(failures)}",
                    risk_score=risk_score,
                    failed_checks=security.failed_checks,
                )
                await self._record_blocked(
                    user_id, from_role, requested_role, institution_id, context, decision,
                    activity_type="security_check_failure",
                    severity=Severity.HIGH,
                )
                return decision

            rule = self.find_escalation_rule(from_role, requested_role)
            if rule is None:
                if not is_valid_transition(from_role, requested_role):
                    decision = EscalationDecision(
                        allowed=False,
                        reason=(
                            f"Role transition from {from_role.value} to "
                            f"{requested_role.value} is not permitted"
                        ),
                        risk_score=risk_score,
                    )
                    await self._record_blocked(
                        user_id, from_role, requested_role, institution_id, context, decision,
                        activity_type="invalid_transition",
                        severity=Severity.MEDIUM,
                    )
                    return decision
                requires_approval = role_level(requested_role) >= role_level(UserRole.TEACHER)
            else:
                reason = await self._enforce_rule(rule, user_id, requested_role, now)
                if reason:
                    decision = EscalationDecision(allowed=False, reason=reason, risk_score=risk_score)
                    await self._record_blocked(
                        user_id, from_role, requested_role, institution_id, context, decision,
                        activity_type="rapid_role_requests",
                        severity=Severity.MEDIUM,
                    )
                    return decision
                requires_approval = rule.requires_approval

            pattern = await self.detect_suspicious_patterns(user_id, requested_role, context, now)
            if pattern is not None:
                risk_score = _clamp(risk_score + self.config.suspicious_risk_increase)
                if (
                    pattern.severity == Severity.CRITICAL
                    or risk_score > self.config.suspicious_block_threshold
                ):
                    decision = EscalationDecision(
                        allowed=False,
                        reason=SUSPICIOUS_BLOCK_REASON,
                        risk_score=risk_score,
                        failed_checks=[pattern.pattern],
                    )
                    await self._record_blocked(
                        user_id, from_role, requested_role, institution_id, context, decision,
                        activity_type=pattern.pattern,
                        severity=pattern.severity,
                        description=pattern.reason,
                    )
                    return decision
                requires_approval = True

            decision = EscalationDecision(
                allowed=True,
                requires_approval=(
                    requires_approval or risk_score > self.config.approval_risk_threshold
                ),
                risk_score=risk_score,
                failed_checks=security.failed_checks,
            )
            await self.log_escalation_attempt(
                user_id, from_role, requested_role, institution_id, decision, context
            )
            return decision

        except Exception as e:
            logger.error(f"Escalation validation failed for user {user_id}: {e}", exc_info=True)
            decision = EscalationDecision(allowed=False, reason=VALIDATION_ERROR_REASON, risk_score=100)
            await self._record_blocked(
                user_id, from_role, requested_role, institution_id, context, decision,
                activity_type="validation_error",
                severity=Severity.HIGH,
                description=f"Role request validation error: {e}",
            )
            return decision

    async def get_current_role(self, user_id: str, institution_id: str) -> UserRole:
        """Highest active role of the user in the institution, Student by default."""
        assignments = await self.store.list_active_assignments(
            user_id, now=self.clock(), institution_id=institution_id
        )
        return highest_role([a.role for a in assignments]) or UserRole.STUDENT

    def calculate_base_risk(self, from_role: UserRole, to_role: UserRole) -> int:
        """Risk from the size of the privilege jump."""
        level_jump = role_level(to_role) - role_level(from_role)
        if level_jump <= 0:
            risk_score = 5
        elif level_jump == 1:
            risk_score = 10
        elif level_jump == 2:
            risk_score = 25
        else:
            risk_score = 50

        if to_role == UserRole.SYSTEM_ADMIN:
            risk_score += 20

        return _clamp(risk_score)

    def find_escalation_rule(self, from_role: UserRole, to_role: UserRole) -> Optional[EscalationRule]:
        """
        Find the rule governing a transition.

        An exact (from, to) match wins; otherwise a rule for the same target
        role whose source role is at or above the user's role applies.
        """
        for rule in self.rules:
            if rule.from_role == from_role and rule.to_role == to_role:
                return rule
        for rule in self.rules:
            if rule.to_role == to_role and is_role_equal_or_higher(rule.from_role, from_role):
                return rule
        return None

    async def _enforce_rule(
        self, rule: EscalationRule, user_id: str, requested_role: UserRole, now: datetime
    ) -> Optional[str]:
        """Return a denial reason when the rule's rate or cooldown is violated."""
        recent = await self.store.count_role_requests(
            user_id, since=now - timedelta(hours=24), requested_role=requested_role
        )
        if recent >= rule.max_requests_per_day:
            return f"Rate limit exceeded: {recent}/{rule.max_requests_per_day} requests in 24 hours"

        if rule.cooldown_period > 0:
            last = await self.store.get_last_resolved_request(user_id, requested_role)
            if last is not None and last.reviewed_at is not None:
                hours_since = (now - last.reviewed_at).total_seconds() / 3600
                if hours_since < rule.cooldown_period:
                    remaining = int(rule.cooldown_period - hours_since) + 1
                    return (
                        f"Cooldown period active. Please wait {remaining} hours "
                        f"before requesting this role again"
                    )
        return None

    # ------------------------------------------------------------------
    # Security heuristics
    # ------------------------------------------------------------------

    async def run_security_checks(
        self,
        user_id: str,
        requested_role: UserRole,
        institution_id: str,
        context: Optional[RequestContext],
        now: datetime,
    ) -> SecurityCheckSummary:
        """Run every applicable heuristic; failed checks add their risk."""
        checks = [("time_pattern", await self.check_time_patterns(user_id, now))]

        if context is not None and context.ip_address:
            checks.append(("ip_pattern", await self.check_ip_patterns(user_id, context.ip_address, now)))

        if context is not None and context.session_id is not None:
            checks.append(("session_security", self.check_session(context.session_id)))

        checks.append(("behavior_pattern", await self.check_behavior_patterns(user_id, institution_id, now)))
        checks.append(("cross_institution", await self.check_cross_institution_activity(user_id, institution_id, now)))

        summary = SecurityCheckSummary()
        for name, result in checks:
            if not result.passed:
                summary.failed_checks.append(name)
                summary.risk_increase += result.risk_increase
                logger.info(f"Security check {name} failed for user {user_id}: {result.reason}")
        return summary

    async def check_time_patterns(self, user_id: str, now: datetime) -> CheckResult:
        cfg = self.config
        risk_increase = 0
        reasons = []

        if now.hour < cfg.business_hours_start or now.hour > cfg.business_hours_end:
            risk_increase += cfg.off_hours_risk
            reasons.append("request outside business hours")

        recent = await self.store.count_role_requests(user_id, since=now - timedelta(hours=24))
        if recent > cfg.frequent_requests_threshold:
            risk_increase += cfg.frequent_requests_risk
            reasons.append(f"{recent} requests in 24 hours")

        return CheckResult(
            passed=risk_increase < cfg.time_check_fail_threshold,
            risk_increase=risk_increase,
            reason="; ".join(reasons) or None,
        )

    async def check_ip_patterns(self, user_id: str, ip_address: str, now: datetime) -> CheckResult:
        cfg = self.config
        risk_increase = 0
        reasons = []

        addresses = set(await self.store.list_client_ips(user_id, since=now - timedelta(hours=24)))
        addresses.add(ip_address)
        if len(addresses) > cfg.distinct_ip_threshold:
            risk_increase += cfg.distinct_ip_risk
            reasons.append(f"{len(addresses)} distinct addresses in 24 hours")

        if is_suspicious_ip(ip_address):
            risk_increase += cfg.suspicious_ip_risk
            reasons.append(f"address {ip_address} in a reserved range")

        return CheckResult(
            passed=risk_increase < cfg.ip_check_fail_threshold,
            risk_increase=risk_increase,
            reason="; ".join(reasons) or None,
        )

    def check_session(self, session_id: Optional[str]) -> CheckResult:
        if not session_id or len(session_id) < self.config.min_session_id_length:
            return CheckResult(
                passed=False,
                risk_increase=self.config.session_failure_risk,
                reason="missing or malformed session id",
            )
        return CheckResult(passed=True)

    async def check_behavior_patterns(self, user_id: str, institution_id: str, now: datetime) -> CheckResult:
        cfg = self.config
        history = await self.store.list_role_requests(
            user_id=user_id, institution_id=institution_id, since=now - timedelta(days=7)
        )
        risk_increase = 0
        reasons = []

        if history:
            denied = sum(1 for r in history if r.status == RoleRequestStatus.DENIED)
            if denied / len(history) > cfg.denial_rate_threshold:
                risk_increase += cfg.denial_rate_risk
                reasons.append(f"{denied} of {len(history)} recent requests denied")

        escalations = sum(1 for r in history if r.requested_role in HIGH_PRIVILEGE_ROLES)
        if escalations > cfg.escalation_request_threshold:
            risk_increase += cfg.escalation_request_risk
            reasons.append(f"{escalations} administrative role requests this week")

        return CheckResult(
            passed=risk_increase < cfg.behavior_check_fail_threshold,
            risk_increase=risk_increase,
            reason="; ".join(reasons) or None,
        )

    async def check_cross_institution_activity(
        self, user_id: str, institution_id: str, now: datetime
    ) -> CheckResult:
        cfg = self.config
        history = await self.store.list_role_requests(user_id=user_id, since=now - timedelta(days=7))
        risk_increase = 0
        reasons = []

        institutions = {r.institution_id for r in history}
        institutions.add(institution_id)
        if len(institutions) > cfg.institution_spread_threshold:
            risk_increase += cfg.institution_spread_risk
            reasons.append(f"requests across {len(institutions)} institutions")

        privileged = sum(1 for r in history if r.requested_role in CROSS_INSTITUTION_PRIVILEGED_ROLES)
        if privileged > cfg.cross_institution_privilege_threshold:
            risk_increase += cfg.cross_institution_privilege_risk
            reasons.append(f"{privileged} high-privilege requests this week")

        return CheckResult(
            passed=risk_increase < cfg.cross_institution_fail_threshold,
            risk_increase=risk_increase,
            reason="; ".join(reasons) or None,
        )

    async def detect_suspicious_patterns(
        self,
        user_id: str,
        requested_role: UserRole,
        context: Optional[RequestContext],
        now: datetime,
    ) -> Optional[SuspiciousPattern]:
        """
        Look for abuse patterns in the user's recent requests.

        Context-dependent patterns (client signature, timing regularity) are
        only evaluated when a context is supplied.

        Returns:
            The first pattern found, or None
        """
        cfg = self.config
        recent = await self.store.list_role_requests(user_id=user_id, since=now - timedelta(hours=1))

        if len(recent) >= cfg.rapid_request_threshold:
            return SuspiciousPattern(
                "rapid_requests", Severity.CRITICAL, f"{len(recent)} role requests in the last hour"
            )

        privileged = [r for r in recent if r.requested_role in HIGH_PRIVILEGE_ROLES]
        if len(privileged) >= cfg.high_privilege_burst_threshold:
            return SuspiciousPattern(
                "privilege_escalation",
                Severity.HIGH,
                "Multiple high-privilege role requests in short time",
            )

        if requested_role == UserRole.SYSTEM_ADMIN:
            held = await self.store.list_active_assignments(user_id, now=now)
            if any(a.role in LOW_PRIVILEGE_ROLES for a in held):
                return SuspiciousPattern(
                    "unusual_progression",
                    Severity.HIGH,
                    "Attempting to jump from low-privilege to system admin role",
                )

        if context is None:
            return None

        if is_automation_user_agent(context.user_agent):
            return SuspiciousPattern("suspicious_client", Severity.MEDIUM, "Suspicious user agent detected")

        if len(recent) + 1 >= cfg.automation_min_requests:
            variance = interval_variance([r.requested_at for r in recent] + [now])
            if variance is not None and variance < cfg.automation_variance_threshold:
                return SuspiciousPattern("automation", Severity.HIGH, "Automated request pattern detected")

        return None

    # ------------------------------------------------------------------
    # Approver validation
    # ------------------------------------------------------------------

    async def validate_approver_permission(self, approver_id: str, role_request: RoleRequest) -> ApproverDecision:
        """
        Check that an approver may resolve a role request.

        Self-approval is always refused. Otherwise the approver needs an
        active role in the request's institution at or above the governing
        rule's approver role, or a default approval matrix entry.
        """
        try:
            if approver_id == role_request.user_id:
                await self.log_suspicious_activity(
                    user_id=approver_id,
                    activity_type="self_approval_attempt",
                    description=f"User attempted to approve own role request {role_request.id}",
                    severity=Severity.HIGH,
                    institution_id=role_request.institution_id,
                    metadata={"request_id": role_request.id},
                )
                return ApproverDecision(allowed=False, reason="Cannot approve your own role request")

            assignments = await self.store.list_active_assignments(
                approver_id, now=self.clock(), institution_id=role_request.institution_id
            )
            approver_role = highest_role([a.role for a in assignments])
            if approver_role is None:
                return ApproverDecision(allowed=False, reason="Approver has no active roles")

            rule = self.find_escalation_rule(
                role_request.current_role or UserRole.STUDENT, role_request.requested_role
            )
            if rule is not None and rule.required_approver_role is not None:
                if not is_role_equal_or_higher(approver_role, rule.required_approver_role):
                    return ApproverDecision(
                        allowed=False,
                        reason=f"Approver must have {rule.required_approver_role.value} role or higher",
                    )
                return ApproverDecision(allowed=True)

            if not can_approve_by_default(approver_role, role_request.requested_role):
                return ApproverDecision(allowed=False, reason="Approver does not have sufficient permissions")
            return ApproverDecision(allowed=True)

        except Exception as e:
            logger.error(f"Approver validation failed for {approver_id}: {e}", exc_info=True)
            await self.log_suspicious_activity(
                user_id=approver_id,
                activity_type="approver_validation_error",
                description=f"Approver validation error for request {role_request.id}: {e}",
                severity=Severity.HIGH,
                institution_id=role_request.institution_id,
            )
            return ApproverDecision(allowed=False, reason=APPROVER_ERROR_REASON)

    # ------------------------------------------------------------------
    # Security records
    # ------------------------------------------------------------------

    async def _record_blocked(
        self,
        user_id: str,
        from_role: UserRole,
        to_role: UserRole,
        institution_id: str,
        context: Optional[RequestContext],
        decision: EscalationDecision,
        activity_type: str,
        severity: Severity,
        description: Optional[str] = None,
    ) -> None:
        await self.log_escalation_attempt(user_id, from_role, to_role, institution_id, decision, context)
        await self.log_suspicious_activity(
            user_id=user_id,
            activity_type=activity_type,
            description=description or decision.reason or "Role request blocked",
            severity=severity,
            institution_id=institution_id,
            metadata={
                "from_role": from_role.value,
                "to_role": to_role.value,
                "risk_score": decision.risk_score,
                "failed_checks": decision.failed_checks,
                "ip_address": context.ip_address if context else None,
            },
        )
        security_logger.log_security_event(
            "role_request_blocked",
            user_id,
            severity=severity.value,
            description=decision.reason,
            requested_role=to_role.value,
            risk_score=decision.risk_score,
        )

    async def log_escalation_attempt(
        self,
        user_id: str,
        from_role: UserRole,
        to_role: UserRole,
        institution_id: str,
        decision: EscalationDecision,
        context: Optional[RequestContext] = None,
    ) -> None:
        attempt = EscalationAttempt(
            id=generate_id(),
            user_id=user_id,
            from_role=from_role,
            to_role=to_role,
            institution_id=institution_id,
            allowed=decision.allowed,
            reason=decision.reason,
            risk_score=decision.risk_score,
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            timestamp=self.clock(),
        )
        try:
            await self.store.add_escalation_attempt(attempt)
        except Exception as e:
            logger.error(f"Failed to log escalation attempt for user {user_id}: {e}")

    async def log_suspicious_activity(
        self,
        user_id: str,
        activity_type: str,
        description: str,
        severity: Severity,
        institution_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        activity = SuspiciousActivity(
            id=generate_id(),
            user_id=user_id,
            activity_type=activity_type,
            description=description,
            severity=severity,
            institution_id=institution_id,
            metadata=metadata or {},
            detected_at=self.clock(),
        )
        try:
            await self.store.add_suspicious_activity(activity)
        except Exception as e:
            logger.error(f"Failed to log suspicious activity for user {user_id}: {e}")

    async def get_suspicious_activities(
        self,
        institution_id: Optional[str] = None,
        severity: Optional[Severity] = None,
        resolved: Optional[bool] = None,
        limit: int = 50,
    ) -> List[SuspiciousActivity]:
        return await self.store.list_suspicious_activities(
            institution_id=institution_id,
            severities=[severity] if severity else None,
            resolved=resolved,
            limit=limit,
        )

    async def resolve_suspicious_activity(
        self, activity_id: str, resolved_by: str, resolution: str
    ) -> Optional[SuspiciousActivity]:
        activity = await self.store.resolve_suspicious_activity(
            activity_id, resolved_by, resolution, resolved_at=self.clock()
        )
        if activity is not None:
            security_logger.log_security_event(
                "suspicious_activity_resolved",
                activity.user_id,
                severity="low",
                description=resolution,
                resolved_by=resolved_by,
                activity_id=activity_id,
            )
        return activity

    async def get_escalation_attempts(self, user_id: str, limit: int = 50) -> List[EscalationAttempt]:
        return await self.store.list_escalation_attempts(user_id, limit=limit)
