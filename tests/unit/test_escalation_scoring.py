"""Unit tests for escalation risk scoring and heuristics."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from campus_roles.config import EscalationConfig
from campus_roles.core.roles import RoleRequestStatus, Severity, UserRole
from campus_roles.models.roles import RoleRequest
from campus_roles.services.escalation import (
    VALIDATION_ERROR_REASON,
    EscalationPreventionService,
    RequestContext,
)
from tests.fixtures import FIXED_NOW, FakeClock


def history_entry(role=UserRole.TEACHER, status=RoleRequestStatus.PENDING,
                  institution_id="inst-1", requested_at=FIXED_NOW) -> RoleRequest:
    return RoleRequest(
        id=f"req-{role.value}-{status.value}-{institution_id}-{requested_at:%H%M%S}",
        user_id="user-1",
        requested_role=role,
        status=status,
        requested_at=requested_at,
        verification_method="admin_approval",
        institution_id=institution_id,
        expires_at=requested_at + timedelta(days=7),
    )


@pytest.fixture
def role_store():
    """Store double with an empty history."""
    store = AsyncMock()
    store.count_role_requests.return_value = 0
    store.list_role_requests.return_value = []
    store.list_client_ips.return_value = []
    store.list_active_assignments.return_value = []
    store.get_last_resolved_request.return_value = None
    return store


@pytest.fixture
def service(role_store):
    return EscalationPreventionService(role_store, EscalationConfig(), clock=FakeClock())


class TestBaseRisk:
    """Test cases for calculate_base_risk."""

    @pytest.mark.parametrize("from_role,to_role,expected", [
        (UserRole.TEACHER, UserRole.STUDENT, 5),
        (UserRole.STUDENT, UserRole.TEACHER, 10),
        (UserRole.STUDENT, UserRole.DEPARTMENT_ADMIN, 25),
        (UserRole.STUDENT, UserRole.INSTITUTION_ADMIN, 50),
        (UserRole.STUDENT, UserRole.SYSTEM_ADMIN, 70),
        (UserRole.INSTITUTION_ADMIN, UserRole.SYSTEM_ADMIN, 30),
        (UserRole.SYSTEM_ADMIN, UserRole.SYSTEM_ADMIN, 25),
    ])
    def test_level_jumps(self, service, from_role, to_role, expected):
        assert service.calculate_base_risk(from_role, to_role) == expected


class TestEscalationRules:
    """Test cases for find_escalation_rule."""

    def test_exact_match(self, service):
        rule = service.find_escalation_rule(UserRole.STUDENT, UserRole.TEACHER)

        assert rule.id == "student-to-teacher"
        assert rule.required_approver_role is UserRole.DEPARTMENT_ADMIN

    def test_rule_for_higher_source_applies_to_lower_roles(self, service):
        rule = service.find_escalation_rule(UserRole.STUDENT, UserRole.DEPARTMENT_ADMIN)

        assert rule.id == "teacher-to-dept-admin"

    def test_no_rule(self, service):
        assert service.find_escalation_rule(UserRole.TEACHER, UserRole.STUDENT) is None
        assert service.find_escalation_rule(UserRole.INSTITUTION_ADMIN, UserRole.SYSTEM_ADMIN) is None

    def test_custom_rules(self, role_store):
        service = EscalationPreventionService(role_store, rules=[])

        assert service.find_escalation_rule(UserRole.STUDENT, UserRole.TEACHER) is None


class TestSecurityChecks:
    """Test cases for the individual heuristics."""

    @pytest.mark.asyncio
    async def test_time_pattern_business_hours(self, service, role_store):
        role_store.count_role_requests.return_value = 4

        result = await service.check_time_patterns("user-1", FIXED_NOW)

        assert result.passed is True
        assert result.risk_increase == 20

    @pytest.mark.asyncio
    async def test_time_pattern_off_hours_and_frequent(self, service, role_store):
        role_store.count_role_requests.return_value = 4

        result = await service.check_time_patterns("user-1", datetime(2024, 3, 4, 3, 0))

        assert result.passed is False
        assert result.risk_increase == 35
        assert "outside business hours" in result.reason

    @pytest.mark.asyncio
    async def test_ip_pattern_counts_current_address(self, service, role_store):
        role_store.list_client_ips.return_value = ["1.1.1.1", "2.2.2.2", "3.3.3.3"]

        result = await service.check_ip_patterns("user-1", "4.4.4.4", FIXED_NOW)

        assert result.passed is True
        assert result.risk_increase == 25

        repeat = await service.check_ip_patterns("user-1", "3.3.3.3", FIXED_NOW)
        assert repeat.risk_increase == 0

    @pytest.mark.asyncio
    async def test_ip_pattern_reserved_range(self, service, role_store):
        role_store.list_client_ips.return_value = ["1.1.1.1", "2.2.2.2", "3.3.3.3"]

        result = await service.check_ip_patterns("user-1", "10.0.0.5", FIXED_NOW)

        assert result.passed is False
        assert result.risk_increase == 55

    def test_session(self, service):
        assert service.check_session("a1b2c3d4e5f6").passed is True

        short = service.check_session("abc")
        assert short.passed is False
        assert short.risk_increase == 50
        assert service.check_session("").passed is False

    @pytest.mark.asyncio
    async def test_behavior_denial_rate(self, service, role_store):
        role_store.list_role_requests.return_value = [
            history_entry(status=RoleRequestStatus.DENIED),
            history_entry(status=RoleRequestStatus.DENIED),
            history_entry(status=RoleRequestStatus.APPROVED),
        ]

        result = await service.check_behavior_patterns("user-1", "inst-1", FIXED_NOW)

        assert result.passed is True
        assert result.risk_increase == 25

    @pytest.mark.asyncio
    async def test_behavior_denials_and_admin_requests(self, service, role_store):
        role_store.list_role_requests.return_value = [
            history_entry(UserRole.DEPARTMENT_ADMIN, RoleRequestStatus.DENIED),
            history_entry(UserRole.DEPARTMENT_ADMIN, RoleRequestStatus.DENIED),
            history_entry(UserRole.INSTITUTION_ADMIN, RoleRequestStatus.PENDING),
        ]

        result = await service.check_behavior_patterns("user-1", "inst-1", FIXED_NOW)

        assert result.passed is False
        assert result.risk_increase == 55
        kwargs = role_store.list_role_requests.call_args.kwargs
        assert kwargs["institution_id"] == "inst-1"
        assert kwargs["since"] == FIXED_NOW - timedelta(days=7)

    @pytest.mark.asyncio
    async def test_cross_institution(self, service, role_store):
        role_store.list_role_requests.return_value = [
            history_entry(UserRole.INSTITUTION_ADMIN, institution_id="inst-2"),
            history_entry(UserRole.SYSTEM_ADMIN, institution_id="inst-3"),
        ]

        result = await service.check_cross_institution_activity("user-1", "inst-1", FIXED_NOW)

        assert result.passed is False
        assert result.risk_increase == 45

    @pytest.mark.asyncio
    async def test_cross_institution_single_privileged_request(self, service, role_store):
        role_store.list_role_requests.return_value = [
            history_entry(UserRole.INSTITUTION_ADMIN, institution_id="inst-2"),
        ]

        result = await service.check_cross_institution_activity("user-1", "inst-1", FIXED_NOW)

        assert result.passed is True
        assert result.risk_increase == 0


class TestSuspiciousPatterns:
    """Test cases for detect_suspicious_patterns."""

    @pytest.mark.asyncio
    async def test_rapid_requests_are_critical(self, service, role_store):
        role_store.list_role_requests.return_value = [
            history_entry(requested_at=FIXED_NOW - timedelta(minutes=i)) for i in range(5)
        ]

        pattern = await service.detect_suspicious_patterns("user-1", UserRole.TEACHER, None, FIXED_NOW)

        assert pattern.pattern == "rapid_requests"
        assert pattern.severity is Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_privilege_burst(self, service, role_store):
        role_store.list_role_requests.return_value = [
            history_entry(UserRole.DEPARTMENT_ADMIN, requested_at=FIXED_NOW - timedelta(minutes=30)),
            history_entry(UserRole.INSTITUTION_ADMIN, requested_at=FIXED_NOW - timedelta(minutes=10)),
        ]

        pattern = await service.detect_suspicious_patterns("user-1", UserRole.TEACHER, None, FIXED_NOW)

        assert pattern.pattern == "privilege_escalation"
        assert pattern.severity is Severity.HIGH

    @pytest.mark.asyncio
    async def test_unusual_progression(self, service, role_store):
        role_store.list_active_assignments.return_value = [MagicMock(role=UserRole.STUDENT)]

        pattern = await service.detect_suspicious_patterns("user-1", UserRole.SYSTEM_ADMIN, None, FIXED_NOW)

        assert pattern.pattern == "unusual_progression"

    @pytest.mark.asyncio
    async def test_automation_user_agent(self, service):
        context = RequestContext(ip_address="8.8.8.8", user_agent="curl/8.4.0")

        pattern = await service.detect_suspicious_patterns("user-1", UserRole.TEACHER, context, FIXED_NOW)

        assert pattern.pattern == "suspicious_client"
        assert pattern.severity is Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_regular_timing(self, service, role_store):
        role_store.list_role_requests.return_value = [
            history_entry(requested_at=FIXED_NOW - timedelta(minutes=20)),
            history_entry(requested_at=FIXED_NOW - timedelta(minutes=10)),
        ]
        context = RequestContext(ip_address="8.8.8.8", user_agent="Mozilla/5.0")

        pattern = await service.detect_suspicious_patterns("user-1", UserRole.TEACHER, context, FIXED_NOW)

        assert pattern.pattern == "automation"

    @pytest.mark.asyncio
    async def test_context_patterns_need_context(self, service, role_store):
        role_store.list_role_requests.return_value = [
            history_entry(requested_at=FIXED_NOW - timedelta(minutes=20)),
            history_entry(requested_at=FIXED_NOW - timedelta(minutes=10)),
        ]

        assert await service.detect_suspicious_patterns("user-1", UserRole.TEACHER, None, FIXED_NOW) is None


class TestValidateRoleRequest:
    """Test cases for the overall decision."""

    @pytest.mark.asyncio
    async def test_downgrade_is_allowed_without_approval(self, service, role_store):
        decision = await service.validate_role_request("user-1", UserRole.TEACHER, UserRole.STUDENT, "inst-1")

        assert decision.allowed is True
        assert decision.requires_approval is False
        assert decision.risk_score == 5
        role_store.add_escalation_attempt.assert_awaited_once()
        role_store.add_suspicious_activity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_session_blocks(self, service, role_store):
        context = RequestContext(ip_address="8.8.8.8", user_agent="Mozilla/5.0", session_id="abc")

        decision = await service.validate_role_request(
            "user-1", UserRole.STUDENT, UserRole.TEACHER, "inst-1", context
        )

        assert decision.allowed is False
        assert decision.reason == "Security checks failed: session_security"
        assert decision.risk_score == 60
        activity = role_store.add_suspicious_activity.call_args.args[0]
        assert activity.activity_type == "security_check_failure"
        assert activity.severity is Severity.HIGH

    @pytest.mark.asyncio
    async def test_invalid_transition(self, service):
        decision = await service.validate_role_request(
            "user-1", UserRole.TEACHER, UserRole.SYSTEM_ADMIN, "inst-1"
        )

        assert decision.allowed is False
        assert decision.reason == "Role transition from teacher to system_admin is not permitted"

    @pytest.mark.asyncio
    async def test_rule_daily_limit(self, service, role_store):
        role_store.count_role_requests.return_value = 1

        decision = await service.validate_role_request(
            "user-1", UserRole.STUDENT, UserRole.TEACHER, "inst-1"
        )

        assert decision.allowed is False
        assert decision.reason == "Rate limit exceeded: 1/1 requests in 24 hours"

    @pytest.mark.asyncio
    async def test_rule_cooldown(self, service, role_store):
        role_store.get_last_resolved_request.return_value = MagicMock(
            reviewed_at=FIXED_NOW - timedelta(hours=5, minutes=30)
        )

        decision = await service.validate_role_request(
            "user-1", UserRole.STUDENT, UserRole.TEACHER, "inst-1"
        )

        assert decision.allowed is False
        assert decision.reason == (
            "Cooldown period active. Please wait 19 hours before requesting this role again"
        )

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(self, service, role_store):
        role_store.list_active_assignments.side_effect = RuntimeError("database down")

        decision = await service.validate_role_request("user-1", None, UserRole.TEACHER, "inst-1")

        assert decision.allowed is False
        assert decision.reason == VALIDATION_ERROR_REASON
        assert decision.risk_score == 100
        activity = role_store.add_suspicious_activity.call_args.args[0]
        assert activity.activity_type == "validation_error"

    @pytest.mark.asyncio
    async def test_recording_failures_do_not_propagate(self, service, role_store):
        role_store.add_escalation_attempt.side_effect = RuntimeError("disk full")

        decision = await service.validate_role_request("user-1", UserRole.TEACHER, UserRole.STUDENT, "inst-1")

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_rule_covers_lower_source_role(self, service):
        """Test that Teacher to Institution Admin falls under the Department Admin rule."""
        decision = await service.validate_role_request(
            "user-1", UserRole.TEACHER, UserRole.INSTITUTION_ADMIN, "inst-1"
        )

        assert decision.allowed is True
        assert decision.requires_approval is True
        assert decision.risk_score == 25
