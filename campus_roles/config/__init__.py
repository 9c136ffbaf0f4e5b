import os
import re
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field

from campus_roles.core.roles import UserRole


class DatabaseConfig(BaseModel):
    """Relational store settings."""
    url: str = "sqlite+aiosqlite:///./campus_roles.db"
    echo: bool = False
    create_tables: bool = True


class LoggingConfig(BaseModel):
    """Logging output settings."""
    level: str = "INFO"
    format: str = "text"
    file: Optional[str] = None


class RoleManagerConfig(BaseModel):
    """Role request and assignment policy."""
    default_role_request_expiration: int = Field(
        default=7, gt=0, description="Days before a pending role request expires"
    )
    max_temporary_role_duration: int = Field(
        default=30, gt=0, description="Maximum lifetime of a temporary role in days"
    )
    require_approval_for_roles: List[UserRole] = Field(
        default_factory=lambda: [
            UserRole.TEACHER,
            UserRole.DEPARTMENT_ADMIN,
            UserRole.INSTITUTION_ADMIN,
            UserRole.SYSTEM_ADMIN,
        ]
    )
    auto_approve_roles: List[UserRole] = Field(default_factory=lambda: [UserRole.STUDENT])
    min_justification_length: int = 20
    max_justification_length: int = 500


class WindowLimits(BaseModel):
    per_hour: int
    per_day: int
    per_week: Optional[int] = None


class RoleLimit(BaseModel):
    max_per_day: int
    cooldown_hours: int


class BurstProtection(BaseModel):
    max_requests_in_window: int = 3
    window_size_minutes: int = 5


class RateLimitConfig(BaseModel):
    """Quotas enforced before a role request is accepted."""
    max_requests_per_user: WindowLimits = Field(
        default_factory=lambda: WindowLimits(per_hour=5, per_day=10, per_week=20)
    )
    max_requests_per_ip: WindowLimits = Field(
        default_factory=lambda: WindowLimits(per_hour=20, per_day=50)
    )
    max_requests_per_institution: WindowLimits = Field(
        default_factory=lambda: WindowLimits(per_hour=100, per_day=500)
    )
    role_specific_limits: Dict[UserRole, RoleLimit] = Field(
        default_factory=lambda: {
            UserRole.STUDENT: RoleLimit(max_per_day=2, cooldown_hours=1),
            UserRole.TEACHER: RoleLimit(max_per_day=3, cooldown_hours=2),
            UserRole.DEPARTMENT_ADMIN: RoleLimit(max_per_day=1, cooldown_hours=24),
            UserRole.INSTITUTION_ADMIN: RoleLimit(max_per_day=1, cooldown_hours=72),
            UserRole.SYSTEM_ADMIN: RoleLimit(max_per_day=1, cooldown_hours=168),
        }
    )
    burst_protection: BurstProtection = Field(default_factory=BurstProtection)


class EscalationConfig(BaseModel):
    """Risk scoring thresholds for escalation prevention."""
    business_hours_start: int = 6
    business_hours_end: int = 22
    off_hours_risk: int = 15
    frequent_requests_threshold: int = 3
    frequent_requests_risk: int = 20
    time_check_fail_threshold: int = 30

    distinct_ip_threshold: int = 3
    distinct_ip_risk: int = 25
    suspicious_ip_risk: int = 30
    ip_check_fail_threshold: int = 40

    min_session_id_length: int = 10
    session_failure_risk: int = 50

    denial_rate_threshold: float = 0.5
    denial_rate_risk: int = 25
    escalation_request_threshold: int = 2
    escalation_request_risk: int = 30
    behavior_check_fail_threshold: int = 35

    institution_spread_threshold: int = 2
    institution_spread_risk: int = 20
    cross_institution_privilege_threshold: int = 1
    cross_institution_privilege_risk: int = 25
    cross_institution_fail_threshold: int = 30

    block_risk_threshold: int = 70
    suspicious_risk_increase: int = 30
    suspicious_block_threshold: int = 80
    approval_risk_threshold: int = 50

    rapid_request_threshold: int = 5
    high_privilege_burst_threshold: int = 2
    automation_min_requests: int = 3
    automation_variance_threshold: float = 1000.0


class TemporaryRoleConfig(BaseModel):
    """Temporary role expiry sweep settings."""
    enabled: bool = True
    interval_minutes: int = Field(default=60, gt=0)
    default_role: UserRole = UserRole.STUDENT
    preserve_original_role: bool = True
    notify_on_expiration: bool = True
    warning_hours: int = 24


class NotificationConfig(BaseModel):
    """Notification delivery settings."""
    enabled: bool = True
    service_url: Optional[str] = None
    timeout_seconds: float = 5.0
    channels: List[str] = Field(default_factory=lambda: ["email", "in_app"])


class PermissionConfig(BaseModel):
    cache_ttl_seconds: int = 300


class RoleEngineConfig(BaseModel):
    """Main role engine configuration."""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    role_manager: RoleManagerConfig = Field(default_factory=RoleManagerConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    temporary_roles: TemporaryRoleConfig = Field(default_factory=TemporaryRoleConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    permissions: PermissionConfig = Field(default_factory=PermissionConfig)

    # Raw configuration for sections not modelled above
    raw_config: Dict[str, Any] = Field(default_factory=dict)


class ConfigLoader:
    """Configuration loader for YAML files with environment-specific overrides."""

    BASE_CONFIG_FILE = "roles.yaml"
    SECTIONS = (
        "database",
        "logging",
        "role_manager",
        "rate_limit",
        "escalation",
        "temporary_roles",
        "notifications",
        "permissions",
    )

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize the configuration loader.

        Args:
            config_dir: Directory containing configuration files.
                       Defaults to the config directory of the project.
        """
        if config_dir is None:
            current_dir = Path(__file__).parent.parent.parent
            self.config_dir = current_dir / "config"
        else:
            self.config_dir = Path(config_dir)

    def load_config(self, environment: Optional[str] = None) -> RoleEngineConfig:
        """Load configuration for the specified environment.

        Args:
            environment: Environment name (development, production, test...).
                        If None, will try to detect from ENVIRONMENT variable.

        Returns:
            Loaded and validated configuration.
        """
        if environment is None:
            environment = os.getenv("ENVIRONMENT", "development")

        config_data = self._load_base_config()

        env_config = self._load_environment_config(environment)
        if env_config:
            config_data = self._merge_configs(config_data, env_config)

        config_data = self._substitute_env_vars(config_data)

        return self._create_engine_config(config_data)

    def _load_base_config(self) -> Dict[str, Any]:
        base_config_path = self.config_dir / self.BASE_CONFIG_FILE
        if base_config_path.exists():
            return self._load_yaml_file(base_config_path)
        return {}

    def _load_environment_config(self, environment: str) -> Optional[Dict[str, Any]]:
        env_config_path = self.config_dir / f"{environment}.yaml"
        if env_config_path.exists():
            return self._load_yaml_file(env_config_path)
        return None

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """Load and parse a YAML file."""
        with open(file_path, "r") as file:
            return yaml.safe_load(file) or {}

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _substitute_env_vars(self, config: Any) -> Any:
        """Substitute environment variables in configuration values."""
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_string_env_vars(config)
        else:
            return config

    def _substitute_string_env_vars(self, value: str) -> str:
        """Substitute ${VAR_NAME} and ${VAR_NAME:default} in a string value."""

        def replace_env_var(match):
            var_spec = match.group(1)
            if ':' in var_spec:
                var_name, default_value = var_spec.split(':', 1)
                return os.getenv(var_name, default_value)
            else:
                return os.getenv(var_spec, match.group(0))

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, value)

    def _create_engine_config(self, config_data: Dict[str, Any]) -> RoleEngineConfig:
        """Create a RoleEngineConfig object from configuration data."""
        sections = {
            name: config_data[name]
            for name in self.SECTIONS
            if config_data.get(name) is not None
        }
        return RoleEngineConfig(**sections, raw_config=config_data)


# Global configuration instance
_config_loader = ConfigLoader()
_engine_config: Optional[RoleEngineConfig] = None


def get_config() -> RoleEngineConfig:
    """Get the current role engine configuration."""
    global _engine_config
    if _engine_config is None:
        _engine_config = _config_loader.load_config()
    return _engine_config


def reload_config(environment: Optional[str] = None) -> RoleEngineConfig:
    """Reload the role engine configuration."""
    global _engine_config
    _engine_config = _config_loader.load_config(environment)
    return _engine_config
