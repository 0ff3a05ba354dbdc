"""
Configuration Management for the Escalation Engine

Loads engine settings from defaults, an optional YAML/JSON file and
ESCALATION_* environment variables (highest precedence), then validates
them field by field and against business rules.
"""

import os
import json
import yaml
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Any, Mapping
from dataclasses import dataclass, asdict, field, fields
from enum import Enum
from pathlib import Path

from .models.errors import ConfigurationError
from .models.rules import NotificationChannel


logger = logging.getLogger(__name__)

ENV_PREFIX = "ESCALATION_"


class SuccessPolicy(Enum):
    """How per-channel results roll up into an action's success flag."""
    ANY_CHANNEL = "any_channel"
    ALL_CHANNELS = "all_channels"


class ConfigSource(Enum):
    """Configuration sources in order of precedence."""
    ENVIRONMENT = "environment"
    FILE = "file"
    DEFAULT = "default"


@dataclass
class EscalationConfig:
    """Complete escalation engine configuration."""

    # Overdue scanner
    scan_interval_seconds: int = 300
    open_statuses: List[str] = field(default_factory=lambda: ["open", "in_progress"])

    # Firing guard
    default_rearm_window_minutes: int = 1440  # 24 hours

    # Dispatch
    channel_timeout_seconds: float = 10.0
    success_policy: str = SuccessPolicy.ANY_CHANNEL.value
    incident_base_url: str = "http://localhost:8000/incidents"

    # Manual escalation
    manual_escalation_targets: List[str] = field(default_factory=lambda: ["Security_Manager", "Safety_Manager"])
    manual_escalation_channels: List[str] = field(default_factory=lambda: ["email", "push"])
    manual_escalation_template_id: str = "escalation_manual"

    # Background execution
    rule_snapshot_refresh_seconds: int = 60
    deferred_poll_interval_seconds: int = 30
    deferred_lease_seconds: int = 300
    deferred_max_attempts: int = 5
    evaluation_workers: int = 2
    evaluation_queue_size: int = 1000

    # History persistence retries
    history_write_max_attempts: int = 5
    history_retry_base_delay: float = 0.5
    history_retry_max_delay: float = 30.0

    # Storage
    database_url: str = "sqlite:///escalation.db"
    redis_url: Optional[str] = None

    # Channel transports
    smtp_host: Optional[str] = None
    smtp_port: int = 25
    smtp_from_address: str = "noreply@escalation.local"
    sms_gateway_url: Optional[str] = None
    sms_api_key: Optional[str] = None
    push_gateway_url: Optional[str] = None
    push_api_key: Optional[str] = None
    whatsapp_api_url: Optional[str] = None
    whatsapp_access_token: Optional[str] = None

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def policy(self) -> SuccessPolicy:
        return SuccessPolicy(self.success_policy)

    @property
    def default_rearm_window(self) -> timedelta:
        return timedelta(minutes=self.default_rearm_window_minutes)

    @property
    def manual_channels(self) -> List[NotificationChannel]:
        return [NotificationChannel(name) for name in self.manual_escalation_channels]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationConfig':
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")
        return cls(**{key: value for key, value in data.items() if key in known})


class ConfigValidator:
    """Configuration validation with type checking and business rules."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

        self.validation_rules = {
            'scan_interval_seconds': {
                'type': int,
                'min': 10,
                'max': 86400,
                'description': 'Interval between overdue scans'
            },
            'default_rearm_window_minutes': {
                'type': int,
                'min': 1,
                'max': 43200,  # 30 days
                'description': 'Minimum interval before a rule refires for an unchanged incident'
            },
            'channel_timeout_seconds': {
                'type': (int, float),
                'min': 0.1,
                'max': 300.0,
                'description': 'Per-channel send timeout'
            },
            'success_policy': {
                'type': str,
                'allowed_values': [policy.value for policy in SuccessPolicy],
                'description': 'Roll-up of channel results into action success'
            },
            'rule_snapshot_refresh_seconds': {
                'type': int,
                'min': 0,
                'max': 3600,
                'description': 'Maximum age of a cached rule snapshot'
            },
            'deferred_poll_interval_seconds': {
                'type': int,
                'min': 1,
                'max': 3600,
                'description': 'Polling interval for due deferred actions'
            },
            'deferred_lease_seconds': {
                'type': int,
                'min': 1,
                'max': 86400,
                'description': 'How long a claimed deferred action is held before another worker may retry it'
            },
            'deferred_max_attempts': {
                'type': int,
                'min': 1,
                'max': 100,
                'description': 'Executions of a failing deferred action before it is dropped'
            },
            'evaluation_workers': {
                'type': int,
                'min': 1,
                'max': 64,
                'description': 'Background evaluation consumers'
            },
            'evaluation_queue_size': {
                'type': int,
                'min': 1,
                'max': 100000,
                'description': 'Bound on queued evaluation requests'
            },
            'history_write_max_attempts': {
                'type': int,
                'min': 1,
                'max': 20,
                'description': 'Attempts before a history write is declared lost'
            },
            'history_retry_base_delay': {
                'type': (int, float),
                'min': 0.0,
                'max': 60.0,
                'description': 'Initial backoff between history write attempts'
            },
            'history_retry_max_delay': {
                'type': (int, float),
                'min': 0.0,
                'max': 600.0,
                'description': 'Backoff ceiling between history write attempts'
            },
            'open_statuses': {
                'type': list,
                'description': 'Incident statuses eligible for escalation'
            },
            'manual_escalation_targets': {
                'type': list,
                'description': 'Role groups notified on manual escalation'
            },
            'manual_escalation_channels': {
                'type': list,
                'allowed_items': [channel.value for channel in NotificationChannel],
                'description': 'Channels used for manual escalation'
            },
            'environment': {
                'type': str,
                'allowed_values': ['development', 'testing', 'staging', 'production'],
                'description': 'Deployment environment'
            },
            'log_level': {
                'type': str,
                'allowed_values': ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                'description': 'Logging level'
            }
        }

    def validate_config(self, config: EscalationConfig) -> List[str]:
        """
        Validate configuration against rules.

        Args:
            config: Configuration to validate

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        config_dict = config.to_dict()

        for key, value in config_dict.items():
            if key in self.validation_rules:
                errors.extend(self._validate_field(key, value, self.validation_rules[key]))

        errors.extend(self._validate_business_rules(config))

        return errors

    def _validate_field(self, field_name: str, value: Any, rules: Dict[str, Any]) -> List[str]:
        """Validate individual field against rules."""
        errors = []

        expected_type = rules.get('type')
        if expected_type and (not isinstance(value, expected_type) or isinstance(value, bool)):
            type_name = getattr(expected_type, '__name__', 'number')
            errors.append(f"{field_name}: Expected {type_name}, got {type(value).__name__}")
            return errors

        if isinstance(value, (int, float)):
            min_val = rules.get('min')
            max_val = rules.get('max')

            if min_val is not None and value < min_val:
                errors.append(f"{field_name}: Value {value} below minimum {min_val}")

            if max_val is not None and value > max_val:
                errors.append(f"{field_name}: Value {value} above maximum {max_val}")

        allowed_values = rules.get('allowed_values')
        if allowed_values and value not in allowed_values:
            errors.append(f"{field_name}: Value '{value}' not in allowed values: {allowed_values}")

        allowed_items = rules.get('allowed_items')
        if allowed_items:
            for item in value:
                if item not in allowed_items:
                    errors.append(f"{field_name}: Item '{item}' not in allowed values: {allowed_items}")

        return errors

    def _validate_business_rules(self, config: EscalationConfig) -> List[str]:
        """Validate business logic rules."""
        errors = []

        if config.history_retry_max_delay < config.history_retry_base_delay:
            errors.append("Maximum history retry delay must not be below the base delay")

        if not config.open_statuses:
            errors.append("At least one open status is required for overdue scanning")

        if not config.manual_escalation_targets:
            errors.append("Manual escalation needs at least one target role")

        if not config.manual_escalation_channels:
            errors.append("Manual escalation needs at least one channel")

        if config.channel_timeout_seconds >= config.scan_interval_seconds:
            errors.append("Channel timeout must be shorter than the scan interval")

        if config.deferred_lease_seconds <= config.channel_timeout_seconds:
            errors.append("Deferred action lease must be longer than the channel timeout")

        if config.environment == "production":
            if config.log_level == "DEBUG":
                errors.append("Debug logging should not be used in production")
            if config.database_url.startswith("sqlite"):
                errors.append("SQLite storage should not be used in production")

        return errors


def _parse_env_value(env_value: str, current_value: Any) -> Any:
    """Parse environment variable value to the type of the current value."""
    if isinstance(current_value, bool):
        return env_value.lower() in ('true', '1', 'yes', 'on')
    elif isinstance(current_value, int):
        return int(env_value)
    elif isinstance(current_value, float):
        return float(env_value)
    elif isinstance(current_value, list):
        return [item.strip() for item in env_value.split(',') if item.strip()]
    else:
        return env_value


def _load_file(file_path: str) -> Dict[str, Any]:
    path = Path(file_path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file {file_path} does not exist")

    suffix = path.suffix.lower()
    with open(path, 'r') as f:
        if suffix == '.json':
            data = json.load(f)
        elif suffix in ('.yml', '.yaml'):
            data = yaml.safe_load(f) or {}
        else:
            raise ConfigurationError(f"Unsupported configuration file format: {path.suffix}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {file_path} must contain a mapping")

    # Rule and directory sections live in the same file but are not engine settings
    return data.get("engine", data)


def load_config(
    config_file_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> EscalationConfig:
    """
    Build the engine configuration from defaults, file and environment.

    Raises:
        ConfigurationError: if the merged configuration fails validation
    """
    environ = os.environ if environ is None else environ
    values = EscalationConfig().to_dict()
    sources = {key: ConfigSource.DEFAULT for key in values}

    if config_file_path:
        for key, value in _load_file(config_file_path).items():
            if key in values:
                values[key] = value
                sources[key] = ConfigSource.FILE
        logger.info(f"Configuration loaded from file: {config_file_path}")

    for key in list(values):
        env_var = f"{ENV_PREFIX}{key.upper()}"
        env_value = environ.get(env_var)
        if env_value is None:
            continue
        try:
            values[key] = _parse_env_value(env_value, values[key])
        except ValueError:
            raise ConfigurationError(f"{env_var}: cannot parse '{env_value}'")
        sources[key] = ConfigSource.ENVIRONMENT

    config = EscalationConfig.from_dict(values)
    errors = ConfigValidator().validate_config(config)
    if errors:
        logger.error(f"Configuration validation failed: {errors}")
        raise ConfigurationError("Invalid escalation configuration", errors=errors)

    overridden = sorted(key for key, source in sources.items() if source != ConfigSource.DEFAULT)
    logger.debug(f"Configuration built; overridden keys: {overridden}")
    return config
