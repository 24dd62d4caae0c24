"""
Configuration loading and validation.
"""

import os
import re
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from insight_delivery.database.models import Channel


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/insights.db"


@dataclass
class SchedulerConfig:
    """Scheduler timing and locking."""

    interval_seconds: float = 60
    lock_ttl_seconds: float = 55
    contention_alert_threshold: int = 5
    instance_id: str = field(default_factory=_default_instance_id)


@dataclass
class DeliveryConfig:
    """Worker pool and retry policy."""

    max_workers: int = 8
    batch_size: int = 200
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    send_timeout_seconds: float = 5.0
    late_result_wait_seconds: float = 30.0
    claim_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 1.0


@dataclass
class PushChannelConfig:
    """Push gateway settings."""

    endpoint: str = ""
    api_key: str = ""
    max_concurrency: int = 10


@dataclass
class WhatsAppChannelConfig:
    """WhatsApp Cloud API settings."""

    api_url: str = "https://graph.facebook.com/v19.0"
    phone_number_id: str = ""
    access_token: str = ""
    max_concurrency: int = 10


@dataclass
class EmailChannelConfig:
    """SMTP settings."""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""
    max_concurrency: int = 5


@dataclass
class ChannelsConfig:
    """Per-channel provider configuration."""

    push: PushChannelConfig = field(default_factory=PushChannelConfig)
    whatsapp: WhatsAppChannelConfig = field(default_factory=WhatsAppChannelConfig)
    email: EmailChannelConfig = field(default_factory=EmailChannelConfig)

    def for_channel(self, channel: Channel) -> Any:
        return getattr(self, channel.value)

    def concurrency(self) -> dict[Channel, int]:
        return {channel: self.for_channel(channel).max_concurrency for channel in Channel}


@dataclass
class AlertingConfig:
    """Operator alerting."""

    discord_webhook_url: str = ""
    mention_on_failure: bool = False


@dataclass
class ContentConfig:
    """Notification content settings."""

    insights_base_url: str = "https://app.example.com/insights"


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigValidationError("Database path is required")

    path = Path(db_path)
    parent = path.parent
    if parent.exists() and not os.access(parent, os.W_OK):
        raise ConfigValidationError(f"Database path not writable: {parent}")

    delivery = config_dict.get("delivery") or {}
    if int(delivery.get("max_attempts", 3)) < 1:
        raise ConfigValidationError("delivery.max_attempts must be at least 1")
    if int(delivery.get("max_workers", 8)) < 1:
        raise ConfigValidationError("delivery.max_workers must be at least 1")
    if float(delivery.get("send_timeout_seconds", 5.0)) <= 0:
        raise ConfigValidationError("delivery.send_timeout_seconds must be positive")
    if float(delivery.get("poll_interval_seconds", 1.0)) <= 0:
        raise ConfigValidationError("delivery.poll_interval_seconds must be positive")

    # A claim must outlive the slowest job its own worker can still be running
    max_attempts = int(delivery.get("max_attempts", 3))
    longest_job = max_attempts * (
        float(delivery.get("send_timeout_seconds", 5.0))
        + float(delivery.get("late_result_wait_seconds", 30.0))
    ) + (max_attempts - 1) * float(delivery.get("backoff_max_seconds", 30.0))
    if float(delivery.get("claim_timeout_seconds", 600.0)) <= longest_job:
        raise ConfigValidationError(
            f"delivery.claim_timeout_seconds must exceed {longest_job:g}s, "
            "the longest a job can stay in flight"
        )

    scheduler = config_dict.get("scheduler") or {}
    interval = float(scheduler.get("interval_seconds", 60))
    if interval <= 0:
        raise ConfigValidationError("scheduler.interval_seconds must be positive")
    if int(scheduler.get("contention_alert_threshold", 5)) < 1:
        raise ConfigValidationError("scheduler.contention_alert_threshold must be at least 1")

    channels = config_dict.get("channels") or {}
    unknown = set(channels) - {channel.value for channel in Channel}
    if unknown:
        raise ConfigValidationError(f"Unknown channels: {', '.join(sorted(unknown))}")
    for name, settings in channels.items():
        if int((settings or {}).get("max_concurrency", 1)) < 1:
            raise ConfigValidationError(f"channels.{name}.max_concurrency must be at least 1")


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    # Validate
    _validate_config(config_dict)

    try:
        channels_dict = config_dict.get("channels") or {}
        channels = ChannelsConfig(
            push=PushChannelConfig(**(channels_dict.get("push") or {})),
            whatsapp=WhatsAppChannelConfig(**(channels_dict.get("whatsapp") or {})),
            email=EmailChannelConfig(**(channels_dict.get("email") or {})),
        )

        return AppConfig(
            database=DatabaseConfig(**(config_dict.get("database") or {})),
            scheduler=SchedulerConfig(**(config_dict.get("scheduler") or {})),
            delivery=DeliveryConfig(**(config_dict.get("delivery") or {})),
            channels=channels,
            alerting=AlertingConfig(**(config_dict.get("alerting") or {})),
            content=ContentConfig(**(config_dict.get("content") or {})),
            advanced=AdvancedConfig(**(config_dict.get("advanced") or {})),
        )
    except TypeError as e:
        # Unknown keys in a section
        raise ConfigValidationError(f"Invalid configuration: {e}") from e
