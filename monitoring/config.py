"""Configuration management for the line monitor."""

import os
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, Field

from line_checks.errors import ConfigurationError
from line_checks.notifier import SmtpConfig, TelegramConfig
from line_checks.probe_client import ProbeConfig


class ProbeSettings(BaseModel):
    """Line endpoint probe configuration."""
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-probe timeout in seconds")
    ping_path: str = Field(default="/api/v1/ping", description="Liveness ping path")
    availability_path: str = Field(
        default="/api/v1/handle/availability/imessage", description="Channel availability path"
    )
    token_param: str = Field(default="guid", description="Query parameter carrying the line token")
    address_param: str = Field(default="address", description="Query parameter carrying the address")
    health_probe_address: Optional[str] = Field(
        default=None, description="Address queried by the health cycle's availability probe"
    )

    def to_probe_config(self) -> ProbeConfig:
        return ProbeConfig(
            timeout_seconds=self.timeout_seconds,
            ping_path=self.ping_path,
            availability_path=self.availability_path,
            token_param=self.token_param,
            address_param=self.address_param,
        )


class AlertingSettings(BaseModel):
    """Alert throttling configuration."""
    rearm_after_hours: float = Field(default=48.0, gt=0, description="Healthy streak needed to re-arm alerts")
    telegram_mirror: bool = Field(default=True, description="Mirror alerts to Telegram when configured")

    @property
    def rearm_after(self) -> timedelta:
        return timedelta(hours=self.rearm_after_hours)


class SmtpSettings(BaseModel):
    """SMTP transport for alert emails."""
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    start_tls: bool = True
    timeout_seconds: float = 30.0

    def to_smtp_config(self) -> Optional[SmtpConfig]:
        if not (self.host or "").strip():
            return None
        return SmtpConfig(
            host=self.host.strip(),
            port=self.port,
            username=self.username,
            password=self.password,
            sender=self.sender,
            start_tls=self.start_tls,
            timeout_seconds=self.timeout_seconds,
        )


class TelegramSettings(BaseModel):
    """Optional Telegram operations channel."""
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None

    def to_telegram_config(self) -> Optional[TelegramConfig]:
        if not (self.bot_token and self.chat_id):
            return None
        return TelegramConfig(bot_token=self.bot_token, chat_id=str(self.chat_id))


class SchedulerSettings(BaseModel):
    """Recurring triggers and queue workers."""
    enabled: bool = Field(default=True, description="Start recurring triggers with the service")
    health_check_interval_seconds: int = Field(default=300, gt=0)
    scheduled_messages_interval_seconds: int = Field(default=60, gt=0)
    workers_per_queue: int = Field(default=1, ge=1)


class AvailabilitySettings(BaseModel):
    """Contact availability checks."""
    sync_batch_limit: int = Field(default=10, ge=0, description="Largest batch resolved inline")
    concurrency: int = Field(default=5, ge=1, description="Parallel contacts per bulk run")


class MonitoringConfig(BaseModel):
    """Main configuration for the line monitor."""

    environment: str = Field(default="production", description="Deployment environment")
    log_level: str = Field(default="INFO", description="Logging level")

    db_path: str = Field(default="data/line_monitor.db", description="SQLite database path")
    admin_token: Optional[str] = Field(default=None, description="Bearer token for admin endpoints")
    monitor_token: Optional[str] = Field(default=None, description="Bearer token for monitoring endpoints")

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    alerting: AlertingSettings = Field(default_factory=AlertingSettings)
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    availability: AvailabilitySettings = Field(default_factory=AvailabilitySettings)

    def validate_for_cycle(self) -> None:
        """Raise ConfigurationError when a health cycle cannot run."""
        if not (self.db_path or "").strip():
            raise ConfigurationError("db_path is not configured")
        if not (self.probe.health_probe_address or "").strip():
            raise ConfigurationError("probe.health_probe_address is not configured")


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


# env var -> (section or None for top level, key, caster)
ENV_OVERRIDES: Dict[str, Tuple[Optional[str], str, Callable[[str], Any]]] = {
    "MONITORING_ENV": (None, "environment", str),
    "LOG_LEVEL": (None, "log_level", str),
    "LINE_MONITOR_DB_PATH": (None, "db_path", str),
    "ADMIN_TOKEN": (None, "admin_token", str),
    "MONITOR_TOKEN": (None, "monitor_token", str),
    "API_PORT": (None, "api_port", int),
    "HEALTH_PROBE_ADDRESS": ("probe", "health_probe_address", str),
    "PROBE_TIMEOUT_SECONDS": ("probe", "timeout_seconds", float),
    "SMTP_HOST": ("smtp", "host", str),
    "SMTP_PORT": ("smtp", "port", int),
    "SMTP_USER": ("smtp", "username", str),
    "SMTP_PASS": ("smtp", "password", str),
    "SMTP_FROM": ("smtp", "sender", str),
    "TELEGRAM_BOT_TOKEN": ("telegram", "bot_token", str),
    "TELEGRAM_CHAT_ID": ("telegram", "chat_id", str),
    "HEALTH_CHECK_INTERVAL_SECONDS": ("scheduler", "health_check_interval_seconds", int),
    "SCHEDULER_ENABLED": ("scheduler", "enabled", _as_bool),
    "AVAILABILITY_SYNC_BATCH_LIMIT": ("availability", "sync_batch_limit", int),
}


def load_config(config_path: Optional[str] = None) -> MonitoringConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("MONITORING_CONFIG", "config/monitoring.yaml")

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {config_path}")

    for env_name, (section, key, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_name}: {raw!r}") from e
        if section is None:
            config_data[key] = value
        else:
            target = config_data.setdefault(section, {})
            if not isinstance(target, dict):
                raise ConfigurationError(f"Config section {section!r} must be a mapping")
            target[key] = value

    return MonitoringConfig(**config_data)


_config: Optional[MonitoringConfig] = None


def get_config() -> MonitoringConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[MonitoringConfig]) -> None:
    global _config
    _config = config
