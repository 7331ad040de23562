# observability/config.py
"""
Configuration for the observability and resilience subsystem.
Provides centralized configuration management and time window parsing.
"""

import os
import re
from dataclasses import dataclass

TIME_WINDOW_PATTERN = re.compile(r"^(\d+)([smhd])$")
TIME_WINDOW_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

# An unreachable store is never reported as healthy
UNKNOWN_HEALTH_STATUSES = ("degraded", "unhealthy")


def parse_time_window(window: str, default: int = 300) -> int:
    """Convert a window like '5m' or '24h' to seconds, or return default."""
    match = TIME_WINDOW_PATTERN.match(window.strip()) if isinstance(window, str) else None
    if not match:
        return default
    value, unit = match.groups()
    return int(value) * TIME_WINDOW_UNITS[unit]


def is_valid_time_window(window: str) -> bool:
    return isinstance(window, str) and TIME_WINDOW_PATTERN.match(window.strip()) is not None


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() not in ("false", "0", "no", "off")


@dataclass
class ResilienceConfig:
    """Configuration for the event logger, recovery engine and monitor."""

    # Durable store
    database_url: str = "sqlite://"

    # Event logger
    log_level: str = "INFO"
    persist_logs: bool = True
    log_batch_size: int = 10
    log_flush_interval: float = 30.0  # seconds
    max_metrics_sessions: int = 100
    metrics_idle_timeout: float = 3600.0  # seconds

    # Monitoring loop
    monitoring_enabled: bool = True
    monitoring_interval: float = 300.0  # seconds
    auto_resolve_interval: float = 300.0  # seconds
    cleanup_interval: float = 3600.0  # seconds

    # Health classification (error_rate is errors per minute)
    health_window: int = 300  # seconds
    degraded_error_rate: float = 5.0
    unhealthy_error_rate: float = 20.0
    unknown_health_status: str = "unhealthy"

    # Retention
    metrics_retention_days: int = 7
    log_retention_days: int = 30

    # Alert actions
    webhook_timeout: float = 10.0

    def __post_init__(self):
        status = str(self.unknown_health_status).lower()
        if status not in UNKNOWN_HEALTH_STATUSES:
            raise ValueError(
                f"unknown_health_status must be one of {UNKNOWN_HEALTH_STATUSES}, got {self.unknown_health_status!r}"
            )
        self.unknown_health_status = status

    @classmethod
    def from_environment(cls) -> "ResilienceConfig":
        """Create configuration from environment variables."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite://"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            persist_logs=_env_bool("PERSIST_LOGS_TO_DB", "true"),
            log_batch_size=int(os.environ.get("LOG_BATCH_SIZE", "10")),
            log_flush_interval=float(os.environ.get("LOG_FLUSH_INTERVAL", "30")),
            max_metrics_sessions=int(os.environ.get("MAX_METRICS_SIZE", "100")),
            metrics_idle_timeout=float(os.environ.get("METRICS_IDLE_TIMEOUT", "3600")),
            monitoring_enabled=_env_bool("ENABLE_MONITORING", "true"),
            monitoring_interval=float(os.environ.get("METRICS_INTERVAL", "300")),
            auto_resolve_interval=float(os.environ.get("AUTO_RESOLVE_INTERVAL", "300")),
            cleanup_interval=float(os.environ.get("CLEANUP_INTERVAL", "3600")),
            health_window=int(os.environ.get("HEALTH_WINDOW", "300")),
            degraded_error_rate=float(os.environ.get("DEGRADED_ERROR_RATE", "5")),
            unhealthy_error_rate=float(os.environ.get("UNHEALTHY_ERROR_RATE", "20")),
            unknown_health_status=os.environ.get("UNKNOWN_HEALTH_STATUS", "unhealthy").lower(),
            metrics_retention_days=int(os.environ.get("METRICS_RETENTION_DAYS", "7")),
            log_retention_days=int(os.environ.get("LOG_RETENTION_DAYS", "30")),
            webhook_timeout=float(os.environ.get("WEBHOOK_TIMEOUT", "10")),
        )

    @classmethod
    def from_dict(cls, config_dict: dict) -> "ResilienceConfig":
        """Create configuration from dictionary, ignoring unknown keys."""
        known = {name: value for name, value in config_dict.items() if name in cls.__dataclass_fields__}
        return cls(**known)
