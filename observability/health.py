"""
Health classification for the tool server.

Derives a point-in-time health snapshot from the error-and-above log entries
persisted by the event logger. The snapshot is never stored; it is recomputed
on demand and on every monitoring tick.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

ERROR_LEVELS = ["error", "critical"]


class HealthStatus(Enum):
    """Health status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class WindowMetrics:
    """Raw error counts over a trailing window."""
    error_count: int
    critical_error_count: int
    window_seconds: int

    @property
    def error_rate(self) -> float:
        """Errors per minute."""
        minutes = self.window_seconds / 60
        return self.error_count / minutes if minutes > 0 else 0.0


@dataclass
class HealthSnapshot:
    """Derived health classification."""
    error_rate: float
    error_count: int
    critical_error_count: int
    health_status: HealthStatus
    window_seconds: int
    last_update: datetime
    store_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_rate": self.error_rate,
            "error_count": self.error_count,
            "critical_error_count": self.critical_error_count,
            "health_status": self.health_status.value,
            "window_seconds": self.window_seconds,
            "last_update": self.last_update.isoformat(),
            "store_available": self.store_available,
        }


def classify_health(error_rate: float, critical_error_count: int,
                    degraded_error_rate: float = 5.0,
                    unhealthy_error_rate: float = 20.0) -> HealthStatus:
    """Map error rate and critical count onto healthy/degraded/unhealthy."""
    if critical_error_count > 0 or error_rate > unhealthy_error_rate:
        return HealthStatus.UNHEALTHY
    if error_rate > degraded_error_rate:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class StoreMetricsSource:
    """
    Reads windowed error counts from the durable store.

    Methods are blocking; the monitoring engine runs them in a worker thread.
    Store failures propagate as StoreError for the caller to handle.
    """

    def __init__(self, store, clock: Callable[[], datetime] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _since(self, window_seconds: int) -> datetime:
        return self.clock() - timedelta(seconds=window_seconds)

    def window_metrics(self, window_seconds: int) -> WindowMetrics:
        since = self._since(window_seconds)
        return WindowMetrics(
            error_count=self.store.count_logs(since, levels=ERROR_LEVELS),
            critical_error_count=self.store.count_logs(since, levels=["critical"]),
            window_seconds=window_seconds,
        )

    def measure(self, metric: str, window_seconds: int, filters: Optional[Dict[str, Any]] = None) -> float:
        """Current value of an alert metric over the window."""
        filters = filters or {}
        levels: List[str] = [filters["severity"]] if filters.get("severity") else ERROR_LEVELS
        if metric == "critical_errors":
            levels = ["critical"]

        count = self.store.count_logs(
            self._since(window_seconds),
            levels=levels,
            category=filters.get("category"),
            message_pattern=filters.get("message_pattern"),
            user_id=filters.get("user_id"),
        )

        if metric == "error_rate":
            minutes = window_seconds / 60
            return count / minutes if minutes > 0 else 0.0
        return float(count)
