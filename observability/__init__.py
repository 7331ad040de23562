"""
Observability package for the tool server.

Provides the structured event logger, Prometheus metrics, JSON console
logging with correlation ids, health classification and the rule-based
monitoring and alerting engine.
"""

from .config import ResilienceConfig, parse_time_window
from .metrics import ResilienceMetrics, metrics_registry, resilience_metrics
from .logging import StructuredLogger, generate_correlation_id, request_context
from .events import EventLogger, ErrorCategory, ErrorDetail, LogEntry, MetricsWindow, Severity
from .health import HealthSnapshot, HealthStatus, StoreMetricsSource, classify_health
from .alerts import (
    Alert, AlertAction, AlertCondition, AlertRule, AlertStatus, RuleState,
    DuplicateRuleError, InvalidRuleError, default_alert_rules
)
from .monitor import MonitoringEngine

__all__ = [
    "ResilienceConfig",
    "parse_time_window",
    "ResilienceMetrics",
    "metrics_registry",
    "resilience_metrics",
    "StructuredLogger",
    "generate_correlation_id",
    "request_context",
    "EventLogger",
    "ErrorCategory",
    "ErrorDetail",
    "LogEntry",
    "MetricsWindow",
    "Severity",
    "HealthSnapshot",
    "HealthStatus",
    "StoreMetricsSource",
    "classify_health",
    "Alert",
    "AlertAction",
    "AlertCondition",
    "AlertRule",
    "AlertStatus",
    "RuleState",
    "DuplicateRuleError",
    "InvalidRuleError",
    "default_alert_rules",
    "MonitoringEngine",
]
