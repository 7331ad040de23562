"""
Prometheus metrics for the observability and resilience subsystem.

Covers log event volume, persistence failures, recovery attempts and flows,
alert transitions, health classification and monitoring loop ticks.
"""

from typing import Optional
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Global metrics registry
metrics_registry = CollectorRegistry()

HEALTH_STATUS_VALUES = {"healthy": 0, "degraded": 1, "unhealthy": 2}


class ResilienceMetrics:
    """Prometheus metrics for logging, recovery and monitoring."""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or metrics_registry
        self._setup_metrics()

    def _setup_metrics(self):
        """Initialize all Prometheus metrics."""

        # Event logger
        self.log_events_total = Counter(
            'toolserver_log_events_total',
            'Structured log events emitted',
            ['severity', 'category'],
            registry=self.registry
        )

        self.log_persist_failures_total = Counter(
            'toolserver_log_persist_failures_total',
            'Log entries that could not be written to the durable store',
            registry=self.registry
        )

        # Recovery engine
        self.recovery_attempts_total = Counter(
            'toolserver_recovery_attempts_total',
            'Recovery strategy executions',
            ['strategy', 'status'],
            registry=self.registry
        )

        self.recovery_attempt_duration = Histogram(
            'toolserver_recovery_attempt_duration_seconds',
            'Duration of a single recovery strategy execution',
            ['strategy'],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float('inf')),
            registry=self.registry
        )

        self.recovery_flows_total = Counter(
            'toolserver_recovery_flows_total',
            'Completed recovery flows by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.active_recoveries = Gauge(
            'toolserver_active_recoveries',
            'Correlation ids with a recovery flow in progress',
            registry=self.registry
        )

        # Monitoring engine
        self.alerts_triggered_total = Counter(
            'toolserver_alerts_triggered_total',
            'Alerts opened by rule evaluation',
            ['rule_id', 'severity'],
            registry=self.registry
        )

        self.alerts_resolved_total = Counter(
            'toolserver_alerts_resolved_total',
            'Alerts resolved by the auto-resolve sweep or rule changes',
            ['rule_id'],
            registry=self.registry
        )

        self.health_status = Gauge(
            'toolserver_health_status',
            'Health classification (0=healthy, 1=degraded, 2=unhealthy)',
            registry=self.registry
        )

        self.error_rate = Gauge(
            'toolserver_error_rate_per_minute',
            'Persisted errors per minute over the health window',
            registry=self.registry
        )

        self.monitor_ticks_total = Counter(
            'toolserver_monitor_ticks_total',
            'Monitoring loop tick executions',
            ['result'],
            registry=self.registry
        )

    def record_log_event(self, severity: str, category: Optional[str]):
        self.log_events_total.labels(severity=severity, category=category or "none").inc()

    def record_persist_failure(self, count: int = 1):
        self.log_persist_failures_total.inc(count)

    def record_recovery_attempt(self, strategy: str, status: str, duration: float):
        """Record one strategy execution."""
        self.recovery_attempts_total.labels(strategy=strategy, status=status).inc()
        self.recovery_attempt_duration.labels(strategy=strategy).observe(duration)

    def record_recovery_flow(self, outcome: str):
        self.recovery_flows_total.labels(outcome=outcome).inc()

    def update_active_recoveries(self, count: int):
        self.active_recoveries.set(count)

    def record_alert_triggered(self, rule_id: str, severity: str):
        self.alerts_triggered_total.labels(rule_id=rule_id, severity=severity).inc()

    def record_alert_resolved(self, rule_id: str):
        self.alerts_resolved_total.labels(rule_id=rule_id).inc()

    def update_health(self, status: str, error_rate: float):
        """Update health gauges from a snapshot."""
        self.health_status.set(HEALTH_STATUS_VALUES.get(status, 2))
        self.error_rate.set(error_rate)

    def record_monitor_tick(self, result: str):
        self.monitor_ticks_total.labels(result=result).inc()


# Global metrics instance
resilience_metrics = ResilienceMetrics()

