"""
Monitoring engine: periodic health evaluation and rule-driven alerting.

Each enabled rule moves through armed -> triggered -> acknowledged/resolved
-> armed. The evaluation pass only opens alerts for armed rules; resolution
happens in the auto-resolve sweep, which re-checks every rule that currently
holds an open or acknowledged alert. A rule never holds more than one active
alert and its actions run once per armed -> triggered transition.
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .alerts import (
    Alert, AlertActionRunner, AlertNotFoundError, AlertRule, AlertRuleSet,
    AlertStatus, RuleState, default_alert_rules
)
from .config import ResilienceConfig
from .health import HealthSnapshot, HealthStatus, StoreMetricsSource, classify_health
from .logging import StructuredLogger, generate_correlation_id, monitor_logger
from .metrics import ResilienceMetrics, resilience_metrics

MAX_RESOLVED_HISTORY = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitoringEngine:
    """Rule-based health monitoring and alerting loop."""

    def __init__(self, store=None, config: ResilienceConfig = None, metrics_source=None,
                 rules: Optional[List[AlertRule]] = None, metrics: ResilienceMetrics = None,
                 action_runner: AlertActionRunner = None, event_logger=None,
                 logger: StructuredLogger = None, clock: Callable[[], datetime] = None):
        self.config = config or ResilienceConfig()
        self.store = store
        self.clock = clock or _utcnow
        if metrics_source is None and store is not None:
            metrics_source = StoreMetricsSource(store, clock=self.clock)
        self.metrics_source = metrics_source
        self.metrics = metrics or resilience_metrics
        self.logger = logger or monitor_logger
        self.action_runner = action_runner or AlertActionRunner(
            webhook_timeout=self.config.webhook_timeout, logger=self.logger
        )
        self.event_logger = event_logger
        self.rules = AlertRuleSet(default_alert_rules() if rules is None else rules)

        # rule id -> open or acknowledged alert
        self._active: Dict[str, Alert] = {}
        self._resolved: List[Alert] = []
        # Acknowledgement arrives on API worker threads; sweeps run on the loop
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()

        self.last_snapshot: Optional[HealthSnapshot] = None
        self._last_auto_resolve: Optional[float] = None
        self._last_cleanup: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # Rule management

    def add_alert_rule(self, rule) -> AlertRule:
        rule = self.rules.add(rule)
        self.logger.info(f"Added alert rule: {rule.name}", rule_id=rule.id)
        return rule

    def update_alert_rule(self, rule_id: str, **fields) -> AlertRule:
        """Change rule fields in place. Disabling a rule resolves its alert."""
        _, updated = self.rules.update(rule_id, **fields)
        self.logger.info(f"Updated alert rule: {rule_id}", rule_id=rule_id, fields=sorted(fields))
        if not updated.enabled:
            self._resolve_now(rule_id, reason="rule_disabled")
        return updated

    def remove_alert_rule(self, rule_id: str) -> AlertRule:
        removed = self.rules.remove(rule_id)
        self._resolve_now(rule_id, reason="rule_removed")
        self.logger.info(f"Removed alert rule: {rule_id}", rule_id=rule_id)
        return removed

    def get_alert_rules(self) -> List[AlertRule]:
        return list(self.rules.snapshot())

    def get_rule_state(self, rule_id: str) -> RuleState:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise KeyError(rule_id)
        if not rule.enabled:
            return RuleState.INACTIVE
        with self._lock:
            alert = self._active.get(rule_id)
            if alert is None:
                return RuleState.ARMED
            if alert.status == AlertStatus.ACKNOWLEDGED:
                return RuleState.ACKNOWLEDGED
            return RuleState.TRIGGERED

    # Alerts

    def get_active_alerts(self) -> List[Alert]:
        with self._lock:
            return list(self._active.values())

    def get_resolved_alerts(self) -> List[Alert]:
        with self._lock:
            return list(self._resolved)

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> Alert:
        """Mark an open alert as acknowledged. Acknowledging twice is a no-op; resolved alerts are not found."""
        with self._lock:
            alert = next((a for a in self._active.values() if a.id == alert_id), None)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            changed = alert.status == AlertStatus.OPEN
            if changed:
                alert.status = AlertStatus.ACKNOWLEDGED
                alert.acknowledged_at = self.clock()
                alert.acknowledged_by = acknowledged_by

        if changed:
            self.logger.alert_transition(alert.rule_id, alert.id, AlertStatus.ACKNOWLEDGED.value)
            self._save_alert(alert)
        return alert

    def _save_alert(self, alert: Alert) -> None:
        """Write the alert's current state. Writes are serialized so the last one reflects the latest transition."""
        if self.store is None:
            return
        with self._persist_lock:
            with self._lock:
                row = alert.to_row()
            try:
                self.store.save_alert(row)
            except Exception as e:
                self.logger.error(
                    "Failed to persist alert",
                    alert_id=alert.id,
                    rule_id=alert.rule_id,
                    error=str(e)
                )

    async def _save_alert_async(self, alert: Alert) -> None:
        await asyncio.to_thread(self._save_alert, alert)

    def _resolve(self, rule_id: str, reason: str, expected: Optional[Alert] = None) -> Optional[Alert]:
        """Resolve the rule's active alert, only if it is still `expected` when given."""
        with self._lock:
            alert = self._active.get(rule_id)
            if alert is None or (expected is not None and alert is not expected):
                return None
            del self._active[rule_id]
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = self.clock()
            alert.context["resolution"] = reason
            self._resolved.append(alert)
            del self._resolved[:-MAX_RESOLVED_HISTORY]

        self.metrics.record_alert_resolved(rule_id)
        self.logger.alert_transition(rule_id, alert.id, AlertStatus.RESOLVED.value)
        return alert

    def _resolve_now(self, rule_id: str, reason: str) -> None:
        alert = self._resolve(rule_id, reason)
        if alert is not None:
            self._save_alert(alert)

    # Measurements

    async def _measure(self, rule: AlertRule) -> float:
        return await asyncio.to_thread(
            self.metrics_source.measure,
            rule.condition.metric,
            rule.window_seconds,
            dict(rule.condition.filters),
        )

    def _unknown_status(self) -> HealthStatus:
        try:
            return HealthStatus(self.config.unknown_health_status)
        except ValueError:
            return HealthStatus.UNHEALTHY

    async def get_health_status(self) -> HealthSnapshot:
        """Classify health over the configured window. Never raises."""
        window = self.config.health_window
        try:
            if self.metrics_source is None:
                raise RuntimeError("No metrics source configured")
            counts = await asyncio.to_thread(self.metrics_source.window_metrics, window)
        except Exception as e:
            self.logger.error("Failed to get current metrics", error=str(e), exception_type=e.__class__.__name__)
            return HealthSnapshot(
                error_rate=0.0,
                error_count=0,
                critical_error_count=0,
                health_status=self._unknown_status(),
                window_seconds=window,
                last_update=self.clock(),
                store_available=False,
            )

        return HealthSnapshot(
            error_rate=counts.error_rate,
            error_count=counts.error_count,
            critical_error_count=counts.critical_error_count,
            health_status=classify_health(
                counts.error_rate,
                counts.critical_error_count,
                self.config.degraded_error_rate,
                self.config.unhealthy_error_rate,
            ),
            window_seconds=window,
            last_update=self.clock(),
        )

    # Evaluation

    async def evaluate_rules(self) -> List[Alert]:
        """Open alerts for armed rules whose condition is met. Returns the new alerts."""
        triggered = []
        for rule in self.rules.snapshot():
            if not rule.enabled or rule.id in self._active:
                continue
            try:
                value = await self._measure(rule)
            except Exception as e:
                self.logger.error(f"Failed to evaluate alert rule: {rule.name}", rule_id=rule.id, error=str(e))
                continue

            # The rule may have been disabled, removed or triggered while measuring
            current = self.rules.get(rule.id)
            if current is None or not current.enabled:
                continue
            if not current.condition.compare(value, current.threshold):
                continue

            with self._lock:
                if current.id in self._active:
                    continue
                alert = Alert.open_for(current, value, self.clock(), correlation_id=generate_correlation_id())
                self._active[current.id] = alert
            triggered.append(alert)

            self.metrics.record_alert_triggered(current.id, current.severity)
            self.logger.alert_transition(current.id, alert.id, alert.status.value, value=value)
            await self._save_alert_async(alert)
            await self.action_runner.run(current, alert)
        return triggered

    async def auto_resolve(self) -> int:
        """Resolve active alerts whose condition no longer holds. Returns how many were resolved."""
        resolved = 0
        with self._lock:
            active = list(self._active.items())
        for rule_id, alert in active:
            rule = self.rules.get(rule_id)
            if rule is None or not rule.enabled:
                resolution = "rule_inactive"
            else:
                try:
                    value = await self._measure(rule)
                except Exception as e:
                    self.logger.error(f"Failed to re-evaluate alert rule: {rule.name}", rule_id=rule_id, error=str(e))
                    continue
                if rule.condition.compare(value, rule.threshold):
                    alert.value = value
                    continue
                resolution = "condition_cleared"

            # Skip if a concurrent change already resolved it
            if self._resolve(rule_id, reason=resolution, expected=alert) is None:
                continue
            await self._save_alert_async(alert)
            resolved += 1

        self._last_auto_resolve = time.monotonic()
        if resolved:
            self.logger.info(f"Auto-resolved {resolved} alerts", resolved=resolved)
        return resolved

    async def _persist_samples(self, snapshot: HealthSnapshot) -> None:
        if self.store is None:
            return
        timestamp = snapshot.last_update
        rows = [
            {"metric_type": "performance", "metric_name": "error_rate",
             "metric_value": snapshot.error_rate, "timestamp": timestamp},
            {"metric_type": "performance", "metric_name": "error_count",
             "metric_value": snapshot.error_count, "timestamp": timestamp},
            {"metric_type": "performance", "metric_name": "critical_errors",
             "metric_value": snapshot.critical_error_count, "timestamp": timestamp},
            {"metric_type": "health", "metric_name": "status",
             "metric_value": 1 if snapshot.health_status == HealthStatus.HEALTHY else 0,
             "labels": {"status": snapshot.health_status.value}, "timestamp": timestamp},
        ]
        try:
            await asyncio.to_thread(self.store.append_metric_samples, rows)
        except Exception as e:
            self.logger.error("Failed to persist metrics", error=str(e))

    async def cleanup_old_data(self) -> None:
        """Purge old metric samples and log entries and trim resolved alert history."""
        now = self.clock()
        self._last_cleanup = time.monotonic()
        with self._lock:
            del self._resolved[:-MAX_RESOLVED_HISTORY]
        if self.store is None:
            return
        try:
            samples = await asyncio.to_thread(
                self.store.purge_metric_samples,
                now - timedelta(days=self.config.metrics_retention_days)
            )
            logs = await asyncio.to_thread(
                self.store.purge_logs,
                now - timedelta(days=self.config.log_retention_days)
            )
        except Exception as e:
            self.logger.error("Failed to cleanup old data", error=str(e))
            return
        self.logger.info("Completed data cleanup", purged_samples=samples, purged_logs=logs)

    @staticmethod
    def _due(last: Optional[float], interval: float) -> bool:
        return last is None or time.monotonic() - last >= interval

    async def tick(self) -> HealthSnapshot:
        """One monitoring pass: health, samples, rule evaluation and periodic sweeps."""
        start_time = time.time()
        if self.event_logger is not None:
            await asyncio.to_thread(self.event_logger.flush)

        snapshot = await self.get_health_status()
        self.last_snapshot = snapshot
        self.metrics.update_health(snapshot.health_status.value, snapshot.error_rate)
        if snapshot.store_available:
            await self._persist_samples(snapshot)

        await self.evaluate_rules()
        if self._due(self._last_auto_resolve, self.config.auto_resolve_interval):
            await self.auto_resolve()
        if self._due(self._last_cleanup, self.config.cleanup_interval):
            await self.cleanup_old_data()

        self.metrics.record_monitor_tick("ok")
        self.logger.monitor_tick(
            snapshot.error_rate,
            snapshot.error_count,
            snapshot.health_status.value,
            (time.time() - start_time) * 1000
        )
        return snapshot

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Spawn the monitoring loop on the running event loop."""
        if not self.config.monitoring_enabled:
            self.logger.info("Monitoring disabled via configuration")
            return
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())
        self.logger.info(
            f"Monitoring started with {self.config.monitoring_interval}s interval",
            interval_seconds=self.config.monitoring_interval,
            total_rules=len(self.rules)
        )

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                self.metrics.record_monitor_tick("error")
                self.logger.exception(f"Monitoring loop error: {e}", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.monitoring_interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        """Stop the loop and wait for an in-flight tick to finish. Idempotent."""
        if self._task is None:
            return
        task, self._task = self._task, None
        self._stop_event.set()
        await task
        self.logger.info("Monitoring stopped")
