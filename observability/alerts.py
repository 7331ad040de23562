"""
Alert rule definitions, alert records and alert actions.

A rule is a standing condition over a windowed error metric. When the
condition becomes true for an armed rule the monitoring engine opens one
Alert and runs the rule's actions once. Rules live in a copy-on-write set so
the monitoring loop can iterate a stable snapshot while rules are changed.
"""

import inspect
import logging
import operator
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import httpx

from .config import is_valid_time_window, parse_time_window
from .logging import StructuredLogger, monitor_logger

METRICS = ("error_rate", "error_count", "critical_errors", "specific_error")
RULE_SEVERITIES = ("low", "medium", "high", "critical")
ACTION_TYPES = ("log", "webhook", "callback")

RULE_KEYS = frozenset({"id", "name", "condition", "threshold", "time_window", "severity", "enabled", "actions"})
# camelCase spellings accepted from JSON rule definitions
RULE_KEY_ALIASES = {"timeWindow": "time_window"}

OPERATORS = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": operator.eq,
}

LOG_ACTION_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class InvalidRuleError(ValueError):
    """Rule definition is malformed."""


class DuplicateRuleError(ValueError):
    """A rule with the same id is already registered."""


class UnknownRuleError(LookupError):
    """No rule is registered under the given id."""


class AlertNotFoundError(LookupError):
    """No active alert has the given id."""


class AlertActionError(RuntimeError):
    """An alert action could not be delivered."""


class AlertStatus(Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class RuleState(Enum):
    """Per-rule state derived from the rule and its current alert."""
    INACTIVE = "inactive"
    ARMED = "armed"
    TRIGGERED = "triggered"
    ACKNOWLEDGED = "acknowledged"


@dataclass(frozen=True)
class AlertCondition:
    metric: str
    operator: str = "gt"
    filters: Mapping[str, Any] = field(default_factory=dict)

    def compare(self, value: float, threshold: float) -> bool:
        return OPERATORS[self.operator](value, threshold)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AlertCondition":
        return cls(
            metric=data.get("metric"),
            operator=data.get("operator", "gt"),
            filters=dict(data.get("filters") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"metric": self.metric, "operator": self.operator, "filters": dict(self.filters)}


@dataclass(frozen=True)
class AlertAction:
    type: str
    config: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AlertAction":
        return cls(type=data.get("type"), config=dict(data.get("config") or {}))

    def to_dict(self) -> Dict[str, Any]:
        # Callables are not serializable
        config = {k: v for k, v in self.config.items() if not callable(v)}
        return {"type": self.type, "config": config}


@dataclass(frozen=True)
class AlertRule:
    """Standing condition that opens an alert when met."""
    id: str
    name: str
    condition: AlertCondition
    threshold: float
    time_window: str = "5m"
    severity: str = "medium"
    enabled: bool = True
    actions: Tuple[AlertAction, ...] = ()

    @property
    def window_seconds(self) -> int:
        return parse_time_window(self.time_window)

    def validate(self) -> "AlertRule":
        if not self.id:
            raise InvalidRuleError("Alert rule id must not be empty")
        if self.condition.metric not in METRICS:
            raise InvalidRuleError(f"Unknown metric '{self.condition.metric}' for rule {self.id}")
        if self.condition.operator not in OPERATORS:
            raise InvalidRuleError(f"Unknown operator '{self.condition.operator}' for rule {self.id}")
        if not is_valid_time_window(self.time_window):
            raise InvalidRuleError(f"Invalid time window '{self.time_window}' for rule {self.id}")
        if self.severity not in RULE_SEVERITIES:
            raise InvalidRuleError(f"Unknown severity '{self.severity}' for rule {self.id}")
        for action in self.actions:
            if action.type not in ACTION_TYPES:
                raise InvalidRuleError(f"Unknown action type '{action.type}' for rule {self.id}")
            if action.type == "webhook" and not action.config.get("url"):
                raise InvalidRuleError(f"Webhook action for rule {self.id} needs a url")
            if action.type == "callback" and not callable(action.config.get("handler")):
                raise InvalidRuleError(f"Callback action for rule {self.id} needs a callable handler")
        return self

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AlertRule":
        data = {RULE_KEY_ALIASES.get(key, key): value for key, value in data.items()}
        unknown = sorted(set(data) - RULE_KEYS)
        if unknown:
            raise InvalidRuleError(f"Unknown alert rule fields {unknown} for rule {data.get('id')}")
        condition = data.get("condition") or {}
        if not isinstance(condition, AlertCondition):
            condition = AlertCondition.from_dict(condition)
        return cls(
            id=data.get("id"),
            name=data.get("name") or data.get("id"),
            condition=condition,
            threshold=float(data.get("threshold", 0)),
            time_window=data.get("time_window", "5m"),
            severity=data.get("severity", "medium"),
            enabled=data.get("enabled", True),
            actions=_coerce_actions(data.get("actions") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "condition": self.condition.to_dict(),
            "threshold": self.threshold,
            "time_window": self.time_window,
            "severity": self.severity,
            "enabled": self.enabled,
            "actions": [action.to_dict() for action in self.actions],
        }


def _coerce_actions(actions) -> Tuple[AlertAction, ...]:
    return tuple(a if isinstance(a, AlertAction) else AlertAction.from_dict(a) for a in actions)


@dataclass
class Alert:
    """An alert opened for one armed-to-triggered transition of a rule."""
    id: str
    rule_id: Optional[str]
    level: str
    message: str
    value: float
    threshold: float
    timestamp: datetime
    correlation_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    status: AlertStatus = AlertStatus.OPEN
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def open_for(cls, rule: AlertRule, value: float, timestamp: datetime,
                 correlation_id: Optional[str] = None) -> "Alert":
        return cls(
            id=str(uuid.uuid4()),
            rule_id=rule.id,
            level=rule.severity,
            message=f"Alert: {rule.name}",
            value=value,
            threshold=rule.threshold,
            timestamp=timestamp,
            correlation_id=correlation_id,
            context={
                "rule_name": rule.name,
                "metric": rule.condition.metric,
                "operator": rule.condition.operator,
                "time_window": rule.time_window,
                "filters": dict(rule.condition.filters),
            },
        )

    @property
    def is_active(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    def to_row(self) -> Dict[str, Any]:
        """Column values for the error_alerts table."""
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "level": self.level,
            "message": self.message,
            "context": dict(self.context),
            "value": self.value,
            "threshold": self.threshold,
            "timestamp": self.timestamp,
            "correlation_id": self.correlation_id,
            "status": self.status.value,
            "acknowledged_at": self.acknowledged_at,
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": self.resolved_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_row()
        for key in ("timestamp", "acknowledged_at", "resolved_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class AlertRuleSet:
    """Copy-on-write collection of alert rules keyed by id."""

    def __init__(self, rules: Optional[List[AlertRule]] = None):
        self._lock = threading.Lock()
        self._rules: Tuple[AlertRule, ...] = ()
        for rule in rules or ():
            self.add(rule)

    def snapshot(self) -> Tuple[AlertRule, ...]:
        return self._rules

    def get(self, rule_id: str) -> Optional[AlertRule]:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None

    def add(self, rule: Union[AlertRule, Mapping[str, Any]]) -> AlertRule:
        if not isinstance(rule, AlertRule):
            rule = AlertRule.from_dict(rule)
        rule.validate()
        with self._lock:
            if any(existing.id == rule.id for existing in self._rules):
                raise DuplicateRuleError(f"Alert rule '{rule.id}' already exists")
            self._rules = self._rules + (rule,)
        return rule

    def update(self, rule_id: str, **fields) -> Tuple[AlertRule, AlertRule]:
        """Apply partial changes to a rule. Returns (previous, updated)."""
        fields.pop("id", None)
        if "condition" in fields and not isinstance(fields["condition"], AlertCondition):
            fields["condition"] = AlertCondition.from_dict(fields["condition"])
        if "actions" in fields:
            fields["actions"] = _coerce_actions(fields["actions"])
        if "threshold" in fields:
            fields["threshold"] = float(fields["threshold"])

        with self._lock:
            for index, existing in enumerate(self._rules):
                if existing.id == rule_id:
                    try:
                        updated = replace(existing, **fields).validate()
                    except TypeError as e:
                        raise InvalidRuleError(f"Invalid update for rule {rule_id}: {e}") from e
                    self._rules = self._rules[:index] + (updated,) + self._rules[index + 1:]
                    return existing, updated
        raise UnknownRuleError(rule_id)

    def remove(self, rule_id: str) -> AlertRule:
        with self._lock:
            for index, existing in enumerate(self._rules):
                if existing.id == rule_id:
                    self._rules = self._rules[:index] + self._rules[index + 1:]
                    return existing
        raise UnknownRuleError(rule_id)

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules)


def default_alert_rules() -> List[AlertRule]:
    """Built-in rules installed when the monitoring engine starts without explicit rules."""
    return [
        AlertRule(
            id="high-error-rate",
            name="High Error Rate",
            condition=AlertCondition(metric="error_rate", operator="gt"),
            threshold=10,  # errors per minute
            time_window="5m",
            severity="high",
            actions=(AlertAction("log", {"level": "critical"}),),
        ),
        AlertRule(
            id="critical-errors",
            name="Critical Errors Detected",
            condition=AlertCondition(metric="critical_errors", operator="gt"),
            threshold=0,
            time_window="1m",
            severity="critical",
            actions=(AlertAction("log", {"level": "critical"}),),
        ),
        AlertRule(
            id="database-errors",
            name="Database Connection Issues",
            condition=AlertCondition(metric="error_count", operator="gt", filters={"category": "database"}),
            threshold=5,
            time_window="5m",
            severity="high",
            actions=(AlertAction("log", {"level": "error"}),),
        ),
        AlertRule(
            id="auth-failures",
            name="Authentication Failures",
            condition=AlertCondition(metric="error_count", operator="gt", filters={"category": "authentication"}),
            threshold=3,
            time_window="1m",
            severity="medium",
            actions=(AlertAction("log", {"level": "warn"}),),
        ),
    ]


class AlertActionRunner:
    """Executes a rule's actions for a freshly triggered alert."""

    def __init__(self, webhook_timeout: float = 10.0, transport: httpx.AsyncBaseTransport = None,
                 logger: StructuredLogger = None):
        self.webhook_timeout = webhook_timeout
        self.transport = transport
        self.logger = logger or monitor_logger

    async def run(self, rule: AlertRule, alert: Alert) -> int:
        """Run every action in order. Returns how many succeeded; failures are logged."""
        delivered = 0
        for action in rule.actions:
            try:
                await self.execute(action, rule, alert)
                delivered += 1
            except Exception as e:
                self.logger.error(
                    f"Failed to execute alert action: {action.type}",
                    rule_id=rule.id,
                    alert_id=alert.id,
                    action_type=action.type,
                    error=str(e),
                    exception_type=e.__class__.__name__
                )
        return delivered

    async def execute(self, action: AlertAction, rule: AlertRule, alert: Alert) -> None:
        if action.type == "log":
            level = LOG_ACTION_LEVELS.get(str(action.config.get("level", "warn")).lower(), logging.WARNING)
            self.logger._log_with_extras(
                level,
                f"Alert triggered: {rule.name}",
                rule_id=rule.id,
                alert=alert.to_dict(),
                event_type="alert_notification"
            )
        elif action.type == "webhook":
            await self._send_webhook(action.config["url"], alert)
        elif action.type == "callback":
            result = action.config["handler"](alert)
            if inspect.isawaitable(result):
                await result
        else:
            raise AlertActionError(f"Unsupported alert action type: {action.type}")

    async def _send_webhook(self, url: str, alert: Alert) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.webhook_timeout, transport=self.transport) as client:
                response = await client.post(
                    url,
                    json=alert.to_dict(),
                    headers={"Content-Type": "application/json"}
                )
                response.raise_for_status()
        except httpx.TimeoutException:
            raise AlertActionError(f"Webhook to {url} timed out after {self.webhook_timeout}s")
        except httpx.RequestError as e:
            raise AlertActionError(f"Webhook request failed: {e}")
        except httpx.HTTPStatusError as e:
            raise AlertActionError(f"Webhook HTTP error {e.response.status_code}: {e.response.text}")
