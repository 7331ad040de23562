#!/usr/bin/env python3
"""
Tests for alert rule validation, the rule set and alert action delivery.
"""

import json
import logging
from datetime import datetime, timezone

import httpx
import pytest

from observability.alerts import (
    Alert, AlertAction, AlertActionRunner, AlertCondition, AlertRule, AlertRuleSet,
    DuplicateRuleError, InvalidRuleError, UnknownRuleError, default_alert_rules
)


def make_rule(rule_id="rule-1", **overrides):
    data = {
        "id": rule_id,
        "name": "Test Rule",
        "condition": {"metric": "error_count", "operator": "gt"},
        "threshold": 5,
        "time_window": "5m",
        "severity": "high",
    }
    data.update(overrides)
    return AlertRule.from_dict(data)


def make_alert(rule):
    return Alert.open_for(rule, 7.0, datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc), correlation_id="cid-1")


@pytest.mark.unit
class TestRuleValidation:

    def test_valid_rule(self):
        rule = make_rule().validate()
        assert rule.window_seconds == 300
        assert rule.condition.compare(6, rule.threshold) is True
        assert rule.condition.compare(5, rule.threshold) is False

    @pytest.mark.parametrize("overrides", [
        {"condition": {"metric": "latency"}},
        {"condition": {"metric": "error_rate", "operator": "between"}},
        {"time_window": "5 minutes"},
        {"severity": "urgent"},
        {"actions": [{"type": "email"}]},
        {"actions": [{"type": "webhook", "config": {}}]},
        {"actions": [{"type": "callback", "config": {"handler": "not-callable"}}]},
    ])
    def test_invalid_rules(self, overrides):
        with pytest.raises(InvalidRuleError):
            make_rule(**overrides).validate()

    def test_missing_id(self):
        with pytest.raises(InvalidRuleError):
            make_rule(rule_id=None).validate()

    def test_camel_case_time_window(self):
        rule = AlertRule.from_dict({
            "id": "r",
            "condition": {"metric": "error_count"},
            "threshold": 1,
            "timeWindow": "1m",
        }).validate()
        assert rule.time_window == "1m"
        assert rule.window_seconds == 60

    def test_unknown_fields_rejected(self):
        with pytest.raises(InvalidRuleError, match="thresold"):
            make_rule(thresold=3)

    @pytest.mark.parametrize("op,value,expected", [
        ("gt", 5, False),
        ("gte", 5, True),
        ("lt", 4, True),
        ("lte", 6, False),
        ("eq", 5, True),
    ])
    def test_operators(self, op, value, expected):
        assert AlertCondition(metric="error_count", operator=op).compare(value, 5) is expected

    def test_to_dict_drops_callables(self):
        rule = make_rule(actions=[{"type": "callback", "config": {"handler": print, "tag": "x"}}])
        assert rule.to_dict()["actions"] == [{"type": "callback", "config": {"tag": "x"}}]


@pytest.mark.unit
class TestAlertRuleSet:

    def test_duplicate_id_rejected(self):
        rules = AlertRuleSet([make_rule()])
        with pytest.raises(DuplicateRuleError):
            rules.add(make_rule(name="Other"))
        assert len(rules) == 1

    def test_add_accepts_mappings(self):
        rules = AlertRuleSet()
        rule = rules.add({"id": "r", "condition": {"metric": "critical_errors"}, "threshold": 0})
        assert rules.get("r") is rule
        assert rule.name == "r"

    def test_update_returns_previous_and_new(self):
        rules = AlertRuleSet([make_rule()])

        previous, updated = rules.update("rule-1", threshold="9", enabled=False)

        assert previous.threshold == 5
        assert updated.threshold == 9.0
        assert updated.enabled is False
        assert rules.get("rule-1") is updated

    def test_update_keeps_id(self):
        rules = AlertRuleSet([make_rule()])
        _, updated = rules.update("rule-1", id="renamed")
        assert updated.id == "rule-1"

    def test_update_validates(self):
        rules = AlertRuleSet([make_rule()])
        with pytest.raises(InvalidRuleError):
            rules.update("rule-1", time_window="forever")
        with pytest.raises(InvalidRuleError):
            rules.update("rule-1", not_a_field=True)
        assert rules.get("rule-1").time_window == "5m"

    def test_unknown_rule(self):
        rules = AlertRuleSet()
        with pytest.raises(UnknownRuleError):
            rules.update("missing", threshold=1)
        with pytest.raises(UnknownRuleError):
            rules.remove("missing")

    def test_snapshot_is_stable_during_changes(self):
        rules = AlertRuleSet([make_rule("a"), make_rule("b")])
        snapshot = rules.snapshot()
        rules.remove("a")
        assert [rule.id for rule in snapshot] == ["a", "b"]
        assert [rule.id for rule in rules] == ["b"]


@pytest.mark.unit
class TestDefaultRules:

    def test_defaults(self):
        rules = {rule.id: rule for rule in default_alert_rules()}

        assert list(rules) == ["high-error-rate", "critical-errors", "database-errors", "auth-failures"]
        assert rules["high-error-rate"].condition.metric == "error_rate"
        assert rules["high-error-rate"].threshold == 10
        assert rules["critical-errors"].severity == "critical"
        assert rules["database-errors"].condition.filters == {"category": "database"}
        assert rules["auth-failures"].window_seconds == 60
        for rule in rules.values():
            rule.validate()

    def test_alert_opened_for_rule(self):
        rule = default_alert_rules()[0]
        alert = make_alert(rule)

        assert alert.message == "Alert: High Error Rate"
        assert alert.level == "high"
        assert alert.is_active
        assert alert.to_dict()["timestamp"] == "2025-01-10T10:00:00+00:00"
        assert alert.context["metric"] == "error_rate"


@pytest.mark.unit
class TestAlertActions:

    async def test_log_action_uses_configured_level(self, console):
        rule = make_rule(actions=[{"type": "log", "config": {"level": "critical"}}])
        runner = AlertActionRunner(logger=console)

        delivered = await runner.run(rule, make_alert(rule))

        assert delivered == 1
        record = console.records[-1]
        assert record["level"] == logging.CRITICAL
        assert record["message"] == "Alert triggered: Test Rule"
        assert record["alert"]["rule_id"] == "rule-1"

    async def test_callback_action(self, console):
        received = []

        async def handler(alert):
            received.append(alert.id)

        rule = make_rule(actions=[{"type": "callback", "config": {"handler": handler}}])
        alert = make_alert(rule)

        assert await AlertActionRunner(logger=console).run(rule, alert) == 1
        assert received == [alert.id]

    async def test_webhook_posts_alert_json(self, console):
        requests = []

        def handle(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        rule = make_rule(actions=[{"type": "webhook", "config": {"url": "https://hooks.example.com/alerts"}}])
        alert = make_alert(rule)
        runner = AlertActionRunner(transport=httpx.MockTransport(handle), logger=console)

        assert await runner.run(rule, alert) == 1
        assert len(requests) == 1
        assert requests[0].method == "POST"
        body = json.loads(requests[0].content)
        assert body["id"] == alert.id
        assert body["message"] == "Alert: Test Rule"

    async def test_failing_action_does_not_stop_others(self, console):
        received = []
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="down"))
        rule = make_rule(actions=[
            {"type": "webhook", "config": {"url": "https://hooks.example.com/alerts"}},
            {"type": "callback", "config": {"handler": received.append}},
        ])
        runner = AlertActionRunner(transport=transport, logger=console)

        delivered = await runner.run(rule, make_alert(rule))

        assert delivered == 1
        assert len(received) == 1
        failure = console.records[0]
        assert failure["message"] == "Failed to execute alert action: webhook"
        assert "500" in failure["error"]

    async def test_raising_callback_is_logged(self, console):
        def handler(alert):
            raise RuntimeError("pager down")

        rule = make_rule(actions=[AlertAction("callback", {"handler": handler})])

        assert await AlertActionRunner(logger=console).run(rule, make_alert(rule)) == 0
        assert console.records[-1]["exception_type"] == "RuntimeError"
