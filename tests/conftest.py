#!/usr/bin/env python3
"""
Pytest configuration for the resilience subsystem tests.

Provides a SQLite-backed store per test, an isolated Prometheus registry,
a store that always fails, a scriptable metrics source for the monitoring
engine and a recording sleep for deterministic backoff checks.
"""

import os
import sys
import logging
from typing import Any, Dict, List

import pytest
from prometheus_client import CollectorRegistry

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from observability.config import ResilienceConfig
from observability.events import EventLogger
from observability.health import WindowMetrics
from observability.metrics import ResilienceMetrics
from store import StoreError, create_event_store


class RecordingConsole:
    """Stand-in for StructuredLogger that keeps every line in memory."""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    def _log_with_extras(self, level: int, message: str, **fields):
        self.records.append({"level": level, "message": message, **fields})

    def debug(self, message: str, **fields):
        self._log_with_extras(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields):
        self._log_with_extras(logging.INFO, message, **fields)

    def warning(self, message: str, **fields):
        self._log_with_extras(logging.WARNING, message, **fields)

    def error(self, message: str, **fields):
        self._log_with_extras(logging.ERROR, message, **fields)

    def exception(self, message: str, **fields):
        self._log_with_extras(logging.ERROR, message, **fields)

    def messages(self) -> List[str]:
        return [record["message"] for record in self.records]


class BrokenStore:
    """Store whose every operation fails."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise StoreError(f"store unavailable during {name}")
        return fail


class FakeMetricsSource:
    """Scriptable metrics source for the monitoring engine."""

    def __init__(self):
        self.values: Dict[str, float] = {}
        self.window = WindowMetrics(error_count=0, critical_error_count=0, window_seconds=300)
        self.fail = False
        self.calls: List[tuple] = []

    def measure(self, metric: str, window_seconds: int, filters=None) -> float:
        self.calls.append((metric, window_seconds, dict(filters or {})))
        if self.fail:
            raise StoreError("metrics unavailable")
        return self.values.get(metric, 0.0)

    def window_metrics(self, window_seconds: int) -> WindowMetrics:
        if self.fail:
            raise StoreError("metrics unavailable")
        return WindowMetrics(
            error_count=self.window.error_count,
            critical_error_count=self.window.critical_error_count,
            window_seconds=window_seconds,
        )


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def metrics():
    """Metrics bound to a fresh registry so tests never collide."""
    return ResilienceMetrics(CollectorRegistry())


@pytest.fixture
def config():
    return ResilienceConfig(
        log_level="DEBUG",
        log_batch_size=1,
        monitoring_enabled=False,
    )


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'observability.db'}"


@pytest.fixture
def store(database_url):
    event_store = create_event_store(database_url)
    yield event_store
    event_store.dispose()


@pytest.fixture
def broken_store():
    return BrokenStore()


@pytest.fixture
def console():
    return RecordingConsole()


@pytest.fixture
def event_logger(store, config, metrics, console):
    logger = EventLogger(store=store, config=config, metrics=metrics, console=console)
    yield logger
    logger.close()


@pytest.fixture
def metrics_source():
    return FakeMetricsSource()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
