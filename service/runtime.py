"""
Process-scoped wiring of the observability and resilience subsystem.

A ResilienceRuntime owns the durable store, the event logger, the recovery
engine and the monitoring engine. It is created at process start, started
from inside the event loop and stopped from the shutdown handler. Tests build
a fresh runtime each time instead of sharing module-level singletons.
"""

import asyncio
from typing import Callable, List, Optional

from observability.alerts import AlertRule
from observability.config import ResilienceConfig
from observability.events import EventLogger
from observability.logging import StructuredLogger
from observability.metrics import ResilienceMetrics, resilience_metrics
from observability.monitor import MonitoringEngine
from recovery import RecoveryEngine, RecoveryStrategy, default_strategies
from store import EventStore, create_event_store

runtime_logger = StructuredLogger("toolserver.runtime")


class ResilienceRuntime:
    """Container for the logger, recovery engine and monitor sharing one store."""

    def __init__(self, config: ResilienceConfig = None, store: EventStore = None,
                 metrics: ResilienceMetrics = None,
                 strategies: Optional[List[RecoveryStrategy]] = None,
                 rules: Optional[List[AlertRule]] = None,
                 metrics_source=None, token_refresher: Optional[Callable] = None):
        self.config = config or ResilienceConfig()
        self.metrics = metrics or resilience_metrics
        self.store = store if store is not None else create_event_store(self.config.database_url)

        self.event_logger = EventLogger(store=self.store, config=self.config, metrics=self.metrics)
        self.recovery = RecoveryEngine(
            store=self.store,
            event_logger=self.event_logger,
            strategies=strategies if strategies is not None else default_strategies(self.store, token_refresher),
            metrics=self.metrics,
        )
        self.monitor = MonitoringEngine(
            store=self.store,
            config=self.config,
            metrics_source=metrics_source,
            rules=rules,
            metrics=self.metrics,
            event_logger=self.event_logger,
        )
        self._started = False
        self._stopped = False

    @classmethod
    def from_environment(cls, **kwargs) -> "ResilienceRuntime":
        return cls(config=ResilienceConfig.from_environment(), **kwargs)

    @property
    def started(self) -> bool:
        return self._started and not self._stopped

    async def start(self) -> None:
        """Start the monitoring loop. Must be called with a running event loop."""
        if self._started:
            return
        self._started = True
        self.monitor.start()
        runtime_logger.info(
            "Resilience runtime started",
            strategies=len(self.recovery.get_strategies()),
            alert_rules=len(self.monitor.get_alert_rules()),
            monitoring_enabled=self.config.monitoring_enabled
        )

    async def stop(self) -> None:
        """Stop monitoring, flush pending log entries and release the store. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        await self.monitor.stop()
        await asyncio.to_thread(self.event_logger.close)
        self.store.dispose()
        runtime_logger.info("Resilience runtime stopped")
