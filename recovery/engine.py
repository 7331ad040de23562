"""
Recovery engine.

Selects the first applicable strategy for a failure and runs it with bounded
retries and exponential backoff. At most one recovery flow runs per
correlation id; flows for different ids proceed independently because
backoff waits are awaited, not slept.
"""

import asyncio
import inspect
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from observability.config import parse_time_window
from observability.events import ErrorCategory, EventLogger, Severity
from observability.logging import CORRELATION_ID, StructuredLogger, generate_correlation_id, recovery_logger
from observability.metrics import ResilienceMetrics, resilience_metrics

from .models import RecoveryAttempt, RecoveryOutcome, RecoveryStrategy
from .registry import ActiveRecoverySet, StrategyRegistry

IN_PROGRESS_MESSAGE = "Recovery already in progress for correlation id {}"
NO_STRATEGY_MESSAGE = "No applicable recovery strategies found"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def aggregate_recovery_stats(attempts: List[Mapping[str, Any]]) -> Dict[str, Any]:
    """Summarize recovery attempt rows by outcome and strategy."""
    total = len(attempts)
    successful = sum(1 for a in attempts if a["status"] == "succeeded")
    failed = sum(1 for a in attempts if a["status"] == "failed")

    by_strategy: Dict[str, Dict[str, int]] = {}
    for attempt in attempts:
        bucket = by_strategy.setdefault(attempt["recovery_strategy"], {"total": 0, "successful": 0, "failed": 0})
        bucket["total"] += 1
        if attempt["status"] == "succeeded":
            bucket["successful"] += 1
        else:
            bucket["failed"] += 1

    average_duration = sum(a.get("duration_ms") or 0 for a in attempts) / total if total else 0
    return {
        "total": total,
        "successful": successful,
        "failed": failed,
        "success_rate": (successful / total) * 100 if total else 0,
        "average_duration_ms": round(average_duration),
        "by_strategy": by_strategy,
    }


class RecoveryEngine:
    """Runs recovery strategies for failures handed over by business logic."""

    def __init__(self, store=None, event_logger: EventLogger = None,
                 strategies: Optional[List[RecoveryStrategy]] = None,
                 metrics: ResilienceMetrics = None, logger: StructuredLogger = None,
                 sleep: Callable[[float], Awaitable[None]] = None,
                 clock: Callable[[], datetime] = None,
                 jitter_source: Callable[[], float] = None):
        self.store = store
        self.event_logger = event_logger
        self.metrics = metrics or resilience_metrics
        self.logger = logger or recovery_logger
        self.registry = StrategyRegistry(strategies)
        self.active = ActiveRecoverySet()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or _utcnow
        self._jitter_source = jitter_source or random.random

    # Strategy registry

    def get_strategies(self) -> List[RecoveryStrategy]:
        return list(self.registry.snapshot())

    def add_strategy(self, strategy: RecoveryStrategy) -> None:
        replaced = self.registry.add(strategy)
        self.logger.info(
            f"{'Replaced' if replaced else 'Added'} recovery strategy: {strategy.name}",
            strategy=strategy.name
        )

    def remove_strategy(self, name: str) -> bool:
        removed = self.registry.remove(name)
        if removed:
            self.logger.info(f"Removed recovery strategy: {name}", strategy=name)
        return removed

    # Active flows

    def get_active_recoveries(self) -> List[str]:
        return self.active.ids()

    def clear_active_recoveries(self, correlation_id: Optional[str] = None) -> int:
        """Release in-progress markers. In-flight strategy code keeps running."""
        cleared = self.active.clear(correlation_id)
        self.metrics.update_active_recoveries(len(self.active))
        self.logger.warning(
            "Cleared active recovery markers",
            correlation_id=correlation_id,
            cleared=cleared
        )
        return cleared

    # Recovery flow

    def _resolve_correlation_id(self, correlation_id: Optional[str]) -> str:
        if correlation_id:
            return correlation_id
        if self.event_logger is not None:
            return self.event_logger.get_correlation_id()
        return CORRELATION_ID.get() or generate_correlation_id()

    def _emit(self, severity: Severity, message: str, correlation_id: str,
              context: Optional[Mapping[str, Any]] = None, error: Optional[BaseException] = None) -> None:
        if self.event_logger is not None:
            self.event_logger.emit(severity, message, ErrorCategory.SYSTEM, context, error,
                                   correlation_id=correlation_id)
            return
        fields = dict(context or {})
        if error is not None:
            fields["error"] = str(error)
        if severity >= Severity.ERROR:
            self.logger.error(message, correlation_id=correlation_id, **fields)
        else:
            self.logger.warning(message, correlation_id=correlation_id, **fields)

    def _select_strategy(self, error: BaseException, context: Mapping[str, Any],
                         correlation_id: str) -> Optional[RecoveryStrategy]:
        for strategy in self.registry.snapshot():
            try:
                if strategy.applicable(error, context):
                    return strategy
            except Exception as e:
                self.logger.warning(
                    f"Applicability check for {strategy.name} raised",
                    correlation_id=correlation_id,
                    strategy=strategy.name,
                    error=str(e)
                )
        return None

    async def attempt_recovery(self, error: BaseException, context: Optional[Mapping[str, Any]] = None,
                               correlation_id: Optional[str] = None) -> RecoveryOutcome:
        """Try to remediate `error`. Never raises for strategy failures."""
        context = dict(context or {})
        correlation_id = self._resolve_correlation_id(correlation_id)

        token = self.active.try_acquire(correlation_id)
        if token is None:
            self.metrics.record_recovery_flow("in_progress")
            self.logger.warning(
                "Recovery already in progress",
                correlation_id=correlation_id,
                error=str(error)
            )
            return RecoveryOutcome(
                success=False,
                message=IN_PROGRESS_MESSAGE.format(correlation_id),
                should_retry=False,
                error=error,
            )

        self.metrics.update_active_recoveries(len(self.active))
        try:
            strategy = self._select_strategy(error, context, correlation_id)
            if strategy is None:
                self.metrics.record_recovery_flow("no_strategy")
                self._emit(
                    Severity.WARN,
                    "No recovery strategies applicable for error",
                    correlation_id,
                    {**context, "error_message": str(error)},
                )
                return RecoveryOutcome(success=False, message=NO_STRATEGY_MESSAGE, should_retry=False, error=error)

            outcome = await self._run_strategy(strategy, error, context, correlation_id)
            if outcome.success:
                self.metrics.record_recovery_flow("recovered")
            else:
                self.metrics.record_recovery_flow("exhausted")
                self._emit(
                    Severity.ERROR,
                    f"Recovery strategy {strategy.name} exhausted",
                    correlation_id,
                    {**context, "strategy": strategy.name, "max_attempts": strategy.max_attempts},
                    outcome.error,
                )
            return outcome
        finally:
            self.active.release(correlation_id, token)
            self.metrics.update_active_recoveries(len(self.active))

    async def _run_strategy(self, strategy: RecoveryStrategy, error: BaseException,
                            context: Dict[str, Any], correlation_id: str) -> RecoveryOutcome:
        outcome = None
        for attempt in range(1, strategy.max_attempts + 1):
            if attempt > 1:
                delay = strategy.backoff_delay(attempt)
                if strategy.jitter:
                    delay += self._jitter_source() * strategy.jitter
                if delay > 0:
                    await self._sleep(delay)

            outcome = await self._execute_attempt(strategy, error, context, correlation_id, attempt)
            if outcome.success:
                break
        return outcome

    async def _execute_attempt(self, strategy: RecoveryStrategy, error: BaseException,
                               context: Dict[str, Any], correlation_id: str, attempt: int) -> RecoveryOutcome:
        record = RecoveryAttempt(
            correlation_id=correlation_id,
            strategy_name=strategy.name,
            attempt_number=attempt,
            started_at=self._clock(),
            recovery_context={k: v for k, v in context.items() if isinstance(v, (str, int, float, bool, type(None)))},
        )
        self.logger.info(
            f"Attempting recovery strategy: {strategy.name} (attempt {attempt})",
            correlation_id=correlation_id,
            strategy=strategy.name,
            attempt=attempt
        )

        start_time = time.monotonic()
        try:
            result = strategy.execute(error, context, attempt)
            if inspect.isawaitable(result):
                result = await result
            if not isinstance(result, RecoveryOutcome):
                raise TypeError(f"Strategy {strategy.name} returned {type(result).__name__}, not RecoveryOutcome")
            outcome = result
        except Exception as e:
            outcome = RecoveryOutcome(
                success=False,
                message=f"Recovery strategy {strategy.name} raised: {e}",
                should_retry=False,
                error=e,
            )
            self._emit(
                Severity.ERROR,
                f"Recovery strategy {strategy.name} threw error",
                correlation_id,
                {"strategy": strategy.name, "attempt": attempt},
                e,
            )
        duration = time.monotonic() - start_time

        record.complete(outcome, self._clock(), duration * 1000)
        self.metrics.record_recovery_attempt(strategy.name, record.status.value, duration)
        self.logger.recovery_attempt(correlation_id, strategy.name, attempt, outcome.success, duration * 1000)
        await self._record_attempt(record)
        return outcome

    async def _record_attempt(self, record: RecoveryAttempt) -> None:
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.append_attempt, record.to_row())
        except Exception as e:
            self.logger.error(
                "Failed to record recovery attempt",
                correlation_id=record.correlation_id,
                strategy=record.strategy_name,
                attempt=record.attempt_number,
                error=str(e)
            )

    # Statistics

    async def get_recovery_stats(self, time_window: str = "24h",
                                 correlation_id: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate persisted attempts over a trailing window. Zeroed stats when the store fails."""
        window_seconds = parse_time_window(time_window, default=3600)
        since = self._clock() - timedelta(seconds=window_seconds)
        attempts: List[Mapping[str, Any]] = []
        if self.store is not None:
            try:
                attempts = await asyncio.to_thread(self.store.attempts_since, since, correlation_id)
            except Exception as e:
                self.logger.error("Failed to get recovery stats", error=str(e))

        stats = aggregate_recovery_stats(attempts)
        stats["window_seconds"] = window_seconds
        return stats
