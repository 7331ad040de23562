#!/usr/bin/env python3
"""
Tests for the recovery engine.

Verifies per-correlation-id mutual exclusion, contiguous attempt numbering,
exact backoff delays, strategy selection order, failure isolation and
statistics aggregation.
"""

import asyncio

import pytest

from recovery import (
    InvalidStrategyError, RecoveryEngine, RecoveryOutcome, RecoveryStrategy
)
from recovery.engine import NO_STRATEGY_MESSAGE


def make_strategy(name="test_strategy", applicable=None, execute=None, **policy):
    def default_execute(error, context, attempt):
        return RecoveryOutcome(success=True, message=f"{name} ok")

    return RecoveryStrategy(
        name=name,
        description=f"{name} for tests",
        applicable=applicable or (lambda error, context: True),
        execute=execute or default_execute,
        **policy
    )


@pytest.fixture
def engine(store, metrics, recording_sleep):
    return RecoveryEngine(store=store, metrics=metrics, sleep=recording_sleep)


@pytest.mark.unit
class TestMutualExclusion:

    async def test_second_call_for_active_id_returns_immediately(self, engine):
        entered = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def execute(error, context, attempt):
            calls.append(attempt)
            entered.set()
            await release.wait()
            return RecoveryOutcome(success=True, message="done")

        engine.add_strategy(make_strategy(execute=execute))

        first = asyncio.create_task(engine.attempt_recovery(RuntimeError("x"), {}, "cid-1"))
        await entered.wait()
        assert engine.get_active_recoveries() == ["cid-1"]

        second = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        assert second.success is False
        assert second.should_retry is False
        assert second.message == "Recovery already in progress for correlation id cid-1"
        assert calls == [1]

        release.set()
        outcome = await first
        assert outcome.success is True
        assert engine.get_active_recoveries() == []

    async def test_different_ids_run_concurrently(self, engine):
        entered = {"a": asyncio.Event(), "b": asyncio.Event()}
        release = asyncio.Event()

        async def execute(error, context, attempt):
            entered[context["key"]].set()
            await release.wait()
            return RecoveryOutcome(success=True, message="done")

        engine.add_strategy(make_strategy(execute=execute))

        flows = [
            asyncio.create_task(engine.attempt_recovery(RuntimeError("x"), {"key": key}, f"cid-{key}"))
            for key in ("a", "b")
        ]
        await asyncio.wait_for(asyncio.gather(entered["a"].wait(), entered["b"].wait()), timeout=5)
        assert sorted(engine.get_active_recoveries()) == ["cid-a", "cid-b"]

        release.set()
        outcomes = await asyncio.gather(*flows)
        assert all(outcome.success for outcome in outcomes)

    async def test_marker_released_when_strategy_is_cancelled(self, engine):
        entered = asyncio.Event()

        async def execute(error, context, attempt):
            entered.set()
            await asyncio.Event().wait()

        engine.add_strategy(make_strategy(execute=execute))
        flow = asyncio.create_task(engine.attempt_recovery(RuntimeError("x"), {}, "cid-1"))
        await entered.wait()

        flow.cancel()
        with pytest.raises(asyncio.CancelledError):
            await flow
        assert engine.get_active_recoveries() == []

    async def test_clear_is_advisory_and_keeps_newer_marker(self, engine):
        gates = [asyncio.Event(), asyncio.Event()]
        entered = [asyncio.Event(), asyncio.Event()]
        calls = []

        async def execute(error, context, attempt):
            index = len(calls)
            calls.append(index)
            entered[index].set()
            await gates[index].wait()
            return RecoveryOutcome(success=True, message=f"flow {index}")

        engine.add_strategy(make_strategy(execute=execute))

        first = asyncio.create_task(engine.attempt_recovery(RuntimeError("x"), {}, "cid-1"))
        await entered[0].wait()
        assert engine.clear_active_recoveries("cid-1") == 1

        second = asyncio.create_task(engine.attempt_recovery(RuntimeError("x"), {}, "cid-1"))
        await entered[1].wait()

        # The first flow keeps running; finishing it must not release the second flow's marker
        gates[0].set()
        assert (await first).message == "flow 0"
        assert engine.get_active_recoveries() == ["cid-1"]

        gates[1].set()
        assert (await second).message == "flow 1"
        assert engine.get_active_recoveries() == []

    async def test_clear_all(self, engine):
        engine.active.try_acquire("a")
        engine.active.try_acquire("b")
        assert engine.clear_active_recoveries() == 2
        assert engine.get_active_recoveries() == []


@pytest.mark.unit
class TestRetryLoop:

    async def test_backoff_delays_are_exact(self, engine, recording_sleep, store):
        seen = []

        def execute(error, context, attempt):
            seen.append(attempt)
            return RecoveryOutcome(success=False, message="still down", should_retry=attempt < 3)

        engine.add_strategy(make_strategy(execute=execute, max_attempts=3, backoff_multiplier=2, initial_delay=1.0))

        outcome = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")

        assert seen == [1, 2, 3]
        assert recording_sleep.delays == [2.0, 4.0]
        assert outcome.success is False
        assert outcome.should_retry is False

        stats = await engine.get_recovery_stats("1h", correlation_id="cid-1")
        assert stats["total"] == 3
        assert stats["failed"] == 3

    def test_backoff_formula_matches_millisecond_example(self):
        strategy = make_strategy(initial_delay=1000, backoff_multiplier=2, max_attempts=3)
        assert strategy.backoff_delay(1) == 0
        assert strategy.backoff_delay(2) == 2000
        assert strategy.backoff_delay(3) == 4000

    async def test_max_delay_caps_backoff(self, engine, recording_sleep):
        engine.add_strategy(make_strategy(
            execute=lambda e, c, a: RecoveryOutcome(success=False, message="no"),
            max_attempts=3, initial_delay=10, backoff_multiplier=10, max_delay=30,
        ))
        await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        assert recording_sleep.delays == [30, 30]

    async def test_jitter_is_added_on_top(self, store, metrics, recording_sleep):
        engine = RecoveryEngine(store=store, metrics=metrics, sleep=recording_sleep, jitter_source=lambda: 0.5)
        engine.add_strategy(make_strategy(
            execute=lambda e, c, a: RecoveryOutcome(success=False, message="no"),
            max_attempts=2, initial_delay=1.0, backoff_multiplier=1.0, jitter=1.0,
        ))
        await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        assert recording_sleep.delays == [1.5]

    async def test_stops_on_first_success(self, engine, recording_sleep):
        seen = []

        async def execute(error, context, attempt):
            seen.append(attempt)
            return RecoveryOutcome(success=attempt == 2, message=f"attempt {attempt}", data={"attempt": attempt})

        engine.add_strategy(make_strategy(execute=execute, max_attempts=5, initial_delay=0.5, backoff_multiplier=2))

        outcome = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")

        assert seen == [1, 2]
        assert recording_sleep.delays == [1.0]
        assert outcome.success is True
        assert outcome.data == {"attempt": 2}

    async def test_final_should_retry_comes_from_last_attempt(self, engine):
        engine.add_strategy(make_strategy(
            execute=lambda e, c, a: RecoveryOutcome(success=False, message="later", should_retry=True),
            max_attempts=2,
        ))
        outcome = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        assert outcome.success is False
        assert outcome.should_retry is True

    async def test_raising_execute_is_an_attempt_failure(self, engine, store):
        seen = []

        def execute(error, context, attempt):
            seen.append(attempt)
            raise ConnectionError("probe exploded")

        engine.add_strategy(make_strategy(execute=execute, max_attempts=2))

        outcome = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")

        assert seen == [1, 2]
        assert outcome.success is False
        assert outcome.should_retry is False
        assert isinstance(outcome.error, ConnectionError)
        assert engine.get_active_recoveries() == []

        stats = await engine.get_recovery_stats("1h", correlation_id="cid-1")
        assert stats["failed"] == 2

    async def test_non_outcome_result_counts_as_failure(self, engine):
        engine.add_strategy(make_strategy(execute=lambda e, c, a: True))
        outcome = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        assert outcome.success is False
        assert isinstance(outcome.error, TypeError)


@pytest.mark.unit
class TestStrategySelection:

    async def test_first_applicable_in_registration_order(self, engine):
        engine.add_strategy(make_strategy("never", applicable=lambda e, c: False))
        engine.add_strategy(make_strategy("first"))
        engine.add_strategy(make_strategy("second"))

        outcome = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        assert outcome.message == "first ok"

    async def test_raising_predicate_is_not_applicable(self, engine):
        def explode(error, context):
            raise KeyError("operation")

        engine.add_strategy(make_strategy("fragile", applicable=explode))
        engine.add_strategy(make_strategy("fallback"))

        outcome = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        assert outcome.message == "fallback ok"

    async def test_no_applicable_strategy(self, engine):
        engine.add_strategy(make_strategy("never", applicable=lambda e, c: False))

        outcome = await engine.attempt_recovery(RuntimeError("fatal"), {}, "cid-1")

        assert outcome.success is False
        assert outcome.should_retry is False
        assert outcome.message == NO_STRATEGY_MESSAGE
        assert engine.get_active_recoveries() == []
        stats = await engine.get_recovery_stats("1h", correlation_id="cid-1")
        assert stats["successful"] == 0

    def test_add_replaces_by_name_in_place(self, engine):
        engine.add_strategy(make_strategy("a"))
        engine.add_strategy(make_strategy("b"))
        replacement = make_strategy("a", max_attempts=4)
        engine.add_strategy(replacement)

        strategies = engine.get_strategies()
        assert [s.name for s in strategies] == ["a", "b"]
        assert strategies[0] is replacement

    def test_remove_strategy(self, engine):
        engine.add_strategy(make_strategy("a"))
        engine.add_strategy(make_strategy("b"))

        assert engine.remove_strategy("a") is True
        assert engine.remove_strategy("a") is False
        assert [s.name for s in engine.get_strategies()] == ["b"]

    @pytest.mark.parametrize("policy", [
        {"name": ""},
        {"max_attempts": 0},
        {"backoff_multiplier": 0},
        {"initial_delay": -1},
        {"jitter": -0.5},
        {"max_delay": -1},
    ])
    def test_invalid_strategy_rejected(self, policy):
        name = policy.pop("name", "bad")
        with pytest.raises(InvalidStrategyError):
            make_strategy(name, **policy)

    def test_registry_rejects_non_strategy(self, engine):
        with pytest.raises(InvalidStrategyError):
            engine.add_strategy({"name": "dict"})


@pytest.mark.unit
class TestRecoveryStats:

    async def test_stats_by_strategy(self, engine):
        engine.add_strategy(make_strategy(
            "flaky",
            execute=lambda e, c, a: RecoveryOutcome(success=a == 2, message="m"),
            max_attempts=2,
        ))
        await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        await engine.attempt_recovery(RuntimeError("x"), {}, "cid-2")

        stats = await engine.get_recovery_stats()

        assert stats["total"] == 4
        assert stats["successful"] == 2
        assert stats["failed"] == 2
        assert stats["success_rate"] == 50
        assert stats["by_strategy"] == {"flaky": {"total": 4, "successful": 2, "failed": 2}}
        assert stats["window_seconds"] == 86400

    async def test_store_failure_yields_zeroed_stats(self, broken_store, metrics, recording_sleep):
        engine = RecoveryEngine(store=broken_store, metrics=metrics, sleep=recording_sleep)
        engine.add_strategy(make_strategy())

        outcome = await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")
        stats = await engine.get_recovery_stats("bogus")

        assert outcome.success is True
        assert stats["total"] == 0
        assert stats["success_rate"] == 0
        assert stats["window_seconds"] == 3600

    async def test_metrics_recorded(self, engine, metrics):
        engine.add_strategy(make_strategy("quick"))
        await engine.attempt_recovery(RuntimeError("x"), {}, "cid-1")

        assert metrics.registry.get_sample_value(
            "toolserver_recovery_attempts_total", {"strategy": "quick", "status": "succeeded"}
        ) == 1.0
        assert metrics.registry.get_sample_value(
            "toolserver_recovery_flows_total", {"outcome": "recovered"}
        ) == 1.0
        assert metrics.registry.get_sample_value("toolserver_active_recoveries") == 0.0

    async def test_recovery_events_reach_event_logger(self, store, metrics, recording_sleep, event_logger):
        engine = RecoveryEngine(store=store, event_logger=event_logger, metrics=metrics, sleep=recording_sleep)

        with event_logger.correlation_scope("cid-ctx"):
            outcome = await engine.attempt_recovery(RuntimeError("x"))

        assert outcome.message == NO_STRATEGY_MESSAGE
        window = event_logger.get_metrics("cid-ctx")
        assert window.warn_count == 1
