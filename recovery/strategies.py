"""
Built-in recovery strategies.

Registered in priority order: the first strategy whose predicate accepts a
failure is the one that runs, so the catch-all graceful degradation comes last.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from .models import RecoveryOutcome, RecoveryStrategy

Probe = Callable[[], Union[None, bool, Awaitable[Any]]]


def _message(error: BaseException) -> str:
    return str(error).lower()


def _operation(context: Mapping[str, Any]) -> str:
    return str((context or {}).get("operation") or "").lower()


async def _call(func: Callable, *args) -> Any:
    """Call a sync or async callable; sync callables run in a worker thread."""
    if inspect.iscoroutinefunction(func):
        return await func(*args)
    result = await asyncio.to_thread(func, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


def fallback_data(error: BaseException) -> Dict[str, Any]:
    """Sensible defaults for common validation failures."""
    message = _message(error)
    if "user_id" in message:
        return {"user_id": "anonymous"}
    if "limit" in message:
        return {"limit": 50, "offset": 0}
    if "title" in message:
        return {"title": "Untitled"}
    return {
        "warning": "Using fallback data due to validation error",
        "original_error": str(error),
    }


def validation_fallback() -> RecoveryStrategy:
    def applicable(error, context):
        message = _message(error)
        return "validation" in message or "required" in message or "validate" in _operation(context)

    def execute(error, context, attempt):
        return RecoveryOutcome(
            success=True,
            message="Applied validation fallback strategy",
            data=fallback_data(error),
        )

    return RecoveryStrategy(
        name="validation_fallback",
        description="Provide default values for validation errors",
        applicable=applicable,
        execute=execute,
    )


def auth_token_refresh(refresher: Optional[Callable[[Mapping[str, Any]], Any]] = None) -> RecoveryStrategy:
    """`refresher(context)` returns truthy when fresh credentials were obtained."""
    max_attempts = 2

    def applicable(error, context):
        message = _message(error)
        return (
            "authentication" in message
            or "unauthorized" in message
            or "token" in message
            or "auth" in _operation(context)
        )

    async def execute(error, context, attempt):
        if refresher is None:
            return RecoveryOutcome(success=False, message="No token refresher configured")
        try:
            refreshed = await _call(refresher, context)
        except Exception as e:
            return RecoveryOutcome(
                success=False,
                message=f"Token refresh failed: {e}",
                should_retry=attempt < max_attempts,
                error=e,
            )
        if not refreshed:
            return RecoveryOutcome(success=False, message="Token refresh failed", should_retry=attempt < max_attempts)
        return RecoveryOutcome(
            success=True,
            message="Authentication tokens refreshed",
            data={"tokens_refreshed": True},
        )

    return RecoveryStrategy(
        name="auth_token_refresh",
        description="Refresh authentication tokens",
        applicable=applicable,
        execute=execute,
        max_attempts=max_attempts,
        backoff_multiplier=2,
        initial_delay=0.5,
        max_delay=30.0,
    )


def _probe_strategy(name: str, description: str, probe: Probe, applicable: Callable,
                    restored: str, still_failing: str, failed_prefix: str, data_key: str,
                    max_attempts: int, backoff_multiplier: float, initial_delay: float,
                    jitter: float = 0.0) -> RecoveryStrategy:
    """Strategy that re-checks connectivity with `probe`; a probe returning False or raising is a failure."""

    async def execute(error, context, attempt):
        try:
            result = await _call(probe)
        except Exception as e:
            return RecoveryOutcome(
                success=False,
                message=f"{failed_prefix}: {e}",
                should_retry=attempt < max_attempts,
                error=e,
            )
        if result is False:
            return RecoveryOutcome(success=False, message=still_failing, should_retry=attempt < max_attempts)
        return RecoveryOutcome(success=True, message=restored, data={data_key: True})

    return RecoveryStrategy(
        name=name,
        description=description,
        applicable=applicable,
        execute=execute,
        max_attempts=max_attempts,
        backoff_multiplier=backoff_multiplier,
        initial_delay=initial_delay,
        max_delay=30.0,
        jitter=jitter,
    )


def database_retry(probe: Probe) -> RecoveryStrategy:
    def applicable(error, context):
        message = _message(error)
        return "database error" in message or "connection" in message or "database" in _operation(context)

    return _probe_strategy(
        name="database_retry",
        description="Retry database operations with exponential backoff",
        probe=probe,
        applicable=applicable,
        restored="Database connection restored",
        still_failing="Database connection still failing",
        failed_prefix="Database retry failed",
        data_key="connection_restored",
        max_attempts=3,
        backoff_multiplier=2,
        initial_delay=1.0,
    )


def network_retry(probe: Probe) -> RecoveryStrategy:
    def applicable(error, context):
        message = _message(error)
        return (
            "network" in message
            or "timeout" in message
            or "fetch" in message
            or "network" in _operation(context)
        )

    return _probe_strategy(
        name="network_retry",
        description="Retry network operations with jitter",
        probe=probe,
        applicable=applicable,
        restored="Network connectivity restored",
        still_failing="Network connectivity still unavailable",
        failed_prefix="Network retry failed",
        data_key="network_restored",
        max_attempts=5,
        backoff_multiplier=1.5,
        initial_delay=2.0,
        jitter=1.0,
    )


def graceful_degradation() -> RecoveryStrategy:
    def applicable(error, context):
        message = _message(error)
        return "critical" not in message and "fatal" not in message

    def execute(error, context, attempt):
        context = context or {}
        return RecoveryOutcome(
            success=True,
            message="Gracefully degraded functionality",
            data={
                "degraded": True,
                "error": "Service temporarily unavailable",
                "fallback_message": "Operating in reduced functionality mode",
                "retry_after": "5 minutes",
                "context": {
                    "operation": context.get("operation"),
                    "tool": context.get("tool_name"),
                    "resource": context.get("resource_name"),
                },
            },
        )

    return RecoveryStrategy(
        name="graceful_degradation",
        description="Degrade functionality gracefully when possible",
        applicable=applicable,
        execute=execute,
    )


def default_strategies(store=None, token_refresher: Optional[Callable] = None) -> List[RecoveryStrategy]:
    """Built-in strategies in priority order. Connectivity retries need a store to probe."""
    strategies = [validation_fallback(), auth_token_refresh(token_refresher)]
    if store is not None:
        strategies.append(database_retry(store.ping))
        strategies.append(network_retry(store.ping))
    strategies.append(graceful_degradation())
    return strategies
