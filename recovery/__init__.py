"""
Error recovery for the tool server.

Pluggable strategies with bounded retries and exponential backoff, guarded so
that only one recovery flow runs per correlation id.
"""

from .models import InvalidStrategyError, RecoveryAttempt, RecoveryOutcome, RecoveryStatus, RecoveryStrategy
from .registry import ActiveRecoverySet, StrategyRegistry
from .engine import RecoveryEngine, aggregate_recovery_stats
from .strategies import default_strategies

__all__ = [
    "InvalidStrategyError",
    "RecoveryAttempt",
    "RecoveryOutcome",
    "RecoveryStatus",
    "RecoveryStrategy",
    "ActiveRecoverySet",
    "StrategyRegistry",
    "RecoveryEngine",
    "aggregate_recovery_stats",
    "default_strategies",
]
