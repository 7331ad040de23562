"""
Data types for the recovery engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from observability.events import ErrorDetail


class InvalidStrategyError(ValueError):
    """Strategy definition is malformed."""


class RecoveryStatus(Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RecoveryOutcome:
    """Result of one strategy execution or of a whole recovery flow."""
    success: bool
    message: str
    should_retry: bool = False
    data: Any = None
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "should_retry": self.should_retry,
            "data": self.data,
            "error": str(self.error) if self.error is not None else None,
        }


@dataclass(frozen=True)
class RecoveryStrategy:
    """
    Named remediation policy for a class of failures.

    `applicable(error, context)` selects the strategy; `execute(error, context,
    attempt)` returns a RecoveryOutcome and may be a coroutine function. Delays
    are in seconds: attempt k >= 2 waits initial_delay * backoff_multiplier ** (k - 1),
    capped at max_delay when set, plus up to `jitter` seconds of random delay.
    """
    name: str
    description: str
    applicable: Callable[..., bool]
    execute: Callable[..., Any]
    max_attempts: int = 1
    backoff_multiplier: float = 1.0
    initial_delay: float = 0.0
    max_delay: Optional[float] = None
    jitter: float = 0.0

    def __post_init__(self):
        if not self.name:
            raise InvalidStrategyError("Strategy name must not be empty")
        if not callable(self.applicable) or not callable(self.execute):
            raise InvalidStrategyError(f"Strategy {self.name} needs callable applicable and execute")
        if self.max_attempts < 1:
            raise InvalidStrategyError(f"Strategy {self.name}: max_attempts must be at least 1")
        if self.backoff_multiplier <= 0:
            raise InvalidStrategyError(f"Strategy {self.name}: backoff_multiplier must be positive")
        if self.initial_delay < 0 or self.jitter < 0:
            raise InvalidStrategyError(f"Strategy {self.name}: delays must not be negative")
        if self.max_delay is not None and self.max_delay < 0:
            raise InvalidStrategyError(f"Strategy {self.name}: max_delay must not be negative")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the given attempt, excluding jitter."""
        if attempt <= 1:
            return 0.0
        delay = self.initial_delay * self.backoff_multiplier ** (attempt - 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


@dataclass
class RecoveryAttempt:
    """Audit record for one strategy execution."""
    correlation_id: str
    strategy_name: str
    attempt_number: int
    started_at: datetime
    status: RecoveryStatus = RecoveryStatus.RUNNING
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[ErrorDetail] = None
    recovery_context: Dict[str, Any] = field(default_factory=dict)

    def complete(self, outcome: RecoveryOutcome, completed_at: datetime, duration_ms: float) -> None:
        self.status = RecoveryStatus.SUCCEEDED if outcome.success else RecoveryStatus.FAILED
        self.completed_at = completed_at
        self.duration_ms = duration_ms
        if outcome.error is not None:
            self.error = ErrorDetail.from_exception(outcome.error)

    def to_row(self) -> Dict[str, Any]:
        """Column values for the error_recovery_attempts table."""
        return {
            "error_correlation_id": self.correlation_id,
            "recovery_strategy": self.strategy_name,
            "attempt_number": self.attempt_number,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "error_details": self.error.to_dict() if self.error else None,
            "recovery_context": self.recovery_context,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
