"""
Process-scoped registries shared by concurrent recovery flows.
"""

import threading
from typing import Dict, List, Optional, Tuple

from .models import InvalidStrategyError, RecoveryStrategy


class StrategyRegistry:
    """Ordered strategy list, replaced wholesale on every change so readers see a stable snapshot."""

    def __init__(self, strategies: Optional[List[RecoveryStrategy]] = None):
        self._lock = threading.Lock()
        self._strategies: Tuple[RecoveryStrategy, ...] = ()
        for strategy in strategies or ():
            self.add(strategy)

    def snapshot(self) -> Tuple[RecoveryStrategy, ...]:
        return self._strategies

    def get(self, name: str) -> Optional[RecoveryStrategy]:
        for strategy in self._strategies:
            if strategy.name == name:
                return strategy
        return None

    def add(self, strategy: RecoveryStrategy) -> bool:
        """Register a strategy. A strategy with the same name is replaced in place. Returns True if replaced."""
        if not isinstance(strategy, RecoveryStrategy):
            raise InvalidStrategyError(f"Expected RecoveryStrategy, got {type(strategy).__name__}")
        with self._lock:
            for index, existing in enumerate(self._strategies):
                if existing.name == strategy.name:
                    self._strategies = self._strategies[:index] + (strategy,) + self._strategies[index + 1:]
                    return True
            self._strategies = self._strategies + (strategy,)
            return False

    def remove(self, name: str) -> bool:
        with self._lock:
            remaining = tuple(s for s in self._strategies if s.name != name)
            removed = len(remaining) != len(self._strategies)
            self._strategies = remaining
            return removed

    def names(self) -> List[str]:
        return [strategy.name for strategy in self._strategies]

    def __len__(self) -> int:
        return len(self._strategies)


class ActiveRecoverySet:
    """
    Correlation ids with a recovery flow in progress.

    Each flow holds a unique token; releasing with a stale token (after an
    administrative clear and a newer flow for the same id) leaves the newer
    flow's marker untouched.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._markers: Dict[str, object] = {}

    def try_acquire(self, correlation_id: str) -> Optional[object]:
        with self._lock:
            if correlation_id in self._markers:
                return None
            token = object()
            self._markers[correlation_id] = token
            return token

    def release(self, correlation_id: str, token: object) -> bool:
        with self._lock:
            if self._markers.get(correlation_id) is token:
                del self._markers[correlation_id]
                return True
            return False

    def clear(self, correlation_id: Optional[str] = None) -> int:
        """Drop one marker, or all of them. Running flows are not interrupted."""
        with self._lock:
            if correlation_id is None:
                count = len(self._markers)
                self._markers.clear()
                return count
            return 1 if self._markers.pop(correlation_id, None) is not None else 0

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._markers)

    def __contains__(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._markers

    def __len__(self) -> int:
        with self._lock:
            return len(self._markers)
