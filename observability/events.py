"""
Structured event logger for the tool server.

Every event is stamped with a severity and the current correlation id and
written synchronously to the JSON console sink. Events of severity error and
above are also buffered and persisted to the durable store on a background
thread. Per-session rolling counters are kept in memory for quick lookups.

Instrumentation never fails the caller: persistence and store read failures
are logged locally and otherwise swallowed.
"""

import os
import socket
import threading
import time
import traceback
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from .config import ResilienceConfig, parse_time_window
from .logging import (
    CORRELATION_ID, SESSION_ID, StructuredLogger, events_logger,
    generate_correlation_id, request_context
)
from .metrics import ResilienceMetrics, resilience_metrics


class Severity(IntEnum):
    """Event severities, totally ordered."""
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union["Severity", int, str]) -> "Severity":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        name = str(value).strip().upper()
        if name == "WARNING":
            name = "WARN"
        return cls[name]


class ErrorCategory(Enum):
    """Coarse classification of failures."""
    VALIDATION = "validation"
    DATABASE = "database"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NETWORK = "network"
    SYSTEM = "system"
    BUSINESS_LOGIC = "business_logic"
    EXTERNAL_SERVICE = "external_service"


_CONSOLE_LEVELS = {
    Severity.DEBUG: 10,
    Severity.INFO: 20,
    Severity.WARN: 30,
    Severity.ERROR: 40,
    Severity.CRITICAL: 50,
}


@dataclass(frozen=True)
class ErrorDetail:
    """Serializable description of an exception."""
    kind: str
    message: str
    trace: Optional[str] = None

    @classmethod
    def from_exception(cls, error: BaseException) -> "ErrorDetail":
        trace = None
        if error.__traceback__ is not None:
            trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return cls(kind=type(error).__name__, message=str(error), trace=trace)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.kind, "message": self.message, "stack": self.trace}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["ErrorDetail"]:
        if not data:
            return None
        return cls(kind=data.get("name", "Error"), message=data.get("message", ""), trace=data.get("stack"))


@dataclass(frozen=True)
class LogEntry:
    """A single structured event. Immutable once created."""
    id: str
    timestamp: datetime
    severity: Severity
    message: str
    category: Optional[ErrorCategory]
    correlation_id: str
    context: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[ErrorDetail] = None
    hostname: str = "unknown"
    process_id: int = 0

    def to_row(self) -> Dict[str, Any]:
        """Column values for the error_logs table."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.severity.label,
            "message": self.message,
            "category": self.category.value if self.category else None,
            "correlation_id": self.correlation_id,
            "context": dict(self.context),
            "error_details": self.error.to_dict() if self.error else None,
            "hostname": self.hostname,
            "process_id": self.process_id,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LogEntry":
        category = row.get("category")
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            severity=Severity.parse(row["level"]),
            message=row["message"],
            category=ErrorCategory(category) if category else None,
            correlation_id=row.get("correlation_id") or "",
            context=MappingProxyType(dict(row.get("context") or {})),
            error=ErrorDetail.from_dict(row.get("error_details")),
            hostname=row.get("hostname") or "unknown",
            process_id=row.get("process_id") or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_row()
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class MetricsWindow:
    """Rolling counters for one session or correlation id."""
    session_id: str
    created_at: datetime
    last_seen_at: datetime
    error_count: int = 0
    warn_count: int = 0
    last_error_at: Optional[datetime] = None
    errors_by_category: Dict[str, int] = field(default_factory=dict)
    error_messages: Dict[str, int] = field(default_factory=dict)

    def record(self, entry: LogEntry) -> None:
        self.last_seen_at = entry.timestamp
        if entry.severity == Severity.WARN:
            self.warn_count += 1
        elif entry.severity >= Severity.ERROR:
            self.error_count += 1
            self.last_error_at = entry.timestamp
            if entry.category:
                key = entry.category.value
                self.errors_by_category[key] = self.errors_by_category.get(key, 0) + 1
            self.error_messages[entry.message] = self.error_messages.get(entry.message, 0) + 1

    @property
    def top_errors(self) -> List[Dict[str, Any]]:
        ranked = sorted(self.error_messages.items(), key=lambda item: item[1], reverse=True)
        return [{"message": message, "count": count} for message, count in ranked[:10]]

    def snapshot(self) -> "MetricsWindow":
        return replace(
            self,
            errors_by_category=dict(self.errors_by_category),
            error_messages=dict(self.error_messages),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "error_count": self.error_count,
            "warn_count": self.warn_count,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "last_seen_at": self.last_seen_at.isoformat(),
            "errors_by_category": dict(self.errors_by_category),
            "top_errors": self.top_errors,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_category(category: Union[ErrorCategory, str, None]) -> Optional[ErrorCategory]:
    if category is None or isinstance(category, ErrorCategory):
        return category
    try:
        return ErrorCategory(str(category).lower())
    except ValueError:
        return None


class EventLogger:
    """Structured event logger with async persistence and rolling session metrics."""

    def __init__(self, store=None, config: ResilienceConfig = None,
                 metrics: ResilienceMetrics = None, console: StructuredLogger = None,
                 clock: Callable[[], datetime] = None):
        self.store = store
        self.config = config or ResilienceConfig()
        self.metrics = metrics or resilience_metrics
        self.console = console or events_logger
        self.clock = clock or _utcnow
        self.min_severity = Severity.parse(self.config.log_level)

        self._default_correlation_id = generate_correlation_id()
        self._hostname = os.environ.get("HOSTNAME") or socket.gethostname() or "unknown"
        self._process_id = os.getpid()

        self._sessions: Dict[str, MetricsWindow] = {}
        self._sessions_lock = threading.Lock()

        self._buffer: List[LogEntry] = []
        self._buffer_lock = threading.Lock()
        self._last_flush = time.monotonic()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="log-persist")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._closed = False

    # Correlation ids

    def set_correlation_id(self, correlation_id: str) -> None:
        """Stamp subsequent events in the current execution context with this id."""
        CORRELATION_ID.set(correlation_id)

    def get_correlation_id(self) -> str:
        return CORRELATION_ID.get() or self._default_correlation_id

    def correlation_scope(self, correlation_id: Optional[str] = None, session_id: Optional[str] = None):
        """Context manager binding a correlation id for a block, restoring the previous one after."""
        return request_context(correlation_id=correlation_id, session_id=session_id)

    def request_logger(self, request_id: str, session_id: Optional[str] = None) -> "RequestLogger":
        return RequestLogger(self, request_id, session_id)

    # Emission

    def emit(self, severity: Union[Severity, str], message: str,
             category: Union[ErrorCategory, str, None] = None,
             context: Optional[Mapping[str, Any]] = None,
             error: Optional[BaseException] = None,
             correlation_id: Optional[str] = None) -> None:
        """Record one event. Never raises."""
        try:
            severity = Severity.parse(severity)
            if severity < self.min_severity:
                return

            entry = self._create_entry(severity, message, category, context, error, correlation_id)
            self._write_console(entry)
            self.metrics.record_log_event(severity.label, entry.category.value if entry.category else None)
            self._update_metrics(entry)

            if severity >= Severity.ERROR:
                self._enqueue(entry)
        except Exception as e:
            self.console.exception("Failed to emit log event", event_message=message, error=str(e))

    def debug(self, message: str, category=None, context=None, error=None) -> None:
        self.emit(Severity.DEBUG, message, category, context, error)

    def info(self, message: str, category=None, context=None, error=None) -> None:
        self.emit(Severity.INFO, message, category, context, error)

    def warn(self, message: str, category=None, context=None, error=None) -> None:
        self.emit(Severity.WARN, message, category, context, error)

    def error(self, message: str, category=None, context=None, error=None) -> None:
        self.emit(Severity.ERROR, message, category, context, error)

    def critical(self, message: str, category=None, context=None, error=None) -> None:
        self.emit(Severity.CRITICAL, message, category, context, error)

    def _create_entry(self, severity, message, category, context, error, correlation_id) -> LogEntry:
        merged = dict(context or {})
        if "session_id" not in merged and SESSION_ID.get():
            merged["session_id"] = SESSION_ID.get()

        return LogEntry(
            id=str(uuid.uuid4()),
            timestamp=self.clock(),
            severity=severity,
            message=message,
            category=_coerce_category(category),
            correlation_id=correlation_id or self.get_correlation_id(),
            context=MappingProxyType(merged),
            error=ErrorDetail.from_exception(error) if error is not None else None,
            hostname=self._hostname,
            process_id=self._process_id,
        )

    def _write_console(self, entry: LogEntry) -> None:
        fields = {
            "severity": entry.severity.label,
            "correlation_id": entry.correlation_id,
            "event_id": entry.id,
        }
        if entry.category:
            fields["category"] = entry.category.value
        if entry.context:
            fields["context"] = dict(entry.context)
        if entry.error:
            fields["error"] = entry.error.message
            fields["error_type"] = entry.error.kind
            if entry.severity >= Severity.ERROR and entry.error.trace:
                fields["stack"] = entry.error.trace
        self.console._log_with_extras(_CONSOLE_LEVELS[entry.severity], entry.message, **fields)

    # Rolling session metrics

    def _update_metrics(self, entry: LogEntry) -> None:
        key = entry.context.get("session_id") or entry.correlation_id
        with self._sessions_lock:
            self._evict_idle(entry.timestamp)
            window = self._sessions.get(key)
            if window is None:
                if len(self._sessions) >= self.config.max_metrics_sessions:
                    self._trim_oldest()
                window = MetricsWindow(session_id=key, created_at=entry.timestamp,
                                       last_seen_at=entry.timestamp)
                self._sessions[key] = window
            window.record(entry)

    def _evict_idle(self, now: datetime) -> None:
        horizon = now - timedelta(seconds=self.config.metrics_idle_timeout)
        for key in [k for k, w in self._sessions.items() if w.last_seen_at < horizon]:
            del self._sessions[key]

    def _trim_oldest(self) -> None:
        """Drop the least recently seen half of the windows."""
        ordered = sorted(self._sessions.items(), key=lambda item: item[1].last_seen_at)
        for key, _ in ordered[:max(1, len(ordered) // 2)]:
            del self._sessions[key]

    def get_metrics(self, session_id: str) -> Optional[MetricsWindow]:
        """Snapshot of the rolling counters for a session or correlation id."""
        with self._sessions_lock:
            self._evict_idle(self.clock())
            window = self._sessions.get(session_id)
            return window.snapshot() if window else None

    def tracked_sessions(self) -> List[str]:
        with self._sessions_lock:
            return list(self._sessions)

    # Persistence

    def _enqueue(self, entry: LogEntry) -> None:
        if not self.config.persist_logs or self.store is None:
            return

        with self._buffer_lock:
            self._buffer.append(entry)
            due = (
                len(self._buffer) >= self.config.log_batch_size
                or entry.severity == Severity.CRITICAL
                or time.monotonic() - self._last_flush >= self.config.log_flush_interval
            )
        if due:
            self.flush(wait=False)

    def flush(self, wait: bool = True) -> None:
        """Hand buffered entries to the persistence thread, optionally waiting for all writes."""
        with self._buffer_lock:
            batch, self._buffer = self._buffer, []
            self._last_flush = time.monotonic()

        if batch:
            self._submit(self._persist_batch, batch)
        if wait:
            with self._pending_lock:
                pending = list(self._pending)
            if pending:
                wait_futures(pending)

    def _submit(self, func, *args) -> None:
        if self._closed:
            func(*args)
            return
        future = self._executor.submit(func, *args)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _persist_batch(self, batch: List[LogEntry]) -> None:
        try:
            self.store.append_logs([entry.to_row() for entry in batch])
        except Exception as e:
            self.metrics.record_persist_failure(len(batch))
            self.console.error(
                "Failed to persist log batch",
                batch_size=len(batch),
                error=str(e),
                exception_type=e.__class__.__name__
            )

    def close(self) -> None:
        """Flush remaining entries and stop the persistence thread."""
        if self._closed:
            return
        self.flush(wait=True)
        self._closed = True
        self._executor.shutdown(wait=True)

    # Store reads

    def get_recent_errors(self, limit: int = 50) -> List[LogEntry]:
        """Newest persisted errors first; empty when the store is unreachable."""
        if self.store is None:
            return []
        try:
            return [LogEntry.from_row(row) for row in self.store.recent_logs(limit)]
        except Exception as e:
            self.console.error("Failed to fetch recent errors", error=str(e))
            return []

    def get_error_stats(self, time_window: str = "1h") -> Dict[str, Any]:
        """Persisted error counts by level and category over a trailing window."""
        if self.store is None:
            return {}
        window_seconds = parse_time_window(time_window, default=3600)
        try:
            stats = self.store.log_stats(self.clock() - timedelta(seconds=window_seconds))
        except Exception as e:
            self.console.error("Failed to fetch error stats", error=str(e))
            return {}
        stats["window_seconds"] = window_seconds
        stats["total"] = sum(stats["by_level"].values())
        return stats


class RequestLogger:
    """Event logger bound to one request id and optional session id."""

    def __init__(self, event_logger: EventLogger, request_id: str, session_id: Optional[str] = None):
        self.event_logger = event_logger
        self.request_id = request_id
        self.session_id = session_id

    def _emit(self, severity: Severity, message: str, category=None, context=None, error=None) -> None:
        merged = dict(context or {})
        merged["request_id"] = self.request_id
        if self.session_id:
            merged["session_id"] = self.session_id
        self.event_logger.emit(severity, message, category, merged, error, correlation_id=self.request_id)

    def debug(self, message: str, category=None, context=None, error=None) -> None:
        self._emit(Severity.DEBUG, message, category, context, error)

    def info(self, message: str, category=None, context=None, error=None) -> None:
        self._emit(Severity.INFO, message, category, context, error)

    def warn(self, message: str, category=None, context=None, error=None) -> None:
        self._emit(Severity.WARN, message, category, context, error)

    def error(self, message: str, category=None, context=None, error=None) -> None:
        self._emit(Severity.ERROR, message, category, context, error)

    def critical(self, message: str, category=None, context=None, error=None) -> None:
        self._emit(Severity.CRITICAL, message, category, context, error)

    def get_correlation_id(self) -> str:
        return self.request_id
