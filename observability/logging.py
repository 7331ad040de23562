"""
Structured JSON logging for the tool server's observability subsystem.

Provides the local console sink used by the event logger, together with
per-request correlation ids carried in context variables so that every line
written while handling one logical request can be tied back together.
"""

import json
import uuid
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional
from contextvars import ContextVar

# Context variables scoped to the logical request, not the process
CORRELATION_ID: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
SESSION_ID: ContextVar[Optional[str]] = ContextVar('session_id', default=None)


class StructuredLogger:
    """Structured JSON logger with correlation ids."""

    def __init__(self, name: str, level: int = logging.INFO):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        # Remove any existing handlers to avoid duplicates
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        handler = logging.StreamHandler()
        handler.setFormatter(self.JSONFormatter())
        self.logger.addHandler(handler)

        # Prevent propagation to avoid duplicate logs
        self.logger.propagate = False

    class JSONFormatter(logging.Formatter):
        """JSON formatter with correlation ids and structured fields."""

        def format(self, record):
            """Format log record as structured JSON."""
            log_entry = {
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'level': record.levelname,
                'logger': record.name,
                'message': record.getMessage(),
                'module': record.module,
                'function': record.funcName,
                'line': record.lineno,
                'thread': record.thread,
                'process': record.process
            }

            if CORRELATION_ID.get():
                log_entry['correlation_id'] = CORRELATION_ID.get()
            if SESSION_ID.get():
                log_entry['session_id'] = SESSION_ID.get()

            # Explicit fields win over ambient context
            if hasattr(record, 'extra_fields'):
                log_entry.update(record.extra_fields)

            if record.exc_info:
                log_entry['exception'] = self.formatException(record.exc_info)
                log_entry['exception_type'] = record.exc_info[0].__name__ if record.exc_info[0] else None

            return json.dumps(log_entry, default=str)

    def _log_with_extras(self, level: int, message: str, **extra_fields):
        """Log message with extra structured fields."""
        self.logger.log(level, message, extra={'extra_fields': extra_fields})

    def debug(self, message: str, **extra_fields):
        self._log_with_extras(logging.DEBUG, message, **extra_fields)

    def info(self, message: str, **extra_fields):
        self._log_with_extras(logging.INFO, message, **extra_fields)

    def warning(self, message: str, **extra_fields):
        self._log_with_extras(logging.WARNING, message, **extra_fields)

    def error(self, message: str, **extra_fields):
        self._log_with_extras(logging.ERROR, message, **extra_fields)

    def critical(self, message: str, **extra_fields):
        self._log_with_extras(logging.CRITICAL, message, **extra_fields)

    def exception(self, message: str, **extra_fields):
        """Log exception with traceback and extra fields."""
        self.logger.exception(message, extra={'extra_fields': extra_fields})

    # Specialized events for the resilience subsystem
    def recovery_attempt(self, correlation_id: str, strategy: str, attempt: int,
                         success: bool, duration_ms: float):
        """Log the outcome of one recovery attempt."""
        level = logging.INFO if success else logging.WARNING
        self._log_with_extras(
            level,
            f"Recovery attempt {attempt} with {strategy} {'succeeded' if success else 'failed'}",
            correlation_id=correlation_id,
            strategy=strategy,
            attempt=attempt,
            success=success,
            latency_ms=duration_ms,
            event_type="recovery_attempt"
        )

    def alert_transition(self, rule_id: str, alert_id: str, state: str, value: Optional[float] = None):
        """Log an alert state change."""
        self.info(
            f"Alert {alert_id} for rule {rule_id} is now {state}",
            rule_id=rule_id,
            alert_id=alert_id,
            state=state,
            value=value,
            event_type="alert_transition"
        )

    def monitor_tick(self, error_rate: float, error_count: int, health_status: str, duration_ms: float):
        """Log a completed monitoring tick."""
        self.debug(
            "Monitoring tick completed",
            error_rate=error_rate,
            error_count=error_count,
            health_status=health_status,
            latency_ms=duration_ms,
            event_type="monitor_tick"
        )


@contextmanager
def request_context(correlation_id: Optional[str] = None, session_id: Optional[str] = None):
    """Bind a correlation id (new one if omitted) for the duration of a block."""
    correlation_token = CORRELATION_ID.set(correlation_id or generate_correlation_id())
    session_token = SESSION_ID.set(session_id) if session_id else None
    try:
        yield CORRELATION_ID.get()
    finally:
        CORRELATION_ID.reset(correlation_token)
        if session_token is not None:
            SESSION_ID.reset(session_token)


def generate_correlation_id() -> str:
    """Generate unique correlation id: millisecond timestamp plus random suffix."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def track_http_requests(app, logger: StructuredLogger = None):
    """Middleware binding a correlation id to every HTTP request."""
    request_logger = logger or api_logger

    @app.middleware("http")
    async def request_logging_middleware(request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        start_time = time.time()

        with request_context(correlation_id=correlation_id):
            try:
                response = await call_next(request)
            except Exception as e:
                request_logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=request.url.path,
                    latency_ms=(time.time() - start_time) * 1000,
                    exception_type=e.__class__.__name__,
                    error=str(e)
                )
                raise

            request_logger.info(
                "API request processed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                latency_ms=(time.time() - start_time) * 1000,
                event_type="api_request"
            )
            response.headers["X-Correlation-ID"] = correlation_id
            return response

    return request_logging_middleware


# Pre-configured loggers for different components
api_logger = StructuredLogger("toolserver.api")
events_logger = StructuredLogger("toolserver.events", level=logging.DEBUG)
recovery_logger = StructuredLogger("toolserver.recovery")
monitor_logger = StructuredLogger("toolserver.monitor")
