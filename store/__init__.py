"""
Durable store for the observability and resilience subsystem.
"""

from .event_store import EventStore, StoreError, create_event_store
from .models import Base, ErrorLog, RecoveryAttemptRecord, AlertRecord, MetricSample

__all__ = [
    "EventStore",
    "StoreError",
    "create_event_store",
    "Base",
    "ErrorLog",
    "RecoveryAttemptRecord",
    "AlertRecord",
    "MetricSample",
]
