"""
Durable store for log entries, recovery attempts, alerts and metric samples.

Implements the narrow append/read contract the observability core depends on.
Every database failure surfaces as StoreError so callers can treat the store
as a single unreliable collaborator.
"""

import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import create_engine, delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base, ErrorLog, RecoveryAttemptRecord, AlertRecord, MetricSample


class StoreError(RuntimeError):
    """Raised when the durable store cannot be read or written."""


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is written in UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_dict(row, datetime_fields: Iterable[str]) -> Dict[str, Any]:
    data = {column.name: getattr(row, column.name) for column in row.__table__.columns}
    for field_name in datetime_fields:
        data[field_name] = _utc(data.get(field_name))
    return data


class EventStore:
    """SQLAlchemy-backed implementation of the observability store."""

    def __init__(self, database_url: str, engine=None):
        self.database_url = database_url
        self.engine = engine or self._create_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

        # A single shared in-memory SQLite connection must not be used by two threads at once
        if isinstance(self.engine.pool, StaticPool):
            self._serial = threading.RLock()
        else:
            self._serial = None

    @staticmethod
    def _create_engine(database_url: str):
        if database_url.startswith("sqlite"):
            engine_kwargs = {
                "future": True,
                "connect_args": {"check_same_thread": False},
            }
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
            return create_engine(database_url, **engine_kwargs)

        return create_engine(
            database_url,
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_size=5,
            max_overflow=10,
            future=True,
        )

    @contextmanager
    def _session(self):
        guard = self._serial if self._serial is not None else nullcontext()
        with guard:
            try:
                with self.SessionLocal.begin() as session:
                    yield session
            except SQLAlchemyError as e:
                raise StoreError(f"Store operation failed: {e}") from e

    def create_schema(self) -> None:
        """Create all tables if they do not exist."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create schema: {e}") from e

    def ping(self) -> None:
        with self._session() as session:
            session.execute(text("SELECT 1"))

    def dispose(self) -> None:
        self.engine.dispose()

    # Log entries

    def append_logs(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        with self._session() as session:
            session.add_all([ErrorLog(**row) for row in rows])

    def recent_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest persisted log entries first."""
        with self._session() as session:
            rows = session.scalars(
                select(ErrorLog).order_by(ErrorLog.timestamp.desc()).limit(limit)
            ).all()
            return [_to_dict(row, ["timestamp"]) for row in rows]

    def count_logs(self, since: datetime, levels: Optional[List[str]] = None,
                   category: Optional[str] = None, message_pattern: Optional[str] = None,
                   user_id: Optional[str] = None) -> int:
        """Count persisted log entries newer than `since` matching the filters."""
        query = select(ErrorLog).where(ErrorLog.timestamp >= since)
        if levels:
            query = query.where(ErrorLog.level.in_(levels))
        if category:
            query = query.where(ErrorLog.category == category)
        if message_pattern:
            query = query.where(ErrorLog.message.ilike(f"%{message_pattern}%"))

        with self._session() as session:
            if user_id is None:
                return session.scalar(select(func.count()).select_from(query.subquery())) or 0
            # JSON path filtering differs per dialect, so filter the context in Python
            contexts = session.scalars(query.with_only_columns(ErrorLog.context)).all()
            return sum(1 for context in contexts if (context or {}).get("user_id") == user_id)

    def log_stats(self, since: datetime) -> Dict[str, Dict[str, int]]:
        """Counts of persisted entries by level and by category since a point in time."""
        with self._session() as session:
            by_level = session.execute(
                select(ErrorLog.level, func.count())
                .where(ErrorLog.timestamp >= since)
                .group_by(ErrorLog.level)
            ).all()
            by_category = session.execute(
                select(ErrorLog.category, func.count())
                .where(ErrorLog.timestamp >= since)
                .group_by(ErrorLog.category)
            ).all()
        return {
            "by_level": {level: count for level, count in by_level},
            "by_category": {(category or "uncategorized"): count for category, count in by_category},
        }

    def purge_logs(self, before: datetime) -> int:
        with self._session() as session:
            result = session.execute(delete(ErrorLog).where(ErrorLog.timestamp < before))
            return result.rowcount or 0

    # Recovery attempts

    def append_attempt(self, row: Dict[str, Any]) -> None:
        with self._session() as session:
            session.add(RecoveryAttemptRecord(**row))

    def attempts_since(self, since: datetime, correlation_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = select(RecoveryAttemptRecord).where(RecoveryAttemptRecord.started_at >= since)
        if correlation_id is not None:
            query = query.where(RecoveryAttemptRecord.error_correlation_id == correlation_id)
        query = query.order_by(RecoveryAttemptRecord.started_at, RecoveryAttemptRecord.id)

        with self._session() as session:
            rows = session.scalars(query).all()
            return [_to_dict(row, ["started_at", "completed_at"]) for row in rows]

    # Alerts

    def save_alert(self, row: Dict[str, Any]) -> None:
        """Insert an alert or update the stored copy with the same id."""
        with self._session() as session:
            session.merge(AlertRecord(**row))

    def list_alerts(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = select(AlertRecord)
        if status is not None:
            query = query.where(AlertRecord.status == status)
        query = query.order_by(AlertRecord.timestamp.desc()).limit(limit)

        with self._session() as session:
            rows = session.scalars(query).all()
            return [_to_dict(row, ["timestamp", "acknowledged_at", "resolved_at"]) for row in rows]

    # Metric samples

    def append_metric_samples(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        with self._session() as session:
            session.add_all([MetricSample(**row) for row in rows])

    def metric_samples_since(self, since: datetime, metric_name: Optional[str] = None) -> List[Dict[str, Any]]:
        query = select(MetricSample).where(MetricSample.timestamp >= since)
        if metric_name is not None:
            query = query.where(MetricSample.metric_name == metric_name)
        with self._session() as session:
            rows = session.scalars(query.order_by(MetricSample.timestamp)).all()
            return [_to_dict(row, ["timestamp"]) for row in rows]

    def purge_metric_samples(self, before: datetime) -> int:
        with self._session() as session:
            result = session.execute(delete(MetricSample).where(MetricSample.timestamp < before))
            return result.rowcount or 0


def create_event_store(database_url: str, create_schema: bool = True) -> EventStore:
    """Build a store for the given URL, creating tables unless told otherwise."""
    event_store = EventStore(database_url)
    if create_schema:
        event_store.create_schema()
    return event_store
