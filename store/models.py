"""
SQLAlchemy ORM models for the durable observability store.

These tables hold persisted error-and-above log entries, recovery attempt
audit rows, alerts and periodic metric samples.
"""

from sqlalchemy import Column, String, Integer, Float, DateTime, Text, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ErrorLog(Base):
    """
    Durable copy of log entries with severity error or critical.
    """
    __tablename__ = "error_logs"

    id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    level = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    category = Column(String(32), nullable=True)
    correlation_id = Column(String(64), nullable=True)
    context = Column(JSON, nullable=True)
    error_details = Column(JSON, nullable=True)
    hostname = Column(String(255), nullable=True)
    process_id = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_error_logs_timestamp", "timestamp"),
        Index("ix_error_logs_correlation_id", "correlation_id"),
    )

    def __repr__(self):
        return f"<ErrorLog(id={self.id}, level='{self.level}', message='{self.message[:40]}')>"


class RecoveryAttemptRecord(Base):
    """
    Audit row for one strategy execution inside a recovery flow.
    """
    __tablename__ = "error_recovery_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    error_correlation_id = Column(String(64), nullable=False)
    recovery_strategy = Column(String(100), nullable=False)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False)  # running|succeeded|failed
    duration_ms = Column(Float, nullable=True)
    error_details = Column(JSON, nullable=True)
    recovery_context = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_recovery_attempts_started_at", "started_at"),
        Index("ix_recovery_attempts_correlation_id", "error_correlation_id"),
    )

    def __repr__(self):
        return (f"<RecoveryAttemptRecord(correlation_id={self.error_correlation_id}, "
                f"strategy='{self.recovery_strategy}', attempt={self.attempt_number}, status='{self.status}')>")


class AlertRecord(Base):
    """
    Alerts opened by rule evaluation.
    """
    __tablename__ = "error_alerts"

    id = Column(String(36), primary_key=True)
    rule_id = Column(String(100), nullable=True)
    level = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    value = Column(Float, nullable=True)
    threshold = Column(Float, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    correlation_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="open")  # open|acknowledged|resolved
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(String(255), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_error_alerts_status", "status"),
    )

    def __repr__(self):
        return f"<AlertRecord(id={self.id}, rule_id='{self.rule_id}', status='{self.status}')>"


class MetricSample(Base):
    """
    Point-in-time health metric persisted by the monitoring loop.
    """
    __tablename__ = "error_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    metric_type = Column(String(32), nullable=False)
    metric_name = Column(String(64), nullable=False)
    metric_value = Column(Float, nullable=False)
    labels = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_error_metrics_timestamp", "timestamp"),
    )
