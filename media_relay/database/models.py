"""SQLAlchemy models for the ledger, operation logs and user metrics."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, Text

from .base import Base, JSONType


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessedUrlModel(Base):
    """One row per processed source URL (plus transform modifiers)."""

    __tablename__ = "processed_urls"

    url_hash = Column(Text, primary_key=True)
    content_hash = Column(Text, nullable=False)
    kind = Column(Text, nullable=False)
    extension = Column(Text, nullable=True)
    file_url = Column(Text, nullable=False)
    user_id = Column(Text, nullable=True)
    file_size = Column(BigInteger, nullable=True)
    # Epoch milliseconds
    processed_at = Column(BigInteger, nullable=False)


class OperationLogModel(Base):
    """Append-only trace of operation steps and status changes."""

    __tablename__ = "operation_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_id = Column(Text, nullable=False)
    step = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    # Epoch milliseconds
    timestamp = Column(BigInteger, nullable=False)
    message = Column(Text, nullable=True)
    file_path = Column(Text, nullable=True)
    stack_trace = Column(Text, nullable=True)
    details = Column("metadata", JSONType, nullable=True)

    __table_args__ = (
        Index("ix_operation_logs_operation_id", "operation_id"),
        Index("ix_operation_logs_step_status", "step", "status"),
    )


class UserMetricsModel(Base):
    """Aggregated per-user activity."""

    __tablename__ = "user_metrics"

    user_id = Column(Text, primary_key=True)
    username = Column(Text, nullable=True)
    total_commands = Column(Integer, nullable=False, default=0)
    successful_commands = Column(Integer, nullable=False, default=0)
    failed_commands = Column(Integer, nullable=False, default=0)
    total_convert = Column(Integer, nullable=False, default=0)
    total_download = Column(Integer, nullable=False, default=0)
    total_optimize = Column(Integer, nullable=False, default=0)
    total_file_size = Column(BigInteger, nullable=False, default=0)
    # Epoch milliseconds
    last_command_at = Column(BigInteger, nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )
