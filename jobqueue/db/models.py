"""
SQLAlchemy database models.
Defines the jobs, failed_jobs and workers tables.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import (
    FAILED_JOBS_TABLE,
    JOBS_TABLE,
    WORKERS_TABLE,
    JobState,
    WorkerStatus,
)

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JobRecord(Base):
    """
    A unit of work in the queue.

    This is the authoritative source of truth for job state. A non-null
    reserved_at means a worker holds the job and pop() will not return it.

    Key constraints:
    - attempts is incremented by pop() and never exceeds max_attempts while
      the row lives here
    - progress_data is replaced on every update, never merged
    """

    __tablename__ = JOBS_TABLE

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    job_type: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Progress
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    # Scheduling and reservation
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reserved_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Reservation time of the completing attempt, kept on retained rows
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        # Index for queue polling: eligible rows in priority/FIFO order
        Index("ix_jobs_queue_poll", "queue", "reserved_at", "available_at", "priority", "created_at"),
    )

    @property
    def data(self) -> dict[str, Any]:
        """The handler arguments stored in the payload."""
        return (self.payload or {}).get("data", {})

    @property
    def is_retryable(self) -> bool:
        """Check if the job has attempts left."""
        return self.attempts < self.max_attempts

    def state(self, now: datetime | None = None) -> JobState:
        """Derive the lifecycle state from the reservation columns."""
        now = now or utcnow()
        if self.completed_at is not None:
            return JobState.COMPLETED
        if self.reserved_at is not None:
            return JobState.RESERVED
        if _as_utc(self.available_at) > now:
            return JobState.DELAYED
        return JobState.QUEUED

    def __repr__(self) -> str:
        return (
            f"JobRecord(id={self.id}, queue={self.queue}, type={self.job_type}, "
            f"attempts={self.attempts}/{self.max_attempts})"
        )


class FailedJobRecord(Base):
    """A job that exhausted its retry budget."""

    __tablename__ = FAILED_JOBS_TABLE

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    queue: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"FailedJobRecord(id={self.id}, job_id={self.job_id}, queue={self.queue})"


class WorkerRecord(Base):
    """Bookkeeping row for a live worker process."""

    __tablename__ = WORKERS_TABLE

    worker_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=WorkerStatus.RUNNING.value)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_heartbeat: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"WorkerRecord(worker_id={self.worker_id}, queue={self.queue}, status={self.status})"
