"""
Read models returned by the queue's operational surface.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from jobqueue.constants import ExitReason, WorkerStatus


class QueueStats(BaseModel):
    """
    Counts for one queue.

    completed and average_process_time are computed from retained completed
    jobs, so they stay at zero unless retain_completed_jobs is set.
    failure_rate is the percentage of archived jobs among archived plus
    retained completed ones.
    """

    queue: str
    total: int
    pending: int
    delayed: int
    reserved: int
    failed: int
    active_workers: int
    completed: int = 0
    failure_rate: float = 0.0
    average_process_time: float = 0.0


class ProgressInfo(BaseModel):
    """Progress of a job as last reported by its handler."""

    job_id: UUID
    progress: int
    progress_data: dict[str, Any] | None = None


class FailedJobInfo(BaseModel):
    """An entry in the failure archive."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_id: UUID
    queue: str
    job_type: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    error_message: str
    error_detail: str | None
    failed_at: datetime


class WorkerInfo(BaseModel):
    """A row of the worker registry."""

    model_config = ConfigDict(from_attributes=True)

    worker_id: str
    queue: str
    status: WorkerStatus
    processed_count: int
    failed_count: int
    last_heartbeat: datetime
    started_at: datetime


class ReapResult(BaseModel):
    """What cleanup_stale_workers removed or recovered."""

    workers_removed: list[str]
    jobs_released: list[UUID]
    jobs_archived: list[UUID]


class WorkSummary(BaseModel):
    """Outcome of one Worker.work() call."""

    worker_id: str
    queue: str
    processed: int
    succeeded: int
    failed: int
    exit_reason: ExitReason
