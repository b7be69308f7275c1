"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import IntEnum, StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states, derived from the reservation columns.

    State transitions:
    - QUEUED -> RESERVED (pop)
    - DELAYED -> QUEUED (available_at elapses)
    - RESERVED -> COMPLETED (complete)
    - RESERVED -> DELAYED / QUEUED (release or retryable failure)
    - RESERVED -> ARCHIVED (max attempts reached, row leaves the jobs table)
    """

    QUEUED = "queued"
    DELAYED = "delayed"
    RESERVED = "reserved"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class WorkerStatus(StrEnum):
    """Worker registry states."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class WorkerAction(StrEnum):
    """Commands accepted by control_worker."""

    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


# Status the registry is moved to for each action
WORKER_ACTION_STATUS: dict[WorkerAction, WorkerStatus] = {
    WorkerAction.PAUSE: WorkerStatus.PAUSED,
    WorkerAction.RESUME: WorkerStatus.RUNNING,
    WorkerAction.STOP: WorkerStatus.STOPPED,
}


class FailureOutcome(StrEnum):
    """What handle_failure did with a failed job."""

    RETRYING = "retrying"
    ARCHIVED = "archived"
    LOST = "lost"


class ExitReason(StrEnum):
    """Why a worker loop returned."""

    EXHAUSTED = "exhausted"
    MAX_JOBS = "max_jobs"
    PAUSED = "paused"
    STOPPED = "stopped"
    SHUTDOWN = "shutdown"


class RetryStrategy(StrEnum):
    """Backoff strategies for rescheduling failed jobs."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class JobPriority(IntEnum):
    """Named priority levels. Any integer is accepted; higher runs first."""

    LOW = -10
    NORMAL = 0
    HIGH = 10
    CRITICAL = 100


# Default values
MIN_PROGRESS = 0
MAX_PROGRESS = 100
LOST_WORKER_ERROR = "Worker lost during execution"

# Tables the queue expects to exist
JOBS_TABLE = "jobs"
FAILED_JOBS_TABLE = "failed_jobs"
WORKERS_TABLE = "workers"
REQUIRED_TABLES = (JOBS_TABLE, FAILED_JOBS_TABLE, WORKERS_TABLE)

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_PUSHED = "jobs_pushed_total"
METRIC_JOBS_RESERVED = "jobs_reserved_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_WORKERS_REAPED = "stale_workers_reaped_total"
METRIC_JOBS_RECOVERED = "orphaned_jobs_recovered_total"

# Trace span names
SPAN_PUSH_JOB = "push_job"
SPAN_POP_JOB = "pop_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_HANDLE_FAILURE = "handle_failure"
SPAN_CLEANUP_WORKERS = "cleanup_stale_workers"
