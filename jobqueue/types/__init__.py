"""
Type definitions for the job queue.
Contains input/output type definitions grouped by module.
"""

from jobqueue.types.job import (
    JobContext,
    JobPayload,
    JobResult,
    ProgressReporter,
    ProgressSink,
)
from jobqueue.types.queue import (
    FailedJobInfo,
    ProgressInfo,
    QueueStats,
    ReapResult,
    WorkerInfo,
    WorkSummary,
)

__all__ = [
    # Job types
    "JobPayload",
    "JobResult",
    "JobContext",
    "ProgressReporter",
    "ProgressSink",
    # Queue read models
    "QueueStats",
    "ProgressInfo",
    "FailedJobInfo",
    "WorkerInfo",
    "ReapResult",
    "WorkSummary",
]
