"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel, Field


class JobPayload(BaseModel):
    """
    Job payload structure.
    Stored verbatim in the jobs table and the failure archive.
    """

    job_type: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers; drives the worker's complete/fail branch.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    error_detail: str | None = None
    retryable: bool = True
    duration_ms: float | None = None

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None) -> "JobResult":
        """Create a success result."""
        return cls(success=True, output=output)

    @classmethod
    def failure(
        cls,
        error: str,
        error_detail: str | None = None,
        retryable: bool = True,
    ) -> "JobResult":
        """Create a failure result."""
        return cls(
            success=False,
            error=error,
            error_detail=error_detail,
            retryable=retryable,
        )


class ProgressSink(Protocol):
    """Anything that can persist progress for a job (the JobQueue)."""

    async def update_progress(
        self,
        job_id: UUID,
        progress: int,
        data: dict[str, Any] | None = None,
    ) -> bool: ...


@dataclass(frozen=True)
class ProgressReporter:
    """
    Progress handle given to job types registered with progress=True.
    Each call overwrites the stored progress and progress data.
    """

    sink: ProgressSink
    job_id: UUID

    async def update(self, percent: int, data: dict[str, Any] | None = None) -> None:
        await self.sink.update_progress(self.job_id, percent, data)


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and, for progress-aware job types, a reporter.
    """

    job_id: UUID
    queue: str
    job_type: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    timeout_seconds: int = 60
    progress: ProgressReporter | None = None

    @property
    def data(self) -> dict[str, Any]:
        """Handler arguments from the payload."""
        return self.payload.get("data", {})

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
