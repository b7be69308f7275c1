"""
Job type registry and built-in handler implementations.

Job types are registered by tag at import time and resolved from the stored
tag when a job is pushed and again when it is executed. Handlers must be
idempotent - a job whose worker dies mid-execution is run again.
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from jobqueue.exceptions import UnknownJobTypeError
from jobqueue.types.job import JobContext, JobResult
from jobqueue.types.queue import FailedJobInfo

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[Any]]

# Called once a job of the type lands in the failure archive
FailureHook = Callable[[FailedJobInfo], Awaitable[Any]]


@dataclass(frozen=True)
class JobType:
    """
    A registered job type.

    Options left as None fall back to the queue settings.
    """

    name: str
    handler: JobHandler
    max_attempts: int | None = None
    timeout_seconds: int | None = None
    retry_delay_seconds: float | None = None
    progress: bool = False
    on_failed: FailureHook | None = None


class JobRegistry:
    """Maps job type tags to their handlers and execution options."""

    def __init__(self) -> None:
        self._types: dict[str, JobType] = {}

    def register(
        self,
        job_type: str,
        *,
        max_attempts: int | None = None,
        timeout_seconds: int | None = None,
        retry_delay_seconds: float | None = None,
        progress: bool = False,
        on_failed: FailureHook | None = None,
    ) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            job_type: The job type tag this handler processes.
            max_attempts: Attempts before the job is archived.
            timeout_seconds: Informational timeout stored with each job.
            retry_delay_seconds: Base retry delay for this type.
            progress: Give the handler a ProgressReporter in its context.
            on_failed: Coroutine run with the archive entry when a job of
                this type is archived.

        Returns:
            Decorator function.

        Example:
            @registry.register("send_email", max_attempts=5)
            async def handle_send_email(context: JobContext) -> JobResult:
                ...
        """

        def decorator(handler: JobHandler) -> JobHandler:
            self._types[job_type] = JobType(
                name=job_type,
                handler=handler,
                max_attempts=max_attempts,
                timeout_seconds=timeout_seconds,
                retry_delay_seconds=retry_delay_seconds,
                progress=progress,
                on_failed=on_failed,
            )
            logger.debug(f"Registered handler for job type: {job_type}")
            return handler

        return decorator

    def get(self, job_type: str) -> JobType | None:
        return self._types.get(job_type)

    def resolve(self, job_type: str) -> JobType:
        """
        Get a job type or fail.

        Raises:
            UnknownJobTypeError: If the tag is not registered.
        """
        registered = self._types.get(job_type)
        if registered is None:
            raise UnknownJobTypeError(job_type)
        return registered

    def names(self) -> list[str]:
        return list(self._types.keys())

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._types


# Default registry used when none is passed explicitly
registry = JobRegistry()


def register_handler(job_type: str, **options: Any) -> Callable[[JobHandler], JobHandler]:
    """Register a handler on the default registry."""
    return registry.register(job_type, **options)


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler function or None if not found.
    """
    registered = registry.get(job_type)
    return registered.handler if registered else None


def list_handlers() -> list[str]:
    """List all registered job types."""
    return registry.names()


def _to_result(value: Any) -> JobResult:
    # Handlers may return a JobResult, a bool, a dict of output, or nothing
    if isinstance(value, JobResult):
        return value
    if value is False:
        return JobResult.failure("Job handler returned failure")
    if isinstance(value, dict):
        return JobResult.ok(output=value)
    return JobResult.ok()


async def execute_job(
    context: JobContext,
    job_registry: JobRegistry | None = None,
) -> JobResult:
    """
    Execute a job using the appropriate handler.

    Exceptions raised by the handler are converted into a failure result
    carrying the traceback, so nothing escapes into the worker loop.

    Args:
        context: The job context.
        job_registry: Registry to resolve the handler from.

    Returns:
        JobResult from the handler.
    """
    job_registry = job_registry or registry
    registered = job_registry.get(context.job_type)

    if registered is None:
        logger.error(
            f"No handler for job type: {context.job_type}",
            extra={"job_id": str(context.job_id)},
        )
        return JobResult.failure(
            str(UnknownJobTypeError(context.job_type)),
            retryable=False,
        )

    try:
        return _to_result(await registered.handler(context))
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)},
        )
        return JobResult.failure(
            f"{type(e).__name__}: {e}",
            error_detail=traceback.format_exc(),
        )


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input data as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )

    return JobResult.ok(output={"echo": context.data})


@register_handler("failing_job")
async def handle_failing_job(context: JobContext) -> JobResult:
    """Handler that always fails - for testing retry logic."""
    logger.info(
        "Failing job executing (will fail)",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )

    return JobResult.failure(f"Intentional failure on attempt {context.attempt}")


@register_handler("long_running", progress=True)
async def handle_long_running(context: JobContext) -> JobResult:
    """
    Long running job that reports progress.

    Data should contain:
    - duration_seconds: How long the job takes
    - checkpoint_interval: How often to report progress
    """
    duration = context.data.get("duration_seconds", 60)
    interval = context.data.get("checkpoint_interval", 5)

    elapsed = 0.0
    while elapsed < duration:
        step = min(interval, duration - elapsed)
        await asyncio.sleep(step)
        elapsed += step

        if context.progress is not None:
            percent = int(elapsed * 100 / duration) if duration else 100
            await context.progress.update(percent, {"elapsed_seconds": elapsed})

    return JobResult.ok(output={"duration": duration, "completed": True})

