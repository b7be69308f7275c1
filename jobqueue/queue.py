"""
Queue orchestrator.

JobQueue is the operations surface over the jobs table, the failure archive
and the worker registry. Each public method runs in its own transaction so
that multi-step transitions (archive + delete, retry + delete, reap +
recover) are atomic.
"""

import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    LOST_WORKER_ERROR,
    MAX_PROGRESS,
    MIN_PROGRESS,
    SPAN_CLEANUP_WORKERS,
    SPAN_HANDLE_FAILURE,
    SPAN_POP_JOB,
    SPAN_PUSH_JOB,
    WORKER_ACTION_STATUS,
    FailureOutcome,
    WorkerAction,
    WorkerStatus,
)
from jobqueue.db.connection import get_session_context, verify_schema
from jobqueue.db.models import JobRecord, utcnow
from jobqueue.db.repository import FailedJobRepository, JobRepository, WorkerRepository
from jobqueue.exceptions import (
    FailedJobNotFoundError,
    InvalidPayloadError,
    InvalidWorkerActionError,
    StorageError,
)
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import get_tracer
from jobqueue.retry import RetryPolicy
from jobqueue.types.job import JobPayload
from jobqueue.types.queue import (
    FailedJobInfo,
    ProgressInfo,
    QueueStats,
    ReapResult,
    WorkerInfo,
)
from jobqueue.worker.handlers import JobRegistry, JobType, registry

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Operations surface for producers, workers and admin tooling.

    The backing tables must already exist; call verify_schema() at startup
    to fail fast when they do not.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        job_registry: JobRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        """
        Initialize the queue.

        Args:
            session_factory: Session factory; defaults to the global one set by init_db().
            settings: Queue settings.
            job_registry: Registry used to validate and configure job types.
            retry_policy: Backoff policy for retryable failures.
        """
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._registry = job_registry or registry
        self._retry_policy = retry_policy or RetryPolicy.from_settings(self._settings)
        self._metrics = get_metrics()

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def settings(self) -> Settings:
        return self._settings

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        async with get_session_context(self._session_factory) as session:
            yield session

    def _worker_cutoff(self, timeout_seconds: float | None = None):
        timeout = self._settings.worker_timeout_seconds if timeout_seconds is None else timeout_seconds
        return utcnow() - timedelta(seconds=timeout)

    def _prepare(
        self,
        job_type: str,
        data: dict[str, Any] | None,
        max_attempts: int | None,
    ) -> tuple[JobType, dict[str, Any], int, int]:
        registered = self._registry.resolve(job_type)

        try:
            payload = JobPayload(job_type=job_type, data=data or {}).model_dump(mode="json")
        except (ValidationError, PydanticSerializationError) as e:
            raise InvalidPayloadError(f"Invalid payload for job type {job_type}: {e}") from e

        attempts = max_attempts
        if attempts is None:
            attempts = registered.max_attempts or self._settings.default_max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        timeout = registered.timeout_seconds or self._settings.default_job_timeout_seconds
        return registered, payload, attempts, timeout

    # ------------------------------------------------------------------
    # Job store
    # ------------------------------------------------------------------

    async def verify_schema(self) -> None:
        """
        Check the backing tables exist.

        Raises:
            SchemaNotProvisionedError: If any table is missing.
        """
        async with self._session() as session:
            await verify_schema(await session.connection())

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        try:
            async with self._session() as session:
                await session.execute(text("SELECT 1"))
        except StorageError:
            logger.warning("Queue storage health check failed", exc_info=True)
            return False
        return True

    async def push(
        self,
        queue: str,
        job_type: str,
        data: dict[str, Any] | None = None,
        delay_seconds: float = 0,
        priority: int = 0,
        max_attempts: int | None = None,
    ) -> UUID:
        """
        Push a new job onto a queue.

        Args:
            queue: Queue name.
            job_type: Registered job type tag.
            data: Handler arguments; must be JSON serializable.
            delay_seconds: Seconds before the job becomes eligible.
            priority: Higher is more urgent.
            max_attempts: Override the job type's attempt budget.

        Returns:
            The new job's id.

        Raises:
            UnknownJobTypeError: The job type is not registered.
            InvalidPayloadError: The data cannot be stored.
            StorageError: The insert failed.
        """
        if not queue:
            raise ValueError("Queue name cannot be empty")
        if delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")

        _, payload, attempts, timeout = self._prepare(job_type, data, max_attempts)

        with get_tracer().start_as_current_span(SPAN_PUSH_JOB) as span:
            span.set_attribute("queue", queue)
            span.set_attribute("job_type", job_type)

            async with self._session() as session:
                job = await JobRepository(session).create_job(
                    queue=queue,
                    job_type=job_type,
                    payload=payload,
                    available_at=utcnow() + timedelta(seconds=delay_seconds),
                    priority=priority,
                    max_attempts=attempts,
                    timeout_seconds=timeout,
                )
                job_id = job.id

        self._metrics.record_job_pushed(queue, job_type)
        logger.info(
            f"Job pushed to queue: {queue}",
            extra={
                "job_id": str(job_id),
                "job_type": job_type,
                "priority": priority,
                "delay": delay_seconds,
            },
        )
        return job_id

    async def push_bulk(
        self,
        queue: str,
        jobs: Sequence[JobPayload],
        delay_seconds: float = 0,
        priority: int = 0,
    ) -> list[UUID]:
        """
        Push several jobs in one transaction.

        Either every job is stored or none is.

        Returns:
            The new job ids in input order.
        """
        if not queue:
            raise ValueError("Queue name cannot be empty")

        prepared = [self._prepare(job.job_type, job.data, None) for job in jobs]
        available_at = utcnow() + timedelta(seconds=delay_seconds)

        job_ids = []
        async with self._session() as session:
            repo = JobRepository(session)
            for registered, payload, attempts, timeout in prepared:
                job = await repo.create_job(
                    queue=queue,
                    job_type=registered.name,
                    payload=payload,
                    available_at=available_at,
                    priority=priority,
                    max_attempts=attempts,
                    timeout_seconds=timeout,
                )
                job_ids.append(job.id)

        for registered, *_ in prepared:
            self._metrics.record_job_pushed(queue, registered.name)
        logger.info(f"Pushed {len(job_ids)} jobs to queue: {queue}")
        return job_ids

    async def pop(self, queue: str, worker_id: str | None = None) -> JobRecord | None:
        """
        Reserve the next eligible job on a queue.

        At most one concurrent caller receives any given job. The returned
        record already carries the incremented attempt count.

        Args:
            queue: Queue name.
            worker_id: Reserving worker, used to guard later transitions.

        Returns:
            The reserved job, or None if nothing is eligible.
        """
        with get_tracer().start_as_current_span(SPAN_POP_JOB) as span:
            span.set_attribute("queue", queue)

            async with self._session() as session:
                job = await JobRepository(session).reserve_next(queue, worker_id=worker_id)

            if job is not None:
                span.set_attribute("job_id", str(job.id))
                self._metrics.record_job_reserved(queue)

        return job

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        """Get a job from the store by id."""
        async with self._session() as session:
            return await JobRepository(session).get_job(job_id)

    async def complete(self, job_id: UUID, worker_id: str | None = None) -> bool:
        """
        Mark a reserved job as completed.

        The row is deleted unless retain_completed_jobs is set; either way it
        is never returned by pop() again.

        Returns:
            True if the job was completed, False if the caller no longer holds it.
        """
        async with self._session() as session:
            return await JobRepository(session).complete_job(
                job_id,
                worker_id=worker_id,
                retain=self._settings.retain_completed_jobs,
            )

    async def release(
        self,
        job_id: UUID,
        delay_seconds: float = 0,
        worker_id: str | None = None,
    ) -> bool:
        """
        Return a reserved job to the pool without counting a failure.

        Returns:
            True if the job was released.
        """
        async with self._session() as session:
            released = await JobRepository(session).release_job(
                job_id,
                available_at=utcnow() + timedelta(seconds=delay_seconds),
                worker_id=worker_id,
            )

        if released:
            logger.info("Job released", extra={"job_id": str(job_id), "delay": delay_seconds})
        return released

    async def handle_failure(
        self,
        job: JobRecord,
        error: str,
        error_detail: str | None = None,
        retryable: bool = True,
    ) -> FailureOutcome:
        """
        Reschedule or archive a failed job.

        If the job has used its attempt budget, or the failure is not
        retryable, it is moved to the failure archive and removed from the
        store in one transaction. Otherwise its reservation is cleared and it
        becomes eligible again after the retry delay. No attempt is added
        here; pop() already counted it.

        Args:
            job: The job as returned by pop().
            error: Error message, kept verbatim.
            error_detail: Trace or context, kept verbatim.
            retryable: False sends the job straight to the archive.

        Returns:
            RETRYING, ARCHIVED, or LOST if the reservation was no longer held.
        """
        with get_tracer().start_as_current_span(SPAN_HANDLE_FAILURE) as span:
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("attempt", job.attempts)

            async with self._session() as session:
                jobs = JobRepository(session)

                archived = None
                if not retryable or not job.is_retryable:
                    removed = await jobs.remove_reserved(job.id, worker_id=job.reserved_by)
                    if removed is None:
                        outcome = FailureOutcome.LOST
                    else:
                        archived = FailedJobInfo.model_validate(
                            await FailedJobRepository(session).archive(removed, error, error_detail)
                        )
                        outcome = FailureOutcome.ARCHIVED
                else:
                    registered = self._registry.get(job.job_type)
                    delay = self._retry_policy.delay_for(
                        job.attempts,
                        registered.retry_delay_seconds if registered else None,
                    )
                    rescheduled = await jobs.reschedule_job(
                        job.id,
                        available_at=utcnow() + timedelta(seconds=delay),
                        error=error,
                        worker_id=job.reserved_by,
                    )
                    outcome = FailureOutcome.RETRYING if rescheduled else FailureOutcome.LOST

            span.set_attribute("outcome", outcome.value)

        if archived is not None:
            await self._notify_failed(archived)

        if outcome == FailureOutcome.LOST:
            logger.warning(
                "Failed job no longer reserved by caller",
                extra={"job_id": str(job.id), "worker_id": job.reserved_by},
            )
        elif outcome == FailureOutcome.RETRYING:
            logger.info(
                "Job queued for retry",
                extra={"job_id": str(job.id), "attempt": job.attempts, "error": error},
            )
        return outcome

    async def _notify_failed(self, failed: FailedJobInfo) -> None:
        registered = self._registry.get(failed.job_type)
        if registered is None or registered.on_failed is None:
            return

        try:
            await registered.on_failed(failed)
        except Exception:
            logger.exception(
                "Failure hook raised",
                extra={"job_id": str(failed.job_id), "job_type": failed.job_type},
            )

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def update_progress(
        self,
        job_id: UUID,
        progress: int,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """
        Overwrite a job's progress and progress data.

        Returns:
            True if the job exists.
        """
        if not MIN_PROGRESS <= progress <= MAX_PROGRESS:
            raise ValueError(f"progress must be between {MIN_PROGRESS} and {MAX_PROGRESS}")

        async with self._session() as session:
            return await JobRepository(session).update_progress(job_id, progress, data)

    async def get_progress(self, job_id: UUID) -> ProgressInfo | None:
        """Read a job's progress, or None once the job has left the store."""
        async with self._session() as session:
            found = await JobRepository(session).get_progress(job_id)

        if found is None:
            return None
        progress, progress_data = found
        return ProgressInfo(job_id=job_id, progress=progress, progress_data=progress_data)

    # ------------------------------------------------------------------
    # Queue inspection and maintenance
    # ------------------------------------------------------------------

    async def stats(self, queue: str) -> QueueStats:
        """Get job, archive and worker counts for a queue."""
        async with self._session() as session:
            jobs = JobRepository(session)
            counts = await jobs.count_jobs(queue)
            completed, average = await jobs.completion_stats(queue)
            failed = await FailedJobRepository(session).count_failed(queue)
            active = await WorkerRepository(session).count_running(queue, self._worker_cutoff())

        finished = completed + failed
        self._metrics.update_queue_depth(queue, counts["pending"])
        return QueueStats(
            queue=queue,
            failed=failed,
            active_workers=active,
            completed=completed,
            failure_rate=failed * 100 / finished if finished else 0.0,
            average_process_time=average,
            **counts,
        )

    async def size(self, queue: str) -> int:
        """Number of jobs waiting on a queue, delayed ones included."""
        async with self._session() as session:
            return await JobRepository(session).get_queue_size(queue)

    async def clear(self, queue: str) -> int:
        """Delete every waiting job on a queue. Reserved jobs are left alone."""
        async with self._session() as session:
            count = await JobRepository(session).clear_queue(queue)

        logger.info(f"Cleared {count} jobs from queue: {queue}")
        return count

    async def get_queues(self) -> list[str]:
        """Queue names with at least one job in the store."""
        async with self._session() as session:
            return await JobRepository(session).list_queues()

    async def purge_completed(self, older_than_seconds: float = 3600) -> int:
        """Delete retained completed jobs older than the given age."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        async with self._session() as session:
            return await JobRepository(session).purge_completed(cutoff)

    # ------------------------------------------------------------------
    # Failure archive
    # ------------------------------------------------------------------

    async def get_failed_jobs(
        self,
        queue: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FailedJobInfo]:
        """List archived jobs for a queue, newest first."""
        async with self._session() as session:
            records = await FailedJobRepository(session).list_failed(queue, limit, offset)
            return [FailedJobInfo.model_validate(record) for record in records]

    async def retry_failed_job(self, failed_id: UUID, queue: str | None = None) -> UUID:
        """
        Move an archived job back into the store.

        The job is re-pushed with attempts=0, no delay, the retried-job
        priority and the attempt budget it was archived with, and the archive
        entry is deleted in the same transaction.

        Args:
            failed_id: Archive entry id.
            queue: Target queue; defaults to the queue the job failed on.

        Returns:
            The id of the re-queued job.

        Raises:
            FailedJobNotFoundError: No archive entry with that id.
            UnknownJobTypeError: The job type is no longer registered.
        """
        async with self._session() as session:
            failed_jobs = FailedJobRepository(session)
            failed = await failed_jobs.get_failed(failed_id)
            if failed is None:
                raise FailedJobNotFoundError(failed_id)

            target_queue = queue or failed.queue
            _, payload, attempts, timeout = self._prepare(
                failed.job_type,
                (failed.payload or {}).get("data"),
                failed.max_attempts,
            )

            job = await JobRepository(session).create_job(
                queue=target_queue,
                job_type=failed.job_type,
                payload=payload,
                available_at=utcnow(),
                priority=self._settings.retried_job_priority,
                max_attempts=attempts,
                timeout_seconds=timeout,
            )
            await failed_jobs.delete_failed(failed_id)
            job_id = job.id

        logger.info(
            "Failed job retried",
            extra={"failed_id": str(failed_id), "job_id": str(job_id), "queue": target_queue},
        )
        return job_id

    async def forget_failed_job(self, failed_id: UUID) -> bool:
        """Delete one archive entry without retrying it."""
        async with self._session() as session:
            return await FailedJobRepository(session).delete_failed(failed_id)

    async def flush_failed_jobs(self, queue: str) -> int:
        """Delete every archive entry for a queue."""
        async with self._session() as session:
            return await FailedJobRepository(session).flush_failed(queue)

    # ------------------------------------------------------------------
    # Worker registry
    # ------------------------------------------------------------------

    async def register_worker(self, worker_id: str, queue: str, reset_status: bool = True) -> None:
        """
        Create or refresh a worker record.

        With reset_status=False an existing record keeps its control status,
        so a pending pause or stop is not cleared.
        """
        async with self._session() as session:
            await WorkerRepository(session).register(worker_id, queue, reset_status=reset_status)

    async def unregister_worker(self, worker_id: str) -> bool:
        async with self._session() as session:
            removed = await WorkerRepository(session).unregister(worker_id)

        logger.info("Unregistered worker", extra={"worker_id": worker_id})
        return removed

    async def heartbeat(self, worker_id: str) -> bool:
        async with self._session() as session:
            return await WorkerRepository(session).heartbeat(worker_id)

    async def record_worker_outcome(self, worker_id: str, succeeded: bool) -> bool:
        async with self._session() as session:
            return await WorkerRepository(session).record_outcome(worker_id, succeeded)

    async def worker_status(self, worker_id: str) -> WorkerStatus | None:
        async with self._session() as session:
            return await WorkerRepository(session).get_status(worker_id)

    async def get_worker(self, worker_id: str) -> WorkerInfo | None:
        async with self._session() as session:
            worker = await WorkerRepository(session).get_worker(worker_id)
            return WorkerInfo.model_validate(worker) if worker else None

    async def get_workers(self, queue: str) -> list[WorkerInfo]:
        """Workers on a queue with a heartbeat inside the staleness timeout."""
        async with self._session() as session:
            workers = await WorkerRepository(session).list_active(queue, self._worker_cutoff())
            return [WorkerInfo.model_validate(worker) for worker in workers]

    async def control_worker(self, worker_id: str, action: WorkerAction | str) -> bool:
        """
        Ask a worker to pause, resume or stop.

        The command only takes effect when the worker next polls its status,
        between jobs.

        Returns:
            True if the worker record exists.

        Raises:
            InvalidWorkerActionError: The action is not pause/resume/stop.
        """
        try:
            action = WorkerAction(action)
        except ValueError as e:
            raise InvalidWorkerActionError(str(action)) from e

        async with self._session() as session:
            updated = await WorkerRepository(session).set_status(
                worker_id, WORKER_ACTION_STATUS[action]
            )

        logger.info(
            f"Worker control: {action.value}",
            extra={"worker_id": worker_id, "applied": updated},
        )
        return updated

    async def cleanup_stale_workers(self, timeout_seconds: float | None = None) -> ReapResult:
        """
        Delete stale worker records and recover their reservations.

        In one transaction: worker records whose heartbeat is older than the
        timeout are deleted; reservations held by no live worker are released
        for another attempt, or archived when their attempts are used up.

        Args:
            timeout_seconds: Staleness timeout; defaults to worker_timeout_seconds.

        Returns:
            The removed worker ids and the recovered job ids.
        """
        now = utcnow()
        cutoff = self._worker_cutoff(timeout_seconds)
        reservation_cutoff = now - timedelta(seconds=self._settings.reservation_timeout_seconds)

        released: list[UUID] = []
        archived: list[FailedJobInfo] = []

        with get_tracer().start_as_current_span(SPAN_CLEANUP_WORKERS):
            async with self._session() as session:
                workers = WorkerRepository(session)
                jobs = JobRepository(session)
                failed_jobs = FailedJobRepository(session)

                removed = await workers.delete_stale(cutoff)
                orphans = await jobs.find_orphaned(
                    workers.live_worker_ids(cutoff),
                    worker_cutoff=cutoff,
                    reservation_cutoff=reservation_cutoff,
                )

                for job in orphans:
                    detail = f"Reserved by {job.reserved_by or 'unknown worker'} at {job.reserved_at}"
                    if not job.is_retryable:
                        removed_job = await jobs.remove_reserved(job.id)
                        if removed_job is not None:
                            entry = await failed_jobs.archive(removed_job, LOST_WORKER_ERROR, detail)
                            archived.append(FailedJobInfo.model_validate(entry))
                    elif await jobs.reschedule_job(job.id, available_at=now, error=LOST_WORKER_ERROR):
                        released.append(job.id)

        for entry in archived:
            await self._notify_failed(entry)

        if removed:
            self._metrics.record_workers_reaped(len(removed))
            logger.info(f"Removed {len(removed)} stale workers", extra={"workers": removed})
        if released or archived:
            self._metrics.record_jobs_recovered("released", len(released))
            self._metrics.record_jobs_recovered("archived", len(archived))
            logger.warning(
                f"Recovered {len(released) + len(archived)} orphaned jobs",
                extra={"released": len(released), "archived": len(archived)},
            )

        return ReapResult(
            workers_removed=removed,
            jobs_released=released,
            jobs_archived=[entry.job_id for entry in archived],
        )
