"""
Repositories for the three queue collections.
Implements the data access patterns for jobs, the failure archive, and the
worker registry. Repositories never commit; the caller owns the transaction.
"""

import logging
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, case, delete, extract, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from jobqueue.constants import WorkerStatus
from jobqueue.db.models import FailedJobRecord, JobRecord, WorkerRecord, utcnow

logger = logging.getLogger(__name__)

jobs_table = JobRecord.__table__
failed_jobs_table = FailedJobRecord.__table__
workers_table = WorkerRecord.__table__


def _row_to_job(row: Any) -> JobRecord:
    """Build a detached JobRecord from a RETURNING row."""
    return JobRecord(**dict(row._mapping))


def _dialect_name(session: AsyncSession) -> str:
    return session.bind.dialect.name if session.bind is not None else ""


class JobRepository:
    """
    Repository for the jobs table.

    Implements atomic operations for:
    - Job insertion
    - Reservation with FOR UPDATE SKIP LOCKED and a conditional update
    - Completion, release and rescheduling guarded by the reservation
    - Progress updates
    - Orphaned reservation lookup
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        queue: str,
        job_type: str,
        payload: dict[str, Any],
        available_at: datetime,
        priority: int = 0,
        max_attempts: int = 3,
        timeout_seconds: int = 60,
    ) -> JobRecord:
        """
        Insert a new job with attempts=0 and no reservation.

        Args:
            queue: Queue name.
            job_type: Registered job type tag.
            payload: Serialized job payload.
            available_at: Earliest time the job may be reserved.
            priority: Higher is more urgent.
            max_attempts: Attempts allowed before archival.
            timeout_seconds: Informational execution timeout.

        Returns:
            The persisted JobRecord.
        """
        job = JobRecord(
            queue=queue,
            job_type=job_type,
            payload=payload,
            priority=priority,
            attempts=0,
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            progress=0,
            available_at=available_at,
            reserved_at=None,
            created_at=utcnow(),
        )
        self._session.add(job)
        await self._session.flush()
        return job

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The JobRecord or None if not found.
        """
        stmt = (
            select(JobRecord)
            .where(JobRecord.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def reserve_next(
        self,
        queue: str,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> JobRecord | None:
        """
        Atomically select and reserve the next eligible job.

        This is the critical path for job distribution. Selection and
        reservation happen in one UPDATE statement: the subquery picks the
        highest priority, oldest eligible row and locks it with
        FOR UPDATE SKIP LOCKED (Postgres), and the outer
        ``reserved_at IS NULL`` guard keeps the update conditional on
        backends that serialize writers instead (SQLite).

        Args:
            queue: Queue to reserve from.
            worker_id: Reserving worker, recorded in reserved_by.
            now: Reservation time.

        Returns:
            The reserved job with attempts already incremented, or None.
        """
        now = now or utcnow()
        candidate = jobs_table.alias("candidate")

        next_id = (
            select(candidate.c.id)
            .where(
                and_(
                    candidate.c.queue == queue,
                    candidate.c.reserved_at.is_(None),
                    candidate.c.completed_at.is_(None),
                    candidate.c.available_at <= now,
                )
            )
            .order_by(candidate.c.priority.desc(), candidate.c.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(jobs_table)
            .where(
                and_(
                    jobs_table.c.id == next_id,
                    jobs_table.c.reserved_at.is_(None),
                )
            )
            .values(
                reserved_at=now,
                reserved_by=worker_id,
                attempts=jobs_table.c.attempts + 1,
            )
            .returning(*jobs_table.c)
        )

        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None

        job = _row_to_job(row)
        logger.info(
            "Reserved job",
            extra={
                "job_id": str(job.id),
                "queue": queue,
                "worker_id": worker_id,
                "attempt": job.attempts,
            },
        )
        return job

    def _reserved_filter(self, job_id: UUID, worker_id: str | None) -> Any:
        filters = [
            jobs_table.c.id == job_id,
            jobs_table.c.reserved_at.is_not(None),
        ]
        if worker_id is not None:
            filters.append(jobs_table.c.reserved_by == worker_id)
        return and_(*filters)

    async def complete_job(
        self,
        job_id: UUID,
        worker_id: str | None = None,
        retain: bool = False,
    ) -> bool:
        """
        Mark a reserved job as completed.

        Args:
            job_id: The job UUID.
            worker_id: If given, must match the reservation owner.
            retain: Keep the row with completed_at set instead of deleting it.

        Returns:
            True if the job was completed.
        """
        if retain:
            stmt = (
                update(jobs_table)
                .where(self._reserved_filter(job_id, worker_id))
                .values(
                    completed_at=utcnow(),
                    started_at=jobs_table.c.reserved_at,
                    reserved_at=None,
                    reserved_by=None,
                )
            )
        else:
            stmt = delete(jobs_table).where(self._reserved_filter(job_id, worker_id))

        result = await self._session.execute(stmt)
        completed = result.rowcount > 0

        if completed:
            logger.info("Job completed", extra={"job_id": str(job_id)})
        else:
            logger.warning(
                "Job not reserved by caller, completion ignored",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
        return completed

    async def release_job(
        self,
        job_id: UUID,
        available_at: datetime,
        worker_id: str | None = None,
    ) -> bool:
        """
        Return a reserved job to the pool without counting a failure.

        The attempt consumed by the reservation is given back.

        Args:
            job_id: The job UUID.
            available_at: When the job becomes eligible again.
            worker_id: If given, must match the reservation owner.

        Returns:
            True if the job was released.
        """
        stmt = (
            update(jobs_table)
            .where(self._reserved_filter(job_id, worker_id))
            .values(
                reserved_at=None,
                reserved_by=None,
                available_at=available_at,
                attempts=case(
                    (jobs_table.c.attempts > 0, jobs_table.c.attempts - 1),
                    else_=0,
                ),
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def reschedule_job(
        self,
        job_id: UUID,
        available_at: datetime,
        error: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """
        Clear the reservation after a retryable failure.

        Attempts are left as-is; they were incremented at reservation time.

        Args:
            job_id: The job UUID.
            available_at: Retry time.
            error: Error message to keep on the row.
            worker_id: If given, must match the reservation owner.

        Returns:
            True if the job was rescheduled.
        """
        stmt = (
            update(jobs_table)
            .where(self._reserved_filter(job_id, worker_id))
            .values(
                reserved_at=None,
                reserved_by=None,
                available_at=available_at,
                last_error=error,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def remove_reserved(
        self,
        job_id: UUID,
        worker_id: str | None = None,
    ) -> JobRecord | None:
        """
        Delete a reserved job and return the deleted row.

        Used when moving a job to the failure archive.
        """
        stmt = (
            delete(jobs_table)
            .where(self._reserved_filter(job_id, worker_id))
            .returning(*jobs_table.c)
        )
        result = await self._session.execute(stmt)
        row = result.first()
        return _row_to_job(row) if row is not None else None

    async def update_progress(
        self,
        job_id: UUID,
        progress: int,
        progress_data: dict[str, Any] | None,
    ) -> bool:
        """
        Overwrite progress and progress_data on a job.

        Returns:
            True if the job exists.
        """
        stmt = (
            update(jobs_table)
            .where(jobs_table.c.id == job_id)
            .values(progress=progress, progress_data=progress_data)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def get_progress(self, job_id: UUID) -> tuple[int, dict[str, Any] | None] | None:
        """
        Read the progress columns of a job.

        Returns:
            Tuple of (progress, progress_data), or None if the job is gone.
        """
        stmt = select(jobs_table.c.progress, jobs_table.c.progress_data).where(
            jobs_table.c.id == job_id
        )
        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row.progress, row.progress_data

    async def find_orphaned(
        self,
        live_workers: Select,
        worker_cutoff: datetime,
        reservation_cutoff: datetime,
    ) -> Sequence[JobRecord]:
        """
        Lock and return reservations that no live worker holds.

        A reservation is orphaned when its owner is not in ``live_workers``
        and it is older than ``worker_cutoff``, or when it has no owner and
        is older than ``reservation_cutoff``.

        Args:
            live_workers: Select of worker ids with a fresh heartbeat.
            worker_cutoff: Grace period for reservations with an owner.
            reservation_cutoff: TTL for reservations without an owner.

        Returns:
            The orphaned jobs, locked for update.
        """
        stmt = (
            select(JobRecord)
            .where(
                and_(
                    JobRecord.reserved_at.is_not(None),
                    JobRecord.completed_at.is_(None),
                    or_(
                        and_(
                            JobRecord.reserved_by.is_not(None),
                            JobRecord.reserved_by.not_in(live_workers),
                            JobRecord.reserved_at < worker_cutoff,
                        ),
                        and_(
                            JobRecord.reserved_by.is_(None),
                            JobRecord.reserved_at < reservation_cutoff,
                        ),
                    ),
                )
            )
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_jobs(self, queue: str, now: datetime | None = None) -> dict[str, int]:
        """
        Count live (not completed) jobs in a queue by state.

        Returns:
            Dictionary with total, pending, delayed and reserved counts.
        """
        now = now or utcnow()
        unreserved = jobs_table.c.reserved_at.is_(None)

        stmt = select(
            func.count().label("total"),
            func.coalesce(
                func.sum(case((and_(unreserved, jobs_table.c.available_at <= now), 1), else_=0)), 0
            ).label("pending"),
            func.coalesce(
                func.sum(case((and_(unreserved, jobs_table.c.available_at > now), 1), else_=0)), 0
            ).label("delayed"),
            func.coalesce(
                func.sum(case((jobs_table.c.reserved_at.is_not(None), 1), else_=0)), 0
            ).label("reserved"),
        ).where(
            and_(
                jobs_table.c.queue == queue,
                jobs_table.c.completed_at.is_(None),
            )
        )
        result = await self._session.execute(stmt)
        row = result.one()
        return {
            "total": int(row.total or 0),
            "pending": int(row.pending or 0),
            "delayed": int(row.delayed or 0),
            "reserved": int(row.reserved or 0),
        }

    async def get_queue_size(self, queue: str) -> int:
        """
        Get the number of unreserved jobs, delayed ones included.

        Args:
            queue: Queue name.

        Returns:
            Number of waiting jobs.
        """
        stmt = select(func.count()).select_from(jobs_table).where(
            and_(
                jobs_table.c.queue == queue,
                jobs_table.c.reserved_at.is_(None),
                jobs_table.c.completed_at.is_(None),
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def clear_queue(self, queue: str) -> int:
        """Delete every waiting job in a queue. In-flight and retained completed jobs are kept."""
        stmt = delete(jobs_table).where(
            and_(
                jobs_table.c.queue == queue,
                jobs_table.c.reserved_at.is_(None),
                jobs_table.c.completed_at.is_(None),
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def list_queues(self) -> list[str]:
        """List queue names with at least one live job."""
        stmt = (
            select(jobs_table.c.queue)
            .where(jobs_table.c.completed_at.is_(None))
            .distinct()
            .order_by(jobs_table.c.queue)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    def _process_seconds(self) -> Any:
        # Seconds between reservation and completion of a retained job
        if _dialect_name(self._session) == "sqlite":
            return (
                func.julianday(jobs_table.c.completed_at) - func.julianday(jobs_table.c.started_at)
            ) * 86400.0
        return extract("epoch", jobs_table.c.completed_at - jobs_table.c.started_at)

    async def completion_stats(self, queue: str) -> tuple[int, float]:
        """
        Count retained completed jobs and their average processing time.

        Only rows kept by retain_completed_jobs are seen here.

        Returns:
            Tuple of (completed count, average seconds from reservation to completion).
        """
        stmt = select(func.count(), func.avg(self._process_seconds())).where(
            and_(
                jobs_table.c.queue == queue,
                jobs_table.c.completed_at.is_not(None),
            )
        )
        result = await self._session.execute(stmt)
        count, average = result.one()
        return int(count or 0), float(average or 0.0)

    async def purge_completed(self, cutoff: datetime) -> int:
        """Delete retained completed jobs older than the cutoff."""
        stmt = delete(jobs_table).where(
            and_(
                jobs_table.c.completed_at.is_not(None),
                jobs_table.c.completed_at < cutoff,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount


class FailedJobRepository:
    """Repository for the failure archive."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def archive(
        self,
        job: JobRecord,
        error_message: str,
        error_detail: str | None = None,
    ) -> FailedJobRecord:
        """
        Insert an archive entry for a job that exhausted its attempts.

        Args:
            job: The job row, already removed from the jobs table.
            error_message: Final error message, kept verbatim.
            error_detail: Trace or context, kept verbatim.

        Returns:
            The archive entry.
        """
        failed = FailedJobRecord(
            job_id=job.id,
            queue=job.queue,
            job_type=job.job_type,
            payload=job.payload,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            error_message=error_message,
            error_detail=error_detail,
            failed_at=utcnow(),
        )
        self._session.add(failed)
        await self._session.flush()

        logger.warning(
            f"Job archived after {job.attempts} attempts",
            extra={"job_id": str(job.id), "queue": job.queue, "error": error_message},
        )
        return failed

    async def get_failed(self, failed_id: UUID) -> FailedJobRecord | None:
        """Get an archive entry by ID."""
        stmt = select(FailedJobRecord).where(FailedJobRecord.id == failed_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_failed(
        self,
        queue: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[FailedJobRecord]:
        """List archive entries for a queue, newest first."""
        stmt = (
            select(FailedJobRecord)
            .where(FailedJobRecord.queue == queue)
            .order_by(FailedJobRecord.failed_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def delete_failed(self, failed_id: UUID) -> bool:
        """Delete one archive entry."""
        stmt = delete(failed_jobs_table).where(failed_jobs_table.c.id == failed_id)
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def flush_failed(self, queue: str) -> int:
        """Delete every archive entry for a queue."""
        stmt = delete(failed_jobs_table).where(failed_jobs_table.c.queue == queue)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def count_failed(self, queue: str) -> int:
        """Count archive entries for a queue."""
        stmt = select(func.count()).select_from(failed_jobs_table).where(
            failed_jobs_table.c.queue == queue
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0


class WorkerRepository:
    """Repository for the worker registry."""

    def __init__(self, session: AsyncSession):
        self._session = session

    def _insert(self) -> Any:
        if _dialect_name(self._session) == "sqlite":
            return sqlite_insert(workers_table)
        return pg_insert(workers_table)

    async def register(self, worker_id: str, queue: str, reset_status: bool = True) -> None:
        """
        Upsert a worker record with status=running and a fresh heartbeat.

        Counters and started_at are kept when the record already exists, and
        so is its status unless reset_status is set.
        """
        now = utcnow()
        updates: dict[str, Any] = {"queue": queue, "last_heartbeat": now}
        if reset_status:
            updates["status"] = WorkerStatus.RUNNING.value

        stmt = self._insert().values(
            worker_id=worker_id,
            queue=queue,
            status=WorkerStatus.RUNNING.value,
            processed_count=0,
            failed_count=0,
            last_heartbeat=now,
            started_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[workers_table.c.worker_id],
            set_=updates,
        )
        await self._session.execute(stmt)
        logger.info("Registered worker", extra={"worker_id": worker_id, "queue": queue})

    async def heartbeat(self, worker_id: str) -> bool:
        """Refresh last_heartbeat. Returns False if the record is gone."""
        stmt = (
            update(workers_table)
            .where(workers_table.c.worker_id == worker_id)
            .values(last_heartbeat=utcnow())
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def record_outcome(self, worker_id: str, succeeded: bool) -> bool:
        """Increment processed_count or failed_count and refresh the heartbeat."""
        column = workers_table.c.processed_count if succeeded else workers_table.c.failed_count
        stmt = (
            update(workers_table)
            .where(workers_table.c.worker_id == worker_id)
            .values({column: column + 1, workers_table.c.last_heartbeat: utcnow()})
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def get_worker(self, worker_id: str) -> WorkerRecord | None:
        """Get a worker record by ID."""
        stmt = (
            select(WorkerRecord)
            .where(WorkerRecord.worker_id == worker_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_status(self, worker_id: str) -> WorkerStatus | None:
        """Read the control status of a worker."""
        stmt = select(workers_table.c.status).where(workers_table.c.worker_id == worker_id)
        result = await self._session.execute(stmt)
        status = result.scalar_one_or_none()
        return WorkerStatus(status) if status is not None else None

    async def set_status(self, worker_id: str, status: WorkerStatus) -> bool:
        """Set the control status of a worker."""
        stmt = (
            update(workers_table)
            .where(workers_table.c.worker_id == worker_id)
            .values(status=status.value)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def unregister(self, worker_id: str) -> bool:
        """Delete a worker record."""
        stmt = delete(workers_table).where(workers_table.c.worker_id == worker_id)
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    def live_worker_ids(self, cutoff: datetime) -> Select:
        """Select of worker ids whose heartbeat is newer than the cutoff."""
        return select(workers_table.c.worker_id).where(workers_table.c.last_heartbeat >= cutoff)

    async def list_active(self, queue: str, cutoff: datetime) -> Sequence[WorkerRecord]:
        """List workers on a queue with a heartbeat newer than the cutoff."""
        stmt = (
            select(WorkerRecord)
            .where(
                and_(
                    WorkerRecord.queue == queue,
                    WorkerRecord.last_heartbeat >= cutoff,
                )
            )
            .order_by(WorkerRecord.started_at)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_running(self, queue: str, cutoff: datetime) -> int:
        """Count running workers on a queue with a fresh heartbeat."""
        stmt = select(func.count()).select_from(workers_table).where(
            and_(
                workers_table.c.queue == queue,
                workers_table.c.status == WorkerStatus.RUNNING.value,
                workers_table.c.last_heartbeat >= cutoff,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def delete_stale(self, cutoff: datetime) -> list[str]:
        """
        Delete worker records whose heartbeat is older than the cutoff.

        Returns:
            The ids of the deleted workers.
        """
        stmt = (
            delete(workers_table)
            .where(workers_table.c.last_heartbeat < cutoff)
            .returning(workers_table.c.worker_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
