"""
Integration tests for stale worker cleanup and orphaned job recovery.
"""

import asyncio
from datetime import timedelta
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.constants import LOST_WORKER_ERROR
from jobqueue.db.models import JobRecord, WorkerRecord, utcnow
from jobqueue.queue import JobQueue
from jobqueue.reaper import Reaper
from jobqueue.types.job import JobContext
from jobqueue.types.queue import FailedJobInfo
from jobqueue.worker.handlers import JobRegistry

jobs = JobRecord.__table__
workers = WorkerRecord.__table__


async def age_worker(
    session_factory: async_sessionmaker[AsyncSession],
    worker_id: str,
    seconds: float = 600,
) -> None:
    """Move a worker's heartbeat into the past."""
    async with session_factory() as session:
        await session.execute(
            update(workers)
            .where(workers.c.worker_id == worker_id)
            .values(last_heartbeat=utcnow() - timedelta(seconds=seconds))
        )
        await session.commit()


async def age_reservation(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: UUID,
    seconds: float = 600,
) -> None:
    """Move a job's reservation time into the past."""
    async with session_factory() as session:
        await session.execute(
            update(jobs)
            .where(jobs.c.id == job_id)
            .values(reserved_at=utcnow() - timedelta(seconds=seconds))
        )
        await session.commit()


class TestCleanupStaleWorkers:
    """Tests for JobQueue.cleanup_stale_workers."""

    async def test_removes_stale_workers_only(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test workers past the heartbeat timeout are deleted."""
        await job_queue.register_worker("fresh", "default")
        await job_queue.register_worker("stale", "default")
        await age_worker(session_factory, "stale")

        result = await job_queue.cleanup_stale_workers()

        assert result.workers_removed == ["stale"]
        assert result.jobs_released == []
        assert await job_queue.get_worker("stale") is None
        assert await job_queue.get_worker("fresh") is not None

    async def test_custom_timeout(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test the timeout argument overrides the configured one."""
        await job_queue.register_worker("worker-1", "default")
        await age_worker(session_factory, "worker-1", seconds=60)

        assert (await job_queue.cleanup_stale_workers()).workers_removed == []
        assert (await job_queue.cleanup_stale_workers(timeout_seconds=30)).workers_removed == [
            "worker-1"
        ]

    async def test_orphan_released(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test a dead worker's reservation is returned to the queue."""
        await job_queue.register_worker("crashed", "default")
        job_id = await job_queue.push("default", "echo")
        await job_queue.pop("default", worker_id="crashed")
        await age_worker(session_factory, "crashed")
        await age_reservation(session_factory, job_id)

        result = await job_queue.cleanup_stale_workers()

        assert result.workers_removed == ["crashed"]
        assert result.jobs_released == [job_id]
        assert result.jobs_archived == []

        stored = await job_queue.get_job(job_id)
        assert stored.reserved_at is None
        assert stored.last_error == LOST_WORKER_ERROR

        again = await job_queue.pop("default", worker_id="worker-2")
        assert again.id == job_id
        assert again.attempts == 2

    async def test_orphan_archived_when_attempts_used(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test an orphan with no attempts left goes to the archive."""
        await job_queue.register_worker("crashed", "default")
        job_id = await job_queue.push("default", "echo", max_attempts=1)
        await job_queue.pop("default", worker_id="crashed")
        await age_worker(session_factory, "crashed")
        await age_reservation(session_factory, job_id)

        result = await job_queue.cleanup_stale_workers()

        assert result.jobs_archived == [job_id]
        assert await job_queue.get_job(job_id) is None

        failed = await job_queue.get_failed_jobs("default")
        assert failed[0].job_id == job_id
        assert failed[0].error_message == LOST_WORKER_ERROR
        assert "crashed" in failed[0].error_detail

    async def test_orphan_archive_runs_failure_hook(
        self,
        job_queue: JobQueue,
        test_registry: JobRegistry,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test archiving an orphan runs the job type's on_failed hook."""
        archived: list[FailedJobInfo] = []

        async def on_failed(failed: FailedJobInfo) -> None:
            archived.append(failed)

        @test_registry.register("tracked", max_attempts=1, on_failed=on_failed)
        async def tracked(context: JobContext) -> None:
            pass

        await job_queue.register_worker("crashed", "default")
        job_id = await job_queue.push("default", "tracked")
        await job_queue.pop("default", worker_id="crashed")
        await age_worker(session_factory, "crashed")
        await age_reservation(session_factory, job_id)

        await job_queue.cleanup_stale_workers()

        assert [failed.job_id for failed in archived] == [job_id]
        assert archived[0].error_message == LOST_WORKER_ERROR

    async def test_live_worker_reservation_untouched(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test a long job held by a live worker is left alone."""
        await job_queue.register_worker("busy", "default")
        job_id = await job_queue.push("default", "echo")
        await job_queue.pop("default", worker_id="busy")
        await age_reservation(session_factory, job_id, seconds=7200)

        result = await job_queue.cleanup_stale_workers()

        assert result.jobs_released == []
        assert (await job_queue.get_job(job_id)).reserved_by == "busy"

    async def test_recent_orphan_waits_for_grace_period(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test a fresh reservation by an unknown worker is not recovered yet."""
        job_id = await job_queue.push("default", "echo")
        await job_queue.pop("default", worker_id="not-registered")

        result = await job_queue.cleanup_stale_workers()

        assert result.jobs_released == []
        assert (await job_queue.get_job(job_id)).reserved_at is not None

    async def test_ownerless_reservation_expires(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test a reservation without an owner is recovered after its TTL."""
        job_id = await job_queue.push("default", "echo")
        await job_queue.pop("default")

        await age_reservation(session_factory, job_id, seconds=600)
        assert (await job_queue.cleanup_stale_workers()).jobs_released == []

        await age_reservation(session_factory, job_id, seconds=7200)
        assert (await job_queue.cleanup_stale_workers()).jobs_released == [job_id]


class TestReaper:
    """Tests for the Reaper loop."""

    async def test_run_once(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test a single pass cleans up."""
        await job_queue.register_worker("stale", "default")
        await age_worker(session_factory, "stale")

        result = await Reaper(queue=job_queue).run_once()

        assert result.workers_removed == ["stale"]

    async def test_start_and_stop(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        """Test the loop runs until stopped."""
        await job_queue.register_worker("stale", "default")
        await age_worker(session_factory, "stale")

        reaper = Reaper(queue=job_queue, interval_seconds=0.05)
        task = asyncio.create_task(reaper.start())

        async with asyncio.timeout(5):
            while await job_queue.get_worker("stale") is not None:
                await asyncio.sleep(0.02)

        reaper.stop()
        await asyncio.wait_for(task, timeout=5)

        assert task.done()

    async def test_stop_does_not_wait_for_interval(self, job_queue: JobQueue):
        """Test stop() ends the loop without sleeping out the interval."""
        reaper = Reaper(queue=job_queue, interval_seconds=60)
        task = asyncio.create_task(reaper.start())
        await asyncio.sleep(0.05)

        reaper.stop()

        await asyncio.wait_for(task, timeout=1)

    async def test_stop_before_start(self, job_queue: JobQueue):
        """Test a reaper stopped before starting returns at once."""
        reaper = Reaper(queue=job_queue, interval_seconds=60)
        reaper.stop()

        await asyncio.wait_for(reaper.start(), timeout=1)
