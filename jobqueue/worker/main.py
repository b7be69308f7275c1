"""
Worker process for executing jobs.

The worker reserves jobs one at a time, executes them, and completes or
fails them according to the job lifecycle. Control is cooperative: pause
and stop commands written to the worker registry are honored between jobs,
never in the middle of one.
"""

import asyncio
import logging
import os
import signal
import time
from uuid import uuid4

from jobqueue.config import Settings, get_settings
from jobqueue.constants import SPAN_EXECUTE_JOB, ExitReason, WorkerStatus
from jobqueue.db import close_db, get_engine, init_db, verify_schema
from jobqueue.db.models import JobRecord
from jobqueue.observability.logging import bind_context, setup_logging, unbind_context
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import get_tracer, instrument_sqlalchemy
from jobqueue.queue import JobQueue
from jobqueue.types.job import JobContext, ProgressReporter
from jobqueue.types.queue import WorkSummary
from jobqueue.worker.handlers import execute_job

logger = logging.getLogger(__name__)

# Registry statuses that end the loop
_HALT_STATUSES = {
    WorkerStatus.PAUSED: ExitReason.PAUSED,
    WorkerStatus.STOPPED: ExitReason.STOPPED,
}


def default_worker_id() -> str:
    """Hostname and PID plus a random suffix, unique per worker instance."""
    return f"{os.uname().nodename}-{os.getpid()}-{uuid4().hex[:8]}"


class Worker:
    """
    Job worker that reserves and executes jobs from one queue.

    Features:
    - Atomic reservation through JobQueue.pop
    - Background heartbeat so long jobs keep the worker record fresh
    - Pause/stop commands polled from the registry after every job
    - Graceful shutdown on SIGTERM/SIGINT
    - Registry record removed on every exit path
    """

    def __init__(
        self,
        queue: JobQueue | None = None,
        worker_id: str | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: The queue orchestrator to work against.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            settings: Worker settings; defaults to the queue's settings.
        """
        self._queue = queue or JobQueue(settings=settings)
        self._settings = settings or self._queue.settings

        self.worker_id = worker_id or default_worker_id()
        self.heartbeat_interval = self._settings.worker_heartbeat_interval_seconds
        self.poll_interval = self._settings.worker_poll_interval_seconds

        self._shutdown_requested = False
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    @property
    def queue(self) -> JobQueue:
        return self._queue

    def request_shutdown(self) -> None:
        """Ask the loop to exit after the current job."""
        logger.info("Worker shutdown requested", extra={"worker_id": self.worker_id})
        self._shutdown_requested = True

    async def work(self, queue_name: str | None = None, max_jobs: int | None = None) -> WorkSummary:
        """
        Process jobs until the queue is empty, max_jobs have run, or the
        worker is paused, stopped or shut down.

        Job failures are handled inside the loop; storage errors propagate.
        The worker record is deleted however the loop ends.

        Args:
            queue_name: Queue to consume.
            max_jobs: Upper bound on jobs processed by this call.

        Returns:
            Counts and the reason the loop ended.
        """
        queue_name = queue_name or self._settings.default_queue
        max_jobs = self._settings.worker_max_jobs if max_jobs is None else max_jobs

        await self._start(queue_name)
        try:
            succeeded, failed, exit_reason = await self._process_batch(queue_name, max_jobs)
        finally:
            await self._finish()

        return self._summary(queue_name, succeeded, failed, exit_reason)

    async def run_forever(self, queue_name: str | None = None) -> WorkSummary:
        """
        Daemon mode: keep processing, sleeping while the queue is empty.

        Exits when the worker is paused or stopped through the registry or
        when shutdown is requested.
        """
        queue_name = queue_name or self._settings.default_queue
        succeeded = failed = 0
        exit_reason = ExitReason.SHUTDOWN

        await self._start(queue_name)
        try:
            while not self._shutdown_requested:
                batch_ok, batch_failed, exit_reason = await self._process_batch(
                    queue_name, self._settings.worker_max_jobs
                )
                succeeded += batch_ok
                failed += batch_failed

                if exit_reason in (ExitReason.PAUSED, ExitReason.STOPPED, ExitReason.SHUTDOWN):
                    break

                if exit_reason == ExitReason.EXHAUSTED:
                    halt = await self._check_halt()
                    if halt is not None:
                        exit_reason = halt
                        break
                    await asyncio.sleep(self.poll_interval)
            else:
                exit_reason = ExitReason.SHUTDOWN
        finally:
            await self._finish()

        return self._summary(queue_name, succeeded, failed, exit_reason)

    async def _start(self, queue_name: str) -> None:
        await self._queue.register_worker(self.worker_id, queue_name)
        bind_context(worker_id=self.worker_id, queue=queue_name)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(queue_name))

        logger.info("Worker started", extra={"worker_id": self.worker_id, "queue": queue_name})

    async def _finish(self) -> None:
        try:
            await self._stop_heartbeat()
        finally:
            try:
                await self._queue.unregister_worker(self.worker_id)
            finally:
                unbind_context("worker_id", "queue")

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Heartbeat task failed", extra={"worker_id": self.worker_id})

    def _summary(
        self,
        queue_name: str,
        succeeded: int,
        failed: int,
        exit_reason: ExitReason,
    ) -> WorkSummary:
        logger.info(
            f"Processed {succeeded + failed} jobs from queue: {queue_name}",
            extra={"exit_reason": exit_reason.value, "failed": failed},
        )
        return WorkSummary(
            worker_id=self.worker_id,
            queue=queue_name,
            processed=succeeded + failed,
            succeeded=succeeded,
            failed=failed,
            exit_reason=exit_reason,
        )

    async def _check_halt(self) -> ExitReason | None:
        status = await self._queue.worker_status(self.worker_id)
        halt = _HALT_STATUSES.get(status) if status is not None else None
        if halt is not None:
            logger.info(f"Worker {halt.value} by command", extra={"worker_id": self.worker_id})
        return halt

    async def _process_batch(self, queue_name: str, max_jobs: int) -> tuple[int, int, ExitReason]:
        """
        Run the pop/execute loop.

        Returns:
            Tuple of (succeeded, failed, exit_reason).
        """
        succeeded = failed = 0

        while succeeded + failed < max_jobs:
            if self._shutdown_requested:
                return succeeded, failed, ExitReason.SHUTDOWN

            job = await self._queue.pop(queue_name, worker_id=self.worker_id)
            if job is None:
                return succeeded, failed, ExitReason.EXHAUSTED

            if await self._execute_job(job):
                succeeded += 1
            else:
                failed += 1

            halt = await self._check_halt()
            if halt is not None:
                return succeeded, failed, halt

        return succeeded, failed, ExitReason.MAX_JOBS

    async def _execute_job(self, job: JobRecord) -> bool:
        """
        Execute a single reserved job and record its outcome.

        Handler errors arrive as a failed JobResult; only storage errors
        raise out of here.

        Args:
            job: The reserved job.

        Returns:
            True if the job succeeded.
        """
        start_time = time.monotonic()
        registered = self._queue.registry.get(job.job_type)

        context = JobContext(
            job_id=job.id,
            queue=job.queue,
            job_type=job.job_type,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            payload=job.payload,
            timeout_seconds=job.timeout_seconds,
            progress=(
                ProgressReporter(self._queue, job.id)
                if registered is not None and registered.progress
                else None
            ),
        )

        logger.info(
            f"Processing job: {job.job_type}",
            extra={"job_id": str(job.id), "attempt": context.attempt},
        )

        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("job_type", job.job_type)
            span.set_attribute("attempt", context.attempt)

            result = await execute_job(context, self._queue.registry)
            span.set_attribute("success", result.success)

        duration = time.monotonic() - start_time

        if result.success:
            completed = await self._queue.complete(job.id, worker_id=self.worker_id)
            status = "succeeded" if completed else "lost"
            logger.info(
                f"Job completed successfully: {job.job_type}",
                extra={"job_id": str(job.id), "duration": f"{duration:.2f}s"},
            )
        else:
            outcome = await self._queue.handle_failure(
                job,
                result.error or "Unknown error",
                error_detail=result.error_detail,
                retryable=result.retryable,
            )
            status = outcome.value
            logger.error(
                f"Job failed: {job.job_type}",
                extra={"job_id": str(job.id), "error": result.error, "outcome": status},
            )

        await self._queue.record_worker_outcome(self.worker_id, succeeded=result.success)
        self._metrics.record_job_completed(
            queue=job.queue,
            status=status,
            duration_seconds=duration,
        )
        return result.success

    async def _heartbeat_loop(self, queue_name: str) -> None:
        """
        Periodically refresh the worker record.

        Keeps a worker running a long job from being reaped as stale. If the
        record was reaped anyway, it is recreated as running: a pause or stop
        written to the deleted record is gone with it and must be sent again.
        A status already on the record is never overwritten from here.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                if not await self._queue.heartbeat(self.worker_id):
                    logger.warning(
                        "Worker record missing, re-registering",
                        extra={"worker_id": self.worker_id},
                    )
                    await self._queue.register_worker(
                        self.worker_id, queue_name, reset_status=False
                    )
            except Exception:
                logger.exception("Error in heartbeat loop")


async def run_async(queue_name: str | None = None) -> WorkSummary:
    """Run a worker daemon asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_metrics(settings.metrics_port)
    await init_db()
    instrument_sqlalchemy(get_engine())

    worker = Worker(settings=settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.request_shutdown)

    try:
        await verify_schema()
        return await worker.run_forever(queue_name)
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
