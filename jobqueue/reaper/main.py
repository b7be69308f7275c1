"""
Stale worker reaper.

Workers that crash never unregister. The reaper runs periodically to delete
worker records whose heartbeat has gone stale and to recover the jobs those
workers had reserved, so every job is eventually executed or archived.
"""

import asyncio
import logging
import signal

from jobqueue.config import get_settings
from jobqueue.db import close_db, get_engine, init_db
from jobqueue.exceptions import StorageError
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import setup_metrics
from jobqueue.observability.tracing import instrument_sqlalchemy
from jobqueue.queue import JobQueue
from jobqueue.types.queue import ReapResult

logger = logging.getLogger(__name__)


class Reaper:
    """
    Periodic stale-worker cleanup.

    Each pass:
    1. Deletes worker records with a heartbeat older than the worker timeout
    2. Releases reservations no live worker holds
    3. Archives orphaned jobs that have no attempts left
    """

    def __init__(
        self,
        queue: JobQueue | None = None,
        interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            queue: The queue orchestrator to clean up.
            interval_seconds: Seconds between reaper runs.
            timeout_seconds: Heartbeat staleness timeout; defaults to worker_timeout_seconds.
        """
        self._queue = queue or JobQueue()
        self.interval = interval_seconds or self._queue.settings.reaper_interval_seconds
        self.timeout = timeout_seconds
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Start the reaper loop. Returns promptly once stop() is called."""
        logger.info(f"Reaper starting with interval {self.interval}s")

        while not self._stopped.is_set():
            try:
                await self.run_once()
            except StorageError:
                logger.exception("Error in reaper loop")

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stopped.set()

    async def run_once(self) -> ReapResult:
        """
        Run one cleanup pass (for testing or cron-style execution).

        Returns:
            The removed workers and recovered jobs.
        """
        result = await self._queue.cleanup_stale_workers(self.timeout)

        if result.workers_removed:
            logger.info(
                f"Reaped {len(result.workers_removed)} stale workers",
                extra={
                    "released": len(result.jobs_released),
                    "archived": len(result.jobs_archived),
                },
            )
        return result


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_metrics(settings.metrics_port)
    await init_db()
    instrument_sqlalchemy(get_engine())

    queue = JobQueue(settings=settings)
    reaper = Reaper(queue)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, reaper.stop)

    try:
        await queue.verify_schema()
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
