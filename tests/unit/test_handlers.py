"""
Unit tests for the job type registry and handlers.
"""

from typing import Any
from uuid import UUID, uuid4

import pytest

from jobqueue.exceptions import UnknownJobTypeError
from jobqueue.types.job import JobContext, JobResult, ProgressReporter
from jobqueue.types.queue import FailedJobInfo
from jobqueue.worker.handlers import (
    JobRegistry,
    execute_job,
    get_handler,
    handle_echo,
    handle_failing_job,
    list_handlers,
)


def make_context(job_type: str = "echo", data: dict[str, Any] | None = None, **kwargs) -> JobContext:
    return JobContext(
        job_id=uuid4(),
        queue="default",
        job_type=job_type,
        attempt=kwargs.pop("attempt", 1),
        max_attempts=kwargs.pop("max_attempts", 3),
        payload={"job_type": job_type, "data": data or {}},
        **kwargs,
    )


class RecordingSink:
    """Collects progress updates instead of writing them."""

    def __init__(self) -> None:
        self.updates: list[tuple[UUID, int, dict[str, Any] | None]] = []

    async def update_progress(
        self,
        job_id: UUID,
        progress: int,
        data: dict[str, Any] | None = None,
    ) -> bool:
        self.updates.append((job_id, progress, data))
        return True


class TestJobHandlers:
    """Tests for the built-in job handlers."""

    def test_list_handlers(self):
        """Test listing registered handlers."""
        handlers = list_handlers()

        assert sorted(handlers) == ["echo", "failing_job", "long_running"]

    def test_get_handler_exists(self):
        """Test getting an existing handler."""
        assert get_handler("echo") == handle_echo

    def test_get_handler_not_exists(self):
        """Test getting a non-existent handler."""
        assert get_handler("nonexistent") is None

    async def test_echo_handler(self):
        """Test the echo handler."""
        context = make_context(data={"message": "test"})

        result = await handle_echo(context)

        assert result.success is True
        assert result.output == {"echo": {"message": "test"}}

    async def test_failing_handler(self):
        """Test the failing job handler."""
        result = await handle_failing_job(make_context("failing_job", attempt=2))

        assert result.success is False
        assert result.retryable is True
        assert result.error == "Intentional failure on attempt 2"

    async def test_long_running_reports_progress(self):
        """Test the long running handler reports progress through its context."""
        sink = RecordingSink()
        job_id = uuid4()
        context = JobContext(
            job_id=job_id,
            queue="default",
            job_type="long_running",
            attempt=1,
            max_attempts=3,
            payload={"data": {"duration_seconds": 0.5, "checkpoint_interval": 0.25}},
            progress=ProgressReporter(sink, job_id),
        )

        result = await execute_job(context)

        assert result.success is True
        assert [percent for _, percent, _ in sink.updates] == [50, 100]
        assert all(update[0] == job_id for update in sink.updates)


class TestExecuteJob:
    """Tests for execute_job dispatch and failure capture."""

    @pytest.fixture
    def job_registry(self) -> JobRegistry:
        job_registry = JobRegistry()

        @job_registry.register("explode")
        async def explode(context: JobContext) -> None:
            raise ValueError(f"bad value {context.data['value']}")

        @job_registry.register("returns_false")
        async def returns_false(context: JobContext) -> bool:
            return False

        @job_registry.register("returns_dict")
        async def returns_dict(context: JobContext) -> dict:
            return {"rows": 3}

        @job_registry.register("returns_none")
        async def returns_none(context: JobContext) -> None:
            return None

        return job_registry

    async def test_unknown_type_is_not_retryable(self, job_registry: JobRegistry):
        """Test a job whose type is gone fails without retry."""
        result = await execute_job(make_context("nonexistent_handler"), job_registry)

        assert result.success is False
        assert result.retryable is False
        assert "No handler registered" in result.error

    async def test_exception_becomes_failure(self, job_registry: JobRegistry):
        """Test a raised exception is captured with its trace."""
        result = await execute_job(make_context("explode", {"value": 7}), job_registry)

        assert result.success is False
        assert result.retryable is True
        assert result.error == "ValueError: bad value 7"
        assert "Traceback" in result.error_detail
        assert "bad value 7" in result.error_detail

    async def test_false_is_failure(self, job_registry: JobRegistry):
        """Test returning False fails the job."""
        result = await execute_job(make_context("returns_false"), job_registry)

        assert result.success is False

    async def test_dict_is_output(self, job_registry: JobRegistry):
        """Test returning a dict succeeds with that output."""
        result = await execute_job(make_context("returns_dict"), job_registry)

        assert result.success is True
        assert result.output == {"rows": 3}

    async def test_none_is_success(self, job_registry: JobRegistry):
        """Test returning nothing succeeds."""
        result = await execute_job(make_context("returns_none"), job_registry)

        assert result == JobResult.ok()


class TestJobRegistry:
    """Tests for JobRegistry."""

    def test_register_keeps_options(self):
        """Test per-type options are stored with the handler."""
        job_registry = JobRegistry()

        @job_registry.register("import", max_attempts=5, retry_delay_seconds=30, progress=True)
        async def handle_import(context: JobContext) -> None:
            pass

        registered = job_registry.resolve("import")
        assert registered.handler is handle_import
        assert registered.max_attempts == 5
        assert registered.retry_delay_seconds == 30
        assert registered.timeout_seconds is None
        assert registered.progress is True
        assert registered.on_failed is None
        assert "import" in job_registry
        assert job_registry.names() == ["import"]

    def test_register_failure_hook(self):
        """Test an on_failed hook is kept with the job type."""
        job_registry = JobRegistry()

        async def on_failed(failed: FailedJobInfo) -> None:
            pass

        @job_registry.register("charge", on_failed=on_failed)
        async def handle_charge(context: JobContext) -> None:
            pass

        assert job_registry.resolve("charge").on_failed is on_failed

    def test_resolve_unknown_raises(self):
        """Test resolving an unregistered tag raises."""
        with pytest.raises(UnknownJobTypeError) as exc_info:
            JobRegistry().resolve("missing")

        assert exc_info.value.job_type == "missing"


class TestJobContext:
    """Tests for JobContext."""

    def test_is_last_attempt(self):
        """Test is_last_attempt property."""
        assert make_context(attempt=3, max_attempts=3).is_last_attempt is True
        assert make_context(attempt=2, max_attempts=3).is_last_attempt is False

    def test_remaining_attempts(self):
        """Test remaining_attempts property."""
        assert make_context(attempt=1, max_attempts=3).remaining_attempts == 2
        assert make_context(attempt=4, max_attempts=3).remaining_attempts == 0

    def test_data_defaults_to_empty(self):
        """Test data is empty when the payload has none."""
        context = JobContext(
            job_id=uuid4(),
            queue="default",
            job_type="echo",
            attempt=1,
            max_attempts=1,
            payload={},
        )

        assert context.data == {}
        assert context.progress is None
