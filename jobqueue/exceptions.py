"""
Exception hierarchy for the job queue.

Storage errors propagate to callers. Usage errors are raised immediately at
push/pop/control time. Job execution failures are never raised across the
worker boundary; they travel as JobResult values.
"""


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class StorageError(JobQueueError):
    """The durable backend is unreachable or a statement failed."""


class SchemaNotProvisionedError(StorageError):
    """One or more of the queue tables do not exist."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            f"Queue tables not provisioned: {', '.join(missing)}. "
            "Run the migrations or provision_schema() first."
        )


class UnknownJobTypeError(JobQueueError):
    """A job type was referenced that is not in the registry."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


class InvalidPayloadError(JobQueueError):
    """A job payload could not be validated or serialized."""


class InvalidWorkerActionError(JobQueueError):
    """control_worker received an action other than pause/resume/stop."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Invalid worker action: {action}")


class FailedJobNotFoundError(JobQueueError):
    """The failure archive has no entry with the given id."""

    def __init__(self, failed_job_id: object):
        self.failed_job_id = failed_job_id
        super().__init__(f"Failed job not found: {failed_job_id}")
