"""Exceptions raised and recorded by the job queue."""


class JobQueueError(Exception):
    """Base class for job queue errors."""


class InvalidTransitionError(JobQueueError):
    """A job was asked to move to a state its current state cannot reach."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class ProcessorNotFoundError(JobQueueError):
    """No processor is registered for a job type. Never retried."""

    def __init__(self, job_type: str):
        super().__init__(f"No processor registered for job type: {job_type}")
        self.job_type = job_type


class FatalJobError(JobQueueError):
    """Raised by a processor to fail a job without consuming retries."""


class JobTimeoutError(JobQueueError):
    """A running attempt exceeded its wall-clock budget."""

    def __init__(self, job_id: str, timeout_ms: int):
        super().__init__(f"Job timed out after {timeout_ms}ms")
        self.job_id = job_id
        self.timeout_ms = timeout_ms


class StoreError(JobQueueError):
    """The durable store could not read or write a snapshot."""
