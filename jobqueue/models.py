"""Data models for jobs, queue statistics and persisted snapshots."""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransitionError
from .utils import elapsed_ms, new_job_id, utc_now


class JobStatus(str, Enum):
    """Job lifecycle states."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    # QUEUED -> FAILED only happens when no processor is registered.
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.QUEUED, JobStatus.CANCELLED}
    ),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobPriority(IntEnum):
    """Lower values are served first."""
    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    level: str = "info"
    message: str


class JobMetrics(BaseModel):
    queue_time_ms: Optional[int] = None
    process_time_ms: Optional[int] = None
    total_time_ms: Optional[int] = None


class Job(BaseModel):
    """One schedulable unit of work.

    State changes go through the ``mark_*`` methods, which enforce the
    allowed transitions and keep ``result``/``error``/``progress`` and the
    timestamps consistent with the status.
    """
    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=new_job_id)
    type: str
    payload: Any = None
    priority: int = int(JobPriority.NORMAL)
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0
    result: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    timeout_ms: int = 300_000
    owner_id: Optional[str] = None
    group_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)
    next_retry_at: Optional[datetime] = None
    logs: List[LogEntry] = Field(default_factory=list)
    metrics: JobMetrics = Field(default_factory=JobMetrics)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self) -> None:
        self.updated_at = utc_now()

    def log(self, message: str, level: str = "info") -> None:
        """Append a log entry."""
        self.logs.append(LogEntry(level=level, message=message))
        self.touch()

    def update_progress(self, progress: float, message: Optional[str] = None) -> None:
        """Set progress, clamped to 0-100, optionally logging a message."""
        self.progress = min(100, max(0, progress))
        if message:
            self.log(message)
        self.touch()

    def _transition(self, target: JobStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target
        self.touch()

    def mark_running(self) -> None:
        self._transition(JobStatus.RUNNING)
        self.started_at = utc_now()
        self.completed_at = None
        self.next_retry_at = None
        self.metrics.queue_time_ms = elapsed_ms(self.created_at, self.started_at)
        self.log(f"Job started (attempt {self.retry_count + 1}/{self.max_retries + 1})")

    def mark_complete(self, result: Any) -> None:
        self._transition(JobStatus.COMPLETE)
        self.result = result
        self.error = None
        self.progress = 100
        self.log("Job completed successfully")
        self._finish()

    def mark_failed(self, error: str) -> None:
        self._transition(JobStatus.FAILED)
        self.result = None
        self.error = error
        self.log(f"Job failed: {error}", "error")
        self._finish()

    def mark_cancelled(self, message: str = "Job cancelled by user") -> None:
        self._transition(JobStatus.CANCELLED)
        self.result = None
        self.error = None
        self.log(message, "warn")
        self._finish()

    def requeue_for_retry(self, error: str, next_retry_at: Optional[datetime] = None) -> None:
        """Move a RUNNING job back to QUEUED after a retryable error."""
        if self.retry_count >= self.max_retries:
            raise InvalidTransitionError(self.id, self.status.value, JobStatus.QUEUED.value)
        self._transition(JobStatus.QUEUED)
        self.retry_count += 1
        self.progress = 0
        self.result = None
        self.error = None
        self.started_at = None
        self.next_retry_at = next_retry_at
        self.log(f"Attempt failed: {error}", "error")
        self.log(f"Retrying (attempt {self.retry_count + 1}/{self.max_retries + 1})")

    def reset_for_manual_retry(self) -> None:
        """Move a FAILED job back to QUEUED with a fresh retry budget."""
        self._transition(JobStatus.QUEUED)
        self.retry_count = 0
        self.progress = 0
        self.result = None
        self.error = None
        self.started_at = None
        self.completed_at = None
        self.next_retry_at = None
        self.metrics = JobMetrics()
        self.log("Manual retry requested")

    def _finish(self) -> None:
        self.completed_at = utc_now()
        self.next_retry_at = None
        self.metrics.process_time_ms = elapsed_ms(self.started_at, self.completed_at)
        self.metrics.total_time_ms = elapsed_ms(self.created_at, self.completed_at)


class QueueStats(BaseModel):
    """Running counters persisted alongside the queue."""
    total_jobs_processed: int = 0
    total_jobs_failed: int = 0
    average_process_time_ms: float = 0
    current_queue_size: int = 0

    def record_finish(self, job: Job) -> None:
        """Count a job that ran and then completed or failed."""
        process_time = job.metrics.process_time_ms
        if process_time is None:
            return
        if job.status == JobStatus.COMPLETE:
            self.total_jobs_processed += 1
        elif job.status == JobStatus.FAILED:
            self.total_jobs_failed += 1
        else:
            return

        finished = self.total_jobs_processed + self.total_jobs_failed
        self.average_process_time_ms = (
            self.average_process_time_ms * (finished - 1) + process_time
        ) / finished


class QueueStatus(BaseModel):
    queued: int
    running: int
    completed_count: int
    failed_count: int
    cancelled_count: int
    processors: List[str] = Field(default_factory=list)
    stats: QueueStats = Field(default_factory=QueueStats)


class Snapshot(BaseModel):
    """Persisted state layout: waiting jobs, terminal history and stats."""
    queue: List[Job] = Field(default_factory=list)
    completed: List[Job] = Field(default_factory=list)
    stats: QueueStats = Field(default_factory=QueueStats)
