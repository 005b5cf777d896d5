"""Priority job scheduler with retries, timeouts and durable queue snapshots."""

from .config import SchedulerSettings
from .errors import (
    FatalJobError,
    InvalidTransitionError,
    JobQueueError,
    JobTimeoutError,
    ProcessorNotFoundError,
    StoreError,
)
from .models import Job, JobPriority, JobStatus, QueueStats, QueueStatus, Snapshot
from .processors import JobContext, ProcessorRegistry
from .queue import PriorityQueue
from .scheduler import Scheduler
from .storage import JsonFileStore, MemoryStore, NullStore, Store

__all__ = [
    "FatalJobError",
    "InvalidTransitionError",
    "Job",
    "JobContext",
    "JobPriority",
    "JobQueueError",
    "JobStatus",
    "JobTimeoutError",
    "JsonFileStore",
    "MemoryStore",
    "NullStore",
    "PriorityQueue",
    "ProcessorNotFoundError",
    "ProcessorRegistry",
    "QueueStats",
    "QueueStatus",
    "Scheduler",
    "SchedulerSettings",
    "Snapshot",
    "Store",
    "StoreError",
]
