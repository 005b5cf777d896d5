"""Priority-ordered waiting list of jobs."""

import bisect
import itertools
from typing import Dict, Iterator, List, Optional, Tuple

from .models import Job, JobStatus


class PriorityQueue:
    """Waiting jobs ordered by ``(priority, insertion order)``.

    Only QUEUED jobs are accepted. Jobs leave from the front via
    ``dequeue``; ``remove`` takes one out of the middle for cancellation and
    leaves the relative order of the rest untouched.
    """

    def __init__(self):
        self._entries: List[Tuple[int, int, str]] = []
        self._jobs: Dict[str, Job] = {}
        self._counter = itertools.count()

    def enqueue(self, job: Job) -> None:
        """Insert a QUEUED job behind every job of equal or higher priority."""
        if job.status != JobStatus.QUEUED:
            raise ValueError(f"Job {job.id} is {job.status.value}, only QUEUED jobs can be enqueued")
        if job.id in self._jobs:
            raise ValueError(f"Job {job.id} is already queued")
        bisect.insort(self._entries, (int(job.priority), next(self._counter), job.id))
        self._jobs[job.id] = job

    def dequeue(self) -> Optional[Job]:
        """Remove and return the first job, or None if the queue is empty."""
        if not self._entries:
            return None
        _, _, job_id = self._entries.pop(0)
        return self._jobs.pop(job_id)

    def peek(self) -> Optional[Job]:
        if not self._entries:
            return None
        return self._jobs[self._entries[0][2]]

    def remove(self, job_id: str) -> Optional[Job]:
        """Remove a job by id. Returns the job, or None if it is not queued."""
        job = self._jobs.pop(job_id, None)
        if job is None:
            return None
        for index, entry in enumerate(self._entries):
            if entry[2] == job_id:
                del self._entries[index]
                break
        return job

    def clear(self) -> None:
        self._entries.clear()
        self._jobs.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __iter__(self) -> Iterator[Job]:
        """Iterate jobs in the order they would be dequeued."""
        return iter([self._jobs[job_id] for _, _, job_id in self._entries])
