"""Processor registry and the context handed to processors."""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .errors import ProcessorNotFoundError
from .models import Job

logger = logging.getLogger(__name__)


class JobContext:
    """Narrow handle a processor uses to report on the job it is running.

    Writes are ignored once the attempt is no longer current (the job was
    cancelled, timed out, or the scheduler stopped), so a late processor
    cannot alter a terminal record.
    """

    def __init__(self, job: Job, is_current: Callable[[], bool]):
        self._job = job
        self._is_current = is_current

    @property
    def job_id(self) -> str:
        return self._job.id

    @property
    def attempt(self) -> int:
        """1-based attempt number."""
        return self._job.retry_count + 1

    def update_progress(self, progress: float, message: Optional[str] = None) -> None:
        if self._is_current():
            self._job.update_progress(progress, message)

    def log(self, message: str, level: str = "info") -> None:
        if self._is_current():
            self._job.log(message, level)

    def is_cancelled(self) -> bool:
        """True once the scheduler has stopped tracking this attempt."""
        return not self._is_current()


Processor = Callable[[Any, JobContext], Union[Any, Awaitable[Any]]]


class ProcessorRegistry:
    """Maps job type tags to processors."""

    def __init__(self):
        self._processors: Dict[str, Processor] = {}

    def register(self, job_type: str, handler: Processor) -> None:
        if not callable(handler):
            raise TypeError(f"Processor for {job_type!r} must be callable")
        if job_type in self._processors:
            logger.warning("Replacing processor for job type: %s", job_type)
        self._processors[job_type] = handler
        logger.info("Registered processor for: %s", job_type)

    def get(self, job_type: str) -> Processor:
        try:
            return self._processors[job_type]
        except KeyError:
            raise ProcessorNotFoundError(job_type) from None

    def types(self) -> List[str]:
        return sorted(self._processors)