"""Scheduler loop: admission, timeouts, retries and cancellation."""

import asyncio
import functools
import inspect
import logging
import random
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from .config import SchedulerSettings
from .errors import FatalJobError, JobTimeoutError, ProcessorNotFoundError
from .events import EventEmitter, Listener
from .models import Job, JobPriority, JobStatus, QueueStats, QueueStatus, Snapshot
from .processors import JobContext, Processor, ProcessorRegistry
from .queue import PriorityQueue
from .storage import NullStore, Store
from .utils import backoff_delay_ms, new_job_id, utc_now

logger = logging.getLogger(__name__)

FINISH_EVENTS = {
    JobStatus.COMPLETE: "completed",
    JobStatus.FAILED: "failed",
    JobStatus.CANCELLED: "cancelled",
}


@dataclass(eq=False)
class _Attempt:
    """One RUNNING attempt of a job."""
    job: Job
    deadline: float  # time.monotonic()
    task: Optional["asyncio.Task[None]"] = None


class Scheduler:
    """Runs submitted jobs through registered processors.

    Every job lives in ``_jobs`` and in exactly one of: the waiting area
    (``_queue`` or ``_backoff``), the in-flight set (``_inflight``) or the
    terminal history (``_history``). All of these are mutated only from the
    event loop thread, and admission never awaits, so admission cycles are
    serialized.

    Example::

        scheduler = Scheduler(SchedulerSettings(concurrency=4), store=JsonFileStore(".jobs"))
        scheduler.register_processor("echo", echo)
        async with scheduler:
            job = scheduler.submit("echo", {"text": "hi"}, priority=JobPriority.HIGH)
            await scheduler.join()
    """

    def __init__(
        self,
        settings: Optional[SchedulerSettings] = None,
        store: Optional[Store] = None,
        registry: Optional[ProcessorRegistry] = None,
        rand: Callable[[], float] = random.random,
    ):
        self.settings = settings or SchedulerSettings()
        self.store = store if store is not None else NullStore()
        self.registry = registry or ProcessorRegistry()
        self.events = EventEmitter()
        self.stats = QueueStats()
        self._rand = rand

        self._jobs: Dict[str, Job] = {}
        self._queue = PriorityQueue()
        self._backoff: Dict[str, float] = {}  # job id -> monotonic time it may re-enter the queue
        self._inflight: Dict[str, _Attempt] = {}
        self._history: Dict[str, Job] = {}
        self._orphans: Set["asyncio.Task[None]"] = set()

        self._running = False
        self._loop_task: Optional["asyncio.Task[None]"] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None

        self._restore()

    # Registration and events

    def register_processor(self, job_type: str, handler: Processor) -> None:
        self.registry.register(job_type, handler)
        self._wake()

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        return self.events.on(event, callback)

    def off(self, event: str, callback: Listener) -> None:
        self.events.off(event, callback)

    # Submission and queries

    def submit(
        self,
        job_type: str,
        payload: Any = None,
        *,
        priority: int = JobPriority.NORMAL,
        max_retries: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        owner_id: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> Job:
        """Queue a job and return its handle. Never blocks and never fails on processing."""
        job = Job(
            type=job_type,
            payload=payload,
            priority=int(priority),
            max_retries=self.settings.default_max_retries if max_retries is None else max_retries,
            timeout_ms=self.settings.default_timeout_ms if timeout_ms is None else timeout_ms,
            owner_id=owner_id,
            group_id=group_id,
        )
        while job.id in self._jobs:
            job.id = new_job_id()
        job.log(f"Job created: {job_type}")

        self._jobs[job.id] = job
        self._queue.enqueue(job)
        self.events.emit("added", job)
        self._changed()
        logger.info("Job added: %s (%s) - queue size: %d", job.id, job_type, len(self._queue))
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(
        self,
        owner_id: Optional[str] = None,
        group_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Job]:
        """Jobs matching every given filter, newest first."""
        jobs = [
            job for job in self._jobs.values()
            if (owner_id is None or job.owner_id == owner_id)
            and (group_id is None or job.group_id == group_id)
            and (status is None or job.status == status)
        ]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def get_queue_status(self) -> QueueStatus:
        counts = {status: 0 for status in FINISH_EVENTS}
        for job in self._history.values():
            counts[job.status] += 1
        return QueueStatus(
            queued=len(self._queue) + len(self._backoff),
            running=len(self._inflight),
            completed_count=counts[JobStatus.COMPLETE],
            failed_count=counts[JobStatus.FAILED],
            cancelled_count=counts[JobStatus.CANCELLED],
            processors=self.registry.types(),
            stats=self.stats.model_copy(),
        )

    # Control

    def cancel(self, job_id: str) -> bool:
        """Cancel a waiting or running job. Returns False if there is nothing to cancel."""
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return False

        if job.status == JobStatus.QUEUED:
            self._queue.remove(job_id)
            self._backoff.pop(job_id, None)
            job.mark_cancelled("Job cancelled by user")
        else:
            attempt = self._inflight.pop(job_id)
            self._abandon(attempt)
            job.mark_cancelled("Job cancelled during processing")

        logger.warning("Job cancelled: %s", job_id)
        self._finish(job)
        return True

    def retry(self, job_id: str) -> Optional[Job]:
        """Resubmit a FAILED job with a fresh retry budget."""
        job = self._history.get(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return None

        del self._history[job_id]
        job.reset_for_manual_retry()
        self._queue.enqueue(job)
        self.events.emit("retried", job)
        self._changed()
        logger.info("Job %s requeued by manual retry", job_id)
        return job

    def purge(self, max_age_seconds: Optional[float] = None) -> int:
        """Drop terminal jobs that finished more than ``max_age_seconds`` ago."""
        if max_age_seconds is None:
            max_age_seconds = self.settings.history_max_age_seconds
        cutoff = utc_now() - timedelta(seconds=max_age_seconds)

        expired = [
            job_id for job_id, job in self._history.items()
            if job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._history[job_id]
            del self._jobs[job_id]

        if expired:
            self._changed()
            logger.info("Cleared %d old jobs", len(expired))
        return len(expired)

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._update_idle()
        self._loop_task = asyncio.create_task(self._run())
        logger.info(
            "Scheduler %s started (concurrency=%d, tick=%.3fs)",
            self.settings.name, self.settings.concurrency, self.settings.tick_interval,
        )

    async def stop(self) -> None:
        """Stop admitting and abandon in-flight attempts.

        Jobs that were RUNNING are dropped; they are not written back as
        QUEUED, so a restart does not run them again.
        """
        if not self._running:
            return
        self._running = False

        tasks = []
        if self._loop_task is not None:
            self._loop_task.cancel()
            tasks.append(self._loop_task)
            self._loop_task = None

        dropped = list(self._inflight.values())
        self._inflight.clear()
        for attempt in dropped:
            self._jobs.pop(attempt.job.id, None)
            if attempt.task is not None:
                attempt.task.cancel()
                tasks.append(attempt.task)
        for task in list(self._orphans):
            task.cancel()
            tasks.append(task)

        await asyncio.gather(*tasks, return_exceptions=True)
        if dropped:
            logger.warning("Dropped %d running jobs at shutdown", len(dropped))
        self._changed()
        logger.info("Scheduler %s stopped", self.settings.name)

    async def join(self) -> None:
        """Wait until no job is waiting, backing off or running."""
        if self._idle is None:
            raise RuntimeError("Scheduler has not been started")
        await self._idle.wait()

    async def __aenter__(self) -> "Scheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Loop

    async def _run(self) -> None:
        while self._running:
            self._wakeup.clear()
            self._cycle()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_wait())
            except asyncio.TimeoutError:
                pass

    def _cycle(self) -> None:
        now = time.monotonic()
        self._release_backoff(now)
        self._enforce_timeouts(now)
        self._admit()

    def _next_wait(self) -> float:
        now = time.monotonic()
        wait = self.settings.tick_interval
        for attempt in self._inflight.values():
            wait = min(wait, attempt.deadline - now)
        for ready_at in self._backoff.values():
            wait = min(wait, ready_at - now)
        return max(wait, 0.0)

    def _release_backoff(self, now: float) -> None:
        ready = sorted(
            (ready_at, job_id) for job_id, ready_at in self._backoff.items() if ready_at <= now
        )
        for _, job_id in ready:
            del self._backoff[job_id]
            job = self._jobs[job_id]
            job.next_retry_at = None
            self._queue.enqueue(job)
            self.events.emit("retried", job)
        if ready:
            self._changed()

    def _enforce_timeouts(self, now: float) -> None:
        for job_id, attempt in list(self._inflight.items()):
            if now < attempt.deadline:
                continue
            del self._inflight[job_id]
            self._abandon(attempt)
            self._fail_timeout(attempt.job)

    def _fail_timeout(self, job: Job) -> None:
        job.mark_failed(str(JobTimeoutError(job.id, job.timeout_ms)))
        self._finish(job)

    def _admit(self) -> None:
        while len(self._inflight) < self.settings.concurrency:
            job = self._queue.dequeue()
            if job is None:
                return

            try:
                handler = self.registry.get(job.type)
            except ProcessorNotFoundError as e:
                logger.error("Job %s failed: %s", job.id, e)
                job.mark_failed(str(e))
                self._finish(job)
                continue

            job.mark_running()
            attempt = _Attempt(job=job, deadline=time.monotonic() + job.timeout_ms / 1000)
            context = JobContext(job, functools.partial(self._is_current, attempt))
            self._inflight[job.id] = attempt
            attempt.task = asyncio.create_task(self._execute(attempt, handler, context))
            logger.info("Job started: %s (%s)", job.id, job.type)
            self.events.emit("started", job)
            self._changed()

    async def _execute(self, attempt: _Attempt, handler: Processor, context: JobContext) -> None:
        job = attempt.job
        try:
            result = handler(job.payload, context)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._on_error(attempt, e)
        else:
            self._on_result(attempt, result)

    def _on_result(self, attempt: _Attempt, result: Any) -> None:
        job = attempt.job
        if not self._is_current(attempt):
            logger.debug("Discarding late result for job %s (%s)", job.id, job.status.value)
            return
        del self._inflight[job.id]
        # A processor that blocked the loop past its deadline never saw the timeout fire.
        if time.monotonic() >= attempt.deadline:
            self._fail_timeout(job)
            return
        job.mark_complete(result)
        self._finish(job)

    def _on_error(self, attempt: _Attempt, exc: Exception) -> None:
        job = attempt.job
        if not self._is_current(attempt):
            logger.debug("Discarding late error for job %s (%s): %s", job.id, job.status.value, exc)
            return
        del self._inflight[job.id]
        if time.monotonic() >= attempt.deadline:
            self._fail_timeout(job)
            return
        error = str(exc) or exc.__class__.__name__

        if isinstance(exc, FatalJobError) or job.retry_count >= job.max_retries:
            job.mark_failed(error)
            self._finish(job)
            return

        delay_ms = backoff_delay_ms(
            job.retry_count + 1,
            self.settings.backoff_base_ms,
            self.settings.backoff_max_ms,
            self.settings.backoff_jitter,
            self._rand,
        )
        job.requeue_for_retry(error, next_retry_at=utc_now() + timedelta(milliseconds=delay_ms))
        self._backoff[job.id] = time.monotonic() + delay_ms / 1000
        logger.warning(
            "Job %s failed (attempt %d/%d), retrying in %dms: %s",
            job.id, job.retry_count, job.max_retries + 1, delay_ms, error,
        )
        self._changed()

    # Bookkeeping

    def _is_current(self, attempt: _Attempt) -> bool:
        return self._inflight.get(attempt.job.id) is attempt

    def _abandon(self, attempt: _Attempt) -> None:
        """Stop tracking an attempt whose processor may still be executing."""
        task = attempt.task
        if task is not None and not task.done():
            self._orphans.add(task)
            task.add_done_callback(self._orphans.discard)

    def _finish(self, job: Job) -> None:
        self._history[job.id] = job
        self.stats.record_finish(job)
        self.events.emit(FINISH_EVENTS[job.status], job)
        self._changed()
        logger.info("Job %s: %s (%sms)", job.status.value.lower(), job.id, job.metrics.process_time_ms)

    def _changed(self) -> None:
        self.stats.current_queue_size = len(self._queue) + len(self._backoff)
        self._persist()
        self._update_idle()
        self._wake()

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _update_idle(self) -> None:
        if self._idle is None:
            return
        if self._queue or self._backoff or self._inflight:
            self._idle.clear()
        else:
            self._idle.set()

    # Persistence

    def snapshot(self) -> Snapshot:
        """Waiting jobs in admission order (then backoff), history and stats."""
        backing_off = sorted(self._backoff, key=self._backoff.__getitem__)
        return Snapshot(
            queue=list(self._queue) + [self._jobs[job_id] for job_id in backing_off],
            completed=list(self._history.values()),
            stats=self.stats,
        )

    def _persist(self) -> None:
        try:
            self.store.save(self.snapshot())
        except Exception:
            logger.warning("Failed to save job queue to storage", exc_info=True)

    def _restore(self) -> None:
        try:
            snapshot = self.store.load()
        except Exception:
            logger.warning("Failed to load job queue from storage", exc_info=True)
            return
        if snapshot is None:
            return

        now = utc_now()
        now_mono = time.monotonic()
        for job in snapshot.queue:
            if job.status != JobStatus.QUEUED or job.id in self._jobs:
                continue
            self._jobs[job.id] = job
            if job.next_retry_at is not None and job.next_retry_at > now:
                self._backoff[job.id] = now_mono + (job.next_retry_at - now).total_seconds()
            else:
                job.next_retry_at = None
                self._queue.enqueue(job)

        for job in snapshot.completed:
            if not job.is_terminal or job.id in self._jobs:
                continue
            self._jobs[job.id] = job
            self._history[job.id] = job

        self.stats = snapshot.stats
        self.stats.current_queue_size = len(self._queue) + len(self._backoff)
        logger.info(
            "Loaded %d queued, %d completed jobs from storage",
            len(self._queue) + len(self._backoff), len(self._history),
        )
