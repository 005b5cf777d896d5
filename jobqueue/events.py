"""Fan-out of job lifecycle events to subscribers."""

import logging
from typing import Callable, Dict, List

from .models import Job

logger = logging.getLogger(__name__)

EVENTS = ("added", "started", "completed", "failed", "cancelled", "retried")

Listener = Callable[[Job], None]


class EventEmitter:
    """Calls subscribers with a copy of the job for each lifecycle event.

    A listener that raises is logged and skipped; it never affects other
    listeners or the caller of ``emit``.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Subscribe to an event. Returns a function that unsubscribes."""
        self._check_event(event)
        self._listeners[event].append(callback)
        return lambda: self.off(event, callback)

    def off(self, event: str, callback: Listener) -> None:
        self._check_event(event)
        listeners = self._listeners[event]
        if callback in listeners:
            listeners.remove(callback)

    def emit(self, event: str, job: Job) -> None:
        self._check_event(event)
        listeners = list(self._listeners[event])
        if not listeners:
            return
        snapshot = job.model_copy(deep=True)
        for callback in listeners:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Event listener error (%s) for job %s", event, job.id)

    def _check_event(self, event: str) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}, expected one of {', '.join(EVENTS)}")
