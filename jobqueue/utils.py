"""Time, id and backoff helpers."""

import random
import re
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

AGE_PATTERN = re.compile(
    r"^\s*(?:(?P<days>\d+)\s*d)?\s*(?:(?P<hours>\d+)\s*h)?"
    r"\s*(?:(?P<minutes>\d+)\s*m)?\s*(?:(?P<seconds>\d+)\s*s)?\s*$",
    re.IGNORECASE,
)
"""Compound age such as ``90m`` or ``1h30m``; units must appear in d, h, m, s order."""

UNIT_SECONDS = {"days": 86400, "hours": 3600, "minutes": 60, "seconds": 1}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def elapsed_ms(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Milliseconds between two timestamps, or None if either is missing."""
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


def parse_delay_to_seconds(text: str) -> int:
    """Convert an age like ``7d`` or ``2h15m`` into seconds.

    Raises ValueError for empty, malformed or zero ages.
    """
    match = AGE_PATTERN.match(text) if text else None
    if match is None:
        raise ValueError(f"Invalid age: {text!r} (expected e.g. 30m, 12h, 7d)")

    total = sum(
        int(value) * UNIT_SECONDS[unit]
        for unit, value in match.groupdict().items()
        if value
    )
    if total <= 0:
        raise ValueError(f"Age must be positive: {text!r}")
    return total


def backoff_delay_ms(
    retry_count: int,
    base_ms: int,
    max_ms: int,
    jitter: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff: ``base * 2^retry_count`` capped at ``max_ms``.

    Jitter shaves up to ``jitter`` (a fraction) off the capped delay, so the
    result never exceeds the cap.
    """
    delay = min(base_ms * (2 ** retry_count), max_ms)
    if jitter > 0:
        delay -= delay * jitter * rand()
    return max(delay, 0.0)
