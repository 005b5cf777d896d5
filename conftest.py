"""Shared test fixtures."""

import os

import pytest

from jobqueue.config import SchedulerSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep JOBQUEUE_* variables from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("JOBQUEUE_"):
            monkeypatch.delenv(key)


@pytest.fixture()
def fast_settings():
    """Settings with short ticks and deterministic, tiny backoff."""

    def _make(**overrides) -> SchedulerSettings:
        values = dict(
            concurrency=1,
            tick_interval=0.02,
            backoff_base_ms=5,
            backoff_max_ms=40,
            backoff_jitter=0,
        )
        values.update(overrides)
        return SchedulerSettings(**values)

    return _make
