"""Scheduler configuration."""

from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# CLI key -> settings field
CONFIG_KEYS = {
    "concurrency": "concurrency",
    "tick-interval": "tick_interval",
    "max-retries": "default_max_retries",
    "timeout-ms": "default_timeout_ms",
    "backoff-base-ms": "backoff_base_ms",
    "backoff-max-ms": "backoff_max_ms",
    "backoff-jitter": "backoff_jitter",
    "history-max-age": "history_max_age_seconds",
}


class SchedulerSettings(BaseSettings):
    """Scheduler configuration, read from ``JOBQUEUE_*`` environment variables."""
    model_config = SettingsConfigDict(env_prefix="JOBQUEUE_", extra="ignore")

    name: str = "jobqueue"
    data_dir: Path = Path(".jobqueue")
    concurrency: int = Field(default=2, ge=1)
    tick_interval: float = Field(default=0.5, gt=0)  # seconds
    default_max_retries: int = Field(default=3, ge=0)
    default_timeout_ms: int = Field(default=300_000, gt=0)
    backoff_base_ms: int = Field(default=1000, ge=0)
    backoff_max_ms: int = Field(default=30_000, ge=0)
    backoff_jitter: float = Field(default=0.2, ge=0, le=1)
    history_max_age_seconds: int = Field(default=86_400, gt=0)


def load_settings(overrides: Optional[Dict[str, Any]] = None, **kwargs: Any) -> SchedulerSettings:
    """Build settings from the environment, then saved overrides, then kwargs."""
    values: Dict[str, Any] = dict(overrides or {})
    values.update({k: v for k, v in kwargs.items() if v is not None})
    return SchedulerSettings(**values)
