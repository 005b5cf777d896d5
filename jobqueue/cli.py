"""CLI interface for jobqueue."""

import asyncio
import json
import logging
import signal
import sys
from typing import Optional

import click
from pydantic import ValidationError

from .config import CONFIG_KEYS, SchedulerSettings, load_settings
from .handlers import register_builtin_handlers
from .models import JobPriority, JobStatus
from .scheduler import Scheduler
from .storage import JsonFileStore
from .utils import parse_delay_to_seconds

PRIORITY_NAMES = [p.name.lower() for p in JobPriority]


def get_store() -> JsonFileStore:
    """Open the file store under ``--data-dir`` (or ``JOBQUEUE_DATA_DIR``, default ``.jobqueue``)."""
    settings = SchedulerSettings()
    ctx = click.get_current_context(silent=True)
    data_dir = ctx.obj.get("data_dir") if ctx is not None and ctx.obj else None
    return JsonFileStore(data_dir or settings.data_dir, settings.name)


def get_scheduler(**overrides) -> Scheduler:
    """Build a scheduler over the file store, applying saved config overrides."""
    store = get_store()
    settings = load_settings(store.get_config(), **overrides)
    return Scheduler(settings, store=store)


@click.group()
@click.option("--data-dir", envvar="JOBQUEUE_DATA_DIR", type=click.Path(file_okay=False),
              help="Directory for the job snapshot and config (default: .jobqueue)")
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[str]):
    """jobqueue - priority job scheduler"""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


@cli.command()
@click.argument("job_type")
@click.argument("payload", required=False)
@click.option("--priority", type=click.Choice(PRIORITY_NAMES), default="normal", show_default=True)
@click.option("--max-retries", type=int, help="Automatic retries after a failure")
@click.option("--timeout-ms", type=int, help="Wall-clock budget per attempt")
@click.option("--owner", "owner_id", help="Owner correlation id")
@click.option("--group", "group_id", help="Group correlation id")
def enqueue(job_type: str, payload: Optional[str], priority: str, max_retries: Optional[int],
            timeout_ms: Optional[int], owner_id: Optional[str], group_id: Optional[str]):
    """Enqueue a new job.

    Example:
        jobqueue enqueue shell '{"command":"echo hello"}' --priority high
    """
    try:
        data = json.loads(payload) if payload else None
    except json.JSONDecodeError as e:
        click.echo(f"✗ Invalid JSON: {e}", err=True)
        sys.exit(1)

    scheduler = get_scheduler()
    job = scheduler.submit(
        job_type,
        data,
        priority=JobPriority[priority.upper()],
        max_retries=max_retries,
        timeout_ms=timeout_ms,
        owner_id=owner_id,
        group_id=group_id,
    )
    click.echo(f"✓ Job {job.id} enqueued successfully")


async def _serve(scheduler: Scheduler, until_idle: bool) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # not supported on this platform; Ctrl+C still raises KeyboardInterrupt

    async with scheduler:
        waiters = {asyncio.ensure_future(stop.wait())}
        if until_idle:
            waiters.add(asyncio.ensure_future(scheduler.join()))
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()


@cli.command()
@click.option("--until-idle", is_flag=True, help="Exit once nothing is queued or running")
@click.option("--concurrency", type=int, help="Override the concurrency ceiling")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def run(until_idle: bool, concurrency: Optional[int], log_level: str):
    """Run the scheduler with the built-in echo, sleep and shell processors.

    Example:
        jobqueue run --until-idle --concurrency 3
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    scheduler = get_scheduler(concurrency=concurrency)
    register_builtin_handlers(scheduler)
    try:
        asyncio.run(_serve(scheduler, until_idle))
    except KeyboardInterrupt:
        click.echo("\nScheduler stopped")


@cli.command()
def status():
    """Show job queue status and statistics."""
    scheduler = get_scheduler()
    state = scheduler.get_queue_status()
    settings = scheduler.settings

    click.echo("\n" + "=" * 50)
    click.echo("jobqueue Status")
    click.echo("=" * 50)
    click.echo(f"  Queued:       {state.queued}")
    click.echo(f"  Running:      {state.running}")
    click.echo(f"  Completed:    {state.completed_count}")
    click.echo(f"  Failed:       {state.failed_count}")
    click.echo(f"  Cancelled:    {state.cancelled_count}")
    click.echo(f"  Avg process:  {state.stats.average_process_time_ms:.0f} ms")
    click.echo("\nConfiguration:")
    click.echo(f"  Concurrency:  {settings.concurrency}")
    click.echo(f"  Max Retries:  {settings.default_max_retries}")
    click.echo("=" * 50 + "\n")


@cli.command("list")
@click.option("--status", "status_", type=click.Choice([s.value for s in JobStatus], case_sensitive=False),
              help="Filter by status")
@click.option("--owner", "owner_id", help="Filter by owner")
@click.option("--group", "group_id", help="Filter by group")
@click.option("--limit", default=10, help="Maximum jobs to display")
def list_jobs(status_: Optional[str], owner_id: Optional[str], group_id: Optional[str], limit: int):
    """List jobs, newest first.

    Example:
        jobqueue list --status failed --limit 20
    """
    scheduler = get_scheduler()
    job_status = JobStatus(status_.upper()) if status_ else None
    jobs = scheduler.list_jobs(owner_id=owner_id, group_id=group_id, status=job_status)[:limit]

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<38} {'Type':<12} {'Status':<10} {'Pri':<4} {'Retries':<8} {'Created':<20}")
    click.echo("-" * 96)
    for job in jobs:
        created = job.created_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{job.id:<38} {job.type[:12]:<12} {job.status.value:<10} {job.priority:<4} "
            f"{job.retry_count:<8} {created:<20}"
        )
    click.echo()


@cli.command()
@click.argument("job_id")
def show(job_id: str):
    """Show one job with its log."""
    job = get_scheduler().get_job(job_id)
    if job is None:
        click.echo(f"✗ Job {job_id} not found", err=True)
        sys.exit(1)

    click.echo(json.dumps(job.model_dump(mode="json", exclude={"logs"}), indent=2))
    click.echo("\nLog:")
    for entry in job.logs:
        click.echo(f"  {entry.timestamp:%H:%M:%S} [{entry.level}] {entry.message}")


@cli.command()
@click.argument("job_id")
def cancel(job_id: str):
    """Cancel a queued job."""
    if get_scheduler().cancel(job_id):
        click.echo(f"✓ Job {job_id} cancelled")
    else:
        click.echo(f"✗ Job {job_id} is not queued", err=True)
        sys.exit(1)


@cli.command()
@click.argument("job_id")
def retry(job_id: str):
    """Requeue a failed job with a fresh retry budget."""
    if get_scheduler().retry(job_id):
        click.echo(f"✓ Job {job_id} moved back to queue for retry")
    else:
        click.echo(f"✗ Job {job_id} is not a failed job", err=True)
        sys.exit(1)


@cli.command()
@click.option("--older-than", default="24h", show_default=True, help="Age such as 30m, 12h, 7d")
def purge(older_than: str):
    """Remove finished jobs older than the given age."""
    try:
        seconds = parse_delay_to_seconds(older_than)
    except ValueError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    cleared = get_scheduler().purge(seconds)
    click.echo(f"✓ Cleared {cleared} old job(s)")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command("show")
def config_show():
    """Show current configuration."""
    settings = get_scheduler().settings

    click.echo("\nCurrent Configuration:")
    for key, field in CONFIG_KEYS.items():
        click.echo(f"  {key + ':':<18} {getattr(settings, field)}")
    click.echo(f"  {'data-dir:':<18} {get_store().data_dir}")
    click.echo()


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value.

    Example:
        jobqueue config set concurrency 4
        jobqueue config set backoff-base-ms 500
    """
    if key not in CONFIG_KEYS:
        click.echo(f"✗ Unknown config key: {key}", err=True)
        sys.exit(1)

    store = get_store()
    overrides = store.get_config()
    overrides[CONFIG_KEYS[key]] = value
    try:
        settings = load_settings(overrides)
    except ValidationError as e:
        click.echo(f"✗ Invalid value: {e.errors()[0]['msg']}", err=True)
        sys.exit(1)

    overrides[CONFIG_KEYS[key]] = getattr(settings, CONFIG_KEYS[key])
    store.set_config(overrides)
    click.echo(f"✓ Configuration updated: {key} = {value}")


if __name__ == "__main__":
    cli()
