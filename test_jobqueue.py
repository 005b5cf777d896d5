"""Tests for jobqueue models, queue, storage, events, config and CLI."""

import json
from datetime import timedelta

import pytest
from click.testing import CliRunner

from jobqueue.cli import cli
from jobqueue.config import SchedulerSettings, load_settings
from jobqueue.errors import InvalidTransitionError, StoreError
from jobqueue.events import EventEmitter
from jobqueue.models import Job, JobPriority, JobStatus, QueueStats, Snapshot
from jobqueue.queue import PriorityQueue
from jobqueue.storage import JsonFileStore, MemoryStore
from jobqueue.utils import backoff_delay_ms, parse_delay_to_seconds


# Job


def test_job_creation():
    """Test: Create a job with default values."""
    job = Job(type="echo", payload={"text": "hello"})
    assert job.id.startswith("job_")
    assert job.status == JobStatus.QUEUED
    assert job.priority == JobPriority.NORMAL
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.result is None and job.error is None


def test_job_ids_are_unique():
    assert len({Job(type="echo").id for _ in range(100)}) == 100


def test_job_complete_sets_result_and_metrics():
    job = Job(type="echo")
    job.mark_running()
    job.update_progress(40)
    job.mark_complete({"ok": True})

    assert job.status == JobStatus.COMPLETE
    assert job.result == {"ok": True}
    assert job.error is None
    assert job.progress == 100
    assert job.completed_at is not None
    assert job.metrics.process_time_ms is not None
    assert job.metrics.total_time_ms >= job.metrics.process_time_ms


def test_job_failed_sets_error_only():
    job = Job(type="echo")
    job.mark_running()
    job.mark_failed("boom")
    assert job.status == JobStatus.FAILED
    assert job.error == "boom"
    assert job.result is None
    assert job.logs[-1].level == "error"


def test_job_invalid_transitions():
    job = Job(type="echo")
    with pytest.raises(InvalidTransitionError):
        job.mark_complete("too early")

    job.mark_running()
    job.mark_complete("done")
    with pytest.raises(InvalidTransitionError):
        job.mark_running()
    with pytest.raises(InvalidTransitionError):
        job.mark_cancelled()


def test_job_requeue_resets_progress_and_counts_retry():
    job = Job(type="echo", max_retries=1)
    job.mark_running()
    job.update_progress(70)
    job.requeue_for_retry("flaky")

    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 1
    assert job.progress == 0
    assert job.error is None

    job.mark_running()
    with pytest.raises(InvalidTransitionError):
        job.requeue_for_retry("flaky again")
    assert job.retry_count == 1


def test_job_manual_retry_resets_budget():
    job = Job(type="echo", max_retries=1)
    job.mark_running()
    job.requeue_for_retry("flaky")
    job.mark_running()
    job.mark_failed("dead")

    job.reset_for_manual_retry()
    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 0
    assert job.error is None
    assert job.completed_at is None


def test_job_progress_is_clamped():
    job = Job(type="echo")
    job.update_progress(150, "overshoot")
    assert job.progress == 100
    job.update_progress(-5)
    assert job.progress == 0
    assert job.logs[-1].message == "overshoot"


def test_queue_stats_average():
    stats = QueueStats()
    for ms, ok in ((100, True), (300, False)):
        job = Job(type="echo")
        job.mark_running()
        if ok:
            job.mark_complete(None)
        else:
            job.mark_failed("x")
        job.metrics.process_time_ms = ms
        stats.record_finish(job)

    assert stats.total_jobs_processed == 1
    assert stats.total_jobs_failed == 1
    assert stats.average_process_time_ms == 200


# Priority queue


def _queued(priority, name=None):
    return Job(type="echo", priority=priority, payload=name)


def test_dequeue_order_is_priority_then_fifo():
    """Test: Jobs leave by priority, ties by insertion order."""
    queue = PriorityQueue()
    jobs = [
        _queued(JobPriority.LOW, "low"),
        _queued(JobPriority.CRITICAL, "crit-1"),
        _queued(JobPriority.NORMAL, "normal"),
        _queued(JobPriority.CRITICAL, "crit-2"),
        _queued(JobPriority.HIGH, "high"),
    ]
    for job in jobs:
        queue.enqueue(job)

    order = []
    while len(queue):
        order.append(queue.dequeue().payload)
    assert order == ["crit-1", "crit-2", "high", "normal", "low"]
    assert queue.dequeue() is None


def test_remove_preserves_relative_order():
    queue = PriorityQueue()
    jobs = [_queued(JobPriority.NORMAL, str(i)) for i in range(5)]
    for job in jobs:
        queue.enqueue(job)

    removed = queue.remove(jobs[2].id)
    assert removed is jobs[2]
    assert jobs[2].id not in queue
    assert queue.remove("missing") is None
    assert [j.payload for j in queue] == ["0", "1", "3", "4"]
    assert queue.peek() is jobs[0]


def test_enqueue_rejects_non_queued_and_duplicates():
    queue = PriorityQueue()
    job = Job(type="echo")
    queue.enqueue(job)
    with pytest.raises(ValueError):
        queue.enqueue(job)

    running = Job(type="echo")
    running.mark_running()
    with pytest.raises(ValueError):
        queue.enqueue(running)


def test_clear_empties_queue():
    queue = PriorityQueue()
    jobs = [_queued(JobPriority.HIGH), _queued(JobPriority.LOW)]
    for job in jobs:
        queue.enqueue(job)

    queue.clear()
    assert len(queue) == 0
    assert jobs[0].id not in queue
    assert queue.peek() is None
    queue.enqueue(jobs[0])
    assert queue.dequeue() is jobs[0]


# Utilities


def test_exponential_backoff():
    """Test: Exponential backoff calculation."""
    assert backoff_delay_ms(0, 1000, 30_000) == 1000
    assert backoff_delay_ms(1, 1000, 30_000) == 2000
    assert backoff_delay_ms(2, 1000, 30_000) == 4000
    assert backoff_delay_ms(10, 1000, 30_000) == 30_000


def test_backoff_jitter_stays_under_cap():
    assert backoff_delay_ms(1, 1000, 30_000, jitter=0.5, rand=lambda: 1.0) == 1000
    assert backoff_delay_ms(10, 1000, 30_000, jitter=0.5, rand=lambda: 0.0) == 30_000
    for _ in range(50):
        assert 15_000 <= backoff_delay_ms(10, 1000, 30_000, jitter=0.5) <= 30_000


@pytest.mark.parametrize("text,seconds", [("20s", 20), ("5m", 300), ("1h30m", 5400), ("2d", 172_800)])
def test_parse_delay(text, seconds):
    assert parse_delay_to_seconds(text) == seconds


@pytest.mark.parametrize("text", ["", "soon", "0s"])
def test_parse_delay_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_delay_to_seconds(text)


# Storage


def test_json_store_round_trip(tmp_path):
    """Test: Snapshots persist across store instances."""
    store = JsonFileStore(tmp_path)
    queued = [Job(type="echo", payload={"n": i}, priority=p) for i, p in enumerate([1, 3, 4])]
    done = Job(type="echo")
    done.mark_running()
    done.mark_complete("ok")
    store.save(Snapshot(queue=queued, completed=[done], stats=QueueStats(total_jobs_processed=1)))

    loaded = JsonFileStore(tmp_path).load()
    assert [j.id for j in loaded.queue] == [j.id for j in queued]
    assert [j.payload for j in loaded.queue] == [{"n": 0}, {"n": 1}, {"n": 2}]
    assert loaded.completed[0].status == JobStatus.COMPLETE
    assert loaded.completed[0].result == "ok"
    assert loaded.completed[0].created_at == done.created_at
    assert loaded.stats.total_jobs_processed == 1


def test_json_store_empty_and_corrupt(tmp_path):
    store = JsonFileStore(tmp_path)
    assert store.load() is None

    store.snapshot_file.write_text("{not json")
    with pytest.raises(StoreError):
        store.load()


def test_json_store_config(tmp_path):
    """Test: Configuration overrides persist."""
    store = JsonFileStore(tmp_path)
    assert store.get_config() == {}
    store.set_config({"concurrency": 5})
    assert JsonFileStore(tmp_path).get_config() == {"concurrency": 5}


def test_memory_store_rejects_unserializable_payload():
    store = MemoryStore()
    with pytest.raises(StoreError):
        store.save(Snapshot(queue=[Job(type="echo", payload=object())]))
    assert store.load() is None


# Events


def test_events_deliver_copies_and_unsubscribe():
    emitter = EventEmitter()
    seen = []

    def listener(job):
        seen.append(job)
        job.progress = 99

    unsubscribe = emitter.on("added", listener)
    job = Job(type="echo")
    emitter.emit("added", job)
    assert seen[0].id == job.id
    assert job.progress == 0

    unsubscribe()
    emitter.emit("added", job)
    assert len(seen) == 1


def test_events_isolate_failing_listeners():
    emitter = EventEmitter()
    seen = []

    def broken(job):
        raise RuntimeError("listener bug")

    emitter.on("failed", broken)
    emitter.on("failed", seen.append)
    emitter.emit("failed", Job(type="echo"))
    assert len(seen) == 1


def test_events_reject_unknown_names():
    emitter = EventEmitter()
    with pytest.raises(ValueError):
        emitter.on("finished", lambda job: None)


# Config


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("JOBQUEUE_CONCURRENCY", "5")
    monkeypatch.setenv("JOBQUEUE_TICK_INTERVAL", "0.1")
    settings = SchedulerSettings()
    assert settings.concurrency == 5
    assert settings.tick_interval == 0.1


def test_saved_overrides_beat_env(monkeypatch):
    monkeypatch.setenv("JOBQUEUE_CONCURRENCY", "5")
    settings = load_settings({"concurrency": 2}, default_max_retries=7, tick_interval=None)
    assert settings.concurrency == 2
    assert settings.default_max_retries == 7
    assert settings.tick_interval == 0.5


def test_settings_validation():
    with pytest.raises(ValueError):
        SchedulerSettings(concurrency=0)


# CLI


@pytest.fixture()
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("JOBQUEUE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("JOBQUEUE_TICK_INTERVAL", "0.02")
    return CliRunner()


def _job_id(output):
    return output.split("Job ", 1)[1].split()[0]


def test_cli_enqueue_list_show(runner):
    result = runner.invoke(cli, ["enqueue", "echo", '{"text": "hi"}', "--priority", "high", "--owner", "u1"])
    assert result.exit_code == 0, result.output
    job_id = _job_id(result.output)

    result = runner.invoke(cli, ["list", "--owner", "u1"])
    assert job_id in result.output
    assert "QUEUED" in result.output

    result = runner.invoke(cli, ["show", job_id])
    assert result.exit_code == 0
    assert '"text": "hi"' in result.output
    assert "Job created: echo" in result.output


def test_cli_enqueue_rejects_bad_json(runner):
    result = runner.invoke(cli, ["enqueue", "echo", "{bad"])
    assert result.exit_code == 1
    assert "Invalid JSON" in result.output


def test_cli_cancel_and_status(runner):
    job_id = _job_id(runner.invoke(cli, ["enqueue", "echo"]).output)

    assert runner.invoke(cli, ["cancel", job_id]).exit_code == 0
    assert runner.invoke(cli, ["cancel", job_id]).exit_code == 1

    result = runner.invoke(cli, ["status"])
    assert "Cancelled:    1" in result.output
    assert "Queued:       0" in result.output


def test_cli_run_until_idle(runner):
    ok_id = _job_id(runner.invoke(cli, ["enqueue", "echo", '{"n": 1}']).output)
    bad_id = _job_id(runner.invoke(cli, ["enqueue", "missing-type"]).output)

    result = runner.invoke(cli, ["run", "--until-idle"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(cli, ["list", "--status", "complete"])
    assert ok_id in result.output
    result = runner.invoke(cli, ["list", "--status", "failed"])
    assert bad_id in result.output

    result = runner.invoke(cli, ["retry", bad_id])
    assert result.exit_code == 0
    assert "moved back to queue" in result.output
    assert runner.invoke(cli, ["retry", ok_id]).exit_code == 1


def test_cli_purge(runner):
    job_id = _job_id(runner.invoke(cli, ["enqueue", "echo"]).output)
    runner.invoke(cli, ["cancel", job_id])

    result = runner.invoke(cli, ["purge", "--older-than", "1h"])
    assert "Cleared 0" in result.output
    result = runner.invoke(cli, ["purge", "--older-than", "never"])
    assert result.exit_code == 1


def test_cli_config(runner, tmp_path):
    result = runner.invoke(cli, ["config", "set", "concurrency", "4"])
    assert result.exit_code == 0, result.output
    assert json.loads((tmp_path / "config.json").read_text()) == {"concurrency": 4}

    result = runner.invoke(cli, ["config", "show"])
    assert any(line.split() == ["concurrency:", "4"] for line in result.output.splitlines())

    assert runner.invoke(cli, ["config", "set", "colour", "blue"]).exit_code == 1
    assert runner.invoke(cli, ["config", "set", "concurrency", "0"]).exit_code == 1


def test_snapshot_defaults():
    snapshot = Snapshot()
    assert snapshot.queue == [] and snapshot.completed == []
    assert snapshot.stats.total_jobs_processed == 0


def test_timestamps_are_timezone_aware():
    job = Job(type="echo")
    assert job.created_at.utcoffset() == timedelta(0)


def test_cli_data_dir_option(tmp_path):
    """Test: --data-dir selects the store directory without the environment variable."""
    runner = CliRunner()
    data_dir = tmp_path / "queue-data"

    result = runner.invoke(cli, ["--data-dir", str(data_dir), "enqueue", "echo"])
    assert result.exit_code == 0, result.output
    job_id = _job_id(result.output)
    assert (data_dir / "jobqueue.json").exists()

    result = runner.invoke(cli, ["--data-dir", str(data_dir), "list"])
    assert job_id in result.output

    result = runner.invoke(cli, ["--data-dir", str(data_dir), "config", "show"])
    assert str(data_dir) in result.output
