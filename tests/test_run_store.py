from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conductor_mcp.claude.runner import ClaudeParseError, ClaudeProcessError, ClaudeTimeoutError
from conductor_mcp.errors import RunStateError
from conductor_mcp.runs import (
    RunCleanupJob,
    RunError,
    RunInput,
    RunKind,
    RunNotFoundError,
    RunOutput,
    RunStatus,
    RunStore,
    error_from_exception,
    is_recoverable,
)


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def test_create_run_persists_record(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    run = store.create_run(RunInput(prompt="hello", model="opus"), repository="repo-a")

    record = json.loads((tmp_path / f"{run.id}.json").read_text(encoding="utf-8"))
    assert record["status"] == "QUEUED"
    assert record["input"]["prompt"] == "hello"
    assert record["repository"] == "repo-a"
    assert not list(tmp_path.glob("*.tmp"))


def test_store_reloads_runs_from_disk(tmp_path: Path, caplog) -> None:
    first = RunStore(tmp_path)
    run = first.create_run(RunInput(prompt="hello"))
    first.update_status(run.id, RunStatus.RUNNING)
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    second = RunStore(tmp_path)

    assert second.require_run(run.id).status is RunStatus.RUNNING
    assert second.count_runs() == 1
    assert "Skipping unreadable run record" in caplog.text


def test_update_status_stamps_times(tmp_path: Path) -> None:
    clock = ManualClock()
    store = RunStore(tmp_path, clock=clock)
    run = store.create_run(RunInput(prompt="hello"))

    clock.advance(seconds=2)
    running = store.update_status(run.id, RunStatus.RUNNING, session_id="s-1")
    clock.advance(seconds=3)
    done = store.update_status(
        run.id,
        RunStatus.SUCCESS,
        output=RunOutput(message="ok", raw_response="ok", tokens_used=1),
    )

    assert running.started_at == clock.now - timedelta(seconds=3)
    assert running.session_id == "s-1"
    assert done.completed_at == clock.now
    assert done.duration_ms == 3000
    assert done.output.message == "ok"


def test_returned_runs_are_copies(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    run = store.create_run(RunInput(prompt="hello"))

    fetched = store.require_run(run.id)
    fetched.status = RunStatus.FAILED

    assert store.require_run(run.id).status is RunStatus.QUEUED


def test_list_runs_filters_and_paginates(tmp_path: Path) -> None:
    clock = ManualClock()
    store = RunStore(tmp_path, clock=clock)
    ids = []
    for index in range(4):
        clock.advance(seconds=1)
        run = store.create_run(
            RunInput(prompt=f"p{index}"),
            kind=RunKind.COMMIT_MESSAGE if index % 2 else RunKind.COMMAND,
            repository="repo-a" if index < 2 else "repo-b",
        )
        ids.append(run.id)
    store.update_status(ids[0], RunStatus.FAILED)

    assert [run.id for run in store.list_runs()] == list(reversed(ids))
    assert [run.id for run in store.list_runs(limit=2, offset=1)] == [ids[2], ids[1]]
    assert [run.id for run in store.list_runs(repository="repo-a")] == [ids[1], ids[0]]
    assert [run.id for run in store.list_runs(kind=RunKind.COMMIT_MESSAGE)] == [ids[3], ids[1]]
    assert [run.id for run in store.list_runs(status=RunStatus.FAILED)] == [ids[0]]


def test_statistics_report_rates_and_durations(tmp_path: Path) -> None:
    clock = ManualClock()
    store = RunStore(tmp_path, clock=clock)
    ok = store.create_run(RunInput(prompt="a"), repository="repo-a")
    bad = store.create_run(RunInput(prompt="b"), repository="repo-a")
    store.create_run(RunInput(prompt="c"))
    store.update_status(ok.id, RunStatus.RUNNING)
    store.update_status(bad.id, RunStatus.RUNNING)
    clock.advance(seconds=1)
    store.update_status(ok.id, RunStatus.SUCCESS)
    clock.advance(seconds=2)
    store.update_status(bad.id, RunStatus.FAILED)

    stats = store.statistics()

    assert stats["total"] == 3
    assert stats["by_status"]["SUCCESS"] == 1
    assert stats["by_status"]["QUEUED"] == 1
    assert stats["by_repository"] == {"repo-a": 2, "unknown": 1}
    assert stats["average_duration_ms"] == 2000
    assert stats["success_rate"] == 0.5


def test_retry_run_links_to_parent(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    run = store.create_run(RunInput(prompt="hello", diff="diff"), kind=RunKind.COMMIT_MESSAGE, repository="r")
    store.update_status(run.id, RunStatus.FAILED, error=RunError(code="TIMEOUT", message="slow"))

    retry = store.retry_run(run.id)

    assert retry.id != run.id
    assert retry.status is RunStatus.QUEUED
    assert retry.parent_run_id == run.id
    assert retry.retry_count == 1
    assert retry.kind is RunKind.COMMIT_MESSAGE
    assert retry.input == store.require_run(run.id).input
    assert store.require_run(run.id).status is RunStatus.FAILED


def test_retry_requires_finished_run(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    run = store.create_run(RunInput(prompt="hello"))

    with pytest.raises(RunStateError):
        store.retry_run(run.id)
    with pytest.raises(RunNotFoundError):
        store.retry_run("missing")


def test_cancel_run_only_applies_to_unfinished_runs(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    run = store.create_run(RunInput(prompt="hello"))

    cancelled = store.cancel_run(run.id, "no longer needed")

    assert cancelled.status is RunStatus.CANCELLED
    assert cancelled.error.code == "CANCELLED"
    assert cancelled.error.message == "no longer needed"
    with pytest.raises(RunStateError):
        store.cancel_run(run.id)


def test_purge_expired_uses_completion_time(tmp_path: Path) -> None:
    clock = ManualClock()
    store = RunStore(tmp_path, clock=clock)
    old_success = store.create_run(RunInput(prompt="a"))
    old_failure = store.create_run(RunInput(prompt="b"))
    unfinished = store.create_run(RunInput(prompt="c"))
    store.update_status(old_success.id, RunStatus.SUCCESS)
    store.update_status(old_failure.id, RunStatus.FAILED)
    clock.advance(days=29)
    recent = store.create_run(RunInput(prompt="d"))
    store.update_status(recent.id, RunStatus.SUCCESS)
    clock.advance(days=2)

    deleted = store.purge_expired(timedelta(days=30))

    assert deleted == 2
    assert {run.id for run in store.list_runs()} == {unfinished.id, recent.id}
    assert not (tmp_path / f"{old_success.id}.json").exists()


def test_cleanup_job_runs_immediately_and_stops(tmp_path: Path) -> None:
    clock = ManualClock()
    store = RunStore(tmp_path, clock=clock)
    run = store.create_run(RunInput(prompt="a"))
    store.update_status(run.id, RunStatus.SUCCESS)
    clock.advance(days=31)
    job = RunCleanupJob(store, interval=timedelta(hours=24), max_age=timedelta(days=30))

    async def main() -> None:
        job.start()
        assert job.running
        await asyncio.sleep(0.01)
        await job.stop()

    asyncio.run(main())

    assert not job.running
    assert store.count_runs() == 0


def test_error_classification() -> None:
    timeout = error_from_exception(ClaudeTimeoutError("slow", timeout=1))
    parse = error_from_exception(ClaudeParseError("garbled"))
    limited = error_from_exception(ClaudeProcessError("exit 1", returncode=1, stderr="rate limit hit"))

    assert (timeout.code, timeout.recoverable) == ("TIMEOUT", True)
    assert (parse.code, parse.recoverable) == ("PARSE_FAILURE", False)
    assert limited.recoverable
    assert is_recoverable(RunError(code="ECONNRESET", message="reset"))
    assert is_recoverable(ConnectionResetError())
    assert not is_recoverable(ValueError("bad input"))
    assert error_from_exception(ValueError("bad input")).code == "VALUEERROR"
