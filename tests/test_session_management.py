from __future__ import annotations

import asyncio
import gzip
import json
from pathlib import Path

import pytest

from conductor_mcp.claude.runner import FakeClaudeRunner
from conductor_mcp.errors import ConductorError
from conductor_mcp.progress import ProgressTracker
from conductor_mcp.runs import RunStore
from conductor_mcp.scheduler import Scheduler
from conductor_mcp.sessions import (
    ContinuationMode,
    SessionOperation,
    SessionStore,
    TemplateNotFoundError,
    TemplateVariable,
    build_handoff,
    summarize_session,
    write_handoff,
)
from conductor_mcp.sessions.prompts import TRANSCRIPT_HEADER


def build_store(tmp_path: Path, runner: FakeClaudeRunner | None = None, **kwargs) -> SessionStore:
    scheduler = Scheduler(max_concurrency=5, rate_limit_count=100, rate_limit_interval=1.0)
    return SessionStore(
        runner or FakeClaudeRunner(), scheduler, RunStore(tmp_path / "runs"), ProgressTracker(), **kwargs
    )


def seeded_session(store: SessionStore, tmp_path: Path, *prompts: str):
    async def main():
        session = store.create_session(tmp_path, project_context="Service {{service}} on {{env}}")
        for prompt in prompts:
            await store.execute_command(prompt, session_id=session.id)
        return session

    return asyncio.run(main())


def test_template_fills_variables_and_defaults(tmp_path: Path) -> None:
    store = build_store(tmp_path)
    source = seeded_session(store, tmp_path, "fix the login bug")

    template = store.create_template(
        source.id,
        name="service work",
        tags=["backend"],
        variables=[
            TemplateVariable(name="service"),
            TemplateVariable(name="env", default_value="staging", required=False),
        ],
    )
    session = store.create_session_from_template(template.id, values={"service": "billing"})

    assert session.metadata.project_context == "Service billing on staging"
    assert session.metadata.from_template == template.id
    assert session.metadata.tags == ["backend"]
    assert session.metadata.name == "service work"
    assert session.history == []
    assert session.continuation_mode is ContinuationMode.NEW
    assert template.usage_count == 1
    assert template.last_used_at is not None
    assert [item.id for item in store.list_templates()] == [template.id]


def test_template_requires_missing_variables(tmp_path: Path) -> None:
    store = build_store(tmp_path)
    source = seeded_session(store, tmp_path)
    template = store.create_template(source.id, name="t", variables=[TemplateVariable(name="service")])

    with pytest.raises(ValueError, match="service"):
        store.create_session_from_template(template.id)
    with pytest.raises(TemplateNotFoundError):
        store.create_session_from_template("missing")
    assert template.usage_count == 0


def test_template_history_is_replayed(tmp_path: Path) -> None:
    runner = FakeClaudeRunner(
        [
            FakeClaudeRunner.success("looked at it", session_id="tok-1"),
            FakeClaudeRunner.success("continued"),
        ]
    )
    store = build_store(tmp_path, runner)
    source = seeded_session(store, tmp_path, "inspect the repo")

    template = store.create_template(source.id, name="with history", include_history=True)
    session = store.create_session_from_template(template.id, working_directory=tmp_path)

    assert template.to_dict()["history_length"] == 1
    assert session.continuation_mode is ContinuationMode.NEEDS_REPLAY

    asyncio.run(store.execute_command("next step", session_id=session.id))

    assert "--resume" not in runner.invocations[1]
    assert runner.prompts[1].startswith(TRANSCRIPT_HEADER)
    assert "Human: inspect the repo" in runner.prompts[1]


def test_archive_writes_gzipped_session(tmp_path: Path) -> None:
    store = build_store(tmp_path, archive_root=tmp_path / "archives")
    source = seeded_session(store, tmp_path, "write docs")

    archive = asyncio.run(store.archive_session(source.id))

    assert store.get_session(source.id) is None
    payload = json.loads(gzip.decompress(Path(archive.path).read_bytes()))
    assert payload["id"] == source.id
    assert payload["history"][0]["prompt"] == "write docs"
    assert archive.size_bytes == Path(archive.path).stat().st_size
    assert archive.to_dict()["compression_ratio"] > 0


def test_archive_requires_configured_root(tmp_path: Path) -> None:
    store = build_store(tmp_path)
    source = seeded_session(store, tmp_path)

    with pytest.raises(ConductorError, match="not configured"):
        asyncio.run(store.archive_session(source.id))
    assert store.get_session(source.id) is not None


def test_batch_operation_reports_each_session(tmp_path: Path) -> None:
    store = build_store(tmp_path, archive_root=tmp_path / "archives")
    first = seeded_session(store, tmp_path, "one")
    second = seeded_session(store, tmp_path, "two")

    async def main():
        tagged = await store.batch_session_operation(
            [first.id, "missing"], SessionOperation.TAG, tags=["urgent", "urgent", "api"]
        )
        exported = await store.batch_session_operation([second.id], SessionOperation.EXPORT)
        archived = await store.batch_session_operation([second.id], SessionOperation.ARCHIVE)
        deleted = await store.batch_session_operation([first.id, first.id], SessionOperation.DELETE)
        return tagged, exported, archived, deleted

    tagged, exported, archived, deleted = asyncio.run(main())

    assert tagged["operation"] == "TAG"
    assert (tagged["success_count"], tagged["failed_count"]) == (1, 1)
    assert tagged["results"][0]["data"] == {"tags": ["urgent", "api"]}
    assert "not found" in tagged["results"][1]["error"]
    assert exported["results"][0]["data"]["session"]["history"][0]["prompt"] == "two"
    assert Path(archived["results"][0]["data"]["path"]).exists()
    assert [result["success"] for result in deleted["results"]] == [True, False]
    assert store.list_sessions() == []


def test_handoff_summarises_session(tmp_path: Path) -> None:
    runner = FakeClaudeRunner(
        [
            FakeClaudeRunner.success("Fixed the bug in src/app/login.py"),
            FakeClaudeRunner.success("Added tests/test_login.py"),
        ]
    )
    store = build_store(tmp_path, runner)
    session = seeded_session(store, tmp_path, "fix the login bug", "add a test for it")

    summary = summarize_session(session)
    assert summary.interaction_count == 2
    assert summary.topics == ["Bug Fixes", "Testing"]
    assert summary.files_modified == ["src/app/login.py", "tests/test_login.py"]

    brief = build_handoff(session, notes="Deploy after review")
    assert brief.startswith("# Claude Session Handoff")
    assert "**Target:** Next Developer" in brief
    assert "## Notes\nDeploy after review" in brief
    assert "Total interactions: 2" in brief
    assert "## Conversation History" not in brief

    document = write_handoff(session, tmp_path / "handoffs", target="alex", include_full_history=True)
    text = document.path.read_text(encoding="utf-8")
    assert document.path.name.startswith(f"handoff-{session.id}-")
    assert "**Target:** alex" in text
    assert "### Interaction 2" in text
    assert "add a test for it" in text
