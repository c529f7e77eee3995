from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conductor_mcp.batch import (
    CommitMessageBatch,
    CommitMessageRequest,
    CommitSummaryInput,
    ExecutiveSummaryGenerator,
    ExecutiveSummaryRequest,
    RiskLevel,
)
from conductor_mcp.batch.commit_messages import (
    BatchCommitMessageResult,
    CommitMessageResult,
    build_commit_prompt,
    calculate_confidence,
    extract_commit_message,
    extract_commit_type,
)
from conductor_mcp.batch.summary import ChangeStats, ImpactLevel, build_summary_prompt, parse_summary
from conductor_mcp.claude.runner import ClaudeRunner, FakeClaudeRunner
from conductor_mcp.progress import ProgressStage, ProgressTracker
from conductor_mcp.runs import RunKind, RunStatus, RunStore
from conductor_mcp.scheduler import Scheduler
from conductor_mcp.sessions import SessionStore


def build_components(tmp_path: Path, runner: FakeClaudeRunner | None):
    runs = RunStore(tmp_path / "runs")
    progress = ProgressTracker()
    scheduler = Scheduler(max_concurrency=3, rate_limit_count=100, rate_limit_interval=1.0)
    sessions = SessionStore(runner, scheduler, runs, progress)
    return sessions, runs, progress


def failing_on_marker(prompt: str):
    if "BROKEN" in prompt:
        return FakeClaudeRunner.failure("fatal: unable to read diff")
    return FakeClaudeRunner.success("feat(core): add retry support")


def test_batch_continues_past_failures(tmp_path: Path) -> None:
    runner = FakeClaudeRunner(handler=failing_on_marker)
    sessions, runs, progress = build_components(tmp_path, runner)
    batch = CommitMessageBatch(sessions, runs, progress)
    requests = [
        CommitMessageRequest(
            repository=f"repo-{index}",
            diff="BROKEN" if index in (1, 3) else f"+ line {index}",
            recent_commits=["fix: earlier change"],
        )
        for index in range(5)
    ]

    result = asyncio.run(batch.generate(requests, model="sonnet"))

    assert result.total_repositories == 5
    assert result.success_count == 3
    assert result.failure_count == 2
    failures = [item for item in result.results if not item.success]
    assert {item.repository_name for item in failures} == {"repo-1", "repo-3"}
    assert all(item.error for item in failures)
    successes = [item for item in result.results if item.success]
    assert all(item.message == "feat(core): add retry support" for item in successes)
    assert all(item.commit_type == "feat" for item in successes)
    assert all(item.confidence == 0.9 for item in successes)
    assert result.total_token_usage.input_tokens > 0

    snapshot = progress.get_batch_progress(result.batch_id)
    assert snapshot.is_complete
    assert snapshot.completed_operations == 5
    assert snapshot.failed_operations == 2

    stored = runs.list_runs(kind=RunKind.COMMIT_MESSAGE)
    assert len(stored) == 5
    assert all(run.batch_id == result.batch_id for run in stored)
    assert sorted(run.status.value for run in stored) == ["FAILED", "FAILED", "SUCCESS", "SUCCESS", "SUCCESS"]
    assert sessions.session_count == 0


def test_batch_with_unavailable_runner_fails_every_item(tmp_path: Path) -> None:
    sessions, runs, progress = build_components(tmp_path, None)
    batch = CommitMessageBatch(sessions, runs, progress)
    requests = [
        CommitMessageRequest(repository="repo-a", diff="+x"),
        CommitMessageRequest(repository="repo-b", diff="+y"),
    ]

    result = asyncio.run(batch.generate(requests))

    assert result.success_count == 0
    assert all("not available" in item.error for item in result.results)
    assert progress.get_batch_progress(result.batch_id).is_complete
    assert runs.count_runs(RunStatus.FAILED) == 2
    assert result.total_token_usage.to_dict() == {"input_tokens": 0, "output_tokens": 0, "estimated_cost": 0.0}


def test_batch_uses_existing_repository_path(tmp_path: Path) -> None:
    checkout = tmp_path / "checkout"
    checkout.mkdir()
    runner = FakeClaudeRunner(handler=failing_on_marker)
    sessions, runs, progress = build_components(tmp_path, runner)
    batch = CommitMessageBatch(sessions, runs, progress)
    requests = [
        CommitMessageRequest(repository="present", path=str(checkout), diff="+x"),
        CommitMessageRequest(repository="absent", path=str(tmp_path / "nope"), diff="+y"),
    ]

    result = asyncio.run(batch.generate(requests))

    assert result.success_count == 2
    directories = {run.repository: run.input.working_directory for run in runs.list_runs()}
    assert directories["present"] == str(checkout)


def test_batch_survives_diff_with_nul_byte(tmp_path: Path) -> None:
    script = tmp_path / "claude"
    script.write_text(
        "#!/bin/sh\necho '{\"type\": \"result\", \"result\": \"fix: handle binary files\"}'\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    sessions, runs, progress = build_components(tmp_path, ClaudeRunner(script))
    batch = CommitMessageBatch(sessions, runs, progress)
    requests = [
        CommitMessageRequest(repository="text", diff="+line"),
        CommitMessageRequest(repository="binary", diff="a\x00b"),
    ]

    result = asyncio.run(batch.generate(requests))

    assert result.success_count == 1
    by_repo = {item.repository_name: item for item in result.results}
    assert by_repo["text"].message == "fix: handle binary files"
    assert by_repo["binary"].success is False
    assert "rejected" in by_repo["binary"].error

    stored = {run.repository: run for run in runs.list_runs()}
    assert stored["text"].status is RunStatus.SUCCESS
    assert stored["binary"].status is RunStatus.FAILED
    assert stored["binary"].completed_at is not None
    assert stored["binary"].error.code == "INVALID_INPUT"
    assert stored["binary"].error.recoverable is False
    assert runs.count_runs(RunStatus.RUNNING) == 0
    assert progress.get_run_progress(stored["binary"].id).stage is ProgressStage.FAILED
    assert progress.get_batch_progress(result.batch_id).is_complete
    assert sessions.session_count == 0


def test_batch_usage_sums_recorded_run_outputs(tmp_path: Path) -> None:
    def priced(prompt: str):
        if "BROKEN" in prompt:
            return FakeClaudeRunner.failure("fatal: unable to read diff")
        return FakeClaudeRunner.success("feat(core): add retry support", cost=0.25)

    sessions, runs, progress = build_components(tmp_path, FakeClaudeRunner(handler=priced))
    batch = CommitMessageBatch(sessions, runs, progress)
    requests = [
        CommitMessageRequest(repository="one", diff="+a"),
        CommitMessageRequest(repository="two", diff="+b"),
        CommitMessageRequest(repository="three", diff="BROKEN"),
    ]

    result = asyncio.run(batch.generate(requests))

    assert result.success_count == 2
    successful = runs.list_runs(status=RunStatus.SUCCESS)
    usage = result.total_token_usage
    assert usage.estimated_cost == pytest.approx(0.5)
    assert usage.input_tokens == sum(run.output.input_tokens for run in successful)
    assert usage.output_tokens == sum(run.output.output_tokens for run in successful)
    assert usage.input_tokens > 0


def test_commit_prompt_includes_recent_commits_and_diff() -> None:
    request = CommitMessageRequest(
        repository="svc",
        diff="+ added",
        recent_commits=[f"chore: c{index}" for index in range(8)],
        context="release week",
    )

    prompt = build_commit_prompt(request)

    assert 'repository "svc"' in prompt
    assert "chore: c4" in prompt
    assert "chore: c5" not in prompt
    assert "+ added" in prompt
    assert "Additional context: release week" in prompt


def test_extract_commit_message_variants() -> None:
    assert extract_commit_message(json.dumps({"message": "fix: x"})) == "fix: x"
    assert extract_commit_message("Based on the diff:\nfeat: add y\n\nBody text") == "feat: add y\nBody text"


def test_confidence_and_type_heuristics() -> None:
    assert calculate_confidence("feat(api): add endpoint for users") == 0.9
    assert calculate_confidence("short") == 0.6
    assert calculate_confidence("there was an error parsing this") == 0.5
    assert calculate_confidence("Update the documentation for setup") == 0.75
    assert extract_commit_type("Fix(ui): button") == "fix"
    assert extract_commit_type("Update readme") == "chore"
    assert extract_commit_type(None) is None


def test_batch_result_serializes() -> None:
    batch = BatchCommitMessageResult(
        batch_id="b-1",
        total_repositories=1,
        success_count=1,
        results=[CommitMessageResult(repository_name="r", repository_path=None, success=True, message="m")],
    )

    payload = batch.to_dict()

    assert payload["results"][0]["message"] == "m"
    assert payload["total_token_usage"]["input_tokens"] == 0


SUMMARY_JSON = {
    "summary": "Two services gained retry support.",
    "themes": [
        {
            "name": "Resilience",
            "description": "Retries added",
            "affectedRepositories": ["svc-a", "svc-b"],
            "impact": "moderate",
        }
    ],
    "riskLevel": "medium",
    "suggestedActions": ["Monitor error rates"],
}


def summary_request(**overrides) -> ExecutiveSummaryRequest:
    payload = {
        "commit_messages": [
            CommitSummaryInput(
                repository="svc-a",
                message="feat: add retries",
                stats=ChangeStats(additions=10, deletions=2, files_changed=3),
            ),
            CommitSummaryInput(repository="svc-b", message="fix: handle timeout"),
        ]
    }
    payload.update(overrides)
    return ExecutiveSummaryRequest(**payload)


def test_parse_summary_reads_fenced_json() -> None:
    text = "Here you go:\n```json\n" + json.dumps(SUMMARY_JSON) + "\n```"

    parsed = parse_summary(text, summary_request())

    assert parsed.structured
    assert parsed.summary == "Two services gained retry support."
    assert parsed.risk_level is RiskLevel.MEDIUM
    assert parsed.themes[0].impact is ImpactLevel.MODERATE
    assert parsed.themes[0].affected_repositories == ["svc-a", "svc-b"]
    assert parsed.suggested_actions == ["Monitor error rates"]


def test_parse_summary_falls_back_to_heuristics() -> None:
    text = (
        "This release introduces a new feature for retries and fixes a bug in timeout handling across services.\n\n"
        "The changes are a breaking change for clients. You should update client libraries. "
        "We recommend a staged rollout."
    )

    parsed = parse_summary(text, summary_request())

    assert not parsed.structured
    assert parsed.summary.startswith("This release introduces")
    assert parsed.risk_level is RiskLevel.CRITICAL
    assert [theme.name for theme in parsed.themes] == ["New Features", "Bug Fixes"]
    assert parsed.themes[0].affected_repositories == ["svc-a"]
    assert parsed.themes[1].affected_repositories == ["svc-b"]
    assert parsed.suggested_actions == ["update client libraries", "a staged rollout"]


def test_summary_prompt_reflects_options() -> None:
    prompt = build_summary_prompt(
        summary_request(audience="executives", focus_areas=["security"], include_recommendations=False)
    )

    assert "Target Audience: executives" in prompt
    assert "Focus Areas: security" in prompt
    assert "(+10 -2 in 3 files)" in prompt
    assert "actionable recommendations" not in prompt


def test_summary_request_requires_commits() -> None:
    with pytest.raises(ValueError):
        ExecutiveSummaryRequest(commit_messages=[])


def test_executive_summary_runs_as_scheduled_run(tmp_path: Path) -> None:
    runner = FakeClaudeRunner([FakeClaudeRunner.success(json.dumps(SUMMARY_JSON))])
    sessions, runs, progress = build_components(tmp_path, runner)
    generator = ExecutiveSummaryGenerator(sessions, runs, progress)

    result = asyncio.run(generator.generate(summary_request()))

    assert result.success
    assert result.summary == "Two services gained retry support."
    assert result.repository_count == 2
    assert result.total_changes == 3
    run = runs.require_run(result.run_id)
    assert run.kind is RunKind.EXECUTIVE_SUMMARY
    assert run.status is RunStatus.SUCCESS
    assert sessions.session_count == 0


def test_executive_summary_failure_is_reported(tmp_path: Path) -> None:
    runner = FakeClaudeRunner([FakeClaudeRunner.failure("overloaded", returncode=2)])
    sessions, runs, progress = build_components(tmp_path, runner)
    generator = ExecutiveSummaryGenerator(sessions, runs, progress)

    result = asyncio.run(generator.generate(summary_request()))

    assert not result.success
    assert result.summary is None
    assert "overloaded" in result.error
    assert runs.require_run(result.run_id).status is RunStatus.FAILED


def test_summarize_batch_requires_successes(tmp_path: Path) -> None:
    sessions, runs, progress = build_components(tmp_path, FakeClaudeRunner())
    generator = ExecutiveSummaryGenerator(sessions, runs, progress)
    batch = BatchCommitMessageResult(
        batch_id="b-1",
        total_repositories=1,
        success_count=0,
        results=[CommitMessageResult(repository_name="r", repository_path=None, success=False, error="boom")],
    )

    result = asyncio.run(generator.summarize_batch(batch))

    assert not result.success
    assert runs.count_runs() == 0
