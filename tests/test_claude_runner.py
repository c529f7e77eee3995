from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

import pytest

from conductor_mcp.claude.runner import (
    ClaudeInvalidInputError,
    ClaudeNotFoundError,
    ClaudeParseError,
    ClaudeProcessError,
    ClaudeRunner,
    ClaudeTimeoutError,
    ClaudeUnavailableError,
    ClaudeWorkingDirectoryError,
    FakeClaudeRunner,
    OutputType,
)
from conductor_mcp.claude.utils import estimate_cost, parse_envelope, sanitize_environment


def write_script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "claude"
    script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def test_claude_runner_executes_script(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo 'Claude Code 1.0.0'")

    runner = ClaudeRunner(script)
    result = asyncio.run(runner.version())

    assert result.ok
    assert "Claude Code 1.0.0" in result.stdout


def test_invoke_parses_json_envelope(tmp_path: Path) -> None:
    script = write_script(
        tmp_path,
        "echo '{\"type\": \"result\", \"result\": \"done\", \"session_id\": \"tok-1\", \"total_cost_usd\": 0.02}'",
    )
    chunks = []

    runner = ClaudeRunner(script)
    result = asyncio.run(runner.invoke("hello", session_id="s-1", listener=chunks.append))

    assert result.result_text == "done"
    assert result.continuation_token == "tok-1"
    assert result.cost_estimate == pytest.approx(0.02)
    assert result.envelope_parsed
    assert chunks[-1].type is OutputType.FINAL
    assert chunks[-1].is_final
    assert all(chunk.session_id == "s-1" for chunk in chunks)
    assert any(chunk.type is OutputType.STDOUT for chunk in chunks)


def test_invoke_falls_back_to_raw_text(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo 'plain answer'")

    result = asyncio.run(ClaudeRunner(script).invoke("hello"))

    assert result.result_text == "plain answer"
    assert result.continuation_token is None
    assert not result.envelope_parsed


def test_invoke_passes_prompt_and_flags(tmp_path: Path) -> None:
    script = write_script(tmp_path, 'echo "$@"')

    result = asyncio.run(
        ClaudeRunner(script).invoke("status", continuation_token="tok-9", flags=["--model", "opus"])
    )

    assert result.result_text == "-p status --output-format json --resume tok-9 --model opus"


def test_build_args_omits_resume_without_token() -> None:
    args = ClaudeRunner.build_args("hi", flags=["--allowedTools", "Read"])

    assert args == ["-p", "hi", "--output-format", "json", "--allowedTools", "Read"]


def test_nonzero_exit_raises_process_error(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo 'boom: rate limit exceeded' >&2\nexit 3")

    with pytest.raises(ClaudeProcessError) as excinfo:
        asyncio.run(ClaudeRunner(script).invoke("hello"))

    assert excinfo.value.returncode == 3
    assert "rate limit exceeded" in excinfo.value.stderr
    assert "rate limit exceeded" in str(excinfo.value)
    assert excinfo.value.recoverable


def test_process_error_without_marker_is_not_recoverable(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo 'invalid flag' >&2\nexit 2")

    with pytest.raises(ClaudeProcessError) as excinfo:
        asyncio.run(ClaudeRunner(script).invoke("hello"))

    assert not excinfo.value.recoverable


def test_error_envelope_raises_process_error(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo '{\"type\": \"result\", \"is_error\": true, \"result\": \"bad request\"}'")

    with pytest.raises(ClaudeProcessError, match="bad request"):
        asyncio.run(ClaudeRunner(script).invoke("hello"))


def test_empty_output_raises_parse_error(tmp_path: Path) -> None:
    script = write_script(tmp_path, "exit 0")

    with pytest.raises(ClaudeParseError):
        asyncio.run(ClaudeRunner(script).invoke("hello"))


def test_timeout_kills_process(tmp_path: Path) -> None:
    script = write_script(tmp_path, "exec sleep 5")
    chunks = []

    runner = ClaudeRunner(script, timeout=0.2, kill_grace_period=0.5)
    with pytest.raises(ClaudeTimeoutError) as excinfo:
        asyncio.run(runner.invoke("hello", listener=chunks.append))

    assert excinfo.value.recoverable
    assert excinfo.value.timeout == 0.2
    assert chunks and chunks[-1].is_final
    assert chunks[-1].type is OutputType.STDERR


def test_timeout_force_kills_process_ignoring_sigterm(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    script = write_script(tmp_path, "trap '' TERM\nexec sleep 5")

    runner = ClaudeRunner(script, timeout=0.5, kill_grace_period=0.3)
    started = time.monotonic()
    with caplog.at_level(logging.WARNING, logger="conductor_mcp.claude.runner"):
        with pytest.raises(ClaudeTimeoutError):
            asyncio.run(runner.invoke("hello"))

    assert time.monotonic() - started < 4
    assert any("ignored SIGTERM" in record.getMessage() for record in caplog.records)


def test_missing_working_directory_is_not_a_missing_cli(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo ok")

    with pytest.raises(ClaudeWorkingDirectoryError) as excinfo:
        asyncio.run(ClaudeRunner(script).invoke("hi", working_directory=tmp_path / "nope"))

    assert not isinstance(excinfo.value, ClaudeUnavailableError)
    assert excinfo.value.code == "INVALID_WORKING_DIRECTORY"
    assert excinfo.value.recoverable is False
    assert excinfo.value.working_directory == str(tmp_path / "nope")


def test_nul_byte_in_prompt_raises_invalid_input(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo ok")
    chunks = []

    with pytest.raises(ClaudeInvalidInputError) as excinfo:
        asyncio.run(ClaudeRunner(script).invoke("a\x00b", listener=chunks.append))

    assert excinfo.value.code == "INVALID_INPUT"
    assert excinfo.value.recoverable is False
    assert chunks[-1].is_final


def test_claude_not_found(tmp_path: Path) -> None:
    with pytest.raises(ClaudeNotFoundError):
        ClaudeRunner(tmp_path / "missing")


def test_check_available_false_on_failure(tmp_path: Path) -> None:
    script = write_script(tmp_path, "exit 1")

    assert asyncio.run(ClaudeRunner(script).check_available()) is False


def test_fake_claude_runner_records_invocations() -> None:
    fake = FakeClaudeRunner([FakeClaudeRunner.success("ok", session_id="tok")])

    result = asyncio.run(fake.invoke("hello"))

    assert result.result_text == "ok"
    assert result.continuation_token == "tok"
    assert fake.prompts == ["hello"]
    assert fake.invocations[0][:2] == ("-p", "hello")


def test_parse_envelope_reads_cost_and_message() -> None:
    envelope = parse_envelope('{"message": "hi", "cost_usd": 1}')

    assert envelope.parsed
    assert envelope.result == "hi"
    assert envelope.cost == 1.0
    assert envelope.session_id is None


def test_estimate_cost_uses_per_million_rates() -> None:
    assert estimate_cost(1_000_000, 0) == pytest.approx(15.0)
    assert estimate_cost(0, 1_000_000) == pytest.approx(75.0)


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    env = sanitize_environment()
    assert "PYTHONPATH" not in env
    assert env["CI"] == "1"
