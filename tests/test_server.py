from __future__ import annotations

import asyncio
import json
import textwrap
from pathlib import Path
from types import SimpleNamespace

import pytest

from conductor_mcp import __version__
from conductor_mcp.claude.runner import FakeClaudeRunner
from conductor_mcp.config import ConductorSettings
from conductor_mcp.server import create_server


class StubFastMCP:
    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.tools: dict[str, object] = {}
        self.resources: dict[str, object] = {}

    def resource(self, uri, *args, **kwargs):
        def decorator(fn):
            self.resources[uri] = fn
            return fn

        return decorator

    def tool(self, *args, **kwargs):
        def decorator(fn):
            self.tools[kwargs["name"]] = fn
            return fn

        return decorator

    def run(self):  # pragma: no cover - not used in tests
        return None


@pytest.fixture(autouse=True)
def stub_fastmcp(monkeypatch):
    monkeypatch.setattr("conductor_mcp.server.FastMCP", StubFastMCP)


def make_settings(tmp_path: Path, **overrides) -> ConductorSettings:
    values = {"run_storage_path": tmp_path / "runs", "profile_paths": (tmp_path / "profiles",)}
    values.update(overrides)
    return ConductorSettings(**values)


def test_create_server_registers_tools_and_status(tmp_path: Path) -> None:
    profiles = tmp_path / "profiles"
    profiles.mkdir()
    (profiles / "fast.yaml").write_text("id: fast\ntitle: Fast\nmodel: haiku\n", encoding="utf-8")

    server = create_server(make_settings(tmp_path), runner=FakeClaudeRunner())

    assert server.kwargs["name"] == "Conductor MCP"
    assert server.kwargs["version"] == __version__
    assert "execute_command" in server.tools
    assert "generate_commit_messages" in server.tools
    assert "resource://conductor/status" in server.resources
    assert server.claude_metadata == {"available": True, "version": None, "error": None}
    assert server.conductor.runner.invocations == []

    payload = json.loads(server.status_resource(SimpleNamespace(request_id="req-1")))

    assert payload["server_version"] == __version__
    assert payload["claude"]["available"] is True
    assert payload["profiles"] == {"count": 1, "ids": ["fast"], "error": None}
    assert payload["request_id"] == "req-1"
    assert payload["log_level"] == "INFO"
    assert payload["runs"]["total"] == 0


def test_status_reports_profile_errors(tmp_path: Path) -> None:
    profiles = tmp_path / "profiles"
    profiles.mkdir()
    (profiles / "broken.yaml").write_text("id: \ntitle: x", encoding="utf-8")

    server = create_server(make_settings(tmp_path), runner=FakeClaudeRunner())
    payload = json.loads(server.status_resource(None))

    assert payload["profiles"]["count"] == 0
    assert "validation error" in payload["profiles"]["error"]
    assert payload["request_id"] is None


def test_server_without_claude_reports_unavailable(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, claude_path=str(tmp_path / "missing"))

    server = create_server(settings)
    payload = json.loads(server.status_resource(None))

    assert server.claude_metadata["available"] is False
    assert "not found" in server.claude_metadata["error"]
    assert payload["claude"]["available"] is False
    assert "not found" in payload["claude"]["error"]


def test_server_probes_cli_version(tmp_path: Path) -> None:
    script = tmp_path / "claude"
    script.write_text(
        textwrap.dedent(
            """\
            #!/bin/sh
            echo "1.0.42 (Claude Code)"
            """
        ),
        encoding="utf-8",
    )
    script.chmod(0o755)

    server = create_server(make_settings(tmp_path, claude_path=str(script)))
    payload = json.loads(server.status_resource(None))

    assert server.claude_metadata["version"] == "1.0.42 (Claude Code)"
    assert payload["claude"]["version"] == "1.0.42 (Claude Code)"
    assert payload["claude"]["path"] == str(script)


def test_lifespan_starts_and_stops_conductor(tmp_path: Path) -> None:
    server = create_server(make_settings(tmp_path), runner=FakeClaudeRunner())
    conductor = server.conductor

    async def main() -> None:
        async with server.kwargs["lifespan"](server):
            assert conductor.cleanup.running
        assert not conductor.cleanup.running

    asyncio.run(main())
