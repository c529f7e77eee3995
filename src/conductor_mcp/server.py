"""FastMCP server bootstrap for Conductor."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .claude import ClaudeRunner, ClaudeRunnerError
from .config import ConductorSettings, get_settings
from .orchestrator import Conductor
from .profiles import ProfileLoadError
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Conductor server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _probe_version(runner: ClaudeRunner, metadata: dict) -> None:
    try:
        version_result = _run_sync(runner.version())
    except ClaudeRunnerError as exc:
        metadata["error"] = str(exc)
        return
    if version_result.ok:
        metadata["version"] = version_result.stdout.strip()
    else:
        metadata["error"] = (
            version_result.stderr.strip()
            or f"Claude version command failed with exit code {version_result.returncode}"
        )


def create_server(
    settings: Optional[ConductorSettings] = None,
    runner: ClaudeRunner | None = None,
    *,
    conductor: Conductor | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with its tools and status resource."""

    settings = settings or (conductor.settings if conductor is not None else get_settings())
    runner_provided = runner is not None or conductor is not None
    conductor = conductor or Conductor(settings, runner=runner)

    claude_metadata = {
        "available": conductor.runner is not None,
        "version": None,
        "error": conductor.runner_error,
    }
    if not runner_provided and conductor.runner is not None:
        _probe_version(conductor.runner, claude_metadata)

    @asynccontextmanager
    async def _lifespan(_server):
        await conductor.start()
        try:
            yield {}
        finally:
            await conductor.shutdown()

    server = FastMCP(
        name="Conductor MCP",
        version=__version__,
        instructions=(
            "Conductor runs prompts through the Claude CLI in resumable sessions, "
            "records every invocation as an agent run, and batches commit message "
            "and executive summary generation across repositories."
        ),
        lifespan=_lifespan,
    )

    handles = register_tools(server, conductor=conductor, settings=settings)

    @server.resource(
        "resource://conductor/status",
        name="conductor_status",
        title="Conductor MCP Status",
        description="Provides the current runtime status for the Conductor MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            profile_ids = conductor.profiles.ids()
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        payload = conductor.status()
        payload["log_level"] = settings.log_level
        payload["claude"].update(
            {key: value for key, value in claude_metadata.items() if key in {"version", "error"} and value}
        )
        payload["profiles"] = {"count": len(profile_ids), "ids": profile_ids, "error": profile_error}
        payload["request_id"] = getattr(context, "request_id", None)
        return json.dumps(payload)

    setattr(server, "conductor", conductor)
    setattr(server, "claude_metadata", claude_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the Conductor MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Conductor MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "claude_available": getattr(server, "claude_metadata", {}).get("available"),
            "run_storage_path": str(settings.run_storage_path),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
