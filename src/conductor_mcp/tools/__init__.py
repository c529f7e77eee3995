"""Tool registration for Conductor MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP
from pydantic import ValidationError

from ..batch import CommitMessageRequest, ExecutiveSummaryRequest
from ..config import ConductorSettings
from ..errors import NotFoundError, RunStateError
from ..orchestrator import Conductor
from ..profiles import ProfileLoadError
from ..runs import RunKind, RunStatus
from ..sessions import CommandOptions, SessionOperation, TemplateVariable


@dataclass(slots=True)
class ToolHandles:
    execute_command: Any
    continue_session: Any
    kill_session: Any
    fork_session: Any
    get_session: Any
    list_sessions: Any
    list_profiles: Any
    generate_commit_messages: Any
    generate_executive_summary: Any
    list_agent_runs: Any
    get_agent_run: Any
    retry_agent_run: Any
    cancel_agent_run: Any
    run_statistics: Any
    agent_run_progress: Any
    batch_progress: Any
    claim_prewarmed_session: Any
    prewarm_status: Any
    create_session_template: Any
    create_session_from_template: Any
    list_session_templates: Any
    archive_session: Any
    batch_session_operation: Any
    create_handoff: Any


def _options(
    settings: ConductorSettings,
    *,
    model: str | None,
    profile_id: str | None,
    flags: list[str] | None,
    project_context: str | None,
    timeout: float | None,
) -> CommandOptions:
    return CommandOptions(
        model=model,
        profile_id=profile_id,
        custom_flags=list(flags or []),
        project_context=project_context,
        timeout=timeout if timeout is not None else settings.invocation_timeout,
    )


def _parse_enum(enum_type, value: str | None, label: str):
    if value is None:
        return None
    try:
        return enum_type(value.upper() if enum_type is RunStatus else value.lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"Invalid {label} '{value}'. Must be one of {allowed}") from exc


def _template_variables(items: list[dict[str, Any]]) -> list[TemplateVariable]:
    variables = []
    for item in items:
        name = str(item.get("name") or "").strip()
        if not name:
            raise ValueError("Every template variable needs a name")
        variables.append(
            TemplateVariable(
                name=name,
                description=str(item.get("description") or ""),
                default_value=item.get("default_value"),
                required=bool(item.get("required", True)),
            )
        )
    return variables


def register_tools(
    server: FastMCP,
    *,
    conductor: Conductor,
    settings: ConductorSettings,
) -> ToolHandles:
    """Register Conductor's MCP tools on the server."""

    async def _execute_command(
        prompt: str,
        *,
        session_id: str | None = None,
        working_directory: str | None = None,
        model: str | None = None,
        profile_id: str | None = None,
        flags: list[str] | None = None,
        project_context: str | None = None,
        timeout: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run a prompt through the Claude CLI, optionally inside an existing session."""

        if not prompt.strip():
            raise ValueError("prompt must not be empty")
        options = _options(
            settings,
            model=model,
            profile_id=profile_id,
            flags=flags,
            project_context=project_context,
            timeout=timeout,
        )
        result = await conductor.execute_command(
            prompt, session_id=session_id, working_directory=working_directory, options=options
        )
        _emit_log(
            context,
            "info" if result.success else "warning",
            "Executed command",
            extra={
                "session_id": result.session_id,
                "run_id": result.run_id,
                "success": result.success,
                "execution_time_ms": result.execution_time_ms,
            },
        )
        return result.to_dict()

    async def _continue_session(
        session_id: str,
        prompt: str,
        *,
        model: str | None = None,
        profile_id: str | None = None,
        flags: list[str] | None = None,
        timeout: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send a follow-up prompt to an existing session."""

        options = _options(
            settings,
            model=model,
            profile_id=profile_id,
            flags=flags,
            project_context=None,
            timeout=timeout,
        )
        try:
            result = await conductor.continue_session(session_id, prompt, options=options)
        except NotFoundError as exc:
            raise ValueError(f"Session '{session_id}' not found") from exc
        _emit_log(
            context,
            "info" if result.success else "warning",
            "Continued session",
            extra={"session_id": session_id, "run_id": result.run_id, "success": result.success},
        )
        return result.to_dict()

    async def _kill_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Terminate a session and cancel its queued or running commands."""

        killed = await conductor.kill_session(session_id)
        _emit_log(
            context,
            "warning" if killed else "debug",
            "Kill requested",
            extra={"session_id": session_id, "killed": killed},
        )
        return {"session_id": session_id, "killed": killed}

    def _fork_session(
        session_id: str,
        *,
        message_index: int | None = None,
        include_history: bool = True,
        name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Branch a session at a history index into a new independent session."""

        try:
            fork = conductor.fork_session(
                session_id,
                message_index=message_index,
                include_history=include_history,
                name=name,
            )
        except NotFoundError as exc:
            raise ValueError(f"Session '{session_id}' not found") from exc
        _emit_log(
            context,
            "info",
            "Forked session",
            extra={"session_id": fork.id, "source_session_id": session_id},
        )
        return fork.to_dict(include_history=False)

    def _get_session(
        session_id: str,
        include_history: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return a session with its metadata and, optionally, its history."""

        try:
            session = conductor.get_session(session_id)
        except NotFoundError as exc:
            raise ValueError(f"Session '{session_id}' not found") from exc
        return session.to_dict(include_history=include_history)

    def _list_sessions(context: Context | None = None) -> list[dict[str, Any]]:
        """List live sessions without their history."""

        sessions = [session.to_dict(include_history=False) for session in conductor.list_sessions()]
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return sessions

    def _list_profiles(context: Context | None = None) -> list[dict[str, Any]]:
        """List invocation profiles usable through ``profile_id``."""

        try:
            profile_map = conductor.profiles.load_all()
        except ProfileLoadError as exc:
            raise ValueError(str(exc)) from exc
        catalog = [
            {
                "id": profile.id,
                "title": profile.title,
                "description": profile.description,
                "model": profile.model,
                "allowed_tools": profile.allowed_tools,
                "skip_permissions": profile.skip_permissions,
                "tags": profile.metadata.get("tags", []),
                "source": str(conductor.profiles.source_of(profile.id) or ""),
            }
            for profile in profile_map.values()
        ]
        _emit_log(context, "debug", "Listing invocation profiles", extra={"count": len(catalog)})
        return catalog

    tool_execute = server.tool(
        name="execute_command",
        description=(
            "Run a prompt through the Claude CLI. Omit session_id to start a new session; "
            "pass one to continue it. Returns the output, run id and cost estimate."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "The CLI may edit files in the working directory with the allowed tools",
            }
        },
    )(_execute_command)

    tool_continue = server.tool(
        name="continue_session",
        description="Send a follow-up prompt to an existing session, reusing its conversation.",
    )(_continue_session)

    tool_kill = server.tool(
        name="kill_session",
        description="Terminate a session, cancelling its queued and running commands.",
    )(_kill_session)

    tool_fork = server.tool(
        name="fork_session",
        description="Copy a session's history (optionally up to message_index) into a new session.",
    )(_fork_session)

    tool_get_session = server.tool(
        name="get_session",
        description="Fetch a session's status, metadata, token usage and history.",
    )(_get_session)

    tool_list_sessions = server.tool(
        name="list_sessions",
        description="List live sessions with their status and token usage.",
    )(_list_sessions)

    tool_list_profiles = server.tool(
        name="list_profiles",
        description="List invocation profiles with their model and tool permissions.",
    )(_list_profiles)

    async def _generate_commit_messages(
        repositories: list[dict[str, Any]],
        *,
        model: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Generate commit messages for several repositories in parallel."""

        if not repositories:
            raise ValueError("repositories must contain at least one entry")
        try:
            requests = [CommitMessageRequest.model_validate(item) for item in repositories]
        except ValidationError as exc:
            raise ValueError(f"Invalid repository entry: {exc}") from exc

        batch = await conductor.generate_commit_messages(requests, model=model)
        _emit_log(
            context,
            "info",
            "Generated commit messages",
            extra={
                "batch_id": batch.batch_id,
                "success_count": batch.success_count,
                "failure_count": batch.failure_count,
            },
        )
        return batch.to_dict()

    async def _generate_executive_summary(
        commit_messages: list[dict[str, Any]],
        *,
        audience: str = "technical team",
        max_length: int = 500,
        focus_areas: list[str] | None = None,
        include_risk_assessment: bool = True,
        include_recommendations: bool = True,
        model: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Summarise a set of commit messages for the given audience."""

        try:
            request = ExecutiveSummaryRequest(
                commit_messages=commit_messages,
                audience=audience,
                max_length=max_length,
                focus_areas=focus_areas or [],
                include_risk_assessment=include_risk_assessment,
                include_recommendations=include_recommendations,
                model=model,
            )
        except ValidationError as exc:
            raise ValueError(f"Invalid summary request: {exc}") from exc

        result = await conductor.generate_executive_summary(request)
        _emit_log(
            context,
            "info" if result.success else "warning",
            "Generated executive summary",
            extra={"run_id": result.run_id, "success": result.success},
        )
        return result.to_dict()

    tool_commit_messages = server.tool(
        name="generate_commit_messages",
        description=(
            "Generate conventional commit messages for many repositories at once. Each entry needs "
            "repository and diff; path, recent_commits and context are optional. Failures are "
            "reported per repository."
        ),
    )(_generate_commit_messages)

    tool_summary = server.tool(
        name="generate_executive_summary",
        description="Produce an executive summary with themes, risk level and suggested actions.",
    )(_generate_executive_summary)

    def _list_agent_runs(
        *,
        status: str | None = None,
        repository: str | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """List stored agent runs, newest first."""

        runs = conductor.list_agent_runs(
            status=_parse_enum(RunStatus, status, "status"),
            repository=repository,
            kind=_parse_enum(RunKind, kind, "kind"),
            limit=limit,
            offset=offset,
        )
        _emit_log(context, "debug", "Listing agent runs", extra={"count": len(runs)})
        return {
            "runs": [run.summary() for run in runs],
            "total": conductor.runs.count_runs(),
            "limit": limit,
            "offset": offset,
        }

    def _get_agent_run(run_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the full stored record of an agent run."""

        try:
            run = conductor.get_agent_run(run_id)
        except NotFoundError as exc:
            raise ValueError(f"Agent run '{run_id}' not found") from exc
        return run.model_dump(mode="json")

    async def _retry_agent_run(
        run_id: str,
        *,
        wait: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Re-execute a finished run's input as a new run."""

        try:
            retry = await conductor.retry_agent_run(run_id, wait=wait)
        except NotFoundError as exc:
            raise ValueError(f"Agent run '{run_id}' not found") from exc
        except RunStateError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(
            context,
            "info",
            "Retrying agent run",
            extra={"run_id": retry.id, "parent_run_id": run_id, "retry_count": retry.retry_count},
        )
        return retry.summary()

    async def _cancel_agent_run(run_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel a queued or running agent run."""

        try:
            run = await conductor.cancel_agent_run(run_id)
        except NotFoundError as exc:
            raise ValueError(f"Agent run '{run_id}' not found") from exc
        except RunStateError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(context, "warning", "Cancelled agent run", extra={"run_id": run_id})
        return run.summary()

    def _run_statistics(context: Context | None = None) -> dict[str, Any]:
        """Aggregate counts, success rate and average duration of stored runs."""

        return conductor.run_statistics()

    def _agent_run_progress(run_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the latest progress event of a run."""

        event = conductor.agent_run_progress(run_id)
        if event is None:
            raise ValueError(f"No progress recorded for agent run '{run_id}'")
        return event.to_dict()

    def _batch_progress(batch_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the aggregated progress of a batch."""

        snapshot = conductor.batch_progress(batch_id)
        if snapshot is None:
            raise ValueError(f"Batch '{batch_id}' not found")
        return snapshot.to_dict()

    tool_list_runs = server.tool(
        name="list_agent_runs",
        description="List stored agent runs filtered by status, repository or kind.",
    )(_list_agent_runs)

    tool_get_run = server.tool(
        name="get_agent_run",
        description="Fetch a stored agent run with its input, output and error.",
    )(_get_agent_run)

    tool_retry_run = server.tool(
        name="retry_agent_run",
        description="Retry a finished agent run as a new run linked to the original.",
    )(_retry_agent_run)

    tool_cancel_run = server.tool(
        name="cancel_agent_run",
        description="Cancel an agent run that is still queued or running.",
    )(_cancel_agent_run)

    tool_statistics = server.tool(
        name="run_statistics",
        description="Summarise stored agent runs by status and repository.",
    )(_run_statistics)

    tool_run_progress = server.tool(
        name="agent_run_progress",
        description="Fetch the current stage and percentage of an agent run.",
    )(_agent_run_progress)

    tool_batch_progress = server.tool(
        name="batch_progress",
        description="Fetch the aggregated progress of a commit message batch.",
    )(_batch_progress)

    async def _claim_prewarmed_session(context: Context | None = None) -> dict[str, Any]:
        """Take a ready pre-warmed session out of the pool."""

        session = await conductor.claim_prewarmed_session()
        _emit_log(
            context,
            "info" if session is not None else "debug",
            "Claim pre-warmed session",
            extra={"session_id": session.id if session is not None else None},
        )
        if session is None:
            return {"claimed": False, "session": None, "pool": conductor.prewarm.status()}
        return {"claimed": True, "session": session.to_dict(include_history=False)}

    def _prewarm_status(context: Context | None = None) -> dict[str, Any]:
        """Report the pre-warm pool configuration and its sessions."""

        return conductor.prewarm_metrics()

    def _create_session_template(
        session_id: str,
        name: str,
        *,
        description: str = "",
        tags: list[str] | None = None,
        include_history: bool = False,
        variables: list[dict[str, Any]] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Capture a session as a reusable template."""

        try:
            template = conductor.create_session_template(
                session_id,
                name=name,
                description=description,
                tags=tags or [],
                include_history=include_history,
                variables=_template_variables(variables or []),
            )
        except NotFoundError as exc:
            raise ValueError(f"Session '{session_id}' not found") from exc
        _emit_log(
            context,
            "info",
            "Created session template",
            extra={"template_id": template.id, "session_id": session_id},
        )
        return template.to_dict()

    def _create_session_from_template(
        template_id: str,
        *,
        name: str | None = None,
        working_directory: str | None = None,
        values: dict[str, str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start a new session from a template, filling in its variables."""

        try:
            session = conductor.create_session_from_template(
                template_id, name=name, working_directory=working_directory, values=values
            )
        except NotFoundError as exc:
            raise ValueError(f"Template '{template_id}' not found") from exc
        _emit_log(
            context,
            "info",
            "Created session from template",
            extra={"session_id": session.id, "template_id": template_id},
        )
        return session.to_dict(include_history=False)

    def _list_session_templates(context: Context | None = None) -> list[dict[str, Any]]:
        return [template.to_dict() for template in conductor.list_session_templates()]

    async def _archive_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Terminate a session and store its final state as compressed JSON."""

        try:
            archive = await conductor.archive_session(session_id)
        except NotFoundError as exc:
            raise ValueError(f"Session '{session_id}' not found") from exc
        _emit_log(context, "info", "Archived session", extra={"session_id": session_id, "path": archive.path})
        return archive.to_dict()

    async def _batch_session_operation(
        session_ids: list[str],
        operation: str,
        *,
        tags: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Archive, delete, export or tag several sessions at once."""

        if not session_ids:
            raise ValueError("session_ids must contain at least one entry")
        try:
            parsed = SessionOperation(operation.upper())
        except ValueError as exc:
            allowed = ", ".join(member.value for member in SessionOperation)
            raise ValueError(f"Invalid operation '{operation}'. Must be one of {allowed}") from exc
        if parsed is SessionOperation.TAG and not tags:
            raise ValueError("tags are required for the TAG operation")
        result = await conductor.batch_session_operation(session_ids, parsed, tags=tags or [])
        _emit_log(
            context,
            "info",
            "Batch session operation",
            extra={
                "operation": parsed.value,
                "success_count": result["success_count"],
                "failed_count": result["failed_count"],
            },
        )
        return result

    def _create_handoff(
        session_id: str,
        *,
        target: str | None = None,
        notes: str | None = None,
        include_full_history: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Write a markdown handoff document for a session."""

        try:
            document = conductor.create_handoff(
                session_id, target=target, notes=notes, include_full_history=include_full_history
            )
        except NotFoundError as exc:
            raise ValueError(f"Session '{session_id}' not found") from exc
        return document.to_dict()

    tool_claim_prewarmed = server.tool(
        name="claim_prewarmed_session",
        description="Claim an already initialised session from the pre-warm pool, if one is ready.",
    )(_claim_prewarmed_session)

    tool_prewarm_status = server.tool(
        name="prewarm_status",
        description="Show the pre-warm pool size, its ready and warming sessions and claim counts.",
    )(_prewarm_status)

    tool_create_template = server.tool(
        name="create_session_template",
        description=(
            "Save a session as a template. The project context may use {{name}} placeholders "
            "declared in variables; include_history copies completed exchanges."
        ),
    )(_create_session_template)

    tool_from_template = server.tool(
        name="create_session_from_template",
        description="Create a session from a template, substituting the given variable values.",
    )(_create_session_from_template)

    tool_list_templates = server.tool(
        name="list_session_templates",
        description="List session templates with their variables and usage counts.",
    )(_list_session_templates)

    tool_archive = server.tool(
        name="archive_session",
        description="Terminate a session and write its history and metadata to a gzipped JSON file.",
    )(_archive_session)

    tool_batch_sessions = server.tool(
        name="batch_session_operation",
        description="Apply ARCHIVE, DELETE, EXPORT or TAG to several sessions; failures are reported per session.",
    )(_batch_session_operation)

    tool_handoff = server.tool(
        name="create_handoff",
        description="Write a markdown handoff document summarising a session for another developer.",
    )(_create_handoff)

    return ToolHandles(
        execute_command=tool_execute,
        continue_session=tool_continue,
        kill_session=tool_kill,
        fork_session=tool_fork,
        get_session=tool_get_session,
        list_sessions=tool_list_sessions,
        list_profiles=tool_list_profiles,
        generate_commit_messages=tool_commit_messages,
        generate_executive_summary=tool_summary,
        list_agent_runs=tool_list_runs,
        get_agent_run=tool_get_run,
        retry_agent_run=tool_retry_run,
        cancel_agent_run=tool_cancel_run,
        run_statistics=tool_statistics,
        agent_run_progress=tool_run_progress,
        batch_progress=tool_batch_progress,
        claim_prewarmed_session=tool_claim_prewarmed,
        prewarm_status=tool_prewarm_status,
        create_session_template=tool_create_template,
        create_session_from_template=tool_from_template,
        list_session_templates=tool_list_templates,
        archive_session=tool_archive,
        batch_session_operation=tool_batch_sessions,
        create_handoff=tool_handoff,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
