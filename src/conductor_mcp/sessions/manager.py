"""Session lifecycle and command execution."""

from __future__ import annotations

import asyncio
import gzip
import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..claude.runner import ClaudeRunner, ClaudeUnavailableError, InvocationResult, OutputChunk, OutputType
from ..claude.utils import estimate_cost, estimate_tokens
from ..errors import CommandCancelledError, CommandFailedError, ConductorError, NotFoundError
from ..events import EventChannel, Subscription
from ..profiles import InvocationProfile, ProfileLoadError, ProfileLoader, permission_flags
from ..progress import ProgressStage, ProgressTracker
from ..runs.models import RunError, RunInput, RunKind, RunOutput, RunStatus
from ..runs.store import RunStore, error_from_exception
from ..scheduler import Scheduler
from .models import (
    CommandOptions,
    ContinuationMode,
    Exchange,
    Session,
    SessionArchive,
    SessionMetadata,
    SessionOperation,
    SessionStatus,
    SessionTemplate,
    TemplateVariable,
)
from .prompts import build_session_prompt

logger = logging.getLogger(__name__)


class SessionNotFoundError(NotFoundError):
    """Raised when a session id is unknown."""


class TemplateNotFoundError(NotFoundError):
    """Raised when a session template id is unknown."""


_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template_context(template: SessionTemplate, values: Mapping[str, str]) -> str:
    """Substitute ``{{name}}`` placeholders with supplied or default values."""

    resolved: dict[str, str] = {}
    missing: list[str] = []
    for variable in template.variables:
        value = values.get(variable.name, variable.default_value)
        if value is None:
            if variable.required:
                missing.append(variable.name)
            continue
        resolved[variable.name] = value
    if missing:
        raise ValueError(f"Missing values for template variables: {', '.join(missing)}")
    return _PLACEHOLDER.sub(lambda match: resolved.get(match.group(1), match.group(0)), template.project_context)


@dataclass(slots=True)
class CommandResult:
    session_id: str | None
    run_id: str | None
    output: str
    success: bool
    error: RunError | None = None
    continuation_token: str | None = None
    cost_estimate: float | None = None
    execution_time_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "run_id": self.run_id,
            "success": self.success,
            "output": self.output,
            "error": self.error.model_dump() if self.error else None,
            "continuation_token": self.continuation_token,
            "cost_estimate": self.cost_estimate,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass(slots=True)
class CommandHandle:
    """A dispatched command; ``task`` resolves to a ``CommandResult``."""

    session_id: str
    run_id: str
    task: asyncio.Task[CommandResult] = field(repr=False)

    async def wait(self) -> CommandResult:
        return await self.task


@dataclass(slots=True)
class _Command:
    session: Session
    exchange: Exchange
    run_id: str
    prompt: str
    flags: list[str]
    timeout: float | None


class SessionStore:
    """Registry of conversational sessions backed by the scheduler and runner.

    Commands for one session run strictly one at a time in submission order.
    Each command is recorded as an ``AgentRun`` and walked through the progress
    stages; its output chunks are published on the session's output channel.
    """

    def __init__(
        self,
        runner: ClaudeRunner | None,
        scheduler: Scheduler,
        runs: RunStore,
        progress: ProgressTracker,
        *,
        profiles: ProfileLoader | None = None,
        default_model: str | None = None,
        allowed_tools: Sequence[str] = (),
        skip_permissions: bool = False,
        archive_root: Path | None = None,
    ) -> None:
        self._runner = runner
        self._scheduler = scheduler
        self._runs = runs
        self._progress = progress
        self._profiles = profiles
        self._default_model = default_model
        self._allowed_tools = tuple(allowed_tools)
        self._skip_permissions = skip_permissions
        self._archive_root = archive_root
        self._sessions: dict[str, Session] = {}
        self._templates: dict[str, SessionTemplate] = {}
        self._tasks: dict[str, set[asyncio.Task[CommandResult]]] = {}
        self._run_tasks: dict[str, asyncio.Task[CommandResult]] = {}
        self._cancel_reasons: dict[str, str] = {}
        self._output: EventChannel[OutputChunk] = EventChannel(
            "command_output", is_terminal=lambda chunk: chunk.is_final
        )

    @property
    def runner(self) -> ClaudeRunner | None:
        return self._runner

    @property
    def available(self) -> bool:
        return self._runner is not None

    # -- registry ----------------------------------------------------------

    def create_session(
        self,
        working_directory: str | Path | None = None,
        *,
        project_context: str | None = None,
        model: str | None = None,
        name: str | None = None,
    ) -> Session:
        session = Session(
            id=str(uuid.uuid4()),
            working_directory=str(working_directory or os.getcwd()),
            metadata=SessionMetadata(
                model=model or self._default_model,
                project_context=project_context,
                name=name,
            ),
        )
        self._sessions[session.id] = session
        logger.info(
            "Created session",
            extra={"session_id": session.id, "working_directory": session.working_directory},
        )
        return session

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def list_sessions(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda session: session.created_at)

    def fork_session(
        self,
        session_id: str,
        *,
        message_index: int | None = None,
        include_history: bool = True,
        name: str | None = None,
    ) -> Session:
        """Copy a session's finished history into a new session.

        The fork never inherits the source's continuation token; when it holds
        a completed exchange its next prompt replays the copied transcript.
        """

        source = self.require_session(session_id)
        if message_index is not None and not 0 <= message_index < len(source.history):
            raise ValueError(
                f"message_index {message_index} is out of range for a history of {len(source.history)}"
            )

        history: list[Exchange] = []
        if include_history:
            selected = source.history if message_index is None else source.history[: message_index + 1]
            history = [exchange.copy() for exchange in selected if not exchange.pending]

        fork = self.create_session(
            source.working_directory,
            project_context=source.metadata.project_context,
            model=source.metadata.model,
            name=name or (f"{source.metadata.name} (fork)" if source.metadata.name else None),
        )
        fork.history = history
        fork.metadata.forked_from = source.id
        fork.metadata.forked_at_index = message_index
        if any(exchange.completed for exchange in history):
            fork.continuation_mode = ContinuationMode.NEEDS_REPLAY
        logger.info(
            "Forked session",
            extra={"session_id": fork.id, "source_session_id": source.id, "exchanges": len(history)},
        )
        return fork

    def tag_session(self, session_id: str, tags: Sequence[str]) -> Session:
        session = self.require_session(session_id)
        session.metadata.tags = [tag for tag in dict.fromkeys(tags) if tag]
        session.touch()
        return session

    # -- templates ---------------------------------------------------------

    def create_template(
        self,
        session_id: str,
        *,
        name: str,
        description: str = "",
        tags: Sequence[str] = (),
        include_history: bool = False,
        variables: Sequence[TemplateVariable] = (),
    ) -> SessionTemplate:
        """Capture a session's model and context as a reusable template.

        Without ``include_history`` only the project context is kept, falling
        back to the session's first prompt.
        """

        session = self.require_session(session_id)
        history = [exchange.copy() for exchange in session.history if exchange.completed] if include_history else []
        context = session.metadata.project_context or (session.history[0].prompt if session.history else "")
        template = SessionTemplate(
            id=str(uuid.uuid4()),
            name=name,
            source_session_id=session.id,
            description=description,
            tags=list(tags),
            model=session.metadata.model,
            project_context=context,
            history=history,
            variables=list(variables),
        )
        self._templates[template.id] = template
        logger.info(
            "Created session template",
            extra={"template_id": template.id, "session_id": session.id, "exchanges": len(history)},
        )
        return template

    def get_template(self, template_id: str) -> SessionTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")
        return template

    def list_templates(self) -> list[SessionTemplate]:
        return sorted(self._templates.values(), key=lambda template: template.created_at)

    def create_session_from_template(
        self,
        template_id: str,
        *,
        name: str | None = None,
        working_directory: str | Path | None = None,
        values: Mapping[str, str] | None = None,
    ) -> Session:
        template = self.get_template(template_id)
        context = render_template_context(template, values or {})
        session = self.create_session(
            working_directory,
            project_context=context or None,
            model=template.model,
            name=name or template.name,
        )
        session.history = [exchange.copy() for exchange in template.history]
        session.metadata.from_template = template.id
        session.metadata.tags = list(template.tags)
        if session.history:
            session.continuation_mode = ContinuationMode.NEEDS_REPLAY
        template.usage_count += 1
        template.last_used_at = datetime.now(timezone.utc)
        return session

    # -- archive and bulk operations ---------------------------------------

    async def archive_session(self, session_id: str) -> SessionArchive:
        """Terminate a session and write its final state as gzipped JSON."""

        if self._archive_root is None:
            raise ConductorError("Session archiving is not configured")
        session = self.require_session(session_id)
        await self.kill_session(session_id)

        document = json.dumps(session.to_dict(), indent=2).encode("utf-8")
        compressed = gzip.compress(document)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        self._archive_root.mkdir(parents=True, exist_ok=True)
        path = self._archive_root / f"{session_id}-{stamp}.json.gz"
        path.write_bytes(compressed)
        archive = SessionArchive(
            archive_id=str(uuid.uuid4()),
            session_id=session_id,
            path=str(path),
            size_bytes=len(compressed),
            original_size_bytes=len(document),
        )
        logger.info("Archived session", extra={"session_id": session_id, "path": archive.path})
        return archive

    async def batch_session_operation(
        self,
        session_ids: Sequence[str],
        operation: SessionOperation,
        *,
        tags: Sequence[str] = (),
    ) -> dict[str, Any]:
        """Apply ``operation`` to every session; failures are reported per id."""

        results: list[dict[str, Any]] = []
        for session_id in session_ids:
            try:
                data = await self._apply_operation(session_id, operation, tags)
            except (ConductorError, OSError) as exc:
                logger.warning(
                    "Session operation failed",
                    extra={"session_id": session_id, "operation": operation.value, "error": str(exc)},
                )
                results.append({"session_id": session_id, "success": False, "error": str(exc)})
                continue
            results.append({"session_id": session_id, "success": True, "data": data})
        success_count = sum(1 for result in results if result["success"])
        return {
            "operation": operation.value,
            "total_processed": len(results),
            "success_count": success_count,
            "failed_count": len(results) - success_count,
            "results": results,
        }

    async def _apply_operation(
        self, session_id: str, operation: SessionOperation, tags: Sequence[str]
    ) -> dict[str, Any]:
        if operation is SessionOperation.ARCHIVE:
            return (await self.archive_session(session_id)).to_dict()
        if operation is SessionOperation.DELETE:
            if not await self.kill_session(session_id):
                raise SessionNotFoundError(f"Session {session_id} not found")
            return {"deleted": True}
        if operation is SessionOperation.EXPORT:
            return {"session": self.require_session(session_id).to_dict()}
        return {"tags": list(self.tag_session(session_id, tags).metadata.tags)}

    # -- output ------------------------------------------------------------

    def subscribe_output(self, session_id: str) -> Subscription[OutputChunk]:
        self.require_session(session_id)
        return self._output.subscribe(session_id)

    def _listener_for(self, session_id: str):
        def _publish(chunk: OutputChunk) -> None:
            self._output.publish(session_id, chunk)

        return _publish

    # -- commands ----------------------------------------------------------

    def dispatch_command(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        working_directory: str | Path | None = None,
        options: CommandOptions | None = None,
        run_id: str | None = None,
    ) -> CommandHandle:
        """Queue ``prompt`` for execution and return immediately.

        An absent or unknown ``session_id`` creates a new session. ``run_id``
        executes an existing QUEUED run instead of creating one.
        """

        options = options or CommandOptions()
        session = self._sessions.get(session_id) if session_id else None
        if self._runner is None:
            if session is not None:
                session.status = SessionStatus.ERROR
            raise ClaudeUnavailableError("Claude CLI is not available")
        profile = self._lookup_profile(options.profile_id)

        if session is None:
            if session_id:
                logger.info("Unknown session id, creating a new session", extra={"session_id": session_id})
            session = self.create_session(
                working_directory,
                project_context=options.project_context,
                model=options.model,
            )
        elif options.project_context:
            session.metadata.project_context = options.project_context

        model, flags = self._resolve_flags(session, options, profile)

        if run_id is None:
            run = self._runs.create_run(
                RunInput(
                    prompt=prompt,
                    model=model,
                    working_directory=session.working_directory,
                    flags=list(options.custom_flags),
                ),
                kind=RunKind.COMMAND,
                session_id=session.id,
                repository=Path(session.working_directory).name or None,
            )
        else:
            run = self._runs.require_run(run_id)
            if run.status != RunStatus.QUEUED:
                raise ConductorError(f"Agent run {run_id} is {run.status.value}, expected QUEUED")
            run.session_id = session.id
            run = self._runs.save_run(run)

        exchange = Exchange(prompt=prompt, run_id=run.id)
        session.history.append(exchange)
        session.touch()
        self._progress.update_run_progress(
            run.id, ProgressStage.QUEUED, "Waiting for capacity", repository=run.repository
        )

        command = _Command(
            session=session,
            exchange=exchange,
            run_id=run.id,
            prompt=prompt,
            flags=flags,
            timeout=options.timeout,
        )
        task = asyncio.get_running_loop().create_task(self._run_command(command))
        tasks = self._tasks.setdefault(session.id, set())
        tasks.add(task)
        self._run_tasks[run.id] = task
        task.add_done_callback(lambda done: self._forget_task(session.id, run.id, done))
        logger.info(
            "Dispatched command",
            extra={"session_id": session.id, "run_id": run.id, "prompt_length": len(prompt)},
        )
        return CommandHandle(session_id=session.id, run_id=run.id, task=task)

    async def execute_command(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        working_directory: str | Path | None = None,
        options: CommandOptions | None = None,
    ) -> CommandResult:
        """Run ``prompt`` to completion; invocation errors are re-raised."""

        handle = self.dispatch_command(
            prompt, session_id=session_id, working_directory=working_directory, options=options
        )
        return await handle.wait()

    def _lookup_profile(self, profile_id: str | None) -> InvocationProfile | None:
        if not profile_id:
            return None
        if self._profiles is None:
            raise NotFoundError(f"Profile '{profile_id}' not found: no profiles configured")
        try:
            return self._profiles.get(profile_id)
        except ProfileLoadError as exc:
            raise NotFoundError(str(exc)) from exc

    def _resolve_flags(
        self, session: Session, options: CommandOptions, profile: InvocationProfile | None
    ) -> tuple[str | None, list[str]]:
        model = options.model or (profile.model if profile else None) or session.metadata.model
        if profile is not None:
            flags = profile.cli_flags(self._allowed_tools, model=model)
        else:
            flags = ["--model", model] if model else []
            flags.extend(permission_flags(self._allowed_tools, skip_permissions=self._skip_permissions))
        flags.extend(options.custom_flags)
        return model, flags

    async def _run_command(self, command: _Command) -> CommandResult:
        session = command.session
        run_id = command.run_id
        started = time.monotonic()

        def _admitted() -> None:
            if session.status != SessionStatus.TERMINATED:
                session.status = SessionStatus.PROCESSING
            self._runs.update_status(run_id, RunStatus.RUNNING, session_id=session.id)
            self._progress.update_run_progress(run_id, ProgressStage.INITIALIZING, "Starting Claude")

        try:
            result, sent_prompt = await self._scheduler.submit(
                lambda: self._invoke(command),
                key=session.id,
                on_admitted=_admitted,
            )
        except asyncio.CancelledError:
            self._record_cancelled(command, started)
            raise CommandCancelledError(f"Command for session {session.id} was cancelled") from None
        except ConductorError as exc:
            self._record_failure(command, exc, started)
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error while running command",
                extra={"session_id": session.id, "run_id": run_id},
            )
            failure = CommandFailedError(f"Command for session {session.id} failed: {exc}")
            self._record_failure(command, failure, started)
            raise failure from exc

        return self._record_success(command, result, sent_prompt, started)

    async def _invoke(self, command: _Command) -> tuple[InvocationResult, str]:
        session = command.session
        self._progress.update_run_progress(command.run_id, ProgressStage.LOADING_CONTEXT, "Building prompt")
        prompt, continuation_token = build_session_prompt(session, command.prompt)
        logger.debug(
            "Invoking Claude",
            extra={
                "session_id": session.id,
                "run_id": command.run_id,
                "mode": session.continuation_mode.value,
                "resume": continuation_token is not None,
            },
        )
        self._progress.update_run_progress(command.run_id, ProgressStage.PROCESSING, "Waiting for Claude")
        runner = self._runner
        if runner is None:
            raise ClaudeUnavailableError("Claude CLI is not available")
        result = await runner.invoke(
            prompt,
            working_directory=session.working_directory,
            continuation_token=continuation_token,
            flags=command.flags,
            session_id=session.id,
            listener=self._listener_for(session.id),
            timeout=command.timeout,
        )
        return result, prompt

    def _record_success(
        self, command: _Command, result: InvocationResult, sent_prompt: str, started: float
    ) -> CommandResult:
        session = command.session
        run_id = command.run_id
        self._progress.update_run_progress(run_id, ProgressStage.PARSING_RESPONSE, "Parsing response")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        exchange = command.exchange
        exchange.response = result.result_text
        exchange.success = True
        exchange.execution_time_ms = elapsed_ms
        exchange.continuation_token = result.continuation_token

        if result.continuation_token:
            session.metadata.continuation_token = result.continuation_token
            session.continuation_mode = ContinuationMode.CONTINUABLE
        elif session.continuation_mode is ContinuationMode.NEW:
            session.continuation_mode = ContinuationMode.NEEDS_REPLAY

        input_tokens = estimate_tokens(sent_prompt)
        output_tokens = estimate_tokens(result.result_text)
        cost = result.cost_estimate
        if cost is None:
            cost = estimate_cost(input_tokens, output_tokens)
        session.metadata.token_usage.add(input_tokens=input_tokens, output_tokens=output_tokens, cost=cost)
        if session.status != SessionStatus.TERMINATED:
            busy = self._scheduler.is_busy(session.id)
            session.status = SessionStatus.PROCESSING if busy else SessionStatus.IDLE
        session.touch()

        self._progress.update_run_progress(run_id, ProgressStage.SAVING_RESULTS, "Saving results")
        self._runs.update_status(
            run_id,
            RunStatus.SUCCESS,
            output=RunOutput(
                message=result.result_text,
                raw_response=result.raw_output,
                tokens_used=input_tokens + output_tokens,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_estimate=cost,
            ),
        )
        self._progress.update_run_progress(run_id, ProgressStage.COMPLETED, "Completed")
        logger.info(
            "Command completed",
            extra={"session_id": session.id, "run_id": run_id, "duration_ms": elapsed_ms},
        )
        return CommandResult(
            session_id=session.id,
            run_id=run_id,
            output=result.result_text,
            success=True,
            continuation_token=result.continuation_token,
            cost_estimate=cost,
            execution_time_ms=elapsed_ms,
        )

    def _record_failure(self, command: _Command, exc: ConductorError, started: float) -> None:
        session = command.session
        error = error_from_exception(exc)
        diagnostic = getattr(exc, "stderr", "") or str(exc)
        self._close_exchange(command.exchange, diagnostic, started)
        if session.status != SessionStatus.TERMINATED:
            session.status = SessionStatus.ERROR
        session.touch()
        self._runs.update_status(command.run_id, RunStatus.FAILED, error=error)
        self._progress.mark_run_failed(command.run_id, error.message)
        log = logger.warning if error.recoverable else logger.error
        log(
            "Command failed",
            extra={"session_id": session.id, "run_id": command.run_id, "code": error.code},
        )

    def _record_cancelled(self, command: _Command, started: float) -> None:
        reason = self._cancel_reasons.pop(command.run_id, "Session was killed")
        self._close_exchange(command.exchange, reason, started)
        run = self._runs.get_run(command.run_id)
        if run is not None and not run.status.is_terminal:
            self._runs.update_status(
                command.run_id,
                RunStatus.CANCELLED,
                error=RunError(code=CommandCancelledError.code, message=reason),
            )
        self._progress.mark_run_cancelled(command.run_id, reason)
        session = command.session
        if session.status == SessionStatus.PROCESSING and not self._scheduler.is_busy(session.id):
            session.status = SessionStatus.IDLE
        logger.warning(
            "Command cancelled",
            extra={"session_id": command.session.id, "run_id": command.run_id},
        )

    @staticmethod
    def _close_exchange(exchange: Exchange, diagnostic: str, started: float) -> None:
        exchange.response = diagnostic
        exchange.success = False
        exchange.execution_time_ms = int((time.monotonic() - started) * 1000)

    def _forget_task(self, session_id: str, run_id: str, task: asyncio.Task[CommandResult]) -> None:
        self._run_tasks.pop(run_id, None)
        tasks = self._tasks.get(session_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._tasks.pop(session_id, None)
        if not task.cancelled():
            # Failures are already logged and recorded on the run.
            task.exception()

    # -- teardown ----------------------------------------------------------

    async def cancel_command(self, run_id: str, reason: str = "Cancelled by request") -> bool:
        """Cancel the queued or running command executing ``run_id``."""

        task = self._run_tasks.get(run_id)
        if task is None or task.done():
            return False
        self._cancel_reasons[run_id] = reason
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def kill_session(self, session_id: str) -> bool:
        """Terminate a session and any command it has queued or running."""

        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.status = SessionStatus.TERMINATED
        tasks = list(self._tasks.get(session_id, ()))
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._output.publish(
            session_id,
            OutputChunk(
                session_id=session_id,
                type=OutputType.STDERR,
                content="Session terminated",
                is_final=True,
            ),
        )
        self._output.close_key(session_id)
        logger.info("Killed session", extra={"session_id": session_id, "cancelled_commands": len(tasks)})
        return True

    async def shutdown(self) -> None:
        tasks = [task for group in self._tasks.values() for task in group]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for session in self._sessions.values():
            session.status = SessionStatus.TERMINATED
        self._sessions.clear()
        self._output.close_all()
        logger.info("Session store shut down", extra={"cancelled_commands": len(tasks)})

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def active_commands(self) -> int:
        return sum(len(tasks) for tasks in self._tasks.values())


__all__ = [
    "CommandHandle",
    "CommandResult",
    "SessionNotFoundError",
    "SessionStore",
    "TemplateNotFoundError",
    "render_template_context",
]
