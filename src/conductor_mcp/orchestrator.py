"""Composition root wiring the orchestration components together."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Sequence

from . import __version__
from .batch import (
    BatchCommitMessageResult,
    CommitMessageBatch,
    CommitMessageRequest,
    ExecutiveSummaryGenerator,
    ExecutiveSummaryRequest,
    ExecutiveSummaryResult,
)
from .batch.oneshot import run_one_shot
from .claude import ClaudeNotFoundError, ClaudeRunner, OutputChunk
from .config import ConductorSettings
from .errors import ConductorError
from .events import Subscription
from .profiles import ProfileLoader
from .progress import BatchProgress, ProgressEvent, ProgressTracker
from .runs import AgentRun, RunCleanupJob, RunKind, RunStatus, RunStore, error_from_exception
from .scheduler import Scheduler
from .sessions import (
    CommandOptions,
    CommandResult,
    HandoffDocument,
    PrewarmPool,
    Session,
    SessionArchive,
    SessionOperation,
    SessionStore,
    SessionTemplate,
    TemplateVariable,
    write_handoff,
)

logger = logging.getLogger(__name__)


def build_runner(settings: ConductorSettings) -> tuple[ClaudeRunner | None, str | None]:
    """Locate the Claude CLI; returns ``(None, reason)`` when it is missing."""

    try:
        runner = ClaudeRunner(
            Path(settings.claude_path) if settings.claude_path else None,
            timeout=settings.invocation_timeout,
            kill_grace_period=settings.kill_grace_period,
        )
    except ClaudeNotFoundError as exc:
        logger.warning("Claude CLI unavailable", extra={"error": str(exc)})
        return None, str(exc)
    return runner, None


class Conductor:
    """Owns every orchestration component for the lifetime of a server.

    Construction builds the stores; ``start`` launches the retention job and the
    progress sweep and ``shutdown`` cancels in-flight commands and stops both.
    """

    def __init__(
        self,
        settings: ConductorSettings,
        *,
        runner: ClaudeRunner | None = None,
        profiles: ProfileLoader | None = None,
    ) -> None:
        self.settings = settings
        self.runner_error: str | None = None
        if runner is None:
            runner, self.runner_error = build_runner(settings)
        self.runner = runner
        self.profiles = profiles or ProfileLoader(settings.profile_paths)
        self.scheduler = Scheduler(
            max_concurrency=settings.max_concurrency,
            rate_limit_count=settings.rate_limit_count,
            rate_limit_interval=settings.rate_limit_interval,
        )
        self.runs = RunStore(settings.run_storage_path)
        self.progress = ProgressTracker(
            batch_retention=timedelta(minutes=settings.batch_retention_minutes),
            sweep_interval=settings.progress_sweep_interval,
        )
        self.sessions = SessionStore(
            runner,
            self.scheduler,
            self.runs,
            self.progress,
            profiles=self.profiles,
            default_model=settings.default_model,
            allowed_tools=settings.allowed_tools,
            skip_permissions=settings.skip_permissions,
            archive_root=settings.session_archive_path,
        )
        self.cleanup = RunCleanupJob(
            self.runs,
            interval=timedelta(hours=settings.cleanup_interval_hours),
            max_age=timedelta(days=settings.run_retention_days),
        )
        self.commit_messages = CommitMessageBatch(self.sessions, self.runs, self.progress)
        self.summaries = ExecutiveSummaryGenerator(self.sessions, self.runs, self.progress)
        self.prewarm = PrewarmPool(
            self.sessions,
            pool_size=settings.prewarm_pool_size if runner is not None else 0,
            max_age=timedelta(seconds=settings.prewarm_max_age_seconds),
            maintenance_interval=settings.prewarm_interval,
            warmup_prompt=settings.prewarm_prompt,
            warmup_timeout=settings.prewarm_timeout,
        )
        self._background: set[asyncio.Task[None]] = set()
        self._started = False

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self.cleanup.start()
        self.progress.start()
        self.prewarm.start()
        self._started = True
        logger.info("Conductor started", extra={"claude_available": self.runner is not None})

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.prewarm.stop()
        await self.sessions.shutdown()
        await self.cleanup.stop()
        await self.progress.stop()
        self._started = False
        logger.info("Conductor stopped")

    async def __aenter__(self) -> "Conductor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # -- sessions ----------------------------------------------------------

    async def execute_command(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        working_directory: str | None = None,
        options: CommandOptions | None = None,
    ) -> CommandResult:
        """Run a prompt and report failures in the result instead of raising."""

        try:
            handle = self.sessions.dispatch_command(
                prompt,
                session_id=session_id,
                working_directory=working_directory,
                options=options,
            )
        except ConductorError as exc:
            return CommandResult(
                session_id=session_id,
                run_id=None,
                output="",
                success=False,
                error=error_from_exception(exc),
            )

        try:
            return await handle.wait()
        except ConductorError as exc:
            return CommandResult(
                session_id=handle.session_id,
                run_id=handle.run_id,
                output="",
                success=False,
                error=error_from_exception(exc),
            )

    async def continue_session(
        self, session_id: str, prompt: str, *, options: CommandOptions | None = None
    ) -> CommandResult:
        self.sessions.require_session(session_id)
        return await self.execute_command(prompt, session_id=session_id, options=options)

    async def kill_session(self, session_id: str) -> bool:
        return await self.sessions.kill_session(session_id)

    def fork_session(
        self,
        session_id: str,
        *,
        message_index: int | None = None,
        include_history: bool = True,
        name: str | None = None,
    ) -> Session:
        return self.sessions.fork_session(
            session_id, message_index=message_index, include_history=include_history, name=name
        )

    def get_session(self, session_id: str) -> Session:
        return self.sessions.require_session(session_id)

    def list_sessions(self) -> list[Session]:
        return self.sessions.list_sessions()

    async def claim_prewarmed_session(self) -> Session | None:
        return await self.prewarm.claim()

    def prewarm_metrics(self) -> dict[str, Any]:
        return self.prewarm.metrics()

    # -- session management ------------------------------------------------

    def create_session_template(
        self,
        session_id: str,
        *,
        name: str,
        description: str = "",
        tags: Sequence[str] = (),
        include_history: bool = False,
        variables: Sequence[TemplateVariable] = (),
    ) -> SessionTemplate:
        return self.sessions.create_template(
            session_id,
            name=name,
            description=description,
            tags=tags,
            include_history=include_history,
            variables=variables,
        )

    def create_session_from_template(
        self,
        template_id: str,
        *,
        name: str | None = None,
        working_directory: str | None = None,
        values: dict[str, str] | None = None,
    ) -> Session:
        return self.sessions.create_session_from_template(
            template_id, name=name, working_directory=working_directory, values=values
        )

    def list_session_templates(self) -> list[SessionTemplate]:
        return self.sessions.list_templates()

    async def archive_session(self, session_id: str) -> SessionArchive:
        return await self.sessions.archive_session(session_id)

    async def batch_session_operation(
        self, session_ids: Sequence[str], operation: SessionOperation, *, tags: Sequence[str] = ()
    ) -> dict[str, Any]:
        return await self.sessions.batch_session_operation(session_ids, operation, tags=tags)

    def create_handoff(
        self,
        session_id: str,
        *,
        target: str | None = None,
        notes: str | None = None,
        include_full_history: bool = False,
    ) -> HandoffDocument:
        session = self.sessions.require_session(session_id)
        document = write_handoff(
            session,
            self.settings.handoff_path,
            target=target,
            notes=notes,
            include_full_history=include_full_history,
        )
        logger.info("Wrote session handoff", extra={"session_id": session_id, "path": str(document.path)})
        return document

    # -- batches -----------------------------------------------------------

    async def generate_commit_messages(
        self, requests: Sequence[CommitMessageRequest], *, model: str | None = None
    ) -> BatchCommitMessageResult:
        return await self.commit_messages.generate(requests, model=model or self.settings.default_model)

    async def generate_executive_summary(self, request: ExecutiveSummaryRequest) -> ExecutiveSummaryResult:
        return await self.summaries.generate(request)

    async def summarize_batch(self, batch: BatchCommitMessageResult, **options: Any) -> ExecutiveSummaryResult:
        return await self.summaries.summarize_batch(batch, **options)

    # -- runs --------------------------------------------------------------

    def list_agent_runs(
        self,
        *,
        status: RunStatus | None = None,
        repository: str | None = None,
        kind: RunKind | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[AgentRun]:
        return self.runs.list_runs(status=status, repository=repository, kind=kind, limit=limit, offset=offset)

    def get_agent_run(self, run_id: str) -> AgentRun:
        return self.runs.require_run(run_id)

    def run_statistics(self) -> dict[str, Any]:
        return self.runs.statistics()

    async def retry_agent_run(self, run_id: str, *, wait: bool = False) -> AgentRun:
        """Re-execute a finished run's input as a brand-new run.

        The retry is scheduled in the background; ``wait`` blocks until it
        finishes and returns its final record.
        """

        retry = self.runs.retry_run(run_id)
        task = asyncio.get_running_loop().create_task(self._execute_retry(retry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        if wait:
            await task
            return self.runs.require_run(retry.id)
        return retry

    async def _execute_retry(self, run: AgentRun) -> None:
        options = CommandOptions(model=run.input.model, custom_flags=list(run.input.flags))
        try:
            outcome = await run_one_shot(self.sessions, self.runs, self.progress, run, options=options)
        except ConductorError as exc:
            logger.warning("Retried run failed", extra={"run_id": run.id, "code": exc.code})
            return
        if run.kind is RunKind.COMMIT_MESSAGE:
            self.commit_messages.finalize_run(run.id, outcome.output)

    async def cancel_agent_run(self, run_id: str) -> AgentRun:
        if await self.sessions.cancel_command(run_id):
            return self.runs.require_run(run_id)
        run = self.runs.cancel_run(run_id)
        self.progress.mark_run_cancelled(run_id, "Cancelled by request")
        return run

    # -- progress ----------------------------------------------------------

    def agent_run_progress(self, run_id: str) -> ProgressEvent | None:
        return self.progress.get_run_progress(run_id)

    def batch_progress(self, batch_id: str) -> BatchProgress | None:
        return self.progress.get_batch_progress(batch_id)

    def subscribe_command_output(self, session_id: str) -> Subscription[OutputChunk]:
        return self.sessions.subscribe_output(session_id)

    def subscribe_run_progress(self, run_id: str) -> Subscription[ProgressEvent]:
        return self.progress.subscribe_run(run_id)

    def subscribe_batch_progress(self, batch_id: str) -> Subscription[BatchProgress]:
        return self.progress.subscribe_batch(batch_id)

    # -- status ------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        scheduler = self.scheduler.stats
        sessions = self.sessions.list_sessions()
        session_counts: dict[str, int] = {}
        for session in sessions:
            session_counts[session.status.value] = session_counts.get(session.status.value, 0) + 1
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "claude": {
                "available": self.runner is not None,
                "path": str(self.runner.executable) if self.runner is not None else self.settings.claude_path,
                "error": self.runner_error,
                "default_model": self.settings.default_model,
            },
            "scheduler": {
                "running": scheduler.running,
                "waiting": scheduler.waiting,
                "completed": scheduler.completed,
                "max_concurrency": scheduler.max_concurrency,
                "rate_limit": {
                    "count": self.settings.rate_limit_count,
                    "interval_s": self.settings.rate_limit_interval,
                },
            },
            "sessions": {
                "count": len(sessions),
                "by_status": session_counts,
                "active_commands": self.sessions.active_commands,
            },
            "prewarm": self.prewarm.status(),
            "runs": self.runs.statistics(),
            "storage": {"path": str(self.runs.root), "retention_days": self.settings.run_retention_days},
            "batches": {"tracked": self.progress.batch_count},
        }


__all__ = ["Conductor", "build_runner"]
