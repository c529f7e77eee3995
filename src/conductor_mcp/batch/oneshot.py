"""Single-use sessions for batch items."""

from __future__ import annotations

import logging
from pathlib import Path

from ..errors import CommandFailedError, ConductorError
from ..progress import ProgressTracker
from ..runs.models import AgentRun, RunStatus
from ..runs.store import RunStore, error_from_exception
from ..sessions.manager import CommandResult, SessionStore
from ..sessions.models import CommandOptions

logger = logging.getLogger(__name__)


def usable_directory(path: str | None) -> str | None:
    """Return ``path`` when it names an existing directory."""

    if path and Path(path).expanduser().is_dir():
        return str(Path(path).expanduser())
    return None


async def run_one_shot(
    sessions: SessionStore,
    runs: RunStore,
    progress: ProgressTracker,
    run: AgentRun,
    *,
    options: CommandOptions | None = None,
) -> CommandResult:
    """Execute a QUEUED run in a session created for it alone.

    The session is killed afterwards whatever the outcome. A run that never
    got dispatched is still closed as FAILED so its batch can complete.
    """

    session_id: str | None = None
    try:
        handle = sessions.dispatch_command(
            run.input.prompt,
            working_directory=usable_directory(run.input.working_directory),
            options=options,
            run_id=run.id,
        )
        session_id = handle.session_id
        return await handle.wait()
    except ConductorError as exc:
        if session_id is None:
            _fail_undispatched(runs, progress, run.id, exc)
        raise
    except Exception as exc:
        failure = CommandFailedError(f"Run {run.id} could not be executed: {exc}")
        if session_id is None:
            _fail_undispatched(runs, progress, run.id, failure)
        raise failure from exc
    finally:
        if session_id is not None:
            await sessions.kill_session(session_id)


def _fail_undispatched(runs: RunStore, progress: ProgressTracker, run_id: str, exc: ConductorError) -> None:
    current = runs.get_run(run_id)
    if current is None or current.status.is_terminal:
        return
    error = error_from_exception(exc)
    runs.update_status(run_id, RunStatus.FAILED, error=error)
    progress.mark_run_failed(run_id, error.message)
    logger.warning("Run could not be dispatched", extra={"run_id": run_id, "code": error.code})


__all__ = ["run_one_shot", "usable_directory"]
