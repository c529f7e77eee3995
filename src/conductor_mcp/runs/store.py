"""File-backed agent run registry."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from ..errors import ConductorError, NotFoundError, RunStateError
from .models import AgentRun, RunError, RunInput, RunKind, RunOutput, RunStatus

logger = logging.getLogger(__name__)

_RECOVERABLE_CODES = frozenset({"TIMEOUT", "ETIMEDOUT", "ECONNREFUSED", "ECONNRESET", "RATE_LIMIT"})


class RunNotFoundError(NotFoundError):
    """Raised when a run id is unknown."""


def is_recoverable(error: RunError | BaseException | None) -> bool:
    """Return True when retrying the failed work may succeed.

    Timeouts and transient spawn or network failures are recoverable; parse
    and validation failures are not.
    """

    if error is None:
        return False
    if isinstance(error, RunError):
        return error.recoverable or error.code in _RECOVERABLE_CODES
    if isinstance(error, ConductorError):
        return bool(error.recoverable) or error.code in _RECOVERABLE_CODES
    return isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError))


def error_from_exception(exc: BaseException) -> RunError:
    """Describe ``exc`` the way it is recorded on a failed run."""

    if isinstance(exc, ConductorError):
        code = exc.code
    elif isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        code = "TIMEOUT"
    else:
        code = type(exc).__name__.upper()
    return RunError(code=code, message=str(exc) or type(exc).__name__, recoverable=is_recoverable(exc))


class RunStore:
    """Keeps one JSON document per run under ``root``.

    Records are loaded into memory at construction; every mutation rewrites the
    whole record through a temporary file so readers never observe a partial
    document.
    """

    def __init__(self, root: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._runs: dict[str, AgentRun] = {}
        self._load()

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, run_id: str) -> Path:
        return self._root / f"{run_id}.json"

    def _load(self) -> None:
        for path in sorted(self._root.glob("*.json")):
            try:
                run = AgentRun.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning("Skipping unreadable run record", extra={"path": str(path), "error": str(exc)})
                continue
            self._runs[run.id] = run
        logger.info("Loaded agent runs", extra={"count": len(self._runs), "root": str(self._root)})

    def _write(self, run: AgentRun) -> None:
        path = self._path_for(run.id)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(run.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    # -- create / update ---------------------------------------------------

    def create_run(
        self,
        run_input: RunInput,
        *,
        kind: RunKind = RunKind.COMMAND,
        session_id: str | None = None,
        repository: str | None = None,
        batch_id: str | None = None,
        parent_run_id: str | None = None,
        retry_count: int = 0,
    ) -> AgentRun:
        """Create a QUEUED run and persist it immediately."""

        run = AgentRun(
            id=str(uuid.uuid4()),
            kind=kind,
            session_id=session_id,
            repository=repository,
            batch_id=batch_id,
            created_at=self._clock(),
            input=run_input.model_copy(deep=True),
            retry_count=retry_count,
            parent_run_id=parent_run_id,
        )
        self.save_run(run)
        logger.info(
            "Created agent run",
            extra={"run_id": run.id, "kind": kind.value, "repository": repository},
        )
        return run

    def save_run(self, run: AgentRun) -> AgentRun:
        """Persist ``run`` as a full overwrite of its record."""

        stored = run.model_copy(deep=True)
        self._write(stored)
        self._runs[stored.id] = stored
        return stored.model_copy(deep=True)

    def update_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        error: RunError | None = None,
        output: RunOutput | None = None,
        session_id: str | None = None,
    ) -> AgentRun:
        """Move ``run_id`` to ``status``, stamping start and completion times."""

        run = self.require_run(run_id)
        now = self._clock()
        run.status = status
        if session_id is not None:
            run.session_id = session_id
        if status == RunStatus.RUNNING and run.started_at is None:
            run.started_at = now
        if status.is_terminal:
            run.completed_at = now
            run.duration_ms = int((now - (run.started_at or run.created_at)).total_seconds() * 1000)
        if error is not None:
            run.error = error
        if output is not None:
            run.output = output
        logger.info("Agent run status changed", extra={"run_id": run_id, "status": status.value})
        return self.save_run(run)

    # -- queries -----------------------------------------------------------

    def get_run(self, run_id: str) -> AgentRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    def require_run(self, run_id: str) -> AgentRun:
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Agent run {run_id} not found")
        return run

    def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        repository: str | None = None,
        kind: RunKind | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AgentRun]:
        """Return runs newest first, optionally filtered and paginated."""

        runs = [
            run
            for run in self._runs.values()
            if (status is None or run.status == status)
            and (repository is None or run.repository == repository)
            and (kind is None or run.kind == kind)
        ]
        runs.sort(key=lambda run: run.created_at, reverse=True)
        end = offset + limit if limit is not None else None
        return [run.model_copy(deep=True) for run in runs[offset:end]]

    def count_runs(self, status: RunStatus | None = None) -> int:
        if status is None:
            return len(self._runs)
        return sum(1 for run in self._runs.values() if run.status == status)

    def statistics(self) -> dict[str, Any]:
        runs = list(self._runs.values())
        by_status = Counter(run.status.value for run in runs)
        by_repository = Counter(run.repository or "unknown" for run in runs)
        durations = [run.duration_ms for run in runs if run.duration_ms is not None]
        finished = by_status[RunStatus.SUCCESS.value] + by_status[RunStatus.FAILED.value]
        return {
            "total": len(runs),
            "by_status": {status.value: by_status.get(status.value, 0) for status in RunStatus},
            "by_repository": dict(by_repository),
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "success_rate": by_status[RunStatus.SUCCESS.value] / finished if finished else 0.0,
        }

    # -- lifecycle ---------------------------------------------------------

    def retry_run(self, run_id: str) -> AgentRun:
        """Create a fresh QUEUED run with the same input as ``run_id``."""

        original = self.require_run(run_id)
        if not original.status.is_terminal:
            raise RunStateError(f"Agent run {run_id} is still {original.status.value}")
        retry = self.create_run(
            original.input,
            kind=original.kind,
            repository=original.repository,
            parent_run_id=original.id,
            retry_count=original.retry_count + 1,
        )
        logger.info("Retrying agent run", extra={"run_id": run_id, "retry_run_id": retry.id})
        return retry

    def cancel_run(self, run_id: str, reason: str = "Cancelled by request") -> AgentRun:
        run = self.require_run(run_id)
        if run.status.is_terminal:
            raise RunStateError(f"Agent run {run_id} already finished with {run.status.value}")
        return self.update_status(
            run_id,
            RunStatus.CANCELLED,
            error=RunError(code="CANCELLED", message=reason, recoverable=False),
        )

    def delete_run(self, run_id: str) -> bool:
        run = self._runs.pop(run_id, None)
        if run is None:
            return False
        self._path_for(run_id).unlink(missing_ok=True)
        return True

    def purge_expired(self, max_age: timedelta) -> int:
        """Delete runs whose completion is older than ``max_age``, whatever their status."""

        cutoff = self._clock() - max_age
        expired = [
            run.id
            for run in self._runs.values()
            if run.completed_at is not None and run.completed_at < cutoff
        ]
        for run_id in expired:
            self.delete_run(run_id)
        if expired:
            logger.info(
                "Purged expired agent runs",
                extra={"count": len(expired), "cutoff": cutoff.isoformat()},
            )
        return len(expired)


__all__ = ["RunNotFoundError", "RunStore", "error_from_exception", "is_recoverable"]
