"""Persistent agent run records."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED)


class RunKind(str, Enum):
    COMMAND = "command"
    COMMIT_MESSAGE = "commit_message"
    EXECUTIVE_SUMMARY = "executive_summary"


class RunInput(BaseModel):
    """Everything needed to execute (or re-execute) a run."""

    prompt: str = Field(..., description="Prompt sent to the Claude CLI.")
    diff: str | None = Field(default=None, description="Repository diff fed into the prompt, if any.")
    recent_history: list[str] = Field(
        default_factory=list,
        description="Recent commit messages supplied as style context.",
    )
    model: str | None = Field(default=None, description="Model override passed to the CLI.")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    working_directory: str | None = Field(default=None)
    flags: list[str] = Field(default_factory=list, description="Extra CLI flags for the invocation.")
    context: dict[str, Any] = Field(default_factory=dict)


class RunOutput(BaseModel):
    message: str
    confidence: float | None = None
    raw_response: str | None = None
    tokens_used: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_estimate: float | None = None


class RunError(BaseModel):
    code: str
    message: str
    recoverable: bool = False


class AgentRun(BaseModel):
    """One unit of scheduled work with its input, outcome and lineage."""

    id: str
    kind: RunKind = RunKind.COMMAND
    session_id: str | None = None
    repository: str | None = None
    batch_id: str | None = None
    status: RunStatus = RunStatus.QUEUED
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    input: RunInput
    output: RunOutput | None = None
    error: RunError | None = None
    retry_count: int = 0
    parent_run_id: str | None = None

    def summary(self) -> dict[str, Any]:
        """Compact view used by listings."""

        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "repository": self.repository,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "retry_count": self.retry_count,
            "error": self.error.code if self.error else None,
        }


__all__ = ["AgentRun", "RunError", "RunInput", "RunKind", "RunOutput", "RunStatus"]
