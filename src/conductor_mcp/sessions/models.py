"""In-memory session state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PROCESSING = "PROCESSING"
    IDLE = "IDLE"
    ERROR = "ERROR"
    TERMINATED = "TERMINATED"


class SessionOperation(str, Enum):
    ARCHIVE = "ARCHIVE"
    DELETE = "DELETE"
    EXPORT = "EXPORT"
    TAG = "TAG"


class ContinuationMode(str, Enum):
    """How the next prompt of a session reaches the CLI.

    ``NEW``: nothing has been exchanged yet, the prompt is sent as is.
    ``CONTINUABLE``: the CLI returned a continuation token for this session.
    ``NEEDS_REPLAY``: there is history but no usable token, so the history is
    folded into the prompt.
    """

    NEW = "NEW"
    CONTINUABLE = "CONTINUABLE"
    NEEDS_REPLAY = "NEEDS_REPLAY"


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0

    def add(self, *, input_tokens: int, output_tokens: int, cost: float) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.estimated_cost += cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "estimated_cost": round(self.estimated_cost, 6),
        }


@dataclass(slots=True)
class Exchange:
    """One prompt/response pair; ``response`` stays None until the command finishes."""

    prompt: str
    timestamp: datetime = field(default_factory=_utcnow)
    response: str | None = None
    execution_time_ms: int | None = None
    success: bool | None = None
    continuation_token: str | None = None
    run_id: str | None = None

    @property
    def pending(self) -> bool:
        return self.success is None

    @property
    def completed(self) -> bool:
        return bool(self.success) and self.response is not None

    def copy(self) -> "Exchange":
        return Exchange(
            prompt=self.prompt,
            timestamp=self.timestamp,
            response=self.response,
            execution_time_ms=self.execution_time_ms,
            success=self.success,
            continuation_token=self.continuation_token,
            run_id=self.run_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "prompt": self.prompt,
            "response": self.response,
            "execution_time_ms": self.execution_time_ms,
            "success": self.success,
            "continuation_token": self.continuation_token,
            "run_id": self.run_id,
        }


@dataclass(slots=True)
class SessionMetadata:
    model: str | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    continuation_token: str | None = None
    project_context: str | None = None
    name: str | None = None
    forked_from: str | None = None
    forked_at_index: int | None = None
    from_template: str | None = None
    tags: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Session:
    id: str
    working_directory: str
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    history: list[Exchange] = field(default_factory=list)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    continuation_mode: ContinuationMode = ContinuationMode.NEW

    def touch(self) -> None:
        self.last_activity = _utcnow()

    def to_dict(self, *, include_history: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "working_directory": self.working_directory,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "continuation_mode": self.continuation_mode.value,
            "exchange_count": len(self.history),
            "metadata": {
                "model": self.metadata.model,
                "token_usage": self.metadata.token_usage.to_dict(),
                "continuation_token": self.metadata.continuation_token,
                "project_context": self.metadata.project_context,
                "name": self.metadata.name,
                "forked_from": self.metadata.forked_from,
                "from_template": self.metadata.from_template,
                "tags": list(self.metadata.tags),
            },
        }
        if include_history:
            payload["history"] = [exchange.to_dict() for exchange in self.history]
        return payload


@dataclass(slots=True)
class TemplateVariable:
    name: str
    description: str = ""
    default_value: str | None = None
    required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "default_value": self.default_value,
            "required": self.required,
        }


@dataclass(slots=True)
class SessionTemplate:
    """A reusable starting point captured from an existing session.

    ``project_context`` may reference ``{{variable}}`` placeholders that are
    filled in when a session is created from the template.
    """

    id: str
    name: str
    source_session_id: str
    description: str = ""
    tags: list[str] = field(default_factory=list)
    model: str | None = None
    project_context: str = ""
    history: list[Exchange] = field(default_factory=list)
    variables: list[TemplateVariable] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime | None = None
    usage_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tags": list(self.tags),
            "source_session_id": self.source_session_id,
            "model": self.model,
            "project_context": self.project_context,
            "history_length": len(self.history),
            "variables": [variable.to_dict() for variable in self.variables],
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "usage_count": self.usage_count,
        }


@dataclass(slots=True)
class SessionArchive:
    archive_id: str
    session_id: str
    path: str
    size_bytes: int
    original_size_bytes: int

    @property
    def compression_ratio(self) -> float:
        return self.original_size_bytes / self.size_bytes if self.size_bytes else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "archive_id": self.archive_id,
            "session_id": self.session_id,
            "path": self.path,
            "size_bytes": self.size_bytes,
            "compression_ratio": round(self.compression_ratio, 3),
        }


@dataclass(slots=True)
class CommandOptions:
    model: str | None = None
    profile_id: str | None = None
    custom_flags: list[str] = field(default_factory=list)
    project_context: str | None = None
    timeout: float | None = None


__all__ = [
    "CommandOptions",
    "ContinuationMode",
    "Exchange",
    "Session",
    "SessionArchive",
    "SessionMetadata",
    "SessionOperation",
    "SessionStatus",
    "SessionTemplate",
    "TemplateVariable",
    "TokenUsage",
]
