"""Agent run persistence."""

from .cleanup import RunCleanupJob
from .models import AgentRun, RunError, RunInput, RunKind, RunOutput, RunStatus
from .store import RunNotFoundError, RunStore, error_from_exception, is_recoverable

__all__ = [
    "AgentRun",
    "RunCleanupJob",
    "RunError",
    "RunInput",
    "RunKind",
    "RunNotFoundError",
    "RunOutput",
    "RunStatus",
    "RunStore",
    "error_from_exception",
    "is_recoverable",
]
