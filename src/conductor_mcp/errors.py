"""Error taxonomy shared by the orchestration components."""

from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for errors raised by Conductor components.

    ``code`` is the stable identifier recorded on failed runs and
    ``recoverable`` says whether a manual retry may succeed.
    """

    code = "UNKNOWN"
    recoverable = False


class NotFoundError(ConductorError, LookupError):
    """Raised when a session or run id is unknown."""

    code = "NOT_FOUND"


class CommandCancelledError(ConductorError):
    """Raised to waiters of a command whose session was killed."""

    code = "CANCELLED"


class CommandFailedError(ConductorError):
    """Raised to waiters of a command that failed with an unexpected error."""

    code = "INTERNAL_ERROR"


class RunStateError(ConductorError):
    """Raised when an operation does not apply to a run's current status."""

    code = "INVALID_STATE"


__all__ = [
    "CommandCancelledError",
    "CommandFailedError",
    "ConductorError",
    "NotFoundError",
    "RunStateError",
]
