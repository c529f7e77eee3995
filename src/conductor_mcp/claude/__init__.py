"""Claude CLI invocation utilities."""

from .runner import (
    ClaudeExecutionResult,
    ClaudeInvalidInputError,
    ClaudeNotFoundError,
    ClaudeParseError,
    ClaudeProcessError,
    ClaudeRunner,
    ClaudeRunnerError,
    ClaudeTimeoutError,
    ClaudeUnavailableError,
    ClaudeWorkingDirectoryError,
    InvocationResult,
    OutputChunk,
    OutputListener,
    OutputType,
)

__all__ = [
    "ClaudeExecutionResult",
    "ClaudeInvalidInputError",
    "ClaudeNotFoundError",
    "ClaudeParseError",
    "ClaudeProcessError",
    "ClaudeRunner",
    "ClaudeRunnerError",
    "ClaudeTimeoutError",
    "ClaudeUnavailableError",
    "ClaudeWorkingDirectoryError",
    "InvocationResult",
    "OutputChunk",
    "OutputListener",
    "OutputType",
]
