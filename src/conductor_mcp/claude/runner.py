"""Async runner for the Claude CLI."""

from __future__ import annotations

import asyncio
import codecs
import errno
import json
import logging
import shutil
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Sequence

from ..errors import ConductorError
from .utils import estimate_tokens, parse_envelope, sanitize_environment

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30 * 60
DEFAULT_KILL_GRACE_PERIOD = 5.0

_CHUNK_SIZE = 4096
_TRANSIENT_ERRNOS = {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE, errno.EBUSY}
_RECOVERABLE_MARKERS = (
    "rate limit",
    "rate_limit",
    "overloaded",
    "etimedout",
    "econnrefused",
    "econnreset",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
    " 429",
    " 529",
)


class ClaudeRunnerError(ConductorError):
    """Base class for Claude runner errors."""

    code = "RUNNER_ERROR"


class ClaudeUnavailableError(ClaudeRunnerError):
    """Raised when the Claude CLI cannot be started."""

    code = "UNAVAILABLE"

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient
        self.recoverable = transient


class ClaudeNotFoundError(ClaudeUnavailableError):
    """Raised when the Claude CLI executable cannot be located."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


class ClaudeTimeoutError(ClaudeRunnerError):
    """Raised when an invocation exceeds its time ceiling and is killed."""

    code = "TIMEOUT"
    recoverable = True

    def __init__(self, message: str, *, timeout: float) -> None:
        super().__init__(message)
        self.timeout = timeout


class ClaudeProcessError(ClaudeRunnerError):
    """Raised when the CLI reports a failure."""

    code = "PROCESS_FAILURE"

    def __init__(self, message: str, *, returncode: int | None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        haystack = f" {message} {stderr}".lower()
        self.recoverable = any(marker in haystack for marker in _RECOVERABLE_MARKERS)


class ClaudeParseError(ClaudeRunnerError):
    """Raised when the CLI exits cleanly but its output cannot be used."""

    code = "PARSE_FAILURE"

    def __init__(self, message: str, *, raw_output: str = "") -> None:
        super().__init__(message)
        self.raw_output = raw_output


class ClaudeInvalidInputError(ClaudeRunnerError):
    """Raised when the arguments cannot be passed to a process at all."""

    code = "INVALID_INPUT"


class ClaudeWorkingDirectoryError(ClaudeRunnerError):
    """Raised when the requested working directory does not exist."""

    code = "INVALID_WORKING_DIRECTORY"

    def __init__(self, message: str, *, working_directory: str) -> None:
        super().__init__(message)
        self.working_directory = working_directory


class OutputType(str, Enum):
    STDOUT = "STDOUT"
    STDERR = "STDERR"
    FINAL = "FINAL"


@dataclass(slots=True)
class OutputChunk:
    """One piece of live output from an invocation."""

    session_id: str | None
    type: OutputType
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_final: bool = False
    tokens: int = 0


OutputListener = Callable[[OutputChunk], None]


@dataclass(slots=True)
class ClaudeExecutionResult:
    """Holds the raw outcome of a Claude CLI process."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(slots=True)
class InvocationResult:
    """Interpreted outcome of a successful invocation."""

    result_text: str
    continuation_token: str | None
    cost_estimate: float | None
    raw_output: str
    stderr: str
    duration_ms: int
    envelope_parsed: bool
    args: tuple[str, ...] = ()


class ClaudeRunner:
    """Execute Claude CLI commands asynchronously, one process per call."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        kill_grace_period: float = DEFAULT_KILL_GRACE_PERIOD,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._timeout = timeout
        self._kill_grace_period = kill_grace_period

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ClaudeNotFoundError(f"Claude executable not found at {candidate}")

        binary = shutil.which("claude")
        if binary is None:
            raise ClaudeNotFoundError("Claude CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    @property
    def timeout(self) -> float:
        return self._timeout

    async def version(self) -> ClaudeExecutionResult:
        return await self._execute(("--version",), cwd=None, session_id=None, listener=None, timeout=60)

    async def check_available(self) -> bool:
        try:
            result = await self.version()
        except ClaudeRunnerError:
            return False
        return result.ok

    @staticmethod
    def build_args(
        prompt: str,
        *,
        continuation_token: str | None = None,
        flags: Sequence[str] | None = None,
    ) -> list[str]:
        args = ["-p", prompt, "--output-format", "json"]
        if continuation_token:
            args.extend(["--resume", continuation_token])
        args.extend(flags or [])
        return args

    async def invoke(
        self,
        prompt: str,
        *,
        working_directory: Path | str | None = None,
        continuation_token: str | None = None,
        flags: Sequence[str] | None = None,
        session_id: str | None = None,
        listener: OutputListener | None = None,
        timeout: float | None = None,
    ) -> InvocationResult:
        """Run one prompt to completion and interpret the terminal JSON envelope."""

        args = self.build_args(prompt, continuation_token=continuation_token, flags=flags)
        started = time.monotonic()
        try:
            execution = await self._execute(
                tuple(args),
                cwd=working_directory,
                session_id=session_id,
                listener=listener,
                timeout=timeout or self._timeout,
            )
            return self._interpret(execution, started=started, session_id=session_id, listener=listener)
        except ClaudeRunnerError as exc:
            _notify(
                listener,
                OutputChunk(session_id=session_id, type=OutputType.STDERR, content=str(exc), is_final=True),
            )
            raise

    def _interpret(
        self,
        execution: ClaudeExecutionResult,
        *,
        started: float,
        session_id: str | None,
        listener: OutputListener | None,
    ) -> InvocationResult:
        if not execution.ok:
            diagnostic = execution.stderr.strip() or execution.stdout.strip()
            message = f"Claude exited with code {execution.returncode}"
            if diagnostic:
                message = f"{message}: {diagnostic}"
            raise ClaudeProcessError(message, returncode=execution.returncode, stderr=execution.stderr)

        if not execution.stdout.strip():
            raise ClaudeParseError("Claude process did not produce any output", raw_output=execution.stdout)

        envelope = parse_envelope(execution.stdout)
        if envelope.is_error:
            raise ClaudeProcessError(
                envelope.result or "Claude reported an error",
                returncode=execution.returncode,
                stderr=execution.stderr,
            )
        if not envelope.parsed:
            logger.warning(
                "Claude output was not a JSON envelope; using raw text",
                extra={"session_id": session_id, "output_length": len(execution.stdout)},
            )

        _notify(
            listener,
            OutputChunk(
                session_id=session_id,
                type=OutputType.FINAL,
                content=envelope.result,
                is_final=True,
                tokens=estimate_tokens(envelope.result),
            ),
        )
        return InvocationResult(
            result_text=envelope.result,
            continuation_token=envelope.session_id,
            cost_estimate=envelope.cost,
            raw_output=execution.stdout,
            stderr=execution.stderr,
            duration_ms=int((time.monotonic() - started) * 1000),
            envelope_parsed=envelope.parsed,
            args=execution.args,
        )

    async def _execute(
        self,
        args: tuple[str, ...],
        *,
        cwd: Path | str | None,
        session_id: str | None,
        listener: OutputListener | None,
        timeout: float,
    ) -> ClaudeExecutionResult:
        cmd = [str(self._executable_path), *args]
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        async with self._spawned(cmd, cwd) as process:
            collector = asyncio.gather(
                _pump(process.stdout, OutputType.STDOUT, stdout_parts, session_id, listener),
                _pump(process.stderr, OutputType.STDERR, stderr_parts, session_id, listener),
            )
            try:
                await asyncio.wait_for(_drain(collector, process), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Claude command timed out, killing process",
                    extra={"session_id": session_id, "pid": process.pid, "timeout": timeout},
                )
                raise ClaudeTimeoutError(
                    f"Claude command timed out after {timeout:g} seconds", timeout=timeout
                ) from None

        return ClaudeExecutionResult(
            args=tuple(cmd),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
        )

    @asynccontextmanager
    async def _spawned(
        self, cmd: list[str], cwd: Path | str | None
    ) -> AsyncIterator[asyncio.subprocess.Process]:
        """Spawn a process and guarantee it is terminated and reaped on exit."""

        if cwd and not Path(cwd).is_dir():
            raise ClaudeWorkingDirectoryError(
                f"Working directory does not exist: {cwd}", working_directory=str(cwd)
            )
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=sanitize_environment(),
            )
        except ValueError as exc:
            # e.g. a NUL byte in the prompt or a flag
            raise ClaudeInvalidInputError(f"Claude arguments were rejected: {exc}") from exc
        except FileNotFoundError as exc:
            if cwd and exc.filename is not None and str(exc.filename) == str(cwd):
                raise ClaudeWorkingDirectoryError(
                    f"Working directory does not exist: {cwd}", working_directory=str(cwd)
                ) from exc
            raise ClaudeNotFoundError(f"Claude executable could not be started: {exc}") from exc
        except PermissionError as exc:
            raise ClaudeUnavailableError(f"Claude executable is not runnable: {exc}") from exc
        except OSError as exc:
            raise ClaudeUnavailableError(
                f"Failed to spawn Claude process: {exc}",
                transient=exc.errno in _TRANSIENT_ERRNOS,
            ) from exc

        try:
            yield process
        finally:
            if process.returncode is None:
                await self._terminate(process)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace_period)
            return
        except asyncio.TimeoutError:
            logger.warning("Claude process ignored SIGTERM, killing", extra={"pid": process.pid})
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


async def _pump(
    stream: asyncio.StreamReader | None,
    kind: OutputType,
    sink: list[str],
    session_id: str | None,
    listener: OutputListener | None,
) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_CHUNK_SIZE)
        text = decoder.decode(data, final=not data)
        if text:
            sink.append(text)
            _notify(
                listener,
                OutputChunk(session_id=session_id, type=kind, content=text, tokens=estimate_tokens(text)),
            )
        if not data:
            return


async def _drain(collector: asyncio.Future, process: asyncio.subprocess.Process) -> None:
    await collector
    await process.wait()


def _notify(listener: OutputListener | None, chunk: OutputChunk) -> None:
    if listener is not None:
        listener(chunk)


class FakeClaudeRunner(ClaudeRunner):
    """Test double that simulates Claude CLI responses.

    ``responses`` are consumed in order; each is a ``ClaudeExecutionResult`` or an
    exception to raise. ``handler`` takes precedence and receives the prompt.
    """

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[ClaudeExecutionResult | BaseException] | None = None,
        *,
        handler: Callable[[str], ClaudeExecutionResult | BaseException] | None = None,
        delay: float = 0.0,
    ) -> None:
        self._responses = list(responses or [])
        self._handler = handler
        self._delay = delay
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path("/tmp/fake-claude")
        self._timeout = DEFAULT_TIMEOUT
        self._kill_grace_period = 0.0
        self.active: dict[str | None, int] = {}
        self.max_active: dict[str | None, int] = {}
        self.max_total_active = 0

    @staticmethod
    def success(
        result: str, *, session_id: str | None = None, cost: float | None = None
    ) -> ClaudeExecutionResult:
        """Build a zero-exit result carrying a JSON envelope."""

        envelope: dict[str, object] = {"type": "result", "is_error": False, "result": result}
        if session_id is not None:
            envelope["session_id"] = session_id
        if cost is not None:
            envelope["total_cost_usd"] = cost
        return ClaudeExecutionResult(args=(), returncode=0, stdout=json.dumps(envelope), stderr="")

    @staticmethod
    def failure(stderr: str, *, returncode: int = 1) -> ClaudeExecutionResult:
        return ClaudeExecutionResult(args=(), returncode=returncode, stdout="", stderr=stderr)

    async def _execute(  # type: ignore[override]
        self,
        args: tuple[str, ...],
        *,
        cwd: Path | str | None,
        session_id: str | None,
        listener: OutputListener | None,
        timeout: float,
    ) -> ClaudeExecutionResult:
        self._invocations.append(tuple(args))
        self.active[session_id] = self.active.get(session_id, 0) + 1
        self.max_active[session_id] = max(self.max_active.get(session_id, 0), self.active[session_id])
        self.max_total_active = max(self.max_total_active, sum(self.active.values()))
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._handler is not None:
                response = self._handler(_prompt_from_args(args))
            elif self._responses:
                response = self._responses.pop(0)
            else:
                response = self.success("")
            if isinstance(response, BaseException):
                raise response
            if response.stdout:
                chunk = OutputChunk(session_id=session_id, type=OutputType.STDOUT, content=response.stdout)
                _notify(listener, chunk)
            if response.stderr:
                chunk = OutputChunk(session_id=session_id, type=OutputType.STDERR, content=response.stderr)
                _notify(listener, chunk)
            return ClaudeExecutionResult(
                args=tuple(args),
                returncode=response.returncode,
                stdout=response.stdout,
                stderr=response.stderr,
            )
        finally:
            self.active[session_id] -= 1

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    @property
    def prompts(self) -> list[str]:
        return [_prompt_from_args(args) for args in self._invocations]


def _prompt_from_args(args: Sequence[str]) -> str:
    if "-p" in args:
        index = list(args).index("-p")
        if index + 1 < len(args):
            return args[index + 1]
    return ""
