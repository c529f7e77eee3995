"""Parallel commit message generation across repositories."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from pydantic import BaseModel, Field

from ..errors import ConductorError
from ..progress import ProgressTracker
from ..runs.models import AgentRun, RunInput, RunKind, RunStatus
from ..runs.store import RunStore
from ..sessions.manager import SessionStore
from ..sessions.models import CommandOptions, TokenUsage
from .oneshot import run_one_shot

logger = logging.getLogger(__name__)

RECENT_COMMIT_LIMIT = 5
DEFAULT_COMMIT_TYPE = "chore"

_COMMIT_TYPE_PATTERN = re.compile(
    r"^(feat|fix|docs|style|refactor|perf|test|build|ci|chore|revert)(\(.+\))?:", re.IGNORECASE
)
_CONVENTIONAL_PATTERN = re.compile(r"^(feat|fix|chore|docs|style|refactor|test|perf)(\(.+?\))?:")
_PREAMBLE_PREFIXES = ("Based on", "Looking at", "I see")


class CommitMessageRequest(BaseModel):
    """One repository's worth of input for a commit message."""

    repository: str = Field(..., description="Repository name, used for tracking and the prompt.")
    path: str | None = Field(default=None, description="Local checkout used as working directory.")
    diff: str = Field(..., description="Diff of the staged changes.")
    recent_commits: list[str] = Field(
        default_factory=list,
        description="Recent commit messages used as style reference.",
    )
    context: str | None = Field(default=None, description="Additional free-form context.")


@dataclass(slots=True)
class CommitMessageResult:
    repository_name: str
    repository_path: str | None
    success: bool
    message: str | None = None
    error: str | None = None
    confidence: float = 0.0
    commit_type: str | None = None
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository_name": self.repository_name,
            "repository_path": self.repository_path,
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "confidence": self.confidence,
            "commit_type": self.commit_type,
            "run_id": self.run_id,
        }


@dataclass(slots=True)
class BatchCommitMessageResult:
    batch_id: str
    total_repositories: int
    success_count: int
    results: list[CommitMessageResult]
    total_token_usage: TokenUsage = field(default_factory=TokenUsage)
    execution_time_ms: int = 0

    @property
    def failure_count(self) -> int:
        return len(self.results) - self.success_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "total_repositories": self.total_repositories,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "results": [result.to_dict() for result in self.results],
            "total_token_usage": self.total_token_usage.to_dict(),
            "execution_time_ms": self.execution_time_ms,
        }


def build_commit_prompt(request: CommitMessageRequest) -> str:
    recent = "\n".join(request.recent_commits[:RECENT_COMMIT_LIMIT])
    context = f"Additional context: {request.context}" if request.context else ""
    return (
        f'Generate a commit message for the repository "{request.repository}".\n\n'
        f"Recent commits for style reference:\n{recent}\n\n"
        f"Git diff:\n{request.diff}\n\n"
        f"{context}\n\n"
        "Generate a conventional commit message that:\n"
        "1. Follows the pattern: type(scope): description\n"
        "2. Includes a body if needed for complex changes\n"
        "3. Matches the style of recent commits\n"
        "4. Is concise but descriptive\n\n"
        "Respond with ONLY the commit message, no explanations."
    )


def extract_commit_message(output: str) -> str:
    """Strip JSON wrappers and conversational preamble from the model output."""

    try:
        document = json.loads(output)
    except json.JSONDecodeError:
        document = None
    if isinstance(document, dict) and isinstance(document.get("message"), str):
        return document["message"]

    lines = [
        line
        for line in output.strip().splitlines()
        if line.strip()
        and not line.strip().startswith(_PREAMBLE_PREFIXES)
        and "commit message:" not in line
    ]
    return "\n".join(lines).strip()


def calculate_confidence(output: str) -> float:
    if "error" in output or "unclear" in output:
        return 0.5
    if len(output) < 20:
        return 0.6
    if _CONVENTIONAL_PATTERN.match(output):
        return 0.9
    return 0.75


def extract_commit_type(message: str | None) -> str | None:
    if not message:
        return None
    match = _COMMIT_TYPE_PATTERN.match(message)
    return match.group(1).lower() if match else DEFAULT_COMMIT_TYPE


class CommitMessageBatch:
    """Fans commit message requests out over one-shot sessions.

    Items run concurrently under the shared scheduler; a failing item is
    reported in its result and never aborts its siblings.
    """

    def __init__(self, sessions: SessionStore, runs: RunStore, progress: ProgressTracker) -> None:
        self._sessions = sessions
        self._runs = runs
        self._progress = progress

    async def generate(
        self,
        requests: Sequence[CommitMessageRequest],
        *,
        model: str | None = None,
        batch_id: str | None = None,
    ) -> BatchCommitMessageResult:
        started = time.monotonic()
        batch_id = self._progress.create_batch(len(requests), batch_id=batch_id)
        logger.info("Generating commit messages", extra={"batch_id": batch_id, "repositories": len(requests)})

        planned: list[tuple[CommitMessageRequest, AgentRun]] = []
        for request in requests:
            run = self._runs.create_run(
                RunInput(
                    prompt=build_commit_prompt(request),
                    diff=request.diff,
                    recent_history=request.recent_commits[:RECENT_COMMIT_LIMIT],
                    model=model,
                    working_directory=request.path,
                    context={"context": request.context} if request.context else {},
                ),
                kind=RunKind.COMMIT_MESSAGE,
                repository=request.repository,
                batch_id=batch_id,
            )
            self._progress.add_run_to_batch(batch_id, run.id, request.repository)
            planned.append((request, run))

        options = CommandOptions(model=model)
        results = list(
            await asyncio.gather(*(self._generate_one(request, run, options) for request, run in planned))
        )

        usage = self._usage_of(run.id for _, run in planned)

        batch = BatchCommitMessageResult(
            batch_id=batch_id,
            total_repositories=len(requests),
            success_count=sum(1 for result in results if result.success),
            results=results,
            total_token_usage=usage,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Commit message batch finished",
            extra={
                "batch_id": batch_id,
                "success_count": batch.success_count,
                "failure_count": batch.failure_count,
            },
        )
        return batch

    def _usage_of(self, run_ids: Iterable[str]) -> TokenUsage:
        """Sum the usage recorded on the successful runs; failed runs cost nothing."""

        usage = TokenUsage()
        for run_id in run_ids:
            stored = self._runs.get_run(run_id)
            if stored is None or stored.status is not RunStatus.SUCCESS or stored.output is None:
                continue
            output = stored.output
            usage.add(
                input_tokens=output.input_tokens,
                output_tokens=output.output_tokens,
                cost=output.cost_estimate or 0.0,
            )
        return usage

    def finalize_run(self, run_id: str, output: str) -> tuple[str, float]:
        """Store the extracted message and confidence on a finished run."""

        message = extract_commit_message(output)
        confidence = calculate_confidence(output)
        stored = self._runs.get_run(run_id)
        if stored is not None and stored.output is not None:
            stored.output.message = message
            stored.output.confidence = confidence
            self._runs.save_run(stored)
        return message, confidence

    async def _generate_one(
        self, request: CommitMessageRequest, run: AgentRun, options: CommandOptions
    ) -> CommitMessageResult:
        try:
            outcome = await run_one_shot(self._sessions, self._runs, self._progress, run, options=options)
            message, confidence = self.finalize_run(run.id, outcome.output)
        except Exception as exc:
            code = exc.code if isinstance(exc, ConductorError) else type(exc).__name__
            logger.warning(
                "Commit message generation failed",
                extra={"repository": request.repository, "run_id": run.id, "code": code},
            )
            return CommitMessageResult(
                repository_name=request.repository,
                repository_path=request.path,
                success=False,
                error=str(exc) or code,
                run_id=run.id,
            )

        return CommitMessageResult(
            repository_name=request.repository,
            repository_path=request.path,
            success=True,
            message=message,
            confidence=confidence,
            commit_type=extract_commit_type(message),
            run_id=run.id,
        )


__all__ = [
    "BatchCommitMessageResult",
    "CommitMessageBatch",
    "CommitMessageRequest",
    "CommitMessageResult",
    "build_commit_prompt",
    "calculate_confidence",
    "extract_commit_message",
    "extract_commit_type",
]
