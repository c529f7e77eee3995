"""Markdown handoff documents for passing a session to someone else."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import Session

_TOPIC_KEYWORDS = (
    (("commit",), "Git Operations"),
    (("test",), "Testing"),
    (("deploy",), "Deployment"),
    (("bug", "fix"), "Bug Fixes"),
    (("feature",), "Feature Development"),
    (("refactor",), "Code Refactoring"),
    (("document",), "Documentation"),
)
_FILE_PATTERN = re.compile(r"[\w./-]+\.(?:py|ts|js|tsx|jsx|json|md|yml|yaml|toml)\b")


@dataclass(slots=True)
class HandoffSummary:
    interaction_count: int
    total_tokens: int
    topics: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "interaction_count": self.interaction_count,
            "total_tokens": self.total_tokens,
            "topics": list(self.topics),
            "files_modified": list(self.files_modified),
        }


@dataclass(slots=True)
class HandoffDocument:
    session_id: str
    path: Path
    content: str
    summary: HandoffSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "path": str(self.path),
            "content": self.content,
            "summary": self.summary.to_dict(),
        }


def summarize_session(session: Session) -> HandoffSummary:
    """Derive topics from prompts and mentioned file paths from responses."""

    topics: dict[str, None] = {}
    files: dict[str, None] = {}
    for exchange in session.history:
        prompt = exchange.prompt.lower()
        for keywords, topic in _TOPIC_KEYWORDS:
            if any(keyword in prompt for keyword in keywords):
                topics[topic] = None
        for match in _FILE_PATTERN.findall(exchange.response or ""):
            files[match] = None
    usage = session.metadata.token_usage
    return HandoffSummary(
        interaction_count=len(session.history),
        total_tokens=usage.input_tokens + usage.output_tokens,
        topics=list(topics),
        files_modified=list(files),
    )


def build_handoff(
    session: Session,
    *,
    target: str | None = None,
    notes: str | None = None,
    include_full_history: bool = False,
) -> str:
    usage = session.metadata.token_usage
    lines = [
        "# Claude Session Handoff",
        "",
        f"**Session ID:** {session.id}",
        f"**Created:** {session.created_at.isoformat()}",
        f"**Last Activity:** {session.last_activity.isoformat()}",
        f"**Target:** {target or 'Next Developer'}",
        "",
    ]
    if notes:
        lines.extend(["## Notes", notes, ""])
    lines.extend(
        [
            "## Session Context",
            f"- **Working Directory:** {session.working_directory}",
            f"- **Model:** {session.metadata.model or 'default'}",
            f"- **Status:** {session.status.value}",
            "",
        ]
    )
    if include_full_history and session.history:
        lines.extend(["## Conversation History", ""])
        for index, exchange in enumerate(session.history, start=1):
            lines.append(f"### Interaction {index}")
            lines.append(f"**Time:** {exchange.timestamp.isoformat()}")
            lines.extend(["**Prompt:**", "```", exchange.prompt, "```"])
            if exchange.response is not None:
                lines.extend(["**Response:**", "```", exchange.response, "```"])
            lines.append("")
    else:
        lines.extend(
            [
                "## Summary",
                f"Total interactions: {len(session.history)}",
                f"Total tokens used: {usage.input_tokens + usage.output_tokens}",
                "",
            ]
        )
    lines.extend(
        [
            "## Resource Usage",
            f"- **Input Tokens:** {usage.input_tokens}",
            f"- **Output Tokens:** {usage.output_tokens}",
            f"- **Estimated Cost:** ${usage.estimated_cost:.2f}",
        ]
    )
    return "\n".join(lines) + "\n"


def write_handoff(
    session: Session,
    directory: Path,
    *,
    target: str | None = None,
    notes: str | None = None,
    include_full_history: bool = False,
) -> HandoffDocument:
    content = build_handoff(session, target=target, notes=notes, include_full_history=include_full_history)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"handoff-{session.id}-{stamp}.md"
    path.write_text(content, encoding="utf-8")
    return HandoffDocument(session_id=session.id, path=path, content=content, summary=summarize_session(session))


__all__ = ["HandoffDocument", "HandoffSummary", "build_handoff", "summarize_session", "write_handoff"]
