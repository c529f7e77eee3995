"""Prompt construction for session commands."""

from __future__ import annotations

from typing import Iterable

from .models import ContinuationMode, Exchange, Session

TRANSCRIPT_HEADER = "Previous conversation:"


def fold_transcript(history: Iterable[Exchange], prompt: str) -> str:
    """Fold completed exchanges and the new turn into one transcript prompt."""

    parts = [TRANSCRIPT_HEADER]
    for exchange in history:
        if not exchange.completed:
            continue
        parts.append(f"Human: {exchange.prompt}")
        parts.append(f"Assistant: {exchange.response}")
    parts.append(f"Human: {prompt}")
    return "\n\n".join(parts)


def build_session_prompt(session: Session, prompt: str) -> tuple[str, str | None]:
    """Return the prompt to send and the continuation token to resume with."""

    if session.continuation_mode is ContinuationMode.CONTINUABLE and session.metadata.continuation_token:
        return prompt, session.metadata.continuation_token
    if session.continuation_mode is ContinuationMode.NEEDS_REPLAY:
        return fold_transcript(session.history, prompt), None
    return prompt, None


__all__ = ["TRANSCRIPT_HEADER", "build_session_prompt", "fold_transcript"]
