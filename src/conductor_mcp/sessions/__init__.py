"""Conversational sessions over the Claude CLI."""

from .handoff import HandoffDocument, HandoffSummary, build_handoff, summarize_session, write_handoff
from .manager import (
    CommandHandle,
    CommandResult,
    SessionNotFoundError,
    SessionStore,
    TemplateNotFoundError,
    render_template_context,
)
from .models import (
    CommandOptions,
    ContinuationMode,
    Exchange,
    Session,
    SessionArchive,
    SessionMetadata,
    SessionOperation,
    SessionStatus,
    SessionTemplate,
    TemplateVariable,
    TokenUsage,
)
from .prewarm import PrewarmPool, PrewarmState, PrewarmedSession
from .prompts import build_session_prompt, fold_transcript

__all__ = [
    "CommandHandle",
    "CommandOptions",
    "CommandResult",
    "ContinuationMode",
    "Exchange",
    "HandoffDocument",
    "HandoffSummary",
    "PrewarmPool",
    "PrewarmState",
    "PrewarmedSession",
    "Session",
    "SessionArchive",
    "SessionMetadata",
    "SessionNotFoundError",
    "SessionOperation",
    "SessionStatus",
    "SessionStore",
    "SessionTemplate",
    "TemplateNotFoundError",
    "TemplateVariable",
    "TokenUsage",
    "build_handoff",
    "build_session_prompt",
    "fold_transcript",
    "render_template_context",
    "summarize_session",
    "write_handoff",
]
