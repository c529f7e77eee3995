"""Batch orchestration: commit messages and executive summaries."""

from .commit_messages import (
    BatchCommitMessageResult,
    CommitMessageBatch,
    CommitMessageRequest,
    CommitMessageResult,
)
from .summary import (
    ChangeStats,
    CommitSummaryInput,
    ExecutiveSummaryGenerator,
    ExecutiveSummaryRequest,
    ExecutiveSummaryResult,
    RiskLevel,
    Theme,
)

__all__ = [
    "BatchCommitMessageResult",
    "ChangeStats",
    "CommitMessageBatch",
    "CommitMessageRequest",
    "CommitMessageResult",
    "CommitSummaryInput",
    "ExecutiveSummaryGenerator",
    "ExecutiveSummaryRequest",
    "ExecutiveSummaryResult",
    "RiskLevel",
    "Theme",
]
