"""Executive summaries synthesised from a set of commit messages."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..errors import ConductorError
from ..progress import ProgressTracker
from ..runs.models import RunInput, RunKind
from ..runs.store import RunStore
from ..sessions.manager import SessionStore
from ..sessions.models import CommandOptions
from .commit_messages import BatchCommitMessageResult
from .oneshot import run_one_shot

logger = logging.getLogger(__name__)

MAX_SUGGESTED_ACTIONS = 5

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_ACTION_PATTERNS = tuple(
    re.compile(rf"{verb}\s+([^.]+)", re.IGNORECASE) for verb in ("should", "recommend", "suggest", "consider")
)


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ImpactLevel(str, Enum):
    MINOR = "MINOR"
    MODERATE = "MODERATE"
    MAJOR = "MAJOR"
    CRITICAL = "CRITICAL"


class ChangeStats(BaseModel):
    additions: int = 0
    deletions: int = 0
    files_changed: int = 0


class CommitSummaryInput(BaseModel):
    repository: str
    message: str
    stats: ChangeStats | None = None


class ExecutiveSummaryRequest(BaseModel):
    commit_messages: list[CommitSummaryInput] = Field(..., min_length=1)
    audience: str = Field(default="technical team")
    max_length: int = Field(default=500, gt=0, description="Upper bound on summary words.")
    focus_areas: list[str] = Field(default_factory=list)
    include_risk_assessment: bool = True
    include_recommendations: bool = True
    model: str | None = None


@dataclass(slots=True)
class Theme:
    name: str
    description: str = ""
    affected_repositories: list[str] = field(default_factory=list)
    impact: ImpactLevel = ImpactLevel.MINOR

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "affected_repositories": list(self.affected_repositories),
            "impact": self.impact.value,
        }


@dataclass(slots=True)
class ParsedSummary:
    summary: str
    themes: list[Theme]
    risk_level: RiskLevel
    suggested_actions: list[str]
    structured: bool


@dataclass(slots=True)
class ExecutiveSummaryResult:
    success: bool
    summary: str | None
    themes: list[Theme] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    suggested_actions: list[str] = field(default_factory=list)
    error: str | None = None
    repository_count: int = 0
    total_changes: int = 0
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary,
            "error": self.error,
            "themes": [theme.to_dict() for theme in self.themes],
            "risk_level": self.risk_level.value,
            "suggested_actions": list(self.suggested_actions),
            "repository_count": self.repository_count,
            "total_changes": self.total_changes,
            "run_id": self.run_id,
        }


def build_summary_prompt(request: ExecutiveSummaryRequest) -> str:
    details = []
    for commit in request.commit_messages:
        stats = ""
        if commit.stats is not None:
            stats = (
                f"(+{commit.stats.additions} -{commit.stats.deletions} "
                f"in {commit.stats.files_changed} files)"
            )
        details.append(f"Repository: {commit.repository}\nMessage: {commit.message}\nStats: {stats}")

    focus = ", ".join(request.focus_areas) if request.focus_areas else "all areas"
    lines = [
        "Generate an executive summary for the following repository changes.",
        "",
        f"Target Audience: {request.audience}",
        f"Maximum Length: {request.max_length} words",
        f"Focus Areas: {focus}",
    ]
    if request.include_risk_assessment:
        lines.append("Include a risk assessment of the changes (LOW/MEDIUM/HIGH/CRITICAL).")
    if request.include_recommendations:
        lines.append("Include actionable recommendations for next steps.")
    lines.extend(
        [
            "",
            "Repository Changes:",
            "\n\n".join(details),
            "",
            "Identify key themes across all changes and highlight the most impactful modifications,",
            f"using clear, concise language appropriate for {request.audience}.",
            "",
            "Format the response as JSON with the following structure:",
            "{",
            '  "summary": "Executive summary text here",',
            '  "themes": [{"name": "...", "description": "...", '
            '"affectedRepositories": ["repo"], "impact": "MINOR|MODERATE|MAJOR|CRITICAL"}],',
            '  "riskLevel": "LOW|MEDIUM|HIGH|CRITICAL",',
            '  "suggestedActions": ["Action 1", "Action 2"]',
            "}",
        ]
    )
    return "\n".join(lines)


def _load_json_document(text: str) -> dict[str, Any] | None:
    candidates = [match.group(1) for match in _FENCED_JSON.finditer(text)]
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            document = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(document, dict):
            return document
    return None


def _enum_value(enum_type, value: Any, default):
    try:
        return enum_type(str(value).upper())
    except ValueError:
        return default


def parse_summary(text: str, request: ExecutiveSummaryRequest) -> ParsedSummary:
    """Read the model's JSON answer, or fall back to keyword heuristics."""

    document = _load_json_document(text)
    if document is None:
        return ParsedSummary(
            summary=_extract_summary_text(text),
            themes=_extract_themes(text, request),
            risk_level=_extract_risk_level(text),
            suggested_actions=_extract_actions(text),
            structured=False,
        )

    themes = []
    for raw in document.get("themes") or []:
        if not isinstance(raw, dict):
            continue
        themes.append(
            Theme(
                name=str(raw.get("name") or "Unknown Theme"),
                description=str(raw.get("description") or ""),
                affected_repositories=[str(repo) for repo in raw.get("affectedRepositories") or []],
                impact=_enum_value(ImpactLevel, raw.get("impact", "MINOR"), ImpactLevel.MINOR),
            )
        )
    actions = document.get("suggestedActions") or []
    return ParsedSummary(
        summary=str(document.get("summary") or text),
        themes=themes,
        risk_level=_enum_value(RiskLevel, document.get("riskLevel", "LOW"), RiskLevel.LOW),
        suggested_actions=[str(action) for action in actions][:MAX_SUGGESTED_ACTIONS],
        structured=True,
    )


def _extract_summary_text(text: str) -> str:
    cleaned = re.sub(r"```[\s\S]*?```", "", text)
    cleaned = re.sub(r"\{[\s\S]*?\}", "", cleaned).strip()
    paragraphs = [paragraph for paragraph in cleaned.split("\n\n") if len(paragraph) > 50]
    return paragraphs[0] if paragraphs else text[:500]


def _extract_themes(text: str, request: ExecutiveSummaryRequest) -> list[Theme]:
    lowered = text.lower()
    themes: list[Theme] = []
    if "feature" in lowered or "new" in lowered:
        themes.append(
            Theme(
                name="New Features",
                description="New functionality has been added",
                affected_repositories=[
                    commit.repository for commit in request.commit_messages if "feat" in commit.message.lower()
                ],
                impact=ImpactLevel.MODERATE,
            )
        )
    if "fix" in lowered or "bug" in lowered:
        themes.append(
            Theme(
                name="Bug Fixes",
                description="Issues have been resolved",
                affected_repositories=[
                    commit.repository for commit in request.commit_messages if "fix" in commit.message.lower()
                ],
                impact=ImpactLevel.MINOR,
            )
        )
    return themes


def _extract_risk_level(text: str) -> RiskLevel:
    lowered = text.lower()
    if "critical" in lowered or "breaking" in lowered:
        return RiskLevel.CRITICAL
    if "high risk" in lowered or "significant" in lowered:
        return RiskLevel.HIGH
    if "medium" in lowered or "moderate" in lowered:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _extract_actions(text: str) -> list[str]:
    actions: list[str] = []
    for pattern in _ACTION_PATTERNS:
        actions.extend(match.group(1).strip() for match in pattern.finditer(text) if match.group(1).strip())
    return actions[:MAX_SUGGESTED_ACTIONS]


def total_changes(request: ExecutiveSummaryRequest) -> int:
    return sum(commit.stats.files_changed for commit in request.commit_messages if commit.stats)


class ExecutiveSummaryGenerator:
    """Runs the summary step as an ordinary scheduled run."""

    def __init__(self, sessions: SessionStore, runs: RunStore, progress: ProgressTracker) -> None:
        self._sessions = sessions
        self._runs = runs
        self._progress = progress

    async def generate(self, request: ExecutiveSummaryRequest) -> ExecutiveSummaryResult:
        repositories = {commit.repository for commit in request.commit_messages}
        run = self._runs.create_run(
            RunInput(
                prompt=build_summary_prompt(request),
                recent_history=[commit.message for commit in request.commit_messages],
                model=request.model,
                context={"audience": request.audience, "focus_areas": list(request.focus_areas)},
            ),
            kind=RunKind.EXECUTIVE_SUMMARY,
            repository=next(iter(repositories)) if len(repositories) == 1 else None,
        )
        base = {
            "repository_count": len(request.commit_messages),
            "total_changes": total_changes(request),
            "run_id": run.id,
        }
        try:
            outcome = await run_one_shot(
                self._sessions,
                self._runs,
                self._progress,
                run,
                options=CommandOptions(model=request.model),
            )
        except ConductorError as exc:
            logger.warning("Executive summary failed", extra={"run_id": run.id, "code": exc.code})
            return ExecutiveSummaryResult(success=False, summary=None, error=str(exc) or exc.code, **base)

        parsed = parse_summary(outcome.output, request)
        if not parsed.structured:
            logger.info("Executive summary was not JSON; used heuristics", extra={"run_id": run.id})
        return ExecutiveSummaryResult(
            success=True,
            summary=parsed.summary,
            themes=parsed.themes,
            risk_level=parsed.risk_level,
            suggested_actions=parsed.suggested_actions,
            **base,
        )

    async def summarize_batch(
        self, batch: BatchCommitMessageResult, **options: Any
    ) -> ExecutiveSummaryResult:
        """Summarise the successful messages of a finished commit message batch."""

        commits = [
            CommitSummaryInput(repository=result.repository_name, message=result.message)
            for result in batch.results
            if result.success and result.message
        ]
        if not commits:
            return ExecutiveSummaryResult(
                success=False,
                summary=None,
                error="Batch has no successful commit messages to summarise",
            )
        return await self.generate(ExecutiveSummaryRequest(commit_messages=commits, **options))


__all__ = [
    "ChangeStats",
    "CommitSummaryInput",
    "ExecutiveSummaryGenerator",
    "ExecutiveSummaryRequest",
    "ExecutiveSummaryResult",
    "ImpactLevel",
    "RiskLevel",
    "Theme",
    "build_summary_prompt",
    "parse_summary",
]
