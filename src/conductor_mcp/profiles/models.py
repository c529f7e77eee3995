"""Profile models describing how the Claude CLI is invoked."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class InvocationProfile(BaseModel):
    """Named set of CLI options a command can opt into."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(..., description="Display title for the profile.")
    description: str = Field(default="", description="What the profile is meant for.")
    model: str | None = Field(default=None, description="Model passed with --model.")
    allowed_tools: list[str] = Field(
        default_factory=list,
        description="Tools granted with --allowedTools; empty means the settings default.",
    )
    skip_permissions: bool = Field(
        default=False,
        description="Pass --dangerously-skip-permissions instead of an allow-list.",
    )
    extra_flags: list[str] = Field(
        default_factory=list,
        description="Additional raw CLI flags appended after the generated ones.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata to attach to runs for filtering.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Invocation profile id must not be empty")
        return normalized

    @field_validator("allowed_tools", "extra_flags", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("allowed_tools and extra_flags must be sequences of strings")

    def cli_flags(
        self, default_tools: tuple[str, ...] | list[str] = (), *, model: str | None = None
    ) -> list[str]:
        """Render the profile as Claude CLI flags; ``model`` overrides the profile's own."""

        flags: list[str] = []
        model = model or self.model
        if model:
            flags.extend(["--model", model])
        tools = self.allowed_tools or list(default_tools)
        flags.extend(permission_flags(tools, skip_permissions=self.skip_permissions))
        flags.extend(self.extra_flags)
        return flags


def permission_flags(allowed_tools, *, skip_permissions: bool = False) -> list[str]:
    """Return the permission flags for an allow-list or the dangerous mode."""

    if skip_permissions:
        return ["--dangerously-skip-permissions"]
    flags: list[str] = []
    for tool in allowed_tools:
        flags.extend(["--allowedTools", tool])
    return flags


__all__ = ["InvocationProfile", "permission_flags"]
