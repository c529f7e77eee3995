"""Configuration management for Conductor MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .sessions.prewarm import DEFAULT_WARMUP_PROMPT

_DEFAULT_ALLOWED_TOOLS = ("Bash", "Read", "Write", "Edit")


class ConductorSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    default_model: str | None = Field(default=None, validation_alias="CONDUCTOR_DEFAULT_MODEL")

    max_concurrency: int = Field(default=5, validation_alias="CONDUCTOR_MAX_CONCURRENCY")
    rate_limit_count: int = Field(default=3, validation_alias="CONDUCTOR_RATE_LIMIT_COUNT")
    rate_limit_interval: float = Field(default=1.0, validation_alias="CONDUCTOR_RATE_LIMIT_INTERVAL")
    invocation_timeout: float = Field(
        default=30 * 60, validation_alias="CONDUCTOR_INVOCATION_TIMEOUT"
    )
    kill_grace_period: float = Field(default=5.0, validation_alias="CONDUCTOR_KILL_GRACE_PERIOD")

    run_storage_path: Path = Field(
        default=Path("./storage/runs"), validation_alias="CONDUCTOR_RUN_STORAGE_PATH"
    )
    run_retention_days: float = Field(default=30, validation_alias="CONDUCTOR_RUN_RETENTION_DAYS")
    cleanup_interval_hours: float = Field(
        default=24, validation_alias="CONDUCTOR_CLEANUP_INTERVAL_HOURS"
    )
    progress_sweep_interval: float = Field(
        default=3600, validation_alias="CONDUCTOR_PROGRESS_SWEEP_INTERVAL"
    )
    batch_retention_minutes: float = Field(
        default=60, validation_alias="CONDUCTOR_BATCH_RETENTION_MINUTES"
    )
    session_archive_path: Path = Field(
        default=Path("./storage/archives"), validation_alias="CONDUCTOR_SESSION_ARCHIVE_PATH"
    )
    handoff_path: Path = Field(
        default=Path("./storage/handoffs"), validation_alias="CONDUCTOR_HANDOFF_PATH"
    )

    prewarm_pool_size: int = Field(default=0, validation_alias="CONDUCTOR_PREWARM_POOL_SIZE")
    prewarm_max_age_seconds: float = Field(
        default=300, validation_alias="CONDUCTOR_PREWARM_MAX_AGE_SECONDS"
    )
    prewarm_interval: float = Field(default=60, validation_alias="CONDUCTOR_PREWARM_INTERVAL")
    prewarm_timeout: float = Field(default=30, validation_alias="CONDUCTOR_PREWARM_TIMEOUT")
    prewarm_prompt: str = Field(
        default=DEFAULT_WARMUP_PROMPT, validation_alias="CONDUCTOR_PREWARM_PROMPT"
    )

    allowed_tools: Annotated[tuple[str, ...], NoDecode] = Field(
        default=_DEFAULT_ALLOWED_TOOLS, validation_alias="CONDUCTOR_ALLOWED_TOOLS"
    )
    skip_permissions: bool = Field(default=False, validation_alias="CLAUDE_DANGEROUS_MODE")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="CONDUCTOR_PROFILE_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="CONDUCTOR_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CONDUCTOR_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError(
            "CONDUCTOR_PROFILE_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def _parse_allowed_tools(cls, value):
        if value is None:
            return _DEFAULT_ALLOWED_TOOLS
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        if isinstance(value, (list, tuple)):
            return tuple(str(item).strip() for item in value if str(item).strip())
        raise TypeError("CONDUCTOR_ALLOWED_TOOLS must be a comma-separated string or a list")

    @field_validator(
        "max_concurrency",
        "rate_limit_count",
    )
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("concurrency and rate limits must be >= 1")
        return value

    @field_validator(
        "rate_limit_interval",
        "invocation_timeout",
        "run_retention_days",
        "cleanup_interval_hours",
        "progress_sweep_interval",
        "batch_retention_minutes",
        "prewarm_max_age_seconds",
        "prewarm_interval",
        "prewarm_timeout",
    )
    @classmethod
    def _validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("intervals, timeouts and retention windows must be > 0")
        return value

    @field_validator("kill_grace_period")
    @classmethod
    def _validate_grace_period(cls, value: float) -> float:
        if value < 0:
            raise ValueError("CONDUCTOR_KILL_GRACE_PERIOD must be >= 0")
        return value

    @field_validator("prewarm_pool_size")
    @classmethod
    def _validate_pool_size(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CONDUCTOR_PREWARM_POOL_SIZE must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> ConductorSettings:
    """Return cached settings instance."""

    settings = ConductorSettings()
    settings.run_storage_path = settings.run_storage_path.expanduser().resolve()
    settings.session_archive_path = settings.session_archive_path.expanduser().resolve()
    settings.handoff_path = settings.handoff_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["ConductorSettings", "get_settings"]
