"""Profile loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Iterator

import yaml
from pydantic import ValidationError

from .models import InvocationProfile

_PATTERNS = ("*.yml", "*.yaml")


class ProfileLoadError(RuntimeError):
    """Raised when one or more profile files cannot be parsed."""


def _documents(path: Path) -> Iterator[Any]:
    """Yield profile mappings from ``path``.

    A file holds either one profile mapping or a ``profiles:`` list of them.
    """

    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    if document is None:
        return
    if isinstance(document, dict) and isinstance(document.get("profiles"), list):
        yield from document["profiles"]
    else:
        yield document


class ProfileLoader:
    """Reads invocation profiles from YAML files in a list of directories.

    Directories are read in order and a later directory overrides an earlier
    one on id collisions; the same id twice within one directory is an error.
    Results are cached until ``load_all(refresh=True)``.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths = [Path(path) for path in (search_paths or []) if Path(path).is_dir()]
        self._cache: dict[str, InvocationProfile] | None = None
        self._sources: dict[str, Path] = {}

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self, *, refresh: bool = False) -> dict[str, InvocationProfile]:
        if self._cache is None or refresh:
            self._cache, self._sources = self._scan()
        return dict(self._cache)

    def _scan(self) -> tuple[dict[str, InvocationProfile], dict[str, Path]]:
        profiles: dict[str, InvocationProfile] = {}
        sources: dict[str, Path] = {}
        errors: list[str] = []

        for directory in self._search_paths:
            seen_here: dict[str, Path] = {}
            files = [path for pattern in _PATTERNS for path in sorted(directory.glob(pattern))]
            for path in files:
                try:
                    documents = list(_documents(path))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                for document in documents:
                    try:
                        profile = InvocationProfile.model_validate(document)
                    except ValidationError as exc:
                        errors.append(f"Profile validation error in {path}: {exc}")
                        continue
                    if profile.id in seen_here:
                        first = seen_here[profile.id]
                        errors.append(f"Duplicate profile id '{profile.id}' in {path} (first defined in {first})")
                        continue
                    seen_here[profile.id] = path
                    profiles[profile.id] = profile
                    sources[profile.id] = path

        if errors:
            raise ProfileLoadError("; ".join(errors))
        return profiles, sources

    def get(self, profile_id: str) -> InvocationProfile:
        profile = self.load_all().get(profile_id)
        if profile is None:
            raise ProfileLoadError(f"Profile '{profile_id}' not found in search paths")
        return profile

    def ids(self) -> list[str]:
        return sorted(self.load_all())

    def source_of(self, profile_id: str) -> Path | None:
        """File the cached profile was read from, if it has been loaded."""

        return self._sources.get(profile_id)


def load_profiles(search_paths: Iterable[Path] | None = None) -> dict[str, InvocationProfile]:
    """Convenience wrapper for loading profiles from the provided paths."""

    return ProfileLoader(search_paths).load_all()


__all__ = ["InvocationProfile", "ProfileLoadError", "ProfileLoader", "load_profiles"]
