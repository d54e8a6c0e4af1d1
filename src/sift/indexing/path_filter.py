"""
Path eligibility for indexing.

Combines three sources, evaluated in order:
1. Extension allowlist (exact basename for extensionless files)
2. Built-in ignore globs (node_modules, .git, build output, secrets)
3. The project override file (.siftignore), where `!pattern` force-includes
   and a plain pattern excludes. The first matching line decides.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Iterable

import pathspec
import structlog

if TYPE_CHECKING:
    from sift.config import Config

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OverrideRule:
    """One line of the override file."""

    pattern: str
    force_include: bool
    spec: pathspec.GitIgnoreSpec

    def matches(self, path: str) -> bool:
        return self.spec.match_file(path)


def _compile(pattern: str) -> pathspec.GitIgnoreSpec:
    return pathspec.GitIgnoreSpec.from_lines([pattern])


def parse_ignore_file(path: Path) -> list[OverrideRule]:
    """
    Parse an override file into ordered rules.

    Blank lines and lines starting with `#` are skipped. A leading `!`
    marks a force-include rule.

    Args:
        path: Path to the override file.

    Returns:
        Rules in file order. Empty if the file does not exist.
    """
    if not path.exists():
        return []

    rules: list[OverrideRule] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        force_include = line.startswith("!")
        pattern = line[1:] if force_include else line
        if not pattern:
            continue

        rules.append(
            OverrideRule(
                pattern=pattern,
                force_include=force_include,
                spec=_compile(pattern),
            )
        )

    return rules


class PathFilter:
    """Decides whether a project-relative path may be indexed."""

    def __init__(
        self,
        extensions: Iterable[str],
        ignore_patterns: Iterable[str],
        override_rules: list[OverrideRule] | None = None,
    ) -> None:
        allowed = list(extensions)
        self._suffixes = tuple(e.lower() for e in allowed if e.startswith("."))
        self._basenames = frozenset(allowed)
        self._ignore_patterns = list(ignore_patterns)
        self._ignore_spec = pathspec.GitIgnoreSpec.from_lines(self._ignore_patterns)
        self._override_rules = override_rules or []

    @classmethod
    def from_config(cls, config: "Config") -> "PathFilter":
        """Build a filter from config, reading the override file if present."""
        rules = parse_ignore_file(config.ignore_file_path)
        if rules:
            logger.info(
                "Loaded override patterns",
                file=config.indexing.ignore_file,
                count=len(rules),
            )
        return cls(
            extensions=config.indexing.extensions,
            ignore_patterns=config.indexing.ignore_patterns,
            override_rules=rules,
        )

    def has_allowed_extension(self, path: str) -> bool:
        name = PurePosixPath(path).name
        if name in self._basenames:
            return True
        return name.lower().endswith(self._suffixes)

    def is_default_ignored(self, path: str) -> bool:
        return self._ignore_spec.match_file(path)

    def is_eligible(self, path: str) -> bool:
        """
        Check whether a path should be indexed.

        Args:
            path: Project-relative path with POSIX separators.

        Returns:
            True if the path is eligible.
        """
        eligible = self.has_allowed_extension(path) and not self.is_default_ignored(path)

        for rule in self._override_rules:
            if rule.matches(path):
                return rule.force_include

        return eligible

    def filter(self, paths: Iterable[str]) -> list[str]:
        """Return eligible paths, preserving order."""
        return [p for p in paths if self.is_eligible(p)]


def create_default_ignore_file() -> str:
    """
    Create default .siftignore content.

    Returns:
        Default override file content.
    """
    return """# sift override file
# Patterns here are excluded from indexing (gitignore syntax).
# Prefix a pattern with ! to force-include it, even past built-in rules.
# Lines are evaluated top to bottom and the first match wins.

# Lock files (rarely useful in search results)
package-lock.json
yarn.lock
pnpm-lock.yaml
poetry.lock
Cargo.lock

# Test snapshots
__snapshots__/
*.snap
"""
