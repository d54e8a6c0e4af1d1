"""
Tracked-file sources.

The canonical "which files exist" list comes from version control, not
from walking the file system. A run without that list is not trusted.
"""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from typing import Iterable, Protocol

import structlog

from sift.errors import TrackedFileEnumerationError

logger = structlog.get_logger(__name__)


class TrackedFileSource(Protocol):
    """Supplies project-relative paths of all currently tracked files."""

    async def list_files(self) -> list[str]: ...


class GitTrackedFileSource:
    """Lists files via `git ls-files` in the project root."""

    def __init__(self, project_root: Path, timeout: float = 30.0) -> None:
        self.project_root = project_root
        self.timeout = timeout

    async def list_files(self) -> list[str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_files_sync)

    def _list_files_sync(self) -> list[str]:
        try:
            result = subprocess.run(
                ["git", "ls-files", "-z"],
                cwd=str(self.project_root),
                capture_output=True,
                timeout=self.timeout,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, NotADirectoryError) as e:
            raise TrackedFileEnumerationError(
                f"Could not run git in {self.project_root}: {e}"
            ) from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise TrackedFileEnumerationError(
                f"Not a git repository: {self.project_root}. "
                f"File indexing works with git-managed files only. ({stderr})"
            )

        output = result.stdout.decode("utf-8", errors="surrogateescape")
        files = [f for f in output.split("\0") if f]
        logger.debug("Listed tracked files", count=len(files))
        return files


class StaticTrackedFileSource:
    """A fixed list of tracked paths."""

    def __init__(self, paths: Iterable[str]) -> None:
        self.paths = list(paths)

    async def list_files(self) -> list[str]:
        return list(self.paths)
