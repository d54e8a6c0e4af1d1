"""
Removal of index entries for files that left the tracked set.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, AbstractSet

import structlog

if TYPE_CHECKING:
    from sift.storage.index_store import IndexStore

logger = structlog.get_logger(__name__)


class Reconciler:
    """Prunes indexed paths that are no longer tracked."""

    def __init__(self, store: "IndexStore") -> None:
        self.store = store

    async def cleanup(self, tracked_paths: AbstractSet[str]) -> int:
        """
        Remove every indexed file whose path is not in `tracked_paths`.

        Args:
            tracked_paths: Eligible paths currently tracked by version control.

        Returns:
            Number of files removed.
        """
        stale = sorted(await self.store.list_paths() - set(tracked_paths))

        removed = 0
        for path in stale:
            if await self.store.remove_file(path):
                removed += 1
                logger.debug("Removed untracked file from index", path=path)

        if removed:
            logger.info("Cleaned up deleted files from index", count=removed)

        return removed
