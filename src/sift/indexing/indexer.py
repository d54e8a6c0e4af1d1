"""
Indexing orchestration.

Coordinates enumeration, filtering, chunking, embedding and storage.
Files are processed one at a time; within a file all chunk embeddings
are requested concurrently and awaited before anything is written.
"""

from __future__ import annotations

import asyncio
import hashlib
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import structlog

from sift.errors import FileReadError
from sift.indexing.chunker import Chunker
from sift.indexing.path_filter import PathFilter
from sift.indexing.reconciler import Reconciler
from sift.indexing.tracked_files import GitTrackedFileSource
from sift.storage.index_store import EmbeddedChunk, FileUpdate

if TYPE_CHECKING:
    from sift.config import Config
    from sift.indexing.embedder import EmbeddingProvider
    from sift.indexing.tracked_files import TrackedFileSource
    from sift.storage.index_store import IndexStore

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[str, int, int], None]


def content_hash(content: str) -> str:
    """Short SHA-256 digest used for change detection."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


class IndexOutcome(str, Enum):
    """What index_file did with a path."""

    INDEXED = "indexed"
    UNCHANGED = "unchanged"
    SKIPPED_TOO_LARGE = "skipped_too_large"


class CancellationToken:
    """Stops an index_all run between files."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class IndexRunReport:
    """Summary of an index_all run."""

    total: int = 0
    indexed: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    removed: int = 0
    cancelled: bool = False
    failed_paths: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.indexed + self.unchanged + self.skipped + self.errors


class Indexer:
    """
    Builds and maintains the index for one project.

    Features:
    - Hash-gated incremental updates
    - Reconciliation against the tracked file set
    - Per-file failure isolation
    - Cooperative cancellation
    """

    def __init__(
        self,
        config: "Config",
        store: "IndexStore",
        provider: "EmbeddingProvider",
        tracked_files: "TrackedFileSource | None" = None,
        chunker: Chunker | None = None,
        path_filter: PathFilter | None = None,
    ) -> None:
        """
        Initialize the indexer.

        Args:
            config: sift configuration.
            store: Index store (already initialized).
            provider: Embedding provider.
            tracked_files: Source of tracked paths. Defaults to git.
            chunker: Chunker. Defaults to one built from config.
            path_filter: Fixed filter. By default a fresh filter is built
                for every run so override-file edits are picked up.
        """
        self.config = config
        self.store = store
        self.provider = provider
        self.tracked_files = tracked_files or GitTrackedFileSource(
            config.project_root,
            timeout=config.indexing.git_timeout_seconds,
        )
        self.chunker = chunker or Chunker.from_config(config)
        self.reconciler = Reconciler(store)
        self._path_filter = path_filter
        self._initialized = False

    async def initialize(self) -> None:
        """
        Ready the embedding provider and validate the index signature.

        Raises:
            ProviderInitError: If the provider cannot become ready.
            IndexSignatureMismatchError: If the index was built with a
                different model and rebuilding is disabled.
        """
        if self._initialized:
            return

        await self.provider.initialize()
        await self.store.check_embedding_signature(
            self.provider.model_name,
            self.provider.dimension,
            rebuild=self.config.storage.rebuild_on_model_change,
        )
        self._initialized = True

    def _relative_path(self, path: str | Path) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            candidate = candidate.relative_to(self.config.project_root)
        return candidate.as_posix()

    async def index_file(self, path: str | Path) -> IndexOutcome:
        """
        Index a single file if its content changed.

        Args:
            path: Project-relative (or absolute, inside the project) path.

        Returns:
            What happened to the file.

        Raises:
            FileReadError: If the file cannot be read.
        """
        if not self._initialized:
            await self.initialize()

        rel_path = self._relative_path(path)
        full_path = self.config.project_root / rel_path

        try:
            size_bytes = full_path.stat().st_size
            if size_bytes > self.config.indexing.max_file_size_bytes:
                logger.debug("Skipping large file", path=rel_path, size=size_bytes)
                return IndexOutcome.SKIPPED_TOO_LARGE
            content = full_path.read_bytes().decode("utf-8", errors="replace")
        except OSError as e:
            raise FileReadError(rel_path, str(e)) from e

        file_hash = content_hash(content)

        existing = await self.store.get_file_record(rel_path)
        if existing and existing.content_hash == file_hash:
            logger.debug("File unchanged, skipping", path=rel_path)
            return IndexOutcome.UNCHANGED

        chunks = self.chunker.chunk(content)
        embeddings = await asyncio.gather(
            *(self.provider.embed(chunk.content) for chunk in chunks)
        )

        await self.store.upsert_file(
            FileUpdate(
                path=rel_path,
                content_hash=file_hash,
                size_bytes=size_bytes,
                chunks=[
                    EmbeddedChunk(
                        chunk_index=chunk.chunk_index,
                        start_line=chunk.start_line,
                        end_line=chunk.end_line,
                        content=chunk.content,
                        embedding=embedding,
                    )
                    for chunk, embedding in zip(chunks, embeddings)
                ],
            )
        )

        logger.debug("Indexed file", path=rel_path, chunks=len(chunks))
        return IndexOutcome.INDEXED

    async def index_all(
        self,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> IndexRunReport:
        """
        Bring the index in line with the tracked file set.

        Args:
            on_progress: Called as (path, current, total) before each file.
            cancel_token: Checked between files.

        Returns:
            Run summary.

        Raises:
            TrackedFileEnumerationError: If tracked files cannot be listed.
                Nothing is indexed or removed in that case.
        """
        await self.initialize()

        tracked = await self.tracked_files.list_files()
        path_filter = self._path_filter or PathFilter.from_config(self.config)
        files = path_filter.filter(tracked)

        report = IndexRunReport(total=len(files))
        logger.info("Starting indexing run", tracked=len(tracked), eligible=len(files))

        report.removed = await self.reconciler.cleanup(set(files))

        for current, path in enumerate(files, start=1):
            if cancel_token is not None and cancel_token.cancelled:
                report.cancelled = True
                logger.info("Indexing run cancelled", processed=report.processed, total=report.total)
                break

            if on_progress:
                on_progress(path, current, report.total)

            try:
                outcome = await self.index_file(path)
            except Exception as e:
                logger.error("Error indexing file", path=path, error=str(e))
                report.errors += 1
                report.failed_paths.append(path)
                continue

            if outcome is IndexOutcome.INDEXED:
                report.indexed += 1
            elif outcome is IndexOutcome.UNCHANGED:
                report.unchanged += 1
            else:
                report.skipped += 1

        logger.info(
            "Indexing run complete",
            indexed=report.indexed,
            unchanged=report.unchanged,
            skipped=report.skipped,
            errors=report.errors,
            removed=report.removed,
        )
        return report
