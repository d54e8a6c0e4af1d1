"""
sift main entry point.

Provides the SiftService orchestration class and CLI interface.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Sequence

import click
import structlog
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn

from sift.config import Config, load_config
from sift.errors import SiftError

if TYPE_CHECKING:
    from sift.indexing.embedder import EmbeddingProvider
    from sift.indexing.indexer import (
        CancellationToken,
        IndexOutcome,
        IndexRunReport,
        Indexer,
        ProgressCallback,
    )
    from sift.indexing.tracked_files import TrackedFileSource
    from sift.retrieval.searcher import RelatedFile, SearchResult, Searcher
    from sift.storage.index_store import IndexStats, IndexStore

logger = structlog.get_logger(__name__)


class SiftService:
    """
    Main sift service wiring storage, embedding, indexing and search.

    This is the primary interface for embedding sift in another program.
    """

    def __init__(
        self,
        config: Config | None = None,
        provider: "EmbeddingProvider | None" = None,
        tracked_files: "TrackedFileSource | None" = None,
    ) -> None:
        """
        Initialize the service.

        Args:
            config: Configuration instance. Uses default if not provided.
            provider: Embedding provider. Built from config if not provided.
            tracked_files: Tracked-file source. Defaults to git.
        """
        self.config = config or Config()
        self.config.ensure_directories()

        self._provider = provider
        self._tracked_files = tracked_files
        self._store: IndexStore | None = None
        self._indexer: Indexer | None = None
        self._searcher: Searcher | None = None
        self._initialized = False

        logger.info(
            "sift service created",
            project_root=str(self.config.project_root),
            data_dir=str(self.config.absolute_data_dir),
        )

    async def initialize(self) -> None:
        """Open the store and ready the embedding provider."""
        if self._initialized:
            return

        from sift.indexing.embedder import create_provider
        from sift.indexing.indexer import Indexer
        from sift.retrieval.searcher import Searcher
        from sift.storage.index_store import IndexStore

        self._store = IndexStore(self.config)
        await self._store.initialize()

        try:
            if self._provider is None:
                self._provider = create_provider(self.config)

            self._indexer = Indexer(
                config=self.config,
                store=self._store,
                provider=self._provider,
                tracked_files=self._tracked_files,
            )
            await self._indexer.initialize()
        except BaseException:
            await self._store.close()
            self._store = None
            raise

        self._searcher = Searcher(self.config, self._store, self._provider)
        self._initialized = True
        logger.info("sift service initialized")

    async def close(self) -> None:
        """Release the store handle and the provider."""
        if self._provider:
            await self._provider.close()

        if self._store:
            await self._store.close()
            self._store = None

        self._initialized = False

    @asynccontextmanager
    async def session(self) -> AsyncIterator["SiftService"]:
        """Context manager for service lifecycle."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.close()

    def _require(self) -> tuple["IndexStore", "Indexer", "Searcher"]:
        if not self._initialized or not (self._store and self._indexer and self._searcher):
            raise RuntimeError("Service not initialized")
        return self._store, self._indexer, self._searcher

    async def index_file(self, path: str | Path) -> "IndexOutcome":
        """Index one file if it changed."""
        _, indexer, _ = self._require()
        return await indexer.index_file(path)

    async def index_all(
        self,
        on_progress: "ProgressCallback | None" = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> "IndexRunReport":
        """Reconcile and index every tracked, eligible file."""
        _, indexer, _ = self._require()
        return await indexer.index_all(on_progress=on_progress, cancel_token=cancel_token)

    async def search(
        self,
        query: str,
        limit: int | None = None,
        file_types: Sequence[str] | None = None,
        min_score: float | None = None,
    ) -> list["SearchResult"]:
        """Rank indexed chunks against a query."""
        _, _, searcher = self._require()
        return await searcher.search(
            query,
            limit=limit,
            file_types=file_types,
            min_score=min_score,
        )

    async def find_related_files(self, path: str, limit: int = 10) -> list["RelatedFile"]:
        """Find files similar to the given one."""
        _, _, searcher = self._require()
        return await searcher.find_related_files(path, limit=limit)

    async def get_stats(self) -> "IndexStats":
        """Get index statistics."""
        store, _, _ = self._require()
        return await store.get_stats()


def configure_logging(level: str) -> None:
    """Route structlog output through a level filter."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _format_size(size_bytes: int) -> str:
    return f"{size_bytes / 1024 / 1024:.2f}MB"


# CLI Implementation
@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--project",
    "-p",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path.cwd,
    help="Project root directory",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose logging",
)
@click.pass_context
def cli(ctx: click.Context, config: Path | None, project: Path, verbose: bool) -> None:
    """sift - semantic search over a git project."""
    ctx.ensure_object(dict)

    loaded = load_config(config_path=config, project_root=project)
    configure_logging("DEBUG" if verbose else loaded.log_level)
    ctx.obj["config"] = loaded


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except SiftError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.pass_context
def index(ctx: click.Context) -> None:
    """Index all tracked files in the project."""
    from sift.indexing.indexer import CancellationToken

    config = ctx.obj["config"]
    console = Console(stderr=True)

    async def run_index() -> None:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, token.cancel)
            except NotImplementedError:
                pass

        service = SiftService(config)
        async with service.session():
            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Indexing", total=None)

                def on_progress(path: str, current: int, total: int) -> None:
                    progress.update(task, total=total, completed=current - 1, description=path)

                report = await service.index_all(on_progress=on_progress, cancel_token=token)

            stats = await service.get_stats()

        click.echo(f"Files indexed: {stats.total_files}")
        click.echo(f"Total chunks: {stats.total_chunks}")
        click.echo(f"Index size: {_format_size(stats.index_size_bytes)}")
        click.echo(
            f"Updated {report.indexed}, unchanged {report.unchanged}, "
            f"skipped {report.skipped}, removed {report.removed}"
        )
        if report.errors:
            click.echo(f"Errors: {report.errors}", err=True)
        if report.cancelled:
            click.echo("Indexing cancelled before completion", err=True)

    _run(run_index())


@cli.command()
@click.argument("query")
@click.option("--limit", "-n", type=int, default=None, help="Number of results")
@click.option("--type", "-t", "file_types", multiple=True, help="Restrict to extension (repeatable)")
@click.option("--min-score", type=float, default=None, help="Minimum similarity")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    limit: int | None,
    file_types: tuple[str, ...],
    min_score: float | None,
) -> None:
    """Search the index."""
    config = ctx.obj["config"]

    async def run_search() -> None:
        service = SiftService(config)
        async with service.session():
            results = await service.search(
                query,
                limit=limit,
                file_types=list(file_types) or None,
                min_score=min_score,
            )

        if not results:
            click.echo(f'No results found for query: "{query}"')
            return

        for i, result in enumerate(results, 1):
            lines = result.content.split("\n")
            click.echo(
                f"\n{i}. {result.path}:{result.start_line}-{result.end_line} "
                f"(similarity: {result.similarity:.3f})"
            )
            for line in lines[:3]:
                click.echo(f"  {line}")
            if len(lines) > 3:
                click.echo("  ...")

    _run(run_search())


@cli.command()
@click.argument("file")
@click.option("--limit", "-n", type=int, default=10, help="Number of files")
@click.pass_context
def related(ctx: click.Context, file: str, limit: int) -> None:
    """List files related to FILE."""
    config = ctx.obj["config"]

    async def run_related() -> None:
        service = SiftService(config)
        async with service.session():
            files = await service.find_related_files(file, limit=limit)

        if not files:
            click.echo(f"No related files found for: {file}")
            return
        for i, item in enumerate(files, 1):
            click.echo(f"{i}. {item.path} (relevance: {item.score:.3f})")

    _run(run_related())


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show index statistics."""
    config = ctx.obj["config"]

    async def run_stats() -> None:
        service = SiftService(config)
        async with service.session():
            result = await service.get_stats()

        click.echo(f"Index: {config.db_path}")
        click.echo(f"Total files: {result.total_files}")
        click.echo(f"Total chunks: {result.total_chunks}")
        click.echo(f"Index size: {_format_size(result.index_size_bytes)}")
        click.echo(f"Chunk size: {config.indexing.chunk_size} lines")

    _run(run_stats())


@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the data directory and a starter override file."""
    from sift.indexing.path_filter import create_default_ignore_file

    config = ctx.obj["config"]
    config.ensure_directories()

    ignore_path = config.ignore_file_path
    if not ignore_path.exists():
        ignore_path.write_text(create_default_ignore_file())
        click.echo(f"Created {ignore_path}")

    click.echo(f"Initialized sift in {config.absolute_data_dir}")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
