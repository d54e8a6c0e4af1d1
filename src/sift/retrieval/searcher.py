"""
Similarity search over indexed chunks.

Every candidate chunk is scored against the query embedding with a dot
product (embeddings are unit length). This is an exhaustive scan: cost
grows linearly with the number of stored chunks, which is fine for a
single project but is the ceiling for larger corpora.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import numpy as np
import structlog

from sift.errors import QueryError

if TYPE_CHECKING:
    from sift.config import Config
    from sift.indexing.embedder import EmbeddingProvider
    from sift.storage.index_store import IndexStore

logger = structlog.get_logger(__name__)

RELATED_QUERY_LINES = 5
RELATED_CANDIDATES = 20
_QUERY_SKIP_PREFIXES = ("//", "*", "import", "export")


@dataclass(frozen=True)
class SearchResult:
    """A ranked chunk."""

    path: str
    chunk_index: int
    start_line: int
    end_line: int
    content: str
    similarity: float


@dataclass(frozen=True)
class RelatedFile:
    """A file related to a base file by chunk similarity."""

    path: str
    score: float
    max_similarity: float
    matching_chunks: int


class Searcher:
    """Ranks stored chunks against natural-language queries."""

    def __init__(
        self,
        config: "Config",
        store: "IndexStore",
        provider: "EmbeddingProvider",
    ) -> None:
        self.config = config
        self.store = store
        self.provider = provider

    async def _embed_query(self, query: str) -> np.ndarray:
        try:
            if not self.provider.is_ready:
                await self.provider.initialize()
            return np.asarray(await self.provider.embed(query), dtype=np.float32)
        except Exception as e:
            raise QueryError(f"Failed to embed query: {e}") from e

    async def search(
        self,
        query: str,
        limit: int | None = None,
        file_types: Sequence[str] | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """
        Find the chunks most similar to a query.

        Args:
            query: Natural language or code snippet.
            limit: Maximum results. Defaults to search.default_limit.
            file_types: Extensions to restrict to, e.g. ["py", ".ts"].
            min_score: Minimum similarity. Defaults to search.min_score.

        Returns:
            Results sorted by descending similarity.

        Raises:
            QueryError: If the query cannot be embedded.
        """
        if not query.strip():
            raise ValueError("query must not be empty")

        limit = self.config.search.default_limit if limit is None else limit
        min_score = self.config.search.min_score if min_score is None else min_score
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")

        query_vector = await self._embed_query(query)
        candidates = await self.store.load_chunks(file_types)
        if not candidates:
            return []

        try:
            matrix = np.vstack([c.embedding for c in candidates])
        except ValueError as e:
            raise QueryError(f"Index holds embeddings of mixed dimensions: {e}") from e
        if matrix.shape[1] != query_vector.shape[0]:
            raise QueryError(
                f"Query embedding has {query_vector.shape[0]} dimensions, "
                f"index has {matrix.shape[1]}"
            )

        scores = matrix @ query_vector

        ranked = sorted(
            (
                (float(score), chunk)
                for score, chunk in zip(scores, candidates)
                if score >= min_score
            ),
            key=lambda item: (-item[0], item[1].path, item[1].chunk_index),
        )

        results = [
            SearchResult(
                path=chunk.path,
                chunk_index=chunk.chunk_index,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                content=chunk.content,
                similarity=score,
            )
            for score, chunk in ranked[:limit]
        ]

        logger.debug(
            "Search complete",
            candidates=len(candidates),
            results=len(results),
        )
        return results

    async def find_related_files(
        self,
        path: str,
        limit: int = 10,
    ) -> list[RelatedFile]:
        """
        Find files whose chunks resemble the content of `path`.

        Args:
            path: Project-relative path of the base file.
            limit: Maximum files to return.

        Returns:
            Related files, best first. The base file is excluded.
        """
        full_path = self.config.project_root / path
        if not full_path.is_file():
            raise FileNotFoundError(f"File not found: {path}")

        related_query = build_related_query(full_path.read_text(encoding="utf-8", errors="replace"))
        if not related_query:
            return []

        base = Path(path).as_posix()
        results = await self.search(related_query, limit=RELATED_CANDIDATES)

        grouped: dict[str, tuple[float, int]] = {}
        for result in results:
            if result.path == base:
                continue
            best, hits = grouped.get(result.path, (result.similarity, 0))
            grouped[result.path] = (max(best, result.similarity), hits + 1)

        related = [
            RelatedFile(
                path=file_path,
                score=best * math.log(hits + 1),
                max_similarity=best,
                matching_chunks=hits,
            )
            for file_path, (best, hits) in grouped.items()
        ]
        related.sort(key=lambda r: (-r.score, r.path))
        return related[:limit]


def build_related_query(content: str) -> str:
    """Join the first few meaningful lines of a file into a query."""
    lines = []
    for line in content.split("\n"):
        trimmed = line.strip()
        if len(trimmed) > 10 and not trimmed.startswith(_QUERY_SKIP_PREFIXES):
            lines.append(trimmed)
        if len(lines) == RELATED_QUERY_LINES:
            break
    return " ".join(lines)
