"""
Integration tests for search.

Tests cover:
- Ranking of relevant files above unrelated ones
- Score thresholds, limits and extension filters
- Deterministic ordering
- Query failures
- Related-file discovery
- The SiftService lifecycle, including a real git project
"""

from __future__ import annotations

from pathlib import Path

import pytest

from sift.config import Config
from sift.errors import ProviderInitError, QueryError
from sift.indexing.indexer import Indexer
from sift.indexing.tracked_files import StaticTrackedFileSource
from sift.main import SiftService
from sift.retrieval.searcher import Searcher, build_related_query
from sift.storage.index_store import IndexStore
from tests.conftest import (
    SAMPLE_AUTH_DOC_MD,
    SAMPLE_AUTH_JS,
    SAMPLE_UTILS_JS,
    KeywordEmbeddingProvider,
    git,
    init_git_repo,
    requires_git,
    write_files,
)

SAMPLE_SESSION_JS = """
function createSession(user) {
  return loginToken(user.password);
}
"""

PROJECT_FILES = {
    "src/auth.js": SAMPLE_AUTH_JS,
    "src/utils.js": SAMPLE_UTILS_JS,
}


async def build_index(
    config: Config,
    store: IndexStore,
    provider: KeywordEmbeddingProvider,
    files: dict[str, str],
) -> Searcher:
    write_files(config.project_root, files)
    indexer = Indexer(
        config,
        store,
        provider,
        tracked_files=StaticTrackedFileSource(list(files)),
    )
    await indexer.index_all()
    return Searcher(config, store, provider)


# ==============================================================================
# Ranking
# ==============================================================================

class TestSearchRanking:
    """Tests for result ranking."""

    @pytest.mark.asyncio
    async def test_auth_query_prefers_auth_file(self, test_config, store, mock_provider):
        """An authentication query ranks the auth file above utilities."""
        searcher = await build_index(test_config, store, mock_provider, PROJECT_FILES)

        assert (await store.get_stats()).total_files == 2

        results = await searcher.search("user authentication login", min_score=-1.0)

        assert [r.path for r in results] == ["src/auth.js", "src/utils.js"]
        assert results[0].similarity > results[1].similarity
        assert results[0].start_line == 1
        assert "authenticate" in results[0].content

    @pytest.mark.asyncio
    async def test_default_threshold_drops_unrelated(self, test_config, store, mock_provider):
        """The default minimum score filters out unrelated chunks."""
        searcher = await build_index(test_config, store, mock_provider, PROJECT_FILES)

        results = await searcher.search("user authentication login")

        assert [r.path for r in results] == ["src/auth.js"]
        assert results[0].similarity >= test_config.search.min_score

    @pytest.mark.asyncio
    async def test_email_query_prefers_utils(self, test_config, store, mock_provider):
        """An email query ranks the validation helper first."""
        searcher = await build_index(test_config, store, mock_provider, PROJECT_FILES)

        results = await searcher.search("email validation", min_score=-1.0)

        assert results[0].path == "src/utils.js"

    @pytest.mark.asyncio
    async def test_results_sorted(self, test_config, store, mock_provider):
        """Similarities are non-increasing."""
        files = dict(PROJECT_FILES)
        files["src/session.js"] = SAMPLE_SESSION_JS
        files["docs/auth.md"] = SAMPLE_AUTH_DOC_MD
        searcher = await build_index(test_config, store, mock_provider, files)

        results = await searcher.search("user login password", min_score=-1.0)

        scores = [r.similarity for r in results]
        assert scores == sorted(scores, reverse=True)
        assert len(results) == 4

    @pytest.mark.asyncio
    async def test_ties_broken_by_path(self, test_config, store, mock_provider):
        """Equal similarities are ordered by path."""
        searcher = await build_index(
            test_config,
            store,
            mock_provider,
            {"b/copy.js": SAMPLE_AUTH_JS, "a/copy.js": SAMPLE_AUTH_JS},
        )

        results = await searcher.search("user credentials")

        assert [r.path for r in results] == ["a/copy.js", "b/copy.js"]
        assert results[0].similarity == results[1].similarity


# ==============================================================================
# Filters
# ==============================================================================

class TestSearchFilters:
    """Tests for thresholds, limits and extension filters."""

    @pytest.mark.asyncio
    async def test_unreachable_threshold(self, test_config, store, mock_provider):
        """A threshold above 1 returns nothing."""
        searcher = await build_index(test_config, store, mock_provider, PROJECT_FILES)

        assert await searcher.search("user authentication", min_score=1.01) == []

    @pytest.mark.asyncio
    async def test_limit(self, test_config, store, mock_provider):
        """At most `limit` results are returned."""
        searcher = await build_index(test_config, store, mock_provider, PROJECT_FILES)

        results = await searcher.search("user authentication", limit=1, min_score=-1.0)

        assert len(results) == 1
        assert results[0].path == "src/auth.js"

    @pytest.mark.asyncio
    async def test_file_types(self, test_config, store, mock_provider):
        """Extension filters restrict candidate files."""
        files = dict(PROJECT_FILES)
        files["docs/auth.md"] = SAMPLE_AUTH_DOC_MD
        searcher = await build_index(test_config, store, mock_provider, files)

        results = await searcher.search("user login", file_types=["md"], min_score=-1.0)

        assert [r.path for r in results] == ["docs/auth.md"]

    @pytest.mark.asyncio
    async def test_empty_index(self, test_config, store, mock_provider):
        """Searching an empty index returns no results."""
        searcher = Searcher(test_config, store, mock_provider)

        assert await searcher.search("anything at all") == []

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, test_config, store, mock_provider):
        """Blank queries, non-positive limits and empty extensions are rejected."""
        searcher = Searcher(test_config, store, mock_provider)

        with pytest.raises(ValueError):
            await searcher.search("   ")
        with pytest.raises(ValueError):
            await searcher.search("user login", limit=0)
        with pytest.raises(ValueError):
            await searcher.search("user login", file_types=["."])


# ==============================================================================
# Failures
# ==============================================================================

class TestSearchFailures:
    """Tests for query failures."""

    @pytest.mark.asyncio
    async def test_embedding_failure(self, test_config, store, mock_provider):
        """A query that cannot be embedded raises QueryError."""
        await build_index(test_config, store, mock_provider, PROJECT_FILES)
        searcher = Searcher(
            test_config, store, KeywordEmbeddingProvider(fail_on="explode")
        )

        with pytest.raises(QueryError):
            await searcher.search("please explode")

    @pytest.mark.asyncio
    async def test_provider_unavailable(self, test_config, store):
        """A provider that cannot start raises QueryError."""
        searcher = Searcher(
            test_config, store, KeywordEmbeddingProvider(fail_initialize=True)
        )

        with pytest.raises(QueryError):
            await searcher.search("user login")

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, test_config, store, mock_provider):
        """A query vector of the wrong size is rejected."""
        await build_index(test_config, store, mock_provider, PROJECT_FILES)
        searcher = Searcher(test_config, store, KeywordEmbeddingProvider(dimension=32))

        with pytest.raises(QueryError):
            await searcher.search("user login")


# ==============================================================================
# Related Files
# ==============================================================================

class TestRelatedFiles:
    """Tests for find_related_files."""

    def test_related_query_skips_noise(self):
        """The related-file query skips comments, imports and short lines."""
        content = "\n".join(
            [
                "import os",
                "// a comment line here",
                "}",
                "export const value = compute();",
                "function handleRequest(request) {",
                "  return respond(request.body);",
            ]
        )

        assert build_related_query(content) == (
            "function handleRequest(request) { return respond(request.body);"
        )

    def test_related_query_limit(self):
        """At most five lines make up the related-file query."""
        content = "\n".join(f"meaningful line number {i}" for i in range(10))

        assert build_related_query(content).count("meaningful") == 5

    @pytest.mark.asyncio
    async def test_related_excludes_self(self, test_config, store, mock_provider):
        """Similar files are returned and the base file is not."""
        files = dict(PROJECT_FILES)
        files["src/session.js"] = SAMPLE_SESSION_JS
        searcher = await build_index(test_config, store, mock_provider, files)

        related = await searcher.find_related_files("src/auth.js")

        paths = [r.path for r in related]
        assert "src/auth.js" not in paths
        assert paths[0] == "src/session.js"
        assert "src/utils.js" not in paths
        assert related[0].matching_chunks == 1
        assert related[0].score == pytest.approx(related[0].max_similarity * 0.693, rel=1e-3)

    @pytest.mark.asyncio
    async def test_related_missing_file(self, test_config, store, mock_provider):
        """An unknown base file raises FileNotFoundError."""
        searcher = Searcher(test_config, store, mock_provider)

        with pytest.raises(FileNotFoundError):
            await searcher.find_related_files("src/ghost.js")


# ==============================================================================
# Service
# ==============================================================================

class TestSiftService:
    """Tests for the SiftService lifecycle."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, project_dir: Path, test_config, mock_provider):
        """Index, search, relate and report through the service."""
        files = dict(PROJECT_FILES)
        files["src/session.js"] = SAMPLE_SESSION_JS
        write_files(project_dir, files)

        service = SiftService(
            test_config,
            provider=mock_provider,
            tracked_files=StaticTrackedFileSource(list(files)),
        )
        async with service.session():
            report = await service.index_all()
            assert report.indexed == 3

            results = await service.search("user authentication login")
            assert results[0].path in {"src/auth.js", "src/session.js"}
            assert all(r.path != "src/utils.js" for r in results)

            related = await service.find_related_files("src/auth.js")
            assert [r.path for r in related] == ["src/session.js"]

            stats = await service.get_stats()
            assert stats.total_files == 3
            assert stats.total_chunks == 3

        with pytest.raises(RuntimeError, match="not initialized"):
            await service.search("user login")

    @pytest.mark.asyncio
    async def test_not_initialized(self, test_config, mock_provider):
        """Operations before initialize are refused."""
        service = SiftService(test_config, provider=mock_provider)

        with pytest.raises(RuntimeError, match="not initialized"):
            await service.get_stats()

    @pytest.mark.asyncio
    async def test_provider_failure(self, test_config):
        """A provider failure aborts initialization."""
        service = SiftService(
            test_config,
            provider=KeywordEmbeddingProvider(fail_initialize=True),
        )

        with pytest.raises(ProviderInitError):
            await service.initialize()

        with pytest.raises(RuntimeError):
            await service.index_all()

    @pytest.mark.asyncio
    async def test_index_file(self, project_dir: Path, test_config, mock_provider):
        """Single files can be indexed through the service."""
        write_files(project_dir, PROJECT_FILES)

        async with SiftService(test_config, provider=mock_provider).session() as service:
            await service.index_file("src/utils.js")

            stats = await service.get_stats()
            assert stats.total_files == 1

    @requires_git
    @pytest.mark.asyncio
    async def test_git_project(self, project_dir: Path, test_config, mock_provider):
        """A real git repository drives indexing and reconciliation."""
        init_git_repo(project_dir)
        write_files(project_dir, PROJECT_FILES)
        write_files(project_dir, {"scratch.js": "function untrackedScratch() {}\n"})
        git(project_dir, "add", "src/auth.js", "src/utils.js")
        git(project_dir, "commit", "-m", "initial")

        async with SiftService(test_config, provider=mock_provider).session() as service:
            report = await service.index_all()
            assert report.indexed == 2

            git(project_dir, "rm", "-q", "src/utils.js")
            report = await service.index_all()
            assert report.removed == 1
            assert report.unchanged == 1

            stats = await service.get_stats()
            assert stats.total_files == 1
