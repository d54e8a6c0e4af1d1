"""
Shared fixtures for the sift test suite.

Provides:
- Temporary project roots and configuration
- A deterministic keyword embedding provider
- Initialized index stores
- Sample source files
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import shutil
import subprocess
from pathlib import Path
from typing import AsyncIterator

import numpy as np
import pytest

from sift.config import Config, IndexingConfig
from sift.indexing.embedder import EmbeddingProvider
from sift.storage.index_store import EmbeddedChunk, FileUpdate, IndexStore

GIT = shutil.which("git")
requires_git = pytest.mark.skipif(GIT is None, reason="git not installed")


# ==============================================================================
# Sample Files
# ==============================================================================

SAMPLE_AUTH_JS = """
function authenticate(username, password) {
  // Check user credentials
  return checkDatabase(username, password);
}
"""

SAMPLE_UTILS_JS = """
function validateEmail(email) {
  return /^[^@]+@[^@]+$/.test(email);
}
"""

SAMPLE_AUTH_DOC_MD = "# Authentication\n\nUsers log in with a username and password.\n"


# ==============================================================================
# Mock Embedding Provider
# ==============================================================================

# Concept dimensions: any token starting with one of the stems lands there.
CONCEPTS: dict[int, tuple[str, ...]] = {
    0: ("auth", "login", "log", "password", "credential", "user", "session"),
    1: ("email", "mail", "valid", "regex", "format"),
}

_TOKEN_RE = re.compile(r"[A-Za-z]+")
_CAMEL_RE = re.compile(r"([a-z])([A-Z])")


def tokenize(text: str) -> list[str]:
    """Split text into lowercase word tokens, breaking camelCase."""
    return [t.lower() for t in _TOKEN_RE.findall(_CAMEL_RE.sub(r"\1 \2", text))]


class KeywordEmbeddingProvider(EmbeddingProvider):
    """
    Mock embedding provider for fast tests.

    Known concept words share a dimension; every other token is hashed
    into the remaining dimensions. Vectors are L2 normalized, so
    texts about the same concept score high and unrelated texts near zero.
    """

    def __init__(
        self,
        dimension: int = 64,
        model_name: str = "keyword-mock",
        fail_on: str | None = None,
        fail_initialize: bool = False,
    ) -> None:
        self._dimension = dimension
        self._model_name = model_name
        self.fail_on = fail_on
        self.fail_initialize = fail_initialize
        self._initialized = False
        self.call_count = 0
        self.initialize_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def is_ready(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        self.initialize_calls += 1
        if self.fail_initialize:
            from sift.errors import ProviderInitError

            raise ProviderInitError("mock provider unavailable")
        self._initialized = True

    def vector(self, text: str) -> np.ndarray:
        embedding = np.zeros(self._dimension, dtype=np.float32)
        hashed_dims = self._dimension - len(CONCEPTS)

        for token in tokenize(text):
            for dim, stems in CONCEPTS.items():
                if token.startswith(stems):
                    embedding[dim] += 1.0
                    break
            else:
                digest = hashlib.sha256(token.encode()).digest()
                embedding[len(CONCEPTS) + int.from_bytes(digest[:4], "little") % hashed_dims] += 1.0

        norm = np.linalg.norm(embedding)
        if norm == 0:
            embedding[-1] = 1.0
            return embedding
        return embedding / norm

    async def embed(self, text: str) -> np.ndarray:
        self.call_count += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.fail_on is not None and self.fail_on in text:
                raise RuntimeError(f"embedding failed for text containing {self.fail_on!r}")
            return self.vector(text)
        finally:
            self.in_flight -= 1


# ==============================================================================
# Configuration Fixtures
# ==============================================================================

@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create an empty project directory."""
    root = tmp_path / "project"
    root.mkdir()
    return root


def make_config(project_dir: Path, **indexing: object) -> Config:
    """Build a test configuration rooted at project_dir."""
    return Config(
        project_root=project_dir,
        data_dir=project_dir / ".sift",
        log_level="DEBUG",
        indexing=IndexingConfig(**indexing),
    )


@pytest.fixture
def test_config(project_dir: Path) -> Config:
    """Create a test configuration."""
    return make_config(project_dir)


@pytest.fixture
def mock_provider() -> KeywordEmbeddingProvider:
    """Get a mock embedding provider."""
    return KeywordEmbeddingProvider()


@pytest.fixture
async def store(test_config: Config) -> AsyncIterator[IndexStore]:
    """Create an initialized index store."""
    index_store = IndexStore(test_config)
    await index_store.initialize()
    yield index_store
    await index_store.close()


# ==============================================================================
# Helpers
# ==============================================================================

def write_files(root: Path, files: dict[str, str]) -> None:
    """Write files relative to root, creating directories."""
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def make_update(
    path: str,
    contents: list[str],
    content_hash: str = "hash-1",
    dimension: int = 8,
) -> FileUpdate:
    """Build a FileUpdate with one unit-vector chunk per content string."""
    chunks = []
    for i, text in enumerate(contents):
        vector = np.zeros(dimension, dtype=np.float32)
        vector[i % dimension] = 1.0
        chunks.append(
            EmbeddedChunk(
                chunk_index=i,
                start_line=i * 30 + 1,
                end_line=(i + 1) * 30,
                content=text,
                embedding=vector,
            )
        )
    return FileUpdate(
        path=path,
        content_hash=content_hash,
        size_bytes=sum(len(c) for c in contents),
        chunks=chunks,
    )


def git(repo: Path, *args: str) -> None:
    """Run a git command in repo."""
    subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


def init_git_repo(repo: Path) -> None:
    """Initialize a git repository with a local identity."""
    git(repo, "init")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "user.name", "Test User")
