"""
Indexing modules for sift.

Provides:
- Path eligibility (extension allowlist, ignore globs, .siftignore)
- Fixed-window line chunking
- Embedding providers (local ONNX, caching wrapper)
- Tracked-file sources (git)
- Reconciliation of removed files
- The indexing orchestrator
"""

from sift.indexing.chunker import Chunker, TextChunk
from sift.indexing.embedder import (
    CachedEmbeddingProvider,
    EmbeddingProvider,
    LocalONNXProvider,
    create_provider,
)
from sift.indexing.indexer import (
    CancellationToken,
    IndexOutcome,
    Indexer,
    IndexRunReport,
)
from sift.indexing.path_filter import PathFilter, parse_ignore_file
from sift.indexing.reconciler import Reconciler
from sift.indexing.tracked_files import (
    GitTrackedFileSource,
    StaticTrackedFileSource,
    TrackedFileSource,
)

__all__ = [
    "Chunker",
    "TextChunk",
    "EmbeddingProvider",
    "LocalONNXProvider",
    "CachedEmbeddingProvider",
    "create_provider",
    "Indexer",
    "IndexOutcome",
    "IndexRunReport",
    "CancellationToken",
    "PathFilter",
    "parse_ignore_file",
    "Reconciler",
    "TrackedFileSource",
    "GitTrackedFileSource",
    "StaticTrackedFileSource",
]
