"""
Storage modules for sift.

Provides persistent storage for indexed files and embedded chunks (SQLite).
"""

from sift.storage.index_store import (
    EmbeddedChunk,
    FileRecord,
    FileUpdate,
    IndexStats,
    IndexStore,
    StoredChunk,
)

__all__ = [
    "IndexStore",
    "FileRecord",
    "FileUpdate",
    "EmbeddedChunk",
    "StoredChunk",
    "IndexStats",
]
