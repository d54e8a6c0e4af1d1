"""
SQLite storage for indexed files and their embedded chunks.

Provides:
- Idempotent schema creation with cascading deletes
- Hash-gated, atomic per-file upserts
- Embedding signature stamping (model name + dimension)
- A separate read connection so searches only observe committed data
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Sequence

import aiosqlite
import numpy as np
import structlog

from sift.errors import IndexSignatureMismatchError

if TYPE_CHECKING:
    from sift.config import Config

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 1
EMBEDDING_DTYPE = np.dtype("<f4")


@dataclass
class FileRecord:
    """Record for an indexed file."""

    id: int
    path: str
    content_hash: str
    total_chunks: int
    size_bytes: int
    updated_at: datetime


@dataclass(frozen=True)
class EmbeddedChunk:
    """A chunk with its precomputed embedding, ready to be written."""

    chunk_index: int
    start_line: int
    end_line: int
    content: str
    embedding: np.ndarray


@dataclass(frozen=True)
class FileUpdate:
    """Unit of work for one file: everything upsert_file writes."""

    path: str
    content_hash: str
    size_bytes: int
    chunks: Sequence[EmbeddedChunk]


@dataclass
class StoredChunk:
    """A chunk row joined with its file path."""

    path: str
    chunk_index: int
    start_line: int
    end_line: int
    content: str
    embedding: np.ndarray


@dataclass(frozen=True)
class IndexStats:
    """Index size summary."""

    total_files: int
    total_chunks: int
    index_size_bytes: int


def encode_embedding(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=EMBEDDING_DTYPE).tobytes()


def decode_embedding(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=EMBEDDING_DTYPE)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class IndexStore:
    """
    SQLite index of files and embedded chunks.

    Features:
    - WAL mode so readers never block on the writer
    - ON DELETE CASCADE from files to chunks
    - One writer transaction at a time, holding only row operations
    """

    SCHEMA = """
    -- Files table: one row per indexed path
    CREATE TABLE IF NOT EXISTS files (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        path TEXT UNIQUE NOT NULL,
        content_hash TEXT NOT NULL,
        total_chunks INTEGER NOT NULL DEFAULT 0,
        size_bytes INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    );

    -- Chunks table: replaced wholesale whenever a file's hash changes
    CREATE TABLE IF NOT EXISTS file_chunks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        file_id INTEGER NOT NULL,
        chunk_index INTEGER NOT NULL,
        start_line INTEGER NOT NULL,
        end_line INTEGER NOT NULL,
        content TEXT NOT NULL,
        embedding BLOB NOT NULL,
        FOREIGN KEY (file_id) REFERENCES files(id) ON DELETE CASCADE,
        UNIQUE(file_id, chunk_index)
    );

    -- Index metadata: schema version and embedding signature
    CREATE TABLE IF NOT EXISTS index_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_files_path ON files(path);
    CREATE INDEX IF NOT EXISTS idx_files_hash ON files(content_hash);
    CREATE INDEX IF NOT EXISTS idx_chunks_file_id ON file_chunks(file_id);
    """

    def __init__(self, config: "Config") -> None:
        """
        Initialize the index store.

        Args:
            config: sift configuration.
        """
        self.config = config
        self.db_path = config.db_path
        self._db: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._dimension: int | None = None

    @property
    def dimension(self) -> int | None:
        """Embedding dimension stamped into the index, if known."""
        return self._dimension

    async def initialize(self) -> None:
        """Open connections and create the schema."""
        logger.info("Initializing index store", db_path=str(self.db_path))

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row

        if self.config.storage.wal_mode:
            await self._db.execute("PRAGMA journal_mode=WAL")

        cache_size_pages = (self.config.storage.cache_size_mb * 1024 * 1024) // 4096
        await self._db.execute(f"PRAGMA cache_size=-{cache_size_pages}")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.execute("PRAGMA busy_timeout=5000")
        await self._db.executescript(self.SCHEMA)

        self._reader = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._reader.row_factory = aiosqlite.Row
        await self._reader.execute("PRAGMA busy_timeout=5000")

        stored = await self._get_meta("embedding_dimension")
        if stored is not None:
            self._dimension = int(stored)

        logger.info("Index store initialized")

    async def close(self) -> None:
        """Close both database connections."""
        if self._reader:
            await self._reader.close()
            self._reader = None
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Index store closed")

    def _writer(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized")
        return self._db

    def _read_conn(self) -> aiosqlite.Connection:
        if not self._reader:
            raise RuntimeError("Database not initialized")
        return self._reader

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for the single writer transaction."""
        db = self._writer()

        async with self._lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

    async def _get_meta(self, key: str) -> str | None:
        async with self._writer().execute(
            "SELECT value FROM index_meta WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
            return row["value"] if row else None

    async def check_embedding_signature(
        self,
        model_name: str,
        dimension: int,
        rebuild: bool = False,
    ) -> bool:
        """
        Stamp or validate the embedding model recorded in the index.

        Args:
            model_name: Active provider's model name.
            dimension: Active provider's output dimension.
            rebuild: Clear the index instead of failing on mismatch.

        Returns:
            True if the index was cleared because of a mismatch.

        Raises:
            IndexSignatureMismatchError: On mismatch when rebuild is False.
        """
        stored_model = await self._get_meta("embedding_model")
        stored_dim = await self._get_meta("embedding_dimension")

        if stored_model == model_name and stored_dim == str(dimension):
            self._dimension = dimension
            return False

        model_changed = stored_model is not None and stored_model != model_name
        dimension_changed = stored_dim is not None and stored_dim != str(dimension)

        cleared = False
        if model_changed or dimension_changed:
            if not rebuild:
                raise IndexSignatureMismatchError(
                    stored_model or "unknown",
                    int(stored_dim or 0),
                    model_name,
                    dimension,
                )
            logger.warning(
                "Embedding model changed, clearing index",
                stored_model=stored_model,
                stored_dimension=stored_dim,
                model=model_name,
                dimension=dimension,
            )
            cleared = True

        async with self.transaction() as conn:
            if cleared:
                await conn.execute("DELETE FROM files")
            await conn.executemany(
                "INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)",
                [
                    ("schema_version", str(SCHEMA_VERSION)),
                    ("embedding_model", model_name),
                    ("embedding_dimension", str(dimension)),
                ],
            )

        self._dimension = dimension
        return cleared

    def _validate_dimensions(self, update: FileUpdate) -> int | None:
        expected = self._dimension
        for chunk in update.chunks:
            size = int(np.asarray(chunk.embedding).shape[-1])
            if expected is None:
                expected = size
            elif size != expected:
                raise ValueError(
                    f"Embedding for {update.path}#{chunk.chunk_index} has "
                    f"{size} dimensions, index expects {expected}"
                )
        return expected

    async def upsert_file(self, update: FileUpdate) -> int:
        """
        Atomically replace a file's row and all of its chunks.

        Embeddings must already be computed; the transaction holds only
        row operations.

        Args:
            update: File metadata and embedded chunks.

        Returns:
            The file's row id.
        """
        self._validate_dimensions(update)

        now = datetime.now(timezone.utc).isoformat()
        stamp: int | None = None

        async with self.transaction() as conn:
            # An unstamped index takes the dimension of its first vectors.
            if self._dimension is None:
                dimension = self._validate_dimensions(update)
                stored = await self._get_meta("embedding_dimension")
                if stored is not None and dimension is not None and int(stored) != dimension:
                    raise ValueError(
                        f"Embeddings for {update.path} have {dimension} dimensions, "
                        f"index expects {stored}"
                    )
                if stored is None and dimension is not None:
                    await conn.execute(
                        "INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)",
                        ("embedding_dimension", str(dimension)),
                    )
                stamp = dimension if stored is None else int(stored)
            else:
                self._validate_dimensions(update)

            async with conn.execute(
                "SELECT id FROM files WHERE path = ?", (update.path,)
            ) as cursor:
                row = await cursor.fetchone()

            if row:
                file_id = row["id"]
                await conn.execute(
                    """
                    UPDATE files
                    SET content_hash = ?, total_chunks = ?, size_bytes = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (update.content_hash, len(update.chunks), update.size_bytes, now, file_id),
                )
                await conn.execute("DELETE FROM file_chunks WHERE file_id = ?", (file_id,))
            else:
                cursor = await conn.execute(
                    """
                    INSERT INTO files (path, content_hash, total_chunks, size_bytes, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (update.path, update.content_hash, len(update.chunks), update.size_bytes, now),
                )
                file_id = cursor.lastrowid

            await conn.executemany(
                """
                INSERT INTO file_chunks
                    (file_id, chunk_index, start_line, end_line, content, embedding)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        file_id,
                        chunk.chunk_index,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.content,
                        encode_embedding(chunk.embedding),
                    )
                    for chunk in update.chunks
                ],
            )

        if stamp is not None:
            self._dimension = stamp
        return file_id

    async def remove_file(self, path: str) -> bool:
        """
        Remove a file; its chunks go with it via cascade.

        Args:
            path: Project-relative path.

        Returns:
            True if a row was deleted.
        """
        async with self.transaction() as conn:
            cursor = await conn.execute("DELETE FROM files WHERE path = ?", (path,))
            return cursor.rowcount > 0

    async def clear(self) -> None:
        """Remove every file and chunk."""
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM files")

    async def get_file_record(self, path: str) -> FileRecord | None:
        """
        Get the stored record for a path.

        Args:
            path: Project-relative path.

        Returns:
            FileRecord or None.
        """
        async with self._read_conn().execute(
            "SELECT * FROM files WHERE path = ?", (path,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return FileRecord(
                    id=row["id"],
                    path=row["path"],
                    content_hash=row["content_hash"],
                    total_chunks=row["total_chunks"],
                    size_bytes=row["size_bytes"],
                    updated_at=datetime.fromisoformat(row["updated_at"]),
                )
            return None

    async def list_paths(self) -> set[str]:
        """Get every indexed path."""
        async with self._read_conn().execute("SELECT path FROM files") as cursor:
            rows = await cursor.fetchall()
            return {row["path"] for row in rows}

    async def load_chunks(self, file_types: Sequence[str] | None = None) -> list[StoredChunk]:
        """
        Load chunk rows with their embeddings.

        Args:
            file_types: Optional extensions ("ts" or ".ts"); only paths
                ending in one of them are returned.

        Returns:
            Matching chunks with file paths.

        Raises:
            ValueError: If a file_types entry names no extension.
        """
        sql = """
            SELECT f.path, c.chunk_index, c.start_line, c.end_line, c.content, c.embedding
            FROM file_chunks c
            JOIN files f ON c.file_id = f.id
        """
        params: list[str] = []

        suffixes = [t.lstrip(".") for t in (file_types or [])]
        if not all(suffixes):
            raise ValueError(f"Empty extension in file_types: {list(file_types or [])}")
        if suffixes:
            sql += " WHERE " + " OR ".join("f.path LIKE ? ESCAPE '\\'" for _ in suffixes)
            params.extend(f"%.{_escape_like(s)}" for s in suffixes)

        async with self._read_conn().execute(sql, params) as cursor:
            rows = await cursor.fetchall()

        return [
            StoredChunk(
                path=row["path"],
                chunk_index=row["chunk_index"],
                start_line=row["start_line"],
                end_line=row["end_line"],
                content=row["content"],
                embedding=decode_embedding(row["embedding"]),
            )
            for row in rows
        ]

    async def get_chunks_by_file(self, path: str) -> list[StoredChunk]:
        """Get all chunks of one file ordered by chunk index."""
        async with self._read_conn().execute(
            """
            SELECT f.path, c.chunk_index, c.start_line, c.end_line, c.content, c.embedding
            FROM file_chunks c
            JOIN files f ON c.file_id = f.id
            WHERE f.path = ?
            ORDER BY c.chunk_index
            """,
            (path,),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            StoredChunk(
                path=row["path"],
                chunk_index=row["chunk_index"],
                start_line=row["start_line"],
                end_line=row["end_line"],
                content=row["content"],
                embedding=decode_embedding(row["embedding"]),
            )
            for row in rows
        ]

    async def get_stats(self) -> IndexStats:
        """Get index statistics."""
        reader = self._read_conn()

        async with reader.execute("SELECT COUNT(*) FROM files") as cursor:
            row = await cursor.fetchone()
            total_files = row[0] if row else 0

        async with reader.execute("SELECT COUNT(*) FROM file_chunks") as cursor:
            row = await cursor.fetchone()
            total_chunks = row[0] if row else 0

        return IndexStats(
            total_files=total_files,
            total_chunks=total_chunks,
            index_size_bytes=self._size_on_disk(),
        )

    def _size_on_disk(self) -> int:
        size = 0
        for candidate in (self.db_path, Path(f"{self.db_path}-wal")):
            if candidate.exists():
                size += candidate.stat().st_size
        return size
