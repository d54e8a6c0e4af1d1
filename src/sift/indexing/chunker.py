"""
Fixed-window line chunking.

Splits file text into non-overlapping windows of `chunk_size` lines.
Windows whose trimmed text is too short to carry meaning are dropped,
so line coverage of a file may have gaps.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sift.config import Config

DEFAULT_CHUNK_SIZE = 30
MIN_CHUNK_CHARS = 10


@dataclass(frozen=True)
class TextChunk:
    """A line range of a file, before embedding."""

    chunk_index: int
    start_line: int  # 1-based
    end_line: int  # inclusive
    content: str


class Chunker:
    """Splits text into fixed-size line windows."""

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        min_chars: int = MIN_CHUNK_CHARS,
    ) -> None:
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.min_chars = min_chars

    @classmethod
    def from_config(cls, config: "Config") -> "Chunker":
        return cls(
            chunk_size=config.indexing.chunk_size,
            min_chars=config.indexing.min_chunk_chars,
        )

    def chunk(self, content: str, chunk_size: int | None = None) -> list[TextChunk]:
        """
        Chunk text into line windows.

        Args:
            content: Full file text.
            chunk_size: Lines per window. Defaults to the instance setting.

        Returns:
            Kept chunks in file order. `chunk_index` is the window ordinal,
            so dropped windows leave gaps in the numbering.
        """
        size = self.chunk_size if chunk_size is None else chunk_size
        if size < 1:
            raise ValueError(f"chunk_size must be positive, got {size}")

        lines = content.split("\n")
        total = len(lines)
        chunks: list[TextChunk] = []

        for offset in range(0, total, size):
            text = "\n".join(lines[offset : offset + size]).strip()
            if len(text) < self.min_chars:
                continue

            chunks.append(
                TextChunk(
                    chunk_index=offset // size,
                    start_line=offset + 1,
                    end_line=min(offset + size, total),
                    content=text,
                )
            )

        return chunks
