"""
Exception hierarchy for sift.

Fatal conditions abort the operation that hit them; per-file conditions
are caught and logged by the indexing run.
"""

from __future__ import annotations


class SiftError(Exception):
    """Base exception for sift errors."""

    pass


class TrackedFileEnumerationError(SiftError):
    """Raised when the tracked-file source cannot be queried."""

    pass


class ProviderInitError(SiftError):
    """Raised when the embedding provider cannot become ready."""

    pass


class FileReadError(SiftError):
    """Raised when a file selected for indexing cannot be read."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class QueryError(SiftError):
    """Raised when a search query cannot be embedded."""

    pass


class IndexSignatureMismatchError(SiftError):
    """Raised when the stored index was built with a different embedding model."""

    def __init__(
        self,
        stored_model: str,
        stored_dimension: int,
        model: str,
        dimension: int,
    ) -> None:
        super().__init__(
            f"Index was built with {stored_model} ({stored_dimension}d) but the "
            f"active provider is {model} ({dimension}d). Rebuild the index or "
            f"enable storage.rebuild_on_model_change."
        )
        self.stored_model = stored_model
        self.stored_dimension = stored_dimension
        self.model = model
        self.dimension = dimension
