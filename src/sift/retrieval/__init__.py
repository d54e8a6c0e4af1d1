"""
Retrieval modules for sift.

Provides exhaustive dot-product ranking of indexed chunks.
"""

from sift.retrieval.searcher import RelatedFile, SearchResult, Searcher

__all__ = [
    "Searcher",
    "SearchResult",
    "RelatedFile",
]
