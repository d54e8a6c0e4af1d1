"""
sift - semantic file index and search.

Turns a git-tracked source tree into a local embedding index and answers
natural-language similarity queries against it.
"""

__version__ = "0.1.0"
__all__ = [
    "Config",
    "SiftService",
]

from sift.config import Config
from sift.main import SiftService
