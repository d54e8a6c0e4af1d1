"""
sift test suite.

- Unit tests for individual components
- Integration tests for indexing and search flows
"""
