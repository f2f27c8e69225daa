"""
Glob matching for API request paths.

A pattern ending in ``*`` matches any path starting with the pattern
minus the ``*``; any other pattern must equal the path exactly.
"""

from typing import Iterable


def path_matches(pattern: str, path: str) -> bool:
    """Return True if *path* matches a single allow/restrict *pattern*."""
    if pattern.endswith("*"):
        return path.startswith(pattern[:-1])
    return path == pattern


def matches_any(patterns: Iterable[str], path: str) -> bool:
    """Return True if *path* matches at least one of *patterns*."""
    return any(path_matches(pattern, path) for pattern in patterns)
