"""
Exclusion set handling.

The exclusion set is the static list of paths that never go into an archive,
followed by the backup destinations themselves so a backup never includes
its own output. It is rebuilt for every operation from the current settings.
"""

import os
from fnmatch import fnmatch
from typing import Iterable, List, Tuple


def normalize_path(path: str) -> str:
    """Expand ``~`` and return an absolute path without trailing slash."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(path)))


def build_exclusion_set(static_paths: Iterable[str], destinations: Iterable[str]) -> Tuple[str, ...]:
    """
    Merge static exclusions with the backup destinations.

    Static entries keep their order (duplicates included). Each destination
    is appended unless it is already present.

    Args:
        static_paths: Configured exclusions
        destinations: Backup destination roots

    Returns:
        Ordered tuple of normalized absolute paths
    """
    exclusions = [normalize_path(p) for p in static_paths if p]

    for destination in destinations:
        if not destination:
            continue
        destination = normalize_path(destination)
        if destination not in exclusions:
            exclusions.append(destination)

    return tuple(exclusions)


def is_excluded(path: str, exclusions: Iterable[str]) -> bool:
    """Exact match of a path against the exclusion set."""
    return normalize_path(path) in exclusions


def is_within(path: str, exclusions: Iterable[str]) -> bool:
    """
    Check if a path is an excluded path or lies below one.

    Args:
        path: Path to check
        exclusions: Normalized exclusion set

    Returns:
        True if the path should be pruned from a tree walk
    """
    path = normalize_path(path)
    for excluded in exclusions:
        if path == excluded or path.startswith(excluded.rstrip('/') + '/'):
            return True
    return False


def matches_pattern(path: str, patterns: Iterable[str]) -> bool:
    """Glob match of an absolute path against tar style exclusion patterns."""
    path = normalize_path(path)
    for pattern in patterns:
        pattern = os.path.expanduser(pattern)
        if fnmatch(path, pattern) or path == pattern.rstrip('/'):
            return True
    return False


def relative_excludes(patterns: Iterable[str], root: str) -> List[str]:
    """
    Convert absolute exclusion patterns to patterns relative to ``root``.

    Archives are created with ``tar -C root`` so member names are relative,
    and tar matches ``--exclude`` against member names. Patterns outside of
    root cannot match anything and are dropped.

    Args:
        patterns: Absolute paths or globs
        root: Directory tar is run from

    Returns:
        List of relative patterns
    """
    root = normalize_path(root)
    prefix = '' if root == '/' else root + '/'
    converted = []

    for pattern in patterns:
        pattern = os.path.expanduser(pattern)
        if not pattern.startswith('/'):
            converted.append(pattern)
            continue
        if prefix and not pattern.startswith(prefix):
            continue
        relative = pattern[len(prefix):] if prefix else pattern.lstrip('/')
        if relative and relative not in converted:
            converted.append(relative)

    return converted
