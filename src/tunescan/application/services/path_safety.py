"""Containment checks for scan roots.

Hey future me - NEVER check containment with str.startswith! "/music-private" starts with
"/music" but is not inside it. We compare via relative paths instead: if the path from the
root to the candidate climbs out ("..") or is absolute (different drive on Windows), the
candidate is outside.

Both sides must already be resolved with realpath() so symlinks can't smuggle a path out.
"""

import os
from collections.abc import Iterable

from tunescan.domain.exceptions import PathEscapeError, ScanRootUnreadableError


def _normalize(path: str) -> str:
    resolved = os.path.abspath(path)
    # Windows filesystems are case-insensitive
    return os.path.normcase(resolved)


def is_path_inside_root(candidate: str, root: str) -> bool:
    """Check whether ``candidate`` is ``root`` itself or lies below it."""
    candidate_norm = _normalize(candidate)
    root_norm = _normalize(root)
    if candidate_norm == root_norm:
        return True

    try:
        rel = os.path.relpath(candidate_norm, root_norm)
    except ValueError:
        # Different drives on Windows
        return False

    if rel == os.curdir:
        return True
    return rel != os.pardir and not rel.startswith(os.pardir + os.sep) and not os.path.isabs(rel)


def is_path_inside_allowed_roots(candidate: str, allowed_roots: Iterable[str]) -> bool:
    """Check ``candidate`` against every allowed root."""
    return any(is_path_inside_root(candidate, root) for root in allowed_roots)


def resolve_scan_root(root_path: str, allowed_roots: Iterable[str]) -> str:
    """Resolve the scan root and verify it stays inside the allowed roots.

    Args:
        root_path: Requested scan root
        allowed_roots: Directories the scan may touch

    Returns:
        The real (symlink-free) scan root

    Raises:
        ScanRootUnreadableError: The scan root does not exist or can't be resolved
        PathEscapeError: The real scan root lies outside every allowed root
    """
    try:
        real_root = os.path.realpath(root_path, strict=True)
    except OSError as e:
        raise ScanRootUnreadableError(root_path, e.strerror or str(e)) from e

    real_allowed = [os.path.realpath(root) for root in allowed_roots]
    if not is_path_inside_allowed_roots(real_root, real_allowed):
        raise PathEscapeError(real_root)
    return real_root
