"""
Diff detection for the file state tracker.

Compares the previous tracker state against a fresh filesystem snapshot
to classify every path as new, modified or deleted.
"""

from typing import Mapping

from .models import ScanResult


def compute_diff(
    previous: Mapping[str, int],
    current: Mapping[str, int],
) -> ScanResult:
    """
    Compute the diff between two snapshots of the same root.

    Rules:
    - Path only in current → new
    - Path in both, timestamp differs → modified
    - Path in both, timestamp identical → unchanged
    - Path only in previous → deleted

    Args:
        previous: Relative path → mtime (ns) as of the last completed scan
        current: Relative path → mtime (ns) as observed now

    Returns:
        ScanResult with the three disjoint path sets
    """
    new_files = set()
    modified_files = set()

    for path, modified_at in current.items():
        if path not in previous:
            new_files.add(path)
        elif previous[path] != modified_at:
            modified_files.add(path)

    deleted_files = compute_deleted_files(current.keys(), previous.keys())

    return ScanResult(
        new_files=frozenset(new_files),
        modified_files=frozenset(modified_files),
        deleted_files=frozenset(deleted_files),
    )


def compute_deleted_files(current_paths, previous_paths) -> set[str]:
    """
    Find paths that were tracked but are no longer present.

    Args:
        current_paths: Paths seen in this scan
        previous_paths: Paths known from the previous scan

    Returns:
        Set of relative paths that disappeared
    """
    return set(previous_paths) - set(current_paths)
