"""
In-memory file state tracker.

Keeps the canonical map of relative path → modification time for one
root directory and classifies changes on every scan.
"""

import logging
import os
from typing import Iterable, Optional

from ..archive.paths import is_excluded, to_relative
from .diff import compute_diff
from .models import FileRecord, ScanResult

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_NAMES = (".git",)


def _raise_walk_error(error: OSError) -> None:
    raise error


def snapshot_tree(
    root: str,
    excluded_names: Iterable[str] = DEFAULT_EXCLUDED_NAMES,
) -> dict[str, int]:
    """
    Read the modification time of every file below root.

    Directories are not recorded. Any path with a component in
    excluded_names is skipped, and excluded directories are not entered.

    Args:
        root: Directory to walk
        excluded_names: Reserved file/directory names (version control metadata)

    Returns:
        Relative POSIX path → st_mtime_ns

    Raises:
        OSError: If root or any subdirectory cannot be listed
    """
    excluded = set(excluded_names)
    snapshot: dict[str, int] = {}

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        dirnames[:] = [d for d in dirnames if d not in excluded]

        for name in filenames:
            if name in excluded:
                continue

            full_path = os.path.join(dirpath, name)
            relative_path = to_relative(root, full_path)
            if is_excluded(relative_path, excluded):
                continue

            try:
                modified_at = os.stat(full_path).st_mtime_ns
            except FileNotFoundError:
                # Removed between listing and stat, or a dangling symlink
                logger.debug(f"Skipping vanished entry {full_path}")
                continue

            snapshot[relative_path] = modified_at

    return snapshot


class FileStateTracker:
    """
    Tracks file modification times below a root directory.

    State lives only in memory. A fresh tracker (for example after a
    restart) reports every existing file as new on its first scan, so
    callers run one priming scan before acting on diffs.

    Scans are atomic: the new state replaces the old one only after the
    whole tree was read, so a failed scan leaves the state untouched.

    Usage:
        tracker = FileStateTracker("/var/config")
        tracker.scan()                  # prime

        result = tracker.scan()
        print(result.new_files, result.modified_files, result.deleted_files)
    """

    def __init__(
        self,
        root: str,
        excluded_names: Iterable[str] = DEFAULT_EXCLUDED_NAMES,
    ):
        """
        Initialize the tracker.

        Args:
            root: Directory to track
            excluded_names: Path components never tracked
        """
        self.root = str(root)
        self.excluded_names = tuple(excluded_names)
        self._state: dict[str, int] = {}
        self._scan_count = 0

    def __repr__(self) -> str:
        return f"FileStateTracker(root='{self.root}', tracked={len(self._state)})"

    def __len__(self) -> int:
        return len(self._state)

    def __contains__(self, relative_path: str) -> bool:
        return relative_path in self._state

    @property
    def state(self) -> dict[str, int]:
        """Copy of the current relative path → mtime (ns) map."""
        return dict(self._state)

    @property
    def scan_count(self) -> int:
        """Number of completed scans."""
        return self._scan_count

    def scan(self) -> ScanResult:
        """
        Scan the root and classify changes since the last scan.

        Returns:
            ScanResult with new, modified and deleted paths

        Raises:
            OSError: If the root cannot be traversed
        """
        current = snapshot_tree(self.root, self.excluded_names)
        result = compute_diff(self._state, current)

        self._state = current
        self._scan_count += 1

        if result.has_changes:
            logger.info(f"Scan of {self.root}: {result}")
            for path in sorted(result.new_files):
                logger.debug(f"  new: {path}")
            for path in sorted(result.modified_files):
                logger.debug(f"  modified: {path} at {self.get(path).modified_at:%Y-%m-%d %H:%M:%S}")
            for path in sorted(result.deleted_files):
                logger.debug(f"  deleted: {path}")
        else:
            logger.debug(f"Scan of {self.root}: no changes ({len(current)} files)")

        return result

    def get(self, relative_path: str) -> Optional[FileRecord]:
        """Get the record for a tracked path, or None."""
        modified_at = self._state.get(relative_path)
        if modified_at is None:
            return None
        return FileRecord(relative_path=relative_path, modified_at_ns=modified_at)

    def records(self) -> list[FileRecord]:
        """All tracked files, sorted by path."""
        return [
            FileRecord(relative_path=path, modified_at_ns=self._state[path])
            for path in sorted(self._state)
        ]

    def snapshot(self) -> dict[str, int]:
        """Take a checkpoint of the state that restore() can roll back to."""
        return dict(self._state)

    def restore(self, checkpoint: dict[str, int]) -> None:
        """
        Roll the state back to a checkpoint.

        Used when the changes found by a scan could not be delivered, so the
        next scan reports them again.
        """
        self._state = dict(checkpoint)
        logger.debug(f"Tracker state restored ({len(self._state)} files)")

    def reset(self) -> None:
        """Forget all tracked files; the next scan behaves like a first scan."""
        self._state = {}
        self._scan_count = 0
