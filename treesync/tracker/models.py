"""
File state tracking models.

These models describe what the tracker knows about a directory tree and
what changed between two scans.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class FileRecord:
    """
    Last observed state of one tracked file.

    Attributes:
        relative_path: POSIX path relative to the tracked root
        modified_at_ns: Modification time in nanoseconds since the epoch
    """
    relative_path: str
    modified_at_ns: int

    @property
    def modified_at(self) -> datetime:
        """Modification time as an aware UTC datetime."""
        return datetime.fromtimestamp(self.modified_at_ns / 1e9, tz=timezone.utc)


@dataclass(frozen=True)
class ScanResult:
    """
    Classified difference between two scans of the same root.

    The three sets are disjoint. A file whose content changed without its
    timestamp changing is not reported.

    Attributes:
        new_files: Present now, unknown before
        modified_files: Present before and now with a different timestamp
        deleted_files: Present before, gone now
    """
    new_files: frozenset[str] = field(default_factory=frozenset)
    modified_files: frozenset[str] = field(default_factory=frozenset)
    deleted_files: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        overlap = (
            (self.new_files & self.modified_files)
            | (self.new_files & self.deleted_files)
            | (self.modified_files & self.deleted_files)
        )
        if overlap:
            raise ValueError(f"Paths classified more than once: {sorted(overlap)}")

    @property
    def changed_files(self) -> frozenset[str]:
        """Files whose content must be transferred (new or modified)."""
        return self.new_files | self.modified_files

    @property
    def has_changes(self) -> bool:
        """Check if anything was added, modified or deleted."""
        return bool(self.new_files or self.modified_files or self.deleted_files)

    def __str__(self) -> str:
        return (
            f"{len(self.new_files)} new, "
            f"{len(self.modified_files)} modified, "
            f"{len(self.deleted_files)} deleted"
        )
