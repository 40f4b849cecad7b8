"""File state tracking module."""

from .state_tracker import FileStateTracker, snapshot_tree
from .models import FileRecord, ScanResult

__all__ = ["FileStateTracker", "snapshot_tree", "FileRecord", "ScanResult"]
