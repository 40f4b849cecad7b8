"""Archive codec module."""

from .codec import ArchiveCodec, CorruptArchiveError
from .models import ArchiveEntry, CompressionMode

__all__ = ["ArchiveCodec", "CorruptArchiveError", "ArchiveEntry", "CompressionMode"]
