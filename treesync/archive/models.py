"""
Archive data models.

An archive is an ordered sequence of file entries. Each entry carries
exactly enough metadata to recreate the file under another root.
"""

from dataclasses import dataclass, field
from enum import Enum


class CompressionMode(Enum):
    """Whether the tar stream is wrapped in a gzip filter."""

    ON = "on"
    OFF = "off"

    @classmethod
    def parse(cls, value: "str | CompressionMode") -> "CompressionMode":
        """
        Parse a configuration value.

        Args:
            value: "on" / "off" (case-insensitive) or an existing member

        Raises:
            ValueError: If the value is not recognized
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown compression mode {value!r}, expected 'on' or 'off'"
            ) from None


@dataclass(frozen=True)
class ArchiveEntry:
    """
    A single file stored in an archive.

    Attributes:
        path: POSIX path relative to the archive root
        size: Payload size in bytes
        mode: Permission bits (0o7777 mask)
        modified_at: Modification time as POSIX seconds
        payload: Raw file content
    """
    path: str
    size: int
    mode: int
    modified_at: float
    payload: bytes = field(repr=False, default=b"")

    def __post_init__(self):
        if self.size != len(self.payload):
            raise ValueError(
                f"Entry {self.path!r} declares {self.size} bytes "
                f"but carries {len(self.payload)}"
            )
