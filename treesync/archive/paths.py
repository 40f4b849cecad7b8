"""
Path relativization helpers.

Archives and tracker state always refer to files by a POSIX-style path
relative to a root directory. These functions are pure string operations so
they can be tested without touching the filesystem.
"""

import os
import posixpath
from typing import Iterable


class UnsafePathError(ValueError):
    """Raised when a relative path would escape its root."""
    pass


def normalize_relative(path: str) -> str:
    """
    Normalize a relative path to its canonical POSIX form.

    Host separators become "/", redundant "." and empty components are
    dropped. On POSIX hosts a backslash is an ordinary file name character
    and is kept, so every name found on disk maps back to the same file.

    Args:
        path: Relative path as received from a peer or the filesystem

    Returns:
        Canonical relative path (e.g. "docker/am/config.json")

    Raises:
        UnsafePathError: If the path is empty, absolute, or climbs above the root
    """
    candidate = _to_posix(path)

    if not candidate or candidate.startswith("/") or os.path.splitdrive(candidate)[0]:
        raise UnsafePathError(f"Not a relative path: {path!r}")

    parts = []
    for part in candidate.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise UnsafePathError(f"Path escapes root: {path!r}")
        parts.append(part)

    if not parts:
        raise UnsafePathError(f"Path names the root itself: {path!r}")

    return "/".join(parts)


def to_relative(root: str, path: str) -> str:
    """
    Strip the root prefix from an absolute path.

    Inverse of to_absolute: to_relative(root, to_absolute(root, rel)) == rel
    for every normalized rel.

    Args:
        root: Root directory
        path: Path located under root

    Returns:
        Normalized relative path

    Raises:
        UnsafePathError: If path is not located under root
    """
    root_parts = _split(root)
    path_parts = _split(path)

    if len(path_parts) <= len(root_parts) or path_parts[:len(root_parts)] != root_parts:
        raise UnsafePathError(f"{path!r} is not under {root!r}")

    return normalize_relative("/".join(path_parts[len(root_parts):]))


def to_absolute(root: str, relative_path: str) -> str:
    """
    Join a relative path onto a root using the host separator.

    Raises:
        UnsafePathError: If relative_path is absolute or escapes root
    """
    relative = normalize_relative(relative_path)
    return os.path.join(root, *relative.split("/"))


def is_excluded(relative_path: str, excluded_names: Iterable[str]) -> bool:
    """Check whether any component of a relative path is a reserved name."""
    names = set(excluded_names)
    return any(part in names for part in relative_path.split("/"))


def _split(path: str) -> list[str]:
    normalized = posixpath.normpath(_to_posix(path))
    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if normalized.startswith("/"):
        return ["/"] + parts
    return parts


def _to_posix(path: str) -> str:
    # Only the host's own separators; "\" is a legal name character on POSIX
    for separator in (os.sep, os.altsep):
        if separator and separator != "/":
            path = path.replace(separator, "/")
    return path
