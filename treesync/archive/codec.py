"""
Archive codec.

Packs a set of files below a root directory into a single in-memory tar
stream and restores such a stream onto another root. Only regular files are
stored; directories are implied by the entry paths.
"""

import gzip
import io
import logging
import os
import shutil
import stat
import tarfile
import tempfile
import zlib
from typing import Iterable, Iterator

from .models import ArchiveEntry, CompressionMode
from .paths import UnsafePathError, normalize_relative, to_absolute

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

# Errors raised by tarfile / gzip while decoding a damaged stream
_DECODE_ERRORS = (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile)


class CorruptArchiveError(Exception):
    """Raised when an archive cannot be decoded."""

    def __init__(self, message: str, extracted: int = 0):
        super().__init__(message)
        self.extracted = extracted


class ArchiveCodec:
    """
    Encodes file sets as tar archives and restores them.

    The codec never retries and never returns a partial archive: any
    filesystem failure while packing propagates as OSError.

    Usage:
        codec = ArchiveCodec()
        data = codec.pack("/srv/config", {"am/boot.json", "am/keys.json"})

        written = codec.unpack(data, "/tmp/restore")
    """

    def __init__(self, compression: "CompressionMode | str" = CompressionMode.OFF):
        """
        Initialize the codec.

        Args:
            compression: CompressionMode.ON to gzip the whole tar stream
        """
        self.compression = CompressionMode.parse(compression)

    def __repr__(self) -> str:
        return f"ArchiveCodec(compression={self.compression.value!r})"

    def pack(self, root: str, paths: Iterable[str]) -> bytes:
        """
        Archive the listed files.

        Args:
            root: Directory the paths are relative to
            paths: Relative paths of the files to include

        Returns:
            Archive bytes (gzip-wrapped when compression is on)

        Raises:
            OSError: If any listed file cannot be opened, stat'd or read
            UnsafePathError: If a path is absolute or escapes root
        """
        relative_paths = sorted({normalize_relative(p) for p in paths})
        buffer = io.BytesIO()

        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for relative_path in relative_paths:
                self._add_file(tar, root, relative_path)

        data = buffer.getvalue()
        if self.compression is CompressionMode.ON:
            data = gzip.compress(data)

        logger.debug(f"Packed {len(relative_paths)} files from {root} ({len(data)} bytes)")
        return data

    def pack_tree(self, root: str, excluded_names: Iterable[str] = (".git",)) -> bytes:
        """
        Archive every file below root.

        Raises:
            OSError: If root cannot be traversed or a file cannot be read
        """
        # Imported here, the tracker package depends on archive.paths
        from ..tracker.state_tracker import snapshot_tree

        snapshot = snapshot_tree(root, excluded_names)
        logger.info(f"Archiving {len(snapshot)} files under {root}")
        return self.pack(root, snapshot.keys())

    def read_entries(self, data: bytes) -> Iterator[ArchiveEntry]:
        """
        Decode archive entries without touching the filesystem.

        Entries are yielded as they are decoded, so a damaged archive yields
        the intact leading entries before raising.

        Args:
            data: Archive bytes, plain or gzip-wrapped

        Yields:
            ArchiveEntry for every regular file, in archive order

        Raises:
            CorruptArchiveError: If a header cannot be parsed, the stream ends
                mid-entry, or an entry is not a plain relative file
        """
        if not data:
            return

        count = 0
        try:
            if data[:2] == GZIP_MAGIC:
                data = gzip.decompress(data)

            with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
                for member in tar:
                    if member.isdir():
                        continue
                    if not member.isfile():
                        raise CorruptArchiveError(
                            f"Unsupported entry type for {member.name!r}",
                            extracted=count,
                        )

                    fileobj = tar.extractfile(member)
                    payload = fileobj.read() if fileobj else b""
                    if len(payload) != member.size:
                        raise CorruptArchiveError(
                            f"Archive ends inside {member.name!r}",
                            extracted=count,
                        )

                    try:
                        path = normalize_relative(member.name)
                    except UnsafePathError as e:
                        raise CorruptArchiveError(str(e), extracted=count) from e

                    yield ArchiveEntry(
                        path=path,
                        size=member.size,
                        mode=stat.S_IMODE(member.mode),
                        modified_at=float(member.mtime),
                        payload=payload,
                    )
                    count += 1

                # tarfile reports a damaged header after the first one as a
                # normal end of archive, so check the trailer ourselves
                _check_trailer(data, tar.offset, count)

        except _DECODE_ERRORS as e:
            raise CorruptArchiveError(
                f"Could not read archive after {count} entries: {e}",
                extracted=count,
            ) from e

    def unpack(self, data: bytes, destination: str) -> list[str]:
        """
        Restore an archive onto a destination root.

        Whatever exists at an entry's path is replaced unconditionally, even
        a directory of the same name. A file in the way of a parent
        directory is removed. Files written before a failure stay in place.

        Args:
            data: Archive bytes
            destination: Root directory, created if missing

        Returns:
            Relative paths written, in archive order

        Raises:
            OSError: If the destination or a file cannot be created
            CorruptArchiveError: If the archive is malformed
        """
        os.makedirs(destination, exist_ok=True)

        written: list[str] = []
        try:
            for entry in self.read_entries(data):
                self._write_entry(destination, entry)
                written.append(entry.path)
        except CorruptArchiveError as e:
            logger.error(f"Corrupt archive, {len(written)} files extracted to {destination}: {e}")
            e.extracted = len(written)
            raise

        logger.info(f"Unpacked {len(written)} files to {destination}")
        return written

    def _add_file(self, tar: tarfile.TarFile, root: str, relative_path: str) -> None:
        """Append one file as header + payload."""
        full_path = to_absolute(root, relative_path)

        with open(full_path, "rb") as f:
            st = os.fstat(f.fileno())
            if not stat.S_ISREG(st.st_mode):
                raise IsADirectoryError(f"Not a regular file: {full_path}")

            info = tarfile.TarInfo(name=relative_path)
            info.size = st.st_size
            info.mode = stat.S_IMODE(st.st_mode)
            info.mtime = st.st_mtime_ns / 1e9
            info.type = tarfile.REGTYPE

            tar.addfile(info, f)

        logger.debug(f"Added {relative_path} ({info.size} bytes)")

    def _write_entry(self, destination: str, entry: ArchiveEntry) -> None:
        """Write one entry through a temp file so readers never see half a file."""
        target = to_absolute(destination, entry.path)
        directory = _make_parents(destination, entry.path)

        fd, temp_path = tempfile.mkstemp(prefix=".treesync-", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(entry.payload)
            os.chmod(temp_path, entry.mode)
            os.utime(temp_path, (entry.modified_at, entry.modified_at))
            if os.path.isdir(target) and not os.path.islink(target):
                logger.info(f"Replacing directory {target} with a file")
                shutil.rmtree(target)
            os.replace(temp_path, target)
        except BaseException:
            _discard(temp_path)
            raise

        logger.debug(f"Wrote {target}")


def _make_parents(destination: str, relative_path: str) -> str:
    """
    Create the parent directories of an entry.

    A file standing where a directory is needed is removed first.

    Returns:
        The entry's parent directory
    """
    directory = destination
    for part in relative_path.split("/")[:-1]:
        directory = os.path.join(directory, part)
        if os.path.lexists(directory) and not os.path.isdir(directory):
            logger.info(f"Replacing file {directory} with a directory")
            os.unlink(directory)

    os.makedirs(directory, exist_ok=True)
    return directory


def _check_trailer(data: bytes, offset: int, count: int) -> None:
    """
    Verify that the bytes after the last member are the end-of-archive marker.

    Raises:
        CorruptArchiveError: If the marker is missing, cut short or
            replaced by anything other than NUL blocks
    """
    trailer = data[offset:]
    if len(trailer) < 2 * tarfile.BLOCKSIZE:
        raise CorruptArchiveError(
            f"Archive ends after {count} entries without an end-of-archive marker",
            extracted=count,
        )
    if trailer.count(0) != len(trailer):
        raise CorruptArchiveError(
            f"Unreadable header at offset {offset} after {count} entries",
            extracted=count,
        )


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
