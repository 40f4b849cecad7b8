"""
Server-side sync engine.

Hands out whole product subtrees and applies client changesets. Every
product subtree is an independently lockable resource: applies on the same
product are serialized, fetches share the lock with each other.
"""

import logging
import os
import shutil
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping, Optional

from ..archive.codec import ArchiveCodec
from ..archive.paths import normalize_relative, to_absolute
from ..persistence.git import ChangeRecorder, NullRecorder
from ..tracker.state_tracker import DEFAULT_EXCLUDED_NAMES

logger = logging.getLogger(__name__)


class UnknownProductError(KeyError):
    """Raised when a product id has no configured subtree."""

    def __init__(self, product_id: str):
        super().__init__(product_id)
        self.product_id = product_id

    def __str__(self) -> str:
        return f"Unknown product '{self.product_id}'"


class ProductLock:
    """
    Shared/exclusive lock for one product subtree.

    Any number of readers (fetch) may hold it together; a writer (apply)
    holds it alone. Waiting writers block new readers so a steady stream of
    fetches cannot starve an apply.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class ApplyOutcome:
    """Result of applying a changeset to a product subtree."""
    product_id: str
    written: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    commit_message: str = ""

    def __str__(self) -> str:
        return (
            f"{self.product_id}: {len(self.written)} written, "
            f"{len(self.deleted)} deleted, {len(self.missing)} already absent"
        )


class SyncServer:
    """
    Serves and updates product configuration trees.

    All configuration is passed in explicitly; one instance is shared by
    every request handler.

    Usage:
        server = SyncServer(
            root_dir="/srv/forgeops",
            product_paths={"am": "docker/am/config-profiles/cdk"},
            recorder=GitRecorder("/srv/forgeops"),
        )

        archive = server.fetch("am")
        server.apply("am", "master", archive_bytes, ["obsolete.json"])
    """

    def __init__(
        self,
        root_dir: str,
        product_paths: Mapping[str, str],
        codec: Optional[ArchiveCodec] = None,
        recorder: Optional[ChangeRecorder] = None,
        excluded_names: Iterable[str] = DEFAULT_EXCLUDED_NAMES,
    ):
        """
        Initialize the server engine.

        Args:
            root_dir: Top of the served directory tree
            product_paths: Product id → subtree path relative to root_dir
            codec: Archive codec (plain tar by default)
            recorder: Persistence collaborator notified after each apply
            excluded_names: Path components never served
        """
        self.root_dir = str(root_dir)
        self.product_paths = {
            product_id: normalize_relative(path)
            for product_id, path in product_paths.items()
        }
        self.codec = codec or ArchiveCodec()
        self.recorder = recorder or NullRecorder()
        self.excluded_names = tuple(excluded_names)

        self._locks: dict[str, ProductLock] = {}
        self._locks_guard = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"SyncServer(root_dir='{self.root_dir}', "
            f"products={sorted(self.product_paths)})"
        )

    def resolve(self, product_id: str) -> str:
        """
        Resolve a product id to its subtree directory.

        Raises:
            UnknownProductError: If the product is not configured
        """
        try:
            relative = self.product_paths[product_id]
        except KeyError:
            raise UnknownProductError(product_id) from None
        return to_absolute(self.root_dir, relative)

    def lock_for(self, product_id: str) -> ProductLock:
        """Get (or create) the lock guarding a product subtree."""
        with self._locks_guard:
            lock = self._locks.get(product_id)
            if lock is None:
                lock = self._locks[product_id] = ProductLock()
            return lock

    def fetch(self, product_id: str, commit_ref: str = "master") -> bytes:
        """
        Archive the entire subtree of a product.

        The server keeps no record of what a client already has, so this is
        always the full tree.

        Args:
            product_id: Product to archive
            commit_ref: Requested reference (informational)

        Returns:
            Archive bytes

        Raises:
            UnknownProductError: If the product is not configured
            OSError: If the subtree cannot be read
        """
        subtree = self.resolve(product_id)
        logger.info(f"Fetch product: {product_id} commit: {commit_ref}")

        with self.lock_for(product_id).shared():
            data = self.codec.pack_tree(subtree, self.excluded_names)

        logger.info(f"Sending archive for {product_id} with {len(data)} bytes")
        return data

    def apply(
        self,
        product_id: str,
        commit_ref: str,
        archive: bytes,
        deleted_paths: Iterable[str] = (),
    ) -> ApplyOutcome:
        """
        Apply a client changeset to a product subtree.

        Unpacks the archive, removes deleted paths, then records the change
        with the persistence collaborator. If recording fails the filesystem
        change is kept and the error is raised to the caller.

        A deleted path nested with a path the archive just wrote is left
        alone: on the client a file turned into a directory or back.

        Args:
            product_id: Product to update
            commit_ref: Reference the change applies to
            archive: New and modified files (may be empty)
            deleted_paths: Relative paths to remove; absent paths are ignored

        Returns:
            ApplyOutcome describing what changed

        Raises:
            UnknownProductError: If the product is not configured
            UnsafePathError: If a deleted path escapes the subtree
            CorruptArchiveError: If the archive is malformed
            OSError: If the subtree cannot be written
            PersistenceError: If recording the change failed
        """
        subtree = self.resolve(product_id)
        deleted_paths = [normalize_relative(p) for p in deleted_paths]
        logger.info(
            f"Apply product: {product_id} commit: {commit_ref} "
            f"({len(archive)} archive bytes, {len(deleted_paths)} deletions)"
        )

        outcome = ApplyOutcome(product_id=product_id)

        with self.lock_for(product_id).exclusive():
            outcome.written = self.codec.unpack(archive, subtree)

            written = set(outcome.written)
            for relative_path in deleted_paths:
                if _overlaps_written(relative_path, written):
                    # A file became a directory or the other way round
                    logger.debug(f"Delete of {relative_path}: replaced by this changeset")
                    outcome.replaced.append(relative_path)
                elif _remove_path(to_absolute(subtree, relative_path)):
                    outcome.deleted.append(relative_path)
                else:
                    outcome.missing.append(relative_path)

            outcome.commit_message = (
                f"{product_id}@{commit_ref}: {len(outcome.written)} updated, "
                f"{len(outcome.deleted)} deleted"
            )
            logger.info(str(outcome))

            self.recorder.record_change(outcome.commit_message)

        return outcome


def _overlaps_written(path: str, written: set[str]) -> bool:
    """Check whether path equals a path just written or is nested with one."""
    if path in written:
        return True

    prefix = path + "/"
    if any(w.startswith(prefix) for w in written):
        return True

    parts = path.split("/")
    return any("/".join(parts[:i]) in written for i in range(1, len(parts)))


def _remove_path(path: str) -> bool:
    """
    Remove a file or directory tree.

    Returns:
        True if something was removed, False if the path did not exist
    """
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)
    except (FileNotFoundError, NotADirectoryError):
        logger.debug(f"Delete of {path}: already absent")
        return False

    logger.debug(f"Deleted {path}")
    return True
