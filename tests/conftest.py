"""
Pytest configuration and shared fixtures.

Provides temporary trees, a scriptable transport and a recording
persistence collaborator.
"""

import os
from pathlib import Path
from typing import Callable, Optional

import pytest

from treesync.archive.codec import ArchiveCodec
from treesync.persistence.git import ChangeRecorder, PersistenceError
from treesync.sync.server import SyncServer
from treesync.transport.client import TransportError
from treesync.transport.models import ApplyReply, FetchReply, StatusCode


# ============================================================================
# Filesystem Fixtures
# ============================================================================

# Fixed timestamps well apart from each other and from "now"
MTIME_A = 1_700_000_000_000_000_000
MTIME_B = 1_700_000_100_000_000_000


def _write_file(
    root: Path,
    relative_path: str,
    content: bytes = b"data",
    mtime_ns: Optional[int] = MTIME_A,
) -> Path:
    path = root.joinpath(*relative_path.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mtime_ns is not None:
        os.utime(path, ns=(mtime_ns, mtime_ns))
    return path


@pytest.fixture
def write_file() -> Callable[..., Path]:
    """Write a file below a root and pin its modification time."""
    return _write_file


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Empty directory used as the packing side."""
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def dest_dir(tmp_path: Path) -> Path:
    """Directory used as the unpacking side (not created)."""
    return tmp_path / "dest"


@pytest.fixture
def sample_tree(source_dir: Path) -> Path:
    """A small tree with nested directories and an executable."""
    _write_file(source_dir, "boot.json", b'{"boot": true}')
    _write_file(source_dir, "config/am.json", b'{"realm": "/"}', mtime_ns=MTIME_B)
    script = _write_file(source_dir, "scripts/deploy.sh", b"#!/bin/sh\necho ok\n")
    script.chmod(0o755)
    os.utime(script, ns=(MTIME_A, MTIME_A))
    return source_dir


@pytest.fixture
def codec() -> ArchiveCodec:
    """Plain tar codec."""
    return ArchiveCodec()


# ============================================================================
# Collaborator Fakes
# ============================================================================

class RecordingRecorder(ChangeRecorder):
    """Remembers every message; optionally fails."""

    def __init__(self, fail: bool = False):
        self.messages: list[str] = []
        self.fail = fail
        self.closed = False

    def record_change(self, message: str) -> None:
        self.messages.append(message)
        if self.fail:
            raise PersistenceError("commit rejected")

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """
    Transport double for the sync engine.

    Apply outcomes are consumed in order; an exception instance is raised,
    anything else is returned. When the script runs out every apply succeeds.
    """

    def __init__(self, fetch_archive: bytes = b"", fetch_status: int = StatusCode.OK):
        self.fetch_archive = fetch_archive
        self.fetch_status = fetch_status
        self.fetch_calls: list[tuple[str, str]] = []
        self.apply_calls: list[dict] = []
        self.apply_script: list = []
        self.on_apply: Optional[Callable[[], None]] = None

    def fetch(self, product_id: str, commit_ref: str = "master") -> FetchReply:
        self.fetch_calls.append((product_id, commit_ref))
        if self.fetch_status != StatusCode.OK:
            return FetchReply(status=self.fetch_status, message="refused")
        return FetchReply(status=StatusCode.OK, message="ok", archive=self.fetch_archive)

    def apply(self, product_id, archive, deleted_paths=(), commit_ref="master") -> ApplyReply:
        self.apply_calls.append({
            "product_id": product_id,
            "archive": archive,
            "deleted_paths": list(deleted_paths),
            "commit_ref": commit_ref,
        })
        if self.on_apply:
            self.on_apply()
        if self.apply_script:
            outcome = self.apply_script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ApplyReply(status=StatusCode.OK, message="ok")

    def fail_next(self, count: int) -> None:
        """Make the next count applies raise TransportError."""
        self.apply_script.extend(TransportError("connection refused") for _ in range(count))


@pytest.fixture
def recorder() -> RecordingRecorder:
    """Persistence collaborator that records messages."""
    return RecordingRecorder()


@pytest.fixture
def failing_recorder() -> RecordingRecorder:
    """Persistence collaborator whose commits always fail."""
    return RecordingRecorder(fail=True)


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Scriptable transport."""
    return FakeTransport()


# ============================================================================
# Server Fixtures
# ============================================================================

@pytest.fixture
def server_root(tmp_path: Path) -> Path:
    """Served tree with an "am" product holding two files."""
    root = tmp_path / "server"
    _write_file(root, "products/am/boot.json", b'{"boot": true}')
    _write_file(root, "products/am/realms/root.json", b'{"realm": "/"}')
    (root / "products" / "idm").mkdir(parents=True)
    return root


@pytest.fixture
def sync_server(server_root: Path, recorder: RecordingRecorder) -> SyncServer:
    """SyncServer over server_root with a recording collaborator."""
    return SyncServer(
        root_dir=str(server_root),
        product_paths={"am": "products/am", "idm": "products/idm"},
        recorder=recorder,
    )
