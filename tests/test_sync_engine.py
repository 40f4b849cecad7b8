"""
Unit tests for the client-side sync engine.
"""

import threading
import time
from pathlib import Path

import pytest

from treesync.archive.codec import ArchiveCodec
from treesync.sync.engine import (
    CycleStats,
    RetryPolicy,
    SyncCancelled,
    SyncClient,
    SyncError,
)
from treesync.transport.client import TransportError
from treesync.transport.models import ApplyReply, StatusCode

MTIME_NEW = 1_700_000_500_000_000_000


@pytest.fixture
def local_dir(tmp_path: Path) -> Path:
    path = tmp_path / "local"
    path.mkdir()
    return path


@pytest.fixture
def no_wait() -> RetryPolicy:
    """Retry immediately, forever."""
    return RetryPolicy(delay=0)


@pytest.fixture
def client(fake_transport, local_dir: Path, no_wait: RetryPolicy) -> SyncClient:
    return SyncClient(
        transport=fake_transport,
        local_root=str(local_dir),
        retry_policy=no_wait,
    )


def _entries(archive: bytes) -> list[str]:
    return [entry.path for entry in ArchiveCodec().read_entries(archive)]


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_fixed_delay_by_default(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 10)] == [10.0, 10.0, 10.0]
        assert policy.exhausted(1000) is False

    def test_exponential_backoff_capped(self):
        policy = RetryPolicy(delay=1, backoff_factor=2, max_delay=5)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 5]

    def test_max_attempts(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.exhausted(2) is False
        assert policy.exhausted(3) is True

    @pytest.mark.parametrize("kwargs", [
        {"delay": -1},
        {"backoff_factor": 0.5},
        {"max_attempts": 0},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestPull:
    """Tests for SyncClient.pull."""

    def test_unpacks_into_local_root(self, client, fake_transport, sample_tree, local_dir, codec):
        fake_transport.fetch_archive = codec.pack_tree(str(sample_tree))

        written = client.pull("am")

        assert written == ["boot.json", "config/am.json", "scripts/deploy.sh"]
        assert (local_dir / "config/am.json").read_bytes() == b'{"realm": "/"}'
        assert fake_transport.fetch_calls == [("am", "master")]

    def test_custom_destination(self, client, fake_transport, sample_tree, tmp_path, codec):
        fake_transport.fetch_archive = codec.pack(str(sample_tree), ["boot.json"])

        client.pull("am", destination=str(tmp_path / "elsewhere"))

        assert (tmp_path / "elsewhere" / "boot.json").exists()

    def test_refused_fetch_raises(self, client, fake_transport):
        fake_transport.fetch_status = StatusCode.UNKNOWN_PRODUCT

        with pytest.raises(SyncError) as excinfo:
            client.pull("ds")

        assert excinfo.value.status == StatusCode.UNKNOWN_PRODUCT


class TestRunCycle:
    """Tests for a single scan/transmit cycle."""

    def test_no_changes_sends_nothing(self, client, fake_transport, local_dir, write_file):
        write_file(local_dir, "existing.json")
        client.prime()

        stats = client.run_cycle("am")

        assert stats == CycleStats()
        assert fake_transport.apply_calls == []

    def test_primed_files_not_sent(self, client, fake_transport, local_dir, write_file):
        write_file(local_dir, "existing.json")
        client.prime()
        write_file(local_dir, "added.json", mtime_ns=MTIME_NEW)

        client.run_cycle("am")

        assert _entries(fake_transport.apply_calls[0]["archive"]) == ["added.json"]

    def test_sends_new_and_modified(self, client, fake_transport, local_dir, write_file):
        write_file(local_dir, "a.json")
        client.prime()

        write_file(local_dir, "a.json", b"changed", mtime_ns=MTIME_NEW)
        write_file(local_dir, "sub/b.json", mtime_ns=MTIME_NEW)
        stats = client.run_cycle("am")

        call = fake_transport.apply_calls[0]
        assert call["product_id"] == "am"
        assert call["commit_ref"] == "master"
        assert call["deleted_paths"] == []
        assert _entries(call["archive"]) == ["a.json", "sub/b.json"]
        assert stats.sent is True
        assert (stats.new, stats.modified, stats.deleted) == (1, 1, 0)
        assert client.stats.changesets_sent == 1

    def test_deletions_only_send_empty_archive(self, client, fake_transport, local_dir, write_file):
        write_file(local_dir, "a.json")
        write_file(local_dir, "b.json")
        client.prime()

        (local_dir / "b.json").unlink()
        (local_dir / "a.json").unlink()
        client.run_cycle("am")

        call = fake_transport.apply_calls[0]
        assert call["archive"] == b""
        assert call["deleted_paths"] == ["a.json", "b.json"]

    def test_retries_until_success(self, client, fake_transport, local_dir, write_file):
        client.prime()
        write_file(local_dir, "a.json")
        fake_transport.fail_next(2)

        stats = client.run_cycle("am")

        assert stats.attempts == 3
        assert stats.sent is True
        assert client.stats.transport_failures == 2
        assert len(fake_transport.apply_calls) == 3
        # Every attempt carries the same changeset
        assert len({call["archive"] for call in fake_transport.apply_calls}) == 1

    def test_exhausted_retries_resend_next_cycle(self, fake_transport, local_dir, write_file):
        """Test that changes given up on are not lost."""
        client = SyncClient(
            transport=fake_transport,
            local_root=str(local_dir),
            retry_policy=RetryPolicy(delay=0, max_attempts=2),
        )
        client.prime()
        write_file(local_dir, "a.json")
        fake_transport.fail_next(2)

        with pytest.raises(TransportError):
            client.run_cycle("am")

        stats = client.run_cycle("am")

        assert stats.sent is True
        assert stats.new == 1
        assert _entries(fake_transport.apply_calls[-1]["archive"]) == ["a.json"]

    def test_alert_fires_once_after_threshold(self, fake_transport, local_dir, write_file):
        alerts = []
        client = SyncClient(
            transport=fake_transport,
            local_root=str(local_dir),
            retry_policy=RetryPolicy(delay=0, alert_after=2),
            on_alert=lambda product, failures, error: alerts.append((product, failures)),
        )
        client.prime()
        write_file(local_dir, "a.json")
        fake_transport.fail_next(4)

        client.run_cycle("am")

        assert alerts == [("am", 2)]

    def test_rejection_raises_and_rolls_back(self, client, fake_transport, local_dir, write_file):
        client.prime()
        write_file(local_dir, "a.json")
        fake_transport.apply_script.append(
            ApplyReply(status=StatusCode.CORRUPT_ARCHIVE, message="bad archive")
        )

        with pytest.raises(SyncError) as excinfo:
            client.run_cycle("am")

        assert excinfo.value.status == StatusCode.CORRUPT_ARCHIVE
        assert client.stats.changesets_rejected == 1
        assert "a.json" not in client.tracker

        assert client.run_cycle("am").sent is True

    def test_stop_cancels_retry_wait(self, fake_transport, local_dir, write_file):
        client = SyncClient(
            transport=fake_transport,
            local_root=str(local_dir),
            retry_policy=RetryPolicy(delay=60),
        )
        client.prime()
        write_file(local_dir, "a.json")
        fake_transport.fail_next(1)
        fake_transport.on_apply = client.stop

        started = time.monotonic()
        with pytest.raises(SyncCancelled):
            client.run_cycle("am")

        assert time.monotonic() - started < 5
        assert "a.json" not in client.tracker

    def test_pack_failure_rolls_back(self, client, fake_transport, local_dir, write_file, monkeypatch):
        client.prime()
        write_file(local_dir, "a.json")

        def broken_pack(root, paths):
            raise PermissionError("denied")

        monkeypatch.setattr(client.codec, "pack", broken_pack)

        with pytest.raises(PermissionError):
            client.run_cycle("am")

        assert fake_transport.apply_calls == []
        assert "a.json" not in client.tracker


class TestRunLoop:
    """Tests for the push loop."""

    @pytest.mark.parametrize("interval", [0, 121, -5])
    def test_interval_out_of_range(self, client, interval):
        with pytest.raises(ValueError, match="Invalid scan interval"):
            client.run("am", interval=interval)

    def test_stopped_before_start_only_primes(self, client, fake_transport, local_dir, write_file):
        write_file(local_dir, "a.json")
        client.stop()

        stats = client.run("am", interval=1)

        assert stats.cycles == 0
        assert len(client.tracker) == 1
        assert fake_transport.apply_calls == []

    def test_failed_cycle_does_not_end_loop(self, client, fake_transport, local_dir, write_file, monkeypatch):
        """Test that a rejected cycle is counted and the loop carries on."""
        write_file(local_dir, "a.json")
        monkeypatch.setattr(client, "prime", lambda: 0)
        fake_transport.apply_script.append(ApplyReply(status=StatusCode.IO_ERROR, message="disk full"))

        def stop_after_second():
            if len(fake_transport.apply_calls) >= 2:
                client.stop()

        fake_transport.on_apply = stop_after_second

        stats = client.run("am", interval=1)

        assert stats.failed_cycles == 1
        assert stats.changesets_rejected == 1
        assert stats.changesets_sent == 1
        assert client.stopped is True

    def test_detects_changes_while_running(self, client, fake_transport, local_dir, write_file):
        thread = threading.Thread(target=client.run, args=("am", 1))
        thread.start()
        try:
            deadline = time.monotonic() + 5
            while client.tracker.scan_count < 1 and time.monotonic() < deadline:
                time.sleep(0.01)

            write_file(local_dir, "late.json", mtime_ns=MTIME_NEW)

            while not fake_transport.apply_calls and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            client.stop()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert _entries(fake_transport.apply_calls[0]["archive"]) == ["late.json"]
