"""
Client-side sync engine.

Bootstraps a local tree from the server (pull) and pushes local changes
back in a scan → diff → archive → transmit loop (push).
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ..archive.codec import ArchiveCodec
from ..tracker.state_tracker import FileStateTracker
from ..transport.client import TransportClient, TransportError

logger = logging.getLogger(__name__)

MIN_SCAN_INTERVAL = 1
MAX_SCAN_INTERVAL = 120


class SyncError(Exception):
    """Raised when the server rejected a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SyncCancelled(Exception):
    """Raised when stop() interrupts a transfer waiting to be retried."""
    pass


@dataclass(frozen=True)
class RetryPolicy:
    """
    How the push loop retries a failed transfer.

    The defaults retry forever with a fixed delay so an update is never
    dropped. backoff_factor > 1 turns the delay exponential (capped at
    max_delay). After alert_after consecutive failures the alert hook fires
    once. max_attempts bounds the retries of one transfer; the changes are
    then handed back to the tracker and resent on the next cycle.

    Attributes:
        delay: Seconds to wait before the first retry
        backoff_factor: Multiplier applied to the delay after each failure
        max_delay: Upper bound for the delay in seconds
        alert_after: Consecutive failures before the alert hook fires (0 = never)
        max_attempts: Attempts per transfer (None = unbounded)
    """
    delay: float = 10.0
    backoff_factor: float = 1.0
    max_delay: float = 120.0
    alert_after: int = 6
    max_attempts: Optional[int] = None

    def __post_init__(self):
        if self.delay < 0:
            raise ValueError("Retry delay must not be negative")
        if self.backoff_factor < 1:
            raise ValueError("Backoff factor must be >= 1")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be positive or None")

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return min(self.delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        """Check if no further attempt is allowed after this one."""
        return self.max_attempts is not None and attempt >= self.max_attempts


@dataclass
class CycleStats:
    """Statistics from one scan/transmit cycle."""
    new: int = 0
    modified: int = 0
    deleted: int = 0
    archive_bytes: int = 0
    attempts: int = 0
    sent: bool = False
    status: Optional[int] = None

    def __str__(self) -> str:
        return (
            f"new={self.new} modified={self.modified} deleted={self.deleted} "
            f"archive_bytes={self.archive_bytes} attempts={self.attempts} sent={self.sent}"
        )


@dataclass
class LoopStats:
    """Running totals of a push loop."""
    cycles: int = 0
    changesets_sent: int = 0
    changesets_rejected: int = 0
    failed_cycles: int = 0
    transport_failures: int = 0


AlertHook = Callable[[str, int, Exception], None]


def log_alert(product_id: str, failures: int, error: Exception) -> None:
    """Default alert hook: log loudly."""
    logger.error(
        f"ALERT: {failures} consecutive failures pushing {product_id}, "
        f"server may be unreachable: {error}"
    )


class SyncClient:
    """
    Keeps a local directory in sync with a treesync server.

    Two modes:
    - pull(): fetch the whole product once and unpack it (bootstrap)
    - run(): prime the tracker, then push changes every interval until stop()

    Scans are strictly sequential: a new scan never starts before the
    previous transfer, including its retries, has finished or been
    cancelled. stop() interrupts waits, never an in-flight request.

    Usage:
        client = SyncClient(
            transport=TransportClient("http://config-server:50051"),
            local_root="/var/config",
        )

        client.pull("am")
        client.run("am", interval=10)
    """

    def __init__(
        self,
        transport: TransportClient,
        local_root: str,
        codec: Optional[ArchiveCodec] = None,
        tracker: Optional[FileStateTracker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        commit_ref: str = "master",
        on_alert: Optional[AlertHook] = None,
    ):
        """
        Initialize the sync client.

        Args:
            transport: Client for the server's Fetch/Apply operations
            local_root: Local directory being synchronized
            codec: Archive codec (plain tar by default)
            tracker: File state tracker for local_root
            retry_policy: Retry behaviour of the push loop
            commit_ref: Reference sent with every request
            on_alert: Called after retry_policy.alert_after consecutive failures
        """
        self.transport = transport
        self.local_root = str(local_root)
        self.codec = codec or ArchiveCodec()
        self.tracker = tracker or FileStateTracker(self.local_root)
        self.retry_policy = retry_policy or RetryPolicy()
        self.commit_ref = commit_ref
        self.on_alert = on_alert or log_alert

        self.stats = LoopStats()
        self._consecutive_failures = 0
        self._stop_event = threading.Event()

    def pull(self, product_id: str, destination: Optional[str] = None) -> list[str]:
        """
        Fetch the full product archive and unpack it.

        Args:
            product_id: Product to fetch
            destination: Where to unpack (defaults to local_root)

        Returns:
            Relative paths written

        Raises:
            TransportError: If the request failed
            SyncError: If the server returned a failure status
            CorruptArchiveError: If the archive is malformed
            OSError: If the destination cannot be written
        """
        target = destination or self.local_root
        logger.info(f"Pulling {product_id}@{self.commit_ref} into {target}")

        reply = self.transport.fetch(product_id, self.commit_ref)
        if not reply.ok:
            raise SyncError(
                f"Server refused fetch of {product_id}: {reply.message}",
                status=reply.status,
            )

        written = self.codec.unpack(reply.archive, target)
        logger.info(f"Pulled {len(written)} files for {product_id}")
        return written

    def prime(self) -> int:
        """
        Run the throwaway first scan so existing files are not sent as new.

        Returns:
            Number of files now tracked
        """
        self.tracker.scan()
        logger.info(f"Tracking {len(self.tracker)} files under {self.local_root}")
        return len(self.tracker)

    def run(self, product_id: str, interval: float = 10) -> LoopStats:
        """
        Push local changes until stop() is called.

        A failed cycle is logged and the loop carries on.

        Args:
            product_id: Product the local tree belongs to
            interval: Seconds to sleep between scans (1-120)

        Returns:
            LoopStats accumulated while running

        Raises:
            ValueError: If interval is out of range
            OSError: If the priming scan cannot read the local tree
        """
        if not MIN_SCAN_INTERVAL <= interval <= MAX_SCAN_INTERVAL:
            raise ValueError(
                f"Invalid scan interval: {interval}. "
                f"Must be between {MIN_SCAN_INTERVAL} and {MAX_SCAN_INTERVAL}"
            )

        self.prime()
        logger.info(f"Watching {self.local_root} for {product_id} every {interval}s")

        while not self._stop_event.is_set():
            try:
                self.run_cycle(product_id)
            except SyncCancelled:
                logger.info("Transfer cancelled")
                break
            except Exception as e:
                self.stats.failed_cycles += 1
                logger.error(f"Sync cycle failed: {e}", exc_info=True)

            if self._stop_event.wait(interval):
                break

        logger.info("Push loop stopped")
        return self.stats

    def run_cycle(self, product_id: str) -> CycleStats:
        """
        Scan once and send any changes.

        If the changes cannot be delivered (transfer cancelled, retry budget
        used up, server rejection, archive failure) the tracker is rolled
        back so the next scan reports them again.

        Returns:
            CycleStats for this cycle

        Raises:
            OSError: If the local tree cannot be scanned or packed
            SyncCancelled: If stop() was called while waiting to retry
            TransportError: If the retry budget was used up
            SyncError: If the server rejected the changeset
        """
        stats = CycleStats()
        checkpoint = self.tracker.snapshot()
        result = self.tracker.scan()
        self.stats.cycles += 1

        stats.new = len(result.new_files)
        stats.modified = len(result.modified_files)
        stats.deleted = len(result.deleted_files)

        if not result.has_changes:
            return stats

        try:
            archive = b""
            if result.changed_files:
                archive = self.codec.pack(self.local_root, result.changed_files)
                stats.archive_bytes = len(archive)
                logger.info(
                    f"Number files modified = {stats.modified} new = {stats.new} "
                    f"archive size = {stats.archive_bytes}"
                )

            reply = self._send_with_retry(
                product_id, archive, sorted(result.deleted_files), stats
            )
        except BaseException:
            self.tracker.restore(checkpoint)
            raise

        stats.status = reply.status
        if not reply.ok:
            self.tracker.restore(checkpoint)
            self.stats.changesets_rejected += 1
            raise SyncError(
                f"Server rejected changeset for {product_id}: {reply.message}",
                status=reply.status,
            )

        stats.sent = True
        self.stats.changesets_sent += 1
        logger.info(f"Server updated: {stats}")
        return stats

    def _send_with_retry(self, product_id, archive, deleted_paths, stats):
        """
        Send an Apply request, retrying on TransportError.

        Raises:
            SyncCancelled: If stop() was called during a retry wait
            TransportError: If retry_policy.max_attempts was reached
        """
        attempt = 0
        while True:
            attempt += 1
            stats.attempts = attempt
            logger.info(
                f"Updating server, modified={stats.modified} new={stats.new} "
                f"deleted={stats.deleted} archive_bytes={len(archive)}"
            )
            try:
                reply = self.transport.apply(
                    product_id,
                    archive,
                    deleted_paths,
                    commit_ref=self.commit_ref,
                )
            except TransportError as e:
                self.stats.transport_failures += 1
                self._consecutive_failures += 1

                if self._consecutive_failures == self.retry_policy.alert_after:
                    self.on_alert(product_id, self._consecutive_failures, e)

                if self.retry_policy.exhausted(attempt):
                    logger.error(
                        f"Giving up on this changeset after {attempt} attempts, "
                        f"it will be resent next cycle: {e}"
                    )
                    raise

                delay = self.retry_policy.delay_for(attempt)
                logger.warning(f"Error updating server: {e}. Retrying in {delay}s")
                if self._stop_event.wait(delay):
                    raise SyncCancelled(f"Stopped while retrying {product_id}") from e
                continue

            self._consecutive_failures = 0
            return reply

    def stop(self) -> None:
        """Ask the push loop to stop at its next wait."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()
