"""
Persistence collaborators.

After every successful apply the server asks a ChangeRecorder to version
the served tree. GitRecorder stages all additions, modifications and
deletions and creates a commit; BackgroundRecorder moves that work off the
request path.
"""

import logging
import os
import queue
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a change could not be recorded."""

    def __init__(self, message: str, command: Optional[list[str]] = None, stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class ChangeRecorder(ABC):
    """Versions the served tree after it changed."""

    @abstractmethod
    def record_change(self, message: str) -> None:
        """
        Record the current state of the tree.

        Args:
            message: Human-readable description of the change

        Raises:
            PersistenceError: If the change could not be recorded
        """

    def close(self) -> None:
        """Release resources; pending work is finished first."""


class NullRecorder(ChangeRecorder):
    """Recorder that only logs. Used when versioning is disabled."""

    def record_change(self, message: str) -> None:
        logger.info(f"Change not versioned: {message}")


class GitRecorder(ChangeRecorder):
    """
    Commits the working tree of a git repository.

    Commands are run through the git CLI. The repository is shared by all
    products, so commits are serialized with a lock.

    Usage:
        recorder = GitRecorder("/srv/forgeops", branch="master")
        recorder.open()
        recorder.record_change("am@master: 3 updated, 1 deleted")
    """

    AUTHOR_NAME = "treesync"
    AUTHOR_EMAIL = "treesync@localhost"

    # In-flight temp files from concurrent unpacks of other products
    PATHSPEC = (".", ":(exclude,glob)**/.treesync-*")

    def __init__(
        self,
        repo_dir: str,
        branch: str = "master",
        remote_url: Optional[str] = None,
        push: bool = False,
        ssh_path: Optional[str] = None,
        author_name: str = AUTHOR_NAME,
        author_email: str = AUTHOR_EMAIL,
        timeout: float = 120.0,
    ):
        """
        Initialize the recorder.

        Args:
            repo_dir: Working tree of the repository
            branch: Branch commits are made on
            remote_url: Repository cloned into repo_dir when it is missing
            push: Push to origin after every commit
            ssh_path: Directory holding id_rsa for ssh remotes
            author_name: Commit author/committer name
            author_email: Commit author/committer email
            timeout: Timeout in seconds for each git command
        """
        self.repo_dir = str(repo_dir)
        self.branch = branch
        self.remote_url = remote_url
        self.push = push
        self.ssh_path = ssh_path
        self.author_name = author_name
        self.author_email = author_email
        self.timeout = timeout

        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"GitRecorder(repo_dir='{self.repo_dir}', branch='{self.branch}')"

    @staticmethod
    def available() -> bool:
        """Check if the git executable is installed."""
        return shutil.which("git") is not None

    @property
    def is_repository(self) -> bool:
        return os.path.isdir(os.path.join(self.repo_dir, ".git"))

    def _env(self) -> dict:
        env = os.environ.copy()
        if self.ssh_path:
            key = os.path.join(self.ssh_path, "id_rsa")
            env["GIT_SSH_COMMAND"] = f"ssh -i {key} -o IdentitiesOnly=yes"
        return env

    def _git(self, *args: str, cwd: Optional[str] = None) -> str:
        """
        Run a git command and return its stdout.

        Raises:
            PersistenceError: If git is missing or the command fails
        """
        cmd = [
            "git",
            "-c", f"user.name={self.author_name}",
            "-c", f"user.email={self.author_email}",
            *args,
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                cwd=cwd or self.repo_dir,
                env=self._env(),
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise PersistenceError(f"Could not run {' '.join(args[:1])}: {e}", command=cmd) from e

        if result.returncode != 0:
            logger.debug(f"Git command failed: {' '.join(args)} -> {result.stderr.strip()}")
            raise PersistenceError(
                f"git {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}",
                command=cmd,
                stderr=result.stderr,
            )
        return result.stdout

    def open(self) -> None:
        """
        Make sure repo_dir is a repository on the configured branch.

        Clones remote_url when the directory is not a repository yet, or
        initializes an empty repository when no remote is configured.

        Raises:
            PersistenceError: If the repository cannot be prepared
        """
        if self.is_repository:
            logger.info(f"Using git repository at {self.repo_dir}")
        elif self.remote_url:
            logger.info(f"{self.repo_dir} not found, cloning {self.remote_url}")
            parent = os.path.dirname(os.path.abspath(self.repo_dir))
            os.makedirs(parent, exist_ok=True)
            self._git(
                "clone", "-b", self.branch, self.remote_url, os.path.abspath(self.repo_dir),
                cwd=parent,
            )
        else:
            logger.info(f"Initializing git repository at {self.repo_dir}")
            os.makedirs(self.repo_dir, exist_ok=True)
            self._git("init", "-q")

        current = self._git("symbolic-ref", "--short", "HEAD").strip()
        if current == self.branch:
            return

        logger.info(f"Switching {self.repo_dir} from {current} to {self.branch}")
        if self._has_commits():
            self._git("checkout", "-B", self.branch)
        else:
            self._git("symbolic-ref", "HEAD", f"refs/heads/{self.branch}")

    def _has_commits(self) -> bool:
        try:
            self._git("rev-parse", "--verify", "-q", "HEAD")
        except PersistenceError:
            return False
        return True

    def record_change(self, message: str) -> None:
        """
        Stage everything and commit if the tree changed.

        Raises:
            PersistenceError: If staging, committing or pushing failed
        """
        with self._lock:
            status = self._git("status", "--porcelain", "--untracked-files=all", "--", *self.PATHSPEC)
            changes = [line for line in status.splitlines() if line.strip()]
            logger.info(f"Processing {len(changes)} git changes")

            if not changes:
                return

            for line in changes:
                logger.debug(f"  {line}")

            self._git("add", "-A", "--", *self.PATHSPEC)
            self._git("commit", "-q", "-m", message)

            if self.push:
                self._git("push", "origin", self.branch)

            logger.info(f"Committed: {message}")

    def head(self) -> str:
        """Commit id of HEAD."""
        return self._git("rev-parse", "HEAD").strip()


class BackgroundRecorder(ChangeRecorder):
    """
    Runs another recorder on a worker thread.

    record_change only enqueues, so a slow version-control backend cannot
    hold up the response to the client. Failures are logged and counted.
    """

    _STOP = object()

    def __init__(self, recorder: ChangeRecorder, max_pending: int = 100):
        self.recorder = recorder
        self.failures = 0
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_pending)
        self._worker = threading.Thread(
            target=self._run,
            name="treesync-recorder",
            daemon=True,
        )
        self._worker.start()

    def __repr__(self) -> str:
        return f"BackgroundRecorder({self.recorder!r})"

    def record_change(self, message: str) -> None:
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            raise PersistenceError(
                f"Commit queue is full ({self._queue.maxsize} pending)"
            ) from None

    def flush(self) -> None:
        """Block until every queued change was processed."""
        self._queue.join()

    def close(self) -> None:
        self._queue.put(self._STOP)
        self._worker.join()
        self.recorder.close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is self._STOP:
                    return
                self.recorder.record_change(item)
            except PersistenceError as e:
                self.failures += 1
                logger.error(f"Background commit failed: {e}")
            finally:
                self._queue.task_done()
