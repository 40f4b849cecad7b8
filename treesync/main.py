#!/usr/bin/env python3
"""
treesync - Main Entry Point

Keeps a configuration tree on a client host in sync with a canonical tree
on a server host.

Usage:
    python -m treesync.main pull            # Bootstrap the local tree once
    python -m treesync.main push 10         # Push local changes every 10s
    python -m treesync.main serve           # Run the server
    python -m treesync.main serve /srv/cfg  # Serve another root directory

Environment Variables:
    TREESYNC_SERVER_URL     - Server URL (default http://localhost:50051)
    TREESYNC_PRODUCT        - Product id the client syncs (default am)
    TREESYNC_CONFIG_DIR     - Local tree on the client (default /tmp)
    TREESYNC_ROOT_DIR       - Served tree on the server (default tmp/frconfig)
    TREESYNC_PRODUCTS       - Product map, e.g. am=docker/am/config-profiles/cdk
    GIT_REPO                - Repository cloned into the root when missing
    GIT_SSH_PATH            - Directory holding id_rsa for ssh remotes

See config/settings.py for all configuration options.
"""

import argparse
import dataclasses
import logging
import signal
import sys
import threading
from pathlib import Path

# Add project root to path for imports if running as script
if __name__ == "__main__" and __package__ is None:
    PROJECT_ROOT = Path(__file__).parent.parent
    sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import ConfigurationError, Settings, load_settings
from treesync.archive.codec import ArchiveCodec, CorruptArchiveError
from treesync.persistence.git import (
    BackgroundRecorder,
    ChangeRecorder,
    GitRecorder,
    NullRecorder,
    PersistenceError,
)
from treesync.sync.engine import (
    MAX_SCAN_INTERVAL,
    MIN_SCAN_INTERVAL,
    RetryPolicy,
    SyncClient,
    SyncError,
)
from treesync.sync.server import SyncServer
from treesync.tracker.state_tracker import FileStateTracker
from treesync.transport.client import TransportClient, TransportError
from treesync.transport.server import create_http_server


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def scan_seconds(value: str) -> int:
    """argparse type for the push interval."""
    try:
        seconds = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number") from None
    if not MIN_SCAN_INTERVAL <= seconds <= MAX_SCAN_INTERVAL:
        raise argparse.ArgumentTypeError(
            f"Invalid scan interval: {seconds}. "
            f"Must be between {MIN_SCAN_INTERVAL} and {MAX_SCAN_INTERVAL}"
        )
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="treesync",
        description="Synchronize a configuration tree between a client and a server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    treesync pull                       # Fetch the product tree once
    treesync push 10                    # Push changes every 10 seconds
    treesync serve                      # Serve TREESYNC_ROOT_DIR
    treesync -v --env .env.local push   # Debug output, custom env file
        """,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    parser.add_argument(
        "--env",
        type=Path,
        help="Path to .env file (default: .env in current directory)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    pull = subparsers.add_parser("pull", help="Fetch the whole product tree once")
    pull.add_argument("--product", help="Product id (overrides TREESYNC_PRODUCT)")
    pull.add_argument("--dir", type=Path, help="Local tree (overrides TREESYNC_CONFIG_DIR)")

    push = subparsers.add_parser("push", help="Push local changes until interrupted")
    push.add_argument(
        "scan_seconds",
        nargs="?",
        type=scan_seconds,
        help=f"Seconds between scans ({MIN_SCAN_INTERVAL}-{MAX_SCAN_INTERVAL}, "
             f"default TREESYNC_SCAN_INTERVAL)",
    )
    push.add_argument("--product", help="Product id (overrides TREESYNC_PRODUCT)")
    push.add_argument("--dir", type=Path, help="Local tree (overrides TREESYNC_CONFIG_DIR)")

    serve = subparsers.add_parser("serve", help="Run the sync server")
    serve.add_argument(
        "root_dir",
        nargs="?",
        type=Path,
        help="Served tree (overrides TREESYNC_ROOT_DIR)",
    )
    serve.add_argument("--port", type=int, help="Listen port (overrides TREESYNC_PORT)")

    return parser


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Replace settings with the values given on the command line."""
    client_changes = {}
    server_changes = {}

    if getattr(args, "product", None):
        client_changes["product_id"] = args.product
    if getattr(args, "dir", None):
        client_changes["config_dir"] = args.dir
    if getattr(args, "scan_seconds", None):
        client_changes["scan_interval"] = args.scan_seconds
    if getattr(args, "root_dir", None):
        server_changes["root_dir"] = args.root_dir
    if getattr(args, "port", None) is not None:
        server_changes["port"] = args.port

    return dataclasses.replace(
        settings,
        client=dataclasses.replace(settings.client, **client_changes),
        server=dataclasses.replace(settings.server, **server_changes),
    )


def build_codec(settings: Settings) -> ArchiveCodec:
    return ArchiveCodec(compression=settings.archive.compression)


def build_transport(settings: Settings) -> TransportClient:
    return TransportClient(
        base_url=settings.client.server_url,
        fetch_timeout=settings.transport.fetch_timeout_seconds,
        apply_timeout=settings.transport.apply_timeout_seconds,
        connect_retries=settings.transport.connect_retries,
    )


def build_sync_client(settings: Settings, transport: TransportClient) -> SyncClient:
    local_root = str(settings.client.config_dir)
    return SyncClient(
        transport=transport,
        local_root=local_root,
        codec=build_codec(settings),
        tracker=FileStateTracker(local_root, settings.archive.excluded_names),
        retry_policy=RetryPolicy(
            delay=settings.retry.delay_seconds,
            backoff_factor=settings.retry.backoff_factor,
            max_delay=settings.retry.max_delay_seconds,
            alert_after=settings.retry.alert_after,
            max_attempts=settings.retry.max_attempts,
        ),
        commit_ref=settings.client.commit_ref,
    )


def build_recorder(settings: Settings) -> ChangeRecorder:
    """
    Create the persistence collaborator for the served tree.

    Raises:
        PersistenceError: If the repository cannot be prepared
    """
    logger = logging.getLogger(__name__)
    git = settings.git

    if git.commit_mode == "none":
        logger.info("Versioning disabled, changes are not committed")
        return NullRecorder()

    if not GitRecorder.available():
        raise PersistenceError("git executable not found (set TREESYNC_COMMIT_MODE=none to disable)")

    recorder = GitRecorder(
        repo_dir=str(settings.server.root_dir),
        branch=git.branch,
        remote_url=git.remote_url,
        push=git.push,
        ssh_path=str(git.ssh_path) if git.ssh_path else None,
    )
    recorder.open()

    if git.commit_mode == "background":
        return BackgroundRecorder(recorder)
    return recorder


def install_signal_handlers(callback) -> None:
    """Call callback on SIGINT/SIGTERM instead of raising KeyboardInterrupt."""
    logger = logging.getLogger(__name__)

    def handler(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
        callback()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def run_pull(settings: Settings) -> int:
    logger = logging.getLogger(__name__)

    with build_transport(settings) as transport:
        client = build_sync_client(settings, transport)
        written = client.pull(settings.client.product_id)

    logger.info(f"Pull completed: {len(written)} files in {settings.client.config_dir}")
    return 0


def run_push(settings: Settings) -> int:
    logger = logging.getLogger(__name__)
    config_dir = settings.client.config_dir

    config_dir.mkdir(parents=True, exist_ok=True)

    with build_transport(settings) as transport:
        client = build_sync_client(settings, transport)
        install_signal_handlers(client.stop)

        stats = client.run(settings.client.product_id, settings.client.scan_interval)

    logger.info("=" * 50)
    logger.info("Push Summary")
    logger.info("=" * 50)
    logger.info(f"Cycles:               {stats.cycles}")
    logger.info(f"Changesets sent:      {stats.changesets_sent}")
    logger.info(f"Changesets rejected:  {stats.changesets_rejected}")
    logger.info(f"Failed cycles:        {stats.failed_cycles}")
    logger.info(f"Transport failures:   {stats.transport_failures}")
    logger.info("=" * 50)
    return 0


def run_serve(settings: Settings) -> int:
    logger = logging.getLogger(__name__)
    root_dir = settings.server.root_dir

    recorder = build_recorder(settings)
    root_dir.mkdir(parents=True, exist_ok=True)

    sync_server = SyncServer(
        root_dir=str(root_dir),
        product_paths=settings.server.product_paths,
        codec=build_codec(settings),
        recorder=recorder,
        excluded_names=settings.archive.excluded_names,
    )
    logger.info(f"Serving {sync_server}")

    http_server = create_http_server(
        sync_server,
        host=settings.server.host,
        port=settings.server.port,
    )

    stop_event = threading.Event()
    install_signal_handlers(stop_event.set)

    thread = threading.Thread(target=http_server.serve_forever, name="treesync-http", daemon=True)
    thread.start()

    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        http_server.shutdown()
        http_server.server_close()
        thread.join()
        recorder.close()
        logger.info("Server stopped")

    return 0


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error, 130 if interrupted)
    """
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    logger = logging.getLogger(__name__)

    try:
        settings = apply_overrides(load_settings(env_file=args.env), args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Please check your .env file or environment variables")
        return 1

    if not args.verbose:
        logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))

    commands = {
        "pull": run_pull,
        "push": run_push,
        "serve": run_serve,
    }

    try:
        return commands[args.command](settings)
    except SyncError as e:
        logger.error(f"Server refused request: {e}")
        return 1
    except TransportError as e:
        logger.error(f"Could not reach server: {e}")
        return 1
    except CorruptArchiveError as e:
        logger.error(f"Received a corrupt archive: {e}")
        return 1
    except PersistenceError as e:
        logger.error(f"Version control error: {e}")
        return 1
    except OSError as e:
        logger.error(f"Filesystem error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
