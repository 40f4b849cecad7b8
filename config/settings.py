"""
Configuration settings with environment variable loading.

Every setting has a default so client and server can share one loader;
values are validated when the dataclasses are built.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from treesync.sync.engine import MAX_SCAN_INTERVAL, MIN_SCAN_INTERVAL

logger = logging.getLogger(__name__)

DEFAULT_PRODUCTS = "am=docker/am/config-profiles/cdk,idm=docker/idm/config-profiles/cdk"

ENV_PREFIX = "TREESYNC_"

# Every TREESYNC_* variable load_settings reads
KNOWN_VARIABLES = frozenset({
    "TREESYNC_SERVER_URL",
    "TREESYNC_PRODUCT",
    "TREESYNC_CONFIG_DIR",
    "TREESYNC_COMMIT_REF",
    "TREESYNC_SCAN_INTERVAL",
    "TREESYNC_ROOT_DIR",
    "TREESYNC_HOST",
    "TREESYNC_PORT",
    "TREESYNC_PRODUCTS",
    "TREESYNC_FETCH_TIMEOUT",
    "TREESYNC_APPLY_TIMEOUT",
    "TREESYNC_CONNECT_RETRIES",
    "TREESYNC_RETRY_DELAY",
    "TREESYNC_RETRY_BACKOFF",
    "TREESYNC_RETRY_MAX_DELAY",
    "TREESYNC_RETRY_ALERT_AFTER",
    "TREESYNC_RETRY_MAX_ATTEMPTS",
    "TREESYNC_COMPRESSION",
    "TREESYNC_EXCLUDE",
    "TREESYNC_COMMIT_MODE",
    "TREESYNC_GIT_BRANCH",
    "TREESYNC_GIT_PUSH",
})


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class ClientConfig:
    """Client role configuration."""
    server_url: str = "http://localhost:50051"
    product_id: str = "am"
    config_dir: Path = field(default_factory=lambda: Path("/tmp"))
    commit_ref: str = "master"
    scan_interval: int = 10

    def __post_init__(self):
        if not self.server_url.startswith(("http://", "https://")):
            raise ConfigurationError("TREESYNC_SERVER_URL must be an http(s) URL")
        if not self.product_id:
            raise ConfigurationError("TREESYNC_PRODUCT is required")
        if not MIN_SCAN_INTERVAL <= self.scan_interval <= MAX_SCAN_INTERVAL:
            raise ConfigurationError(
                f"Invalid scan interval {self.scan_interval}. "
                f"Must be between {MIN_SCAN_INTERVAL} and {MAX_SCAN_INTERVAL}"
            )
        object.__setattr__(self, "config_dir", Path(self.config_dir))


@dataclass(frozen=True)
class ServerConfig:
    """Server role configuration."""
    root_dir: Path = field(default_factory=lambda: Path("tmp/frconfig"))
    host: str = "0.0.0.0"
    port: int = 50051
    product_paths: dict = field(default_factory=dict)

    def __post_init__(self):
        if not 0 <= self.port <= 65535:
            raise ConfigurationError(f"Invalid port {self.port}")
        for product_id, path in self.product_paths.items():
            if not product_id or not path:
                raise ConfigurationError(f"Invalid product mapping {product_id!r}={path!r}")
            if path.startswith("/") or ".." in path.split("/"):
                raise ConfigurationError(
                    f"Product path for {product_id!r} must be relative to the root: {path!r}"
                )
        object.__setattr__(self, "root_dir", Path(self.root_dir))

    def __repr__(self) -> str:
        return (
            f"ServerConfig(root_dir='{self.root_dir}', host='{self.host}', "
            f"port={self.port}, products={sorted(self.product_paths)})"
        )


@dataclass(frozen=True)
class TransportConfig:
    """Request timeouts."""
    fetch_timeout_seconds: float = 120.0
    apply_timeout_seconds: float = 10.0
    connect_retries: int = 3

    def __post_init__(self):
        if self.fetch_timeout_seconds <= 0 or self.apply_timeout_seconds <= 0:
            raise ConfigurationError("Request timeouts must be positive")
        if self.connect_retries < 0:
            raise ConfigurationError("TREESYNC_CONNECT_RETRIES must not be negative")


@dataclass(frozen=True)
class RetryConfig:
    """Push loop retry behaviour."""
    delay_seconds: float = 10.0
    backoff_factor: float = 1.0
    max_delay_seconds: float = 120.0
    alert_after: int = 6
    max_attempts: Optional[int] = None

    def __post_init__(self):
        if self.delay_seconds < 0:
            raise ConfigurationError("TREESYNC_RETRY_DELAY must not be negative")
        if self.backoff_factor < 1:
            raise ConfigurationError("TREESYNC_RETRY_BACKOFF must be >= 1")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ConfigurationError("TREESYNC_RETRY_MAX_ATTEMPTS must be positive (0 = unbounded)")


@dataclass(frozen=True)
class ArchiveConfig:
    """Archive codec and scanner configuration."""
    compression: str = "off"
    excluded_names: tuple = (".git",)

    def __post_init__(self):
        if self.compression not in ("on", "off"):
            raise ConfigurationError(
                f"TREESYNC_COMPRESSION must be 'on' or 'off', got {self.compression!r}"
            )


@dataclass(frozen=True)
class GitConfig:
    """Server-side versioning configuration."""
    commit_mode: str = "sync"
    remote_url: Optional[str] = None
    branch: str = "master"
    push: bool = False
    ssh_path: Optional[Path] = None

    def __post_init__(self):
        if self.commit_mode not in ("sync", "background", "none"):
            raise ConfigurationError(
                f"TREESYNC_COMMIT_MODE must be sync, background or none, got {self.commit_mode!r}"
            )
        if self.ssh_path is not None and not Path(self.ssh_path).is_dir():
            raise ConfigurationError(f"GIT_SSH_PATH {self.ssh_path} does not exist or is not readable")

    def __repr__(self) -> str:
        """Never expose credentials embedded in the remote URL."""
        remote = _redact_url(self.remote_url) if self.remote_url else None
        return (
            f"GitConfig(commit_mode='{self.commit_mode}', remote_url={remote!r}, "
            f"branch='{self.branch}', push={self.push})"
        )


@dataclass(frozen=True)
class Settings:
    """
    Application settings container.

    All configuration is loaded from environment variables.
    """
    client: ClientConfig
    server: ServerConfig
    transport: TransportConfig
    retry: RetryConfig
    archive: ArchiveConfig
    git: GitConfig
    log_level: str = "INFO"

    def __repr__(self) -> str:
        return (
            f"Settings(\n"
            f"  client={self.client},\n"
            f"  server={self.server},\n"
            f"  transport={self.transport},\n"
            f"  retry={self.retry},\n"
            f"  archive={self.archive},\n"
            f"  git={self.git}\n"
            f")"
        )


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Load settings from environment variables.

    Optionally loads from a .env file first.

    Args:
        env_file: Optional path to .env file

    Returns:
        Configured Settings instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    if env_file and env_file.exists():
        _load_env_file(env_file)
    elif Path(".env").exists():
        _load_env_file(Path(".env"))

    try:
        client = ClientConfig(
            server_url=os.getenv("TREESYNC_SERVER_URL", "http://localhost:50051").rstrip("/"),
            product_id=os.getenv("TREESYNC_PRODUCT", "am"),
            config_dir=Path(os.getenv("TREESYNC_CONFIG_DIR", "/tmp")),
            commit_ref=os.getenv("TREESYNC_COMMIT_REF", "master"),
            scan_interval=int(os.getenv("TREESYNC_SCAN_INTERVAL", "10")),
        )

        server = ServerConfig(
            root_dir=Path(os.getenv("TREESYNC_ROOT_DIR", "tmp/frconfig")),
            host=os.getenv("TREESYNC_HOST", "0.0.0.0"),
            port=int(os.getenv("TREESYNC_PORT", "50051")),
            product_paths=parse_product_paths(os.getenv("TREESYNC_PRODUCTS", DEFAULT_PRODUCTS)),
        )

        transport = TransportConfig(
            fetch_timeout_seconds=float(os.getenv("TREESYNC_FETCH_TIMEOUT", "120")),
            apply_timeout_seconds=float(os.getenv("TREESYNC_APPLY_TIMEOUT", "10")),
            connect_retries=int(os.getenv("TREESYNC_CONNECT_RETRIES", "3")),
        )

        max_attempts = int(os.getenv("TREESYNC_RETRY_MAX_ATTEMPTS", "0"))
        retry = RetryConfig(
            delay_seconds=float(os.getenv("TREESYNC_RETRY_DELAY", "10")),
            backoff_factor=float(os.getenv("TREESYNC_RETRY_BACKOFF", "1.0")),
            max_delay_seconds=float(os.getenv("TREESYNC_RETRY_MAX_DELAY", "120")),
            alert_after=int(os.getenv("TREESYNC_RETRY_ALERT_AFTER", "6")),
            max_attempts=max_attempts or None,
        )

        archive = ArchiveConfig(
            compression=os.getenv("TREESYNC_COMPRESSION", "off").strip().lower(),
            excluded_names=tuple(
                name.strip()
                for name in os.getenv("TREESYNC_EXCLUDE", ".git").split(",")
                if name.strip()
            ),
        )

        ssh_path = os.getenv("GIT_SSH_PATH")
        git = GitConfig(
            commit_mode=os.getenv("TREESYNC_COMMIT_MODE", "sync").strip().lower(),
            remote_url=os.getenv("GIT_REPO") or None,
            branch=os.getenv("TREESYNC_GIT_BRANCH", "master"),
            push=os.getenv("TREESYNC_GIT_PUSH", "false").lower() == "true",
            ssh_path=Path(ssh_path) if ssh_path else None,
        )

        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        settings = Settings(
            client=client,
            server=server,
            transport=transport,
            retry=retry,
            archive=archive,
            git=git,
            log_level=log_level,
        )

        logger.info("Configuration loaded successfully")
        logger.debug(f"Settings: {settings}")

        return settings

    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e


def parse_product_paths(value: str) -> dict[str, str]:
    """
    Parse a product mapping such as "am=docker/am/cdk,idm=docker/idm/cdk".

    Raises:
        ConfigurationError: If an item is not product=path
    """
    products = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        product_id, sep, path = item.partition("=")
        if not sep or not product_id.strip() or not path.strip():
            raise ConfigurationError(f"Invalid TREESYNC_PRODUCTS entry {item!r}, expected product=path")
        products[product_id.strip()] = path.strip().strip("/")
    return products


def _redact_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if sep and "@" in rest:
        return f"{scheme}://***@{rest.split('@', 1)[1]}"
    return url


def _load_env_file(path: Path) -> list[str]:
    """
    Load treesync variables from an env file.

    Accepts the files docker compose and shell wrappers use:
    - KEY=value, optionally prefixed with "export "
    - KEY="quoted value" / KEY='quoted value'
    - unquoted values with a trailing " # comment"
    - full-line comments and empty lines

    Variables already set in the environment win. An unknown TREESYNC_*
    key is most likely a typo and is reported, but still exported.

    Returns:
        Names of the variables taken from the file
    """
    logger.debug(f"Loading environment from {path}")
    applied = []

    with open(path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()

            # Skip empty lines and comments
            if not line or line.startswith("#"):
                continue

            if line.startswith("export "):
                line = line[len("export "):].lstrip()

            if "=" not in line:
                logger.warning(f"Invalid line {line_num} in {path}: no '=' found")
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()

            if value[:1] in ('"', "'") and value.endswith(value[0]) and len(value) > 1:
                value = value[1:-1]
            elif " #" in value:
                value = value.split(" #", 1)[0].rstrip()

            if key.startswith(ENV_PREFIX) and key not in KNOWN_VARIABLES:
                logger.warning(f"Unknown setting {key} on line {line_num} in {path}")

            # Environment variables take precedence over the file
            if key in os.environ:
                logger.debug(f"{key} already set, ignoring line {line_num}")
                continue

            os.environ[key] = value
            applied.append(key)

    logger.debug(f"Loaded {len(applied)} variables from {path}")
    return applied
