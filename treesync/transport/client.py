"""
HTTP transport client.

Carries Fetch and Apply requests to a treesync server. Network failures,
timeouts and server-side (5xx) failures surface as TransportError so the
sync engine can decide whether to retry.
"""

import logging
from typing import Iterable, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models import (
    ApplyReply,
    ApplyRequest,
    FetchReply,
    FetchRequest,
    MessageError,
)

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised when a request could not be completed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.status = status


class TransportClient:
    """
    Client for the treesync HTTP API.

    Handles:
    - JSON encoding of requests and replies
    - Per-operation request timeouts
    - Connection retries for servers that are not up yet

    Request-level retries are not done here: the push loop owns that policy.

    Usage:
        with TransportClient("http://config-server:50051") as client:
            reply = client.fetch("am")
            if reply.ok:
                codec.unpack(reply.archive, "/var/config")
    """

    FETCH_ENDPOINT = "/v1/fetch"
    APPLY_ENDPOINT = "/v1/apply"

    def __init__(
        self,
        base_url: str,
        fetch_timeout: float = 120.0,
        apply_timeout: float = 10.0,
        connect_retries: int = 3,
    ):
        """
        Initialize the transport client.

        Args:
            base_url: Server URL (e.g., http://localhost:50051)
            fetch_timeout: Timeout in seconds for a full-subtree fetch
            apply_timeout: Timeout in seconds for pushing a changeset
            connect_retries: Connection attempts before giving up on a request
        """
        self.base_url = base_url.rstrip("/")
        self.fetch_timeout = fetch_timeout
        self.apply_timeout = apply_timeout

        self._session = requests.Session()

        # Only connection failures are retried; a request that reached the
        # server is never replayed at this level.
        retry_strategy = Retry(
            total=connect_retries,
            connect=connect_retries,
            read=0,
            status=0,
            other=0,
            backoff_factor=0.5,
            allowed_methods=None,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

        self._session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })

        logger.info(f"Transport client initialized for {self.base_url}")

    def __repr__(self) -> str:
        return f"TransportClient(base_url='{self.base_url}')"

    def _post(self, endpoint: str, payload: dict, timeout: float) -> dict:
        """
        POST a JSON payload and return the decoded reply body.

        4xx replies are returned to the caller, they carry a reply status.

        Raises:
            TransportError: On connection failure, timeout, 5xx, or an
                unreadable reply
        """
        url = urljoin(self.base_url + "/", endpoint.lstrip("/"))

        try:
            response = self._session.post(url, json=payload, timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise TransportError(f"Request to {url} timed out after {timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 500:
            message = body.get("message") if isinstance(body, dict) else response.reason
            status = body.get("status") if isinstance(body, dict) else None
            raise TransportError(
                f"Server error {response.status_code} from {url}: {message}",
                status_code=response.status_code,
                status=status,
            )

        if not isinstance(body, dict):
            raise TransportError(
                f"Unreadable reply from {url} (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        return body

    def fetch(self, product_id: str, commit_ref: str = "master") -> FetchReply:
        """
        Request the full archive for a product.

        Args:
            product_id: Product to fetch
            commit_ref: Reference to fetch

        Returns:
            FetchReply (check .ok)

        Raises:
            TransportError: If the request failed
        """
        request = FetchRequest(product_id=product_id, commit_ref=commit_ref)
        logger.debug(f"Fetch {product_id}@{commit_ref}")

        body = self._post(self.FETCH_ENDPOINT, request.to_dict(), self.fetch_timeout)
        try:
            reply = FetchReply.from_dict(body)
        except MessageError as e:
            raise TransportError(f"Malformed fetch reply: {e}") from e

        logger.info(
            f"Fetch {product_id}: status={reply.status} {reply.message} "
            f"({len(reply.archive)} bytes)"
        )
        return reply

    def apply(
        self,
        product_id: str,
        archive: bytes,
        deleted_paths: Iterable[str] = (),
        commit_ref: str = "master",
    ) -> ApplyReply:
        """
        Push a changeset to the server.

        Args:
            product_id: Product the changes belong to
            archive: New and modified files (may be empty)
            deleted_paths: Relative paths to remove on the server
            commit_ref: Reference the change applies to

        Returns:
            ApplyReply (check .ok)

        Raises:
            TransportError: If the request failed
        """
        request = ApplyRequest(
            product_id=product_id,
            commit_ref=commit_ref,
            archive=archive,
            deleted_paths=tuple(sorted(deleted_paths)),
        )
        logger.debug(
            f"Apply {product_id}@{commit_ref}: {len(archive)} archive bytes, "
            f"{len(request.deleted_paths)} deletions"
        )

        body = self._post(self.APPLY_ENDPOINT, request.to_dict(), self.apply_timeout)
        try:
            reply = ApplyReply.from_dict(body)
        except MessageError as e:
            raise TransportError(f"Malformed apply reply: {e}") from e

        logger.info(f"Apply {product_id}: status={reply.status} {reply.message}")
        return reply

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()
        logger.debug("Transport client session closed")

    def __enter__(self) -> "TransportClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
