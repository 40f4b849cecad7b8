"""
HTTP front end for the server-side sync engine.

Exposes Fetch and Apply as JSON POST endpoints on a threading HTTP server,
one thread per request. Failures are mapped to reply status codes; the
reply body always carries {"status", "message"}.
"""

import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from ..archive.codec import CorruptArchiveError
from ..archive.paths import UnsafePathError
from ..persistence.git import PersistenceError
from ..sync.server import SyncServer, UnknownProductError
from .models import (
    ApplyReply,
    ApplyRequest,
    FetchReply,
    FetchRequest,
    MessageError,
    StatusCode,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 50051
MAX_BODY_BYTES = 512 * 1024 * 1024


class SyncHTTPServer(ThreadingHTTPServer):
    """ThreadingHTTPServer carrying the SyncServer its handlers use."""

    daemon_threads = True

    def __init__(self, address, sync_server: SyncServer):
        self.sync_server = sync_server
        super().__init__(address, SyncRequestHandler)


class SyncRequestHandler(BaseHTTPRequestHandler):
    """Routes POST /v1/fetch and POST /v1/apply to the SyncServer."""

    server: SyncHTTPServer

    def do_POST(self):
        if self.path == "/v1/fetch":
            self._handle(self._fetch)
        elif self.path == "/v1/apply":
            self._handle(self._apply)
        else:
            self._json_response(
                {"status": int(StatusCode.BAD_REQUEST), "message": f"Unknown endpoint {self.path}"},
                status=404,
            )

    def do_GET(self):
        if self.path == "/ping":
            self._json_response({"status": int(StatusCode.OK), "message": "pong"})
        else:
            self._json_response(
                {"endpoints": ["POST /v1/fetch", "POST /v1/apply", "GET /ping"]},
                status=404,
            )

    def _handle(self, operation) -> None:
        try:
            body = self._read_json()
            reply = operation(body)
        except MessageError as e:
            logger.warning(f"Bad request to {self.path}: {e}")
            reply = _failure(self.path, StatusCode.BAD_REQUEST, str(e))
        except UnknownProductError as e:
            logger.warning(str(e))
            reply = _failure(self.path, StatusCode.UNKNOWN_PRODUCT, str(e))
        except (CorruptArchiveError, UnsafePathError) as e:
            logger.error(f"Rejected archive: {e}")
            reply = _failure(self.path, StatusCode.CORRUPT_ARCHIVE, str(e))
        except PersistenceError as e:
            logger.error(f"Changes applied but not committed: {e}")
            reply = _failure(self.path, StatusCode.COMMIT_FAILED, f"Commit failed: {e}")
        except OSError as e:
            logger.error(f"Filesystem error handling {self.path}: {e}")
            reply = _failure(self.path, StatusCode.IO_ERROR, str(e))
        except Exception as e:
            logger.error(f"Unexpected error handling {self.path}: {e}", exc_info=True)
            reply = _failure(self.path, StatusCode.ERROR, str(e))

        self._json_response(reply.to_dict(), status=StatusCode(reply.status).http_status)

    def _fetch(self, body: dict) -> FetchReply:
        request = FetchRequest.from_dict(body)
        data = self.server.sync_server.fetch(request.product_id, request.commit_ref)
        return FetchReply(status=StatusCode.OK, message="ok", archive=data)

    def _apply(self, body: dict) -> ApplyReply:
        request = ApplyRequest.from_dict(body)
        outcome = self.server.sync_server.apply(
            request.product_id,
            request.commit_ref,
            request.archive,
            request.deleted_paths,
        )
        return ApplyReply(status=StatusCode.OK, message=str(outcome))

    def _read_json(self) -> dict:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            raise MessageError("Invalid Content-Length") from None
        if length <= 0:
            raise MessageError("Empty request body")
        if length > MAX_BODY_BYTES:
            raise MessageError(f"Request body too large ({length} bytes)")

        raw = self.rfile.read(length)
        try:
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessageError(f"Body is not valid JSON: {e}") from e

    def _json_response(self, data: dict, status: int = 200):
        payload = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        logger.debug("HTTP: %s", format % args)


def _failure(path: str, status: StatusCode, message: str):
    if path == "/v1/fetch":
        return FetchReply(status=status, message=message)
    return ApplyReply(status=status, message=message)


def create_http_server(
    sync_server: SyncServer,
    host: str = "0.0.0.0",
    port: int = DEFAULT_PORT,
) -> SyncHTTPServer:
    """
    Bind an HTTP server for a SyncServer.

    Pass port=0 to bind an ephemeral port (see server.server_address).

    Raises:
        OSError: If the address cannot be bound
    """
    server = SyncHTTPServer((host, port), sync_server)
    logger.info(f"Server listening at http://{server.server_address[0]}:{server.server_address[1]}")
    return server
