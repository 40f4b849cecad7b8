"""
Tests for the HTTP transport: message models, client and server together.
"""

import socket
import threading

import pytest
import requests

from treesync.sync.server import SyncServer
from treesync.transport.client import TransportClient, TransportError
from treesync.transport.models import (
    ApplyReply,
    ApplyRequest,
    FetchReply,
    FetchRequest,
    MessageError,
    StatusCode,
)
from treesync.transport.server import create_http_server


@pytest.fixture
def http_server(sync_server: SyncServer):
    """Serve sync_server on an ephemeral port for the duration of a test."""
    server = create_http_server(sync_server, host="127.0.0.1", port=0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture
def base_url(http_server) -> str:
    host, port = http_server.server_address[:2]
    return f"http://{host}:{port}"


@pytest.fixture
def transport(base_url: str):
    client = TransportClient(base_url, fetch_timeout=10, apply_timeout=10, connect_retries=0)
    yield client
    client.close()


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestStatusCode:
    """Tests for reply status codes."""

    def test_http_mapping(self):
        assert StatusCode.OK.http_status == 200
        assert StatusCode.UNKNOWN_PRODUCT.http_status == 404
        assert StatusCode.CORRUPT_ARCHIVE.http_status == 400
        assert StatusCode.COMMIT_FAILED.http_status == 500


class TestMessages:
    """Tests for wire message parsing."""

    def test_apply_request_from_dict(self):
        request = ApplyRequest.from_dict({
            "product_id": "am",
            "archive": "aGVsbG8=",
            "deleted_paths": ["a", "b"],
        })

        assert request.archive == b"hello"
        assert request.commit_ref == "master"
        assert request.deleted_paths == ("a", "b")

    def test_apply_request_to_dict_encodes_archive(self):
        body = ApplyRequest(product_id="am", archive=b"hello").to_dict()
        assert body["archive"] == "aGVsbG8="
        assert body["deleted_paths"] == []

    def test_missing_product_rejected(self):
        with pytest.raises(MessageError, match="product_id"):
            FetchRequest.from_dict({"commit_ref": "master"})

    def test_invalid_base64_rejected(self):
        with pytest.raises(MessageError, match="base64"):
            ApplyRequest.from_dict({"product_id": "am", "archive": "not base64!"})

    def test_deleted_paths_must_be_strings(self):
        with pytest.raises(MessageError):
            ApplyRequest.from_dict({"product_id": "am", "deleted_paths": [1, 2]})

    def test_reply_requires_status(self):
        with pytest.raises(MessageError):
            FetchReply.from_dict({"message": "ok"})

    def test_reply_ok(self):
        assert ApplyReply(status=0, message="").ok is True
        assert ApplyReply(status=StatusCode.IO_ERROR, message="").ok is False


class TestRoundTrip:
    """End-to-end tests over a real HTTP server."""

    def test_fetch(self, transport, codec):
        reply = transport.fetch("am")

        assert reply.ok
        assert [e.path for e in codec.read_entries(reply.archive)] == ["boot.json", "realms/root.json"]

    def test_fetch_unknown_product(self, transport):
        reply = transport.fetch("ds")

        assert reply.status == StatusCode.UNKNOWN_PRODUCT
        assert reply.archive == b""
        assert "ds" in reply.message

    def test_apply(self, transport, server_root, source_dir, codec, recorder, write_file):
        write_file(source_dir, "realms/alpha.json", b"alpha")
        archive = codec.pack(str(source_dir), ["realms/alpha.json"])

        reply = transport.apply("am", archive, ["boot.json"], commit_ref="release")

        assert reply.ok
        assert (server_root / "products/am/realms/alpha.json").read_bytes() == b"alpha"
        assert not (server_root / "products/am/boot.json").exists()
        assert recorder.messages == ["am@release: 1 updated, 1 deleted"]

    def test_apply_corrupt_archive(self, transport):
        reply = transport.apply("am", b"garbage" * 200)
        assert reply.status == StatusCode.CORRUPT_ARCHIVE

    def test_apply_unsafe_deletion(self, transport, server_root):
        reply = transport.apply("am", b"", ["../idm/../../escape"])

        assert reply.status == StatusCode.CORRUPT_ARCHIVE

    def test_commit_failure_is_server_error(self, server_root, failing_recorder, source_dir, codec, write_file):
        """Test that a failed commit surfaces as a retryable transport error."""
        sync_server = SyncServer(str(server_root), {"am": "products/am"}, recorder=failing_recorder)
        server = create_http_server(sync_server, host="127.0.0.1", port=0)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            host, port = server.server_address[:2]
            with TransportClient(f"http://{host}:{port}", connect_retries=0) as client:
                with pytest.raises(TransportError) as excinfo:
                    client.apply("am", b"")
        finally:
            server.shutdown()
            server.server_close()
            thread.join(timeout=5)

        assert excinfo.value.status_code == 500
        assert excinfo.value.status == StatusCode.COMMIT_FAILED

    def test_malformed_body(self, base_url):
        response = requests.post(f"{base_url}/v1/apply", data=b"{not json", timeout=5)

        assert response.status_code == 400
        assert response.json()["status"] == StatusCode.BAD_REQUEST

    def test_unknown_endpoint(self, base_url):
        response = requests.post(f"{base_url}/v1/nothing", json={}, timeout=5)
        assert response.status_code == 404

    def test_ping(self, base_url):
        assert requests.get(f"{base_url}/ping", timeout=5).json()["message"] == "pong"


class TestTransportErrors:
    """Tests for client-side failure handling."""

    def test_connection_refused(self):
        client = TransportClient(f"http://127.0.0.1:{_unused_port()}", connect_retries=0)

        with pytest.raises(TransportError, match="failed"):
            client.fetch("am")

        client.close()

    def test_base_url_trailing_slash(self):
        client = TransportClient("http://localhost:50051/")
        assert client.base_url == "http://localhost:50051"
        client.close()
