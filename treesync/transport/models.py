"""
Transport message models.

Fetch and Apply requests/replies as they travel over HTTP. Archive bytes
are carried base64-encoded inside the JSON bodies.
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import IntEnum


class StatusCode(IntEnum):
    """Reply status. Zero means success."""

    OK = 0
    ERROR = 1
    UNKNOWN_PRODUCT = 2
    CORRUPT_ARCHIVE = 3
    IO_ERROR = 4
    COMMIT_FAILED = 5
    BAD_REQUEST = 6

    @property
    def http_status(self) -> int:
        """HTTP status code used for this reply status."""
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    StatusCode.OK: 200,
    StatusCode.ERROR: 500,
    StatusCode.UNKNOWN_PRODUCT: 404,
    StatusCode.CORRUPT_ARCHIVE: 400,
    StatusCode.IO_ERROR: 500,
    StatusCode.COMMIT_FAILED: 500,
    StatusCode.BAD_REQUEST: 400,
}


class MessageError(ValueError):
    """Raised when a request or reply body is malformed."""
    pass


def encode_archive(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_archive(text: str) -> bytes:
    if not text:
        return b""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MessageError(f"Archive is not valid base64: {e}") from e


def _require_str(data: dict, key: str, default: str | None = None) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise MessageError(f"'{key}' must be a string")
    return value


@dataclass(frozen=True)
class FetchRequest:
    """Ask the server for a whole product subtree."""
    product_id: str
    commit_ref: str = "master"

    def to_dict(self) -> dict:
        return {"product_id": self.product_id, "commit_ref": self.commit_ref}

    @classmethod
    def from_dict(cls, data: dict) -> "FetchRequest":
        if not isinstance(data, dict):
            raise MessageError("Request body must be a JSON object")
        return cls(
            product_id=_require_str(data, "product_id"),
            commit_ref=_require_str(data, "commit_ref", "master"),
        )


@dataclass(frozen=True)
class FetchReply:
    """Full-subtree archive (empty on failure)."""
    status: int
    message: str
    archive: bytes = field(default=b"", repr=False)

    @property
    def ok(self) -> bool:
        return self.status == StatusCode.OK

    def to_dict(self) -> dict:
        return {
            "status": int(self.status),
            "message": self.message,
            "archive": encode_archive(self.archive),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FetchReply":
        if not isinstance(data, dict) or not isinstance(data.get("status"), int):
            raise MessageError("Reply must be a JSON object with an integer 'status'")
        return cls(
            status=data["status"],
            message=str(data.get("message", "")),
            archive=decode_archive(data.get("archive") or ""),
        )


@dataclass(frozen=True)
class ApplyRequest:
    """
    Changeset pushed by a client.

    Attributes:
        product_id: Target product
        commit_ref: Reference the change applies to
        archive: New and modified files (may be empty)
        deleted_paths: Relative paths removed on the client
    """
    product_id: str
    commit_ref: str = "master"
    archive: bytes = field(default=b"", repr=False)
    deleted_paths: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "commit_ref": self.commit_ref,
            "archive": encode_archive(self.archive),
            "deleted_paths": list(self.deleted_paths),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApplyRequest":
        if not isinstance(data, dict):
            raise MessageError("Request body must be a JSON object")

        deleted = data.get("deleted_paths") or []
        if not isinstance(deleted, list) or not all(isinstance(p, str) for p in deleted):
            raise MessageError("'deleted_paths' must be a list of strings")

        return cls(
            product_id=_require_str(data, "product_id"),
            commit_ref=_require_str(data, "commit_ref", "master"),
            archive=decode_archive(_require_str(data, "archive", "")),
            deleted_paths=tuple(deleted),
        )


@dataclass(frozen=True)
class ApplyReply:
    """Outcome of an Apply request."""
    status: int
    message: str

    @property
    def ok(self) -> bool:
        return self.status == StatusCode.OK

    def to_dict(self) -> dict:
        return {"status": int(self.status), "message": self.message}

    @classmethod
    def from_dict(cls, data: dict) -> "ApplyReply":
        if not isinstance(data, dict) or not isinstance(data.get("status"), int):
            raise MessageError("Reply must be a JSON object with an integer 'status'")
        return cls(status=data["status"], message=str(data.get("message", "")))
