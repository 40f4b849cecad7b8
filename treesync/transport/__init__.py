"""HTTP transport module."""

from .client import TransportClient, TransportError
from .models import ApplyReply, ApplyRequest, FetchReply, FetchRequest, StatusCode

__all__ = [
    "TransportClient",
    "TransportError",
    "ApplyReply",
    "ApplyRequest",
    "FetchReply",
    "FetchRequest",
    "StatusCode",
]
