"""Client and server sync engines."""

from .engine import SyncClient, RetryPolicy, SyncError
from .server import SyncServer, UnknownProductError

__all__ = ["SyncClient", "RetryPolicy", "SyncError", "SyncServer", "UnknownProductError"]
