"""Change persistence module."""

from .git import (
    BackgroundRecorder,
    ChangeRecorder,
    GitRecorder,
    NullRecorder,
    PersistenceError,
)

__all__ = [
    "BackgroundRecorder",
    "ChangeRecorder",
    "GitRecorder",
    "NullRecorder",
    "PersistenceError",
]
