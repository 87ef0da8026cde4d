"""Backends de stockage des certificats : S3 compatible (flotte) et filesystem local (dev)."""

from .base import KeyInfo, StorageBackend
from .errors import (
    ConditionalWriteUnsupportedError,
    KeyNotFoundError,
    LockCancelledError,
    LockTimeoutError,
    StorageError,
    StorageTransportError,
)
from .factory import create_storage, get_storage

__all__ = [
    "ConditionalWriteUnsupportedError",
    "KeyInfo",
    "KeyNotFoundError",
    "LockCancelledError",
    "LockTimeoutError",
    "StorageBackend",
    "StorageError",
    "StorageTransportError",
    "create_storage",
    "get_storage",
]
