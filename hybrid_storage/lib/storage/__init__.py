"""Hybrid R2/local file storage."""

from hybrid_storage.lib.storage.base import (
    BackendKind,
    FileClass,
    FileReference,
    ReadOptions,
    StorageBackend,
    StorageMode,
    UploadOptions,
    generate_filename,
)
from hybrid_storage.lib.storage.errors import (
    CombinedFailureError,
    NotFoundError,
    RemoteUnavailableError,
    StorageError,
    StorageValidationError,
)
from hybrid_storage.lib.storage.local import LocalStorageBackend
from hybrid_storage.lib.storage.manager import StorageManager, create_storage_manager

__all__ = [
    "BackendKind",
    "CombinedFailureError",
    "FileClass",
    "FileReference",
    "LocalStorageBackend",
    "NotFoundError",
    "ReadOptions",
    "RemoteUnavailableError",
    "StorageBackend",
    "StorageError",
    "StorageManager",
    "StorageMode",
    "StorageValidationError",
    "UploadOptions",
    "create_storage_manager",
    "generate_filename",
]
