"""Exceptions raised by storage backends and the storage manager."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hybrid_storage.lib.storage.base import BackendKind, FileReference


class StorageError(Exception):
    """Base class for all storage failures."""


class StorageValidationError(StorageError, ValueError):
    """Raised before any I/O when a request is malformed or disallowed."""


class NotFoundError(StorageError):
    """The file does not exist in the backend(s) that were searched.

    When raised by the manager, ``searched_locations`` lists the backends in
    the order they were considered and ``primary_error`` holds the first
    non-miss failure seen along the way, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        ref: FileReference | None = None,
        searched_locations: list[BackendKind] | None = None,
        primary_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.ref = ref
        self.searched_locations = searched_locations or []
        self.primary_error = primary_error


class RemoteUnavailableError(StorageError):
    """The remote object store is unconfigured or unreachable."""


class RemoteOperationError(StorageError):
    """A remote call failed terminally or after exhausting its retries."""

    def __init__(self, message: str, *, code: str | None = None, attempts: int = 1) -> None:
        super().__init__(message)
        self.code = code
        self.attempts = attempts


class LocalOperationError(StorageError):
    """A filesystem call failed. Local failures are never retried."""


class CombinedFailureError(StorageError):
    """Both the primary upload and its local fallback failed."""

    def __init__(self, primary_error: BaseException, fallback_error: BaseException) -> None:
        super().__init__(
            "Upload failed on both primary and fallback storage. "
            f"Primary: {primary_error}, Fallback: {fallback_error}"
        )
        self.primary_error = primary_error
        self.fallback_error = fallback_error
