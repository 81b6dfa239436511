"""Storage backend protocol and common types."""

from __future__ import annotations

import secrets
import string
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from hybrid_storage.lib.storage.errors import StorageValidationError

AVATAR_FILENAME = "avatar.png"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".pdf": "application/pdf",
}
_FILENAME_ALPHABET = string.ascii_letters + string.digits + "-_"


class FileClass(str, Enum):
    AVATAR = "avatar"
    UPLOAD = "upload"


class BackendKind(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


class StorageMode(str, Enum):
    HYBRID = "hybrid"
    REMOTE_ONLY = "remote-only"
    LOCAL_ONLY = "local-only"


class DeleteStatus(str, Enum):
    DELETED = "deleted"
    ABSENT = "absent"
    FAILED = "failed"
    SKIPPED = "skipped"


def _is_safe_segment(value: str) -> bool:
    """Reject anything that could escape a directory when used as a path segment."""
    return not (
        "/" in value or "\\" in value or "\x00" in value or value in (".", "..")
    )


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseException):
        return str(value)
    if isinstance(value, _Serializable):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


class _Serializable:
    """Mixin giving result dataclasses a JSON-friendly ``to_dict``.

    Raw payloads (``bytes`` and streams) are left out.
    """

    def to_dict(self) -> dict[str, Any]:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, (bytes, bytearray)) or f.name == "stream":
                continue
            out[f.name] = _serialize(value)
        return out


@dataclass(frozen=True)
class FileReference(_Serializable):
    """Identifies one stored object.

    Avatars always use :data:`AVATAR_FILENAME`, whatever name the caller
    passed, so each owner has a single avatar per backend.
    """

    owner_id: str
    filename: str
    file_class: FileClass = FileClass.UPLOAD

    def __post_init__(self) -> None:
        if self.owner_id is None or str(self.owner_id).strip() == "":
            raise StorageValidationError("Owner ID is required")
        object.__setattr__(self, "owner_id", str(self.owner_id))
        if not _is_safe_segment(self.owner_id):
            raise StorageValidationError(f"Invalid owner ID: {self.owner_id!r}")
        object.__setattr__(self, "file_class", FileClass(self.file_class))

        if self.file_class is FileClass.AVATAR:
            object.__setattr__(self, "filename", AVATAR_FILENAME)
            return

        if not self.filename:
            raise StorageValidationError("Filename is required")
        if not _is_safe_segment(self.filename):
            raise StorageValidationError(f"Invalid filename: {self.filename!r}")

    @classmethod
    def avatar(cls, owner_id: str) -> FileReference:
        return cls(owner_id, AVATAR_FILENAME, FileClass.AVATAR)

    @property
    def is_avatar(self) -> bool:
        return self.file_class is FileClass.AVATAR

    def __str__(self) -> str:
        return f"{self.owner_id}:{self.filename}:{self.file_class.value}"


@dataclass
class ErrorInfo(_Serializable):
    """Serializable summary of an exception attached to a result."""

    kind: str
    message: str
    code: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        return cls(kind=type(exc).__name__, message=str(exc), code=getattr(exc, "code", None))


@dataclass
class FileMetadata(_Serializable):
    """Backend-reported metadata for a stored file."""

    ref: FileReference
    backend: BackendKind
    location: str
    size: int
    content_type: str | None = None
    last_modified: datetime | None = None
    etag: str | None = None
    custom: dict[str, str] = field(default_factory=dict)


@dataclass
class FileContent:
    """A file read from a backend: either buffered ``data`` or a ``stream``.

    A stream may hold a connection open until it is exhausted. Callers that
    stop early or never iterate must call :meth:`aclose`.
    """

    metadata: FileMetadata
    data: bytes | None = None
    stream: AsyncIterator[bytes] | None = None
    closer: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)

    async def aclose(self) -> None:
        """Release the stream and anything it holds open. Safe to call twice."""
        aclose = getattr(self.stream, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.closer is not None:
            await self.closer()


@dataclass
class DeleteAck(_Serializable):
    """Acknowledgement for a single-backend delete."""

    ref: FileReference
    backend: BackendKind
    existed: bool
    deleted_at: datetime
    version_id: str | None = None
    note: str | None = None


@dataclass
class StorageResult(_Serializable):
    """Outcome of a write, tagged with the backend that served it."""

    success: bool
    ref: FileReference
    backend_used: BackendKind
    location: str
    size: int
    content_type: str
    stored_at: datetime
    fallback_used: bool = False
    primary_error: ErrorInfo | None = None
    reason: str | None = None
    etag: str | None = None
    version_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ReadResult(_Serializable):
    """Outcome of a read from the manager."""

    content: FileContent
    backend_used: BackendKind
    fallback_used: bool = False
    primary_error: ErrorInfo | None = None

    @property
    def data(self) -> bytes | None:
        return self.content.data

    @property
    def stream(self) -> AsyncIterator[bytes] | None:
        return self.content.stream

    async def aclose(self) -> None:
        await self.content.aclose()

    @property
    def metadata(self) -> FileMetadata:
        return self.content.metadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_used": self.backend_used.value,
            "fallback_used": self.fallback_used,
            "primary_error": _serialize(self.primary_error),
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class MetadataResult(_Serializable):
    """Outcome of a metadata-only fetch from the manager."""

    metadata: FileMetadata
    backend_used: BackendKind
    fallback_used: bool = False
    primary_error: ErrorInfo | None = None


@dataclass
class ExistenceResult(_Serializable):
    exists: bool
    backend: BackendKind | None = None
    metadata: FileMetadata | None = None
    searched_locations: list[BackendKind] = field(default_factory=list)


@dataclass
class DeleteOutcome(_Serializable):
    """What happened on one backend during a manager-level delete."""

    backend: BackendKind
    status: DeleteStatus
    note: str | None = None
    error: ErrorInfo | None = None
    version_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status in (DeleteStatus.DELETED, DeleteStatus.ABSENT)


@dataclass
class DeleteResult(_Serializable):
    success: bool
    ref: FileReference
    deleted_at: datetime
    outcomes: list[DeleteOutcome] = field(default_factory=list)

    def outcome_for(self, backend: BackendKind) -> DeleteOutcome | None:
        for outcome in self.outcomes:
            if outcome.backend is backend:
                return outcome
        return None


@dataclass
class MigrationResult(_Serializable):
    success: bool
    ref: FileReference
    migrated_at: datetime
    source: FileMetadata
    remote: StorageResult
    local_deleted: bool = False
    local_delete_error: ErrorInfo | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UploadOptions:
    """Recognized options for :meth:`StorageManager.upload_file`."""

    file_class: FileClass = FileClass.UPLOAD
    content_type: str = DEFAULT_CONTENT_TYPE
    metadata: dict[str, str] = field(default_factory=dict)
    force_local: bool = False
    rename: bool = False


@dataclass(frozen=True)
class ReadOptions:
    """Recognized options for :meth:`StorageManager.get_file`."""

    file_class: FileClass = FileClass.UPLOAD
    return_stream: bool = False
    force_local: bool = False


@runtime_checkable
class StorageBackend(Protocol):
    """Interface shared by the remote and local backends.

    ``get``/``get_stream`` raise ``NotFoundError`` for a missing file, ``head``
    returns ``None`` instead.
    """

    kind: BackendKind

    async def put(
        self,
        ref: FileReference,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
    ) -> StorageResult:
        """Store data for the reference, overwriting any previous copy."""
        ...

    async def get(self, ref: FileReference) -> FileContent:
        """Read the whole file into memory."""
        ...

    async def get_stream(self, ref: FileReference) -> FileContent:
        """Open the file for chunked, non-buffered reading."""
        ...

    async def head(self, ref: FileReference) -> FileMetadata | None:
        """Return metadata, or ``None`` if the file does not exist."""
        ...

    async def delete(self, ref: FileReference) -> DeleteAck:
        """Remove the file."""
        ...


def infer_content_type(filename: str) -> str:
    """Guess a MIME type from the extension of *filename*."""
    lowered = filename.lower()
    for ext, content_type in _CONTENT_TYPES.items():
        if lowered.endswith(ext):
            return content_type
    return DEFAULT_CONTENT_TYPE


def generate_filename(original_filename: str, length: int = 11) -> str:
    """Return a random filename that keeps the extension of *original_filename*."""
    token = "".join(secrets.choice(_FILENAME_ALPHABET) for _ in range(length))
    extension = original_filename.rsplit(".", 1)[-1] if "." in original_filename else ""
    return f"{token}.{extension}" if extension else token
