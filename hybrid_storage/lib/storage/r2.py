"""Cloudflare R2 (S3-compatible) storage backend."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, ParamValidationError

from hybrid_storage.lib.storage.base import (
    AVATAR_FILENAME,
    DEFAULT_CONTENT_TYPE,
    BackendKind,
    DeleteAck,
    FileContent,
    FileMetadata,
    FileReference,
    StorageResult,
)
from hybrid_storage.lib.storage.errors import (
    NotFoundError,
    RemoteOperationError,
    RemoteUnavailableError,
    StorageError,
)
from hybrid_storage.lib.storage.retry import RetryOutcome, RetryPolicy, retry_with_backoff

if TYPE_CHECKING:
    from hybrid_storage.config import R2Config

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
TERMINAL_CODES = NOT_FOUND_CODES | {"AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch"}

PROBE_KEY = "connection-test"
AVATAR_CACHE_CONTROL = "public, max-age=86400"
UPLOAD_CACHE_CONTROL = "public, max-age=3600"

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def error_code(exc: BaseException) -> str | None:
    """Return the S3 error code carried by a botocore ``ClientError``."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_not_found(exc: BaseException) -> bool:
    return error_code(exc) in NOT_FOUND_CODES


def is_retryable(exc: BaseException) -> bool:
    """Missing keys, credential problems and rejected request parameters fail
    fast, everything else is retried."""
    if isinstance(exc, ParamValidationError):
        return False
    return error_code(exc) not in TERMINAL_CODES


def metadata_value(value: Any) -> str:
    """S3 metadata must be ASCII; percent-encode anything else."""
    text = str(value)
    return text if text.isascii() else quote(text, safe="")


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", filename)


def object_key(ref: FileReference) -> str:
    """Map a reference to its key inside the owner's ``user-{id}/`` prefix."""
    name = AVATAR_FILENAME if ref.is_avatar else sanitize_filename(ref.filename)
    return f"user-{ref.owner_id}/{name}"


class R2StorageBackend:
    """Store files in an R2 bucket under a per-owner key prefix.

    put/get/head/delete run through :func:`retry_with_backoff`; the botocore
    client's own retries are disabled so the attempt budget is ours alone.
    An unconfigured backend raises ``RemoteUnavailableError`` on every call
    and reports unhealthy from :meth:`probe`.
    """

    kind = BackendKind.REMOTE

    def __init__(
        self,
        config: R2Config,
        retry_policy: RetryPolicy | None = None,
        *,
        chunk_size: int = 64 * 1024,
        session: aioboto3.Session | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._retry_policy = retry_policy or RetryPolicy()
        self._chunk_size = chunk_size
        self._session = session or aioboto3.Session()
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return self._config.is_configured

    @property
    def bucket(self) -> str:
        return self._config.bucket

    def _client_kwargs(self) -> dict:
        return {
            "region_name": self._config.region,
            "endpoint_url": self._config.resolved_endpoint,
            "aws_access_key_id": self._config.access_key_id,
            "aws_secret_access_key": self._config.secret_access_key,
            "config": BotoConfig(
                connect_timeout=self._config.connect_timeout,
                read_timeout=self._config.read_timeout,
                retries={"total_max_attempts": 1},
            ),
        }

    def _client(self):
        if not self.is_configured:
            raise RemoteUnavailableError("R2 storage is not configured")
        return self._session.client("s3", **self._client_kwargs())

    async def put(
        self,
        ref: FileReference,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
    ) -> StorageResult:
        key = object_key(ref)
        stored_at = datetime.now(UTC)
        object_metadata = {
            "owner-id": ref.owner_id,
            "original-filename": ref.filename,
            "upload-date": stored_at.isoformat(),
            "file-class": ref.file_class.value,
        }
        object_metadata.update(metadata or {})
        object_metadata = {metadata_value(k): metadata_value(v) for k, v in object_metadata.items()}
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "CacheControl": AVATAR_CACHE_CONTROL if ref.is_avatar else UPLOAD_CACHE_CONTROL,
            "Metadata": object_metadata,
        }

        logger.info("Uploading %s to R2 as %s (%d bytes)", ref, key, len(data))
        async with self._client() as s3:
            response = await self._call("put", ref, lambda: s3.put_object(**params))

        return StorageResult(
            success=True,
            ref=ref,
            backend_used=self.kind,
            location=key,
            size=len(data),
            content_type=content_type,
            stored_at=stored_at,
            etag=response.get("ETag"),
            version_id=response.get("VersionId"),
            metadata=object_metadata,
        )

    async def get(self, ref: FileReference) -> FileContent:
        key = object_key(ref)

        async with self._client() as s3:

            async def fetch() -> tuple[dict, bytes]:
                response = await s3.get_object(Bucket=self.bucket, Key=key)
                return response, await response["Body"].read()

            response, data = await self._call("get", ref, fetch)

        logger.info("Downloaded %s from R2 (%d bytes)", key, len(data))
        return FileContent(metadata=self._metadata(ref, key, response), data=data)

    async def get_stream(self, ref: FileReference) -> FileContent:
        key = object_key(ref)
        stack = AsyncExitStack()
        try:
            s3 = await stack.enter_async_context(self._client())
            response = await self._call(
                "get", ref, lambda: s3.get_object(Bucket=self.bucket, Key=key)
            )
        except BaseException:
            await stack.aclose()
            raise

        logger.info("Streaming %s from R2", key)
        return FileContent(
            metadata=self._metadata(ref, key, response),
            stream=self._iter_body(response["Body"], stack),
            closer=stack.aclose,
        )

    async def head(self, ref: FileReference) -> FileMetadata | None:
        key = object_key(ref)
        async with self._client() as s3:
            try:
                response = await self._call(
                    "head", ref, lambda: s3.head_object(Bucket=self.bucket, Key=key)
                )
            except NotFoundError:
                return None
        return self._metadata(ref, key, response)

    async def delete(self, ref: FileReference) -> DeleteAck:
        """Delete the object, raising ``NotFoundError`` if it was never there.

        S3 deletes succeed silently for missing keys, so existence is checked
        first to let callers tell an absent object from a removed one.
        """
        key = object_key(ref)
        async with self._client() as s3:
            await self._call("head", ref, lambda: s3.head_object(Bucket=self.bucket, Key=key))
            response = await self._call(
                "delete", ref, lambda: s3.delete_object(Bucket=self.bucket, Key=key)
            )

        logger.info("Deleted %s from R2", key)
        return DeleteAck(
            ref=ref,
            backend=self.kind,
            existed=True,
            deleted_at=datetime.now(UTC),
            version_id=response.get("VersionId"),
        )

    async def probe(self) -> bool:
        """Check connectivity and credentials with a HEAD on a sentinel key.

        A "not found" answer proves the bucket is reachable and the
        credentials are accepted, so it counts as healthy.
        """
        if not self.is_configured:
            logger.warning("Cannot probe R2: missing %s", ", ".join(self._config.missing_fields))
            return False

        try:
            async with self._client() as s3:
                await s3.head_object(Bucket=self.bucket, Key=PROBE_KEY)
        except ClientError as exc:
            if is_not_found(exc):
                return True
            logger.error("R2 probe failed (%s): %s", error_code(exc), exc)
            return False
        except Exception as exc:
            logger.error("R2 probe failed: %s", exc)
            return False
        return True

    def status(self) -> dict:
        return {
            "configured": self.is_configured,
            "bucket": self.bucket or None,
            "endpoint": self._config.resolved_endpoint if self.is_configured else None,
        }

    # -- internal helpers --

    async def _call(
        self,
        action: str,
        ref: FileReference,
        operation: Callable[[], Awaitable[Any]],
    ) -> Any:
        outcome = await retry_with_backoff(
            operation,
            policy=self._retry_policy,
            is_retryable=is_retryable,
            description=f"R2 {action} {object_key(ref)}",
            sleep=self._sleep,
        )
        if outcome.ok:
            return outcome.value
        raise self._translate(action, ref, outcome) from outcome.error

    def _translate(self, action: str, ref: FileReference, outcome: RetryOutcome) -> StorageError:
        exc = outcome.error
        if is_not_found(exc):
            logger.debug("%s not found in R2", object_key(ref))
            return NotFoundError(f"File not found: {ref.filename}", ref=ref)

        code = error_code(exc)
        logger.error(
            "R2 %s failed for %s after %d attempt(s) (%s): %s",
            action,
            object_key(ref),
            outcome.attempts,
            code or type(exc).__name__,
            exc,
        )
        return RemoteOperationError(
            f"R2 {action} failed for {object_key(ref)}: {exc}",
            code=code,
            attempts=outcome.attempts,
        )

    def _metadata(self, ref: FileReference, key: str, response: dict) -> FileMetadata:
        return FileMetadata(
            ref=ref,
            backend=self.kind,
            location=key,
            size=response.get("ContentLength", 0),
            content_type=response.get("ContentType"),
            last_modified=response.get("LastModified"),
            etag=response.get("ETag"),
            custom=dict(response.get("Metadata") or {}),
        )

    async def _iter_body(self, body, stack: AsyncExitStack) -> AsyncIterator[bytes]:
        try:
            while chunk := await body.read(self._chunk_size):
                yield chunk
        finally:
            await stack.aclose()
