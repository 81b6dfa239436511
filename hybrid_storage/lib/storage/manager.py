"""Storage manager: picks a backend per request and degrades to local storage.

Uploads go to R2 when the configured mode and live availability allow it,
falling back to the local filesystem in hybrid mode. Reads search the
backends in an order biased by a location cache. Deletes are attempted on
both backends so no copy is orphaned.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from hybrid_storage.lib.hooks import (
    AFTER_FILE_DELETE,
    AFTER_FILE_MIGRATE,
    AFTER_FILE_UPLOAD,
    STORAGE_FALLBACK_USED,
    STORAGE_OPERATION_FAILED,
    UPLOAD_METADATA,
    HookRegistry,
    hooks,
)
from hybrid_storage.lib.observability import span, warning
from hybrid_storage.lib.storage.availability import AvailabilityMonitor
from hybrid_storage.lib.storage.base import (
    AVATAR_FILENAME,
    DEFAULT_CONTENT_TYPE,
    BackendKind,
    DeleteOutcome,
    DeleteResult,
    DeleteStatus,
    ErrorInfo,
    ExistenceResult,
    FileClass,
    FileReference,
    MetadataResult,
    MigrationResult,
    ReadOptions,
    ReadResult,
    StorageBackend,
    StorageMode,
    StorageResult,
    UploadOptions,
    generate_filename,
    infer_content_type,
)
from hybrid_storage.lib.storage.errors import (
    CombinedFailureError,
    NotFoundError,
    RemoteUnavailableError,
    StorageValidationError,
)
from hybrid_storage.lib.storage.local import LocalStorageBackend
from hybrid_storage.lib.storage.location_cache import LocationCache

if TYPE_CHECKING:
    from hybrid_storage.config import StorageConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageManager:
    """Orchestrates the remote and local backends for one process.

    Build one instance at startup (see :func:`create_storage_manager`) and
    hand it to whatever serves requests. It owns the availability monitor
    and the location cache for its lifetime.
    """

    def __init__(
        self,
        local: StorageBackend,
        remote: StorageBackend | None = None,
        *,
        mode: StorageMode = StorageMode.HYBRID,
        availability: AvailabilityMonitor | None = None,
        location_cache: LocationCache | None = None,
        hook_registry: HookRegistry | None = None,
        max_upload_size: int | None = None,
        max_avatar_size: int | None = None,
    ) -> None:
        self._local = local
        self._remote = remote
        self.mode = mode
        self._hooks = hook_registry if hook_registry is not None else hooks
        self.availability = availability or AvailabilityMonitor(
            getattr(remote, "probe", None), hook_registry=self._hooks
        )
        self.location_cache = location_cache if location_cache is not None else LocationCache()
        self.max_upload_size = max_upload_size
        self.max_avatar_size = max_avatar_size

    # -- mode & backend selection --

    def effective_mode(self) -> StorageMode:
        """Configured mode, degraded to local-only while R2 is known to be down."""
        if not self.availability.cached and self.mode is not StorageMode.LOCAL_ONLY:
            return StorageMode.LOCAL_ONLY
        return self.mode

    def _backend(self, kind: BackendKind) -> StorageBackend:
        if kind is BackendKind.LOCAL:
            return self._local
        if self._remote is None:
            raise RemoteUnavailableError("R2 storage is not configured")
        return self._remote

    async def _select_upload_backend(self, force_local: bool) -> tuple[BackendKind, str]:
        if force_local:
            return BackendKind.LOCAL, "forced_local"
        if self.mode is StorageMode.LOCAL_ONLY:
            return BackendKind.LOCAL, "config_local_only"

        available = await self.availability.is_available()
        if self.mode is StorageMode.REMOTE_ONLY:
            if not available:
                raise RemoteUnavailableError(
                    "R2 storage is not available and local storage is disabled"
                )
            return BackendKind.REMOTE, "config_remote_only"

        if available:
            return BackendKind.REMOTE, "hybrid_remote_available"
        return BackendKind.LOCAL, "hybrid_remote_unavailable"

    def _search_order(self, ref: FileReference, force_local: bool) -> list[BackendKind]:
        if force_local:
            return [BackendKind.LOCAL]

        hint = self.location_cache.lookup(ref)
        if self.mode is StorageMode.LOCAL_ONLY:
            return [BackendKind.LOCAL]
        if self.mode is StorageMode.REMOTE_ONLY:
            return [BackendKind.REMOTE]
        if hint is BackendKind.LOCAL:
            return [BackendKind.LOCAL, BackendKind.REMOTE]
        return [BackendKind.REMOTE, BackendKind.LOCAL]

    # -- uploads --

    async def upload_file(
        self,
        owner_id: str,
        data: bytes,
        filename: str,
        options: UploadOptions | None = None,
    ) -> StorageResult:
        options = options or UploadOptions()
        if options.rename and options.file_class is FileClass.UPLOAD:
            filename = generate_filename(filename)
        ref = FileReference(owner_id, filename, options.file_class)
        self._validate_payload(ref, data)
        metadata = await self._filter_metadata(ref, options.metadata)

        with span("storage.upload", ref=str(ref), size=len(data)):
            logger.info(
                "Starting upload of %s (%d bytes, %s, force_local=%s)",
                ref,
                len(data),
                options.content_type,
                options.force_local,
            )
            primary, reason = await self._select_upload_backend(options.force_local)
            logger.debug("Primary backend for %s is %s (%s)", ref, primary.value, reason)

            try:
                result = await self._backend(primary).put(ref, data, options.content_type, metadata)
            except Exception as exc:
                return await self._upload_fallback(ref, data, options, metadata, primary, exc)

            result.reason = reason
            result.fallback_used = False
            self.location_cache.record(ref, primary)
            logger.info("Uploaded %s to %s storage", ref, primary.value)
            await self._emit(AFTER_FILE_UPLOAD, result)
            return result

    async def _upload_fallback(
        self,
        ref: FileReference,
        data: bytes,
        options: UploadOptions,
        metadata: dict[str, str],
        primary: BackendKind,
        primary_error: Exception,
    ) -> StorageResult:
        if primary is not BackendKind.REMOTE or self.mode is not StorageMode.HYBRID:
            logger.error(
                "Upload of %s to %s failed with no fallback available (mode=%s): %s",
                ref,
                primary.value,
                self.mode.value,
                primary_error,
            )
            await self._emit(
                STORAGE_OPERATION_FAILED, operation="upload", backend=primary, error=primary_error
            )
            raise primary_error

        logger.warning("R2 upload of %s failed, falling back to local storage: %s", ref, primary_error)
        try:
            result = await self._local.put(ref, data, options.content_type, metadata)
        except Exception as fallback_error:
            logger.error(
                "Fallback upload of %s also failed. Primary: %s, fallback: %s",
                ref,
                primary_error,
                fallback_error,
            )
            await self._emit(
                STORAGE_OPERATION_FAILED,
                operation="upload",
                backend=BackendKind.REMOTE,
                error=primary_error,
            )
            await self._emit(
                STORAGE_OPERATION_FAILED,
                operation="upload",
                backend=BackendKind.LOCAL,
                error=fallback_error,
            )
            raise CombinedFailureError(primary_error, fallback_error) from fallback_error

        warning("R2 upload failed, stored locally", ref=ref, error=str(primary_error))
        result.reason = "fallback_from_remote"
        result.fallback_used = True
        result.primary_error = ErrorInfo.from_exception(primary_error)
        self.location_cache.record(ref, BackendKind.LOCAL)
        await self._emit(
            STORAGE_FALLBACK_USED,
            operation="upload",
            primary=BackendKind.REMOTE,
            fallback=BackendKind.LOCAL,
            error=primary_error,
        )
        await self._emit(AFTER_FILE_UPLOAD, result)
        return result

    async def upload_avatar(
        self,
        owner_id: str,
        data: bytes,
        content_type: str = "image/png",
        *,
        force_local: bool = False,
    ) -> StorageResult:
        options = UploadOptions(
            file_class=FileClass.AVATAR,
            content_type=content_type,
            metadata={
                "file-type": "avatar",
                "processed-date": datetime.now(UTC).isoformat(),
            },
            force_local=force_local,
        )
        return await self.upload_file(owner_id, data, AVATAR_FILENAME, options)

    async def upload_regular_file(
        self,
        owner_id: str,
        data: bytes,
        filename: str,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
        *,
        force_local: bool = False,
        rename: bool = False,
    ) -> StorageResult:
        options = UploadOptions(
            file_class=FileClass.UPLOAD,
            content_type=content_type,
            metadata={"file-type": "upload", **(metadata or {})},
            force_local=force_local,
            rename=rename,
        )
        return await self.upload_file(owner_id, data, filename, options)

    def _validate_payload(self, ref: FileReference, data: bytes) -> None:
        if data is None:
            raise StorageValidationError("File data is required")
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise StorageValidationError(f"File data must be bytes, got {type(data).__name__}")

        limit = self.max_avatar_size if ref.is_avatar else self.max_upload_size
        if limit is not None and len(data) > limit:
            raise StorageValidationError(
                f"{ref.file_class.value.capitalize()} is {len(data)} bytes, limit is {limit}"
            )

    # -- reads --

    async def get_file(
        self,
        owner_id: str,
        filename: str,
        options: ReadOptions | None = None,
    ) -> ReadResult:
        options = options or ReadOptions()
        ref = FileReference(owner_id, filename, options.file_class)
        order = self._search_order(ref, options.force_local)

        async def fetch(backend: StorageBackend):
            if options.return_stream:
                return await backend.get_stream(ref)
            return await backend.get(ref)

        with span("storage.read", ref=str(ref), stream=options.return_stream):
            content, kind, fallback_used, primary_error = await self._search(ref, order, "read", fetch)

        logger.info(
            "Read %s from %s storage (fallback_used=%s, stream=%s)",
            ref,
            kind.value,
            fallback_used,
            options.return_stream,
        )
        return ReadResult(
            content=content,
            backend_used=kind,
            fallback_used=fallback_used,
            primary_error=primary_error,
        )

    async def get_file_stream(
        self,
        owner_id: str,
        filename: str,
        options: ReadOptions | None = None,
    ) -> ReadResult:
        options = dataclasses.replace(options or ReadOptions(), return_stream=True)
        return await self.get_file(owner_id, filename, options)

    async def get_avatar(
        self,
        owner_id: str,
        *,
        return_stream: bool = False,
        force_local: bool = False,
    ) -> ReadResult | None:
        """Return the owner's avatar, or ``None`` if no backend has one."""
        options = ReadOptions(
            file_class=FileClass.AVATAR, return_stream=return_stream, force_local=force_local
        )
        try:
            return await self.get_file(owner_id, AVATAR_FILENAME, options)
        except NotFoundError:
            logger.debug("No avatar stored for owner %s", owner_id)
            return None

    async def get_file_metadata(
        self,
        owner_id: str,
        filename: str,
        file_class: FileClass = FileClass.UPLOAD,
    ) -> MetadataResult:
        ref = FileReference(owner_id, filename, file_class)
        order = self._search_order(ref, force_local=False)

        async def fetch(backend: StorageBackend):
            return await backend.head(ref)

        with span("storage.metadata", ref=str(ref)):
            metadata, kind, fallback_used, primary_error = await self._search(
                ref, order, "metadata", fetch
            )
        return MetadataResult(
            metadata=metadata,
            backend_used=kind,
            fallback_used=fallback_used,
            primary_error=primary_error,
        )

    async def file_exists(
        self,
        owner_id: str,
        filename: str,
        file_class: FileClass = FileClass.UPLOAD,
    ) -> ExistenceResult:
        try:
            found = await self.get_file_metadata(owner_id, filename, file_class)
        except NotFoundError as exc:
            return ExistenceResult(exists=False, searched_locations=exc.searched_locations)
        return ExistenceResult(exists=True, backend=found.backend_used, metadata=found.metadata)

    async def _search(
        self,
        ref: FileReference,
        order: list[BackendKind],
        operation: str,
        fetch: Callable[[StorageBackend], Awaitable[T | None]],
    ) -> tuple[T, BackendKind, bool, ErrorInfo | None]:
        """Try each backend in *order* and return the first hit.

        Misses move on silently. Any other failure is remembered (the first
        one becomes the primary error) and the search still moves on.
        """
        primary_error: Exception | None = None
        attempted = 0

        for kind in order:
            if kind is BackendKind.REMOTE and not await self.availability.is_available():
                logger.debug("R2 unavailable, skipping it for %s of %s", operation, ref)
                continue

            attempted += 1
            try:
                found = await fetch(self._backend(kind))
            except NotFoundError:
                logger.debug("%s not found in %s storage", ref, kind.value)
                continue
            except Exception as exc:
                if primary_error is None:
                    primary_error = exc
                logger.warning(
                    "%s of %s from %s storage failed, trying next backend: %s",
                    operation.capitalize(),
                    ref,
                    kind.value,
                    exc,
                )
                continue

            if found is None:
                logger.debug("%s not found in %s storage", ref, kind.value)
                continue

            self.location_cache.record(ref, kind)
            info = ErrorInfo.from_exception(primary_error) if primary_error else None
            return found, kind, attempted > 1, info

        logger.debug(
            "%s not found in any of %s", ref, ", ".join(kind.value for kind in order)
        )
        raise NotFoundError(
            f"File not found: {ref.filename}",
            ref=ref,
            searched_locations=order,
            primary_error=primary_error,
        )

    # -- deletes --

    async def delete_file(
        self,
        owner_id: str,
        filename: str,
        file_class: FileClass = FileClass.UPLOAD,
    ) -> DeleteResult:
        """Delete from every backend, whatever the configured mode.

        Succeeds if at least one backend removed the file or confirmed it
        was absent; per-backend outcomes are always returned.
        """
        ref = FileReference(owner_id, filename, file_class)
        outcomes: list[DeleteOutcome] = []

        with span("storage.delete", ref=str(ref)):
            if self._remote is not None and await self.availability.is_available():
                outcomes.append(await self._delete_from(BackendKind.REMOTE, ref))
            else:
                outcomes.append(
                    DeleteOutcome(
                        backend=BackendKind.REMOTE,
                        status=DeleteStatus.SKIPPED,
                        note="R2 storage unavailable",
                    )
                )
            outcomes.append(await self._delete_from(BackendKind.LOCAL, ref))
            self.location_cache.invalidate(ref)

        result = DeleteResult(
            success=any(outcome.success for outcome in outcomes),
            ref=ref,
            deleted_at=datetime.now(UTC),
            outcomes=outcomes,
        )
        if result.success:
            logger.info(
                "Deleted %s (%s)",
                ref,
                ", ".join(f"{o.backend.value}={o.status.value}" for o in outcomes),
            )
        else:
            logger.warning("Failed to delete %s from any backend", ref)
        await self._emit(AFTER_FILE_DELETE, result)
        return result

    async def _delete_from(self, kind: BackendKind, ref: FileReference) -> DeleteOutcome:
        try:
            ack = await self._backend(kind).delete(ref)
        except NotFoundError:
            return DeleteOutcome(backend=kind, status=DeleteStatus.ABSENT, note="File did not exist")
        except Exception as exc:
            logger.warning("Delete of %s from %s storage failed: %s", ref, kind.value, exc)
            return DeleteOutcome(
                backend=kind, status=DeleteStatus.FAILED, error=ErrorInfo.from_exception(exc)
            )
        return DeleteOutcome(
            backend=kind,
            status=DeleteStatus.DELETED if ack.existed else DeleteStatus.ABSENT,
            note=ack.note,
            version_id=ack.version_id,
        )

    # -- migration --

    async def migrate_file(
        self,
        owner_id: str,
        filename: str,
        file_class: FileClass = FileClass.UPLOAD,
        delete_source: bool = False,
    ) -> MigrationResult:
        """Copy a file from local storage to R2, optionally removing the local copy.

        A failed local delete after a successful copy is reported as a
        warning on the result; the migration itself still counts.
        """
        ref = FileReference(owner_id, filename, file_class)
        if self.mode is StorageMode.LOCAL_ONLY:
            raise StorageValidationError("Migration to R2 is disabled in local-only mode")
        if self._remote is None or not await self.availability.is_available():
            raise RemoteUnavailableError("R2 storage is not available for migration")

        logger.info("Migrating %s from local storage to R2 (delete_source=%s)", ref, delete_source)
        with span("storage.migrate", ref=str(ref)):
            try:
                source = await self._local.get(ref)
                remote_result = await self._remote.put(
                    ref,
                    source.data,
                    infer_content_type(ref.filename),
                    {
                        "migrated-from": BackendKind.LOCAL.value,
                        "migration-date": datetime.now(UTC).isoformat(),
                        "original-size": str(source.metadata.size),
                    },
                )
            except Exception as exc:
                logger.error("Migration of %s failed: %s", ref, exc)
                raise

            self.location_cache.record(ref, BackendKind.REMOTE)
            result = MigrationResult(
                success=True,
                ref=ref,
                migrated_at=datetime.now(UTC),
                source=source.metadata,
                remote=remote_result,
            )

            if delete_source:
                try:
                    await self._local.delete(ref)
                except Exception as exc:
                    logger.warning("Migrated %s but could not delete the local copy: %s", ref, exc)
                    result.local_delete_error = ErrorInfo.from_exception(exc)
                    result.warnings.append(f"Local copy was not deleted: {exc}")
                else:
                    result.local_deleted = True

        logger.info("Migrated %s to R2 (local_deleted=%s)", ref, result.local_deleted)
        await self._emit(AFTER_FILE_MIGRATE, result)
        return result

    # -- introspection & lifecycle --

    async def refresh_availability(self) -> bool:
        return await self.availability.force_refresh()

    def get_storage_status(self) -> dict[str, Any]:
        record = self.availability.record
        remote_status = self._status_of(self._remote) or {"configured": False}
        return {
            "config_mode": self.mode.value,
            "effective_mode": self.effective_mode().value,
            "remote": {
                **remote_status,
                "available": record.is_available,
                "state": self.availability.state.value,
                "last_check": record.last_checked_wall.isoformat()
                if record.last_checked_wall
                else None,
                "check_interval": self.availability.check_interval,
            },
            "local": self._status_of(self._local) or {"available": True},
            "cache": {
                "size": len(self.location_cache),
                "max_size": self.location_cache.capacity,
            },
        }

    def get_cache_stats(self) -> dict[str, Any]:
        return self.location_cache.stats()

    def clear_location_cache(self) -> int:
        previous = self.location_cache.clear()
        logger.info("Location cache cleared (%d entries)", previous)
        return previous

    async def startup(self) -> dict[str, Any]:
        """Run the first availability probe and log where files will go."""
        await self.refresh_availability()
        status = self.get_storage_status()
        logger.info(
            "Storage ready: config_mode=%s effective_mode=%s remote_configured=%s remote_available=%s",
            status["config_mode"],
            status["effective_mode"],
            status["remote"]["configured"],
            status["remote"]["available"],
        )
        return status

    async def close(self) -> None:
        """Release resources held by backends."""
        for backend in (self._remote, self._local):
            close = getattr(backend, "close", None)
            if close is not None:
                await close()

    @staticmethod
    def _status_of(backend: StorageBackend | None) -> dict | None:
        status = getattr(backend, "status", None)
        return status() if status is not None else None

    async def _filter_metadata(self, ref: FileReference, metadata: dict[str, str]) -> dict[str, str]:
        try:
            return await self._hooks.apply_filters(UPLOAD_METADATA, dict(metadata), ref)
        except Exception:
            logger.exception("Storage filter %s failed, keeping caller metadata", UPLOAD_METADATA)
            return dict(metadata)

    async def _emit(self, hook_name: str, *args: Any, **kwargs: Any) -> None:
        try:
            await self._hooks.do_action(hook_name, *args, **kwargs)
        except Exception:
            logger.exception("Storage hook %s failed", hook_name)


def create_storage_manager(
    config: StorageConfig,
    *,
    hook_registry: HookRegistry | None = None,
) -> StorageManager:
    """Build a manager and its backends from configuration."""
    local = LocalStorageBackend(
        avatars_path=Path(config.local.avatars_path),
        uploads_path=Path(config.local.uploads_path),
        chunk_size=config.stream_chunk_size,
    )

    remote = None
    if config.remote_enabled:
        from hybrid_storage.lib.storage.r2 import R2StorageBackend
        from hybrid_storage.lib.storage.retry import RetryPolicy

        remote = R2StorageBackend(
            config.r2,
            RetryPolicy(max_attempts=config.retry.max_attempts, base_delay=config.retry.base_delay),
            chunk_size=config.stream_chunk_size,
        )
    elif config.mode is StorageMode.LOCAL_ONLY:
        logger.info("R2 storage disabled by configuration")
    else:
        logger.warning(
            "R2 configuration incomplete (missing %s), storing files locally",
            ", ".join(config.r2.missing_fields),
        )

    registry = hook_registry if hook_registry is not None else hooks
    availability = AvailabilityMonitor(
        remote.probe if remote is not None else None,
        config.availability_check_interval,
        hook_registry=registry,
    )
    return StorageManager(
        local,
        remote,
        mode=config.mode,
        availability=availability,
        location_cache=LocationCache(
            ttl=config.location_cache_ttl, capacity=config.location_cache_size
        ),
        hook_registry=registry,
        max_upload_size=config.max_upload_size,
        max_avatar_size=config.max_avatar_size,
    )
