"""Local filesystem storage backend."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from stat import S_ISREG

from hybrid_storage.lib.storage.base import (
    DEFAULT_CONTENT_TYPE,
    BackendKind,
    DeleteAck,
    FileContent,
    FileMetadata,
    FileReference,
    StorageResult,
    infer_content_type,
)
from hybrid_storage.lib.storage.errors import LocalOperationError, NotFoundError

logger = logging.getLogger(__name__)


class LocalStorageBackend:
    """Store avatars and uploads in two fixed directories.

    Avatars live at ``{avatars_path}/{owner_id}.png`` and uploads at
    ``{uploads_path}/{filename}``. I/O runs in worker threads via
    ``asyncio.to_thread`` and failures are reported immediately.
    """

    kind = BackendKind.LOCAL

    def __init__(self, avatars_path: Path, uploads_path: Path, chunk_size: int = 64 * 1024) -> None:
        self._avatars_path = Path(avatars_path)
        self._uploads_path = Path(uploads_path)
        self._chunk_size = chunk_size

    def path_for(self, ref: FileReference) -> Path:
        if ref.is_avatar:
            return self._avatars_path / f"{ref.owner_id}.png"
        return self._uploads_path / ref.filename

    async def put(
        self,
        ref: FileReference,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
    ) -> StorageResult:
        path = self.path_for(ref)
        try:
            await asyncio.to_thread(self._write_file, path, data)
        except OSError as exc:
            logger.error("Local write failed for %s at %s: %s", ref, path, exc)
            raise LocalOperationError(f"Failed to write {path}: {exc}") from exc

        logger.info("Stored %s locally at %s (%d bytes)", ref, path, len(data))
        return StorageResult(
            success=True,
            ref=ref,
            backend_used=self.kind,
            location=str(path),
            size=len(data),
            content_type=content_type,
            stored_at=datetime.now(UTC),
            metadata=dict(metadata or {}),
        )

    async def get(self, ref: FileReference) -> FileContent:
        path = self.path_for(ref)
        try:
            data, stat = await asyncio.to_thread(self._read_file, path)
        except FileNotFoundError as exc:
            raise NotFoundError(f"File not found: {ref.filename}", ref=ref) from exc
        except OSError as exc:
            logger.error("Local read failed for %s at %s: %s", ref, path, exc)
            raise LocalOperationError(f"Failed to read {path}: {exc}") from exc

        return FileContent(metadata=self._metadata(ref, path, stat), data=data)

    async def get_stream(self, ref: FileReference) -> FileContent:
        path = self.path_for(ref)
        stat = await self._stat(ref, path)
        if stat is None:
            raise NotFoundError(f"File not found: {ref.filename}", ref=ref)
        return FileContent(metadata=self._metadata(ref, path, stat), stream=self._iter_chunks(path))

    async def head(self, ref: FileReference) -> FileMetadata | None:
        path = self.path_for(ref)
        stat = await self._stat(ref, path)
        if stat is None:
            return None
        return self._metadata(ref, path, stat)

    async def exists(self, ref: FileReference) -> bool:
        return await self.head(ref) is not None

    async def delete(self, ref: FileReference) -> DeleteAck:
        path = self.path_for(ref)
        try:
            existed = await asyncio.to_thread(self._unlink, path)
        except OSError as exc:
            logger.error("Local delete failed for %s at %s: %s", ref, path, exc)
            raise LocalOperationError(f"Failed to delete {path}: {exc}") from exc

        if not existed:
            logger.debug("Nothing to delete for %s at %s", ref, path)
        return DeleteAck(
            ref=ref,
            backend=self.kind,
            existed=existed,
            deleted_at=datetime.now(UTC),
            note=None if existed else "File did not exist",
        )

    def status(self) -> dict:
        return {
            "available": True,
            "avatars_path": str(self._avatars_path),
            "uploads_path": str(self._uploads_path),
        }

    # -- internal helpers --

    async def _stat(self, ref: FileReference, path: Path) -> os.stat_result | None:
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.error("Local stat failed for %s at %s: %s", ref, path, exc)
            raise LocalOperationError(f"Failed to stat {path}: {exc}") from exc
        if not S_ISREG(stat.st_mode):
            return None
        return stat

    def _metadata(self, ref: FileReference, path: Path, stat: os.stat_result) -> FileMetadata:
        return FileMetadata(
            ref=ref,
            backend=self.kind,
            location=str(path),
            size=stat.st_size,
            content_type=infer_content_type(path.name),
            last_modified=datetime.fromtimestamp(stat.st_mtime, UTC),
        )

    async def _iter_chunks(self, path: Path) -> AsyncIterator[bytes]:
        handle = await asyncio.to_thread(path.open, "rb")
        try:
            while chunk := await asyncio.to_thread(handle.read, self._chunk_size):
                yield chunk
        finally:
            await asyncio.to_thread(handle.close)

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    @staticmethod
    def _read_file(path: Path) -> tuple[bytes, os.stat_result]:
        data = path.read_bytes()
        return data, path.stat()

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
