"""Tests for the local filesystem storage backend."""

from unittest.mock import patch

import pytest

from hybrid_storage.lib.storage.base import BackendKind, FileClass, FileReference
from hybrid_storage.lib.storage.errors import (
    LocalOperationError,
    NotFoundError,
    StorageValidationError,
)
from hybrid_storage.lib.storage.local import LocalStorageBackend


@pytest.fixture
def backend(tmp_path):
    return LocalStorageBackend(tmp_path / "avatars", tmp_path / "uploads", chunk_size=4)


class TestPathDerivation:
    """Test where files land on disk."""

    def test_avatar_path(self, backend, tmp_path):
        ref = FileReference.avatar("42")
        assert backend.path_for(ref) == tmp_path / "avatars" / "42.png"

    def test_upload_path(self, backend, tmp_path):
        ref = FileReference("42", "report.pdf")
        assert backend.path_for(ref) == tmp_path / "uploads" / "report.pdf"

    def test_avatar_ignores_caller_filename(self):
        ref = FileReference("42", "selfie.jpg", FileClass.AVATAR)
        assert ref.filename == "avatar.png"

    @pytest.mark.parametrize("filename", ["../escape.txt", "nested/file.txt", "..", "bad\x00name"])
    def test_traversal_is_rejected(self, filename):
        with pytest.raises(StorageValidationError):
            FileReference("42", filename)

    def test_owner_traversal_is_rejected(self):
        with pytest.raises(StorageValidationError):
            FileReference.avatar("../42")


class TestLocalReadWrite:
    """Test put/get/stream/head."""

    @pytest.mark.asyncio
    async def test_put_creates_directories(self, backend, tmp_path):
        ref = FileReference("42", "report.pdf")

        result = await backend.put(ref, b"%PDF-1.4", "application/pdf", {"k": "v"})

        assert (tmp_path / "uploads" / "report.pdf").read_bytes() == b"%PDF-1.4"
        assert result.success is True
        assert result.backend_used is BackendKind.LOCAL
        assert result.size == 8
        assert result.metadata == {"k": "v"}

    @pytest.mark.asyncio
    async def test_get_returns_data_and_metadata(self, backend):
        ref = FileReference("42", "photo.jpg")
        await backend.put(ref, b"jpeg-bytes")

        content = await backend.get(ref)

        assert content.data == b"jpeg-bytes"
        assert content.metadata.size == 10
        assert content.metadata.content_type == "image/jpeg"
        assert content.metadata.last_modified is not None

    @pytest.mark.asyncio
    async def test_get_missing_raises_not_found(self, backend):
        with pytest.raises(NotFoundError):
            await backend.get(FileReference("42", "missing.txt"))

    @pytest.mark.asyncio
    async def test_stream_reads_in_chunks(self, backend):
        ref = FileReference.avatar("42")
        await backend.put(ref, b"0123456789")

        content = await backend.get_stream(ref)
        chunks = [chunk async for chunk in content.stream]

        assert chunks == [b"0123", b"4567", b"89"]
        assert content.data is None
        assert content.metadata.content_type == "image/png"

    @pytest.mark.asyncio
    async def test_stream_missing_raises_not_found(self, backend):
        with pytest.raises(NotFoundError):
            await backend.get_stream(FileReference("42", "missing.txt"))

    @pytest.mark.asyncio
    async def test_head(self, backend):
        ref = FileReference("42", "notes.txt")
        assert await backend.head(ref) is None
        assert await backend.exists(ref) is False

        await backend.put(ref, b"hello")

        metadata = await backend.head(ref)
        assert metadata.size == 5
        assert metadata.content_type == "application/octet-stream"
        assert await backend.exists(ref) is True

    @pytest.mark.asyncio
    async def test_directory_is_not_a_file(self, backend, tmp_path):
        (tmp_path / "uploads" / "folder.txt").mkdir(parents=True)

        assert await backend.head(FileReference("42", "folder.txt")) is None

    @pytest.mark.asyncio
    async def test_write_failure_is_not_retried(self, backend):
        ref = FileReference("42", "report.pdf")

        with patch.object(
            LocalStorageBackend, "_write_file", side_effect=PermissionError("read-only")
        ) as write:
            with pytest.raises(LocalOperationError):
                await backend.put(ref, b"data")

        assert write.call_count == 1


class TestLocalDelete:
    """Test idempotent deletes."""

    @pytest.mark.asyncio
    async def test_delete_existing(self, backend, tmp_path):
        ref = FileReference("42", "report.pdf")
        await backend.put(ref, b"data")

        ack = await backend.delete(ref)

        assert ack.existed is True
        assert ack.note is None
        assert not (tmp_path / "uploads" / "report.pdf").exists()

    @pytest.mark.asyncio
    async def test_delete_missing_succeeds_with_note(self, backend):
        ack = await backend.delete(FileReference("42", "never-written.pdf"))

        assert ack.existed is False
        assert ack.note == "File did not exist"

    def test_status(self, backend, tmp_path):
        status = backend.status()

        assert status["available"] is True
        assert status["uploads_path"] == str(tmp_path / "uploads")
