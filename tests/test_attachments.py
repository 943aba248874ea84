"""Tests for the attachment service."""
import pytest

from quicknotes.exceptions import BlobNotFoundError, NotFoundError
from quicknotes.services.attachments import sanitize_filename
from quicknotes.utils import sha256_hex


class TestSanitizeFilename:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("normal.txt", "normal.txt"),
            ("../../../etc/passwd", "......etcpasswd"),
            ("file\\name.txt", "filename.txt"),
            ("nul\0byte.png", "nulbyte.png"),
        ],
    )
    def test_strips_separators(self, raw, expected):
        assert sanitize_filename(raw) == expected

    def test_limits_length(self):
        assert len(sanitize_filename("a" * 300)) == 255


class TestAttachmentService:

    @pytest.mark.anyio
    async def test_create_and_read(self, attachment_service, repository, blob_store):
        note = repository.create_note("Groceries")
        attachment = await attachment_service.create_attachment(
            note.id, "photo.png", "image/png", bytes([1, 2, 3])
        )
        assert attachment.blob_hash == sha256_hex(bytes([1, 2, 3]))
        assert attachment.size == 3
        assert blob_store.exists(attachment.blob_hash)
        assert await attachment_service.get_attachment_data(attachment.id) == bytes([1, 2, 3])
        assert await attachment_service.get_attachment_by_hash(attachment.blob_hash) == bytes([1, 2, 3])

    @pytest.mark.anyio
    async def test_filename_is_sanitized(self, attachment_service, repository):
        note = repository.create_note("n")
        attachment = await attachment_service.create_attachment(
            note.id, "../secret.txt", "text/plain", b"x"
        )
        assert attachment.filename == "..secret.txt"

    @pytest.mark.anyio
    async def test_same_bytes_share_a_blob(self, attachment_service, repository, blob_store):
        note = repository.create_note("n")
        first = await attachment_service.create_attachment(note.id, "a.bin", "application/octet-stream", b"dup")
        second = await attachment_service.create_attachment(note.id, "b.bin", "application/octet-stream", b"dup")
        assert first.blob_hash == second.blob_hash
        assert blob_store.list_all() == [first.blob_hash]
        assert len(await attachment_service.list_attachments(note.id)) == 2

    @pytest.mark.anyio
    async def test_delete_keeps_blob(self, attachment_service, repository, blob_store):
        note = repository.create_note("n")
        attachment = await attachment_service.create_attachment(note.id, "a.txt", "text/plain", b"keep")
        await attachment_service.delete_attachment(attachment.id)
        assert await attachment_service.list_attachments(note.id) == []
        assert blob_store.exists(attachment.blob_hash)

    @pytest.mark.anyio
    async def test_missing_attachment(self, attachment_service):
        with pytest.raises(NotFoundError):
            await attachment_service.get_attachment_data("missing")

    @pytest.mark.anyio
    async def test_missing_blob(self, attachment_service):
        with pytest.raises(BlobNotFoundError):
            await attachment_service.get_attachment_by_hash("f" * 64)

    @pytest.mark.anyio
    async def test_unknown_note(self, attachment_service):
        with pytest.raises(NotFoundError):
            await attachment_service.create_attachment("missing", "a.txt", "text/plain", b"x")
