"""Attachment service: note attachments stored in the blob store."""
import asyncio
import logging
from typing import List, Optional

from quicknotes.exceptions import ErrorCode, NotFoundError
from quicknotes.models.schema import Attachment
from quicknotes.storage.blob_store import BlobStore
from quicknotes.storage.repository import NoteRepository
from quicknotes.utils import sanitize_for_log

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 255


def sanitize_filename(filename: str) -> str:
    """Strip path separators and NUL bytes, limit to 255 characters."""
    cleaned = "".join(c for c in filename if c not in ("/", "\\", "\0"))
    return cleaned[:MAX_FILENAME_LENGTH]


class AttachmentService:
    """Writes attachment bytes to the blob store and records them on a note.

    Deleting an attachment removes only its record; the blob stays until
    a later garbage collection.
    """

    def __init__(self, repository: NoteRepository, blob_store: BlobStore):
        self.repository = repository
        self.blob_store = blob_store

    async def create_attachment(
        self, note_id: str, filename: str, mime_type: str, data: bytes
    ) -> Attachment:
        safe_filename = sanitize_filename(filename)
        logger.info(
            "Creating attachment %s for note %s (%d bytes)",
            sanitize_for_log(safe_filename), note_id, len(data),
        )
        blob_hash = await asyncio.to_thread(self.blob_store.write, data)
        attachment = await asyncio.to_thread(
            self.repository.add_attachment,
            note_id, blob_hash, safe_filename, mime_type, len(data),
        )
        logger.info("Attachment created: %s", attachment.id)
        return attachment

    async def get_attachment_data(self, attachment_id: str) -> bytes:
        """Bytes of an attachment, looked up by attachment id.

        Raises:
            NotFoundError: No such attachment.
            BlobNotFoundError: The record exists but its blob is gone.
        """
        attachment = await asyncio.to_thread(self.repository.get_attachment, attachment_id)
        if attachment is None:
            raise NotFoundError(
                f"Attachment with ID '{attachment_id}' not found",
                code=ErrorCode.ATTACHMENT_NOT_FOUND,
                details={"attachment_id": attachment_id},
            )
        return await asyncio.to_thread(self.blob_store.read, attachment.blob_hash)

    async def get_attachment_by_hash(self, blob_hash: str) -> bytes:
        return await asyncio.to_thread(self.blob_store.read, blob_hash)

    async def list_attachments(self, note_id: Optional[str] = None) -> List[Attachment]:
        return await asyncio.to_thread(self.repository.list_attachments, note_id)

    async def delete_attachment(self, attachment_id: str) -> None:
        await asyncio.to_thread(self.repository.delete_attachment, attachment_id)
        logger.info("Attachment deleted: %s", attachment_id)
