"""Storage layer for QuickNotes."""

from quicknotes.storage.blob_store import BlobStore
from quicknotes.storage.repository import NoteRepository

__all__ = [
    "BlobStore",
    "NoteRepository",
]
