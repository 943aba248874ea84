"""Content-addressed blob storage.

Stores binary data (images, attachments) keyed by the SHA-256 of the data.
Files are organized in a two-level fan-out directory structure so that no
single directory grows past a few hundred entries.

Example: hash "abcd1234..." is stored at "blobs/ab/cd/abcd1234..."
"""
import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Union

from quicknotes.exceptions import BlobNotFoundError, ErrorCode, StorageIOError
from quicknotes.models.schema import BLOB_HASH_PATTERN
from quicknotes.utils import fsync_directory, write_file_synced

logger = logging.getLogger(__name__)


class BlobStore:
    """Deduplicating, write-once store of immutable byte blobs."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def initialize(self) -> None:
        """Create the root directory if needed."""
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("Blob store initialized at: %s", self.root)

    @staticmethod
    def calculate_hash(data: bytes) -> str:
        """Calculate the identifier (lowercase hex SHA-256) for ``data``."""
        return hashlib.sha256(data).hexdigest()

    def get_path(self, blob_hash: str) -> Path:
        """Two-level fan-out path: ``<root>/ab/cd/abcd1234...``."""
        if not BLOB_HASH_PATTERN.match(blob_hash):
            raise BlobNotFoundError(blob_hash)
        return self.root / blob_hash[0:2] / blob_hash[2:4] / blob_hash

    def write(self, data: bytes) -> str:
        """Store ``data`` and return its identifier.

        Writing bytes that are already stored is a no-op. New blobs are
        written to a temporary sibling, fsynced and renamed into place, so
        a blob is never visible under its final name half-written.
        """
        blob_hash = self.calculate_hash(data)
        path = self.get_path(blob_hash)

        if path.exists():
            logger.debug("Blob already exists: %s", blob_hash)
            return blob_hash

        temp_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Unique per writer so concurrent writes of the same blob don't collide
            fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f"{blob_hash}.", suffix=".tmp")
            os.close(fd)
            temp_path = Path(temp_name)
            write_file_synced(temp_path, data)
            os.replace(temp_path, path)
            fsync_directory(path.parent)
        except OSError as e:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            raise StorageIOError(
                "Failed to write blob",
                operation="write",
                path=blob_hash,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        logger.debug("Wrote blob: %s (%d bytes)", blob_hash, len(data))
        return blob_hash

    def read(self, blob_hash: str) -> bytes:
        """Read a blob.

        Raises:
            BlobNotFoundError: If no blob exists for ``blob_hash``.
        """
        path = self.get_path(blob_hash)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(blob_hash) from None
        except OSError as e:
            raise StorageIOError(
                "Failed to read blob",
                operation="read",
                path=blob_hash,
                original_error=e,
            ) from e

        logger.debug("Read blob: %s (%d bytes)", blob_hash, len(data))
        return data

    def exists(self, blob_hash: str) -> bool:
        """Check if a blob exists. Never raises for malformed identifiers."""
        if not BLOB_HASH_PATTERN.match(blob_hash):
            return False
        return self.get_path(blob_hash).is_file()

    def delete(self, blob_hash: str) -> None:
        """Delete a blob. Deleting an absent blob succeeds."""
        if not BLOB_HASH_PATTERN.match(blob_hash):
            return
        try:
            self.get_path(blob_hash).unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError(
                "Failed to delete blob",
                operation="delete",
                path=blob_hash,
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e

        logger.debug("Deleted blob: %s", blob_hash)

    def list_all(self) -> List[str]:
        """List every stored blob identifier, sorted.

        Only files named like an identifier count, which skips leftover
        temporary files and anything else that strays into the tree.
        """
        if not self.root.exists():
            return []
        hashes = []

        def _raise(error: OSError) -> None:
            raise error

        try:
            for _dirpath, _dirnames, filenames in os.walk(self.root, onerror=_raise):
                for filename in filenames:
                    if BLOB_HASH_PATTERN.match(filename):
                        hashes.append(filename)
        except OSError as e:
            raise StorageIOError(
                "Failed to list blobs",
                operation="list_all",
                path=str(self.root),
                original_error=e,
            ) from e
        return sorted(hashes)
