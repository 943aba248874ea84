"""Snapshot packaging for backups.

A snapshot is a ZIP archive holding the database file, every blob under its
fan-out path and, last, ``manifest.json``. The manifest lists each archived
file with its size and the SHA-256 of the exact bytes written, and is used on
restore to verify every file before anything live is replaced.

Layout inside the archive::

    db.sqlite
    blobs/ab/cd/abcd1234...
    manifest.json
"""
import io
import logging
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Tuple, Union

from pydantic import ValidationError

from quicknotes.exceptions import (
    ArchiveFormatError,
    BlobNotFoundError,
    ChecksumMismatch,
    StorageIOError,
)
from quicknotes.models.schema import (
    DATABASE_ENTRY,
    MANIFEST_ENTRY,
    BackupManifest,
    FileEntry,
    blob_archive_path,
    is_blob_archive_path,
)
from quicknotes.storage.blob_store import BlobStore
from quicknotes.utils import sha256_hex

logger = logging.getLogger(__name__)

# Fixed entry timestamp so equal inputs give byte-identical archives
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass
class Snapshot:
    """A packaged, not yet encrypted, snapshot."""

    archive: bytes
    manifest: BackupManifest
    manifest_bytes: bytes

    @property
    def fingerprint(self) -> str:
        """SHA-256 over the serialized manifest, recorded with the backup."""
        return sha256_hex(self.manifest_bytes)

    @property
    def blob_count(self) -> int:
        return sum(1 for f in self.manifest.files if f.path != DATABASE_ENTRY)


class SnapshotPackager:
    """Builds snapshot archives from the database file and blob store."""

    def __init__(self, blob_store: BlobStore):
        self.blob_store = blob_store

    def build(self, database_path: Union[str, Path]) -> Snapshot:
        """Package the database file and every blob into an archive.

        ``database_path`` should point at a consistent copy of the database
        (see ``NoteRepository.snapshot_database``), not the live file.
        """
        database_path = Path(database_path)
        manifest = BackupManifest()
        buffer = io.BytesIO()

        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            try:
                db_data = database_path.read_bytes()
            except OSError as e:
                raise StorageIOError(
                    "Failed to read database snapshot",
                    operation="package",
                    path=str(database_path),
                    original_error=e,
                ) from e
            self._add(zf, manifest, DATABASE_ENTRY, db_data)
            logger.debug("Added %s to snapshot (%d bytes)", DATABASE_ENTRY, len(db_data))

            blob_hashes = self.blob_store.list_all()
            for blob_hash in blob_hashes:
                try:
                    blob_data = self.blob_store.read(blob_hash)
                except BlobNotFoundError:
                    # Deleted between listing and reading
                    logger.warning("Blob vanished during packaging: %s", blob_hash)
                    continue
                self._add(zf, manifest, blob_archive_path(blob_hash), blob_data)

            logger.debug("Added %d blobs to snapshot", len(blob_hashes))

            manifest_bytes = manifest.to_json_bytes()
            zf.writestr(self._zip_info(MANIFEST_ENTRY), manifest_bytes)

        return Snapshot(
            archive=buffer.getvalue(),
            manifest=manifest,
            manifest_bytes=manifest_bytes,
        )

    @staticmethod
    def _zip_info(name: str) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
        info.compress_type = zipfile.ZIP_DEFLATED
        return info

    def _add(self, zf: zipfile.ZipFile, manifest: BackupManifest, path: str, data: bytes) -> None:
        zf.writestr(self._zip_info(path), data)
        manifest.files.append(
            FileEntry(path=path, size=len(data), checksum=sha256_hex(data))
        )


class SnapshotArchive:
    """Read side of a snapshot: parses the manifest and verifies entries.

    Raises:
        ArchiveFormatError: If the archive or its manifest is malformed.
    """

    def __init__(self, archive: bytes):
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(archive))
        except (zipfile.BadZipFile, ValueError) as e:
            raise ArchiveFormatError("Backup archive is not a valid ZIP file", original_error=e) from e
        self.manifest, self.manifest_bytes = self._load_manifest()
        self._validate_manifest()

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "SnapshotArchive":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def fingerprint(self) -> str:
        return sha256_hex(self.manifest_bytes)

    @property
    def database_entry(self) -> FileEntry:
        return next(f for f in self.manifest.files if f.path == DATABASE_ENTRY)

    @property
    def blob_entries(self) -> list:
        return [f for f in self.manifest.files if f.path != DATABASE_ENTRY]

    def _read_member(self, name: str) -> bytes:
        try:
            return self._zip.read(name)
        except KeyError:
            raise ArchiveFormatError("Archive entry missing", entry=name) from None
        except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError) as e:
            raise ArchiveFormatError("Archive entry is unreadable", entry=name, original_error=e) from e

    def _load_manifest(self) -> Tuple[BackupManifest, bytes]:
        raw = self._read_member(MANIFEST_ENTRY)
        try:
            return BackupManifest.model_validate_json(raw), raw
        except ValidationError as e:
            raise ArchiveFormatError("Backup manifest is invalid", entry=MANIFEST_ENTRY, original_error=e) from e

    def _validate_manifest(self) -> None:
        seen = set()
        for entry in self.manifest.files:
            if entry.path != DATABASE_ENTRY and not is_blob_archive_path(entry.path):
                raise ArchiveFormatError("Unexpected path in manifest", entry=entry.path)
            if entry.path in seen:
                raise ArchiveFormatError("Duplicate path in manifest", entry=entry.path)
            seen.add(entry.path)
        if DATABASE_ENTRY not in seen:
            raise ArchiveFormatError("Backup contains no database", entry=DATABASE_ENTRY)

    def read_verified(self, entry: FileEntry) -> bytes:
        """Read one entry and check it against its manifest record.

        Raises:
            ChecksumMismatch: If size or checksum differ from the manifest.
        """
        try:
            info = self._zip.getinfo(entry.path)
        except KeyError:
            raise ArchiveFormatError("Archive entry missing", entry=entry.path) from None
        # Checked before decompressing so a bogus entry can't balloon in memory
        if info.file_size != entry.size:
            raise ChecksumMismatch(entry.path, f"size={entry.size}", f"size={info.file_size}")

        data = self._read_member(entry.path)
        actual = sha256_hex(data)
        if len(data) != entry.size or actual != entry.checksum:
            raise ChecksumMismatch(entry.path, entry.checksum, actual)
        if entry.path != DATABASE_ENTRY:
            # Blobs must also still match the address they are stored under
            blob_hash = entry.path.rsplit("/", 1)[-1]
            if BlobStore.calculate_hash(data) != blob_hash:
                raise ChecksumMismatch(entry.path, blob_hash, BlobStore.calculate_hash(data))
        return data

    def iter_verified(self) -> Iterator[Tuple[FileEntry, bytes]]:
        """Yield every manifest entry with its verified bytes."""
        for entry in self.manifest.files:
            yield entry, self.read_verified(entry)

    def verify_all(self) -> Dict[str, int]:
        """Verify every entry; returns counts for logging."""
        files = 0
        total = 0
        for entry, data in self.iter_verified():
            files += 1
            total += len(data)
        return {"files": files, "bytes": total}
