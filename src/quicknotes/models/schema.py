"""Data models for QuickNotes."""

import datetime
import re
from datetime import timezone
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from quicknotes import __version__

# Blob identifiers are lowercase hex SHA-256 digests
BLOB_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")

DATABASE_ENTRY = "db.sqlite"
MANIFEST_ENTRY = "manifest.json"
BLOBS_PREFIX = "blobs"


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: datetime.datetime) -> datetime.datetime:
    """Treat naive datetimes read back from SQLite as UTC."""
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def blob_archive_path(blob_hash: str) -> str:
    """Archive path of a blob: ``blobs/ab/cd/abcd...``."""
    return f"{BLOBS_PREFIX}/{blob_hash[0:2]}/{blob_hash[2:4]}/{blob_hash}"


def is_blob_archive_path(path: str) -> bool:
    """Check that an archive path has exactly the fan-out blob shape."""
    parts = path.split("/")
    return (
        len(parts) == 4
        and parts[0] == BLOBS_PREFIX
        and bool(BLOB_HASH_PATTERN.match(parts[3]))
        and parts[1] == parts[3][0:2]
        and parts[2] == parts[3][2:4]
    )


class Note(BaseModel):
    """A note. Content is stored opaquely."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    content: str = ""
    created_at: datetime.datetime
    updated_at: datetime.datetime


class Attachment(BaseModel):
    """A file attached to a note, stored in the blob store."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    note_id: str
    blob_hash: str
    filename: str
    mime_type: str
    size: int
    created_at: datetime.datetime


class BackupRecord(BaseModel):
    """Metadata persisted for every backup that was written."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    timestamp: datetime.datetime
    path: str
    size: int
    manifest_hash: str

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)


class FileEntry(BaseModel):
    """One archived file: path, byte size and SHA-256 of the archived bytes."""

    path: str
    size: int = Field(ge=0)
    checksum: str

    @field_validator("checksum")
    @classmethod
    def _hex_checksum(cls, v: str) -> str:
        if not BLOB_HASH_PATTERN.match(v):
            raise ValueError("checksum must be 64 lowercase hex characters")
        return v


class BackupManifest(BaseModel):
    """Inventory of every file in a snapshot archive.

    The manifest does not list itself.
    """

    version: str = __version__
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())
    files: List[FileEntry] = Field(default_factory=list)

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(indent=2).encode("utf-8")

    def content_signature(self) -> List[tuple]:
        """Files and checksums only, ignoring version and timestamp."""
        return sorted((f.path, f.size, f.checksum) for f in self.files)
