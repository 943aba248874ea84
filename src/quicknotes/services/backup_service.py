"""Backup service.

Creates encrypted, verifiable snapshots of the database and blob store,
records them in the database and applies the retention policy.

A backup moves through packaging, encryption and a temporary-file write
before a single rename makes it visible. Until that rename nothing
appears under the final backup filename; after it, the backup is kept
even if the caller cancels.
"""
import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from quicknotes.crypto import EncryptedData, KdfParams, decrypt, encrypt
from quicknotes.exceptions import (
    BackupNotFoundError,
    ConfigurationError,
    ErrorCode,
    StorageIOError,
)
from quicknotes.models.schema import BackupManifest, BackupRecord, utc_now
from quicknotes.notifications import (
    BACKUP_CREATED,
    NotificationSink,
    NullNotificationSink,
    emit,
)
from quicknotes.observability import timed_operation
from quicknotes.services.snapshot import Snapshot, SnapshotArchive, SnapshotPackager
from quicknotes.storage.blob_store import BlobStore
from quicknotes.storage.repository import NoteRepository
from quicknotes.utils import fsync_directory, write_file_synced

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_COUNT = 10
RETENTION_SETTING_KEY = "backup_retention_count"
BACKUP_PREFIX = "backup_"
BACKUP_SUFFIX = ".qnb"


def read_backup_file(path: Union[str, Path]) -> EncryptedData:
    """Load and parse an encrypted backup file.

    Raises:
        BackupNotFoundError: If the file does not exist.
        StorageIOError: If the file cannot be read.
        ArchiveFormatError: If the file is not a backup envelope.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        raise BackupNotFoundError(str(path)) from None
    except OSError as e:
        raise StorageIOError(
            "Failed to read backup file",
            operation="read_backup",
            path=str(path),
            original_error=e,
        ) from e
    return EncryptedData.from_bytes(data)


class BackupService:
    """Creates, lists and deletes encrypted backups."""

    def __init__(
        self,
        repository: NoteRepository,
        blob_store: BlobStore,
        backup_dir: Union[str, Path],
        lock: Optional[asyncio.Lock] = None,
        kdf_params: Optional[KdfParams] = None,
        default_retention: int = DEFAULT_RETENTION_COUNT,
        notifications: Optional[NotificationSink] = None,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.packager = SnapshotPackager(blob_store)
        self._backup_dir = Path(backup_dir)
        # Shared with RestoreService: backup and restore never overlap
        self.lock = lock or asyncio.Lock()
        self.kdf_params = kdf_params or KdfParams()
        self.default_retention = default_retention
        self.notifications = notifications or NullNotificationSink()

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def set_backup_dir(self, path: Union[str, Path]) -> Path:
        """Switch to a custom backup location.

        Raises:
            ConfigurationError: If the directory cannot be created or written.
        """
        new_dir = Path(path).expanduser()
        try:
            new_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot create backup directory: {e}", config_key="backup_dir"
            ) from e
        if not os.access(new_dir, os.W_OK):
            raise ConfigurationError(
                "Backup directory is not writable", config_key="backup_dir"
            )
        self._backup_dir = new_dir
        logger.info("Backup directory set to: %s", new_dir)
        return new_dir

    def get_retention_count(self) -> int:
        """Retention count from settings, falling back to the default.

        Raises:
            ConfigurationError: If the stored value is not a positive integer.
        """
        value = self.repository.get_setting(RETENTION_SETTING_KEY)
        if value is None:
            return self.default_retention
        try:
            count = int(value)
        except ValueError:
            count = 0
        if count < 1:
            raise ConfigurationError(
                f"Invalid retention count: {value!r}", config_key=RETENTION_SETTING_KEY
            )
        return count

    def _next_backup_path(self, timestamp) -> Path:
        stem = f"{BACKUP_PREFIX}{timestamp.strftime('%Y%m%d_%H%M%S_%f')}"
        path = self._backup_dir / f"{stem}{BACKUP_SUFFIX}"
        counter = 1
        while path.exists():
            path = self._backup_dir / f"{stem}_{counter}{BACKUP_SUFFIX}"
            counter += 1
        return path

    def _package(self) -> Snapshot:
        with tempfile.TemporaryDirectory(prefix="quicknotes-snapshot-") as tmp:
            db_copy = self.repository.snapshot_database(Path(tmp) / "db.sqlite")
            return self.packager.build(db_copy)

    def _encrypt(self, archive: bytes, password: str) -> EncryptedData:
        return encrypt(archive, password, self.kdf_params)

    async def _write_temp(self, temp_path: Path, envelope: EncryptedData) -> None:
        """Write the envelope to ``temp_path``; the file is removed on any failure."""
        task = asyncio.ensure_future(
            asyncio.to_thread(write_file_synced, temp_path, *envelope.parts())
        )
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # The worker thread can't be interrupted; let it finish, then discard
            await asyncio.wait([task])
            temp_path.unlink(missing_ok=True)
            raise
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageIOError(
                "Failed to write backup file",
                operation="write_backup",
                path=str(temp_path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def _commit(self, temp_path: Path, final_path: Path) -> None:
        try:
            os.replace(temp_path, final_path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageIOError(
                "Failed to finalize backup file",
                operation="rename_backup",
                path=str(final_path),
                code=ErrorCode.STORAGE_RENAME_FAILED,
                original_error=e,
            ) from e

    def _finalize(self, final_path: Path, fingerprint: str, timestamp, retention: int) -> BackupRecord:
        try:
            fsync_directory(final_path.parent)
        except OSError as e:
            logger.warning("Could not fsync backup directory: %s", e)
        record = self.repository.record_backup(
            str(final_path),
            final_path.stat().st_size,
            fingerprint,
            timestamp=timestamp,
        )
        try:
            self.apply_retention_policy(retention)
        except Exception as e:
            logger.warning("Retention sweep failed: %s", e, exc_info=True)
        return record

    async def create_backup(self, password: str) -> BackupRecord:
        """Create an encrypted backup of the database and all blobs.

        Returns:
            The recorded backup.

        Raises:
            ConfigurationError: Invalid retention setting.
            StorageIOError: Reading live data or writing the backup failed.
            EncryptionError: Key derivation failed.
        """
        async with self.lock:
            with timed_operation("create_backup") as op:
                retention = await asyncio.to_thread(self.get_retention_count)
                try:
                    self._backup_dir.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise StorageIOError(
                        "Cannot create backup directory",
                        operation="create_backup",
                        path=str(self._backup_dir),
                        code=ErrorCode.STORAGE_WRITE_FAILED,
                        original_error=e,
                    ) from e

                logger.info("Creating backup")
                snapshot = await asyncio.to_thread(self._package)
                op["files"] = len(snapshot.manifest.files)

                envelope = await asyncio.to_thread(self._encrypt, snapshot.archive, password)

                timestamp = utc_now()
                final_path = self._next_backup_path(timestamp)
                temp_path = final_path.with_name(f".{final_path.name}.tmp")
                await self._write_temp(temp_path, envelope)

                # Commit point: from here on the backup exists
                self._commit(temp_path, final_path)

                finalize = asyncio.ensure_future(
                    asyncio.to_thread(
                        self._finalize, final_path, snapshot.fingerprint, timestamp, retention
                    )
                )
                try:
                    record = await asyncio.shield(finalize)
                except asyncio.CancelledError:
                    await asyncio.wait([finalize])
                    raise

                op["size"] = record.size
                logger.info(
                    "Backup created: %s (%d bytes, %d blobs)",
                    final_path, record.size, snapshot.blob_count,
                )

        emit(self.notifications, BACKUP_CREATED, path=record.path, backup_id=record.id)
        return record

    def apply_retention_policy(self, retention_count: int) -> int:
        """Delete backup files beyond the newest ``retention_count``.

        Records are kept for history. Returns the number of files removed.
        """
        backups = sorted(
            self.repository.list_backups(), key=lambda b: b.timestamp, reverse=True
        )
        removed = 0
        for backup in backups[retention_count:]:
            try:
                Path(backup.path).unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to delete backup file %s: %s", backup.path, e)
                continue
            removed += 1
            logger.info("Deleted old backup: %s", backup.path)
        return removed

    async def list_backups(self):
        """All backup records, newest first."""
        return await asyncio.to_thread(self.repository.list_backups)

    async def delete_backup(self, backup_id: str) -> None:
        """Delete a backup file (if still present) and its record.

        Raises:
            BackupNotFoundError: If no record has this id.
        """
        async with self.lock:
            record = await asyncio.to_thread(self.repository.get_backup, backup_id)
            if record is None:
                raise BackupNotFoundError(backup_id, f"No backup with id {backup_id}")
            try:
                Path(record.path).unlink(missing_ok=True)
            except OSError as e:
                raise StorageIOError(
                    "Failed to delete backup file",
                    operation="delete_backup",
                    path=record.path,
                    code=ErrorCode.STORAGE_DELETE_FAILED,
                    original_error=e,
                ) from e
            await asyncio.to_thread(self.repository.delete_backup, backup_id)
            logger.info("Deleted backup %s", backup_id)

    async def get_backup_info(
        self, backup_path: Union[str, Path], password: str, verify: bool = False
    ) -> BackupManifest:
        """Decrypt a backup and return its manifest without touching live state."""

        def _read() -> BackupManifest:
            archive = decrypt(read_backup_file(backup_path), password)
            with SnapshotArchive(archive) as snapshot:
                if verify:
                    snapshot.verify_all()
                return snapshot.manifest

        return await asyncio.to_thread(_read)
