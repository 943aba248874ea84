"""Backup management for QuickNotes.

Wires the repository, blob store and backup/restore services together
from configuration, sharing one lock so that a backup and a restore can
never run at the same time.
"""
import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Union

from quicknotes.config import QuickNotesConfig, config
from quicknotes.exceptions import (
    BackupInProgressError,
    ConfigurationError,
    ErrorCode,
    InvalidBackupPathError,
)
from quicknotes.models.schema import BackupManifest, BackupRecord
from quicknotes.notifications import NotificationSink, NullNotificationSink
from quicknotes.services.attachments import AttachmentService
from quicknotes.services.backup_service import RETENTION_SETTING_KEY, BackupService
from quicknotes.services.credentials import AUTO_BACKUP_PASSWORD_KEY, CredentialStore
from quicknotes.services.restore_service import RestoreResult, RestoreService
from quicknotes.services.scheduler import BackupScheduler
from quicknotes.storage.blob_store import BlobStore
from quicknotes.storage.repository import NoteRepository

logger = logging.getLogger(__name__)


class BackupManager:
    """Entry point for creating, inspecting and restoring backups.

    Restores and inspections are only accepted for files inside the
    current backup directory.
    """

    def __init__(
        self,
        settings: Optional[QuickNotesConfig] = None,
        notifications: Optional[NotificationSink] = None,
    ):
        self.settings = settings or config
        self.notifications = notifications or NullNotificationSink()

        self.settings.data_dir.mkdir(parents=True, exist_ok=True)
        self.repository = NoteRepository(self.settings.get_database_path())
        self.blob_store = BlobStore(self.settings.get_blobs_dir())
        self.blob_store.initialize()

        self.lock = asyncio.Lock()
        self.backup_service = BackupService(
            self.repository,
            self.blob_store,
            backup_dir=self.settings.get_backup_dir(),
            lock=self.lock,
            kdf_params=self.settings.get_kdf_params(),
            default_retention=self.settings.backup_retention_count,
            notifications=self.notifications,
        )
        self.restore_service = RestoreService(
            self.repository,
            self.blob_store,
            lock=self.lock,
            notifications=self.notifications,
            cleanup_delay=self.settings.restore_cleanup_delay,
        )
        self.attachments = AttachmentService(self.repository, self.blob_store)
        self.credentials = CredentialStore(self.settings.keyring_service)

    @property
    def backup_dir(self) -> Path:
        return self.backup_service.backup_dir

    def set_backup_dir(self, path: Union[str, Path]) -> Path:
        return self.backup_service.set_backup_dir(path)

    def set_retention_count(self, count: int) -> None:
        """Persist the number of backup files to keep.

        Raises:
            ConfigurationError: If ``count`` is below 1.
        """
        if count < 1:
            raise ConfigurationError(
                "Retention count must be at least 1", config_key=RETENTION_SETTING_KEY
            )
        self.repository.set_setting(RETENTION_SETTING_KEY, str(count))

    def validate_backup_path(self, backup_path: Union[str, Path]) -> Path:
        """Resolve ``backup_path`` and require it to be inside the backup directory.

        Raises:
            InvalidBackupPathError: If it resolves anywhere else.
        """
        resolved = Path(backup_path).expanduser().resolve()
        backup_root = self.backup_dir.expanduser().resolve()
        try:
            resolved.relative_to(backup_root)
        except ValueError:
            logger.warning("Rejected backup path outside backup directory: %s", backup_path)
            raise InvalidBackupPathError(str(backup_path)) from None
        if resolved == backup_root:
            raise InvalidBackupPathError(str(backup_path))
        return resolved

    def _check_idle(self, wait: bool) -> None:
        if not wait and self.lock.locked():
            raise BackupInProgressError()

    def _resolve_password(self, password: Optional[str]) -> str:
        if password:
            return password
        stored = self.credentials.get_auto_backup_password()
        if not stored:
            raise ConfigurationError(
                "No password provided and no auto-backup password is set",
                config_key=AUTO_BACKUP_PASSWORD_KEY,
                code=ErrorCode.CONFIG_MISSING,
            )
        return stored

    async def create_backup(self, password: Optional[str] = None, wait: bool = True) -> BackupRecord:
        """Create a backup; with ``wait=False``, fail fast if one is running.

        Without ``password`` the stored auto-backup password is used.

        Raises:
            BackupInProgressError: ``wait`` is False and the lock is held.
            ConfigurationError: No password given and none stored.
            CredentialStoreError: The credential store is unavailable.
        """
        self._check_idle(wait)
        return await self.backup_service.create_backup(self._resolve_password(password))

    async def list_backups(self) -> List[BackupRecord]:
        return await self.backup_service.list_backups()

    async def get_backup_info(
        self, backup_path: Union[str, Path], password: str, verify: bool = False
    ) -> BackupManifest:
        path = self.validate_backup_path(backup_path)
        return await self.backup_service.get_backup_info(path, password, verify=verify)

    async def restore_backup(
        self, backup_path: Union[str, Path], password: str, wait: bool = True
    ) -> RestoreResult:
        path = self.validate_backup_path(backup_path)
        self._check_idle(wait)
        return await self.restore_service.restore_backup(path, password)

    async def delete_backup(self, backup_id: str) -> None:
        await self.backup_service.delete_backup(backup_id)

    async def cleanup_stale_artifacts(self) -> List[Path]:
        return await self.restore_service.cleanup_stale_artifacts()

    def create_scheduler(
        self, password_provider: Optional[Callable[[], Optional[str]]] = None
    ) -> BackupScheduler:
        """Scheduler for automatic backups; reads the stored password by default."""
        return BackupScheduler(
            self.backup_service,
            password_provider or self.credentials.get_auto_backup_password,
            notifications=self.notifications,
        )

    def close(self) -> None:
        """Close the database. Scheduled post-restore cleanups are dropped."""
        self.restore_service.cancel_pending_cleanup()
        self.repository.close()
