"""Restore service.

Restores the database file and the blob tree from an encrypted backup.
Every archived file is verified against the manifest and written to a
staging location next to the live data before anything live is touched.
Only then are the live database and blob directory renamed aside and the
staged copies renamed into place. The aside copies are deleted after a
grace delay.
"""
import asyncio
import logging
import os
import shutil
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set, Union

from quicknotes.crypto import decrypt
from quicknotes.exceptions import (
    ArchiveFormatError,
    ErrorCode,
    RestoreError,
    StorageIOError,
)
from quicknotes.models.schema import BLOBS_PREFIX, DATABASE_ENTRY, utc_now
from quicknotes.notifications import (
    BACKUP_RESTORED,
    NotificationSink,
    NullNotificationSink,
    emit,
)
from quicknotes.observability import timed_operation
from quicknotes.services.backup_service import read_backup_file
from quicknotes.services.snapshot import SnapshotArchive
from quicknotes.storage.blob_store import BlobStore
from quicknotes.storage.repository import NoteRepository
from quicknotes.utils import fsync_directory, write_file_synced

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_DELAY = 300.0
PRE_RESTORE_MARKER = ".pre-restore-"
STAGING_MARKER = ".restore-staging-"
SQLITE_SIDECARS = ("-wal", "-shm", "-journal")


@dataclass
class StagedRestore:
    database_path: Path
    blobs_dir: Path
    file_count: int = 0


@dataclass
class RestoreResult:
    """Outcome of a successful restore."""

    backup_path: Path
    file_count: int
    blob_count: int
    aside_paths: List[Path] = field(default_factory=list)


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def _check_database_file(path: Path) -> None:
    """Require ``path`` to be an intact SQLite database.

    Raises:
        ArchiveFormatError: If SQLite rejects the file or finds damage.
    """
    try:
        conn = sqlite3.connect(str(path))
        try:
            rows = conn.execute("PRAGMA quick_check").fetchall()
        finally:
            conn.close()
    except sqlite3.Error as e:
        raise ArchiveFormatError(
            "Backup database is not a usable SQLite file",
            entry=DATABASE_ENTRY,
            original_error=e,
        ) from e
    if rows != [("ok",)]:
        raise ArchiveFormatError(
            f"Backup database failed integrity check: {rows[0][0] if rows else 'no result'}",
            entry=DATABASE_ENTRY,
        )


class RestoreService:
    """Replaces live state with the contents of a backup."""

    def __init__(
        self,
        repository: NoteRepository,
        blob_store: BlobStore,
        lock: Optional[asyncio.Lock] = None,
        notifications: Optional[NotificationSink] = None,
        cleanup_delay: float = DEFAULT_CLEANUP_DELAY,
    ):
        self.repository = repository
        self.blob_store = blob_store
        # Shared with BackupService: backup and restore never overlap
        self.lock = lock or asyncio.Lock()
        self.notifications = notifications or NullNotificationSink()
        self.cleanup_delay = cleanup_delay
        self._cleanup_tasks: Set[asyncio.Task] = set()
        self._pending_paths: Set[Path] = set()

    @property
    def database_path(self) -> Path:
        return self.repository.database_path

    @property
    def blobs_dir(self) -> Path:
        return self.blob_store.root

    def _artifact_path(self, live: Path, marker: str, stamp: str) -> Path:
        return live.with_name(f"{live.name}{marker}{stamp}")

    # Verification and staging

    def _stage(self, archive: bytes, stamp: str) -> StagedRestore:
        """Verify every archived file and write it beside the live data.

        Raises ChecksumMismatch/ArchiveFormatError on the first bad entry,
        and ArchiveFormatError if the staged database won't open;
        whatever was staged so far is removed.
        """
        staged = StagedRestore(
            database_path=self._artifact_path(self.database_path, STAGING_MARKER, stamp),
            blobs_dir=self._artifact_path(self.blobs_dir, STAGING_MARKER, stamp),
        )
        try:
            with SnapshotArchive(archive) as snapshot:
                staged.blobs_dir.mkdir(parents=True)
                for entry, data in snapshot.iter_verified():
                    if entry.path == DATABASE_ENTRY:
                        target = staged.database_path
                    else:
                        target = staged.blobs_dir / entry.path[len(BLOBS_PREFIX) + 1:]
                        target.parent.mkdir(parents=True, exist_ok=True)
                    write_file_synced(target, data)
                    staged.file_count += 1
            _check_database_file(staged.database_path)
            fsync_directory(self.database_path.parent)
        except OSError as e:
            self._discard_staging(staged)
            raise StorageIOError(
                "Failed to stage restored files",
                operation="restore_stage",
                path=str(staged.blobs_dir),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        except BaseException:
            self._discard_staging(staged)
            raise
        return staged

    def _discard_staging(self, staged: StagedRestore) -> None:
        sidecars = [
            staged.database_path.with_name(staged.database_path.name + suffix)
            for suffix in SQLITE_SIDECARS
        ]
        for path in [staged.database_path, staged.blobs_dir, *sidecars]:
            try:
                _remove_path(path)
            except OSError as e:
                logger.warning("Failed to remove staging path %s: %s", path, e)

    # Swap

    def _swap(self, staged: StagedRestore, stamp: str) -> List[Path]:
        """Rename live state aside and staged state into place.

        Returns the aside paths. On failure, renames already done are
        reversed and RestoreError is raised.
        """
        db_path = self.database_path
        blobs_dir = self.blobs_dir
        aside_db = self._artifact_path(db_path, PRE_RESTORE_MARKER, stamp)
        aside_blobs = self._artifact_path(blobs_dir, PRE_RESTORE_MARKER, stamp)

        # (original, moved_to) pairs, in the order performed
        moves = []

        def _move(src: Path, dst: Path) -> None:
            os.replace(src, dst)
            moves.append((src, dst))

        with self.repository.suspended():
            try:
                if db_path.exists():
                    _move(db_path, aside_db)
                for suffix in SQLITE_SIDECARS:
                    sidecar = db_path.with_name(db_path.name + suffix)
                    if sidecar.exists():
                        _move(sidecar, aside_db.with_name(aside_db.name + suffix))
                _move(staged.database_path, db_path)

                if blobs_dir.exists():
                    _move(blobs_dir, aside_blobs)
                _move(staged.blobs_dir, blobs_dir)
                self.repository.reopen()
            except (OSError, StorageIOError) as e:
                rolled_back = self._rollback(moves)
                self._discard_staging(staged)
                raise RestoreError(
                    "Failed to swap restored data into place",
                    rolled_back=rolled_back,
                    original_error=e,
                ) from e

        for directory in {db_path.parent, blobs_dir.parent}:
            try:
                fsync_directory(directory)
            except OSError as e:
                logger.warning("Could not fsync %s: %s", directory, e)

        return [dst for src, dst in moves if PRE_RESTORE_MARKER in dst.name]

    def _rollback(self, moves) -> bool:
        ok = True
        for src, dst in reversed(moves):
            try:
                os.replace(dst, src)
            except OSError as e:
                ok = False
                logger.error("Rollback of %s -> %s failed: %s", dst, src, e)
        if ok:
            logger.warning("Restore swap failed; live data rolled back")
        return ok

    # Deferred cleanup

    def _schedule_cleanup(self, paths: List[Path]) -> None:
        if not paths:
            return
        self._pending_paths.update(paths)
        task = asyncio.get_running_loop().create_task(self._cleanup_later(paths))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _cleanup_later(self, paths: List[Path]) -> None:
        try:
            await asyncio.sleep(self.cleanup_delay)
            await asyncio.to_thread(self._remove_quietly, paths)
        finally:
            self._pending_paths.difference_update(paths)

    @staticmethod
    def _remove_quietly(paths: List[Path]) -> None:
        for path in paths:
            try:
                _remove_path(path)
                logger.info("Removed pre-restore data: %s", path)
            except OSError as e:
                logger.warning("Failed to remove pre-restore data %s: %s", path, e)

    async def wait_for_cleanup(self) -> None:
        """Wait until every scheduled post-restore cleanup has run."""
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    def cancel_pending_cleanup(self) -> None:
        """Drop scheduled cleanups; the aside data stays on disk."""
        for task in list(self._cleanup_tasks):
            task.cancel()

    async def cleanup_stale_artifacts(self) -> List[Path]:
        """Remove pre-restore and staging leftovers of earlier processes.

        Paths still waiting on a cleanup scheduled by this service are kept.
        """
        async with self.lock:
            candidates = []
            for live in (self.database_path, self.blobs_dir):
                for marker in (PRE_RESTORE_MARKER, STAGING_MARKER):
                    candidates.extend(live.parent.glob(f"{live.name}{marker}*"))
            stale = [p for p in candidates if p not in self._pending_paths]
            await asyncio.to_thread(self._remove_quietly, stale)
            return stale

    # Restore

    async def restore_backup(self, backup_path: Union[str, Path], password: str) -> RestoreResult:
        """Restore live data from an encrypted backup.

        Either every file is replaced or nothing is: all entries are
        verified and staged before the live database and blob tree are
        renamed aside.

        Raises:
            BackupNotFoundError: No file at ``backup_path``.
            AuthenticationFailure: Wrong password or tampered file.
            ArchiveFormatError: Malformed archive or manifest.
            ChecksumMismatch: An archived file doesn't match the manifest.
            StorageIOError: Staging failed (live data untouched).
            RestoreError: The swap failed; see ``rolled_back``.
        """
        backup_path = Path(backup_path)
        async with self.lock:
            with timed_operation("restore_backup") as op:
                logger.info("Restoring backup: %s", backup_path)
                envelope = await asyncio.to_thread(read_backup_file, backup_path)
                archive = await asyncio.to_thread(decrypt, envelope, password)

                stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
                stage_task = asyncio.ensure_future(asyncio.to_thread(self._stage, archive, stamp))
                try:
                    staged = await asyncio.shield(stage_task)
                except asyncio.CancelledError:
                    await asyncio.wait([stage_task])
                    if not stage_task.cancelled() and stage_task.exception() is None:
                        self._discard_staging(stage_task.result())
                    raise
                op["files"] = staged.file_count

                # Not cancellable past this point
                swap_task = asyncio.ensure_future(asyncio.to_thread(self._swap, staged, stamp))
                try:
                    aside = await asyncio.shield(swap_task)
                except asyncio.CancelledError:
                    await asyncio.wait([swap_task])
                    if not swap_task.cancelled() and swap_task.exception() is None:
                        self._schedule_cleanup(swap_task.result())
                    raise

                self._schedule_cleanup(aside)
                logger.info(
                    "Restore complete: %d files from %s", staged.file_count, backup_path
                )

        emit(self.notifications, BACKUP_RESTORED, path=str(backup_path))
        return RestoreResult(
            backup_path=backup_path,
            file_count=staged.file_count,
            blob_count=staged.file_count - 1,
            aside_paths=aside,
        )
