"""Relational store for notes, attachments, settings and backup records."""

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Set, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.engine import Engine

from quicknotes.exceptions import ErrorCode, NotFoundError, StorageIOError
from quicknotes.models.db_models import (
    DBAttachment,
    DBBackup,
    DBNote,
    DBSetting,
    get_session_factory,
    init_db,
)
from quicknotes.models.schema import (
    Attachment,
    BackupRecord,
    Note,
    ensure_timezone_aware,
    utc_now,
)

logger = logging.getLogger(__name__)


class NoteRepository:
    """SQLite-backed repository shared by the application services.

    All access goes through one re-entrant lock so that a restore can
    suspend the repository, swap the database file underneath it and
    reopen it without a query slipping in between.
    """

    def __init__(self, database_path: Union[str, Path]):
        self._database_path = Path(database_path)
        self._lock = threading.RLock()
        self._engine: Optional[Engine] = None
        self._session_factory = None
        self._open()

    def _open(self) -> None:
        self._engine = init_db(self._database_path)
        self._session_factory = get_session_factory(self._engine)
        logger.debug("Opened database: %s", self._database_path)

    def _session(self):
        if self._session_factory is None:
            raise StorageIOError(
                "Repository is closed",
                operation="session",
                path=str(self._database_path),
            )
        return self._session_factory()

    @property
    def database_path(self) -> Path:
        """Path of the live database file."""
        return self._database_path

    def close(self) -> None:
        """Dispose of the connection pool."""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def reopen(self) -> None:
        """Close and reopen whatever database file is at the live path.

        Raises:
            StorageIOError: If the file cannot be opened as the note database.
                The repository is left closed.
        """
        with self._lock:
            self.close()
            try:
                self._open()
            except SQLAlchemyError as e:
                raise StorageIOError(
                    "Failed to open database",
                    operation="open",
                    path=str(self._database_path),
                    original_error=e,
                ) from e

    @contextmanager
    def suspended(self) -> Iterator[None]:
        """Close all connections and block access for the duration.

        Used by restore while it renames the database file. The body may
        call :meth:`reopen` to check the new file while access is still
        blocked; otherwise the database is reopened on exit.
        """
        with self._lock:
            self.close()
            try:
                yield
            except BaseException:
                if self._session_factory is None:
                    self._reopen_after_failure()
                raise
            if self._session_factory is None:
                self._open()

    def _reopen_after_failure(self) -> None:
        # The body's exception is already propagating; don't mask it
        try:
            self._open()
        except SQLAlchemyError as e:
            logger.error("Database could not be reopened at %s: %s", self._database_path, e)

    def snapshot_database(self, dest: Union[str, Path]) -> Path:
        """Write a consistent copy of the database to ``dest``.

        Uses SQLite's online backup API, which is safe while other
        connections are writing and folds in pending WAL content.
        """
        dest = Path(dest)
        try:
            source_conn = sqlite3.connect(str(self._database_path))
            dest_conn = sqlite3.connect(str(dest))
            try:
                source_conn.backup(dest_conn)
            finally:
                dest_conn.close()
                source_conn.close()
        except sqlite3.Error as e:
            raise StorageIOError(
                "Database snapshot failed",
                operation="snapshot_database",
                path=str(self._database_path),
                original_error=e,
            ) from e
        return dest

    # Notes

    def create_note(self, title: str, content: str = "") -> Note:
        with self._lock, self._session() as session:
            now = utc_now()
            db_note = DBNote(
                id=str(uuid.uuid4()),
                title=title,
                content=content,
                created_at=now,
                updated_at=now,
            )
            session.add(db_note)
            session.commit()
            return Note.model_validate(db_note)

    def get_note(self, note_id: str) -> Optional[Note]:
        with self._lock, self._session() as session:
            db_note = session.get(DBNote, note_id)
            return Note.model_validate(db_note) if db_note else None

    def list_notes(self) -> List[Note]:
        with self._lock, self._session() as session:
            rows = session.scalars(select(DBNote).order_by(DBNote.created_at)).all()
            return [Note.model_validate(row) for row in rows]

    def delete_note(self, note_id: str) -> None:
        """Delete a note and its attachment records.

        Raises:
            NotFoundError: If the note does not exist.
        """
        with self._lock, self._session() as session:
            db_note = session.get(DBNote, note_id)
            if db_note is None:
                raise NotFoundError(
                    f"Note with ID '{note_id}' not found",
                    code=ErrorCode.NOTE_NOT_FOUND,
                    details={"note_id": note_id},
                )
            session.delete(db_note)
            session.commit()

    # Attachments

    def add_attachment(
        self,
        note_id: str,
        blob_hash: str,
        filename: str,
        mime_type: str,
        size: int,
    ) -> Attachment:
        with self._lock, self._session() as session:
            if session.get(DBNote, note_id) is None:
                raise NotFoundError(
                    f"Note with ID '{note_id}' not found",
                    code=ErrorCode.NOTE_NOT_FOUND,
                    details={"note_id": note_id},
                )
            db_attachment = DBAttachment(
                id=str(uuid.uuid4()),
                note_id=note_id,
                blob_hash=blob_hash,
                filename=filename,
                mime_type=mime_type,
                size=size,
                created_at=utc_now(),
            )
            session.add(db_attachment)
            session.commit()
            return Attachment.model_validate(db_attachment)

    def get_attachment(self, attachment_id: str) -> Optional[Attachment]:
        with self._lock, self._session() as session:
            row = session.get(DBAttachment, attachment_id)
            return Attachment.model_validate(row) if row else None

    def list_attachments(self, note_id: Optional[str] = None) -> List[Attachment]:
        with self._lock, self._session() as session:
            stmt = select(DBAttachment).order_by(DBAttachment.created_at)
            if note_id is not None:
                stmt = stmt.where(DBAttachment.note_id == note_id)
            return [Attachment.model_validate(row) for row in session.scalars(stmt).all()]

    def delete_attachment(self, attachment_id: str) -> None:
        """Delete an attachment record. The blob itself is left in place."""
        with self._lock, self._session() as session:
            row = session.get(DBAttachment, attachment_id)
            if row is None:
                raise NotFoundError(
                    f"Attachment with ID '{attachment_id}' not found",
                    code=ErrorCode.ATTACHMENT_NOT_FOUND,
                    details={"attachment_id": attachment_id},
                )
            session.delete(row)
            session.commit()

    def list_referenced_blobs(self) -> Set[str]:
        """Blob hashes referenced by at least one attachment."""
        with self._lock, self._session() as session:
            return set(session.scalars(select(DBAttachment.blob_hash).distinct()).all())

    # Settings

    def get_setting(self, key: str) -> Optional[str]:
        with self._lock, self._session() as session:
            row = session.get(DBSetting, key)
            return row.value if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self._lock, self._session() as session:
            session.merge(DBSetting(key=key, value=value))
            session.commit()
        logger.debug("Set setting: %s = %s", key, value)

    # Backup records

    def record_backup(
        self,
        path: str,
        size: int,
        manifest_hash: str,
        timestamp=None,
    ) -> BackupRecord:
        """Persist metadata for a backup file that now exists on disk."""
        with self._lock, self._session() as session:
            row = DBBackup(
                id=str(uuid.uuid4()),
                timestamp=ensure_timezone_aware(timestamp or utc_now()),
                path=path,
                size=size,
                manifest_hash=manifest_hash,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            logger.debug("Recorded backup: %s", row.id)
            return BackupRecord.model_validate(row)

    def list_backups(self) -> List[BackupRecord]:
        """All backup records, newest first."""
        with self._lock, self._session() as session:
            rows = session.scalars(
                select(DBBackup).order_by(DBBackup.timestamp.desc())
            ).all()
            return [BackupRecord.model_validate(row) for row in rows]

    def get_backup(self, backup_id: str) -> Optional[BackupRecord]:
        with self._lock, self._session() as session:
            row = session.get(DBBackup, backup_id)
            return BackupRecord.model_validate(row) if row else None

    def delete_backup(self, backup_id: str) -> bool:
        """Delete a backup record. Returns False if it did not exist."""
        with self._lock, self._session() as session:
            row = session.get(DBBackup, backup_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
        logger.debug("Deleted backup record: %s", backup_id)
        return True
