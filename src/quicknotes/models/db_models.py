"""SQLAlchemy database models for QuickNotes."""
import datetime
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import (Column, DateTime, ForeignKey, Integer, String, Text,
                        create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

# Create base class for SQLAlchemy models
Base = declarative_base()


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(36), primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False, index=True)

    # Relationships
    attachments = relationship(
        "DBAttachment",
        back_populates="note",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBAttachment(Base):
    """Database model for a file attached to a note.

    The bytes live in the blob store under ``blob_hash``; several
    attachments may share one blob.
    """
    __tablename__ = "attachments"
    id = Column(String(36), primary_key=True)
    note_id = Column(String(36), ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True)
    blob_hash = Column(String(64), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    mime_type = Column(String(255), nullable=False)
    size = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    note = relationship("DBNote", back_populates="attachments")

    def __repr__(self) -> str:
        """Return string representation of attachment."""
        return f"<Attachment(id='{self.id}', filename='{self.filename}')>"


class DBBackup(Base):
    """Database model for a backup record.

    Records outlive their files: retention deletes old backup files
    but keeps the rows for history.
    """
    __tablename__ = "backups"
    id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    path = Column(Text, nullable=False)
    size = Column(Integer, nullable=False)
    manifest_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of backup."""
        return f"<Backup(id='{self.id}', path='{self.path}')>"


class DBSetting(Base):
    """Key/value application setting."""
    __tablename__ = "settings"
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)


def init_db(database_path: Optional[Union[str, Path]] = None) -> Engine:
    """Initialize the database with hardened configuration.

    Applies SQLite settings for crash resilience:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode
    - Foreign keys enforced so attachments follow their note
    """
    if database_path is None:
        from quicknotes.config import config
        url = config.get_db_url()
    else:
        db_path = Path(database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"

    engine = create_engine(url, pool_pre_ping=True)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
