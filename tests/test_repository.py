"""Tests for the SQLite note repository."""
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from quicknotes.exceptions import NotFoundError, StorageIOError


class TestNotes:
    """Note and attachment records."""

    def test_create_and_get_note(self, repository):
        note = repository.create_note("Groceries", "milk\n")
        fetched = repository.get_note(note.id)
        assert fetched.title == "Groceries"
        assert fetched.content == "milk\n"

    def test_list_and_delete(self, repository):
        first = repository.create_note("one")
        repository.create_note("two")
        assert [n.title for n in repository.list_notes()] == ["one", "two"]
        repository.delete_note(first.id)
        assert [n.title for n in repository.list_notes()] == ["two"]

    def test_delete_missing_note(self, repository):
        with pytest.raises(NotFoundError):
            repository.delete_note("missing")

    def test_attachments(self, repository):
        note = repository.create_note("with photo")
        attachment = repository.add_attachment(note.id, "a" * 64, "photo.png", "image/png", 3)
        assert repository.get_attachment(attachment.id).filename == "photo.png"
        assert [a.id for a in repository.list_attachments(note.id)] == [attachment.id]
        assert repository.list_referenced_blobs() == {"a" * 64}

        repository.delete_attachment(attachment.id)
        assert repository.list_attachments() == []

    def test_attachment_requires_note(self, repository):
        with pytest.raises(NotFoundError):
            repository.add_attachment("missing", "a" * 64, "x", "text/plain", 1)

    def test_deleting_note_removes_attachments(self, repository):
        note = repository.create_note("doomed")
        repository.add_attachment(note.id, "b" * 64, "f.txt", "text/plain", 1)
        repository.delete_note(note.id)
        assert repository.list_attachments() == []


class TestSettingsAndBackups:
    """Settings and backup records."""

    def test_settings(self, repository):
        assert repository.get_setting("backup_retention_count") is None
        repository.set_setting("backup_retention_count", "3")
        repository.set_setting("backup_retention_count", "4")
        assert repository.get_setting("backup_retention_count") == "4"

    def test_backup_records_newest_first(self, repository):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            repository.record_backup(f"/b/{i}.qnb", 100 + i, "f" * 64, timestamp=base + timedelta(hours=i))
        records = repository.list_backups()
        assert [r.path for r in records] == ["/b/2.qnb", "/b/1.qnb", "/b/0.qnb"]
        assert records[0].timestamp.tzinfo is not None

    def test_get_and_delete_backup(self, repository):
        record = repository.record_backup("/b/x.qnb", 10, "e" * 64)
        assert repository.get_backup(record.id).size == 10
        assert repository.delete_backup(record.id) is True
        assert repository.delete_backup(record.id) is False
        assert repository.get_backup(record.id) is None


class TestLifecycle:
    """Snapshots, suspension and closing."""

    def test_snapshot_database(self, repository, tmp_path):
        repository.create_note("snap me")
        dest = repository.snapshot_database(tmp_path / "copy.sqlite")
        conn = sqlite3.connect(str(dest))
        try:
            titles = [row[0] for row in conn.execute("SELECT title FROM notes")]
        finally:
            conn.close()
        assert titles == ["snap me"]

    def test_suspended_reopens(self, repository):
        repository.create_note("before")
        with repository.suspended():
            pass
        assert [n.title for n in repository.list_notes()] == ["before"]

    def test_suspended_picks_up_replaced_file(self, repository, tmp_path):
        repository.create_note("original")
        other = tmp_path / "other.sqlite"
        repository.snapshot_database(other)
        repository.create_note("later")

        with repository.suspended():
            for suffix in ("-wal", "-shm"):
                sidecar = repository.database_path.with_name(repository.database_path.name + suffix)
                sidecar.unlink(missing_ok=True)
            other.replace(repository.database_path)

        assert [n.title for n in repository.list_notes()] == ["original"]

    def test_reopen_rejects_non_database(self, repository, tmp_path):
        live = repository.database_path
        kept = tmp_path / "kept.sqlite"
        repository.create_note("kept")

        with repository.suspended():
            for suffix in ("-wal", "-shm"):
                live.with_name(live.name + suffix).unlink(missing_ok=True)
            live.replace(kept)
            live.write_bytes(b"this is not sqlite" * 100)
            with pytest.raises(StorageIOError):
                repository.reopen()
            live.unlink()
            kept.replace(live)

        assert [n.title for n in repository.list_notes()] == ["kept"]

    def test_suspended_reopens_when_body_fails(self, repository):
        repository.create_note("survivor")
        with pytest.raises(RuntimeError):
            with repository.suspended():
                raise RuntimeError("swap failed")
        assert [n.title for n in repository.list_notes()] == ["survivor"]

    def test_closed_repository_raises(self, repository):
        repository.close()
        with pytest.raises(StorageIOError):
            repository.list_notes()
