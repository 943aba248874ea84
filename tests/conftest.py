"""Common test fixtures for QuickNotes."""

import asyncio
import tempfile
from pathlib import Path

import keyring
import pytest

from quicknotes.backup import BackupManager
from quicknotes.config import config
from quicknotes.notifications import RecordingNotificationSink
from quicknotes.services.attachments import AttachmentService
from quicknotes.services.backup_service import BackupService
from quicknotes.services.restore_service import RestoreService
from quicknotes.storage.blob_store import BlobStore
from quicknotes.storage.repository import NoteRepository
from tests.helpers import FAST_KDF, MemoryKeyring


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_dirs():
    """Create temporary directories for live data and backups."""
    with tempfile.TemporaryDirectory() as data_dir:
        with tempfile.TemporaryDirectory() as backup_dir:
            yield Path(data_dir), Path(backup_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    data_dir, backup_dir = temp_dirs
    monkeypatch.setattr(config, "data_dir", data_dir)
    monkeypatch.setattr(config, "backup_dir", backup_dir)
    monkeypatch.setattr(config, "log_dir", data_dir / "logs")
    monkeypatch.setattr(config, "kdf_time_cost", FAST_KDF.time_cost)
    monkeypatch.setattr(config, "kdf_memory_cost", FAST_KDF.memory_cost)
    monkeypatch.setattr(config, "kdf_parallelism", FAST_KDF.parallelism)
    monkeypatch.setattr(config, "restore_cleanup_delay", 0.0)
    monkeypatch.setattr(config, "backup_retention_count", 10)
    yield config


@pytest.fixture
def repository(test_config):
    """Create a test note repository."""
    repo = NoteRepository(test_config.get_database_path())
    yield repo
    repo.close()


@pytest.fixture
def blob_store(test_config):
    """Create an initialized blob store under the test data dir."""
    store = BlobStore(test_config.get_blobs_dir())
    store.initialize()
    return store


@pytest.fixture
def notifications():
    return RecordingNotificationSink()


@pytest.fixture
def backup_lock():
    return asyncio.Lock()


@pytest.fixture
def backup_service(repository, blob_store, test_config, backup_lock, notifications):
    return BackupService(
        repository,
        blob_store,
        backup_dir=test_config.get_backup_dir(),
        lock=backup_lock,
        kdf_params=FAST_KDF,
        notifications=notifications,
    )


@pytest.fixture
def restore_service(repository, blob_store, backup_lock, notifications):
    service = RestoreService(
        repository,
        blob_store,
        lock=backup_lock,
        notifications=notifications,
        cleanup_delay=0.0,
    )
    yield service
    service.cancel_pending_cleanup()


@pytest.fixture
def attachment_service(repository, blob_store):
    return AttachmentService(repository, blob_store)


@pytest.fixture
def backup_manager(test_config, notifications):
    """BackupManager built from the test configuration."""
    manager = BackupManager(test_config, notifications=notifications)
    yield manager
    manager.close()


@pytest.fixture
def memory_keyring():
    """Swap the OS keyring for an in-memory backend."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)
