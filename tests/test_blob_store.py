"""Tests for the content-addressed blob store."""
import hashlib
from pathlib import Path

import pytest

import quicknotes.storage.blob_store as blob_store_module
from quicknotes.exceptions import BlobNotFoundError
from quicknotes.storage.blob_store import BlobStore

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class TestBlobStore:
    """Tests for BlobStore read/write/delete."""

    def test_write_returns_sha256_hex(self, blob_store):
        data = b"hello world"
        blob_hash = blob_store.write(data)
        assert blob_hash == hashlib.sha256(data).hexdigest()
        assert blob_store.read(blob_hash) == data

    def test_fan_out_layout(self, blob_store):
        blob_hash = blob_store.write(b"fan out")
        path = blob_store.get_path(blob_hash)
        assert path == blob_store.root / blob_hash[:2] / blob_hash[2:4] / blob_hash
        assert path.is_file()

    def test_write_is_deduplicated(self, blob_store):
        first = blob_store.write(b"same bytes")
        second = blob_store.write(b"same bytes")
        assert first == second
        assert blob_store.list_all() == [first]

    def test_write_leaves_no_temp_files(self, blob_store):
        blob_hash = blob_store.write(b"\x00" * 4096)
        files = [p for p in blob_store.root.rglob("*") if p.is_file()]
        assert [p.name for p in files] == [blob_hash]

    def test_empty_blob(self, blob_store):
        blob_hash = blob_store.write(b"")
        assert blob_hash == EMPTY_SHA256
        assert blob_store.read(blob_hash) == b""

    def test_read_missing_raises(self, blob_store):
        with pytest.raises(BlobNotFoundError):
            blob_store.read("a" * 64)

    def test_read_malformed_identifier_raises(self, blob_store):
        with pytest.raises(BlobNotFoundError):
            blob_store.read("../../etc/passwd")

    def test_exists(self, blob_store):
        blob_hash = blob_store.write(b"present")
        assert blob_store.exists(blob_hash)
        assert not blob_store.exists("0" * 64)
        assert not blob_store.exists("not-a-hash")
        assert not blob_store.exists(blob_hash.upper())

    def test_delete_is_idempotent(self, blob_store):
        blob_hash = blob_store.write(b"to delete")
        blob_store.delete(blob_hash)
        assert not blob_store.exists(blob_hash)
        blob_store.delete(blob_hash)
        blob_store.delete("nonsense")

    def test_list_all_sorted_and_filtered(self, blob_store):
        hashes = [blob_store.write(bytes([i])) for i in range(5)]
        # Strays that must never be reported as blobs
        stray_dir = blob_store.root / "ab" / "cd"
        stray_dir.mkdir(parents=True, exist_ok=True)
        (stray_dir / ("f" * 64 + ".123.abc.tmp")).write_bytes(b"partial")
        (blob_store.root / "README").write_text("not a blob")
        assert blob_store.list_all() == sorted(hashes)

    def test_list_all_missing_root(self, tmp_path):
        store = BlobStore(tmp_path / "does-not-exist")
        assert store.list_all() == []

    def test_calculate_hash_matches_write(self, blob_store):
        data = bytes(range(256))
        assert BlobStore.calculate_hash(data) == blob_store.write(data)

    def test_overlapping_writes_of_same_object(self, blob_store, monkeypatch):
        """A second writer finishing first must not break the first one."""
        data = b"written twice at once"
        real_replace = blob_store_module.os.replace
        temp_names = []

        def replace_after_racing_writer(src, dst):
            temp_names.append(Path(src).name)
            if len(temp_names) == 1:
                # The other writer gets in between our temp write and rename
                blob_store.write(data)
            return real_replace(src, dst)

        monkeypatch.setattr(blob_store_module.os, "replace", replace_after_racing_writer)

        blob_hash = blob_store.write(data)
        assert len(set(temp_names)) == 2
        assert blob_store.read(blob_hash) == data
        files = [p for p in blob_store.root.rglob("*") if p.is_file()]
        assert [p.name for p in files] == [blob_hash]
