"""Shared test helpers for building backup archives by hand."""
import io
import zipfile
from pathlib import Path
from typing import Dict, Optional, Tuple

from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from quicknotes.crypto import KdfParams, encrypt
from quicknotes.models.schema import MANIFEST_ENTRY, BackupManifest, FileEntry
from quicknotes.utils import sha256_hex

# Cheapest Argon2id parameters accepted; keeps the suite fast
FAST_KDF = KdfParams(time_cost=1, memory_cost=8, parallelism=1)


def build_archive(
    files: Dict[str, bytes],
    manifest: Optional[BackupManifest] = None,
    include_manifest: bool = True,
) -> bytes:
    """Zip ``files`` with a manifest listing them (or the one given)."""
    if manifest is None:
        manifest = BackupManifest(
            files=[
                FileEntry(path=path, size=len(data), checksum=sha256_hex(data))
                for path, data in files.items()
            ]
        )
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, data in files.items():
            zf.writestr(path, data)
        if include_manifest:
            zf.writestr(MANIFEST_ENTRY, manifest.to_json_bytes())
    return buffer.getvalue()


def write_encrypted_archive(path: Path, archive: bytes, password: str) -> Path:
    """Seal ``archive`` with ``password`` and write it to ``path``."""
    path.write_bytes(encrypt(archive, password, FAST_KDF).to_bytes())
    return path


class MemoryKeyring(KeyringBackend):
    """Keyring backend that keeps passwords in a dict."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords: Dict[Tuple[str, str], str] = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise PasswordDeleteError("Password not found") from None
