"""Utility functions for QuickNotes."""
import hashlib
import os
from pathlib import Path
from typing import Union


def sha256_hex(data: bytes) -> str:
    """Lowercase hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def fsync_directory(path: Union[str, Path]) -> None:
    """Flush a directory entry so a preceding rename survives a crash.

    Not supported on Windows, where opening a directory fails; the
    rename is still atomic there, only its durability is weaker.
    """
    if os.name == "nt":
        return
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_file_synced(path: Union[str, Path], *chunks: bytes) -> None:
    """Write ``chunks`` to ``path`` in order and fsync it before returning."""
    with open(path, "wb") as f:
        for chunk in chunks:
            f.write(chunk)
        f.flush()
        os.fsync(f.fileno())


def sanitize_for_log(text: str, max_length: int = 200) -> str:
    """Make an error message safe to log or store.

    Collapses the home directory to ``~``, removes newlines and
    truncates long messages.

    Examples:
        "/home/ann/notes/db.sqlite: denied" -> "~/notes/db.sqlite: denied"
    """
    if not text:
        return text
    result = text.replace(str(Path.home()), "~")
    result = result.replace("\r", " ").replace("\n", " ")
    result = " ".join(result.split())
    if len(result) > max_length:
        result = result[: max_length - 3] + "..."
    return result
