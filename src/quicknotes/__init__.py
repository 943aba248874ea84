"""
QuickNotes - encrypted backup and restore for a personal note-taking app.

This package implements the storage core of QuickNotes: a content-addressed
blob store for attachments, a password-based cipher envelope, and the backup
and restore orchestrators that snapshot the SQLite database together with
every blob into a single verifiable, encrypted archive.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("quicknotes")
except PackageNotFoundError:
    __version__ = "0.9.0"
