"""Custom exceptions for QuickNotes.

Provides a structured exception hierarchy with error codes and
machine-readable error information for the backup and storage core.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Lookup errors (1xxx)
    NOT_FOUND = 1001
    BLOB_NOT_FOUND = 1002
    BACKUP_NOT_FOUND = 1003
    NOTE_NOT_FOUND = 1004
    ATTACHMENT_NOT_FOUND = 1005

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_RENAME_FAILED = 4004

    # Crypto errors (5xxx)
    AUTHENTICATION_FAILED = 5001
    ENCRYPTION_FAILED = 5002

    # Archive errors (55xx)
    ARCHIVE_MALFORMED = 5501
    CHECKSUM_MISMATCH = 5502

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002
    CREDENTIAL_STORE_FAILED = 6003

    # Operation errors (7xxx)
    VALIDATION_FAILED = 7001
    PATH_TRAVERSAL_DETECTED = 7005
    BACKUP_IN_PROGRESS = 7101
    RESTORE_FAILED = 7102


class QuickNotesError(Exception):
    """Base exception for all QuickNotes errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(QuickNotesError):
    """Raised when a stored object cannot be found."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.NOT_FOUND,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code, details=details)


class BlobNotFoundError(NotFoundError):
    """Raised when no blob exists for an identifier."""

    def __init__(self, blob_hash: str):
        super().__init__(
            f"Blob not found: {blob_hash}",
            code=ErrorCode.BLOB_NOT_FOUND,
            details={"blob_hash": blob_hash}
        )
        self.blob_hash = blob_hash


class BackupNotFoundError(NotFoundError):
    """Raised when a backup file or record is missing."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(
            message or "Backup file not found",
            code=ErrorCode.BACKUP_NOT_FOUND,
            details={"path_hint": path.split("/")[-1] if "/" in path else path}
        )
        self.path = path


class StorageIOError(QuickNotesError):
    """Raised for disk read/write failures."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class AuthenticationFailure(QuickNotesError):
    """Raised when an envelope cannot be decrypted.

    Covers both a wrong password and a tampered envelope; the two
    are never distinguished.
    """

    def __init__(self, message: str = "Wrong password or corrupted backup"):
        super().__init__(message, code=ErrorCode.AUTHENTICATION_FAILED)


class EncryptionError(QuickNotesError):
    """Raised when key derivation or encryption cannot be performed."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.ENCRYPTION_FAILED, details=details)
        self.original_error = original_error


class ArchiveFormatError(QuickNotesError):
    """Raised for a malformed envelope, archive or manifest."""

    def __init__(
        self,
        message: str,
        entry: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if entry:
            details["entry"] = entry
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.ARCHIVE_MALFORMED, details=details)
        self.entry = entry
        self.original_error = original_error


class ChecksumMismatch(QuickNotesError):
    """Raised when archived bytes do not match their manifest entry."""

    def __init__(self, path: str, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {path}",
            code=ErrorCode.CHECKSUM_MISMATCH,
            details={"path": path, "expected": expected[:16], "actual": actual[:16]}
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class ConfigurationError(QuickNotesError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class InvalidBackupPathError(QuickNotesError):
    """Raised when a backup path resolves outside the backup directory."""

    def __init__(self, path: str):
        super().__init__(
            "Invalid backup path: must be within the backups directory",
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            details={"path_hint": path.split("/")[-1] if "/" in path else path}
        )
        self.path = path


class BackupInProgressError(QuickNotesError):
    """Raised when a backup or restore is already running."""

    def __init__(self, message: str = "A backup or restore is already in progress"):
        super().__init__(message, code=ErrorCode.BACKUP_IN_PROGRESS)


class RestoreError(QuickNotesError):
    """Raised when the live-state swap of a restore fails."""

    def __init__(
        self,
        message: str,
        rolled_back: bool = False,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {"rolled_back": rolled_back}
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.RESTORE_FAILED, details=details)
        self.rolled_back = rolled_back
        self.original_error = original_error


class CredentialStoreError(QuickNotesError):
    """Raised when the OS credential store cannot be used."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.CREDENTIAL_STORE_FAILED, details=details)
        self.original_error = original_error
