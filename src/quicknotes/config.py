"""Configuration module for QuickNotes."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from quicknotes.crypto import KdfParams

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: lives alongside the application data
_USER_ENV = Path.home() / ".quicknotes" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

DEFAULT_RETENTION_COUNT = 10

# Argon2 lower bounds (RFC 9106): memory must cover 8 KiB per lane
_MIN_KDF_TIME_COST = 1
_MIN_KDF_MEMORY_PER_LANE = 8


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value).expanduser() if value else None


class QuickNotesConfig(BaseModel):
    """Configuration for the QuickNotes storage core."""

    # Application data directory: database, blobs and (by default) backups
    data_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("QUICKNOTES_DATA_DIR", str(Path.home() / ".quicknotes" / "data"))
        ).expanduser()
    )
    database_filename: str = Field(
        default_factory=lambda: os.getenv("QUICKNOTES_DATABASE_FILENAME", "db.sqlite")
    )
    blobs_dirname: str = Field(
        default_factory=lambda: os.getenv("QUICKNOTES_BLOBS_DIRNAME", "blobs")
    )
    # Custom backup location; None means <data_dir>/backups
    backup_dir: Optional[Path] = Field(
        default_factory=lambda: _env_path("QUICKNOTES_BACKUP_DIR")
    )
    # Used when the settings table has no backup_retention_count entry
    backup_retention_count: int = Field(
        default_factory=lambda: int(
            os.getenv("QUICKNOTES_BACKUP_RETENTION_COUNT", str(DEFAULT_RETENTION_COUNT))
        )
    )
    # Argon2id cost parameters for backup encryption
    kdf_time_cost: int = Field(
        default_factory=lambda: int(os.getenv("QUICKNOTES_KDF_TIME_COST", "2"))
    )
    kdf_memory_cost: int = Field(
        default_factory=lambda: int(os.getenv("QUICKNOTES_KDF_MEMORY_COST", "19456"))
    )
    kdf_parallelism: int = Field(
        default_factory=lambda: int(os.getenv("QUICKNOTES_KDF_PARALLELISM", "1"))
    )
    # Grace period before the pre-restore database and blobs are deleted
    # Service name the auto-backup password is stored under in the OS keyring
    keyring_service: str = Field(
        default_factory=lambda: os.getenv("QUICKNOTES_KEYRING_SERVICE", "QuickNotes")
    )
    restore_cleanup_delay: float = Field(
        default_factory=lambda: float(
            os.getenv("QUICKNOTES_RESTORE_CLEANUP_DELAY", "300")
        )
    )
    # Logging
    log_dir: Optional[Path] = Field(
        default_factory=lambda: _env_path("QUICKNOTES_LOG_DIR")
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("QUICKNOTES_LOG_LEVEL", "INFO")
    )

    @model_validator(mode="after")
    def _validate_backup_config(self) -> "QuickNotesConfig":
        """Reject retention and KDF settings that cannot work."""
        if self.backup_retention_count < 1:
            raise ValueError("backup_retention_count must be >= 1")
        if self.kdf_time_cost < _MIN_KDF_TIME_COST:
            raise ValueError("kdf_time_cost must be >= 1")
        if self.kdf_parallelism < 1:
            raise ValueError("kdf_parallelism must be >= 1")
        if self.kdf_memory_cost < _MIN_KDF_MEMORY_PER_LANE * self.kdf_parallelism:
            raise ValueError("kdf_memory_cost must be >= 8 KiB per lane")
        if self.restore_cleanup_delay < 0:
            raise ValueError("restore_cleanup_delay must be >= 0")
        if self.kdf_memory_cost < 19456:
            logger.warning(
                "kdf_memory_cost=%d KiB is below the recommended 19456 KiB; "
                "backups will be cheaper to brute-force.",
                self.kdf_memory_cost,
            )
        return self

    def get_database_path(self) -> Path:
        """Get the path of the live SQLite database file."""
        return self.data_dir / self.database_filename

    def get_blobs_dir(self) -> Path:
        """Get the root of the live blob tree."""
        return self.data_dir / self.blobs_dirname

    def get_backup_dir(self) -> Path:
        """Get the backup directory, honouring a custom location if set."""
        if self.backup_dir is not None:
            return self.backup_dir
        return self.data_dir / "backups"

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_database_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_kdf_params(self) -> KdfParams:
        """Key-derivation parameters for new backups."""
        return KdfParams(
            time_cost=self.kdf_time_cost,
            memory_cost=self.kdf_memory_cost,
            parallelism=self.kdf_parallelism,
        )


# Create a global config instance
config = QuickNotesConfig()
