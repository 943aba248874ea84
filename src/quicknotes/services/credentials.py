"""Auto-backup password storage in the OS credential store.

Uses the ``keyring`` library, which picks the platform backend (Windows
Credential Manager, macOS Keychain, Secret Service on Linux). The password
is read when it is needed and never cached.
"""
import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from quicknotes.exceptions import ConfigurationError, CredentialStoreError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "QuickNotes"
AUTO_BACKUP_PASSWORD_KEY = "auto_backup_password"


class CredentialStore:
    """Stores the auto-backup password under ``service_name``."""

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        self.service_name = service_name

    def store_auto_backup_password(self, password: str) -> None:
        """Store (or replace) the auto-backup password.

        Raises:
            ConfigurationError: If ``password`` is empty.
            CredentialStoreError: If the credential store rejects it.
        """
        if not password:
            raise ConfigurationError(
                "Auto-backup password cannot be empty", config_key=AUTO_BACKUP_PASSWORD_KEY
            )
        try:
            keyring.set_password(self.service_name, AUTO_BACKUP_PASSWORD_KEY, password)
        except KeyringError as e:
            raise CredentialStoreError("Failed to store password", original_error=e) from e
        logger.info("Auto-backup password stored in credential store")

    def get_auto_backup_password(self) -> Optional[str]:
        """The stored password, or None if none is set.

        Raises:
            CredentialStoreError: If the credential store is unavailable.
        """
        try:
            return keyring.get_password(self.service_name, AUTO_BACKUP_PASSWORD_KEY)
        except KeyringError as e:
            raise CredentialStoreError("Failed to retrieve password", original_error=e) from e

    def delete_auto_backup_password(self) -> bool:
        """Remove the stored password. Returns False if none was set."""
        try:
            keyring.delete_password(self.service_name, AUTO_BACKUP_PASSWORD_KEY)
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            raise CredentialStoreError("Failed to delete password", original_error=e) from e
        logger.info("Auto-backup password deleted from credential store")
        return True

    def has_auto_backup_password(self) -> bool:
        try:
            return bool(self.get_auto_backup_password())
        except CredentialStoreError as e:
            logger.warning("Credential store unavailable: %s", e)
            return False
