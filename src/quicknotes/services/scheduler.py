"""Automatic backups on a fixed interval."""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from quicknotes.exceptions import ConfigurationError, ErrorCode
from quicknotes.models.schema import BackupRecord
from quicknotes.notifications import (
    BACKUP_FAILED,
    NotificationSink,
    NullNotificationSink,
    emit,
)
from quicknotes.services.backup_service import BackupService

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {"m": 60, "h": 3600, "d": 86400}
_NAMED = {"daily": ("d", 1), "weekly": ("d", 7), "monthly": ("d", 30)}
_FREQUENCY_RE = re.compile(r"^(\d+)([a-z])$")


@dataclass(frozen=True)
class BackupFrequency:
    """How often automatic backups run, e.g. ``30m``, ``2h``, ``1d``."""

    unit: str
    value: int

    @classmethod
    def parse(cls, text: str) -> "BackupFrequency":
        """Parse ``<n>m``, ``<n>h``, ``<n>d`` or daily/weekly/monthly.

        Raises:
            ConfigurationError: If the text is not a valid frequency.
        """
        s = text.strip().lower()
        if s in _NAMED:
            unit, value = _NAMED[s]
            return cls(unit, value)
        if not s:
            raise ConfigurationError("Empty frequency string", config_key="backup_frequency")
        match = _FREQUENCY_RE.match(s)
        if match is None:
            raise ConfigurationError(
                f"Invalid frequency: {text!r}", config_key="backup_frequency"
            )
        value, unit = int(match.group(1)), match.group(2)
        if unit not in _UNIT_SECONDS:
            raise ConfigurationError(
                f"Invalid frequency unit {unit!r}. Use 'm' (minutes), 'h' (hours), or 'd' (days)",
                config_key="backup_frequency",
            )
        if value == 0:
            raise ConfigurationError(
                "Frequency value must be greater than 0", config_key="backup_frequency"
            )
        return cls(unit, value)

    @property
    def interval_seconds(self) -> int:
        return self.value * _UNIT_SECONDS[self.unit]

    def __str__(self) -> str:
        return f"{self.value}{self.unit}"


PasswordProvider = Callable[[], Optional[str]]


class BackupScheduler:
    """Runs ``BackupService.create_backup`` every interval.

    The password comes from ``password_provider`` at each run, so a
    credential store can be consulted without keeping the password in
    memory. A failed run is reported and the schedule continues.
    """

    def __init__(
        self,
        backup_service: BackupService,
        password_provider: PasswordProvider,
        notifications: Optional[NotificationSink] = None,
    ):
        self.backup_service = backup_service
        self.password_provider = password_provider
        self.notifications = notifications or NullNotificationSink()
        self._task: Optional[asyncio.Task] = None
        self._frequency: Optional[BackupFrequency] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def frequency(self) -> Optional[BackupFrequency]:
        return self._frequency

    def _get_password(self) -> Optional[str]:
        try:
            return self.password_provider()
        except Exception as e:
            logger.error("Failed to retrieve auto-backup password: %s", e)
            return None

    async def run_once(self) -> Optional[BackupRecord]:
        """Run one automatic backup now.

        Returns the new record, or None if the run was skipped or failed.
        """
        if self.backup_service.lock.locked():
            logger.info("Skipping scheduled backup: another backup or restore is running")
            return None

        password = self._get_password()
        if not password:
            emit(
                self.notifications, BACKUP_FAILED,
                reason="Could not retrieve backup password", automatic=True,
            )
            return None

        logger.info("Running scheduled automatic backup")
        try:
            return await self.backup_service.create_backup(password)
        except Exception as e:
            logger.error("Automatic backup failed: %s", e, exc_info=True)
            emit(self.notifications, BACKUP_FAILED, reason=str(e), automatic=True)
            return None

    async def _loop(self, frequency: BackupFrequency) -> None:
        while True:
            await asyncio.sleep(frequency.interval_seconds)
            await self.run_once()

    async def schedule(self, frequency: BackupFrequency, enabled: bool = True) -> None:
        """Replace the current schedule.

        Raises:
            ConfigurationError: If enabling without an available password.
        """
        await self.stop()
        if not enabled:
            logger.info("Automatic backups disabled")
            return
        if not self._get_password():
            raise ConfigurationError(
                "Auto-backup password not set",
                config_key="auto_backup_password",
                code=ErrorCode.CONFIG_MISSING,
            )
        self._frequency = frequency
        self._task = asyncio.get_running_loop().create_task(self._loop(frequency))
        logger.info("Automatic backup scheduled every %s", frequency)

    async def stop(self) -> None:
        """Cancel the schedule, interrupting a running automatic backup."""
        task, self._task = self._task, None
        self._frequency = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Automatic backup schedule stopped")
