"""Data lock — freezes a user's historical days against every overwrite.

A lock protects data by the date the health event happened, not by when it
was imported: with ``lock_date = 2025-08-01`` nothing dated on or before
that day can change, including manual entries.

Failing to read the lock settings is the one place the engine fails open.
Treating an unreadable lock as "locked forever" would silently stop all
ingestion, so callers opt into ``fail_open=True`` and get a warning
instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from vitalsync.core.storage.models import DataLock
from vitalsync.core.storage.repository import MetricsRepository
from vitalsync.domains.health.domain_logic.errors import LockCheckError
from vitalsync.domains.health.domain_logic.values import as_day

logger = logging.getLogger(__name__)

__all__ = ["DataLock", "DataLockGuard", "DataLockManager", "LockChange", "LockStatus"]


class DataLockGuard:
    """Answers "is this date frozen for this user?"."""

    def __init__(self, repository: MetricsRepository) -> None:
        self._repo = repository

    def load(self, user_id: str, *, fail_open: bool = False) -> DataLock:
        """Read a user's lock settings, e.g. once per import batch.

        Raises:
            LockCheckError: If the settings cannot be read and
                ``fail_open`` is False.
        """
        try:
            return self._repo.get_lock(user_id)
        except Exception as exc:
            if fail_open:
                logger.warning(
                    "Lock settings unreadable for %s, proceeding unlocked: %s", user_id, exc
                )
                return DataLock()
            raise LockCheckError(f"Cannot read data lock for {user_id}: {exc}") from exc

    def is_locked(
        self, user_id: str, day: date | datetime | str, *, fail_open: bool = False
    ) -> bool:
        """True if ``day`` is on or before the user's enabled lock date."""
        locked = self.load(user_id, fail_open=fail_open).covers(as_day(day))
        if locked:
            logger.debug("Date %s is locked for %s", as_day(day).isoformat(), user_id)
        return locked


@dataclass
class LockChange:
    """Result of changing a user's lock."""

    success: bool
    message: str
    protected_records_count: int = 0
    extended: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "protected_records_count": self.protected_records_count,
            "extended": self.extended,
        }


@dataclass
class LockStatus:
    """Current lock state for display."""

    enabled: bool
    lock_date: date | None
    protected_records_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "lock_date": self.lock_date.isoformat() if self.lock_date else None,
            "protected_records_count": self.protected_records_count,
        }


class DataLockManager:
    """Sets, extends, and removes a user's data lock."""

    def __init__(self, repository: MetricsRepository) -> None:
        self._repo = repository

    def set_lock(self, user_id: str, lock_date: date | datetime | str) -> LockChange:
        """Lock every day up to and including ``lock_date``.

        Moving the date later extends the protection; moving it earlier
        releases the days in between.
        """
        day = as_day(lock_date)
        previous = self._repo.get_lock(user_id)
        self._repo.save_lock(user_id, DataLock(enabled=True, lock_date=day))
        protected = self._repo.count_records_through(user_id, day)

        extended = bool(
            previous.enabled and previous.lock_date is not None and previous.lock_date < day
        )
        verb = "extended to" if extended else "locked up to"
        logger.info("Data lock for %s %s %s", user_id, verb, day.isoformat())
        return LockChange(
            success=True,
            message=(
                f"Data {verb} {day.isoformat()}. {protected} health records are now "
                "protected from overwrites based on their recorded dates."
            ),
            protected_records_count=protected,
            extended=extended,
        )

    def unlock_all(self, user_id: str) -> LockChange:
        """Remove the lock so imports may overwrite historical data again."""
        self._repo.save_lock(user_id, DataLock(enabled=False, lock_date=None))
        logger.info("Data lock removed for %s", user_id)
        return LockChange(
            success=True,
            message="All data unlocked. Historical data can now be overwritten by imports.",
        )

    def status(self, user_id: str) -> LockStatus:
        """Report whether a lock is active and how many records it covers."""
        lock = self._repo.get_lock(user_id)
        protected = 0
        if lock.enabled and lock.lock_date is not None:
            protected = self._repo.count_records_through(user_id, lock.lock_date)
        return LockStatus(
            enabled=lock.enabled, lock_date=lock.lock_date, protected_records_count=protected
        )
