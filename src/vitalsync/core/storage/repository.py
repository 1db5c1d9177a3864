"""Metrics repository — the field metadata store behind the freshness engine.

The repository mediates between domain objects (HealthMetricRecord,
FieldMetadata, DataLock) and the SQLite database, using FieldEncryptor to
encrypt/decrypt metric values. Every field write is its own transaction and
is guarded by a compare-and-swap token (``FieldVersion``): the stored
``(source, recorded_at)`` pair the caller based its decision on.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import date, datetime, timezone
from typing import Any

from vitalsync.core.storage.database import HealthDatabase
from vitalsync.core.storage.encryption import FieldEncryptor
from vitalsync.core.storage.models import (
    ABSENT,
    DataLock,
    FieldMetadata,
    FieldVersion,
    HealthMetricRecord,
    StoredField,
)
from vitalsync.domains.health.domain_logic.errors import InvalidInputError
from vitalsync.domains.health.domain_logic.values import trusted_recorded_at

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when repository operations fail."""


class StaleWriteError(RepositoryError):
    """The field changed between the caller's read and its write."""


class MetricsRepository:
    """Per-field storage for daily health metrics.

    Usage::

        db = HealthDatabase(":memory:")
        db.initialize()
        repo = MetricsRepository(db, FieldEncryptor(key))

        state = repo.get_field_state("user-1", day, "steps")
        repo.write_field(
            "user-1", day, "steps", 8421, metadata,
            expected=state.version if state else ABSENT,
        )
    """

    def __init__(self, database: HealthDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Field reads
    # ------------------------------------------------------------------

    def get_field_state(self, user_id: str, day: date, field_name: str) -> StoredField | None:
        """Read one field cell with its metadata and CAS token.

        Returns:
            The stored field, or None if the record or field doesn't exist.
        """
        row = self._db.connection.execute(
            """SELECT f.field_name, f.value_enc, f.source, f.recorded_at, f.device_id, f.updated_at
               FROM metric_fields f JOIN health_metrics m ON m.id = f.record_id
               WHERE m.user_id = ? AND m.date = ? AND f.field_name = ?""",
            (user_id, day.isoformat(), field_name),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_field(row)

    def get_field_metadata(self, user_id: str, day: date) -> dict[str, FieldMetadata]:
        """Return metadata for every field of a day that has it."""
        rows = self._db.connection.execute(
            """SELECT f.field_name, f.source, f.recorded_at, f.device_id
               FROM metric_fields f JOIN health_metrics m ON m.id = f.record_id
               WHERE m.user_id = ? AND m.date = ?""",
            (user_id, day.isoformat()),
        ).fetchall()
        result: dict[str, FieldMetadata] = {}
        for row in rows:
            meta = self._parse_metadata(row["field_name"], row["source"], row["recorded_at"], row["device_id"])
            if meta is not None:
                result[row["field_name"]] = meta
        return result

    def iter_field_metadata(
        self, user_id: str, since: date, until: date
    ) -> list[tuple[date, str, FieldMetadata]]:
        """List ``(date, field, metadata)`` for a date range without decrypting values."""
        rows = self._db.connection.execute(
            """SELECT m.date, f.field_name, f.source, f.recorded_at, f.device_id
               FROM metric_fields f JOIN health_metrics m ON m.id = f.record_id
               WHERE m.user_id = ? AND m.date >= ? AND m.date <= ?
               ORDER BY m.date, f.field_name""",
            (user_id, since.isoformat(), until.isoformat()),
        ).fetchall()
        result: list[tuple[date, str, FieldMetadata]] = []
        for row in rows:
            meta = self._parse_metadata(row["field_name"], row["source"], row["recorded_at"], row["device_id"])
            if meta is not None:
                result.append((date.fromisoformat(row["date"]), row["field_name"], meta))
        return result

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_record(self, user_id: str, day: date) -> HealthMetricRecord | None:
        """Load the full record for a day, decrypting every value.

        Returns:
            The record, or None if nothing was ever accepted for that day.
        """
        row = self._db.connection.execute(
            "SELECT * FROM health_metrics WHERE user_id = ? AND date = ?",
            (user_id, day.isoformat()),
        ).fetchone()
        if row is None:
            return None
        return self._load_record(row)

    def get_records(
        self,
        user_id: str,
        *,
        since: date | None = None,
        until: date | None = None,
        limit: int = 100,
    ) -> list[HealthMetricRecord]:
        """Query records for a user, newest date first."""
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if since:
            conditions.append("date >= ?")
            params.append(since.isoformat())
        if until:
            conditions.append("date <= ?")
            params.append(until.isoformat())

        query = (
            "SELECT * FROM health_metrics WHERE "
            + " AND ".join(conditions)
            + " ORDER BY date DESC LIMIT ?"
        )
        params.append(limit)
        rows = self._db.connection.execute(query, params).fetchall()
        return [self._load_record(row) for row in rows]

    def count_records(self, user_id: str | None = None) -> int:
        """Return number of stored day records, optionally for one user."""
        if user_id is None:
            row = self._db.connection.execute("SELECT COUNT(*) FROM health_metrics").fetchone()
        else:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM health_metrics WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row[0]

    def count_records_through(self, user_id: str, day: date) -> int:
        """Count a user's day records dated on or before ``day``."""
        row = self._db.connection.execute(
            "SELECT COUNT(*) FROM health_metrics WHERE user_id = ? AND date <= ?",
            (user_id, day.isoformat()),
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_field(
        self,
        user_id: str,
        day: date,
        field_name: str,
        value: Any,
        metadata: FieldMetadata,
        *,
        expected: FieldVersion = ABSENT,
    ) -> FieldVersion:
        """Write a value and its metadata in one transaction.

        The write only lands if the stored cell still matches ``expected``.

        Args:
            user_id: Owner of the record.
            day: Calendar day of the record.
            field_name: Metric field to write.
            value: New value (JSON-serializable).
            metadata: Provenance for the new value.
            expected: CAS token from the read the decision was based on.

        Returns:
            The new CAS token of the cell.

        Raises:
            StaleWriteError: If another writer changed the cell first.
            RepositoryError: If the database write fails.
        """
        conn = self._db.connection
        now = self._now_iso()
        recorded_at = metadata.recorded_at.isoformat()
        value_enc = self._enc.encrypt(value)

        try:
            record_id = self._ensure_record(user_id, day, now)
            if expected.present:
                cursor = conn.execute(
                    """UPDATE metric_fields
                       SET value_enc = ?, source = ?, recorded_at = ?, device_id = ?, updated_at = ?
                       WHERE record_id = ? AND field_name = ?
                         AND source IS ? AND recorded_at IS ?""",
                    (
                        value_enc,
                        metadata.source,
                        recorded_at,
                        metadata.device_id,
                        now,
                        record_id,
                        field_name,
                        expected.source,
                        expected.recorded_at,
                    ),
                )
            else:
                cursor = conn.execute(
                    """INSERT INTO metric_fields
                       (record_id, field_name, value_enc, source, recorded_at, device_id, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(record_id, field_name) DO NOTHING""",
                    (
                        record_id,
                        field_name,
                        value_enc,
                        metadata.source,
                        recorded_at,
                        metadata.device_id,
                        now,
                    ),
                )

            if cursor.rowcount != 1:
                conn.rollback()
                raise StaleWriteError(
                    f"{field_name} for {day.isoformat()} changed since it was read"
                )

            conn.execute(
                "UPDATE health_metrics SET updated_at = ? WHERE id = ?", (now, record_id)
            )
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise RepositoryError(f"Failed to write {field_name}: {exc}") from exc

        logger.debug(
            "Wrote %s for %s on %s (source=%s)", field_name, user_id, day.isoformat(), metadata.source
        )
        return FieldVersion(present=True, source=metadata.source, recorded_at=recorded_at)

    def restore_legacy_values(self, user_id: str, day: date, values: dict[str, Any]) -> int:
        """Restore values from a backup made before field metadata existed.

        Restored fields carry no metadata, so the freshness engine treats
        them as data of unknown origin. Fields already present are left
        untouched.

        Returns:
            Number of fields restored.
        """
        conn = self._db.connection
        now = self._now_iso()
        restored = 0
        try:
            record_id = self._ensure_record(user_id, day, now)
            for field_name, value in values.items():
                cursor = conn.execute(
                    """INSERT INTO metric_fields (record_id, field_name, value_enc, updated_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(record_id, field_name) DO NOTHING""",
                    (record_id, field_name, self._enc.encrypt(value), now),
                )
                restored += cursor.rowcount
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise RepositoryError(f"Failed to restore legacy values: {exc}") from exc

        logger.info("Restored %d legacy fields for %s on %s", restored, user_id, day.isoformat())
        return restored

    def _ensure_record(self, user_id: str, day: date, now: str) -> str:
        """Create the day record if needed and return its ID (no commit)."""
        conn = self._db.connection
        conn.execute(
            """INSERT INTO health_metrics (id, user_id, date, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(user_id, date) DO NOTHING""",
            (self._new_id(), user_id, day.isoformat(), now, now),
        )
        row = conn.execute(
            "SELECT id FROM health_metrics WHERE user_id = ? AND date = ?",
            (user_id, day.isoformat()),
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Data lock settings
    # ------------------------------------------------------------------

    def get_lock(self, user_id: str) -> DataLock:
        """Read a user's lock settings; unknown users are unlocked."""
        row = self._db.connection.execute(
            "SELECT data_lock_enabled, data_lock_date FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return DataLock()
        lock_date = date.fromisoformat(row["data_lock_date"][:10]) if row["data_lock_date"] else None
        return DataLock(enabled=bool(row["data_lock_enabled"]), lock_date=lock_date)

    def save_lock(self, user_id: str, lock: DataLock) -> None:
        """Insert or update a user's lock settings."""
        conn = self._db.connection
        now = self._now_iso()
        conn.execute(
            """INSERT INTO users (id, data_lock_enabled, data_lock_date, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   data_lock_enabled = excluded.data_lock_enabled,
                   data_lock_date = excluded.data_lock_date,
                   updated_at = excluded.updated_at""",
            (
                user_id,
                int(lock.enabled),
                lock.lock_date.isoformat() if lock.lock_date else None,
                now,
                now,
            ),
        )
        conn.commit()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_metadata(
        field_name: str, source: str | None, recorded_at: str | None, device_id: str | None
    ) -> FieldMetadata | None:
        """Build metadata from stored columns; incomplete rows count as unknown origin."""
        if not source or not recorded_at:
            return None
        try:
            when = trusted_recorded_at(recorded_at)
        except InvalidInputError:
            logger.warning("Ignoring unreadable recorded_at %r on %s", recorded_at, field_name)
            return None
        return FieldMetadata(recorded_at=when, source=source, device_id=device_id)

    def _row_to_field(self, row: Any) -> StoredField:
        return StoredField(
            field_name=row["field_name"],
            value=self._enc.decrypt(row["value_enc"]),
            metadata=self._parse_metadata(
                row["field_name"], row["source"], row["recorded_at"], row["device_id"]
            ),
            version=FieldVersion(
                present=True, source=row["source"], recorded_at=row["recorded_at"]
            ),
            updated_at=row["updated_at"] or "",
        )

    def _load_record(self, row: Any) -> HealthMetricRecord:
        """Convert a health_metrics row plus its fields into a record."""
        record = HealthMetricRecord(
            id=row["id"],
            user_id=row["user_id"],
            date=date.fromisoformat(row["date"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        fields = self._db.connection.execute(
            """SELECT field_name, value_enc, source, recorded_at, device_id, updated_at
               FROM metric_fields WHERE record_id = ? ORDER BY field_name""",
            (row["id"],),
        ).fetchall()
        for field_row in fields:
            stored = self._row_to_field(field_row)
            record.values[stored.field_name] = stored.value
            if stored.metadata is not None:
                record.field_metadata[stored.field_name] = stored.metadata
        return record
