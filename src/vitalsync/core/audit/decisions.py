"""Decision audit log — one event per freshness decision, grouped by import session.

Operators read this to answer "why didn't my scale reading show up?": every
imported, skipped, or failed field carries the rule name that decided it.
Old and new values are encrypted at rest like the metric values
themselves.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Literal

from vitalsync.core.storage.database import HealthDatabase
from vitalsync.core.storage.encryption import FieldEncryptor

logger = logging.getLogger(__name__)

DecisionStatus = Literal["imported", "skipped", "error"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _day_text(day: date | str) -> str:
    return day.isoformat() if isinstance(day, date) else str(day)


def _parse_day(text: str) -> date | str:
    try:
        return date.fromisoformat(text)
    except ValueError:
        return text


@dataclass
class DecisionEvent:
    """A single reconciliation outcome for one field on one day."""

    field_name: str
    date: date | str  # raw input when it was not a valid day
    status: DecisionStatus
    reason: str
    old_value: Any = None
    new_value: Any = None
    source: str = ""
    message: str = ""
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_name": self.field_name,
            "date": _day_text(self.date),
            "status": self.status,
            "reason": self.reason,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "source": self.source,
            "message": self.message,
        }


@dataclass
class ImportSession:
    """Aggregates the decisions of one import run for one user and source."""

    user_id: str
    source: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: str = field(default_factory=_now_iso)
    finished_at: str | None = None
    cancelled: bool = False
    events: list[DecisionEvent] = field(default_factory=list)

    def record(self, event: DecisionEvent) -> None:
        """Add an event and log it."""
        self.events.append(event)
        day = _day_text(event.date)
        if event.status == "imported":
            logger.info(
                "%s IMPORTED: %s for %s | old=%r new=%r (%s)",
                self.source, event.field_name, day, event.old_value, event.new_value, event.reason,
            )
        elif event.status == "skipped":
            logger.debug(
                "%s SKIPPED: %s for %s | %s | current=%r attempted=%r",
                self.source, event.field_name, day, event.reason, event.old_value, event.new_value,
            )
        else:
            logger.error(
                "%s ERROR: %s for %s | %s", self.source, event.field_name, day, event.message
            )

    def _count(self, status: str) -> int:
        return sum(1 for e in self.events if e.status == status)

    @property
    def imported(self) -> int:
        return self._count("imported")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def errors(self) -> int:
        return self._count("error")

    @property
    def status(self) -> str:
        """'error' if anything failed, 'success' if anything landed, else 'partial'."""
        if self.errors:
            return "error"
        if self.imported:
            return "success"
        return "partial"

    def skip_reasons(self) -> dict[str, int]:
        """Histogram of skip reasons."""
        return dict(Counter(e.reason for e in self.events if e.status == "skipped"))

    def finish(self, *, cancelled: bool = False) -> None:
        self.finished_at = _now_iso()
        self.cancelled = cancelled

    @property
    def message(self) -> str:
        text = (
            f"{self.source} import: {self.imported} imported, "
            f"{self.skipped} skipped, {self.errors} errors"
        )
        if self.cancelled:
            text += " (cancelled)"
        return text

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "user_id": self.user_id,
            "source": self.source,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "total_processed": len(self.events),
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "skip_reasons": self.skip_reasons(),
            "message": self.message,
        }


class DecisionAuditLog:
    """Persists import sessions and their decisions to SQLite.

    Usage::

        audit = DecisionAuditLog(health_db, encryptor)
        audit.save_session(session)
        audit.recent_sessions("user-1", limit=5)
    """

    def __init__(self, database: HealthDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    def save_session(self, session: ImportSession) -> str:
        """Write a session and all its decisions in one transaction.

        A failure is logged, never raised: losing an audit entry must not
        undo or block the writes it describes.

        Returns:
            The session ID, or an empty string if it could not be saved.
        """
        conn = self._db.connection
        try:
            conn.execute(
                """INSERT INTO import_sessions
                   (id, user_id, source, started_at, finished_at, status,
                    imported, skipped, errors, cancelled, message)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session.id,
                    session.user_id,
                    session.source,
                    session.started_at,
                    session.finished_at,
                    session.status,
                    session.imported,
                    session.skipped,
                    session.errors,
                    1 if session.cancelled else 0,
                    session.message,
                ),
            )
            for event in session.events:
                conn.execute(
                    """INSERT INTO import_decisions
                       (id, session_id, timestamp, field_name, date, source, status,
                        reason, message, old_value_enc, new_value_enc)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        str(uuid.uuid4()),
                        session.id,
                        event.timestamp,
                        event.field_name,
                        _day_text(event.date),
                        event.source or session.source,
                        event.status,
                        event.reason,
                        event.message,
                        self._enc.encrypt(event.old_value),
                        self._enc.encrypt(event.new_value),
                    ),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            logger.exception("Failed to save import session %s, log lost", session.id)
            return ""

        logger.info("%s (session %s)", session.message, session.id)
        return session.id

    def recent_sessions(
        self,
        user_id: str | None = None,
        *,
        source: str | None = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Most recent import sessions, newest first."""
        conditions: list[str] = []
        params: list[Any] = []
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if source:
            conditions.append("source = ?")
            params.append(source)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM import_sessions{where} ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        sessions = []
        for row in rows:
            entry = dict(row)
            entry["cancelled"] = bool(entry["cancelled"])
            sessions.append(entry)
        return sessions

    def get_decisions(self, session_id: str) -> list[DecisionEvent]:
        """All decisions of one session in the order they were made."""
        try:
            rows = self._db.connection.execute(
                """SELECT * FROM import_decisions WHERE session_id = ?
                   ORDER BY timestamp, rowid""",
                (session_id,),
            ).fetchall()
        except sqlite3.Error:
            logger.exception("Failed to read decisions for session %s", session_id)
            return []

        return [
            DecisionEvent(
                field_name=row["field_name"],
                date=_parse_day(row["date"]),
                status=row["status"],
                reason=row["reason"] or "",
                old_value=self._enc.decrypt(row["old_value_enc"]),
                new_value=self._enc.decrypt(row["new_value_enc"]),
                source=row["source"] or "",
                message=row["message"] or "",
                timestamp=row["timestamp"],
            )
            for row in rows
        ]
