"""Manual entry adapter — values the user typed in themselves.

Manual entries outrank every device source, so the only thing that can
replace one is another manual entry (or nothing at all, on a locked day).
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from vitalsync.core.storage.models import Measurement
from vitalsync.domains.health.domain_logic.priority import Source
from vitalsync.domains.health.domain_logic.values import as_day


class ManualEntryAdapter:
    """SourceAdapter collecting manual entries before they are imported."""

    def __init__(self) -> None:
        self._pending: list[tuple[date, str, Any, datetime | str]] = []

    @property
    def source(self) -> str:
        return Source.MANUAL.value

    def add(
        self,
        day: date | datetime | str,
        field_name: str,
        value: Any,
        recorded_at: datetime | str | None = None,
    ) -> None:
        """Queue one entry; ``recorded_at`` defaults to now."""
        when = recorded_at or datetime.now(timezone.utc)
        self._pending.append((as_day(day), field_name, value, when))

    def entry(
        self,
        user_id: str,
        day: date | datetime | str,
        field_name: str,
        value: Any,
        recorded_at: datetime | str | None = None,
    ) -> Measurement:
        """Build a single manual measurement without queueing it."""
        return Measurement(
            user_id=user_id,
            date=as_day(day),
            field_name=field_name,
            value=value,
            source=self.source,
            recorded_at=recorded_at or datetime.now(timezone.utc),
        )

    def measurements(self, user_id: str) -> list[Measurement]:
        return [
            self.entry(user_id, day, field_name, value, recorded_at)
            for day, field_name, value, recorded_at in self._pending
        ]
