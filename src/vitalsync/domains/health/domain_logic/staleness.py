"""Detect fields whose authoritative data has gone stale.

Only manual and primary-or-better sources count as authoritative: a field
kept fresh by Google Fit gap-filling alone still needs a re-sync from the
phone or the scale. An external scheduler uses this list to trigger one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from vitalsync.core.storage.repository import MetricsRepository
from vitalsync.domains.health.domain_logic.priority import (
    PriorityTable,
    PriorityTier,
    default_priority_table,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaleField:
    """A field whose latest authoritative reading is older than the threshold."""

    field_name: str
    last_updated: datetime
    source: str
    days_since_update: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_name": self.field_name,
            "last_updated": self.last_updated.isoformat(),
            "source": self.source,
            "days_since_update": self.days_since_update,
        }


def find_stale_authoritative_fields(
    repository: MetricsRepository,
    user_id: str,
    since_days: int = 2,
    *,
    window_days: int = 7,
    now: datetime | None = None,
    table: PriorityTable = default_priority_table,
) -> list[StaleField]:
    """List fields whose last authoritative update is ``since_days`` old or more.

    Args:
        repository: Metrics store to scan.
        user_id: Whose records to scan.
        since_days: Staleness threshold in whole days.
        window_days: How many trailing days of records to scan.
        now: Reference time (defaults to the current UTC time).
        table: Priority policy deciding which sources are authoritative.

    Returns:
        One entry per stale field, sorted by field name.
    """
    now = now or datetime.now(timezone.utc)
    until = now.date()
    since = until - timedelta(days=window_days)

    latest: dict[str, tuple[datetime, str]] = {}
    for _day, field_name, meta in repository.iter_field_metadata(user_id, since, until):
        if table.tier(meta.source, field_name) > PriorityTier.PRIMARY:
            continue
        current = latest.get(field_name)
        if current is None or meta.recorded_at > current[0]:
            latest[field_name] = (meta.recorded_at, meta.source)

    stale: list[StaleField] = []
    for field_name in sorted(latest):
        recorded_at, source = latest[field_name]
        days = int((now - recorded_at).total_seconds() // 86400)
        if days >= since_days:
            stale.append(StaleField(field_name, recorded_at, source, days))

    logger.debug("Found %d stale authoritative fields for %s", len(stale), user_id)
    return stale
