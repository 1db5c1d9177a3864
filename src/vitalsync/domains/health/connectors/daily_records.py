"""Flatten normalized per-day vendor rows into per-field measurements."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

from vitalsync.core.storage.models import METRIC_FIELDS, Measurement
from vitalsync.domains.health.domain_logic.priority import Source, parse_source
from vitalsync.domains.health.domain_logic.values import as_day

logger = logging.getLogger(__name__)


def flatten_daily_record(
    user_id: str,
    source: Source | str,
    day: date | datetime | str,
    fields: Mapping[str, Any],
    recorded_at: datetime | str,
    device_id: str | None = None,
) -> list[Measurement]:
    """Split one day's row into one measurement per field.

    Every field shares the row's ``recorded_at``. Meaningless values are
    kept: the engine rejects them with a reason the audit log can show.

    Raises:
        UnknownSourceError: If ``source`` is not a known source.
        InvalidInputError: If ``day`` is not a calendar date.
    """
    source_value = parse_source(source).value
    record_day = as_day(day)
    measurements: list[Measurement] = []
    for field_name, value in fields.items():
        if field_name not in METRIC_FIELDS:
            logger.debug("Unknown metric field %r from %s", field_name, source_value)
        measurements.append(
            Measurement(
                user_id=user_id,
                date=record_day,
                field_name=field_name,
                value=value,
                source=source_value,
                recorded_at=recorded_at,
                device_id=device_id,
            )
        )
    return measurements


class DailyRecordAdapter:
    """SourceAdapter over rows of ``{"date", "recorded_at", "device_id"?, <fields>}``.

    Usage::

        adapter = DailyRecordAdapter("renpho", rows)
        importer.import_batch(adapter.measurements("user-1"), source=adapter.source)
    """

    RESERVED_KEYS = frozenset({"date", "recorded_at", "device_id"})

    def __init__(self, source: Source | str, rows: Iterable[Mapping[str, Any]]) -> None:
        self._source = parse_source(source).value
        self._rows = list(rows)

    @property
    def source(self) -> str:
        return self._source

    def measurements(self, user_id: str) -> list[Measurement]:
        result: list[Measurement] = []
        for row in self._rows:
            fields = {k: v for k, v in row.items() if k not in self.RESERVED_KEYS}
            result.extend(
                flatten_daily_record(
                    user_id,
                    self._source,
                    row["date"],
                    fields,
                    row["recorded_at"],
                    row.get("device_id"),
                )
            )
        return result
