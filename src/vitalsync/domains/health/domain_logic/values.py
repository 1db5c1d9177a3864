"""Shared predicates for measurement values and timestamps.

Every decision path and every caller that assembles a write goes through
these two questions:

* ``is_meaningful_value`` — may this value take part in reconciliation at all?
* ``trusted_recorded_at`` — which instant did the health event happen at?

Both are pure and never consult storage.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Any

from vitalsync.domains.health.domain_logic.errors import InvalidInputError

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def is_meaningful_value(value: Any) -> bool:
    """Return False for null, zero, NaN, blank, or empty values.

    Blank sync payloads from wearables arrive as ``0``, ``""`` or ``[]``; none
    of them may erase or outrank a real reading. Booleans are always
    meaningful (``False`` is a real answer, not a missing one).
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return False
        return value != 0
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def trusted_recorded_at(value: Any) -> datetime:
    """Normalise a measurement timestamp to an aware UTC datetime.

    Accepts ``datetime`` objects and ISO 8601 strings (a trailing ``Z`` is
    understood). Naive datetimes are taken as UTC. Timestamps at or before
    the Unix epoch are rejected: exporters write those when the real time
    is missing.

    Raises:
        InvalidInputError: If the value is not a usable timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidInputError(f"Invalid recorded timestamp: {value!r}") from exc
    else:
        raise InvalidInputError(f"Invalid recorded timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)

    if parsed <= _EPOCH:
        raise InvalidInputError(f"Recorded timestamp out of range: {value!r}")
    return parsed


def as_day(value: Any) -> date:
    """Truncate a date, datetime, or ISO string to its calendar day.

    Raises:
        InvalidInputError: If the value cannot be read as a date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            # Calendar day as written by the source, not shifted to UTC
            return datetime.fromisoformat(text).date()
        except ValueError as exc:
            raise InvalidInputError(f"Invalid date: {value!r}") from exc
    raise InvalidInputError(f"Invalid date: {value!r}")
