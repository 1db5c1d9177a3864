"""Data models for the health metrics persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from vitalsync.domains.health.domain_logic.priority import Source
from vitalsync.domains.health.domain_logic.values import trusted_recorded_at

# Known metric fields and their value kind ('numeric', 'text', 'json').
# Records are sparse: any subset may be present for a date.
METRIC_FIELDS: dict[str, str] = {
    # Sleep
    "sleep_duration": "numeric",  # minutes
    "deep_sleep": "numeric",
    "rem_sleep": "numeric",
    "light_sleep": "numeric",
    "sleep_score": "numeric",
    "sleep_efficiency": "numeric",
    "wake_events": "numeric",
    # Heart and respiration
    "resting_heart_rate": "numeric",
    "heart_rate_variability": "numeric",
    "blood_pressure_systolic": "numeric",
    "blood_pressure_diastolic": "numeric",
    "oxygen_saturation": "numeric",
    "respiratory_rate": "numeric",
    "heart_rate_zone_data": "json",
    # Activity
    "steps": "numeric",
    "distance": "numeric",  # km
    "calories_burned": "numeric",
    "active_calories": "numeric",
    # Body composition (smart scales)
    "weight": "numeric",  # kg
    "body_fat_percentage": "numeric",
    "muscle_mass": "numeric",
    "visceral_fat": "numeric",
    "bmr": "numeric",
    "bmi": "numeric",
    "water_percentage": "numeric",
    "bone_mass": "numeric",
    "protein_percentage": "numeric",
    "subcutaneous_fat": "numeric",
    "lean_body_mass": "numeric",
    "metabolic_age": "numeric",
    "body_score": "numeric",
    "body_type": "text",
}


@dataclass(frozen=True)
class FieldMetadata:
    """Provenance sidecar stored with every populated field.

    ``recorded_at`` is when the health event happened, never when it was
    imported.
    """

    recorded_at: datetime  # aware, UTC
    source: str  # Source value, e.g. 'health_connect'
    device_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "recorded_at": self.recorded_at.isoformat(),
            "source": self.source,
        }
        if self.device_id:
            data["device_id"] = self.device_id
        return data


def create_field_metadata(
    recorded_at: datetime | str,
    source: Source | str,
    device_id: str | None = None,
) -> FieldMetadata:
    """Assemble the metadata for a field write.

    Raises:
        InvalidInputError: If ``recorded_at`` is not a valid timestamp.
    """
    source_value = source.value if isinstance(source, Source) else str(source)
    return FieldMetadata(
        recorded_at=trusted_recorded_at(recorded_at),
        source=source_value,
        device_id=device_id or None,
    )


@dataclass(frozen=True)
class FieldVersion:
    """Compare-and-swap token for one ``(user, date, field)`` cell.

    ``present`` is False when no row exists yet. Legacy rows are present but
    carry no source or timestamp.
    """

    present: bool = False
    source: str | None = None
    recorded_at: str | None = None  # ISO 8601 exactly as stored


ABSENT = FieldVersion()


@dataclass
class StoredField:
    """One field cell as read back from the store."""

    field_name: str
    value: Any
    metadata: FieldMetadata | None
    version: FieldVersion
    updated_at: str = ""


@dataclass
class HealthMetricRecord:
    """All stored fields for one user on one calendar day."""

    id: str
    user_id: str
    date: date
    values: dict[str, Any] = field(default_factory=dict)
    field_metadata: dict[str, FieldMetadata] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def get(self, field_name: str) -> Any:
        return self.values.get(field_name)


@dataclass
class DataLock:
    """Per-user lock freezing every date up to and including ``lock_date``."""

    enabled: bool = False
    lock_date: date | None = None

    def covers(self, day: date | datetime) -> bool:
        """True if ``day`` falls on or before the lock date."""
        if not self.enabled or self.lock_date is None:
            return False
        if isinstance(day, datetime):
            day = day.date()
        return day <= self.lock_date


@dataclass(frozen=True)
class Measurement:
    """Normalized tuple a source adapter hands to the engine."""

    user_id: str
    date: date
    field_name: str
    value: Any
    source: str
    recorded_at: datetime | str
    device_id: str | None = None
