"""Freshness decision engine — should an incoming measurement replace the stored one?

Decides per field, per calendar day, using the source priority table, the
user's data lock, and field-level metadata recorded when the health event
happened (never the import time). Rules run in a fixed order and the first
match wins:

1. Locked day: nothing is written, not even manual entries.
2. Meaningless incoming value (null, zero, blank): never written.
3. No meaningful stored value: accept.
4. Stored value without metadata (legacy): assumed primary; only manual,
   super-primary, or primary sources may replace it.
5. Priority comparison: manual beats everything and only manual beats
   manual; a higher tier wins regardless of timestamps; Google Fit as a
   secondary source only fills gaps; the same source always upserts;
   two different primary sources need the newer reading to be more than
   two hours newer; other ties go to the newer reading.
6. Anything else is rejected.

``decide`` is a pure function of the measurement and a snapshot of the
stored cell. ``FreshnessEngine`` does the reads and turns any failure into
a skip: a missed write can be retried, a wrong overwrite cannot be undone.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from vitalsync.core.storage.models import (
    ABSENT,
    DataLock,
    FieldMetadata,
    FieldVersion,
    Measurement,
    StoredField,
)
from vitalsync.core.storage.repository import MetricsRepository
from vitalsync.domains.health.domain_logic.data_lock import DataLockGuard
from vitalsync.domains.health.domain_logic.errors import (
    MetadataReadError,
    ReconciliationError,
    UnknownSourceError,
)
from vitalsync.domains.health.domain_logic.priority import (
    PriorityTable,
    PriorityTier,
    default_priority_table,
    parse_source,
)
from vitalsync.domains.health.domain_logic.staleness import (
    StaleField,
    find_stale_authoritative_fields,
)
from vitalsync.domains.health.domain_logic.values import (
    as_day,
    is_meaningful_value,
    trusted_recorded_at,
)

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY_GAP = timedelta(hours=2)


class Reason(str, Enum):
    """Name of the rule that produced a decision."""

    DATA_LOCKED = "data_locked"
    MEANINGLESS_VALUE = "meaningless_value"
    NO_EXISTING_DATA = "no_existing_data"
    UNKNOWN_ORIGIN_OVERRIDDEN = "unknown_origin_overridden"
    UNKNOWN_ORIGIN_PROTECTED = "unknown_origin_protected"
    MANUAL_OVERRIDES = "manual_overrides"
    MANUAL_PROTECTED = "manual_protected"
    HIGHER_PRIORITY_OVERRIDES = "higher_priority_overrides"
    SECONDARY_CANNOT_OVERRIDE_PRIMARY = "secondary_cannot_override_primary"
    LOWER_PRIORITY_BLOCKED = "lower_priority_blocked"
    SAME_SOURCE_UPSERT = "same_source_upsert"
    PRIMARY_TIE_NEWER_WINS = "primary_tie_newer_wins"
    PRIMARY_TIE_INSUFFICIENT_GAP = "primary_tie_insufficient_gap"
    NEWER_SAME_TIER_WINS = "newer_same_tier_wins"
    EXISTING_IS_NEWER = "existing_is_newer"
    UNRESOLVED_CONFLICT = "unresolved_conflict"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class FieldSnapshot:
    """What was stored for one ``(user, date, field)`` when the decision began."""

    locked: bool = False
    value: Any = None
    metadata: FieldMetadata | None = None
    version: FieldVersion = ABSENT

    @property
    def exists(self) -> bool:
        return self.version.present

    @classmethod
    def from_stored(cls, stored: StoredField | None, *, locked: bool = False) -> FieldSnapshot:
        if stored is None:
            return cls(locked=locked)
        return cls(
            locked=locked,
            value=stored.value,
            metadata=stored.metadata,
            version=stored.version,
        )


@dataclass(frozen=True)
class Decision:
    """Outcome of one freshness check."""

    overwrite: bool
    reason: Reason
    message: str = ""
    blocking_source: str | None = None
    blocking_timestamp: datetime | None = None
    previous_value: Any = None
    version: FieldVersion = ABSENT
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "overwrite": self.overwrite,
            "reason": self.reason.value,
            "message": self.message,
        }
        if self.blocking_source is not None:
            data["blocking_source"] = self.blocking_source
        if self.blocking_timestamp is not None:
            data["blocking_timestamp"] = self.blocking_timestamp.isoformat()
        if self.error:
            data["error"] = self.error
        return data


def _source_key(source: str) -> str:
    try:
        return parse_source(source).value
    except UnknownSourceError:
        return str(source).strip().lower()


def decide(
    measurement: Measurement,
    snapshot: FieldSnapshot,
    *,
    table: PriorityTable = default_priority_table,
    min_primary_gap: timedelta = DEFAULT_PRIMARY_GAP,
) -> Decision:
    """Decide whether ``measurement`` may replace the value in ``snapshot``.

    Identical inputs always produce an identical decision.

    Raises:
        InvalidInputError: If the measurement's recorded timestamp is invalid.
    """
    field_name = measurement.field_name
    new_source = _source_key(measurement.source)
    new_recorded_at = trusted_recorded_at(measurement.recorded_at)
    day = as_day(measurement.date).isoformat()

    def accept(reason: Reason, message: str) -> Decision:
        return Decision(
            overwrite=True,
            reason=reason,
            message=message,
            previous_value=snapshot.value,
            version=snapshot.version,
        )

    def reject(reason: Reason, message: str) -> Decision:
        meta = snapshot.metadata
        return Decision(
            overwrite=False,
            reason=reason,
            message=message,
            blocking_source=meta.source if meta else None,
            blocking_timestamp=meta.recorded_at if meta else None,
            previous_value=snapshot.value,
            version=snapshot.version,
        )

    # 1. Lock supremacy
    if snapshot.locked:
        return reject(
            Reason.DATA_LOCKED,
            f"{field_name} for {day} is protected by the data lock",
        )

    # 2. Blank payloads never participate
    if not is_meaningful_value(measurement.value):
        return reject(
            Reason.MEANINGLESS_VALUE,
            f"New value for {field_name} is not meaningful: {measurement.value!r}",
        )

    # 3. Nothing worth protecting
    if not snapshot.exists or not is_meaningful_value(snapshot.value):
        return accept(
            Reason.NO_EXISTING_DATA,
            f"No existing data for {field_name} on {day}",
        )

    new_tier = table.tier(new_source, field_name)

    # 4. Legacy value of unknown origin, assumed primary
    if snapshot.metadata is None:
        if new_tier <= PriorityTier.PRIMARY:
            return accept(
                Reason.UNKNOWN_ORIGIN_OVERRIDDEN,
                f"{new_source} ({new_tier.value}) replaces {field_name} of unknown origin",
            )
        return reject(
            Reason.UNKNOWN_ORIGIN_PROTECTED,
            f"{new_source} ({new_tier.value}) cannot overwrite {field_name} of unknown "
            "origin; missing metadata is treated as primary data",
        )

    existing_source = _source_key(snapshot.metadata.source)
    existing_recorded_at = snapshot.metadata.recorded_at
    existing_tier = table.tier(existing_source, field_name)

    # 5. Priority comparison
    if new_tier is PriorityTier.MANUAL and existing_tier is not PriorityTier.MANUAL:
        return accept(
            Reason.MANUAL_OVERRIDES,
            f"Manual entry overrides {existing_source}",
        )

    if existing_tier is PriorityTier.MANUAL and new_tier is not PriorityTier.MANUAL:
        return reject(
            Reason.MANUAL_PROTECTED,
            f"Manual entry is protected from {new_source}",
        )

    if new_tier < existing_tier:
        # Timestamps are not compared, including super-primary over primary
        # for its designated field.
        return accept(
            Reason.HIGHER_PRIORITY_OVERRIDES,
            f"{new_source} ({new_tier.value}) overrides {existing_source} ({existing_tier.value})",
        )

    if new_tier is PriorityTier.SECONDARY and existing_tier <= PriorityTier.PRIMARY:
        return reject(
            Reason.SECONDARY_CANNOT_OVERRIDE_PRIMARY,
            f"{new_source} is a gap filler and cannot overwrite {existing_source}",
        )

    if new_tier > existing_tier:
        return reject(
            Reason.LOWER_PRIORITY_BLOCKED,
            f"{new_source} ({new_tier.value}) cannot overwrite higher priority "
            f"{existing_source} ({existing_tier.value})",
        )

    if new_tier == existing_tier:
        if new_source == existing_source:
            return accept(
                Reason.SAME_SOURCE_UPSERT,
                f"{new_source} re-sync updates its own value",
            )

        gap = new_recorded_at - existing_recorded_at
        gap_hours = gap.total_seconds() / 3600

        if new_tier is PriorityTier.PRIMARY:
            if new_recorded_at > existing_recorded_at and gap > min_primary_gap:
                return accept(
                    Reason.PRIMARY_TIE_NEWER_WINS,
                    f"{new_source} reading is {gap_hours:.1f}h newer than {existing_source}",
                )
            return reject(
                Reason.PRIMARY_TIE_INSUFFICIENT_GAP,
                f"{existing_source} reading protected: {new_source} is only "
                f"{gap_hours:.1f}h newer",
            )

        if new_recorded_at > existing_recorded_at:
            return accept(
                Reason.NEWER_SAME_TIER_WINS,
                f"{new_source} reading is newer than {existing_source}",
            )
        return reject(
            Reason.EXISTING_IS_NEWER,
            f"Existing {existing_source} reading is newer",
        )

    # 6. Unreachable while the rules above are exhaustive
    return reject(
        Reason.UNRESOLVED_CONFLICT,
        f"No rule resolved {new_source} against {existing_source}",
    )


class FreshnessEngine:
    """Runs ``decide`` against the store.

    Reads lock settings and the stored field, then applies the pure rule
    chain. Errors never escape: they become skip decisions with reason
    ``internal_error`` and the cause attached.

    Usage::

        engine = FreshnessEngine(repository)
        decision = engine.decide_field(
            "user-1", "weight", date(2025, 8, 3), 81.4, "renpho",
            datetime(2025, 8, 3, 7, 12, tzinfo=timezone.utc),
        )
        if decision.overwrite:
            ...
    """

    def __init__(
        self,
        repository: MetricsRepository,
        *,
        table: PriorityTable | None = None,
        lock_guard: DataLockGuard | None = None,
        min_primary_gap: timedelta = DEFAULT_PRIMARY_GAP,
        lock_fail_open: bool = True,
    ) -> None:
        self._repo = repository
        self._table = table or default_priority_table
        self._guard = lock_guard or DataLockGuard(repository)
        self._min_primary_gap = min_primary_gap
        self._lock_fail_open = lock_fail_open

    @property
    def table(self) -> PriorityTable:
        return self._table

    def load_lock(self, user_id: str) -> DataLock:
        """Read lock settings once, for reuse across a batch."""
        return self._guard.load(user_id, fail_open=self._lock_fail_open)

    def load_snapshot(
        self,
        user_id: str,
        day: Any,
        field_name: str,
        *,
        lock: DataLock | None = None,
    ) -> FieldSnapshot:
        """Read the lock state and the stored cell for one field.

        Raises:
            LockCheckError: If the lock is unreadable and fail-open is off.
            MetadataReadError: If the stored field cannot be read.
        """
        day = as_day(day)
        if lock is None:
            lock = self.load_lock(user_id)
        if lock.covers(day):
            return FieldSnapshot(locked=True)
        try:
            stored = self._repo.get_field_state(user_id, day, field_name)
        except Exception as exc:
            raise MetadataReadError(
                f"Cannot read {field_name} for {user_id} on {day.isoformat()}: {exc}"
            ) from exc
        return FieldSnapshot.from_stored(stored)

    def evaluate(
        self,
        measurement: Measurement,
        *,
        lock: DataLock | None = None,
        snapshot: FieldSnapshot | None = None,
    ) -> Decision:
        """Decide one measurement, reading whatever was not supplied."""
        try:
            measurement = dataclasses.replace(measurement, date=as_day(measurement.date))
            if snapshot is None:
                if lock is None:
                    lock = self.load_lock(measurement.user_id)
                if lock.covers(measurement.date):
                    snapshot = FieldSnapshot(locked=True)
                elif not is_meaningful_value(measurement.value):
                    # Rejected before any stored value matters
                    snapshot = FieldSnapshot()
                else:
                    snapshot = self.load_snapshot(
                        measurement.user_id, measurement.date, measurement.field_name, lock=lock
                    )
            return decide(
                measurement,
                snapshot,
                table=self._table,
                min_primary_gap=self._min_primary_gap,
            )
        except ReconciliationError as exc:
            logger.warning(
                "Skipping %s for %s: %s", measurement.field_name, measurement.user_id, exc
            )
            return self._internal_error(exc, snapshot)
        except Exception as exc:
            logger.exception(
                "Unexpected error deciding %s for %s", measurement.field_name, measurement.user_id
            )
            return self._internal_error(exc, snapshot)

    def decide_field(
        self,
        user_id: str,
        field_name: str,
        day: Any,
        new_value: Any,
        new_source: str,
        new_recorded_at: datetime | str,
        device_id: str | None = None,
    ) -> Decision:
        """Spell out a measurement and evaluate it."""
        return self.evaluate(
            Measurement(
                user_id=user_id,
                date=day,
                field_name=field_name,
                value=new_value,
                source=new_source,
                recorded_at=new_recorded_at,
                device_id=device_id,
            )
        )

    def find_stale_authoritative_fields(
        self,
        user_id: str,
        since_days: int = 2,
        *,
        window_days: int = 7,
        now: datetime | None = None,
    ) -> list[StaleField]:
        """Fields whose last manual/primary update is at least ``since_days`` old."""
        return find_stale_authoritative_fields(
            self._repo,
            user_id,
            since_days,
            window_days=window_days,
            now=now,
            table=self._table,
        )

    @staticmethod
    def _internal_error(exc: Exception, snapshot: FieldSnapshot | None) -> Decision:
        return Decision(
            overwrite=False,
            reason=Reason.INTERNAL_ERROR,
            message="Existing data protected: the decision could not be completed",
            previous_value=snapshot.value if snapshot else None,
            version=snapshot.version if snapshot else ABSENT,
            error=f"{type(exc).__name__}: {exc}",
        )
