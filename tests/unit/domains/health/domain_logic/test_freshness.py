"""Tests for the freshness decision engine."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from vitalsync.core.storage.models import (
    DataLock,
    FieldMetadata,
    FieldVersion,
    Measurement,
    create_field_metadata,
)
from vitalsync.domains.health.domain_logic.freshness import (
    Decision,
    FieldSnapshot,
    FreshnessEngine,
    Reason,
    decide,
)
from vitalsync.domains.health.domain_logic.priority import PriorityTable, PriorityTier, Source

DAY = date(2025, 8, 3)


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 8, 3, hour, minute, tzinfo=timezone.utc)


def _measurement(**overrides) -> Measurement:
    defaults = dict(
        user_id="user-1",
        date=DAY,
        field_name="weight",
        value=81.4,
        source="renpho",
        recorded_at=_at(9),
    )
    defaults.update(overrides)
    return Measurement(**defaults)


def _stored(value, source: str | None, hour: int = 7) -> FieldSnapshot:
    if source is None:
        return FieldSnapshot(value=value, version=FieldVersion(present=True))
    meta = FieldMetadata(recorded_at=_at(hour), source=source)
    return FieldSnapshot(
        value=value,
        metadata=meta,
        version=FieldVersion(present=True, source=source, recorded_at=_at(hour).isoformat()),
    )


# ---------------------------------------------------------------------------
# Pure rule chain
# ---------------------------------------------------------------------------

class TestLockAndMeaningfulness:
    def test_locked_day_rejects_even_manual(self):
        decision = decide(_measurement(source="manual"), FieldSnapshot(locked=True))
        assert decision.overwrite is False
        assert decision.reason is Reason.DATA_LOCKED

    def test_lock_checked_before_meaningfulness(self):
        decision = decide(_measurement(value=0), FieldSnapshot(locked=True))
        assert decision.reason is Reason.DATA_LOCKED

    @pytest.mark.parametrize("value", [None, 0, "", [], float("nan")])
    def test_meaningless_value_rejected_even_when_empty(self, value):
        decision = decide(_measurement(value=value), FieldSnapshot())
        assert decision.overwrite is False
        assert decision.reason is Reason.MEANINGLESS_VALUE

    def test_meaningless_value_never_replaces_data(self):
        decision = decide(_measurement(source="manual", value=0), _stored(81.0, "renpho"))
        assert decision.reason is Reason.MEANINGLESS_VALUE

    def test_no_existing_data_accepts_any_source(self):
        decision = decide(_measurement(source="mi_fitness"), FieldSnapshot())
        assert decision.overwrite is True
        assert decision.reason is Reason.NO_EXISTING_DATA

    def test_meaningless_stored_value_counts_as_missing(self):
        decision = decide(_measurement(source="mi_fitness"), _stored(0, "renpho"))
        assert decision.reason is Reason.NO_EXISTING_DATA


class TestUnknownOrigin:
    @pytest.mark.parametrize("source", ["manual", "renpho", "health_connect"])
    def test_primary_or_better_overrides(self, source):
        decision = decide(_measurement(source=source), _stored(82.0, None))
        assert decision.overwrite is True
        assert decision.reason is Reason.UNKNOWN_ORIGIN_OVERRIDDEN

    def test_super_primary_overrides(self):
        decision = decide(
            _measurement(field_name="sleep_duration", value=420, source="google_fit"),
            _stored(400, None),
        )
        assert decision.reason is Reason.UNKNOWN_ORIGIN_OVERRIDDEN

    @pytest.mark.parametrize("source", ["google_fit", "mi_fitness"])
    def test_lower_tiers_protected(self, source):
        decision = decide(_measurement(source=source), _stored(82.0, None))
        assert decision.overwrite is False
        assert decision.reason is Reason.UNKNOWN_ORIGIN_PROTECTED
        assert decision.blocking_source is None


class TestManualPrecedence:
    def test_manual_overrides_device(self):
        decision = decide(_measurement(source="manual", recorded_at=_at(1)), _stored(82.0, "renpho", 8))
        assert decision.overwrite is True
        assert decision.reason is Reason.MANUAL_OVERRIDES

    @pytest.mark.parametrize("source", ["health_connect", "renpho", "google_fit", "mi_fitness"])
    def test_manual_protected_from_every_device(self, source):
        decision = decide(_measurement(source=source, recorded_at=_at(23)), _stored(80.0, "manual", 1))
        assert decision.overwrite is False
        assert decision.reason is Reason.MANUAL_PROTECTED
        assert decision.blocking_source == "manual"
        assert decision.blocking_timestamp == _at(1)

    def test_manual_protected_from_super_primary(self):
        decision = decide(
            _measurement(field_name="sleep_duration", value=420, source="google_fit"),
            _stored(400, "manual"),
        )
        assert decision.reason is Reason.MANUAL_PROTECTED

    def test_manual_replaces_manual_when_newer(self):
        decision = decide(_measurement(source="manual", recorded_at=_at(9)), _stored(80.0, "manual", 7))
        assert decision.overwrite is True
        assert decision.reason is Reason.SAME_SOURCE_UPSERT


class TestTierComparison:
    def test_higher_priority_ignores_timestamps(self):
        decision = decide(_measurement(source="renpho", recorded_at=_at(1)), _stored(82.0, "mi_fitness", 20))
        assert decision.overwrite is True
        assert decision.reason is Reason.HIGHER_PRIORITY_OVERRIDES

    def test_secondary_only_fills_gaps(self):
        decision = decide(
            _measurement(field_name="steps", value=9000, source="google_fit", recorded_at=_at(23)),
            _stored(8421, "health_connect", 1),
        )
        assert decision.overwrite is False
        assert decision.reason is Reason.SECONDARY_CANNOT_OVERRIDE_PRIMARY
        assert decision.blocking_source == "health_connect"

    def test_secondary_fills_empty_field(self):
        decision = decide(
            _measurement(field_name="steps", value=9000, source="google_fit"), FieldSnapshot()
        )
        assert decision.overwrite is True

    def test_tertiary_blocked_by_secondary(self):
        decision = decide(_measurement(source="mi_fitness", recorded_at=_at(23)), _stored(82.0, "google_fit"))
        assert decision.overwrite is False
        assert decision.reason is Reason.LOWER_PRIORITY_BLOCKED

    def test_super_primary_sleep_overrides_primary(self):
        decision = decide(
            _measurement(field_name="sleep_duration", value=432, source="google_fit"),
            _stored(410, "health_connect"),
        )
        assert decision.overwrite is True
        assert decision.reason is Reason.HIGHER_PRIORITY_OVERRIDES

    def test_super_primary_override_is_timestamp_blind(self):
        decision = decide(
            _measurement(
                field_name="sleep_duration", value=432, source="google_fit", recorded_at=_at(1)
            ),
            _stored(410, "health_connect", 23),
        )
        assert decision.overwrite is True

    def test_primary_cannot_replace_super_primary_sleep(self):
        decision = decide(
            _measurement(field_name="sleep_duration", value=410, source="health_connect", recorded_at=_at(23)),
            _stored(432, "google_fit", 1),
        )
        assert decision.overwrite is False
        assert decision.reason is Reason.LOWER_PRIORITY_BLOCKED

    def test_google_fit_steps_stay_secondary(self):
        decision = decide(
            _measurement(field_name="steps", value=12000, source="google_fit"),
            _stored(8421, "health_connect"),
        )
        assert decision.reason is Reason.SECONDARY_CANNOT_OVERRIDE_PRIMARY


class TestEqualTier:
    def test_same_source_upserts_even_if_older(self):
        decision = decide(_measurement(source="renpho", recorded_at=_at(5)), _stored(82.0, "renpho", 7))
        assert decision.overwrite is True
        assert decision.reason is Reason.SAME_SOURCE_UPSERT

    def test_source_tags_compared_case_insensitively(self):
        decision = decide(_measurement(source="RENPHO"), _stored(82.0, "renpho"))
        assert decision.reason is Reason.SAME_SOURCE_UPSERT

    def test_primary_tie_one_hour_newer_rejected(self):
        decision = decide(
            _measurement(source="health_connect", recorded_at=_at(8)), _stored(82.0, "renpho", 7)
        )
        assert decision.overwrite is False
        assert decision.reason is Reason.PRIMARY_TIE_INSUFFICIENT_GAP
        assert decision.blocking_source == "renpho"

    def test_primary_tie_exactly_two_hours_rejected(self):
        decision = decide(
            _measurement(source="health_connect", recorded_at=_at(9)), _stored(82.0, "renpho", 7)
        )
        assert decision.reason is Reason.PRIMARY_TIE_INSUFFICIENT_GAP

    def test_primary_tie_three_hours_newer_accepted(self):
        decision = decide(
            _measurement(source="health_connect", recorded_at=_at(10)), _stored(82.0, "renpho", 7)
        )
        assert decision.overwrite is True
        assert decision.reason is Reason.PRIMARY_TIE_NEWER_WINS

    def test_primary_tie_older_rejected(self):
        decision = decide(
            _measurement(source="health_connect", recorded_at=_at(3)), _stored(82.0, "renpho", 7)
        )
        assert decision.reason is Reason.PRIMARY_TIE_INSUFFICIENT_GAP

    def test_custom_primary_gap(self):
        decision = decide(
            _measurement(source="health_connect", recorded_at=_at(8)),
            _stored(82.0, "renpho", 7),
            min_primary_gap=timedelta(minutes=30),
        )
        assert decision.overwrite is True

    def test_non_primary_tie_newer_wins(self):
        table = PriorityTable(
            source_tiers={
                Source.MANUAL: PriorityTier.MANUAL,
                Source.GOOGLE_FIT: PriorityTier.SECONDARY,
                Source.MI_FITNESS: PriorityTier.SECONDARY,
            },
            field_overrides={},
        )
        newer = decide(
            _measurement(source="mi_fitness", recorded_at=_at(8)), _stored(82.0, "google_fit", 7), table=table
        )
        older = decide(
            _measurement(source="mi_fitness", recorded_at=_at(6)), _stored(82.0, "google_fit", 7), table=table
        )
        assert newer.reason is Reason.NEWER_SAME_TIER_WINS
        assert older.reason is Reason.EXISTING_IS_NEWER
        assert older.overwrite is False


class TestDecisionProperties:
    def test_deterministic(self):
        snapshot = _stored(82.0, "renpho", 7)
        measurement = _measurement(source="health_connect", recorded_at=_at(8))
        assert decide(measurement, snapshot) == decide(measurement, snapshot)

    def test_decision_carries_cas_token(self):
        snapshot = _stored(82.0, "renpho", 7)
        decision = decide(_measurement(source="manual"), snapshot)
        assert decision.version == snapshot.version
        assert decision.previous_value == 82.0

    def test_to_dict(self):
        decision = decide(_measurement(source="google_fit"), _stored(82.0, "renpho", 7))
        data = decision.to_dict()
        assert data["overwrite"] is False
        assert data["reason"] == "secondary_cannot_override_primary"
        assert data["blocking_source"] == "renpho"
        assert data["blocking_timestamp"] == _at(7).isoformat()


class TestReferenceScenarios:
    def test_manual_weight_survives_newer_device_reading(self):
        decision = decide(
            _measurement(value=175, source="health_connect", recorded_at=_at(7) + timedelta(days=1)),
            _stored(180, "manual", 7),
        )
        assert (decision.overwrite, decision.reason) == (False, Reason.MANUAL_PROTECTED)

    def test_google_fit_steps_do_not_replace_health_connect(self):
        decision = decide(
            _measurement(field_name="steps", value=9000, source="google_fit", recorded_at=_at(8)),
            _stored(5000, "health_connect", 7),
        )
        assert (decision.overwrite, decision.reason) == (
            False,
            Reason.SECONDARY_CANNOT_OVERRIDE_PRIMARY,
        )

    def test_older_google_fit_sleep_replaces_health_connect(self):
        decision = decide(
            _measurement(
                field_name="sleep_duration", value=340, source="google_fit", recorded_at=_at(5)
            ),
            _stored(300, "health_connect", 9),
        )
        assert (decision.overwrite, decision.reason) == (True, Reason.HIGHER_PRIORITY_OVERRIDES)

    def test_locked_date_before_lock_day_rejects_manual(self):
        decision = decide(
            _measurement(date=date(2025, 7, 30), source="manual"), FieldSnapshot(locked=True)
        )
        assert decision.reason is Reason.DATA_LOCKED

    def test_zero_steps_rejected_without_record(self):
        decision = decide(_measurement(field_name="steps", value=0), FieldSnapshot())
        assert decision.reason is Reason.MEANINGLESS_VALUE

    def test_same_source_older_reading_upserts(self):
        decision = decide(
            _measurement(source="health_connect", recorded_at=_at(6)),
            _stored(81.0, "health_connect", 7),
        )
        assert (decision.overwrite, decision.reason) == (True, Reason.SAME_SOURCE_UPSERT)

    def test_renpho_against_health_connect_gap(self):
        existing = _stored(81.0, "health_connect", 7)
        one_hour = decide(_measurement(source="renpho", recorded_at=_at(8)), existing)
        three_hours = decide(_measurement(source="renpho", recorded_at=_at(10)), existing)
        assert one_hour.reason is Reason.PRIMARY_TIE_INSUFFICIENT_GAP
        assert three_hours.overwrite is True


# ---------------------------------------------------------------------------
# Engine against the store
# ---------------------------------------------------------------------------

class TestFreshnessEngine:
    def _write(self, repo, field_name, value, source, hour=7):
        repo.write_field(
            "user-1", DAY, field_name, value, create_field_metadata(_at(hour), source)
        )

    def test_decide_field_against_store(self, freshness_engine, metrics_repository):
        self._write(metrics_repository, "weight", 82.0, "renpho")
        decision = freshness_engine.decide_field(
            "user-1", "weight", "2025-08-03", 81.0, "google_fit", _at(9)
        )
        assert decision.reason is Reason.SECONDARY_CANNOT_OVERRIDE_PRIMARY

    def test_empty_store_accepts(self, freshness_engine):
        decision = freshness_engine.decide_field("user-1", "weight", DAY, 81.0, "renpho", _at(9))
        assert decision.reason is Reason.NO_EXISTING_DATA
        assert decision.version.present is False

    def test_stored_lock_applies(self, freshness_engine, metrics_repository):
        metrics_repository.save_lock("user-1", DataLock(enabled=True, lock_date=DAY))
        decision = freshness_engine.decide_field("user-1", "weight", DAY, 81.0, "manual", _at(9))
        assert decision.reason is Reason.DATA_LOCKED

    def test_legacy_value_is_unknown_origin(self, freshness_engine, metrics_repository):
        metrics_repository.restore_legacy_values("user-1", DAY, {"weight": 82.0})
        decision = freshness_engine.decide_field("user-1", "weight", DAY, 81.0, "google_fit", _at(9))
        assert decision.reason is Reason.UNKNOWN_ORIGIN_PROTECTED

    def test_invalid_timestamp_is_internal_error_skip(self, freshness_engine, metrics_repository):
        self._write(metrics_repository, "weight", 82.0, "renpho")
        decision = freshness_engine.decide_field("user-1", "weight", DAY, 81.0, "manual", "not-a-time")
        assert decision.overwrite is False
        assert decision.reason is Reason.INTERNAL_ERROR
        assert decision.error.startswith("InvalidInputError:")
        assert decision.previous_value == 82.0

    def test_invalid_date_is_internal_error_skip(self, freshness_engine):
        decision = freshness_engine.decide_field("user-1", "weight", "someday", 81.0, "manual", _at(9))
        assert decision.reason is Reason.INTERNAL_ERROR

    def test_metadata_read_failure_is_internal_error(self, metrics_repository):
        class _FailingReads:
            def get_lock(self, user_id):
                return DataLock()

            def get_field_state(self, *args):
                raise RuntimeError("disk I/O error")

        engine = FreshnessEngine(_FailingReads())
        decision = engine.decide_field("user-1", "weight", DAY, 81.0, "manual", _at(9))
        assert decision.overwrite is False
        assert decision.reason is Reason.INTERNAL_ERROR
        assert decision.error.startswith("MetadataReadError:")

    def test_lock_read_fails_open_by_default(self):
        class _NoLock:
            def get_lock(self, user_id):
                raise RuntimeError("locked")

            def get_field_state(self, *args):
                return None

        decision = FreshnessEngine(_NoLock()).decide_field(
            "user-1", "weight", DAY, 81.0, "renpho", _at(9)
        )
        assert decision.overwrite is True
        assert decision.reason is Reason.NO_EXISTING_DATA

    def test_lock_read_fails_closed_when_configured(self):
        class _NoLock:
            def get_lock(self, user_id):
                raise RuntimeError("locked")

            def get_field_state(self, *args):
                return None

        engine = FreshnessEngine(_NoLock(), lock_fail_open=False)
        decision = engine.decide_field("user-1", "weight", DAY, 81.0, "renpho", _at(9))
        assert decision.overwrite is False
        assert decision.reason is Reason.INTERNAL_ERROR
        assert decision.error.startswith("LockCheckError:")

    def test_meaningless_value_skips_metadata_read(self):
        class _Unreadable:
            def get_lock(self, user_id):
                return DataLock()

            def get_field_state(self, *args):
                raise AssertionError("should not be read")

        decision = FreshnessEngine(_Unreadable()).decide_field(
            "user-1", "weight", DAY, 0, "renpho", _at(9)
        )
        assert decision.reason is Reason.MEANINGLESS_VALUE

    def test_evaluate_with_preloaded_lock(self, freshness_engine):
        lock = DataLock(enabled=True, lock_date=DAY)
        decision = freshness_engine.evaluate(_measurement(), lock=lock)
        assert decision.reason is Reason.DATA_LOCKED

    def test_decision_type(self, freshness_engine):
        assert isinstance(freshness_engine.evaluate(_measurement()), Decision)
