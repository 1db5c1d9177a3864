"""Tests for the manual entry adapter."""

from __future__ import annotations

from datetime import date, datetime, timezone

from vitalsync.domains.health.connectors import SourceAdapter
from vitalsync.domains.health.connectors.daily_records import flatten_daily_record
from vitalsync.domains.health.connectors.manual_entry import ManualEntryAdapter


class TestManualEntryAdapter:
    def test_is_a_source_adapter(self):
        assert isinstance(ManualEntryAdapter(), SourceAdapter)
        assert ManualEntryAdapter().source == "manual"

    def test_entry_defaults_recorded_at_to_now(self):
        before = datetime.now(timezone.utc)
        m = ManualEntryAdapter().entry("user-1", "2025-08-03", "weight", 80.0)
        assert m.source == "manual"
        assert m.date == date(2025, 8, 3)
        assert m.recorded_at >= before

    def test_queued_entries(self):
        adapter = ManualEntryAdapter()
        adapter.add("2025-08-03", "weight", 80.0, "2025-08-03T08:00:00Z")
        adapter.add("2025-08-03", "blood_pressure_systolic", 121)
        measurements = adapter.measurements("user-1")
        assert [m.field_name for m in measurements] == ["weight", "blood_pressure_systolic"]
        assert measurements[0].recorded_at == "2025-08-03T08:00:00Z"

    def test_manual_entry_beats_device_import(self, importer, metrics_repository):
        adapter = ManualEntryAdapter()
        adapter.add("2025-08-03", "weight", 80.0, "2025-08-03T06:00:00Z")
        importer.import_batch(adapter.measurements("user-1"), source=adapter.source)

        device = flatten_daily_record(
            "user-1", "renpho", "2025-08-03", {"weight": 81.4}, "2025-08-03T23:00:00Z"
        )
        session = importer.import_batch(device, source="renpho")
        assert session.skip_reasons() == {"manual_protected": 1}
        assert metrics_repository.get_record("user-1", date(2025, 8, 3)).values == {"weight": 80.0}
