"""MCP tools for getting measurements into the metrics store.

Every write goes through the freshness engine: tools report the reason the
engine gave for each field instead of silently dropping or overwriting
values.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from vitalsync.core.storage.models import HealthMetricRecord, Measurement
from vitalsync.domains.health.connectors.daily_records import DailyRecordAdapter
from vitalsync.domains.health.connectors.manual_entry import ManualEntryAdapter
from vitalsync.domains.health.domain_logic.errors import ReconciliationError
from vitalsync.domains.health.domain_logic.priority import parse_source
from vitalsync.domains.health.domain_logic.values import as_day

if TYPE_CHECKING:
    from vitalsync.core.audit.logger import AuditLogger
    from vitalsync.core.storage.repository import MetricsRepository
    from vitalsync.domains.health.domain_logic.ingestion import MeasurementImporter

logger = logging.getLogger(__name__)


def _fields_payload(record: HealthMetricRecord) -> dict[str, Any]:
    fields = {}
    for field_name, value in sorted(record.values.items()):
        meta = record.field_metadata.get(field_name)
        fields[field_name] = {
            "value": value,
            "metadata": meta.to_dict() if meta else None,
        }
    return fields


def register_ingestion_tools(
    mcp: FastMCP,
    repository: MetricsRepository,
    importer: MeasurementImporter,
    audit_logger: AuditLogger | None = None,
    *,
    default_user_id: str = "default-user",
) -> None:
    """Register measurement ingestion tools on the MCP server."""

    engine = importer.engine
    manual = ManualEntryAdapter()

    def _log(tool_name: str, tool_input: Any, user_id: str, start_time: float, **kwargs: Any) -> None:
        if audit_logger is not None:
            audit_logger.log_tool_call(
                tool_name=tool_name,
                tool_input=tool_input,
                user_id=user_id,
                duration_ms=(time.monotonic() - start_time) * 1000,
                **kwargs,
            )

    @mcp.tool
    async def record_manual_measurement(
        ctx: Context,
        field_name: str,
        value: float | str,
        date: str,
        recorded_at: str = "",
        user_id: str = "",
    ) -> str:
        """Record a value you measured yourself (e.g. a weight from a clinic scale).

        Manual entries take precedence over every device source, but not
        over a data lock.

        Args:
            field_name: Metric field, e.g. 'weight', 'sleep_duration', 'steps'.
            value: The measured value.
            date: Calendar day of the measurement (ISO 8601, e.g. '2025-08-03').
            recorded_at: When it was measured (ISO 8601). Defaults to now.
            user_id: Whose record to update. Defaults to the configured user.
        """
        start_time = time.monotonic()
        user_id = user_id or default_user_id
        try:
            measurement = manual.entry(user_id, date, field_name, value, recorded_at or None)
        except ReconciliationError as exc:
            _log("record_manual_measurement", {"field_name": field_name, "date": date},
                 user_id, start_time, status="failure", error_type=type(exc).__name__)
            return json.dumps({"status": "error", "message": str(exc)})

        decision = importer.import_measurement(measurement)
        _log(
            "record_manual_measurement",
            {"field_name": field_name, "date": date},
            user_id,
            start_time,
            metadata={"reason": decision.reason.value},
        )
        return json.dumps({
            "status": "recorded" if decision.overwrite else "skipped",
            "field_name": field_name,
            "date": measurement.date.isoformat(),
            **decision.to_dict(),
        })

    @mcp.tool
    async def record_manual_vitals(
        ctx: Context,
        date: str,
        weight: float | None = None,
        resting_heart_rate: float | None = None,
        systolic_bp: float | None = None,
        diastolic_bp: float | None = None,
        oxygen_saturation: float | None = None,
        recorded_at: str = "",
        user_id: str = "",
    ) -> str:
        """Record several readings from one doctor visit or home check at once.

        Each reading is decided on its own, like any other import.

        Args:
            date: Calendar day of the readings (ISO 8601).
            weight: Body weight in kg.
            resting_heart_rate: Resting heart rate in BPM.
            systolic_bp: Systolic blood pressure (top number).
            diastolic_bp: Diastolic blood pressure (bottom number).
            oxygen_saturation: Blood oxygen saturation percentage.
            recorded_at: When the readings were taken (ISO 8601). Defaults to now.
            user_id: Whose record to update. Defaults to the configured user.
        """
        start_time = time.monotonic()
        user_id = user_id or default_user_id
        readings = {
            "weight": weight,
            "resting_heart_rate": resting_heart_rate,
            "blood_pressure_systolic": systolic_bp,
            "blood_pressure_diastolic": diastolic_bp,
            "oxygen_saturation": oxygen_saturation,
        }
        entries = ManualEntryAdapter()
        try:
            for field_name, value in readings.items():
                if value is not None:
                    entries.add(date, field_name, value, recorded_at or None)
        except ReconciliationError as exc:
            _log("record_manual_vitals", {"date": date}, user_id, start_time,
                 status="failure", error_type=type(exc).__name__)
            return json.dumps({"status": "error", "message": str(exc)})

        measurements = entries.measurements(user_id)
        if not measurements:
            return json.dumps({"status": "error", "message": "No vitals provided"})

        session = importer.import_batch(measurements, source=entries.source, user_id=user_id)
        _log("record_manual_vitals", {"date": date, "fields": len(measurements)},
             user_id, start_time, metadata={"session_id": session.id})
        return json.dumps(session.summary(), indent=2)

    @mcp.tool
    async def import_measurements(
        ctx: Context,
        source: str,
        records: list[dict[str, Any]],
        user_id: str = "",
    ) -> str:
        """Import normalized daily rows from one source.

        Each row holds ``date``, ``recorded_at`` (when the readings were
        taken), optional ``device_id``, and any number of metric fields.
        Every field is decided independently, so one import can update
        some fields and keep others.

        Args:
            source: 'health_connect', 'google_fit', 'mi_fitness', 'renpho', or 'manual'.
            records: Normalized daily rows.
            user_id: Whose records to update. Defaults to the configured user.
        """
        start_time = time.monotonic()
        user_id = user_id or default_user_id
        tool_input = {"source": source, "count": len(records)}
        try:
            adapter = DailyRecordAdapter(source, records)
            measurements = adapter.measurements(user_id)
        except (ReconciliationError, KeyError) as exc:
            _log("import_measurements", tool_input, user_id, start_time,
                 status="failure", error_type=type(exc).__name__)
            return json.dumps({
                "status": "error",
                "message": f"Invalid import request: {exc}",
            })

        await ctx.info(f"Importing {len(measurements)} fields from {adapter.source}")
        session = importer.import_batch(measurements, source=adapter.source, user_id=user_id)
        _log("import_measurements", tool_input, user_id, start_time,
             metadata={"session_id": session.id, "imported": session.imported})
        return json.dumps(session.summary(), indent=2)

    @mcp.tool
    async def preview_decision(
        ctx: Context,
        field_name: str,
        value: float | str,
        source: str,
        date: str,
        recorded_at: str,
        user_id: str = "",
    ) -> str:
        """Show what an import would do to one field, without writing anything.

        Args:
            field_name: Metric field, e.g. 'weight'.
            value: The incoming value.
            source: Source the value would come from.
            date: Calendar day of the measurement (ISO 8601).
            recorded_at: When the value was measured (ISO 8601).
            user_id: Whose record to check. Defaults to the configured user.
        """
        user_id = user_id or default_user_id
        decision = engine.evaluate(
            Measurement(
                user_id=user_id,
                date=date,
                field_name=field_name,
                value=value,
                source=source,
                recorded_at=recorded_at,
            )
        )
        result = decision.to_dict()
        result["previous_value"] = decision.previous_value
        return json.dumps(result)

    @mcp.tool
    async def get_day_metrics(
        ctx: Context,
        date: str,
        user_id: str = "",
    ) -> str:
        """Show every stored field for one day with its source and measurement time.

        Args:
            date: Calendar day (ISO 8601).
            user_id: Whose record to read. Defaults to the configured user.
        """
        start_time = time.monotonic()
        user_id = user_id or default_user_id
        try:
            day = as_day(date)
        except ReconciliationError as exc:
            return json.dumps({"status": "error", "message": str(exc)})

        record = repository.get_record(user_id, day)
        _log("get_day_metrics", {"date": date}, user_id, start_time)
        if record is None:
            return json.dumps({
                "status": "not_found",
                "date": day.isoformat(),
                "message": "No data stored for this day.",
            })

        return json.dumps({
            "status": "ok",
            "date": day.isoformat(),
            "fields": _fields_payload(record),
        }, indent=2)

    @mcp.tool
    async def list_day_records(
        ctx: Context,
        since: str = "",
        until: str = "",
        limit: int = 10,
        user_id: str = "",
    ) -> str:
        """List stored days, newest first, with each field's source.

        Args:
            since: Earliest day to include (ISO 8601). Optional.
            until: Latest day to include (ISO 8601). Optional.
            limit: Maximum number of days to return.
            user_id: Whose records to list. Defaults to the configured user.
        """
        start_time = time.monotonic()
        user_id = user_id or default_user_id
        try:
            since_day = as_day(since) if since else None
            until_day = as_day(until) if until else None
        except ReconciliationError as exc:
            return json.dumps({"status": "error", "message": str(exc)})

        records = repository.get_records(
            user_id, since=since_day, until=until_day, limit=max(1, limit)
        )
        _log("list_day_records", {"since": since, "until": until, "limit": limit},
             user_id, start_time)
        return json.dumps({
            "status": "ok",
            "count": len(records),
            "days": [
                {"date": r.date.isoformat(), "fields": _fields_payload(r)}
                for r in records
            ],
        }, indent=2)

    @mcp.tool
    async def source_priority(
        ctx: Context,
        source: str = "",
        field_name: str = "",
    ) -> str:
        """Explain the source priority policy.

        With no arguments, returns the whole policy. With a source (and
        optionally a field), returns the tier that applies.

        Args:
            source: Source to look up.
            field_name: Field the source would write.
        """
        if not source:
            return json.dumps(engine.table.describe(), indent=2)
        try:
            source_value = parse_source(source).value
        except ReconciliationError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        tier = engine.table.tier(source_value, field_name or None)
        return json.dumps({
            "source": source_value,
            "field_name": field_name or None,
            "tier": tier.value,
        })
