"""Measurement importer — read, decide, and write with compare-and-swap.

Every field write is based on a snapshot of the stored cell. If another
writer changes the cell between that read and the write, the repository
raises ``StaleWriteError`` and the whole read → decide → write cycle runs
again against the fresh state, so a decision is never applied to data it
did not see.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import date
from typing import Any

from vitalsync.core.audit.decisions import DecisionAuditLog, DecisionEvent, ImportSession
from vitalsync.core.storage.models import DataLock, Measurement, create_field_metadata
from vitalsync.core.storage.repository import MetricsRepository, StaleWriteError
from vitalsync.domains.health.domain_logic.errors import InvalidInputError
from vitalsync.domains.health.domain_logic.freshness import Decision, FreshnessEngine, Reason
from vitalsync.domains.health.domain_logic.priority import Source
from vitalsync.domains.health.domain_logic.values import as_day

logger = logging.getLogger(__name__)


def _source_name(source: Source | str) -> str:
    return source.value if isinstance(source, Source) else str(source)


def _skip_status(decision: Decision) -> str:
    return "error" if decision.reason is Reason.INTERNAL_ERROR else "skipped"


def _event_day(value: Any) -> date | str:
    try:
        return as_day(value)
    except InvalidInputError:
        return str(value)


class MeasurementImporter:
    """Applies measurements to the store one field at a time.

    Usage::

        importer = MeasurementImporter(repository, engine, audit_log)
        session = importer.import_batch(measurements, source=Source.RENPHO)
        print(session.summary())
    """

    def __init__(
        self,
        repository: MetricsRepository,
        engine: FreshnessEngine,
        audit_log: DecisionAuditLog | None = None,
        *,
        max_retries: int = 3,
    ) -> None:
        self._repo = repository
        self._engine = engine
        self._audit = audit_log
        self._max_retries = max(1, max_retries)

    @property
    def engine(self) -> FreshnessEngine:
        return self._engine

    def import_measurement(
        self,
        measurement: Measurement,
        session: ImportSession | None = None,
        *,
        lock: DataLock | None = None,
    ) -> Decision:
        """Decide one measurement and write it if accepted.

        Args:
            measurement: The incoming value.
            session: Session collecting the decision event, if any.
            lock: Lock settings already loaded for this batch.

        Returns:
            The decision that was applied. A write that kept losing the
            compare-and-swap race is reported as an ``internal_error`` skip.
        """
        decision: Decision | None = None
        for attempt in range(1, self._max_retries + 1):
            decision = self._engine.evaluate(measurement, lock=lock)
            if not decision.overwrite:
                self._record(session, measurement, decision, status=_skip_status(decision))
                return decision

            try:
                metadata = create_field_metadata(
                    measurement.recorded_at, measurement.source, measurement.device_id
                )
                self._repo.write_field(
                    measurement.user_id,
                    as_day(measurement.date),
                    measurement.field_name,
                    measurement.value,
                    metadata,
                    expected=decision.version,
                )
            except StaleWriteError as exc:
                logger.warning(
                    "Write conflict on %s for %s (attempt %d/%d): %s",
                    measurement.field_name,
                    measurement.user_id,
                    attempt,
                    self._max_retries,
                    exc,
                )
                continue
            except Exception as exc:
                logger.exception(
                    "Failed to write %s for %s", measurement.field_name, measurement.user_id
                )
                failed = Decision(
                    overwrite=False,
                    reason=Reason.INTERNAL_ERROR,
                    message=f"Write failed for {measurement.field_name}",
                    previous_value=decision.previous_value,
                    version=decision.version,
                    error=f"{type(exc).__name__}: {exc}",
                )
                self._record(session, measurement, failed, status="error")
                return failed

            self._record(session, measurement, decision, status="imported")
            return decision

        gave_up = Decision(
            overwrite=False,
            reason=Reason.INTERNAL_ERROR,
            message=(
                f"{measurement.field_name} kept changing during import; "
                f"gave up after {self._max_retries} attempts"
            ),
            previous_value=decision.previous_value if decision else None,
            error=f"StaleWriteError: retries exhausted after {self._max_retries} attempts",
        )
        self._record(session, measurement, gave_up, status="error")
        return gave_up

    def import_batch(
        self,
        measurements: Iterable[Measurement],
        *,
        source: Source | str,
        user_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ImportSession:
        """Import many measurements as one logged session.

        Lock settings are read once per user. Each field is decided and
        written independently; when ``cancel_event`` is set, the batch stops
        before the next decision and everything already written stays.

        Args:
            measurements: Normalized measurements, typically from an adapter.
            source: Source label for the session.
            user_id: Session owner; defaults to the first measurement's user.
            cancel_event: Set by another thread to stop the import.

        Returns:
            The finished session (also saved to the audit log, if any).
        """
        items = list(measurements)
        owner = user_id or (items[0].user_id if items else "")
        session = ImportSession(user_id=owner, source=_source_name(source))
        locks: dict[str, DataLock] = {}
        cancelled = False

        for measurement in items:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info(
                    "%s import cancelled after %d decisions", session.source, len(session.events)
                )
                break

            lock = locks.get(measurement.user_id)
            if lock is None:
                try:
                    lock = self._engine.load_lock(measurement.user_id)
                except Exception as exc:
                    # Unreadable lock with fail-open off: the engine turns this
                    # into an internal_error event. Retried on the next item.
                    logger.warning("Lock unavailable for %s: %s", measurement.user_id, exc)
                    decision = self._engine.evaluate(measurement)
                    self._record(session, measurement, decision, status=_skip_status(decision))
                    continue
                locks[measurement.user_id] = lock

            self.import_measurement(measurement, session, lock=lock)

        session.finish(cancelled=cancelled)
        if self._audit is not None:
            self._audit.save_session(session)
        else:
            logger.info("%s", session.message)
        return session

    @staticmethod
    def _record(
        session: ImportSession | None,
        measurement: Measurement,
        decision: Decision,
        *,
        status: str,
    ) -> None:
        if session is None:
            return
        message = decision.message
        if decision.error:
            message = f"{message} ({decision.error})"
        session.record(
            DecisionEvent(
                field_name=measurement.field_name,
                date=_event_day(measurement.date),
                status=status,
                reason=decision.reason.value,
                old_value=decision.previous_value,
                new_value=measurement.value,
                source=_source_name(measurement.source),
                message=message,
            )
        )
