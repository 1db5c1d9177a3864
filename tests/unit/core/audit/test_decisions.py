"""Tests for import sessions and the decision audit log."""

from __future__ import annotations

from datetime import date

from vitalsync.core.audit.decisions import DecisionEvent, ImportSession

DAY = date(2025, 8, 3)


def _event(status: str, reason: str, **overrides) -> DecisionEvent:
    defaults = dict(
        field_name="weight",
        date=DAY,
        status=status,
        reason=reason,
        old_value=82.0,
        new_value=81.4,
        source="renpho",
    )
    defaults.update(overrides)
    return DecisionEvent(**defaults)


class TestImportSession:
    def test_counts_and_histogram(self):
        session = ImportSession(user_id="user-1", source="renpho")
        session.record(_event("imported", "higher_priority_overrides"))
        session.record(_event("skipped", "manual_protected"))
        session.record(_event("skipped", "manual_protected", field_name="bmi"))
        session.record(_event("skipped", "meaningless_value", field_name="bmr"))
        assert session.imported == 1
        assert session.skipped == 3
        assert session.errors == 0
        assert session.skip_reasons() == {"manual_protected": 2, "meaningless_value": 1}

    def test_status_error_wins(self):
        session = ImportSession(user_id="user-1", source="renpho")
        session.record(_event("imported", "no_existing_data"))
        session.record(_event("error", "internal_error"))
        assert session.status == "error"

    def test_status_success_when_anything_imported(self):
        session = ImportSession(user_id="user-1", source="renpho")
        session.record(_event("imported", "no_existing_data"))
        session.record(_event("skipped", "existing_is_newer"))
        assert session.status == "success"

    def test_status_partial_when_nothing_imported(self):
        session = ImportSession(user_id="user-1", source="renpho")
        session.record(_event("skipped", "data_locked"))
        assert session.status == "partial"

    def test_summary_and_cancel_message(self):
        session = ImportSession(user_id="user-1", source="google_fit")
        session.record(_event("imported", "no_existing_data"))
        session.finish(cancelled=True)
        summary = session.summary()
        assert summary["total_processed"] == 1
        assert summary["cancelled"] is True
        assert summary["finished_at"] is not None
        assert summary["message"].endswith("(cancelled)")


class TestDecisionAuditLog:
    def test_save_and_list_sessions(self, decision_audit_log):
        session = ImportSession(user_id="user-1", source="renpho")
        session.record(_event("imported", "no_existing_data"))
        session.finish()
        assert decision_audit_log.save_session(session) == session.id

        sessions = decision_audit_log.recent_sessions("user-1")
        assert len(sessions) == 1
        assert sessions[0]["imported"] == 1
        assert sessions[0]["status"] == "success"
        assert sessions[0]["cancelled"] is False

    def test_decisions_roundtrip_with_values(self, decision_audit_log):
        session = ImportSession(user_id="user-1", source="renpho")
        session.record(_event("skipped", "manual_protected", old_value=80.0, new_value=81.4))
        session.finish()
        decision_audit_log.save_session(session)

        decisions = decision_audit_log.get_decisions(session.id)
        assert len(decisions) == 1
        assert decisions[0].reason == "manual_protected"
        assert decisions[0].old_value == 80.0
        assert decisions[0].new_value == 81.4
        assert decisions[0].date == DAY

    def test_missing_previous_value_roundtrips_as_none(self, decision_audit_log, health_db):
        session = ImportSession(user_id="user-1", source="renpho")
        session.record(_event("imported", "no_existing_data", old_value=None))
        decision_audit_log.save_session(session)

        row = health_db.connection.execute("SELECT old_value_enc FROM import_decisions").fetchone()
        assert row["old_value_enc"] == ""
        assert decision_audit_log.get_decisions(session.id)[0].old_value is None

    def test_values_encrypted_at_rest(self, decision_audit_log, health_db):
        session = ImportSession(user_id="user-1", source="renpho")
        session.record(_event("imported", "no_existing_data", new_value="athletic"))
        decision_audit_log.save_session(session)
        row = health_db.connection.execute("SELECT new_value_enc FROM import_decisions").fetchone()
        assert "athletic" not in row["new_value_enc"]

    def test_filter_by_source(self, decision_audit_log):
        for source in ("renpho", "google_fit"):
            session = ImportSession(user_id="user-1", source=source)
            session.finish()
            decision_audit_log.save_session(session)
        sessions = decision_audit_log.recent_sessions("user-1", source="google_fit")
        assert [s["source"] for s in sessions] == ["google_fit"]

    def test_unknown_session_has_no_decisions(self, decision_audit_log):
        assert decision_audit_log.get_decisions("missing") == []

    def test_save_failure_is_logged_not_raised(self, decision_audit_log, health_db):
        session = ImportSession(user_id="user-1", source="renpho")
        decision_audit_log.save_session(session)
        # Same ID again violates the primary key
        assert decision_audit_log.save_session(session) == ""
