"""Shared test fixtures for VitalSync tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("PRIORITY_POLICY_PATH", "")
    monkeypatch.setenv("DEFAULT_USER_ID", "default-user")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def health_db():
    """Create an in-memory HealthDatabase for testing."""
    from vitalsync.core.storage.database import HealthDatabase

    db = HealthDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from vitalsync.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def metrics_repository(health_db, field_encryptor):
    """Create a MetricsRepository backed by in-memory SQLite."""
    from vitalsync.core.storage.repository import MetricsRepository

    return MetricsRepository(health_db, field_encryptor)


@pytest.fixture
def decision_audit_log(health_db, field_encryptor):
    """Create a DecisionAuditLog backed by in-memory SQLite."""
    from vitalsync.core.audit.decisions import DecisionAuditLog

    return DecisionAuditLog(health_db, field_encryptor)


@pytest.fixture
def audit_logger(health_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from vitalsync.core.audit.logger import AuditLogger

    return AuditLogger(health_db)


@pytest.fixture
def freshness_engine(metrics_repository):
    """Create a FreshnessEngine over the in-memory repository."""
    from vitalsync.domains.health.domain_logic.freshness import FreshnessEngine

    return FreshnessEngine(metrics_repository)


@pytest.fixture
def importer(metrics_repository, freshness_engine, decision_audit_log):
    """Create a MeasurementImporter wired to the in-memory store."""
    from vitalsync.domains.health.domain_logic.ingestion import MeasurementImporter

    return MeasurementImporter(metrics_repository, freshness_engine, decision_audit_log)
