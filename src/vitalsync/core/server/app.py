"""VitalSync MCP Server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from datetime import timedelta

from fastmcp import FastMCP

from vitalsync.core.audit.decisions import DecisionAuditLog
from vitalsync.core.audit.logger import AuditLogger
from vitalsync.core.config.settings import get_settings
from vitalsync.core.storage.database import HealthDatabase
from vitalsync.core.storage.encryption import EncryptionError, FieldEncryptor
from vitalsync.core.storage.repository import MetricsRepository
from vitalsync.domains.health.domain_logic.data_lock import DataLockManager
from vitalsync.domains.health.domain_logic.freshness import FreshnessEngine
from vitalsync.domains.health.domain_logic.ingestion import MeasurementImporter
from vitalsync.domains.health.domain_logic.priority import (
    PriorityTable,
    default_priority_table,
    load_priority_table,
)

logger = logging.getLogger(__name__)


def create_app(
    *,
    database_override: HealthDatabase | None = None,
    encryptor_override: FieldEncryptor | None = None,
    priority_table_override: PriorityTable | None = None,
) -> FastMCP:
    """Create and configure the VitalSync MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Loads the source priority policy
    3. Initializes the encrypted metrics store and audit logs
    4. Wires the freshness engine and importer
    5. Registers all tools

    Without storage (no ENCRYPTION_KEY and no override) only
    ``health_check`` is available.
    """
    settings = get_settings()

    # --- Server instance ---
    server = FastMCP(
        "VitalSync",
        instructions=(
            "Personal health metrics reconciliation server. Imports measurements "
            "from several devices and apps into one record per day, deciding per "
            "field which source to trust, and explains every decision."
        ),
    )

    # --- Source priority policy ---
    if priority_table_override is not None:
        table = priority_table_override
    elif settings.priority_policy_path:
        table = load_priority_table(settings.priority_policy_path)
        logger.info("Loaded priority policy from %s", settings.priority_policy_path)
    else:
        table = default_priority_table

    # --- Initialize encrypted storage ---
    database: HealthDatabase | None = None
    encryptor: FieldEncryptor | None = None
    if database_override is not None and encryptor_override is not None:
        database = database_override
        encryptor = encryptor_override
        database.initialize()
    elif settings.encryption_key:
        try:
            encryptor = FieldEncryptor(settings.encryption_key)
            database = HealthDatabase(settings.db_path)
            database.initialize()
            logger.info(
                "Metrics store initialized: %s (schema v%d)",
                settings.db_path,
                database.get_schema_version(),
            )
        except EncryptionError as exc:
            logger.error("Failed to initialize storage: %s", exc)
            logger.warning("Continuing without persistence — no tools can write data")
            database = None
            encryptor = None
    else:
        logger.info(
            "No ENCRYPTION_KEY configured — running without persistence. "
            "Set ENCRYPTION_KEY to enable the metrics store."
        )

    repository: MetricsRepository | None = None
    if database is not None and encryptor is not None:
        repository = MetricsRepository(database, encryptor)

    # --- Register tools ---
    @server.tool
    async def health_check() -> dict:
        """Check server health and return basic status information."""
        status = {
            "status": "ok",
            "server": "VitalSync",
            "version": "0.1.0",
            "storage_enabled": repository is not None,
            "priority_policy": settings.priority_policy_path or "default",
        }
        if repository is not None:
            status["records_stored"] = repository.count_records()
        return status

    if repository is None:
        return server

    audit_logger = AuditLogger(database)
    decision_log = DecisionAuditLog(database, encryptor)
    engine = FreshnessEngine(
        repository,
        table=table,
        min_primary_gap=timedelta(hours=settings.primary_tie_min_gap_hours),
        lock_fail_open=settings.lock_check_fail_open,
    )
    importer = MeasurementImporter(
        repository, engine, decision_log, max_retries=settings.write_max_retries
    )

    from vitalsync.domains.health.tools.audit_tools import register_audit_tools
    from vitalsync.domains.health.tools.data_lock_tools import register_data_lock_tools
    from vitalsync.domains.health.tools.freshness_tools import register_freshness_tools
    from vitalsync.domains.health.tools.ingestion_tools import register_ingestion_tools

    register_ingestion_tools(
        server, repository, importer, audit_logger, default_user_id=settings.default_user_id
    )
    logger.info("Ingestion tools registered")

    register_data_lock_tools(
        server, DataLockManager(repository), audit_logger,
        default_user_id=settings.default_user_id,
    )
    logger.info("Data lock tools registered")

    register_freshness_tools(
        server,
        engine,
        default_user_id=settings.default_user_id,
        stale_threshold_days=settings.stale_threshold_days,
        stale_window_days=settings.stale_window_days,
    )
    register_audit_tools(
        server, decision_log, audit_logger, default_user_id=settings.default_user_id
    )
    logger.info("Freshness and audit tools registered")

    return server


# Module-level instance for FastMCP discovery ("...app.py:mcp").
# Lazy: only created when this attribute is accessed (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
