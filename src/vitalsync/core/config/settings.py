"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """VitalSync server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: there is no auth layer in front of the tools.
    vitalsync_host: str = "127.0.0.1"
    vitalsync_port: int = 8001
    vitalsync_log_level: str = "info"
    # Binding to a non-loopback address is refused unless this is true.
    vitalsync_allow_insecure_bind: bool = False

    # Storage (field metadata store)
    db_path: str = "~/.vitalsync/health.db"

    # Encryption of metric values at rest
    encryption_key: str = ""

    # Reconciliation
    default_user_id: str = "default-user"
    primary_tie_min_gap_hours: float = 2.0
    lock_check_fail_open: bool = True
    write_max_retries: int = 3
    priority_policy_path: str = ""

    # Stale authoritative data detection
    stale_threshold_days: int = 2
    stale_window_days: int = 7


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
