"""MCP tools for the per-user data lock.

Locking freezes every day up to and including the lock date against all
imports and manual edits. Lock changes are audit-logged.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from vitalsync.domains.health.domain_logic.errors import InvalidInputError

if TYPE_CHECKING:
    from vitalsync.core.audit.logger import AuditLogger
    from vitalsync.domains.health.domain_logic.data_lock import DataLockManager

logger = logging.getLogger(__name__)


def register_data_lock_tools(
    mcp: FastMCP,
    lock_manager: DataLockManager,
    audit_logger: AuditLogger | None = None,
    *,
    default_user_id: str = "default-user",
) -> None:
    """Register data lock tools on the MCP server."""

    @mcp.tool
    async def set_data_lock(
        ctx: Context,
        lock_date: str,
        user_id: str = "",
    ) -> str:
        """Protect all data dated on or before a day from being overwritten.

        Setting a later date than the current lock extends the protection.

        Args:
            lock_date: Last protected day (ISO 8601, e.g. '2025-08-01').
            user_id: Whose data to lock. Defaults to the configured user.
        """
        user_id = user_id or default_user_id
        try:
            change = lock_manager.set_lock(user_id, lock_date)
        except InvalidInputError as exc:
            return json.dumps({"success": False, "message": str(exc)})

        if audit_logger is not None:
            audit_logger.log_lock_change(
                user_id=user_id, enabled=True, lock_date=lock_date[:10], tool_name="set_data_lock"
            )
        return json.dumps(change.to_dict())

    @mcp.tool
    async def unlock_data(
        ctx: Context,
        confirm: str = "",
        user_id: str = "",
    ) -> str:
        """Remove the data lock so imports can overwrite historical data again.

        Args:
            confirm: Must be exactly 'UNLOCK' to proceed. Safety gate.
            user_id: Whose data to unlock. Defaults to the configured user.
        """
        if confirm != "UNLOCK":
            return json.dumps({
                "success": False,
                "message": (
                    "To remove the data lock, call this tool with confirm='UNLOCK'. "
                    "Imports will then be able to overwrite historical data."
                ),
            })

        user_id = user_id or default_user_id
        change = lock_manager.unlock_all(user_id)
        if audit_logger is not None:
            audit_logger.log_lock_change(
                user_id=user_id, enabled=False, lock_date=None, tool_name="unlock_data"
            )
        return json.dumps(change.to_dict())

    @mcp.tool
    async def data_lock_status(
        ctx: Context,
        user_id: str = "",
    ) -> str:
        """Show whether a data lock is active and how many days it protects.

        Args:
            user_id: Whose lock to show. Defaults to the configured user.
        """
        status = lock_manager.status(user_id or default_user_id)
        return json.dumps(status.to_dict())
