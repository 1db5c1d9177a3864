"""MCP tools for reviewing import sessions and the tool audit trail.

Import sessions answer "why didn't my reading show up?": every skipped
field carries the name of the rule that kept it out.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from vitalsync.core.audit.decisions import DecisionAuditLog
    from vitalsync.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def register_audit_tools(
    mcp: FastMCP,
    decision_log: DecisionAuditLog,
    audit_logger: AuditLogger | None = None,
    *,
    default_user_id: str = "default-user",
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def import_log_summary(
        ctx: Context,
        session_id: str = "",
        source: str = "",
        limit: int = 10,
        days: int = 30,
        user_id: str = "",
    ) -> str:
        """Review recent imports, or every decision of one import.

        Args:
            session_id: Show the field decisions of this import session.
            source: Only list sessions from this source.
            limit: Maximum number of sessions to list (default: 10).
            days: Look-back window for the tool usage count (default: 30).
            user_id: Whose imports to list. Defaults to the configured user.
        """
        if session_id:
            decisions = decision_log.get_decisions(session_id)
            if not decisions:
                return json.dumps({
                    "status": "not_found",
                    "session_id": session_id,
                    "message": "No decisions recorded for that session.",
                })
            return json.dumps({
                "status": "ok",
                "session_id": session_id,
                "decisions": [d.to_dict() for d in decisions],
            }, indent=2)

        sessions = decision_log.recent_sessions(
            user_id or default_user_id, source=source or None, limit=limit
        )
        result = {
            "status": "ok",
            "sessions": sessions,
        }
        if audit_logger is not None:
            since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
            result["tool_calls_last_days"] = audit_logger.count_events(since=since)
        return json.dumps(result, indent=2)
