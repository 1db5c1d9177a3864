"""MCP tools for spotting authoritative data that has stopped arriving."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from vitalsync.domains.health.domain_logic.freshness import FreshnessEngine

logger = logging.getLogger(__name__)


def register_freshness_tools(
    mcp: FastMCP,
    engine: FreshnessEngine,
    *,
    default_user_id: str = "default-user",
    stale_threshold_days: int = 2,
    stale_window_days: int = 7,
) -> None:
    """Register staleness detection tools on the MCP server."""

    @mcp.tool
    async def stale_authoritative_fields(
        ctx: Context,
        since_days: int = 0,
        user_id: str = "",
    ) -> str:
        """List fields whose manual or primary-source data is getting old.

        Fields only kept up to date by gap-filling sources show up here,
        which usually means a phone or scale needs to re-sync.

        Args:
            since_days: Staleness threshold in days. Defaults to the configured value.
            user_id: Whose data to check. Defaults to the configured user.
        """
        threshold = since_days if since_days > 0 else stale_threshold_days
        stale = engine.find_stale_authoritative_fields(
            user_id or default_user_id,
            threshold,
            window_days=max(stale_window_days, threshold),
        )
        return json.dumps({
            "status": "ok",
            "checked_at": datetime.now(timezone.utc).isoformat(),
            "threshold_days": threshold,
            "stale_fields": [item.to_dict() for item in stale],
        }, indent=2)
