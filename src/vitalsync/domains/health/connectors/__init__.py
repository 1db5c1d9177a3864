"""Source adapters — the boundary between vendor data and the freshness engine.

Vendor parsing (exports, APIs, OAuth) happens elsewhere. An adapter's only
job is to hand the importer normalized ``Measurement`` tuples tagged with
its source and the time each reading was actually taken.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from vitalsync.core.storage.models import Measurement


@runtime_checkable
class SourceAdapter(Protocol):
    """Abstract interface for anything that produces measurements."""

    @property
    def source(self) -> str:
        """Source label, e.g. 'renpho' or 'health_connect'."""
        ...

    def measurements(self, user_id: str) -> Iterable[Measurement]:
        """Normalized per-field measurements for one user."""
        ...
