"""Source priority table — which data source wins a conflict for a field.

Default hierarchy: manual > RENPHO / Health Connect > Google Fit (gap filler
only) > Mi Fitness. Field-specific overrides are checked first; the only
active one elevates Google Fit to SUPER_PRIMARY for ``sleep_duration``
because its sleep sessions are more complete than Health Connect's. The
same override for ``steps`` is deliberately left out: it let Google Fit
overwrite step counts from the phone.

Policy can be replaced from a YAML file (see ``load_priority_table``)::

    source_tiers:
      renpho: primary
    field_overrides:
      sleep_duration:
        google_fit: super_primary
"""

from __future__ import annotations

import logging
from enum import Enum
from functools import total_ordering
from pathlib import Path
from typing import Any

import yaml

from vitalsync.domains.health.domain_logic.errors import (
    PriorityPolicyError,
    UnknownSourceError,
)

logger = logging.getLogger(__name__)


class Source(str, Enum):
    """Systems (or the person) that can produce a measurement."""

    MANUAL = "manual"
    HEALTH_CONNECT = "health_connect"
    GOOGLE_FIT = "google_fit"
    MI_FITNESS = "mi_fitness"
    RENPHO = "renpho"


@total_ordering
class PriorityTier(Enum):
    """Ordered priority tiers. Lower ranks win conflicts."""

    MANUAL = "manual"
    SUPER_PRIMARY = "super_primary"
    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PriorityTier):
            return NotImplemented
        return self.rank < other.rank


# Highest priority first. A new intermediate tier is inserted here, not
# squeezed between numeric ranks.
_TIER_ORDER: tuple[PriorityTier, ...] = (
    PriorityTier.MANUAL,
    PriorityTier.SUPER_PRIMARY,
    PriorityTier.PRIMARY,
    PriorityTier.SECONDARY,
    PriorityTier.TERTIARY,
)


def parse_source(value: Source | str) -> Source:
    """Resolve a source tag, tolerating case, spaces, and hyphens.

    Raises:
        UnknownSourceError: If the tag is not a known source.
    """
    if isinstance(value, Source):
        return value
    if not isinstance(value, str):
        raise UnknownSourceError(f"Unknown data source: {value!r}")
    key = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return Source(key)
    except ValueError as exc:
        raise UnknownSourceError(f"Unknown data source: {value!r}") from exc


def parse_tier(value: PriorityTier | str) -> PriorityTier:
    """Resolve a tier name such as ``"primary"`` or ``"SUPER_PRIMARY"``."""
    if isinstance(value, PriorityTier):
        return value
    try:
        return PriorityTier(str(value).strip().lower())
    except ValueError as exc:
        raise PriorityPolicyError(f"Unknown priority tier: {value!r}") from exc


DEFAULT_SOURCE_TIERS: dict[Source, PriorityTier] = {
    Source.MANUAL: PriorityTier.MANUAL,
    Source.HEALTH_CONNECT: PriorityTier.PRIMARY,
    Source.RENPHO: PriorityTier.PRIMARY,
    Source.GOOGLE_FIT: PriorityTier.SECONDARY,
    Source.MI_FITNESS: PriorityTier.TERTIARY,
}

DEFAULT_FIELD_OVERRIDES: dict[tuple[str, Source], PriorityTier] = {
    ("sleep_duration", Source.GOOGLE_FIT): PriorityTier.SUPER_PRIMARY,
}


class PriorityTable:
    """Maps ``(source, field)`` to a ``PriorityTier``.

    Usage::

        table = PriorityTable()
        table.tier("google_fit")                    # PriorityTier.SECONDARY
        table.tier("google_fit", "sleep_duration")  # PriorityTier.SUPER_PRIMARY
    """

    def __init__(
        self,
        source_tiers: dict[Source, PriorityTier] | None = None,
        field_overrides: dict[tuple[str, Source], PriorityTier] | None = None,
    ) -> None:
        self._source_tiers = dict(DEFAULT_SOURCE_TIERS if source_tiers is None else source_tiers)
        self._field_overrides = dict(
            DEFAULT_FIELD_OVERRIDES if field_overrides is None else field_overrides
        )

    def tier(self, source: Source | str, field_name: str | None = None) -> PriorityTier:
        """Return the tier for a source, honouring field-specific overrides.

        Unknown sources fall back to TERTIARY instead of raising.
        """
        try:
            resolved = parse_source(source)
        except UnknownSourceError:
            logger.warning("Unknown data source %r treated as tertiary", source)
            return PriorityTier.TERTIARY

        if field_name:
            override = self._field_overrides.get((field_name, resolved))
            if override is not None:
                return override

        return self._source_tiers.get(resolved, PriorityTier.TERTIARY)

    def describe(self) -> dict[str, Any]:
        """Return the effective policy as plain data."""
        overrides: dict[str, dict[str, str]] = {}
        for (field_name, source), tier_value in sorted(
            self._field_overrides.items(), key=lambda item: (item[0][0], item[0][1].value)
        ):
            overrides.setdefault(field_name, {})[source.value] = tier_value.value
        return {
            "tier_order": [t.value for t in _TIER_ORDER],
            "source_tiers": {s.value: t.value for s, t in self._source_tiers.items()},
            "field_overrides": overrides,
        }


def load_priority_table(path: str | Path) -> PriorityTable:
    """Build a ``PriorityTable`` from a YAML policy file.

    Sections missing from the file keep their defaults. An empty
    ``field_overrides`` mapping clears the default overrides.

    Raises:
        PriorityPolicyError: If the file is unreadable or malformed.
    """
    path = Path(path).expanduser()
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise PriorityPolicyError(f"Cannot read priority policy {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise PriorityPolicyError(f"Priority policy {path} must be a mapping")

    source_tiers = dict(DEFAULT_SOURCE_TIERS)
    try:
        for source_name, tier_name in (data.get("source_tiers") or {}).items():
            source_tiers[parse_source(source_name)] = parse_tier(tier_name)
    except UnknownSourceError as exc:
        raise PriorityPolicyError(str(exc)) from exc

    field_overrides = dict(DEFAULT_FIELD_OVERRIDES)
    if "field_overrides" in data:
        field_overrides = {}
        try:
            for field_name, per_source in (data["field_overrides"] or {}).items():
                if not isinstance(per_source, dict):
                    raise PriorityPolicyError(
                        f"Override for field {field_name!r} must map sources to tiers"
                    )
                for source_name, tier_name in per_source.items():
                    field_overrides[(str(field_name), parse_source(source_name))] = parse_tier(
                        tier_name
                    )
        except UnknownSourceError as exc:
            raise PriorityPolicyError(str(exc)) from exc

    logger.info(
        "Loaded priority policy from %s (%d field overrides)", path, len(field_overrides)
    )
    return PriorityTable(source_tiers, field_overrides)


default_priority_table = PriorityTable()


def tier(source: Source | str, field_name: str | None = None) -> PriorityTier:
    """Tier of ``source`` for ``field_name`` under the default policy."""
    return default_priority_table.tier(source, field_name)
