"""Error taxonomy for the reconciliation engine.

None of these reach an import caller as raw exceptions: the freshness engine
converts them into skip decisions at its boundary.
"""

from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for errors raised while reconciling a measurement."""


class InvalidInputError(ReconciliationError):
    """A measurement carried a bad timestamp, date, or field name."""


class MetadataReadError(ReconciliationError):
    """The field metadata store could not be read."""


class LockCheckError(ReconciliationError):
    """The user's data lock settings could not be read."""


class UnknownSourceError(ReconciliationError):
    """A source tag is not one of the known data sources."""


class PriorityPolicyError(ReconciliationError):
    """A priority policy file is malformed."""
