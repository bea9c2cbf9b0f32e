"""staffing_etl.errors

Exceptions raised when a setup invariant breaks.  Row-level problems
(validation errors, identity collisions, denylist matches) are not
exceptions; they are collected into the RunReport.
"""

from __future__ import annotations


class StagingError(Exception):
    """Base class for all staffing_etl errors."""


class SourceReadError(StagingError):
    """Raised when an input file is unreadable or in an unsupported format."""


class FileTooLargeError(SourceReadError):
    """Raised when an input file exceeds the interactive upload ceiling."""


class RecordTypeConfigError(StagingError, ValueError):
    """Raised when a record-type YAML file fails schema validation."""


class StoreError(StagingError):
    """Raised by a document store when a read or a batch commit fails."""


class CollectionBusyError(StagingError):
    """Raised when another run already holds the target collection."""


class InvalidTransitionError(StagingError):
    """Raised when a run is driven through a state change it does not allow."""


class ReportFrozenError(StagingError):
    """Raised when a finalized RunReport is mutated."""


class PreservedCollectionError(StagingError):
    """Raised when a clear targets a collection that must never be wiped."""
