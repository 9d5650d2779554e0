"""Exception hierarchy for logdb.

Defines all custom exceptions used throughout the implementation. Every
error carries a short ``kind`` string so the service boundary can report
failures as values and the CLI can map them to messages.
"""

from __future__ import annotations


class LogDBError(Exception):
    """Base exception for all logdb errors."""
    kind = "Error"


class AlreadyExists(LogDBError):
    """Raised when a database or table name is already taken."""
    kind = "AlreadyExists"


class NotFound(LogDBError):
    """Raised when a database, table or key does not exist."""
    kind = "NotFound"


class DuplicateKey(LogDBError):
    """Raised when inserting a key that is already present."""
    kind = "DuplicateKey"


class CorruptFrame(LogDBError):
    """Raised when frame bytes fail length, checksum or payload checks."""
    kind = "CorruptFrame"


class TruncatedFrame(CorruptFrame):
    """Raised when a segment ends in the middle of a frame."""
    pass


class SegmentNotFound(LogDBError):
    """Raised when a segment id is unknown or its file is missing."""
    kind = "SegmentNotFound"


class OffsetOutOfRange(LogDBError):
    """Raised when a read lies outside the published bytes of a segment."""
    kind = "OffsetOutOfRange"


class LockTimeout(LogDBError):
    """Raised when the table write lock is not acquired in time."""
    kind = "LockTimeout"


class IOFailure(LogDBError):
    """Raised when an underlying filesystem operation fails."""
    kind = "IOFailure"


class InvalidKey(LogDBError):
    """Raised when a key does not match the table's declared key type."""
    kind = "InvalidKey"


class InvalidRecord(LogDBError):
    """Raised when a record is not a JSON object or lacks its key field."""
    kind = "InvalidRecord"


class InvalidName(LogDBError):
    """Raised when a database or table name is not a plain path component."""
    kind = "InvalidName"


class TableUnusable(LogDBError):
    """Raised when a table was marked unusable after an inconsistency."""
    kind = "TableUnusable"


# Failures that mean the index and segments disagree.
FATAL_ERRORS = (CorruptFrame, SegmentNotFound, OffsetOutOfRange)
