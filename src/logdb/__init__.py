"""logdb - log-structured JSON record store in Python."""

from .core.config import StoreConfig, load_config
from .core.database import Database, DatabaseManager
from .core.errors import (
    AlreadyExists,
    CorruptFrame,
    DuplicateKey,
    InvalidKey,
    InvalidName,
    InvalidRecord,
    IOFailure,
    LockTimeout,
    LogDBError,
    NotFound,
    OffsetOutOfRange,
    SegmentNotFound,
    TableUnusable,
    TruncatedFrame,
)
from .core.service import Result, ScanCursor, StoreService
from .core.table import Table, TableStats
from .core.types import Frame, FrameKind, IndexEntry, Key, KeyType, Record

__all__ = [
    "StoreConfig",
    "load_config",
    "Database",
    "DatabaseManager",
    "Table",
    "TableStats",
    "StoreService",
    "Result",
    "ScanCursor",
    "LogDBError",
    "AlreadyExists",
    "NotFound",
    "DuplicateKey",
    "CorruptFrame",
    "TruncatedFrame",
    "SegmentNotFound",
    "OffsetOutOfRange",
    "LockTimeout",
    "IOFailure",
    "InvalidKey",
    "InvalidRecord",
    "InvalidName",
    "TableUnusable",
    "Frame",
    "FrameKind",
    "IndexEntry",
    "Key",
    "KeyType",
    "Record",
]
