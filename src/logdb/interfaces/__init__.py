"""Protocol definitions for logdb components."""

from .index import KeyIndex
from .segment import SegmentLog
from .table import RecordTable

__all__ = ["KeyIndex", "SegmentLog", "RecordTable"]
