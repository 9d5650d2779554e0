"""Common type definitions for logdb.

Defines fundamental types used across all components.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, NamedTuple, Union

from .errors import InvalidKey

# Core primitive types
Key = Union[str, int]
Record = dict[str, Any]


class FrameKind(IntEnum):
    """Kind byte stored at the start of every frame."""

    WRITE = 1
    TOMBSTONE = 2


class KeyType(str, Enum):
    """Declared key type of a table."""

    STRING = "string"
    INTEGER = "integer"

    @property
    def code(self) -> int:
        return 0 if self is KeyType.STRING else 1

    @classmethod
    def from_code(cls, code: int) -> KeyType:
        if code == 0:
            return cls.STRING
        if code == 1:
            return cls.INTEGER
        raise ValueError(f"Unknown key type code: {code}")

    @classmethod
    def of(cls, key: Key) -> KeyType:
        """Return the key type a concrete key value belongs to."""
        if isinstance(key, bool):
            raise InvalidKey(f"Boolean is not a valid key: {key!r}")
        if isinstance(key, int):
            return cls.INTEGER
        if isinstance(key, str):
            return cls.STRING
        raise InvalidKey(f"Unsupported key type: {type(key).__name__}")

    def coerce(self, key: Any) -> Key:
        """Convert a caller-supplied key to this key type.

        String arguments are parsed for integer tables, so ``"7"`` and ``7``
        address the same record. Booleans are never accepted.
        """
        if isinstance(key, bool):
            raise InvalidKey(f"Boolean is not a valid key: {key!r}")
        if self is KeyType.STRING:
            if isinstance(key, str):
                return key
            raise InvalidKey(f"Expected a string key, got {key!r}")
        if isinstance(key, int):
            return key
        if isinstance(key, str):
            try:
                return int(key.strip())
            except ValueError:
                raise InvalidKey(f"Expected an integer key, got {key!r}") from None
        raise InvalidKey(f"Expected an integer key, got {key!r}")


class Frame(NamedTuple):
    """A decoded frame."""

    kind: FrameKind
    key: Key
    sequence: int
    value: Record | None
    length: int


class IndexEntry(NamedTuple):
    """Location of the latest frame for a key."""

    segment_id: int
    offset: int
    length: int
    sequence: int
    deleted: bool = False


class SegmentInfo(NamedTuple):
    """Size and state of one segment file."""

    segment_id: int
    size: int
    sealed: bool
