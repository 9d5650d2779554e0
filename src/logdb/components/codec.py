"""Record codec.

Serializes records and tombstones into length-prefixed binary frames with
CRC32 checksums, and decodes them back.
"""

from __future__ import annotations

import json
import struct
import zlib
from collections.abc import Mapping
from typing import Any, BinaryIO

from ..core.errors import CorruptFrame, InvalidRecord, TruncatedFrame
from ..core.types import Frame, FrameKind, Key, KeyType, Record

# Frame format:
# [kind (1B)] [key_type (1B)] [key_len (4B)] [key bytes] [seq (8B)] [value_len (4B)] [value bytes] [crc32 (4B)]
HEAD = struct.Struct("<BBI")
MIDDLE = struct.Struct("<QI")
CRC = struct.Struct("<I")
OVERHEAD = HEAD.size + MIDDLE.size + CRC.size


def _key_bytes(key: Key) -> tuple[int, bytes]:
    key_type = KeyType.of(key)
    if key_type is KeyType.INTEGER:
        return key_type.code, str(key).encode("ascii")
    return key_type.code, key.encode("utf-8")


def _parse_key(code: int, raw: bytes) -> Key:
    try:
        key_type = KeyType.from_code(code)
    except ValueError as e:
        raise CorruptFrame(str(e)) from None
    try:
        if key_type is KeyType.INTEGER:
            return int(raw.decode("ascii"))
        return raw.decode("utf-8")
    except (UnicodeDecodeError, ValueError) as e:
        raise CorruptFrame(f"Undecodable key bytes: {e}") from None


def encode_value(record: Mapping[str, Any]) -> bytes:
    """Encode a record as compact, key-sorted JSON."""
    if not isinstance(record, Mapping):
        raise InvalidRecord(f"Record must be a JSON object, got {type(record).__name__}")
    try:
        text = json.dumps(
            dict(record), sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
        )
    except (TypeError, ValueError, RecursionError) as e:
        raise InvalidRecord(f"Record is not JSON-representable: {e}") from None
    return text.encode("utf-8")


def encode_frame(
    kind: FrameKind, key: Key, sequence: int, record: Mapping[str, Any] | None = None
) -> bytes:
    """Build a complete frame.

    Args:
        kind: Write or tombstone
        key: String or integer key
        sequence: Table sequence number of this write
        record: Record for write frames; must be None for tombstones

    Returns:
        Frame bytes including the trailing checksum
    """
    kind = FrameKind(kind)
    if kind is FrameKind.WRITE:
        if record is None:
            raise InvalidRecord("Write frame requires a record")
        value = encode_value(record)
    else:
        if record is not None:
            raise InvalidRecord("Tombstone frame carries no record")
        value = b""

    key_code, key_raw = _key_bytes(key)
    payload = (
        HEAD.pack(kind, key_code, len(key_raw))
        + key_raw
        + MIDDLE.pack(sequence, len(value))
        + value
    )
    return payload + CRC.pack(zlib.crc32(payload))


def encode(key: Key, sequence: int, record: Mapping[str, Any]) -> bytes:
    """Encode a record-write frame."""
    return encode_frame(FrameKind.WRITE, key, sequence, record)


def encode_tombstone(key: Key, sequence: int) -> bytes:
    """Encode a tombstone frame."""
    return encode_frame(FrameKind.TOMBSTONE, key, sequence)


def _parse_head(head: bytes) -> tuple[FrameKind, int, int]:
    kind_byte, key_code, key_len = HEAD.unpack(head)
    try:
        kind = FrameKind(kind_byte)
    except ValueError:
        raise CorruptFrame(f"Invalid frame kind: {kind_byte:#x}") from None
    return kind, key_code, key_len


def decode_frame(data: bytes) -> Frame:
    """Decode exactly one frame.

    Raises:
        TruncatedFrame: If data ends before the frame does
        CorruptFrame: If lengths, checksum, key or value are invalid
    """
    data = bytes(data)
    if len(data) < HEAD.size:
        raise TruncatedFrame(f"Frame header needs {HEAD.size} bytes, got {len(data)}")
    kind, key_code, key_len = _parse_head(data[: HEAD.size])

    mid_at = HEAD.size + key_len
    if len(data) < mid_at + MIDDLE.size:
        raise TruncatedFrame(f"Frame shorter than declared key length {key_len}")
    sequence, value_len = MIDDLE.unpack_from(data, mid_at)

    value_at = mid_at + MIDDLE.size
    total = value_at + value_len + CRC.size
    if len(data) < total:
        raise TruncatedFrame(f"Frame needs {total} bytes, got {len(data)}")
    if len(data) > total:
        raise CorruptFrame(f"Frame is {total} bytes but {len(data)} were supplied")

    (stored_crc,) = CRC.unpack_from(data, total - CRC.size)
    computed_crc = zlib.crc32(data[: total - CRC.size])
    if stored_crc != computed_crc:
        raise CorruptFrame(f"CRC mismatch: expected {computed_crc:x}, got {stored_crc:x}")

    key = _parse_key(key_code, data[HEAD.size : mid_at])
    raw_value = data[value_at : value_at + value_len]

    if kind is FrameKind.TOMBSTONE:
        if value_len:
            raise CorruptFrame(f"Tombstone for {key!r} carries {value_len} value bytes")
        return Frame(kind, key, sequence, None, total)

    try:
        value = json.loads(raw_value.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise CorruptFrame(f"Invalid record payload for {key!r}: {e}") from None
    if not isinstance(value, dict):
        raise CorruptFrame(f"Record payload for {key!r} is not an object")
    return Frame(kind, key, sequence, value, total)


def decode(data: bytes) -> tuple[FrameKind, Key, int, Record | None]:
    """Decode a frame into ``(kind, key, sequence, value)``."""
    frame = decode_frame(data)
    return frame.kind, frame.key, frame.sequence, frame.value


def find_frame(data: bytes, start: int = 0) -> int | None:
    """Return the offset of the first whole, valid frame at or after ``start``.

    Used to tell a torn final write, which nothing follows, from damage in
    the middle of a segment.
    """
    data = bytes(data)
    for offset in range(start, len(data) - OVERHEAD + 1):
        kind_byte, _key_code, key_len = HEAD.unpack_from(data, offset)
        if kind_byte not in (FrameKind.WRITE, FrameKind.TOMBSTONE):
            continue
        mid_at = offset + HEAD.size + key_len
        if mid_at + MIDDLE.size + CRC.size > len(data):
            continue
        _sequence, value_len = MIDDLE.unpack_from(data, mid_at)
        end = mid_at + MIDDLE.size + value_len + CRC.size
        if end > len(data):
            continue
        try:
            decode_frame(data[offset:end])
        except CorruptFrame:
            continue
        return offset
    return None


def read_frame(stream: BinaryIO) -> Frame | None:
    """Read the next frame from a binary stream.

    Returns None at a clean end of stream. Raises TruncatedFrame when the
    stream ends inside a frame.
    """
    head = stream.read(HEAD.size)
    if len(head) == 0:
        return None
    if len(head) < HEAD.size:
        raise TruncatedFrame("Partial frame header at EOF")
    _kind, _key_code, key_len = _parse_head(head)

    key_and_mid = stream.read(key_len + MIDDLE.size)
    if len(key_and_mid) < key_len + MIDDLE.size:
        raise TruncatedFrame("Partial key at EOF")
    _sequence, value_len = MIDDLE.unpack_from(key_and_mid, key_len)

    rest = stream.read(value_len + CRC.size)
    if len(rest) < value_len + CRC.size:
        raise TruncatedFrame("Partial value at EOF")

    return decode_frame(head + key_and_mid + rest)
