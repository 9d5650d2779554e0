"""Configuration for logdb.

Defines all tunable parameters for the storage engine, plus a loader for
TOML configuration files.
"""

from __future__ import annotations

import tomllib  # Python 3.11+
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .types import KeyType


@dataclass
class StoreConfig:
    """Configuration parameters for the logdb storage engine.

    Attributes:
        root_dir: Storage root; one subdirectory per database
        segment_max_bytes: Size threshold at which the active segment is sealed
        fsync_every_write: Whether to fsync after each append
        compaction_dead_ratio: Dead/total ratio of sealed bytes that triggers compaction
        compaction_min_bytes: Minimum sealed bytes before automatic compaction
        auto_compact: Whether writes may trigger compaction opportunistically
        background_compaction: Run automatic compaction on a worker thread
        lock_timeout_seconds: Default write lock timeout (None = wait forever)
        default_key_type: Key type for tables created without an explicit one
        key_field: Default name of the record field holding the key
    """

    root_dir: str
    segment_max_bytes: int = 4 * 1024 * 1024  # 4 MB
    fsync_every_write: bool = True
    compaction_dead_ratio: float = 0.5
    compaction_min_bytes: int = 1024 * 1024  # 1 MB
    auto_compact: bool = True
    background_compaction: bool = False
    lock_timeout_seconds: float | None = None
    default_key_type: str = KeyType.INTEGER.value
    key_field: str = "id"

    def __post_init__(self) -> None:
        self.root_dir = str(self.root_dir)
        if self.segment_max_bytes <= 0:
            raise ValueError(f"segment_max_bytes must be positive: {self.segment_max_bytes}")
        if not 0.0 < self.compaction_dead_ratio <= 1.0:
            raise ValueError(
                f"compaction_dead_ratio must be in (0, 1]: {self.compaction_dead_ratio}"
            )
        if self.compaction_min_bytes < 0:
            raise ValueError(f"compaction_min_bytes must be >= 0: {self.compaction_min_bytes}")
        if self.lock_timeout_seconds is not None and self.lock_timeout_seconds < 0:
            raise ValueError(f"lock_timeout_seconds must be >= 0: {self.lock_timeout_seconds}")
        # Raises ValueError for unknown names
        KeyType(self.default_key_type)
        if not self.key_field:
            raise ValueError("key_field must not be empty")


def load_config(path: Path, **overrides: Any) -> StoreConfig:
    """Load a StoreConfig from the ``[logdb]`` table of a TOML file.

    Keyword overrides take precedence over values from the file.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    section = data.get("logdb", {})

    known = {f.name for f in fields(StoreConfig)}
    unknown = set(section) - known
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    values = dict(section)
    values.update({k: v for k, v in overrides.items() if v is not None})
    if "root_dir" not in values:
        raise ValueError("Config is missing root_dir")
    return StoreConfig(**values)
