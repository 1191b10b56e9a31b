"""
Metastore Data Models
=====================

Plain dataclasses for the entities read from and written to the metastore.
All timestamps are integer milliseconds since the epoch.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .error_handling import InvalidIdentifierError, InvalidTimeWindowError, InvalidValueError

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")


def validate_identifier(name: str) -> str:
    """Return ``name`` if it is a plain SQL identifier, raise otherwise."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise InvalidIdentifierError(
            f"Invalid table name: {name!r}", {"table_name": name}
        )
    return name


def check_residency(from_time: int, last_access_time: int, num_accessed: int):
    if num_accessed < 0:
        raise InvalidValueError(
            f"num_accessed must be non-negative: {num_accessed}", {"num_accessed": num_accessed}
        )
    if last_access_time < from_time:
        raise InvalidValueError(
            "last_access_time precedes from_time",
            {"from_time": from_time, "last_access_time": last_access_time},
        )


def check_capacity(capacity: int, free: int):
    if not 0 <= free <= capacity:
        raise InvalidValueError(
            "free must lie within [0, capacity]", {"capacity": capacity, "free": free}
        )


@dataclass(frozen=True)
class AccessCountTable:
    """One access-count shard covering the half-open window [start_time, end_time)."""

    table_name: str
    start_time: int
    end_time: int

    FILE_FIELD = "fid"
    ACCESS_COUNT_FIELD = "count"

    def __post_init__(self):
        validate_identifier(self.table_name)
        if self.start_time >= self.end_time:
            raise InvalidTimeWindowError(
                f"Access count table '{self.table_name}' has an empty window",
                {"start_time": self.start_time, "end_time": self.end_time},
            )

    @property
    def duration(self) -> int:
        return self.end_time - self.start_time


@dataclass
class CachedFileStatus:
    """Cache residency record of one file."""

    fid: int
    path: str
    from_time: int
    last_access_time: int
    num_accessed: int = 0

    def __post_init__(self):
        check_residency(self.from_time, self.last_access_time, self.num_accessed)


@dataclass(frozen=True)
class StorageCapacity:
    """Capacity snapshot of one storage type."""

    type: str
    capacity: int
    free: int

    def __post_init__(self):
        check_capacity(self.capacity, self.free)


@dataclass(frozen=True)
class StoragePolicy:
    sid: int
    policy_name: str


@dataclass(frozen=True)
class FileAccessInfo:
    """A file and its summed access count over a set of shards."""

    fid: int
    path: str
    access_count: int


@dataclass(frozen=True)
class FileAccessEvent:
    """A single access of ``path`` observed at ``timestamp``."""

    path: str
    timestamp: int


@dataclass
class FileStatus:
    """Namespace entry of one file with owner and group exposed by name."""

    fid: int
    path: str
    length: int = 0
    modification_time: int = 0
    owner: Optional[str] = None
    group: Optional[str] = None
    storage_policy: Optional[int] = None
